"""Fan-out of one send request to a tenant's subscriptions."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from pushrelay.core.config import get_settings
from pushrelay.core.errors import (
    InternalError,
    PermanentDeliveryFailure,
    RateLimitExceededError,
    TransientDeliveryFailure,
    ValidationError,
)
from pushrelay.domain.dispatch import DIRECT_SUBSCRIPTION_ID, BatchSendResult, SendResult
from pushrelay.domain.schemas import NotificationPayload, SendRequest
from pushrelay.domain.subscriptions import SubscriptionRecord
from pushrelay.domain.tenants import Tenant
from pushrelay.services.key_material import (
    renormalize_key_material,
    validate_auth_secret,
    validate_public_key,
)
from pushrelay.services.rate_limit import ACTION_BROADCAST_SEND, ACTION_SINGLE_SEND, RateLimiter
from pushrelay.services.registry import SubscriptionRegistry, validate_endpoint
from pushrelay.services.transport import PushKeys, TransportSender, VapidIdentity


logger = logging.getLogger(__name__)


class DispatchEngine:
    def __init__(
        self,
        registry: SubscriptionRegistry,
        rate_limiter: RateLimiter,
        transport: TransportSender,
        *,
        batch_size: int | None = None,
        delivery_timeout_s: float | None = None,
        ttl_s: int | None = None,
        urgency: str | None = None,
        vapid_subject: str | None = None,
    ) -> None:
        settings = get_settings()
        self._registry = registry
        self._rate_limiter = rate_limiter
        self._transport = transport
        self._batch_size = max(1, batch_size or settings.dispatch_batch_size)
        self._delivery_timeout_s = delivery_timeout_s or settings.delivery_timeout_ms / 1000.0
        self._ttl_s = settings.push_ttl_s if ttl_s is None else ttl_s
        self._urgency = urgency or settings.push_urgency
        self._vapid_subject = vapid_subject or settings.vapid_subject

    def _identity(self, tenant: Tenant) -> VapidIdentity:
        # Built per call from the tenant's own keys; no identity is cached across tenants.
        return VapidIdentity(
            public_key=tenant.vapid_public_key,
            private_key=tenant.vapid_private_key,
            subject=self._vapid_subject,
        )

    async def _resolve_targets(self, tenant: Tenant, request: SendRequest) -> list[SubscriptionRecord]:
        if request.subscription_ids:
            candidates = await self._registry.list_by_ids(request.subscription_ids)
            # Ids owned by other tenants are dropped, never reported.
            return [record for record in candidates if record.tenant_id == tenant.id]
        return await self._registry.list_by_tenant(
            tenant.id,
            user_id=request.user_id,
            channel_id=request.channel_id,
        )

    async def send(self, tenant: Tenant, request: SendRequest) -> BatchSendResult:
        targets = await self._resolve_targets(tenant, request)
        if not targets:
            return BatchSendResult.empty()

        action = ACTION_BROADCAST_SEND if len(targets) > 1 else ACTION_SINGLE_SEND
        decision = await self._rate_limiter.check_and_increment(
            tenant.id, action, tenant.rate_limit.max_per_minute
        )
        if not decision.allowed:
            raise RateLimitExceededError(
                "Rate limit exceeded. Please try again later.",
                action=action,
                current=decision.current,
                limit=decision.limit,
            )

        payload = request.payload.to_wire()
        identity = self._identity(tenant)
        results: list[SendResult] = []
        for start in range(0, len(targets), self._batch_size):
            batch = targets[start : start + self._batch_size]
            # gather returns in submission order, so results line up with targets.
            batch_results = await asyncio.gather(
                *(self._deliver_to_subscription(tenant, identity, record, payload) for record in batch)
            )
            results.extend(batch_results)

        outcome = BatchSendResult.from_results(results)
        logger.info(
            "dispatch_complete tenant_id=%s action=%s sent=%s failed=%s total=%s",
            tenant.id,
            action,
            outcome.sent,
            outcome.failed,
            outcome.total,
        )
        return outcome

    async def _deliver_to_subscription(
        self,
        tenant: Tenant,
        identity: VapidIdentity,
        record: SubscriptionRecord,
        payload: bytes,
    ) -> SendResult:
        # Stored values may predate canonicalization; re-normalizing canonical input is a no-op.
        keys = PushKeys(
            p256dh=renormalize_key_material(record.public_key),
            auth=renormalize_key_material(record.auth_secret),
        )
        try:
            receipt = await asyncio.wait_for(
                self._transport.deliver(
                    identity,
                    record.endpoint,
                    keys,
                    payload,
                    ttl=self._ttl_s,
                    urgency=self._urgency,
                ),
                timeout=self._delivery_timeout_s,
            )
        except PermanentDeliveryFailure as exc:
            logger.warning(
                "subscription_gone_pruning tenant_id=%s subscription_id=%s status_code=%s",
                tenant.id,
                record.id,
                exc.status_code,
            )
            await self._prune(tenant, record)
            return SendResult(
                subscription_id=record.id,
                success=False,
                status_code=exc.status_code,
                error=str(exc) or "Push failed",
            )
        except Exception as exc:  # noqa: BLE001 - one bad target must not abort the batch.
            return self._transient_result(tenant, record.id, exc)

        logger.debug(
            "delivery_succeeded tenant_id=%s subscription_id=%s status_code=%s",
            tenant.id,
            record.id,
            receipt.status_code,
        )
        return SendResult(subscription_id=record.id, success=True, status_code=receipt.status_code)

    def _transient_result(self, tenant: Tenant, subscription_id: str, exc: BaseException) -> SendResult:
        status_code = getattr(exc, "status_code", None)
        if isinstance(exc, asyncio.TimeoutError):
            error = "Delivery timed out"
        elif isinstance(exc, TransientDeliveryFailure):
            error = str(exc) or "Push failed"
        else:
            error = str(exc) or type(exc).__name__
        logger.warning(
            "delivery_failed tenant_id=%s subscription_id=%s status_code=%s error=%s",
            tenant.id,
            subscription_id,
            status_code,
            error,
        )
        return SendResult(subscription_id=subscription_id, success=False, status_code=status_code, error=error)

    async def _prune(self, tenant: Tenant, record: SubscriptionRecord) -> None:
        # A failed prune is retried naturally by the next send that hits the same endpoint.
        try:
            await self._registry.delete(record.id)
        except InternalError as exc:
            logger.error(
                "subscription_prune_failed tenant_id=%s subscription_id=%s",
                tenant.id,
                record.id,
                exc_info=exc,
            )

    async def send_direct(
        self,
        tenant: Tenant,
        endpoint: str,
        p256dh: str,
        auth: str,
        payload: NotificationPayload | dict[str, Any],
    ) -> SendResult:
        """Deliver once to an unregistered endpoint.

        No rate-limit accounting and no pruning: there is no stored
        subscription behind a direct send.
        """
        if not isinstance(payload, NotificationPayload):
            try:
                payload = NotificationPayload.model_validate(payload)
            except PydanticValidationError as exc:
                raise ValidationError(f"invalid notification payload: {exc.error_count()} error(s)") from exc
        keys = PushKeys(p256dh=validate_public_key(p256dh), auth=validate_auth_secret(auth))
        target = validate_endpoint(endpoint)
        try:
            receipt = await asyncio.wait_for(
                self._transport.deliver(
                    self._identity(tenant),
                    target,
                    keys,
                    payload.to_wire(),
                    ttl=self._ttl_s,
                    urgency=self._urgency,
                ),
                timeout=self._delivery_timeout_s,
            )
        except PermanentDeliveryFailure as exc:
            logger.warning(
                "direct_delivery_gone tenant_id=%s status_code=%s", tenant.id, exc.status_code
            )
            return SendResult(
                subscription_id=DIRECT_SUBSCRIPTION_ID,
                success=False,
                status_code=exc.status_code,
                error=str(exc) or "Push failed",
            )
        except Exception as exc:  # noqa: BLE001 - report the failure instead of raising.
            return self._transient_result(tenant, DIRECT_SUBSCRIPTION_ID, exc)
        return SendResult(
            subscription_id=DIRECT_SUBSCRIPTION_ID,
            success=True,
            status_code=receipt.status_code,
        )

