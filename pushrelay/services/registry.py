from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any, Callable, Sequence
from urllib.parse import urlparse
from uuid import uuid4

from pushrelay.core.config import get_settings
from pushrelay.core.errors import (
    AccessDeniedError,
    NotFoundError,
    RateLimitExceededError,
    SubscriptionLimitExceededError,
    ValidationError,
)
from pushrelay.domain.schemas import SubscribeRequest
from pushrelay.domain.subscriptions import SubscriptionRecord
from pushrelay.domain.tenants import Tenant
from pushrelay.persistence.repos.subscriptions import SubscriptionStore
from pushrelay.services.key_material import validate_auth_secret, validate_public_key
from pushrelay.services.rate_limit import ACTION_SUBSCRIBE, RateLimiter


logger = logging.getLogger(__name__)

_ENDPOINT_SCHEMES = ("http", "https")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    # Naive datetimes are taken to be UTC already, never host-local time.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def validate_endpoint(endpoint: str) -> str:
    # Endpoints are opaque push-service URLs; only require an absolute http(s) address.
    normalized = (endpoint or "").strip()
    parsed = urlparse(normalized)
    if parsed.scheme.lower() not in _ENDPOINT_SCHEMES or not parsed.netloc:
        raise ValidationError("endpoint must be an absolute http(s) URL")
    return normalized


def _optional_filter(value: str | None) -> str | None:
    # Empty strings mean "no filter on this dimension".
    return value if value else None


class SubscriptionRegistry:
    """Per-tenant set of device endpoints keyed on ``(tenant_id, endpoint)``."""

    def __init__(
        self,
        store: SubscriptionStore,
        *,
        time_provider: Callable[[], datetime] | None = None,
        page_size: int | None = None,
    ) -> None:
        self._store = store
        self._time_provider = time_provider or _utc_now
        self._page_size = page_size or get_settings().subscription_page_size

    async def upsert(
        self,
        tenant_id: str,
        endpoint: str,
        public_key: str,
        auth_secret: str,
        *,
        user_id: str | None = None,
        channel_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        expires_at: datetime | None = None,
    ) -> SubscriptionRecord:
        if not tenant_id:
            raise ValidationError("tenant_id is required")
        record = SubscriptionRecord(
            id=uuid4().hex,
            tenant_id=tenant_id,
            endpoint=validate_endpoint(endpoint),
            public_key=validate_public_key(public_key),
            auth_secret=validate_auth_secret(auth_secret),
            user_id=user_id,
            channel_id=channel_id,
            metadata=dict(metadata or {}),
            created_at=self._time_provider(),
            expires_at=_as_utc(expires_at),
        )
        stored = await self._store.upsert(record)
        logger.info(
            "subscription_upserted subscription_id=%s tenant_id=%s refreshed=%s",
            stored.id,
            tenant_id,
            stored.id != record.id,
        )
        return stored

    async def get_by_id(self, subscription_id: str) -> SubscriptionRecord:
        record = await self._store.get(subscription_id)
        if record is None:
            raise NotFoundError("subscription not found")
        return record

    async def list_by_tenant(
        self,
        tenant_id: str,
        *,
        user_id: str | None = None,
        channel_id: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[SubscriptionRecord]:
        # Clamp paging so a caller can never request an unbounded scan.
        resolved_limit = min(max(1, limit or self._page_size), self._page_size)
        return await self._store.list_by_tenant(
            tenant_id,
            user_id=_optional_filter(user_id),
            channel_id=_optional_filter(channel_id),
            active_at=self._time_provider(),
            limit=resolved_limit,
            offset=max(0, offset),
        )

    async def list_by_ids(self, subscription_ids: Sequence[str]) -> list[SubscriptionRecord]:
        # Ownership filtering is the caller's job; missing ids are dropped silently.
        return await self._store.list_by_ids(subscription_ids)

    async def delete(self, subscription_id: str) -> bool:
        removed = await self._store.delete(subscription_id)
        if removed:
            logger.info("subscription_deleted subscription_id=%s", subscription_id)
        return removed

    async def delete_by_endpoint(self, tenant_id: str, endpoint: str) -> bool:
        removed = await self._store.delete_by_endpoint(tenant_id, endpoint)
        if removed:
            logger.info("subscription_deleted_by_endpoint tenant_id=%s", tenant_id)
        return removed

    async def count(self, tenant_id: str) -> int:
        return await self._store.count(tenant_id)


class SubscriptionService:
    """Tenant-facing subscribe/unsubscribe flows layered on the registry."""

    def __init__(self, registry: SubscriptionRegistry, rate_limiter: RateLimiter | None = None) -> None:
        self._registry = registry
        self._rate_limiter = rate_limiter

    async def subscribe(self, tenant: Tenant, request: SubscribeRequest) -> SubscriptionRecord:
        settings = get_settings()
        if self._rate_limiter is not None and settings.rl_subscribe_per_minute > 0:
            decision = await self._rate_limiter.check_and_increment(
                tenant.id, ACTION_SUBSCRIBE, settings.rl_subscribe_per_minute
            )
            if not decision.allowed:
                raise RateLimitExceededError(
                    "Too many subscribe requests, please try again later",
                    action=ACTION_SUBSCRIBE,
                    current=decision.current,
                    limit=decision.limit,
                )

        # Soft ceiling: count-then-insert is not atomic, so concurrent subscribers
        # near the limit may overshoot it slightly.
        current = await self._registry.count(tenant.id)
        ceiling = tenant.rate_limit.max_subscriptions
        if current >= ceiling:
            raise SubscriptionLimitExceededError(
                f"Maximum {ceiling} subscriptions per app allowed",
                action=ACTION_SUBSCRIBE,
                current=current,
                limit=ceiling,
            )

        expires_at = None
        if request.expiration_time is not None:
            expires_at = datetime.fromtimestamp(request.expiration_time / 1000.0, tz=timezone.utc)
        return await self._registry.upsert(
            tenant.id,
            request.endpoint,
            request.keys.p256dh,
            request.keys.auth,
            user_id=request.user_id,
            channel_id=request.channel_id,
            metadata=request.metadata,
            expires_at=expires_at,
        )

    async def get(self, tenant: Tenant, subscription_id: str) -> SubscriptionRecord:
        record = await self._registry.get_by_id(subscription_id)
        if record.tenant_id != tenant.id:
            raise AccessDeniedError("subscription belongs to a different app")
        return record

    async def list_subscriptions(
        self,
        tenant: Tenant,
        *,
        user_id: str | None = None,
        channel_id: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[SubscriptionRecord]:
        return await self._registry.list_by_tenant(
            tenant.id, user_id=user_id, channel_id=channel_id, limit=limit, offset=offset
        )

    async def unsubscribe(self, tenant: Tenant, subscription_id: str) -> bool:
        await self.get(tenant, subscription_id)
        return await self._registry.delete(subscription_id)

    async def unsubscribe_endpoint(self, tenant: Tenant, endpoint: str) -> bool:
        return await self._registry.delete_by_endpoint(tenant.id, endpoint)
