"""Web Push transport: payload encryption, VAPID signing, and the upstream POST."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import time
from typing import Protocol
from urllib.parse import urlparse

import httpx
from py_vapid import Vapid
from pywebpush import WebPusher

from pushrelay.core.config import get_settings
from pushrelay.core.errors import PermanentDeliveryFailure, TransientDeliveryFailure


logger = logging.getLogger(__name__)

# Push services answer 404/410 once a registration is gone for good.
GONE_STATUS_CODES = frozenset({404, 410})

_VAPID_CLAIM_TTL_S = 12 * 60 * 60
_CONTENT_ENCODING = "aes128gcm"


@dataclass(frozen=True)
class VapidIdentity:
    # One tenant's push-service identity, built per call and never shared across tenants.
    public_key: str
    private_key: str = field(repr=False)
    subject: str


@dataclass(frozen=True)
class PushKeys:
    p256dh: str
    auth: str = field(repr=False)


@dataclass(frozen=True)
class DeliveryReceipt:
    status_code: int


class TransportSender(Protocol):
    # Raise TransientDeliveryFailure or PermanentDeliveryFailure; return a receipt on success.
    async def deliver(
        self,
        identity: VapidIdentity,
        endpoint: str,
        keys: PushKeys,
        payload: bytes,
        *,
        ttl: int,
        urgency: str,
    ) -> DeliveryReceipt: ...


def classify_status(status_code: int, message: str) -> None:
    # Raise the failure class matching an upstream status; 2xx passes through.
    if 200 <= status_code < 300:
        return
    if status_code in GONE_STATUS_CODES:
        raise PermanentDeliveryFailure(message, status_code=status_code)
    raise TransientDeliveryFailure(message, status_code=status_code)


def _audience(endpoint: str) -> str:
    parsed = urlparse(endpoint)
    return f"{parsed.scheme}://{parsed.netloc}"


def vapid_headers(identity: VapidIdentity, endpoint: str, *, now: float | None = None) -> dict[str, str]:
    """Sign a VAPID JWT for the endpoint's origin with the tenant's private key."""
    issued_at = time.time() if now is None else now
    claims = {
        "sub": identity.subject,
        "aud": _audience(endpoint),
        "exp": int(issued_at) + _VAPID_CLAIM_TTL_S,
    }
    signer = Vapid.from_string(private_key=identity.private_key)
    headers = signer.sign(claims)
    return {str(key): str(value) for key, value in headers.items()}


def encrypt_payload(endpoint: str, keys: PushKeys, payload: bytes) -> bytes:
    pusher = WebPusher({"endpoint": endpoint, "keys": {"p256dh": keys.p256dh, "auth": keys.auth}})
    encoded = pusher.encode(payload, content_encoding=_CONTENT_ENCODING)
    return encoded["body"]


class WebPushTransport:
    """Deliver encrypted Web Push messages over httpx.

    A shared ``httpx.AsyncClient`` may be injected; otherwise one client is
    created on first use and reused for every delivery until ``aclose()``.
    """

    def __init__(self, *, client: httpx.AsyncClient | None = None, timeout_s: float | None = None) -> None:
        self._client = client
        self._owns_client = client is None
        self._timeout_s = timeout_s or max(0.2, get_settings().delivery_timeout_ms / 1000.0)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per transport for connection pooling.
        self._client = httpx.AsyncClient(timeout=self._timeout_s)
        return self._client

    async def aclose(self) -> None:
        # Injected clients belong to the caller.
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def deliver(
        self,
        identity: VapidIdentity,
        endpoint: str,
        keys: PushKeys,
        payload: bytes,
        *,
        ttl: int,
        urgency: str,
    ) -> DeliveryReceipt:
        try:
            body = encrypt_payload(endpoint, keys, payload)
            headers = vapid_headers(identity, endpoint)
        except Exception as exc:  # noqa: BLE001 - malformed stored keys fail this target only.
            raise TransientDeliveryFailure(f"Push message preparation failed: {exc}") from exc
        headers.update(
            {
                "Content-Encoding": _CONTENT_ENCODING,
                "Content-Type": "application/octet-stream",
                "TTL": str(int(ttl)),
                "Urgency": urgency,
            }
        )
        try:
            response = await self._get_client().post(
                endpoint, content=body, headers=headers, timeout=self._timeout_s
            )
        except httpx.TimeoutException as exc:
            raise TransientDeliveryFailure("Push service timed out") from exc
        except httpx.HTTPError as exc:
            raise TransientDeliveryFailure(f"Push service unreachable: {exc}") from exc

        status_code = int(response.status_code)
        if status_code >= 300:
            logger.debug("push_service_rejected status_code=%s body=%s", status_code, response.text[:200])
        classify_status(status_code, f"Push service rejected message ({status_code})")
        return DeliveryReceipt(status_code=status_code)
