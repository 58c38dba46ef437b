from __future__ import annotations

import base64
import hashlib
import secrets
from typing import Protocol

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from pushrelay.core.config import get_settings
from pushrelay.core.errors import NotFoundError
from pushrelay.domain.tenants import RateLimitPolicy, Tenant


_CREDENTIAL_PREFIX = "vp_"


class TenantDirectory(Protocol):
    # Resolve tenants for inbound calls; the core never mutates a tenant.
    async def resolve_by_credential(self, credential: str) -> Tenant: ...

    async def resolve_owner_apps(self, owner: str) -> list[Tenant]: ...


def hash_credential(raw_credential: str) -> str:
    # Use SHA-256 for deterministic, non-reversible credential storage.
    return hashlib.sha256(raw_credential.encode("utf-8")).hexdigest()


def generate_credential() -> str:
    return f"{_CREDENTIAL_PREFIX}{secrets.token_hex(24)}"


def normalize_owner(owner: str) -> str:
    return owner.strip().lower()


def policy_from_settings(
    *,
    max_per_minute: int | None = None,
    max_per_day: int | None = None,
    max_subscriptions: int | None = None,
) -> RateLimitPolicy:
    # Unspecified limits fall back to the configured tenant defaults.
    settings = get_settings()
    return RateLimitPolicy(
        max_per_minute=settings.default_max_per_minute if max_per_minute is None else max_per_minute,
        max_per_day=settings.default_max_per_day if max_per_day is None else max_per_day,
        max_subscriptions=settings.default_max_subscriptions if max_subscriptions is None else max_subscriptions,
    )


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def generate_vapid_keypair() -> tuple[str, str]:
    """Create a fresh P-256 VAPID identity.

    Returns ``(public_key, private_key)`` as unpadded base64url: the public key
    is the 65-byte uncompressed point browsers expect as
    ``applicationServerKey``; the private key is the raw 32-byte scalar.
    """
    private_key = ec.generate_private_key(ec.SECP256R1())
    public_bytes = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.X962,
        format=serialization.PublicFormat.UncompressedPoint,
    )
    private_bytes = private_key.private_numbers().private_value.to_bytes(32, "big")
    return _b64url(public_bytes), _b64url(private_bytes)


class InMemoryTenantDirectory:
    def __init__(self) -> None:
        self._by_credential_hash: dict[str, Tenant] = {}
        self._order: list[str] = []

    def add(self, tenant: Tenant, credential: str) -> None:
        self._by_credential_hash[hash_credential(credential)] = tenant
        self._order.append(tenant.id)

    async def resolve_by_credential(self, credential: str) -> Tenant:
        tenant = self._by_credential_hash.get(hash_credential(credential))
        if tenant is None:
            raise NotFoundError("tenant not found for credential")
        return tenant

    async def resolve_owner_apps(self, owner: str) -> list[Tenant]:
        wanted = normalize_owner(owner)
        position = {tenant_id: index for index, tenant_id in enumerate(self._order)}
        tenants = [tenant for tenant in self._by_credential_hash.values() if tenant.owner == wanted]
        # Newest registration first, matching the SQL directory.
        return sorted(tenants, key=lambda tenant: position[tenant.id], reverse=True)
