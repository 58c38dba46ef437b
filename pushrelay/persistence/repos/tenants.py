from __future__ import annotations

import logging
from typing import Any
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pushrelay.core.errors import NotFoundError, ValidationError
from pushrelay.domain.models import App
from pushrelay.domain.tenants import RateLimitPolicy, Tenant
from pushrelay.persistence.guards import store_errors
from pushrelay.services.tenants import (
    generate_credential,
    generate_vapid_keypair,
    hash_credential,
    normalize_owner,
    policy_from_settings,
)


logger = logging.getLogger(__name__)


def _to_tenant(row: App) -> Tenant:
    return Tenant(
        id=row.id,
        name=row.name,
        owner=row.owner,
        vapid_public_key=row.vapid_public_key,
        vapid_private_key=row.vapid_private_key,
        rate_limit=RateLimitPolicy(
            max_per_minute=row.max_per_minute,
            max_per_day=row.max_per_day,
            max_subscriptions=row.max_subscriptions,
        ),
        metadata=dict(row.metadata_json or {}),
    )


class SqlTenantDirectory:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def resolve_by_credential(self, credential: str) -> Tenant:
        if not credential:
            raise NotFoundError("tenant not found for credential")
        stmt = select(App).where(App.credential_hash == hash_credential(credential))
        with store_errors("tenant lookup"):
            async with self._session_factory() as session:
                row = (await session.execute(stmt)).scalar_one_or_none()
        if row is None:
            raise NotFoundError("tenant not found for credential")
        return _to_tenant(row)

    async def resolve_owner_apps(self, owner: str) -> list[Tenant]:
        stmt = (
            select(App)
            .where(App.owner == normalize_owner(owner))
            .order_by(App.created_at.desc(), App.id.desc())
        )
        with store_errors("tenant owner lookup"):
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).scalars().all()
        return [_to_tenant(row) for row in rows]

    async def register(
        self,
        owner: str,
        name: str,
        *,
        metadata: dict[str, Any] | None = None,
        policy: RateLimitPolicy | None = None,
    ) -> tuple[Tenant, str]:
        """Create a tenant with a fresh credential and VAPID identity.

        The raw credential is returned exactly once; only its hash is stored.
        """
        if not name or not name.strip() or len(name) > 255:
            raise ValidationError("name must be 1-255 characters")
        if not owner or not owner.strip():
            raise ValidationError("owner is required")
        resolved_policy = policy or policy_from_settings()
        credential = generate_credential()
        public_key, private_key = generate_vapid_keypair()
        row = App(
            id=uuid4().hex,
            name=name.strip(),
            owner=normalize_owner(owner),
            credential_hash=hash_credential(credential),
            vapid_public_key=public_key,
            vapid_private_key=private_key,
            metadata_json=dict(metadata or {}),
            max_per_minute=resolved_policy.max_per_minute,
            max_per_day=resolved_policy.max_per_day,
            max_subscriptions=resolved_policy.max_subscriptions,
        )
        with store_errors("tenant register"):
            async with self._session_factory() as session:
                session.add(row)
                await session.commit()
                await session.refresh(row)
        logger.info("tenant_registered tenant_id=%s owner=%s", row.id, row.owner)
        return _to_tenant(row), credential
