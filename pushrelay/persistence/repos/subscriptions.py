from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Protocol, Sequence

from sqlalchemy import delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pushrelay.domain.models import Subscription
from pushrelay.domain.subscriptions import SubscriptionRecord
from pushrelay.persistence.db import dialect_insert
from pushrelay.persistence.guards import require_tenant_id, store_errors, tenant_predicate


# Fields replaced when a subscribe call hits an existing (tenant_id, endpoint) row.
_REPLACED_FIELDS = ("public_key", "auth_secret", "user_id", "channel_id", "metadata_json", "expires_at")


class SubscriptionStore(Protocol):
    # Storage contract; upsert must be a single atomic insert-or-replace on the natural key.
    async def upsert(self, record: SubscriptionRecord) -> SubscriptionRecord: ...

    async def get(self, subscription_id: str) -> SubscriptionRecord | None: ...

    async def list_by_tenant(
        self,
        tenant_id: str,
        *,
        user_id: str | None,
        channel_id: str | None,
        active_at: datetime,
        limit: int,
        offset: int,
    ) -> list[SubscriptionRecord]: ...

    async def list_by_ids(self, subscription_ids: Sequence[str]) -> list[SubscriptionRecord]: ...

    async def delete(self, subscription_id: str) -> bool: ...

    async def delete_by_endpoint(self, tenant_id: str, endpoint: str) -> bool: ...

    async def count(self, tenant_id: str) -> int: ...


def _as_utc(value: datetime | None) -> datetime | None:
    # sqlite drops tzinfo on read; every stored timestamp is UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _to_record(row: Any) -> SubscriptionRecord:
    return SubscriptionRecord(
        id=row.id,
        tenant_id=row.tenant_id,
        endpoint=row.endpoint,
        public_key=row.public_key,
        auth_secret=row.auth_secret,
        user_id=row.user_id,
        channel_id=row.channel_id,
        metadata=dict(row.metadata_json or {}),
        created_at=_as_utc(row.created_at),
        expires_at=_as_utc(row.expires_at),
    )


class InMemorySubscriptionStore:
    # Process-local store for tests and single-node development runs.
    def __init__(self) -> None:
        self._rows: dict[str, SubscriptionRecord] = {}
        self._by_natural_key: dict[tuple[str, str], str] = {}
        # Insertion sequence breaks created_at ties for newest-first ordering.
        self._sequence: dict[str, int] = {}
        self._counter = 0
        self._lock = asyncio.Lock()

    async def upsert(self, record: SubscriptionRecord) -> SubscriptionRecord:
        async with self._lock:
            key = (record.tenant_id, record.endpoint)
            existing_id = self._by_natural_key.get(key)
            if existing_id is not None:
                existing = self._rows[existing_id]
                updated = replace(
                    existing,
                    public_key=record.public_key,
                    auth_secret=record.auth_secret,
                    user_id=record.user_id,
                    channel_id=record.channel_id,
                    metadata=dict(record.metadata),
                    expires_at=record.expires_at,
                )
                self._rows[existing_id] = updated
                return updated
            self._counter += 1
            self._rows[record.id] = record
            self._by_natural_key[key] = record.id
            self._sequence[record.id] = self._counter
            return record

    async def get(self, subscription_id: str) -> SubscriptionRecord | None:
        return self._rows.get(subscription_id)

    async def list_by_tenant(
        self,
        tenant_id: str,
        *,
        user_id: str | None,
        channel_id: str | None,
        active_at: datetime,
        limit: int,
        offset: int,
    ) -> list[SubscriptionRecord]:
        require_tenant_id(tenant_id)
        matches = [
            row
            for row in self._rows.values()
            if row.tenant_id == tenant_id
            and (user_id is None or row.user_id == user_id)
            and (channel_id is None or row.channel_id == channel_id)
            and not row.is_expired(active_at)
        ]
        matches.sort(key=lambda row: (row.created_at, self._sequence[row.id]), reverse=True)
        return matches[offset : offset + limit]

    async def list_by_ids(self, subscription_ids: Sequence[str]) -> list[SubscriptionRecord]:
        seen: set[str] = set()
        rows: list[SubscriptionRecord] = []
        for subscription_id in subscription_ids:
            row = self._rows.get(subscription_id)
            if row is not None and subscription_id not in seen:
                seen.add(subscription_id)
                rows.append(row)
        return rows

    async def delete(self, subscription_id: str) -> bool:
        async with self._lock:
            row = self._rows.pop(subscription_id, None)
            if row is None:
                return False
            self._by_natural_key.pop((row.tenant_id, row.endpoint), None)
            self._sequence.pop(subscription_id, None)
            return True

    async def delete_by_endpoint(self, tenant_id: str, endpoint: str) -> bool:
        require_tenant_id(tenant_id)
        subscription_id = self._by_natural_key.get((tenant_id, endpoint))
        if subscription_id is None:
            return False
        return await self.delete(subscription_id)

    async def count(self, tenant_id: str) -> int:
        require_tenant_id(tenant_id)
        return sum(1 for row in self._rows.values() if row.tenant_id == tenant_id)


class SqlSubscriptionStore:
    # One short-lived session per call so concurrent pruning deletes never share a session.
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def upsert(self, record: SubscriptionRecord) -> SubscriptionRecord:
        with store_errors("subscription upsert"):
            async with self._session_factory() as session:
                insert = dialect_insert(session)
                stmt = insert(Subscription).values(
                    id=record.id,
                    tenant_id=record.tenant_id,
                    endpoint=record.endpoint,
                    public_key=record.public_key,
                    auth_secret=record.auth_secret,
                    user_id=record.user_id,
                    channel_id=record.channel_id,
                    metadata_json=dict(record.metadata),
                    created_at=record.created_at,
                    expires_at=record.expires_at,
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=["tenant_id", "endpoint"],
                    set_={name: stmt.excluded[name] for name in _REPLACED_FIELDS},
                ).returning(*Subscription.__table__.c)
                row = (await session.execute(stmt)).one()
                await session.commit()
                return _to_record(row)

    async def get(self, subscription_id: str) -> SubscriptionRecord | None:
        with store_errors("subscription get"):
            async with self._session_factory() as session:
                row = await session.get(Subscription, subscription_id)
                return _to_record(row) if row is not None else None

    async def list_by_tenant(
        self,
        tenant_id: str,
        *,
        user_id: str | None,
        channel_id: str | None,
        active_at: datetime,
        limit: int,
        offset: int,
    ) -> list[SubscriptionRecord]:
        stmt = select(Subscription).where(
            tenant_predicate(Subscription, tenant_id),
            or_(Subscription.expires_at.is_(None), Subscription.expires_at > active_at),
        )
        if user_id is not None:
            stmt = stmt.where(Subscription.user_id == user_id)
        if channel_id is not None:
            stmt = stmt.where(Subscription.channel_id == channel_id)
        stmt = (
            stmt.order_by(Subscription.created_at.desc(), Subscription.id.desc())
            .limit(limit)
            .offset(offset)
        )
        with store_errors("subscription list"):
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).scalars().all()
                return [_to_record(row) for row in rows]

    async def list_by_ids(self, subscription_ids: Sequence[str]) -> list[SubscriptionRecord]:
        if not subscription_ids:
            return []
        unique_ids = list(dict.fromkeys(subscription_ids))
        with store_errors("subscription list by ids"):
            async with self._session_factory() as session:
                rows = (
                    await session.execute(select(Subscription).where(Subscription.id.in_(unique_ids)))
                ).scalars().all()
        # Preserve caller order so explicit targets are delivered in request order.
        by_id = {row.id: _to_record(row) for row in rows}
        return [by_id[subscription_id] for subscription_id in unique_ids if subscription_id in by_id]

    async def delete(self, subscription_id: str) -> bool:
        with store_errors("subscription delete"):
            async with self._session_factory() as session:
                result = await session.execute(delete(Subscription).where(Subscription.id == subscription_id))
                await session.commit()
                return (result.rowcount or 0) > 0

    async def delete_by_endpoint(self, tenant_id: str, endpoint: str) -> bool:
        stmt = delete(Subscription).where(
            tenant_predicate(Subscription, tenant_id),
            Subscription.endpoint == endpoint,
        )
        with store_errors("subscription delete by endpoint"):
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                await session.commit()
                return (result.rowcount or 0) > 0

    async def count(self, tenant_id: str) -> int:
        stmt = select(func.count()).select_from(Subscription).where(tenant_predicate(Subscription, tenant_id))
        with store_errors("subscription count"):
            async with self._session_factory() as session:
                return int((await session.execute(stmt)).scalar() or 0)
