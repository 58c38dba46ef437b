from __future__ import annotations

import asyncio
from uuid import uuid4

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pushrelay.domain.models import RateLimitWindow
from pushrelay.persistence.db import dialect_insert
from pushrelay.persistence.guards import require_tenant_id, store_errors


class InMemoryRateLimitStore:
    # Process-local counters; only safe when a single process serves all traffic.
    def __init__(self) -> None:
        self._counts: dict[tuple[str, str, int], int] = {}
        self._lock = asyncio.Lock()

    async def increment(self, tenant_id: str, action: str, window_start_ms: int, window_ms: int) -> int:
        require_tenant_id(tenant_id)
        key = (tenant_id, action, window_start_ms)
        async with self._lock:
            current = self._counts.get(key, 0) + 1
            self._counts[key] = current
            return current

    async def prune(self, older_than_ms: int) -> int:
        async with self._lock:
            stale = [key for key in self._counts if key[2] < older_than_ms]
            for key in stale:
                del self._counts[key]
            return len(stale)

    def peek(self, tenant_id: str, action: str, window_start_ms: int) -> int | None:
        return self._counts.get((tenant_id, action, window_start_ms))


class SqlRateLimitStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def increment(self, tenant_id: str, action: str, window_start_ms: int, window_ms: int) -> int:
        require_tenant_id(tenant_id)
        with store_errors("rate limit increment"):
            async with self._session_factory() as session:
                insert = dialect_insert(session)
                stmt = insert(RateLimitWindow).values(
                    id=uuid4().hex,
                    tenant_id=tenant_id,
                    action=action,
                    window_start_ms=window_start_ms,
                    count=1,
                )
                # Insert-or-increment-and-return in one statement; never read-then-write.
                stmt = stmt.on_conflict_do_update(
                    index_elements=["tenant_id", "action", "window_start_ms"],
                    set_={"count": RateLimitWindow.__table__.c["count"] + 1},
                ).returning(RateLimitWindow.__table__.c["count"])
                current = (await session.execute(stmt)).scalar_one()
                await session.commit()
                return int(current)

    async def prune(self, older_than_ms: int) -> int:
        with store_errors("rate limit prune"):
            async with self._session_factory() as session:
                result = await session.execute(
                    delete(RateLimitWindow).where(RateLimitWindow.window_start_ms < older_than_ms)
                )
                await session.commit()
                return int(result.rowcount or 0)
