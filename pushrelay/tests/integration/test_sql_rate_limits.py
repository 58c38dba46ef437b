from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from pushrelay.persistence.repos.rate_limits import InMemoryRateLimitStore, SqlRateLimitStore
from pushrelay.services.maintenance import prune_rate_limit_windows, rate_limit_cutoff_ms
from pushrelay.services.rate_limit import ACTION_BROADCAST_SEND, ACTION_SINGLE_SEND, RateLimiter
from pushrelay.tests.utils.push import FixedClock


@pytest.mark.asyncio
async def test_sql_increment_is_insert_or_increment(session_factory) -> None:
    store = SqlRateLimitStore(session_factory)
    assert await store.increment("app-1", ACTION_SINGLE_SEND, 60_000, 60_000) == 1
    assert await store.increment("app-1", ACTION_SINGLE_SEND, 60_000, 60_000) == 2
    assert await store.increment("app-1", ACTION_SINGLE_SEND, 120_000, 60_000) == 1
    assert await store.increment("app-1", ACTION_BROADCAST_SEND, 60_000, 60_000) == 1
    assert await store.increment("app-2", ACTION_SINGLE_SEND, 60_000, 60_000) == 1


@pytest.mark.asyncio
async def test_sql_concurrent_checks_never_share_a_count(session_factory) -> None:
    limiter = RateLimiter(SqlRateLimitStore(session_factory), time_provider=FixedClock())
    decisions = await asyncio.gather(
        *(limiter.check_and_increment("app-1", ACTION_BROADCAST_SEND, 5) for _ in range(8))
    )
    assert sorted(decision.current for decision in decisions) == list(range(1, 9))
    assert sum(1 for decision in decisions if not decision.allowed) == 3


def test_cutoff_uses_retention_hours() -> None:
    now = datetime(2026, 3, 2, 0, 0, tzinfo=timezone.utc)
    expected = int((now - timedelta(hours=24)).timestamp() * 1000)
    assert rate_limit_cutoff_ms(now) == expected
    assert rate_limit_cutoff_ms(now, retention_hours=1) == int((now - timedelta(hours=1)).timestamp() * 1000)


@pytest.mark.asyncio
async def test_prune_removes_only_stale_windows(session_factory) -> None:
    now = datetime(2026, 3, 2, 0, 0, tzinfo=timezone.utc)
    stale_start = int((now - timedelta(hours=30)).timestamp() * 1000)
    fresh_start = int((now - timedelta(minutes=5)).timestamp() * 1000)
    store = SqlRateLimitStore(session_factory)
    await store.increment("app-1", ACTION_SINGLE_SEND, stale_start, 60_000)
    await store.increment("app-2", ACTION_SINGLE_SEND, stale_start, 60_000)
    await store.increment("app-1", ACTION_SINGLE_SEND, fresh_start, 60_000)

    assert await prune_rate_limit_windows(store, now=now) == 2
    assert await prune_rate_limit_windows(store, now=now) == 0
    # The surviving window keeps counting from where it was.
    assert await store.increment("app-1", ACTION_SINGLE_SEND, fresh_start, 60_000) == 2


@pytest.mark.asyncio
async def test_prune_in_memory_store() -> None:
    now = datetime(2026, 3, 2, 0, 0, tzinfo=timezone.utc)
    store = InMemoryRateLimitStore()
    await store.increment("app-1", ACTION_SINGLE_SEND, 0, 60_000)
    kept_start = int(now.timestamp() * 1000)
    await store.increment("app-1", ACTION_SINGLE_SEND, kept_start, 60_000)
    assert await prune_rate_limit_windows(store, now=now) == 1
    assert store.peek("app-1", ACTION_SINGLE_SEND, 0) is None
    assert store.peek("app-1", ACTION_SINGLE_SEND, kept_start) == 1
