from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Callable, Protocol

from redis.asyncio import Redis
from redis.exceptions import RedisError

from pushrelay.core.config import get_settings
from pushrelay.core.errors import InternalError, ValidationError
from pushrelay.persistence.db import get_session_factory
from pushrelay.persistence.repos.rate_limits import InMemoryRateLimitStore, SqlRateLimitStore


logger = logging.getLogger(__name__)

ACTION_SINGLE_SEND = "single-send"
ACTION_BROADCAST_SEND = "broadcast-send"
ACTION_SUBSCRIBE = "subscribe"

RATE_LIMIT_ACTIONS = frozenset({ACTION_SINGLE_SEND, ACTION_BROADCAST_SEND, ACTION_SUBSCRIBE})


class RateLimitStore(Protocol):
    # Must atomically insert-or-increment and return the post-increment count.
    async def increment(self, tenant_id: str, action: str, window_start_ms: int, window_ms: int) -> int: ...


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    current: int
    limit: int
    window_start_ms: int


# KEYS[1] = window counter key, ARGV[1] = ttl in ms.
# Expiry is set only on the first hit so the window never slides.
_FIXED_WINDOW_LUA = r"""
local current = redis.call("INCR", KEYS[1])
if current == 1 then
  redis.call("PEXPIRE", KEYS[1], ARGV[1])
end
return current
"""


_redis_pool: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None
_redis_lock = asyncio.Lock()


async def _get_redis() -> Redis:
    # Cache Redis connections to avoid reconnecting per request.
    global _redis_pool, _redis_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_loop != current_loop:
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = Redis.from_url(
                settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            _redis_loop = current_loop
    return _redis_pool


def window_start_for(now_ms: int, window_ms: int) -> int:
    return (now_ms // window_ms) * window_ms


def _window_key(prefix: str, tenant_id: str, action: str, window_start_ms: int) -> str:
    return f"{prefix}:{tenant_id}:{action}:{window_start_ms}"


class RedisRateLimitStore:
    def __init__(self, *, redis: Redis | None = None, prefix: str | None = None) -> None:
        self._redis = redis
        self._prefix = prefix or get_settings().rl_redis_prefix

    async def increment(self, tenant_id: str, action: str, window_start_ms: int, window_ms: int) -> int:
        redis = self._redis or await _get_redis()
        key = _window_key(self._prefix, tenant_id, action, window_start_ms)
        # Keep one extra window so late readers still see the closing count.
        ttl_ms = window_ms * 2
        try:
            result = await redis.eval(_FIXED_WINDOW_LUA, 1, key, ttl_ms)
        except (RedisError, OSError) as exc:
            logger.error("rate_limit_store_unavailable backend=redis", exc_info=exc)
            raise InternalError("rate limit store unavailable") from exc
        return int(result)


def build_rate_limit_store() -> RateLimitStore:
    settings = get_settings()
    backend = settings.rate_limit_backend.lower()
    if backend == "redis":
        return RedisRateLimitStore()
    if backend == "memory":
        return InMemoryRateLimitStore()
    if backend == "database":
        return SqlRateLimitStore(get_session_factory())
    raise ValueError(f"Unsupported rate_limit_backend: {settings.rate_limit_backend}")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RateLimiter:
    def __init__(
        self,
        store: RateLimitStore,
        *,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        # Allow injecting time for deterministic window tests.
        self._store = store
        self._time_provider = time_provider or _utc_now

    async def check_and_increment(
        self,
        tenant_id: str,
        action: str,
        limit: int,
        window_ms: int | None = None,
    ) -> RateLimitDecision:
        """Count one attempt in the current fixed window and report whether it fits.

        The attempt is counted even when it is rejected, so hammering a full
        window never resets or bypasses it.
        """
        if action not in RATE_LIMIT_ACTIONS:
            raise ValidationError(f"Unsupported rate limit action: {action}")
        resolved_window_ms = window_ms or get_settings().rl_window_ms
        if resolved_window_ms <= 0:
            raise ValidationError("window_ms must be positive")
        now_ms = int(self._time_provider().timestamp() * 1000)
        window_start_ms = window_start_for(now_ms, resolved_window_ms)

        current = await self._store.increment(tenant_id, action, window_start_ms, resolved_window_ms)
        allowed = current <= limit
        if not allowed:
            logger.warning(
                "rate_limit_exceeded tenant_id=%s action=%s current=%s limit=%s",
                tenant_id,
                action,
                current,
                limit,
            )
        return RateLimitDecision(
            allowed=allowed,
            current=current,
            limit=limit,
            window_start_ms=window_start_ms,
        )


def reset_rate_limiter_state() -> None:
    # Reset cached Redis connections for deterministic test setup.
    global _redis_pool, _redis_loop
    _redis_pool = None
    _redis_loop = None
