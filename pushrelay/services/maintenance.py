from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
from typing import Protocol

from pushrelay.core.config import get_settings


logger = logging.getLogger(__name__)


class PrunableRateLimitStore(Protocol):
    async def prune(self, older_than_ms: int) -> int: ...


def rate_limit_cutoff_ms(now: datetime | None = None, *, retention_hours: int | None = None) -> int:
    # Windows that started before this instant no longer affect any decision.
    settings = get_settings()
    hours = settings.rate_limit_retention_hours if retention_hours is None else retention_hours
    reference = now or datetime.now(timezone.utc)
    return int((reference - timedelta(hours=hours)).timestamp() * 1000)


async def prune_rate_limit_windows(
    store: PrunableRateLimitStore,
    *,
    now: datetime | None = None,
    retention_hours: int | None = None,
) -> int:
    # Remove rate limit windows beyond the retention period to keep storage bounded.
    cutoff_ms = rate_limit_cutoff_ms(now, retention_hours=retention_hours)
    deleted = await store.prune(cutoff_ms)
    logger.info("rate_limit_windows_pruned deleted=%s cutoff_ms=%s", deleted, cutoff_ms)
    return deleted
