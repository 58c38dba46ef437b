from __future__ import annotations

import asyncio

from pushrelay.core.logging import configure_logging
from pushrelay.persistence.db import dispose_engine, get_session_factory
from pushrelay.persistence.repos.rate_limits import SqlRateLimitStore
from pushrelay.services.maintenance import prune_rate_limit_windows


async def prune() -> None:
    try:
        deleted = await prune_rate_limit_windows(SqlRateLimitStore(get_session_factory()))
    finally:
        await dispose_engine()
    print(f"pruned_rate_limit_windows={deleted}")


if __name__ == "__main__":
    configure_logging()
    asyncio.run(prune())
