from __future__ import annotations

from pathlib import Path
from typing import AsyncIterator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pushrelay.persistence.db import build_engine, build_session_factory, create_all
from pushrelay.services.rate_limit import reset_rate_limiter_state


@pytest_asyncio.fixture
async def session_factory(tmp_path: Path) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    # File-backed sqlite so every store call can open its own connection.
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'pushrelay.db'}")
    await create_all(engine)
    yield build_session_factory(engine)
    await engine.dispose()


@pytest.fixture(autouse=True)
def reset_rate_limit_cache() -> None:
    # Drop cached Redis clients so no connection leaks across event loops.
    reset_rate_limiter_state()
    yield
    reset_rate_limiter_state()
