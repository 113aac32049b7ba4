"""Pytest configuration and shared fixtures.

Each test gets its own SQLite database file so merge cycles never leak
between tests.
"""

import os
from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

# Set testing mode BEFORE importing settings
os.environ["TESTING"] = "true"

from pump_history.config import settings

settings.testing = True

from pump_history.database import init_database
from pump_history.services.broadcaster import Broadcaster
from pump_history.services.file_storage import FileStorage
from pump_history.services.pump_history import PumpHistoryStorage


@pytest_asyncio.fixture
async def session_maker(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Session maker bound to a fresh SQLite database."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'pump_history.db'}",
        poolclass=NullPool,
    )
    await init_database(engine)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def file_storage(session_maker) -> FileStorage:
    return FileStorage(session_maker)


@pytest.fixture
def broadcaster() -> Broadcaster:
    return Broadcaster()


@pytest.fixture
def history_storage(file_storage, broadcaster) -> PumpHistoryStorage:
    return PumpHistoryStorage(file_storage, broadcaster)
