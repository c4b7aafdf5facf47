"""Shared test fixtures and configuration for pytest."""

from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession

from synapse.config import Settings
from synapse.db import Database
from synapse.suggestions import SuggestionApplicationService
from synapse.versions import VersionStore


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    """File-backed SQLite so concurrent sessions see each other's commits."""
    return f"sqlite+aiosqlite:///{tmp_path / 'synapse.db'}"


@pytest.fixture
def settings(database_url: str) -> Settings:
    return Settings(database_url_override=database_url, redis_locks_enabled=False)


@pytest_asyncio.fixture
async def database(settings: Settings) -> AsyncGenerator[Database, None]:
    database = Database.from_settings(settings)
    await database.init_db()
    yield database
    await database.dispose()


@pytest_asyncio.fixture
async def session(database: Database) -> AsyncGenerator[AsyncSession, None]:
    async with database.get_session() as session:
        yield session


@pytest.fixture
def store() -> VersionStore:
    return VersionStore(compression_threshold=100, retention_days=90)


@pytest_asyncio.fixture
async def service(
    database: Database, settings: Settings
) -> AsyncGenerator[SuggestionApplicationService, None]:
    service = SuggestionApplicationService(database, settings=settings)
    yield service
    await service.drain()
