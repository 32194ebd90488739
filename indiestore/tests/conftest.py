from __future__ import annotations

from pathlib import Path

import pytest
from sqlalchemy import delete

from indiestore.core.config import get_settings
from indiestore.domain.models import Scope
from indiestore.persistence.db import Database, create_database
from indiestore.tests.utils.fixtures import POSTGRES_TEST_URL, postgres_settings, sqlite_settings


async def reset_database(database: Database) -> None:
    # Data tables are purged; only seeded scopes survive between tests.
    await database._purge_tables(really=True)
    async with database.context() as ctx:
        await ctx.session.execute(delete(Scope.__table__).where(Scope.is_permanent.is_(False)))


@pytest.fixture(autouse=True)
def clear_settings_cache() -> None:
    # Settings are cached process-wide; tests build their own.
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture(params=["sqlite", "postgresql"])
async def db(request, tmp_path: Path) -> Database:
    # Every repository test runs on SQLite, and on PostgreSQL when one is configured.
    if request.param == "postgresql":
        if not POSTGRES_TEST_URL:
            pytest.skip("POSTGRES_TEST_URL not set")
        settings = postgres_settings()
    else:
        settings = sqlite_settings(tmp_path)
    database = create_database(settings)
    await database.initialize()
    await reset_database(database)
    yield database
    if database.engine_name == "postgresql":
        await reset_database(database)
    await database._close_connection()


@pytest.fixture
async def sqlite_db(tmp_path: Path) -> Database:
    database = create_database(sqlite_settings(tmp_path))
    await database.initialize()
    yield database
    await database._close_connection()
