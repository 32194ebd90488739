from __future__ import annotations

from contextlib import asynccontextmanager
import logging
from typing import AsyncIterator

from indiestore.core.config import Settings, get_settings
from indiestore.core.errors import UnsupportedEngineError
from indiestore.persistence.engines.base import Database, DBContext
from indiestore.persistence.engines.postgres import PostgresDatabase
from indiestore.persistence.engines.sqlite import SQLiteDatabase


logger = logging.getLogger(__name__)

# Connection string protocol -> backend.
ENGINES: dict[str, type[Database]] = {
    PostgresDatabase.engine_name: PostgresDatabase,
    SQLiteDatabase.engine_name: SQLiteDatabase,
}

__all__ = [
    "DBContext",
    "Database",
    "ENGINES",
    "connection_protocol",
    "create_database",
    "open_database",
    "pool_stats",
]


def connection_protocol(connection_string: str) -> str:
    # Lower-cased text before "://"; empty when the delimiter is missing.
    index = connection_string.find("://")
    if index < 0:
        return ""
    return connection_string[:index].lower()


def create_database(settings: Settings | None = None) -> Database:
    # Pick the backend named by db_connection_string; callers still need to await initialize().
    settings = settings or get_settings()
    protocol = connection_protocol(settings.db_connection_string)
    engine_cls = ENGINES.get(protocol)
    if engine_cls is None:
        logger.error("unsupported_engine protocol=%s", protocol or "<none>")
        raise UnsupportedEngineError(protocol)
    return engine_cls(settings)


def pool_stats(database: Database) -> dict[str, int | None]:
    # Expose pool counters for ops visibility without querying database internals.
    pool = database.engine.sync_engine.pool
    checked_out_fn = getattr(pool, "checkedout", None)
    checked_in_fn = getattr(pool, "checkedin", None)
    overflow_fn = getattr(pool, "overflow", None)
    size_fn = getattr(pool, "size", None)
    return {
        "size": int(size_fn()) if callable(size_fn) else None,
        "checked_out": int(checked_out_fn()) if callable(checked_out_fn) else None,
        "checked_in": int(checked_in_fn()) if callable(checked_in_fn) else None,
        "overflow": int(overflow_fn()) if callable(overflow_fn) else None,
    }


@asynccontextmanager
async def open_database(settings: Settings | None = None) -> AsyncIterator[Database]:
    # Initialized database for one-shot callers such as CLI scripts; always closed on exit.
    database = create_database(settings)
    try:
        await database.initialize()
        yield database
    finally:
        await database._close_connection()
