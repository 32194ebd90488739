from __future__ import annotations

from datetime import datetime
import logging
from typing import Any

from sqlalchemy import delete, event
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession
from sqlalchemy.pool import StaticPool

from indiestore.core.config import Settings
from indiestore.domain.models import DATA_TABLES, Base
from indiestore.persistence.engines.base import Database, connection_string_filename


logger = logging.getLogger(__name__)

MEMORY_FILENAME = ":memory:"
# Every optimization the pragma knows about, not only the default set.
OPTIMIZE_MASK = 0xFFFF


class SQLiteDatabase(Database):
    """Single-file (or in-memory) backend over aiosqlite.

    Timestamps are stored as integer epoch seconds. Connections run with
    foreign keys enforced and WAL journaling. Transactions open with BEGIN
    IMMEDIATE so schema changes roll back like any other write and concurrent
    writers wait on the database lock instead of failing on upgrade.
    """

    engine_name = "sqlite"

    def __init__(self, settings: Settings | None = None) -> None:
        super().__init__(settings)
        self.filename = connection_string_filename(self.connection_string) or MEMORY_FILENAME
        self.optimize_after_changes = max(0, self.settings.db_sqlite_optimize_after_changes)
        self.changes_since_last_optimize = 0

    @property
    def is_memory(self) -> bool:
        return self.filename == MEMORY_FILENAME

    def sqlalchemy_url(self) -> str:
        return f"sqlite+aiosqlite:///{self.filename}"

    def engine_options(self) -> dict[str, Any]:
        if self.is_memory:
            # One shared connection, otherwise every checkout sees an empty database.
            return {"poolclass": StaticPool}
        return {}

    def stored_instant(self, value: datetime) -> datetime:
        return value.replace(microsecond=0)

    def insert(self, model: Any) -> Any:
        return sqlite_insert(getattr(model, "__table__", model))

    def _configure_engine(self, engine: AsyncEngine) -> None:
        super()._configure_engine(engine)
        sync_engine = engine.sync_engine

        @event.listens_for(sync_engine, "connect")
        def _on_connect(dbapi_connection, connection_record):  # noqa: ANN001
            # Driver-level autocommit; transaction boundaries come from the begin hook.
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys = ON")
            cursor.execute("PRAGMA journal_mode = WAL")
            cursor.close()

        @event.listens_for(sync_engine, "begin")
        def _on_begin(conn):  # noqa: ANN001
            # Take the write lock up front; a deferred read lock cannot be upgraded under contention.
            conn.exec_driver_sql("BEGIN IMMEDIATE")

        @event.listens_for(sync_engine, "after_cursor_execute")
        def _count_changes(conn, cursor, statement, parameters, context, executemany):  # noqa: ANN001
            if cursor.rowcount and cursor.rowcount > 0 and not statement.lstrip().upper().startswith("SELECT"):
                self.changes_since_last_optimize += cursor.rowcount

    async def _after_commit(self) -> None:
        if self.optimize_after_changes and self.changes_since_last_optimize >= self.optimize_after_changes:
            await self.optimize()

    async def optimize(self) -> None:
        # Refresh planner statistics; resets the change counter.
        async with self.engine.connect() as conn:
            await conn.exec_driver_sql(f"PRAGMA optimize({OPTIMIZE_MASK})")
            await conn.commit()
        logger.debug("sqlite_optimized changes=%s", self.changes_since_last_optimize)
        self.changes_since_last_optimize = 0

    async def _purge(self, session: AsyncSession) -> None:
        for name in DATA_TABLES:
            await session.execute(delete(Base.metadata.tables[name]))
