from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
import logging
from pathlib import Path
import time
from typing import Any, AsyncIterator, ClassVar

from sqlalchemy import event, inspect, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from indiestore.core.config import Settings, get_settings
from indiestore.core.errors import (
    DataValidationError,
    MigrationNeededError,
    UnexpectedResultError,
)
from indiestore.domain.models import MetaSchemaVersion
from indiestore.persistence.migrations import (
    read_migration_statements,
    split_sql_statements,
    unapplied_versions,
)
from indiestore.persistence.schema_version import SchemaVersion, SupportedVersions


logger = logging.getLogger(__name__)
query_logger = logging.getLogger("indiestore.persistence.query")

SQL_ROOT = Path(__file__).resolve().parent.parent / "sql"
META_VERSION_TABLE = MetaSchemaVersion.__tablename__

_CONTEXT_KEY = object()


class DBContext:
    """Handle on one open transaction; only Database.context() creates these."""

    __slots__ = ("_session", "_database")

    def __init__(self, session: AsyncSession, database: Database, *, _key: object = None) -> None:
        if _key is not _CONTEXT_KEY:
            raise TypeError("DBContext is only created by Database.context()")
        self._session = session
        self._database = database

    @property
    def session(self) -> AsyncSession:
        return self._session

    @property
    def engine_name(self) -> str:
        return self._database.engine_name

    def stored_instant(self, value: datetime) -> datetime:
        return self._database.stored_instant(value)

    def insert(self, model: Any) -> Any:
        # Dialect INSERT construct, for on_conflict_do_nothing/on_conflict_do_update.
        return self._database.insert(model)


def connection_string_filename(connection_string: str) -> str:
    # Everything after the protocol delimiter, e.g. sqlite://path/to/db -> path/to/db.
    delimiter = "://"
    if delimiter not in connection_string:
        return connection_string
    return connection_string[connection_string.index(delimiter) + len(delimiter):]


class Database(ABC):
    """Backend contract shared by every engine.

    Subclasses provide the SQLAlchemy URL, engine options, the dialect INSERT
    construct and table purging; schema migration, transaction scoping and
    health checks live here so every backend behaves the same way.
    """

    engine_name: ClassVar[str]
    schema_versions_supported: ClassVar[SupportedVersions] = SupportedVersions(
        min=SchemaVersion(1, 0, 0),
        max=SchemaVersion(1, 2, 0),
    )

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()
        self.connection_string = self.settings.db_connection_string
        self._engine: AsyncEngine | None = None
        self._sessionmaker: async_sessionmaker[AsyncSession] | None = None

    @property
    def schema_dir(self) -> Path:
        return SQL_ROOT / self.engine_name / "schema"

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise UnexpectedResultError("database is not initialized")
        return self._engine

    @abstractmethod
    def sqlalchemy_url(self) -> str:
        """Driver-qualified URL for create_async_engine."""

    @abstractmethod
    def engine_options(self) -> dict[str, Any]:
        """Keyword arguments for create_async_engine."""

    @abstractmethod
    def insert(self, model: Any) -> Any:
        """Dialect INSERT construct supporting ON CONFLICT clauses."""

    def stored_instant(self, value: datetime) -> datetime:
        # The instant as it reads back from a timestamp column on this backend.
        return value

    @abstractmethod
    async def _purge(self, session: AsyncSession) -> None:
        """Remove every row from the data tables."""

    def _configure_engine(self, engine: AsyncEngine) -> None:
        # Engine-level hooks; backends extend this with connection setup.
        level_name = self.settings.db_query_log_level
        if not level_name:
            return
        level = logging.getLevelName(level_name.upper())
        if not isinstance(level, int):
            level = logging.DEBUG

        @event.listens_for(engine.sync_engine, "before_cursor_execute")
        def _log_query(conn, cursor, statement, parameters, context, executemany):  # noqa: ANN001
            conn.info.setdefault("query_start_time", []).append(time.perf_counter())
            query_logger.log(level, "query engine=%s statement=%s", self.engine_name, " ".join(statement.split()))

        @event.listens_for(engine.sync_engine, "after_cursor_execute")
        def _log_result(conn, cursor, statement, parameters, context, executemany):  # noqa: ANN001
            started = conn.info["query_start_time"].pop(-1)
            elapsed_ms = (time.perf_counter() - started) * 1000
            query_logger.log(level, "query_result rowcount=%s elapsed_ms=%.3f", cursor.rowcount, elapsed_ms)

    async def initialize(self, apply_migrations: bool = True) -> None:
        # Create the engine, bring the schema up to date, and refuse to run against unsupported versions.
        if self._engine is None:
            self._engine = create_async_engine(self.sqlalchemy_url(), **self.engine_options())
            self._configure_engine(self._engine)
            self._sessionmaker = async_sessionmaker(self._engine, expire_on_commit=False)
        if apply_migrations:
            await self._init_tables()
        current = await self.current_schema()
        supported = self.schema_versions_supported
        if not supported.contains(current):
            logger.error(
                "schema_not_supported engine=%s current=%s min=%s max=%s",
                self.engine_name,
                current,
                supported.min,
                supported.max,
            )
            raise MigrationNeededError(f"schema {current} outside supported {supported.min}..{supported.max}")
        logger.debug("schema_supported engine=%s current=%s", self.engine_name, current)

    async def _meta_table_exists(self) -> bool:
        async with self.engine.connect() as conn:
            return await conn.run_sync(lambda sync_conn: inspect(sync_conn).has_table(META_VERSION_TABLE))

    async def _execute_statements(self, statements: list[str]) -> None:
        # One transaction per migration unit so a failure leaves nothing half-applied.
        async with self.engine.begin() as conn:
            for statement in statements:
                await conn.exec_driver_sql(statement)

    async def _init_tables(self) -> None:
        if not await self._meta_table_exists():
            init_sql = (self.schema_dir / "init.sql").read_text(encoding="utf-8")
            await self._execute_statements(split_sql_statements(init_sql))
            if not await self._meta_table_exists():
                raise UnexpectedResultError(f"did not create {META_VERSION_TABLE} table")
            logger.info("schema_version_table_created engine=%s", self.engine_name)

        current = await self.current_schema()
        wanted = unapplied_versions(self.schema_dir, current, self.schema_versions_supported)
        logger.debug("schema_migrations_wanted engine=%s versions=%s", self.engine_name, wanted)
        for version in wanted:
            statements = read_migration_statements(self.schema_dir / version)
            try:
                await self._execute_statements(statements)
            except SQLAlchemyError:
                logger.exception("schema_migration_failed engine=%s version=%s", self.engine_name, version)
                raise
            logger.info("schema_migration_applied engine=%s version=%s", self.engine_name, version)

    async def current_schema(self) -> SchemaVersion:
        stmt = (
            select(MetaSchemaVersion.major, MetaSchemaVersion.minor, MetaSchemaVersion.patch)
            .order_by(
                MetaSchemaVersion.major.desc(),
                MetaSchemaVersion.minor.desc(),
                MetaSchemaVersion.patch.desc(),
            )
            .limit(1)
        )
        async with self.engine.connect() as conn:
            row = (await conn.execute(stmt)).first()
        if row is None:
            raise UnexpectedResultError(f"{META_VERSION_TABLE} is empty")
        return SchemaVersion.from_row(tuple(row))

    @asynccontextmanager
    async def context(self) -> AsyncIterator[DBContext]:
        # Commit on normal exit, roll back on any exception, always release the session.
        if self._sessionmaker is None:
            raise UnexpectedResultError("database is not initialized")
        async with self._sessionmaker() as session:
            async with session.begin():
                yield DBContext(session, self, _key=_CONTEXT_KEY)
        await self._after_commit()

    async def _after_commit(self) -> None:
        # Hook for backends that do periodic housekeeping after writes land.
        return None

    async def health_check(self) -> bool:
        # Cheap liveness check; any connectivity problem reports unhealthy.
        if self._engine is None:
            logger.warning("health_check_failed engine=%s reason=not_initialized", self.engine_name)
            return False
        try:
            async with self._engine.connect() as conn:
                value = (await conn.execute(text("SELECT 1"))).scalar_one()
        except (SQLAlchemyError, OSError) as exc:
            logger.warning("health_check_failed engine=%s", self.engine_name, exc_info=exc)
            return False
        return value == 1

    async def _purge_tables(self, really: bool = False) -> None:
        # Destructive wipe for test harnesses; needs both the explicit flag and test_mode.
        if not really:
            logger.debug("purge_tables_skipped engine=%s", self.engine_name)
            return
        if not self.settings.test_mode:
            raise DataValidationError("refusing to purge tables outside test_mode")
        async with self.context() as ctx:
            await self._purge(ctx.session)
        logger.debug("purge_tables_done engine=%s", self.engine_name)

    async def _close_connection(self) -> None:
        if self._engine is None:
            return
        engine, self._engine = self._engine, None
        self._sessionmaker = None
        await engine.dispose()
