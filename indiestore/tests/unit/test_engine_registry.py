from __future__ import annotations

import pytest

from indiestore.core.config import Settings
from indiestore.core.errors import UnexpectedResultError, UnsupportedEngineError
from indiestore.persistence.db import ENGINES, DBContext, connection_protocol, create_database
from indiestore.persistence.engines.base import connection_string_filename
from indiestore.persistence.engines.postgres import PostgresDatabase
from indiestore.persistence.engines.sqlite import SQLiteDatabase


def test_connection_protocol() -> None:
    assert connection_protocol("postgresql://u:p@db/indie") == "postgresql"
    assert connection_protocol("SQLite://:memory:") == "sqlite"
    assert connection_protocol("no-delimiter") == ""
    assert set(ENGINES) == {"postgresql", "sqlite"}


def test_create_database_picks_backend() -> None:
    assert isinstance(create_database(Settings(db_connection_string="sqlite://:memory:")), SQLiteDatabase)
    assert isinstance(
        create_database(Settings(db_connection_string="postgresql://u:p@db/indie")),
        PostgresDatabase,
    )


def test_create_database_rejects_unknown_protocol() -> None:
    with pytest.raises(UnsupportedEngineError):
        create_database(Settings(db_connection_string="mysql://u:p@db/indie"))


def test_sqlite_filename_and_url() -> None:
    memory = SQLiteDatabase(Settings(db_connection_string="sqlite://"))
    assert memory.is_memory
    assert memory.sqlalchemy_url() == "sqlite+aiosqlite:///:memory:"
    assert "poolclass" in memory.engine_options()

    on_disk = SQLiteDatabase(Settings(db_connection_string="sqlite://var/indie.sqlite"))
    assert on_disk.filename == "var/indie.sqlite"
    assert on_disk.sqlalchemy_url() == "sqlite+aiosqlite:///var/indie.sqlite"
    assert on_disk.engine_options() == {}
    assert connection_string_filename("plain/path.sqlite") == "plain/path.sqlite"


def test_postgres_url_and_pool_options() -> None:
    database = PostgresDatabase(
        Settings(
            db_connection_string="postgresql://u:p@db:5432/indie",
            db_pool_size=3,
            db_max_overflow=1,
            db_statement_timeout_ms=5000,
        )
    )
    assert database.sqlalchemy_url() == "postgresql+asyncpg://u:p@db:5432/indie"
    options = database.engine_options()
    assert options["pool_size"] == 3
    assert options["max_overflow"] == 1
    assert options["pool_pre_ping"] is True
    assert options["connect_args"] == {"server_settings": {"statement_timeout": "5000"}}

    default = PostgresDatabase(Settings(db_connection_string="postgresql://u:p@db/indie"))
    assert "connect_args" not in default.engine_options()


def test_uninitialized_database_has_no_engine() -> None:
    database = SQLiteDatabase(Settings(db_connection_string="sqlite://:memory:"))
    with pytest.raises(UnexpectedResultError):
        _ = database.engine


def test_context_handles_are_not_constructible_directly() -> None:
    with pytest.raises(TypeError):
        DBContext(None, None)
