from __future__ import annotations

from pathlib import Path

import pytest

from indiestore.persistence.engines.base import SQL_ROOT
from indiestore.persistence.migrations import (
    is_migration_directory,
    list_directory_versions,
    read_migration_statements,
    split_sql_statements,
    unapplied_versions,
)
from indiestore.persistence.schema_version import SchemaVersion, SupportedVersions


def _make_version(root: Path, name: str, sql: str = "SELECT 1;\n") -> Path:
    directory = root / name
    directory.mkdir()
    (directory / "apply.sql").write_text(sql, encoding="utf-8")
    return directory


def test_list_directory_versions_skips_non_migrations(tmp_path: Path) -> None:
    for name in ("1.0.0", "1.10.0", "1.2.0", "0.9.0"):
        _make_version(tmp_path, name)
    (tmp_path / "1.3.0").mkdir()
    (tmp_path / "notes").mkdir()
    (tmp_path / "1.4.0").write_text("not a directory", encoding="utf-8")
    _make_version(tmp_path, "draft")

    assert list_directory_versions(tmp_path) == ["0.9.0", "1.0.0", "1.2.0", "1.10.0"]
    assert is_migration_directory(tmp_path / "1.3.0") is False
    assert is_migration_directory(tmp_path / "missing") is False


def test_unreadable_version_directory_is_skipped(tmp_path: Path, monkeypatch) -> None:
    for name in ("1.0.0", "1.1.0"):
        _make_version(tmp_path, name)
    unreadable = tmp_path / "1.1.0"
    original_iterdir = Path.iterdir

    def iterdir(self: Path):
        if self == unreadable:
            raise PermissionError(13, "Permission denied", str(self))
        return original_iterdir(self)

    monkeypatch.setattr(Path, "iterdir", iterdir)
    assert is_migration_directory(unreadable) is False
    assert list_directory_versions(tmp_path) == ["1.0.0"]


def test_unapplied_versions_stay_within_supported_range(tmp_path: Path) -> None:
    for name in ("0.9.0", "1.0.0", "1.1.0", "1.2.0", "1.3.0"):
        _make_version(tmp_path, name)
    supported = SupportedVersions(min=SchemaVersion(1, 0, 0), max=SchemaVersion(1, 2, 0))

    assert unapplied_versions(tmp_path, "0.0.0", supported) == ["1.0.0", "1.1.0", "1.2.0"]
    assert unapplied_versions(tmp_path, SchemaVersion(1, 1, 0), supported) == ["1.2.0"]
    assert unapplied_versions(tmp_path, "1.2.0", supported) == []


def test_split_sql_statements() -> None:
    sql = """
-- leading comment
CREATE TABLE a (
	id INTEGER
);

INSERT INTO a (id) VALUES (1);
COMMENT ON TABLE a IS 'semi; colons inside';
SELECT 2
"""
    assert split_sql_statements(sql) == [
        "CREATE TABLE a (\n\tid INTEGER\n)",
        "INSERT INTO a (id) VALUES (1)",
        "COMMENT ON TABLE a IS 'semi; colons inside'",
        "SELECT 2",
    ]


def test_read_migration_statements_in_file_order(tmp_path: Path) -> None:
    directory = _make_version(tmp_path, "1.0.0", "SELECT 1;\n")
    (directory / "0-first.sql").write_text("SELECT 0;\n", encoding="utf-8")
    (directory / "README").write_text("ignored", encoding="utf-8")
    assert read_migration_statements(directory) == ["SELECT 0", "SELECT 1"]


@pytest.mark.parametrize("engine_name", ["postgresql", "sqlite"])
def test_shipped_migrations_cover_supported_versions(engine_name: str) -> None:
    schema_dir = SQL_ROOT / engine_name / "schema"
    assert (schema_dir / "init.sql").is_file()
    assert list_directory_versions(schema_dir) == ["1.0.0", "1.1.0", "1.2.0"]
    for version in ("1.0.0", "1.1.0", "1.2.0"):
        statements = read_migration_statements(schema_dir / version)
        major, minor, patch = version.split(".")
        # Each unit records its own version.
        assert f"VALUES ({major}, {minor}, {patch})" in statements[-1]
        assert not any(statement.upper() in ("BEGIN", "COMMIT") for statement in statements)
