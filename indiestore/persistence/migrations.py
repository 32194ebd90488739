from __future__ import annotations

import logging
from pathlib import Path

from indiestore.persistence.schema_version import (
    SchemaVersion,
    SupportedVersions,
    is_version_string,
    sort_versions,
)


logger = logging.getLogger(__name__)

MIGRATION_SUFFIX = ".sql"


def is_migration_directory(path: Path) -> bool:
    # A migration unit is a directory holding at least one regular file; unreadable paths are not migrations.
    try:
        if not path.is_dir():
            return False
        return any(child.is_file() for child in path.iterdir())
    except OSError as exc:
        logger.debug("migration_dir_unreadable path=%s", path, exc_info=exc)
        return False


def list_directory_versions(path: str | Path) -> list[str]:
    # Version-named migration directories under path, ascending.
    root = Path(path)
    versions = [
        entry.name
        for entry in root.iterdir()
        if is_version_string(entry.name) and is_migration_directory(entry)
    ]
    return sort_versions(versions)


def unapplied_versions(
    path: str | Path,
    current: SchemaVersion | str,
    supported: SupportedVersions,
) -> list[str]:
    # Exactly the versions a runner must apply, in order, to move current up to supported.max.
    if isinstance(current, str):
        current = SchemaVersion.parse(current)
    current_number = current.to_number()
    wanted = []
    for version in list_directory_versions(path):
        parsed = SchemaVersion.parse(version)
        if supported.contains(parsed) and parsed.to_number() > current_number:
            wanted.append(version)
    return wanted


def split_sql_statements(sql: str) -> list[str]:
    # Statements end with ';' at end of line; full-line '--' comments are dropped.
    statements: list[str] = []
    buffer: list[str] = []
    for line in sql.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("--"):
            continue
        buffer.append(line)
        if stripped.endswith(";"):
            statement = "\n".join(buffer).strip().rstrip(";").strip()
            if statement:
                statements.append(statement)
            buffer = []
    trailing = "\n".join(buffer).strip()
    if trailing:
        statements.append(trailing)
    return statements


def read_migration_statements(directory: str | Path) -> list[str]:
    # All statements from the *.sql files of one migration unit, in file-name order.
    statements: list[str] = []
    for sql_file in sorted(Path(directory).iterdir()):
        if sql_file.is_file() and sql_file.suffix.lower() == MIGRATION_SUFFIX:
            statements.extend(split_sql_statements(sql_file.read_text(encoding="utf-8")))
    return statements
