from __future__ import annotations


class IndieStoreError(Exception):
    """Base error for indiestore."""


class DatabaseError(IndieStoreError):
    """Database layer failure."""


class DataValidationError(DatabaseError):
    """Malformed input to a data operation."""


class UnexpectedResultError(DatabaseError):
    """A statement affected or returned an unexpected number of rows."""


class UnsupportedEngineError(DatabaseError):
    """Connection string names an engine with no registered backend."""


class MigrationNeededError(DatabaseError):
    """Installed schema version is outside the supported range."""
