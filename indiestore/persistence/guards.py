from __future__ import annotations

from datetime import datetime, timezone

from indiestore.core.errors import DataValidationError


def require_text(value: str | None, field: str) -> str:
    # Reject missing or blank identifiers before they reach a statement.
    if not isinstance(value, str) or not value.strip():
        raise DataValidationError(f"{field} is required")
    return value


def as_utc(value: datetime, field: str = "timestamp") -> datetime:
    # Naive datetimes are taken as UTC; every stored instant is timezone-aware.
    if not isinstance(value, datetime):
        raise DataValidationError(f"{field} must be a datetime")
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def scrub(secret: str | None) -> str:
    # Same length, no content; for debug logging of credential material.
    return "*" * len(secret or "")
