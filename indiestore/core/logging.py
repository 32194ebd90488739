from __future__ import annotations

import logging
import re
import sys
from typing import Any

from indiestore.core.config import get_settings


_SENSITIVE_KEY_PATTERNS = ["credential", "otp_key", "secret", "password", "token", "ticket"]
_REDACTED_VALUE = "[REDACTED]"
# Matches key=value pairs in "event key=value" style log lines.
_KEY_VALUE_RE = re.compile(r"(?P<key>[A-Za-z_][A-Za-z0-9_]*)=(?P<value>\S+)")
_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, (list, tuple)):
        return [sanitize_metadata(item) for item in value]
    return value


def _is_sensitive_name(key: str) -> bool:
    # Only whole or suffixed names count, so counters like tokens_removed stay readable.
    lowered = key.lower()
    return any(lowered == pattern or lowered.endswith(f"_{pattern}") for pattern in _SENSITIVE_KEY_PATTERNS)


def redact_message(message: str) -> str:
    def _replace(match: re.Match[str]) -> str:
        key = match.group("key")
        if _is_sensitive_name(key):
            return f"{key}={_REDACTED_VALUE}"
        return match.group(0)

    return _KEY_VALUE_RE.sub(_replace, message)


class RedactingFilter(logging.Filter):
    """Scrub credential-like key=value pairs from rendered log messages."""

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            rendered = record.getMessage()
        except (TypeError, ValueError):
            return True
        redacted = redact_message(rendered)
        if redacted != rendered:
            record.msg = redacted
            record.args = None
        return True


def configure_logging(level: str | None = None) -> None:
    # Install one stdout handler on the root logger; repeated calls only adjust the level.
    settings = get_settings()
    resolved = (level or settings.log_level or "INFO").upper()
    root = logging.getLogger()
    root.setLevel(resolved)
    for handler in root.handlers:
        if getattr(handler, "_indiestore", False):
            return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    handler.addFilter(RedactingFilter())
    handler._indiestore = True  # type: ignore[attr-defined]
    root.addHandler(handler)
