from __future__ import annotations

import logging

from indiestore.core.logging import (
    RedactingFilter,
    configure_logging,
    redact_message,
    sanitize_metadata,
)


def test_redact_message_scrubs_credential_pairs() -> None:
    message = "login identifier=alice credential=$scrypt$abc otp_key=JBSWY3DP refresh_token=xyz tokens_removed=3"
    assert redact_message(message) == (
        "login identifier=alice credential=[REDACTED] otp_key=[REDACTED] "
        "refresh_token=[REDACTED] tokens_removed=3"
    )


def test_redacting_filter_rewrites_rendered_record() -> None:
    record = logging.LogRecord(
        name="indiestore.test",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg="resource_upsert resource_id=%s secret=%s",
        args=("r-1", "hunter2"),
        exc_info=None,
    )
    assert RedactingFilter().filter(record) is True
    assert record.getMessage() == "resource_upsert resource_id=r-1 secret=[REDACTED]"


def test_sanitize_metadata_is_recursive() -> None:
    payload = {
        "client_secret": "abc",
        "nested": {"ticket": "t-1", "subject": "https://alice.example/"},
        "items": [{"access_token": "tok"}],
    }
    assert sanitize_metadata(payload) == {
        "client_secret": "[REDACTED]",
        "nested": {"ticket": "[REDACTED]", "subject": "https://alice.example/"},
        "items": [{"access_token": "[REDACTED]"}],
    }


def test_configure_logging_installs_one_handler() -> None:
    root = logging.getLogger()
    previous_level = root.level
    before = list(root.handlers)
    try:
        configure_logging("debug")
        configure_logging("warning")
        added = [handler for handler in root.handlers if handler not in before]
        assert len(added) == 1
        assert any(isinstance(item, RedactingFilter) for item in added[0].filters)
        assert root.level == logging.WARNING
    finally:
        for handler in root.handlers[:]:
            if handler not in before:
                root.removeHandler(handler)
        root.setLevel(previous_level)
