"""Tests for structured logging helpers."""

from __future__ import annotations

import json
import logging
import sys

from croutons.core.logging import (
    ColoredConsoleFormatter,
    LogContext,
    StructuredJsonFormatter,
    Timer,
    get_current_context,
    redact_sensitive,
)


def _record(msg: str = "hello", level: int = logging.INFO, **extra) -> logging.LogRecord:
    record = logging.LogRecord("croutons.test", level, __file__, 1, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestRedaction:
    def test_redacts_secret_keys(self) -> None:
        data = {"PUBLISH_HMAC_KEY": "k", "x_signature": "sha256=..", "nested": {"api_key": "a"}, "count": 3}
        assert redact_sensitive(data) == {
            "PUBLISH_HMAC_KEY": "[REDACTED]",
            "x_signature": "[REDACTED]",
            "nested": {"api_key": "[REDACTED]"},
            "count": 3,
        }

    def test_depth_limit(self) -> None:
        assert redact_sensitive({"a": {"b": 1}}, max_depth=1) == {"a": "[MAX_DEPTH_EXCEEDED]"}


class TestJsonFormatter:
    def test_includes_context_and_extras(self) -> None:
        with LogContext(batch_id="b-1"):
            output = StructuredJsonFormatter().format(_record(accepted=3, line=2))
        data = json.loads(output)
        assert data["message"] == "hello"
        assert data["level"] == "INFO"
        assert data["batch_id"] == "b-1"
        assert data["accepted"] == 3
        assert data["line"] == 2

    def test_exception_block(self) -> None:
        try:
            raise ValueError("bad")
        except ValueError:
            record = _record(level=logging.ERROR)
            record.exc_info = sys.exc_info()
        data = json.loads(StructuredJsonFormatter().format(record))
        assert data["exception"]["type"] == "ValueError"


class TestConsoleFormatter:
    def test_shows_worker_context(self) -> None:
        with LogContext(worker_id="outbox-1"):
            line = ColoredConsoleFormatter().format(_record())
        assert "worker_id=outbox-1" in line
        assert "hello" in line


class TestLogContext:
    def test_restores_previous_context(self) -> None:
        with LogContext(worker_id="w"):
            with LogContext(event_id=1):
                assert get_current_context()["event_id"] == 1
                assert get_current_context()["worker_id"] == "w"
            assert "event_id" not in get_current_context()
        assert "worker_id" not in get_current_context()


class TestTimer:
    def test_elapsed_ms(self) -> None:
        with Timer() as timer:
            pass
        assert timer.elapsed_ms >= 0
