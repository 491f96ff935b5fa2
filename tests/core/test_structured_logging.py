"""Tests for structured (JSON) logging output.

The retry path is only traceable if attempt_id, unit_id and friends
reach the log pipeline as top-level JSON keys, so the format is tested
directly.
"""

from __future__ import annotations

import json
import logging
import sys

from lms_progress.core.logging import _ContainerFormatter, _JsonFormatter


def _record(level: int = logging.INFO, msg: str = "test message", args=()) -> logging.LogRecord:
    return logging.LogRecord(
        name="lms_progress.services.completion_service",
        level=level,
        pathname="completion_service.py",
        lineno=42,
        msg=msg,
        args=args,
        exc_info=None,
    )


def test_json_formatter_produces_valid_json() -> None:
    output = _JsonFormatter().format(_record(msg="Hello %s", args=("world",)))
    parsed = json.loads(output)
    assert parsed["level"] == "INFO"
    assert parsed["logger"] == "lms_progress.services.completion_service"
    assert parsed["message"] == "Hello world"
    assert "timestamp" in parsed


def test_json_formatter_includes_request_fields() -> None:
    record = _record()
    record.request_id = "abc-123"  # type: ignore[attr-defined]
    record.method = "POST"  # type: ignore[attr-defined]
    record.path = "/v1/completions/video"  # type: ignore[attr-defined]
    record.duration_ms = 12.5  # type: ignore[attr-defined]

    parsed = json.loads(_JsonFormatter().format(record))
    assert parsed["request_id"] == "abc-123"
    assert parsed["method"] == "POST"
    assert parsed["path"] == "/v1/completions/video"
    assert parsed["duration_ms"] == 12.5


def test_json_formatter_includes_completion_fields() -> None:
    """A queued completion can be followed by attempt_id across retries."""
    record = _record(level=logging.WARNING, msg="queued for retry")
    record.user_id = "learner-1"  # type: ignore[attr-defined]
    record.course_id = "course-1"  # type: ignore[attr-defined]
    record.unit_id = "unit-1"  # type: ignore[attr-defined]
    record.attempt_id = "attempt-9"  # type: ignore[attr-defined]

    parsed = json.loads(_JsonFormatter().format(record))
    assert parsed["user_id"] == "learner-1"
    assert parsed["course_id"] == "course-1"
    assert parsed["unit_id"] == "unit-1"
    assert parsed["attempt_id"] == "attempt-9"


def test_json_formatter_includes_audit_fields() -> None:
    record = _record(msg="repair done")
    record.audit_id = "audit_1_abcd"  # type: ignore[attr-defined]
    record.backup_id = "progress_backup_1_abcd"  # type: ignore[attr-defined]

    parsed = json.loads(_JsonFormatter().format(record))
    assert parsed["audit_id"] == "audit_1_abcd"
    assert parsed["backup_id"] == "progress_backup_1_abcd"


def test_json_formatter_omits_absent_fields() -> None:
    parsed = json.loads(_JsonFormatter().format(_record()))
    assert "attempt_id" not in parsed
    assert "audit_id" not in parsed


def test_json_formatter_includes_exception_info() -> None:
    formatter = _JsonFormatter()
    try:
        raise ValueError("test error")
    except ValueError:
        record = logging.LogRecord(
            name="test",
            level=logging.ERROR,
            pathname="test.py",
            lineno=1,
            msg="Something failed",
            args=(),
            exc_info=sys.exc_info(),
        )
        output = formatter.format(record)

    parsed = json.loads(output)
    assert "ValueError: test error" in parsed["exception"]


def test_container_formatter_is_plain_text() -> None:
    output = _ContainerFormatter().format(_record(msg="server started"))
    assert "INFO" in output
    assert "server started" in output
    try:
        json.loads(output)
        raise AssertionError("Container format should not be valid JSON")
    except json.JSONDecodeError:
        pass
