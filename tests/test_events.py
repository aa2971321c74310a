from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path

import pytest

from lecture_notes.services.events import (
    JOB_ID_VAR,
    REQUEST_ID_VAR,
    collect_correlation_context,
    emit_stage_event,
    emit_structured_event,
    normalize_context,
    sanitize_context_value,
)


def test_values_are_made_serialisable() -> None:
    assert sanitize_context_value(3) == 3
    assert sanitize_context_value(True) is True
    assert sanitize_context_value(datetime(2024, 1, 2, 3, 4, 5)) == "2024-01-02T03:04:05"
    assert sanitize_context_value(Path("/tmp/chunk.wav")) == "/tmp/chunk.wav"
    assert sanitize_context_value(["a", "b"]) == "a, b"
    assert sanitize_context_value("   ") is None
    long_value = sanitize_context_value("x" * 250)
    assert len(long_value) == 201 and long_value.endswith("…")


def test_blank_entries_are_dropped() -> None:
    cleaned = normalize_context({"kept": 1, "empty": "", "none": None, "": "no key", "nested": {"a": ""}})

    assert cleaned == {"kept": 1}


def test_correlation_context_reflects_bound_variables() -> None:
    request_token = REQUEST_ID_VAR.set("req-1")
    job_token = JOB_ID_VAR.set("job-9")
    try:
        assert collect_correlation_context() == {"request_id": "req-1", "job_id": "job-9"}
    finally:
        JOB_ID_VAR.reset(job_token)
        REQUEST_ID_VAR.reset(request_token)

    assert collect_correlation_context() == {}


def test_structured_event_renders_details(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.DEBUG, logger="lecture_notes.events")

    emit_structured_event(
        "TASK_STATE",
        " started ",
        payload={"chunks": 3, "skipped": ""},
        correlation={"job_id": "j1"},
        duration_ms=12.5,
    )

    record = caplog.records[-1]
    assert record.getMessage() == "[TASK_STATE] started (job_id=j1, chunks=3, duration_ms=12.5)"
    assert record.event == "started"
    assert record.event_payload == {"chunks": 3}
    assert record.event_correlation == {"job_id": "j1"}
    assert not hasattr(record, "event_context")


def test_degraded_stage_logs_a_warning(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.DEBUG, logger="lecture_notes.events")

    emit_stage_event("j1", "quiz", "degraded", reason="model unavailable")

    record = caplog.records[-1]
    assert record.levelno == logging.WARNING
    assert "stage=quiz" in record.getMessage()
    assert "reason=model unavailable" in record.getMessage()
