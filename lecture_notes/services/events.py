"""Structured event helpers shared across the service.

Every event is rendered as ``[TYPE] message (key=value, ...)`` for plain log
files and also carries its cleaned fields in ``extra`` for structured handlers.
"""

from __future__ import annotations

import contextvars
import logging
from datetime import date, datetime
from os import PathLike
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple


DEFAULT_EVENT_LOGGER = logging.getLogger("lecture_notes.events")

REQUEST_ID_VAR: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("request_id", default=None)
JOB_ID_VAR: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("job_id", default=None)
ACTOR_VAR: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("actor", default=None)

_CORRELATION_VARS: Tuple[Tuple[str, contextvars.ContextVar[Optional[str]]], ...] = (
    ("request_id", REQUEST_ID_VAR),
    ("job_id", JOB_ID_VAR),
    ("actor", ACTOR_VAR),
)
_MAX_VALUE_LENGTH = 200

EventLogger = logging.Logger | logging.LoggerAdapter


def collect_correlation_context() -> Dict[str, str]:
    """Return the request, job and actor identifiers bound to the current context."""

    return {name: str(var.get()) for name, var in _CORRELATION_VARS if var.get()}


def _is_blank(value: Any) -> bool:
    return value is None or value == "" or value == {}


def _shorten(text: str) -> Optional[str]:
    text = text.strip()
    if not text:
        return None
    if len(text) <= _MAX_VALUE_LENGTH:
        return text
    return text[:_MAX_VALUE_LENGTH] + "…"


def sanitize_context_value(value: Any) -> Any:
    """Coerce *value* into something a JSON log handler can serialise.

    Numbers and booleans pass through, timestamps become ISO strings, mappings
    are cleaned recursively and everything else is stringified and shortened.
    Blank results collapse to ``None``.
    """

    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Mapping):
        return normalize_context(value)
    if isinstance(value, PathLike):
        return _shorten(str(value))
    if isinstance(value, (list, tuple, set, frozenset)):
        return _shorten(", ".join(map(str, value)))
    return _shorten(str(value))


def normalize_context(values: Optional[Mapping[Any, Any]]) -> Dict[str, Any]:
    """Return a copy of *values* with string keys and no blank entries."""

    cleaned: Dict[str, Any] = {}
    for key, raw in (values or {}).items():
        if key is None or key == "":
            continue
        value = sanitize_context_value(raw)
        if not _is_blank(value):
            cleaned[str(key)] = value
    return cleaned


def _render(event_type: str, message: str, details: Iterable[Tuple[str, Any]]) -> str:
    head = f"[{event_type}] {message}" if event_type else message
    tail = ", ".join(f"{key}={value}" for key, value in details)
    return f"{head} ({tail})" if tail else head


def emit_structured_event(
    event_type: str,
    message: str,
    *,
    payload: Optional[Dict[str, Any]] = None,
    context: Optional[Dict[str, Any]] = None,
    correlation: Optional[Dict[str, Any]] = None,
    duration_ms: Optional[float] = None,
    level: int = logging.INFO,
    logger: EventLogger = DEFAULT_EVENT_LOGGER,
) -> None:
    """Log one event with its correlation, context and payload fields."""

    text = str(message).strip()
    sections = {
        "event_correlation": normalize_context(correlation),
        "event_context": normalize_context(context),
        "event_payload": normalize_context(payload),
    }
    details: Dict[str, Any] = {}
    for section in sections.values():
        details.update(section)

    extra: Dict[str, Any] = {"event": text, "event_type": event_type or ""}
    extra.update((name, section) for name, section in sections.items() if section)
    if duration_ms is not None:
        details["duration_ms"] = round(float(duration_ms), 2)
        extra["event_duration_ms"] = float(duration_ms)

    logger.log(level, _render(event_type, text, details.items()), extra=extra)


def emit_db_event(
    action: str,
    *,
    payload: Optional[Dict[str, Any]] = None,
    duration_ms: Optional[float] = None,
    level: int = logging.DEBUG,
    logger: EventLogger = DEFAULT_EVENT_LOGGER,
) -> None:
    """Emit a structured database event."""

    emit_structured_event(
        "DB_QUERY",
        action,
        payload=payload,
        duration_ms=duration_ms,
        level=level,
        logger=logger,
    )


def emit_storage_event(
    operation: str,
    *,
    key: str,
    payload: Optional[Dict[str, Any]] = None,
    duration_ms: Optional[float] = None,
    level: int = logging.DEBUG,
    logger: EventLogger = DEFAULT_EVENT_LOGGER,
) -> None:
    """Emit an object storage event."""

    emit_structured_event(
        "STORAGE_OP",
        operation,
        payload={"key": key, **(payload or {})},
        duration_ms=duration_ms,
        level=level,
        logger=logger,
    )


def emit_task_event(
    phase: str,
    message: str,
    *,
    payload: Optional[Dict[str, Any]] = None,
    correlation: Optional[Dict[str, Any]] = None,
    duration_ms: Optional[float] = None,
    level: int = logging.INFO,
    logger: EventLogger = DEFAULT_EVENT_LOGGER,
) -> None:
    """Emit a structured task lifecycle event."""

    emit_structured_event(
        "TASK_STATE",
        message or phase,
        payload={"phase": phase, **(payload or {})},
        correlation=correlation,
        duration_ms=duration_ms,
        level=level,
        logger=logger,
    )


def emit_stage_event(
    job_id: str,
    stage: str,
    outcome: str,
    *,
    reason: Optional[str] = None,
    payload: Optional[Dict[str, Any]] = None,
    duration_ms: Optional[float] = None,
    logger: EventLogger = DEFAULT_EVENT_LOGGER,
) -> None:
    """Emit the outcome of one pipeline stage for *job_id*."""

    level = logging.INFO if outcome == "ok" else logging.WARNING
    emit_structured_event(
        "PIPELINE_STAGE",
        f"{stage} {outcome}",
        payload={"stage": stage, "outcome": outcome, "reason": reason, **(payload or {})},
        correlation={"job_id": job_id},
        duration_ms=duration_ms,
        level=level,
        logger=logger,
    )


__all__ = [
    "ACTOR_VAR",
    "DEFAULT_EVENT_LOGGER",
    "JOB_ID_VAR",
    "REQUEST_ID_VAR",
    "collect_correlation_context",
    "emit_db_event",
    "emit_stage_event",
    "emit_storage_event",
    "emit_structured_event",
    "emit_task_event",
    "normalize_context",
    "sanitize_context_value",
]
