"""Job status state machine and the progress tracker that persists it."""

from __future__ import annotations

import enum
import logging
import threading
from typing import TYPE_CHECKING, Dict, FrozenSet, Optional, Tuple

from .events import emit_task_event

if TYPE_CHECKING:  # pragma: no cover - imported for type checkers only
    from .objects import ObjectStore
    from .storage import TranscriptionRepository


LOGGER = logging.getLogger(__name__)


class JobStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    STRUCTURING = "structuring"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELED = "canceled"


ACTIVE_STATUSES: FrozenSet[JobStatus] = frozenset({JobStatus.PROCESSING, JobStatus.STRUCTURING})
TERMINAL_STATUSES: FrozenSet[JobStatus] = frozenset(
    {JobStatus.COMPLETED, JobStatus.ERROR, JobStatus.CANCELED}
)
RESTARTABLE_STATUSES: FrozenSet[JobStatus] = frozenset(
    {JobStatus.PENDING, JobStatus.ERROR, JobStatus.CANCELED}
)

# Statuses a job must currently hold for a write of the key status to apply.
# Entering Processing from outside the active path only happens through start().
ALLOWED_SOURCES: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.PROCESSING: frozenset({JobStatus.PROCESSING}),
    JobStatus.STRUCTURING: frozenset({JobStatus.PROCESSING, JobStatus.STRUCTURING}),
    JobStatus.COMPLETED: frozenset({JobStatus.STRUCTURING}),
    JobStatus.ERROR: ACTIVE_STATUSES,
    JobStatus.CANCELED: ACTIVE_STATUSES,
}

# Progress checkpoints owned by the orchestrator.
DOWNLOAD_STARTED = 0.02
DOWNLOAD_FINISHED = 0.05
SEGMENTATION_FINISHED = 0.15
TRANSCRIPTION_FINISHED = 0.85
TRANSCRIPT_SAVING = 0.87
STRUCTURING_STARTED = 0.90
STRUCTURING_FINISHED = 0.95
COMPLETED = 1.0


class InvalidTransitionError(RuntimeError):
    """Raised when a status change is not permitted by the state machine."""


class StartOutcome(str, enum.Enum):
    STARTED = "started"
    CONFLICT = "conflict"
    ALREADY_COMPLETED = "already_completed"
    NOT_FOUND = "not_found"


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    """Return whether *current* may move to *target*."""

    if target is JobStatus.PROCESSING and current in RESTARTABLE_STATUSES:
        return True
    return current in ALLOWED_SOURCES.get(target, frozenset())


def unit_progress_bounds(index: int, total: int) -> Tuple[float, float]:
    """Return the progress fractions at the start and end of work unit *index*.

    Units share the range between segmentation and the end of transcription
    evenly; the final unit always ends exactly on the upper bound.
    """

    if total <= 0:
        raise ValueError("total must be positive")
    if not 0 <= index < total:
        raise ValueError(f"index {index} outside 0..{total - 1}")
    span = TRANSCRIPTION_FINISHED - SEGMENTATION_FINISHED
    step = span / total
    start = SEGMENTATION_FINISHED + index * step
    end = TRANSCRIPTION_FINISHED if index == total - 1 else min(start + step, TRANSCRIPTION_FINISHED)
    return start, end


def format_progress_message(
    message: str,
    completed_steps: Optional[float],
    total_steps: Optional[float],
) -> str:
    """Append a percentage indicator to ``message`` when possible.

    Percentages are clamped to the inclusive range ``[0, 100]``. The message is
    returned unchanged when the totals are unavailable.
    """

    if completed_steps is None or total_steps in {None, 0}:
        return message

    try:
        ratio = float(completed_steps) / float(total_steps)
    except (TypeError, ValueError):
        return message

    clamped = max(0.0, min(ratio, 1.0))
    percent = int(round(clamped * 100))
    return f"{message} ({percent}%)"


class ProgressTracker:
    """Single writer of a job's status and progress.

    Writes are conditional on the stored status, and on the run id when one
    is given, so a run that was canceled or superseded underneath cannot
    overwrite the job. Progress never decreases during one run: a lower value
    is clamped to the last one written by that run.
    """

    def __init__(
        self,
        repository: "TranscriptionRepository",
        *,
        object_store: Optional["ObjectStore"] = None,
    ) -> None:
        self._repository = repository
        self._objects = object_store
        self._last_progress: Dict[str, Tuple[Optional[str], float]] = {}
        self._lock = threading.Lock()

    def claim(self, job_id: str, *, reprocess: bool = False) -> Tuple[StartOutcome, Optional[str]]:
        """Move *job_id* into Processing and return the new run id alongside the outcome."""

        allowed = set(RESTARTABLE_STATUSES)
        if reprocess:
            allowed.add(JobStatus.COMPLETED)
        claim = self._repository.try_start(job_id, allowed)
        if claim is not None:
            with self._lock:
                self._last_progress[job_id] = (claim.run_id, 0.0)
            self._discard_superseded_pdf(job_id, claim.superseded_pdf_key)
            emit_task_event(
                "started",
                "Transcription job started",
                payload={"job_id": job_id, "run_id": claim.run_id, "reprocess": reprocess},
            )
            return StartOutcome.STARTED, claim.run_id

        current = self._repository.get_status(job_id)
        if current is None:
            return StartOutcome.NOT_FOUND, None
        if current in ACTIVE_STATUSES:
            LOGGER.info("Rejecting start of job %s: already %s", job_id, current.value)
            return StartOutcome.CONFLICT, None
        if current is JobStatus.COMPLETED:
            return StartOutcome.ALREADY_COMPLETED, None
        raise InvalidTransitionError(f"Cannot start job {job_id} from {current.value}")

    def start(self, job_id: str, *, reprocess: bool = False) -> StartOutcome:
        """Move *job_id* into Processing with progress reset to zero."""

        outcome, _ = self.claim(job_id, reprocess=reprocess)
        return outcome

    def _discard_superseded_pdf(self, job_id: str, key: Optional[str]) -> None:
        if not key or self._objects is None:
            return
        try:
            self._objects.delete(key)
        except (OSError, ValueError) as error:
            LOGGER.warning("Could not delete superseded PDF %s of job %s: %s", key, job_id, error)

    def set_status(
        self,
        job_id: str,
        status: JobStatus,
        progress: Optional[float] = None,
        error_message: Optional[str] = None,
        *,
        run_id: Optional[str] = None,
    ) -> bool:
        """Persist *status* and *progress* for *job_id*.

        Returns ``False`` when the stored status or run no longer permits the
        write, which is how a run notices that it was canceled, superseded or
        deleted.
        """

        if status is JobStatus.PENDING:
            raise InvalidTransitionError("Jobs never return to pending")
        if error_message is not None and status is not JobStatus.ERROR:
            raise InvalidTransitionError("An error message can only accompany the error status")

        value: Optional[float] = None
        if progress is not None:
            value = max(0.0, min(float(progress), 1.0))
            with self._lock:
                last_run, previous = self._last_progress.get(job_id, (None, None))
                same_run = run_id is None or run_id == last_run
                if same_run and previous is not None and value < previous and status in ACTIVE_STATUSES:
                    LOGGER.warning(
                        "Ignoring progress regression for job %s (%.3f < %.3f)",
                        job_id,
                        value,
                        previous,
                    )
                    value = previous

        kwargs = {}
        if status is JobStatus.ERROR:
            kwargs["error_message"] = error_message or "Unknown error"
        written = self._repository.write_status(
            job_id,
            status,
            progress=value,
            expected=ALLOWED_SOURCES[status],
            run_id=run_id,
            **kwargs,
        )
        if not written:
            LOGGER.info("Status write %s for job %s skipped; job left the active path", status.value, job_id)
            return False

        with self._lock:
            last_run, _ = self._last_progress.get(job_id, (run_id, None))
            if status in TERMINAL_STATUSES:
                self._last_progress.pop(job_id, None)
            elif value is not None:
                self._last_progress[job_id] = (last_run, value)
        LOGGER.debug(
            format_progress_message(f"Job {job_id} is {status.value}", value, 1.0)
        )
        return True

    def cancel(self, job_id: str) -> bool:
        """Flip an active job to Canceled; the run notices at its next checkpoint."""

        canceled = self.set_status(job_id, JobStatus.CANCELED)
        if canceled:
            emit_task_event("canceled", "Cancellation requested", payload={"job_id": job_id})
        return canceled


__all__ = [
    "ACTIVE_STATUSES",
    "ALLOWED_SOURCES",
    "InvalidTransitionError",
    "JobStatus",
    "ProgressTracker",
    "RESTARTABLE_STATUSES",
    "StartOutcome",
    "TERMINAL_STATUSES",
    "can_transition",
    "format_progress_message",
    "unit_progress_bounds",
]
