"""Background pipeline driving one job from source files to study material."""

from __future__ import annotations

import asyncio
import contextvars
import enum
import functools
import logging
import shutil
import tempfile
import time
from concurrent.futures import Executor
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, Callable, Generic, List, Optional, Tuple, TypeVar

from ..config import PipelineSettings
from ..processing.documents import extract_document_text, is_document
from ..processing.segmentation import Chunk, Segmenter
from ..processing.transcription import TranscriptionEngine, UsageMetrics
from .derivatives import DerivativeService
from .events import JOB_ID_VAR, emit_stage_event, emit_task_event
from .objects import ObjectStore
from .progress import (
    COMPLETED,
    DOWNLOAD_FINISHED,
    DOWNLOAD_STARTED,
    SEGMENTATION_FINISHED,
    STRUCTURING_FINISHED,
    STRUCTURING_STARTED,
    TRANSCRIPT_SAVING,
    JobStatus,
    ProgressTracker,
    unit_progress_bounds,
)
from .storage import TranscriptionRecord, TranscriptionRepository


LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

TRANSCRIPT_SEPARATOR = "\n\n"


class EmptyContentError(ValueError):
    """Raised when the sources produced no text at all."""


class PipelineAbandoned(Exception):
    """Raised at a checkpoint when the job was canceled or deleted underneath."""


class StageOutcome(str, enum.Enum):
    OK = "ok"
    DEGRADED = "degraded"
    FAILED = "failed"


@dataclass(frozen=True)
class StageResult(Generic[T]):
    """Outcome of one optional stage: ``Ok``, ``Degraded(reason)`` or ``Failed(reason)``."""

    stage: str
    outcome: StageOutcome
    value: Optional[T] = None
    reason: Optional[str] = None

    @classmethod
    def ok(cls, stage: str, value: Optional[T] = None) -> "StageResult[T]":
        return cls(stage=stage, outcome=StageOutcome.OK, value=value)

    @classmethod
    def degraded(cls, stage: str, reason: str, value: Optional[T] = None) -> "StageResult[T]":
        return cls(stage=stage, outcome=StageOutcome.DEGRADED, value=value, reason=reason)

    @classmethod
    def failed(cls, stage: str, reason: str) -> "StageResult[T]":
        return cls(stage=stage, outcome=StageOutcome.FAILED, reason=reason)

    @property
    def succeeded(self) -> bool:
        return self.outcome is StageOutcome.OK


@dataclass(frozen=True)
class WorkUnit:
    """One step of the transcription loop: an audio chunk or extracted text."""

    index: int
    label: str
    chunk: Optional[Chunk] = None
    text: Optional[str] = None


@dataclass
class PipelineReport:
    job_id: str
    status: JobStatus
    stages: List[StageResult[Any]] = field(default_factory=list)
    usage: UsageMetrics = field(default_factory=UsageMetrics)
    error: Optional[str] = None

    def stage(self, name: str) -> Optional[StageResult[Any]]:
        for result in self.stages:
            if result.stage == name:
                return result
        return None


def merge_transcripts(parts: List[str]) -> str:
    """Join ordered transcript parts with a paragraph break."""

    return TRANSCRIPT_SEPARATOR.join(parts)


class TranscriptionPipeline:
    """Sequence segmentation, transcription, structuring and derivatives.

    Segmentation and transcription are fail-hard: any error moves the job to
    Error with the causing message. Structuring and the derivatives are
    fail-soft and only show up as :class:`StageResult` values. Blocking calls
    run in *executor* so the event loop stays free.
    """

    def __init__(
        self,
        repository: TranscriptionRepository,
        tracker: ProgressTracker,
        object_store: ObjectStore,
        segmenter: Segmenter,
        transcriber: TranscriptionEngine,
        derivatives: DerivativeService,
        *,
        settings: PipelineSettings,
        scratch_root: Path,
        executor: Optional[Executor] = None,
    ) -> None:
        self._repository = repository
        self._tracker = tracker
        self._objects = object_store
        self._segmenter = segmenter
        self._transcriber = transcriber
        self._derivatives = derivatives
        self._settings = settings
        self._scratch_root = Path(scratch_root)
        self._executor = executor

    @property
    def tracker(self) -> ProgressTracker:
        return self._tracker

    async def _call(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        loop = asyncio.get_running_loop()
        context = contextvars.copy_context()
        operation = functools.partial(func, *args, **kwargs)
        return await loop.run_in_executor(self._executor, context.run, operation)

    async def _checkpoint(self, job_id: str, run_id: Optional[str], status: JobStatus, progress: float) -> None:
        written = await self._call(self._tracker.set_status, job_id, status, progress, run_id=run_id)
        if not written:
            raise PipelineAbandoned(job_id)

    def _make_run_dir(self, job_id: str) -> Path:
        self._scratch_root.mkdir(parents=True, exist_ok=True)
        return Path(tempfile.mkdtemp(prefix=f"job-{job_id[:12]}-", dir=self._scratch_root))

    def _status_after_abandon(self, job_id: str, run_id: Optional[str]) -> JobStatus:
        """Status to report for a run that lost its job.

        A deleted job or one that a newer run has claimed counts as canceled
        for this run.
        """

        job = self._repository.get_job(job_id)
        if job is None or (run_id is not None and job.run_id != run_id):
            return JobStatus.CANCELED
        return job.status

    async def run(self, job_id: str, run_id: Optional[str] = None) -> PipelineReport:
        """Process *job_id*, which must already be in Processing.

        *run_id* is the id granted when the job was started; without it the
        run adopts the id currently stored on the job.
        """

        token = JOB_ID_VAR.set(job_id)
        report = PipelineReport(job_id=job_id, status=JobStatus.PROCESSING)
        started = time.perf_counter()
        run_dir: Optional[Path] = None
        try:
            job = await self._call(self._repository.require_job, job_id)
            run_id = run_id or job.run_id
            emit_task_event(
                "running",
                "Pipeline run started",
                payload={"job_id": job_id, "run_id": run_id, "title": job.title},
            )
            run_dir = await self._call(self._make_run_dir, job_id)
            await self._run_stages(job, run_id, run_dir, report)
            report.status = JobStatus.COMPLETED
        except PipelineAbandoned:
            report.status = await self._call(self._status_after_abandon, job_id, run_id)
            LOGGER.info("Job %s left the pipeline at a checkpoint (status=%s)", job_id, report.status.value)
        except Exception as error:
            message = str(error) or error.__class__.__name__
            report.status = JobStatus.ERROR
            report.error = message
            LOGGER.error("Transcription failed for %s: %s", job_id, message, exc_info=True)
            recorded = await self._call(
                self._tracker.set_status, job_id, JobStatus.ERROR, error_message=message, run_id=run_id
            )
            if not recorded:
                report.status = await self._call(self._status_after_abandon, job_id, run_id)
        finally:
            if run_dir is not None:
                self._cleanup(run_dir)
            JOB_ID_VAR.reset(token)
        emit_task_event(
            "finished",
            "Pipeline run finished",
            payload={"job_id": job_id, "status": report.status.value, "error": report.error},
            duration_ms=(time.perf_counter() - started) * 1000.0,
        )
        return report

    async def _run_stages(
        self, job: TranscriptionRecord, run_id: Optional[str], run_dir: Path, report: PipelineReport
    ) -> None:
        units, duration = await self._prepare_sources(job, run_id, run_dir)
        raw_text, provenance, usage = await self._transcribe_units(job.id, run_id, units)
        report.usage = report.usage + usage
        if not raw_text.strip():
            raise EmptyContentError("No speech or text content was found in the source")

        await self._checkpoint(job.id, run_id, JobStatus.PROCESSING, TRANSCRIPT_SAVING)
        saved = await self._call(
            self._repository.save_raw_text,
            job.id,
            raw_text,
            duration_seconds=duration,
            transcription_model=provenance,
            run_id=run_id,
        )
        if not saved:
            raise PipelineAbandoned(job.id)
        LOGGER.info(
            "Transcription complete for %s: %s chars, model=%s", job.id, len(raw_text), provenance
        )

        await self._checkpoint(job.id, run_id, JobStatus.STRUCTURING, STRUCTURING_STARTED)
        structuring = await self._structure(job, raw_text)
        report.stages.append(structuring)
        notes_text, language = "", None
        if structuring.succeeded and structuring.value is not None:
            notes = structuring.value
            report.usage = report.usage + notes.usage
            notes_text, language = notes.structured_text, notes.detected_language
        # Only lands while this run is still structuring; a cancel during the
        # language model call leaves the job without notes.
        saved = await self._call(
            self._repository.save_structured_text, job.id, notes_text, language, run_id=run_id
        )
        if not saved:
            raise PipelineAbandoned(job.id)

        await self._checkpoint(job.id, run_id, JobStatus.STRUCTURING, STRUCTURING_FINISHED)
        await self._checkpoint(job.id, run_id, JobStatus.COMPLETED, COMPLETED)
        emit_stage_event(job.id, "pipeline", "ok", payload={"chars": len(raw_text)})

        if structuring.succeeded:
            report.stages.extend(await self._generate_derivatives(job.id))

    async def _prepare_sources(
        self, job: TranscriptionRecord, run_id: Optional[str], run_dir: Path
    ) -> Tuple[List[WorkUnit], Optional[float]]:
        await self._checkpoint(job.id, run_id, JobStatus.PROCESSING, DOWNLOAD_STARTED)
        downloads = []
        for key in job.source_keys:
            downloads.append(await self._call(self._objects.get, key))
        await self._checkpoint(job.id, run_id, JobStatus.PROCESSING, DOWNLOAD_FINISHED)

        units: List[WorkUnit] = []
        total_duration = 0.0
        has_media = False
        for position, stored in enumerate(downloads):
            filename = PurePosixPath(stored.key).name
            if is_document(filename, stored.content_type):
                text = await self._call(extract_document_text, stored.data, filename)
                units.append(WorkUnit(index=len(units), label=filename, text=text))
            else:
                result = await self._call(
                    self._segmenter.segment,
                    stored.data,
                    filename,
                    stored.content_type,
                    scratch_parent=run_dir,
                )
                has_media = True
                total_duration += result.duration_seconds
                for chunk in result.chunks:
                    units.append(
                        WorkUnit(index=len(units), label=f"{filename}#{chunk.index}", chunk=chunk)
                    )
            if position == len(downloads) - 1:
                progress = SEGMENTATION_FINISHED
            else:
                progress = DOWNLOAD_FINISHED + (SEGMENTATION_FINISHED - DOWNLOAD_FINISHED) * (
                    (position + 1) / len(downloads)
                )
            await self._checkpoint(job.id, run_id, JobStatus.PROCESSING, progress)

        LOGGER.info(
            "Sources prepared for %s: %s unit(s), %.1fs of audio", job.id, len(units), total_duration
        )
        return units, (total_duration if has_media else None)

    async def _transcribe_units(
        self, job_id: str, run_id: Optional[str], units: List[WorkUnit]
    ) -> Tuple[str, Optional[str], UsageMetrics]:
        parts: List[str] = []
        provenance: Optional[str] = None
        usage = UsageMetrics()
        for unit in units:
            start, end = unit_progress_bounds(unit.index, len(units))
            await self._checkpoint(job_id, run_id, JobStatus.PROCESSING, start)
            if unit.chunk is not None:
                LOGGER.debug(
                    "Transcribing unit %s/%s (%s, %.0fs)",
                    unit.index + 1,
                    len(units),
                    unit.label,
                    unit.chunk.duration,
                )
                result = await self._call(self._transcriber.transcribe, unit.chunk.path)
                if provenance is None:
                    provenance = result.provenance
                usage = usage + result.usage
                parts.append(result.text)
            else:
                parts.append(unit.text or "")
            # Also the cancellation checkpoint for this unit.
            await self._checkpoint(job_id, run_id, JobStatus.PROCESSING, end)
        return merge_transcripts(parts), provenance, usage

    async def _structure(self, job: TranscriptionRecord, raw_text: str) -> StageResult[Any]:
        service = self._derivatives.structuring
        if service is None:
            result: StageResult[Any] = StageResult.degraded("structuring", "No language model is configured")
        else:
            try:
                notes = await self._call(service.structure, raw_text, job.title)
            except Exception as error:
                result = StageResult.degraded("structuring", str(error) or error.__class__.__name__)
            else:
                result = StageResult.ok("structuring", notes)
        emit_stage_event(job.id, result.stage, result.outcome.value, reason=result.reason)
        return result

    async def _derivative(self, stage: str, operation: Callable[..., T], job_id: str, **kwargs: Any) -> StageResult[T]:
        started = time.perf_counter()
        try:
            job = await self._call(self._repository.require_job, job_id)
            value = await self._call(operation, job, **kwargs)
        except Exception as error:
            result: StageResult[T] = StageResult.failed(stage, str(error) or error.__class__.__name__)
        else:
            result = StageResult.ok(stage, value)
        emit_stage_event(
            job_id,
            stage,
            result.outcome.value,
            reason=result.reason,
            duration_ms=(time.perf_counter() - started) * 1000.0,
        )
        return result

    async def _generate_derivatives(self, job_id: str) -> List[StageResult[Any]]:
        """Run the PDF, quiz and flashcard stages concurrently and wait for all three."""

        results = await asyncio.gather(
            self._derivative("pdf", self._derivatives.generate_pdf, job_id, regenerate=True),
            self._derivative("quiz", self._derivatives.generate_quiz, job_id),
            self._derivative("flashcards", self._derivatives.generate_flashcards, job_id),
        )
        return list(results)

    @staticmethod
    def _cleanup(run_dir: Path) -> None:
        try:
            shutil.rmtree(run_dir)
        except FileNotFoundError:
            pass
        except OSError as error:
            LOGGER.warning("Could not remove scratch directory %s: %s", run_dir, error)
        else:
            LOGGER.debug("Removed scratch directory %s", run_dir)


__all__ = [
    "EmptyContentError",
    "PipelineAbandoned",
    "PipelineReport",
    "StageOutcome",
    "StageResult",
    "TranscriptionPipeline",
    "WorkUnit",
    "merge_transcripts",
]
