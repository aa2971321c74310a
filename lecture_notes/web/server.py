"""FastAPI application exposing the transcription pipeline."""

from __future__ import annotations

import asyncio
import contextvars
import functools
import logging
import uuid
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable, Dict, List, Literal, Optional, TypeVar

from fastapi import FastAPI, File, Form, Header, HTTPException, Query, Request, Response, UploadFile
from fastapi import status
from pydantic import BaseModel, Field
from starlette.types import ASGIApp, Receive, Scope, Send

from ..config import AppConfig
from ..processing.documents import source_type_for
from ..processing.pdf import PdfRenderError
from ..processing.structuring import StructuringError
from ..services.derivatives import DerivativeUnavailableError
from ..services.events import (
    ACTOR_VAR,
    JOB_ID_VAR,
    REQUEST_ID_VAR,
    collect_correlation_context,
    emit_db_event,
    emit_structured_event,
)
from ..services.naming import build_source_key
from ..services.objects import InvalidSignatureError, ObjectNotFoundError
from ..services.progress import InvalidTransitionError, JobStatus, StartOutcome
from ..services.runtime import ServiceContainer, build_services
from ..services.storage import (
    Flashcard,
    FlashcardDeckRecord,
    QuizQuestion,
    QuizRecord,
    TranscriptionRecord,
    TranscriptionRepository,
)
from ..services.tasks import PipelineQueue, QueuedJob


T = TypeVar("T")

DEFAULT_OWNER = "local"


class ContextualLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that injects correlation context into records."""

    def process(self, msg: Any, kwargs: Dict[str, Any]) -> tuple[Any, Dict[str, Any]]:  # type: ignore[override]
        extra: Dict[str, Any] = dict(self.extra)
        provided = kwargs.get("extra")
        if isinstance(provided, dict):
            extra.update(provided)
        for key, value in collect_correlation_context().items():
            extra.setdefault(key, value)
        kwargs["extra"] = extra
        return msg, kwargs


LOGGER = ContextualLoggerAdapter(logging.getLogger(__name__), {})
EVENT_LOGGER = ContextualLoggerAdapter(logging.getLogger("lecture_notes.web.events"), {})


def _log_event(message: str, **context: Any) -> None:
    emit_structured_event(
        "APP_EVENT",
        message,
        context=context,
        correlation=collect_correlation_context(),
        logger=EVENT_LOGGER,
    )


class RequestContextMiddleware:
    """Assign a correlation identifier to each request and expose it via contextvars."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        request_id = uuid.uuid4().hex
        scope.setdefault("state", {})
        if isinstance(scope["state"], dict):
            scope["state"]["request_id"] = request_id

        method = scope.get("method")
        actor = f"request:{method.upper()}" if isinstance(method, str) else "request"
        request_token = REQUEST_ID_VAR.set(request_id)
        actor_token = ACTOR_VAR.set(actor)
        job_token = JOB_ID_VAR.set(None)
        try:
            await self.app(scope, receive, send)
        finally:
            JOB_ID_VAR.reset(job_token)
            ACTOR_VAR.reset(actor_token)
            REQUEST_ID_VAR.reset(request_token)


class TitleUpdatePayload(BaseModel):
    title: str = Field(..., min_length=1, max_length=500)


class PdfRequest(BaseModel):
    type: Literal["structured", "raw"] = "structured"
    regenerate: bool = False


class StudyMaterialRequest(BaseModel):
    count: Optional[int] = Field(None, ge=1, le=100)
    language: Optional[str] = None


def _serialize_job(job: TranscriptionRecord) -> Dict[str, Any]:
    return {
        "id": job.id,
        "ownerId": job.owner_id,
        "title": job.title,
        "sourceType": job.source_type,
        "mimeType": job.mime_type,
        "originalFileName": job.original_file_name,
        "status": job.status.value,
        "progress": job.progress,
        "rawText": job.raw_text,
        "structuredText": job.structured_text,
        "detectedLanguage": job.detected_language,
        "transcriptionModel": job.transcription_model,
        "errorMessage": job.error_message,
        "pdfKey": job.pdf_key,
        "pdfGeneratedAt": job.pdf_generated_at,
        "durationSeconds": job.duration_seconds,
        "createdAt": job.created_at,
        "updatedAt": job.updated_at,
    }


def _serialize_summary(job: TranscriptionRecord) -> Dict[str, Any]:
    return {
        "id": job.id,
        "title": job.title,
        "sourceType": job.source_type,
        "status": job.status.value,
        "progress": job.progress,
        "errorMessage": job.error_message,
        "createdAt": job.created_at,
        "updatedAt": job.updated_at,
    }


def _serialize_question(question: QuizQuestion) -> Dict[str, Any]:
    return {
        "id": question.id,
        "question": question.question,
        "options": list(question.options),
        "correctAnswer": question.correct_answer,
        "explanation": question.explanation,
    }


def _serialize_quiz(quiz: QuizRecord) -> Dict[str, Any]:
    return {
        "id": quiz.id,
        "transcriptionId": quiz.transcription_id,
        "title": quiz.title,
        "createdAt": quiz.created_at,
        "questions": [_serialize_question(question) for question in quiz.questions],
    }


def _serialize_card(card: Flashcard) -> Dict[str, Any]:
    return {"id": card.id, "front": card.front, "back": card.back, "category": card.category}


def _serialize_deck(deck: FlashcardDeckRecord) -> Dict[str, Any]:
    return {
        "id": deck.id,
        "transcriptionId": deck.transcription_id,
        "title": deck.title,
        "createdAt": deck.created_at,
        "cards": [_serialize_card(card) for card in deck.cards],
    }


def create_app(
    repository: TranscriptionRepository,
    *,
    config: AppConfig,
    services: Optional[ServiceContainer] = None,
    root_path: str | None = None,
) -> FastAPI:
    """Return a configured FastAPI application."""

    app = FastAPI(
        title="Lecture Notes",
        description="Turn lecture recordings and documents into study material",
        root_path=(root_path or "").rstrip("/"),
    )
    app.state.server = None

    configure_emitter = getattr(repository, "configure_event_emitter", None)
    if callable(configure_emitter):
        configure_emitter(functools.partial(emit_db_event, logger=EVENT_LOGGER))

    app.add_middleware(RequestContextMiddleware)

    background_executor = ThreadPoolExecutor(
        max_workers=max(2, config.pipeline.max_concurrent_jobs * 2),
        thread_name_prefix="pipeline",
    )
    app.state.background_executor = background_executor
    if services is None:
        services = build_services(config, repository, executor=background_executor)
    app.state.services = services
    object_store = services.object_store
    tracker = services.tracker
    derivatives = services.derivatives

    async def _run_blocking(operation: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        loop = asyncio.get_running_loop()
        context = contextvars.copy_context()
        call = functools.partial(operation, *args, **kwargs)
        return await loop.run_in_executor(background_executor, context.run, call)

    async def _execute_queue_entry(entry: QueuedJob) -> None:
        token = ACTOR_VAR.set(f"job:{entry.id}")
        try:
            report = await services.pipeline.run(entry.job_id, run_id=entry.options.get("runId"))
        finally:
            ACTOR_VAR.reset(token)
        entry.options["result"] = report.status.value
        if report.error:
            entry.options["error"] = report.error

    task_queue = PipelineQueue(_execute_queue_entry, max_workers=config.pipeline.max_concurrent_jobs)
    app.state.task_queue = task_queue

    async def _start_task_queue() -> None:
        await task_queue.start()

    async def _stop_task_queue() -> None:
        await task_queue.stop()
        background_executor.shutdown(wait=False, cancel_futures=True)

    app.add_event_handler("startup", _start_task_queue)
    app.add_event_handler("shutdown", _stop_task_queue)

    async def _require_job(job_id: str, owner_id: str) -> TranscriptionRecord:
        job = await _run_blocking(repository.get_job, job_id, owner_id)
        if job is None:
            raise HTTPException(status_code=404, detail="Transcription not found")
        return job

    async def _require_completed(job_id: str, owner_id: str) -> TranscriptionRecord:
        job = await _require_job(job_id, owner_id)
        if job.status is not JobStatus.COMPLETED:
            raise HTTPException(
                status_code=400,
                detail=f"Transcription must be completed first (currently {job.status.value})",
            )
        return job

    def _study_material_error(error: Exception) -> HTTPException:
        if isinstance(error, DerivativeUnavailableError):
            return HTTPException(status_code=503, detail=str(error))
        if isinstance(error, StructuringError):
            return HTTPException(status_code=502, detail=str(error))
        return HTTPException(status_code=400, detail=str(error))

    @app.post("/api/uploads", status_code=status.HTTP_201_CREATED)
    async def upload_sources(
        files: List[UploadFile] = File(...),
        title: Optional[str] = Form(None),
        owner_id: str = Header(DEFAULT_OWNER, alias="X-User-Id"),
    ) -> Dict[str, Any]:
        if not files:
            raise HTTPException(status_code=400, detail="No files provided")

        keys: List[str] = []
        for upload in files:
            filename = upload.filename or "upload.bin"
            data = await upload.read()
            if not data:
                raise HTTPException(status_code=400, detail=f"'{filename}' is empty")
            key = build_source_key(owner_id, filename)
            await _run_blocking(
                object_store.put, key, data, upload.content_type or "application/octet-stream"
            )
            keys.append(key)

        first = files[0]
        first_name = first.filename or "upload.bin"
        job = await _run_blocking(
            repository.create_job,
            owner_id,
            (title or "").strip() or Path(first_name).stem or "Untitled lecture",
            keys,
            source_type=source_type_for(first_name) if len(files) == 1 else "batch",
            mime_type=first.content_type,
            original_file_name=first_name,
        )
        _log_event("Created transcription", job_id=job.id, sources=len(keys))
        return {"transcription": _serialize_job(job)}

    @app.get("/api/transcriptions")
    async def list_transcriptions(
        owner_id: str = Header(DEFAULT_OWNER, alias="X-User-Id"),
    ) -> Dict[str, Any]:
        jobs = await _run_blocking(repository.list_jobs, owner_id)
        return {"transcriptions": [_serialize_summary(job) for job in jobs]}

    @app.get("/api/transcription/{job_id}")
    async def get_transcription(
        job_id: str,
        owner_id: str = Header(DEFAULT_OWNER, alias="X-User-Id"),
    ) -> Dict[str, Any]:
        return {"transcription": _serialize_job(await _require_job(job_id, owner_id))}

    @app.patch("/api/transcription/{job_id}")
    async def update_transcription(
        job_id: str,
        payload: TitleUpdatePayload,
        owner_id: str = Header(DEFAULT_OWNER, alias="X-User-Id"),
    ) -> Dict[str, Any]:
        await _require_job(job_id, owner_id)
        await _run_blocking(repository.update_title, job_id, payload.title.strip())
        _log_event("Renamed transcription", job_id=job_id)
        return {"transcription": _serialize_job(await _require_job(job_id, owner_id))}

    @app.delete(
        "/api/transcription/{job_id}",
        status_code=status.HTTP_204_NO_CONTENT,
        response_class=Response,
    )
    async def delete_transcription(
        job_id: str,
        owner_id: str = Header(DEFAULT_OWNER, alias="X-User-Id"),
    ) -> Response:
        job = await _require_job(job_id, owner_id)
        if job.is_active:
            raise HTTPException(status_code=409, detail="Cancel the transcription before deleting it")

        keys = list(job.source_keys) + [f"pdfs/{job.id}/raw-transcript.pdf"]
        if job.pdf_key:
            keys.append(job.pdf_key)
        for key in keys:
            try:
                await _run_blocking(object_store.delete, key)
            except (OSError, ValueError) as error:
                LOGGER.warning("Could not delete object %s of job %s: %s", key, job_id, error)
        await _run_blocking(repository.delete_job, job_id)
        _log_event("Deleted transcription", job_id=job_id, objects=len(keys))
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.post("/api/transcribe/{job_id}", status_code=status.HTTP_202_ACCEPTED)
    async def trigger_transcription(
        job_id: str,
        response: Response,
        reprocess: bool = Query(False),
        owner_id: str = Header(DEFAULT_OWNER, alias="X-User-Id"),
    ) -> Dict[str, Any]:
        await _require_job(job_id, owner_id)
        try:
            outcome, run_id = await _run_blocking(tracker.claim, job_id, reprocess=reprocess)
        except InvalidTransitionError as error:
            raise HTTPException(status_code=409, detail=str(error)) from error

        if outcome is StartOutcome.NOT_FOUND:
            raise HTTPException(status_code=404, detail="Transcription not found")
        if outcome is StartOutcome.CONFLICT:
            raise HTTPException(status_code=409, detail="Transcription is already in progress")
        if outcome is StartOutcome.ALREADY_COMPLETED:
            response.status_code = status.HTTP_200_OK
            return {"id": job_id, "status": JobStatus.COMPLETED.value}

        entry = await task_queue.enqueue(job_id, {"reprocess": reprocess, "runId": run_id})
        _log_event("Queued transcription", job_id=job_id, task_id=entry.id)
        return {"id": job_id, "status": JobStatus.PROCESSING.value, "taskId": entry.id}

    @app.post("/api/transcription/{job_id}/cancel")
    async def cancel_transcription(
        job_id: str,
        owner_id: str = Header(DEFAULT_OWNER, alias="X-User-Id"),
    ) -> Dict[str, Any]:
        await _require_job(job_id, owner_id)
        canceled = await _run_blocking(tracker.cancel, job_id)
        if not canceled:
            raise HTTPException(status_code=409, detail="Transcription is not in progress")
        _log_event("Canceled transcription", job_id=job_id)
        return {"id": job_id, "status": JobStatus.CANCELED.value}

    @app.post("/api/transcription/{job_id}/pdf")
    async def generate_pdf(
        job_id: str,
        payload: Optional[PdfRequest] = None,
        owner_id: str = Header(DEFAULT_OWNER, alias="X-User-Id"),
    ) -> Dict[str, Any]:
        request = payload or PdfRequest()
        job = await _require_completed(job_id, owner_id)
        try:
            result = await _run_blocking(
                derivatives.generate_pdf, job, kind=request.type, regenerate=request.regenerate
            )
        except PdfRenderError as error:
            raise HTTPException(status_code=500, detail=str(error)) from error
        except (DerivativeUnavailableError, ValueError) as error:
            raise _study_material_error(error) from error
        return {
            "key": result.key,
            "url": result.url,
            "cached": result.cached,
            "generatedAt": result.generated_at,
        }

    @app.post("/api/transcription/{job_id}/quiz", status_code=status.HTTP_201_CREATED)
    async def generate_quiz(
        job_id: str,
        payload: Optional[StudyMaterialRequest] = None,
        owner_id: str = Header(DEFAULT_OWNER, alias="X-User-Id"),
    ) -> Dict[str, Any]:
        request = payload or StudyMaterialRequest()
        job = await _require_completed(job_id, owner_id)
        try:
            quiz = await _run_blocking(
                derivatives.generate_quiz, job, count=request.count, language=request.language
            )
        except (DerivativeUnavailableError, StructuringError, ValueError) as error:
            raise _study_material_error(error) from error
        return {"quiz": _serialize_quiz(quiz)}

    @app.post("/api/transcription/{job_id}/flashcards", status_code=status.HTTP_201_CREATED)
    async def generate_flashcards(
        job_id: str,
        payload: Optional[StudyMaterialRequest] = None,
        owner_id: str = Header(DEFAULT_OWNER, alias="X-User-Id"),
    ) -> Dict[str, Any]:
        request = payload or StudyMaterialRequest()
        job = await _require_completed(job_id, owner_id)
        try:
            deck = await _run_blocking(
                derivatives.generate_flashcards, job, count=request.count, language=request.language
            )
        except (DerivativeUnavailableError, StructuringError, ValueError) as error:
            raise _study_material_error(error) from error
        return {"flashcardDeck": _serialize_deck(deck)}

    @app.get("/api/transcription/{job_id}/quiz")
    async def latest_quiz(
        job_id: str,
        owner_id: str = Header(DEFAULT_OWNER, alias="X-User-Id"),
    ) -> Dict[str, Any]:
        await _require_job(job_id, owner_id)
        quiz = await _run_blocking(repository.latest_quiz, job_id)
        if quiz is None:
            raise HTTPException(status_code=404, detail="No quiz generated yet")
        return {"quiz": _serialize_quiz(quiz)}

    @app.get("/api/transcription/{job_id}/quizzes")
    async def list_quizzes(
        job_id: str,
        owner_id: str = Header(DEFAULT_OWNER, alias="X-User-Id"),
    ) -> Dict[str, Any]:
        await _require_job(job_id, owner_id)
        quizzes = await _run_blocking(repository.list_quizzes, job_id)
        return {"quizzes": [_serialize_quiz(quiz) for quiz in quizzes]}

    @app.get("/api/transcription/{job_id}/flashcards")
    async def latest_flashcards(
        job_id: str,
        owner_id: str = Header(DEFAULT_OWNER, alias="X-User-Id"),
    ) -> Dict[str, Any]:
        await _require_job(job_id, owner_id)
        deck = await _run_blocking(repository.latest_flashcard_deck, job_id)
        if deck is None:
            raise HTTPException(status_code=404, detail="No flashcards generated yet")
        return {"flashcardDeck": _serialize_deck(deck)}

    @app.get("/api/transcription/{job_id}/flashcard-decks")
    async def list_flashcard_decks(
        job_id: str,
        owner_id: str = Header(DEFAULT_OWNER, alias="X-User-Id"),
    ) -> Dict[str, Any]:
        await _require_job(job_id, owner_id)
        decks = await _run_blocking(repository.list_flashcard_decks, job_id)
        return {"flashcardDecks": [_serialize_deck(deck) for deck in decks]}

    @app.get("/api/tasks")
    async def list_tasks() -> Dict[str, Any]:
        entries = await task_queue.list()
        return {"queue": [entry.to_dict() for entry in entries]}

    @app.get("/objects/{key:path}")
    async def download_object(
        key: str,
        expires: int = Query(...),
        signature: str = Query(...),
    ) -> Response:
        try:
            object_store.verify(key, expires, signature)
        except InvalidSignatureError as error:
            raise HTTPException(status_code=403, detail=str(error)) from error
        except ValueError as error:
            raise HTTPException(status_code=404, detail="Object not found") from error
        try:
            stored = await _run_blocking(object_store.get, key)
        except (ObjectNotFoundError, ValueError) as error:
            raise HTTPException(status_code=404, detail="Object not found") from error
        return Response(content=stored.data, media_type=stored.content_type)

    @app.post("/api/system/shutdown", status_code=status.HTTP_202_ACCEPTED)
    async def shutdown_application(request: Request) -> Dict[str, str]:
        server = getattr(request.app.state, "server", None)
        if server is None:
            raise HTTPException(status_code=503, detail="Shutdown is unavailable.")
        _log_event("Shutdown requested")
        server.should_exit = True
        return {"status": "shutting_down"}

    return app


__all__ = ["ContextualLoggerAdapter", "RequestContextMiddleware", "create_app"]
