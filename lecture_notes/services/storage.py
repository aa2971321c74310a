"""Persistence helpers backed by SQLite."""

from __future__ import annotations

import contextlib
import json
import logging
import sqlite3
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from ..config import AppConfig
from .naming import new_identifier
from .progress import ACTIVE_STATUSES, JobStatus


LOGGER = logging.getLogger(__name__)

_MISSING = object()

_JOB_COLUMNS = (
    "id, owner_id, title, source_keys, source_type, mime_type, original_file_name, "
    "status, progress, raw_text, structured_text, detected_language, transcription_model, "
    "error_message, pdf_key, pdf_generated_at, duration_seconds, run_id, created_at, updated_at"
)


class RecordNotFoundError(LookupError):
    """Raised when a transcription record does not exist."""


@dataclass(frozen=True)
class RunClaim:
    """Granted by :meth:`TranscriptionRepository.try_start` for one pipeline run.

    Writes tagged with *run_id* only land while the job still belongs to
    that run. *superseded_pdf_key* names the PDF of the previous run, which
    the new run no longer references.
    """

    run_id: str
    superseded_pdf_key: Optional[str] = None


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class TranscriptionRecord:
    id: str
    owner_id: str
    title: str
    source_keys: List[str]
    source_type: str
    mime_type: Optional[str]
    original_file_name: Optional[str]
    status: JobStatus
    progress: float
    raw_text: Optional[str]
    structured_text: Optional[str]
    detected_language: Optional[str]
    transcription_model: Optional[str]
    error_message: Optional[str]
    pdf_key: Optional[str]
    pdf_generated_at: Optional[str]
    duration_seconds: Optional[float]
    created_at: str
    updated_at: str
    run_id: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def study_content(self) -> str:
        """Structured notes when available, the raw transcript otherwise."""

        return self.structured_text or self.raw_text or ""

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "TranscriptionRecord":
        values = dict(row)
        values["source_keys"] = json.loads(values.get("source_keys") or "[]")
        values["status"] = JobStatus(values["status"])
        values["progress"] = float(values.get("progress") or 0.0)
        return cls(**values)


@dataclass
class QuizQuestion:
    question: str
    options: List[str]
    correct_answer: int
    explanation: str = ""
    id: str = ""
    position: int = 0


@dataclass
class QuizRecord:
    id: str
    transcription_id: str
    title: str
    created_at: str
    questions: List[QuizQuestion] = field(default_factory=list)


@dataclass
class Flashcard:
    front: str
    back: str
    category: Optional[str] = None
    id: str = ""
    position: int = 0


@dataclass
class FlashcardDeckRecord:
    id: str
    transcription_id: str
    title: str
    created_at: str
    cards: List[Flashcard] = field(default_factory=list)


class TranscriptionRepository:
    """Record store for transcription jobs and their study artifacts."""

    def __init__(
        self,
        config: AppConfig,
        *,
        event_emitter: Optional[Callable[..., None]] = None,
    ) -> None:
        self._db_path = config.database_file
        self._event_emitter: Optional[Callable[..., None]] = event_emitter

    def configure_event_emitter(self, emitter: Optional[Callable[..., None]]) -> None:
        """Register the callable responsible for emitting database events."""

        self._event_emitter = emitter

    @contextlib.contextmanager
    def _track_db_event(self, action: str, **payload: Any) -> Iterator[Dict[str, Any]]:
        """Emit a structured event capturing execution time for a DB action."""

        if self._event_emitter is None:
            yield payload
            return

        start = time.perf_counter()
        event_payload: Dict[str, Any] = dict(payload)
        try:
            yield event_payload
        except Exception as exc:
            event_payload.setdefault("status", "error")
            event_payload.setdefault("error", f"{exc.__class__.__name__}: {exc}")
            raise
        finally:
            duration_ms = (time.perf_counter() - start) * 1000.0
            event_payload.setdefault("status", "ok")
            filtered = {key: value for key, value in event_payload.items() if value is not None}
            self._event_emitter(action, payload=filtered, duration_ms=duration_ms)

    @staticmethod
    def _summarize_sql(statement: str) -> str:
        collapsed = " ".join(statement.strip().split())
        return collapsed[:180] + ("…" if len(collapsed) > 180 else "")

    def _execute(
        self,
        connection: sqlite3.Connection,
        statement: str,
        parameters: Sequence[Any] | None = None,
        *,
        action: str,
    ) -> sqlite3.Cursor:
        params: Tuple[Any, ...] = tuple(parameters or ())
        with self._track_db_event(
            action,
            sql=self._summarize_sql(statement),
            parameter_count=len(params),
        ) as event:
            cursor = connection.execute(statement, params)
            if cursor.rowcount >= 0:
                event.setdefault("rowcount", int(cursor.rowcount))
            return cursor

    @contextlib.contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        LOGGER.debug("Opening SQLite connection to %s", self._db_path)
        connection = sqlite3.connect(self._db_path, timeout=30.0)
        connection.row_factory = sqlite3.Row
        try:
            connection.execute("PRAGMA foreign_keys = ON")
            with connection:
                yield connection
        finally:
            connection.close()

    # ---------------------------------------------------------------------
    # Jobs
    # ---------------------------------------------------------------------
    def create_job(
        self,
        owner_id: str,
        title: str,
        source_keys: Sequence[str],
        *,
        source_type: str = "audio",
        mime_type: Optional[str] = None,
        original_file_name: Optional[str] = None,
    ) -> TranscriptionRecord:
        """Insert a Pending job and return it."""

        if not source_keys:
            raise ValueError("A job needs at least one source object")
        job_id = new_identifier()
        now = utc_now()
        LOGGER.debug("Creating job %s for owner %s with %s source(s)", job_id, owner_id, len(source_keys))
        with self._connect() as connection:
            self._execute(
                connection,
                "INSERT INTO transcriptions(id, owner_id, title, source_keys, source_type, mime_type, "
                "original_file_name, status, progress, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?)",
                (
                    job_id,
                    owner_id,
                    title,
                    json.dumps(list(source_keys)),
                    source_type,
                    mime_type,
                    original_file_name,
                    JobStatus.PENDING.value,
                    now,
                    now,
                ),
                action="transcriptions.insert",
            )
        return self.require_job(job_id)

    def get_job(self, job_id: str, owner_id: Optional[str] = None) -> Optional[TranscriptionRecord]:
        query = f"SELECT {_JOB_COLUMNS} FROM transcriptions WHERE id = ?"
        params: List[Any] = [job_id]
        if owner_id is not None:
            query += " AND owner_id = ?"
            params.append(owner_id)
        with self._connect() as connection:
            row = self._execute(connection, query, params, action="transcriptions.get").fetchone()
        return TranscriptionRecord.from_row(row) if row else None

    def require_job(self, job_id: str, owner_id: Optional[str] = None) -> TranscriptionRecord:
        record = self.get_job(job_id, owner_id)
        if record is None:
            raise RecordNotFoundError(f"Transcription {job_id} not found")
        return record

    def get_status(self, job_id: str) -> Optional[JobStatus]:
        with self._connect() as connection:
            row = self._execute(
                connection,
                "SELECT status FROM transcriptions WHERE id = ?",
                (job_id,),
                action="transcriptions.status",
            ).fetchone()
        return JobStatus(row["status"]) if row else None

    def list_jobs(self, owner_id: Optional[str] = None) -> List[TranscriptionRecord]:
        query = f"SELECT {_JOB_COLUMNS} FROM transcriptions"
        params: List[Any] = []
        if owner_id is not None:
            query += " WHERE owner_id = ?"
            params.append(owner_id)
        query += " ORDER BY created_at DESC, id"
        with self._connect() as connection:
            rows = self._execute(connection, query, params, action="transcriptions.list").fetchall()
        return [TranscriptionRecord.from_row(row) for row in rows]

    def update_title(self, job_id: str, title: str) -> bool:
        with self._connect() as connection:
            cursor = self._execute(
                connection,
                "UPDATE transcriptions SET title = ?, updated_at = ? WHERE id = ?",
                (title, utc_now(), job_id),
                action="transcriptions.update_title",
            )
        return cursor.rowcount > 0

    def delete_job(self, job_id: str) -> bool:
        with self._connect() as connection:
            cursor = self._execute(
                connection,
                "DELETE FROM transcriptions WHERE id = ?",
                (job_id,),
                action="transcriptions.delete",
            )
        deleted = cursor.rowcount > 0
        LOGGER.debug("Delete job %s -> %s", job_id, deleted)
        return deleted

    def try_start(self, job_id: str, allowed: Iterable[JobStatus]) -> Optional[RunClaim]:
        """Atomically move *job_id* from one of *allowed* into Processing.

        The previous run's results, PDF and error are cleared, progress
        restarts at zero and a fresh run id is stamped on the row. Returns
        ``None`` when the job is not in an allowed state.
        """

        allowed_values = [status.value for status in allowed]
        if not allowed_values:
            return None
        placeholders = ", ".join("?" for _ in allowed_values)
        run_id = new_identifier()
        with self._connect() as connection:
            cursor = self._execute(
                connection,
                "UPDATE transcriptions SET status = ?, progress = 0, run_id = ?, updated_at = ? "
                f"WHERE id = ? AND status IN ({placeholders})",
                (JobStatus.PROCESSING.value, run_id, utc_now(), job_id, *allowed_values),
                action="transcriptions.try_start",
            )
            if cursor.rowcount == 0:
                return None
            # The claim above holds the write lock, so the PDF key read here is
            # the one the previous run left behind.
            row = self._execute(
                connection,
                "SELECT pdf_key FROM transcriptions WHERE id = ?",
                (job_id,),
                action="transcriptions.previous_pdf",
            ).fetchone()
            self._execute(
                connection,
                "UPDATE transcriptions SET error_message = NULL, raw_text = NULL, "
                "structured_text = NULL, detected_language = NULL, transcription_model = NULL, "
                "duration_seconds = NULL, pdf_key = NULL, pdf_generated_at = NULL WHERE id = ?",
                (job_id,),
                action="transcriptions.reset_results",
            )
        return RunClaim(run_id=run_id, superseded_pdf_key=row["pdf_key"] if row else None)

    @staticmethod
    def _run_guard(run_id: Optional[str], expected: Iterable[JobStatus]) -> Tuple[str, List[Any]]:
        clauses = ""
        params: List[Any] = []
        if run_id is not None:
            clauses += " AND run_id = ?"
            params.append(run_id)
        expected_values = [status.value for status in expected]
        if expected_values:
            clauses += f" AND status IN ({', '.join('?' for _ in expected_values)})"
            params.extend(expected_values)
        return clauses, params

    def write_status(
        self,
        job_id: str,
        status: JobStatus,
        *,
        progress: Optional[float] = None,
        error_message: Any = _MISSING,
        expected: Iterable[JobStatus] = (),
        run_id: Optional[str] = None,
    ) -> bool:
        """Persist *status* when the stored status is one of *expected*.

        With *run_id* the write also requires the job to still belong to that
        run. An empty *expected* and no *run_id* write unconditionally.
        Returns whether a row was updated.
        """

        assignments = ["status = ?", "updated_at = ?"]
        params: List[Any] = [status.value, utc_now()]
        if progress is not None:
            assignments.append("progress = ?")
            params.append(float(progress))
        if error_message is not _MISSING:
            assignments.append("error_message = ?")
            params.append(error_message)
        guard, guard_params = self._run_guard(run_id, expected)
        query = f"UPDATE transcriptions SET {', '.join(assignments)} WHERE id = ?{guard}"
        with self._connect() as connection:
            cursor = self._execute(
                connection, query, [*params, job_id, *guard_params], action="transcriptions.write_status"
            )
        return cursor.rowcount > 0

    def save_raw_text(
        self,
        job_id: str,
        raw_text: str,
        *,
        duration_seconds: Optional[float],
        transcription_model: Optional[str],
        run_id: Optional[str] = None,
    ) -> bool:
        """Store the merged transcript; with *run_id* only while that run is processing."""

        guard, guard_params = self._run_guard(run_id, (JobStatus.PROCESSING,) if run_id else ())
        with self._connect() as connection:
            cursor = self._execute(
                connection,
                "UPDATE transcriptions SET raw_text = ?, duration_seconds = ?, "
                f"transcription_model = ?, updated_at = ? WHERE id = ?{guard}",
                (raw_text, duration_seconds, transcription_model, utc_now(), job_id, *guard_params),
                action="transcriptions.save_raw_text",
            )
        return cursor.rowcount > 0

    def save_structured_text(
        self,
        job_id: str,
        structured_text: str,
        detected_language: Optional[str] = None,
        *,
        run_id: Optional[str] = None,
    ) -> bool:
        """Store the notes; with *run_id* only while that run is structuring."""

        guard, guard_params = self._run_guard(run_id, (JobStatus.STRUCTURING,) if run_id else ())
        with self._connect() as connection:
            cursor = self._execute(
                connection,
                "UPDATE transcriptions SET structured_text = ?, detected_language = ?, "
                f"updated_at = ? WHERE id = ?{guard}",
                (structured_text, detected_language, utc_now(), job_id, *guard_params),
                action="transcriptions.save_structured_text",
            )
        return cursor.rowcount > 0

    def save_pdf_info(self, job_id: str, pdf_key: Optional[str], generated_at: Optional[str]) -> None:
        with self._connect() as connection:
            self._execute(
                connection,
                "UPDATE transcriptions SET pdf_key = ?, pdf_generated_at = ?, updated_at = ? WHERE id = ?",
                (pdf_key, generated_at, utc_now(), job_id),
                action="transcriptions.save_pdf_info",
            )

    # ---------------------------------------------------------------------
    # Quizzes
    # ---------------------------------------------------------------------
    def add_quiz(self, job_id: str, title: str, questions: Sequence[QuizQuestion]) -> QuizRecord:
        """Store a new quiz; earlier quizzes of the job are kept."""

        quiz = QuizRecord(id=new_identifier(), transcription_id=job_id, title=title, created_at=utc_now())
        with self._connect() as connection:
            self._execute(
                connection,
                "INSERT INTO quizzes(id, transcription_id, title, created_at) VALUES (?, ?, ?, ?)",
                (quiz.id, job_id, title, quiz.created_at),
                action="quizzes.insert",
            )
            for position, question in enumerate(questions):
                stored = QuizQuestion(
                    question=question.question,
                    options=list(question.options),
                    correct_answer=int(question.correct_answer),
                    explanation=question.explanation,
                    id=new_identifier(),
                    position=position,
                )
                self._execute(
                    connection,
                    "INSERT INTO quiz_questions(id, quiz_id, position, question, options, "
                    "correct_answer, explanation) VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (
                        stored.id,
                        quiz.id,
                        position,
                        stored.question,
                        json.dumps(stored.options),
                        stored.correct_answer,
                        stored.explanation,
                    ),
                    action="quiz_questions.insert",
                )
                quiz.questions.append(stored)
        LOGGER.debug("Stored quiz %s for job %s with %s question(s)", quiz.id, job_id, len(quiz.questions))
        return quiz

    def list_quizzes(self, job_id: str) -> List[QuizRecord]:
        """Return every quiz of *job_id*, newest first."""

        with self._connect() as connection:
            rows = self._execute(
                connection,
                "SELECT id, transcription_id, title, created_at FROM quizzes "
                "WHERE transcription_id = ? ORDER BY created_at DESC, rowid DESC",
                (job_id,),
                action="quizzes.list",
            ).fetchall()
            quizzes = [QuizRecord(**dict(row)) for row in rows]
            for quiz in quizzes:
                question_rows = self._execute(
                    connection,
                    "SELECT id, position, question, options, correct_answer, explanation "
                    "FROM quiz_questions WHERE quiz_id = ? ORDER BY position",
                    (quiz.id,),
                    action="quiz_questions.list",
                ).fetchall()
                quiz.questions = [
                    QuizQuestion(
                        question=row["question"],
                        options=json.loads(row["options"]),
                        correct_answer=int(row["correct_answer"]),
                        explanation=row["explanation"] or "",
                        id=row["id"],
                        position=int(row["position"]),
                    )
                    for row in question_rows
                ]
        return quizzes

    def latest_quiz(self, job_id: str) -> Optional[QuizRecord]:
        quizzes = self.list_quizzes(job_id)
        return quizzes[0] if quizzes else None

    # ---------------------------------------------------------------------
    # Flashcards
    # ---------------------------------------------------------------------
    def add_flashcard_deck(self, job_id: str, title: str, cards: Sequence[Flashcard]) -> FlashcardDeckRecord:
        """Store a new deck; earlier decks of the job are kept."""

        deck = FlashcardDeckRecord(
            id=new_identifier(), transcription_id=job_id, title=title, created_at=utc_now()
        )
        with self._connect() as connection:
            self._execute(
                connection,
                "INSERT INTO flashcard_decks(id, transcription_id, title, created_at) VALUES (?, ?, ?, ?)",
                (deck.id, job_id, title, deck.created_at),
                action="flashcard_decks.insert",
            )
            for position, card in enumerate(cards):
                stored = Flashcard(
                    front=card.front,
                    back=card.back,
                    category=card.category,
                    id=new_identifier(),
                    position=position,
                )
                self._execute(
                    connection,
                    "INSERT INTO flashcards(id, deck_id, position, front, back, category) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    (stored.id, deck.id, position, stored.front, stored.back, stored.category),
                    action="flashcards.insert",
                )
                deck.cards.append(stored)
        return deck

    def list_flashcard_decks(self, job_id: str) -> List[FlashcardDeckRecord]:
        """Return every deck of *job_id*, newest first."""

        with self._connect() as connection:
            rows = self._execute(
                connection,
                "SELECT id, transcription_id, title, created_at FROM flashcard_decks "
                "WHERE transcription_id = ? ORDER BY created_at DESC, rowid DESC",
                (job_id,),
                action="flashcard_decks.list",
            ).fetchall()
            decks = [FlashcardDeckRecord(**dict(row)) for row in rows]
            for deck in decks:
                card_rows = self._execute(
                    connection,
                    "SELECT id, position, front, back, category FROM flashcards "
                    "WHERE deck_id = ? ORDER BY position",
                    (deck.id,),
                    action="flashcards.list",
                ).fetchall()
                deck.cards = [Flashcard(**dict(row)) for row in card_rows]
        return decks

    def latest_flashcard_deck(self, job_id: str) -> Optional[FlashcardDeckRecord]:
        decks = self.list_flashcard_decks(job_id)
        return decks[0] if decks else None


__all__ = [
    "Flashcard",
    "FlashcardDeckRecord",
    "QuizQuestion",
    "QuizRecord",
    "RecordNotFoundError",
    "RunClaim",
    "TranscriptionRecord",
    "TranscriptionRepository",
    "utc_now",
]
