"""On-demand generation of PDFs, quizzes and flashcard decks for a job."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional

from ..config import PipelineSettings
from .storage import FlashcardDeckRecord, QuizRecord, TranscriptionRecord, TranscriptionRepository

if TYPE_CHECKING:  # pragma: no cover
    from ..processing.pdf import PdfGenerator, PdfResult
    from ..processing.structuring import StructuringService


LOGGER = logging.getLogger(__name__)

DEFAULT_LANGUAGE = "English"


class DerivativeUnavailableError(RuntimeError):
    """Raised when the collaborator for a derivative is not configured."""


class DerivativeService:
    """Each call produces a new artifact; quizzes and decks keep their history."""

    def __init__(
        self,
        repository: TranscriptionRepository,
        *,
        structuring: Optional["StructuringService"],
        pdf_generator: Optional["PdfGenerator"],
        settings: PipelineSettings,
    ) -> None:
        self._repository = repository
        self._structuring = structuring
        self._pdf_generator = pdf_generator
        self._settings = settings

    @property
    def structuring(self) -> Optional["StructuringService"]:
        return self._structuring

    def _require_structuring(self) -> "StructuringService":
        if self._structuring is None:
            raise DerivativeUnavailableError("No language model is configured")
        return self._structuring

    @staticmethod
    def _content(job: TranscriptionRecord) -> str:
        content = job.study_content
        if not content.strip():
            raise ValueError(f"Transcription {job.id} has no text to build study material from")
        return content

    def generate_pdf(
        self,
        job: TranscriptionRecord,
        *,
        kind: str = "structured",
        regenerate: bool = False,
    ) -> "PdfResult":
        if self._pdf_generator is None:
            raise DerivativeUnavailableError("PDF rendering is not configured")
        return self._pdf_generator.generate(job, kind=kind, regenerate=regenerate)

    def generate_quiz(
        self,
        job: TranscriptionRecord,
        *,
        count: Optional[int] = None,
        language: Optional[str] = None,
    ) -> QuizRecord:
        questions = self._require_structuring().generate_quiz(
            self._content(job),
            job.title,
            count or self._settings.quiz_question_count,
            language or job.detected_language or DEFAULT_LANGUAGE,
        )
        quiz = self._repository.add_quiz(job.id, f"Quiz: {job.title}", questions)
        LOGGER.info("Quiz saved for %s: %s with %s questions", job.id, quiz.id, len(quiz.questions))
        return quiz

    def generate_flashcards(
        self,
        job: TranscriptionRecord,
        *,
        count: Optional[int] = None,
        language: Optional[str] = None,
    ) -> FlashcardDeckRecord:
        cards = self._require_structuring().generate_flashcards(
            self._content(job),
            job.title,
            count or self._settings.flashcard_count,
            language or job.detected_language or DEFAULT_LANGUAGE,
        )
        deck = self._repository.add_flashcard_deck(job.id, f"Flashcards: {job.title}", cards)
        LOGGER.info("Flashcard deck saved for %s: %s with %s cards", job.id, deck.id, len(deck.cards))
        return deck


__all__ = ["DerivativeService", "DerivativeUnavailableError"]
