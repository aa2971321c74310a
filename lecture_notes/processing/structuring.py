"""Text-generation adapter: study notes, quizzes and flashcards."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import requests
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from ..config import ServiceCredentials, ServiceSettings
from ..services.storage import Flashcard, QuizQuestion
from .transcription import UsageMetrics


LOGGER = logging.getLogger(__name__)

DEFAULT_LANGUAGE = "English"
TRUNCATION_NOTE = "\n\n[Note: Transcription was truncated due to length]"

STRUCTURING_PROMPT = """You are an expert at transforming raw lecture transcriptions into well-structured, digestible content.

The very first line of your reply must be `Language: <name>`, naming in English the language the lecture is held in. Write the notes themselves in that language.

After that line, transform the transcription into a well-organized Markdown document:

## Structure
1. Title: a concise, descriptive `#` heading
2. Overview: two or three sentences stating the main topics directly
3. Main sections with `##` headings and `###` sub-sections where needed
4. Bullet points for concepts, definitions and takeaways
5. Markdown tables for comparisons or structured data

## Formatting
- **Bold** for key terms, *italic* for technical terms on first use
- Numbered lists for sequential steps
- `code` formatting for commands or formulas
- Short paragraphs of two to four sentences

## Content
- Present the information directly; never describe the document ("This lecture covers...")
- Preserve all important information and fix transcription errors
- Remove filler words, repetitions and verbal tics
- Keep the logical flow of the lecture and add nothing that was not said"""

QUIZ_PROMPT = """You write multiple-choice exam questions from lecture notes.
Reply with JSON only: {{"questions": [{{"question": str, "options": [str, str, str, str], "correctAnswer": <index of the correct option>, "explanation": str}}]}}.
Write exactly {count} questions in {language}. Every question has four options and exactly one correct answer.
Test understanding of the material, not trivia about the document."""

FLASHCARD_PROMPT = """You write study flashcards from lecture notes.
Reply with JSON only: {{"flashcards": [{{"front": str, "back": str, "category": str}}]}}.
Write exactly {count} cards in {language}. The front holds a term or question, the back a concise answer.
The category is a short topic label."""

_LANGUAGE_LINE = re.compile(r"^\s*\**\s*language\s*\**\s*:\s*\**\s*(?P<name>[^*\n]+?)\s*\**\s*$", re.IGNORECASE)
_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


class StructuringError(RuntimeError):
    """Raised when the text-generation service fails or replies unusably."""


@dataclass(frozen=True)
class Completion:
    text: str
    model_id: str
    usage: UsageMetrics


@dataclass(frozen=True)
class StructuredNotes:
    structured_text: str
    detected_language: str
    usage: UsageMetrics


class _QuizQuestionPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    question: str = Field(..., min_length=1)
    options: List[str] = Field(..., min_length=2)
    correct_answer: int = Field(..., alias="correctAnswer")
    explanation: str = ""

    @field_validator("options")
    @classmethod
    def _strip_options(cls, value: List[str]) -> List[str]:
        cleaned = [str(option).strip() for option in value]
        if any(not option for option in cleaned):
            raise ValueError("options must not be blank")
        return cleaned

    @model_validator(mode="after")
    def _check_answer(self) -> "_QuizQuestionPayload":
        if not 0 <= self.correct_answer < len(self.options):
            raise ValueError("correctAnswer must index one of the options")
        return self


class _FlashcardPayload(BaseModel):
    front: str = Field(..., min_length=1)
    back: str = Field(..., min_length=1)
    category: Optional[str] = None


class ChatCompletionClient:
    """Minimal client for OpenAI compatible ``/chat/completions`` endpoints."""

    def __init__(
        self,
        settings: ServiceSettings,
        credentials: ServiceCredentials,
        *,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._settings = settings
        self._credentials = credentials
        self._session = session or requests.Session()
        self._url = settings.base_url.rstrip("/") + "/chat/completions"

    @property
    def model(self) -> str:
        return self._settings.model

    def complete(
        self,
        messages: Sequence[Dict[str, str]],
        *,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        json_mode: bool = False,
    ) -> Completion:
        body: Dict[str, Any] = {
            "model": self._settings.model,
            "messages": list(messages),
            "temperature": self._settings.temperature if temperature is None else temperature,
            "max_tokens": max_tokens or self._settings.max_tokens,
        }
        if json_mode:
            body["response_format"] = {"type": "json_object"}
        try:
            response = self._session.post(
                self._url,
                headers={"Authorization": f"Bearer {self._credentials.api_key}"},
                json=body,
                timeout=self._settings.timeout_seconds,
            )
        except requests.exceptions.RequestException as error:
            raise StructuringError(f"{self._settings.provider} request failed: {error}") from error

        if response.status_code != 200:
            raise StructuringError(
                f"{self._settings.provider} returned {response.status_code}: {(response.text or '')[:300]}"
            )
        try:
            payload = response.json()
            text = payload["choices"][0]["message"].get("content") or ""
        except (ValueError, KeyError, IndexError, TypeError) as error:
            raise StructuringError("Malformed chat completion response") from error

        usage = payload.get("usage") or {}
        return Completion(
            text=str(text),
            model_id=str(payload.get("model") or self._settings.model),
            usage=UsageMetrics(
                prompt_tokens=int(usage.get("prompt_tokens") or 0),
                completion_tokens=int(usage.get("completion_tokens") or 0),
            ),
        )


def split_language_line(reply: str) -> tuple[str, Optional[str]]:
    """Split a leading ``Language: X`` line from *reply*."""

    stripped = reply.strip()
    first, _, rest = stripped.partition("\n")
    match = _LANGUAGE_LINE.match(first)
    if match is None:
        return stripped, None
    return rest.strip(), match.group("name").strip()


def _load_json_reply(reply: str) -> Any:
    cleaned = _FENCE.sub("", reply.strip())
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as error:
        raise StructuringError(f"Model reply is not valid JSON: {error.msg}") from error


def _items_from(payload: Any, key: str) -> List[Any]:
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        items = payload.get(key)
        if isinstance(items, list):
            return items
    raise StructuringError(f"Model reply has no '{key}' list")


class StructuringService:
    """Produce study notes and derived study material from lecture text."""

    def __init__(self, client: ChatCompletionClient, *, max_input_chars: int = 100_000) -> None:
        self._client = client
        self._max_input_chars = max_input_chars

    def _prepare(self, text: str) -> str:
        if len(text) <= self._max_input_chars:
            return text
        LOGGER.info("Text too long (%s chars), truncating to %s", len(text), self._max_input_chars)
        return text[: self._max_input_chars] + TRUNCATION_NOTE

    def structure(self, raw_text: str, title: str) -> StructuredNotes:
        """Rewrite *raw_text* into Markdown notes and detect its language."""

        LOGGER.info("Structuring transcription '%s' (%s chars)", title, len(raw_text))
        completion = self._client.complete(
            [
                {"role": "system", "content": STRUCTURING_PROMPT},
                {
                    "role": "user",
                    "content": f'Lecture Title: "{title}"\n\nTranscription:\n\n{self._prepare(raw_text)}',
                },
            ]
        )
        notes, language = split_language_line(completion.text)
        if not notes:
            raise StructuringError("Language model returned an empty response")
        return StructuredNotes(
            structured_text=notes,
            detected_language=language or DEFAULT_LANGUAGE,
            usage=completion.usage,
        )

    def generate_quiz(
        self,
        content: str,
        title: str,
        count: int = 10,
        language: str = DEFAULT_LANGUAGE,
    ) -> List[QuizQuestion]:
        """Return up to *count* validated multiple-choice questions."""

        completion = self._client.complete(
            [
                {"role": "system", "content": QUIZ_PROMPT.format(count=count, language=language)},
                {"role": "user", "content": f'Lecture Title: "{title}"\n\nNotes:\n\n{self._prepare(content)}'},
            ],
            json_mode=True,
        )
        questions: List[QuizQuestion] = []
        for raw in _items_from(_load_json_reply(completion.text), "questions"):
            try:
                item = _QuizQuestionPayload.model_validate(raw)
            except ValidationError as error:
                LOGGER.warning("Dropping invalid quiz question: %s", error.errors()[0].get("msg"))
                continue
            questions.append(
                QuizQuestion(
                    question=item.question.strip(),
                    options=item.options,
                    correct_answer=item.correct_answer,
                    explanation=item.explanation.strip(),
                )
            )
        if not questions:
            raise StructuringError("Language model produced no usable quiz questions")
        return questions[:count]

    def generate_flashcards(
        self,
        content: str,
        title: str,
        count: int = 20,
        language: str = DEFAULT_LANGUAGE,
    ) -> List[Flashcard]:
        """Return up to *count* validated flashcards."""

        completion = self._client.complete(
            [
                {"role": "system", "content": FLASHCARD_PROMPT.format(count=count, language=language)},
                {"role": "user", "content": f'Lecture Title: "{title}"\n\nNotes:\n\n{self._prepare(content)}'},
            ],
            json_mode=True,
        )
        cards: List[Flashcard] = []
        for raw in _items_from(_load_json_reply(completion.text), "flashcards"):
            try:
                item = _FlashcardPayload.model_validate(raw)
            except ValidationError:
                LOGGER.warning("Dropping invalid flashcard: %r", raw)
                continue
            category = (item.category or "").strip() or None
            cards.append(Flashcard(front=item.front.strip(), back=item.back.strip(), category=category))
        if not cards:
            raise StructuringError("Language model produced no usable flashcards")
        return cards[:count]


__all__ = [
    "ChatCompletionClient",
    "Completion",
    "DEFAULT_LANGUAGE",
    "StructuredNotes",
    "StructuringError",
    "StructuringService",
    "TRUNCATION_NOTE",
    "split_language_line",
]
