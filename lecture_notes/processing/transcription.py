"""Speech-to-text adapters returning one fixed result per chunk."""

from __future__ import annotations

import logging
import wave
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

import requests

from ..config import ServiceCredentials, ServiceSettings
from ..services.retry import RetryPolicy, call_with_retry


LOGGER = logging.getLogger(__name__)

_RETRYABLE_STATUS_CODES = frozenset({408, 409, 425, 429})


class TranscriptionError(RuntimeError):
    """Raised when a chunk could not be transcribed."""

    def __init__(self, message: str, *, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


@dataclass(frozen=True)
class UsageMetrics:
    """Usage reported by an external model call."""

    audio_seconds: float = 0.0
    prompt_tokens: int = 0
    completion_tokens: int = 0

    def __add__(self, other: "UsageMetrics") -> "UsageMetrics":
        return UsageMetrics(
            audio_seconds=self.audio_seconds + other.audio_seconds,
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
        )


@dataclass(frozen=True)
class ChunkTranscription:
    text: str
    model_id: str
    provider_id: str
    usage: UsageMetrics = UsageMetrics()

    @property
    def provenance(self) -> str:
        return f"{self.provider_id}/{self.model_id}" if self.provider_id else self.model_id


class TranscriptionEngine(Protocol):
    def transcribe(self, audio_path: Path) -> ChunkTranscription:
        """Transcribe one bounded audio file."""


def _wav_duration(audio_path: Path) -> float:
    try:
        with wave.open(str(audio_path), "rb") as handle:
            rate = handle.getframerate()
            return handle.getnframes() / float(rate) if rate else 0.0
    except (wave.Error, EOFError, OSError):
        return 0.0


class OpenAICompatibleTranscription:
    """Client for ``/audio/transcriptions`` endpoints (Groq, OpenAI and alike)."""

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
        self._url = settings.base_url.rstrip("/") + "/audio/transcriptions"

    def transcribe(self, audio_path: Path) -> ChunkTranscription:
        size = audio_path.stat().st_size
        if size > self._settings.max_file_bytes:
            raise TranscriptionError(
                f"Chunk {audio_path.name} is {size / (1024 * 1024):.1f} MB, above the "
                f"{self._settings.max_file_bytes / (1024 * 1024):.0f} MB limit of {self._settings.provider}"
            )

        LOGGER.debug("Posting %s (%s bytes) to %s", audio_path.name, size, self._url)
        try:
            with audio_path.open("rb") as handle:
                response = self._session.post(
                    self._url,
                    headers={"Authorization": f"Bearer {self._credentials.api_key}"},
                    files={"file": (audio_path.name, handle, "audio/wav")},
                    data={
                        "model": self._settings.model,
                        "response_format": "verbose_json",
                        "temperature": "0",
                    },
                    timeout=self._settings.timeout_seconds,
                )
        except requests.exceptions.Timeout as error:
            raise TranscriptionError(
                f"{self._settings.provider} transcription request timed out", retryable=True
            ) from error
        except requests.exceptions.ConnectionError as error:
            raise TranscriptionError(
                f"Network error connecting to {self._settings.provider}", retryable=True
            ) from error

        if response.status_code != 200:
            body = (response.text or "No response body")[:300]
            raise TranscriptionError(
                f"{self._settings.provider} returned {response.status_code}: {body}",
                retryable=response.status_code in _RETRYABLE_STATUS_CODES or response.status_code >= 500,
            )

        try:
            payload: Dict[str, Any] = response.json()
        except ValueError as error:
            raise TranscriptionError(
                f"Unable to parse {self._settings.provider} transcription response"
            ) from error

        text = str(payload.get("text") or "").strip()
        duration = payload.get("duration")
        seconds = float(duration) if isinstance(duration, (int, float)) else _wav_duration(audio_path)
        LOGGER.debug("Chunk %s transcribed: %s chars", audio_path.name, len(text))
        return ChunkTranscription(
            text=text,
            model_id=self._settings.model,
            provider_id=self._settings.provider,
            usage=UsageMetrics(audio_seconds=seconds),
        )


class FasterWhisperTranscription:
    """Local transcription engine backed by :mod:`faster_whisper`."""

    def __init__(
        self,
        model_size: str = "base",
        *,
        download_root: Optional[Path] = None,
        compute_type: str = "int8",
        beam_size: int = 5,
    ) -> None:
        try:
            from faster_whisper import WhisperModel
        except ImportError as exc:  # pragma: no cover - exercised in runtime, not tests
            raise RuntimeError("faster-whisper is not installed") from exc

        self._model_size = model_size
        self._beam_size = beam_size
        self._model = WhisperModel(
            model_size,
            device="cpu",
            compute_type=compute_type,
            download_root=str(download_root) if download_root is not None else None,
        )
        LOGGER.debug("Loaded faster_whisper model '%s' (download_root=%s)", model_size, download_root)

    def transcribe(self, audio_path: Path) -> ChunkTranscription:
        segments, info = self._model.transcribe(str(audio_path), beam_size=self._beam_size)
        lines = [str(getattr(segment, "text", "")).strip() for segment in segments]
        text = " ".join(line for line in lines if line)
        duration = float(getattr(info, "duration", 0.0) or 0.0)
        return ChunkTranscription(
            text=text,
            model_id=f"faster-whisper-{self._model_size}",
            provider_id="local",
            usage=UsageMetrics(audio_seconds=duration),
        )


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, TranscriptionError) and error.retryable


class RetryingTranscription:
    """Wrap an engine with bounded exponential backoff for transient failures."""

    def __init__(self, engine: TranscriptionEngine, policy: RetryPolicy) -> None:
        self._engine = engine
        self._policy = policy

    def transcribe(self, audio_path: Path) -> ChunkTranscription:
        return call_with_retry(
            lambda: self._engine.transcribe(audio_path),
            policy=self._policy,
            is_retryable=_is_retryable,
            description=f"Transcription of {audio_path.name}",
        )


__all__ = [
    "ChunkTranscription",
    "FasterWhisperTranscription",
    "OpenAICompatibleTranscription",
    "RetryingTranscription",
    "TranscriptionEngine",
    "TranscriptionError",
    "UsageMetrics",
]
