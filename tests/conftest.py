from __future__ import annotations

import io
import sys
import wave
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import numpy as np
import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from lecture_notes.bootstrap import Bootstrapper
from lecture_notes.config import AppConfig
from lecture_notes.processing.structuring import Completion
from lecture_notes.processing.transcription import ChunkTranscription, TranscriptionError, UsageMetrics
from lecture_notes.services.storage import TranscriptionRepository


def make_wav_bytes(
    seconds: float,
    *,
    rate: int = 16_000,
    frequency: float = 220.0,
    silences: Sequence[float] = (),
) -> bytes:
    """Return a mono 16-bit WAV tone; each entry of *silences* mutes 100 ms from that second."""

    count = int(seconds * rate)
    timeline = np.arange(count) / float(rate)
    samples = 0.4 * np.sin(2 * np.pi * frequency * timeline)
    for start in silences:
        first = int(start * rate)
        samples[first : first + int(0.1 * rate)] = 0.0
    pcm = (samples * 32767).astype("<i2")
    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as writer:
        writer.setnchannels(1)
        writer.setsampwidth(2)
        writer.setframerate(rate)
        writer.writeframes(pcm.tobytes())
    return buffer.getvalue()


class FakeTranscriber:
    """Return ``text-<n>`` for the n-th call; optional per-call hooks and failures."""

    def __init__(
        self,
        *,
        fail_on: Optional[int] = None,
        error: Optional[Exception] = None,
        on_call=None,
    ) -> None:
        self.calls: List[Path] = []
        self._fail_on = fail_on
        self._error = error or TranscriptionError("speech service returned 500")
        self._on_call = on_call

    def transcribe(self, audio_path: Path) -> ChunkTranscription:
        self.calls.append(audio_path)
        index = len(self.calls)
        if self._on_call is not None:
            self._on_call(index)
        if self._fail_on == index:
            raise self._error
        return ChunkTranscription(
            text=f"text-{index}",
            model_id="whisper-test",
            provider_id="fake",
            usage=UsageMetrics(audio_seconds=1.0),
        )


class FakeChatClient:
    """Answer chat completions from a queue of canned replies or exceptions."""

    model = "fake-llm"

    def __init__(
        self,
        replies: Optional[Sequence[object]] = None,
        *,
        default: Optional[str] = None,
        on_call=None,
    ) -> None:
        self.replies = list(replies or [])
        self.default = default
        self.requests: List[Dict[str, object]] = []
        self._on_call = on_call

    def complete(self, messages, *, temperature=None, max_tokens=None, json_mode=False) -> Completion:
        self.requests.append({"messages": list(messages), "json_mode": json_mode})
        if self._on_call is not None:
            self._on_call(len(self.requests))
        if self.replies:
            reply = self.replies.pop(0)
        elif self.default is not None:
            reply = self.default
        else:
            system = str(messages[0]["content"])
            if "multiple-choice" in system:
                reply = QUIZ_REPLY
            elif "flashcards" in system:
                reply = FLASHCARD_REPLY
            else:
                reply = NOTES_REPLY
        if isinstance(reply, Exception):
            raise reply
        return Completion(text=str(reply), model_id=self.model, usage=UsageMetrics(prompt_tokens=10))


NOTES_REPLY = "Language: German\n# Thermodynamics\n\n## Overview\n\n- **Entropy** always grows"
QUIZ_REPLY = (
    '{"questions": [{"question": "What grows?", "options": ["Entropy", "Mass", "Charge", "Spin"],'
    ' "correctAnswer": 0, "explanation": "Second law"}]}'
)
FLASHCARD_REPLY = '{"flashcards": [{"front": "Entropy", "back": "Measure of disorder", "category": "Basics"}]}'


@pytest.fixture()
def temp_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> AppConfig:
    monkeypatch.chdir(tmp_path)
    config = AppConfig.from_mapping(
        {
            "storage_root": "storage",
            "database_file": "storage/lecture_notes.db",
            "scratch_root": "storage/_scratch",
            "pipeline": {"chunk_seconds": 1, "max_concurrent_jobs": 1},
            "signing_secret": "test-secret",
        },
        base_path=tmp_path,
        environ={},
    )
    Bootstrapper(config).initialize()
    return config


@pytest.fixture()
def repository(temp_config: AppConfig) -> TranscriptionRepository:
    return TranscriptionRepository(temp_config)
