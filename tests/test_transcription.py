from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List

import pytest
import requests

from conftest import FakeTranscriber, make_wav_bytes
from lecture_notes.config import ServiceCredentials, ServiceSettings
from lecture_notes.processing.transcription import (
    OpenAICompatibleTranscription,
    RetryingTranscription,
    TranscriptionError,
    UsageMetrics,
)
from lecture_notes.services.retry import RetryPolicy, call_with_retry


SETTINGS = ServiceSettings(
    provider="groq",
    base_url="https://speech.example.test/v1/",
    model="whisper-large-v3-turbo",
    timeout_seconds=5,
)


class FakeResponse:
    def __init__(self, status_code: int, payload: Any = None, text: str = "") -> None:
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self) -> Any:
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class FakeSession:
    def __init__(self, responses: List[Any]) -> None:
        self.responses = list(responses)
        self.calls: List[Dict[str, Any]] = []

    def post(self, url: str, **kwargs: Any) -> FakeResponse:
        self.calls.append({"url": url, **kwargs})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture()
def chunk(tmp_path: Path) -> Path:
    path = tmp_path / "chunk_000.wav"
    path.write_bytes(make_wav_bytes(1.0))
    return path


def _engine(session: FakeSession, settings: ServiceSettings = SETTINGS) -> OpenAICompatibleTranscription:
    return OpenAICompatibleTranscription(settings, ServiceCredentials("key-123"), session=session)


def test_successful_call_returns_fixed_result(chunk: Path) -> None:
    session = FakeSession([FakeResponse(200, {"text": "  Hello students ", "duration": 1.0})])

    result = _engine(session).transcribe(chunk)

    assert result.text == "Hello students"
    assert result.provenance == "groq/whisper-large-v3-turbo"
    assert result.usage.audio_seconds == 1.0
    call = session.calls[0]
    assert call["url"] == "https://speech.example.test/v1/audio/transcriptions"
    assert call["headers"]["Authorization"] == "Bearer key-123"
    assert call["data"]["response_format"] == "verbose_json"


def test_missing_duration_falls_back_to_the_wav_header(chunk: Path) -> None:
    session = FakeSession([FakeResponse(200, {"text": "Hi"})])

    result = _engine(session).transcribe(chunk)

    assert result.usage.audio_seconds == pytest.approx(1.0)


@pytest.mark.parametrize(
    "status_code, retryable",
    [(400, False), (401, False), (403, False), (429, True), (500, True), (503, True)],
)
def test_http_errors_are_classified(chunk: Path, status_code: int, retryable: bool) -> None:
    session = FakeSession([FakeResponse(status_code, text="upstream said no")])

    with pytest.raises(TranscriptionError) as excinfo:
        _engine(session).transcribe(chunk)

    assert excinfo.value.retryable is retryable
    assert str(status_code) in str(excinfo.value)


def test_network_failures_are_retryable(chunk: Path) -> None:
    session = FakeSession([requests.exceptions.ConnectionError("refused")])

    with pytest.raises(TranscriptionError) as excinfo:
        _engine(session).transcribe(chunk)

    assert excinfo.value.retryable is True


def test_oversized_chunks_fail_without_a_request(chunk: Path) -> None:
    small = ServiceSettings(provider="groq", base_url="https://x", model="m", max_file_bytes=100)
    session = FakeSession([])

    with pytest.raises(TranscriptionError, match="limit"):
        _engine(session, small).transcribe(chunk)

    assert session.calls == []


def test_retry_policy_backoff_grows_exponentially() -> None:
    policy = RetryPolicy(retries=3, base_delay=2.0, jitter=0.0)

    assert [policy.delay_for(attempt) for attempt in range(3)] == [2.0, 4.0, 8.0]
    jittered = RetryPolicy(base_delay=10.0, jitter=0.1).delay_for(0)
    assert 9.0 <= jittered <= 11.0


def test_call_with_retry_retries_only_retryable_errors() -> None:
    attempts: List[int] = []
    sleeps: List[float] = []

    def flaky() -> str:
        attempts.append(1)
        if len(attempts) < 3:
            raise TranscriptionError("busy", retryable=True)
        return "ok"

    result = call_with_retry(
        flaky,
        policy=RetryPolicy(retries=2, base_delay=1.0, jitter=0.0),
        is_retryable=lambda error: getattr(error, "retryable", False),
        sleep=sleeps.append,
    )

    assert result == "ok"
    assert sleeps == [1.0, 2.0]


def test_retrying_engine_gives_up_on_permanent_errors(chunk: Path) -> None:
    engine = FakeTranscriber(fail_on=1, error=TranscriptionError("bad audio", retryable=False))

    with pytest.raises(TranscriptionError, match="bad audio"):
        RetryingTranscription(engine, RetryPolicy(retries=3, base_delay=0.0)).transcribe(chunk)

    assert len(engine.calls) == 1


def test_default_policy_does_not_retry(chunk: Path) -> None:
    engine = FakeTranscriber(fail_on=1, error=TranscriptionError("busy", retryable=True))

    with pytest.raises(TranscriptionError):
        RetryingTranscription(engine, RetryPolicy()).transcribe(chunk)

    assert len(engine.calls) == 1


def test_usage_metrics_add_up() -> None:
    total = UsageMetrics(audio_seconds=1.5, prompt_tokens=3) + UsageMetrics(completion_tokens=4)

    assert total == UsageMetrics(audio_seconds=1.5, prompt_tokens=3, completion_tokens=4)
