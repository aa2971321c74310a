"""Assemble the collaborators of the pipeline from the application config."""

from __future__ import annotations

import logging
from concurrent.futures import Executor
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from ..config import AppConfig, ConfigurationError
from ..processing.pdf import PdfGenerator
from ..processing.segmentation import Segmenter
from ..processing.structuring import ChatCompletionClient, StructuringService
from ..processing.transcription import (
    ChunkTranscription,
    FasterWhisperTranscription,
    OpenAICompatibleTranscription,
    RetryingTranscription,
    TranscriptionEngine,
    TranscriptionError,
)
from .derivatives import DerivativeService
from .objects import LocalObjectStore
from .pipeline import TranscriptionPipeline
from .progress import ProgressTracker
from .retry import RetryPolicy
from .storage import TranscriptionRepository


LOGGER = logging.getLogger(__name__)


class UnavailableTranscription:
    """Stand-in engine used when the speech service has no credentials."""

    def __init__(self, reason: str) -> None:
        self.reason = reason

    def transcribe(self, audio_path: Path) -> ChunkTranscription:
        raise TranscriptionError(self.reason)


@dataclass
class ServiceContainer:
    """Everything the HTTP surface and the CLI need to run jobs."""

    repository: TranscriptionRepository
    object_store: LocalObjectStore
    tracker: ProgressTracker
    derivatives: DerivativeService
    pipeline: TranscriptionPipeline


def _build_transcriber(config: AppConfig, environ: Optional[Mapping[str, str]]) -> TranscriptionEngine:
    speech = config.speech
    if speech.provider == "local":
        return FasterWhisperTranscription(speech.model, download_root=config.storage_root / "models")
    try:
        credentials = speech.resolve_credentials(environ)
    except ConfigurationError as error:
        LOGGER.warning("Speech service unavailable: %s", error)
        return UnavailableTranscription(str(error))
    return OpenAICompatibleTranscription(speech, credentials)


def _build_structuring(
    config: AppConfig,
    environ: Optional[Mapping[str, str]],
    client: Optional[ChatCompletionClient],
) -> Optional[StructuringService]:
    if client is None:
        try:
            credentials = config.language_model.resolve_credentials(environ)
        except ConfigurationError as error:
            LOGGER.warning("Language model unavailable, notes will not be structured: %s", error)
            return None
        client = ChatCompletionClient(config.language_model, credentials)
    return StructuringService(client, max_input_chars=config.pipeline.max_structuring_chars)


def build_services(
    config: AppConfig,
    repository: TranscriptionRepository,
    *,
    environ: Optional[Mapping[str, str]] = None,
    transcriber: Optional[TranscriptionEngine] = None,
    chat_client: Optional[ChatCompletionClient] = None,
    executor: Optional[Executor] = None,
) -> ServiceContainer:
    """Wire the pipeline for *config*, allowing adapters to be injected."""

    settings = config.pipeline
    object_store = LocalObjectStore(config.objects_root, secret=config.signing_secret)
    segmenter = Segmenter(
        scratch_root=config.scratch_root,
        chunk_seconds=settings.chunk_seconds,
        silence_search_seconds=settings.silence_search_seconds,
    )

    engine = transcriber if transcriber is not None else _build_transcriber(config, environ)
    if settings.transcription_retries > 0:
        engine = RetryingTranscription(
            engine,
            RetryPolicy(retries=settings.transcription_retries, base_delay=settings.retry_base_delay),
        )

    structuring = _build_structuring(config, environ, chat_client)
    pdf_generator = PdfGenerator(
        repository,
        object_store,
        url_ttl_seconds=settings.signed_url_ttl_seconds,
    )
    derivatives = DerivativeService(
        repository,
        structuring=structuring,
        pdf_generator=pdf_generator,
        settings=settings,
    )
    tracker = ProgressTracker(repository, object_store=object_store)
    pipeline = TranscriptionPipeline(
        repository,
        tracker,
        object_store,
        segmenter,
        engine,
        derivatives,
        settings=settings,
        scratch_root=config.scratch_root,
        executor=executor,
    )
    return ServiceContainer(
        repository=repository,
        object_store=object_store,
        tracker=tracker,
        derivatives=derivatives,
        pipeline=pipeline,
    )


__all__ = ["ServiceContainer", "UnavailableTranscription", "build_services"]
