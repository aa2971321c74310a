"""Configuration loading utilities for the Lecture Notes service."""

from __future__ import annotations

import contextlib
import json
import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple


LOGGER = logging.getLogger(__name__)


_PERMISSION_SENTINEL = ".lecture_notes_write_check"
_DEFAULT_SIGNING_SECRET = "lecture-notes-development-secret"


class ConfigurationError(RuntimeError):
    """Raised when a required setting or credential is missing."""


def is_writable_directory(path: Path) -> bool:
    """Create *path* if needed and probe it with a throwaway file."""

    probe = path / _PERMISSION_SENTINEL
    try:
        path.mkdir(parents=True, exist_ok=True)
        probe.write_text("ok", encoding="utf-8")
    except OSError:
        return False
    with contextlib.suppress(OSError):
        probe.unlink()
    return True


def _first_writable(label: str, preferred: Path, *alternatives: Path) -> Tuple[Path, bool]:
    """Pick the first writable directory out of *preferred* and *alternatives*.

    The flag is ``True`` when an alternative was chosen. If nothing is
    writable the preferred path comes back so bootstrap can fail loudly.
    """

    preferred = preferred.resolve()
    if is_writable_directory(preferred):
        return preferred, False
    for option in (path.resolve() for path in alternatives):
        if option != preferred and is_writable_directory(option):
            LOGGER.warning("%s directory %s is read-only; falling back to %s", label, preferred, option)
            return option, True
    LOGGER.warning("%s directory %s is read-only and nothing else is usable", label, preferred)
    return preferred, False


def _place_database(configured: Path, preferred_storage: Path, storage_root: Path) -> Path:
    """Move the database next to a relocated storage root when required."""

    candidates = []
    if storage_root != preferred_storage:
        with contextlib.suppress(ValueError):
            candidates.append(storage_root / configured.relative_to(preferred_storage))
    candidates.append(configured)
    candidates.append(storage_root / configured.name)

    for candidate in dict.fromkeys(path.resolve() for path in candidates):
        if is_writable_directory(candidate.parent):
            if candidate != configured:
                LOGGER.warning("Database %s relocated to %s", configured, candidate)
            return candidate
    return configured


@dataclass(frozen=True)
class ServiceCredentials:
    """Secret material handed explicitly to an external service adapter."""

    api_key: str

    def __repr__(self) -> str:  # never leak the key into logs
        return "ServiceCredentials(api_key='***')"


@dataclass(frozen=True)
class ServiceSettings:
    """Connection settings for an OpenAI compatible HTTP service."""

    provider: str
    base_url: str
    model: str
    api_key_env: str = "GROQ_API_KEY"
    timeout_seconds: float = 180.0
    temperature: float = 0.3
    max_tokens: int = 16000
    max_file_bytes: int = 25 * 1024 * 1024

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], *, defaults: "ServiceSettings") -> "ServiceSettings":
        values: Dict[str, Any] = {}
        for name in (
            "provider",
            "base_url",
            "model",
            "api_key_env",
            "timeout_seconds",
            "temperature",
            "max_tokens",
            "max_file_bytes",
        ):
            if name in mapping and mapping[name] is not None:
                values[name] = mapping[name]
        return replace(defaults, **values)

    def resolve_credentials(self, environ: Optional[Mapping[str, str]] = None) -> ServiceCredentials:
        """Return credentials for this service read from *environ*."""

        source = os.environ if environ is None else environ
        api_key = (source.get(self.api_key_env) or "").strip()
        if not api_key:
            raise ConfigurationError(
                f"Environment variable {self.api_key_env} must be set to use the {self.provider} service."
            )
        return ServiceCredentials(api_key=api_key)


DEFAULT_SPEECH_SETTINGS = ServiceSettings(
    provider="groq",
    base_url="https://api.groq.com/openai/v1",
    model="whisper-large-v3-turbo",
    timeout_seconds=600.0,
)

DEFAULT_LANGUAGE_MODEL_SETTINGS = ServiceSettings(
    provider="groq",
    base_url="https://api.groq.com/openai/v1",
    model="openai/gpt-oss-120b",
)


@dataclass(frozen=True)
class PipelineSettings:
    chunk_seconds: float = 300.0
    silence_search_seconds: float = 0.0
    transcription_retries: int = 0
    retry_base_delay: float = 2.0
    max_structuring_chars: int = 100_000
    quiz_question_count: int = 10
    flashcard_count: int = 20
    max_concurrent_jobs: int = 2
    signed_url_ttl_seconds: int = 86_400

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any]) -> "PipelineSettings":
        defaults = cls()
        values: Dict[str, Any] = {}
        for name, default in defaults.__dict__.items():
            raw = mapping.get(name)
            if raw is None:
                continue
            values[name] = type(default)(raw)
        settings = replace(defaults, **values)
        if settings.chunk_seconds <= 0:
            raise ConfigurationError("pipeline.chunk_seconds must be positive")
        if settings.transcription_retries < 0:
            raise ConfigurationError("pipeline.transcription_retries cannot be negative")
        return settings


@dataclass(frozen=True)
class AppConfig:
    """Runtime paths and service settings for the application."""

    storage_root: Path
    database_file: Path
    scratch_root: Path
    pipeline: PipelineSettings = field(default_factory=PipelineSettings)
    speech: ServiceSettings = DEFAULT_SPEECH_SETTINGS
    language_model: ServiceSettings = DEFAULT_LANGUAGE_MODEL_SETTINGS
    signing_secret: str = _DEFAULT_SIGNING_SECRET

    @property
    def objects_root(self) -> Path:
        """Location of the local object store."""

        return (self.storage_root / "objects").resolve()

    @classmethod
    def from_mapping(
        cls,
        mapping: Dict[str, Any],
        *,
        base_path: Path,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "AppConfig":
        env = os.environ if environ is None else environ

        preferred_storage = (base_path / mapping["storage_root"]).resolve()
        storage_root, _ = _first_writable(
            "Storage", preferred_storage, Path.home() / ".lecture_notes" / "storage"
        )
        database_file = _place_database(
            (base_path / mapping["database_file"]).resolve(), preferred_storage, storage_root
        )
        scratch_root, _ = _first_writable(
            "Scratch",
            base_path / (mapping.get("scratch_root") or "storage/_scratch"),
            storage_root / "_scratch",
        )

        pipeline_mapping = dict(mapping.get("pipeline") or {})
        for env_name, key in (
            ("LECTURE_NOTES_CHUNK_SECONDS", "chunk_seconds"),
            ("LECTURE_NOTES_TRANSCRIPTION_RETRIES", "transcription_retries"),
        ):
            override = (env.get(env_name) or "").strip()
            if override:
                pipeline_mapping[key] = override
        try:
            pipeline = PipelineSettings.from_mapping(pipeline_mapping)
        except ValueError as error:
            raise ConfigurationError(f"Invalid pipeline setting: {error}") from error

        speech = ServiceSettings.from_mapping(
            mapping.get("speech") or {}, defaults=DEFAULT_SPEECH_SETTINGS
        )
        language_model = ServiceSettings.from_mapping(
            mapping.get("language_model") or {}, defaults=DEFAULT_LANGUAGE_MODEL_SETTINGS
        )

        signing_secret = (env.get("LECTURE_NOTES_SIGNING_SECRET") or "").strip()
        if not signing_secret:
            signing_secret = str(mapping.get("signing_secret") or _DEFAULT_SIGNING_SECRET)
            if signing_secret == _DEFAULT_SIGNING_SECRET:
                LOGGER.debug("Using the development signing secret for object URLs")

        return cls(
            storage_root=storage_root,
            database_file=database_file,
            scratch_root=scratch_root,
            pipeline=pipeline,
            speech=speech,
            language_model=language_model,
            signing_secret=signing_secret,
        )


def load_config(config_path: Path | None = None) -> AppConfig:
    """Load the application configuration from ``config/default.json`` by default."""

    base_path = Path(__file__).resolve().parent.parent
    if config_path is None:
        config_path = base_path / "config" / "default.json"

    with config_path.open("r", encoding="utf-8") as config_file:
        raw_config = json.load(config_file)

    return AppConfig.from_mapping(raw_config, base_path=base_path)


__all__ = [
    "AppConfig",
    "ConfigurationError",
    "PipelineSettings",
    "ServiceCredentials",
    "ServiceSettings",
    "load_config",
]
