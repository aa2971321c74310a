from __future__ import annotations

import json
from pathlib import Path

import pytest

from lecture_notes.config import (
    AppConfig,
    ConfigurationError,
    PipelineSettings,
    ServiceSettings,
    DEFAULT_SPEECH_SETTINGS,
    load_config,
)


def _mapping(**overrides):
    mapping = {
        "storage_root": "storage",
        "database_file": "storage/lecture_notes.db",
        "scratch_root": "storage/_scratch",
    }
    mapping.update(overrides)
    return mapping


def test_paths_resolve_against_base_path(tmp_path: Path) -> None:
    config = AppConfig.from_mapping(_mapping(), base_path=tmp_path, environ={})

    assert config.storage_root == (tmp_path / "storage").resolve()
    assert config.database_file == (tmp_path / "storage" / "lecture_notes.db").resolve()
    assert config.scratch_root == (tmp_path / "storage" / "_scratch").resolve()
    assert config.objects_root == (tmp_path / "storage" / "objects").resolve()


def test_pipeline_defaults_keep_baseline_behaviour(tmp_path: Path) -> None:
    config = AppConfig.from_mapping(_mapping(), base_path=tmp_path, environ={})

    assert config.pipeline.transcription_retries == 0
    assert config.pipeline.quiz_question_count == 10
    assert config.pipeline.flashcard_count == 20
    assert config.speech.model == DEFAULT_SPEECH_SETTINGS.model


def test_environment_overrides_pipeline_settings(tmp_path: Path) -> None:
    environ = {
        "LECTURE_NOTES_CHUNK_SECONDS": "45",
        "LECTURE_NOTES_TRANSCRIPTION_RETRIES": "3",
        "LECTURE_NOTES_SIGNING_SECRET": "from-env",
    }
    config = AppConfig.from_mapping(
        _mapping(pipeline={"chunk_seconds": 120}), base_path=tmp_path, environ=environ
    )

    assert config.pipeline.chunk_seconds == 45.0
    assert config.pipeline.transcription_retries == 3
    assert config.signing_secret == "from-env"


def test_invalid_pipeline_values_are_rejected(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError):
        AppConfig.from_mapping(_mapping(pipeline={"chunk_seconds": 0}), base_path=tmp_path, environ={})

    with pytest.raises(ConfigurationError):
        AppConfig.from_mapping(
            _mapping(pipeline={"chunk_seconds": "soon"}), base_path=tmp_path, environ={}
        )


def test_pipeline_settings_coerce_strings() -> None:
    settings = PipelineSettings.from_mapping({"max_concurrent_jobs": "4", "silence_search_seconds": "2.5"})

    assert settings.max_concurrent_jobs == 4
    assert settings.silence_search_seconds == 2.5


def test_service_settings_merge_over_defaults() -> None:
    settings = ServiceSettings.from_mapping(
        {"model": "whisper-large-v3", "timeout_seconds": 30}, defaults=DEFAULT_SPEECH_SETTINGS
    )

    assert settings.model == "whisper-large-v3"
    assert settings.timeout_seconds == 30
    assert settings.base_url == DEFAULT_SPEECH_SETTINGS.base_url


def test_credentials_come_from_the_environment_and_hide_the_key() -> None:
    settings = ServiceSettings(provider="groq", base_url="https://example.test", model="m", api_key_env="TEST_KEY")

    credentials = settings.resolve_credentials({"TEST_KEY": " secret-value "})
    assert credentials.api_key == "secret-value"
    assert "secret-value" not in repr(credentials)

    with pytest.raises(ConfigurationError, match="TEST_KEY"):
        settings.resolve_credentials({})


def test_load_config_reads_json_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("LECTURE_NOTES_CHUNK_SECONDS", raising=False)
    monkeypatch.delenv("LECTURE_NOTES_TRANSCRIPTION_RETRIES", raising=False)
    config_file = tmp_path / "custom.json"
    config_file.write_text(
        json.dumps(
            {
                "storage_root": str(tmp_path / "data"),
                "database_file": str(tmp_path / "data" / "notes.db"),
                "scratch_root": str(tmp_path / "data" / "tmp"),
                "pipeline": {"flashcard_count": 12},
            }
        ),
        encoding="utf-8",
    )

    config = load_config(config_file)

    assert config.storage_root == (tmp_path / "data").resolve()
    assert config.pipeline.flashcard_count == 12
