from __future__ import annotations

import sqlite3

from lecture_notes.bootstrap import Bootstrapper
from lecture_notes.config import AppConfig
from lecture_notes.services.progress import JobStatus
from lecture_notes.services.storage import TranscriptionRepository


def test_bootstrap_creates_directories_and_schema(temp_config: AppConfig) -> None:
    assert temp_config.storage_root.is_dir()
    assert temp_config.objects_root.is_dir()
    assert temp_config.scratch_root.is_dir()

    with sqlite3.connect(temp_config.database_file) as connection:
        tables = {
            row[0]
            for row in connection.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
        }
    assert {"transcriptions", "quizzes", "quiz_questions", "flashcard_decks", "flashcards"} <= tables


def test_bootstrap_is_idempotent(temp_config: AppConfig) -> None:
    Bootstrapper(temp_config).initialize()
    Bootstrapper(temp_config).initialize()

    assert temp_config.database_file.exists()


def test_bootstrap_clears_stale_scratch_entries(temp_config: AppConfig) -> None:
    stale_dir = temp_config.scratch_root / "job-stale"
    stale_dir.mkdir()
    (stale_dir / "chunk_000.wav").write_bytes(b"RIFF")

    Bootstrapper(temp_config).initialize()

    assert list(temp_config.scratch_root.iterdir()) == []


def test_bootstrap_fails_interrupted_runs(temp_config: AppConfig) -> None:
    repository = TranscriptionRepository(temp_config)
    job = repository.create_job("local", "Lecture", ["uploads/local/a.wav"])
    assert repository.try_start(job.id, {JobStatus.PENDING})

    Bootstrapper(temp_config).initialize()

    record = repository.require_job(job.id)
    assert record.status is JobStatus.ERROR
    assert record.error_message == "Processing was interrupted by a server restart"
