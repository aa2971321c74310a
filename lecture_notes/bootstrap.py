"""Bootstrap logic that prepares runtime directories and the SQLite database."""

from __future__ import annotations

import logging
import shutil
import sqlite3
from datetime import datetime, timezone
from pathlib import Path

from .config import AppConfig, is_writable_directory, load_config

LOGGER = logging.getLogger(__name__)


class BootstrapError(RuntimeError):
    """Raised when initialization cannot be completed."""


_SCHEMA = """
PRAGMA foreign_keys = ON;
CREATE TABLE IF NOT EXISTS transcriptions (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    title TEXT NOT NULL,
    source_keys TEXT NOT NULL DEFAULT '[]',
    source_type TEXT NOT NULL DEFAULT 'audio',
    mime_type TEXT,
    original_file_name TEXT,
    status TEXT NOT NULL DEFAULT 'pending',
    progress REAL NOT NULL DEFAULT 0,
    raw_text TEXT,
    structured_text TEXT,
    detected_language TEXT,
    transcription_model TEXT,
    error_message TEXT,
    pdf_key TEXT,
    pdf_generated_at TEXT,
    duration_seconds REAL,
    run_id TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_transcriptions_owner
    ON transcriptions(owner_id, created_at);

CREATE TABLE IF NOT EXISTS quizzes (
    id TEXT PRIMARY KEY,
    transcription_id TEXT NOT NULL,
    title TEXT NOT NULL,
    created_at TEXT NOT NULL,
    FOREIGN KEY(transcription_id) REFERENCES transcriptions(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS quiz_questions (
    id TEXT PRIMARY KEY,
    quiz_id TEXT NOT NULL,
    position INTEGER NOT NULL,
    question TEXT NOT NULL,
    options TEXT NOT NULL,
    correct_answer INTEGER NOT NULL,
    explanation TEXT NOT NULL DEFAULT '',
    FOREIGN KEY(quiz_id) REFERENCES quizzes(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS flashcard_decks (
    id TEXT PRIMARY KEY,
    transcription_id TEXT NOT NULL,
    title TEXT NOT NULL,
    created_at TEXT NOT NULL,
    FOREIGN KEY(transcription_id) REFERENCES transcriptions(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS flashcards (
    id TEXT PRIMARY KEY,
    deck_id TEXT NOT NULL,
    position INTEGER NOT NULL,
    front TEXT NOT NULL,
    back TEXT NOT NULL,
    category TEXT,
    FOREIGN KEY(deck_id) REFERENCES flashcard_decks(id) ON DELETE CASCADE
);
"""


class Bootstrapper:
    """High level object orchestrating initialization steps."""

    def __init__(self, config: AppConfig) -> None:
        self._config = config

    @property
    def config(self) -> AppConfig:
        return self._config

    def initialize(self) -> None:
        """Run all bootstrap tasks."""

        LOGGER.debug("Starting bootstrap sequence")
        self._ensure_directories()
        self._ensure_database()
        LOGGER.info("Bootstrap completed successfully")

    def _ensure_directories(self) -> None:
        for path in (self._config.storage_root, self._config.objects_root):
            if not is_writable_directory(path):
                raise BootstrapError(f"Storage directory '{path}' is not writable")
            LOGGER.debug("Ensured directory exists: %s", path)

        scratch_root = self._config.scratch_root
        scratch_root.mkdir(parents=True, exist_ok=True)
        # Leftovers belong to runs that died with the previous process.
        for child in scratch_root.iterdir():
            try:
                if child.is_dir():
                    shutil.rmtree(child)
                else:
                    child.unlink()
            except OSError as error:  # pragma: no cover - best effort cleanup
                LOGGER.warning("Could not remove stale scratch entry %s: %s", child, error)
        LOGGER.debug("Cleared scratch directory: %s", scratch_root)

    def _ensure_database(self) -> None:
        LOGGER.debug("Ensuring database schema at %s", self._config.database_file)
        try:
            connection = sqlite3.connect(self._config.database_file)
        except sqlite3.Error as error:
            raise BootstrapError(
                f"Unable to open database '{self._config.database_file}': {error}"
            ) from error
        try:
            cursor = connection.cursor()
            cursor.executescript(_SCHEMA)
            connection.commit()

            cursor.execute("PRAGMA table_info(transcriptions)")
            columns = {row[1] for row in cursor.fetchall()}
            for column, ddl in (
                ("duration_seconds", "REAL"),
                ("original_file_name", "TEXT"),
                ("run_id", "TEXT"),
            ):
                if column not in columns:
                    cursor.execute(f"ALTER TABLE transcriptions ADD COLUMN {column} {ddl}")
            connection.commit()

            # Runs interrupted by a restart can never reach a checkpoint again.
            cursor.execute(
                "UPDATE transcriptions SET status = 'error', "
                "error_message = 'Processing was interrupted by a server restart', "
                "updated_at = ? WHERE status IN ('processing', 'structuring')",
                (datetime.now(timezone.utc).isoformat(),),
            )
            if cursor.rowcount:
                LOGGER.warning("Marked %s interrupted job(s) as failed", cursor.rowcount)
            connection.commit()
        except sqlite3.Error as error:
            raise BootstrapError(f"Unable to prepare database schema: {error}") from error
        finally:
            connection.close()


def initialize_app(config_path: Path | None = None) -> AppConfig:
    """Load configuration and run the bootstrapper."""

    config = load_config(config_path)
    Bootstrapper(config).initialize()
    return config


__all__ = ["Bootstrapper", "BootstrapError", "initialize_app"]
