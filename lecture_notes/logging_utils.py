"""Root logger setup for the Lecture Notes service and its CLI."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, List, Optional


DEFAULT_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_FILE_NAME = "lecture_notes.log"

# HTTP and multipart parsers are chatty at DEBUG level.
_QUIET_LOGGERS = ("urllib3", "multipart", "python_multipart")


def get_log_file_path(storage_root: Path) -> Path:
    return storage_root / LOG_FILE_NAME


def build_handlers(log_file: Optional[Path] = None, *, fmt: str = DEFAULT_LOG_FORMAT) -> List[logging.Handler]:
    """Return a console handler plus a UTF-8 file handler when *log_file* is given."""

    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    formatter = logging.Formatter(fmt)
    for handler in handlers:
        handler.setFormatter(formatter)
    return handlers


def configure_logging(
    level: int = logging.INFO,
    *,
    handlers: Iterable[logging.Handler] | None = None,
) -> logging.Logger:
    """Attach *handlers* (a console handler by default) to the root logger."""

    root = logging.getLogger()
    root.setLevel(level)
    for handler in handlers if handlers is not None else build_handlers():
        root.addHandler(handler)

    quiet_level = max(level, logging.INFO)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(quiet_level)
    return root


__all__ = ["DEFAULT_LOG_FORMAT", "LOG_FILE_NAME", "build_handlers", "configure_logging", "get_log_file_path"]
