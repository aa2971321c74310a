"""Helpers for normalising uploaded audio and video files."""

from __future__ import annotations

import logging
import shutil
import subprocess
import wave
from pathlib import Path
from typing import List, Optional, Tuple


LOGGER = logging.getLogger(__name__)

TARGET_SAMPLE_RATE = 16_000
TARGET_CHANNELS = 1
TARGET_SAMPLE_WIDTH = 2

VIDEO_EXTENSIONS = frozenset(
    {".mp4", ".mov", ".avi", ".mkv", ".webm", ".ogv", ".3gp", ".3g2", ".m4v", ".wmv", ".flv"}
)


class AudioConversionError(ValueError):
    """Raised when FFmpeg cannot decode a source file."""


def is_video_file(filename: str, mime_type: Optional[str] = None) -> bool:
    if mime_type and mime_type.lower().startswith("video/"):
        return True
    return Path(filename or "").suffix.lower() in VIDEO_EXTENSIONS


def is_normalized_wav(path: Path) -> bool:
    """Return ``True`` for a 16 kHz mono 16-bit PCM WAV file."""

    if path.suffix.lower() != ".wav":
        return False
    try:
        with wave.open(str(path), "rb") as handle:
            return (
                handle.getframerate() == TARGET_SAMPLE_RATE
                and handle.getnchannels() == TARGET_CHANNELS
                and handle.getsampwidth() == TARGET_SAMPLE_WIDTH
            )
    except (wave.Error, EOFError, OSError):
        return False


def ffmpeg_available() -> bool:
    """Return ``True`` when an FFmpeg binary is on the ``PATH``."""

    return shutil.which("ffmpeg") is not None


def _ffmpeg_command(binary: str, source: Path, destination: Path) -> List[str]:
    return [
        binary, "-hide_banner", "-loglevel", "error", "-y",
        "-i", str(source),
        "-vn",
        "-ac", str(TARGET_CHANNELS),
        "-ar", str(TARGET_SAMPLE_RATE),
        "-c:a", "pcm_s16le",
        str(destination),
    ]


def _failure_summary(completed: subprocess.CompletedProcess) -> str:
    for stream in (completed.stderr, completed.stdout):
        text = stream.decode("utf-8", errors="ignore").strip()
        if text:
            return text.splitlines()[0]
    return f"FFmpeg exited with status {completed.returncode}"


def ensure_wav(
    source: Path,
    *,
    output_dir: Optional[Path] = None,
    stem: Optional[str] = None,
) -> Tuple[Path, bool]:
    """Return a 16 kHz mono PCM WAV version of *source*.

    A source that already has that format is returned unchanged. Anything else,
    including video containers, is transcoded by FFmpeg with the video stream
    dropped. The tuple's flag reports whether a new file was created.
    """

    if is_normalized_wav(source):
        LOGGER.debug("%s is already 16 kHz mono PCM", source.name)
        return source, False

    binary = shutil.which("ffmpeg")
    if binary is None:
        raise AudioConversionError(
            f"FFmpeg is required to decode '{source.name}' but was not found on this server."
        )

    target_dir = (output_dir or source.parent).resolve()
    target_dir.mkdir(parents=True, exist_ok=True)
    destination = target_dir / f"{stem or source.stem or 'audio'}.wav"
    if destination == source.resolve():
        destination = destination.with_name(f"{destination.stem}-normalized.wav")

    command = _ffmpeg_command(binary, source, destination)
    LOGGER.debug("Transcoding %s with: %s", source.name, " ".join(command))
    try:
        completed = subprocess.run(command, capture_output=True, check=False)
    except FileNotFoundError as error:  # pragma: no cover - binary removed after lookup
        raise AudioConversionError("FFmpeg disappeared while decoding the upload.") from error

    if completed.returncode != 0:
        destination.unlink(missing_ok=True)
        summary = _failure_summary(completed)
        LOGGER.debug("FFmpeg failed for %s (code=%s): %s", source.name, completed.returncode, summary)
        raise AudioConversionError(f"Unable to decode '{source.name}': {summary}")

    return destination, True


__all__ = [
    "AudioConversionError",
    "VIDEO_EXTENSIONS",
    "ensure_wav",
    "ffmpeg_available",
    "is_normalized_wav",
    "is_video_file",
]
