"""Split media sources into bounded-duration WAV chunks."""

from __future__ import annotations

import logging
import shutil
import tempfile
import wave
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Tuple

import numpy as np

from ..services.audio_conversion import AudioConversionError, ensure_wav


LOGGER = logging.getLogger(__name__)

_ANALYSIS_WINDOW_SECONDS = 0.02
_MIN_CHUNK_SECONDS = 1.0


class MediaDecodeError(ValueError):
    """Raised when a source cannot be decoded into audio."""


@dataclass(frozen=True)
class Chunk:
    """A standalone WAV slice of the source covering ``[start_time, end_time)``."""

    index: int
    path: Path
    start_time: float
    end_time: float

    def __post_init__(self) -> None:
        if self.end_time <= self.start_time:
            raise ValueError(
                f"Chunk {self.index} has a non-positive duration ({self.start_time}-{self.end_time})"
            )

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time


@dataclass
class SegmentationResult:
    duration_seconds: float
    scratch_dir: Path
    chunks: List[Chunk] = field(default_factory=list)


def plan_chunk_boundaries(
    total_frames: int, frame_rate: int, chunk_seconds: float
) -> List[Tuple[int, int]]:
    """Return contiguous ``(start, end)`` frame ranges of at most *chunk_seconds*.

    >>> plan_chunk_boundaries(130 * 100, 100, 60)
    [(0, 6000), (6000, 12000), (12000, 13000)]
    """

    if total_frames <= 0:
        return []
    step = int(round(chunk_seconds * frame_rate))
    if step <= 0:
        raise ValueError("chunk_seconds must cover at least one frame")
    boundaries = []
    start = 0
    while start < total_frames:
        end = min(start + step, total_frames)
        boundaries.append((start, end))
        start = end
    return boundaries


def _quiet_split_frame(
    handle: wave.Wave_read,
    target: int,
    *,
    search_frames: int,
    floor: int,
) -> int:
    """Return the middle of the quietest 20 ms block in ``[target - search, target]``."""

    window_start = max(floor, target - search_frames)
    frame_rate = handle.getframerate()
    block = max(int(frame_rate * _ANALYSIS_WINDOW_SECONDS), 1)
    if target - window_start < block or handle.getsampwidth() != 2:
        return target

    handle.setpos(window_start)
    raw = handle.readframes(target - window_start)
    samples = np.frombuffer(raw, dtype="<i2").astype(np.float32)
    channels = handle.getnchannels()
    if channels > 1:
        samples = samples[: (samples.size // channels) * channels].reshape(-1, channels).mean(axis=1)
    usable = (samples.size // block) * block
    if usable == 0:
        return target
    energy = np.sqrt(np.mean(samples[:usable].reshape(-1, block) ** 2, axis=1))
    # Ties resolve to the latest block so chunks stay as long as possible.
    quietest = int(energy.size - 1 - np.argmin(energy[::-1]))
    split = window_start + quietest * block + block // 2
    LOGGER.debug(
        "Moved split point from frame %s to %s (rms=%.1f)", target, split, float(energy[quietest])
    )
    return min(split, target)


class Segmenter:
    """Decode a media buffer and cut it into chunks for the speech service."""

    def __init__(
        self,
        *,
        scratch_root: Path,
        chunk_seconds: float,
        silence_search_seconds: float = 0.0,
        converter: Callable[..., Tuple[Path, bool]] = ensure_wav,
    ) -> None:
        if chunk_seconds <= 0:
            raise ValueError("chunk_seconds must be positive")
        self._scratch_root = Path(scratch_root)
        self._chunk_seconds = float(chunk_seconds)
        self._silence_search_seconds = max(float(silence_search_seconds), 0.0)
        self._converter = converter

    def segment(
        self,
        data: bytes,
        filename: str,
        mime_type: Optional[str] = None,
        *,
        scratch_parent: Optional[Path] = None,
    ) -> SegmentationResult:
        """Write *data* to a scratch directory and split it into chunks.

        The caller owns ``result.scratch_dir`` and must delete it. On failure the
        directory is removed here before the error propagates.
        """

        if not data:
            raise MediaDecodeError(f"'{filename}' is empty")

        parent = Path(scratch_parent or self._scratch_root)
        parent.mkdir(parents=True, exist_ok=True)
        scratch_dir = Path(tempfile.mkdtemp(prefix="segment-", dir=parent))
        try:
            suffix = Path(filename or "").suffix.lower() or ".bin"
            source = scratch_dir / f"source{suffix}"
            source.write_bytes(data)
            LOGGER.debug(
                "Segmenting %s (%s bytes, mime=%s) in %s", filename, len(data), mime_type, scratch_dir
            )
            try:
                wav_path, _converted = self._converter(source, output_dir=scratch_dir, stem="normalized")
            except AudioConversionError as error:
                raise MediaDecodeError(str(error)) from error
            return self._split(wav_path, scratch_dir)
        except BaseException:
            shutil.rmtree(scratch_dir, ignore_errors=True)
            raise

    def _split(self, wav_path: Path, scratch_dir: Path) -> SegmentationResult:
        try:
            handle = wave.open(str(wav_path), "rb")
        except (wave.Error, EOFError) as error:
            raise MediaDecodeError(f"Unable to read decoded audio: {error}") from error

        with handle:
            frame_rate = handle.getframerate()
            total_frames = handle.getnframes()
            if total_frames <= 0 or frame_rate <= 0:
                raise MediaDecodeError("The source contains no audio")
            duration = total_frames / float(frame_rate)

            boundaries = plan_chunk_boundaries(total_frames, frame_rate, self._chunk_seconds)
            if self._silence_search_seconds > 0 and len(boundaries) > 1:
                boundaries = self._refine_boundaries(handle, total_frames)

            chunks_dir = scratch_dir / "chunks"
            chunks_dir.mkdir(exist_ok=True)
            params = handle.getparams()
            chunks: List[Chunk] = []
            for index, (start, end) in enumerate(boundaries):
                handle.setpos(start)
                frames = handle.readframes(end - start)
                chunk_path = chunks_dir / f"chunk_{index:03d}.wav"
                with wave.open(str(chunk_path), "wb") as writer:
                    writer.setparams(params)
                    writer.writeframes(frames)
                chunks.append(
                    Chunk(
                        index=index,
                        path=chunk_path,
                        start_time=start / float(frame_rate),
                        end_time=end / float(frame_rate),
                    )
                )

        LOGGER.info(
            "Segmented %.1fs of audio into %s chunk(s) of at most %.0fs",
            duration,
            len(chunks),
            self._chunk_seconds,
        )
        return SegmentationResult(duration_seconds=duration, scratch_dir=scratch_dir, chunks=chunks)

    def _refine_boundaries(self, handle: wave.Wave_read, total_frames: int) -> List[Tuple[int, int]]:
        frame_rate = handle.getframerate()
        step = int(round(self._chunk_seconds * frame_rate))
        search_frames = int(self._silence_search_seconds * frame_rate)
        min_frames = max(int(_MIN_CHUNK_SECONDS * frame_rate), 1)
        boundaries: List[Tuple[int, int]] = []
        start = 0
        while start < total_frames:
            end = min(start + step, total_frames)
            if end < total_frames:
                end = _quiet_split_frame(
                    handle,
                    end,
                    search_frames=search_frames,
                    floor=min(start + min_frames, end),
                )
            boundaries.append((start, end))
            start = end
        return boundaries


__all__ = [
    "Chunk",
    "MediaDecodeError",
    "SegmentationResult",
    "Segmenter",
    "plan_chunk_boundaries",
]
