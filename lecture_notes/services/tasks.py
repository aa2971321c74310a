"""In-process queue supervising pipeline runs."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, List, Literal, Optional

from .events import emit_task_event


LOGGER = logging.getLogger(__name__)

TaskState = Literal["pending", "running", "succeeded", "failed"]


@dataclass
class QueuedJob:
    """A pipeline run waiting for, or occupying, a worker."""

    id: str
    job_id: str
    options: Dict[str, Any] = field(default_factory=dict)
    status: TaskState = "pending"
    created_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    error: Optional[str] = None

    def mark_running(self) -> None:
        self.status = "running"
        self.started_at = time.time()
        self.error = None

    def mark_finished(self) -> None:
        self.status = "succeeded"
        self.completed_at = time.time()

    def mark_failed(self, message: str) -> None:
        self.status = "failed"
        self.completed_at = time.time()
        self.error = message

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "job_id": self.job_id,
            "status": self.status,
            "options": dict(self.options),
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "error": self.error,
        }


class PipelineQueue:
    """FIFO queue executing up to ``max_workers`` runs at once.

    Every run is awaited by a worker, so a failing run is logged with its
    traceback instead of disappearing as an unobserved task exception.
    """

    def __init__(
        self,
        processor: Callable[[QueuedJob], Awaitable[Any]],
        *,
        max_workers: int = 1,
        history_limit: int = 200,
    ) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self._processor = processor
        self._max_workers = max_workers
        self._pending: Deque[QueuedJob] = deque()
        self._entries: Deque[QueuedJob] = deque()
        self._lock = asyncio.Lock()
        self._pending_event = asyncio.Event()
        self._workers: List[asyncio.Task[None]] = []
        self._history_limit = history_limit
        self._stopping = False

    @property
    def max_workers(self) -> int:
        return self._max_workers

    async def start(self) -> None:
        async with self._lock:
            self._workers = [worker for worker in self._workers if not worker.done()]
            if self._workers:
                return
            self._stopping = False
            loop = asyncio.get_running_loop()
            self._workers = [
                loop.create_task(self._run(), name=f"pipeline-worker-{index}")
                for index in range(self._max_workers)
            ]

    async def stop(self) -> None:
        async with self._lock:
            self._stopping = True
            self._pending_event.set()
            workers = list(self._workers)
            self._workers = []
        for worker in workers:
            worker.cancel()
        for worker in workers:
            with contextlib.suppress(asyncio.CancelledError):
                await worker

    async def enqueue(self, job_id: str, options: Optional[Dict[str, Any]] = None) -> QueuedJob:
        entry = QueuedJob(id=uuid.uuid4().hex, job_id=job_id, options=dict(options or {}))
        async with self._lock:
            self._pending.append(entry)
            self._entries.append(entry)
            self._pending_event.set()
            self._prune_history_locked()
        emit_task_event("queued", "Pipeline run queued", payload={"job_id": job_id, "task_id": entry.id})
        await self.start()
        return entry

    async def list(self) -> List[QueuedJob]:
        async with self._lock:
            return list(self._entries)

    async def join(self) -> None:
        """Wait until no run is pending or running."""

        while True:
            async with self._lock:
                busy = any(entry.status in {"pending", "running"} for entry in self._entries)
            if not busy:
                return
            await asyncio.sleep(0.01)

    async def _wait_for_entry(self) -> None:
        while True:
            async with self._lock:
                if self._pending or self._stopping:
                    return
                self._pending_event.clear()
            await self._pending_event.wait()

    async def _acquire_next(self) -> Optional[QueuedJob]:
        async with self._lock:
            if self._pending:
                entry = self._pending.popleft()
                entry.mark_running()
                return entry
            return None

    async def _run(self) -> None:
        while True:
            await self._wait_for_entry()
            if self._stopping:
                return
            entry = await self._acquire_next()
            if entry is None:
                continue
            try:
                await self._processor(entry)
            except Exception as error:  # noqa: BLE001 - surface run failure
                entry.mark_failed(str(error) or "Pipeline run failed")
                LOGGER.exception("Pipeline run %s failed for job %s", entry.id, entry.job_id)
            else:
                entry.mark_finished()
            finally:
                async with self._lock:
                    self._prune_history_locked()

    def _prune_history_locked(self) -> None:
        while len(self._entries) > self._history_limit:
            oldest = self._entries[0]
            if oldest.status in {"succeeded", "failed"}:
                self._entries.popleft()
            else:
                break


__all__ = ["PipelineQueue", "QueuedJob"]
