"""Bounded single-worker FIFO job queue.

Serialises document processing and embedding jobs so that at most one job
talks to the embedding provider at a time.  One instance is shared by the
:class:`~src.services.ingestion.knowledge_service.KnowledgeService` and the
:class:`~src.services.embedding.embedding_pipeline.EmbeddingPipeline`.

# ─── HOW THE QUEUE DRAINS ──────────────────────────────────────────────
#
#   enqueue() ──append──→ deque ──→ process_queue() (one drain at a time)
#        │                              ↑
#        └── no drain running? ─────────┘ schedule one as a task
#
# - A drain pops jobs FIFO and awaits each to completion before the next.
# - Jobs enqueued while a drain is running are picked up by that drain.
# - A second process_queue() call while draining returns immediately.
# - A failing job is logged and counted; the drain moves on.
# ──────────────────────────────────────────────────────────────────────
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import structlog

from src.models.knowledge import QueueStatus
from src.utils.errors import QueueFullError

logger = structlog.get_logger(logger_name=__name__)


@dataclass(frozen=True)
class Job:
    """A named unit of queued work.

    Attributes
    ----------
    name:
        Short job kind, e.g. ``"process_document"``.
    factory:
        Zero-argument callable returning the coroutine to run.
    key:
        Optional dedup key; a job whose key is already queued is dropped.
    context:
        Extra fields bound to the job's log events.
    """

    name: str
    factory: Callable[[], Awaitable[Any]]
    key: str | None = None
    context: dict[str, Any] = field(default_factory=dict)
    enqueued_at: float = field(default_factory=time.monotonic)


class JobQueue:
    """In-process FIFO with a single drain.

    Parameters
    ----------
    max_size:
        Maximum number of waiting jobs; :meth:`enqueue` raises
        :class:`QueueFullError` beyond it.
    """

    def __init__(self, max_size: int = 100) -> None:
        self._max_size = max_size
        self._jobs: deque[Job] = deque()
        self._is_processing = False
        self._drain_task: asyncio.Task[int] | None = None
        self._completed = 0
        self._failed = 0

    @property
    def is_processing(self) -> bool:
        return self._is_processing

    @property
    def length(self) -> int:
        return len(self._jobs)

    def status(self) -> QueueStatus:
        return QueueStatus(is_processing=self._is_processing, queue_length=len(self._jobs))

    def get_stats(self) -> dict[str, Any]:
        return {
            "queued": len(self._jobs),
            "is_processing": self._is_processing,
            "completed": self._completed,
            "failed": self._failed,
            "max_size": self._max_size,
        }

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    def enqueue(
        self,
        name: str,
        factory: Callable[[], Awaitable[Any]],
        key: str | None = None,
        **context: Any,
    ) -> bool:
        """Append a job and make sure a drain is scheduled.

        Returns
        -------
        bool
            ``False`` when a job with the same *key* is already waiting.

        Raises
        ------
        QueueFullError
            If the queue already holds ``max_size`` jobs.
        """
        if key is not None and any(job.key == key for job in self._jobs):
            logger.debug("job_already_queued", job=name, key=key, **context)
            return False
        if len(self._jobs) >= self._max_size:
            raise QueueFullError(f"Queue is full ({self._max_size} jobs waiting)")

        self._jobs.append(Job(name=name, factory=factory, key=key, context=context))
        logger.info("job_enqueued", job=name, queue_length=len(self._jobs), **context)
        self._schedule_drain()
        return True

    def _schedule_drain(self) -> None:
        if self._is_processing:
            return
        if self._drain_task is not None and not self._drain_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop (synchronous caller); process_queue() must be awaited later.
            return
        self._drain_task = loop.create_task(self.process_queue())

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    async def process_queue(self) -> int:
        """Drain the queue; return the number of jobs run by this call.

        Returns 0 immediately if another drain is already running.
        """
        if self._is_processing:
            return 0
        self._is_processing = True
        processed = 0
        try:
            while self._jobs:
                job = self._jobs.popleft()
                started = time.monotonic()
                try:
                    await job.factory()
                    self._completed += 1
                    logger.info(
                        "job_complete",
                        job=job.name,
                        duration_s=round(time.monotonic() - started, 3),
                        remaining=len(self._jobs),
                        **job.context,
                    )
                except Exception as exc:  # noqa: BLE001
                    self._failed += 1
                    logger.error(
                        "job_failed",
                        job=job.name,
                        error=str(exc),
                        error_type=type(exc).__name__,
                        **job.context,
                    )
                processed += 1
        finally:
            self._is_processing = False
        return processed

    async def wait_until_idle(self) -> None:
        """Block until the queue is empty and no drain is running."""
        while True:
            task = self._drain_task
            if task is not None and not task.done():
                await task
                continue
            if self._jobs and not self._is_processing:
                await self.process_queue()
                continue
            if self._is_processing:
                await asyncio.sleep(0.01)
                continue
            return
