"""
In-process job queue.

Named queue with registered handlers, deterministic job ids, bounded
worker concurrency and retries with exponential backoff. A handler that
raises LockUnavailable is re-scheduled after `retry_after` seconds
without spending an attempt.

A job id stays reserved while the job is waiting, delayed or running;
enqueueing the same id again reports `already_queued`.
"""

import asyncio
import logging
import uuid
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from ridesync.shared.errors import LockUnavailable

logger = logging.getLogger(__name__)


JobHandler = Callable[[dict], Awaitable[Any]]

QUEUED = "queued"
ALREADY_QUEUED = "already_queued"


@dataclass
class Job:
    id: str
    name: str
    payload: dict
    attempts: int = 0


@dataclass
class EnqueueResult:
    status: str
    job_id: str

    def to_dict(self) -> dict:
        return {"status": self.status, "jobId": self.job_id}


@dataclass
class QueueStats:
    completed: int = 0
    failed: int = 0
    retried: int = 0
    delayed: int = 0
    failures: list = field(default_factory=list)


class JobQueue:
    """
    Usage:
        queue = JobQueue("sync", concurrency=1, max_attempts=5, retry_delay=2.0)
        queue.register("syncActivity", handle_sync)
        await queue.start()
        await queue.enqueue("syncActivity", payload, job_id="syncActivity:garmin:u1:123")
        ...
        await queue.stop()
    """

    def __init__(
        self,
        name: str,
        concurrency: int = 1,
        max_attempts: int = 3,
        retry_delay: float = 60.0,
    ):
        self.name = name
        self.concurrency = max(1, concurrency)
        self.max_attempts = max(1, max_attempts)
        self.retry_delay = retry_delay
        self.stats = QueueStats()

        self._handlers: dict[str, JobHandler] = {}
        self._queue: asyncio.Queue[Job] = asyncio.Queue()
        self._reserved: set[str] = set()
        self._workers: list[asyncio.Task] = []
        self._timers: set[asyncio.Task] = set()

    def register(self, job_name: str, handler: JobHandler) -> None:
        self._handlers[job_name] = handler

    def __len__(self) -> int:
        return len(self._reserved)

    def __contains__(self, job_id: str) -> bool:
        return job_id in self._reserved

    async def enqueue(self, job_name: str, payload: dict, job_id: Optional[str] = None) -> EnqueueResult:
        """
        Add a job unless one with the same id is still pending.

        Raises:
            ValueError: No handler registered for job_name
        """
        if job_name not in self._handlers:
            raise ValueError(f"No handler registered for job '{job_name}' on queue '{self.name}'")

        job_id = job_id or f"{job_name}:{uuid.uuid4()}"
        if job_id in self._reserved:
            logger.debug(f"[{self.name}] Job {job_id} already queued")
            return EnqueueResult(ALREADY_QUEUED, job_id)

        self._reserved.add(job_id)
        self._queue.put_nowait(Job(id=job_id, name=job_name, payload=payload))
        logger.debug(f"[{self.name}] Queued job {job_id}")
        return EnqueueResult(QUEUED, job_id)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"{self.name}-worker-{i}")
            for i in range(self.concurrency)
        ]
        logger.info(f"Job queue '{self.name}' started ({self.concurrency} workers)")

    async def stop(self) -> None:
        tasks = self._workers + list(self._timers)
        self._workers = []
        self._timers.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            with suppress(asyncio.CancelledError):
                await task
        logger.info(f"Job queue '{self.name}' stopped")

    async def join(self) -> None:
        """Wait until every reserved job has finished (completed or failed)."""
        while self._reserved:
            await self._queue.join()
            if self._reserved:
                await asyncio.sleep(0.01)

    # =========================================================================
    # Processing
    # =========================================================================

    async def _worker(self, index: int) -> None:
        while True:
            job = await self._queue.get()
            try:
                await self._run(job)
            finally:
                self._queue.task_done()

    async def _run(self, job: Job) -> None:
        handler = self._handlers[job.name]
        job.attempts += 1
        try:
            await handler(job.payload)
        except asyncio.CancelledError:
            raise
        except LockUnavailable as e:
            # Not a failure; try again once the holder is likely done
            job.attempts -= 1
            self.stats.delayed += 1
            logger.info(f"[{self.name}] Job {job.id} delayed {e.retry_after}s: {e}")
            self._schedule(job, e.retry_after)
            return
        except Exception as e:
            if job.attempts < self.max_attempts:
                delay = self.retry_delay * (2 ** (job.attempts - 1))
                self.stats.retried += 1
                logger.warning(
                    f"[{self.name}] Job {job.id} failed (attempt {job.attempts}/{self.max_attempts}), "
                    f"retrying in {delay}s: {e}"
                )
                self._schedule(job, delay)
                return
            self.stats.failed += 1
            self.stats.failures.append((job.id, str(e)))
            self._reserved.discard(job.id)
            logger.error(f"[{self.name}] Job {job.id} failed permanently after {job.attempts} attempts: {e}")
            return

        self.stats.completed += 1
        self._reserved.discard(job.id)
        logger.debug(f"[{self.name}] Job {job.id} completed")

    def _schedule(self, job: Job, delay: float) -> None:
        task = asyncio.create_task(self._requeue_later(job, delay))
        self._timers.add(task)
        task.add_done_callback(self._timers.discard)

    async def _requeue_later(self, job: Job, delay: float) -> None:
        await asyncio.sleep(delay)
        self._queue.put_nowait(job)
