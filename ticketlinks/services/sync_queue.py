"""Named in-memory work queue that never runs two jobs with the same key at once.

A job already waiting is absorbed by later pushes. A push for a job that is
currently executing is coalesced into a single follow-up run scheduled when
the current run ends. Handler failures are logged and dropped.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Generic, Hashable, TypeVar

from ticketlinks.errors import QueueClosedError
from ticketlinks.observability import record_queue_event

logger = logging.getLogger("ticketlinks.queue")

JobT = TypeVar("JobT", bound=Hashable)


class DedupWorkQueue(Generic[JobT]):
    """Per-key exclusive worker pool on top of ``asyncio.Queue``."""

    def __init__(
        self,
        name: str,
        handler: Callable[[JobT], Awaitable[Any]],
        *,
        workers: int = 1,
    ):
        self.name = name
        self._handler = handler
        self._worker_count = max(1, workers)
        self._queue: asyncio.Queue[JobT] = asyncio.Queue()
        self._queued: set[JobT] = set()
        self._running: set[JobT] = set()
        self._rerun: set[JobT] = set()
        self._workers: list[asyncio.Task] = []
        self._idle = asyncio.Event()
        self._idle.set()
        self._closed = False
        self._counters = {"pushed": 0, "absorbed": 0, "completed": 0, "failed": 0}

    @property
    def is_running(self) -> bool:
        return bool(self._workers) and not self._closed

    async def start(self) -> None:
        """Spawn the worker tasks on the running loop."""
        if self._workers:
            logger.warning("Queue %s already started", self.name)
            return
        self._closed = False
        for index in range(self._worker_count):
            self._workers.append(
                asyncio.create_task(self._worker_loop(), name=f"{self.name}-worker-{index}")
            )
        logger.info("Queue %s started with %d workers", self.name, self._worker_count)

    def push(self, job: JobT) -> bool:
        """Enqueue ``job`` without blocking. Returns False when it was absorbed."""
        if self._closed:
            raise QueueClosedError(f"queue {self.name} is closed")

        if job in self._queued or job in self._rerun:
            self._counters["absorbed"] += 1
            record_queue_event(self.name, "absorbed")
            return False

        self._counters["pushed"] += 1
        record_queue_event(self.name, "pushed")
        if job in self._running:
            self._rerun.add(job)
            return True

        self._queued.add(job)
        self._queue.put_nowait(job)
        return True

    async def join(self) -> None:
        """Wait until every queued and follow-up job has been processed."""
        await self._queue.join()

    async def stop(self, grace_seconds: float = 0) -> None:
        """Stop accepting work, let in-flight jobs finish within the grace period, then cancel."""
        self._closed = True
        if self._running and grace_seconds > 0:
            try:
                await asyncio.wait_for(self._idle.wait(), timeout=grace_seconds)
            except asyncio.TimeoutError:
                logger.warning(
                    "Queue %s: abandoning %d in-flight jobs after %ss",
                    self.name, len(self._running), grace_seconds,
                )
        for task in self._workers:
            task.cancel()
        if self._workers:
            await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("Queue %s stopped", self.name)

    def snapshot(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "running": self.is_running,
            "workers": self._worker_count,
            "queued": sorted(repr(job) for job in self._queued),
            "active": sorted(repr(job) for job in self._running),
            "rerunPending": sorted(repr(job) for job in self._rerun),
            "counters": dict(self._counters),
        }

    async def _worker_loop(self) -> None:
        while True:
            job = await self._queue.get()
            try:
                if self._closed:
                    continue
                self._queued.discard(job)
                await self._execute(job)
            finally:
                if job in self._rerun and not self._closed:
                    self._rerun.discard(job)
                    self._queued.add(job)
                    self._queue.put_nowait(job)
                self._queue.task_done()

    async def _execute(self, job: JobT) -> None:
        self._running.add(job)
        self._idle.clear()
        try:
            await self._handler(job)
            self._counters["completed"] += 1
            record_queue_event(self.name, "completed")
        except asyncio.CancelledError:
            logger.warning("Queue %s: job %r cancelled", self.name, job)
            raise
        except Exception:
            self._counters["failed"] += 1
            record_queue_event(self.name, "failed")
            logger.exception("Queue %s: job %r failed", self.name, job)
        finally:
            self._running.discard(job)
            if not self._running:
                self._idle.set()
