"""
In-process job scheduler with per-asset single-flight.

Jobs are kept in FIFO order. A worker loop takes the first queued job whose
asset is not already being processed, so two jobs for the same asset never
run at the same time while jobs for other assets behind it can proceed.
The queue lives in process memory: pending jobs are lost on restart.
"""

import asyncio
import logging
import threading
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Set

from api.metrics import PROCESSING_QUEUE_SIZE
from config import WORKER_CONCURRENCY
from worker.models import ProcessingJob

logger = logging.getLogger(__name__)

JobHandler = Callable[[ProcessingJob], Awaitable[Any]]


class JobScheduler:
    """
    FIFO queue of ProcessingJobs drained by one or more worker loops.

    submit() may be called from the event loop thread or any other thread.
    The queue and the in-flight set are guarded by a threading.Lock.
    """

    def __init__(self, handler: JobHandler, concurrency: int = WORKER_CONCURRENCY):
        self._handler = handler
        self.concurrency = max(1, concurrency)
        self._lock = threading.Lock()
        self._queue: Deque[ProcessingJob] = deque()
        self._in_flight: Set[str] = set()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._wakeup = asyncio.Event()
        self._idle = asyncio.Event()
        self._shutdown = False
        self._running = False

    def submit(self, job: ProcessingJob) -> None:
        """Enqueue a job and wake an idle worker loop. Never blocks on processing."""
        with self._lock:
            self._queue.append(job)
            depth = len(self._queue)
        PROCESSING_QUEUE_SIZE.set(depth)
        if self._shutdown:
            logger.warning(f"Job for asset {job.asset_id} queued after shutdown was requested, it will not run")
        else:
            logger.info(f"Queued job for asset {job.asset_id} (queue depth {depth})")
        self._notify(self._wakeup)

    def _notify(self, event: asyncio.Event) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            # run() checks the queue before its first wait
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            event.set()
        else:
            loop.call_soon_threadsafe(event.set)

    def _take_next(self) -> Optional[ProcessingJob]:
        """Remove and return the first queued job whose asset is not in flight."""
        with self._lock:
            for index, job in enumerate(self._queue):
                if job.asset_id not in self._in_flight:
                    del self._queue[index]
                    self._in_flight.add(job.asset_id)
                    depth = len(self._queue)
                    break
            else:
                return None
        PROCESSING_QUEUE_SIZE.set(depth)
        return job

    def _release(self, asset_id: str) -> None:
        with self._lock:
            self._in_flight.discard(asset_id)
            idle = not self._queue and not self._in_flight
        if idle:
            self._idle.set()
        # A job for this asset may have been waiting behind the one that finished
        self._wakeup.set()

    async def _worker_loop(self, index: int) -> None:
        logger.debug(f"Worker loop {index} started")
        while not self._shutdown:
            job = self._take_next()
            if job is None:
                self._wakeup.clear()
                # Re-check after clearing so a submit in between is not missed
                job = self._take_next()
                if job is None:
                    await self._wakeup.wait()
                    continue

            logger.info(f"Worker loop {index} processing asset {job.asset_id}")
            try:
                await self._handler(job)
            except Exception:
                logger.exception(f"Unhandled error processing asset {job.asset_id}")
            finally:
                self._release(job.asset_id)
        logger.debug(f"Worker loop {index} stopped")

    async def run(self) -> None:
        """Run the worker loops until shutdown() is called. In-flight jobs finish first."""
        self._loop = asyncio.get_running_loop()
        self._running = True
        logger.info(f"Scheduler running with {self.concurrency} worker loop(s)")
        try:
            await asyncio.gather(*(self._worker_loop(i) for i in range(self.concurrency)))
        finally:
            self._running = False
            self._loop = None

    def shutdown(self) -> None:
        """Stop taking new jobs. Queued jobs stay queued and are not run."""
        self._shutdown = True
        self._notify(self._wakeup)

    @property
    def is_shutting_down(self) -> bool:
        return self._shutdown

    @property
    def is_running(self) -> bool:
        return self._running

    async def wait_idle(self) -> None:
        """Wait until the queue is empty and no job is in flight. Requires run() to be active."""
        while True:
            self._idle.clear()
            with self._lock:
                if not self._queue and not self._in_flight:
                    return
            await self._idle.wait()

    def contains(self, asset_id: str) -> bool:
        """True if a job for this asset is queued or in flight."""
        with self._lock:
            return asset_id in self._in_flight or any(job.asset_id == asset_id for job in self._queue)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "queued": len(self._queue),
                "in_flight": sorted(self._in_flight),
                "concurrency": self.concurrency,
                "running": self._running,
                "shutting_down": self._shutdown,
            }
