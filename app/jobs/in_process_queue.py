"""In-process pipeline pool using asyncio.

A bounded queue feeds a fixed number of worker tasks, so a burst of triggers
can neither start unbounded concurrent calls to the transformation service
nor grow the backlog without limit. No external broker (Redis, Celery) needed.
"""

import asyncio
import logging
from typing import List, Tuple

from app.jobs.dispatcher import PipelineDispatcher, Work
from app.jobs.errors import DispatchRejected

logger = logging.getLogger(__name__)


class InProcessQueue(PipelineDispatcher):
    """Local async worker pool."""

    def __init__(self, concurrency: int = 4, max_pending: int = 100):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._concurrency = concurrency
        self._queue: "asyncio.Queue[Tuple[str, Work]]" = asyncio.Queue(maxsize=max_pending)
        self._workers: List[asyncio.Task] = []
        self._running = False

    def has_capacity(self) -> bool:
        return self._running and not self._queue.full()

    async def submit(self, job_id: str, work: Work) -> None:
        if not self._running:
            raise DispatchRejected("pipeline pool is not running")
        try:
            self._queue.put_nowait((job_id, work))
        except asyncio.QueueFull:
            raise DispatchRejected(
                f"pipeline queue is full ({self._queue.maxsize} pending)"
            ) from None

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._workers = [
            asyncio.create_task(self._worker_loop(n)) for n in range(self._concurrency)
        ]
        logger.info("Pipeline pool started with %d worker(s)", self._concurrency)

    async def stop(self) -> None:
        self._running = False
        for task in self._workers:
            task.cancel()
        for task in self._workers:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._workers = []
        if self._queue.qsize():
            logger.warning("Pipeline pool stopped with %d job(s) still queued", self._queue.qsize())

    async def join(self) -> None:
        """Wait until every submitted item has finished."""
        await self._queue.join()

    async def _worker_loop(self, worker_no: int) -> None:
        while True:
            job_id, work = await self._queue.get()
            try:
                await work()
            except asyncio.CancelledError:
                raise
            except Exception:
                # Work items record their own outcome; anything escaping is a bug
                logger.exception("Worker %d: pipeline for job %s raised", worker_no, job_id)
            finally:
                self._queue.task_done()
