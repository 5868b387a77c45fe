"""In-process FIFO job queue backed by asyncio tasks.

Jobs that arrive while every processing slot is taken wait here and are
launched, oldest first, as slots free up. Each launched job runs as a
detached task; the HTTP request that caused it has already returned.

The queue lives in process memory only. Queued (not yet launched) jobs are
lost on restart and their Job Records stay `pending`.
"""

import asyncio
import logging
import traceback
from collections import deque
from typing import Any, Deque, Dict, Optional, Set

from docflow.jobs.concurrency import ConcurrencyManager
from docflow.jobs.models import ProcessingFunction, QueueInfo, QueuedJob

logger = logging.getLogger(__name__)

# Conservative average run time used for wait estimates
AVG_PROCESSING_SECONDS = 5 * 60
MAX_ESTIMATED_WAIT_SECONDS = 30 * 60


class JobQueue:
    """Ordered waiting list plus the single launch path for processing jobs."""

    def __init__(self, concurrency: ConcurrencyManager):
        self._concurrency = concurrency
        self._queue: Deque[QueuedJob] = deque()
        self._tasks: Set[asyncio.Task] = set()
        self._running: Set[str] = set()

    def __len__(self) -> int:
        return len(self._queue)

    def enqueue_job(
        self,
        job_id: str,
        processing_fn: ProcessingFunction,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> QueueInfo:
        """Append a job to the tail. The caller marks the Job Record pending."""
        self._queue.append(QueuedJob(job_id, processing_fn, dict(metadata or {})))
        position = len(self._queue)
        info = QueueInfo(
            position=position,
            queue_length=position,
            estimated_wait_seconds=self.estimate_wait_time(position),
            load=self._concurrency.get_processing_load(),
        )
        logger.info(
            "Job queued: %s (position %d, estimated wait %.0fs)",
            job_id, position, info.estimated_wait_seconds,
        )

        # A slot may have freed while the caller was awaiting the store
        self.process_queue_if_available()
        return info

    def estimate_wait_time(self, position: int) -> float:
        load = self._concurrency.get_processing_load()
        if load.available > 0:
            return float(max(10, position * 30))

        # Assume running jobs are about halfway through
        remaining = AVG_PROCESSING_SECONDS / 2
        total = (remaining + position) * (AVG_PROCESSING_SECONDS / load.max)
        return float(min(total, MAX_ESTIMATED_WAIT_SECONDS))

    def process_queue_if_available(self) -> int:
        """Launch queued jobs while capacity remains. Returns how many started.

        Synchronous on purpose: popping a job and taking its slot happen with
        no await in between, so redundant calls can never start the same job
        twice.
        """
        started = 0
        while self._queue and self._concurrency.has_capacity():
            job = self._queue.popleft()
            logger.info(
                "Processing queued job: %s (waited %.1fs, %d remaining in queue)",
                job.job_id, job.waited_seconds(), len(self._queue),
            )
            self.run_detached(job.job_id, job.processing_fn, job.metadata)
            started += 1
        return started

    def run_detached(
        self,
        job_id: str,
        processing_fn: ProcessingFunction,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> asyncio.Task:
        """Take a slot and run the job as a background task."""
        self._concurrency.increment_jobs()
        self._running.add(job_id)
        task = asyncio.create_task(
            self._run(job_id, processing_fn, dict(metadata or {})),
            name=f"process-{job_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(
        self,
        job_id: str,
        processing_fn: ProcessingFunction,
        metadata: Dict[str, Any],
    ) -> Any:
        try:
            result = await processing_fn(job_id, metadata)
            logger.info("Job finished: %s", job_id)
            return result
        except Exception as e:
            # The processing function owns the Job Record; one job's failure
            # must not stop the queue from draining.
            logger.error(
                "Job %s raised %s: %s\n%s",
                job_id, type(e).__name__, e, traceback.format_exc(),
            )
            return None
        finally:
            self._running.discard(job_id)
            self._concurrency.decrement_jobs()
            self.process_queue_if_available()

    def is_claimed(self, job_id: str) -> bool:
        """True while the job is queued or running in this process."""
        if job_id in self._running:
            return True
        return any(job.job_id == job_id for job in self._queue)

    def position_of(self, job_id: str) -> Optional[int]:
        for index, job in enumerate(self._queue, start=1):
            if job.job_id == job_id:
                return index
        return None

    def get_queue_status(self) -> Dict[str, Any]:
        return {
            "queue_length": len(self._queue),
            "running": sorted(self._running),
            "load": self._concurrency.get_processing_load().model_dump(),
            "queued_jobs": [
                {
                    "job_id": job.job_id,
                    "position": index,
                    "waited_seconds": round(job.waited_seconds(), 1),
                }
                for index, job in enumerate(self._queue, start=1)
            ],
        }

    def clear_queue(self) -> int:
        cleared = len(self._queue)
        self._queue.clear()
        logger.info("Queue cleared: %d jobs removed", cleared)
        return cleared

    async def wait_idle(self, timeout: Optional[float] = None) -> None:
        """Wait until no launched job is still running."""

        async def _drain():
            while self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)

        await asyncio.wait_for(_drain(), timeout=timeout)

    async def stop(self) -> None:
        """Drop waiting jobs and cancel running ones."""
        self.clear_queue()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
