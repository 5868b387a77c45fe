"""Job dispatcher interface and the capacity-aware implementation."""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Any, Dict, Optional

from docflow.backends.base import ProcessingRequest, RetrainMode
from docflow.backends.selector import BackendSelector
from docflow.exceptions import CapacityError, JobConflictError
from docflow.jobs import lifecycle
from docflow.jobs.concurrency import ConcurrencyManager
from docflow.jobs.models import DispatchOutcome, JobRecord, JobStatus
from docflow.jobs.queue import JobQueue
from docflow.storage.base import JobStore

logger = logging.getLogger(__name__)


class JobDispatcher(ABC):
    """Abstract interface for job dispatching."""

    @abstractmethod
    async def submit(self, record: JobRecord, **options: Any) -> DispatchOutcome:
        """Start or queue processing for a Job Record."""
        ...

    @abstractmethod
    async def get_status(self, job_id: str) -> Optional[JobRecord]:
        ...

    @abstractmethod
    async def start(self) -> None:
        ...

    @abstractmethod
    async def stop(self) -> None:
        """Stop the dispatcher gracefully."""
        ...


class ProcessingDispatcher(JobDispatcher):
    """Starts a job now when a slot is free, otherwise queues it (or refuses)."""

    def __init__(
        self,
        store: JobStore,
        selector: BackendSelector,
        concurrency: ConcurrencyManager,
        queue: Optional[JobQueue] = None,
        *,
        queue_when_busy: bool = True,
        stall_threshold: timedelta = lifecycle.DEFAULT_STALL_THRESHOLD,
        shutdown_grace_seconds: float = 10.0,
    ):
        self._store = store
        self._selector = selector
        self._concurrency = concurrency
        self._queue = queue or JobQueue(concurrency)
        self._queue_when_busy = queue_when_busy
        self._stall_threshold = stall_threshold
        self._shutdown_grace = shutdown_grace_seconds

    @property
    def queue(self) -> JobQueue:
        return self._queue

    @property
    def concurrency(self) -> ConcurrencyManager:
        return self._concurrency

    @property
    def stall_threshold(self) -> timedelta:
        return self._stall_threshold

    def check_available(self, record: JobRecord) -> None:
        """Raise if `record` must not be dispatched right now.

        JobConflictError when it is claimed or freshly processing, CapacityError
        when every slot is taken and queueing is off.

        Read-only; run it before any side effect a caller cannot undo.
        """
        if self._queue.is_claimed(record.id):
            raise JobConflictError(
                "Document is currently being processed. "
                "Please wait or try again in a few minutes."
            )
        if record.status == JobStatus.PROCESSING and not lifecycle.is_stalled(
            record, self._stall_threshold
        ):
            raise JobConflictError(
                "Document is currently being processed. "
                "Please wait or try again in a few minutes."
            )
        self.ensure_admittable()

    def ensure_admittable(self) -> None:
        """Raise CapacityError when a new job could be neither started nor queued."""
        if self._queue_when_busy:
            return
        error = self._concurrency.check_capacity()
        if error is not None:
            raise error

    async def submit(
        self,
        record: JobRecord,
        *,
        auth_token: Optional[str] = None,
        user_id: Optional[str] = None,
        force_local: bool = False,
        document_slug: Optional[str] = None,
        retrain_mode: Optional[RetrainMode] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> DispatchOutcome:
        self.check_available(record)
        record = await lifecycle.admit(
            self._store, record,
            threshold=self._stall_threshold,
            allow_ready=retrain_mode is not None,
        )

        request = ProcessingRequest(
            job_id=record.id,
            file_size=record.file_size,
            auth_token=auth_token,
            user_id=user_id or record.user_id,
            document_slug=document_slug,
            retrain_mode=retrain_mode,
            force_local=force_local or retrain_mode is not None,
            metadata=dict(metadata or {}),
        )
        processing_fn = self._selector.build_processing_fn(request)
        method = self._selector.planned_method(request)
        job_metadata = {"file_size": record.file_size, "method": method.value}

        # Another request may have claimed the id while we awaited the store
        self._claim_or_raise(record.id)

        if self._concurrency.has_capacity() and not len(self._queue):
            self._queue.run_detached(record.id, processing_fn, job_metadata)
            logger.info("Job %s: processing started (%s)", record.id, method.value)
            return DispatchOutcome(
                job_id=record.id,
                status=JobStatus.PROCESSING,
                method=method,
            )

        if not self._queue_when_busy:
            raise self._concurrency.check_capacity() or CapacityError(
                load=self._concurrency.get_processing_load().model_dump()
            )

        await lifecycle.mark_pending(self._store, record.id, processing_method=method)
        self._claim_or_raise(record.id)
        info = self._queue.enqueue_job(record.id, processing_fn, job_metadata)
        return DispatchOutcome(
            job_id=record.id,
            status=JobStatus.PENDING,
            method=method,
            queued=True,
            queue=info,
        )

    def _claim_or_raise(self, job_id: str) -> None:
        if self._queue.is_claimed(job_id):
            raise JobConflictError("Document is already queued or processing")

    async def get_status(self, job_id: str) -> Optional[JobRecord]:
        return await self._store.read(job_id)

    def queue_position(self, job_id: str) -> Optional[int]:
        return self._queue.position_of(job_id)

    def get_queue_status(self) -> Dict[str, Any]:
        return self._queue.get_queue_status()

    async def start(self) -> None:
        logger.info(
            "Dispatcher started (max %d concurrent, queue_when_busy=%s)",
            self._concurrency.max_concurrent, self._queue_when_busy,
        )

    async def stop(self) -> None:
        try:
            await self._queue.wait_idle(timeout=self._shutdown_grace)
        except asyncio.TimeoutError:
            logger.warning(
                "Shutdown: %d job(s) still running after %.0fs, cancelling",
                self._concurrency.active_count, self._shutdown_grace,
            )
        await self._queue.stop()
