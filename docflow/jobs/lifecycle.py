"""Job Record status transitions and stall recovery.

    pending ──► processing ──► ready
       ▲            │  └─────► failed
       │            │            │
       └── stall ───┘            │
       └──────── reopen ◄────────┘ (and from ready, for retraining)

A record stuck in `processing` is only noticed when a new request arrives
for it; there is no background sweep. Resetting a stalled record does not
cancel the call that was handling it, so if that call finishes later both
may write to the record.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from docflow.exceptions import InvalidTransitionError, JobConflictError, JobNotFoundError
from docflow.jobs.models import JobRecord, JobStatus, ProcessingMethod, utcnow
from docflow.storage.base import JobStore

logger = logging.getLogger(__name__)

DEFAULT_STALL_THRESHOLD = timedelta(minutes=5)

ALLOWED_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.PROCESSING},
    JobStatus.PROCESSING: {JobStatus.READY, JobStatus.FAILED, JobStatus.PENDING},
    JobStatus.READY: {JobStatus.PENDING},
    JobStatus.FAILED: {JobStatus.PENDING},
}


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, set())


async def transition(
    store: JobStore,
    job_id: str,
    target: JobStatus,
    **fields: Any,
) -> None:
    """Move a record to `target`, checked against its stored status."""
    record = await store.read(job_id)
    if record is None:
        raise JobNotFoundError(f"Job record not found: {job_id}")
    if record.status != target and not can_transition(record.status, target):
        raise InvalidTransitionError(
            f"Job {job_id}: cannot move from {record.status.value} to {target.value}"
        )
    update: Dict[str, Any] = {"status": target}
    update.update(fields)
    await store.update(job_id, update)
    logger.debug("Job %s: %s -> %s", job_id, record.status.value, target.value)


async def mark_pending(
    store: JobStore,
    job_id: str,
    *,
    processing_method: Optional[ProcessingMethod] = None,
    error_message: Optional[str] = None,
) -> None:
    fields: Dict[str, Any] = {"error_message": error_message}
    if processing_method is not None:
        fields["processing_method"] = processing_method
    await transition(store, job_id, JobStatus.PENDING, **fields)


async def mark_processing(store: JobStore, job_id: str, method: ProcessingMethod) -> None:
    # A (re)start clears whatever a previous attempt or a stall reset left behind
    await transition(
        store, job_id, JobStatus.PROCESSING,
        processing_method=method, error_message=None,
    )


async def mark_ready(store: JobStore, job_id: str, **fields: Any) -> None:
    await transition(store, job_id, JobStatus.READY, error_message=None, **fields)


async def mark_failed(store: JobStore, job_id: str, error_message: str) -> None:
    await transition(store, job_id, JobStatus.FAILED, error_message=error_message)


async def reopen(store: JobStore, record: JobRecord) -> None:
    """Send a finished record (ready or failed) back to pending."""
    if record.status not in (JobStatus.READY, JobStatus.FAILED):
        raise InvalidTransitionError(
            f"Job {record.id}: only ready or failed records can be reopened"
        )
    await mark_pending(store, record.id)


def minutes_since_update(record: JobRecord, now: Optional[datetime] = None) -> float:
    now = now or utcnow()
    return (now - record.updated_at).total_seconds() / 60


def is_stalled(
    record: JobRecord,
    threshold: timedelta = DEFAULT_STALL_THRESHOLD,
    now: Optional[datetime] = None,
) -> bool:
    if record.status != JobStatus.PROCESSING:
        return False
    now = now or utcnow()
    return now - record.updated_at > threshold


async def admit(
    store: JobStore,
    record: JobRecord,
    *,
    threshold: timedelta = DEFAULT_STALL_THRESHOLD,
    allow_ready: bool = False,
    now: Optional[datetime] = None,
) -> JobRecord:
    """Decide whether a new processing request may go ahead for `record`.

    Returns the (possibly reset) record, ready to be dispatched from
    `pending`. Raises JobConflictError when it must not be dispatched.
    """
    if record.status == JobStatus.PROCESSING:
        if not is_stalled(record, threshold, now):
            raise JobConflictError(
                "Document is currently being processed. "
                "Please wait or try again in a few minutes."
            )
        minutes = minutes_since_update(record, now)
        logger.warning(
            "Job %s stuck in processing for %.1f minutes; resetting to pending",
            record.id, minutes,
        )
        await mark_pending(
            store, record.id,
            error_message=f"Processing stalled - reset after {minutes:.1f} minutes",
        )
    elif record.status == JobStatus.READY:
        if not allow_ready:
            raise JobConflictError("Document has already been processed")
        await reopen(store, record)
    elif record.status == JobStatus.FAILED:
        await reopen(store, record)
    else:
        return record

    refreshed = await store.read(record.id)
    if refreshed is None:
        raise JobNotFoundError(f"Job record not found: {record.id}")
    return refreshed
