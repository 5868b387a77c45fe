"""Job status API: poll a Job Record, inspect the processing queue."""

from fastapi import APIRouter, Depends, HTTPException

from docflow.auth.supabase_auth import AuthContext, verify_jwt
from docflow.jobs import lifecycle
from docflow.jobs.models import JobStatus

router = APIRouter()

# Set by main.py during lifespan
_dispatcher = None


def set_dispatcher(dispatcher):
    global _dispatcher
    _dispatcher = dispatcher


@router.get("/processing-status/{job_id}")
async def get_processing_status(job_id: str, auth: AuthContext = Depends(verify_jwt)):
    """Current state of a Job Record, in the shape the upload UI polls."""
    if _dispatcher is None:
        raise HTTPException(status_code=503, detail="Job dispatcher not initialized")

    record = await _dispatcher.get_status(job_id)
    if record is None or record.user_id != auth.user_id:
        raise HTTPException(status_code=404, detail="Document not found")

    response = {
        "user_document_id": record.id,
        "title": record.title,
        "status": record.status.value,
        "processing_method": record.processing_method.value if record.processing_method else None,
        "document_slug": record.document_slug,
        "created_at": record.created_at.isoformat(),
        "updated_at": record.updated_at.isoformat(),
    }

    if record.status == JobStatus.PENDING:
        response["queue_position"] = _dispatcher.queue_position(record.id)

    if record.status == JobStatus.PROCESSING:
        response["stalled"] = lifecycle.is_stalled(record, _dispatcher.stall_threshold)
        response["minutes_since_update"] = round(lifecycle.minutes_since_update(record), 1)

    if record.error_message:
        response["error"] = record.error_message

    return response


@router.get("/processing/queue")
async def get_queue_status():
    """Queue length, running jobs and processing load."""
    if _dispatcher is None:
        raise HTTPException(status_code=503, detail="Job dispatcher not initialized")
    return _dispatcher.get_queue_status()
