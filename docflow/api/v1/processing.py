"""Processing API: start processing, upload documents or text, retrain.

Every endpoint returns as soon as the job is started or queued; clients poll
GET /api/v1/processing-status/{id} for the outcome.
"""

import logging
import time
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from docflow.auth.supabase_auth import AuthContext, verify_jwt
from docflow.backends.base import RetrainMode
from docflow.config import settings
from docflow.exceptions import (
    CapacityError,
    DocflowError,
    InvalidRequestError,
    JobConflictError,
    JobNotFoundError,
    PermissionDeniedError,
)
from docflow.jobs.models import DispatchOutcome, JobRecord
from docflow.processing.extract import PDF_MIME
from docflow.retrain.coordinator import TEXT_MIME, RetrainRequest, sanitize_filename

logger = logging.getLogger(__name__)

router = APIRouter()

# Set by main.py during lifespan
_dispatcher = None
_store = None
_retrainer = None


def set_dispatcher(dispatcher):
    global _dispatcher
    _dispatcher = dispatcher


def set_store(store):
    global _store
    _store = store


def set_retrain_coordinator(coordinator):
    global _retrainer
    _retrainer = coordinator


class ProcessDocumentRequest(BaseModel):
    user_document_id: str


class UploadTextRequest(BaseModel):
    title: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)


def _require_ready():
    if _dispatcher is None or _store is None:
        raise HTTPException(status_code=503, detail="Job dispatcher not initialized")


def _http_error(e: DocflowError) -> HTTPException:
    if isinstance(e, CapacityError):
        return HTTPException(
            status_code=503,
            detail=e.to_dict(),
            headers={"Retry-After": str(e.retry_after)},
        )
    if isinstance(e, JobConflictError):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, JobNotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, PermissionDeniedError):
        return HTTPException(status_code=403, detail=str(e))
    if isinstance(e, InvalidRequestError):
        return HTTPException(status_code=400, detail=str(e))
    logger.error("Request failed: %s: %s", type(e).__name__, e)
    return HTTPException(status_code=500, detail=str(e))


def _dispatch_response(outcome: DispatchOutcome, message: str, **extra: Any) -> JSONResponse:
    body: Dict[str, Any] = {
        "success": True,
        "user_document_id": outcome.job_id,
        "status": outcome.status.value,
        "method": outcome.method.value if outcome.method else None,
        "queued": outcome.queued,
        **extra,
    }
    if outcome.queued and outcome.queue is not None:
        body["message"] = (
            f"Server is busy. Document queued at position {outcome.queue.position}."
        )
        body["queue"] = outcome.queue.model_dump()
        return JSONResponse(status_code=202, content=body)
    body["message"] = message
    return JSONResponse(status_code=200, content=body)


async def _submit(record: JobRecord, auth: AuthContext) -> DispatchOutcome:
    try:
        return await _dispatcher.submit(record, auth_token=auth.token, user_id=auth.user_id)
    except DocflowError as e:
        raise _http_error(e)


@router.post("/process-document")
async def process_document(
    request: ProcessDocumentRequest,
    auth: AuthContext = Depends(verify_jwt),
):
    """Start (or queue) processing for an uploaded document."""
    _require_ready()

    record = await _store.read(request.user_document_id)
    if record is None or record.user_id != auth.user_id:
        raise HTTPException(status_code=404, detail="Document not found or access denied")

    logger.info("Processing requested for %s by %s", record.id, auth.email or auth.user_id)
    outcome = await _submit(record, auth)
    return _dispatch_response(outcome, "Document processing started")


@router.post("/upload-document")
async def upload_document(
    file: UploadFile = File(...),
    title: Optional[str] = Form(None),
    auth: AuthContext = Depends(verify_jwt),
):
    """Store an uploaded PDF, create its Job Record and start processing."""
    _require_ready()

    filename = file.filename or "document.pdf"
    if file.content_type != PDF_MIME and not filename.lower().endswith(".pdf"):
        raise HTTPException(status_code=400, detail="Only PDF files are supported")

    data = await file.read()
    if not data:
        raise HTTPException(status_code=400, detail="Uploaded file is empty")
    if len(data) > settings.max_upload_bytes:
        raise HTTPException(
            status_code=413,
            detail=f"File too large (max {settings.max_upload_bytes // (1024 * 1024)}MB)",
        )

    path = f"{auth.user_id}/{int(time.time() * 1000)}-{sanitize_filename(filename)}"
    record = JobRecord(
        user_id=auth.user_id,
        title=(title or filename.rsplit(".", 1)[0]).strip() or "Untitled document",
        file_path=path,
        mime_type=PDF_MIME,
        file_size=len(data),
        metadata={"upload_type": "file", "original_filename": filename},
    )
    try:
        _dispatcher.ensure_admittable()
        await _store.upload(path, data, PDF_MIME)
        await _store.create(record)
    except DocflowError as e:
        raise _http_error(e)

    logger.info("Uploaded %s (%.2f MB) as %s", filename, len(data) / 1024 / 1024, record.id)
    outcome = await _submit(record, auth)
    return _dispatch_response(outcome, "Document uploaded and processing started")


@router.post("/upload-text")
async def upload_text(
    request: UploadTextRequest,
    auth: AuthContext = Depends(verify_jwt),
):
    """Create a Job Record from pasted text and start processing."""
    _require_ready()

    if len(request.content) > settings.max_text_length:
        raise HTTPException(
            status_code=413,
            detail=f"Text too long (max {settings.max_text_length} characters)",
        )

    record = JobRecord(
        user_id=auth.user_id,
        title=request.title.strip(),
        mime_type=TEXT_MIME,
        file_size=len(request.content.encode("utf-8")),
        metadata={"upload_type": "text", "text_content": request.content},
    )
    try:
        _dispatcher.ensure_admittable()
        await _store.create(record)
    except DocflowError as e:
        raise _http_error(e)

    outcome = await _submit(record, auth)
    return _dispatch_response(outcome, "Text uploaded and processing started")


@router.post("/retrain-document")
async def retrain_document(
    document_id: str = Form(...),
    mode: RetrainMode = Form(RetrainMode.REPLACE),
    file: Optional[UploadFile] = File(None),
    text: Optional[str] = Form(None),
    auth: AuthContext = Depends(verify_jwt),
):
    """Rebuild an existing document's chunks, keeping its slug."""
    if _retrainer is None:
        raise HTTPException(status_code=503, detail="Retraining not initialized")

    file_bytes = None
    filename = None
    if file is not None:
        file_bytes = await file.read()
        filename = file.filename
        if len(file_bytes) > settings.max_upload_bytes:
            raise HTTPException(status_code=413, detail="File too large")

    try:
        result = await _retrainer.retrain(RetrainRequest(
            document_id=document_id,
            user_id=auth.user_id,
            mode=mode,
            auth_token=auth.token,
            file_bytes=file_bytes,
            filename=filename,
            text=text,
        ))
    except DocflowError as e:
        raise _http_error(e)

    return _dispatch_response(
        result.dispatch,
        "Document retraining started",
        document_id=result.document_id,
        document_slug=result.document_slug,
        mode=result.mode.value,
        chunks_deleted=result.chunks_deleted,
    )
