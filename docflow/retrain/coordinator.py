"""Retraining: rebuild an existing document's chunks from new content.

The document keeps its slug. In `replace` mode every existing chunk is
deleted, and the deletion verified, before anything else changes; in `add`
mode new chunks are appended after the existing ones.
"""

import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from pydantic import BaseModel

from docflow.auth.supabase_auth import user_is_admin
from docflow.backends.base import RetrainMode
from docflow.exceptions import (
    ChunkDeletionError,
    InvalidRequestError,
    JobNotFoundError,
    PermissionDeniedError,
)
from docflow.jobs import lifecycle
from docflow.jobs.dispatcher import ProcessingDispatcher
from docflow.jobs.models import DispatchOutcome, JobRecord, utcnow
from docflow.processing.extract import PDF_MIME
from docflow.storage.base import CHUNKS_TABLE, DOCUMENTS_TABLE, JobStore

logger = logging.getLogger(__name__)

TEXT_MIME = "text/plain"


@dataclass
class RetrainRequest:
    document_id: str
    user_id: str
    mode: RetrainMode = RetrainMode.REPLACE
    auth_token: Optional[str] = None
    file_bytes: Optional[bytes] = None
    filename: Optional[str] = None
    text: Optional[str] = None

    def validate(self) -> None:
        if (self.file_bytes is None) == (self.text is None):
            raise InvalidRequestError("Provide either a PDF file or text content for retraining")
        if self.file_bytes is not None and not self.file_bytes:
            raise InvalidRequestError("Uploaded file is empty")
        if self.text is not None and not self.text.strip():
            raise InvalidRequestError("Text content is empty")


class RetrainResult(BaseModel):
    document_id: str
    document_slug: str
    user_document_id: str
    mode: RetrainMode
    chunks_deleted: int = 0
    dispatch: DispatchOutcome


def sanitize_filename(name: str) -> str:
    return re.sub(r"[^a-zA-Z0-9.-]", "_", name)


class RetrainCoordinator:
    def __init__(self, store: JobStore, dispatcher: ProcessingDispatcher):
        self._store = store
        self._dispatcher = dispatcher

    async def retrain(self, request: RetrainRequest) -> RetrainResult:
        request.validate()

        document = await self._store.select_one(DOCUMENTS_TABLE, id=request.document_id)
        if document is None:
            raise JobNotFoundError("Document not found")
        slug = document["slug"]
        doc_metadata: Dict[str, Any] = dict(document.get("metadata") or {})

        await self._check_permission(request.user_id, doc_metadata)

        record = None
        linked_id = doc_metadata.get("user_document_id")
        if linked_id:
            record = await self._store.read(linked_id)
        if record is None:
            self._dispatcher.ensure_admittable()
        else:
            # Refuse before deleting anything if the record is busy or slots are full
            self._dispatcher.check_available(record)
            if lifecycle.is_stalled(record, self._dispatcher.stall_threshold):
                # Reset now; the content update below refreshes updated_at
                record = await lifecycle.admit(
                    self._store, record, threshold=self._dispatcher.stall_threshold,
                )

        logger.info(
            "Retraining document %s (%s), mode=%s, user=%s",
            request.document_id, slug, request.mode.value, request.user_id,
        )

        deleted = 0
        if request.mode == RetrainMode.REPLACE:
            deleted = await self._delete_chunks(slug)

        record = await self._store_content(request, document, record)
        await self._store.update_rows(DOCUMENTS_TABLE, {
            "metadata": {
                **doc_metadata,
                "user_document_id": record.id,
                "retraining": True,
                "retrained_at": utcnow().isoformat(),
                "retrain_mode": request.mode.value,
            },
        }, id=request.document_id)

        outcome = await self._dispatcher.submit(
            record,
            auth_token=request.auth_token,
            user_id=request.user_id,
            force_local=True,
            document_slug=slug,
            retrain_mode=request.mode,
        )
        return RetrainResult(
            document_id=request.document_id,
            document_slug=slug,
            user_document_id=record.id,
            mode=request.mode,
            chunks_deleted=deleted,
            dispatch=outcome,
        )

    async def _check_permission(self, user_id: str, doc_metadata: Dict[str, Any]) -> None:
        if doc_metadata.get("user_id") == user_id:
            return
        if await user_is_admin(self._store, user_id):
            return
        raise PermissionDeniedError("You do not have permission to retrain this document")

    async def _delete_chunks(self, slug: str) -> int:
        deleted = await self._store.delete(CHUNKS_TABLE, document_slug=slug)
        logger.info("Existing chunks deleted for %s: %d removed", slug, deleted)

        remaining = await self._store.count(CHUNKS_TABLE, document_slug=slug)
        if remaining > 0:
            logger.error("%d chunks still exist for %s after deletion", remaining, slug)
            raise ChunkDeletionError(slug, remaining)
        return deleted

    async def _store_content(
        self,
        request: RetrainRequest,
        document: Dict[str, Any],
        record: Optional[JobRecord],
    ) -> JobRecord:
        """Put the new content where the pipeline will look for it.

        Reuses the linked Job Record when there is one, otherwise creates it.
        """
        if request.text is not None:
            content_fields: Dict[str, Any] = {
                "mime_type": TEXT_MIME,
                "file_size": len(request.text.encode("utf-8")),
            }
            metadata = {"upload_type": "text", "text_content": request.text}
        else:
            path = record.file_path if record and record.file_path else None
            if path is None:
                filename = sanitize_filename(request.filename or "document.pdf")
                path = f"{request.user_id}/{int(time.time() * 1000)}-{filename}"
            else:
                await self._store.remove_file(path)
            await self._store.upload(path, request.file_bytes, PDF_MIME)
            content_fields = {
                "mime_type": PDF_MIME,
                "file_path": path,
                "file_size": len(request.file_bytes),
            }
            metadata = {"upload_type": "file"}

        if record is None:
            record = JobRecord(
                user_id=request.user_id,
                title=document.get("title") or "",
                metadata=metadata,
                **content_fields,
            )
            return await self._store.create(record)

        merged = {k: v for k, v in record.metadata.items() if k != "text_content"}
        merged.update(metadata)
        await self._store.update(record.id, {
            "title": document.get("title") or record.title,
            "metadata": merged,
            **content_fields,
        })
        refreshed = await self._store.read(record.id)
        if refreshed is None:
            raise JobNotFoundError(f"Job record not found: {record.id}")
        return refreshed
