"""In-process ("VPS") processing backend."""

import logging

from docflow.backends.base import BackendResult, ProcessingBackend, ProcessingRequest
from docflow.jobs.models import ProcessingMethod
from docflow.processing.processor import DocumentProcessor

logger = logging.getLogger(__name__)


class LocalBackend(ProcessingBackend):
    method = ProcessingMethod.VPS

    def __init__(self, processor: DocumentProcessor):
        self._processor = processor

    async def attempt(
        self,
        request: ProcessingRequest,
        method: ProcessingMethod = ProcessingMethod.VPS,
    ) -> BackendResult:
        try:
            result = await self._processor.process(
                request.job_id,
                document_slug=request.document_slug,
                mode=request.retrain_mode,
                method=method,
            )
        except Exception as e:
            logger.error("Local processing failed for %s: %s: %s",
                         request.job_id, type(e).__name__, e)
            return BackendResult(success=False, method=method, error=str(e) or type(e).__name__)

        return BackendResult(
            success=True,
            method=method,
            document_slug=result.document_slug,
            chunks=result.chunks,
            details={"pages": result.pages, "processing_time_ms": result.processing_time_ms},
        )
