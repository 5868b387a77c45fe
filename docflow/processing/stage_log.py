"""Per-stage processing log written to `document_processing_logs`."""

import logging
from enum import Enum
from typing import Any, Dict, Optional

from docflow.jobs.models import ProcessingMethod, utcnow
from docflow.storage.base import PROCESSING_LOGS_TABLE, JobStore

logger = logging.getLogger(__name__)


class Stage(str, Enum):
    DOWNLOAD = "download"
    EXTRACT = "extract"
    CHUNK = "chunk"
    EMBED = "embed"
    STORE = "store"
    COMPLETE = "complete"
    ERROR = "error"


class StageStatus(str, Enum):
    STARTED = "started"
    PROGRESS = "progress"
    COMPLETED = "completed"
    FAILED = "failed"


class StageLogger:
    """Records pipeline progress for one job. Never raises."""

    def __init__(
        self,
        store: JobStore,
        job_id: str,
        method: ProcessingMethod = ProcessingMethod.VPS,
    ):
        self._store = store
        self._job_id = job_id
        self._method = method
        self.document_slug: Optional[str] = None

    async def log(
        self,
        stage: Stage,
        status: StageStatus,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        logger.info("[%s] [%s:%s] %s", self._job_id, stage.value, status.value, message)
        try:
            await self._store.insert(PROCESSING_LOGS_TABLE, [{
                "user_document_id": self._job_id,
                "document_slug": self.document_slug,
                "stage": stage.value,
                "status": status.value,
                "message": message,
                "metadata": metadata or {},
                "processing_method": self._method.value,
                "created_at": utcnow().isoformat(),
            }])
        except Exception as e:
            logger.warning("Could not write processing log for %s: %s", self._job_id, e)

    async def started(self, stage: Stage, message: str, **metadata: Any) -> None:
        await self.log(stage, StageStatus.STARTED, message, metadata)

    async def progress(self, stage: Stage, message: str, **metadata: Any) -> None:
        await self.log(stage, StageStatus.PROGRESS, message, metadata)

    async def completed(self, stage: Stage, message: str, **metadata: Any) -> None:
        await self.log(stage, StageStatus.COMPLETED, message, metadata)

    async def failed(self, message: str, error: BaseException) -> None:
        await self.log(Stage.ERROR, StageStatus.FAILED, message, {
            "error": str(error),
            "error_type": type(error).__name__,
        })
