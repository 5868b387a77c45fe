"""Store interface for Job Records, documents, chunks and uploaded files."""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from docflow.jobs.models import JobRecord

JOBS_TABLE = "user_documents"
DOCUMENTS_TABLE = "documents"
CHUNKS_TABLE = "document_chunks"
PROCESSING_LOGS_TABLE = "document_processing_logs"
USER_ROLES_TABLE = "user_roles"
UPLOADS_BUCKET = "user-documents"


class JobStore(ABC):
    """Durable state the processing core reads and writes.

    Every `update()` stamps `updated_at`; stall detection relies on it.
    """

    @abstractmethod
    async def create(self, record: JobRecord) -> JobRecord:
        ...

    @abstractmethod
    async def read(self, job_id: str) -> Optional[JobRecord]:
        ...

    @abstractmethod
    async def update(self, job_id: str, fields: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def count(self, table: str, **filters: Any) -> int:
        """Count rows in `table` matching all equality filters."""
        ...

    @abstractmethod
    async def delete(self, table: str, **filters: Any) -> int:
        """Delete matching rows. Returns how many were deleted."""
        ...

    @abstractmethod
    async def insert(self, table: str, rows: List[Dict[str, Any]]) -> None:
        ...

    @abstractmethod
    async def select_one(self, table: str, **filters: Any) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def update_rows(self, table: str, fields: Dict[str, Any], **filters: Any) -> None:
        ...

    @abstractmethod
    async def download(self, path: str) -> bytes:
        ...

    @abstractmethod
    async def upload(self, path: str, data: bytes, content_type: str) -> None:
        ...

    @abstractmethod
    async def remove_file(self, path: str) -> None:
        ...
