"""Job Record data model and queue/dispatch DTOs."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional
from pydantic import BaseModel, Field
import time
import uuid


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    READY = "ready"
    FAILED = "failed"


class ProcessingMethod(str, Enum):
    VPS = "vps"
    EDGE_FUNCTION = "edge_function"
    VPS_FALLBACK = "vps_fallback"  # remote attempted, local finished the job


class JobRecord(BaseModel):
    """Persisted processing state for one uploaded document (`user_documents`)."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: Optional[str] = None
    title: str = ""
    file_path: Optional[str] = None
    mime_type: str = "application/pdf"
    file_size: int = 0
    status: JobStatus = JobStatus.PENDING
    processing_method: Optional[ProcessingMethod] = None
    error_message: Optional[str] = None
    document_slug: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_text_upload(self) -> bool:
        return self.metadata.get("upload_type") == "text"


class ProcessingLoad(BaseModel):
    active: int
    max: int
    available: int
    utilization_percent: int


class QueueInfo(BaseModel):
    """Returned to clients whose job had to wait for a processing slot."""
    queued: bool = True
    position: int
    queue_length: int
    estimated_wait_seconds: float
    load: ProcessingLoad


class DispatchOutcome(BaseModel):
    job_id: str
    status: JobStatus
    method: Optional[ProcessingMethod] = None
    queued: bool = False
    queue: Optional[QueueInfo] = None


# Processing closures: fn(job_id, metadata) -> result
ProcessingFunction = Callable[[str, Dict[str, Any]], Awaitable[Any]]


@dataclass
class QueuedJob:
    """A processing request waiting for capacity. In-memory only."""
    job_id: str
    processing_fn: ProcessingFunction
    metadata: Dict[str, Any] = field(default_factory=dict)
    enqueued_at: float = field(default_factory=time.monotonic)

    def waited_seconds(self) -> float:
        return time.monotonic() - self.enqueued_at
