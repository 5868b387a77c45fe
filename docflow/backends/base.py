"""Processing backend interface and the request/result types it exchanges."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from docflow.jobs.models import ProcessingMethod


class RetrainMode(str, Enum):
    REPLACE = "replace"
    ADD = "add"


@dataclass
class ProcessingRequest:
    """Everything a backend needs to process one Job Record."""
    job_id: str
    file_size: int = 0
    auth_token: Optional[str] = None
    user_id: Optional[str] = None
    # Retraining keeps the existing document slug and forces the local backend
    document_slug: Optional[str] = None
    retrain_mode: Optional[RetrainMode] = None
    force_local: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_retrain(self) -> bool:
        return self.retrain_mode is not None


@dataclass
class BackendResult:
    success: bool
    method: ProcessingMethod
    document_slug: Optional[str] = None
    chunks: int = 0
    error: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


class ProcessingBackend(ABC):
    """A place a document can be processed.

    `attempt()` reports ordinary failures through `BackendResult.success`;
    implementations may also raise, and callers treat that the same way.
    """

    method: ProcessingMethod

    @abstractmethod
    async def attempt(self, request: ProcessingRequest) -> BackendResult:
        ...

    def describe(self) -> str:
        return self.method.value
