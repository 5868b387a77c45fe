"""Exception hierarchy for the document processing service."""

from typing import Any, Dict, Optional


class DocflowError(Exception):
    """Base exception for docflow."""


class ConfigError(DocflowError):
    """Raised when configuration is missing or invalid."""


class CapacityError(DocflowError):
    """Backpressure signal: the processing slots are all in use.

    Returned (not raised) by ConcurrencyManager.check_capacity(); handlers
    either queue the job or turn it into a "try again later" response.
    """

    def __init__(
        self,
        message: str = (
            "Server is currently processing the maximum number of documents. "
            "Please try again in a moment."
        ),
        retry_after: int = 30,
        load: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.retry_after = retry_after
        self.load = load or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": False,
            "error": str(self),
            "retry_after": self.retry_after,
            "load": self.load,
        }


class JobConflictError(DocflowError):
    """Raised when a job is already being processed (or already done)."""


class JobNotFoundError(DocflowError):
    """Raised when a Job Record or document cannot be found."""


class InvalidTransitionError(DocflowError):
    """Raised when a status change is not allowed by the lifecycle."""


class ProcessingError(DocflowError):
    """Raised when the local pipeline fails."""


class ExtractionError(ProcessingError):
    """Raised when no text can be extracted from an upload."""


class EmbeddingError(ProcessingError):
    """Raised when embeddings cannot be generated."""


class StorageError(ProcessingError):
    """Raised when a store or file-bucket operation fails."""


class ChunkDeletionError(ProcessingError):
    """Raised when chunks remain after a replace-mode deletion."""

    def __init__(self, document_slug: str, remaining: int):
        super().__init__(
            f"Failed to delete all chunks for {document_slug}. {remaining} chunks remain."
        )
        self.document_slug = document_slug
        self.remaining = remaining


class RemoteBackendError(DocflowError):
    """Raised when the Edge Function call fails (network, non-2xx)."""


class RemoteBackendTimeout(RemoteBackendError):
    """Raised when the Edge Function call exceeds its time limit."""


class InvalidRequestError(DocflowError):
    """Raised when a processing request is malformed (maps to HTTP 400)."""


class PermissionDeniedError(DocflowError):
    """Raised when the caller may not act on a document."""
