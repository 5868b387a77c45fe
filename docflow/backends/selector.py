"""Backend selection and the Edge Function → local fallback protocol."""

import logging
from typing import Any, Dict, Optional, Tuple

from docflow.backends.base import BackendResult, ProcessingBackend, ProcessingRequest
from docflow.backends.local import LocalBackend
from docflow.jobs import lifecycle
from docflow.jobs.models import JobStatus, ProcessingFunction, ProcessingMethod
from docflow.storage.base import JobStore

logger = logging.getLogger(__name__)

DEFAULT_EDGE_FUNCTION_MAX_FILE_SIZE = 5 * 1024 * 1024


def should_use_edge_function(
    file_size: int,
    *,
    enabled: bool,
    max_file_size: int = DEFAULT_EDGE_FUNCTION_MAX_FILE_SIZE,
) -> bool:
    return enabled and file_size <= max_file_size


class BackendSelector:
    """Chooses where a job runs and owns the fallback from remote to local."""

    def __init__(
        self,
        store: JobStore,
        local: LocalBackend,
        remote: Optional[ProcessingBackend] = None,
        *,
        enabled: bool = False,
        max_file_size: int = DEFAULT_EDGE_FUNCTION_MAX_FILE_SIZE,
    ):
        self._store = store
        self._local = local
        self._remote = remote
        self._enabled = enabled and remote is not None
        self._max_file_size = max_file_size

    def route(self, request: ProcessingRequest) -> Tuple[ProcessingBackend, str]:
        """Pick a backend for `request` and say why."""
        size_mb = request.file_size / 1024 / 1024
        if request.force_local:
            if request.is_retrain:
                return self._local, "retraining keeps the existing slug; Edge Function would create a new one"
            return self._local, "local processing requested"

        if should_use_edge_function(
            request.file_size, enabled=self._enabled, max_file_size=self._max_file_size
        ):
            return self._remote, f"{size_mb:.2f} MB within Edge Function limit"

        if not self._enabled:
            return self._local, "Edge Functions disabled"
        return self._local, (
            f"file too large for Edge Function "
            f"({size_mb:.2f} MB > {self._max_file_size / 1024 / 1024:.0f} MB)"
        )

    def planned_method(self, request: ProcessingRequest) -> ProcessingMethod:
        return self.route(request)[0].method

    def choose(self, request: ProcessingRequest) -> ProcessingBackend:
        backend, reason = self.route(request)
        logger.info("Job %s: routing to %s (%s)", request.job_id, backend.describe(), reason)
        return backend

    async def execute(self, request: ProcessingRequest) -> BackendResult:
        """Run one job to a terminal outcome.

        Remote failures of any kind fall back to the local backend; a local
        failure marks the record failed. Runs inside the detached task, so
        nothing here reaches the HTTP client.
        """
        backend = self.choose(request)
        await lifecycle.mark_processing(self._store, request.job_id, backend.method)

        if backend is self._local:
            return await self._run_local(request, ProcessingMethod.VPS)

        try:
            result = await backend.attempt(request)
        except Exception as e:
            logger.warning(
                "Job %s: Edge Function failed (%s: %s), falling back to local processing",
                request.job_id, type(e).__name__, e,
            )
        else:
            if result.success:
                logger.info("Job %s: Edge Function processing complete", request.job_id)
                return result
            logger.warning(
                "Job %s: Edge Function reported failure (%s), falling back to local processing",
                request.job_id, result.error,
            )

        # The remote may have written its own failure; put the record back to processing
        await self._store.update(request.job_id, {
            "status": JobStatus.PROCESSING,
            "processing_method": ProcessingMethod.VPS_FALLBACK,
            "error_message": None,
        })
        return await self._run_local(request, ProcessingMethod.VPS_FALLBACK)

    async def _run_local(
        self,
        request: ProcessingRequest,
        method: ProcessingMethod,
    ) -> BackendResult:
        result = await self._local.attempt(request, method=method)
        if not result.success:
            await lifecycle.mark_failed(
                self._store, request.job_id, result.error or "Processing failed"
            )
        return result

    def build_processing_fn(self, request: ProcessingRequest) -> ProcessingFunction:
        """Closure handed to the job queue for this request."""

        async def _process(job_id: str, metadata: Dict[str, Any]) -> BackendResult:
            return await self.execute(request)

        return _process
