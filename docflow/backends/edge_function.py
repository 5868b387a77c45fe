"""Edge Function client for remote document processing.

The Edge Function loads the Job Record itself and writes `ready` when it
succeeds, so a successful call needs no follow-up write here.
"""

import asyncio
import logging
from typing import Optional

import httpx

from docflow.backends.base import BackendResult, ProcessingBackend, ProcessingRequest
from docflow.exceptions import RemoteBackendError, RemoteBackendTimeout
from docflow.jobs.models import ProcessingMethod

logger = logging.getLogger(__name__)


class EdgeFunctionBackend(ProcessingBackend):
    method = ProcessingMethod.EDGE_FUNCTION

    def __init__(
        self,
        url: str,
        anon_key: str = "",
        timeout_seconds: float = 380.0,
        hard_timeout_seconds: float = 400.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._url = url
        self._anon_key = anon_key
        self._timeout = timeout_seconds
        self._hard_timeout = hard_timeout_seconds
        self._transport = transport

    async def call(self, job_id: str, auth_token: str) -> dict:
        """POST the job to the Edge Function and return its JSON body.

        Raises RemoteBackendTimeout on either timeout and RemoteBackendError
        on network errors or non-2xx responses.
        """
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {auth_token}",
            "apikey": self._anon_key,
        }

        async def _post() -> httpx.Response:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                return await client.post(self._url, json={"user_document_id": job_id}, headers=headers)

        try:
            resp = await asyncio.wait_for(_post(), timeout=self._hard_timeout)
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise RemoteBackendTimeout(
                f"Edge Function timeout - exceeded {self._timeout:.0f}s limit"
            ) from e
        except httpx.HTTPError as e:
            raise RemoteBackendError(f"Edge Function unavailable: {e}") from e

        if resp.status_code >= 400:
            raise RemoteBackendError(f"Edge Function returned {resp.status_code}: {resp.text}")

        try:
            return resp.json()
        except ValueError as e:
            raise RemoteBackendError(f"Edge Function returned invalid JSON: {e}") from e

    async def attempt(self, request: ProcessingRequest) -> BackendResult:
        if not request.auth_token:
            return BackendResult(
                success=False,
                method=self.method,
                error="No auth token available for Edge Function call",
            )

        body = await self.call(request.job_id, request.auth_token)
        success = bool(body.get("success"))
        return BackendResult(
            success=success,
            method=self.method,
            document_slug=body.get("document_slug") or body.get("documentSlug"),
            chunks=_chunk_count(body.get("chunks")),
            error=None if success else str(body.get("error") or "Edge Function reported failure"),
            details=body,
        )


def _chunk_count(value) -> int:
    # Informational; malformed counts read as 0
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0
