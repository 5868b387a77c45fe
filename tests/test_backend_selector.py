import asyncio
import json

import httpx
import pytest

from conftest import FakeProcessor, FakeRemote
from docflow.backends.base import BackendResult, ProcessingRequest, RetrainMode
from docflow.backends.edge_function import EdgeFunctionBackend
from docflow.backends.local import LocalBackend
from docflow.backends.selector import BackendSelector, should_use_edge_function
from docflow.exceptions import ProcessingError, RemoteBackendError, RemoteBackendTimeout
from docflow.jobs.models import JobStatus, ProcessingMethod

MB = 1024 * 1024


def make_selector(store, processor, remote, enabled=True):
    return BackendSelector(
        store,
        LocalBackend(processor),
        remote,
        enabled=enabled,
        max_file_size=5 * MB,
    )


def test_should_use_edge_function_by_size_and_flag():
    assert should_use_edge_function(5 * MB, enabled=True, max_file_size=5 * MB)
    assert not should_use_edge_function(50 * MB, enabled=True, max_file_size=5 * MB)
    assert not should_use_edge_function(1 * MB, enabled=False, max_file_size=5 * MB)


def test_retrain_always_routes_local(store, processor):
    remote = FakeRemote()
    selector = make_selector(store, processor, remote)
    request = ProcessingRequest(
        job_id="job-1",
        file_size=1024,
        force_local=True,
        retrain_mode=RetrainMode.ADD,
        document_slug="user-doc",
    )

    assert selector.choose(request).method == ProcessingMethod.VPS
    assert selector.planned_method(request) == ProcessingMethod.VPS


def test_remote_is_ignored_when_disabled(store, processor):
    selector = make_selector(store, processor, FakeRemote(), enabled=False)
    request = ProcessingRequest(job_id="job-1", file_size=1024)
    assert selector.planned_method(request) == ProcessingMethod.VPS


@pytest.mark.asyncio
async def test_remote_failure_falls_back_to_local(store, processor, make_record):
    record = await make_record(file_size=5 * MB)
    remote = FakeRemote(error=RemoteBackendTimeout("Edge Function timeout - exceeded 380s limit"))
    selector = make_selector(store, processor, remote)

    result = await selector.execute(ProcessingRequest(job_id=record.id, file_size=5 * MB, auth_token="tok"))

    assert result.success
    final = await store.read(record.id)
    assert final.status == JobStatus.READY
    assert final.processing_method == ProcessingMethod.VPS_FALLBACK
    assert final.error_message is None
    assert len(remote.calls) == 1
    assert processor.calls[0]["method"] == ProcessingMethod.VPS_FALLBACK


@pytest.mark.asyncio
async def test_remote_reported_failure_also_falls_back(store, processor, make_record):
    record = await make_record(file_size=MB)
    remote = FakeRemote(result=BackendResult(
        success=False, method=ProcessingMethod.EDGE_FUNCTION, error="worker limit",
    ))
    selector = make_selector(store, processor, remote)

    await selector.execute(ProcessingRequest(job_id=record.id, file_size=MB, auth_token="tok"))

    final = await store.read(record.id)
    assert final.status == JobStatus.READY
    assert final.processing_method == ProcessingMethod.VPS_FALLBACK


class SelfFailingRemote(FakeRemote):
    """Writes its own failure to the Job Record before answering, like the Edge Function."""

    def __init__(self, store):
        super().__init__(result=BackendResult(
            success=False, method=ProcessingMethod.EDGE_FUNCTION, error="Embedding failed",
        ))
        self.store = store

    async def attempt(self, request):
        await self.store.update(request.job_id, {
            "status": JobStatus.FAILED,
            "error_message": "Embedding failed",
        })
        return await super().attempt(request)


@pytest.mark.asyncio
async def test_fallback_recovers_record_the_remote_marked_failed(store, processor, make_record):
    record = await make_record(file_size=MB)
    selector = make_selector(store, processor, SelfFailingRemote(store))

    result = await selector.execute(ProcessingRequest(job_id=record.id, file_size=MB, auth_token="tok"))

    assert result.success
    final = await store.read(record.id)
    assert final.status == JobStatus.READY
    assert final.processing_method == ProcessingMethod.VPS_FALLBACK
    assert final.error_message is None


@pytest.mark.asyncio
async def test_remote_success_leaves_record_to_remote(store, processor, make_record):
    record = await make_record(file_size=MB)
    selector = make_selector(store, processor, FakeRemote())

    result = await selector.execute(ProcessingRequest(job_id=record.id, file_size=MB, auth_token="tok"))

    assert result.success
    final = await store.read(record.id)
    assert final.status == JobStatus.PROCESSING
    assert final.processing_method == ProcessingMethod.EDGE_FUNCTION
    assert processor.calls == []


@pytest.mark.asyncio
async def test_local_failure_marks_record_failed(store, make_record):
    record = await make_record(file_size=MB)
    processor = FakeProcessor(store, error=ProcessingError("No extractable text found in PDF"))
    selector = make_selector(store, processor, None, enabled=False)

    result = await selector.execute(ProcessingRequest(job_id=record.id, file_size=MB))

    assert not result.success
    final = await store.read(record.id)
    assert final.status == JobStatus.FAILED
    assert final.error_message == "No extractable text found in PDF"
    assert final.processing_method == ProcessingMethod.VPS


@pytest.mark.asyncio
async def test_fallback_failure_marks_record_failed(store, make_record):
    record = await make_record(file_size=MB)
    processor = FakeProcessor(store, error=ProcessingError("embedding quota exhausted"))
    remote = FakeRemote(error=RemoteBackendError("Edge Function returned 546"))
    selector = make_selector(store, processor, remote)

    await selector.execute(ProcessingRequest(job_id=record.id, file_size=MB, auth_token="tok"))

    final = await store.read(record.id)
    assert final.status == JobStatus.FAILED
    assert final.processing_method == ProcessingMethod.VPS_FALLBACK
    assert final.error_message == "embedding quota exhausted"


@pytest.mark.asyncio
async def test_small_and_large_files_route_differently(store, processor, make_record):
    small = await make_record(file_size=5 * MB)
    large = await make_record(file_size=50 * MB)
    remote = FakeRemote(error=RemoteBackendTimeout("timeout"))
    selector = make_selector(store, processor, remote)

    await selector.execute(ProcessingRequest(job_id=small.id, file_size=5 * MB, auth_token="tok"))
    await selector.execute(ProcessingRequest(job_id=large.id, file_size=50 * MB, auth_token="tok"))

    assert [r.job_id for r in remote.calls] == [small.id]
    small_final = await store.read(small.id)
    large_final = await store.read(large.id)
    assert small_final.status == JobStatus.READY
    assert small_final.processing_method == ProcessingMethod.VPS_FALLBACK
    assert large_final.status == JobStatus.READY
    assert large_final.processing_method == ProcessingMethod.VPS


# --- Edge Function client ----------------------------------------------------

@pytest.mark.asyncio
async def test_edge_function_posts_job_with_user_token():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers["Authorization"]
        seen["apikey"] = request.headers["apikey"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"success": True, "document_slug": "user-doc-123"})

    backend = EdgeFunctionBackend(
        "https://example.supabase.co/functions/v1/process-document",
        anon_key="anon",
        transport=httpx.MockTransport(handler),
    )
    result = await backend.attempt(ProcessingRequest(job_id="job-1", auth_token="user-token"))

    assert result.success
    assert result.document_slug == "user-doc-123"
    assert seen == {
        "auth": "Bearer user-token",
        "apikey": "anon",
        "body": {"user_document_id": "job-1"},
    }


@pytest.mark.asyncio
async def test_edge_function_success_survives_malformed_chunk_count():
    backend = EdgeFunctionBackend(
        "https://example.supabase.co/functions/v1/process-document",
        transport=httpx.MockTransport(lambda request: httpx.Response(
            200, json={"success": True, "document_slug": "user-doc-123", "chunks": "many"},
        )),
    )
    result = await backend.attempt(ProcessingRequest(job_id="job-1", auth_token="tok"))

    assert result.success
    assert result.chunks == 0
    assert result.document_slug == "user-doc-123"


@pytest.mark.asyncio
async def test_edge_function_non_2xx_raises():
    backend = EdgeFunctionBackend(
        "https://example.supabase.co/functions/v1/process-document",
        transport=httpx.MockTransport(lambda request: httpx.Response(546, text="WORKER_LIMIT")),
    )
    with pytest.raises(RemoteBackendError):
        await backend.attempt(ProcessingRequest(job_id="job-1", auth_token="tok"))


@pytest.mark.asyncio
async def test_edge_function_hard_timeout():
    async def slow(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(5)
        return httpx.Response(200, json={"success": True})

    backend = EdgeFunctionBackend(
        "https://example.supabase.co/functions/v1/process-document",
        hard_timeout_seconds=0.05,
        transport=httpx.MockTransport(slow),
    )
    with pytest.raises(RemoteBackendTimeout):
        await backend.attempt(ProcessingRequest(job_id="job-1", auth_token="tok"))


@pytest.mark.asyncio
async def test_edge_function_without_token_is_a_failed_attempt():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json={"success": True})

    backend = EdgeFunctionBackend("https://example.invalid", transport=httpx.MockTransport(handler))
    result = await backend.attempt(ProcessingRequest(job_id="job-1"))

    assert not result.success
    assert calls == []
