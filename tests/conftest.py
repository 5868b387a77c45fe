import asyncio
from datetime import timedelta
from typing import List, Optional

import pytest

from docflow.backends.base import BackendResult, ProcessingBackend, ProcessingRequest
from docflow.backends.local import LocalBackend
from docflow.backends.selector import BackendSelector
from docflow.jobs import lifecycle
from docflow.jobs.concurrency import ConcurrencyManager
from docflow.jobs.dispatcher import ProcessingDispatcher
from docflow.jobs.models import JobRecord, ProcessingMethod, utcnow
from docflow.jobs.queue import JobQueue
from docflow.processing.processor import ProcessingResult
from docflow.storage.memory import MemoryStore


class FakeProcessor:
    """Stands in for DocumentProcessor; marks the record ready unless told to fail."""

    def __init__(self, store: MemoryStore, error: Optional[Exception] = None):
        self.store = store
        self.error = error
        self.gate = asyncio.Event()
        self.gate.set()
        self.calls: List[dict] = []

    async def process(self, job_id, *, document_slug=None, mode=None, method=ProcessingMethod.VPS):
        self.calls.append({
            "job_id": job_id,
            "document_slug": document_slug,
            "mode": mode,
            "method": method,
        })
        await self.gate.wait()
        if self.error is not None:
            raise self.error
        slug = document_slug or f"user-{job_id}"
        await lifecycle.mark_ready(self.store, job_id, document_slug=slug)
        return ProcessingResult(document_slug=slug, pages=1, chunks=1, processing_time_ms=1)


class FakeRemote(ProcessingBackend):
    """Edge Function double: returns a fixed result or raises."""

    method = ProcessingMethod.EDGE_FUNCTION

    def __init__(self, result: Optional[BackendResult] = None, error: Optional[Exception] = None):
        self.result = result or BackendResult(success=True, method=self.method)
        self.error = error
        self.calls: List[ProcessingRequest] = []

    async def attempt(self, request: ProcessingRequest) -> BackendResult:
        self.calls.append(request)
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def processor(store):
    return FakeProcessor(store)


@pytest.fixture
def make_record(store):
    async def _make(**fields) -> JobRecord:
        fields.setdefault("user_id", "user-1")
        fields.setdefault("title", "Test document")
        record = JobRecord(**fields)
        await store.create(record)
        return record
    return _make


def build_dispatcher(
    store,
    processor,
    *,
    max_concurrent: int = 5,
    remote: Optional[ProcessingBackend] = None,
    queue_when_busy: bool = True,
) -> ProcessingDispatcher:
    concurrency = ConcurrencyManager(max_concurrent)
    selector = BackendSelector(
        store,
        LocalBackend(processor),
        remote,
        enabled=remote is not None,
    )
    return ProcessingDispatcher(
        store,
        selector,
        concurrency,
        JobQueue(concurrency),
        queue_when_busy=queue_when_busy,
    )


@pytest.fixture
def dispatcher(store, processor):
    return build_dispatcher(store, processor)


def stale(minutes: float = 10):
    return utcnow() - timedelta(minutes=minutes)

