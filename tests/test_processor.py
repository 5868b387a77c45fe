from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from openai import OpenAIError

from docflow.backends.base import RetrainMode
from docflow.exceptions import EmbeddingError
from docflow.jobs.models import JobStatus
from docflow.processing.embedder import Embedder
from docflow.processing.processor import DocumentProcessor, generate_slug
from docflow.storage.base import CHUNKS_TABLE, DOCUMENTS_TABLE, PROCESSING_LOGS_TABLE


class FakeEmbedder:
    def __init__(self, error=None):
        self.error = error
        self.batches = []

    async def embed(self, texts):
        self.batches.append(list(texts))
        if self.error is not None:
            raise self.error
        return [[0.1, 0.2, 0.3] for _ in texts]


def chat_response(text):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=text))])


def fake_chat(**kwargs):
    system = kwargs["messages"][0]["content"]
    if "JSON array" in system:
        return chat_response('["hydrology", "flood risk"]')
    return chat_response("A study of river flooding.")


TEXT = "The river rose steadily through the night. " * 120  # ~5,300 chars


@pytest.fixture
def text_record(make_record):
    async def _make(**fields):
        return await make_record(
            status=JobStatus.PROCESSING,
            title="River Report",
            mime_type="text/plain",
            metadata={"upload_type": "text", "text_content": TEXT},
            **fields,
        )
    return _make


@pytest.mark.asyncio
async def test_new_text_upload_is_chunked_embedded_and_marked_ready(store, text_record):
    record = await text_record()
    embedder = FakeEmbedder()
    processor = DocumentProcessor(store, embedder)

    result = await processor.process(record.id)

    final = await store.read(record.id)
    assert final.status == JobStatus.READY
    assert final.document_slug == result.document_slug
    assert result.document_slug.startswith("user-river-report-")

    chunks = store.rows(CHUNKS_TABLE)
    assert len(chunks) == result.chunks > 1
    assert [c["chunk_index"] for c in chunks] == list(range(len(chunks)))
    assert all(c["document_slug"] == result.document_slug for c in chunks)
    assert all(c["embedding"] == [0.1, 0.2, 0.3] for c in chunks)
    assert chunks[0]["metadata"]["page_number"] == 1
    assert chunks[0]["metadata"]["tokens_approx"] == 500

    documents = store.rows(DOCUMENTS_TABLE)
    assert len(documents) == 1
    assert documents[0]["slug"] == result.document_slug
    assert documents[0]["metadata"]["user_document_id"] == record.id


@pytest.mark.asyncio
async def test_add_mode_continues_chunk_indices(store, text_record):
    record = await text_record()
    slug = "user-river-report-1"
    await store.insert(DOCUMENTS_TABLE, [{"id": "doc-1", "slug": slug, "title": "River Report", "metadata": {}}])
    await store.insert(CHUNKS_TABLE, [
        {"document_slug": slug, "chunk_index": i, "content": f"old {i}"} for i in range(3)
    ])
    processor = DocumentProcessor(store, FakeEmbedder())

    result = await processor.process(record.id, document_slug=slug, mode=RetrainMode.ADD)

    indices = [c["chunk_index"] for c in store.rows(CHUNKS_TABLE)]
    assert indices == list(range(3 + result.chunks))
    assert (await store.read(record.id)).document_slug == slug
    assert store.rows(DOCUMENTS_TABLE)[0]["metadata"]["retraining"] is False


@pytest.mark.asyncio
async def test_abstract_and_keywords_land_on_document(store, text_record):
    record = await text_record()
    ai = MagicMock()
    ai.chat.completions.create = AsyncMock(side_effect=fake_chat)
    processor = DocumentProcessor(store, FakeEmbedder(), ai)

    result = await processor.process(record.id)

    assert result.abstract == "A study of river flooding."
    assert result.keywords == ["hydrology", "flood risk"]
    document = store.rows(DOCUMENTS_TABLE)[0]
    assert "A study of river flooding." in document["intro_message"]
    assert document["keywords"] == ["hydrology", "flood risk"]


@pytest.mark.asyncio
async def test_summary_failure_does_not_fail_processing(store, text_record):
    record = await text_record()
    ai = MagicMock()
    ai.chat.completions.create = AsyncMock(side_effect=OpenAIError("model overloaded"))
    processor = DocumentProcessor(store, FakeEmbedder(), ai)

    result = await processor.process(record.id)

    assert result.abstract is None
    assert result.keywords == []
    assert (await store.read(record.id)).status == JobStatus.READY


@pytest.mark.asyncio
async def test_embedding_failure_raises_and_logs_error_stage(store, text_record):
    record = await text_record()
    processor = DocumentProcessor(store, FakeEmbedder(error=EmbeddingError("rate limited")))

    with pytest.raises(EmbeddingError):
        await processor.process(record.id)

    logs = store.rows(PROCESSING_LOGS_TABLE)
    assert logs[-1]["stage"] == "error"
    assert logs[-1]["metadata"]["error_type"] == "EmbeddingError"
    assert store.rows(CHUNKS_TABLE) == []
    # The caller decides the record's fate
    assert (await store.read(record.id)).status == JobStatus.PROCESSING


@pytest.mark.asyncio
async def test_pdf_upload_missing_from_storage_raises(store, make_record):
    record = await make_record(status=JobStatus.PROCESSING, file_path="user-1/missing.pdf")
    processor = DocumentProcessor(store, FakeEmbedder())

    with pytest.raises(Exception, match="missing.pdf"):
        await processor.process(record.id)


@pytest.mark.asyncio
async def test_embedder_batches_and_restores_order():
    client = MagicMock()
    client.embeddings.create = AsyncMock(side_effect=[
        SimpleNamespace(data=[
            SimpleNamespace(index=1, embedding=[1.0]),
            SimpleNamespace(index=0, embedding=[0.0]),
        ]),
        SimpleNamespace(data=[SimpleNamespace(index=0, embedding=[2.0])]),
    ])
    embedder = Embedder(client, batch_size=2)

    vectors = await embedder.embed(["a", "b", "c"])

    assert vectors == [[0.0], [1.0], [2.0]]
    assert client.embeddings.create.await_count == 2


@pytest.mark.asyncio
async def test_embedder_wraps_api_errors():
    client = MagicMock()
    client.embeddings.create = AsyncMock(side_effect=OpenAIError("bad key"))

    with pytest.raises(EmbeddingError):
        await Embedder(client).embed(["a"])


def test_generate_slug_shape():
    slug = generate_slug("Annual Report: 2024 / Final!")
    prefix, _, stamp = slug.rpartition("-")
    assert prefix == "user-annual-report-2024-final"
    assert stamp.isdigit()
