"""Local document pipeline: download → extract → chunk → summarise → embed → store.

Runs inside the processing task on this server. Raises on failure; the
caller decides what the failure means for the Job Record.
"""

import asyncio
import re
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from openai import AsyncOpenAI

from docflow.backends.base import RetrainMode
from docflow.exceptions import JobNotFoundError, ProcessingError
from docflow.jobs import lifecycle
from docflow.jobs.models import JobRecord, ProcessingMethod
from docflow.processing.ai_content import generate_abstract, generate_keywords
from docflow.processing.chunker import TextChunk, chunk_text
from docflow.processing.embedder import Embedder
from docflow.processing.extract import extract_text_any
from docflow.processing.stage_log import Stage, StageLogger
from docflow.storage.base import CHUNKS_TABLE, DOCUMENTS_TABLE, JobStore


@dataclass
class ProcessingResult:
    document_slug: str
    pages: int
    chunks: int
    processing_time_ms: int
    abstract: Optional[str] = None
    keywords: List[str] = field(default_factory=list)


def generate_slug(title: str) -> str:
    base = re.sub(r"[^a-z0-9]+", "-", title.lower()).strip("-")[:50]
    return f"user-{base}-{int(time.time() * 1000)}"


class DocumentProcessor:
    def __init__(
        self,
        store: JobStore,
        embedder: Embedder,
        ai_client: Optional[AsyncOpenAI] = None,
        *,
        chunk_size: int = 500,
        chunk_overlap: int = 100,
        chars_per_token: int = 4,
        insert_batch_size: int = 200,
        abstract_model: str = "gpt-4o-mini",
        ai_max_chars: int = 20000,
    ):
        self._store = store
        self._embedder = embedder
        self._ai = ai_client
        self._chunk_size = chunk_size
        self._chunk_overlap = chunk_overlap
        self._chars_per_token = chars_per_token
        self._insert_batch_size = insert_batch_size
        self._abstract_model = abstract_model
        self._ai_max_chars = ai_max_chars

    async def process(
        self,
        job_id: str,
        *,
        document_slug: Optional[str] = None,
        mode: Optional[RetrainMode] = None,
        method: ProcessingMethod = ProcessingMethod.VPS,
    ) -> ProcessingResult:
        """Process one Job Record. `document_slug` is set when retraining."""
        started = time.monotonic()
        log = StageLogger(self._store, job_id, method)
        log.document_slug = document_slug

        try:
            record = await self._store.read(job_id)
            if record is None:
                raise JobNotFoundError(f"User document not found: {job_id}")

            # 1. Content
            await log.started(Stage.DOWNLOAD, "Loading document content",
                              file_path=record.file_path, file_size=record.file_size)
            content = await self._load_content(record)
            await self._touch(job_id)

            # 2. Extract (pypdf is CPU bound; keep it off the event loop)
            await log.started(Stage.EXTRACT, "Extracting text")
            loop = asyncio.get_event_loop()
            text, pages = await loop.run_in_executor(
                None, lambda: extract_text_any(mime=record.mime_type, data=content)
            )
            await log.completed(Stage.EXTRACT, "Text extracted", pages=pages, characters=len(text))
            await self._touch(job_id)

            # 3. Chunk
            chunks = chunk_text(
                text,
                chunk_size=self._chunk_size,
                overlap=self._chunk_overlap,
                total_pages=pages,
                chars_per_token=self._chars_per_token,
            )
            if not chunks:
                raise ProcessingError("Document produced no chunks")
            await log.completed(Stage.CHUNK, "Text chunked", chunk_count=len(chunks),
                                chunk_size=self._chunk_size, overlap=self._chunk_overlap)

            # 4. Abstract + keywords
            abstract, keywords = await self._summarise(chunks, record.title)
            await log.progress(Stage.CHUNK, "Summary generated" if abstract else "Summary skipped",
                               has_abstract=abstract is not None, keyword_count=len(keywords))

            # 5. Document row
            if document_slug:
                await self._update_document(document_slug, record, abstract, keywords)
            else:
                document_slug = generate_slug(record.title or "document")
                log.document_slug = document_slug
                await self._create_document(document_slug, record, abstract, keywords)
            await self._touch(job_id)

            # 6. Embed
            await log.started(Stage.EMBED, "Generating embeddings", total=len(chunks))
            vectors = await self._embedder.embed([c.content for c in chunks])
            await log.completed(Stage.EMBED, "Embeddings generated", total=len(vectors))
            await self._touch(job_id)

            # 7. Store
            offset = 0
            if mode == RetrainMode.ADD:
                offset = await self._store.count(CHUNKS_TABLE, document_slug=document_slug)
            await log.started(Stage.STORE, "Storing chunks", index_offset=offset)
            inserted = await self._store_chunks(document_slug, record.title, chunks, vectors, offset)
            await log.completed(Stage.STORE, "Chunks stored", chunks_stored=inserted)

            # 8. Done
            await lifecycle.mark_ready(self._store, job_id, document_slug=document_slug)
            elapsed_ms = int((time.monotonic() - started) * 1000)
            await log.completed(Stage.COMPLETE, "Processing complete",
                                processing_time_ms=elapsed_ms, pages=pages, chunks=inserted)

            return ProcessingResult(
                document_slug=document_slug,
                pages=pages,
                chunks=inserted,
                processing_time_ms=elapsed_ms,
                abstract=abstract,
                keywords=keywords,
            )
        except Exception as e:
            await log.failed("Processing failed", e)
            raise

    async def _touch(self, job_id: str) -> None:
        # Keeps updated_at fresh so a long run is not mistaken for a stall
        await self._store.update(job_id, {})

    async def _load_content(self, record: JobRecord):
        if record.is_text_upload:
            text = record.metadata.get("text_content")
            if not text:
                raise ProcessingError("Text upload has no text_content")
            return text
        if not record.file_path:
            raise ProcessingError("Document has no file_path")
        return await self._store.download(record.file_path)

    async def _summarise(self, chunks: List[TextChunk], title: str):
        if self._ai is None:
            return None, []
        texts = [c.content for c in chunks]
        abstract, keywords = await asyncio.gather(
            generate_abstract(self._ai, texts, title,
                              model=self._abstract_model, max_chars=self._ai_max_chars),
            generate_keywords(self._ai, texts, title,
                              model=self._abstract_model, max_chars=self._ai_max_chars),
        )
        return abstract, keywords

    @staticmethod
    def _intro_message(title: str, abstract: Optional[str]) -> str:
        if not abstract:
            return f"Ask questions about {title}"
        return (
            '<div class="document-abstract"><p><strong>Document Summary:</strong></p>'
            f"<p>{abstract}</p></div><p>Ask questions about this document below.</p>"
        )

    async def _create_document(
        self,
        slug: str,
        record: JobRecord,
        abstract: Optional[str],
        keywords: List[str],
    ) -> None:
        await self._store.insert(DOCUMENTS_TABLE, [{
            "id": str(uuid.uuid4()),
            "slug": slug,
            "title": record.title,
            "subtitle": "Uploaded by user",
            "welcome_message": f"Ask questions about {record.title}",
            "intro_message": self._intro_message(record.title, abstract),
            "pdf_filename": (record.file_path or "text-upload").split("/")[-1],
            "pdf_subdirectory": "user-uploads",
            "embedding_type": "openai",
            "active": True,
            "access_level": "owner_restricted",
            "keywords": keywords,
            "metadata": {
                "user_document_id": record.id,
                "user_id": record.user_id,
                "uploaded_at": record.created_at.isoformat(),
                "file_size": record.file_size,
                "has_ai_abstract": abstract is not None,
            },
        }])

    async def _update_document(
        self,
        slug: str,
        record: JobRecord,
        abstract: Optional[str],
        keywords: List[str],
    ) -> None:
        existing = await self._store.select_one(DOCUMENTS_TABLE, slug=slug)
        if existing is None:
            raise JobNotFoundError(f"Document not found for slug {slug}")
        fields: Dict[str, Any] = {
            "metadata": {
                **(existing.get("metadata") or {}),
                "user_document_id": record.id,
                "retraining": False,
                "has_ai_abstract": abstract is not None,
            },
        }
        if abstract:
            fields["intro_message"] = self._intro_message(record.title, abstract)
        if keywords:
            fields["keywords"] = keywords
        await self._store.update_rows(DOCUMENTS_TABLE, fields, slug=slug)

    async def _store_chunks(
        self,
        slug: str,
        title: str,
        chunks: List[TextChunk],
        vectors: List[List[float]],
        offset: int,
    ) -> int:
        rows = [
            {
                "document_type": slug,
                "document_slug": slug,
                "document_name": title,
                "chunk_index": offset + chunk.index,
                "content": chunk.content,
                "embedding": vector,
                "metadata": {
                    "char_start": chunk.char_start,
                    "char_end": chunk.char_end,
                    "tokens_approx": round(len(chunk.content) / self._chars_per_token),
                    "page_number": chunk.page_number,
                    "page_markers_found": chunk.page_markers_found,
                },
            }
            for chunk, vector in zip(chunks, vectors)
        ]
        for start in range(0, len(rows), self._insert_batch_size):
            await self._store.insert(CHUNKS_TABLE, rows[start:start + self._insert_batch_size])
        return len(rows)
