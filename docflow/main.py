"""Document Processing Service - FastAPI application."""

import logging
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from docflow.config import settings
from docflow.api.v1.router import v1_router
from docflow.api.v1.health import router as health_root_router
from docflow.api.v1 import health as health_api
from docflow.api.v1 import jobs as jobs_api
from docflow.api.v1 import processing as processing_api
from docflow.backends.edge_function import EdgeFunctionBackend
from docflow.backends.local import LocalBackend
from docflow.backends.selector import BackendSelector
from docflow.jobs.concurrency import ConcurrencyManager
from docflow.jobs.dispatcher import ProcessingDispatcher
from docflow.jobs.queue import JobQueue
from docflow.processing.embedder import Embedder, build_openai_client
from docflow.processing.processor import DocumentProcessor
from docflow.retrain.coordinator import RetrainCoordinator
from docflow.storage.base import JobStore
from docflow.storage.memory import MemoryStore
from docflow.storage.supabase_store import SupabaseStore

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[logging.StreamHandler()],
)
for _noisy in ("httpx", "httpcore", "openai"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


def build_store() -> JobStore:
    if settings.store_backend == "memory":
        logger.warning("Using in-memory store; nothing survives a restart")
        return MemoryStore()
    return SupabaseStore.connect(settings.supabase_url, settings.supabase_service_role_key)


def build_dispatcher(store: JobStore) -> ProcessingDispatcher:
    openai_client = build_openai_client(settings.openai_api_key)
    processor = DocumentProcessor(
        store,
        Embedder(openai_client, settings.embedding_model, settings.embedding_batch_size),
        openai_client,
        chunk_size=settings.chunk_size,
        chunk_overlap=settings.chunk_overlap,
        chars_per_token=settings.chars_per_token,
        insert_batch_size=settings.storage_insert_batch_size,
        abstract_model=settings.abstract_model,
        ai_max_chars=settings.ai_max_chars,
    )

    remote = None
    if settings.use_edge_functions:
        remote = EdgeFunctionBackend(
            settings.resolved_edge_function_url,
            settings.supabase_anon_key,
            timeout_seconds=settings.edge_function_timeout_seconds,
            hard_timeout_seconds=settings.edge_function_hard_timeout_seconds,
        )

    selector = BackendSelector(
        store,
        LocalBackend(processor),
        remote,
        enabled=settings.use_edge_functions,
        max_file_size=settings.edge_function_max_file_size,
    )
    concurrency = ConcurrencyManager(settings.max_concurrent_processing)
    return ProcessingDispatcher(
        store,
        selector,
        concurrency,
        JobQueue(concurrency),
        queue_when_busy=settings.queue_when_busy,
        stall_threshold=timedelta(minutes=settings.stuck_document_threshold_minutes),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown logic."""
    logger.info("Starting Document Processing Service on port %d", settings.port)
    logger.info("Store backend: %s", settings.store_backend)
    logger.info(
        "Edge Functions: %s (max %.0f MB)",
        "enabled" if settings.use_edge_functions else "disabled",
        settings.edge_function_max_file_size / 1024 / 1024,
    )

    store = build_store()
    dispatcher = build_dispatcher(store)
    await dispatcher.start()

    # Wire dispatcher and store into API endpoints
    processing_api.set_dispatcher(dispatcher)
    processing_api.set_store(store)
    processing_api.set_retrain_coordinator(RetrainCoordinator(store, dispatcher))
    jobs_api.set_dispatcher(dispatcher)
    health_api.set_dispatcher(dispatcher)

    yield

    logger.info("Shutting down Document Processing Service")
    await dispatcher.stop()


app = FastAPI(
    title="Document Processing Service",
    description="PDF and text ingestion with bounded concurrency and Edge Function offload",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health_root_router, tags=["health"])  # GET /health at root
app.include_router(v1_router)
