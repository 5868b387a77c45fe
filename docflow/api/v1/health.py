"""Health check endpoint."""

import platform
import sys

from fastapi import APIRouter

from docflow.config import settings

router = APIRouter()

# Set by main.py during lifespan
_dispatcher = None


def set_dispatcher(dispatcher):
    global _dispatcher
    _dispatcher = dispatcher


@router.get("/health")
async def health_check():
    """Service health, processing load and backend configuration."""
    load = None
    queue_length = None
    if _dispatcher is not None:
        load = _dispatcher.concurrency.get_processing_load().model_dump()
        queue_length = len(_dispatcher.queue)

    return {
        "status": "healthy" if _dispatcher is not None else "starting",
        "processing_load": load,
        "queue_length": queue_length,
        "edge_functions_enabled": settings.use_edge_functions,
        "store_backend": settings.store_backend,
        "python_version": sys.version,
        "platform": platform.platform(),
    }
