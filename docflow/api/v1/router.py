"""Aggregate all v1 API routers."""

from fastapi import APIRouter
from docflow.api.v1.health import router as health_router
from docflow.api.v1.jobs import router as jobs_router
from docflow.api.v1.processing import router as processing_router

v1_router = APIRouter(prefix="/api/v1")
v1_router.include_router(health_router, tags=["health"])
v1_router.include_router(processing_router, tags=["processing"])
v1_router.include_router(jobs_router, tags=["jobs"])
