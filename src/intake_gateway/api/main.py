"""Main FastAPI application for Intake-Gateway.

This module sets up the FastAPI application with all routes, middleware,
and configuration for the webhook intake API.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from intake_gateway import __version__
from intake_gateway.api.dependencies import get_pipeline, get_storage_adapter
from intake_gateway.api.middleware import setup_middleware
from intake_gateway.api.routes import health, webhooks
from intake_gateway.infrastructure.logging_config import setup_logging
from intake_gateway.infrastructure.settings import settings

setup_logging(use_json=settings.json_logs, log_level=settings.log_level)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    logger.info(f"{settings.app_name} API starting up...")
    logger.info(f"Logging level: {settings.log_level}")
    logger.info(f"JSON logs: {settings.json_logs}")
    yield
    logger.info(f"{settings.app_name} API shutting down...")
    if get_pipeline.cache_info().currsize:
        get_pipeline().close()
    if get_storage_adapter.cache_info().currsize:
        get_storage_adapter().close()


app = FastAPI(
    title="Intake-Gateway API",
    description="Multi-tenant webhook intake for patient intake submissions",
    version=__version__,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
    lifespan=lifespan
)

setup_middleware(app)

app.include_router(health.router)
app.include_router(webhooks.router)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "Intake-Gateway API",
        "version": __version__,
        "docs": "/api/docs",
        "health": "/api/health"
    }
