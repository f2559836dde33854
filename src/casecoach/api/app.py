"""
CaseCoach FastAPI Application

Main application factory and configuration.
"""

import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse

from casecoach import __version__
from casecoach.config import settings
from casecoach.db import create_stores
from casecoach.pipeline import QuestionProcessor
from casecoach.realtime import (
    ChunkCombiner,
    ChunkStore,
    EventBroadcaster,
    RealtimeSessionRegistry,
    RealtimeStreamingService,
)

from .routes import health, realtime

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
# Lifespan Management
# ══════════════════════════════════════════════════════════════


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Build the process-wide streaming state on startup, release it on shutdown."""
    # Startup
    logger.info(
        "Starting CaseCoach API",
        version=__version__,
        environment=settings.app_env,
    )

    session_store, vector_store, redis_client = await create_stores(settings)

    broadcaster = EventBroadcaster()
    registry = RealtimeSessionRegistry(notifier=broadcaster)

    app.state.broadcaster = broadcaster
    app.state.registry = registry
    app.state.session_store = session_store
    app.state.vector_store = vector_store
    app.state.service = RealtimeStreamingService(
        registry=registry,
        store=ChunkStore(),
        combiner=ChunkCombiner(),
        processor=QuestionProcessor(),
        broadcaster=broadcaster,
        session_store=session_store,
        vector_store=vector_store,
        timeout=settings.processing_timeout,
    )

    logger.info(
        "CaseCoach API started successfully",
        storage_backend=settings.storage_backend,
        combine_strategy=settings.audio_combine_strategy,
    )

    yield

    # Shutdown
    logger.info("Shutting down CaseCoach API")

    if redis_client is not None:
        await redis_client.aclose()
    logger.info("CaseCoach API shutdown complete")


# ══════════════════════════════════════════════════════════════
# Application Factory
# ══════════════════════════════════════════════════════════════


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="CaseCoach API",
        description="Real-time case-interview coaching: chunked streaming and per-question analysis",
        version=__version__,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )

    # ──────────────────────────────────────────────────────────
    # Middleware
    # ──────────────────────────────────────────────────────────

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Request logging
    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log all requests with timing."""
        start = time.perf_counter()

        response = await call_next(request)

        duration = (time.perf_counter() - start) * 1000
        logger.info(
            "Request",
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            duration_ms=round(duration, 2),
        )

        return response

    # ──────────────────────────────────────────────────────────
    # Routes
    # ──────────────────────────────────────────────────────────

    app.include_router(
        health.router,
        tags=["Health"],
    )

    api_prefix = f"/api/{settings.api_version}"

    app.include_router(
        realtime.router,
        prefix=f"{api_prefix}/realtime",
        tags=["Realtime"],
    )

    # Event subscriptions
    app.include_router(
        realtime.ws_router,
        prefix="/ws",
        tags=["Realtime"],
    )

    return app
