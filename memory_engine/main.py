"""
Local Memory Engine - FastAPI Application Entry Point

Importance- and expiry-aware memory store with hybrid vector + keyword
retrieval, persisted to a local data directory.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import make_asgi_app

from memory_engine import __version__
from memory_engine.api.routes import router as api_router
from memory_engine.api.websocket import router as ws_router
from memory_engine.config import Settings, get_settings
from memory_engine.core.maintenance import MaintenanceScheduler
from memory_engine.core.memory import MemoryStore
from memory_engine.services.embeddings import build_embedding_provider
from memory_engine.services.persistence import BlobStore
from memory_engine.utils.logging import setup_logging
from memory_engine.utils.uptime import set_start_time

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Handles startup and shutdown tasks including:
    - Loading the memory store from the data directory
    - Starting background maintenance
    - Flushing state on shutdown
    """
    settings: Settings = app.state.settings

    logger.info(
        "starting_application",
        app_name=settings.app_name,
        version=__version__,
        environment=settings.app_env,
        data_dir=str(settings.data_dir),
    )

    set_start_time()

    try:
        settings.data_dir.mkdir(parents=True, exist_ok=True)
        blob_store = BlobStore(settings.data_dir)
        provider = build_embedding_provider(settings)
        store = await MemoryStore.create(settings, blob_store, provider)
        app.state.memory_store = store

        scheduler = MaintenanceScheduler(store, settings)
        if settings.maintenance_enabled:
            scheduler.start()
        app.state.scheduler = scheduler

        logger.info(
            "services_initialized",
            embedding_provider=settings.embedding_provider,
            maintenance=settings.maintenance_enabled,
        )

    except Exception as e:
        logger.error("startup_failed", error=str(e))
        raise

    yield

    logger.info("shutting_down_application")

    await app.state.scheduler.stop()
    await app.state.memory_store.close()

    logger.info("application_shutdown_complete")


def create_app(settings: Settings | None = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        settings: Settings to use (cached environment settings if None)

    Returns:
        Configured FastAPI application instance.
    """
    settings = settings or get_settings()

    setup_logging(settings.log_level, settings.app_env)

    app = FastAPI(
        title="Local Memory Engine",
        description="""
## Local Memory & Vector Retrieval Engine

Stores text memories with importance, expiry and metadata, and retrieves
them with hybrid semantic + keyword search.

### Features

- **Chunked ingestion**: Long documents are split into overlapping chunks
- **Hybrid retrieval**: Cosine similarity re-ranked by importance and recency
- **Graceful degradation**: Keyword search when embeddings are unavailable
- **Maintenance**: Expiry sweeps, importance decay, pruning, index compaction

### Architecture

```
Content → Chunking → Embedding → Vector Index + Document Table → Memory Table
                                                                     ↓
Query → Embedding → Index top-k → Hydrate → Filter / Re-rank → Results
```
        """,
        version=__version__,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Mount Prometheus metrics endpoint
    if settings.metrics_enabled:
        app.mount("/metrics", make_asgi_app())

    app.include_router(api_router, prefix="/api/v1")
    app.include_router(ws_router)

    @app.get("/", include_in_schema=False)
    async def root() -> dict[str, str]:
        """Root endpoint pointing at docs and health."""
        return {
            "name": "Local Memory Engine",
            "version": __version__,
            "docs": "/docs",
            "health": "/api/v1/health",
        }

    return app


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "memory_engine.main:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )
