"""
REST API routes for the memory engine.

Provides endpoints for storing, ingesting, searching and maintaining
memories.
"""

import time
from typing import Annotated

import structlog
from fastapi import APIRouter, HTTPException, Query, status

from memory_engine import __version__
from memory_engine.api.deps import AuthDep, SchedulerDep, SettingsDep, StoreDep
from memory_engine.core.errors import PersistenceError, ValidationError
from memory_engine.core.maintenance import JOB_NAMES
from memory_engine.models.schemas import (
    ExportResponse,
    HealthResponse,
    ImportRequest,
    IndexMetrics,
    IngestRequest,
    IngestResponse,
    LatencyMetrics,
    MaintenanceResponse,
    MaintenanceStatusResponse,
    MemoryResponse,
    MetricsResponse,
    OperationResponse,
    RecentMemoriesResponse,
    SearchRequest,
    SearchResponse,
    StatsResponse,
    StoreRequest,
    StoreResponse,
)
from memory_engine.utils.latency import get_tracker
from memory_engine.utils.uptime import get_uptime

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["Memory"])


# =============================================================================
# Health & Status
# =============================================================================


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Check the health status of the memory store and its components.",
)
async def health_check(store: StoreDep, settings: SettingsDep) -> HealthResponse:
    """
    Health check endpoint.

    Degraded when embeddings are unavailable (keyword-only search) or the
    vector index is full.
    """
    services = {
        "memory_store": True,
        "embeddings": store.embedding_provider is not None,
        "index_capacity": store.index.size < store.index.max_elements,
        "data_dir": settings.data_dir.exists(),
    }

    if all(services.values()):
        status_val = "healthy"
    elif services["data_dir"]:
        status_val = "degraded"
    else:
        status_val = "unhealthy"

    return HealthResponse(status=status_val, version=__version__, services=services)


@router.get(
    "/metrics",
    response_model=MetricsResponse,
    summary="Application metrics",
    description="Get application metrics including latency percentiles.",
)
async def get_metrics(store: StoreDep) -> MetricsResponse:
    """Uptime, counts, cache and index occupancy, latency percentiles."""
    latencies = [
        LatencyMetrics(
            operation=m["operation"],
            p50_ms=m["p50_ms"],
            p95_ms=m["p95_ms"],
            p99_ms=m["p99_ms"],
            count=m["count"],
        )
        for m in get_tracker().get_all_metrics()
    ]
    stats = store.get_stats()

    return MetricsResponse(
        uptime_seconds=get_uptime(),
        total_memories=stats.total,
        active_memories=stats.active,
        cache=store.cache.stats(),
        index=IndexMetrics(**store.index_stats()),
        latencies=latencies,
    )


# =============================================================================
# Memory Operations
# =============================================================================


@router.post(
    "/memory",
    response_model=StoreResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Store a memory",
    description="Store one memory; it is embedded when a provider is configured.",
)
async def store_memory(request: StoreRequest, store: StoreDep, _: AuthDep) -> StoreResponse:
    result = await store.store(
        request.content,
        request.metadata,
        importance=request.importance,
        embedding=request.embedding,
        expires=request.expires,
        expires_at=request.expires_at,
    )
    if not result.success:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=result.error or "Store failed",
        )
    return StoreResponse(success=True, id=result.id)


@router.post(
    "/memory/ingest",
    response_model=IngestResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Ingest a document",
    description="Chunk a document and store every chunk.",
)
async def ingest_document(request: IngestRequest, store: StoreDep, _: AuthDep) -> IngestResponse:
    """
    Ingest a document into the memory store.

    Pipeline:
    1. Chunk into overlapping pieces
    2. Embed each chunk (keyword-only on provider failure)
    3. Store rows and vectors
    """
    logger.info("ingest_request", text_length=len(request.text), source=request.metadata.source)
    start = time.perf_counter()

    result = await store.ingest_document(
        request.text,
        request.metadata,
        importance=request.importance,
        expires=request.expires,
    )
    if not result.success:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=result.error or "Ingest failed",
        )

    return IngestResponse(
        success=True,
        source_doc_id=result.source_doc_id,
        memory_ids=result.ids,
        chunks_created=result.chunks_created,
        processing_time_ms=round((time.perf_counter() - start) * 1000, 2),
    )


@router.post(
    "/memory/search",
    response_model=SearchResponse,
    summary="Search memories",
    description="Hybrid vector + keyword search with importance and recency re-ranking.",
)
async def search_memories(request: SearchRequest, store: StoreDep) -> SearchResponse:
    logger.info("search_request", query_preview=request.query[:50], limit=request.limit)
    start = time.perf_counter()

    options = request.model_dump(exclude={"query"}, exclude_none=True)
    try:
        entries = await store.search(request.query, **options)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))

    return SearchResponse(
        query=request.query,
        memories=[MemoryResponse.from_entry(e) for e in entries],
        processing_time_ms=round((time.perf_counter() - start) * 1000, 2),
    )


@router.get(
    "/memory/recent",
    response_model=RecentMemoriesResponse,
    summary="Get recent memories",
    description="Retrieve the most recently stored memories.",
)
async def get_recent_memories(
    store: StoreDep,
    limit: Annotated[int, Query(ge=1, le=1000)] = 10,
) -> RecentMemoriesResponse:
    memories = await store.get_recent(limit)
    total_count = store.get_stats().total

    logger.info("recent_memories_fetched", count=len(memories), total=total_count)

    return RecentMemoriesResponse(
        memories=[MemoryResponse.from_entry(m) for m in memories],
        total_count=total_count,
        limit=limit,
    )


@router.get(
    "/memory/stats",
    response_model=StatsResponse,
    summary="Memory statistics",
)
async def get_stats(store: StoreDep) -> StatsResponse:
    return StatsResponse(**store.get_stats().model_dump())


@router.get(
    "/memory/export",
    response_model=ExportResponse,
    summary="Export memories",
    description="Every non-expired memory with its embedding, for backup or migration.",
)
async def export_memories(store: StoreDep, _: AuthDep) -> ExportResponse:
    entries = await store.export_entries()
    return ExportResponse(entries=entries, count=len(entries))


@router.post(
    "/memory/import",
    response_model=OperationResponse,
    summary="Import memories",
    description="Store previously exported memories, keeping ids, importance and expiry.",
)
async def import_memories(request: ImportRequest, store: StoreDep, _: AuthDep) -> OperationResponse:
    result = await store.import_entries(request.entries)
    return OperationResponse(**result.model_dump())


@router.delete(
    "/memory/clear",
    response_model=OperationResponse,
    summary="Clear all memories",
    description="Delete every stored memory, vector and cached entry.",
)
async def clear_memories(store: StoreDep, _: AuthDep) -> OperationResponse:
    """
    Clear all stored memories.

    Warning: This action is irreversible.
    """
    logger.warning("clear_memories_requested")

    result = await store.clear()
    if not result.success:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=result.error or "Failed to clear memories",
        )
    return OperationResponse(**result.model_dump())


@router.delete(
    "/memory/documents/{source_doc_id}",
    response_model=OperationResponse,
    summary="Delete a document",
    description="Delete every chunk of one ingested document.",
)
async def delete_document(source_doc_id: str, store: StoreDep, _: AuthDep) -> OperationResponse:
    result = await store.delete_document(source_doc_id)
    if not result.success and result.affected == 0:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=result.error)
    return OperationResponse(**result.model_dump())


@router.get(
    "/memory/{memory_id}",
    response_model=MemoryResponse,
    summary="Get a memory",
)
async def get_memory(memory_id: str, store: StoreDep) -> MemoryResponse:
    entry = await store.get(memory_id)
    if entry is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Memory not found")
    return MemoryResponse.from_entry(entry)


@router.delete(
    "/memory/{memory_id}",
    response_model=OperationResponse,
    summary="Delete a memory",
)
async def delete_memory(memory_id: str, store: StoreDep, _: AuthDep) -> OperationResponse:
    result = await store.delete(memory_id)
    if not result.success and result.affected == 0:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=result.error)
    return OperationResponse(**result.model_dump())


# =============================================================================
# Maintenance
# =============================================================================


@router.get(
    "/maintenance",
    response_model=MaintenanceStatusResponse,
    summary="Maintenance status",
)
async def maintenance_status(scheduler: SchedulerDep) -> MaintenanceStatusResponse:
    return MaintenanceStatusResponse(**scheduler.get_status())


@router.post(
    "/maintenance/{job}",
    response_model=MaintenanceResponse,
    summary="Run a maintenance job",
    description=f"Run one of {', '.join(JOB_NAMES)} immediately.",
)
async def run_maintenance(job: str, scheduler: SchedulerDep, _: AuthDep) -> MaintenanceResponse:
    if job not in JOB_NAMES:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown job: {job}")

    start = time.perf_counter()
    try:
        result = await scheduler.run_job(job)
    except PersistenceError as e:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))

    return MaintenanceResponse(
        job=job,
        result=result,
        duration_ms=round((time.perf_counter() - start) * 1000, 2),
    )
