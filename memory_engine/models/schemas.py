"""
Pydantic schemas for API request/response validation.

These models define the contract between the API and its clients,
ensuring type safety and automatic documentation.
"""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

from memory_engine.models.domain import MemoryEntry, MemoryMetadata, as_utc, utc_now


# =============================================================================
# Health & Metrics
# =============================================================================


class HealthResponse(BaseModel):
    """Health check response."""

    status: Literal["healthy", "degraded", "unhealthy"] = Field(
        ..., description="Service health status"
    )
    version: str = Field(..., description="Application version")
    timestamp: datetime = Field(default_factory=utc_now, description="Check timestamp")
    services: dict[str, bool] = Field(
        default_factory=dict, description="Individual component health status"
    )


class LatencyMetrics(BaseModel):
    """Latency metrics for a single operation."""

    operation: str = Field(..., description="Operation name")
    p50_ms: float = Field(..., description="50th percentile latency in ms")
    p95_ms: float = Field(..., description="95th percentile latency in ms")
    p99_ms: float = Field(..., description="99th percentile latency in ms")
    count: int = Field(..., description="Total operation count")


class IndexMetrics(BaseModel):
    """Vector index occupancy."""

    live: int = Field(..., description="Live vectors")
    size: int = Field(..., description="Occupied slots, tombstones included")
    capacity: int = Field(..., description="Allocated slots")
    max_elements: int = Field(..., description="Hard capacity ceiling")
    tombstones: int = Field(..., description="Tombstoned slots")
    tombstone_ratio: float = Field(..., description="Tombstones / occupied slots")


class MetricsResponse(BaseModel):
    """Application metrics response."""

    uptime_seconds: float = Field(..., description="Application uptime in seconds")
    total_memories: int = Field(..., description="Total memories stored")
    active_memories: int = Field(..., description="Memories not yet expired")
    cache: dict[str, float] = Field(default_factory=dict, description="Cache counters")
    index: IndexMetrics = Field(..., description="Vector index occupancy")
    latencies: list[LatencyMetrics] = Field(
        default_factory=list, description="Latency metrics by operation"
    )


# =============================================================================
# Store & Ingest
# =============================================================================


class StoreRequest(BaseModel):
    """Request to store a single memory."""

    content: str = Field(..., min_length=1, max_length=100000, description="Memory content")
    metadata: MemoryMetadata = Field(..., description="Memory metadata")
    importance: float | None = Field(
        default=None, ge=0.0, description="Explicit importance multiplier"
    )
    embedding: list[float] | None = Field(
        default=None, description="Precomputed embedding (skips the provider)"
    )
    expires: bool = Field(default=True, description="False to keep the memory forever")
    expires_at: datetime | None = Field(default=None, description="Explicit expiry time")

    @field_validator("expires_at")
    @classmethod
    def _ensure_aware(cls, value: datetime | None) -> datetime | None:
        return as_utc(value)

    model_config = {
        "json_schema_extra": {
            "example": {
                "content": "The deploy key rotates every 90 days.",
                "metadata": {"source": "ops_notes", "type": "fact", "tags": ["ops"]},
                "importance": 2.0,
            }
        }
    }


class StoreResponse(BaseModel):
    """Response after storing a memory."""

    success: bool = Field(..., description="Whether the store succeeded")
    id: str | None = Field(default=None, description="Memory ID")
    error: str | None = Field(default=None, description="Error message if applicable")


class IngestRequest(BaseModel):
    """Request to chunk and store a document."""

    text: str = Field(..., min_length=1, max_length=1_000_000, description="Document text")
    metadata: MemoryMetadata = Field(..., description="Metadata shared by every chunk")
    importance: float | None = Field(default=None, ge=0.0)
    expires: bool = Field(default=True)


class IngestResponse(BaseModel):
    """Response after ingesting a document."""

    success: bool = Field(..., description="Whether ingest was successful")
    source_doc_id: str = Field(..., description="Document ID shared by the chunks")
    memory_ids: list[str] = Field(default_factory=list, description="IDs of created memories")
    chunks_created: int = Field(..., description="Number of chunks created")
    processing_time_ms: float = Field(..., description="Total processing time in ms")
    error: str | None = Field(default=None)


# =============================================================================
# Search & Retrieval
# =============================================================================


class SearchRequest(BaseModel):
    """Hybrid search request."""

    query: str = Field(..., max_length=2000, description="Query text")
    limit: int | None = Field(
        default=None, ge=1, le=1000, description="Number of results (server default when omitted)"
    )
    min_importance: float = Field(default=0.0, ge=0.0, description="Importance floor")
    type: str | None = Field(default=None, description="Only memories of this type")
    tags: list[str] = Field(default_factory=list, description="Required tags (all must match)")
    use_vector_search: bool = Field(default=True, description="False for keyword search only")

    model_config = {
        "json_schema_extra": {
            "example": {"query": "deploy key rotation", "limit": 5, "tags": ["ops"]}
        }
    }


class MemoryResponse(BaseModel):
    """A single memory."""

    id: str = Field(..., description="Memory ID")
    content: str = Field(..., description="Memory content")
    metadata: MemoryMetadata = Field(..., description="Memory metadata")
    importance: float = Field(..., description="Current importance")
    expires_at: datetime | None = Field(default=None, description="Expiry time")
    source_doc_id: str | None = Field(default=None, description="Source document ID")
    chunk_index: int = Field(default=0)
    total_chunks: int = Field(default=1)
    score: float | None = Field(default=None, description="Relevance score (search only)")

    @classmethod
    def from_entry(cls, entry: MemoryEntry) -> "MemoryResponse":
        return cls(**entry.model_dump(exclude={"embedding", "compressed"}))


class SearchResponse(BaseModel):
    """Hybrid search results."""

    query: str = Field(..., description="Original query")
    memories: list[MemoryResponse] = Field(default_factory=list)
    processing_time_ms: float = Field(..., description="Total processing time in ms")


class RecentMemoriesResponse(BaseModel):
    """Response containing recent memories."""

    memories: list[MemoryResponse] = Field(default_factory=list, description="Recent memories")
    total_count: int = Field(..., description="Total memories in the store")
    limit: int = Field(..., description="Limit applied to results")


class StatsResponse(BaseModel):
    """Memory statistics."""

    total: int
    active: int
    expired: int
    average_importance: float
    cache_size: int


# =============================================================================
# Deletion, Import & Export
# =============================================================================


class OperationResponse(BaseModel):
    """Outcome of a mutating operation."""

    success: bool
    affected: int = 0
    error: str | None = None


class ExportResponse(BaseModel):
    """Every non-expired memory, with embeddings."""

    entries: list[MemoryEntry] = Field(default_factory=list)
    count: int = Field(..., description="Number of exported entries")
    exported_at: datetime = Field(default_factory=utc_now)


class ImportRequest(BaseModel):
    """Entries previously produced by the export endpoint."""

    entries: list[MemoryEntry] = Field(..., description="Entries to import")


# =============================================================================
# Maintenance
# =============================================================================


class MaintenanceResponse(BaseModel):
    """Result of running a maintenance job on demand."""

    job: str
    result: Any = None
    duration_ms: float


class MaintenanceStatusResponse(BaseModel):
    running: bool
    jobs: list[dict[str, Any]] = Field(default_factory=list)


# =============================================================================
# WebSocket Messages
# =============================================================================


class WSEventMessage(BaseModel):
    """WebSocket message carrying one memory event."""

    type: Literal["event"] = Field(default="event", description="Message type")
    kind: str = Field(..., description="Event kind")
    memory_id: str | None = Field(default=None, description="Affected memory")
    reason: str | None = Field(default=None, description="Why the memory was removed")
    timestamp: datetime = Field(..., description="When the event happened")
