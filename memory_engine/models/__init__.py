"""
Data models for the memory engine.
"""

from memory_engine.models.domain import (
    Chunk,
    DocumentRecord,
    IngestResult,
    MemoryEntry,
    MemoryEvent,
    MemoryEventKind,
    MemoryMetadata,
    MemoryRecord,
    MemoryStats,
    OperationResult,
    SearchOptions,
    StoreResult,
)
from memory_engine.models.schemas import (
    HealthResponse,
    IngestRequest,
    IngestResponse,
    MemoryResponse,
    MetricsResponse,
    SearchRequest,
    SearchResponse,
    StoreRequest,
    StoreResponse,
)

__all__ = [
    # Domain models
    "Chunk",
    "DocumentRecord",
    "IngestResult",
    "MemoryEntry",
    "MemoryEvent",
    "MemoryEventKind",
    "MemoryMetadata",
    "MemoryRecord",
    "MemoryStats",
    "OperationResult",
    "SearchOptions",
    "StoreResult",
    # API schemas
    "HealthResponse",
    "IngestRequest",
    "IngestResponse",
    "MemoryResponse",
    "MetricsResponse",
    "SearchRequest",
    "SearchResponse",
    "StoreRequest",
    "StoreResponse",
]
