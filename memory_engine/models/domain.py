"""
Core domain models for the memory engine.

These models represent the internal data structures used throughout
the engine for chunking, storing, ranking and persisting memories.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

MAX_EXTRA_KEYS = 32
MAX_EXTRA_KEY_LENGTH = 64


def utc_now() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


def as_utc(value: datetime | None) -> datetime | None:
    """Treat naive datetimes as UTC so they compare with the store clock."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class MemoryMetadata(BaseModel):
    """
    Metadata associated with a stored memory.

    The core schema (timestamp, source, type, tags) is reserved; anything
    else goes into the bounded ``extra`` map.
    """

    model_config = ConfigDict(extra="forbid")

    timestamp: datetime = Field(
        default_factory=utc_now, description="When the memory was created"
    )
    source: str = Field(
        ..., min_length=1, max_length=256, description="Where the memory came from"
    )
    type: str = Field(
        default="general", min_length=1, max_length=64, description="Memory type"
    )
    tags: list[str] = Field(default_factory=list, description="Free-form tags")
    extra: dict[str, str | int | float | bool | None] = Field(
        default_factory=dict, description="Bounded extension metadata"
    )

    @field_validator("timestamp")
    @classmethod
    def _ensure_aware(cls, value: datetime) -> datetime:
        return as_utc(value)

    @field_validator("tags")
    @classmethod
    def _normalize_tags(cls, value: list[str]) -> list[str]:
        seen: list[str] = []
        for tag in value:
            tag = tag.strip()
            if not tag:
                raise ValueError("tags must be non-empty strings")
            if tag not in seen:
                seen.append(tag)
        return seen

    @field_validator("extra")
    @classmethod
    def _bound_extra(cls, value: dict[str, Any]) -> dict[str, Any]:
        if len(value) > MAX_EXTRA_KEYS:
            raise ValueError(f"at most {MAX_EXTRA_KEYS} extra metadata keys allowed")
        for key in value:
            if not key or len(key) > MAX_EXTRA_KEY_LENGTH:
                raise ValueError(f"invalid extra metadata key: {key!r}")
        return value


class Chunk(BaseModel):
    """
    A slice of a source document prepared for embedding and storage.

    Chunks are immutable; attaching an embedding produces a new chunk.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id, description="Unique chunk identifier")
    source_doc_id: str = Field(..., description="Document this chunk was cut from")
    chunk_index: int = Field(..., ge=0, description="Position in the document")
    total_chunks: int = Field(..., ge=1, description="Number of chunks in the document")
    content: str = Field(..., description="Chunk text content")
    embedding: tuple[float, ...] | None = Field(default=None, description="Vector embedding")
    metadata: MemoryMetadata | None = Field(default=None, description="Chunk metadata")

    def with_embedding(self, embedding: list[float]) -> "Chunk":
        """Return a copy carrying ``embedding``."""
        return self.model_copy(update={"embedding": tuple(embedding)})


class MemoryEntry(BaseModel):
    """
    A memory as returned to callers.

    ``score`` is only populated on search results.
    """

    id: str
    content: str
    embedding: list[float] | None = None
    metadata: MemoryMetadata
    importance: float = Field(..., ge=0.0)
    expires_at: datetime | None = None
    compressed: bool = False
    source_doc_id: str | None = None
    chunk_index: int = 0
    total_chunks: int = 1
    score: float | None = None

    @field_validator("expires_at")
    @classmethod
    def _ensure_aware(cls, value: datetime | None) -> datetime | None:
        return as_utc(value)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now


class DocumentRecord(BaseModel):
    """Document table row: content and metadata, keyed by memory id."""

    id: str
    handle: int | None = None
    content: str
    metadata: MemoryMetadata
    source_doc_id: str
    chunk_index: int = 0
    total_chunks: int = 1


class MemoryRecord(BaseModel):
    """Memory table row: the mutable retention state of an entry."""

    id: str
    importance: float = Field(..., ge=0.0)
    expires_at: datetime | None = None
    compressed: bool = False
    tags: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    last_accessed_at: datetime | None = None

    @field_validator("expires_at", "created_at", "last_accessed_at")
    @classmethod
    def _ensure_aware(cls, value: datetime | None) -> datetime | None:
        return as_utc(value)


class MemoryStats(BaseModel):
    """Counters maintained incrementally by the memory store."""

    total: int = 0
    active: int = 0
    expired: int = 0
    average_importance: float = 0.0
    cache_size: int = 0


class SearchOptions(BaseModel):
    """Options accepted by ``MemoryStore.search``."""

    limit: int = Field(default=10, ge=1, le=1000)
    min_importance: float = Field(default=0.0, ge=0.0)
    type: str | None = None
    tags: list[str] = Field(default_factory=list)
    use_vector_search: bool = True


class StoreResult(BaseModel):
    success: bool
    id: str | None = None
    error: str | None = None


class OperationResult(BaseModel):
    success: bool
    error: str | None = None
    affected: int = 0


class IngestResult(BaseModel):
    """Result of chunking and storing a whole document."""

    success: bool
    source_doc_id: str
    ids: list[str] = Field(default_factory=list)
    chunks_created: int = 0
    error: str | None = None


class MemoryEventKind(str, Enum):
    STORED = "stored"
    DELETED = "deleted"
    PURGED = "purged"
    CLEARED = "cleared"


class MemoryEvent(BaseModel):
    """Notification published on the memory event channel."""

    kind: MemoryEventKind
    memory_id: str | None = None
    reason: str | None = None
    timestamp: datetime = Field(default_factory=utc_now)
