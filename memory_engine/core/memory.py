"""
Memory store orchestrator.

Layers importance and expiry over the document table and the vector
index, keeps a bounded LRU cache of hydrated entries, and serves hybrid
(vector + keyword/metadata) retrieval.

Pipeline: content -> embed -> index + document table -> memory record -> cache
Query:    query -> embed -> index top-k -> hydrate -> filter/re-rank -> results

All mutations run under one asyncio lock. Embedding requests happen
before the lock is taken, so concurrent stores land in completion order.
"""

import asyncio
import bisect
import heapq
from datetime import datetime, timedelta
from typing import Any, Callable

import numpy as np
import structlog
from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from memory_engine.config import Settings, get_settings
from memory_engine.core.cache import LRUCache
from memory_engine.core.chunker import ChunkConfig, Chunker
from memory_engine.core.document_store import DocumentStore
from memory_engine.core.errors import CapacityExceeded, PersistenceError, ValidationError
from memory_engine.core.events import EventChannel
from memory_engine.core.importance import (
    RankingWeights,
    calculate_importance,
    decay,
    hybrid_score,
    keyword_score,
    recency_score,
    reinforce,
)
from memory_engine.core.vector_index import VectorIndex
from memory_engine.models.domain import (
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
    new_id,
    utc_now,
)
from memory_engine.services.embeddings import EmbeddingProvider
from memory_engine.services.persistence import BlobStore
from memory_engine.utils.latency import latency_tracked
from memory_engine.utils.logging import LogContext

logger = structlog.get_logger(__name__)

MEMORIES_BLOB = "memories.json"
_MAX_ID = "\U0010ffff"

_records_adapter = TypeAdapter(list[MemoryRecord])


class MemoryStore:
    """
    Importance- and expiry-aware memory store.

    Handles:
    - Storage: validate -> embed (degrading to keyword-only) -> index + tables
    - Retrieval: vector search with hybrid re-ranking, keyword fallback
    - Maintenance primitives used by the scheduler: sweep, decay, prune, compact
    """

    def __init__(
        self,
        settings: Settings | None = None,
        blob_store: BlobStore | None = None,
        embedding_provider: EmbeddingProvider | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """
        Initialize an empty memory store.

        Args:
            settings: Engine settings (cached settings if None)
            blob_store: Persistence substrate (``settings.data_dir`` if None)
            embedding_provider: Optional text -> vector provider
            clock: Source of the current time
        """
        self.settings = settings or get_settings()
        self.blob_store = blob_store or BlobStore(self.settings.data_dir)
        self.embedding_provider = embedding_provider
        self._clock = clock

        self.chunker = Chunker(
            ChunkConfig(
                chunk_size=self.settings.chunk_size,
                chunk_overlap=self.settings.chunk_overlap,
            )
        )
        self.index = VectorIndex(
            dimension=self.settings.embedding_dimensions,
            initial_capacity=self.settings.index_initial_capacity,
            max_elements=self.settings.index_max_elements,
        )
        self.documents = DocumentStore()
        self.cache = LRUCache(self.settings.cache_size)
        self.events = EventChannel()
        self.weights = RankingWeights(
            similarity=self.settings.weight_similarity,
            importance=self.settings.weight_importance,
            recency=self.settings.weight_recency,
        )

        self._records: dict[str, MemoryRecord] = {}
        self._expiry_index: list[tuple[float, str]] = []
        self._importance_sum = 0.0

        self._lock = asyncio.Lock()
        self._epoch = 0
        self._index_writes = 0
        self._initialized = False

    @classmethod
    async def create(
        cls,
        settings: Settings | None = None,
        blob_store: BlobStore | None = None,
        embedding_provider: EmbeddingProvider | None = None,
    ) -> "MemoryStore":
        """Construct and load a memory store."""
        store = cls(settings, blob_store, embedding_provider)
        await store.initialize()
        return store

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """
        Load persisted state and reconcile it.

        Raises:
            PersistenceError: If a blob exists but cannot be read
        """
        if self._initialized:
            return

        async with self._lock:
            self.index = await VectorIndex.load(
                self.blob_store,
                dimension=self.settings.embedding_dimensions,
                initial_capacity=self.settings.index_initial_capacity,
                max_elements=self.settings.index_max_elements,
            )
            self.documents = await DocumentStore.load(self.blob_store)
            records = await self._load_records()

            self.documents.reconcile(self.index)

            self._records = {}
            self._expiry_index = []
            self._importance_sum = 0.0
            dropped = 0
            for record in records:
                if record.id not in self.documents:
                    dropped += 1
                    continue
                self._records[record.id] = record
                self._record_added(record)

            recreated = 0
            for row in self.documents.rows():
                if row.id not in self._records:
                    record = self._new_record(row.id, row.content, row.metadata, None, True, None)
                    self._records[row.id] = record
                    self._record_added(record)
                    recreated += 1

            if dropped or recreated:
                logger.warning(
                    "reconcile_memory_table",
                    dropped_records=dropped,
                    recreated_records=recreated,
                )

            self._initialized = True

        logger.info(
            "memory_store_initialized",
            entries=len(self._records),
            indexed=self.index.live_count,
            dimension=self.index.dimension,
        )

    async def _load_records(self) -> list[MemoryRecord]:
        data = await self.blob_store.read_async(MEMORIES_BLOB)
        if data is None:
            return []
        return _records_adapter.validate_json(data)

    async def flush(self) -> None:
        """Persist the index and both tables."""
        async with self._lock:
            await self._persist_all()

    async def close(self) -> None:
        await self.flush()
        logger.info("memory_store_closed")

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def subscribe(self) -> asyncio.Queue[MemoryEvent]:
        """Receive MemoryEvents on a dedicated queue."""
        return self.events.subscribe()

    def unsubscribe(self, queue: asyncio.Queue[MemoryEvent]) -> None:
        self.events.unsubscribe(queue)

    # ------------------------------------------------------------------
    # Store
    # ------------------------------------------------------------------

    @latency_tracked("memory_store")
    async def store(
        self,
        content: str,
        metadata: MemoryMetadata | dict[str, Any] | None = None,
        *,
        importance: float | None = None,
        embedding: list[float] | None = None,
        expires: bool = True,
        expires_at: datetime | None = None,
        timeout: float | None = None,
        memory_id: str | None = None,
        source_doc_id: str | None = None,
        chunk_index: int = 0,
        total_chunks: int = 1,
    ) -> StoreResult:
        """
        Store a memory.

        Args:
            content: Text content
            metadata: Core metadata (``source`` is required)
            importance: Explicit importance multiplier
            embedding: Precomputed embedding (skips the provider)
            expires: False to keep the entry forever
            expires_at: Explicit expiry time (overrides the default expiry)
            timeout: Embedding timeout in seconds
            memory_id: Id to use (replaces an existing entry with that id)
            source_doc_id: Document the content belongs to (defaults to its id)
            chunk_index: Position within the document
            total_chunks: Number of chunks in the document

        Returns:
            StoreResult with the new id, or an error
        """
        try:
            meta = self._validate_metadata(metadata)
            if not content:
                raise ValidationError("content must not be empty")
            if importance is not None and importance < 0:
                raise ValidationError("importance must not be negative")
            vector = self._check_vector(embedding) if embedding is not None else None
        except ValidationError as e:
            logger.warning("store_rejected", error=str(e))
            return StoreResult(success=False, error=str(e))

        if vector is None and self.embedding_provider is not None:
            vector = await self._embed(content, timeout)

        return await self._insert(
            memory_id or new_id(),
            content,
            meta,
            vector,
            importance=importance,
            expires=expires,
            expires_at=expires_at,
            source_doc_id=source_doc_id,
            chunk_index=chunk_index,
            total_chunks=total_chunks,
        )

    async def _insert(
        self,
        memory_id: str,
        content: str,
        meta: MemoryMetadata,
        vector: list[float] | None,
        *,
        importance: float | None,
        expires: bool,
        expires_at: datetime | None,
        source_doc_id: str | None,
        chunk_index: int,
        total_chunks: int,
    ) -> StoreResult:
        async with self._lock:
            handle = None
            if vector is not None:
                try:
                    handle = self._add_vector(vector)
                except CapacityExceeded as e:
                    logger.error("store_capacity_exceeded", max_elements=e.max_elements)
                    return StoreResult(success=False, error=str(e))

            if memory_id in self._records:
                self._purge(memory_id, MemoryEventKind.DELETED, "replaced", publish=False)

            document = DocumentRecord(
                id=memory_id,
                handle=handle,
                content=content,
                metadata=meta,
                source_doc_id=source_doc_id or memory_id,
                chunk_index=chunk_index,
                total_chunks=total_chunks,
            )
            record = self._new_record(memory_id, content, meta, importance, expires, expires_at)

            self.documents.set(document)
            self._records[memory_id] = record
            self._record_added(record)
            self.cache.put(self._build_entry(document, record))
            self.events.publish(MemoryEvent(kind=MemoryEventKind.STORED, memory_id=memory_id))

            logger.info(
                "memory_stored",
                memory_id=memory_id,
                indexed=handle is not None,
                importance=round(record.importance, 3),
                source=meta.source,
            )

            try:
                await self._autosave(index_changed=handle is not None)
            except PersistenceError as e:
                return StoreResult(success=False, id=memory_id, error=str(e))

        return StoreResult(success=True, id=memory_id)

    async def ingest_document(
        self,
        text: str,
        metadata: MemoryMetadata | dict[str, Any] | None = None,
        *,
        importance: float | None = None,
        expires: bool = True,
        timeout: float | None = None,
    ) -> IngestResult:
        """
        Chunk a document and store every chunk.

        Chunks share a ``source_doc_id`` so they can be listed or deleted together.
        """
        doc_id = new_id()
        try:
            meta = self._validate_metadata(metadata)
            if importance is not None and importance < 0:
                raise ValidationError("importance must not be negative")
            chunks = self.chunker.chunk_text(text, meta, source_doc_id=doc_id)
        except ValidationError as e:
            return IngestResult(success=False, source_doc_id=doc_id, error=str(e))

        if not chunks:
            return IngestResult(success=False, source_doc_id=doc_id, error="text is empty")

        ids: list[str] = []
        with LogContext(source_doc_id=doc_id):
            for chunk in chunks:
                if self.embedding_provider is not None:
                    vector = await self._embed(chunk.content, timeout)
                    if vector is not None:
                        chunk = chunk.with_embedding(vector)
                result = await self._insert(
                    chunk.id,
                    chunk.content,
                    meta,
                    list(chunk.embedding) if chunk.embedding is not None else None,
                    importance=importance,
                    expires=expires,
                    expires_at=None,
                    source_doc_id=doc_id,
                    chunk_index=chunk.chunk_index,
                    total_chunks=chunk.total_chunks,
                )
                if not result.success:
                    logger.error("ingest_failed", error=result.error)
                    return IngestResult(
                        success=False,
                        source_doc_id=doc_id,
                        ids=ids,
                        chunks_created=len(ids),
                        error=result.error,
                    )
                ids.append(chunk.id)

            logger.info("document_ingested", chunks=len(ids))
        return IngestResult(success=True, source_doc_id=doc_id, ids=ids, chunks_created=len(ids))

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    @latency_tracked("memory_search")
    async def search(
        self,
        query: str,
        options: SearchOptions | None = None,
        **kwargs: Any,
    ) -> list[MemoryEntry]:
        """
        Hybrid search.

        Args:
            query: Query text
            options: Search options (or pass them as keyword arguments;
                ``limit`` then defaults to ``default_search_limit``)

        Returns:
            Ranked entries with ``score`` set

        Raises:
            ValidationError: If the options are invalid
        """
        if options is None:
            try:
                options = SearchOptions(**{"limit": self.settings.default_search_limit, **kwargs})
            except PydanticValidationError as e:
                raise ValidationError(str(e)) from e

        query_vector = None
        if options.use_vector_search and self.embedding_provider is not None and query.strip():
            query_vector = await self._embed(query, None)

        async with self._lock:
            now = self._clock()
            if query_vector is not None:
                ranked = self._vector_search(query_vector, query, options, now)
                mode = "vector"
            else:
                ranked = self._keyword_search(query, options, now, keyword_only=False)
                mode = "keyword"

            if self.settings.reinforce_on_search:
                for memory_id, _ in ranked:
                    self._reinforce(memory_id, self.settings.reinforcement_boost, now)

            results = []
            for memory_id, score in ranked:
                entry = self._hydrate(memory_id)
                if entry is not None:
                    results.append(entry.model_copy(update={"score": score}, deep=True))

        logger.info("memory_searched", mode=mode, results=len(results), limit=options.limit)
        return results

    def _vector_search(
        self,
        query_vector: list[float],
        query: str,
        options: SearchOptions,
        now: datetime,
    ) -> list[tuple[str, float]]:
        hits = self.index.search(query_vector, options.limit * self.settings.overfetch_factor)

        scored: list[tuple[str, float]] = []
        for hit in hits:
            document = self.documents.get_by_handle(hit.handle)
            if document is None:
                continue
            record = self._records.get(document.id)
            if record is None or not self._matches(document, record, options, now):
                continue
            recency = recency_score(
                document.metadata.timestamp, now, self.settings.recency_half_life_seconds
            )
            score = hybrid_score(
                hit.similarity,
                record.importance,
                recency,
                self.weights,
                self.settings.max_importance,
            )
            scored.append((document.id, score))

        ranked = _rank(scored)[: options.limit]

        # Keyword-only rows are invisible to the index; let them fill the gap
        if len(ranked) < options.limit and query.strip():
            seen = {memory_id for memory_id, _ in ranked}
            extra = [
                pair
                for pair in self._keyword_search(query, options, now, keyword_only=True)
                if pair[0] not in seen
            ]
            ranked.extend(extra[: options.limit - len(ranked)])
        return ranked

    def _keyword_search(
        self,
        query: str,
        options: SearchOptions,
        now: datetime,
        keyword_only: bool,
    ) -> list[tuple[str, float]]:
        needle = query.strip().lower()
        scored: list[tuple[str, float]] = []
        for document in self.documents.rows():
            if keyword_only and document.handle is not None:
                continue
            record = self._records.get(document.id)
            if record is None or not self._matches(document, record, options, now):
                continue
            if needle and needle not in document.content.lower():
                continue
            recency = recency_score(
                document.metadata.timestamp, now, self.settings.recency_half_life_seconds
            )
            scored.append((document.id, keyword_score(record.importance, recency)))
        return _rank(scored)[: options.limit]

    @staticmethod
    def _matches(
        document: DocumentRecord,
        record: MemoryRecord,
        options: SearchOptions,
        now: datetime,
    ) -> bool:
        if record.expires_at is not None and record.expires_at <= now:
            return False
        if record.importance < options.min_importance:
            return False
        if options.type is not None and document.metadata.type != options.type:
            return False
        if options.tags and not set(options.tags).issubset(document.metadata.tags):
            return False
        return True

    async def get(self, memory_id: str) -> MemoryEntry | None:
        """Fetch one non-expired entry by id."""
        record = self._records.get(memory_id)
        if record is None or _is_expired(record, self._clock()):
            return None
        entry = self._hydrate(memory_id)
        return entry.model_copy(deep=True) if entry is not None else None

    async def get_recent(self, limit: int = 10) -> list[MemoryEntry]:
        """
        Most recent non-expired entries, newest first.

        Served from the cache when it holds every entry.
        """
        if limit <= 0:
            return []
        now = self._clock()

        if len(self.cache) >= len(self._records):
            candidates = [
                entry for entry in self.cache.values() if not entry.is_expired(now)
            ]
            candidates.sort(key=lambda e: (-e.metadata.timestamp.timestamp(), e.id))
            return [entry.model_copy(deep=True) for entry in candidates[:limit]]

        rows = [
            row
            for row in self.documents.rows()
            if not _is_expired(self._records[row.id], now)
        ]
        rows.sort(key=lambda r: (-r.metadata.timestamp.timestamp(), r.id))

        results = []
        for row in rows[:limit]:
            entry = self._hydrate(row.id)
            if entry is not None:
                results.append(entry.model_copy(deep=True))
        return results

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    async def delete(self, memory_id: str) -> OperationResult:
        """Tombstone the vector, drop the rows, evict from cache."""
        async with self._lock:
            if not self._purge(memory_id, MemoryEventKind.DELETED, "deleted"):
                return OperationResult(success=False, error=f"memory {memory_id} not found")
            logger.info("memory_deleted", memory_id=memory_id)
            try:
                await self._autosave(index_changed=False)
            except PersistenceError as e:
                return OperationResult(success=False, error=str(e), affected=1)
        return OperationResult(success=True, affected=1)

    async def delete_document(self, source_doc_id: str) -> OperationResult:
        """Delete every chunk of one source document."""
        async with self._lock:
            rows = self.documents.list_by_source(source_doc_id)
            if not rows:
                return OperationResult(success=False, error=f"document {source_doc_id} not found")
            for row in rows:
                self._purge(row.id, MemoryEventKind.DELETED, "document_deleted")
            logger.info("document_deleted", source_doc_id=source_doc_id, chunks=len(rows))
            try:
                await self._autosave(index_changed=False)
            except PersistenceError as e:
                return OperationResult(success=False, error=str(e), affected=len(rows))
        return OperationResult(success=True, affected=len(rows))

    async def clear(self) -> OperationResult:
        """
        Wipe the index, both tables and the cache.

        Destructive and non-recoverable. Cancels any in-flight compaction.
        """
        async with self._lock:
            removed = len(self._records)
            self._epoch += 1
            self.index.clear()
            self.documents.clear()
            self.cache.clear()
            self._records.clear()
            self._expiry_index.clear()
            self._importance_sum = 0.0
            self.events.publish(MemoryEvent(kind=MemoryEventKind.CLEARED))
            logger.warning("memory_store_cleared", removed=removed)
            try:
                await self._persist_all()
            except PersistenceError as e:
                return OperationResult(success=False, error=str(e), affected=removed)
        return OperationResult(success=True, affected=removed)

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def get_stats(self) -> MemoryStats:
        """Counters maintained on every mutation; no table scan."""
        total = len(self._records)
        expired = bisect.bisect_right(
            self._expiry_index, (self._clock().timestamp(), _MAX_ID)
        )
        return MemoryStats(
            total=total,
            active=total - expired,
            expired=expired,
            average_importance=(self._importance_sum / total) if total else 0.0,
            cache_size=len(self.cache),
        )

    def index_stats(self) -> dict[str, float]:
        return {
            "live": self.index.live_count,
            "size": self.index.size,
            "capacity": self.index.capacity,
            "max_elements": self.index.max_elements,
            "tombstones": self.index.tombstone_count,
            "tombstone_ratio": round(self.index.tombstone_ratio, 4),
        }

    # ------------------------------------------------------------------
    # Maintenance primitives
    # ------------------------------------------------------------------

    async def sweep_expired(self) -> int:
        """Purge entries whose expiry has passed."""
        async with self._lock:
            purged = self._sweep_locked(self._clock())
            if purged:
                await self._autosave(index_changed=False)
        return purged

    def _sweep_locked(self, now: datetime) -> int:
        cutoff = bisect.bisect_right(self._expiry_index, (now.timestamp(), _MAX_ID))
        expired_ids = [memory_id for _, memory_id in self._expiry_index[:cutoff]]
        for memory_id in expired_ids:
            self._purge(memory_id, MemoryEventKind.PURGED, "expired")
        if expired_ids:
            logger.info("expired_memories_swept", count=len(expired_ids))
        return len(expired_ids)

    async def decay_importance(self, intervals: int = 1) -> int:
        """
        Multiply every live entry's importance by decay_factor ** intervals.

        Returns:
            Number of entries decayed
        """
        if intervals <= 0:
            return 0
        async with self._lock:
            now = self._clock()
            decayed = 0
            for record in self._records.values():
                if _is_expired(record, now):
                    continue
                self._set_importance(
                    record, decay(record.importance, self.settings.decay_factor, intervals)
                )
                decayed += 1
            self._importance_sum = sum(r.importance for r in self._records.values())
            logger.info("importance_decayed", entries=decayed, intervals=intervals)
            if decayed:
                await self._autosave(index_changed=False)
        return decayed

    async def reinforce(self, memory_id: str, boost: float | None = None) -> float | None:
        """Raise one entry's importance (bounded). Returns the new importance."""
        async with self._lock:
            if memory_id not in self._records:
                return None
            return self._reinforce(
                memory_id,
                self.settings.reinforcement_boost if boost is None else boost,
                self._clock(),
            )

    async def prune(self, soft_cap: int | None = None, threshold: float | None = None) -> int:
        """
        Purge low-importance entries.

        Entries under ``threshold`` go first; then, while the active count
        exceeds ``soft_cap``, the lowest-importance entries are removed.
        """
        cap = self.settings.soft_cap if soft_cap is None else soft_cap
        floor = self.settings.prune_threshold if threshold is None else threshold

        async with self._lock:
            now = self._clock()
            active = [r for r in self._records.values() if not _is_expired(r, now)]

            below = [r for r in active if r.importance < floor]
            for record in below:
                self._purge(record.id, MemoryEventKind.PURGED, "low_importance")

            survivors = [r for r in active if r.importance >= floor]
            excess = len(survivors) - cap
            victims: list[MemoryRecord] = []
            if excess > 0:
                victims = heapq.nsmallest(
                    excess, survivors, key=lambda r: (r.importance, r.created_at, r.id)
                )
                for record in victims:
                    self._purge(record.id, MemoryEventKind.PURGED, "soft_cap")

            purged = len(below) + len(victims)
            if purged:
                logger.info(
                    "memories_pruned",
                    below_threshold=len(below),
                    over_cap=len(victims),
                    soft_cap=cap,
                )
                await self._autosave(index_changed=False)
        return purged

    async def compact(self, force: bool = False) -> bool:
        """
        Rebuild the index without tombstoned, expired or purged vectors.

        The rebuild runs outside the lock in yielding batches; work done in
        the meantime is replayed before the swap. A ``clear()`` or an inline
        compaction during the rebuild discards the result.

        Returns:
            True if a compacted index was swapped in

        Raises:
            PersistenceError: If the compacted state cannot be persisted
        """
        async with self._lock:
            self._sweep_locked(self._clock())
            ratio = self.index.tombstone_ratio
            if self.index.tombstone_count == 0 or (
                not force and ratio <= self.settings.compaction_tombstone_ratio
            ):
                return False
            epoch = self._epoch
            snapshot = self.index.snapshot()
            before = self.index.size

        rebuilt = await self.index.rebuild(snapshot, self.settings.compaction_batch_size)

        async with self._lock:
            if epoch != self._epoch:
                logger.info("compaction_discarded", reason="index_replaced")
                return False
            self.index.catch_up(rebuilt, snapshot)
            self.index.swap(rebuilt)
            self.documents.reconcile(self.index)
            logger.info(
                "index_compacted",
                slots_before=before,
                slots_after=self.index.size,
                tombstone_ratio=round(ratio, 4),
            )
            await self._persist_all()
        return True

    # ------------------------------------------------------------------
    # Import / export
    # ------------------------------------------------------------------

    async def export_entries(self) -> list[MemoryEntry]:
        """Every non-expired entry, oldest first, with embeddings."""
        now = self._clock()
        entries = [
            self._build_entry(row, self._records[row.id])
            for row in self.documents.rows()
            if not _is_expired(self._records[row.id], now)
        ]
        entries.sort(key=lambda e: (e.metadata.timestamp.timestamp(), e.id))
        return entries

    async def import_entries(self, entries: list[MemoryEntry | dict[str, Any]]) -> OperationResult:
        """Store exported entries, keeping ids, importance and expiry."""
        imported = 0
        errors: list[str] = []
        for raw in entries:
            try:
                entry = raw if isinstance(raw, MemoryEntry) else MemoryEntry.model_validate(raw)
            except PydanticValidationError as e:
                errors.append(str(e))
                continue

            result = await self.store(
                entry.content,
                entry.metadata,
                embedding=entry.embedding,
                expires=entry.expires_at is not None,
                expires_at=entry.expires_at,
                memory_id=entry.id,
                source_doc_id=entry.source_doc_id,
                chunk_index=entry.chunk_index,
                total_chunks=entry.total_chunks,
            )
            if not result.success:
                errors.append(result.error or "store failed")
                continue

            async with self._lock:
                record = self._records.get(entry.id)
                if record is not None:
                    self._set_importance(
                        record, min(entry.importance, self.settings.max_importance)
                    )
            imported += 1

        logger.info("memories_imported", imported=imported, failed=len(errors))
        return OperationResult(
            success=not errors,
            error="; ".join(errors[:5]) if errors else None,
            affected=imported,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _validate_metadata(self, metadata: MemoryMetadata | dict[str, Any] | None) -> MemoryMetadata:
        if metadata is None:
            raise ValidationError("metadata with a source is required")
        if isinstance(metadata, MemoryMetadata):
            meta = metadata
            if "timestamp" not in meta.model_fields_set:
                meta = meta.model_copy(update={"timestamp": self._clock()})
        else:
            try:
                meta = MemoryMetadata.model_validate({"timestamp": self._clock(), **metadata})
            except PydanticValidationError as e:
                raise ValidationError(str(e)) from e
        if len(meta.tags) > self.settings.max_tags:
            raise ValidationError(f"at most {self.settings.max_tags} tags allowed")
        return meta

    def _check_vector(self, vector: list[float]) -> list[float]:
        array = np.asarray(vector, dtype=np.float32).reshape(-1)
        if array.shape[0] != self.index.dimension:
            raise ValidationError(
                f"embedding dimension {array.shape[0]} does not match {self.index.dimension}"
            )
        norm = float(np.linalg.norm(array))
        if norm == 0.0 or not np.isfinite(norm):
            raise ValidationError("embedding must be a finite non-zero vector")
        return array.tolist()

    async def _embed(self, text: str, timeout: float | None) -> list[float] | None:
        """Ask the provider for a vector; None means degrade to keyword-only."""
        if self.embedding_provider is None:
            return None
        limit = timeout if timeout is not None else self.settings.embedding_timeout_seconds
        try:
            vector = await asyncio.wait_for(self.embedding_provider.embed(text), timeout=limit)
            return self._check_vector(vector)
        except asyncio.TimeoutError:
            logger.warning("embedding_timeout", timeout_s=limit, text_preview=text[:30])
        except ValidationError as e:
            logger.warning("embedding_rejected", error=str(e))
        except Exception as e:
            logger.warning("embedding_unavailable", error=str(e), text_preview=text[:30])
        return None

    def _add_vector(self, vector: list[float]) -> int:
        try:
            return self.index.add(vector)
        except CapacityExceeded:
            if self.index.tombstone_count == 0:
                raise
            reclaimed = self.index.tombstone_count
            self._epoch += 1
            self.index.swap(self.index.compacted())
            logger.info("index_compacted_inline", reclaimed=reclaimed)
            return self.index.add(vector)

    def _new_record(
        self,
        memory_id: str,
        content: str,
        metadata: MemoryMetadata,
        importance: float | None,
        expires: bool,
        expires_at: datetime | None,
    ) -> MemoryRecord:
        now = self._clock()
        if expires_at is None and expires:
            expires_at = now + timedelta(seconds=self.settings.default_expiry_seconds)
        elif not expires:
            expires_at = None

        return MemoryRecord(
            id=memory_id,
            importance=calculate_importance(
                importance,
                len(content),
                len(metadata.tags),
                self.settings.type_weights.get(metadata.type, 1.0),
                self.settings.max_importance,
            ),
            expires_at=expires_at,
            tags=list(metadata.tags),
            created_at=now,
        )

    def _build_entry(self, document: DocumentRecord, record: MemoryRecord) -> MemoryEntry:
        embedding = None
        if document.handle is not None:
            embedding = self.index.get_vector(document.handle)
        return MemoryEntry(
            id=document.id,
            content=document.content,
            embedding=embedding,
            metadata=document.metadata,
            importance=record.importance,
            expires_at=record.expires_at,
            compressed=record.compressed,
            source_doc_id=document.source_doc_id,
            chunk_index=document.chunk_index,
            total_chunks=document.total_chunks,
        )

    def _hydrate(self, memory_id: str) -> MemoryEntry | None:
        entry = self.cache.get(memory_id)
        if entry is not None:
            return entry
        document = self.documents.get(memory_id)
        record = self._records.get(memory_id)
        if document is None or record is None:
            return None
        entry = self._build_entry(document, record)
        self.cache.put(entry)
        return entry

    def _record_added(self, record: MemoryRecord) -> None:
        self._importance_sum += record.importance
        if record.expires_at is not None:
            bisect.insort(self._expiry_index, (record.expires_at.timestamp(), record.id))

    def _record_removed(self, record: MemoryRecord) -> None:
        self._importance_sum -= record.importance
        if record.expires_at is not None:
            key = (record.expires_at.timestamp(), record.id)
            position = bisect.bisect_left(self._expiry_index, key)
            if position < len(self._expiry_index) and self._expiry_index[position] == key:
                del self._expiry_index[position]
        if not self._records:
            self._importance_sum = 0.0

    def _set_importance(self, record: MemoryRecord, value: float) -> None:
        value = max(0.0, value)
        self._importance_sum += value - record.importance
        record.importance = value
        cached = self.cache.peek(record.id)
        if cached is not None:
            cached.importance = value

    def _reinforce(self, memory_id: str, boost: float, now: datetime) -> float:
        record = self._records[memory_id]
        self._set_importance(
            record, reinforce(record.importance, boost, self.settings.max_importance)
        )
        record.last_accessed_at = now
        return record.importance

    def _purge(
        self,
        memory_id: str,
        kind: MemoryEventKind,
        reason: str,
        publish: bool = True,
    ) -> bool:
        document = self.documents.delete(memory_id)
        record = self._records.pop(memory_id, None)
        if document is None and record is None:
            return False
        if document is not None and document.handle is not None:
            self.index.delete(document.handle)
        if record is not None:
            self._record_removed(record)
        self.cache.pop(memory_id)
        if publish:
            self.events.publish(MemoryEvent(kind=kind, memory_id=memory_id, reason=reason))
        return True

    async def _autosave(self, index_changed: bool) -> None:
        if index_changed:
            self._index_writes += 1
        if not self.settings.autosave:
            return
        await self.documents.persist(self.blob_store)
        await self._persist_records()
        if self._index_writes >= self.settings.index_persist_every:
            await self.index.persist(self.blob_store)
            self._index_writes = 0

    async def _persist_records(self) -> None:
        await self.blob_store.write_async(
            MEMORIES_BLOB, _records_adapter.dump_json(list(self._records.values()))
        )

    async def _persist_all(self) -> None:
        await self.index.persist(self.blob_store)
        await self.documents.persist(self.blob_store)
        await self._persist_records()
        self._index_writes = 0
        logger.debug("memory_store_persisted", entries=len(self._records))


def _is_expired(record: MemoryRecord, now: datetime) -> bool:
    return record.expires_at is not None and record.expires_at <= now


def _rank(scored: list[tuple[str, float]]) -> list[tuple[str, float]]:
    """Score descending, id as the final tie-break."""
    return sorted(scored, key=lambda pair: (-pair[1], pair[0]))
