"""
Growable cosine-similarity vector index with tombstoned deletion.

Vectors are stored L2-normalized in a preallocated float32 matrix, so a
search is a single matrix-vector product. Handles are integer labels that
increase monotonically and are never reused; they stay valid across
compaction. Deletes only set a tombstone, and the slot is reclaimed when
the index is compacted.

Capacity starts small and doubles (capped at ``max_elements``) when an
add would overflow it. It never shrinks.
"""

import asyncio
import io
from dataclasses import dataclass
from typing import Sequence

import numpy as np
import structlog

from memory_engine.core.errors import CapacityExceeded, ValidationError
from memory_engine.services.persistence import BlobStore
from memory_engine.utils.latency import latency_tracked

logger = structlog.get_logger(__name__)

INDEX_BLOB = "index.npz"


@dataclass(frozen=True)
class IndexHit:
    """A search result: handle and cosine similarity."""

    handle: int
    similarity: float


@dataclass
class IndexSnapshot:
    """Live rows of an index captured for an out-of-lock rebuild."""

    labels: np.ndarray
    vectors: np.ndarray
    watermark: int  # first label not covered by the snapshot
    capacity: int


class VectorIndex:
    """
    Flat cosine index satisfying the ANN contract.

    All methods are synchronous; callers serialize mutations.
    """

    def __init__(
        self,
        dimension: int,
        initial_capacity: int = 1024,
        max_elements: int = 100_000,
    ) -> None:
        if dimension <= 0:
            raise ValidationError("dimension must be positive")
        if not 0 < initial_capacity <= max_elements:
            raise ValidationError("initial_capacity must be in (0, max_elements]")

        self.dimension = dimension
        self.max_elements = max_elements
        self._vectors = np.zeros((initial_capacity, dimension), dtype=np.float32)
        self._labels = np.full(initial_capacity, -1, dtype=np.int64)
        self._tombstones = np.zeros(initial_capacity, dtype=bool)
        self._slots: dict[int, int] = {}
        self._size = 0
        self._next_label = 0

    # ------------------------------------------------------------------
    # Counters
    # ------------------------------------------------------------------

    @property
    def capacity(self) -> int:
        return len(self._labels)

    @property
    def size(self) -> int:
        """Occupied slots, tombstones included."""
        return self._size

    @property
    def tombstone_count(self) -> int:
        return int(self._tombstones[: self._size].sum())

    @property
    def live_count(self) -> int:
        return self._size - self.tombstone_count

    @property
    def tombstone_ratio(self) -> float:
        if self._size == 0:
            return 0.0
        return self.tombstone_count / self._size

    @property
    def next_label(self) -> int:
        return self._next_label

    def __len__(self) -> int:
        return self.live_count

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def _normalize(self, vector: Sequence[float] | np.ndarray) -> np.ndarray:
        array = np.asarray(vector, dtype=np.float32).reshape(-1)
        if array.shape[0] != self.dimension:
            raise ValidationError(
                f"vector dimension {array.shape[0]} does not match index dimension {self.dimension}"
            )
        norm = float(np.linalg.norm(array))
        if norm == 0.0 or not np.isfinite(norm):
            raise ValidationError("cannot index a zero or non-finite vector")
        return array / norm

    def add(self, vector: Sequence[float] | np.ndarray) -> int:
        """
        Insert a vector and return its handle.

        Raises:
            ValidationError: On dimension mismatch or zero vector
            CapacityExceeded: If the index is full at max_elements
        """
        normalized = self._normalize(vector)

        if self._size >= self.capacity:
            if self.capacity >= self.max_elements:
                raise CapacityExceeded(self.max_elements)
            self.resize(min(self.capacity * 2, self.max_elements))

        label = self._next_label
        slot = self._size
        self._vectors[slot] = normalized
        self._labels[slot] = label
        self._tombstones[slot] = False
        self._slots[label] = slot
        self._size += 1
        self._next_label += 1
        return label

    def delete(self, handle: int) -> bool:
        """Tombstone a handle. Returns False if it was not live."""
        slot = self._slots.get(handle)
        if slot is None or self._tombstones[slot]:
            return False
        self._tombstones[slot] = True
        return True

    def resize(self, new_capacity: int) -> None:
        """
        Grow the preallocated storage.

        Raises:
            ValidationError: If the new capacity shrinks or exceeds max_elements
        """
        if new_capacity < self.capacity:
            raise ValidationError("index capacity can only grow")
        if new_capacity > self.max_elements:
            raise ValidationError(
                f"capacity {new_capacity} exceeds max_elements {self.max_elements}"
            )
        if new_capacity == self.capacity:
            return

        extra = new_capacity - self.capacity
        self._vectors = np.vstack(
            [self._vectors, np.zeros((extra, self.dimension), dtype=np.float32)]
        )
        self._labels = np.concatenate([self._labels, np.full(extra, -1, dtype=np.int64)])
        self._tombstones = np.concatenate([self._tombstones, np.zeros(extra, dtype=bool)])

        logger.info("vector_index_resized", capacity=new_capacity, size=self._size)

    def clear(self) -> None:
        """Drop every vector; capacity is kept and labels keep increasing."""
        self._vectors[:] = 0.0
        self._labels[:] = -1
        self._tombstones[:] = False
        self._slots.clear()
        self._size = 0

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def is_live(self, handle: int) -> bool:
        slot = self._slots.get(handle)
        return slot is not None and not self._tombstones[slot]

    def handles(self) -> list[int]:
        """Live handles in insertion order."""
        live = ~self._tombstones[: self._size]
        return [int(label) for label in self._labels[: self._size][live]]

    def get_vector(self, handle: int) -> list[float] | None:
        """Stored (normalized) vector for a live handle."""
        if not self.is_live(handle):
            return None
        return self._vectors[self._slots[handle]].tolist()

    @latency_tracked("index_search")
    def search(self, vector: Sequence[float] | np.ndarray, k: int) -> list[IndexHit]:
        """
        Top-k live handles by cosine similarity.

        Ties keep insertion order.
        """
        query = self._normalize(vector)
        if k <= 0 or self._size == 0:
            return []

        scores = self._vectors[: self._size] @ query
        scores = np.where(self._tombstones[: self._size], -np.inf, scores)
        order = np.argsort(-scores, kind="stable")

        hits: list[IndexHit] = []
        for slot in order:
            if self._tombstones[slot]:
                break
            hits.append(IndexHit(handle=int(self._labels[slot]), similarity=float(scores[slot])))
            if len(hits) >= k:
                break
        return hits

    # ------------------------------------------------------------------
    # Compaction
    # ------------------------------------------------------------------

    def snapshot(self) -> IndexSnapshot:
        """Copy the live rows so a rebuild can run without holding the lock."""
        live = ~self._tombstones[: self._size]
        return IndexSnapshot(
            labels=self._labels[: self._size][live].copy(),
            vectors=self._vectors[: self._size][live].copy(),
            watermark=self._next_label,
            capacity=self.capacity,
        )

    def _empty_like(self, capacity: int) -> "VectorIndex":
        index = VectorIndex(self.dimension, capacity, self.max_elements)
        index._next_label = self._next_label
        return index

    def _append_rows(self, labels: np.ndarray, vectors: np.ndarray) -> None:
        count = len(labels)
        start = self._size
        self._vectors[start : start + count] = vectors
        self._labels[start : start + count] = labels
        self._tombstones[start : start + count] = False
        for offset, label in enumerate(labels):
            self._slots[int(label)] = start + offset
        self._size += count

    async def rebuild(self, snapshot: IndexSnapshot, batch_size: int = 512) -> "VectorIndex":
        """
        Build a tombstone-free index from a snapshot, yielding between batches.

        The caller must ``catch_up`` the result under the mutation lock
        before swapping it in.
        """
        rebuilt = self._empty_like(snapshot.capacity)
        for start in range(0, len(snapshot.labels), batch_size):
            rebuilt._append_rows(
                snapshot.labels[start : start + batch_size],
                snapshot.vectors[start : start + batch_size],
            )
            await asyncio.sleep(0)
        rebuilt._next_label = snapshot.watermark
        return rebuilt

    def catch_up(self, rebuilt: "VectorIndex", snapshot: IndexSnapshot) -> None:
        """Replay adds and deletes made since ``snapshot`` onto ``rebuilt``."""
        for label in snapshot.labels:
            if not self.is_live(int(label)):
                rebuilt.delete(int(label))

        # Capacity never shrinks, even if the live index grew during the rebuild
        rebuilt.resize(max(rebuilt.capacity, self.capacity))

        new_labels = [h for h in self.handles() if h >= snapshot.watermark]
        if new_labels:
            slots = [self._slots[h] for h in new_labels]
            rebuilt._append_rows(np.asarray(new_labels, dtype=np.int64), self._vectors[slots])
        rebuilt._next_label = self._next_label

        # Tombstones replayed above are dropped physically
        if rebuilt.tombstone_count:
            rebuilt.swap(rebuilt.compacted())

    def compacted(self) -> "VectorIndex":
        """Synchronous rebuild without tombstones, same capacity."""
        live = ~self._tombstones[: self._size]
        rebuilt = self._empty_like(self.capacity)
        rebuilt._append_rows(self._labels[: self._size][live], self._vectors[: self._size][live])
        return rebuilt

    def swap(self, other: "VectorIndex") -> None:
        """Adopt ``other``'s storage in place, keeping this object's identity."""
        if other.dimension != self.dimension:
            raise ValidationError("cannot swap indexes of different dimensions")
        self._vectors = other._vectors
        self._labels = other._labels
        self._tombstones = other._tombstones
        self._slots = other._slots
        self._size = other._size
        self._next_label = max(self._next_label, other._next_label)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def to_bytes(self) -> bytes:
        buffer = io.BytesIO()
        np.savez(
            buffer,
            vectors=self._vectors[: self._size],
            labels=self._labels[: self._size],
            tombstones=self._tombstones[: self._size],
            meta=np.asarray(
                [self.dimension, self.capacity, self.max_elements, self._next_label],
                dtype=np.int64,
            ),
        )
        return buffer.getvalue()

    @classmethod
    def from_bytes(cls, data: bytes, max_elements: int | None = None) -> "VectorIndex":
        with np.load(io.BytesIO(data), allow_pickle=False) as archive:
            dimension, capacity, stored_max, next_label = (int(v) for v in archive["meta"])
            labels = archive["labels"]
            vectors = archive["vectors"]
            tombstones = archive["tombstones"]

        limit = max(max_elements or stored_max, capacity)
        index = cls(dimension, capacity, limit)
        index._append_rows(labels, vectors)
        index._tombstones[: len(tombstones)] = tombstones
        index._next_label = next_label
        return index

    async def persist(self, blob_store: BlobStore, name: str = INDEX_BLOB) -> None:
        """Write the index blob atomically."""
        await blob_store.write_async(name, self.to_bytes())
        logger.debug("vector_index_persisted", size=self._size, capacity=self.capacity)

    @classmethod
    async def load(
        cls,
        blob_store: BlobStore,
        dimension: int,
        initial_capacity: int,
        max_elements: int,
        name: str = INDEX_BLOB,
    ) -> "VectorIndex":
        """
        Load the index blob, or build an empty index if none exists.

        Raises:
            ValidationError: If the stored dimension differs from ``dimension``
        """
        data = await blob_store.read_async(name)
        if data is None:
            return cls(dimension, initial_capacity, max_elements)

        index = cls.from_bytes(data, max_elements)
        if index.dimension != dimension:
            raise ValidationError(
                f"stored index dimension {index.dimension} does not match {dimension}"
            )
        logger.info(
            "vector_index_loaded",
            size=index.size,
            live=index.live_count,
            capacity=index.capacity,
        )
        return index
