"""
Bounded LRU cache of hydrated memory entries.

Eviction only drops the cached copy; the entry itself stays in the
document and memory tables.
"""

from collections import OrderedDict
from typing import Iterator

import structlog

from memory_engine.models.domain import MemoryEntry

logger = structlog.get_logger(__name__)


class LRUCache:
    """Ordered map of id -> MemoryEntry, least recently used first."""

    def __init__(self, max_size: int = 1000) -> None:
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self.max_size = max_size
        self._entries: OrderedDict[str, MemoryEntry] = OrderedDict()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, memory_id: object) -> bool:
        return memory_id in self._entries

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def get(self, memory_id: str) -> MemoryEntry | None:
        """Look up an entry and mark it most recently used."""
        entry = self._entries.get(memory_id)
        if entry is None:
            self._misses += 1
            return None
        self._hits += 1
        self._entries.move_to_end(memory_id)
        return entry

    def peek(self, memory_id: str) -> MemoryEntry | None:
        """Look up an entry without touching recency."""
        return self._entries.get(memory_id)

    def put(self, entry: MemoryEntry) -> str | None:
        """
        Insert or replace an entry (last write wins).

        Returns:
            Id of the evicted entry, if any
        """
        self._entries[entry.id] = entry
        self._entries.move_to_end(entry.id)

        if len(self._entries) > self.max_size:
            evicted_id, _ = self._entries.popitem(last=False)
            self._evictions += 1
            logger.debug("cache_evicted", memory_id=evicted_id)
            return evicted_id
        return None

    def pop(self, memory_id: str) -> MemoryEntry | None:
        return self._entries.pop(memory_id, None)

    def values(self) -> list[MemoryEntry]:
        return list(self._entries.values())

    def clear(self) -> None:
        self._entries.clear()

    @property
    def hit_rate(self) -> float:
        total = self._hits + self._misses
        if total == 0:
            return 0.0
        return self._hits / total

    def stats(self) -> dict[str, float]:
        return {
            "size": len(self._entries),
            "max_size": self.max_size,
            "hits": self._hits,
            "misses": self._misses,
            "evictions": self._evictions,
            "hit_rate": round(self.hit_rate, 4),
        }
