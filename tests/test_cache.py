"""
Tests for the LRU entry cache.
"""

import pytest

from memory_engine.core.cache import LRUCache
from memory_engine.models.domain import MemoryEntry, MemoryMetadata


def entry(memory_id: str) -> MemoryEntry:
    return MemoryEntry(
        id=memory_id,
        content=memory_id,
        metadata=MemoryMetadata(source="test"),
        importance=1.0,
    )


class TestLRUCache:
    def test_evicts_least_recently_used(self):
        cache = LRUCache(max_size=2)
        cache.put(entry("a"))
        cache.put(entry("b"))
        cache.get("a")

        evicted = cache.put(entry("c"))

        assert evicted == "b"
        assert list(cache) == ["a", "c"]

    def test_size_never_exceeds_max(self):
        cache = LRUCache(max_size=3)
        for i in range(10):
            cache.put(entry(str(i)))
            assert len(cache) <= 3

    def test_peek_does_not_touch_recency(self):
        cache = LRUCache(max_size=2)
        cache.put(entry("a"))
        cache.put(entry("b"))
        cache.peek("a")

        assert cache.put(entry("c")) == "a"

    def test_last_write_wins(self):
        cache = LRUCache(max_size=2)
        cache.put(entry("a"))
        replacement = entry("a")
        replacement.importance = 5.0
        cache.put(replacement)

        assert len(cache) == 1
        assert cache.get("a").importance == 5.0

    def test_hit_rate(self):
        cache = LRUCache(max_size=2)
        cache.put(entry("a"))
        cache.get("a")
        cache.get("missing")

        assert cache.hit_rate == pytest.approx(0.5)
        assert cache.stats()["misses"] == 1

    def test_invalid_size(self):
        with pytest.raises(ValueError):
            LRUCache(max_size=0)
