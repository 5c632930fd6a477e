"""
Tests for the memory store.
"""

import asyncio
from datetime import timedelta

import pytest

from memory_engine.core.chunker import reconstruct
from memory_engine.core.errors import ValidationError
from memory_engine.models.domain import MemoryEventKind, MemoryMetadata, SearchOptions

from tests.conftest import (
    DIMENSION,
    FailingEmbeddingProvider,
    SlowEmbeddingProvider,
    unit,
)


def meta(**overrides) -> dict:
    return {"source": "test", **overrides}


class TestStore:
    """Tests for storing and fetching memories."""

    @pytest.mark.asyncio
    async def test_store_and_get(self, store):
        result = await store.store("The deploy key rotates every 90 days.", meta(tags=["ops"]))

        assert result.success
        entry = await store.get(result.id)
        assert entry.content == "The deploy key rotates every 90 days."
        assert entry.metadata.tags == ["ops"]
        assert entry.embedding is not None
        assert len(entry.embedding) == DIMENSION
        assert entry.compressed is False
        assert entry.expires_at is not None

    @pytest.mark.asyncio
    async def test_importance_from_explicit_and_tags(self, store):
        result = await store.store("short", meta(tags=["a", "b"]), importance=2.0)

        entry = await store.get(result.id)
        assert entry.importance == pytest.approx(2.4)

    @pytest.mark.asyncio
    async def test_no_expiry(self, store):
        result = await store.store("forever", meta(), expires=False)

        assert (await store.get(result.id)).expires_at is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "content,metadata,kwargs",
        [
            ("text", None, {}),
            ("text", {"type": "general"}, {}),
            ("", meta(), {}),
            ("text", meta(), {"importance": -1.0}),
            ("text", meta(tags=[" "]), {}),
            ("text", meta(unknown_field=1), {}),
            ("text", meta(), {"embedding": [1.0, 0.0]}),
            ("text", meta(), {"embedding": [0.0] * DIMENSION}),
        ],
    )
    async def test_invalid_input_rejected(self, store, content, metadata, kwargs):
        result = await store.store(content, metadata, **kwargs)

        assert not result.success
        assert result.error
        assert store.get_stats().total == 0

    @pytest.mark.asyncio
    async def test_too_many_tags_rejected(self, store):
        tags = [f"t{i}" for i in range(store.settings.max_tags + 1)]

        assert not (await store.store("text", meta(tags=tags))).success

    @pytest.mark.asyncio
    async def test_precomputed_embedding_skips_provider(self, store, provider):
        result = await store.store("text", meta(), embedding=unit(3))

        assert result.success
        assert provider.calls == 0
        assert (await store.get(result.id)).embedding == pytest.approx(unit(3))

    @pytest.mark.asyncio
    async def test_get_unknown_id(self, store):
        assert await store.get("missing") is None


class TestDegradation:
    """Embedding failures degrade to keyword-only entries."""

    @pytest.mark.asyncio
    async def test_failing_provider_stores_keyword_only(self, make_store):
        failing = FailingEmbeddingProvider()
        store = await make_store(embedding_provider=failing)

        result = await store.store("coffee with oat milk", meta())

        assert result.success
        assert (await store.get(result.id)).embedding is None
        assert store.index.live_count == 0

        hits = await store.search("coffee")
        assert [h.id for h in hits] == [result.id]
        assert failing.calls == 2

    @pytest.mark.asyncio
    async def test_provider_timeout(self, make_store):
        store = await make_store(embedding_provider=SlowEmbeddingProvider(delay=5.0))

        result = await store.store("slow text", meta(), timeout=0.01)

        assert result.success
        assert (await store.get(result.id)).embedding is None

    @pytest.mark.asyncio
    async def test_provider_wrong_dimension_degrades(self, store, provider):
        provider.register("odd vector", [1.0, 2.0])

        result = await store.store("odd vector", meta())

        assert result.success
        assert (await store.get(result.id)).embedding is None


class TestSearch:
    """Tests for hybrid search."""

    @pytest.mark.asyncio
    async def test_nearest_vector_ranks_first(self, store, provider):
        provider.register("about alpha", unit(0))
        provider.register("about beta", unit(1))
        provider.register("alpha?", unit(0))
        alpha = await store.store("about alpha", meta())
        beta = await store.store("about beta", meta())

        hits = await store.search("alpha?", limit=2)

        assert [h.id for h in hits] == [alpha.id, beta.id]
        assert hits[0].score > hits[1].score

    @pytest.mark.asyncio
    async def test_importance_breaks_similarity_ties(self, store, provider):
        provider.register("one", unit(0))
        provider.register("two", unit(0))
        low = await store.store("one", meta(), importance=1.0)
        high = await store.store("two", meta(), importance=5.0)
        provider.register("query", unit(0))

        hits = await store.search("query", SearchOptions(limit=2))

        assert [h.id for h in hits] == [high.id, low.id]

    @pytest.mark.asyncio
    async def test_filters(self, store):
        fact = await store.store("the sky is blue", meta(type="fact", tags=["sky", "color"]))
        await store.store("the sky is wide", meta(type="general", tags=["sky"]))
        await store.store("the sea is blue", meta(type="fact", tags=["sea", "color"]), importance=0.5)

        by_type = await store.search("blue", type="fact", tags=["color"], min_importance=1.0)
        assert [h.id for h in by_type] == [fact.id]

        all_tags = await store.search("sky", tags=["sky", "color"])
        assert [h.id for h in all_tags] == [fact.id]

    @pytest.mark.asyncio
    async def test_limit_defaults_to_setting(self, make_store, test_settings):
        store = await make_store(test_settings.model_copy(update={"default_search_limit": 2}))
        for i in range(4):
            await store.store(f"shared word {i}", meta())

        assert len(await store.search("shared")) == 2
        assert len(await store.search("shared", limit=3)) == 3

    @pytest.mark.asyncio
    async def test_keyword_search(self, keyword_store, clock):
        old = await keyword_store.store("Pasta recipe with basil", meta())
        clock.advance(3600)
        new = await keyword_store.store("pasta shopping list", meta())

        hits = await keyword_store.search("PASTA")

        assert [h.id for h in hits] == [new.id, old.id]
        assert await keyword_store.search("sushi") == []

    @pytest.mark.asyncio
    async def test_keyword_only_entries_fill_vector_results(self, store):
        indexed = await store.store("indexed needle note", meta())
        store.embedding_provider, provider = None, store.embedding_provider
        plain = await store.store("plain needle note", meta())
        store.embedding_provider = provider

        hits = await store.search("needle", limit=5)

        assert {h.id for h in hits} == {indexed.id, plain.id}
        assert hits[0].id == indexed.id

    @pytest.mark.asyncio
    async def test_results_are_copies(self, store):
        result = await store.store("mutable", meta())
        hit = (await store.search("mutable"))[0]
        hit.content = "changed"

        assert (await store.get(result.id)).content == "mutable"

    @pytest.mark.asyncio
    async def test_invalid_options(self, store):
        with pytest.raises(ValidationError):
            await store.search("anything", limit=0)

    @pytest.mark.asyncio
    async def test_reinforce_on_search(self, make_store, test_settings, provider):
        store = await make_store(
            test_settings.model_copy(update={"reinforce_on_search": True}),
            embedding_provider=provider,
        )
        result = await store.store("reinforced memory", meta())

        await store.search("reinforced memory")

        assert (await store.get(result.id)).importance == pytest.approx(1.1)


class TestExpiry:
    """Expired entries are invisible before they are swept."""

    @pytest.mark.asyncio
    async def test_expired_entry_hidden_then_swept(self, store, clock):
        result = await store.store(
            "temporary note", meta(), expires_at=clock.now + timedelta(seconds=10)
        )
        keep = await store.store("durable note", meta(), expires=False)

        clock.advance(20)

        assert await store.get(result.id) is None
        assert [h.id for h in await store.search("note")] == [keep.id]
        assert [e.id for e in await store.get_recent(10)] == [keep.id]
        stats = store.get_stats()
        assert (stats.total, stats.active, stats.expired) == (2, 1, 1)

        assert await store.sweep_expired() == 1

        stats = store.get_stats()
        assert (stats.total, stats.active, stats.expired) == (1, 1, 0)

    @pytest.mark.asyncio
    async def test_default_expiry(self, store, clock):
        result = await store.store("note", meta())

        entry = await store.get(result.id)
        assert entry.expires_at == clock.now + timedelta(seconds=store.settings.default_expiry_seconds)

    @pytest.mark.asyncio
    async def test_naive_expiry_is_treated_as_utc(self, keyword_store, clock):
        naive = (clock.now + timedelta(seconds=10)).replace(tzinfo=None)
        result = await keyword_store.store("naive expiry", meta(), expires_at=naive)
        assert result.success

        entry = await keyword_store.get(result.id)
        assert entry.expires_at == clock.now + timedelta(seconds=10)
        assert [e.id for e in await keyword_store.get_recent(5)] == [result.id]
        assert await keyword_store.decay_importance() == 1
        assert await keyword_store.prune(threshold=0.0) == 0

        clock.advance(20)

        assert await keyword_store.search("naive") == []
        assert await keyword_store.sweep_expired() == 1

    @pytest.mark.asyncio
    async def test_import_with_naive_expiry(self, keyword_store, clock):
        outcome = await keyword_store.import_entries(
            [
                {
                    "id": "imported",
                    "content": "carried over",
                    "metadata": {"source": "backup", "timestamp": "2025-01-01T00:00:00"},
                    "importance": 1.0,
                    "expires_at": "2099-01-01T00:00:00",
                }
            ]
        )

        assert outcome.success
        entry = await keyword_store.get("imported")
        assert entry.expires_at.tzinfo is not None
        assert [e.id for e in await keyword_store.export_entries()] == ["imported"]


class TestRecentAndStats:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("cache_size", [50, 1])
    async def test_recent_newest_first(self, make_store, test_settings, clock, cache_size):
        store = await make_store(test_settings.model_copy(update={"cache_size": cache_size}))
        ids = []
        for text in ("first", "second", "third"):
            ids.append((await store.store(text, meta())).id)
            clock.advance(1)

        recent = await store.get_recent(2)

        assert [e.id for e in recent] == [ids[2], ids[1]]

    @pytest.mark.asyncio
    async def test_cache_is_bounded(self, make_store, test_settings):
        store = await make_store(test_settings.model_copy(update={"cache_size": 3}))
        ids = [(await store.store(f"entry {i}", meta())).id for i in range(4)]

        assert len(store.cache) == 3
        assert ids[0] not in store.cache

        entry = await store.get(ids[0])

        assert entry.content == "entry 0"
        assert len(store.cache) == 3
        assert ids[0] in store.cache

    @pytest.mark.asyncio
    async def test_stats(self, keyword_store):
        await keyword_store.store("a", meta(), importance=1.0)
        await keyword_store.store("b", meta(), importance=3.0)

        stats = keyword_store.get_stats()

        assert stats.total == 2
        assert stats.active == 2
        assert stats.average_importance == pytest.approx(2.0)
        assert stats.cache_size == 2

    @pytest.mark.asyncio
    async def test_empty_stats(self, keyword_store):
        stats = keyword_store.get_stats()

        assert stats.total == 0
        assert stats.average_importance == 0.0


class TestDeletion:
    @pytest.mark.asyncio
    async def test_delete(self, store):
        await store.store("kept around", meta())
        result = await store.store("to be removed", meta())
        active_before = store.get_stats().active

        outcome = await store.delete(result.id)

        assert outcome.success
        assert store.get_stats().active == active_before - 1
        assert await store.get(result.id) is None
        assert await store.search("to be removed") == []
        assert store.index.tombstone_count == 1
        assert result.id not in store.cache

    @pytest.mark.asyncio
    async def test_delete_missing(self, store):
        outcome = await store.delete("missing")

        assert not outcome.success
        assert outcome.affected == 0

    @pytest.mark.asyncio
    async def test_clear(self, store):
        for i in range(3):
            await store.store(f"memory {i}", meta())

        outcome = await store.clear()

        assert outcome.success
        assert outcome.affected == 3
        assert store.get_stats().total == 0
        assert len(store.cache) == 0
        assert store.index.size == 0
        assert await store.search("memory") == []


class TestIngest:
    @pytest.mark.asyncio
    async def test_ingest_document(self, store, sample_texts):
        text = " ".join(sample_texts)

        result = await store.ingest_document(text, meta(type="document"))

        assert result.success
        assert result.chunks_created == len(result.ids) > 1
        rows = store.documents.list_by_source(result.source_doc_id)
        assert [r.id for r in rows] == result.ids
        assert reconstruct([r.content for r in rows], store.settings.chunk_overlap) == text

    @pytest.mark.asyncio
    async def test_delete_document(self, store, sample_texts):
        result = await store.ingest_document(" ".join(sample_texts), meta())
        other = await store.store("unrelated", meta())

        outcome = await store.delete_document(result.source_doc_id)

        assert outcome.success
        assert outcome.affected == result.chunks_created
        assert store.get_stats().total == 1
        assert await store.get(other.id) is not None

    @pytest.mark.asyncio
    async def test_ingest_empty(self, store):
        assert not (await store.ingest_document("", meta())).success

    @pytest.mark.asyncio
    async def test_ingest_requires_metadata(self, store):
        assert not (await store.ingest_document("some text", None)).success

    @pytest.mark.asyncio
    async def test_chunks_embedded_once(self, store, provider, sample_texts):
        result = await store.ingest_document(" ".join(sample_texts), meta())

        assert provider.calls == result.chunks_created
        assert store.index.live_count == result.chunks_created
        for memory_id in result.ids:
            assert len((await store.get(memory_id)).embedding) == DIMENSION

    @pytest.mark.asyncio
    async def test_ingest_without_provider_is_keyword_only(self, keyword_store, sample_texts):
        result = await keyword_store.ingest_document(" ".join(sample_texts), meta())

        assert result.success
        assert keyword_store.index.live_count == 0
        for memory_id in result.ids:
            assert (await keyword_store.get(memory_id)).embedding is None
        assert await keyword_store._embed("no provider configured", None) is None

    @pytest.mark.asyncio
    async def test_ingest_with_provider_down(self, make_store, sample_texts):
        provider = FailingEmbeddingProvider()
        store = await make_store(embedding_provider=provider)

        result = await store.ingest_document(" ".join(sample_texts), meta())

        assert result.success
        assert provider.calls == result.chunks_created
        assert store.index.live_count == 0

    @pytest.mark.asyncio
    async def test_ingest_rejects_negative_importance(self, store):
        result = await store.ingest_document("some text", meta(), importance=-1.0)

        assert not result.success
        assert store.get_stats().total == 0


class TestMaintenancePrimitives:
    @pytest.mark.asyncio
    async def test_decay(self, keyword_store):
        result = await keyword_store.store("decaying", meta(), importance=2.0)

        assert await keyword_store.decay_importance(2) == 1

        entry = await keyword_store.get(result.id)
        assert entry.importance == pytest.approx(2.0 * 0.95**2)
        assert keyword_store.get_stats().average_importance == pytest.approx(entry.importance)

    @pytest.mark.asyncio
    async def test_reinforce(self, keyword_store):
        result = await keyword_store.store("boosted", meta(), importance=9.95)

        assert await keyword_store.reinforce(result.id) == 10.0
        assert await keyword_store.reinforce("missing") is None

    @pytest.mark.asyncio
    async def test_prune_to_soft_cap(self, keyword_store):
        a = await keyword_store.store("a", meta(), importance=5.0)
        b = await keyword_store.store("b", meta(), importance=1.0)
        c = await keyword_store.store("c", meta(), importance=3.0)

        assert await keyword_store.prune(soft_cap=2) == 1

        assert await keyword_store.get(b.id) is None
        assert await keyword_store.get(a.id) is not None
        assert await keyword_store.get(c.id) is not None

    @pytest.mark.asyncio
    async def test_prune_below_threshold(self, keyword_store):
        await keyword_store.store("faint", meta(), importance=0.05)
        await keyword_store.store("solid", meta(), importance=1.0)

        assert await keyword_store.prune() == 1
        assert keyword_store.get_stats().total == 1

    @pytest.mark.asyncio
    async def test_compaction_keeps_handles(self, store, provider):
        ids = []
        for i in range(5):
            provider.register(f"entry {i}", unit(i))
            ids.append((await store.store(f"entry {i}", meta())).id)
        await store.delete(ids[0])
        await store.delete(ids[1])
        handle = store.documents.get(ids[4]).handle

        assert await store.compact() is True

        assert store.index.tombstone_count == 0
        assert store.index.size == 3
        assert store.documents.get(ids[4]).handle == handle
        provider.register("find four", unit(4))
        assert (await store.search("find four", limit=1))[0].id == ids[4]

    @pytest.mark.asyncio
    async def test_compaction_below_threshold_is_skipped(self, store):
        for i in range(10):
            result = await store.store(f"entry {i}", meta())
        await store.delete(result.id)

        assert await store.compact() is False
        assert await store.compact(force=True) is True

    @pytest.mark.asyncio
    async def test_clear_discards_inflight_compaction(self, store):
        ids = [(await store.store(f"entry {i}", meta())).id for i in range(6)]
        await store.delete(ids[0])

        task = asyncio.create_task(store.compact(force=True))
        await asyncio.sleep(0)
        await store.clear()

        assert await task is False
        assert store.index.size == 0


class TestCapacity:
    @pytest.mark.asyncio
    async def test_full_index_rejects_then_recovers(self, make_store, test_settings, provider):
        settings = test_settings.model_copy(
            update={"index_initial_capacity": 2, "index_max_elements": 3}
        )
        store = await make_store(settings, embedding_provider=provider)
        ids = [(await store.store(f"entry {i}", meta())).id for i in range(3)]

        rejected = await store.store("one too many", meta())
        assert not rejected.success
        assert "full" in rejected.error

        await store.delete(ids[0])
        accepted = await store.store("fits after delete", meta())

        assert accepted.success
        assert store.index.capacity == 3
        assert store.index.tombstone_count == 0


class TestPersistence:
    @pytest.mark.asyncio
    async def test_reload_after_flush(self, make_store, provider):
        store = await make_store(embedding_provider=provider)
        provider.register("persisted", unit(2))
        result = await store.store("persisted", meta(tags=["keep"]), importance=3.0)
        await store.flush()

        reloaded = await make_store(embedding_provider=provider)

        entry = await reloaded.get(result.id)
        assert entry.content == "persisted"
        assert entry.metadata.tags == ["keep"]
        assert entry.importance == pytest.approx(3.3)
        provider.register("query", unit(2))
        assert (await reloaded.search("query", limit=1))[0].id == result.id

    @pytest.mark.asyncio
    async def test_lagging_index_is_reconciled(self, make_store, test_settings, provider):
        settings = test_settings.model_copy(update={"index_persist_every": 1000})
        store = await make_store(settings, embedding_provider=provider)
        result = await store.store("alpha survives", meta())

        reloaded = await make_store(settings, embedding_provider=provider)

        assert reloaded.documents.get(result.id).handle is None
        assert [h.id for h in await reloaded.search("alpha")] == [result.id]

    @pytest.mark.asyncio
    async def test_export_import(self, store, make_store, test_settings, tmp_path, clock):
        kept = await store.store("exported memory", meta(tags=["x"]), importance=4.0)
        await store.store("expired memory", meta(), expires_at=clock.now + timedelta(seconds=1))
        clock.advance(5)

        entries = await store.export_entries()
        assert [e.id for e in entries] == [kept.id]

        other = await make_store(test_settings.model_copy(update={"data_dir": tmp_path / "other"}))
        outcome = await other.import_entries([e.model_dump(mode="json") for e in entries])

        assert outcome.success
        assert outcome.affected == 1
        imported = await other.get(kept.id)
        assert imported.content == "exported memory"
        assert imported.importance == pytest.approx(entries[0].importance)
        assert imported.embedding is not None


class TestEventsAndConcurrency:
    @pytest.mark.asyncio
    async def test_events(self, store, clock):
        queue = store.subscribe()

        result = await store.store("observed", meta(), expires_at=clock.now + timedelta(seconds=1))
        clock.advance(2)
        await store.sweep_expired()
        await store.clear()

        events = [queue.get_nowait() for _ in range(queue.qsize())]
        assert [e.kind for e in events] == [
            MemoryEventKind.STORED,
            MemoryEventKind.PURGED,
            MemoryEventKind.CLEARED,
        ]
        assert events[1].memory_id == result.id
        assert events[1].reason == "expired"

        store.unsubscribe(queue)
        await store.store("unobserved", meta())
        assert queue.empty()

    @pytest.mark.asyncio
    async def test_concurrent_stores(self, store):
        results = await asyncio.gather(
            *(store.store(f"concurrent {i}", meta()) for i in range(20))
        )

        assert all(r.success for r in results)
        assert len({r.id for r in results}) == 20
        assert store.get_stats().total == 20
        assert store.index.live_count == 20

    @pytest.mark.asyncio
    async def test_metadata_model_accepted(self, store):
        metadata = MemoryMetadata(source="typed", type="fact")

        result = await store.store("typed metadata", metadata)

        assert (await store.get(result.id)).metadata.type == "fact"
