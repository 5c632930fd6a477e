"""
Tests for the document table and its reconciliation with the index.
"""

import pytest

from memory_engine.core.document_store import DocumentStore
from memory_engine.core.vector_index import VectorIndex
from memory_engine.models.domain import DocumentRecord, MemoryMetadata
from memory_engine.services.persistence import BlobStore


def row(memory_id: str, handle: int | None, source_doc_id: str = "doc", index: int = 0) -> DocumentRecord:
    return DocumentRecord(
        id=memory_id,
        handle=handle,
        content=f"content of {memory_id}",
        metadata=MemoryMetadata(source="test"),
        source_doc_id=source_doc_id,
        chunk_index=index,
        total_chunks=3,
    )


class TestDocumentStore:
    def test_lookup_by_id_and_handle(self):
        store = DocumentStore()
        store.set(row("m1", 7))

        assert store.get("m1").handle == 7
        assert store.get_by_handle(7).id == "m1"
        assert store.get_by_handle(8) is None

    def test_delete_unlinks_everything(self):
        store = DocumentStore()
        store.set(row("m1", 7))

        removed = store.delete("m1")

        assert removed.id == "m1"
        assert "m1" not in store
        assert store.get_by_handle(7) is None
        assert store.list_by_source("doc") == []
        assert store.delete("m1") is None

    def test_list_by_source_sorted_by_chunk_index(self):
        store = DocumentStore()
        store.set(row("c2", None, index=2))
        store.set(row("c0", None, index=0))
        store.set(row("c1", None, index=1))
        store.set(row("other", None, source_doc_id="elsewhere"))

        assert [r.id for r in store.list_by_source("doc")] == ["c0", "c1", "c2"]

    def test_replace_row(self):
        store = DocumentStore()
        store.set(row("m1", 1))
        store.set(row("m1", 2))

        assert len(store) == 1
        assert store.get_by_handle(1) is None
        assert store.get_by_handle(2).id == "m1"
        assert len(store.list_by_source("doc")) == 1


class TestReconcile:
    def test_orphans_are_repaired(self):
        index = VectorIndex(4, initial_capacity=4, max_elements=8)
        kept = index.add([1, 0, 0, 0])
        orphan = index.add([0, 1, 0, 0])
        dead = index.add([0, 0, 1, 0])
        index.delete(dead)

        store = DocumentStore()
        store.set(row("kept", kept))
        store.set(row("stale", dead))
        store.set(row("ghost", 99))

        report = store.reconcile(index)

        assert report.orphaned_handles == [orphan]
        assert sorted(report.orphaned_rows) == ["ghost", "stale"]
        assert not index.is_live(orphan)
        assert store.get("stale").handle is None
        assert store.get("ghost").handle is None
        assert store.get("kept").handle == kept

    def test_consistent_state_is_untouched(self):
        index = VectorIndex(4, initial_capacity=4, max_elements=8)
        handle = index.add([1, 0, 0, 0])
        store = DocumentStore()
        store.set(row("m1", handle))

        assert store.reconcile(index).repaired == 0


class TestDocumentPersistence:
    @pytest.mark.asyncio
    async def test_roundtrip(self, tmp_path):
        blobs = BlobStore(tmp_path)
        store = DocumentStore()
        store.set(row("m1", 3, index=0))
        store.set(row("m2", None, index=1))
        await store.persist(blobs)

        loaded = await DocumentStore.load(blobs)

        assert loaded.ids() == ["m1", "m2"]
        assert loaded.get_by_handle(3).id == "m1"
        assert loaded.get("m2").metadata.source == "test"

    @pytest.mark.asyncio
    async def test_load_missing_blob(self, tmp_path):
        assert len(await DocumentStore.load(BlobStore(tmp_path))) == 0
