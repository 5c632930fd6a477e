"""
Document table: id-keyed chunk content and metadata.

Rows are linked to vector index handles. ``reconcile`` repairs the two
kinds of drift that a crash between the table write and the index write
can leave behind:

- a live handle with no row is tombstoned in the index
- a row whose handle is missing or tombstoned becomes keyword-only
"""

from collections import OrderedDict
from dataclasses import dataclass, field

import structlog
from pydantic import TypeAdapter

from memory_engine.core.errors import ConsistencyError
from memory_engine.core.vector_index import VectorIndex
from memory_engine.models.domain import DocumentRecord
from memory_engine.services.persistence import BlobStore

logger = structlog.get_logger(__name__)

DOCUMENTS_BLOB = "documents.json"

_rows_adapter = TypeAdapter(list[DocumentRecord])


@dataclass
class ReconcileReport:
    """What reconciliation found and repaired."""

    orphaned_handles: list[int] = field(default_factory=list)
    orphaned_rows: list[str] = field(default_factory=list)

    @property
    def repaired(self) -> int:
        return len(self.orphaned_handles) + len(self.orphaned_rows)


class DocumentStore:
    """Maps memory id <-> index handle <-> (content, metadata)."""

    def __init__(self) -> None:
        self._rows: OrderedDict[str, DocumentRecord] = OrderedDict()
        self._by_handle: dict[int, str] = {}
        self._by_source: dict[str, list[str]] = {}

    def __len__(self) -> int:
        return len(self._rows)

    def __contains__(self, memory_id: object) -> bool:
        return memory_id in self._rows

    def ids(self) -> list[str]:
        return list(self._rows)

    def rows(self) -> list[DocumentRecord]:
        return list(self._rows.values())

    def get(self, memory_id: str) -> DocumentRecord | None:
        return self._rows.get(memory_id)

    def get_by_handle(self, handle: int) -> DocumentRecord | None:
        memory_id = self._by_handle.get(handle)
        if memory_id is None:
            return None
        return self._rows.get(memory_id)

    def set(self, record: DocumentRecord) -> None:
        """Insert or replace a row."""
        previous = self._rows.get(record.id)
        if previous is not None:
            self._unlink(previous)
        self._rows[record.id] = record
        if record.handle is not None:
            self._by_handle[record.handle] = record.id
        self._by_source.setdefault(record.source_doc_id, []).append(record.id)

    def delete(self, memory_id: str) -> DocumentRecord | None:
        """Remove a row, returning it (None if absent)."""
        record = self._rows.pop(memory_id, None)
        if record is not None:
            self._unlink(record)
        return record

    def _unlink(self, record: DocumentRecord) -> None:
        if record.handle is not None:
            self._by_handle.pop(record.handle, None)
        siblings = self._by_source.get(record.source_doc_id)
        if siblings and record.id in siblings:
            siblings.remove(record.id)
            if not siblings:
                del self._by_source[record.source_doc_id]

    def detach_handle(self, memory_id: str) -> None:
        """Make a row keyword-only."""
        record = self._rows.get(memory_id)
        if record is None or record.handle is None:
            return
        self._by_handle.pop(record.handle, None)
        self._rows[memory_id] = record.model_copy(update={"handle": None})

    def list_by_source(self, source_doc_id: str) -> list[DocumentRecord]:
        """Rows of one source document, ordered by chunk index."""
        rows = [self._rows[i] for i in self._by_source.get(source_doc_id, [])]
        return sorted(rows, key=lambda r: r.chunk_index)

    def clear(self) -> None:
        self._rows.clear()
        self._by_handle.clear()
        self._by_source.clear()

    def reconcile(self, index: VectorIndex) -> ReconcileReport:
        """
        Bring rows and index handles back into agreement.

        Never raises; every repair is logged.
        """
        report = ReconcileReport()

        for handle in index.handles():
            if handle not in self._by_handle:
                index.delete(handle)
                report.orphaned_handles.append(handle)

        for record in list(self._rows.values()):
            if record.handle is not None and not index.is_live(record.handle):
                self.detach_handle(record.id)
                report.orphaned_rows.append(record.id)

        if report.repaired:
            logger.warning(
                "reconcile_repaired",
                error=ConsistencyError.__name__,
                orphaned_handles=len(report.orphaned_handles),
                orphaned_rows=len(report.orphaned_rows),
            )
        return report

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def to_bytes(self) -> bytes:
        return _rows_adapter.dump_json(list(self._rows.values()))

    @classmethod
    def from_bytes(cls, data: bytes) -> "DocumentStore":
        store = cls()
        for record in _rows_adapter.validate_json(data):
            store.set(record)
        return store

    async def persist(self, blob_store: BlobStore, name: str = DOCUMENTS_BLOB) -> None:
        await blob_store.write_async(name, self.to_bytes())

    @classmethod
    async def load(cls, blob_store: BlobStore, name: str = DOCUMENTS_BLOB) -> "DocumentStore":
        data = await blob_store.read_async(name)
        if data is None:
            return cls()
        store = cls.from_bytes(data)
        logger.info("document_store_loaded", rows=len(store))
        return store
