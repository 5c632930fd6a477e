"""
Error categories raised by the memory engine.

Each category maps to one handling policy:

- ValidationError: rejected synchronously, never retried
- ProviderError: embedding unavailable, degrade to keyword-only
- CapacityExceeded: index is full, the caller may retry after deletion/pruning
- ConsistencyError: orphaned handle/row, repaired conservatively
- PersistenceError: blob I/O failed, surfaced while in-memory state stays authoritative
"""


class MemoryEngineError(Exception):
    """Base class for all engine errors."""


class ValidationError(MemoryEngineError, ValueError):
    """Bad input: chunk configuration, metadata, or vector dimension."""


class ProviderError(MemoryEngineError):
    """The embedding provider failed or timed out."""


class CapacityExceeded(MemoryEngineError):
    """The vector index is at its maximum number of elements."""

    def __init__(self, max_elements: int) -> None:
        super().__init__(f"vector index is full ({max_elements} elements)")
        self.max_elements = max_elements


class ConsistencyError(MemoryEngineError):
    """Index handles and document rows disagree."""


class PersistenceError(MemoryEngineError, OSError):
    """Reading or writing a persisted blob failed."""
