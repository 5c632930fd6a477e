"""
Text chunking for the ingestion pipeline.

Splits raw text into overlapping, character-bounded chunks. Every chunk
after the first starts ``chunk_overlap`` characters before the end of its
predecessor, so the source can be rebuilt exactly with ``reconstruct``.

Break points, scanning backward from the target size:
- the last sentence terminator (. ! ?)
- else the last whitespace
- else a hard cut at the target size
"""

from dataclasses import dataclass
from typing import Sequence

import structlog

from memory_engine.core.errors import ValidationError
from memory_engine.models.domain import Chunk, MemoryMetadata, new_id
from memory_engine.utils.latency import latency_tracked

logger = structlog.get_logger(__name__)

SENTENCE_TERMINATORS = ".!?"


@dataclass
class ChunkConfig:
    """Configuration for chunking behavior."""

    chunk_size: int = 1000  # Target characters per chunk
    chunk_overlap: int = 200  # Characters shared with the previous chunk

    def validate(self) -> None:
        if self.chunk_size <= 0:
            raise ValidationError("chunk_size must be positive")
        if self.chunk_overlap < 0:
            raise ValidationError("chunk_overlap must not be negative")
        if self.chunk_overlap >= self.chunk_size:
            raise ValidationError(
                f"chunk_overlap ({self.chunk_overlap}) must be smaller than "
                f"chunk_size ({self.chunk_size})"
            )


class Chunker:
    """
    Text chunker for the ingestion pipeline.

    Output is a bounded list, deterministic for a given text and config.
    """

    def __init__(self, config: ChunkConfig | None = None) -> None:
        """
        Initialize chunker with configuration.

        Args:
            config: Chunking configuration (defaults if None)

        Raises:
            ValidationError: If the overlap is not smaller than the chunk size
        """
        self.config = config or ChunkConfig()
        self.config.validate()

    def split(self, text: str) -> list[str]:
        """
        Split text into overlapping pieces.

        Args:
            text: Text to split (never normalized)

        Returns:
            Ordered list of chunk strings
        """
        if not text:
            return []

        size = self.config.chunk_size
        overlap = self.config.chunk_overlap

        if len(text) <= size:
            return [text]

        pieces: list[str] = []
        start = 0
        while True:
            if start + size >= len(text):
                pieces.append(text[start:])
                break

            cut = self._find_break(text[start : start + size])
            pieces.append(text[start : start + cut])
            start = start + cut - overlap

        return pieces

    def _find_break(self, window: str) -> int:
        """
        Pick the chunk length for a full window.

        The break must fall in (size - overlap, size] and exceed the overlap,
        otherwise the window is hard-cut.
        """
        size = self.config.chunk_size
        overlap = self.config.chunk_overlap
        floor = max(size - overlap, overlap)

        for i in range(len(window) - 1, floor - 1, -1):
            if window[i] in SENTENCE_TERMINATORS:
                return i + 1

        for i in range(len(window) - 1, floor - 1, -1):
            if window[i].isspace():
                return i + 1

        return size

    @latency_tracked("chunking")
    def chunk_text(
        self,
        text: str,
        metadata: MemoryMetadata | None = None,
        source_doc_id: str | None = None,
    ) -> list[Chunk]:
        """
        Split text into Chunk objects.

        Args:
            text: Text to chunk
            metadata: Base metadata shared by all chunks
            source_doc_id: Document id (generated if None)

        Returns:
            List of Chunk objects
        """
        pieces = self.split(text)
        doc_id = source_doc_id or new_id()
        total = len(pieces)

        chunks = [
            Chunk(
                source_doc_id=doc_id,
                chunk_index=i,
                total_chunks=total,
                content=piece,
                metadata=metadata,
            )
            for i, piece in enumerate(pieces)
        ]

        logger.debug(
            "text_chunked",
            input_chars=len(text),
            chunks=total,
            chunk_size=self.config.chunk_size,
            overlap=self.config.chunk_overlap,
        )

        return chunks

    def estimate_chunks(self, text: str) -> int:
        """
        Estimate number of chunks without actually chunking.

        Args:
            text: Text to estimate

        Returns:
            Estimated number of chunks
        """
        if not text:
            return 0

        if len(text) <= self.config.chunk_size:
            return 1

        # Hard cuts are the upper bound of the step
        step = self.config.chunk_size - self.config.chunk_overlap
        remaining = len(text) - self.config.chunk_size
        return 1 + -(-remaining // step)


def reconstruct(pieces: Sequence[str | Chunk], overlap: int) -> str:
    """
    Rebuild the source text from chunks by dropping each overlap prefix.

    Args:
        pieces: Chunks (or chunk strings) in order
        overlap: Overlap used when chunking

    Returns:
        The original text
    """
    texts = [p.content if isinstance(p, Chunk) else p for p in pieces]
    if not texts:
        return ""
    return texts[0] + "".join(t[overlap:] for t in texts[1:])


def chunk_text(
    text: str,
    chunk_size: int | None = None,
    overlap: int | None = None,
    metadata: MemoryMetadata | None = None,
) -> list[Chunk]:
    """
    Convenience function to chunk text.

    Args:
        text: Text to chunk
        chunk_size: Target chunk size in characters
        overlap: Overlap size in characters
        metadata: Metadata for chunks

    Returns:
        List of Chunk objects
    """
    config = ChunkConfig()
    if chunk_size is not None:
        config.chunk_size = chunk_size
    if overlap is not None:
        config.chunk_overlap = overlap

    chunker = Chunker(config)
    return chunker.chunk_text(text, metadata)
