"""
External service integrations for the memory engine.
"""

from memory_engine.services.embeddings import (
    EmbeddingProvider,
    HashEmbeddingProvider,
    OpenAIEmbeddingProvider,
    build_embedding_provider,
)
from memory_engine.services.persistence import BlobStore

__all__ = [
    "BlobStore",
    "EmbeddingProvider",
    "HashEmbeddingProvider",
    "OpenAIEmbeddingProvider",
    "build_embedding_provider",
]
