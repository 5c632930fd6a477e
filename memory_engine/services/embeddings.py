"""
Embedding providers.

The memory store only needs ``embed(text) -> vector``. Two providers are
shipped: an OpenAI-backed one for real semantic vectors and a deterministic
feature-hashing one that works offline.
"""

import hashlib
import math
import re
from typing import Protocol, runtime_checkable

import structlog
from openai import AsyncOpenAI

from memory_engine.config import Settings, get_settings
from memory_engine.core.errors import ProviderError
from memory_engine.utils.latency import latency_tracked

logger = structlog.get_logger(__name__)

_TOKEN_PATTERN = re.compile(r"\w+", re.UNICODE)


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Text to fixed-dimension vector capability."""

    dimension: int

    async def embed(self, text: str) -> list[float]:
        ...


class OpenAIEmbeddingProvider:
    """
    OpenAI embedding provider for text vectorization.

    Keeps a bounded cache for repeated texts. Any client failure is
    raised as ProviderError so callers can degrade.
    """

    def __init__(self, settings: Settings | None = None, client: AsyncOpenAI | None = None) -> None:
        """Initialize the embedding provider."""
        self.settings = settings or get_settings()
        self.dimension = self.settings.embedding_dimensions
        self._client = client
        self._cache: dict[str, list[float]] = {}
        self._max_cache_size = 10000

    def _get_client(self) -> AsyncOpenAI:
        """Get or create OpenAI client."""
        if self._client is None:
            self._client = AsyncOpenAI(
                api_key=self.settings.openai_api_key.get_secret_value()
            )
        return self._client

    def _cache_key(self, text: str) -> str:
        """Generate cache key for text."""
        return hashlib.sha256(text.encode()).hexdigest()[:16]

    @latency_tracked("embedding_openai")
    async def embed(self, text: str) -> list[float]:
        """
        Generate embedding for a single text.

        Args:
            text: Text to embed

        Returns:
            Embedding vector as list of floats

        Raises:
            ProviderError: If the request fails
        """
        cache_key = self._cache_key(text)
        if cache_key in self._cache:
            logger.debug("embedding_cache_hit", text_preview=text[:30])
            return self._cache[cache_key]

        try:
            response = await self._get_client().embeddings.create(
                model=self.settings.embedding_model,
                input=text,
                dimensions=self.dimension,
            )
        except Exception as e:
            logger.error("embedding_failed", error=str(e), text_preview=text[:30])
            raise ProviderError(f"embedding request failed: {e}") from e

        embedding = response.data[0].embedding
        self._add_to_cache(cache_key, embedding)

        logger.debug(
            "embedding_generated",
            text_preview=text[:30],
            dimensions=len(embedding),
        )
        return embedding

    def _add_to_cache(self, key: str, embedding: list[float]) -> None:
        """Add embedding to cache with size limit."""
        if len(self._cache) >= self._max_cache_size:
            # Simple eviction: remove oldest 10%
            keys_to_remove = list(self._cache.keys())[: self._max_cache_size // 10]
            for k in keys_to_remove:
                del self._cache[k]

        self._cache[key] = embedding


class HashEmbeddingProvider:
    """
    Deterministic feature-hashing embeddings.

    Each lowercase word token is hashed to a bucket and a sign; the vector is
    L2-normalized. Texts sharing words get positive cosine similarity, which
    is enough for local use and tests without a model.
    """

    def __init__(self, dimension: int = 384) -> None:
        if dimension <= 0:
            raise ValueError("dimension must be positive")
        self.dimension = dimension

    async def embed(self, text: str) -> list[float]:
        vector = [0.0] * self.dimension
        tokens = _TOKEN_PATTERN.findall(text.lower())
        if not tokens:
            raise ProviderError("cannot embed text without word tokens")

        for token in tokens:
            digest = hashlib.md5(token.encode()).digest()
            bucket = int.from_bytes(digest[:4], "little") % self.dimension
            sign = 1.0 if digest[4] & 1 else -1.0
            vector[bucket] += sign

        norm = math.sqrt(sum(v * v for v in vector))
        if norm == 0.0:
            raise ProviderError("hashed features cancelled out")
        return [v / norm for v in vector]


def build_embedding_provider(settings: Settings) -> EmbeddingProvider | None:
    """
    Create the configured embedding provider.

    Returns:
        Provider instance, or None when embeddings are disabled
    """
    if settings.embedding_provider == "openai":
        return OpenAIEmbeddingProvider(settings)
    if settings.embedding_provider == "hash":
        return HashEmbeddingProvider(settings.embedding_dimensions)
    return None
