"""
Pytest configuration and fixtures.
"""

import asyncio
from collections.abc import AsyncGenerator, Generator
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

from memory_engine.config import Settings
from memory_engine.core.errors import ProviderError
from memory_engine.core.memory import MemoryStore
from memory_engine.main import create_app
from memory_engine.services.embeddings import HashEmbeddingProvider
from memory_engine.services.persistence import BlobStore

DIMENSION = 32


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class StaticEmbeddingProvider:
    """Returns registered vectors; hashes anything else."""

    def __init__(self, dimension: int = DIMENSION) -> None:
        self.dimension = dimension
        self.vectors: dict[str, list[float]] = {}
        self.calls = 0
        self._fallback = HashEmbeddingProvider(dimension)

    def register(self, text: str, vector: list[float]) -> None:
        self.vectors[text] = vector

    async def embed(self, text: str) -> list[float]:
        self.calls += 1
        if text in self.vectors:
            return self.vectors[text]
        return await self._fallback.embed(text)


class FailingEmbeddingProvider:
    """Provider that is always down."""

    def __init__(self, dimension: int = DIMENSION) -> None:
        self.dimension = dimension
        self.calls = 0

    async def embed(self, text: str) -> list[float]:
        self.calls += 1
        raise ProviderError("provider unavailable")


class SlowEmbeddingProvider:
    """Provider that answers after ``delay`` seconds."""

    def __init__(self, delay: float, dimension: int = DIMENSION) -> None:
        self.dimension = dimension
        self.delay = delay
        self._inner = HashEmbeddingProvider(dimension)

    async def embed(self, text: str) -> list[float]:
        await asyncio.sleep(self.delay)
        return await self._inner.embed(text)


def unit(index: int, dimension: int = DIMENSION) -> list[float]:
    """One-hot vector along ``index``."""
    vector = [0.0] * dimension
    vector[index] = 1.0
    return vector


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    return tmp_path / "memory"


@pytest.fixture
def test_settings(data_dir: Path) -> Settings:
    """Create test settings with a small, fast configuration."""
    return Settings(
        _env_file=None,
        app_env="development",
        debug=True,
        data_dir=data_dir,
        embedding_provider="hash",
        embedding_dimensions=DIMENSION,
        index_initial_capacity=4,
        index_max_elements=64,
        compaction_batch_size=2,
        chunk_size=100,
        chunk_overlap=20,
        cache_size=50,
        maintenance_enabled=False,
        reinforce_on_search=False,
        metrics_enabled=False,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def provider() -> StaticEmbeddingProvider:
    return StaticEmbeddingProvider()


@pytest.fixture
def make_store(test_settings: Settings, clock: FakeClock):
    """Factory building initialized stores over the test data directory."""

    async def _make(settings: Settings | None = None, embedding_provider=None) -> MemoryStore:
        settings = settings or test_settings
        store = MemoryStore(
            settings,
            BlobStore(settings.data_dir),
            embedding_provider,
            clock=clock,
        )
        await store.initialize()
        return store

    return _make


@pytest_asyncio.fixture
async def store(make_store, provider: StaticEmbeddingProvider) -> AsyncGenerator[MemoryStore, None]:
    """Memory store with a deterministic embedding provider."""
    memory_store = await make_store(embedding_provider=provider)
    yield memory_store


@pytest_asyncio.fixture
async def keyword_store(make_store) -> AsyncGenerator[MemoryStore, None]:
    """Memory store without an embedding provider."""
    memory_store = await make_store()
    yield memory_store


@pytest.fixture
def app(test_settings: Settings):
    """Create test FastAPI application."""
    return create_app(test_settings)


@pytest.fixture
def client(app) -> Generator[TestClient, None, None]:
    """Create test client; the lifespan runs on enter."""
    with TestClient(app) as c:
        yield c


@pytest.fixture
def sample_texts() -> list[str]:
    """Sample texts for testing."""
    return [
        "The quarterly meeting discussed the new product launch timeline. "
        "We agreed to target Q2 for the initial release with a soft launch in March.",
        "Key action items from today's standup: Sarah will finish the API documentation, "
        "Mike is investigating the performance issues, and the team will review PRs by EOD.",
        "Customer feedback analysis shows 85% satisfaction with the new features. "
        "Main concerns are around mobile responsiveness and loading times.",
        "Budget allocation for next quarter: 40% engineering, 25% marketing, "
        "20% operations, and 15% R&D. This represents a 10% increase in R&D spending.",
        "The AI integration project is progressing well. We've completed the embedding "
        "pipeline and are now working on the retrieval optimization layer.",
    ]
