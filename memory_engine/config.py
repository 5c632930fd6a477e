"""
Application configuration using Pydantic Settings.

Loads configuration from environment variables with type validation
and sensible defaults for a local, single-user installation.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="MEMORY_",
        case_sensitive=False,
        extra="ignore",
    )

    # =========================================================================
    # Server Configuration
    # =========================================================================
    app_name: str = Field(default="local-memory-engine", description="Application name")
    app_env: Literal["development", "staging", "production"] = Field(
        default="development", description="Application environment"
    )
    debug: bool = Field(default=True, description="Enable debug mode")
    host: str = Field(default="127.0.0.1", description="Server host")
    port: int = Field(default=8000, description="Server port")
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    api_key: SecretStr = Field(
        default=SecretStr(""), description="X-API-Key required outside development (empty disables)"
    )

    # =========================================================================
    # Storage
    # =========================================================================
    data_dir: Path = Field(
        default=Path("./data/memory"), description="Directory holding persisted blobs"
    )
    autosave: bool = Field(
        default=True, description="Persist tables after every mutation"
    )
    index_persist_every: int = Field(
        default=100, ge=1, description="Persist the vector index every N index writes"
    )

    # =========================================================================
    # Embedding Provider
    # =========================================================================
    embedding_provider: Literal["openai", "hash", "none"] = Field(
        default="hash", description="Embedding provider: openai (remote), hash (offline), none"
    )
    openai_api_key: SecretStr = Field(
        default=SecretStr(""), description="OpenAI API key for embeddings"
    )
    embedding_model: str = Field(
        default="text-embedding-3-small", description="OpenAI embedding model"
    )
    embedding_dimensions: int = Field(
        default=384, ge=1, le=4096, description="Embedding vector dimensions"
    )
    embedding_timeout_seconds: float = Field(
        default=10.0, gt=0, description="Timeout for a single embedding request"
    )

    # =========================================================================
    # Vector Index
    # =========================================================================
    index_initial_capacity: int = Field(
        default=1024, ge=1, description="Initial index capacity (doubles on demand)"
    )
    index_max_elements: int = Field(
        default=100_000, ge=1, description="Hard ceiling on index capacity"
    )
    compaction_tombstone_ratio: float = Field(
        default=0.2, gt=0.0, le=1.0, description="Tombstone ratio that triggers compaction"
    )
    compaction_batch_size: int = Field(
        default=512, ge=1, description="Vectors copied between yields while compacting"
    )

    # =========================================================================
    # Chunking
    # =========================================================================
    chunk_size: int = Field(
        default=1000, ge=1, description="Target chunk size in characters"
    )
    chunk_overlap: int = Field(
        default=200, ge=0, description="Chunk overlap in characters"
    )

    # =========================================================================
    # Memory Model
    # =========================================================================
    cache_size: int = Field(default=1000, ge=1, description="Maximum cached entries")
    default_expiry_seconds: float = Field(
        default=30 * 24 * 60 * 60, gt=0, description="Default entry lifetime (30 days)"
    )
    max_importance: float = Field(default=10.0, gt=0, description="Importance ceiling")
    decay_factor: float = Field(
        default=0.95, gt=0.0, le=1.0, description="Importance multiplier per decay interval"
    )
    reinforcement_boost: float = Field(
        default=0.1, ge=0.0, description="Importance added to an entry on a search hit"
    )
    reinforce_on_search: bool = Field(
        default=True, description="Reinforce entries returned by search"
    )
    prune_threshold: float = Field(
        default=0.1, ge=0.0, description="Entries below this importance are pruned"
    )
    soft_cap: int = Field(
        default=50_000, ge=1, description="Active entry count the pruning job trims to"
    )
    max_tags: int = Field(default=32, ge=0, description="Maximum tags per entry")
    type_weights: dict[str, float] = Field(
        default_factory=lambda: {
            "general": 1.0,
            "conversation": 1.0,
            "document": 1.0,
            "fact": 1.2,
            "preference": 1.2,
            "instruction": 1.3,
        },
        description="Importance weight per memory type (unknown types weigh 1.0)",
    )
    recency_half_life_seconds: float = Field(
        default=7 * 24 * 60 * 60, gt=0, description="Age at which recency score halves"
    )

    # =========================================================================
    # Ranking
    # =========================================================================
    weight_similarity: float = Field(default=0.4, ge=0.0, description="Similarity weight")
    weight_importance: float = Field(default=0.3, ge=0.0, description="Importance weight")
    weight_recency: float = Field(default=0.3, ge=0.0, description="Recency weight")
    overfetch_factor: int = Field(
        default=3, ge=1, description="Candidate multiplier for vector search"
    )
    default_search_limit: int = Field(
        default=10, ge=1, le=1000, description="Results returned when a search names no limit"
    )

    # =========================================================================
    # Maintenance
    # =========================================================================
    maintenance_enabled: bool = Field(default=True, description="Run periodic maintenance")
    expiry_sweep_interval_seconds: float = Field(default=60 * 60, gt=0)
    decay_interval_seconds: float = Field(default=24 * 60 * 60, gt=0)
    prune_interval_seconds: float = Field(default=7 * 24 * 60 * 60, gt=0)
    compaction_interval_seconds: float = Field(default=6 * 60 * 60, gt=0)

    # =========================================================================
    # Observability
    # =========================================================================
    metrics_enabled: bool = Field(default=True, description="Enable Prometheus metrics")

    # =========================================================================
    # CORS Configuration
    # =========================================================================
    cors_origins: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        description="Comma-separated list of allowed CORS origins",
    )

    @model_validator(mode="after")
    def _check_chunking(self) -> "Settings":
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError("chunk_overlap must be smaller than chunk_size")
        if self.index_initial_capacity > self.index_max_elements:
            raise ValueError("index_initial_capacity cannot exceed index_max_elements")
        return self

    @property
    def cors_origins_list(self) -> list[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def requires_api_key(self) -> bool:
        """A configured key is enforced everywhere except development."""
        return self.app_env != "development" and bool(self.api_key.get_secret_value())


@lru_cache
def get_settings() -> Settings:
    """Settings from the environment, loaded once per process."""
    return Settings()
