"""Runtime configuration for the ragcontext services."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed configuration model."""

    model_config = SettingsConfigDict(env_prefix="ragcontext_", env_file=".env", case_sensitive=False)

    environment: Literal["dev", "test", "prod"] = "dev"
    log_level: str = "INFO"

    # Embedding providers; an adapter is only built when its key is present
    openai_api_key: str | None = None
    openai_embedding_model: str = "text-embedding-3-small"
    cohere_api_key: str | None = None
    cohere_embedding_model: str = "embed-english-light-v3.0"
    gemini_api_key: str | None = None
    gemini_embedding_model: str = "models/embedding-001"
    use_local_embeddings: bool = False
    local_embedding_model: str = "BAAI/bge-small-en-v1.5"
    local_embedding_device: str | None = None
    default_provider: str = "openai"

    # Embedding cache and per-provider call budget
    embedding_cache_size: int = 1000
    provider_calls_per_window: int = 600
    provider_budget_window_seconds: float = 60.0
    fallback_dimensions: int = 384
    fallback_similarity_discount: float = 0.5
    embed_batch_concurrency: int = 4

    # Hybrid ranking
    semantic_weight: float = 0.4
    context_weight: float = 0.4
    recency_weight: float = 0.2
    default_max_results: int = 10
    default_similarity_threshold: float = 0.7
    default_time_window_hours: float = 24.0
    max_context_tokens: int = 3000

    # Request scope
    request_timeout_seconds: float = 8.0

    # Conversation sessions
    recent_turns_limit: int = 10
    max_key_topics: int = 5

    # Chroma-backed content index
    chroma_persist_dir: Path | None = None
    chroma_host: str | None = None
    chroma_port: int | None = None
    chroma_ssl: bool = False
    chroma_collection_prefix: str = "ragcontext"

    # Summaries
    generator_model: str = "Qwen/Qwen2.5-1.8B-Instruct"
    generator_max_new_tokens: int = 256
    generator_temperature: float = 0.3
    use_model_generator: bool = False

    evaluation_min_recall: float = 0.5
    evaluation_min_mrr: float = 0.5

    @model_validator(mode="after")
    def _check_weights(self) -> "Settings":
        weights = (self.semantic_weight, self.context_weight, self.recency_weight)
        if any(weight < 0 for weight in weights):
            raise ValueError("hybrid weights must be non-negative")
        if abs(sum(weights) - 1.0) > 1e-6:
            raise ValueError(f"hybrid weights must sum to 1.0, got {sum(weights):.4f}")
        return self

    @property
    def is_test(self) -> bool:
        return self.environment == "test"


@lru_cache(maxsize=1)
def _cached_settings() -> Settings:
    return Settings()


def get_settings(override: Optional[dict[str, object]] = None) -> Settings:
    """Return settings, optionally overriding values without mutating cache."""

    if override:
        return Settings(**override)
    return _cached_settings()
