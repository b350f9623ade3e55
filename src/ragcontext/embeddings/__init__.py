"""Embedding services."""

from .cache import EmbeddingCache, normalize_text, text_hash
from .enrichment import ContentEmbedder, ContextualEnricher, EnrichedContent, RefreshReport
from .orchestrator import EmbeddingOrchestrator, ProviderBudget, hash_embedding, provider_order
from .providers import PRESETS, EmbeddingProvider, LangChainEmbeddingProvider, ProviderCapabilities, build_providers

__all__ = [
    "PRESETS",
    "ContentEmbedder",
    "ContextualEnricher",
    "EmbeddingCache",
    "EmbeddingOrchestrator",
    "EmbeddingProvider",
    "EnrichedContent",
    "LangChainEmbeddingProvider",
    "ProviderBudget",
    "ProviderCapabilities",
    "RefreshReport",
    "build_providers",
    "hash_embedding",
    "normalize_text",
    "provider_order",
    "text_hash",
]
