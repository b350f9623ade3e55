"""Provider fallback orchestration with caching and a deterministic hash fallback."""

from __future__ import annotations

import asyncio
import hashlib
import math
import re
import threading
import time
from typing import Mapping, Sequence

from ragcontext.embeddings.cache import EmbeddingCache, normalize_text, text_hash
from ragcontext.embeddings.providers import EmbeddingProvider
from ragcontext.errors import AllProvidersFailed, ProviderUnavailable
from ragcontext.metrics.observability import PipelineMetrics, get_logger
from ragcontext.models import FALLBACK_PROVIDER_ID, ContentType, EmbeddingVector, Urgency

FALLBACK_MODEL_ID = "hash-bucket-v1"
_TOKEN = re.compile(r"\w+")

DEFAULT_CONTENT_PROVIDERS: Mapping[ContentType, str] = {
    ContentType.DOMAIN_RECORD: "openai",
    ContentType.PLAN: "openai",
    ContentType.KNOWLEDGE_ENTITY: "openai",
    ContentType.CHAT_HISTORY: "cohere",
}


def hash_embedding(normalized_text: str, dimensions: int = 384) -> EmbeddingVector:
    """Deterministic bag-of-tokens embedding used when every provider fails.

    Each token is hashed into one of ``dimensions`` buckets, buckets hold the
    token's normalized term frequency and the result is L2-normalized.
    """

    if dimensions <= 0:
        raise ValueError("dimensions must be positive")
    tokens = _TOKEN.findall(normalized_text)
    buckets = [0.0] * dimensions
    if tokens:
        weight = 1.0 / len(tokens)
        for token in tokens:
            digest = hashlib.sha256(token.encode("utf-8")).digest()
            buckets[int.from_bytes(digest[:8], "big") % dimensions] += weight
    norm = math.sqrt(sum(value * value for value in buckets))
    if norm:
        buckets = [value / norm for value in buckets]
    return EmbeddingVector(
        values=tuple(buckets),
        dimensions=dimensions,
        provider_id=FALLBACK_PROVIDER_ID,
        model_id=FALLBACK_MODEL_ID,
        content_hash=text_hash(normalized_text),
    )


class ProviderBudget:
    """Fixed-window call budget shared by every request hitting one provider."""

    def __init__(self, calls_per_window: int, window_seconds: float) -> None:
        self._limit = calls_per_window
        self._window = window_seconds
        self._remaining = calls_per_window
        self._window_start = time.monotonic()
        self._lock = threading.Lock()

    def try_acquire(self) -> bool:
        with self._lock:
            now = time.monotonic()
            if now - self._window_start >= self._window:
                self._window_start = now
                self._remaining = self._limit
            if self._remaining <= 0:
                return False
            self._remaining -= 1
            return True

    @property
    def remaining(self) -> int:
        with self._lock:
            return self._remaining


def provider_order(
    providers: Sequence[EmbeddingProvider],
    preferred_provider: str | None,
    urgency: Urgency,
) -> list[EmbeddingProvider]:
    """Try-order policy.

    HIGH urgency puts the fastest provider first and LOW urgency the cheapest,
    both regardless of preference. MEDIUM honours the preferred provider and
    keeps registration order for the rest.
    """

    ordered = list(providers)
    if urgency is Urgency.HIGH:
        return sorted(ordered, key=lambda provider: provider.capabilities().typical_latency_ms)
    if urgency is Urgency.LOW:
        return sorted(ordered, key=lambda provider: provider.capabilities().cost_per_k_tokens)
    preferred = [provider for provider in ordered if provider.provider_id == preferred_provider]
    return preferred + [provider for provider in ordered if provider.provider_id != preferred_provider]


class EmbeddingOrchestrator:
    """Chooses provider order, consults the cache and falls back across adapters.

    ``embed`` never raises for provider failures: when the whole chain fails it
    returns a hash embedding tagged ``fallback-hash``.
    """

    def __init__(
        self,
        providers: Sequence[EmbeddingProvider],
        cache: EmbeddingCache | None = None,
        *,
        default_provider: str | None = None,
        budgets: Mapping[str, ProviderBudget] | None = None,
        fallback_dimensions: int = 384,
        batch_concurrency: int = 4,
        content_providers: Mapping[ContentType, str] | None = None,
    ) -> None:
        ids = [provider.provider_id for provider in providers]
        if len(set(ids)) != len(ids):
            raise ValueError(f"Duplicate provider ids: {ids}")
        self._providers = list(providers)
        self._cache = cache if cache is not None else EmbeddingCache()
        self._default_provider = default_provider or (ids[0] if ids else None)
        self._budgets = dict(budgets or {})
        self._fallback_dimensions = fallback_dimensions
        self._batch_concurrency = max(1, batch_concurrency)
        self._content_providers = dict(content_providers or DEFAULT_CONTENT_PROVIDERS)
        self._logger = get_logger("embeddings")

    @property
    def providers(self) -> Sequence[EmbeddingProvider]:
        return tuple(self._providers)

    @property
    def cache(self) -> EmbeddingCache:
        return self._cache

    def preferred_provider_for(self, content_type: ContentType) -> str | None:
        return self._content_providers.get(content_type, self._default_provider)

    async def embed(
        self,
        text: str,
        *,
        preferred_provider: str | None = None,
        urgency: Urgency = Urgency.MEDIUM,
    ) -> EmbeddingVector:
        normalized = normalize_text(text)
        digest = text_hash(normalized)
        order = provider_order(self._providers, preferred_provider or self._default_provider, urgency)

        for provider in order:
            cached = self._cache.get(provider.provider_id, digest)
            if cached is not None:
                return cached

        failures: dict[str, str] = {}
        if normalized:
            for provider in order:
                try:
                    vector = await self._call(provider, normalized)
                except ProviderUnavailable as exc:
                    failures[provider.provider_id] = exc.reason
                    self._logger.warning(
                        "embedding.provider_failed",
                        provider=provider.provider_id,
                        reason=exc.reason,
                        urgency=urgency.value,
                    )
                    continue
                self._cache.put(provider.provider_id, digest, vector)
                return vector
        else:
            failures["input"] = "empty after normalization"

        return self._fallback(normalized, digest, AllProvidersFailed(failures))

    async def embed_many(
        self,
        texts: Sequence[str],
        *,
        preferred_provider: str | None = None,
        urgency: Urgency = Urgency.LOW,
    ) -> list[EmbeddingVector]:
        """Embed a batch with bounded concurrency, preserving input order."""

        semaphore = asyncio.Semaphore(self._batch_concurrency)

        async def _one(text: str) -> EmbeddingVector:
            async with semaphore:
                return await self.embed(text, preferred_provider=preferred_provider, urgency=urgency)

        return list(await asyncio.gather(*(_one(text) for text in texts)))

    async def aclose(self) -> None:
        for provider in self._providers:
            closer = getattr(provider, "aclose", None)
            if closer is not None:
                await closer()
        self._cache.clear()
        self._logger.info("embeddings.closed", providers=len(self._providers))

    async def _call(self, provider: EmbeddingProvider, normalized: str) -> EmbeddingVector:
        budget = self._budgets.get(provider.provider_id)
        if budget is not None and not budget.try_acquire():
            PipelineMetrics.observe_provider_failure(provider.provider_id, "budget")
            raise ProviderUnavailable(provider.provider_id, "call budget exhausted")
        try:
            return await provider.generate(normalized)
        except ProviderUnavailable:
            PipelineMetrics.observe_provider_failure(provider.provider_id, "unavailable")
            raise
        except Exception as exc:
            PipelineMetrics.observe_provider_failure(provider.provider_id, "error")
            raise ProviderUnavailable(provider.provider_id, f"{type(exc).__name__}: {exc}") from exc

    def _fallback(self, normalized: str, digest: str, error: AllProvidersFailed) -> EmbeddingVector:
        cached = self._cache.get(FALLBACK_PROVIDER_ID, digest)
        if cached is not None:
            return cached
        self._logger.warning("embedding.fallback_hash", detail=str(error), dimensions=self._fallback_dimensions)
        PipelineMetrics.fallback_embeddings.inc()
        vector = hash_embedding(normalized, self._fallback_dimensions)
        self._cache.put(FALLBACK_PROVIDER_ID, digest, vector)
        return vector
