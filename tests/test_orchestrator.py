from __future__ import annotations

import math

import pytest

from ragcontext.embeddings.cache import EmbeddingCache, text_hash
from ragcontext.embeddings.orchestrator import (
    EmbeddingOrchestrator,
    ProviderBudget,
    hash_embedding,
    provider_order,
)
from ragcontext.embeddings.providers import ProviderCapabilities
from ragcontext.errors import ProviderUnavailable
from ragcontext.models import FALLBACK_PROVIDER_ID, ContentType, EmbeddingVector, Urgency


class StubProvider:
    def __init__(
        self,
        provider_id: str,
        *,
        latency_ms: float = 100.0,
        cost: float = 0.0001,
        error: Exception | None = None,
    ) -> None:
        self._provider_id = provider_id
        self._caps = ProviderCapabilities(
            max_input_length=512,
            dimensions=3,
            cost_per_k_tokens=cost,
            typical_latency_ms=latency_ms,
        )
        self.error = error
        self.calls: list[str] = []

    @property
    def provider_id(self) -> str:
        return self._provider_id

    def capabilities(self) -> ProviderCapabilities:
        return self._caps

    async def generate(self, text: str) -> EmbeddingVector:
        self.calls.append(text)
        if self.error is not None:
            raise self.error
        return EmbeddingVector(
            values=(0.1, 0.2, 0.3),
            dimensions=3,
            provider_id=self._provider_id,
            model_id="stub",
            content_hash=text_hash(text),
        )


async def test_second_embed_of_equivalent_text_hits_cache():
    provider = StubProvider("openai")
    orchestrator = EmbeddingOrchestrator([provider])
    first = await orchestrator.embed("Scholarships for  Engineers")
    second = await orchestrator.embed("scholarships for engineers ")
    assert first == second
    assert len(provider.calls) == 1


async def test_cache_is_checked_under_every_provider_before_calling():
    primary = StubProvider("openai", error=ProviderUnavailable("openai", "quota"))
    secondary = StubProvider("cohere")
    orchestrator = EmbeddingOrchestrator([primary, secondary], default_provider="openai")
    vector = await orchestrator.embed("career advice")
    assert vector.provider_id == "cohere"
    primary.error = None
    again = await orchestrator.embed("career advice")
    assert again.provider_id == "cohere"
    assert len(primary.calls) == 1
    assert len(secondary.calls) == 1


async def test_all_providers_failing_returns_hash_fallback():
    providers = [
        StubProvider("openai", error=ProviderUnavailable("openai", "down")),
        StubProvider("cohere", error=RuntimeError("socket closed")),
    ]
    orchestrator = EmbeddingOrchestrator(providers, fallback_dimensions=64)
    vector = await orchestrator.embed("find me a grant")
    assert vector.provider_id == FALLBACK_PROVIDER_ID
    assert vector.is_fallback
    assert vector.dimensions == 64
    assert math.isclose(math.sqrt(sum(value * value for value in vector.values)), 1.0, rel_tol=1e-9)
    assert (FALLBACK_PROVIDER_ID, text_hash("find me a grant")) in orchestrator.cache


async def test_no_providers_still_embeds():
    orchestrator = EmbeddingOrchestrator([])
    vector = await orchestrator.embed("hello")
    assert vector.is_fallback
    assert vector.dimensions == 384


async def test_empty_text_yields_zero_vector_without_provider_calls():
    provider = StubProvider("openai")
    orchestrator = EmbeddingOrchestrator([provider], fallback_dimensions=8)
    vector = await orchestrator.embed("  \n\t ")
    assert vector.values == (0.0,) * 8
    assert provider.calls == []


def test_hash_embedding_is_deterministic():
    assert hash_embedding("data science", 32) == hash_embedding("data science", 32)
    assert hash_embedding("data science", 32) != hash_embedding("art history", 32)
    with pytest.raises(ValueError):
        hash_embedding("x", 0)


def test_provider_order_by_urgency():
    fast = StubProvider("gemini", latency_ms=50.0, cost=0.0001)
    cheap = StubProvider("cohere", latency_ms=300.0, cost=0.00001)
    default = StubProvider("openai", latency_ms=200.0, cost=0.00002)
    providers = [default, cheap, fast]
    assert [p.provider_id for p in provider_order(providers, "cohere", Urgency.HIGH)] == ["gemini", "openai", "cohere"]
    assert [p.provider_id for p in provider_order(providers, "gemini", Urgency.LOW)] == ["cohere", "openai", "gemini"]
    assert [p.provider_id for p in provider_order(providers, "gemini", Urgency.MEDIUM)] == ["gemini", "openai", "cohere"]
    assert [p.provider_id for p in provider_order(providers, None, Urgency.MEDIUM)] == ["openai", "cohere", "gemini"]


async def test_exhausted_budget_moves_to_next_provider():
    primary = StubProvider("openai")
    secondary = StubProvider("cohere")
    orchestrator = EmbeddingOrchestrator(
        [primary, secondary],
        budgets={"openai": ProviderBudget(calls_per_window=1, window_seconds=60.0)},
    )
    first = await orchestrator.embed("first text")
    second = await orchestrator.embed("second text")
    assert first.provider_id == "openai"
    assert second.provider_id == "cohere"
    assert primary.calls == ["first text"]


def test_budget_refills_after_window():
    budget = ProviderBudget(calls_per_window=1, window_seconds=0.0)
    assert budget.try_acquire()
    assert budget.try_acquire()


async def test_embed_many_preserves_order():
    provider = StubProvider("openai")
    orchestrator = EmbeddingOrchestrator([provider], EmbeddingCache(10), batch_concurrency=2)
    texts = ["alpha", "beta", "gamma", "alpha"]
    vectors = await orchestrator.embed_many(texts)
    assert [vector.content_hash for vector in vectors] == [text_hash(text) for text in texts]


def test_preferred_provider_for_content_type():
    orchestrator = EmbeddingOrchestrator([StubProvider("openai"), StubProvider("cohere")])
    assert orchestrator.preferred_provider_for(ContentType.DOMAIN_RECORD) == "openai"
    assert orchestrator.preferred_provider_for(ContentType.CHAT_HISTORY) == "cohere"


def test_duplicate_provider_ids_rejected():
    with pytest.raises(ValueError):
        EmbeddingOrchestrator([StubProvider("openai"), StubProvider("openai")])


async def test_aclose_closes_providers_and_clears_cache():
    class ClosingProvider(StubProvider):
        closed = False

        async def aclose(self) -> None:
            self.closed = True

    provider = ClosingProvider("openai")
    cache = EmbeddingCache(10)
    orchestrator = EmbeddingOrchestrator([provider], cache)
    await orchestrator.embed("funding")
    assert len(cache) == 1

    await orchestrator.aclose()

    assert provider.closed
    assert len(cache) == 0
