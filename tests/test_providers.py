from __future__ import annotations

import pytest
from langchain_core.embeddings import DeterministicFakeEmbedding, Embeddings

from ragcontext.config import get_settings
from ragcontext.embeddings.cache import text_hash
from ragcontext.embeddings.providers import (
    PRESETS,
    LangChainEmbeddingProvider,
    ProviderCapabilities,
    build_providers,
    head_truncate,
)
from ragcontext.errors import ProviderUnavailable


class RecordingEmbeddings(Embeddings):
    def __init__(self, size: int = 4, error: Exception | None = None, empty: bool = False) -> None:
        self.size = size
        self.error = error
        self.empty = empty
        self.seen: list[str] = []

    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        return [self.embed_query(text) for text in texts]

    def embed_query(self, text: str) -> list[float]:
        self.seen.append(text)
        if self.error is not None:
            raise self.error
        if self.empty:
            return []
        return [0.5] * self.size


def _caps(max_input_length: int = 512, dimensions: int = 4) -> ProviderCapabilities:
    return ProviderCapabilities(
        max_input_length=max_input_length,
        dimensions=dimensions,
        cost_per_k_tokens=0.0001,
        typical_latency_ms=100.0,
    )


def test_head_truncate_keeps_prefix():
    assert head_truncate("abcdefghij", 4) == "abcd"
    assert head_truncate("abc", 4) == "abc"


async def test_generate_truncates_input_and_tags_vector():
    client = RecordingEmbeddings()
    provider = LangChainEmbeddingProvider("cohere", client, _caps(max_input_length=5), model_id="embed-light")
    vector = await provider.generate("abcdefghij")
    assert client.seen == ["abcde"]
    assert vector.provider_id == "cohere"
    assert vector.model_id == "embed-light"
    assert vector.dimensions == 4
    assert vector.content_hash == text_hash("abcdefghij")


async def test_client_errors_become_provider_unavailable():
    provider = LangChainEmbeddingProvider("openai", RecordingEmbeddings(error=TimeoutError("slow")), _caps())
    with pytest.raises(ProviderUnavailable) as excinfo:
        await provider.generate("hello")
    assert excinfo.value.provider_id == "openai"
    assert "slow" in excinfo.value.reason


async def test_empty_vector_is_unavailable():
    provider = LangChainEmbeddingProvider("openai", RecordingEmbeddings(empty=True), _caps())
    with pytest.raises(ProviderUnavailable):
        await provider.generate("hello")


async def test_dimension_mismatch_is_not_fatal():
    provider = LangChainEmbeddingProvider("gemini", DeterministicFakeEmbedding(size=8), _caps(dimensions=768))
    vector = await provider.generate("hello")
    assert vector.dimensions == 8


def test_presets_match_published_capabilities():
    assert PRESETS["openai"].dimensions == 1536
    assert PRESETS["openai"].max_input_length == 8191
    assert PRESETS["cohere"].max_input_length == 512
    assert PRESETS["gemini"].cost_per_k_tokens < PRESETS["openai"].cost_per_k_tokens


def test_unknown_provider_needs_capabilities():
    with pytest.raises(ValueError):
        LangChainEmbeddingProvider("mystery", RecordingEmbeddings())


def test_build_providers_without_credentials_is_empty():
    settings = get_settings(
        {
            "environment": "test",
            "openai_api_key": None,
            "cohere_api_key": None,
            "gemini_api_key": None,
            "use_local_embeddings": False,
        }
    )
    assert build_providers(settings) == []
