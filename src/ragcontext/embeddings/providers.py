"""Embedding provider adapters behind a uniform capability contract."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Mapping, Protocol, Sequence

from langchain_community.embeddings import HuggingFaceEmbeddings
from langchain_core.embeddings import Embeddings as LangChainEmbeddings

from ragcontext.config import Settings
from ragcontext.embeddings.cache import text_hash
from ragcontext.errors import ProviderUnavailable
from ragcontext.metrics.observability import PipelineMetrics
from ragcontext.models import EmbeddingVector

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderCapabilities:
    """Static limits and economics of one embedding backend."""

    max_input_length: int
    dimensions: int
    cost_per_k_tokens: float
    typical_latency_ms: float


PRESETS: Mapping[str, ProviderCapabilities] = {
    "openai": ProviderCapabilities(max_input_length=8191, dimensions=1536, cost_per_k_tokens=0.00002, typical_latency_ms=220.0),
    "cohere": ProviderCapabilities(max_input_length=512, dimensions=1024, cost_per_k_tokens=0.0001, typical_latency_ms=160.0),
    "gemini": ProviderCapabilities(max_input_length=2048, dimensions=768, cost_per_k_tokens=0.0000125, typical_latency_ms=120.0),
    "huggingface": ProviderCapabilities(max_input_length=2048, dimensions=384, cost_per_k_tokens=0.0, typical_latency_ms=400.0),
}


class EmbeddingProvider(Protocol):
    """Protocol describing one external embedding backend."""

    @property
    def provider_id(self) -> str:
        """Stable identifier used for cache keys and try-order policies."""

    def capabilities(self) -> ProviderCapabilities:
        """Return the provider's input limit, vector size and cost."""

    async def generate(self, text: str) -> EmbeddingVector:
        """Embed ``text``; raise ``ProviderUnavailable`` on any failure."""


def head_truncate(text: str, max_input_length: int) -> str:
    if max_input_length <= 0 or len(text) <= max_input_length:
        return text
    return text[:max_input_length]


class LangChainEmbeddingProvider:
    """Adapter around any LangChain ``Embeddings`` client.

    Oversized input is head-truncated to ``max_input_length``. Errors are
    reported as ``ProviderUnavailable`` and never retried here.
    """

    def __init__(
        self,
        provider_id: str,
        client: LangChainEmbeddings,
        capabilities: ProviderCapabilities | None = None,
        *,
        model_id: str | None = None,
    ) -> None:
        if capabilities is None:
            if provider_id not in PRESETS:
                raise ValueError(f"No capability preset for provider {provider_id!r}")
            capabilities = PRESETS[provider_id]
        self._provider_id = provider_id
        self._client = client
        self._capabilities = capabilities
        self._model_id = model_id or getattr(client, "model", None) or getattr(client, "model_name", None) or provider_id

    @property
    def provider_id(self) -> str:
        return self._provider_id

    @property
    def model_id(self) -> str:
        return str(self._model_id)

    def capabilities(self) -> ProviderCapabilities:
        return self._capabilities

    async def generate(self, text: str) -> EmbeddingVector:
        payload = head_truncate(text, self._capabilities.max_input_length)
        start = time.perf_counter()
        try:
            raw = await self._client.aembed_query(payload)
        except Exception as exc:
            raise ProviderUnavailable(self._provider_id, f"{type(exc).__name__}: {exc}") from exc
        finally:
            PipelineMetrics.observe_embedding(self._provider_id, time.perf_counter() - start)
        values = tuple(float(value) for value in raw or ())
        if not values:
            raise ProviderUnavailable(self._provider_id, "empty embedding returned")
        if len(values) != self._capabilities.dimensions:
            LOGGER.warning(
                "Embedding dim mismatch for %s: configured=%d, actual=%d",
                self._provider_id,
                self._capabilities.dimensions,
                len(values),
            )
        return EmbeddingVector(
            values=values,
            dimensions=len(values),
            provider_id=self._provider_id,
            model_id=self.model_id,
            content_hash=text_hash(text),
        )


def _openai_client(settings: Settings) -> LangChainEmbeddings:
    from langchain_openai import OpenAIEmbeddings

    return OpenAIEmbeddings(
        model=settings.openai_embedding_model,
        api_key=settings.openai_api_key,
        dimensions=PRESETS["openai"].dimensions,
    )


def _cohere_client(settings: Settings) -> LangChainEmbeddings:
    from langchain_cohere import CohereEmbeddings

    return CohereEmbeddings(model=settings.cohere_embedding_model, cohere_api_key=settings.cohere_api_key)


def _gemini_client(settings: Settings) -> LangChainEmbeddings:
    from langchain_google_genai import GoogleGenerativeAIEmbeddings

    return GoogleGenerativeAIEmbeddings(model=settings.gemini_embedding_model, google_api_key=settings.gemini_api_key)


def _huggingface_client(settings: Settings) -> LangChainEmbeddings:
    model_kwargs = {"device": settings.local_embedding_device} if settings.local_embedding_device else {}
    return HuggingFaceEmbeddings(
        model_name=settings.local_embedding_model,
        model_kwargs=model_kwargs,
        encode_kwargs={"normalize_embeddings": True},
    )


def _configured(settings: Settings) -> Sequence[tuple[str, str, Callable[[Settings], LangChainEmbeddings]]]:
    specs: list[tuple[str, str, Callable[[Settings], LangChainEmbeddings]]] = []
    if settings.openai_api_key:
        specs.append(("openai", settings.openai_embedding_model, _openai_client))
    if settings.cohere_api_key:
        specs.append(("cohere", settings.cohere_embedding_model, _cohere_client))
    if settings.gemini_api_key:
        specs.append(("gemini", settings.gemini_embedding_model, _gemini_client))
    if settings.use_local_embeddings:
        specs.append(("huggingface", settings.local_embedding_model, _huggingface_client))
    return specs


def build_providers(settings: Settings) -> list[EmbeddingProvider]:
    """Construct one adapter per configured backend.

    A backend whose client cannot be constructed is skipped with a warning;
    the orchestrator's hash fallback covers an empty provider list.
    """

    providers: list[EmbeddingProvider] = []
    for provider_id, model_id, factory in _configured(settings):
        try:
            client = factory(settings)
        except Exception as exc:  # pragma: no cover - depends on optional packages
            LOGGER.warning("Skipping embedding provider %s: %s", provider_id, exc)
            continue
        providers.append(LangChainEmbeddingProvider(provider_id, client, PRESETS[provider_id], model_id=model_id))
        LOGGER.info("Configured embedding provider %s (%s)", provider_id, model_id)
    return providers
