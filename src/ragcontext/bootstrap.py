"""Object graph wiring for the context core."""

from __future__ import annotations

from typing import Sequence

from ragcontext.config import Settings, get_settings
from ragcontext.conversation import ConversationSessionManager, InMemorySessionStore, SessionStore
from ragcontext.embeddings import (
    ContentEmbedder,
    EmbeddingCache,
    EmbeddingOrchestrator,
    EmbeddingProvider,
    ProviderBudget,
    build_providers,
)
from ragcontext.metrics.observability import configure_logging, get_logger
from ragcontext.retrieval import ChromaContentIndex, ContentIndex, HybridRetrievalEngine, RetrievalConfig
from ragcontext.services.context import ContextAssembler
from ragcontext.services.generation import Completer, GenerationConfig, QwenCompleter, TemplateCompleter
from ragcontext.services.profile import InMemoryProfileStore, ProfileStore


def build_orchestrator(settings: Settings, providers: Sequence[EmbeddingProvider] | None = None) -> EmbeddingOrchestrator:
    providers = list(build_providers(settings) if providers is None else providers)
    budgets = {
        provider.provider_id: ProviderBudget(settings.provider_calls_per_window, settings.provider_budget_window_seconds)
        for provider in providers
    }
    return EmbeddingOrchestrator(
        providers,
        EmbeddingCache(settings.embedding_cache_size),
        default_provider=settings.default_provider,
        budgets=budgets,
        fallback_dimensions=settings.fallback_dimensions,
        batch_concurrency=settings.embed_batch_concurrency,
    )


def build_context_assembler(
    settings: Settings | None = None,
    *,
    providers: Sequence[EmbeddingProvider] | None = None,
    index: ContentIndex | None = None,
    session_store: SessionStore | None = None,
    profiles: ProfileStore | None = None,
    completer: Completer | None = None,
    index_chat_turns: bool = True,
) -> ContextAssembler:
    """Construct a ready ``ContextAssembler``; pass collaborators to override defaults."""

    settings = settings or get_settings()
    configure_logging(settings.log_level)
    logger = get_logger("bootstrap")

    orchestrator = build_orchestrator(settings, providers)
    index = index or ChromaContentIndex.from_settings(settings)
    profiles = profiles or InMemoryProfileStore()
    if completer is None:
        completer = QwenCompleter(GenerationConfig.from_settings(settings), fallback=TemplateCompleter())

    engine = HybridRetrievalEngine(index, orchestrator, RetrievalConfig.from_settings(settings))
    sessions = ConversationSessionManager(
        session_store or InMemorySessionStore(),
        profiles=profiles,
        completer=completer,
        embedder=ContentEmbedder(orchestrator) if index_chat_turns else None,
        index=index if index_chat_turns else None,
        max_key_topics=settings.max_key_topics,
    )
    logger.info(
        "bootstrap.ready",
        providers=[provider.provider_id for provider in orchestrator.providers],
        environment=settings.environment,
    )
    return ContextAssembler(
        engine,
        sessions,
        profiles,
        max_context_tokens=settings.max_context_tokens,
        recent_turns_limit=settings.recent_turns_limit,
        timeout_seconds=settings.request_timeout_seconds,
        default_max_results=settings.default_max_results,
        default_similarity_threshold=settings.default_similarity_threshold,
        default_time_window_hours=settings.default_time_window_hours,
        resources=[orchestrator],
    )
