"""Hybrid retrieval orchestrated over per-type vector searches."""

from __future__ import annotations

import asyncio
import inspect
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Awaitable, Union

from ragcontext.concurrency import RequestScope
from ragcontext.config import Settings
from ragcontext.embeddings.orchestrator import EmbeddingOrchestrator
from ragcontext.errors import PartialRetrievalFailure, RequestCancelled
from ragcontext.metrics.observability import PipelineMetrics, get_logger
from ragcontext.models import (
    ContentType,
    EmbeddingVector,
    HybridWeights,
    RetrievalQuery,
    RetrievalResult,
    SearchHit,
    Urgency,
    UserContext,
    utcnow,
)
from ragcontext.retrieval.scoring import cap_per_type, dedupe_across_types, enforce_token_ceiling, score_hits
from ragcontext.retrieval.search import VectorSearch

UserContextSource = Union[UserContext, Awaitable[UserContext], None]


@dataclass(frozen=True)
class RetrievalConfig:
    """Configuration for hybrid retrieval."""

    weights: HybridWeights = field(default_factory=HybridWeights)
    max_context_tokens: int = 3000
    fallback_similarity_discount: float = 0.5
    timeout_seconds: float | None = 8.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetrievalConfig":
        return cls(
            weights=HybridWeights(
                semantic=settings.semantic_weight,
                context=settings.context_weight,
                recency=settings.recency_weight,
            ),
            max_context_tokens=settings.max_context_tokens,
            fallback_similarity_discount=settings.fallback_similarity_discount,
            timeout_seconds=settings.request_timeout_seconds,
        )


class HybridRetrievalEngine:
    """Runs one search per content type concurrently and ranks the union.

    A content type whose search fails or misses the deadline contributes an
    empty list and is reported in ``RetrievalResult.failed_types``; the other
    types are still returned.
    """

    def __init__(
        self,
        search: VectorSearch,
        orchestrator: EmbeddingOrchestrator,
        config: RetrievalConfig | None = None,
    ) -> None:
        self._search = search
        self._orchestrator = orchestrator
        self._config = config or RetrievalConfig()
        self._logger = get_logger("retrieval")

    @property
    def config(self) -> RetrievalConfig:
        return self._config

    async def retrieve(
        self,
        query: RetrievalQuery,
        *,
        user_context: UserContextSource = None,
        scope: RequestScope | None = None,
    ) -> RetrievalResult:
        query.validate()
        scope = scope or RequestScope(self._config.timeout_seconds)
        start = time.perf_counter()
        scope.check()

        embedding = await self._resolve_embedding(query, scope)
        discount = self._config.fallback_similarity_discount if embedding.is_fallback else 1.0
        context_source = self._share(user_context)

        try:
            tasks = {
                asyncio.ensure_future(self._search_type(content_type, query, embedding)): content_type
                for content_type in query.content_types
            }
            done = await scope.gather_partial(tasks)

            hits_by_type: dict[ContentType, list[SearchHit]] = {}
            failed: list[ContentType] = []
            for task, content_type in tasks.items():
                if task in done and not task.cancelled() and task.exception() is None:
                    hits_by_type[content_type] = task.result()
                    continue
                if task in done and not task.cancelled():
                    reason = f"{type(task.exception()).__name__}: {task.exception()}"
                else:
                    reason = "cancelled" if scope.cancelled else "deadline exceeded"
                failure = PartialRetrievalFailure(content_type.value, reason)
                self._logger.warning("retrieval.partial_failure", content_type=content_type.value, error=str(failure))
                PipelineMetrics.partial_failures.labels(content_type=content_type.value).inc()
                hits_by_type[content_type] = []
                failed.append(content_type)

            resolved_context = await self._resolve_user_context(context_source, query.user_id, scope)
        finally:
            if context_source is not user_context and isinstance(context_source, asyncio.Future):
                context_source.cancel()

        by_type = {
            content_type: score_hits(
                hits,
                user_context=resolved_context,
                weights=self._config.weights,
                threshold=query.similarity_threshold,
                similarity_discount=discount,
            )
            for content_type, hits in hits_by_type.items()
        }

        ranked = cap_per_type(dedupe_across_types(by_type), query.max_results)
        ranked, tokens = enforce_token_ceiling(ranked, self._config.max_context_tokens)

        result = RetrievalResult(
            by_type=ranked,
            total_tokens_estimate=tokens,
            query_embedding=embedding,
            failed_types=tuple(failed),
        )
        kept = result.items()
        PipelineMetrics.observe_retrieval(
            time.perf_counter() - start,
            len(kept),
            (entry.relevance_score for entry in kept),
        )
        self._logger.info(
            "retrieval.complete",
            user_id=query.user_id,
            items=len(kept),
            tokens=tokens,
            failed_types=[content_type.value for content_type in failed],
            degraded=result.degraded,
        )
        return result

    async def _resolve_embedding(self, query: RetrievalQuery, scope: RequestScope) -> EmbeddingVector:
        if query.query_embedding is not None:
            return query.query_embedding
        task = asyncio.ensure_future(self._orchestrator.embed(query.query_text, urgency=Urgency.HIGH))
        done = await scope.gather_partial([task])
        if task not in done or task.cancelled():
            raise RequestCancelled("request ended before the query was embedded")
        return task.result()

    @staticmethod
    def _share(user_context: UserContextSource) -> UserContext | asyncio.Future | None:
        if user_context is None or isinstance(user_context, UserContext):
            return user_context
        if inspect.isawaitable(user_context):
            return asyncio.ensure_future(user_context)
        raise TypeError(f"Unsupported user context source: {type(user_context).__name__}")

    async def _resolve_user_context(
        self,
        context_source: UserContext | asyncio.Future | None,
        user_id: str,
        scope: RequestScope,
    ) -> UserContext | None:
        if not isinstance(context_source, asyncio.Future):
            return context_source
        try:
            # shielded so giving up here leaves the shared profile fetch to its owner
            return await scope.run(asyncio.shield(context_source))
        except (asyncio.TimeoutError, RequestCancelled):
            self._logger.warning("retrieval.user_context_unavailable", user_id=user_id)
            return UserContext.empty(user_id)

    async def _search_type(
        self,
        content_type: ContentType,
        query: RetrievalQuery,
        embedding: EmbeddingVector,
    ) -> list[SearchHit]:
        return list(
            await self._search.search(
                content_type,
                embedding,
                query.similarity_threshold,
                query.max_results,
                self._filters(content_type, query),
            )
        )

    @staticmethod
    def _filters(content_type: ContentType, query: RetrievalQuery) -> dict[str, Any] | None:
        if content_type is not ContentType.CHAT_HISTORY:
            return None
        return {
            "user_id": query.user_id,
            "since": utcnow() - timedelta(hours=query.time_window_hours),
        }
