"""Observability helpers for ragcontext."""

from __future__ import annotations

import logging
from contextvars import ContextVar
from typing import Iterable

import structlog
from prometheus_client import Counter, Histogram

_logger_configured = False
_correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="-")


def configure_logging(level: int | str = logging.INFO) -> None:
    global _logger_configured  # noqa: PLW0603 - module-level guard
    if _logger_configured:
        return
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logging.basicConfig(level=level, format="%(message)s")
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _logger_configured = True


def bind_correlation_id(correlation_id: str) -> None:
    structlog.contextvars.bind_contextvars(correlation_id=correlation_id)
    _correlation_id_var.set(correlation_id)


def clear_correlation_id() -> None:
    structlog.contextvars.clear_contextvars()
    _correlation_id_var.set("-")


def get_correlation_id() -> str:
    return _correlation_id_var.get()


def get_logger(name: str = "ragcontext") -> structlog.BoundLogger:
    configure_logging()
    return structlog.get_logger(name)


def _clamp_score(score: float) -> float:
    if score < 0.0:
        return 0.0
    if score > 1.0:
        return 1.0
    return score


class PipelineMetrics:
    """Prometheus metrics for the context pipeline."""

    embedding_latency = Histogram(
        "ragcontext_embedding_duration_seconds",
        "Time spent in a single provider embedding call.",
        ["provider"],
        buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
    )
    provider_failures = Counter(
        "ragcontext_provider_failures_total",
        "Embedding provider calls that failed or were skipped.",
        ["provider", "reason"],
    )
    fallback_embeddings = Counter(
        "ragcontext_fallback_embeddings_total",
        "Embeddings served by the deterministic hash fallback.",
    )
    cache_lookups = Counter(
        "ragcontext_embedding_cache_lookups_total",
        "Embedding cache lookups by outcome.",
        ["outcome"],
    )
    retrieval_latency = Histogram(
        "ragcontext_retrieval_duration_seconds",
        "Time spent retrieving ranked context.",
        buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.0, 5.0),
    )
    retrieved_item_count = Histogram(
        "ragcontext_retrieved_item_count",
        "Number of items kept after ranking and budgeting.",
        buckets=(0, 1, 2, 3, 5, 8, 13, 21),
    )
    relevance_score = Histogram(
        "ragcontext_relevance_score",
        "Hybrid relevance score of retrieved items.",
        buckets=(0.0, 0.25, 0.5, 0.75, 1.0),
    )
    partial_failures = Counter(
        "ragcontext_partial_retrieval_failures_total",
        "Content-type searches that failed or timed out.",
        ["content_type"],
    )
    session_events = Counter(
        "ragcontext_session_events_total",
        "Conversation session lifecycle events.",
        ["event"],
    )

    @classmethod
    def observe_embedding(cls, provider: str, duration_seconds: float) -> None:
        cls.embedding_latency.labels(provider=provider).observe(duration_seconds)

    @classmethod
    def observe_provider_failure(cls, provider: str, reason: str) -> None:
        cls.provider_failures.labels(provider=provider, reason=reason).inc()

    @classmethod
    def observe_cache(cls, hit: bool) -> None:
        cls.cache_lookups.labels(outcome="hit" if hit else "miss").inc()

    @classmethod
    def observe_retrieval(
        cls,
        duration_seconds: float,
        item_count: int,
        scores: Iterable[float],
    ) -> None:
        cls.retrieval_latency.observe(duration_seconds)
        cls.retrieved_item_count.observe(item_count)
        for score in scores:
            cls.relevance_score.observe(_clamp_score(score))


__all__ = [
    "PipelineMetrics",
    "bind_correlation_id",
    "clear_correlation_id",
    "configure_logging",
    "get_correlation_id",
    "get_logger",
]
