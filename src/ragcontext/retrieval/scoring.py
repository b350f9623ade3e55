"""Hybrid scoring, de-duplication and token budgeting of retrieved items."""

from __future__ import annotations

import math
from datetime import datetime
from typing import Iterable, Mapping, Sequence

from ragcontext.models import (
    ContentItem,
    ContentType,
    HybridWeights,
    KnowledgeEntityMetadata,
    ScoredItem,
    SearchHit,
    UserContext,
    utcnow,
)

RECENCY_HALF_DAY_HOURS = 24.0


def _clamp(value: float) -> float:
    return min(1.0, max(0.0, value))


def context_score(item: ContentItem, user_context: UserContext | None) -> float:
    """Fraction of the user's skill and interest terms present in the item's tags."""

    if item.content_type is ContentType.CHAT_HISTORY:
        return 0.0
    if isinstance(item.metadata, KnowledgeEntityMetadata):
        return _clamp(item.metadata.popularity)
    if user_context is None:
        return 0.0
    terms = user_context.interest_terms
    if not terms:
        return 0.0
    tags = {tag.lower() for tag in item.tags}
    return len(terms & tags) / len(terms)


def recency_score(item: ContentItem, now: datetime | None = None) -> float:
    now = now or utcnow()
    age_hours = max(0.0, (now - item.last_modified).total_seconds() / 3600.0)
    return math.exp(-age_hours / RECENCY_HALF_DAY_HOURS)


def score_hits(
    hits: Iterable[SearchHit],
    *,
    user_context: UserContext | None,
    weights: HybridWeights,
    threshold: float,
    similarity_discount: float = 1.0,
    now: datetime | None = None,
) -> list[ScoredItem]:
    """Score hits, dropping any whose similarity is below ``threshold``.

    ``similarity_discount`` scales the semantic component and is below 1.0
    only when the query vector came from the hash fallback.
    """

    now = now or utcnow()
    scored: list[ScoredItem] = []
    for hit in hits:
        if hit.similarity < threshold:
            continue
        scored.append(
            ScoredItem(
                item=hit.item,
                similarity=_clamp(hit.similarity * similarity_discount),
                context_score=context_score(hit.item, user_context),
                recency_score=recency_score(hit.item, now),
                weights=weights,
            )
        )
    scored.sort(key=lambda entry: entry.relevance_score, reverse=True)
    return scored


def dedupe_across_types(by_type: Mapping[ContentType, Sequence[ScoredItem]]) -> dict[ContentType, list[ScoredItem]]:
    """Keep each item id once, in the bucket where it scored highest."""

    best: dict[str, tuple[ContentType, ScoredItem]] = {}
    for content_type, entries in by_type.items():
        for entry in entries:
            current = best.get(entry.item.id)
            if current is None or entry.relevance_score > current[1].relevance_score:
                best[entry.item.id] = (content_type, entry)
    deduped: dict[ContentType, list[ScoredItem]] = {content_type: [] for content_type in by_type}
    for content_type, entry in best.values():
        deduped[content_type].append(entry)
    for entries in deduped.values():
        entries.sort(key=lambda entry: entry.relevance_score, reverse=True)
    return deduped


def cap_per_type(by_type: Mapping[ContentType, Sequence[ScoredItem]], limit: int) -> dict[ContentType, list[ScoredItem]]:
    return {content_type: list(entries[:limit]) for content_type, entries in by_type.items()}


def total_tokens(by_type: Mapping[ContentType, Sequence[ScoredItem]]) -> int:
    return sum(entry.estimated_tokens for entries in by_type.values() for entry in entries)


def enforce_token_ceiling(
    by_type: Mapping[ContentType, Sequence[ScoredItem]],
    max_tokens: int,
) -> tuple[dict[ContentType, list[ScoredItem]], int]:
    """Drop the globally lowest-scored whole items until the bundle fits ``max_tokens``."""

    kept = {content_type: list(entries) for content_type, entries in by_type.items()}
    total = total_tokens(kept)
    if total <= max_tokens:
        return kept, total
    ranked = sorted(
        ((entry.relevance_score, content_type, entry) for content_type, entries in kept.items() for entry in entries),
        key=lambda triple: triple[0],
    )
    for _, content_type, entry in ranked:
        if total <= max_tokens:
            break
        kept[content_type].remove(entry)
        total -= entry.estimated_tokens
    return kept, total
