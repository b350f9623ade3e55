from __future__ import annotations

import math
from datetime import timedelta

from ragcontext.models import ContentItem, ContentType, HybridWeights, ScoredItem, SearchHit, UserContext, utcnow
from ragcontext.retrieval.scoring import (
    context_score,
    dedupe_across_types,
    enforce_token_ceiling,
    recency_score,
    score_hits,
)


def _item(item_id: str, *, tags=(), text: str = "x" * 40, content_type: str = "domain_record", **metadata) -> ContentItem:
    if content_type == "domain_record":
        metadata.setdefault("tags", list(tags))
    return ContentItem.from_raw(id=item_id, content_type=content_type, text=text, metadata=metadata, created_at=utcnow())


def _user(**preferences) -> UserContext:
    return UserContext(user_id="u1", preferences=preferences)


def test_context_score_is_fraction_of_user_terms_matched():
    item = _item("a", tags=["Python", "Data"], category="engineering")
    user = _user(current_skills=["python"], career_interests=["engineering", "design", "law"])
    assert context_score(item, user) == 0.5


def test_context_score_for_knowledge_and_history():
    knowledge = _item("k", content_type="knowledge_entity", popularity=1.7)
    history = _item("h", content_type="chat_history", user_id="u1")
    assert context_score(knowledge, None) == 1.0
    assert context_score(history, _user(current_skills=["python"])) == 0.0


def test_context_score_without_profile_terms():
    assert context_score(_item("a", tags=["python"]), UserContext.empty("u1")) == 0.0


def test_recency_decays_by_day_and_clamps_future():
    now = utcnow()
    day_old = ContentItem.from_raw(id="d", content_type="plan", text="t", created_at=now - timedelta(hours=24))
    future = ContentItem.from_raw(id="f", content_type="plan", text="t", created_at=now + timedelta(hours=5))
    assert math.isclose(recency_score(day_old, now), math.exp(-1.0))
    assert recency_score(future, now) == 1.0


def test_recency_prefers_updated_at():
    now = utcnow()
    item = ContentItem.from_raw(
        id="u",
        content_type="plan",
        text="t",
        created_at=now - timedelta(days=30),
        updated_at=now,
    )
    assert math.isclose(recency_score(item, now), 1.0)


def test_score_hits_drops_below_threshold_and_applies_discount():
    hits = [SearchHit(_item("a"), 0.9), SearchHit(_item("b"), 0.5)]
    scored = score_hits(hits, user_context=None, weights=HybridWeights(), threshold=0.7, similarity_discount=0.5)
    assert [entry.item.id for entry in scored] == ["a"]
    assert math.isclose(scored[0].similarity, 0.45)


def test_relevance_is_weighted_sum():
    scored = ScoredItem(item=_item("a"), similarity=0.8, context_score=0.5, recency_score=1.0)
    assert math.isclose(scored.relevance_score, 0.8 * 0.4 + 0.5 * 0.4 + 1.0 * 0.2)


def test_dedupe_keeps_highest_scoring_bucket():
    shared = _item("shared")
    by_type = {
        ContentType.DOMAIN_RECORD: [ScoredItem(item=shared, similarity=0.9)],
        ContentType.PLAN: [ScoredItem(item=shared, similarity=0.75), ScoredItem(item=_item("p"), similarity=0.8)],
    }
    deduped = dedupe_across_types(by_type)
    assert [entry.item.id for entry in deduped[ContentType.DOMAIN_RECORD]] == ["shared"]
    assert [entry.item.id for entry in deduped[ContentType.PLAN]] == ["p"]


def test_token_ceiling_drops_lowest_whole_items():
    by_type = {
        ContentType.DOMAIN_RECORD: [ScoredItem(item=_item("a", text="a" * 100), similarity=0.9)],
        ContentType.PLAN: [
            ScoredItem(item=_item("b", text="b" * 100, content_type="plan"), similarity=0.8),
            ScoredItem(item=_item("c", text="c" * 100, content_type="plan"), similarity=0.7),
        ],
    }
    kept, total = enforce_token_ceiling(by_type, 50)
    assert total == 50
    assert [entry.item.id for entry in kept[ContentType.PLAN]] == ["b"]
    assert len(kept[ContentType.DOMAIN_RECORD]) == 1
