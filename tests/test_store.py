from __future__ import annotations

from datetime import timedelta
from uuid import uuid4

import chromadb

from ragcontext.models import ContentItem, ContentType, EmbeddingVector, utcnow
from ragcontext.retrieval.search import ChromaContentIndex


def _index() -> ChromaContentIndex:
    return ChromaContentIndex(f"test_{uuid4().hex[:8]}", client=chromadb.EphemeralClient())


def _vector(*values: float) -> EmbeddingVector:
    return EmbeddingVector(values=values, dimensions=len(values), provider_id="openai", model_id="stub", content_hash="h")


async def test_upsert_and_search_round_trip_metadata():
    index = _index()
    item = ContentItem.from_raw(
        id="sch-1",
        content_type="domain_record",
        text="Engineering scholarship",
        metadata={"title": "STEM Award", "category": "stem", "tags": ["engineering"], "deadline": "2026-12-01"},
    )
    other = ContentItem.from_raw(id="sch-2", content_type="domain_record", text="Art grant", metadata={"title": "Art"})
    await index.upsert(item, _vector(1.0, 0.0, 0.0), "hash-1")
    await index.upsert(other, _vector(0.0, 1.0, 0.0), "hash-2")

    hits = await index.search(ContentType.DOMAIN_RECORD, _vector(1.0, 0.05, 0.0), threshold=0.5, limit=5)

    assert [hit.item.id for hit in hits] == ["sch-1"]
    assert hits[0].similarity > 0.99
    assert hits[0].item.title == "STEM Award"
    assert hits[0].item.tags == ("engineering", "stem")
    assert hits[0].item.extra == {"deadline": "2026-12-01"}
    assert index.count(ContentType.DOMAIN_RECORD) == 2


async def test_search_on_empty_collection_returns_nothing():
    hits = await _index().search(ContentType.PLAN, _vector(1.0, 0.0), threshold=0.0, limit=3)
    assert hits == []


async def test_history_filters_by_user_and_since():
    index = _index()
    now = utcnow()
    turns = [
        ("t-recent", "u1", now),
        ("t-old", "u1", now - timedelta(hours=48)),
        ("t-other", "u2", now),
    ]
    for turn_id, user_id, created_at in turns:
        item = ContentItem.from_raw(
            id=turn_id,
            content_type=ContentType.CHAT_HISTORY,
            text=f"message {turn_id}",
            metadata={"user_id": user_id, "session_id": "s1", "role": "user"},
            created_at=created_at,
        )
        await index.upsert(item, _vector(1.0, 0.0), "h")

    hits = await index.search(
        ContentType.CHAT_HISTORY,
        _vector(1.0, 0.0),
        threshold=0.0,
        limit=10,
        filters={"user_id": "u1", "since": now - timedelta(hours=24)},
    )
    assert [hit.item.id for hit in hits] == ["t-recent"]


async def test_delete_removes_items():
    index = _index()
    item = ContentItem.from_raw(id="plan-1", content_type="plan", text="Roadmap", metadata={"title": "Python"})
    await index.upsert(item, _vector(0.3, 0.4), "h")
    await index.delete(ContentType.PLAN, ["plan-1"])
    assert index.count() == 0
