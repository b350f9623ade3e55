from __future__ import annotations

import asyncio
import gc

import pytest

from ragcontext.conversation import ConversationSessionManager, InMemorySessionStore
from ragcontext.conversation.manager import EMPTY_SESSION_SUMMARY, key_topics
from ragcontext.conversation.signals import detect_intent, extract_entities, score_sentiment
from ragcontext.embeddings.enrichment import ContentEmbedder
from ragcontext.embeddings.orchestrator import EmbeddingOrchestrator
from ragcontext.errors import SessionClosed, SessionNotFound
from ragcontext.models import ChatTurn, ContentItem, EmbeddingVector, UserContext
from ragcontext.services.profile import InMemoryProfileStore


class FailingCompleter:
    def summarize(self, turns):
        raise RuntimeError("model offline")


class BlankCompleter:
    def summarize(self, turns):
        return "   "


class RecordingIndex:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.items: list[ContentItem] = []

    async def upsert(self, item: ContentItem, vector: EmbeddingVector, content_hash: str) -> None:
        if self.fail:
            raise ConnectionError("index offline")
        self.items.append(item)


def _manager(**kwargs) -> ConversationSessionManager:
    return ConversationSessionManager(InMemorySessionStore(), **kwargs)


async def test_start_creates_active_session_with_personal_welcome():
    profiles = InMemoryProfileStore(
        {
            "u1": UserContext(
                user_id="u1",
                preferences={"name": "Ada", "career_interests": ["data science", "robotics", "law"]},
                active_goals=[{"title": "Win a scholarship"}],
            )
        }
    )
    manager = _manager(profiles=profiles)
    started = await manager.start("u1", first_message="Hello")
    session = await manager.get_session(started.session_id)
    assert session.is_active
    assert session.message_count == 0
    assert started.welcome_message.startswith("Hi Ada!")
    assert "interested in data science and robotics." in started.welcome_message
    assert "active goals" in started.welcome_message
    assert started.welcome_message.endswith("What would you like to explore today?")


async def test_three_turn_session_summary():
    manager = _manager()
    started = await manager.start("u1")
    await manager.record_turn(started.session_id, role="user", text="I need a scholarship for engineering")
    await manager.record_turn(started.session_id, role="assistant", text="Here are three engineering awards.")
    await manager.record_turn(started.session_id, role="user", text="How do I learn python?")

    session = await manager.get_session(started.session_id)
    assert session.message_count == 3

    summary = await manager.end(started.session_id)
    assert summary.summary
    assert summary.key_topics == ["scholarship", "roadmap"]
    assert summary.recommendations == [
        "Continue exploring scholarship opportunities that match your profile",
        "Start working on the roadmap tasks we discussed",
    ]
    ended = await manager.get_session(started.session_id)
    assert not ended.is_active
    assert ended.ended_at is not None


async def test_end_is_idempotent():
    manager = _manager()
    started = await manager.start("u1")
    await manager.record_turn(started.session_id, role="user", text="Any career tips?")
    first = await manager.end(started.session_id)
    ended_at = (await manager.get_session(started.session_id)).ended_at
    second = await manager.end(started.session_id)
    assert second == first
    assert (await manager.get_session(started.session_id)).ended_at == ended_at


async def test_record_after_end_raises_session_closed():
    manager = _manager()
    started = await manager.start("u1")
    await manager.end(started.session_id)
    with pytest.raises(SessionClosed):
        await manager.record_turn(started.session_id, role="user", text="one more thing")


async def test_unknown_session_raises_not_found():
    manager = _manager()
    with pytest.raises(SessionNotFound):
        await manager.record_turn("missing", role="user", text="hi")
    with pytest.raises(SessionNotFound):
        await manager.end("missing")


async def test_empty_session_summary():
    manager = _manager()
    started = await manager.start("u1")
    summary = await manager.end(started.session_id)
    assert summary.summary == EMPTY_SESSION_SUMMARY
    assert summary.key_topics == []
    assert summary.sentiment_trend == 0.0


@pytest.mark.parametrize("completer", [FailingCompleter(), BlankCompleter()])
async def test_summary_falls_back_when_completer_fails(completer):
    manager = _manager(completer=completer)
    started = await manager.start("u1")
    await manager.record_turn(started.session_id, role="user", text="Looking for a job")
    summary = await manager.end(started.session_id)
    assert summary.summary == "Session covered 1 messages with topics including: career."


async def test_recent_turns_are_newest_in_chronological_order():
    manager = _manager()
    started = await manager.start("u1")
    for text in ["one", "two", "three", "four"]:
        await manager.record_turn(started.session_id, role="user", text=text)
    recent = await manager.recent_turns(started.session_id, limit=2)
    assert [turn.text for turn in recent] == ["three", "four"]


async def test_concurrent_turns_are_all_counted():
    manager = _manager()
    started = await manager.start("u1")
    await asyncio.gather(
        *(manager.record_turn(started.session_id, role="user", text=f"message {index}") for index in range(10))
    )
    assert (await manager.get_session(started.session_id)).message_count == 10


async def test_session_locks_released_for_abandoned_sessions():
    manager = _manager()
    started = await manager.start("u1")
    await asyncio.gather(
        *(manager.record_turn(started.session_id, role="user", text=f"message {index}") for index in range(3))
    )
    gc.collect()
    assert len(manager._locks) == 0


async def test_user_turn_signals_default_to_rules():
    manager = _manager()
    started = await manager.start("u1")
    turn = await manager.record_turn(started.session_id, role="user", text="Thanks, this grant is great")
    reply = await manager.record_turn(started.session_id, role="assistant", text="Glad it helps")
    assert turn.intent == "general"
    assert turn.entities == ("scholarship",)
    assert turn.sentiment_score == pytest.approx(0.2)
    assert reply.intent is None
    assert reply.sentiment_score is None


async def test_turns_are_indexed_as_chat_history():
    index = RecordingIndex()
    manager = _manager(embedder=ContentEmbedder(EmbeddingOrchestrator([], fallback_dimensions=8)), index=index)
    started = await manager.start("u1")
    turn = await manager.record_turn(started.session_id, role="user", text="career advice please")
    assert turn.embedding_ref == f"chat_history:{turn.id}"
    assert index.items[0].metadata.session_id == started.session_id


async def test_index_failure_keeps_the_turn():
    manager = _manager(
        embedder=ContentEmbedder(EmbeddingOrchestrator([], fallback_dimensions=8)),
        index=RecordingIndex(fail=True),
    )
    started = await manager.start("u1")
    turn = await manager.record_turn(started.session_id, role="user", text="hello")
    assert turn.embedding_ref is None
    assert (await manager.get_session(started.session_id)).message_count == 1


def test_key_topics_by_frequency_then_first_appearance():
    turns = [
        ChatTurn(id=str(index), session_id="s", user_id="u", role="user", text="t", intent=intent)
        for index, intent in enumerate(["career", "roadmap", None, "roadmap", "scholarship", "career"])
    ]
    assert key_topics(turns, 5) == ["career", "roadmap", "scholarship"]
    assert key_topics(turns, 1) == ["career"]


def test_rule_based_signals():
    assert detect_intent("Any FUNDING for me?") == "scholarship"
    assert detect_intent("I want to learn rust") == "roadmap"
    assert detect_intent("job hunting") == "career"
    assert detect_intent("hello") == "general"
    assert extract_entities("internship and a training course") == ("career", "skills")
    assert score_sentiment("bad " * 20) == -1.0
    assert score_sentiment("neutral words") == 0.0
