"""Conversation session lifecycle: start, record turns, end with a summary."""

from __future__ import annotations

import asyncio
import weakref
from collections import Counter
from dataclasses import dataclass, field, replace
from typing import Callable, Literal, Sequence
from uuid import uuid4

from ragcontext.conversation.signals import detect_intent, extract_entities, score_sentiment
from ragcontext.conversation.store import SessionStore
from ragcontext.embeddings.enrichment import ContentEmbedder
from ragcontext.errors import SessionClosed, SessionNotFound
from ragcontext.metrics.observability import PipelineMetrics, get_logger
from ragcontext.models import ChatTurn, ContentItem, ContentType, ConversationSession, UserContext, utcnow
from ragcontext.retrieval.search import ContentIndex
from ragcontext.services.generation import Completer, TemplateCompleter
from ragcontext.services.profile import ProfileStore

EMPTY_SESSION_SUMMARY = "No messages found in this session."

TOPIC_RECOMMENDATIONS = {
    "scholarship": "Continue exploring scholarship opportunities that match your profile",
    "roadmap": "Start working on the roadmap tasks we discussed",
    "career": "Research the career paths we talked about",
}


@dataclass(frozen=True)
class SessionStart:
    session_id: str
    welcome_message: str


@dataclass(frozen=True)
class SessionSummary:
    summary: str
    key_topics: list[str] = field(default_factory=list)
    sentiment_trend: float = 0.0
    recommendations: list[str] = field(default_factory=list)


def welcome_message(user_context: UserContext) -> str:
    message = (
        f"Hi {user_context.name or 'there'}! I'm your opportunity coach, ready to help you discover "
        "scholarships, create learning roadmaps and guide your career journey."
    )
    interests = user_context.interests
    if interests:
        message += f" I see you're interested in {' and '.join(interests[:2])}."
    if user_context.active_goals:
        message += " I noticed you have some active goals we can work on together."
    return message + "\n\nWhat would you like to explore today?"


def key_topics(turns: Sequence[ChatTurn], limit: int) -> list[str]:
    """Non-null intents by descending frequency; ties keep first-appearance order."""

    intents = [turn.intent for turn in turns if turn.intent]
    counts = Counter(intents)
    first_seen = {intent: position for position, intent in reversed(list(enumerate(intents)))}
    ranked = sorted(counts, key=lambda intent: (-counts[intent], first_seen[intent]))
    return ranked[:limit]


def sentiment_trend(turns: Sequence[ChatTurn]) -> float:
    scores = [turn.sentiment_score for turn in turns if turn.sentiment_score is not None]
    return sum(scores) / len(scores) if scores else 0.0


def recommendations_for(topics: Sequence[str]) -> list[str]:
    return [TOPIC_RECOMMENDATIONS[topic] for topic in topics if topic in TOPIC_RECOMMENDATIONS]


def fallback_summary(turns: Sequence[ChatTurn]) -> str:
    topics = list(dict.fromkeys(turn.intent for turn in turns if turn.intent))
    return f"Session covered {len(turns)} messages with topics including: {', '.join(topics) or 'general'}."


class ConversationSessionManager:
    """Owns session state transitions.

    Mutations of one session are serialized by a per-session ``asyncio.Lock``;
    different sessions proceed independently.
    """

    def __init__(
        self,
        store: SessionStore,
        *,
        profiles: ProfileStore | None = None,
        completer: Completer | None = None,
        embedder: ContentEmbedder | None = None,
        index: ContentIndex | None = None,
        max_key_topics: int = 5,
        id_factory: Callable[[], str] = lambda: str(uuid4()),
    ) -> None:
        self._store = store
        self._profiles = profiles
        self._completer = completer or TemplateCompleter()
        self._embedder = embedder
        self._index = index
        self._max_key_topics = max_key_topics
        self._id_factory = id_factory
        # a lock lives only while some call on that session holds or awaits it
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()
        self._logger = get_logger("conversation")

    async def start(self, user_id: str, first_message: str | None = None) -> SessionStart:
        if not user_id:
            raise ValueError("user_id is required")
        session = ConversationSession(
            session_id=self._id_factory(),
            user_id=user_id,
            title=" ".join(first_message.split())[:80] if first_message else None,
        )
        await self._store.create_session(session)
        user_context = await self._profiles.get_user_context(user_id) if self._profiles else UserContext.empty(user_id)
        PipelineMetrics.session_events.labels(event="start").inc()
        self._logger.info("session.started", session_id=session.session_id, user_id=user_id)
        return SessionStart(session_id=session.session_id, welcome_message=welcome_message(user_context))

    async def record_turn(
        self,
        session_id: str,
        *,
        role: Literal["user", "assistant"],
        text: str,
        intent: str | None = None,
        entities: Sequence[str] | None = None,
        sentiment_score: float | None = None,
    ) -> ChatTurn:
        if role not in ("user", "assistant"):
            raise ValueError(f"Unsupported role: {role!r}")
        async with self._lock_for(session_id):
            session = await self._require(session_id)
            if not session.is_active:
                raise SessionClosed(f"Session {session_id} has ended")
            if role == "user":
                intent = intent or detect_intent(text)
                entities = extract_entities(text) if entities is None else entities
                sentiment_score = score_sentiment(text) if sentiment_score is None else sentiment_score
            turn = ChatTurn(
                id=self._id_factory(),
                session_id=session_id,
                user_id=session.user_id,
                role=role,
                text=text,
                timestamp=utcnow(),
                intent=intent,
                entities=tuple(entities or ()),
                sentiment_score=sentiment_score,
            )
            turn = await self._index_turn(turn)
            count = await self._store.append_turn(turn)
        PipelineMetrics.session_events.labels(event="turn").inc()
        self._logger.info("session.turn_recorded", session_id=session_id, role=role, intent=intent, message_count=count)
        return turn

    async def end(self, session_id: str) -> SessionSummary:
        async with self._lock_for(session_id):
            session = await self._require(session_id)
            if not session.is_active:
                return SessionSummary(
                    summary=session.summary or "",
                    key_topics=list(session.key_topics),
                    sentiment_trend=session.sentiment_trend,
                    recommendations=recommendations_for(session.key_topics),
                )
            turns = list(await self._store.list_turns(session_id))
            summary = await self._summarize(turns) if turns else EMPTY_SESSION_SUMMARY
            session.key_topics = key_topics(turns, self._max_key_topics)
            session.sentiment_trend = sentiment_trend(turns)
            session.summary = summary
            session.is_active = False
            session.ended_at = utcnow()
            await self._store.save_session(session)
        PipelineMetrics.session_events.labels(event="end").inc()
        self._logger.info(
            "session.ended",
            session_id=session_id,
            message_count=len(turns),
            key_topics=session.key_topics,
        )
        return SessionSummary(
            summary=summary,
            key_topics=list(session.key_topics),
            sentiment_trend=session.sentiment_trend,
            recommendations=recommendations_for(session.key_topics),
        )

    async def recent_turns(self, session_id: str, limit: int = 10) -> list[ChatTurn]:
        """Newest ``limit`` turns, returned oldest first."""

        await self._require(session_id)
        newest = await self._store.list_turns(session_id, limit, newest_first=True)
        return list(reversed(newest))

    async def get_session(self, session_id: str) -> ConversationSession:
        return await self._require(session_id)

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    async def _require(self, session_id: str) -> ConversationSession:
        session = await self._store.get_session(session_id)
        if session is None:
            raise SessionNotFound(f"Unknown session {session_id}")
        return session

    async def _summarize(self, turns: Sequence[ChatTurn]) -> str:
        try:
            summary = await asyncio.to_thread(self._completer.summarize, turns)
        except Exception as exc:
            self._logger.warning("session.summary_failed", error=str(exc))
            return fallback_summary(turns)
        if not summary or not summary.strip():
            return fallback_summary(turns)
        return summary.strip()

    async def _index_turn(self, turn: ChatTurn) -> ChatTurn:
        if self._embedder is None or self._index is None:
            return turn
        item = ContentItem.from_raw(
            id=turn.id,
            content_type=ContentType.CHAT_HISTORY,
            text=turn.text,
            metadata={
                "user_id": turn.user_id,
                "session_id": turn.session_id,
                "role": turn.role,
                "intent": turn.intent,
            },
            created_at=turn.timestamp,
        )
        try:
            vector, content_hash = await self._embedder.embed(item)
            await self._index.upsert(item, vector, content_hash)
        except Exception as exc:
            self._logger.warning("session.turn_index_failed", session_id=turn.session_id, turn_id=turn.id, error=str(exc))
            return turn
        return replace(turn, embedding_ref=f"{ContentType.CHAT_HISTORY.value}:{turn.id}")
