"""Context assembly combining profile, retrieval and recent conversation."""

from __future__ import annotations

import asyncio
import time
from typing import Sequence
from uuid import uuid4

from ragcontext.concurrency import RequestScope
from ragcontext.conversation.manager import ConversationSessionManager
from ragcontext.errors import RequestCancelled
from ragcontext.metrics.observability import bind_correlation_id, clear_correlation_id, get_logger
from ragcontext.models import (
    ChatTurn,
    ContentItem,
    ContentType,
    ContextBundle,
    DomainRecordMetadata,
    KnowledgeEntityMetadata,
    PlanMetadata,
    RetrievalQuery,
    ScoredItem,
    UserContext,
)
from ragcontext.retrieval.service import HybridRetrievalEngine
from ragcontext.services.profile import ProfileStore


def trim_turns(turns: Sequence[ChatTurn], budget: int) -> list[ChatTurn]:
    """Drop the oldest turns until the remainder fits ``budget`` tokens."""

    kept = list(turns)
    used = sum(turn.estimated_tokens for turn in kept)
    while kept and used > budget:
        used -= kept.pop(0).estimated_tokens
    return kept


class ContextAssembler:
    """Builds the per-request ``ContextBundle`` handed to the response generator."""

    def __init__(
        self,
        engine: HybridRetrievalEngine,
        sessions: ConversationSessionManager,
        profiles: ProfileStore,
        *,
        max_context_tokens: int = 3000,
        recent_turns_limit: int = 10,
        timeout_seconds: float | None = 8.0,
        default_max_results: int = 10,
        default_similarity_threshold: float = 0.7,
        default_time_window_hours: float = 24.0,
        resources: Sequence[object] = (),
    ) -> None:
        self._engine = engine
        self._sessions = sessions
        self._profiles = profiles
        self._max_context_tokens = max_context_tokens
        self._recent_turns_limit = recent_turns_limit
        self._timeout_seconds = timeout_seconds
        self._default_max_results = default_max_results
        self._default_similarity_threshold = default_similarity_threshold
        self._default_time_window_hours = default_time_window_hours
        self._resources = list(resources)
        self._logger = get_logger("context")

    @property
    def engine(self) -> HybridRetrievalEngine:
        return self._engine

    @property
    def sessions(self) -> ConversationSessionManager:
        return self._sessions

    async def assemble(
        self,
        user_id: str,
        query_text: str,
        session_id: str | None = None,
        *,
        scope: RequestScope | None = None,
        max_results: int | None = None,
        similarity_threshold: float | None = None,
        include_history: bool = True,
        include_knowledge: bool = False,
        correlation_id: str | None = None,
    ) -> ContextBundle:
        bind_correlation_id(correlation_id or uuid4().hex)
        try:
            return await self._assemble(
                user_id,
                query_text,
                session_id,
                scope=scope,
                max_results=max_results,
                similarity_threshold=similarity_threshold,
                include_history=include_history,
                include_knowledge=include_knowledge,
            )
        finally:
            clear_correlation_id()

    async def _assemble(
        self,
        user_id: str,
        query_text: str,
        session_id: str | None,
        *,
        scope: RequestScope | None,
        max_results: int | None,
        similarity_threshold: float | None,
        include_history: bool,
        include_knowledge: bool,
    ) -> ContextBundle:
        query = RetrievalQuery(
            user_id=user_id,
            query_text=query_text,
            session_id=session_id,
            max_results=max_results if max_results is not None else self._default_max_results,
            similarity_threshold=(
                similarity_threshold if similarity_threshold is not None else self._default_similarity_threshold
            ),
            include_history=include_history,
            include_knowledge=include_knowledge,
            time_window_hours=self._default_time_window_hours,
        )
        query.validate()
        scope = scope or RequestScope(self._timeout_seconds)
        start = time.perf_counter()

        profile_task = asyncio.ensure_future(self._fetch_profile(user_id, scope))
        retrieval_task = asyncio.ensure_future(self._engine.retrieve(query, user_context=profile_task, scope=scope))
        turns_task = asyncio.ensure_future(self._fetch_turns(session_id, scope))
        tasks = (profile_task, retrieval_task, turns_task)
        try:
            user_context, retrieval, turns = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        budget = max(0, self._max_context_tokens - retrieval.total_tokens_estimate)
        recent = trim_turns(turns, budget)
        estimated = retrieval.total_tokens_estimate + sum(turn.estimated_tokens for turn in recent)
        self._logger.info(
            "context.assembled",
            user_id=user_id,
            session_id=session_id,
            items=len(retrieval.items()),
            turns=len(recent),
            estimated_tokens=estimated,
            duration_seconds=time.perf_counter() - start,
        )
        return ContextBundle(
            user_context=user_context,
            retrieval=retrieval,
            recent_turns=recent,
            estimated_tokens=estimated,
        )

    async def aclose(self) -> None:
        """Release owned resources."""

        for resource in self._resources:
            closer = getattr(resource, "aclose", None)
            if closer is not None:
                await closer()
                continue
            closer = getattr(resource, "close", None)
            if callable(closer):
                closer()
        self._resources.clear()

    async def _fetch_profile(self, user_id: str, scope: RequestScope) -> UserContext:
        try:
            return await scope.run(self._profiles.get_user_context(user_id))
        except (asyncio.TimeoutError, RequestCancelled) as exc:
            self._logger.warning("context.profile_unavailable", user_id=user_id, reason=type(exc).__name__)
            return UserContext.empty(user_id)

    async def _fetch_turns(self, session_id: str | None, scope: RequestScope) -> list[ChatTurn]:
        if not session_id:
            return []
        try:
            return await scope.run(self._sessions.recent_turns(session_id, self._recent_turns_limit))
        except (asyncio.TimeoutError, RequestCancelled) as exc:
            self._logger.warning("context.turns_unavailable", session_id=session_id, reason=type(exc).__name__)
            return []


def _snippet(text: str, limit: int) -> str:
    text = " ".join(text.split())
    return text if len(text) <= limit else text[:limit].rstrip() + "..."


def _describe(index: int, item: ContentItem) -> str:
    metadata = item.metadata
    lines = [f"{index}. **{item.title or item.id}**"]
    if isinstance(metadata, DomainRecordMetadata):
        lines.append(f"   Provider: {metadata.provider or 'Unknown'}")
        lines.append(f"   Category: {metadata.category or 'General'}")
        lines.append(f"   Summary: {_snippet(item.text, 200)}")
    elif isinstance(metadata, PlanMetadata):
        lines.append(f"   Duration: {metadata.duration or 'Flexible'}")
        lines.append(f"   Difficulty: {metadata.difficulty or 'Any'}")
        lines.append(f"   Skills: {', '.join(metadata.skills) or 'Not specified'}")
        lines.append(f"   Overview: {_snippet(item.text, 200)}")
    elif isinstance(metadata, KnowledgeEntityMetadata):
        lines.append(f"   Type: {metadata.entity_type or 'Unknown'}")
        lines.append(f"   About: {_snippet(item.text, 200)}")
    return "\n".join(lines)


_SECTION_TITLES = {
    ContentType.DOMAIN_RECORD: "Available Opportunities",
    ContentType.PLAN: "Relevant Learning Roadmaps",
    ContentType.KNOWLEDGE_ENTITY: "Related Knowledge",
}


def build_prompt_context(bundle: ContextBundle) -> str:
    """Render a bundle into markdown sections for a chat prompt."""

    sections: list[str] = []
    for content_type, title in _SECTION_TITLES.items():
        entries: Sequence[ScoredItem] = bundle.retrieval.by_type.get(content_type, ())
        if entries:
            body = "\n".join(_describe(index, entry.item) for index, entry in enumerate(entries, start=1))
            sections.append(f"## {title}:\n{body}")

    history = bundle.retrieval.by_type.get(ContentType.CHAT_HISTORY, ())
    if history:
        lines = [
            f"- {getattr(entry.item.metadata, 'role', 'user')}: {_snippet(entry.item.text, 100)}"
            for entry in history[:5]
        ]
        sections.append("## Recent Conversation Context:\n" + "\n".join(lines))

    context = bundle.user_context
    preferences = context.preferences
    profile_lines = [
        f"- Education Level: {preferences.get('education_level') or 'Not specified'}",
        f"- Career Interests: {', '.join(context.interests) or 'Not specified'}",
        f"- Learning Style: {context.learning_style}",
        f"- Current Skill Level: {context.skill_level}",
    ]
    sections.append("## User Profile:\n" + "\n".join(profile_lines))

    if context.active_goals:
        goals = [
            f"- {goal.get('title', 'Untitled goal')}: {goal.get('description') or 'No description'}"
            for goal in context.active_goals
        ]
        sections.append("## Current Goals:\n" + "\n".join(goals))

    if bundle.recent_turns:
        turns = "\n".join(f"{turn.role}: {turn.text}" for turn in bundle.recent_turns[-5:])
        sections.append(f"## Conversation History:\n{turns}")

    return "\n\n".join(sections)
