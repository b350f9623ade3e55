"""Session persistence collaborators."""

from __future__ import annotations

import asyncio
from dataclasses import replace
from typing import Protocol, Sequence

from ragcontext.errors import SessionNotFound
from ragcontext.models import ChatTurn, ConversationSession


class SessionStore(Protocol):
    """Protocol for conversation session persistence backends."""

    async def create_session(self, session: ConversationSession) -> None:
        """Persist a new session record."""

    async def get_session(self, session_id: str) -> ConversationSession | None:
        """Return a copy of the session or ``None`` when unknown."""

    async def save_session(self, session: ConversationSession) -> None:
        """Overwrite the stored session record."""

    async def append_turn(self, turn: ChatTurn) -> int:
        """Append ``turn`` and increment the session's message count in one step.

        Returns the new message count.
        """

    async def list_turns(
        self,
        session_id: str,
        limit: int | None = None,
        *,
        newest_first: bool = False,
    ) -> Sequence[ChatTurn]:
        """Return turns ordered by timestamp."""


class InMemorySessionStore:
    """Process-local session store used for tests and single-node deployments."""

    def __init__(self) -> None:
        self._sessions: dict[str, ConversationSession] = {}
        self._turns: dict[str, list[ChatTurn]] = {}
        self._lock = asyncio.Lock()

    async def create_session(self, session: ConversationSession) -> None:
        async with self._lock:
            if session.session_id in self._sessions:
                raise ValueError(f"Session {session.session_id} already exists")
            self._sessions[session.session_id] = replace(session, key_topics=list(session.key_topics))
            self._turns[session.session_id] = []

    async def get_session(self, session_id: str) -> ConversationSession | None:
        async with self._lock:
            session = self._sessions.get(session_id)
            return replace(session, key_topics=list(session.key_topics)) if session else None

    async def save_session(self, session: ConversationSession) -> None:
        async with self._lock:
            if session.session_id not in self._sessions:
                raise SessionNotFound(session.session_id)
            self._sessions[session.session_id] = replace(session, key_topics=list(session.key_topics))

    async def append_turn(self, turn: ChatTurn) -> int:
        async with self._lock:
            session = self._sessions.get(turn.session_id)
            if session is None:
                raise SessionNotFound(turn.session_id)
            self._turns[turn.session_id].append(turn)
            session.message_count += 1
            return session.message_count

    async def list_turns(
        self,
        session_id: str,
        limit: int | None = None,
        *,
        newest_first: bool = False,
    ) -> Sequence[ChatTurn]:
        async with self._lock:
            turns = sorted(self._turns.get(session_id, ()), key=lambda turn: turn.timestamp)
        if newest_first:
            turns.reverse()
        if limit is not None:
            turns = turns[: max(0, limit)]
        return turns
