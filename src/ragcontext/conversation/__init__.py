"""Conversation session management."""

from .manager import ConversationSessionManager, SessionStart, SessionSummary
from .store import InMemorySessionStore, SessionStore

__all__ = ["ConversationSessionManager", "InMemorySessionStore", "SessionStart", "SessionStore", "SessionSummary"]
