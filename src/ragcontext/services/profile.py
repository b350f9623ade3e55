"""User profile collaborators."""

from __future__ import annotations

from typing import Mapping, Protocol

from ragcontext.models import UserContext


class ProfileStore(Protocol):
    """Read access to user profiles owned by an external store."""

    async def get_user_context(self, user_id: str) -> UserContext:
        """Return the user's context, or an empty context for unknown users."""


class InMemoryProfileStore:
    def __init__(self, profiles: Mapping[str, UserContext] | None = None) -> None:
        self._profiles = dict(profiles or {})

    def put(self, context: UserContext) -> None:
        self._profiles[context.user_id] = context

    async def get_user_context(self, user_id: str) -> UserContext:
        return self._profiles.get(user_id) or UserContext.empty(user_id)
