"""Error taxonomy shared across the context core."""

from __future__ import annotations


class RagContextError(RuntimeError):
    """Base class for errors raised by ragcontext."""


class ProviderUnavailable(RagContextError):
    """Raised by an embedding adapter on any transport, quota or response failure."""

    def __init__(self, provider_id: str, reason: str) -> None:
        super().__init__(f"{provider_id}: {reason}")
        self.provider_id = provider_id
        self.reason = reason


class AllProvidersFailed(RagContextError):
    """Every provider in the try-order failed; absorbed by the hash fallback."""

    def __init__(self, failures: dict[str, str]) -> None:
        detail = ", ".join(f"{name}={reason}" for name, reason in failures.items()) or "no providers configured"
        super().__init__(f"All embedding providers failed ({detail})")
        self.failures = failures


class PartialRetrievalFailure(RagContextError):
    """A single content-type search failed; substituted with an empty list."""

    def __init__(self, content_type: str, reason: str) -> None:
        super().__init__(f"{content_type} search failed: {reason}")
        self.content_type = content_type
        self.reason = reason


class InvalidQuery(RagContextError, ValueError):
    """Raised when a retrieval request is malformed."""


class SessionNotFound(RagContextError, LookupError):
    """Raised when a session id is unknown to the session store."""


class SessionClosed(RagContextError):
    """Raised when mutating a session that has already ended."""


class RequestCancelled(RagContextError):
    """Raised when a request is cancelled before its query vector is resolved."""
