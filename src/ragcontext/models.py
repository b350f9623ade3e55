"""Shared domain models used across the context pipeline."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Mapping, Sequence, Union

from ragcontext.errors import InvalidQuery

FALLBACK_PROVIDER_ID = "fallback-hash"
CHARS_PER_TOKEN = 4


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def estimate_tokens(text: str) -> int:
    """Rough token estimate: about four characters per token."""

    return math.ceil(len(text) / CHARS_PER_TOKEN)


class ContentType(str, Enum):
    """Category discriminant used to route retrieval and scoring."""

    DOMAIN_RECORD = "domain_record"
    PLAN = "plan"
    CHAT_HISTORY = "chat_history"
    KNOWLEDGE_ENTITY = "knowledge_entity"


class Urgency(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class EmbeddingVector:
    """Vector produced once per (text, provider) pair."""

    values: tuple[float, ...]
    dimensions: int
    provider_id: str
    model_id: str
    content_hash: str

    @property
    def is_fallback(self) -> bool:
        return self.provider_id == FALLBACK_PROVIDER_ID


@dataclass(frozen=True)
class DomainRecordMetadata:
    """Metadata of an opportunity such as a scholarship or internship."""

    title: str = ""
    provider: str = ""
    category: str = ""
    tags: tuple[str, ...] = ()


@dataclass(frozen=True)
class PlanMetadata:
    """Metadata of a learning plan (roadmap)."""

    title: str = ""
    skills: tuple[str, ...] = ()
    difficulty: str = ""
    duration: str = ""


@dataclass(frozen=True)
class ChatHistoryMetadata:
    user_id: str = ""
    session_id: str = ""
    role: str = "user"
    intent: str | None = None


@dataclass(frozen=True)
class KnowledgeEntityMetadata:
    name: str = ""
    entity_type: str = ""
    popularity: float = 0.0
    related: tuple[str, ...] = ()


ItemMetadata = Union[DomainRecordMetadata, PlanMetadata, ChatHistoryMetadata, KnowledgeEntityMetadata]

_METADATA_TYPES: Mapping[ContentType, type] = {
    ContentType.DOMAIN_RECORD: DomainRecordMetadata,
    ContentType.PLAN: PlanMetadata,
    ContentType.CHAT_HISTORY: ChatHistoryMetadata,
    ContentType.KNOWLEDGE_ENTITY: KnowledgeEntityMetadata,
}


def _as_terms(value: object) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return tuple(part.strip() for part in value.split(",") if part.strip())
    if isinstance(value, (list, tuple, set, frozenset)):
        return tuple(str(part).strip() for part in value if str(part).strip())
    return (str(value),)


def _as_float(value: object, default: float = 0.0) -> float:
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default


def parse_metadata(content_type: ContentType, raw: Mapping[str, Any] | None) -> tuple[ItemMetadata, dict[str, Any]]:
    """Coerce a raw metadata map into the typed struct for ``content_type``.

    Returns the typed metadata and the leftover keys, which callers keep as
    ``ContentItem.extra``.
    """

    data = dict(raw or {})
    if content_type is ContentType.DOMAIN_RECORD:
        metadata: ItemMetadata = DomainRecordMetadata(
            title=str(data.pop("title", "") or ""),
            provider=str(data.pop("provider", "") or ""),
            category=str(data.pop("category", "") or ""),
            tags=_as_terms(data.pop("tags", None)),
        )
    elif content_type is ContentType.PLAN:
        metadata = PlanMetadata(
            title=str(data.pop("title", "") or ""),
            skills=_as_terms(data.pop("skills", None)),
            difficulty=str(data.pop("difficulty", "") or ""),
            duration=str(data.pop("duration", "") or ""),
        )
    elif content_type is ContentType.CHAT_HISTORY:
        intent = data.pop("intent", None)
        metadata = ChatHistoryMetadata(
            user_id=str(data.pop("user_id", "") or ""),
            session_id=str(data.pop("session_id", "") or ""),
            role=str(data.pop("role", "user") or "user"),
            intent=str(intent) if intent else None,
        )
    elif content_type is ContentType.KNOWLEDGE_ENTITY:
        metadata = KnowledgeEntityMetadata(
            name=str(data.pop("name", "") or ""),
            entity_type=str(data.pop("entity_type", "") or ""),
            popularity=_as_float(data.pop("popularity", 0.0)),
            related=_as_terms(data.pop("related", None)),
        )
    else:  # pragma: no cover - exhaustive over ContentType
        raise ValueError(f"Unknown content type: {content_type}")
    return metadata, data


def metadata_to_dict(metadata: ItemMetadata) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for key, value in metadata.__dict__.items():
        values[key] = list(value) if isinstance(value, tuple) else value
    return values


@dataclass(frozen=True)
class ContentItem:
    """One retrievable unit owned by an external store."""

    id: str
    content_type: ContentType
    text: str
    metadata: ItemMetadata
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime | None = None
    extra: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        expected = _METADATA_TYPES[self.content_type]
        if not isinstance(self.metadata, expected):
            raise TypeError(
                f"{self.content_type.value} items need {expected.__name__}, got {type(self.metadata).__name__}"
            )

    @classmethod
    def from_raw(
        cls,
        *,
        id: str,
        content_type: ContentType | str,
        text: str,
        metadata: Mapping[str, Any] | None = None,
        created_at: datetime | None = None,
        updated_at: datetime | None = None,
    ) -> "ContentItem":
        kind = ContentType(content_type)
        typed, extra = parse_metadata(kind, metadata)
        return cls(
            id=id,
            content_type=kind,
            text=text,
            metadata=typed,
            created_at=created_at or utcnow(),
            updated_at=updated_at,
            extra=extra,
        )

    @property
    def last_modified(self) -> datetime:
        return self.updated_at or self.created_at

    @property
    def title(self) -> str:
        metadata = self.metadata
        if isinstance(metadata, (DomainRecordMetadata, PlanMetadata)):
            return metadata.title
        if isinstance(metadata, KnowledgeEntityMetadata):
            return metadata.name
        return ""

    @property
    def tags(self) -> tuple[str, ...]:
        """Attribute terms matched against the user's skills and interests."""

        metadata = self.metadata
        if isinstance(metadata, DomainRecordMetadata):
            return metadata.tags + ((metadata.category,) if metadata.category else ())
        if isinstance(metadata, PlanMetadata):
            return metadata.skills
        if isinstance(metadata, KnowledgeEntityMetadata):
            return metadata.related + ((metadata.entity_type,) if metadata.entity_type else ())
        return ()


@dataclass(frozen=True)
class SearchHit:
    """Item returned by a vector similarity search."""

    item: ContentItem
    similarity: float


@dataclass(frozen=True)
class HybridWeights:
    semantic: float = 0.4
    context: float = 0.4
    recency: float = 0.2

    def __post_init__(self) -> None:
        parts = (self.semantic, self.context, self.recency)
        if any(part < 0 for part in parts):
            raise ValueError("hybrid weights must be non-negative")
        if abs(sum(parts) - 1.0) > 1e-6:
            raise ValueError(f"hybrid weights must sum to 1.0, got {sum(parts):.4f}")


@dataclass(frozen=True)
class ScoredItem:
    """Item with its component scores; ``relevance_score`` is always derived.

    Use ``dataclasses.replace`` to change a component score so the combined
    score is recomputed.
    """

    item: ContentItem
    similarity: float
    context_score: float = 0.0
    recency_score: float = 0.0
    weights: HybridWeights = field(default_factory=HybridWeights)
    relevance_score: float = field(init=False)

    def __post_init__(self) -> None:
        score = (
            self.similarity * self.weights.semantic
            + self.context_score * self.weights.context
            + self.recency_score * self.weights.recency
        )
        object.__setattr__(self, "relevance_score", score)

    @property
    def estimated_tokens(self) -> int:
        return estimate_tokens(self.item.text)


@dataclass(frozen=True)
class RetrievalQuery:
    """Per-request retrieval parameters."""

    user_id: str
    query_text: str
    session_id: str | None = None
    query_embedding: EmbeddingVector | None = None
    max_results: int = 10
    similarity_threshold: float = 0.7
    include_history: bool = True
    include_knowledge: bool = False
    time_window_hours: float = 24.0

    def validate(self) -> None:
        if not self.user_id:
            raise InvalidQuery("user_id is required")
        if not self.query_text.strip() and self.query_embedding is None:
            raise InvalidQuery("query_text must not be empty")
        if isinstance(self.max_results, bool) or not isinstance(self.max_results, int) or self.max_results <= 0:
            raise InvalidQuery(f"max_results must be a positive integer, got {self.max_results!r}")
        if not 0.0 <= self.similarity_threshold <= 1.0:
            raise InvalidQuery(f"similarity_threshold must be within [0, 1], got {self.similarity_threshold!r}")
        if self.time_window_hours <= 0:
            raise InvalidQuery(f"time_window_hours must be positive, got {self.time_window_hours!r}")

    @property
    def content_types(self) -> tuple[ContentType, ...]:
        types = [ContentType.DOMAIN_RECORD, ContentType.PLAN]
        if self.include_history:
            types.append(ContentType.CHAT_HISTORY)
        if self.include_knowledge:
            types.append(ContentType.KNOWLEDGE_ENTITY)
        return tuple(types)


@dataclass(frozen=True)
class RetrievalResult:
    by_type: Mapping[ContentType, Sequence[ScoredItem]]
    total_tokens_estimate: int
    query_embedding: EmbeddingVector | None = None
    failed_types: tuple[ContentType, ...] = ()

    @property
    def degraded(self) -> bool:
        return self.query_embedding is not None and self.query_embedding.is_fallback

    def items(self) -> list[ScoredItem]:
        """All kept items, highest relevance first."""

        merged = [scored for group in self.by_type.values() for scored in group]
        return sorted(merged, key=lambda scored: scored.relevance_score, reverse=True)


@dataclass
class ConversationSession:
    """Session record; mutated only by the session manager through its store."""

    session_id: str
    user_id: str
    started_at: datetime = field(default_factory=utcnow)
    ended_at: datetime | None = None
    is_active: bool = True
    message_count: int = 0
    summary: str | None = None
    key_topics: list[str] = field(default_factory=list)
    sentiment_trend: float = 0.0
    title: str | None = None


@dataclass(frozen=True)
class ChatTurn:
    id: str
    session_id: str
    user_id: str
    role: Literal["user", "assistant"]
    text: str
    timestamp: datetime = field(default_factory=utcnow)
    intent: str | None = None
    entities: tuple[str, ...] = ()
    sentiment_score: float | None = None
    embedding_ref: str | None = None

    @property
    def estimated_tokens(self) -> int:
        return estimate_tokens(self.text)


@dataclass(frozen=True)
class UserContext:
    """Read-mostly snapshot of a user's profile."""

    user_id: str
    preferences: Mapping[str, Any] = field(default_factory=dict)
    active_goals: Sequence[Mapping[str, Any]] = ()
    skill_level: str = "beginner"
    career_stage: str = "student"
    learning_style: str = "mixed"

    @classmethod
    def empty(cls, user_id: str) -> "UserContext":
        return cls(user_id=user_id)

    @property
    def name(self) -> str | None:
        value = self.preferences.get("name")
        return str(value) if value else None

    @property
    def skills(self) -> tuple[str, ...]:
        return _as_terms(self.preferences.get("current_skills"))

    @property
    def interests(self) -> tuple[str, ...]:
        return _as_terms(self.preferences.get("career_interests"))

    @property
    def interest_terms(self) -> frozenset[str]:
        return frozenset(term.lower() for term in self.skills + self.interests)


@dataclass(frozen=True)
class ContextBundle:
    """Final context handed to the response generator."""

    user_context: UserContext
    retrieval: RetrievalResult
    recent_turns: Sequence[ChatTurn]
    estimated_tokens: int
