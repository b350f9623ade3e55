"""Contextual enrichment of content items before they are embedded."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterable, Mapping

from ragcontext.embeddings.orchestrator import EmbeddingOrchestrator
from ragcontext.metrics.observability import get_logger
from ragcontext.models import (
    ChatHistoryMetadata,
    ContentItem,
    DomainRecordMetadata,
    EmbeddingVector,
    KnowledgeEntityMetadata,
    PlanMetadata,
    Urgency,
)

if TYPE_CHECKING:
    from ragcontext.retrieval.search import ContentIndex


@dataclass(frozen=True)
class EnrichedContent:
    text: str
    content_hash: str


@dataclass
class RefreshReport:
    """Outcome of a refresh pass over a batch of items."""

    embedded: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)


class ContextualEnricher:
    """Frames an item's narrative with its type-specific attributes.

    The framed text is what gets embedded, so two items with the same narrative
    but different titles or categories land in different places of the space.
    """

    def enrich(self, item: ContentItem) -> EnrichedContent:
        text = self._frame(item)
        return EnrichedContent(text=text, content_hash=hashlib.sha256(text.encode("utf-8")).hexdigest())

    def needs_reembedding(self, item: ContentItem, last_hash: str | None) -> bool:
        return last_hash is None or self.enrich(item).content_hash != last_hash

    @staticmethod
    def _frame(item: ContentItem) -> str:
        metadata = item.metadata
        if isinstance(metadata, DomainRecordMetadata):
            return (
                f"Scholarship: {metadata.title}\n{item.text}\n"
                f"Provider: {metadata.provider}\nCategory: {metadata.category}"
            )
        if isinstance(metadata, PlanMetadata):
            return (
                f"Learning Roadmap: {metadata.title}\n{item.text}\n"
                f"Skills: {', '.join(metadata.skills)}\nDifficulty: {metadata.difficulty}"
            )
        if isinstance(metadata, ChatHistoryMetadata):
            return f"Chat message: {item.text}"
        if isinstance(metadata, KnowledgeEntityMetadata):
            return f"Knowledge: {metadata.name}\n{item.text}\nType: {metadata.entity_type}"
        return item.text


class ContentEmbedder:
    """Embeds enriched items and keeps a content index in sync with them."""

    def __init__(self, orchestrator: EmbeddingOrchestrator, enricher: ContextualEnricher | None = None) -> None:
        self._orchestrator = orchestrator
        self._enricher = enricher or ContextualEnricher()
        self._logger = get_logger("embeddings.enrichment")

    async def embed(self, item: ContentItem) -> tuple[EmbeddingVector, str]:
        enriched = self._enricher.enrich(item)
        vector = await self._orchestrator.embed(
            enriched.text,
            preferred_provider=self._orchestrator.preferred_provider_for(item.content_type),
            urgency=Urgency.MEDIUM,
        )
        return vector, enriched.content_hash

    async def refresh(
        self,
        items: Iterable[ContentItem],
        known_hashes: Mapping[str, str],
        index: "ContentIndex",
    ) -> RefreshReport:
        """Re-embed items whose enriched text changed and upsert them into ``index``."""

        report = RefreshReport()
        for item in items:
            if not self._enricher.needs_reembedding(item, known_hashes.get(item.id)):
                report.skipped.append(item.id)
                continue
            try:
                vector, content_hash = await self.embed(item)
                await index.upsert(item, vector, content_hash)
            except Exception as exc:
                self._logger.warning("enrichment.refresh_failed", item_id=item.id, error=str(exc))
                report.failed[item.id] = str(exc)
                continue
            report.embedded.append(item.id)
        self._logger.info(
            "enrichment.refresh_complete",
            embedded=len(report.embedded),
            skipped=len(report.skipped),
            failed=len(report.failed),
        )
        return report
