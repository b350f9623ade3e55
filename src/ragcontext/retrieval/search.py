"""Vector search collaborators and the Chroma-backed content index."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, MutableMapping, Protocol, Sequence

import chromadb
from chromadb.api import ClientAPI

from ragcontext.models import ContentItem, ContentType, EmbeddingVector, SearchHit, metadata_to_dict


class VectorSearch(Protocol):
    """Similarity search over one external vector index."""

    async def search(
        self,
        content_type: ContentType,
        query_embedding: EmbeddingVector,
        threshold: float,
        limit: int,
        filters: Mapping[str, Any] | None = None,
    ) -> list[SearchHit]:
        """Return up to ``limit`` hits of ``content_type`` with similarity >= ``threshold``.

        Supported filters: ``user_id``, ``session_id`` and ``since`` (a datetime).
        """


class ContentIndex(VectorSearch, Protocol):
    """Vector search that can also be written to."""

    async def upsert(self, item: ContentItem, vector: EmbeddingVector, content_hash: str) -> None:
        """Persist ``vector`` for ``item``."""

    async def delete(self, content_type: ContentType, item_ids: Sequence[str]) -> None:
        """Remove items from the index."""


class ChromaContentIndex:
    """Chroma-backed content index with one cosine collection per content type."""

    def __init__(
        self,
        collection_prefix: str = "ragcontext",
        *,
        client: ClientAPI | None = None,
        persist_directory: str | Path | None = None,
    ) -> None:
        if client is not None:
            self._client = client
        elif persist_directory is not None:
            self._client = chromadb.PersistentClient(path=str(persist_directory))
        else:
            self._client = chromadb.EphemeralClient()
        self._collections = {
            content_type: self._client.get_or_create_collection(
                name=f"{collection_prefix}_{content_type.value}",
                metadata={"hnsw:space": "cosine"},
            )
            for content_type in ContentType
        }

    @classmethod
    def from_settings(cls, settings) -> "ChromaContentIndex":
        if settings.chroma_host:
            client = chromadb.HttpClient(
                host=settings.chroma_host,
                port=settings.chroma_port or 8000,
                ssl=settings.chroma_ssl,
            )
            return cls(settings.chroma_collection_prefix, client=client)
        return cls(settings.chroma_collection_prefix, persist_directory=settings.chroma_persist_dir)

    async def upsert(self, item: ContentItem, vector: EmbeddingVector, content_hash: str) -> None:
        collection = self._collections[item.content_type]
        await asyncio.to_thread(
            collection.upsert,
            ids=[item.id],
            documents=[item.text],
            embeddings=[list(vector.values)],
            metadatas=[self._serialize_item(item, vector, content_hash)],
        )

    async def delete(self, content_type: ContentType, item_ids: Sequence[str]) -> None:
        if not item_ids:
            return
        await asyncio.to_thread(self._collections[content_type].delete, ids=list(item_ids))

    async def search(
        self,
        content_type: ContentType,
        query_embedding: EmbeddingVector,
        threshold: float,
        limit: int,
        filters: Mapping[str, Any] | None = None,
    ) -> list[SearchHit]:
        if limit <= 0:
            return []
        return await asyncio.to_thread(self._search_sync, content_type, query_embedding, threshold, limit, filters)

    def count(self, content_type: ContentType | None = None) -> int:
        if content_type is not None:
            return int(self._collections[content_type].count())
        return sum(int(collection.count()) for collection in self._collections.values())

    def _search_sync(
        self,
        content_type: ContentType,
        query_embedding: EmbeddingVector,
        threshold: float,
        limit: int,
        filters: Mapping[str, Any] | None,
    ) -> list[SearchHit]:
        collection = self._collections[content_type]
        available = int(collection.count())
        if available == 0:
            return []
        results = collection.query(
            query_embeddings=[list(query_embedding.values)],
            n_results=min(limit, available),
            where=self._where(filters),
        )
        hits = [hit for hit in self._deserialize_results(content_type, results) if hit.similarity >= threshold]
        hits.sort(key=lambda hit: hit.similarity, reverse=True)
        return hits[:limit]

    @staticmethod
    def _where(filters: Mapping[str, Any] | None) -> dict[str, Any] | None:
        if not filters:
            return None
        clauses: list[dict[str, Any]] = []
        for key in ("user_id", "session_id"):
            value = filters.get(key)
            if value:
                clauses.append({key: str(value)})
        since = filters.get("since")
        if isinstance(since, datetime):
            clauses.append({"created_ts": {"$gte": _timestamp(since)}})
        if not clauses:
            return None
        if len(clauses) == 1:
            return clauses[0]
        return {"$and": clauses}

    def _serialize_item(self, item: ContentItem, vector: EmbeddingVector, content_hash: str) -> MutableMapping[str, Any]:
        metadata: MutableMapping[str, Any] = {
            "content_type": item.content_type.value,
            "item_metadata": self._dumps(metadata_to_dict(item.metadata)),
            "extra": self._dumps(dict(item.extra)),
            "created_ts": _timestamp(item.created_at),
            "content_hash": content_hash,
            "provider_id": vector.provider_id,
            "model_id": vector.model_id,
        }
        if item.updated_at is not None:
            metadata["updated_ts"] = _timestamp(item.updated_at)
        owner = getattr(item.metadata, "user_id", "")
        if owner:
            metadata["user_id"] = owner
        session_id = getattr(item.metadata, "session_id", "")
        if session_id:
            metadata["session_id"] = session_id
        return metadata

    def _deserialize_results(self, content_type: ContentType, results: Mapping[str, object]) -> list[SearchHit]:
        ids = self._first(results.get("ids", []))
        documents = self._first(results.get("documents", []))
        metadatas = self._first(results.get("metadatas", []))
        distances = self._first(results.get("distances", []))
        hits: list[SearchHit] = []
        if not ids or not documents or not metadatas:
            return hits
        for item_id, document, metadata, distance in zip(ids, documents, metadatas, distances or [], strict=False):
            item = self._deserialize_item(content_type, item_id, document, metadata or {})
            hits.append(SearchHit(item=item, similarity=1.0 - float(distance)))
        return hits

    def _deserialize_item(
        self,
        content_type: ContentType,
        item_id: str,
        document: str,
        metadata: Mapping[str, object],
    ) -> ContentItem:
        raw = self._loads_dict(metadata.get("item_metadata"))
        raw.update(self._loads_dict(metadata.get("extra")))
        updated_ts = metadata.get("updated_ts")
        return ContentItem.from_raw(
            id=item_id,
            content_type=content_type,
            text=document or "",
            metadata=raw,
            created_at=_from_timestamp(metadata.get("created_ts")),
            updated_at=_from_timestamp(updated_ts) if updated_ts is not None else None,
        )

    @staticmethod
    def _first(value: object) -> Iterable:
        if isinstance(value, list):
            return value[0] if value else []
        return []

    @staticmethod
    def _dumps(value: object) -> str:
        try:
            return json.dumps(value, default=str)
        except TypeError:
            return json.dumps({}, default=str)

    @staticmethod
    def _loads_dict(value: object) -> Dict[str, object]:
        if isinstance(value, str) and value:
            try:
                loaded = json.loads(value)
                if isinstance(loaded, dict):
                    return loaded
            except json.JSONDecodeError:
                return {}
        if isinstance(value, Mapping):
            return dict(value)
        return {}


def _timestamp(moment: datetime) -> float:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.timestamp()


def _from_timestamp(value: object) -> datetime:
    try:
        return datetime.fromtimestamp(float(value), tz=timezone.utc)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return datetime.now(timezone.utc)
