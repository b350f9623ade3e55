"""Bounded, content-addressed cache of embedding vectors."""

from __future__ import annotations

import hashlib
import re
import threading
import unicodedata
from collections import OrderedDict

from ragcontext.metrics.observability import PipelineMetrics
from ragcontext.models import EmbeddingVector

_WHITESPACE = re.compile(r"\s+")


def normalize_text(raw: str) -> str:
    """Normalization applied both to cache keys and to text sent to providers.

    Control characters are dropped, whitespace is collapsed and the text is
    lowercased.
    """

    normalized = unicodedata.normalize("NFKC", raw)
    normalized = "".join(
        " " if char.isspace() else char
        for char in normalized
        if char.isspace() or unicodedata.category(char)[0] != "C"
    )
    normalized = _WHITESPACE.sub(" ", normalized)
    return normalized.strip().lower()


def text_hash(normalized_text: str) -> str:
    return hashlib.sha256(normalized_text.encode("utf-8")).hexdigest()


class EmbeddingCache:
    """Insertion-ordered cache keyed by ``(provider_id, text_hash)``.

    The oldest entry is evicted first once ``max_entries`` is reached; reads do
    not refresh an entry's position. All bookkeeping happens under a single
    lock that is never held across an ``await``.
    """

    def __init__(self, max_entries: int = 1000) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._max_entries = max_entries
        self._entries: OrderedDict[tuple[str, str], EmbeddingVector] = OrderedDict()
        self._lock = threading.Lock()

    @property
    def max_entries(self) -> int:
        return self._max_entries

    @staticmethod
    def key_for(provider_id: str, normalized_text: str) -> tuple[str, str]:
        return provider_id, text_hash(normalized_text)

    def get(self, provider_id: str, content_hash: str) -> EmbeddingVector | None:
        with self._lock:
            vector = self._entries.get((provider_id, content_hash))
        PipelineMetrics.observe_cache(vector is not None)
        return vector

    def put(self, provider_id: str, content_hash: str, vector: EmbeddingVector) -> None:
        key = (provider_id, content_hash)
        with self._lock:
            if key in self._entries:
                self._entries[key] = vector
                return
            while len(self._entries) >= self._max_entries:
                self._entries.popitem(last=False)
            self._entries[key] = vector

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries
