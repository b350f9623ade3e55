"""Retrieval components."""

from .search import ChromaContentIndex, ContentIndex, VectorSearch
from .service import HybridRetrievalEngine, RetrievalConfig

__all__ = ["ChromaContentIndex", "ContentIndex", "HybridRetrievalEngine", "RetrievalConfig", "VectorSearch"]
