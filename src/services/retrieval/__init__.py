"""Similarity search over embedded fragments."""

from src.services.retrieval.retrieval_engine import RetrievalEngine, normalize_query

__all__ = ["RetrievalEngine", "normalize_query"]
