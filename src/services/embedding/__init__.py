"""Embedding pipeline: batching, retries and caching over an embedding provider."""

from src.services.embedding.embedding_pipeline import (
    EmbeddingPipeline,
    document_embedding_status,
    embedding_cache_key,
)

__all__ = ["EmbeddingPipeline", "document_embedding_status", "embedding_cache_key"]
