"""Utility modules for the knowledge pipeline.

- **errors** -- Domain exception hierarchy rooted at KnowledgeError; each
  stage raises its own subclass and carries an error code that is stored on
  failed fragments and documents.
- **logging** -- structlog setup with console output in development and
  JSON in production.
- **similarity** -- numpy-backed vector math (cosine, distances, top-K,
  greedy clustering) used by retrieval and duplicate detection.
"""

# -- Domain exception hierarchy --------------------------------------------
from src.utils.errors import (
    CacheError,
    ConfigurationError,
    DimensionMismatchError,
    DocumentNotFoundError,
    EmbeddingError,
    EmbeddingValidationError,
    InputValidationError,
    KnowledgeError,
    ProviderAuthError,
    ProviderUnavailableError,
    QueueFullError,
    RateLimitError,
    SegmentationError,
    StoreError,
    TextExtractionError,
)

# -- Structured logging setup ----------------------------------------------
from src.utils.logging import configure_logging, get_logger

__all__ = [
    "CacheError",
    "ConfigurationError",
    "DimensionMismatchError",
    "DocumentNotFoundError",
    "EmbeddingError",
    "EmbeddingValidationError",
    "InputValidationError",
    "KnowledgeError",
    "ProviderAuthError",
    "ProviderUnavailableError",
    "QueueFullError",
    "RateLimitError",
    "SegmentationError",
    "StoreError",
    "TextExtractionError",
    "configure_logging",
    "get_logger",
]
