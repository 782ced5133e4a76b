"""Knowledge pipeline domain models - re-exports all public model classes.

Import models from ``src.models`` rather than from ``src.models.knowledge``.
If you add a new model class, add it to ``__all__`` as well.
"""

from __future__ import annotations

from src.models.knowledge import (
    CleanupResult,
    ContentType,
    Document,
    DocumentMetadata,
    EmbeddingInfo,
    EmbeddingOutcome,
    EmbeddingRunResult,
    EmbeddingStats,
    ErrorRecord,
    Fragment,
    FragmentDraft,
    FragmentMetadata,
    FragmentPage,
    FragmentPosition,
    HealthReport,
    ImportResult,
    KnowledgeExport,
    KnowledgeStatus,
    OptimizeResult,
    PipelineStats,
    ProcessingStatus,
    ProcessResult,
    QueueStatus,
    SearchAnalytics,
    SearchHit,
    SearchOptions,
    SegmentationMethod,
    SegmentationStats,
    UsageStats,
)

__all__ = [
    "CleanupResult",
    "ContentType",
    "Document",
    "DocumentMetadata",
    "EmbeddingInfo",
    "EmbeddingOutcome",
    "EmbeddingRunResult",
    "EmbeddingStats",
    "ErrorRecord",
    "Fragment",
    "FragmentDraft",
    "FragmentMetadata",
    "FragmentPage",
    "FragmentPosition",
    "HealthReport",
    "ImportResult",
    "KnowledgeExport",
    "KnowledgeStatus",
    "OptimizeResult",
    "PipelineStats",
    "ProcessResult",
    "ProcessingStatus",
    "QueueStatus",
    "SearchAnalytics",
    "SearchHit",
    "SearchOptions",
    "SegmentationMethod",
    "SegmentationStats",
    "UsageStats",
]
