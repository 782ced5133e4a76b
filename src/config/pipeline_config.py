"""Typed, validated configuration structs for each pipeline component.

Each struct is a frozen Pydantic model with documented defaults and range
checks, built once at startup by :func:`src.config.loader.load_pipeline_config`
and passed to the component constructors.  Per-call overrides (e.g. a
``rechunk`` with different sizes) construct a new struct, so invalid
combinations are rejected at the boundary and never reach the algorithms.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, model_validator

from src.models.knowledge import SegmentationMethod


class SegmentationOptions(BaseModel):
    """How the segmenter cuts document text into fragments."""

    model_config = ConfigDict(frozen=True)

    method: SegmentationMethod = Field(
        default=SegmentationMethod.SEMANTIC,
        description="Segmentation strategy: fixed, semantic, sentence or paragraph.",
    )
    target_size: int = Field(
        default=1000, ge=100, le=2000, description="Target fragment length in characters."
    )
    overlap: int = Field(
        default=200, ge=0, description="Characters shared between consecutive fragments."
    )
    min_fragment_size: int = Field(
        default=100, ge=1, description="Drafts shorter than this are rejected."
    )
    max_fragment_size: int = Field(
        default=2000, ge=100, description="Drafts longer than this are rejected."
    )

    @model_validator(mode="after")
    def _check_bounds(self) -> SegmentationOptions:
        if self.overlap >= self.target_size:
            msg = f"overlap ({self.overlap}) must be smaller than target_size ({self.target_size})"
            raise ValueError(msg)
        if self.min_fragment_size > self.max_fragment_size:
            msg = "min_fragment_size must not exceed max_fragment_size"
            raise ValueError(msg)
        if self.target_size > self.max_fragment_size:
            msg = "target_size must not exceed max_fragment_size"
            raise ValueError(msg)
        return self


class EmbeddingConfig(BaseModel):
    """Batching, retry and caching parameters for the embedding pipeline."""

    model_config = ConfigDict(frozen=True)

    model: str = Field(default="text-embedding-3-small", description="Embedding model name.")
    dimensions: int = Field(default=1536, ge=1, description="Expected vector length.")
    batch_size: int = Field(default=50, ge=1, le=2048, description="Texts per provider call.")
    max_retries: int = Field(
        default=3, ge=0, le=10, description="Retries per batch after the first attempt."
    )
    retry_base_delay: float = Field(
        default=1.0, ge=0.0, description="Backoff base in seconds (doubles per retry)."
    )
    retry_max_delay: float = Field(default=30.0, ge=0.0, description="Backoff ceiling in seconds.")
    inter_batch_delay: float = Field(
        default=0.2, ge=0.0, description="Pause between consecutive batches in seconds."
    )
    cache_ttl: int = Field(default=86400, ge=1, description="Embedding cache TTL in seconds.")


class RetrievalConfig(BaseModel):
    """Defaults for semantic search and duplicate detection."""

    model_config = ConfigDict(frozen=True)

    default_limit: int = Field(default=5, ge=1, le=50)
    default_threshold: float = Field(default=0.7, ge=-1.0, le=1.0)
    cache_ttl: int = Field(
        default=300, ge=1, description="Result cache TTL; short so new documents show up."
    )
    duplicate_threshold: float = Field(default=0.95, ge=0.0, le=1.0)
    top_result_count: int = Field(
        default=3, ge=1, description="Leading hits credited in top-result frequency."
    )
    analytics_ttl: int = Field(default=3600, ge=1)
    analytics_top_queries: int = Field(default=100, ge=1)


class CacheConfig(BaseModel):
    """Sizing for the in-process cache provider."""

    model_config = ConfigDict(frozen=True)

    max_entries: int = Field(default=10000, ge=1)
    default_ttl: int = Field(default=3600, ge=1)


class IngestionConfig(BaseModel):
    """Orchestrator parameters: queueing, auto-retry and optimize heuristics."""

    model_config = ConfigDict(frozen=True)

    queue_max_size: int = Field(default=100, ge=1)
    failed_retry_after_hours: int = Field(default=24, ge=1)
    max_auto_retries: int = Field(
        default=1, ge=0, description="How many times cleanup may revive a failed document."
    )
    default_priority: int = Field(default=5, ge=1, le=10)
    auto_load_priority: int = Field(default=8, ge=1, le=10)
    optimize_max_fragments: int = Field(
        default=5, ge=1, description="Documents with fewer fragments are rechunk candidates."
    )
    optimize_min_words: int = Field(default=1000, ge=1)
    optimize_target_size: int = Field(default=800, ge=100, le=2000)
    optimize_overlap: int = Field(default=150, ge=0)
    confidence_floor: float = Field(default=0.8, ge=0.0, le=1.0)


class PipelineConfig(BaseModel):
    """Top-level container handed to :func:`src.main.build_knowledge_service`."""

    model_config = ConfigDict(frozen=True)

    segmentation: SegmentationOptions = Field(default_factory=SegmentationOptions)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    ingestion: IngestionConfig = Field(default_factory=IngestionConfig)
