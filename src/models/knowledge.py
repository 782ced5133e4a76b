"""Domain models for the knowledge base: documents, fragments and results.

Defines Pydantic v2 models for the two persisted records (:class:`Document`
and :class:`Fragment`), their nested value objects, and the result types
returned by the segmenter, embedding pipeline, retrieval engine and
orchestrator.  All models use frozen config; state transitions build a new
instance with ``model_copy(update=...)`` and the store persists it as a
single-row write.

Lifecycle overview:

    1. INGEST: extracted text becomes a Document with every status
       ``pending``.
    2. SEGMENT: the Segmenter emits FragmentDraft objects; the orchestrator
       turns the valid ones into Fragment rows linked previous/next.
    3. EMBED: the EmbeddingPipeline attaches an EmbeddingInfo to each
       fragment (or an ErrorRecord when the item fails).
    4. RETRIEVE: the RetrievalEngine scores completed fragments against a
       query vector and returns SearchHit objects.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    """Timezone-aware current time; every timestamp in the store is UTC."""
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class ProcessingStatus(str, Enum):  # noqa: UP042
    """Shared state machine for the processing, chunking and embedding tracks."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIALLY_COMPLETED = "partially_completed"


class SegmentationMethod(str, Enum):  # noqa: UP042
    """Strategies supported by :class:`~src.services.segmentation.segmenter.Segmenter`."""

    FIXED = "fixed"
    SEMANTIC = "semantic"
    SENTENCE = "sentence"
    PARAGRAPH = "paragraph"


class ContentType(str, Enum):  # noqa: UP042
    """Heuristic tag describing what a fragment mostly contains."""

    TEXT = "text"
    HEADING = "heading"
    LIST = "list"
    CODE = "code"
    QUOTE = "quote"
    TABLE = "table"


# ---------------------------------------------------------------------------
# Shared value objects
# ---------------------------------------------------------------------------


class ErrorRecord(BaseModel):
    """Last failure recorded on a document or fragment."""

    model_config = ConfigDict(frozen=True)

    message: str = Field(description="Human-readable failure description.")
    code: str = Field(description="Machine-readable error code, e.g. INVALID_EMBEDDING.")
    timestamp: datetime = Field(default_factory=utc_now)
    retry_count: int = Field(default=0, ge=0, description="Failed attempts so far.")


# ---------------------------------------------------------------------------
# Document
# ---------------------------------------------------------------------------


class DocumentMetadata(BaseModel):
    """Size and provenance facts captured when a document is ingested."""

    model_config = ConfigDict(frozen=True)

    size_bytes: int = Field(default=0, ge=0)
    word_count: int = Field(default=0, ge=0)
    char_count: int = Field(default=0, ge=0)
    content_hash: str = Field(default="", description="SHA-256 of the text, used for dedup.")
    mime_type: str = Field(default="text/plain")
    extraction_method: str = Field(default="direct")


class Document(BaseModel):
    """A source document and its three independent processing tracks."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    title: str = Field(description="Display title.")
    filename: str = Field(default="", description="Original file name, if any.")
    description: str = Field(default="")
    text: str = Field(description="Extracted UTF-8 text.")
    metadata: DocumentMetadata = Field(default_factory=DocumentMetadata)
    tags: list[str] = Field(default_factory=list)
    processing_status: ProcessingStatus = ProcessingStatus.PENDING
    chunking_status: ProcessingStatus = ProcessingStatus.PENDING
    embedding_status: ProcessingStatus = ProcessingStatus.PENDING
    fragment_count: int = Field(default=0, ge=0)
    priority: int = Field(default=5, ge=1, le=10)
    error: ErrorRecord | None = None
    auto_retry_count: int = Field(
        default=0, ge=0, description="Times cleanup has revived this document from failed."
    )
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    deleted_at: datetime | None = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


# ---------------------------------------------------------------------------
# Fragment
# ---------------------------------------------------------------------------


class FragmentPosition(BaseModel):
    """Character span in the parent document's text (end exclusive)."""

    model_config = ConfigDict(frozen=True)

    start_index: int = Field(ge=0)
    end_index: int = Field(ge=0)


class FragmentMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    word_count: int = Field(default=0, ge=0)
    char_count: int = Field(default=0, ge=0)
    content_type: ContentType = ContentType.TEXT
    chunking_method: SegmentationMethod = SegmentationMethod.SEMANTIC
    unit_count: int = Field(default=1, ge=0, description="Paragraphs/sentences merged in.")
    overlap_before: int = Field(default=0, ge=0)
    overlap_after: int = Field(default=0, ge=0)


class EmbeddingInfo(BaseModel):
    """Vector attached to a fragment by the embedding pipeline."""

    model_config = ConfigDict(frozen=True)

    vector: list[float]
    model: str
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    created_at: datetime = Field(default_factory=utc_now)


class UsageStats(BaseModel):
    """Retrieval counters maintained best-effort by the retrieval engine."""

    model_config = ConfigDict(frozen=True)

    query_count: int = Field(default=0, ge=0)
    retrieval_count: int = Field(default=0, ge=0)
    avg_relevance_score: float = 0.0
    top_result_frequency: float = Field(default=0.0, ge=0.0, le=1.0)
    last_retrieved_at: datetime | None = None
    last_queried_at: datetime | None = None


class Fragment(BaseModel):
    """A bounded slice of a document; the unit of embedding and retrieval."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    document_id: str
    index: int = Field(ge=0, description="0-based ordinal within the document.")
    content: str
    position: FragmentPosition
    metadata: FragmentMetadata = Field(default_factory=FragmentMetadata)
    embedding: EmbeddingInfo | None = None
    stats: UsageStats = Field(default_factory=UsageStats)
    processing_status: ProcessingStatus = ProcessingStatus.PENDING
    embedding_status: ProcessingStatus = ProcessingStatus.PENDING
    error: ErrorRecord | None = None
    previous_id: str | None = None
    next_id: str | None = None
    priority: int = Field(default=5, ge=1, le=10)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    deleted_at: datetime | None = None

    def with_embedding(self, vector: list[float], model: str) -> Fragment:
        """Return a copy carrying *vector* with embedding_status ``completed``."""
        return self.model_copy(
            update={
                "embedding": EmbeddingInfo(vector=vector, model=model, confidence=1.0),
                "embedding_status": ProcessingStatus.COMPLETED,
                "error": None,
                "updated_at": utc_now(),
            }
        )

    def with_embedding_error(self, message: str, code: str) -> Fragment:
        """Return a copy marked ``failed`` with an incremented retry count."""
        retry_count = self.error.retry_count + 1 if self.error else 1
        return self.model_copy(
            update={
                "embedding_status": ProcessingStatus.FAILED,
                "error": ErrorRecord(message=message, code=code, retry_count=retry_count),
                "updated_at": utc_now(),
            }
        )


# ---------------------------------------------------------------------------
# Segmenter output
# ---------------------------------------------------------------------------


class FragmentDraft(BaseModel):
    """A fragment before persistence, as produced by the segmenter."""

    model_config = ConfigDict(frozen=True)

    index: int = Field(ge=0)
    content: str
    start_index: int = Field(ge=0)
    end_index: int = Field(ge=0)
    metadata: FragmentMetadata


class SegmentationStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_fragments: int = 0
    avg_fragment_size: int = 0
    avg_word_count: int = 0
    method: SegmentationMethod | None = None
    content_types: dict[str, int] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Embedding results
# ---------------------------------------------------------------------------


class EmbeddingOutcome(BaseModel):
    """Per-text result of :meth:`EmbeddingPipeline.embed_with_outcomes`."""

    model_config = ConfigDict(frozen=True)

    vector: list[float] | None = None
    error: ErrorRecord | None = None
    cached: bool = False

    @property
    def ok(self) -> bool:
        return self.vector is not None


class EmbeddingRunResult(BaseModel):
    """Summary of one document-level embedding run."""

    model_config = ConfigDict(frozen=True)

    document_id: str
    status: ProcessingStatus
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: bool = Field(default=False, description="True when nothing needed embedding.")


class EmbeddingStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    total: int = 0
    by_status: dict[str, int] = Field(default_factory=dict)
    completion_rate: float = 0.0


class PipelineStats(BaseModel):
    """Counters accumulated by an EmbeddingPipeline instance."""

    model_config = ConfigDict(frozen=True)

    provider_calls: int = 0
    retries: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    cache_writes: int = 0
    failed_items: int = 0


# ---------------------------------------------------------------------------
# Retrieval
# ---------------------------------------------------------------------------


class SearchOptions(BaseModel):
    """Per-request search parameters; ``None`` fields use RetrievalConfig defaults."""

    model_config = ConfigDict(frozen=True)

    limit: int | None = Field(default=None, ge=1, le=50)
    threshold: float | None = Field(default=None, ge=-1.0, le=1.0)
    document_ids: list[str] | None = None
    content_type: ContentType | None = None
    use_cache: bool = True


class SearchHit(BaseModel):
    """A ranked fragment enriched with its parent document's metadata."""

    model_config = ConfigDict(frozen=True)

    fragment_id: str
    document_id: str
    content: str
    similarity: float
    rank: int = Field(ge=1)
    document_title: str = ""
    document_filename: str = ""
    content_type: ContentType = ContentType.TEXT
    start_index: int = 0
    end_index: int = 0


class SearchAnalytics(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_searches: int = 0
    avg_results: float = 0.0
    top_queries: list[dict[str, Any]] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Orchestrator results
# ---------------------------------------------------------------------------


class ProcessResult(BaseModel):
    """Outcome of :meth:`KnowledgeService.process` for one document."""

    model_config = ConfigDict(frozen=True)

    document_id: str
    processing_status: ProcessingStatus
    chunking_status: ProcessingStatus
    embedding_status: ProcessingStatus
    fragments_created: int = 0
    fragments_rejected: int = 0
    fragments_embedded: int = 0
    fragments_failed: int = 0
    error: ErrorRecord | None = None


class CleanupResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    orphaned_fragments_removed: int = 0
    failed_documents_reset: int = 0


class OptimizeResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    documents_rechunked: int = 0
    fragments_reembedded: int = 0


class QueueStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    is_processing: bool = False
    queue_length: int = 0


class KnowledgeStatus(BaseModel):
    """Status histograms across the whole knowledge base."""

    model_config = ConfigDict(frozen=True)

    documents: dict[str, int] = Field(default_factory=dict)
    fragments: dict[str, int] = Field(default_factory=dict)
    embeddings: dict[str, int] = Field(default_factory=dict)
    processing: QueueStatus = Field(default_factory=QueueStatus)


class FragmentPage(BaseModel):
    model_config = ConfigDict(frozen=True)

    document_id: str
    page: int = Field(ge=1)
    page_size: int = Field(ge=1)
    total: int = Field(ge=0)
    fragments: list[Fragment] = Field(default_factory=list)

    @property
    def has_more(self) -> bool:
        return self.page * self.page_size < self.total


class KnowledgeExport(BaseModel):
    """Portable snapshot of documents and fragments."""

    model_config = ConfigDict(frozen=True)

    version: str = "1"
    exported_at: datetime = Field(default_factory=utc_now)
    documents: list[dict[str, Any]] = Field(default_factory=list)
    fragments: list[dict[str, Any]] = Field(default_factory=list)


class ImportResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    imported: int = 0
    skipped: int = 0
    errors: list[str] = Field(default_factory=list)


class HealthReport(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    checks: dict[str, str] = Field(default_factory=dict)
