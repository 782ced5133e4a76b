"""Abstract base class for the document/fragment store.

The store persists :class:`~src.models.knowledge.Document` and
:class:`~src.models.knowledge.Fragment` records.  It supports point
lookups, filtered scans (status, parent id, priority), soft delete, bulk
status updates and atomic usage-counter increments.  Every write touches a
single document or fragment row (or one bulk statement), so orchestrator
operations on different documents never contend.

Similarity ranking is NOT part of this contract; the retrieval engine
scans completed vectors with :meth:`IKnowledgeStore.list_embedded_fragments`
and ranks them in application code.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime

from src.models.knowledge import ContentType, Document, Fragment, ProcessingStatus


class IKnowledgeStore(ABC):
    """Contract for document and fragment persistence."""

    @abstractmethod
    async def initialize(self) -> None:
        """Create tables and indices if they do not exist (idempotent)."""

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    @abstractmethod
    async def save_document(self, document: Document) -> None:
        """Insert or fully replace *document*."""

    @abstractmethod
    async def get_document(self, document_id: str, include_deleted: bool = False) -> Document | None:
        """Point lookup; soft-deleted documents are hidden unless requested."""

    @abstractmethod
    async def get_documents(self, document_ids: list[str]) -> dict[str, Document]:
        """Batched lookup keyed by id, soft-deleted rows included.

        Callers decide whether a deleted parent disqualifies a result.
        """

    @abstractmethod
    async def find_document_by_hash(self, content_hash: str) -> Document | None:
        """Return the live document whose text has *content_hash*, if any."""

    @abstractmethod
    async def list_documents(
        self,
        processing_statuses: list[ProcessingStatus] | None = None,
        include_deleted: bool = False,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Document]:
        """Scan documents ordered by priority (high first), then oldest first."""

    @abstractmethod
    async def soft_delete_document(self, document_id: str) -> bool:
        """Set ``deleted_at``; return ``False`` if the document was missing or deleted."""

    @abstractmethod
    async def count_documents_by_status(self, field: str = "processing_status") -> dict[str, int]:
        """Histogram of live documents over one of the three status fields."""

    @abstractmethod
    async def reset_stale_failed_documents(self, failed_before: datetime, max_auto_retries: int) -> int:
        """Move failed documents whose error predates *failed_before* back to pending.

        Only documents with ``auto_retry_count < max_auto_retries`` qualify;
        the counter is incremented so each document is revived a bounded
        number of times.  Returns the number of documents reset.
        """

    @abstractmethod
    async def find_under_segmented_documents(self, max_fragments: int, min_words: int) -> list[Document]:
        """Completed documents with fewer than *max_fragments* fragments and more than *min_words* words."""

    # ------------------------------------------------------------------
    # Fragments
    # ------------------------------------------------------------------

    @abstractmethod
    async def add_fragments(self, fragments: list[Fragment]) -> None:
        """Insert a batch of new fragments."""

    @abstractmethod
    async def save_fragment(self, fragment: Fragment) -> None:
        """Insert or fully replace *fragment* (used by import)."""

    @abstractmethod
    async def update_fragment_embedding(self, fragment: Fragment) -> None:
        """Persist only the embedding, embedding status and error of *fragment*.

        Usage counters are left untouched so concurrent search statistics
        are not overwritten.
        """

    @abstractmethod
    async def get_fragment(self, fragment_id: str) -> Fragment | None:
        """Point lookup of a live fragment."""

    @abstractmethod
    async def list_fragments(
        self,
        document_id: str,
        embedding_statuses: list[ProcessingStatus] | None = None,
        offset: int = 0,
        limit: int | None = None,
    ) -> list[Fragment]:
        """Live fragments of one document in index order."""

    @abstractmethod
    async def count_fragments(
        self,
        document_id: str,
        processing_status: ProcessingStatus | None = None,
    ) -> int:
        """Number of live fragments of one document, optionally by processing status."""

    @abstractmethod
    async def delete_fragments_for_document(self, document_id: str) -> int:
        """Physically remove every fragment of a document (used by rechunk)."""

    @abstractmethod
    async def bulk_update_embedding_status(
        self,
        fragment_ids: list[str],
        status: ProcessingStatus,
    ) -> int:
        """Set ``embedding_status`` on many fragments in one statement."""

    @abstractmethod
    async def list_embedded_fragments(
        self,
        document_ids: list[str] | None = None,
        content_type: ContentType | None = None,
    ) -> list[Fragment]:
        """Live fragments with ``embedding_status = completed``, optionally filtered."""

    @abstractmethod
    async def list_low_confidence_fragments(self, confidence_floor: float) -> list[Fragment]:
        """Completed fragments whose embedding confidence is below *confidence_floor*."""

    @abstractmethod
    async def increment_fragment_usage(self, fragment_id: str, score: float, top_result: bool) -> None:
        """Atomically record one retrieval of a fragment.

        Increments ``retrieval_count``, folds *score* into the moving
        average relevance and *top_result* into the top-result frequency.
        """

    @abstractmethod
    async def increment_fragment_queries(self, fragment_id: str) -> None:
        """Atomically increment ``query_count`` for a fragment used as a query."""

    @abstractmethod
    async def count_fragments_by_status(self, field: str = "embedding_status") -> dict[str, int]:
        """Histogram of live fragments over ``processing_status`` or ``embedding_status``."""

    @abstractmethod
    async def delete_orphan_fragments(self) -> int:
        """Physically remove fragments whose parent is missing or soft-deleted."""

    @abstractmethod
    async def ping(self) -> bool:
        """Return ``True`` if the store is reachable."""

    @abstractmethod
    def get_provider_name(self) -> str:
        """Return a short identifier such as ``"sqlite_knowledge"``."""
