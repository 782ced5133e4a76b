"""Orchestrator for the document lifecycle: ingest -> segment -> embed -> search.

The :class:`KnowledgeService` implements the **Orchestrator pattern**: it
coordinates the store, the segmenter, the embedding pipeline and the
retrieval engine without any of them knowing about each other.  It is the
only component collaborators (CLI, other services) talk to.

Every document carries three independent status tracks:

    processing_status  -- the document as a whole
    chunking_status    -- segmentation into fragments
    embedding_status   -- vectors for those fragments

each moving ``pending -> processing -> completed | failed |
partially_completed``.  A segmentation failure stops the run before any
provider call; an embedding run that succeeds for some fragments only ends
``partially_completed`` and keeps the successful vectors.

All dependencies are injected via constructor (Dependency Injection); see
``src/main.py`` for the wiring.
"""

from __future__ import annotations

import hashlib
from datetime import timedelta
from pathlib import Path
from typing import Any

import structlog
from pydantic import ValidationError

from src.config.pipeline_config import IngestionConfig, SegmentationOptions
from src.interfaces.knowledge_store import IKnowledgeStore
from src.interfaces.text_extractor import ITextExtractor
from src.models.knowledge import (
    CleanupResult,
    Document,
    DocumentMetadata,
    ErrorRecord,
    Fragment,
    FragmentDraft,
    FragmentPage,
    FragmentPosition,
    HealthReport,
    ImportResult,
    KnowledgeExport,
    KnowledgeStatus,
    OptimizeResult,
    ProcessingStatus,
    ProcessResult,
    QueueStatus,
    SearchHit,
    SearchOptions,
    SegmentationStats,
    utc_now,
)
from src.pipeline.job_queue import JobQueue
from src.providers.extractor.plain_text_extractor import MIME_TYPES
from src.services.cache.cache_service import CacheService
from src.services.embedding.embedding_pipeline import (
    EmbeddingPipeline,
    document_embedding_status,
)
from src.services.retrieval.retrieval_engine import RetrievalEngine
from src.services.segmentation.segmenter import Segmenter
from src.utils.errors import (
    ConfigurationError,
    DocumentNotFoundError,
    InputValidationError,
    KnowledgeError,
    QueueFullError,
    SegmentationError,
)
from src.utils.similarity import is_valid_vector

logger = structlog.get_logger(logger_name=__name__)

_EXPORT_VERSION = "1"


def content_hash(text: str) -> str:
    """SHA-256 of *text*, used to skip re-ingesting identical documents."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


class KnowledgeService:
    """Coordinates ingestion, processing, maintenance and search.

    Parameters
    ----------
    store:
        Document and fragment persistence.
    segmenter:
        Splits document text into fragment drafts.
    embeddings:
        Embeds fragments; shares *queue* with this service.
    retrieval:
        Similarity search over embedded fragments.
    cache:
        Fail-soft cache, reported by :meth:`health_check`.
    queue:
        Single-worker job queue for background processing.
    extractor:
        File-to-text extractor used by :meth:`ingest_file`.
    config:
        Queueing, auto-retry and optimize parameters.
    """

    def __init__(
        self,
        store: IKnowledgeStore,
        segmenter: Segmenter,
        embeddings: EmbeddingPipeline,
        retrieval: RetrievalEngine,
        cache: CacheService,
        queue: JobQueue,
        extractor: ITextExtractor | None = None,
        config: IngestionConfig | None = None,
    ) -> None:
        self._store = store
        self._segmenter = segmenter
        self._embeddings = embeddings
        self._retrieval = retrieval
        self._cache = cache
        self._queue = queue
        self._extractor = extractor
        self._config = config or IngestionConfig()

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    async def ingest(
        self,
        text: str,
        title: str,
        filename: str = "",
        description: str = "",
        tags: list[str] | None = None,
        priority: int | None = None,
        mime_type: str = "text/plain",
        extraction_method: str = "direct",
        auto_process: bool = True,
    ) -> Document:
        """Store *text* as a new pending document and queue its processing.

        A document whose text hashes to an existing live document is not
        stored twice; the existing document is returned instead.

        Raises
        ------
        InputValidationError
            If *text* is empty or whitespace.
        """
        if not text or not text.strip():
            raise InputValidationError("Document text must not be empty", code="EMPTY_TEXT")

        digest = content_hash(text)
        existing = await self._store.find_document_by_hash(digest)
        if existing is not None:
            logger.info("duplicate_document_skipped", title=title, existing_id=existing.id)
            return existing

        document = Document(
            title=title.strip() or "Untitled",
            filename=filename,
            description=description,
            text=text,
            tags=tags or [],
            priority=priority or self._config.default_priority,
            metadata=DocumentMetadata(
                size_bytes=len(text.encode("utf-8")),
                word_count=len(text.split()),
                char_count=len(text),
                content_hash=digest,
                mime_type=mime_type,
                extraction_method=extraction_method,
            ),
        )
        await self._store.save_document(document)
        logger.info(
            "document_ingested",
            document_id=document.id,
            title=document.title,
            words=document.metadata.word_count,
            priority=document.priority,
        )

        if auto_process:
            try:
                self.queue_processing(document.id)
            except QueueFullError as exc:
                # Stays pending; process_knowledge_base() picks it up later.
                logger.warning("document_not_queued", document_id=document.id, error=str(exc))
        return document

    async def ingest_file(
        self,
        path: str | Path,
        title: str | None = None,
        description: str = "",
        tags: list[str] | None = None,
        priority: int | None = None,
        auto_process: bool = True,
    ) -> Document:
        """Extract a file's text and ingest it."""
        if self._extractor is None:
            raise ConfigurationError("No text extractor configured")
        file_path = Path(path)
        text = await self._extractor.extract(file_path)
        return await self.ingest(
            text,
            title=title or file_path.stem.replace("_", " ").replace("-", " "),
            filename=file_path.name,
            description=description,
            tags=tags,
            priority=priority,
            mime_type=MIME_TYPES.get(file_path.suffix.lower(), "text/plain"),
            extraction_method=self._extractor.get_provider_name(),
            auto_process=auto_process,
        )

    async def ingest_directory(
        self,
        dir_path: str | Path,
        recursive: bool = False,
        priority: int | None = None,
        auto_process: bool = True,
    ) -> list[Document]:
        """Ingest every supported file in *dir_path*.

        Files are taken in name order.  A file that fails extraction is
        logged and skipped; the rest of the directory still loads.
        Documents default to the auto-load priority.
        """
        if self._extractor is None:
            raise ConfigurationError("No text extractor configured")
        path = Path(dir_path)
        if not path.is_dir():
            raise InputValidationError(f"Not a directory: {dir_path}")

        pattern = "**/*" if recursive else "*"
        files = sorted(p for p in path.glob(pattern) if p.is_file() and self._extractor.supports(p))
        documents: list[Document] = []
        for fp in files:
            try:
                documents.append(
                    await self.ingest_file(
                        fp,
                        priority=priority or self._config.auto_load_priority,
                        auto_process=auto_process,
                    )
                )
            except KnowledgeError as exc:
                logger.warning("file_ingestion_failed", file=str(fp), code=exc.code, error=str(exc))

        logger.info(
            "directory_ingestion_complete",
            dir_path=str(path),
            files_found=len(files),
            documents=len(documents),
        )
        return documents

    def queue_processing(self, document_id: str, overwrite: bool = False) -> bool:
        """Schedule :meth:`process` on the shared job queue."""
        return self._queue.enqueue(
            "process_document",
            lambda: self.process(document_id, overwrite=overwrite),
            key=f"process:{document_id}",
            document_id=document_id,
        )

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def process(
        self,
        document_id: str,
        options: SegmentationOptions | None = None,
        overwrite: bool = False,
    ) -> ProcessResult:
        """Segment (if needed) and embed one document.

        Segmentation runs when the document has no completed chunking yet.
        Embedding covers fragments that are not ``completed``, or all of
        them when *overwrite* is set.
        """
        document = await self._require_document(document_id)
        document = await self._update_document(
            document, processing_status=ProcessingStatus.PROCESSING, error=None
        )

        created = 0
        rejected = 0
        if document.chunking_status != ProcessingStatus.COMPLETED or document.fragment_count == 0:
            try:
                created, rejected = await self._segment_document(document, options)
            except SegmentationError as exc:
                error = ErrorRecord(message=str(exc), code=exc.code)
                document = await self._update_document(
                    await self._require_document(document_id),
                    chunking_status=ProcessingStatus.FAILED,
                    processing_status=ProcessingStatus.FAILED,
                    error=error,
                )
                logger.error("document_segmentation_failed", document_id=document_id, error=str(exc))
                return self._result(document, error=error)

        try:
            run = await self._embeddings.process_document_embeddings(document_id, overwrite=overwrite)
        except KnowledgeError as exc:
            error = ErrorRecord(message=str(exc), code=exc.code)
            document = await self._update_document(
                await self._require_document(document_id),
                embedding_status=ProcessingStatus.FAILED,
                processing_status=ProcessingStatus.FAILED,
                error=error,
            )
            logger.error("document_embedding_failed", document_id=document_id, error=str(exc))
            return self._result(document, created=created, rejected=rejected, error=error)

        document = await self._require_document(document_id)
        final_status = run.status
        error = document.error if final_status == ProcessingStatus.FAILED else None
        document = await self._update_document(document, processing_status=final_status, error=error)
        if run.succeeded:
            await self._retrieval.invalidate_cache()

        logger.info(
            "document_processed",
            document_id=document_id,
            status=final_status.value,
            fragments_created=created,
            fragments_rejected=rejected,
            embedded=run.succeeded,
            failed=run.failed,
        )
        return self._result(
            document,
            created=created,
            rejected=rejected,
            embedded=run.succeeded,
            failed=run.failed,
            error=error,
        )

    async def _segment_document(
        self,
        document: Document,
        options: SegmentationOptions | None,
    ) -> tuple[int, int]:
        opts = options or self._segmenter.options
        await self._store.delete_fragments_for_document(document.id)
        document = await self._update_document(
            document, chunking_status=ProcessingStatus.PROCESSING, fragment_count=0
        )

        drafts = self._segmenter.segment(document.text, opts)
        accepted, rejected = self._segmenter.filter_valid(drafts, opts)
        if not accepted:
            raise SegmentationError(
                f"No fragment within {opts.min_fragment_size}-{opts.max_fragment_size} characters"
            )

        fragments = self._link_fragments(document, accepted)
        await self._store.add_fragments(fragments)
        await self._update_document(
            document,
            chunking_status=ProcessingStatus.COMPLETED,
            embedding_status=ProcessingStatus.PENDING,
            fragment_count=len(fragments),
        )
        logger.info(
            "document_segmented",
            document_id=document.id,
            method=opts.method.value,
            fragments=len(fragments),
            rejected=len(rejected),
        )
        return len(fragments), len(rejected)

    @staticmethod
    def _link_fragments(document: Document, drafts: list[FragmentDraft]) -> list[Fragment]:
        fragments = [
            Fragment(
                document_id=document.id,
                index=i,
                content=draft.content,
                position=FragmentPosition(start_index=draft.start_index, end_index=draft.end_index),
                metadata=draft.metadata,
                processing_status=ProcessingStatus.COMPLETED,
                priority=document.priority,
            )
            for i, draft in enumerate(drafts)
        ]
        linked: list[Fragment] = []
        for i, fragment in enumerate(fragments):
            linked.append(
                fragment.model_copy(
                    update={
                        "previous_id": fragments[i - 1].id if i > 0 else None,
                        "next_id": fragments[i + 1].id if i + 1 < len(fragments) else None,
                    }
                )
            )
        return linked

    async def rechunk(
        self,
        document_id: str,
        options: SegmentationOptions | None = None,
    ) -> ProcessResult:
        """Drop a document's fragments and process it again from scratch."""
        document = await self._require_document(document_id)
        removed = await self._store.delete_fragments_for_document(document_id)
        await self._update_document(
            document,
            chunking_status=ProcessingStatus.PENDING,
            embedding_status=ProcessingStatus.PENDING,
            fragment_count=0,
        )
        await self._retrieval.invalidate_cache()
        logger.info("document_rechunk_started", document_id=document_id, fragments_removed=removed)
        return await self.process(document_id, options=options)

    async def reprocess(
        self,
        document_id: str,
        rechunk: bool = True,
        reembed: bool = True,
        options: SegmentationOptions | None = None,
    ) -> ProcessResult:
        """Re-run a document.

        ``rechunk`` rebuilds the fragments (and so re-embeds them);
        ``reembed`` alone keeps the fragments and replaces every vector;
        neither only retries what is pending or failed.
        """
        if rechunk:
            return await self.rechunk(document_id, options=options)
        return await self.process(document_id, overwrite=reembed)

    async def process_knowledge_base(self, reprocess: bool = False) -> list[ProcessResult]:
        """Process every pending document (or every document) by priority."""
        statuses = None if reprocess else [ProcessingStatus.PENDING]
        documents = await self._store.list_documents(processing_statuses=statuses)
        results: list[ProcessResult] = []
        for document in documents:
            if reprocess:
                results.append(await self.reprocess(document.id))
            else:
                results.append(await self.process(document.id))
        logger.info(
            "knowledge_base_processed",
            documents=len(results),
            completed=sum(1 for r in results if r.processing_status == ProcessingStatus.COMPLETED),
            reprocess=reprocess,
        )
        return results

    async def process_queue(self) -> int:
        return await self._queue.process_queue()

    async def wait_until_idle(self) -> None:
        """Drain queued jobs and pending statistic writes."""
        await self._queue.wait_until_idle()
        await self._retrieval.wait_for_pending_updates()

    def get_processing_status(self) -> QueueStatus:
        return self._queue.status()

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def delete_document(self, document_id: str) -> bool:
        """Soft-delete a document; its fragments disappear from search at once."""
        deleted = await self._store.soft_delete_document(document_id)
        if not deleted:
            raise DocumentNotFoundError(f"Document not found: {document_id}")
        await self._retrieval.invalidate_cache()
        logger.info("document_deleted", document_id=document_id)
        return True

    async def cleanup(self) -> CleanupResult:
        """Remove orphan fragments and revive documents failed for too long."""
        removed = await self._store.delete_orphan_fragments()
        cutoff = utc_now() - timedelta(hours=self._config.failed_retry_after_hours)
        reset = await self._store.reset_stale_failed_documents(cutoff, self._config.max_auto_retries)
        if removed:
            await self._retrieval.invalidate_cache()
        logger.info("cleanup_complete", orphaned_fragments_removed=removed, failed_documents_reset=reset)
        return CleanupResult(orphaned_fragments_removed=removed, failed_documents_reset=reset)

    async def optimize(self) -> OptimizeResult:
        """Re-chunk under-segmented documents and re-embed low-confidence fragments."""
        cfg = self._config
        candidates = await self._store.find_under_segmented_documents(
            cfg.optimize_max_fragments, cfg.optimize_min_words
        )
        options = SegmentationOptions(
            **{
                **self._segmenter.options.model_dump(),
                "target_size": cfg.optimize_target_size,
                "overlap": cfg.optimize_overlap,
            }
        )
        rechunked = 0
        for document in candidates:
            result = await self.rechunk(document.id, options=options)
            if result.chunking_status == ProcessingStatus.COMPLETED:
                rechunked += 1

        low_confidence = await self._store.list_low_confidence_fragments(cfg.confidence_floor)
        reembedded = await self._embeddings.reembed_fragments(low_confidence)
        if reembedded:
            await self._retrieval.invalidate_cache()

        logger.info(
            "optimize_complete",
            documents_rechunked=rechunked,
            fragments_reembedded=reembedded,
        )
        return OptimizeResult(documents_rechunked=rechunked, fragments_reembedded=reembedded)

    # ------------------------------------------------------------------
    # Export / import
    # ------------------------------------------------------------------

    async def export_knowledge_base(
        self,
        document_ids: list[str] | None = None,
        include_embeddings: bool = True,
    ) -> KnowledgeExport:
        documents = await self._store.list_documents()
        if document_ids is not None:
            wanted = set(document_ids)
            documents = [d for d in documents if d.id in wanted]

        fragment_dicts: list[dict[str, Any]] = []
        for document in documents:
            for fragment in await self._store.list_fragments(document.id):
                data = fragment.model_dump(mode="json")
                if not include_embeddings:
                    data["embedding"] = None
                    data["embedding_status"] = ProcessingStatus.PENDING.value
                fragment_dicts.append(data)

        logger.info("knowledge_exported", documents=len(documents), fragments=len(fragment_dicts))
        return KnowledgeExport(
            version=_EXPORT_VERSION,
            documents=[d.model_dump(mode="json") for d in documents],
            fragments=fragment_dicts,
        )

    async def import_knowledge_base(
        self,
        data: KnowledgeExport | dict[str, Any],
        overwrite: bool = False,
    ) -> ImportResult:
        """Load an export.

        Documents whose id or text already exists are skipped unless
        *overwrite*.  Vectors that don't match the configured dimensionality
        are dropped and their fragments reset to ``pending``.  Each imported
        document's statuses are then recomputed from the fragments that
        actually arrived, so anything left unembedded is picked up by
        :meth:`process_knowledge_base`.
        """
        try:
            export = data if isinstance(data, KnowledgeExport) else KnowledgeExport.model_validate(data)
        except ValidationError as exc:
            raise InputValidationError(f"Invalid knowledge export: {exc}") from exc

        imported_ids: set[str] = set()
        skipped = 0
        errors: list[str] = []

        for raw in export.documents:
            try:
                document = Document.model_validate(raw)
            except ValidationError as exc:
                errors.append(f"document {raw.get('id', '?')}: {exc.error_count()} validation errors")
                continue
            existing = await self._store.get_document(document.id, include_deleted=True)
            duplicate = await self._store.find_document_by_hash(document.metadata.content_hash)
            if not overwrite and (existing is not None or (duplicate and duplicate.id != document.id)):
                skipped += 1
                continue
            await self._store.delete_fragments_for_document(document.id)
            await self._store.save_document(document)
            imported_ids.add(document.id)

        dims = self._embeddings.config.dimensions
        for raw in export.fragments:
            if raw.get("document_id") not in imported_ids:
                continue
            try:
                fragment = Fragment.model_validate(raw)
            except ValidationError as exc:
                errors.append(f"fragment {raw.get('id', '?')}: {exc.error_count()} validation errors")
                continue
            if fragment.embedding is not None and not is_valid_vector(fragment.embedding.vector, dims):
                fragment = fragment.model_copy(
                    update={"embedding": None, "embedding_status": ProcessingStatus.PENDING}
                )
            await self._store.save_fragment(fragment)

        for document_id in imported_ids:
            await self._reconcile_imported_status(document_id)

        if imported_ids:
            await self._retrieval.invalidate_cache()
        logger.info(
            "knowledge_imported",
            imported=len(imported_ids),
            skipped=skipped,
            errors=len(errors),
        )
        return ImportResult(imported=len(imported_ids), skipped=skipped, errors=errors)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def search_relevant_fragments(
        self,
        query: str,
        options: SearchOptions | None = None,
    ) -> list[SearchHit]:
        return await self._retrieval.search(query, options)

    async def find_duplicate_fragments(
        self,
        fragment_id: str,
        threshold: float | None = None,
        limit: int = 10,
    ) -> list[SearchHit]:
        return await self._retrieval.find_duplicates(fragment_id, threshold=threshold, limit=limit)

    async def get_document(self, document_id: str) -> Document:
        return await self._require_document(document_id)

    async def get_document_fragments(
        self,
        document_id: str,
        page: int = 1,
        page_size: int = 20,
    ) -> FragmentPage:
        if page < 1 or page_size < 1:
            raise InputValidationError("page and page_size must be at least 1")
        await self._require_document(document_id)
        total = await self._store.count_fragments(document_id)
        fragments = await self._store.list_fragments(
            document_id, offset=(page - 1) * page_size, limit=page_size
        )
        return FragmentPage(
            document_id=document_id,
            page=page,
            page_size=page_size,
            total=total,
            fragments=fragments,
        )

    async def get_chunking_stats(self, document_id: str) -> SegmentationStats:
        await self._require_document(document_id)
        return Segmenter.get_stats(await self._store.list_fragments(document_id))

    async def get_knowledge_status(self) -> KnowledgeStatus:
        return KnowledgeStatus(
            documents=await self._store.count_documents_by_status("processing_status"),
            fragments=await self._store.count_fragments_by_status("processing_status"),
            embeddings=await self._store.count_fragments_by_status("embedding_status"),
            processing=self._queue.status(),
        )

    async def health_check(self) -> HealthReport:
        """Check the store, the cache and the queue.

        The store being down makes the service unhealthy; the cache being
        down only degrades it.
        """
        checks: dict[str, str] = {}
        store_ok = await self._store.ping()
        checks["store"] = "ok" if store_ok else "unreachable"
        cache_ok = await self._cache.health_check()
        checks["cache"] = "ok" if cache_ok else "unreachable"
        queue = self._queue.status()
        checks["queue"] = f"{'processing' if queue.is_processing else 'idle'} ({queue.queue_length} waiting)"

        if not store_ok:
            status = "unhealthy"
        elif not cache_ok:
            status = "degraded"
        else:
            status = "healthy"
        return HealthReport(status=status, checks=checks)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _require_document(self, document_id: str) -> Document:
        document = await self._store.get_document(document_id)
        if document is None:
            raise DocumentNotFoundError(f"Document not found: {document_id}")
        return document

    async def _reconcile_imported_status(self, document_id: str) -> None:
        document = await self._store.get_document(document_id)
        if document is None:
            return
        fragments = await self._store.list_fragments(document_id)
        embedding_status = document_embedding_status([f.embedding_status for f in fragments])
        if embedding_status == ProcessingStatus.COMPLETED:
            processing_status = ProcessingStatus.COMPLETED
        else:
            processing_status = ProcessingStatus.PENDING
            if embedding_status == ProcessingStatus.FAILED:
                embedding_status = ProcessingStatus.PENDING
        changes = {
            "processing_status": processing_status,
            "chunking_status": ProcessingStatus.COMPLETED if fragments else ProcessingStatus.PENDING,
            "embedding_status": embedding_status,
            "fragment_count": len(fragments),
        }
        if all(getattr(document, key) == value for key, value in changes.items()):
            return
        if processing_status == ProcessingStatus.PENDING:
            changes["error"] = None
        await self._update_document(document, **changes)
        logger.info(
            "imported_document_status_reset",
            document_id=document_id,
            processing_status=processing_status.value,
            embedding_status=embedding_status.value,
        )

    async def _update_document(self, document: Document, **changes: Any) -> Document:
        updated = document.model_copy(update={**changes, "updated_at": utc_now()})
        await self._store.save_document(updated)
        return updated

    @staticmethod
    def _result(
        document: Document,
        created: int = 0,
        rejected: int = 0,
        embedded: int = 0,
        failed: int = 0,
        error: ErrorRecord | None = None,
    ) -> ProcessResult:
        return ProcessResult(
            document_id=document.id,
            processing_status=document.processing_status,
            chunking_status=document.chunking_status,
            embedding_status=document.embedding_status,
            fragments_created=created,
            fragments_rejected=rejected,
            fragments_embedded=embedded,
            fragments_failed=failed,
            error=error,
        )
