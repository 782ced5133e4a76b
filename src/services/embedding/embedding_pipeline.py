"""Cache-aware, retrying batch embedder for fragments and queries.

Sits between the orchestrator/retrieval engine and an
:class:`~src.interfaces.embedding_provider.IEmbeddingProvider`.  The
provider makes exactly one upstream call per batch; this module decides
what goes into each batch, retries transient failures and keeps a bad item
from taking its neighbours down with it.

# ─── HOW ONE CALL FLOWS ────────────────────────────────────────────────
#
#   texts ──→ cache key per text (embedding:{model}:{sha256})
#     │
#     ├─ blank text ─────────────────→ item error EMPTY_TEXT
#     ├─ cache hit ──────────────────→ vector (cached=True)
#     └─ miss (deduplicated) ──→ batches of batch_size
#                                   │
#                                   ├─ RateLimit / Unavailable → backoff
#                                   │    min(base * 2^retry, max) and retry
#                                   │    the whole batch, max_retries times
#                                   ├─ ProviderAuthError → raised at once
#                                   ├─ retries exhausted → every item in
#                                   │    THIS batch fails with the code
#                                   └─ vectors → validated one by one
#                                        ├─ bad shape → INVALID_EMBEDDING
#                                        └─ ok → cache.set(ttl=24h)
#
# Outcomes come back in input order, one per text.
# ──────────────────────────────────────────────────────────────────────
"""

from __future__ import annotations

import asyncio
import hashlib
from collections import Counter
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from src.config.pipeline_config import EmbeddingConfig
from src.interfaces.embedding_provider import IEmbeddingProvider
from src.interfaces.knowledge_store import IKnowledgeStore
from src.models.knowledge import (
    EmbeddingOutcome,
    EmbeddingRunResult,
    EmbeddingStats,
    ErrorRecord,
    Fragment,
    PipelineStats,
    ProcessingStatus,
    utc_now,
)
from src.pipeline.job_queue import JobQueue
from src.services.cache.cache_service import CacheService
from src.utils.errors import (
    DocumentNotFoundError,
    EmbeddingError,
    EmbeddingValidationError,
    InputValidationError,
    KnowledgeError,
    ProviderAuthError,
)
from src.utils.similarity import is_valid_vector

logger = structlog.get_logger(logger_name=__name__)

_CACHE_PREFIX = "embedding"
_NOT_DONE = [ProcessingStatus.PENDING, ProcessingStatus.PROCESSING, ProcessingStatus.FAILED]


def embedding_cache_key(text: str, model: str) -> str:
    """Cache key for *text* embedded with *model*."""
    digest = hashlib.sha256(text.encode("utf-8")).hexdigest()
    return f"{_CACHE_PREFIX}:{model}:{digest}"


def document_embedding_status(statuses: list[ProcessingStatus]) -> ProcessingStatus:
    """Fold per-fragment embedding statuses into the document's status."""
    if not statuses:
        return ProcessingStatus.FAILED
    completed = sum(1 for s in statuses if s == ProcessingStatus.COMPLETED)
    if completed == len(statuses):
        return ProcessingStatus.COMPLETED
    if completed == 0:
        return ProcessingStatus.FAILED
    return ProcessingStatus.PARTIALLY_COMPLETED


class EmbeddingPipeline:
    """Batch embedder with caching, per-batch retries and item isolation.

    Parameters
    ----------
    provider:
        Upstream embedding API adapter.
    cache:
        Fail-soft cache; an outage only costs extra provider calls.
    store:
        Fragment persistence for the document-level operations.
    queue:
        Job queue shared with the orchestrator.
    config:
        Batch size, retry and TTL parameters.
    sleep:
        Awaitable used for backoff and inter-batch pauses.
    """

    def __init__(
        self,
        provider: IEmbeddingProvider,
        cache: CacheService,
        store: IKnowledgeStore,
        queue: JobQueue | None = None,
        config: EmbeddingConfig | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._provider = provider
        self._cache = cache
        self._store = store
        self._queue = queue or JobQueue()
        self._config = config or EmbeddingConfig()
        self._sleep = sleep

        self._provider_calls = 0
        self._retries = 0
        self._cache_hits = 0
        self._cache_misses = 0
        self._cache_writes = 0
        self._failed_items = 0

    @property
    def config(self) -> EmbeddingConfig:
        return self._config

    @property
    def model(self) -> str:
        return self._config.model

    # ------------------------------------------------------------------
    # Text-level API
    # ------------------------------------------------------------------

    async def embed(self, texts: list[str], model: str | None = None) -> list[list[float]]:
        """Embed *texts*, returning vectors in input order.

        Raises the first item failure as an exception.
        """
        outcomes = await self.embed_with_outcomes(texts, model=model)
        vectors: list[list[float]] = []
        for outcome in outcomes:
            if outcome.vector is None:
                raise self._outcome_error(outcome.error)
            vectors.append(outcome.vector)
        return vectors

    async def embed_single(self, text: str, model: str | None = None) -> list[float]:
        return (await self.embed([text], model=model))[0]

    async def embed_with_outcomes(
        self,
        texts: list[str],
        model: str | None = None,
        batch_size: int | None = None,
    ) -> list[EmbeddingOutcome]:
        """Embed *texts* and report success or failure per item.

        Raises
        ------
        ProviderAuthError
            The provider rejected the credentials or the request; retrying
            cannot help, so the caller sees it immediately.
        """
        model_name = model or self._config.model
        size = batch_size or self._config.batch_size
        outcomes: list[EmbeddingOutcome | None] = [None] * len(texts)

        # key -> positions sharing that text, in first-seen order.
        positions: dict[str, list[int]] = {}
        key_text: dict[str, str] = {}
        for i, text in enumerate(texts):
            if not text or not text.strip():
                outcomes[i] = EmbeddingOutcome(
                    error=ErrorRecord(message="Cannot embed empty text", code="EMPTY_TEXT")
                )
                self._failed_items += 1
                continue
            key = embedding_cache_key(text, model_name)
            positions.setdefault(key, []).append(i)
            key_text[key] = text

        to_compute: list[str] = []
        for key, idxs in positions.items():
            cached = await self._cache.get(key)
            if cached is not None and is_valid_vector(cached, self._config.dimensions):
                self._cache_hits += 1
                for i in idxs:
                    outcomes[i] = EmbeddingOutcome(vector=list(cached), cached=True)
            else:
                self._cache_misses += 1
                to_compute.append(key)

        batches = [to_compute[i : i + size] for i in range(0, len(to_compute), size)]
        for number, batch_keys in enumerate(batches, start=1):
            if number > 1 and self._config.inter_batch_delay > 0:
                await self._sleep(self._config.inter_batch_delay)

            batch_texts = [key_text[k] for k in batch_keys]
            try:
                vectors = await self._call_with_retry(batch_texts, model_name)
            except ProviderAuthError:
                raise
            except EmbeddingError as exc:
                logger.error(
                    "embedding_batch_failed",
                    batch=number,
                    size=len(batch_keys),
                    code=exc.code,
                    error=str(exc),
                )
                error = ErrorRecord(message=str(exc), code=exc.code)
                for key in batch_keys:
                    for i in positions[key]:
                        outcomes[i] = EmbeddingOutcome(error=error)
                        self._failed_items += 1
                continue

            for key, vector in zip(batch_keys, vectors):
                if not is_valid_vector(vector, self._config.dimensions):
                    length = len(vector) if isinstance(vector, (list, tuple)) else None
                    logger.warning(
                        "invalid_embedding_vector",
                        expected_dimensions=self._config.dimensions,
                        actual_length=length,
                    )
                    error = ErrorRecord(
                        message=(
                            f"Provider returned an invalid vector "
                            f"(expected {self._config.dimensions} finite values, got length {length})"
                        ),
                        code=EmbeddingValidationError.default_code,
                    )
                    for i in positions[key]:
                        outcomes[i] = EmbeddingOutcome(error=error)
                        self._failed_items += 1
                    continue

                clean = [float(v) for v in vector]
                if await self._cache.set(key, clean, ttl=self._config.cache_ttl):
                    self._cache_writes += 1
                for i in positions[key]:
                    outcomes[i] = EmbeddingOutcome(vector=clean)

            logger.info("embedding_batch_complete", batch=number, size=len(batch_keys), model=model_name)

        return [o for o in outcomes if o is not None]

    async def _call_with_retry(self, texts: list[str], model: str) -> list[list[float]]:
        """One provider batch with capped exponential backoff on transient errors."""
        max_retries = self._config.max_retries
        for attempt in range(max_retries + 1):
            self._provider_calls += 1
            try:
                vectors = await self._provider.embed(texts, model=model)
            except EmbeddingError as exc:
                if not exc.retryable or attempt == max_retries:
                    raise
                delay = min(
                    self._config.retry_base_delay * (2**attempt),
                    self._config.retry_max_delay,
                )
                self._retries += 1
                logger.warning(
                    "embedding_batch_retry",
                    attempt=attempt + 1,
                    max_retries=max_retries,
                    delay_s=delay,
                    code=exc.code,
                    error=str(exc),
                )
                await self._sleep(delay)
                continue
            except KnowledgeError:
                raise
            except Exception as exc:  # noqa: BLE001
                raise EmbeddingError(
                    message=f"Embedding provider call failed: {exc}",
                    provider_name=self._provider.get_provider_name(),
                ) from exc

            if len(vectors) != len(texts):
                raise EmbeddingValidationError(
                    message=f"Provider returned {len(vectors)} vectors for {len(texts)} texts",
                    provider_name=self._provider.get_provider_name(),
                )
            return vectors
        # Unreachable: the final attempt either returns or raises.
        raise EmbeddingError("Retry loop exited without a result")

    @staticmethod
    def _outcome_error(error: ErrorRecord | None) -> KnowledgeError:
        if error is None:
            return EmbeddingError("Embedding failed")
        if error.code == "EMPTY_TEXT":
            return InputValidationError(error.message, code=error.code)
        if error.code == EmbeddingValidationError.default_code:
            return EmbeddingValidationError(error.message)
        return EmbeddingError(error.message, code=error.code)

    # ------------------------------------------------------------------
    # Fragment-level API
    # ------------------------------------------------------------------

    async def process_document_embeddings(
        self,
        document_id: str,
        overwrite: bool = False,
        batch_size: int | None = None,
    ) -> EmbeddingRunResult:
        """Embed a document's fragments batch by batch.

        Only fragments not yet ``completed`` are sent unless *overwrite*.
        Each fragment is persisted as soon as its batch finishes; the
        document's ``embedding_status`` is then derived from all of its
        fragments.
        """
        document = await self._store.get_document(document_id)
        if document is None:
            raise DocumentNotFoundError(f"Document not found: {document_id}")

        statuses = None if overwrite else _NOT_DONE
        targets = await self._store.list_fragments(document_id, embedding_statuses=statuses)
        if not targets:
            status = await self._refresh_document_status(document_id)
            logger.info("embedding_skipped", document_id=document_id, status=status.value)
            return EmbeddingRunResult(document_id=document_id, status=status, skipped=True)

        await self._store.save_document(
            document.model_copy(
                update={"embedding_status": ProcessingStatus.PROCESSING, "updated_at": utc_now()}
            )
        )
        await self._store.bulk_update_embedding_status(
            [f.id for f in targets], ProcessingStatus.PROCESSING
        )

        succeeded, failed = await self._embed_fragments(targets, batch_size)
        status = await self._refresh_document_status(document_id)
        logger.info(
            "document_embeddings_complete",
            document_id=document_id,
            status=status.value,
            processed=len(targets),
            succeeded=succeeded,
            failed=failed,
        )
        return EmbeddingRunResult(
            document_id=document_id,
            status=status,
            processed=len(targets),
            succeeded=succeeded,
            failed=failed,
        )

    async def _embed_fragments(
        self,
        fragments: list[Fragment],
        batch_size: int | None = None,
    ) -> tuple[int, int]:
        size = batch_size or self._config.batch_size
        succeeded = 0
        failed = 0
        model_name = self._config.model
        batches = [fragments[i : i + size] for i in range(0, len(fragments), size)]

        for number, batch in enumerate(batches, start=1):
            if number > 1 and self._config.inter_batch_delay > 0:
                await self._sleep(self._config.inter_batch_delay)
            try:
                outcomes = await self.embed_with_outcomes(
                    [f.content for f in batch], model=model_name, batch_size=len(batch)
                )
            except ProviderAuthError as exc:
                # Nothing later can succeed either; fail the rest in place.
                remaining = [f for b in batches[number - 1 :] for f in b]
                logger.error(
                    "embedding_auth_failed",
                    code=exc.code,
                    error=str(exc),
                    fragments_failed=len(remaining),
                )
                for fragment in remaining:
                    await self._store.update_fragment_embedding(
                        fragment.with_embedding_error(str(exc), exc.code)
                    )
                    self._failed_items += 1
                return succeeded, failed + len(remaining)

            for fragment, outcome in zip(batch, outcomes):
                if outcome.vector is not None:
                    updated = fragment.with_embedding(outcome.vector, model_name)
                    succeeded += 1
                else:
                    error = outcome.error or ErrorRecord(message="Embedding failed", code="EMBEDDING_ERROR")
                    updated = fragment.with_embedding_error(error.message, error.code)
                    failed += 1
                await self._store.update_fragment_embedding(updated)
        return succeeded, failed

    async def _refresh_document_status(self, document_id: str) -> ProcessingStatus:
        fragments = await self._store.list_fragments(document_id)
        status = document_embedding_status([f.embedding_status for f in fragments])
        document = await self._store.get_document(document_id)
        if document is not None:
            error = None
            if status == ProcessingStatus.FAILED:
                error = ErrorRecord(
                    message="No fragment could be embedded", code=EmbeddingError.default_code
                )
            await self._store.save_document(
                document.model_copy(
                    update={"embedding_status": status, "error": error or document.error, "updated_at": utc_now()}
                )
            )
        return status

    async def reprocess_failed_embeddings(self, document_id: str) -> EmbeddingRunResult:
        """Reset failed fragments to ``pending`` and embed just those again."""
        failed = await self._store.list_fragments(
            document_id, embedding_statuses=[ProcessingStatus.FAILED]
        )
        reset = await self._store.bulk_update_embedding_status(
            [f.id for f in failed], ProcessingStatus.PENDING
        )
        logger.info("failed_embeddings_reset", document_id=document_id, count=reset)
        return await self.process_document_embeddings(document_id, overwrite=False)

    async def reembed_fragments(self, fragments: list[Fragment]) -> int:
        """Re-embed specific fragments regardless of status; return successes."""
        if not fragments:
            return 0
        succeeded, _ = await self._embed_fragments(fragments)
        for document_id in dict.fromkeys(f.document_id for f in fragments):
            await self._refresh_document_status(document_id)
        return succeeded

    # ------------------------------------------------------------------
    # Queue
    # ------------------------------------------------------------------

    def queue_embedding_processing(self, document_id: str, overwrite: bool = False) -> bool:
        """Schedule :meth:`process_document_embeddings` on the shared queue."""
        return self._queue.enqueue(
            "embed_document",
            lambda: self.process_document_embeddings(document_id, overwrite=overwrite),
            key=f"embed:{document_id}",
            document_id=document_id,
        )

    async def process_queue(self) -> int:
        return await self._queue.process_queue()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    async def get_embedding_stats(self, document_id: str | None = None) -> EmbeddingStats:
        if document_id is not None:
            fragments = await self._store.list_fragments(document_id)
            by_status = dict(Counter(f.embedding_status.value for f in fragments))
        else:
            by_status = await self._store.count_fragments_by_status("embedding_status")
        total = sum(by_status.values())
        completed = by_status.get(ProcessingStatus.COMPLETED.value, 0)
        return EmbeddingStats(
            total=total,
            by_status=by_status,
            completion_rate=round(completed / total, 4) if total else 0.0,
        )

    def get_model_info(self) -> dict[str, Any]:
        return {
            "provider": self._provider.get_provider_name(),
            "model": self._config.model,
            "dimensions": self._config.dimensions,
            "provider_dimensions": self._provider.get_dimension(),
            "batch_size": self._config.batch_size,
            "max_retries": self._config.max_retries,
            "cache_ttl": self._config.cache_ttl,
            "available": self._provider.is_available(),
        }

    async def clear_embedding_cache(self, pattern: str = "*") -> int:
        """Drop cached vectors whose key matches ``embedding:{pattern}``."""
        removed = await self._cache.delete_pattern(f"{_CACHE_PREFIX}:{pattern}")
        logger.info("embedding_cache_cleared", pattern=pattern, removed=removed)
        return removed

    def get_stats(self) -> PipelineStats:
        return PipelineStats(
            provider_calls=self._provider_calls,
            retries=self._retries,
            cache_hits=self._cache_hits,
            cache_misses=self._cache_misses,
            cache_writes=self._cache_writes,
            failed_items=self._failed_items,
        )
