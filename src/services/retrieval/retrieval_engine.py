"""Semantic search over embedded fragments.

Scores every completed fragment (optionally narrowed by document ids and
content type) against the query vector and returns the ranked hits,
enriched with their parent document's title and filename.  Similarity
search is an application-level scan: the store only filters, the ranking
happens here with numpy via :mod:`src.utils.similarity`.

Result sets are cached for a few minutes under a key derived from the
normalised query and the effective options.  Usage statistics on the
returned fragments are written in the background; a failure there is
logged and never reaches the caller.
"""

from __future__ import annotations

import asyncio
import hashlib
import json

import structlog

from src.config.pipeline_config import RetrievalConfig
from src.interfaces.knowledge_store import IKnowledgeStore
from src.models.knowledge import (
    Fragment,
    SearchAnalytics,
    SearchHit,
    SearchOptions,
)
from src.services.cache.cache_service import CacheService
from src.services.embedding.embedding_pipeline import EmbeddingPipeline
from src.utils.errors import DocumentNotFoundError, InputValidationError
from src.utils.similarity import SimilarityMethod, top_k

logger = structlog.get_logger(logger_name=__name__)

_RESULTS_PREFIX = "search:results"
_ANALYTICS_TOTAL = "search:analytics:total"
_ANALYTICS_RESULTS = "search:analytics:results"
_ANALYTICS_QUERIES = "search:analytics:queries"


def normalize_query(query: str) -> str:
    """Lower-case and collapse whitespace."""
    return " ".join(query.lower().split())


class RetrievalEngine:
    """Ranks fragments by similarity to a query.

    Parameters
    ----------
    store:
        Source of embedded fragments and their documents.
    embeddings:
        Pipeline used to embed the query (so query vectors are cached too).
    cache:
        Fail-soft cache for result sets and analytics.
    config:
        Default limit/threshold and TTLs.
    method:
        Similarity measure; cosine unless configured otherwise.
    """

    def __init__(
        self,
        store: IKnowledgeStore,
        embeddings: EmbeddingPipeline,
        cache: CacheService,
        config: RetrievalConfig | None = None,
        method: SimilarityMethod = SimilarityMethod.COSINE,
    ) -> None:
        self._store = store
        self._embeddings = embeddings
        self._cache = cache
        self._config = config or RetrievalConfig()
        self._method = method
        self._pending: set[asyncio.Task[None]] = set()

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    async def search(self, query: str, options: SearchOptions | None = None) -> list[SearchHit]:
        """Return fragments similar to *query*, best first.

        Raises
        ------
        InputValidationError
            If *query* is empty or whitespace.
        """
        if not query or not query.strip():
            raise InputValidationError("Search query must not be empty")

        options = options or SearchOptions()
        limit = options.limit or self._config.default_limit
        threshold = options.threshold if options.threshold is not None else self._config.default_threshold
        normalized = normalize_query(query)
        cache_key = self._results_key(normalized, options, limit, threshold)

        if options.use_cache:
            cached = await self._cache.get(cache_key)
            if cached is not None:
                hits = [SearchHit.model_validate(item) for item in cached]
                logger.debug("search_cache_hit", query=normalized, results=len(hits))
                await self._record_analytics(normalized, len(hits))
                return hits

        query_vector = await self._embeddings.embed_single(query.strip())
        candidates = await self._store.list_embedded_fragments(
            document_ids=options.document_ids,
            content_type=options.content_type,
        )
        hits, matched = await self._rank(query_vector, candidates, threshold, limit)

        if options.use_cache:
            await self._cache.set(
                cache_key,
                [hit.model_dump(mode="json") for hit in hits],
                ttl=self._config.cache_ttl,
            )
        self._schedule_usage_update(hits, matched)
        await self._record_analytics(normalized, len(hits))

        logger.info(
            "search_complete",
            query=normalized,
            candidates=len(candidates),
            matched=len(matched),
            results=len(hits),
            threshold=threshold,
        )
        return hits

    async def find_duplicates(
        self,
        fragment_id: str,
        threshold: float | None = None,
        limit: int = 10,
    ) -> list[SearchHit]:
        """Fragments whose vectors are near-identical to *fragment_id*'s."""
        fragment = await self._store.get_fragment(fragment_id)
        if fragment is None:
            raise DocumentNotFoundError(
                f"Fragment not found: {fragment_id}", code="FRAGMENT_NOT_FOUND"
            )
        if fragment.embedding is None:
            raise InputValidationError(f"Fragment {fragment_id} has no embedding yet")

        cutoff = threshold if threshold is not None else self._config.duplicate_threshold
        candidates = [
            f for f in await self._store.list_embedded_fragments() if f.id != fragment_id
        ]
        hits, _ = await self._rank(fragment.embedding.vector, candidates, cutoff, limit)
        logger.info("duplicates_found", fragment_id=fragment_id, count=len(hits), threshold=cutoff)
        return hits

    async def _rank(
        self,
        query_vector: list[float],
        candidates: list[Fragment],
        threshold: float,
        limit: int,
    ) -> tuple[list[SearchHit], list[Fragment]]:
        """Score, filter, enrich and truncate.

        Returns the hits plus every fragment that cleared the threshold.
        """
        dims = len(query_vector)
        usable = [f for f in candidates if f.embedding and len(f.embedding.vector) == dims]
        if len(usable) != len(candidates):
            logger.warning(
                "fragments_skipped_dimension_mismatch",
                skipped=len(candidates) - len(usable),
                expected_dimensions=dims,
            )

        scored = top_k(
            query_vector,
            [f.embedding.vector for f in usable],
            k=len(usable),
            method=self._method,
        )
        passing = [(usable[s.index], s.score) for s in scored if s.score >= threshold]

        documents = await self._store.get_documents([f.document_id for f, _ in passing])
        hits: list[SearchHit] = []
        matched: list[Fragment] = []
        for fragment, score in passing:
            document = documents.get(fragment.document_id)
            if document is None or document.is_deleted:
                continue
            matched.append(fragment)
            if len(hits) >= limit:
                continue
            hits.append(
                SearchHit(
                    fragment_id=fragment.id,
                    document_id=fragment.document_id,
                    content=fragment.content,
                    similarity=score,
                    rank=len(hits) + 1,
                    document_title=document.title,
                    document_filename=document.filename,
                    content_type=fragment.metadata.content_type,
                    start_index=fragment.position.start_index,
                    end_index=fragment.position.end_index,
                )
            )
        return hits, matched

    @staticmethod
    def _results_key(
        normalized: str,
        options: SearchOptions,
        limit: int,
        threshold: float,
    ) -> str:
        payload = json.dumps(
            {
                "q": normalized,
                "limit": limit,
                "threshold": threshold,
                "documents": sorted(options.document_ids or []),
                "content_type": options.content_type.value if options.content_type else None,
            },
            sort_keys=True,
        )
        return f"{_RESULTS_PREFIX}:{hashlib.sha256(payload.encode('utf-8')).hexdigest()}"

    async def invalidate_cache(self) -> int:
        """Drop every cached result set (call after new vectors land)."""
        removed = await self._cache.delete_pattern(f"{_RESULTS_PREFIX}:*")
        if removed:
            logger.debug("search_cache_invalidated", removed=removed)
        return removed

    # ------------------------------------------------------------------
    # Usage statistics (best effort, in the background)
    # ------------------------------------------------------------------

    def _schedule_usage_update(self, hits: list[SearchHit], matched: list[Fragment]) -> None:
        if not matched:
            return
        task = asyncio.get_running_loop().create_task(self._update_usage(hits, matched))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _update_usage(self, hits: list[SearchHit], matched: list[Fragment]) -> None:
        for fragment in matched:
            try:
                await self._store.increment_fragment_queries(fragment.id)
            except Exception as exc:  # noqa: BLE001
                logger.warning("usage_stats_update_failed", fragment_id=fragment.id, error=str(exc))
        for hit in hits:
            try:
                await self._store.increment_fragment_usage(
                    hit.fragment_id,
                    score=hit.similarity,
                    top_result=hit.rank <= self._config.top_result_count,
                )
            except Exception as exc:  # noqa: BLE001
                logger.warning("usage_stats_update_failed", fragment_id=hit.fragment_id, error=str(exc))

    async def wait_for_pending_updates(self) -> None:
        """Await background statistic writes (used on shutdown and in tests)."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # ------------------------------------------------------------------
    # Analytics
    # ------------------------------------------------------------------

    async def _record_analytics(self, normalized: str, result_count: int) -> None:
        ttl = self._config.analytics_ttl
        await self._cache.increment(_ANALYTICS_TOTAL)
        await self._cache.increment(_ANALYTICS_RESULTS, result_count)
        await self._cache.hincrby(_ANALYTICS_QUERIES, normalized)
        for key in (_ANALYTICS_TOTAL, _ANALYTICS_RESULTS, _ANALYTICS_QUERIES):
            await self._cache.expire(key, ttl)

    async def get_search_analytics(self) -> SearchAnalytics:
        total = int(await self._cache.get(_ANALYTICS_TOTAL) or 0)
        results = int(await self._cache.get(_ANALYTICS_RESULTS) or 0)
        queries = await self._cache.hgetall(_ANALYTICS_QUERIES)
        top = sorted(queries.items(), key=lambda item: (-int(item[1]), item[0]))
        return SearchAnalytics(
            total_searches=total,
            avg_results=round(results / total, 2) if total else 0.0,
            top_queries=[
                {"query": q, "count": int(c)} for q, c in top[: self._config.analytics_top_queries]
            ],
        )
