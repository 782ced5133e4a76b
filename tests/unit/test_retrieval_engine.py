"""Unit tests for RetrievalEngine: ranking, filtering, caching and usage stats."""

from __future__ import annotations

import asyncio

import pytest

from src.models.knowledge import (
    ContentType,
    Document,
    DocumentMetadata,
    Fragment,
    FragmentMetadata,
    FragmentPosition,
    SearchOptions,
)
from src.services.embedding.embedding_pipeline import EmbeddingPipeline
from src.services.retrieval.retrieval_engine import RetrievalEngine, normalize_query
from src.utils.errors import DocumentNotFoundError, InputValidationError

_QUERY = "refund policy"


def _axis(*values: float) -> list[float]:
    return list(values) + [0.0] * (8 - len(values))


async def _add_document(store, title: str) -> Document:
    document = Document(
        title=title,
        filename=f"{title.lower()}.txt",
        text=f"{title} text",
        metadata=DocumentMetadata(content_hash=f"hash-{title}"),
    )
    await store.save_document(document)
    return document


async def _add_fragment(
    store,
    document: Document,
    index: int,
    vector: list[float] | None,
    content_type: ContentType = ContentType.TEXT,
) -> Fragment:
    fragment = Fragment(
        document_id=document.id,
        index=index,
        content=f"{document.title} fragment {index}",
        position=FragmentPosition(start_index=index * 100, end_index=index * 100 + 80),
        metadata=FragmentMetadata(content_type=content_type),
    )
    if vector is not None:
        fragment = fragment.with_embedding(vector, "fake-embed")
    await store.add_fragments([fragment])
    return fragment


@pytest.fixture
def query_vector(fake_provider) -> list[float]:
    vector = _axis(1.0)
    fake_provider.overrides[_QUERY] = vector
    return vector


# ---------------------------------------------------------------------------
# Ranking
# ---------------------------------------------------------------------------


class TestSearch:
    @pytest.mark.asyncio
    async def test_threshold_and_order(self, retrieval, store, query_vector) -> None:
        doc = await _add_document(store, "Policies")
        exact = await _add_fragment(store, doc, 0, _axis(1.0))
        close = await _add_fragment(store, doc, 1, _axis(0.9, 0.1))
        borderline = await _add_fragment(store, doc, 2, _axis(0.75, 0.65))
        await _add_fragment(store, doc, 3, _axis(0.0, 1.0))
        await _add_fragment(store, doc, 4, None)

        hits = await retrieval.search(_QUERY)

        assert [h.fragment_id for h in hits] == [exact.id, close.id, borderline.id]
        assert [h.rank for h in hits] == [1, 2, 3]
        assert all(h.similarity >= 0.7 for h in hits)
        scores = [h.similarity for h in hits]
        assert scores == sorted(scores, reverse=True)
        assert hits[0].similarity == pytest.approx(1.0)
        assert hits[0].document_title == "Policies"
        assert hits[0].document_filename == "policies.txt"
        assert (hits[0].start_index, hits[0].end_index) == (0, 80)

    @pytest.mark.asyncio
    async def test_limit_and_threshold_override(self, retrieval, store, query_vector) -> None:
        doc = await _add_document(store, "Policies")
        for i in range(4):
            await _add_fragment(store, doc, i, _axis(1.0, 0.1 * i))

        hits = await retrieval.search(_QUERY, SearchOptions(limit=2))
        assert len(hits) == 2

        strict = await retrieval.search(_QUERY, SearchOptions(threshold=0.999))
        assert len(strict) == 1

    @pytest.mark.asyncio
    async def test_document_and_content_type_filters(self, retrieval, store, query_vector) -> None:
        first = await _add_document(store, "First")
        second = await _add_document(store, "Second")
        await _add_fragment(store, first, 0, _axis(1.0))
        code = await _add_fragment(store, second, 0, _axis(1.0), content_type=ContentType.CODE)

        by_doc = await retrieval.search(_QUERY, SearchOptions(document_ids=[second.id]))
        by_type = await retrieval.search(_QUERY, SearchOptions(content_type=ContentType.CODE))

        assert [h.fragment_id for h in by_doc] == [code.id]
        assert [h.fragment_id for h in by_type] == [code.id]

    @pytest.mark.asyncio
    async def test_deleted_documents_are_excluded(self, retrieval, store, query_vector) -> None:
        live = await _add_document(store, "Live")
        gone = await _add_document(store, "Gone")
        kept = await _add_fragment(store, live, 0, _axis(0.9, 0.1))
        await _add_fragment(store, gone, 0, _axis(1.0))
        await store.soft_delete_document(gone.id)

        hits = await retrieval.search(_QUERY, SearchOptions(use_cache=False))

        assert [h.fragment_id for h in hits] == [kept.id]

    @pytest.mark.asyncio
    async def test_wrong_dimension_fragments_are_skipped(self, retrieval, store, query_vector) -> None:
        doc = await _add_document(store, "Mixed")
        good = await _add_fragment(store, doc, 0, _axis(1.0))
        await _add_fragment(store, doc, 1, [1.0, 0.0, 0.0])

        hits = await retrieval.search(_QUERY)

        assert [h.fragment_id for h in hits] == [good.id]

    @pytest.mark.asyncio
    async def test_empty_knowledge_base(self, retrieval, query_vector) -> None:
        assert await retrieval.search(_QUERY) == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("query", ["", "   ", "\n"])
    async def test_blank_query_raises(self, retrieval, query: str) -> None:
        with pytest.raises(InputValidationError):
            await retrieval.search(query)


# ---------------------------------------------------------------------------
# Caching
# ---------------------------------------------------------------------------


class TestResultCache:
    @pytest.mark.asyncio
    async def test_repeat_query_served_from_cache(
        self, retrieval, store, fake_provider, query_vector
    ) -> None:
        doc = await _add_document(store, "Policies")
        await _add_fragment(store, doc, 0, _axis(1.0))

        first = await retrieval.search(_QUERY)
        await _add_fragment(store, doc, 1, _axis(0.95, 0.05))
        second = await retrieval.search("  Refund   POLICY ")

        assert second == first
        assert fake_provider.call_count == 1

    @pytest.mark.asyncio
    async def test_invalidate_cache_shows_new_fragments(self, retrieval, store, query_vector) -> None:
        doc = await _add_document(store, "Policies")
        await _add_fragment(store, doc, 0, _axis(1.0))
        await retrieval.search(_QUERY)
        await _add_fragment(store, doc, 1, _axis(0.95, 0.05))

        assert await retrieval.invalidate_cache() == 1
        assert len(await retrieval.search(_QUERY)) == 2

    @pytest.mark.asyncio
    async def test_use_cache_false_bypasses_cache(self, retrieval, store, query_vector) -> None:
        doc = await _add_document(store, "Policies")
        await _add_fragment(store, doc, 0, _axis(1.0))
        await retrieval.search(_QUERY)
        await _add_fragment(store, doc, 1, _axis(0.95, 0.05))

        assert len(await retrieval.search(_QUERY, SearchOptions(use_cache=False))) == 2

    @pytest.mark.asyncio
    async def test_broken_cache_gives_same_results(
        self, store, fake_provider, broken_cache, embedding_config, retrieval_config, query_vector
    ) -> None:
        doc = await _add_document(store, "Policies")
        exact = await _add_fragment(store, doc, 0, _axis(1.0))
        close = await _add_fragment(store, doc, 1, _axis(0.9, 0.1))
        await _add_fragment(store, doc, 2, _axis(0.0, 1.0))
        pipeline = EmbeddingPipeline(
            provider=fake_provider, cache=broken_cache, store=store, config=embedding_config
        )
        engine = RetrievalEngine(
            store=store, embeddings=pipeline, cache=broken_cache, config=retrieval_config
        )

        hits = await engine.search(_QUERY)
        await engine.wait_for_pending_updates()

        assert [h.fragment_id for h in hits] == [exact.id, close.id]
        assert (await engine.get_search_analytics()).total_searches == 0


# ---------------------------------------------------------------------------
# Usage statistics and analytics
# ---------------------------------------------------------------------------


class TestUsageStats:
    @pytest.mark.asyncio
    async def test_hits_and_matches_are_counted(self, retrieval, store, query_vector) -> None:
        doc = await _add_document(store, "Policies")
        top = await _add_fragment(store, doc, 0, _axis(1.0))
        runner_up = await _add_fragment(store, doc, 1, _axis(0.9, 0.1))
        unrelated = await _add_fragment(store, doc, 2, _axis(0.0, 1.0))

        hits = await retrieval.search(_QUERY, SearchOptions(limit=1))
        await retrieval.wait_for_pending_updates()

        top_stats = (await store.get_fragment(top.id)).stats
        assert top_stats.query_count == 1
        assert top_stats.retrieval_count == 1
        assert top_stats.avg_relevance_score == pytest.approx(hits[0].similarity)
        assert top_stats.top_result_frequency == pytest.approx(1.0)

        runner_stats = (await store.get_fragment(runner_up.id)).stats
        assert runner_stats.query_count == 1
        assert runner_stats.retrieval_count == 0

        assert (await store.get_fragment(unrelated.id)).stats.query_count == 0

    @pytest.mark.asyncio
    async def test_analytics(self, retrieval, store, query_vector, fake_provider) -> None:
        fake_provider.overrides["shipping"] = _axis(0.0, 1.0)
        doc = await _add_document(store, "Policies")
        await _add_fragment(store, doc, 0, _axis(1.0))

        await retrieval.search(_QUERY)
        await retrieval.search("Refund Policy")
        await retrieval.search("shipping")

        analytics = await retrieval.get_search_analytics()
        assert analytics.total_searches == 3
        assert analytics.avg_results == pytest.approx(0.67)
        assert analytics.top_queries[0] == {"query": "refund policy", "count": 2}
        assert analytics.top_queries[1] == {"query": "shipping", "count": 1}

    @pytest.mark.asyncio
    async def test_concurrent_searches_count_every_query(self, retrieval, store) -> None:
        doc = await _add_document(store, "Policies")
        await _add_fragment(store, doc, 0, _axis(1.0))

        await asyncio.gather(*(retrieval.search("refund policy") for _ in range(5)))

        analytics = await retrieval.get_search_analytics()
        assert analytics.total_searches == 5
        assert analytics.top_queries == [{"query": "refund policy", "count": 5}]


def test_normalize_query() -> None:
    assert normalize_query("  Refund\tPOLICY\n ") == "refund policy"


# ---------------------------------------------------------------------------
# Duplicates
# ---------------------------------------------------------------------------


class TestDuplicates:
    @pytest.mark.asyncio
    async def test_near_identical_fragments_found(self, retrieval, store) -> None:
        doc = await _add_document(store, "Dupes")
        original = await _add_fragment(store, doc, 0, _axis(1.0, 0.1))
        copy = await _add_fragment(store, doc, 1, _axis(1.0, 0.11))
        await _add_fragment(store, doc, 2, _axis(0.0, 1.0))

        hits = await retrieval.find_duplicates(original.id)

        assert [h.fragment_id for h in hits] == [copy.id]

    @pytest.mark.asyncio
    async def test_missing_fragment_raises(self, retrieval) -> None:
        with pytest.raises(DocumentNotFoundError) as exc_info:
            await retrieval.find_duplicates("missing")
        assert exc_info.value.code == "FRAGMENT_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_unembedded_fragment_raises(self, retrieval, store) -> None:
        doc = await _add_document(store, "Pending")
        pending = await _add_fragment(store, doc, 0, None)

        with pytest.raises(InputValidationError):
            await retrieval.find_duplicates(pending.id)
