"""Unit tests for EmbeddingPipeline: caching, retries, batching and item isolation."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from src.config.pipeline_config import EmbeddingConfig
from src.models.knowledge import (
    Document,
    DocumentMetadata,
    Fragment,
    FragmentPosition,
    ProcessingStatus,
)
from src.services.cache.cache_service import CacheService
from src.services.embedding.embedding_pipeline import (
    EmbeddingPipeline,
    document_embedding_status,
    embedding_cache_key,
)
from src.utils.errors import (
    DocumentNotFoundError,
    EmbeddingValidationError,
    InputValidationError,
    ProviderAuthError,
    ProviderUnavailableError,
    RateLimitError,
)
from tests.conftest import hash_vector

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _seed_document(store, count: int) -> tuple[Document, list[Fragment]]:
    """Persist a chunked document with *count* distinct pending fragments."""
    document = Document(
        title="Seeded",
        text="seeded text",
        metadata=DocumentMetadata(content_hash=f"seed-{count}"),
        chunking_status=ProcessingStatus.COMPLETED,
        fragment_count=count,
    )
    await store.save_document(document)
    fragments = [
        Fragment(
            document_id=document.id,
            index=i,
            content=f"Fragment number {i} covers topic {i} in detail.",
            position=FragmentPosition(start_index=i * 50, end_index=i * 50 + 45),
            processing_status=ProcessingStatus.COMPLETED,
        )
        for i in range(count)
    ]
    await store.add_fragments(fragments)
    return document, fragments


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


class TestHelpers:
    def test_cache_key_is_model_scoped(self) -> None:
        key = embedding_cache_key("hello", "model-a")
        assert key.startswith("embedding:model-a:")
        assert len(key.rsplit(":", 1)[1]) == 64
        assert key != embedding_cache_key("hello", "model-b")
        assert key == embedding_cache_key("hello", "model-a")

    @pytest.mark.parametrize(
        ("statuses", "expected"),
        [
            ([ProcessingStatus.COMPLETED] * 3, ProcessingStatus.COMPLETED),
            ([ProcessingStatus.FAILED] * 2, ProcessingStatus.FAILED),
            ([ProcessingStatus.COMPLETED, ProcessingStatus.FAILED], ProcessingStatus.PARTIALLY_COMPLETED),
            ([ProcessingStatus.COMPLETED, ProcessingStatus.PENDING], ProcessingStatus.PARTIALLY_COMPLETED),
            ([], ProcessingStatus.FAILED),
        ],
    )
    def test_document_status_fold(self, statuses, expected) -> None:
        assert document_embedding_status(statuses) == expected


# ---------------------------------------------------------------------------
# Text-level embedding
# ---------------------------------------------------------------------------


class TestEmbed:
    @pytest.mark.asyncio
    async def test_warm_cache_skips_provider(self, pipeline, fake_provider) -> None:
        first = await pipeline.embed_single("refund policy")
        second = await pipeline.embed_single("refund policy")

        assert first == second == pytest.approx(hash_vector("refund policy"))
        assert fake_provider.call_count == 1
        stats = pipeline.get_stats()
        assert stats.cache_hits == 1
        assert stats.cache_misses == 1

    @pytest.mark.asyncio
    async def test_duplicates_in_one_call_are_sent_once(self, pipeline, fake_provider) -> None:
        vectors = await pipeline.embed(["alpha", "beta", "alpha"])

        assert vectors[0] == vectors[2]
        assert fake_provider.calls == [["alpha", "beta"]]

    @pytest.mark.asyncio
    async def test_rate_limit_is_retried_once(self, pipeline, fake_provider) -> None:
        fake_provider.failures = [RateLimitError()]

        vectors = await pipeline.embed(["one", "two", "one"])

        assert len(vectors) == 3
        stats = pipeline.get_stats()
        assert stats.retries == 1
        assert stats.provider_calls == 2
        assert stats.cache_writes == 2

    @pytest.mark.asyncio
    async def test_backoff_doubles_and_is_capped(self, fake_provider, cache, store) -> None:
        sleep = AsyncMock()
        pipeline = EmbeddingPipeline(
            provider=fake_provider,
            cache=cache,
            store=store,
            config=EmbeddingConfig(
                model="fake-embed",
                dimensions=8,
                max_retries=3,
                retry_base_delay=1.0,
                retry_max_delay=3.0,
                inter_batch_delay=0.0,
            ),
            sleep=sleep,
        )
        fake_provider.failures = [ProviderUnavailableError(), RateLimitError(), RateLimitError()]

        await pipeline.embed(["text"])

        assert [call.args[0] for call in sleep.await_args_list] == [1.0, 2.0, 3.0]

    @pytest.mark.asyncio
    async def test_auth_error_is_not_retried(self, pipeline, fake_provider) -> None:
        fake_provider.failures = [ProviderAuthError()]

        with pytest.raises(ProviderAuthError):
            await pipeline.embed(["secret"])

        assert fake_provider.call_count == 1
        assert pipeline.get_stats().retries == 0

    @pytest.mark.asyncio
    async def test_exhausted_retries_fail_items_with_code(self, pipeline, fake_provider) -> None:
        fake_provider.failures = [ProviderUnavailableError()] * 4

        outcomes = await pipeline.embed_with_outcomes(["a", "b"])

        assert fake_provider.call_count == 4
        assert [o.ok for o in outcomes] == [False, False]
        assert {o.error.code for o in outcomes} == {"PROVIDER_UNAVAILABLE"}

    @pytest.mark.asyncio
    async def test_failed_batch_does_not_affect_other_batches(self, pipeline, fake_provider) -> None:
        fake_provider.failures = [ProviderUnavailableError()] * 4

        outcomes = await pipeline.embed_with_outcomes(
            ["t0", "t1", "t2", "t3", "t4"], batch_size=2
        )

        assert [o.ok for o in outcomes] == [False, False, True, True, True]
        assert fake_provider.calls[-2:] == [["t2", "t3"], ["t4"]]

    @pytest.mark.asyncio
    async def test_invalid_vector_fails_only_that_item(self, pipeline, fake_provider) -> None:
        fake_provider.overrides["broken"] = [0.1, float("nan")] + [0.0] * 6

        outcomes = await pipeline.embed_with_outcomes(["fine", "broken"])

        assert outcomes[0].ok
        assert outcomes[1].error.code == "INVALID_EMBEDDING"
        with pytest.raises(EmbeddingValidationError):
            await pipeline.embed(["broken"])

    @pytest.mark.asyncio
    async def test_blank_text_is_item_error(self, pipeline, fake_provider) -> None:
        outcomes = await pipeline.embed_with_outcomes(["", "ok"])

        assert outcomes[0].error.code == "EMPTY_TEXT"
        assert outcomes[1].ok
        assert fake_provider.calls == [["ok"]]
        with pytest.raises(InputValidationError):
            await pipeline.embed(["   "])

    @pytest.mark.asyncio
    async def test_invalid_cached_vector_is_recomputed(self, pipeline, fake_provider, cache) -> None:
        await cache.set(embedding_cache_key("stale", "fake-embed"), [1.0, 2.0])

        vector = await pipeline.embed_single("stale")

        assert len(vector) == 8
        assert fake_provider.call_count == 1

    @pytest.mark.asyncio
    async def test_broken_cache_still_embeds(
        self, fake_provider, broken_cache: CacheService, store, embedding_config
    ) -> None:
        pipeline = EmbeddingPipeline(
            provider=fake_provider, cache=broken_cache, store=store, config=embedding_config
        )

        first = await pipeline.embed_single("resilient")
        second = await pipeline.embed_single("resilient")

        assert first == second
        assert fake_provider.call_count == 2
        assert pipeline.get_stats().cache_writes == 0

    @pytest.mark.asyncio
    async def test_clear_embedding_cache(self, pipeline) -> None:
        await pipeline.embed(["x", "y"])
        assert await pipeline.clear_embedding_cache() == 2


# ---------------------------------------------------------------------------
# Document-level embedding
# ---------------------------------------------------------------------------


class TestDocumentEmbeddings:
    @pytest.mark.asyncio
    async def test_all_fragments_embedded(self, pipeline, store) -> None:
        document, _ = await _seed_document(store, 5)

        result = await pipeline.process_document_embeddings(document.id)

        assert result.status == ProcessingStatus.COMPLETED
        assert (result.processed, result.succeeded, result.failed) == (5, 5, 0)
        saved = await store.get_document(document.id)
        assert saved.embedding_status == ProcessingStatus.COMPLETED
        for fragment in await store.list_fragments(document.id):
            assert fragment.embedding.model == "fake-embed"
            assert len(fragment.embedding.vector) == 8

    @pytest.mark.asyncio
    async def test_one_bad_vector_in_fifty(self, pipeline, store, fake_provider) -> None:
        document, fragments = await _seed_document(store, 50)
        fake_provider.overrides[fragments[17].content] = [0.5, 0.5, 0.5]

        result = await pipeline.process_document_embeddings(document.id)

        assert fake_provider.call_count == 1
        assert (result.succeeded, result.failed) == (49, 1)
        assert result.status == ProcessingStatus.PARTIALLY_COMPLETED

        stored = await store.list_fragments(document.id)
        failed = [f for f in stored if f.embedding_status == ProcessingStatus.FAILED]
        assert [f.id for f in failed] == [fragments[17].id]
        assert failed[0].error.code == "INVALID_EMBEDDING"
        assert failed[0].embedding is None
        saved = await store.get_document(document.id)
        assert saved.embedding_status == ProcessingStatus.PARTIALLY_COMPLETED

    @pytest.mark.asyncio
    async def test_reprocess_failed_only_sends_failed(self, pipeline, store, fake_provider) -> None:
        document, fragments = await _seed_document(store, 4)
        fake_provider.overrides[fragments[2].content] = [1.0]
        await pipeline.process_document_embeddings(document.id)
        fake_provider.overrides.clear()
        fake_provider.calls.clear()

        result = await pipeline.reprocess_failed_embeddings(document.id)

        assert fake_provider.calls == [[fragments[2].content]]
        assert result.status == ProcessingStatus.COMPLETED
        assert (result.processed, result.succeeded) == (1, 1)

    @pytest.mark.asyncio
    async def test_nothing_to_do_is_skipped(self, pipeline, store, fake_provider) -> None:
        document, _ = await _seed_document(store, 2)
        await pipeline.process_document_embeddings(document.id)
        calls_before = fake_provider.call_count

        result = await pipeline.process_document_embeddings(document.id)

        assert result.skipped
        assert result.status == ProcessingStatus.COMPLETED
        assert fake_provider.call_count == calls_before

    @pytest.mark.asyncio
    async def test_overwrite_reembeds_everything(self, pipeline, store, fake_provider, cache) -> None:
        document, _ = await _seed_document(store, 3)
        await pipeline.process_document_embeddings(document.id)
        await cache.flush()

        result = await pipeline.process_document_embeddings(document.id, overwrite=True)

        assert result.processed == 3
        assert fake_provider.call_count == 2

    @pytest.mark.asyncio
    async def test_auth_error_fails_remaining_fragments(
        self, pipeline, store, fake_provider
    ) -> None:
        document, _ = await _seed_document(store, 6)
        fake_provider.failures = [ProviderAuthError("bad key")]

        result = await pipeline.process_document_embeddings(document.id, batch_size=2)

        assert fake_provider.call_count == 1
        assert result.failed == 6
        assert result.status == ProcessingStatus.FAILED
        stored = await store.list_fragments(document.id)
        assert {f.error.code for f in stored} == {"PROVIDER_AUTH_ERROR"}
        saved = await store.get_document(document.id)
        assert saved.embedding_status == ProcessingStatus.FAILED
        assert saved.error is not None

    @pytest.mark.asyncio
    async def test_small_batches_are_persisted_separately(
        self, pipeline, store, fake_provider
    ) -> None:
        document, _ = await _seed_document(store, 5)

        await pipeline.process_document_embeddings(document.id, batch_size=2)

        assert [len(c) for c in fake_provider.calls] == [2, 2, 1]

    @pytest.mark.asyncio
    async def test_unknown_document_raises(self, pipeline) -> None:
        with pytest.raises(DocumentNotFoundError):
            await pipeline.process_document_embeddings("missing")

    @pytest.mark.asyncio
    async def test_queued_embedding_runs(self, pipeline, store, queue) -> None:
        document, _ = await _seed_document(store, 3)

        assert pipeline.queue_embedding_processing(document.id)
        await queue.wait_until_idle()

        saved = await store.get_document(document.id)
        assert saved.embedding_status == ProcessingStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_reembed_fragments(self, pipeline, store) -> None:
        document, fragments = await _seed_document(store, 3)

        assert await pipeline.reembed_fragments(fragments[:2]) == 2
        saved = await store.get_document(document.id)
        assert saved.embedding_status == ProcessingStatus.PARTIALLY_COMPLETED
        assert await pipeline.reembed_fragments([]) == 0


class TestIntrospection:
    @pytest.mark.asyncio
    async def test_embedding_stats(self, pipeline, store, fake_provider) -> None:
        document, fragments = await _seed_document(store, 4)
        fake_provider.overrides[fragments[0].content] = []
        await pipeline.process_document_embeddings(document.id)

        per_doc = await pipeline.get_embedding_stats(document.id)
        overall = await pipeline.get_embedding_stats()

        assert per_doc.total == 4
        assert per_doc.by_status == {"completed": 3, "failed": 1}
        assert per_doc.completion_rate == 0.75
        assert overall == per_doc

    def test_model_info(self, pipeline) -> None:
        info = pipeline.get_model_info()
        assert info["provider"] == "fake_embedding"
        assert info["model"] == "fake-embed"
        assert info["dimensions"] == 8
        assert info["available"] is True
