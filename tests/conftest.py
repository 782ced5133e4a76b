"""Shared pytest fixtures for the knowledge pipeline test suite."""

from __future__ import annotations

import hashlib
import logging
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
import structlog

from src.config.pipeline_config import EmbeddingConfig, IngestionConfig, RetrievalConfig
from src.interfaces.cache_provider import ICacheProvider
from src.interfaces.embedding_provider import IEmbeddingProvider
from src.pipeline.job_queue import JobQueue
from src.providers.cache.memory_cache import MemoryCacheProvider
from src.providers.store.sqlite_knowledge_store import SQLiteKnowledgeStore
from src.services.cache.cache_service import CacheService
from src.services.embedding.embedding_pipeline import EmbeddingPipeline
from src.services.ingestion.knowledge_service import KnowledgeService
from src.services.retrieval.retrieval_engine import RetrievalEngine
from src.services.segmentation.segmenter import Segmenter

_EMBEDDING_DIM = 8


@pytest.fixture(autouse=True, scope="session")
def _test_logging():
    """Warnings and up only, with no cached loggers.

    Uncached loggers resolve sys.stdout on every call, so output captured
    by capsys in one test never leaks a closed stream into the next.
    """
    structlog.configure(
        processors=[structlog.processors.add_log_level, structlog.dev.ConsoleRenderer(colors=False)],
        wrapper_class=structlog.make_filtering_bound_logger(logging.WARNING),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )
    yield
    structlog.reset_defaults()


def hash_vector(text: str, dim: int = _EMBEDDING_DIM) -> list[float]:
    """Deterministic non-zero vector derived from *text*."""
    digest = hashlib.sha256(text.encode("utf-8")).digest()
    values = [(b - 127.5) / 127.5 for b in digest[:dim]]
    if not any(values):
        values[0] = 1.0
    return values


# ---------------------------------------------------------------------------
# Fake providers
# ---------------------------------------------------------------------------


class FakeEmbeddingProvider(IEmbeddingProvider):
    """In-memory embedding provider with scriptable failures.

    ``overrides`` maps exact texts to the vector to return for them (use
    it for wrong-length or hand-placed vectors).  ``failures`` is a list of
    exceptions raised by successive calls before normal behaviour resumes.
    """

    def __init__(self, dimension: int = _EMBEDDING_DIM) -> None:
        self.dimension = dimension
        self.overrides: dict[str, Any] = {}
        self.failures: list[Exception] = []
        self.calls: list[list[str]] = []

    async def embed(self, texts: list[str], model: str | None = None) -> list[list[float]]:
        self.calls.append(list(texts))
        if self.failures:
            raise self.failures.pop(0)
        return [self.overrides.get(t, hash_vector(t, self.dimension)) for t in texts]

    @property
    def call_count(self) -> int:
        return len(self.calls)

    def get_dimension(self) -> int:
        return self.dimension

    def get_model_name(self) -> str:
        return "fake-embed"

    def get_provider_name(self) -> str:
        return "fake_embedding"

    def is_available(self) -> bool:
        return True


class BrokenCacheProvider(ICacheProvider):
    """Cache whose every operation fails, as if the store were unreachable."""

    def __init__(self) -> None:
        self.calls = 0

    def _fail(self) -> None:
        self.calls += 1
        raise ConnectionError("cache store unreachable")

    async def get(self, key):
        self._fail()

    async def set(self, key, value, ttl=None):
        self._fail()

    async def delete(self, key):
        self._fail()

    async def exists(self, key):
        self._fail()

    async def expire(self, key, ttl):
        self._fail()

    async def ttl(self, key):
        self._fail()

    async def incr(self, key, amount=1):
        self._fail()

    async def keys(self, pattern="*"):
        self._fail()

    async def delete_pattern(self, pattern):
        self._fail()

    async def hset(self, key, field, value):
        self._fail()

    async def hget(self, key, field):
        self._fail()

    async def hincrby(self, key, field, amount=1):
        self._fail()

    async def hgetall(self, key):
        self._fail()

    async def hdel(self, key, field):
        self._fail()

    async def sadd(self, key, *members):
        self._fail()

    async def srem(self, key, *members):
        self._fail()

    async def smembers(self, key):
        self._fail()

    async def lpush(self, key, *values):
        self._fail()

    async def lpop(self, key):
        self._fail()

    async def lrange(self, key, start, stop):
        self._fail()

    async def flush(self):
        self._fail()

    async def ping(self):
        self._fail()

    def get_provider_name(self) -> str:
        return "broken_cache"


# ---------------------------------------------------------------------------
# Component fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def fake_provider() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider()


@pytest.fixture
def embedding_config() -> EmbeddingConfig:
    """Fast config: 8 dims, no backoff or inter-batch sleeps."""
    return EmbeddingConfig(
        model="fake-embed",
        dimensions=_EMBEDDING_DIM,
        batch_size=50,
        max_retries=3,
        retry_base_delay=0.0,
        retry_max_delay=0.0,
        inter_batch_delay=0.0,
    )


@pytest.fixture
def retrieval_config() -> RetrievalConfig:
    return RetrievalConfig(default_limit=5, default_threshold=0.7)


@pytest.fixture
def cache() -> CacheService:
    return CacheService(MemoryCacheProvider(max_size=1000, ttl=3600))


@pytest.fixture
def broken_cache() -> CacheService:
    return CacheService(BrokenCacheProvider())


@pytest_asyncio.fixture
async def store(tmp_path: Path) -> SQLiteKnowledgeStore:
    """Initialized store backed by a temp SQLite file."""
    knowledge_store = SQLiteKnowledgeStore(db_path=tmp_path / "knowledge.db")
    await knowledge_store.initialize()
    return knowledge_store


@pytest.fixture
def queue() -> JobQueue:
    return JobQueue(max_size=10)


@pytest.fixture
def pipeline(fake_provider, cache, store, queue, embedding_config) -> EmbeddingPipeline:
    return EmbeddingPipeline(
        provider=fake_provider,
        cache=cache,
        store=store,
        queue=queue,
        config=embedding_config,
    )


@pytest.fixture
def retrieval(store, pipeline, cache, retrieval_config) -> RetrievalEngine:
    return RetrievalEngine(store=store, embeddings=pipeline, cache=cache, config=retrieval_config)


@pytest.fixture
def knowledge_service(store, pipeline, retrieval, cache, queue) -> KnowledgeService:
    from src.providers.extractor.plain_text_extractor import PlainTextExtractor

    return KnowledgeService(
        store=store,
        segmenter=Segmenter(),
        embeddings=pipeline,
        retrieval=retrieval,
        cache=cache,
        queue=queue,
        extractor=PlainTextExtractor(),
        config=IngestionConfig(),
    )


@pytest.fixture
def three_paragraph_text() -> str:
    """Three paragraphs (799 + 799 + 798 characters) joined by blank lines: 2400 in total."""

    def paragraph(topic: str, length: int) -> str:
        sentence = f"Customers asking about {topic} should read this section carefully. "
        body = (sentence * 20)[: length - 1].rstrip()
        return body + "." * (length - len(body))

    return "\n\n".join(
        [paragraph("refunds", 799), paragraph("shipping", 799), paragraph("returns", 798)]
    )
