"""Knowledge pipeline composition root.

Wires together all providers and services via dependency injection.
Loads configuration from ``.env`` and ``config/pipeline.yaml`` and
configures structured logging.  Nothing is built at import time: callers
(the CLI, tests, an embedding application) ask for a fresh set of
components and own their lifetime.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from src.config.loader import load_pipeline_config
from src.config.pipeline_config import PipelineConfig
from src.config.settings import Settings
from src.interfaces.embedding_provider import IEmbeddingProvider
from src.pipeline.job_queue import JobQueue
from src.providers.cache.memory_cache import MemoryCacheProvider
from src.providers.embedding.hash_embedding_provider import HashEmbeddingProvider
from src.providers.embedding.openai_embedding_provider import OpenAIEmbeddingProvider
from src.providers.extractor.plain_text_extractor import PlainTextExtractor
from src.providers.store.sqlite_knowledge_store import SQLiteKnowledgeStore
from src.services.cache.cache_service import CacheService
from src.services.embedding.embedding_pipeline import EmbeddingPipeline
from src.services.ingestion.knowledge_service import KnowledgeService
from src.services.retrieval.retrieval_engine import RetrievalEngine
from src.services.segmentation.segmenter import Segmenter
from src.utils.logging import configure_logging, get_logger

_logger: structlog.BoundLogger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Embedding provider selection
# ---------------------------------------------------------------------------


def _build_embedding_provider(
    app_settings: Settings,
    config: PipelineConfig,
    http_client: httpx.AsyncClient | None,
) -> IEmbeddingProvider:
    """Select the embedding provider.

    Priority: OpenAI/OpenAI-compatible (if API key set) ->
              deterministic hash embeddings (always available, offline).
    """
    if app_settings.has_openai():
        provider = OpenAIEmbeddingProvider(
            settings=app_settings,
            model=config.embedding.model,
            http_client=http_client,
        )
        if provider.is_available():
            return provider

    _logger.warning(
        "embedding_provider_fallback",
        provider="hash_embedding",
        msg="OPENAI_API_KEY not set; vectors are deterministic and carry no semantics.",
    )
    return HashEmbeddingProvider(dimension=config.embedding.dimensions)


def _align_embedding_config(config: PipelineConfig, provider: IEmbeddingProvider) -> PipelineConfig:
    """Make the configured model/dimensions match what *provider* produces.

    Cache keys include the model name, so a fallback provider must never
    write vectors under another provider's model.
    """
    embedding = config.embedding
    if embedding.model == provider.get_model_name() and embedding.dimensions == provider.get_dimension():
        return config
    _logger.info(
        "embedding_config_aligned",
        model=provider.get_model_name(),
        dimensions=provider.get_dimension(),
        configured_model=embedding.model,
        configured_dimensions=embedding.dimensions,
    )
    return config.model_copy(
        update={
            "embedding": embedding.model_copy(
                update={"model": provider.get_model_name(), "dimensions": provider.get_dimension()}
            )
        }
    )


# ---------------------------------------------------------------------------
# Composition
# ---------------------------------------------------------------------------


def build_components(
    custom_settings: Settings | None = None,
    config: PipelineConfig | None = None,
) -> dict[str, Any]:
    """Construct every component, unstarted.

    Returns a dict with ``settings``, ``config``, ``http_client``,
    ``store``, ``cache``, ``queue``, ``embedding_provider``,
    ``embeddings``, ``retrieval`` and ``service``.  The store still needs
    ``await store.initialize()``; :func:`build_knowledge_service` does that.
    """
    app_settings = custom_settings or Settings()
    config = config or load_pipeline_config(settings=app_settings)

    http_client = httpx.AsyncClient(timeout=30.0) if app_settings.has_openai() else None
    embedding_provider = _build_embedding_provider(app_settings, config, http_client)
    config = _align_embedding_config(config, embedding_provider)

    store = SQLiteKnowledgeStore(db_path=app_settings.knowledge_db_path)
    cache = CacheService(
        MemoryCacheProvider(max_size=config.cache.max_entries, ttl=config.cache.default_ttl),
        default_ttl=config.cache.default_ttl,
    )
    queue = JobQueue(max_size=config.ingestion.queue_max_size)
    embeddings = EmbeddingPipeline(
        provider=embedding_provider,
        cache=cache,
        store=store,
        queue=queue,
        config=config.embedding,
    )
    retrieval = RetrievalEngine(
        store=store,
        embeddings=embeddings,
        cache=cache,
        config=config.retrieval,
    )
    service = KnowledgeService(
        store=store,
        segmenter=Segmenter(config.segmentation),
        embeddings=embeddings,
        retrieval=retrieval,
        cache=cache,
        queue=queue,
        extractor=PlainTextExtractor(),
        config=config.ingestion,
    )

    _logger.info(
        "knowledge_pipeline_built",
        embedding_provider=embedding_provider.get_provider_name(),
        model=config.embedding.model,
        dimensions=config.embedding.dimensions,
        store=store.get_provider_name(),
        db_path=app_settings.knowledge_db_path,
    )
    return {
        "settings": app_settings,
        "config": config,
        "http_client": http_client,
        "store": store,
        "cache": cache,
        "queue": queue,
        "embedding_provider": embedding_provider,
        "embeddings": embeddings,
        "retrieval": retrieval,
        "service": service,
    }


async def build_knowledge_service(
    custom_settings: Settings | None = None,
    config: PipelineConfig | None = None,
) -> KnowledgeService:
    """Build the components, create the database schema, return the service."""
    components = build_components(custom_settings, config)
    await components["store"].initialize()
    return components["service"]


async def shutdown(components: dict[str, Any]) -> None:
    """Finish queued work and background writes, then release the HTTP client."""
    await components["service"].wait_until_idle()
    http_client: httpx.AsyncClient | None = components.get("http_client")
    if http_client is not None:
        await http_client.aclose()
    _logger.info("knowledge_pipeline_shutdown")


def setup_logging(app_settings: Settings) -> None:
    """Configure structlog from settings (JSON output in production)."""
    configure_logging(
        log_level=app_settings.log_level,
        json_output=(app_settings.app_env == "production"),
    )
