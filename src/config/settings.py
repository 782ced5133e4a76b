"""Application settings loaded from environment variables via pydantic-settings.

# ─── HOW SETTINGS WORK ────────────────────────────────────────────────
#
# Values are read from two sources (in priority order):
#
#   1. **Environment variables** - e.g. OPENAI_API_KEY=sk-abc123
#   2. **.env file** - key=value lines in the project root .env file
#
# Field ``embedding_batch_size`` maps to env var ``EMBEDDING_BATCH_SIZE``.
# Defaults below apply when neither source defines a value.
#
# These are flat, process-wide values.  The typed per-component structs
# (SegmentationOptions, EmbeddingConfig, ...) are assembled from them in
# src/config/loader.py after merging config/pipeline.yaml.
# ──────────────────────────────────────────────────────────────────────
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Knowledge pipeline settings.

    Environment variables override defaults. Loaded from .env file when present.
    """

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # === Embedding Provider ===
    # Empty key = "not configured" → main.py falls back to the offline
    # hash embedding provider.
    openai_api_key: str = ""
    openai_base_url: str = ""
    openai_embedding_model: str = ""
    embedding_dimensions: int = 1536
    embedding_batch_size: int = 50
    embedding_max_retries: int = 3
    embedding_retry_base_delay: float = 1.0
    embedding_retry_max_delay: float = 30.0
    embedding_inter_batch_delay: float = 0.2
    embedding_cache_ttl: int = 86400

    # === Segmentation ===
    chunking_method: str = "semantic"
    chunk_size: int = 1000
    chunk_overlap: int = 200
    min_fragment_size: int = 100
    max_fragment_size: int = 2000

    # === Retrieval ===
    search_default_limit: int = 5
    search_default_threshold: float = 0.7
    search_cache_ttl: int = 300
    duplicate_threshold: float = 0.95

    # === Storage / Cache ===
    knowledge_db_path: str = "data/knowledge.db"
    cache_max_entries: int = 10000
    cache_default_ttl: int = 3600

    # === Orchestration ===
    queue_max_size: int = 100
    failed_retry_after_hours: int = 24
    max_auto_retries: int = 1
    default_priority: int = 5
    auto_load_priority: int = 8

    # === App Config ===
    app_env: str = "development"
    log_level: str = "INFO"
    config_path: str = "config/pipeline.yaml"

    def has_openai(self) -> bool:
        """Return ``True`` when an OpenAI-compatible embedding key is configured."""
        return bool(self.openai_api_key)
