"""YAML configuration loader with environment variable overrides.

# ─── CONFIGURATION HIERARCHY ───────────────────────────────────────────
#
#   1. Struct defaults       - src/config/pipeline_config.py
#   2. config/pipeline.yaml  - static defaults checked into the repo
#   3. .env / environment    - only variables that are actually set
#
# load_pipeline_config() reads the YAML file, deep-merges the explicitly
# set environment values on top, and validates the result into a frozen
# PipelineConfig.  Validation happens once, here; components never see
# an out-of-range value.
# ──────────────────────────────────────────────────────────────────────
"""

from pathlib import Path

import structlog
import yaml
from pydantic import ValidationError

from src.config.pipeline_config import PipelineConfig
from src.config.settings import Settings
from src.utils.errors import ConfigurationError

logger = structlog.get_logger(logger_name=__name__)

# Settings field -> (section, key) in the PipelineConfig tree.
_SETTINGS_MAP: dict[str, tuple[str, str]] = {
    "embedding_dimensions": ("embedding", "dimensions"),
    "embedding_batch_size": ("embedding", "batch_size"),
    "embedding_max_retries": ("embedding", "max_retries"),
    "embedding_retry_base_delay": ("embedding", "retry_base_delay"),
    "embedding_retry_max_delay": ("embedding", "retry_max_delay"),
    "embedding_inter_batch_delay": ("embedding", "inter_batch_delay"),
    "embedding_cache_ttl": ("embedding", "cache_ttl"),
    "openai_embedding_model": ("embedding", "model"),
    "chunking_method": ("segmentation", "method"),
    "chunk_size": ("segmentation", "target_size"),
    "chunk_overlap": ("segmentation", "overlap"),
    "min_fragment_size": ("segmentation", "min_fragment_size"),
    "max_fragment_size": ("segmentation", "max_fragment_size"),
    "search_default_limit": ("retrieval", "default_limit"),
    "search_default_threshold": ("retrieval", "default_threshold"),
    "search_cache_ttl": ("retrieval", "cache_ttl"),
    "duplicate_threshold": ("retrieval", "duplicate_threshold"),
    "cache_max_entries": ("cache", "max_entries"),
    "cache_default_ttl": ("cache", "default_ttl"),
    "queue_max_size": ("ingestion", "queue_max_size"),
    "failed_retry_after_hours": ("ingestion", "failed_retry_after_hours"),
    "max_auto_retries": ("ingestion", "max_auto_retries"),
    "default_priority": ("ingestion", "default_priority"),
    "auto_load_priority": ("ingestion", "auto_load_priority"),
}


def load_config(path: str = "config/pipeline.yaml") -> dict:
    """Load the raw YAML config, or an empty dict when the file is absent."""
    config_path = Path(path)
    if not config_path.exists():
        return {}
    with open(config_path, encoding="utf-8") as f:
        try:
            return yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Cannot parse {config_path}: {exc}") from exc


def load_pipeline_config(
    path: str | None = None,
    settings: Settings | None = None,
) -> PipelineConfig:
    """Build the validated :class:`PipelineConfig`.

    Args:
        path: YAML file to read. Defaults to ``settings.config_path``.
        settings: Pre-built Settings (tests pass one explicitly).

    Returns:
        The frozen, range-checked pipeline configuration.

    Raises:
        ConfigurationError: If the merged values fail validation.
    """
    settings = settings or Settings()
    yaml_config = load_config(path or settings.config_path)

    env_overrides: dict = {}
    for field_name in settings.model_fields_set:
        target = _SETTINGS_MAP.get(field_name)
        if target is None:
            continue
        value = getattr(settings, field_name)
        if value == "":
            continue
        section, key = target
        env_overrides.setdefault(section, {})[key] = value

    _deep_merge(yaml_config, env_overrides)

    try:
        config = PipelineConfig.model_validate(yaml_config)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid pipeline configuration: {exc}") from exc

    logger.debug(
        "pipeline_config_loaded",
        path=path or settings.config_path,
        env_overrides=sorted(env_overrides),
    )
    return config


def _deep_merge(base: dict, overrides: dict) -> None:
    """Recursively merge overrides into base dict, mutating base in place."""
    for key, value in overrides.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
