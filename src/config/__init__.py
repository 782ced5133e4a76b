"""Configuration module - exports Settings, the typed config structs and loaders."""

from src.config.loader import load_config, load_pipeline_config
from src.config.pipeline_config import (
    CacheConfig,
    EmbeddingConfig,
    IngestionConfig,
    PipelineConfig,
    RetrievalConfig,
    SegmentationOptions,
)
from src.config.settings import Settings

__all__ = [
    "CacheConfig",
    "EmbeddingConfig",
    "IngestionConfig",
    "PipelineConfig",
    "RetrievalConfig",
    "SegmentationOptions",
    "Settings",
    "load_config",
    "load_pipeline_config",
]
