"""Fail-soft cache access for the pipeline services."""

from src.services.cache.cache_service import CacheService

__all__ = ["CacheService"]
