"""Cache providers.

MemoryCacheProvider is a per-process cache with per-entry TTL, used for
embedding vectors, search result sets and search analytics.  For
multi-worker deployments, swap in a Redis adapter implementing
ICacheProvider without changing any business logic.
"""

from src.providers.cache.memory_cache import MemoryCacheProvider

__all__ = ["MemoryCacheProvider"]
