"""Abstract base class for cache store providers.

Defines the primitives the pipeline needs from an external cache: plain
key/value with TTL, counters, hashes, sets and lists, pattern-based key
listing and deletion, and a ``ping`` for health checks.  Implementations
may use an in-process dict, Redis, or any store offering the same
semantics.

Providers are allowed to raise (connection errors, wrong-type access).
Business code never calls a provider directly; it goes through
:class:`~src.services.cache.cache_service.CacheService`, which converts
every failure into a miss.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any


class ICacheProvider(ABC):
    """Contract for key-value cache services.

    All operations are async to allow for network-backed stores (e.g. Redis)
    without blocking the event loop.
    """

    # ------------------------------------------------------------------
    # Key / value
    # ------------------------------------------------------------------

    @abstractmethod
    async def get(self, key: str) -> Any | None:
        """Retrieve the value stored under *key*.

        Returns
        -------
        Any or None
            The cached value if present and not expired; ``None`` otherwise.
        """

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        """Store *value* under *key* with an optional time-to-live.

        Parameters
        ----------
        key:
            The cache key.
        value:
            The value to store (str, int, float, dict, list).
        ttl:
            Time-to-live in seconds.  ``None`` applies the provider default.
        """

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Remove *key*; return ``True`` if it existed."""

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Return ``True`` if *key* is present and not expired."""

    @abstractmethod
    async def expire(self, key: str, ttl: int) -> bool:
        """Reset the TTL of an existing key; ``False`` if the key is missing."""

    @abstractmethod
    async def ttl(self, key: str) -> int:
        """Seconds left before *key* expires, ``-2`` when the key is missing."""

    @abstractmethod
    async def incr(self, key: str, amount: int = 1) -> int:
        """Add *amount* to an integer counter (created at 0) and return it."""

    # ------------------------------------------------------------------
    # Pattern operations
    # ------------------------------------------------------------------

    @abstractmethod
    async def keys(self, pattern: str = "*") -> list[str]:
        """Return live keys matching a glob *pattern* (``*``, ``?``, ``[]``)."""

    @abstractmethod
    async def delete_pattern(self, pattern: str) -> int:
        """Delete every key matching *pattern*; return how many were removed."""

    # ------------------------------------------------------------------
    # Hashes
    # ------------------------------------------------------------------

    @abstractmethod
    async def hset(self, key: str, field: str, value: Any) -> None:
        """Set *field* in the hash stored at *key*."""

    @abstractmethod
    async def hget(self, key: str, field: str) -> Any | None:
        """Return one hash field, or ``None``."""

    @abstractmethod
    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        """Add *amount* to an integer hash field (created at 0) and return it."""

    @abstractmethod
    async def hgetall(self, key: str) -> dict[str, Any]:
        """Return the whole hash (empty dict if missing)."""

    @abstractmethod
    async def hdel(self, key: str, field: str) -> bool:
        """Remove one hash field; ``True`` if it existed."""

    # ------------------------------------------------------------------
    # Sets
    # ------------------------------------------------------------------

    @abstractmethod
    async def sadd(self, key: str, *members: Any) -> int:
        """Add members to a set; return how many were new."""

    @abstractmethod
    async def srem(self, key: str, *members: Any) -> int:
        """Remove members from a set; return how many were present."""

    @abstractmethod
    async def smembers(self, key: str) -> set[Any]:
        """Return all members of the set at *key*."""

    # ------------------------------------------------------------------
    # Lists
    # ------------------------------------------------------------------

    @abstractmethod
    async def lpush(self, key: str, *values: Any) -> int:
        """Prepend values (each becomes the new head); return the new length."""

    @abstractmethod
    async def lpop(self, key: str) -> Any | None:
        """Remove and return the head of the list, or ``None``."""

    @abstractmethod
    async def lrange(self, key: str, start: int, stop: int) -> list[Any]:
        """Return elements ``start..stop`` inclusive; negative indices count from the end."""

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    @abstractmethod
    async def flush(self) -> None:
        """Remove every key."""

    @abstractmethod
    async def ping(self) -> bool:
        """Return ``True`` if the store answers."""

    @abstractmethod
    def get_provider_name(self) -> str:
        """Return a short identifier such as ``"memory_cache"``."""
