"""Fail-soft cache adapter used by every pipeline component.

Wraps an :class:`~src.interfaces.cache_provider.ICacheProvider` so that a
cache outage can never break ingestion or search.  Every operation catches
provider failures, logs a ``cache_operation_failed`` warning and returns a
safe default: ``None`` for reads, ``False`` for writes and membership
checks, an empty collection for multi-value reads, ``0`` for counts.

The pipeline stays functionally correct with the cache down; it only
loses acceleration.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import structlog

from src.interfaces.cache_provider import ICacheProvider

logger = structlog.get_logger(logger_name=__name__)

T = TypeVar("T")


class CacheService:
    """Fail-soft facade over a cache provider.

    Parameters
    ----------
    provider:
        The underlying cache store.
    default_ttl:
        TTL in seconds applied by :meth:`set` when none is given.
    """

    def __init__(self, provider: ICacheProvider, default_ttl: int = 3600) -> None:
        self._provider = provider
        self._default_ttl = default_ttl
        self._hits = 0
        self._misses = 0
        self._writes = 0
        self._errors = 0

    # ------------------------------------------------------------------
    # Guard
    # ------------------------------------------------------------------

    async def _guard(
        self,
        operation: str,
        call: Callable[[], Awaitable[T]],
        default: T,
        key: str | None = None,
    ) -> T:
        try:
            return await call()
        except Exception as exc:  # noqa: BLE001
            self._errors += 1
            logger.warning(
                "cache_operation_failed",
                operation=operation,
                key=key,
                provider=self._safe_provider_name(),
                error=str(exc),
            )
            return default

    def _safe_provider_name(self) -> str:
        try:
            return self._provider.get_provider_name()
        except Exception:  # noqa: BLE001
            return "unknown"

    # ------------------------------------------------------------------
    # Key / value
    # ------------------------------------------------------------------

    async def get(self, key: str) -> Any | None:
        value = await self._guard("get", lambda: self._provider.get(key), None, key)
        if value is None:
            self._misses += 1
        else:
            self._hits += 1
        return value

    async def set(self, key: str, value: Any, ttl: int | None = None) -> bool:
        async def _set() -> bool:
            await self._provider.set(key, value, ttl if ttl is not None else self._default_ttl)
            return True

        stored = await self._guard("set", _set, False, key)
        if stored:
            self._writes += 1
        return stored

    async def delete(self, key: str) -> bool:
        return await self._guard("delete", lambda: self._provider.delete(key), False, key)

    async def exists(self, key: str) -> bool:
        return await self._guard("exists", lambda: self._provider.exists(key), False, key)

    async def expire(self, key: str, ttl: int) -> bool:
        return await self._guard("expire", lambda: self._provider.expire(key, ttl), False, key)

    async def ttl(self, key: str) -> int:
        return await self._guard("ttl", lambda: self._provider.ttl(key), -2, key)

    async def increment(self, key: str, amount: int = 1) -> int | None:
        return await self._guard("incr", lambda: self._provider.incr(key, amount), None, key)

    async def decrement(self, key: str, amount: int = 1) -> int | None:
        return await self._guard("decr", lambda: self._provider.incr(key, -amount), None, key)

    async def mget(self, keys: list[str]) -> list[Any | None]:
        """Fetch many keys; each failing or missing key yields ``None``."""
        return [await self.get(key) for key in keys]

    async def mset(self, mapping: dict[str, Any], ttl: int | None = None) -> bool:
        results = [await self.set(key, value, ttl) for key, value in mapping.items()]
        return all(results)

    async def with_fallback(
        self,
        key: str,
        fallback: Callable[[], Awaitable[T]],
        ttl: int | None = None,
    ) -> T:
        """Return the cached value for *key*, computing and caching it on a miss.

        Errors raised by *fallback* propagate; only cache errors are swallowed.
        """
        cached = await self.get(key)
        if cached is not None:
            return cached
        value = await fallback()
        if value is not None:
            await self.set(key, value, ttl)
        return value

    # ------------------------------------------------------------------
    # Pattern operations
    # ------------------------------------------------------------------

    async def keys(self, pattern: str = "*") -> list[str]:
        return await self._guard("keys", lambda: self._provider.keys(pattern), [], pattern)

    async def delete_pattern(self, pattern: str) -> int:
        return await self._guard(
            "delete_pattern", lambda: self._provider.delete_pattern(pattern), 0, pattern
        )

    # ------------------------------------------------------------------
    # Hashes, sets and lists
    # ------------------------------------------------------------------

    async def hset(self, key: str, field: str, value: Any) -> bool:
        async def _hset() -> bool:
            await self._provider.hset(key, field, value)
            return True

        return await self._guard("hset", _hset, False, key)

    async def hget(self, key: str, field: str) -> Any | None:
        return await self._guard("hget", lambda: self._provider.hget(key, field), None, key)

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int | None:
        return await self._guard(
            "hincrby", lambda: self._provider.hincrby(key, field, amount), None, key
        )

    async def hgetall(self, key: str) -> dict[str, Any]:
        return await self._guard("hgetall", lambda: self._provider.hgetall(key), {}, key)

    async def hdel(self, key: str, field: str) -> bool:
        return await self._guard("hdel", lambda: self._provider.hdel(key, field), False, key)

    async def sadd(self, key: str, *members: Any) -> int:
        return await self._guard("sadd", lambda: self._provider.sadd(key, *members), 0, key)

    async def srem(self, key: str, *members: Any) -> int:
        return await self._guard("srem", lambda: self._provider.srem(key, *members), 0, key)

    async def smembers(self, key: str) -> set[Any]:
        return await self._guard("smembers", lambda: self._provider.smembers(key), set(), key)

    async def lpush(self, key: str, *values: Any) -> int:
        return await self._guard("lpush", lambda: self._provider.lpush(key, *values), 0, key)

    async def lpop(self, key: str) -> Any | None:
        return await self._guard("lpop", lambda: self._provider.lpop(key), None, key)

    async def lrange(self, key: str, start: int = 0, stop: int = -1) -> list[Any]:
        return await self._guard(
            "lrange", lambda: self._provider.lrange(key, start, stop), [], key
        )

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    async def flush(self) -> bool:
        async def _flush() -> bool:
            await self._provider.flush()
            return True

        return await self._guard("flush", _flush, False)

    async def health_check(self) -> bool:
        """PING the store; ``False`` when it is unreachable."""
        return await self._guard("ping", self._provider.ping, False)

    def get_stats(self) -> dict[str, Any]:
        lookups = self._hits + self._misses
        return {
            "provider": self._safe_provider_name(),
            "hits": self._hits,
            "misses": self._misses,
            "writes": self._writes,
            "errors": self._errors,
            "hit_rate": round(self._hits / lookups, 4) if lookups else 0.0,
        }
