"""In-memory cache provider using cachetools.TLRUCache.

Fast, single-process implementation of :class:`ICacheProvider` covering
the full primitive set (key/value, counters, hashes, sets, lists, glob
patterns).  ``TLRUCache`` is used instead of ``TTLCache`` because each
entry carries its own expiry, which ``set(..., ttl=...)`` and ``expire``
rely on.  Can be swapped for Redis via the ICacheProvider interface.
"""

from __future__ import annotations

import fnmatch
import math
import time
from dataclasses import dataclass
from typing import Any

import structlog
from cachetools import TLRUCache

from src.interfaces.cache_provider import ICacheProvider
from src.utils.errors import CacheError

logger = structlog.get_logger(logger_name=__name__)

_NO_EXPIRY = math.inf


@dataclass(frozen=True)
class _Entry:
    value: Any
    expires_at: float


def _entry_expiry(_key: str, entry: _Entry, _now: float) -> float:
    return entry.expires_at


class MemoryCacheProvider(ICacheProvider):
    """In-memory cache backed by ``cachetools.TLRUCache``.

    Parameters
    ----------
    max_size:
        Maximum number of entries before the least-recently-used entry
        is evicted.
    ttl:
        Default time-to-live in seconds for :meth:`set` without a TTL.
        Hashes, sets and lists created implicitly never expire until
        :meth:`expire` is called on them.
    timer:
        Monotonic clock; injectable so tests can advance time.
    """

    def __init__(self, max_size: int = 1000, ttl: int = 3600, timer=time.monotonic) -> None:
        self._default_ttl = ttl
        self._timer = timer
        self._cache: TLRUCache[str, _Entry] = TLRUCache(
            maxsize=max_size, ttu=_entry_expiry, timer=timer
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _expiry_for(self, ttl: int | None) -> float:
        return self._timer() + (self._default_ttl if ttl is None else ttl)

    def _get_entry(self, key: str) -> _Entry | None:
        return self._cache.get(key)

    def _get_typed(self, key: str, kind: type) -> _Entry | None:
        entry = self._get_entry(key)
        if entry is not None and not isinstance(entry.value, kind):
            raise CacheError(
                f"Key {key!r} holds {type(entry.value).__name__}, not {kind.__name__}",
                provider_name=self.get_provider_name(),
                code="WRONG_TYPE",
            )
        return entry

    def _put(self, key: str, value: Any, expires_at: float) -> None:
        self._cache[key] = _Entry(value=value, expires_at=expires_at)

    # ------------------------------------------------------------------
    # Key / value
    # ------------------------------------------------------------------

    async def get(self, key: str) -> Any | None:
        entry = self._get_entry(key)
        if entry is None:
            logger.debug("cache_miss", key=key)
            return None
        logger.debug("cache_hit", key=key)
        return entry.value

    async def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        self._put(key, value, self._expiry_for(ttl))
        logger.debug("cache_set", key=key, ttl=ttl or self._default_ttl)

    async def delete(self, key: str) -> bool:
        existed = self._cache.pop(key, None) is not None
        logger.debug("cache_delete", key=key, existed=existed)
        return existed

    async def exists(self, key: str) -> bool:
        return key in self._cache

    async def expire(self, key: str, ttl: int) -> bool:
        entry = self._get_entry(key)
        if entry is None:
            return False
        self._put(key, entry.value, self._timer() + ttl)
        return True

    async def ttl(self, key: str) -> int:
        entry = self._get_entry(key)
        if entry is None:
            return -2
        if entry.expires_at == _NO_EXPIRY:
            return -1
        return max(0, math.ceil(entry.expires_at - self._timer()))

    async def incr(self, key: str, amount: int = 1) -> int:
        entry = self._get_entry(key)
        if entry is None:
            self._put(key, amount, _NO_EXPIRY)
            return amount
        if isinstance(entry.value, bool) or not isinstance(entry.value, int):
            raise CacheError(
                f"Key {key!r} does not hold an integer",
                provider_name=self.get_provider_name(),
                code="WRONG_TYPE",
            )
        value = entry.value + amount
        self._put(key, value, entry.expires_at)
        return value

    # ------------------------------------------------------------------
    # Pattern operations
    # ------------------------------------------------------------------

    async def keys(self, pattern: str = "*") -> list[str]:
        self._cache.expire()
        return [k for k in list(self._cache.keys()) if fnmatch.fnmatchcase(k, pattern)]

    async def delete_pattern(self, pattern: str) -> int:
        matched = await self.keys(pattern)
        for key in matched:
            self._cache.pop(key, None)
        logger.debug("cache_delete_pattern", pattern=pattern, deleted=len(matched))
        return len(matched)

    # ------------------------------------------------------------------
    # Hashes
    # ------------------------------------------------------------------

    async def hset(self, key: str, field: str, value: Any) -> None:
        entry = self._get_typed(key, dict)
        if entry is None:
            self._put(key, {field: value}, _NO_EXPIRY)
            return
        self._put(key, {**entry.value, field: value}, entry.expires_at)

    async def hget(self, key: str, field: str) -> Any | None:
        entry = self._get_typed(key, dict)
        return entry.value.get(field) if entry else None

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        entry = self._get_typed(key, dict)
        current = entry.value.get(field, 0) if entry else 0
        if isinstance(current, bool) or not isinstance(current, int):
            raise CacheError(
                f"Field {field!r} of {key!r} does not hold an integer",
                provider_name=self.get_provider_name(),
                code="WRONG_TYPE",
            )
        value = current + amount
        if entry is None:
            self._put(key, {field: value}, _NO_EXPIRY)
        else:
            self._put(key, {**entry.value, field: value}, entry.expires_at)
        return value

    async def hgetall(self, key: str) -> dict[str, Any]:
        entry = self._get_typed(key, dict)
        return dict(entry.value) if entry else {}

    async def hdel(self, key: str, field: str) -> bool:
        entry = self._get_typed(key, dict)
        if entry is None or field not in entry.value:
            return False
        remaining = {k: v for k, v in entry.value.items() if k != field}
        if remaining:
            self._put(key, remaining, entry.expires_at)
        else:
            self._cache.pop(key, None)
        return True

    # ------------------------------------------------------------------
    # Sets
    # ------------------------------------------------------------------

    async def sadd(self, key: str, *members: Any) -> int:
        entry = self._get_typed(key, set)
        current = set(entry.value) if entry else set()
        added = len(set(members) - current)
        self._put(key, current | set(members), entry.expires_at if entry else _NO_EXPIRY)
        return added

    async def srem(self, key: str, *members: Any) -> int:
        entry = self._get_typed(key, set)
        if entry is None:
            return 0
        removed = len(entry.value & set(members))
        remaining = entry.value - set(members)
        if remaining:
            self._put(key, remaining, entry.expires_at)
        else:
            self._cache.pop(key, None)
        return removed

    async def smembers(self, key: str) -> set[Any]:
        entry = self._get_typed(key, set)
        return set(entry.value) if entry else set()

    # ------------------------------------------------------------------
    # Lists
    # ------------------------------------------------------------------

    async def lpush(self, key: str, *values: Any) -> int:
        entry = self._get_typed(key, list)
        current = list(entry.value) if entry else []
        updated = list(reversed(values)) + current
        self._put(key, updated, entry.expires_at if entry else _NO_EXPIRY)
        return len(updated)

    async def lpop(self, key: str) -> Any | None:
        entry = self._get_typed(key, list)
        if entry is None or not entry.value:
            return None
        head, *rest = entry.value
        if rest:
            self._put(key, rest, entry.expires_at)
        else:
            self._cache.pop(key, None)
        return head

    async def lrange(self, key: str, start: int, stop: int) -> list[Any]:
        entry = self._get_typed(key, list)
        if entry is None:
            return []
        items = entry.value
        length = len(items)
        if start < 0:
            start = max(0, length + start)
        if stop < 0:
            stop = length + stop
        return list(items[start : stop + 1])

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    async def flush(self) -> None:
        self._cache.clear()
        logger.debug("cache_flushed")

    async def ping(self) -> bool:
        return True

    def get_provider_name(self) -> str:
        return "memory_cache"
