"""Read-through cache for course structure.

Progress recalculation needs the full set of unit ids for a course on
every call.  That set changes only when an author edits the course, so
ProgressCalculationService keeps it here under ``course_structure:<id>``:

  miss → row store → populate (TTL) → return
  hit  → return

An entry leaves the cache when its TTL runs out or when
invalidate_course_cache() deletes it after an edit, whichever is first.
Completion rows are never cached.
"""

from __future__ import annotations

import fnmatch
import time
from collections.abc import Callable
from typing import Protocol, runtime_checkable

from lms_progress.db.redis import redis_pool


@runtime_checkable
class CacheService(Protocol):
    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def delete_pattern(self, pattern: str) -> None:
        """Delete every key matching a glob, e.g. ``course_structure:*``."""
        ...


class InMemoryCacheService:
    """Process-local cache with TTL expiry, used when Redis is not configured."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        # key -> (value, expires_at)
        self._store: dict[str, tuple[str, float]] = {}
        self._clock = clock

    async def get(self, key: str) -> str | None:
        entry = self._store.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._store[key]
            return None
        return value

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._store[key] = (value, self._clock() + ttl_seconds)

    async def delete(self, key: str) -> None:
        self._store.pop(key, None)

    async def delete_pattern(self, pattern: str) -> None:
        for key in fnmatch.filter(list(self._store), pattern):
            del self._store[key]


class RedisCacheService:
    """Shared cache; every API instance sees the same course structures."""

    _NAMESPACE = "cache:"

    def __init__(self, redis_client) -> None:
        self._redis = redis_client

    def _key(self, key: str) -> str:
        return f"{self._NAMESPACE}{key}"

    async def get(self, key: str) -> str | None:
        return await self._redis.get(self._key(key))

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self._redis.set(self._key(key), value, ex=ttl_seconds)

    async def delete(self, key: str) -> None:
        await self._redis.delete(self._key(key))

    async def delete_pattern(self, pattern: str) -> None:
        # SCAN in pages; KEYS would block the server on a large keyspace.
        batch: list[str] = []
        async for key in self._redis.scan_iter(match=self._key(pattern), count=100):
            batch.append(key)
            if len(batch) >= 100:
                await self._redis.delete(*batch)
                batch.clear()
        if batch:
            await self._redis.delete(*batch)


if redis_pool is not None:
    cache_service: CacheService = RedisCacheService(redis_pool)
else:
    cache_service = InMemoryCacheService()
