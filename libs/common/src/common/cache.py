"""Read-through cache and debounce primitives over a shared Redis backend.

The cache only ever holds derived copies of store state, so every backend
failure degrades to a miss (or a no-op write) instead of surfacing to the
caller.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from redis.asyncio import Redis
from redis.exceptions import RedisError

LOGGER = logging.getLogger("gigmatch.cache")
INVALIDATE_BATCH_SIZE = 500

T = TypeVar("T")


def create_redis_client(url: str) -> Redis:
    return Redis.from_url(
        url,
        decode_responses=True,
        socket_connect_timeout=5,
        socket_timeout=5,
    )


def _log_failure(event: str, key: str, exc: Exception) -> None:
    LOGGER.warning(json.dumps({"event": event, "key": key, "error": str(exc)}))


class CacheLayer:
    def __init__(self, backend: Redis) -> None:
        self.backend = backend

    async def get(self, key: str) -> Any | None:
        """Return the decoded value for ``key`` or ``None`` on a miss."""
        try:
            raw = await self.backend.get(key)
        except RedisError as exc:
            _log_failure("cache_get_failed", key, exc)
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError as exc:
            _log_failure("cache_decode_failed", key, exc)
            return None

    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> bool:
        try:
            serialized = json.dumps(value)
            if ttl_seconds:
                await self.backend.set(key, serialized, ex=ttl_seconds)
            else:
                await self.backend.set(key, serialized)
        except (RedisError, TypeError, ValueError) as exc:
            _log_failure("cache_set_failed", key, exc)
            return False
        return True

    async def get_or_set(
        self,
        key: str,
        producer: Callable[[], Awaitable[T]],
        ttl_seconds: int | None = None,
    ) -> T:
        """Read-through lookup.

        Concurrent misses on the same key may each run ``producer``; the store
        stays authoritative so the duplicate work is harmless. ``None`` results
        are returned but never cached.
        """
        cached = await self.get(key)
        if cached is not None:
            return cached
        value = await producer()
        if value is not None:
            await self.set(key, value, ttl_seconds)
        return value

    async def delete(self, key: str) -> bool:
        try:
            await self.backend.delete(key)
        except RedisError as exc:
            _log_failure("cache_delete_failed", key, exc)
            return False
        return True

    async def exists(self, key: str) -> bool:
        try:
            return bool(await self.backend.exists(key))
        except RedisError as exc:
            _log_failure("cache_exists_failed", key, exc)
            return False

    async def expire(self, key: str, seconds: int) -> bool:
        try:
            await self.backend.expire(key, seconds)
        except RedisError as exc:
            _log_failure("cache_expire_failed", key, exc)
            return False
        return True

    async def invalidate_pattern(self, pattern: str) -> int:
        try:
            keys = [key async for key in self.backend.scan_iter(match=pattern, count=500)]
            deleted = 0
            for start in range(0, len(keys), INVALIDATE_BATCH_SIZE):
                deleted += await self.backend.delete(*keys[start : start + INVALIDATE_BATCH_SIZE])
        except RedisError as exc:
            _log_failure("cache_invalidate_failed", pattern, exc)
            return 0
        if deleted:
            LOGGER.debug(
                json.dumps({"event": "cache_invalidated", "pattern": pattern, "deleted": deleted})
            )
        return deleted

    async def increment(self, key: str) -> int:
        try:
            return int(await self.backend.incr(key))
        except RedisError as exc:
            _log_failure("cache_increment_failed", key, exc)
            return 0

    async def decrement(self, key: str) -> int:
        try:
            return int(await self.backend.decr(key))
        except RedisError as exc:
            _log_failure("cache_decrement_failed", key, exc)
            return 0

    async def mark_if_absent(self, key: str, ttl_seconds: int) -> bool:
        """Set a debounce marker; True only for the caller that created it.

        Uses a single ``SET NX EX`` so concurrent callers cannot both win. With
        the backend down the marker counts as absent and the caller proceeds.
        """
        try:
            created = await self.backend.set(key, "1", ex=ttl_seconds, nx=True)
        except RedisError as exc:
            _log_failure("cache_mark_failed", key, exc)
            return True
        return bool(created)

    async def ping(self) -> bool:
        try:
            return bool(await self.backend.ping())
        except RedisError:
            return False

    async def close(self) -> None:
        try:
            await self.backend.aclose()
        except RedisError as exc:
            _log_failure("cache_close_failed", "*", exc)
