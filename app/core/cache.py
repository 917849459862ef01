"""Cache layer: Redis when reachable, in-process TTL store otherwise.

Values are JSON-serializable objects. The cache is a derived view of the
content store, so backend errors never fail a caller: reads degrade to
misses and writes to no-ops.
"""

import asyncio
import fnmatch
import hashlib
import json
import time
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from app.core.logging import get_logger

logger = get_logger(__name__)


class CacheBackend(Protocol):
    name: str

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str, ttl: int | None) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def delete_pattern(self, pattern: str) -> int: ...

    async def close(self) -> None: ...


class InMemoryCacheBackend:
    """Process-local TTL store with the same semantics as the Redis backend."""

    name = "memory"

    def __init__(self):
        # key -> (value, expires_at or None)
        self._entries: dict[str, tuple[str, float | None]] = {}

    async def get(self, key: str) -> str | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= time.monotonic():
            del self._entries[key]
            return None
        return value

    async def set(self, key: str, value: str, ttl: int | None) -> None:
        expires_at = time.monotonic() + ttl if ttl else None
        self._entries[key] = (value, expires_at)

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    async def delete_pattern(self, pattern: str) -> int:
        keys = [key for key in self._entries if fnmatch.fnmatchcase(key, pattern)]
        for key in keys:
            del self._entries[key]
        return len(keys)

    async def close(self) -> None:
        self._entries.clear()


class RedisCacheBackend:
    name = "redis"

    def __init__(self, client: aioredis.Redis):
        self._client = client

    async def get(self, key: str) -> str | None:
        return await self._client.get(key)

    async def set(self, key: str, value: str, ttl: int | None) -> None:
        await self._client.set(key, value, ex=ttl or None)

    async def delete(self, key: str) -> None:
        await self._client.delete(key)

    async def delete_pattern(self, pattern: str) -> int:
        keys = [key async for key in self._client.scan_iter(match=pattern)]
        if not keys:
            return 0
        return await self._client.delete(*keys)

    async def close(self) -> None:
        await self._client.aclose()


async def connect_redis(url: str | None) -> aioredis.Redis | None:
    """
    Open and ping a Redis client.

    Returns:
        Connected client, or None when no URL is configured or Redis is unreachable
    """
    if not url:
        return None
    client = aioredis.from_url(url, decode_responses=True)
    try:
        await client.ping()
    except (RedisError, OSError) as e:
        logger.warning(f"Redis unreachable at startup, using in-process backends: {e}")
        await client.aclose()
        return None
    logger.info("Connected to Redis")
    return client


class Cache:
    """Key/value cache with TTLs and single-flight ``get_or_set``."""

    def __init__(self, backend: CacheBackend | None = None, default_ttl: int | None = None):
        self.backend = backend or InMemoryCacheBackend()
        self.default_ttl = default_ttl
        self._inflight: dict[str, asyncio.Future] = {}

    @property
    def backend_name(self) -> str:
        return self.backend.name

    async def get(self, key: str) -> Any | None:
        try:
            raw = await self.backend.get(key)
        except Exception as e:
            logger.warning(f"Cache read failed for {key}, treating as miss: {e}")
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, json.JSONDecodeError):
            logger.warning(f"Discarding undecodable cache entry {key}")
            return None

    async def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        try:
            await self.backend.set(key, json.dumps(value), ttl or self.default_ttl)
        except Exception as e:
            logger.warning(f"Cache write failed for {key}: {e}")

    async def delete(self, key: str) -> None:
        try:
            await self.backend.delete(key)
        except Exception as e:
            logger.warning(f"Cache delete failed for {key}: {e}")

    async def delete_pattern(self, pattern: str) -> int:
        try:
            return await self.backend.delete_pattern(pattern)
        except Exception as e:
            logger.warning(f"Cache pattern delete failed for {pattern}: {e}")
            return 0

    async def get_or_set(
        self,
        key: str,
        factory: Callable[[], Awaitable[Any]],
        ttl: int | None = None,
    ) -> Any:
        """
        Return the cached value for ``key`` or compute it once.

        Concurrent callers with the same key share one factory call and
        receive the same result. A failing factory is not cached and its
        exception is raised to every waiting caller.

        Args:
            key: Cache key
            factory: Coroutine function producing a JSON-serializable value
            ttl: Expiry in seconds (defaults to the cache default)

        Returns:
            The cached or freshly computed value
        """
        cached = await self.get(key)
        if cached is not None:
            return cached

        inflight = self._inflight.get(key)
        if inflight is not None:
            try:
                return await asyncio.shield(inflight)
            except asyncio.CancelledError:
                # The owning caller was cancelled, not us: take over the computation
                if inflight.cancelled() and not asyncio.current_task().cancelling():
                    return await self.get_or_set(key, factory, ttl)
                raise

        future = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        try:
            value = await factory()
        except BaseException as e:
            if isinstance(e, asyncio.CancelledError):
                future.cancel()
            else:
                future.set_exception(e)
                # Mark retrieved so an unawaited future does not log a warning
                future.exception()
            raise
        else:
            future.set_result(value)
            await self.set(key, value, ttl)
            return value
        finally:
            self._inflight.pop(key, None)


# =============================================================================
# Key helpers
# =============================================================================


def _normalize_prompt(prompt: str) -> str:
    return " ".join(prompt.lower().split())


def report_cache_key(prompt: str, model: str, options: dict[str, Any]) -> str:
    """Key for a completed generation: normalized prompt, model and option flags."""
    flags = json.dumps(options, sort_keys=True)
    digest = hashlib.sha256(f"{_normalize_prompt(prompt)}|{model}|{flags}".encode()).hexdigest()
    return f"report:{digest}"


def export_cache_key(report_id: str, export_format: str) -> str:
    return f"export:{report_id}:{export_format}"


def export_cache_pattern(report_id: str) -> str:
    return f"export:{report_id}:*"
