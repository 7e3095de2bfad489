"""
Cache stores for the permission cache

Redis is used when REDIS_URL is configured so cached decisions are shared
across replicas; otherwise an in-process TTL store is used.

Stores raise DependencyError on any failure. Deciding whether a cache
failure matters is the caller's job.
"""
import json
import logging
import re
import time
from abc import ABC, abstractmethod
from threading import Lock
from typing import Any, Dict, List, Optional, Tuple

import redis.asyncio as redis

from rbac_core.core.exceptions import DependencyError

logger = logging.getLogger(__name__)


def escape_glob(value: str) -> str:
    """Escape Redis glob metacharacters in a key fragment."""
    return re.sub(r"([\\*?\[\]])", r"\\\1", value)


def glob_to_regex(pattern: str):
    """Compile a Redis-style glob (* ? and backslash escapes) to a regex."""
    parts = []
    i = 0
    while i < len(pattern):
        ch = pattern[i]
        if ch == "\\" and i + 1 < len(pattern):
            parts.append(re.escape(pattern[i + 1]))
            i += 2
            continue
        if ch == "*":
            parts.append(".*")
        elif ch == "?":
            parts.append(".")
        else:
            parts.append(re.escape(ch))
        i += 1
    return re.compile("^" + "".join(parts) + "$", re.DOTALL)


class CacheStore(ABC):
    """Key/value store with per-key TTL."""

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """Return the cached value or None on miss."""

    @abstractmethod
    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        ...

    @abstractmethod
    async def delete(self, *keys: str) -> int:
        ...

    @abstractmethod
    async def keys(self, pattern: str) -> List[str]:
        """Keys matching a glob-style pattern."""

    async def close(self) -> None:
        return None


class RedisCacheStore(CacheStore):
    """Cache store backed by redis.asyncio; values are JSON encoded."""

    def __init__(self, client: redis.Redis):
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisCacheStore":
        client = redis.from_url(url, encoding="utf-8", decode_responses=True)
        return cls(client)

    async def ping(self) -> bool:
        try:
            return bool(await self._client.ping())
        except Exception as e:
            raise DependencyError(f"Redis ping failed: {e}", dependency="cache") from e

    async def get(self, key: str) -> Optional[Any]:
        try:
            data = await self._client.get(key)
        except Exception as e:
            raise DependencyError(f"Redis get failed for {key}: {e}", dependency="cache") from e
        if data is None:
            return None
        return json.loads(data)

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        try:
            await self._client.setex(key, ttl_seconds, json.dumps(value))
        except Exception as e:
            raise DependencyError(f"Redis set failed for {key}: {e}", dependency="cache") from e

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        try:
            return await self._client.delete(*keys)
        except Exception as e:
            raise DependencyError(f"Redis delete failed: {e}", dependency="cache") from e

    async def keys(self, pattern: str) -> List[str]:
        try:
            return [key async for key in self._client.scan_iter(match=pattern)]
        except Exception as e:
            raise DependencyError(f"Redis scan failed for {pattern}: {e}", dependency="cache") from e

    async def close(self) -> None:
        await self._client.close()


class InMemoryCacheStore(CacheStore):
    """
    Per-process TTL cache.

    Used when Redis is not configured and in tests. Expired keys are
    dropped lazily on access.
    """

    def __init__(self, clock=time.monotonic):
        self._data: Dict[str, Tuple[float, str]] = {}
        self._lock = Lock()
        self._clock = clock

    def _live(self, key: str) -> Optional[str]:
        item = self._data.get(key)
        if item is None:
            return None
        expires_at, payload = item
        if self._clock() >= expires_at:
            del self._data[key]
            return None
        return payload

    async def get(self, key: str) -> Optional[Any]:
        with self._lock:
            payload = self._live(key)
        return json.loads(payload) if payload is not None else None

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        payload = json.dumps(value)
        with self._lock:
            self._data[key] = (self._clock() + ttl_seconds, payload)

    async def delete(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self._data.pop(key, None) is not None:
                    removed += 1
        return removed

    async def keys(self, pattern: str) -> List[str]:
        regex = glob_to_regex(pattern)
        with self._lock:
            return [k for k in list(self._data) if self._live(k) is not None and regex.match(k)]

    def __len__(self) -> int:
        with self._lock:
            return sum(1 for k in list(self._data) if self._live(k) is not None)


async def create_cache_store(redis_url: str) -> CacheStore:
    """
    Build the cache store for the configured URL.

    Falls back to the in-process store if Redis is unreachable at startup.
    """
    if not redis_url:
        logger.info("REDIS_URL not configured, using in-process permission cache")
        return InMemoryCacheStore()

    store = RedisCacheStore.from_url(redis_url)
    try:
        await store.ping()
        logger.info("Redis connection established for permission cache")
        return store
    except DependencyError as e:
        logger.warning(f"Redis connection failed: {e}. Falling back to in-memory.")
        await store.close()
        return InMemoryCacheStore()
