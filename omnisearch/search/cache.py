"""
Cache Capability

The embedding cache and the query result cache are written against the
small async Cache interface below, so tests use the deterministic in-memory
store and deployments with REDIS_URL set share entries across instances.

Entries are immutable once written: there is no read-modify-write, so the
only atomicity needed is per get/set/delete call.
"""

import logging
import math
import os
import pickle
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional

import redis.asyncio as redis
from cachetools import TLRUCache

logger = logging.getLogger(__name__)


class Cache(ABC):
    """Async key/value cache with per-entry TTL (seconds)."""

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """Return the cached value, or None on miss/expiry."""
        pass

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Store value under key for ttl seconds (cache default when None)."""
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Remove one key. Returns True if it existed."""
        pass

    @abstractmethod
    async def delete_prefix(self, prefix: str) -> int:
        """Remove every key starting with prefix. Returns count removed."""
        pass

    @abstractmethod
    async def clear(self) -> None:
        pass

    @abstractmethod
    async def stats(self) -> Dict[str, Any]:
        pass


def _entry_expiry(key, value, now):
    # Values are stored as (payload, ttl_seconds)
    return now + value[1]


class _TLRUStore(TLRUCache):
    """TLRUCache that counts capacity evictions."""

    def __init__(self, maxsize: int, timer: Callable[[], float]):
        super().__init__(maxsize=maxsize, ttu=_entry_expiry, timer=timer)
        self.evictions = 0

    def popitem(self):
        item = super().popitem()
        self.evictions += 1
        return item


class InMemoryCache(Cache):
    """
    Process-local cache: TTL per entry plus LRU eviction at capacity.

    cachetools structures are not thread-safe, so every operation holds a
    lock. No lock is held across an await.
    """

    def __init__(
        self,
        maxsize: int = 1000,
        default_ttl: float = 600,
        timer: Callable[[], float] = time.monotonic,
    ):
        self.default_ttl = default_ttl
        self._store = _TLRUStore(maxsize=maxsize, timer=timer)
        self._lock = threading.Lock()

    async def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._store.get(key)
        if entry is None:
            return None
        return entry[0]

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        ttl = self.default_ttl if ttl is None else ttl
        if ttl <= 0:
            return
        with self._lock:
            self._store[key] = (value, ttl)

    async def delete(self, key: str) -> bool:
        with self._lock:
            return self._store.pop(key, None) is not None

    async def delete_prefix(self, prefix: str) -> int:
        with self._lock:
            self._store.expire()
            doomed = [k for k in list(self._store.keys()) if k.startswith(prefix)]
            for key in doomed:
                self._store.pop(key, None)
        return len(doomed)

    async def clear(self) -> None:
        with self._lock:
            self._store.clear()

    async def stats(self) -> Dict[str, Any]:
        with self._lock:
            self._store.expire()
            size = len(self._store)
            return {
                "backend": "memory",
                "size": size,
                "max_size": self._store.maxsize,
                "utilization": size / self._store.maxsize if self._store.maxsize else 0.0,
                "evictions": self._store.evictions,
            }


class RedisCache(Cache):
    """
    Shared cache backed by Redis.

    Values are pickled. Redis faults are logged and treated as misses so a
    cache outage slows requests down instead of failing them.
    """

    def __init__(
        self,
        url: str,
        namespace: str = "omnisearch",
        default_ttl: float = 600,
        client: Optional[redis.Redis] = None,
    ):
        self.url = url
        self.namespace = namespace
        self.default_ttl = default_ttl
        self._client = client

    def _get_client(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.from_url(
                self.url,
                decode_responses=False,
                socket_connect_timeout=2,
                socket_timeout=2,
            )
        return self._client

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    async def get(self, key: str) -> Optional[Any]:
        try:
            data = await self._get_client().get(self._key(key))
        except redis.RedisError as e:
            logger.error(f"Redis cache get failed for {key}: {e}")
            return None
        if data is None:
            return None
        try:
            return pickle.loads(data)
        except (pickle.UnpicklingError, EOFError, AttributeError, ImportError) as e:
            logger.warning(f"Dropping undecodable cache entry {key}: {e}")
            await self.delete(key)
            return None

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        ttl = self.default_ttl if ttl is None else ttl
        if ttl <= 0:
            return
        try:
            await self._get_client().setex(self._key(key), math.ceil(ttl), pickle.dumps(value))
        except redis.RedisError as e:
            logger.error(f"Redis cache set failed for {key}: {e}")

    async def delete(self, key: str) -> bool:
        try:
            return bool(await self._get_client().delete(self._key(key)))
        except redis.RedisError as e:
            logger.error(f"Redis cache delete failed for {key}: {e}")
            return False

    async def delete_prefix(self, prefix: str) -> int:
        client = self._get_client()
        try:
            keys = [k async for k in client.scan_iter(match=f"{self._key(prefix)}*")]
            if not keys:
                return 0
            return await client.delete(*keys)
        except redis.RedisError as e:
            logger.error(f"Redis cache prefix delete failed for {prefix}: {e}")
            return 0

    async def clear(self) -> None:
        await self.delete_prefix("")

    async def stats(self) -> Dict[str, Any]:
        try:
            info = await self._get_client().info("memory")
        except redis.RedisError as e:
            logger.error(f"Redis cache stats failed: {e}")
            return {"backend": "redis", "available": False}
        return {
            "backend": "redis",
            "available": True,
            "used_memory_human": info.get("used_memory_human", "0B"),
        }


def create_cache(namespace: str, maxsize: int, default_ttl: float) -> Cache:
    """Redis when REDIS_URL is set, otherwise an in-process cache."""
    redis_url = os.getenv("REDIS_URL")
    if redis_url:
        logger.info(f"Using Redis cache for '{namespace}'")
        return RedisCache(redis_url, namespace=f"omnisearch:{namespace}", default_ttl=default_ttl)
    return InMemoryCache(maxsize=maxsize, default_ttl=default_ttl)
