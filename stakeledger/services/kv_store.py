"""
Local key-value store for the identity and draft caches.

Redis-backed in deployments, in-process otherwise. Unlike a read-through
market cache these entries are the only copy of local state, so failures
are raised as TransientIOError rather than degraded to a miss.
"""

import asyncio
import time
from typing import Callable, Optional, Protocol

from stakeledger.config import settings
from stakeledger.services.base import TransientIOError
from stakeledger.utils.logging import get_logger

logger = get_logger(__name__)


class KeyValueStore(Protocol):
    """Minimal async key-value interface injected into the resolver and reconciler."""

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str) -> None: ...

    async def set_if_absent(self, key: str, value: str, ttl: Optional[int] = None) -> bool:
        """Store value only if key is unset; ttl in seconds, None keeps it forever."""
        ...

    async def delete(self, key: str) -> bool: ...


class MemoryKeyValueStore:
    """In-process store. Entries live as long as the process or their ttl."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._data: dict[str, str] = {}
        self._expires: dict[str, float] = {}
        self._clock = clock
        self._lock = asyncio.Lock()

    def _live(self, key: str) -> bool:
        expires = self._expires.get(key)
        if expires is not None and self._clock() >= expires:
            self._data.pop(key, None)
            self._expires.pop(key, None)
        return key in self._data

    async def get(self, key: str) -> Optional[str]:
        if not self._live(key):
            return None
        return self._data[key]

    async def set(self, key: str, value: str) -> None:
        async with self._lock:
            self._data[key] = value
            self._expires.pop(key, None)

    async def set_if_absent(self, key: str, value: str, ttl: Optional[int] = None) -> bool:
        async with self._lock:
            if self._live(key):
                return False
            self._data[key] = value
            if ttl is not None:
                self._expires[key] = self._clock() + ttl
            return True

    async def delete(self, key: str) -> bool:
        async with self._lock:
            live = self._live(key)
            self._data.pop(key, None)
            self._expires.pop(key, None)
            return live

    def __len__(self) -> int:
        return sum(1 for key in list(self._data) if self._live(key))


class RedisKeyValueStore:
    """Async Redis store with namespaced keys."""

    def __init__(self, url: Optional[str] = None, namespace: Optional[str] = None, client=None):
        self._url = url or settings.redis_url
        self._namespace = namespace or settings.cache_namespace
        self._redis = client

    def _key(self, key: str) -> str:
        return f"{self._namespace}:{key}"

    async def connect(self) -> None:
        """Connect to Redis and verify the connection."""
        if self._redis is not None:
            return
        if not self._url:
            raise TransientIOError("REDIS_URL not set")

        import redis.asyncio as aioredis

        self._redis = aioredis.from_url(
            self._url,
            decode_responses=True,
            socket_timeout=5,
            socket_connect_timeout=5,
            retry_on_timeout=True,
        )
        await self._call("ping")
        logger.info("Redis store connected", url=self._url.split("@")[-1])

    async def close(self) -> None:
        """Close Redis connection."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            logger.info("Redis store closed")

    async def _call(self, method: str, *args, **kwargs):
        from redis.exceptions import ConnectionError as RedisConnectionError
        from redis.exceptions import TimeoutError as RedisTimeoutError

        if self._redis is None:
            raise TransientIOError("Redis store not connected")
        try:
            return await getattr(self._redis, method)(*args, **kwargs)
        except (RedisConnectionError, RedisTimeoutError, OSError) as e:
            logger.warning("Redis call failed", method=method, error=str(e))
            raise TransientIOError(f"Redis unavailable: {e}") from e

    async def get(self, key: str) -> Optional[str]:
        return await self._call("get", self._key(key))

    async def set(self, key: str, value: str) -> None:
        await self._call("set", self._key(key), value)

    async def set_if_absent(self, key: str, value: str, ttl: Optional[int] = None) -> bool:
        return bool(await self._call("set", self._key(key), value, nx=True, ex=ttl))

    async def delete(self, key: str) -> bool:
        return bool(await self._call("delete", self._key(key)))


async def create_kv_store() -> KeyValueStore:
    """Build the configured store: Redis when REDIS_URL is set, in-process otherwise."""
    if settings.redis_url:
        store = RedisKeyValueStore()
        await store.connect()
        return store
    logger.info("Local store running in-process (REDIS_URL not set)")
    return MemoryKeyValueStore()
