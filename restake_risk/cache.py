"""
Result caching for computed risk values and deduplication of in-flight
computations per cache key.
"""
import asyncio
import time
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Dict, Optional, Tuple, TypeVar

import redis.asyncio as aioredis
import structlog

logger = structlog.get_logger()

T = TypeVar("T")


class ResultCache(ABC):
    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        ...


class InMemoryResultCache(ResultCache):
    """Process-local TTL cache. Expired entries are dropped on read and on every write."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: Dict[str, Tuple[float, str]] = {}

    async def get(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        return value

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        now = self._clock()
        # Drop expired entries so keys that are never read again do not accumulate
        expired = [k for k, (expires_at, _) in self._entries.items() if now >= expires_at]
        for k in expired:
            del self._entries[k]
        self._entries[key] = (now + ttl_seconds, value)

    def __len__(self):
        return len(self._entries)


class RedisResultCache(ResultCache):
    def __init__(self, client: aioredis.Redis):
        self.client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisResultCache":
        client = aioredis.from_url(
            url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=20,
            socket_connect_timeout=5,
            socket_timeout=5
        )
        return cls(client)

    async def get(self, key: str) -> Optional[str]:
        value = await self.client.get(key)
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self.client.setex(key, ttl_seconds, value)

    async def health_check(self) -> dict:
        health = {"status": "disconnected", "latency_ms": None}
        try:
            start_time = time.time()
            await self.client.ping()
            latency = (time.time() - start_time) * 1000
            health = {"status": "connected", "latency_ms": round(latency, 2)}
        except Exception as e:
            health["error"] = str(e)
        return health

    async def close(self):
        await self.client.aclose()
        logger.info("Disconnected from Redis")


async def cache_get(cache: Optional[ResultCache], key: str) -> Optional[str]:
    """Read through a cache that may be missing or broken; failures count as misses"""
    if cache is None:
        return None
    try:
        return await cache.get(key)
    except Exception as e:
        logger.warning("Cache read failed, computing directly", key=key, error=str(e))
        return None


async def cache_set(cache: Optional[ResultCache], key: str, value: str, ttl_seconds: int) -> None:
    """Write to the cache; failures are logged and never abort the evaluation"""
    if cache is None:
        return
    try:
        await cache.set(key, value, ttl_seconds)
    except Exception as e:
        logger.warning("Cache write failed", key=key, error=str(e))


class InFlightRegistry:
    """At most one running computation per key; concurrent callers share its result."""

    def __init__(self):
        self._tasks: Dict[str, asyncio.Task] = {}

    def __contains__(self, key: str) -> bool:
        return key in self._tasks

    def _forget(self, key: str, task: asyncio.Task):
        if self._tasks.get(key) is task:
            del self._tasks[key]

    async def run(self, key: str, factory: Callable[[], Awaitable[T]]) -> T:
        task = self._tasks.get(key)
        if task is None:
            task = asyncio.ensure_future(factory())
            self._tasks[key] = task
            task.add_done_callback(lambda done: self._forget(key, done))
        else:
            logger.debug("Joining in-flight computation", key=key)
        # Shield so one cancelled caller does not cancel the shared computation
        return await asyncio.shield(task)
