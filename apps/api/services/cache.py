"""Pluggable key/value cache used by connectors and the metrics read path."""

from __future__ import annotations

import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from config import settings

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    data: Any
    timestamp: float

    def age(self, now: float) -> float:
        return max(now - self.timestamp, 0.0)

    def is_fresh(self, ttl_seconds: float, now: float) -> bool:
        return (now - self.timestamp) < ttl_seconds


def cache_key(platform: str, scope: str, kind: str) -> str:
    return f"social:{platform}:{scope}:{kind}"


class CacheBackend(ABC):
    """Entries are stored without a freshness TTL; callers judge freshness per kind."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self.clock = clock

    @abstractmethod
    async def get(self, key: str) -> Optional[CacheEntry]:
        raise NotImplementedError

    @abstractmethod
    async def set(self, key: str, data: Any, timestamp: Optional[float] = None) -> CacheEntry:
        raise NotImplementedError

    @abstractmethod
    async def delete(self, key: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def clear(self) -> None:
        raise NotImplementedError


class InMemoryCacheBackend(CacheBackend):
    """Process-local cache; entries live until overwritten or the retention window passes."""

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        retention_seconds: Optional[float] = None,
    ) -> None:
        super().__init__(clock)
        self.retention_seconds = retention_seconds
        self._entries: Dict[str, CacheEntry] = {}

    async def get(self, key: str) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self.retention_seconds is not None and entry.age(self.clock()) > self.retention_seconds:
            self._entries.pop(key, None)
            return None
        return entry

    async def set(self, key: str, data: Any, timestamp: Optional[float] = None) -> CacheEntry:
        entry = CacheEntry(data=data, timestamp=self.clock() if timestamp is None else timestamp)
        self._entries[key] = entry
        return entry

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    async def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class RedisCacheBackend(CacheBackend):
    """Shared cache for multi-instance deployments; values must be JSON-serializable."""

    def __init__(
        self,
        url: Optional[str] = None,
        clock: Callable[[], float] = time.time,
        retention_seconds: Optional[int] = None,
        prefix: str = "spc:cache:",
    ) -> None:
        super().__init__(clock)
        self.url = url or settings.REDIS_URL
        self.retention_seconds = retention_seconds or settings.METRICS_STALE_RETENTION_SECONDS
        self.prefix = prefix
        self._client: Optional[redis.Redis] = None

    def _redis(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.from_url(self.url, decode_responses=True)
        return self._client

    async def get(self, key: str) -> Optional[CacheEntry]:
        try:
            raw = await self._redis().get(self.prefix + key)
        except RedisError as exc:
            logger.warning("Redis cache read failed for %s: %s", key, exc)
            return None
        if raw is None:
            return None
        try:
            payload = json.loads(raw)
            return CacheEntry(data=payload["data"], timestamp=float(payload["timestamp"]))
        except (ValueError, KeyError, TypeError):
            logger.warning("Discarding unreadable cache entry %s", key)
            await self.delete(key)
            return None

    async def set(self, key: str, data: Any, timestamp: Optional[float] = None) -> CacheEntry:
        entry = CacheEntry(data=data, timestamp=self.clock() if timestamp is None else timestamp)
        try:
            await self._redis().set(
                self.prefix + key,
                json.dumps({"data": data, "timestamp": entry.timestamp}),
                ex=int(self.retention_seconds),
            )
        except RedisError as exc:
            logger.warning("Redis cache write failed for %s: %s", key, exc)
        return entry

    async def delete(self, key: str) -> None:
        try:
            await self._redis().delete(self.prefix + key)
        except RedisError as exc:
            logger.warning("Redis cache delete failed for %s: %s", key, exc)

    async def clear(self) -> None:
        client = self._redis()
        async for key in client.scan_iter(match=f"{self.prefix}*"):
            await client.delete(key)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def build_cache_backend() -> CacheBackend:
    backend = (settings.METRICS_CACHE_BACKEND or "memory").strip().lower()
    if backend == "redis":
        return RedisCacheBackend()
    return InMemoryCacheBackend(retention_seconds=settings.METRICS_STALE_RETENTION_SECONDS)
