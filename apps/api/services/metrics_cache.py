"""
Three-tier read-through metrics cache.

Order of reads for ``get_metrics``:

1. durable tier (daily snapshot in the database), when a user id is known;
2. memory tier (``CacheBackend``) keyed by platform, scope and kind;
3. the live platform API through the connector.

Live failures never propagate: the newest cached value is served tagged
``expired`` when one exists, otherwise an empty result tagged ``error``.
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Callable, Optional

import httpx

from services.cache import CacheBackend, CacheEntry, cache_key
from services.connectors.types import (
    CacheInfo,
    SocialMetrics,
    SocialTokens,
    UpstreamAPIError,
    utc_from_timestamp,
)

if TYPE_CHECKING:
    from services.connectors.base import BasePlatformConnector
    from services.metrics_store import DatabaseMetricsTier

logger = logging.getLogger(__name__)

FALLBACK_ERRORS = (UpstreamAPIError, httpx.HTTPError, ValueError, KeyError, TypeError, IndexError)


class MetricsCache:
    def __init__(
        self,
        memory: CacheBackend,
        durable: Optional["DatabaseMetricsTier"] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.memory = memory
        self.durable = durable
        self.clock = clock

    async def get_metrics(
        self,
        connector: "BasePlatformConnector",
        tokens: SocialTokens,
        user_id: Optional[str] = None,
        cache_key: Optional[str] = None,
    ) -> SocialMetrics:
        platform = connector.platform

        if user_id and self.durable is not None:
            stored = await self._load_durable(connector, user_id)
            if stored is not None:
                metrics, timestamp = stored
                metrics.cache = CacheInfo(
                    from_cache=True,
                    timestamp=timestamp,
                    source="database",
                    age=self.clock() - timestamp,
                )
                logger.info("%s metrics for user %s served from database snapshot", platform, user_id)
                return metrics

        scope = cache_key or user_id
        key = self._key(platform, scope)
        entry: Optional[CacheEntry] = await self.memory.get(key) if key else None
        now = self.clock()
        if entry is not None and entry.is_fresh(connector.cache_ttls["metrics"], now):
            logger.info("%s metrics for %s served from memory (age %.0fs)", platform, scope, entry.age(now))
            return self._from_entry(entry, now, expired=False)

        try:
            metrics = await connector.fetch_metrics(tokens, scope=scope)
        except FALLBACK_ERRORS as exc:
            return self._degraded(platform, scope, entry, exc)

        fetched_at = self.clock()
        metrics.cache = CacheInfo(from_cache=False, timestamp=fetched_at, source="api")
        if key:
            await self._write_memory(key, metrics, fetched_at)
        if user_id and self.durable is not None:
            await self._write_durable(connector, user_id, metrics)
        return metrics

    async def invalidate(self, platform: str, scope: str) -> None:
        for kind in ("profile", "items", "metrics", "historical"):
            await self.memory.delete(cache_key(platform, scope, kind))

    @staticmethod
    def _key(platform: str, scope: Optional[str]) -> Optional[str]:
        return cache_key(platform, scope, "metrics") if scope else None

    def _from_entry(self, entry: CacheEntry, now: float, expired: bool) -> SocialMetrics:
        metrics = SocialMetrics.from_dict(entry.data, now=utc_from_timestamp(now))
        metrics.cache = CacheInfo(
            from_cache=True,
            timestamp=entry.timestamp,
            expired=expired,
            source="memory",
            age=entry.age(now),
        )
        return metrics

    def _degraded(
        self,
        platform: str,
        scope: Optional[str],
        entry: Optional[CacheEntry],
        exc: Exception,
    ) -> SocialMetrics:
        rate_limited = isinstance(exc, UpstreamAPIError) and exc.is_rate_limited
        now = self.clock()
        if entry is not None:
            logger.warning(
                "%s live fetch failed for %s (%s%s); serving cached metrics from %.0fs ago",
                platform,
                scope,
                "rate limited: " if rate_limited else "",
                exc,
                entry.age(now),
            )
            return self._from_entry(entry, now, expired=True)

        logger.error("%s live fetch failed for %s with no cached metrics: %s", platform, scope, exc)
        metrics = SocialMetrics.empty(utc_from_timestamp(now))
        metrics.cache = CacheInfo(from_cache=False, timestamp=now, error=True)
        return metrics

    async def _load_durable(self, connector: "BasePlatformConnector", user_id: str):
        try:
            return await self.durable.load(
                user_id,
                connector.platform,
                now=connector.now(),
                period_days=connector.metrics_period_days,
            )
        except Exception:
            logger.exception("Durable metrics lookup failed for %s/%s", user_id, connector.platform)
            return None

    async def _write_memory(self, key: str, metrics: SocialMetrics, timestamp: float) -> None:
        try:
            await self.memory.set(key, metrics.to_dict(include_cache=False), timestamp=timestamp)
        except Exception:
            logger.exception("Metrics memory write-through failed for %s", key)

    async def _write_durable(self, connector: "BasePlatformConnector", user_id: str, metrics: SocialMetrics) -> None:
        try:
            await self.durable.save(user_id, connector.platform, metrics, captured_at=connector.now())
        except Exception:
            logger.exception("Metrics database write-through failed for %s/%s", user_id, connector.platform)

