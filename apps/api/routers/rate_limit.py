"""Per-client request quotas for the JSON endpoints (Redis counters, process-local fallback)."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict, Tuple

from fastapi import HTTPException, Request
import redis.asyncio as redis
from redis.exceptions import RedisError

from config import settings

logger = logging.getLogger(__name__)

_local_counters: Dict[str, Tuple[int, float]] = {}
_local_lock = asyncio.Lock()


def _client_identifier(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


async def _consume_local_quota(key: str, limit: int, window_seconds: int) -> bool:
    now = time.time()
    async with _local_lock:
        count, reset_at = _local_counters.get(key, (0, now + window_seconds))
        if now >= reset_at:
            count = 0
            reset_at = now + window_seconds
        count += 1
        _local_counters[key] = (count, reset_at)
        return count <= limit


async def _consume_redis_quota(key: str, window_seconds: int) -> int:
    client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    try:
        current = await client.incr(key)
        if current == 1:
            await client.expire(key, window_seconds)
        return current
    finally:
        await client.aclose()


def rate_limit(prefix: str, limit: int, window_seconds: int = 60) -> Callable[[Request], None]:
    """
    Dependency factory. Platform calls are the scarce resource, so routes that
    can reach a platform API are limited per client and platform path.
    """

    async def _dependency(request: Request):
        if getattr(request.app.state, "disable_rate_limits", False) or limit <= 0:
            return

        platform = request.path_params.get("platform", "all")
        key = f"spc:rate:{prefix}:{platform}:{_client_identifier(request)}"

        try:
            allowed = await _consume_redis_quota(key, window_seconds) <= limit
        except (RedisError, OSError) as exc:
            logger.debug("Rate limiter falling back to local counters: %s", exc)
            allowed = await _consume_local_quota(key, limit, window_seconds)

        if not allowed:
            logger.warning("Rate limit exceeded for %s (%s)", key, limit)
            raise HTTPException(
                status_code=429,
                detail=f"Rate limit exceeded for {prefix}. Try again later.",
            )

    return _dependency
