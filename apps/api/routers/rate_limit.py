"""Redis-backed rate limiting dependency with an in-process fallback."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, Tuple

from fastapi import Request
import redis.asyncio as redis
from redis.exceptions import RedisError

from config import settings
from services.errors import RateLimited

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


async def _consume_local_quota(key: str, limit: int, window_seconds: int) -> Tuple[bool, int]:
    now = time.time()
    async with _local_lock:
        count, reset_at = _local_counters.get(key, (0, now + window_seconds))
        if now >= reset_at:
            count = 0
            reset_at = now + window_seconds
        count += 1
        _local_counters[key] = (count, reset_at)
        return count <= limit, max(int(reset_at - now), 1)


async def _consume_redis_quota(key: str, limit: int, window_seconds: int) -> Tuple[bool, int]:
    client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    try:
        current = await client.incr(key)
        if current == 1:
            await client.expire(key, window_seconds)
        ttl = await client.ttl(key)
    finally:
        await client.aclose()
    return current <= limit, ttl if ttl and ttl > 0 else window_seconds


def rate_limit(prefix: str, limit: int, window_seconds: int) -> Callable[[Request], Awaitable[None]]:
    """Return a FastAPI dependency enforcing a per-client quota for ``prefix``."""

    async def _dependency(request: Request) -> None:
        if getattr(request.app.state, "disable_rate_limits", False):
            return

        key = f"softcodes:rate:{prefix}:{_client_identifier(request)}"
        try:
            allowed, retry_after = await _consume_redis_quota(key, limit, window_seconds)
        except (RedisError, OSError) as exc:
            logger.debug("Rate limit store unavailable, counting locally: %s", exc)
            allowed, retry_after = await _consume_local_quota(key, limit, window_seconds)

        if not allowed:
            raise RateLimited(
                f"Too many {prefix} requests. Try again later.",
                extra={"retry_after": retry_after},
            )

    return _dependency
