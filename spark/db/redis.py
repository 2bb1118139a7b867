"""Redis client helpers (async).

Used for:
- idempotency markers and CSRF tokens
- quota counters and provider response caches
- migration batch progress and named locks
"""

from __future__ import annotations

import structlog
from redis.asyncio import Redis

from spark.config import get_settings

logger = structlog.get_logger()

_redis: Redis | None = None


async def get_redis() -> Redis:
    """
    Return a singleton Redis client.

    Raises if a connection cannot be established.
    """
    global _redis
    if _redis is not None:
        return _redis

    settings = get_settings()
    client = Redis.from_url(str(settings.redis_url), decode_responses=True)
    try:
        await client.ping()
    except Exception as exc:
        logger.warning("Failed to connect to Redis", error=str(exc))
        await client.aclose()
        raise

    _redis = client
    return _redis


async def close_redis() -> None:
    """Close the singleton Redis client."""
    global _redis
    if _redis is None:
        return
    try:
        await _redis.aclose()
    finally:
        _redis = None

