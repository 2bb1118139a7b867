"""Cache backends (in-memory and Redis) behind one interface."""

from __future__ import annotations

from spark.cache.base import Cache, InMemoryCache
from spark.cache.locks import named_lock

_cache: Cache | None = None


async def get_cache() -> Cache:
    """Return the process-wide cache selected by `cache_backend`."""
    global _cache
    if _cache is not None:
        return _cache

    from spark.config import get_settings

    settings = get_settings()
    if settings.cache_backend == "redis":
        from spark.cache.redis_cache import RedisCache
        from spark.db.redis import get_redis

        _cache = RedisCache(await get_redis())
    else:
        _cache = InMemoryCache()
    return _cache


def set_cache(cache: Cache | None) -> None:
    global _cache
    _cache = cache


__all__ = ["Cache", "InMemoryCache", "get_cache", "named_lock", "set_cache"]
