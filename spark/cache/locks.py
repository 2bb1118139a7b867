from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog

from spark.cache.base import Cache
from spark.kernel.ids import new_id

logger = structlog.get_logger()


@asynccontextmanager
async def named_lock(cache: Cache, name: str, *, ttl_seconds: int) -> AsyncIterator[bool]:
    """
    Overlap-prevention lock keyed by `name`.

    Yields True when acquired. The TTL bounds how long a crashed holder can
    keep others out.
    """
    key = f"lock:{name}"
    token = new_id()
    acquired = await cache.add(key, token, ttl_seconds=ttl_seconds)
    if not acquired:
        logger.debug("Lock busy", lock=name)
    try:
        yield acquired
    finally:
        if acquired and await cache.get(key) == token:
            await cache.delete(key)
