"""Redis-backed cache (shared across workers)."""

from __future__ import annotations

import json
from typing import Any

from redis.asyncio import Redis


class RedisCache:
    """Cache implementation over `redis.asyncio` (decode_responses=True)."""

    def __init__(self, client: Redis, *, prefix: str = "spark:") -> None:
        self._client = client
        self._prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def get(self, key: str) -> Any | None:
        raw = await self._client.get(self._key(key))
        return json.loads(raw) if raw is not None else None

    async def set(self, key: str, value: Any, *, ttl_seconds: int | None = None) -> None:
        await self._client.set(
            self._key(key),
            json.dumps(value, default=str),
            ex=max(1, int(ttl_seconds)) if ttl_seconds is not None else None,
        )

    async def add(self, key: str, value: Any, *, ttl_seconds: int) -> bool:
        created = await self._client.set(
            self._key(key),
            json.dumps(value, default=str),
            ex=max(1, int(ttl_seconds)),
            nx=True,
        )
        return bool(created)

    async def pull(self, key: str) -> Any | None:
        raw = await self._client.getdel(self._key(key))
        return json.loads(raw) if raw is not None else None

    async def delete(self, key: str) -> None:
        await self._client.delete(self._key(key))

    async def increment(self, key: str, amount: int = 1, *, ttl_seconds: int | None = None) -> int:
        full_key = self._key(key)
        value = int(await self._client.incrby(full_key, int(amount)))
        if ttl_seconds is not None and value == int(amount):
            # First write for this key: start its TTL.
            await self._client.expire(full_key, max(1, int(ttl_seconds)))
        return value

    async def exists(self, key: str) -> bool:
        return bool(await self._client.exists(self._key(key)))
