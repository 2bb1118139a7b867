"""Cache abstraction shared by the idempotency guard, quotas and migrations.

Values are JSON-serializable. Every backend must provide set-if-absent with
TTL (`add`), atomic increment and atomic get-and-delete (`pull`).
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Protocol

from spark.kernel.time import Clock, utc_now


class Cache(Protocol):
    async def get(self, key: str) -> Any | None:
        ...

    async def set(self, key: str, value: Any, *, ttl_seconds: int | None = None) -> None:
        ...

    async def add(self, key: str, value: Any, *, ttl_seconds: int) -> bool:
        ...

    async def pull(self, key: str) -> Any | None:
        ...

    async def delete(self, key: str) -> None:
        ...

    async def increment(self, key: str, amount: int = 1, *, ttl_seconds: int | None = None) -> int:
        ...

    async def exists(self, key: str) -> bool:
        ...


@dataclass
class _Entry:
    raw: str
    expires_at: datetime | None


class InMemoryCache:
    """
    Process-local cache with TTLs.

    Used for local runs and tests. The clock is injectable so TTL expiry can
    be driven deterministically.
    """

    def __init__(self, clock: Clock | None = None) -> None:
        self._clock = clock or utc_now
        self._entries: dict[str, _Entry] = {}
        self._lock = asyncio.Lock()

    def _live(self, key: str) -> _Entry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and self._clock() >= entry.expires_at:
            self._entries.pop(key, None)
            return None
        return entry

    def _expiry(self, ttl_seconds: int | None) -> datetime | None:
        if ttl_seconds is None:
            return None
        return self._clock() + timedelta(seconds=max(1, int(ttl_seconds)))

    async def get(self, key: str) -> Any | None:
        entry = self._live(key)
        return json.loads(entry.raw) if entry else None

    async def set(self, key: str, value: Any, *, ttl_seconds: int | None = None) -> None:
        self._entries[key] = _Entry(raw=json.dumps(value, default=str), expires_at=self._expiry(ttl_seconds))

    async def add(self, key: str, value: Any, *, ttl_seconds: int) -> bool:
        async with self._lock:
            if self._live(key) is not None:
                return False
            await self.set(key, value, ttl_seconds=ttl_seconds)
            return True

    async def pull(self, key: str) -> Any | None:
        async with self._lock:
            entry = self._live(key)
            self._entries.pop(key, None)
            return json.loads(entry.raw) if entry else None

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    async def increment(self, key: str, amount: int = 1, *, ttl_seconds: int | None = None) -> int:
        async with self._lock:
            entry = self._live(key)
            if entry is None:
                value = int(amount)
                expires_at = self._expiry(ttl_seconds)
            else:
                value = int(json.loads(entry.raw)) + int(amount)
                expires_at = entry.expires_at
            self._entries[key] = _Entry(raw=json.dumps(value), expires_at=expires_at)
            return value

    async def exists(self, key: str) -> bool:
        return self._live(key) is not None
