"""
Proactive quota accounting for providers with hard daily call caps.

Each (account, endpoint, day) has a counter in the cache. A call reserves
its slot with an atomic increment before any network traffic; a result over
the cap is handed back and refused, and a failed call gives its slot back.
Counters expire after the retention horizon.
"""

from __future__ import annotations

from datetime import date
from typing import Any, Awaitable, Callable, TypeVar

import structlog

from spark.cache.base import Cache
from spark.kernel.errors import QuotaExceeded
from spark.kernel.time import Clock, utc_now

logger = structlog.get_logger()

T = TypeVar("T")


class QuotaTracker:
    def __init__(
        self,
        cache: Cache,
        *,
        provider: str,
        daily_cap: int,
        clock: Clock | None = None,
        retention_days: int = 7,
    ) -> None:
        self.cache = cache
        self.provider = provider
        self.daily_cap = int(daily_cap)
        self.clock = clock or utc_now
        self.retention_days = retention_days

    def _counter_key(self, account_id: str, endpoint: str, day: date) -> str:
        return f"quota:{self.provider}:{endpoint}:{account_id}:{day.isoformat()}"

    async def used_today(self, account_id: str, endpoint: str) -> int:
        value = await self.cache.get(self._counter_key(account_id, endpoint, self.clock().date()))
        return max(0, int(value or 0))

    async def remaining(self, account_id: str, endpoint: str) -> int:
        return max(0, self.daily_cap - await self.used_today(account_id, endpoint))

    async def reserve(self, account_id: str, endpoint: str) -> date:
        """
        Take one of today's slots for (account, endpoint).

        Returns the day the slot was counted against so it can be released.
        Raises `QuotaExceeded` without keeping the slot once the cap is used up.
        """
        day = self.clock().date()
        used = await self.cache.increment(
            self._counter_key(account_id, endpoint, day),
            ttl_seconds=self.retention_days * 24 * 3600,
        )
        if used > self.daily_cap:
            await self.release(account_id, endpoint, day)
            logger.warning(
                "Provider daily quota exhausted",
                provider=self.provider,
                endpoint=endpoint,
                account_id=account_id,
                cap=self.daily_cap,
            )
            raise QuotaExceeded(
                meta={"provider": self.provider, "endpoint": endpoint, "cap": self.daily_cap}
            )
        return day

    async def release(self, account_id: str, endpoint: str, day: date) -> None:
        await self.cache.increment(self._counter_key(account_id, endpoint, day), -1)

    async def call(self, account_id: str, endpoint: str, fn: Callable[[], Awaitable[T]]) -> T:
        """Reserve a slot, perform the call, and give the slot back if it fails."""
        day = await self.reserve(account_id, endpoint)
        try:
            return await fn()
        except BaseException:
            await self.release(account_id, endpoint, day)
            raise


class ResponseCache:
    """
    Per-resource response cache checked before quota accounting.

    TTLs follow the provider's own refresh cadence.
    """

    def __init__(self, cache: Cache, *, provider: str, ttls: dict[str, int]) -> None:
        self.cache = cache
        self.provider = provider
        self.ttls = dict(ttls)

    def _key(self, resource: str, resource_id: str) -> str:
        return f"response:{self.provider}:{resource}:{resource_id}"

    async def get(self, resource: str, resource_id: str) -> Any | None:
        return await self.cache.get(self._key(resource, resource_id))

    async def put(self, resource: str, resource_id: str, value: Any) -> None:
        await self.cache.set(self._key(resource, resource_id), value, ttl_seconds=self.ttls.get(resource, 3600))

    async def forget(self, resource: str, resource_id: str) -> None:
        await self.cache.delete(self._key(resource, resource_id))

    async def fetch(
        self,
        resource: str,
        resource_id: str,
        quota: QuotaTracker | None,
        fn: Callable[[], Awaitable[Any]],
    ) -> Any:
        """Cached value if present, else a quota-guarded call whose result is cached."""
        cached = await self.get(resource, resource_id)
        if cached is not None:
            logger.debug("Response cache hit", provider=self.provider, resource=resource)
            return cached
        if quota is not None:
            value = await quota.call(resource_id, resource, fn)
        else:
            value = await fn()
        await self.put(resource, resource_id, value)
        return value
