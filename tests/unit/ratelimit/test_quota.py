from __future__ import annotations

import asyncio

import pytest

from spark.cache.base import InMemoryCache
from spark.kernel.errors import QuotaExceeded
from spark.ratelimit.quota import QuotaTracker, ResponseCache
from tests.support.clock import FakeClock

pytestmark = pytest.mark.unit


@pytest.fixture
def clock():
    return FakeClock.fixed()


@pytest.fixture
def cache(clock):
    return InMemoryCache(clock)


@pytest.fixture
def quota(cache, clock):
    return QuotaTracker(cache, provider="gocardless", daily_cap=4, clock=clock)


class TestQuotaTracker:
    @pytest.mark.asyncio
    async def test_fifth_call_is_refused_without_calling(self, quota):
        calls = []

        async def fn():
            calls.append(1)
            return {"ok": True}

        for _ in range(4):
            assert await quota.call("acct-1", "transactions", fn) == {"ok": True}

        with pytest.raises(QuotaExceeded):
            await quota.call("acct-1", "transactions", fn)
        assert len(calls) == 4
        assert await quota.remaining("acct-1", "transactions") == 0

    @pytest.mark.asyncio
    async def test_concurrent_callers_cannot_overshoot_the_cap(self, cache, clock):
        quota = QuotaTracker(cache, provider="gocardless", daily_cap=1, clock=clock)
        calls = []

        async def fn():
            await asyncio.sleep(0)
            calls.append(1)
            return {"ok": True}

        results = await asyncio.gather(
            quota.call("acct-1", "balances", fn),
            quota.call("acct-1", "balances", fn),
            return_exceptions=True,
        )

        assert len(calls) == 1
        assert sum(isinstance(result, QuotaExceeded) for result in results) == 1
        assert await quota.used_today("acct-1", "balances") == 1

    @pytest.mark.asyncio
    async def test_refused_call_does_not_consume_a_slot(self, quota):
        for _ in range(4):
            await quota.reserve("acct-1", "transactions")

        for _ in range(3):
            with pytest.raises(QuotaExceeded):
                await quota.reserve("acct-1", "transactions")
        assert await quota.used_today("acct-1", "transactions") == 4

    @pytest.mark.asyncio
    async def test_caps_are_per_account_and_endpoint(self, quota):
        for _ in range(4):
            await quota.reserve("acct-1", "transactions")

        await quota.reserve("acct-2", "transactions")
        await quota.reserve("acct-1", "balances")
        assert await quota.used_today("acct-1", "transactions") == 4
        assert await quota.used_today("acct-2", "transactions") == 1
        assert await quota.used_today("acct-1", "balances") == 1

    @pytest.mark.asyncio
    async def test_new_day_resets_the_count(self, quota, clock):
        for _ in range(4):
            await quota.reserve("acct-1", "details")

        clock.advance(days=1)
        assert await quota.remaining("acct-1", "details") == 4
        await quota.reserve("acct-1", "details")

    @pytest.mark.asyncio
    async def test_failed_call_gives_its_slot_back(self, quota):
        async def boom():
            raise RuntimeError("upstream")

        with pytest.raises(RuntimeError):
            await quota.call("acct-1", "balances", boom)
        assert await quota.used_today("acct-1", "balances") == 0

    @pytest.mark.asyncio
    async def test_counters_expire_after_retention(self, quota, cache, clock):
        day = await quota.reserve("acct-1", "balances")
        key = f"quota:gocardless:balances:acct-1:{day.isoformat()}"
        assert await cache.get(key) == 1

        clock.advance(days=8)
        assert await cache.get(key) is None


class TestResponseCache:
    @pytest.mark.asyncio
    async def test_cached_value_skips_quota_and_call(self, cache, quota):
        responses = ResponseCache(cache, provider="gocardless", ttls={"balances": 600})
        calls = []

        async def fn():
            calls.append(1)
            return {"balances": [1]}

        first = await responses.fetch("balances", "acct-1", quota, fn)
        second = await responses.fetch("balances", "acct-1", quota, fn)

        assert first == second == {"balances": [1]}
        assert len(calls) == 1
        assert await quota.used_today("acct-1", "balances") == 1

    @pytest.mark.asyncio
    async def test_entries_expire_with_their_ttl(self, cache, clock):
        responses = ResponseCache(cache, provider="gocardless", ttls={"details": 60})
        await responses.put("details", "acct-1", {"name": "x"})

        clock.advance(seconds=61)
        assert await responses.get("details", "acct-1") is None

    @pytest.mark.asyncio
    async def test_forget_drops_entry(self, cache):
        responses = ResponseCache(cache, provider="gocardless", ttls={})
        await responses.put("details", "acct-1", {"name": "x"})
        await responses.forget("details", "acct-1")
        assert await responses.get("details", "acct-1") is None
