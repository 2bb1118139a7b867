"""
Integration scheduler.

Wraps an APScheduler `AsyncIOScheduler` that runs the update sweep on a fixed
interval. Several API processes may run a scheduler; a cache lock makes sure
only one of them sweeps per tick.

Usage:
    scheduler = await init_scheduler()
    ...
    await shutdown_scheduler()
"""

from __future__ import annotations

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
import structlog

from spark.cache.locks import named_lock
from spark.jobs.base import JobRuntime
from spark.scheduling.sweep import SweepResult, run_sweep

logger = structlog.get_logger()

SWEEP_JOB_ID = "check_integration_updates"


class IntegrationScheduler:
    def __init__(self, runtime_factory, *, interval_seconds: int) -> None:
        self._scheduler = AsyncIOScheduler()
        self._runtime_factory = runtime_factory
        self._interval_seconds = max(1, interval_seconds)

    @property
    def running(self) -> bool:
        return self._scheduler.running

    async def start(self) -> None:
        """Start the scheduler."""
        if self._scheduler.running:
            return
        self._scheduler.add_job(
            self.tick,
            trigger=IntervalTrigger(seconds=self._interval_seconds),
            id=SWEEP_JOB_ID,
            name="Check integration updates",
            replace_existing=True,
            coalesce=True,  # Skip missed runs
            max_instances=1,  # Don't overlap
        )
        self._scheduler.start()
        logger.info("Integration scheduler started", interval_seconds=self._interval_seconds)

    async def shutdown(self) -> None:
        """Shutdown the scheduler gracefully."""
        if self._scheduler.running:
            self._scheduler.shutdown(wait=True)
            logger.info("Integration scheduler shutdown")

    async def tick(self) -> SweepResult | None:
        runtime: JobRuntime = await self._runtime_factory()
        lock_ttl = max(30, self._interval_seconds)
        async with named_lock(runtime.cache, SWEEP_JOB_ID, ttl_seconds=lock_ttl) as acquired:
            if not acquired:
                logger.info("Sweep already running elsewhere, skipping tick")
                return None
            try:
                return await run_sweep(runtime)
            except Exception as exc:
                logger.error("Failed to check integration updates", error=str(exc), exc_info=True)
                return None


_scheduler: IntegrationScheduler | None = None


def get_scheduler() -> IntegrationScheduler:
    """Get or create the scheduler singleton."""
    global _scheduler
    if _scheduler is None:
        from spark.config import get_settings
        from spark.jobs.runtime import get_runtime

        _scheduler = IntegrationScheduler(
            get_runtime, interval_seconds=get_settings().scheduler_interval_seconds
        )
    return _scheduler


async def init_scheduler() -> IntegrationScheduler:
    """Initialize and start the scheduler."""
    scheduler = get_scheduler()
    await scheduler.start()
    return scheduler


async def shutdown_scheduler() -> None:
    """Shutdown the scheduler."""
    global _scheduler
    if _scheduler:
        await _scheduler.shutdown()
        _scheduler = None
