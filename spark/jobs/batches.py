"""
Job batches.

A batch is a named group of jobs whose collective completion another job
waits on (the migration monitor). Progress lives in the cache so any worker
can report into it and the monitor can poll it.
"""

from __future__ import annotations

from typing import Any

import structlog

from spark.cache.base import Cache
from spark.kernel.ids import new_id
from spark.kernel.time import Clock, isoformat_z, utc_now

logger = structlog.get_logger()

BATCH_TTL_SECONDS = 7 * 24 * 3600


def _key(batch_id: str, field: str) -> str:
    return f"batch:{batch_id}:{field}"


class BatchTracker:
    def __init__(self, cache: Cache, *, clock: Clock | None = None) -> None:
        self.cache = cache
        self.clock = clock or utc_now

    async def create(self, name: str, *, batch_id: str | None = None) -> str:
        batch_id = batch_id or new_id()
        await self.cache.set(
            _key(batch_id, "meta"),
            {"name": name, "created_at": isoformat_z(self.clock())},
            ttl_seconds=BATCH_TTL_SECONDS,
        )
        logger.info("Batch created", batch_id=batch_id, name=name)
        return batch_id

    async def add_jobs(self, batch_id: str, count: int = 1) -> None:
        await self.cache.increment(_key(batch_id, "total"), count, ttl_seconds=BATCH_TTL_SECONDS)
        await self.cache.increment(_key(batch_id, "pending"), count, ttl_seconds=BATCH_TTL_SECONDS)

    async def job_finished(self, batch_id: str, *, failed: bool = False) -> None:
        pending = await self.cache.increment(_key(batch_id, "pending"), -1, ttl_seconds=BATCH_TTL_SECONDS)
        if failed:
            await self.cache.increment(_key(batch_id, "failed"), 1, ttl_seconds=BATCH_TTL_SECONDS)
        if pending <= 0:
            await self.cache.add(_key(batch_id, "finished_at"), isoformat_z(self.clock()), ttl_seconds=BATCH_TTL_SECONDS)
            logger.info("Batch finished", batch_id=batch_id)

    async def status(self, batch_id: str) -> dict[str, Any]:
        meta = await self.cache.get(_key(batch_id, "meta"))
        total = int(await self.cache.get(_key(batch_id, "total")) or 0)
        pending = int(await self.cache.get(_key(batch_id, "pending")) or 0)
        failed = int(await self.cache.get(_key(batch_id, "failed")) or 0)
        finished_at = await self.cache.get(_key(batch_id, "finished_at"))
        return {
            "id": batch_id,
            "name": (meta or {}).get("name"),
            "known": meta is not None,
            "total": total,
            "pending": max(0, pending),
            "failed": failed,
            "processed": total - max(0, pending),
            "finished_at": finished_at,
        }

    async def is_finished(self, batch_id: str) -> bool:
        """An unknown (expired or never created) batch counts as finished."""
        status = await self.status(batch_id)
        if not status["known"]:
            return True
        return status["finished_at"] is not None or status["pending"] <= 0
