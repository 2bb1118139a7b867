"""
Idempotency guard.

A short-lived "recently processed" marker keyed by
hash(service, job type, integration, payload fingerprint). It sits on top of
the store's (integration_id, source_id) uniqueness, which remains the
correctness guarantee; the marker only avoids redundant work when the queue
redelivers.
"""

from __future__ import annotations

from typing import Any

import structlog

from spark.cache.base import Cache
from spark.kernel.hashing import build_idempotency_key, payload_fingerprint
from spark.kernel.time import Clock, isoformat_z, utc_now

logger = structlog.get_logger()

DEFAULT_TTL_SECONDS = 3600


def build_job_idempotency_key(service: str, job_type: str, integration_id: str, fingerprint: str) -> str:
    return build_idempotency_key(service, job_type, integration_id, fingerprint)


def job_key_for_payload(service: str, job_type: str, integration_id: str, payload: Any) -> str:
    return build_job_idempotency_key(service, job_type, integration_id, payload_fingerprint(payload))


def marker_key(key: str) -> str:
    return f"job_processed:{key}"


class IdempotencyGuard:
    def __init__(self, cache: Cache, *, ttl_seconds: int = DEFAULT_TTL_SECONDS, clock: Clock | None = None):
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self.clock = clock or utc_now

    async def has_been_processed_recently(self, key: str) -> bool:
        processed = await self.cache.exists(marker_key(key))
        if processed:
            logger.debug("Job already processed recently", key=key)
        return processed

    async def mark_processed(self, key: str) -> None:
        await self.cache.set(marker_key(key), isoformat_z(self.clock()), ttl_seconds=self.ttl_seconds)
        logger.debug("Marked job as processed", key=key)

    async def claim(self, key: str) -> bool:
        """Set-if-absent; True when this caller owns the key."""
        return await self.cache.add(marker_key(key), isoformat_z(self.clock()), ttl_seconds=self.ttl_seconds)

    async def forget(self, key: str) -> None:
        await self.cache.delete(marker_key(key))
