"""Postgres-backed durable background job queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Protocol

import structlog

from spark.db import client as db_client
from spark.jobs.base import JobSpec
from spark.kernel.ids import new_id
from spark.kernel.time import Clock, utc_now

logger = structlog.get_logger()


@dataclass(frozen=True)
class ClaimedJob:
    id: str
    job_type: str
    integration_id: str | None
    status: str
    run_at: datetime
    attempts: int
    max_attempts: int
    timeout_seconds: int
    payload: dict[str, Any]
    unique_key: str | None = None
    batch_id: str | None = None
    chain: list[dict[str, Any]] = field(default_factory=list)

    @property
    def is_last_attempt(self) -> bool:
        return self.attempts >= self.max_attempts

    def spec(self) -> JobSpec:
        return JobSpec(
            job_type=self.job_type,
            integration_id=self.integration_id,
            payload=dict(self.payload or {}),
            run_at=self.run_at,
            max_attempts=self.max_attempts,
            timeout_seconds=self.timeout_seconds,
            unique_id=self.unique_key,
            chain=tuple(JobSpec.from_dict(item) for item in self.chain or []),
            batch_id=self.batch_id,
        )


class JobQueue(Protocol):
    """
    At-least-once delivery with leases and delayed dispatch.

    A unique key admits at most one queued or running job; enqueueing a
    duplicate returns the existing job's id.
    """

    async def enqueue(self, spec: JobSpec) -> str:
        ...

    async def claim(self, *, worker_id: str, lease_seconds: int) -> ClaimedJob | None:
        ...

    async def succeed(self, job_id: str, *, result: dict[str, Any] | None = None) -> None:
        ...

    async def fail(self, job_id: str, *, error: str, retry_at: datetime | None) -> None:
        ...

    async def redispatch(self, job_id: str, spec: JobSpec, *, attempts: int) -> str:
        ...

    async def extend_lease(self, job_id: str, *, worker_id: str, lease_seconds: int) -> bool:
        ...

    async def requeue_expired(self, *, limit: int = 500) -> int:
        ...

    async def cancel(self, job_id: str) -> bool:
        ...


_INSERT_SQL = """
INSERT INTO background_job (
    id, integration_id, job_type, status, priority, run_at,
    attempts, max_attempts, timeout_seconds, unique_key, batch_id,
    payload, chain, created_at, updated_at
)
VALUES (
    $1, $2, $3, 'queued', 0, $4,
    $5, $6, $7, $8, $9,
    $10, $11, $12, $12
)
ON CONFLICT (unique_key) WHERE status IN ('queued', 'running')
DO UPDATE SET updated_at = EXCLUDED.updated_at
RETURNING id
"""


def _insert_args(job_id: str, spec: JobSpec, *, attempts: int, now: datetime) -> tuple:
    return (
        job_id,
        spec.integration_id,
        spec.job_type,
        spec.run_at or now,
        int(attempts),
        int(max(1, spec.max_attempts)),
        int(max(1, spec.timeout_seconds)),
        spec.unique_id,
        spec.batch_id,
        spec.payload,
        [item.to_dict() for item in spec.chain],
        now,
    )


class PostgresJobQueue:
    """The `background_job` table driven with raw asyncpg SQL."""

    def __init__(self, *, clock: Clock | None = None) -> None:
        self.clock = clock or utc_now

    async def enqueue(self, spec: JobSpec) -> str:
        job_id = new_id()
        now = self.clock()
        pool = await db_client.get_db_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(_INSERT_SQL, *_insert_args(job_id, spec, attempts=0, now=now))

        # On a unique-key hit this is the already pending job's id.
        existing = str(row["id"]) if row else job_id
        if existing != job_id:
            logger.debug("Job already pending", job_type=spec.job_type, unique_key=spec.unique_id, job_id=existing)
        return existing

    async def claim(self, *, worker_id: str, lease_seconds: int) -> ClaimedJob | None:
        """Claim the next runnable job using a lease (FOR UPDATE SKIP LOCKED)."""
        now = self.clock()
        lease_until = now + timedelta(seconds=max(5, lease_seconds))

        pool = await db_client.get_db_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE background_job
                SET status = 'running',
                    locked_by = $1,
                    lease_until = $2,
                    attempts = attempts + 1,
                    started_at = COALESCE(started_at, $3),
                    updated_at = $3
                WHERE id = (
                    SELECT bj.id
                    FROM background_job bj
                    WHERE bj.status = 'queued'
                      AND bj.run_at <= $3
                    ORDER BY bj.priority DESC, bj.run_at ASC, bj.created_at ASC
                    FOR UPDATE SKIP LOCKED
                    LIMIT 1
                )
                RETURNING
                    id::text,
                    job_type,
                    integration_id,
                    status,
                    run_at,
                    attempts,
                    max_attempts,
                    timeout_seconds,
                    payload,
                    unique_key,
                    batch_id,
                    chain
                """,
                worker_id,
                lease_until,
                now,
            )

        if not row:
            return None

        return ClaimedJob(
            id=str(row["id"]),
            job_type=row["job_type"],
            integration_id=row["integration_id"],
            status=row["status"],
            run_at=row["run_at"],
            attempts=int(row["attempts"] or 0),
            max_attempts=int(row["max_attempts"] or 3),
            timeout_seconds=int(row["timeout_seconds"] or 120),
            payload=row["payload"] or {},
            unique_key=row["unique_key"],
            batch_id=row["batch_id"],
            chain=list(row["chain"] or []),
        )

    async def succeed(self, job_id: str, *, result: dict[str, Any] | None = None) -> None:
        now = self.clock()
        pool = await db_client.get_db_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE background_job
                SET status = 'succeeded',
                    completed_at = $2,
                    lease_until = NULL,
                    result = $3,
                    last_error = NULL,
                    updated_at = $2
                WHERE id = $1
                """,
                job_id,
                now,
                result or {},
            )

    async def fail(self, job_id: str, *, error: str, retry_at: datetime | None) -> None:
        """Requeue for `retry_at`, or fail terminally when it is None."""
        now = self.clock()
        status = "queued" if retry_at is not None else "failed"

        pool = await db_client.get_db_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE background_job
                SET status = $2,
                    completed_at = CASE WHEN $2 = 'failed' THEN $3::timestamptz ELSE NULL END,
                    lease_until = NULL,
                    locked_by = NULL,
                    last_error = $4,
                    run_at = COALESCE($5::timestamptz, run_at),
                    updated_at = $3::timestamptz
                WHERE id = $1
                """,
                job_id,
                status,
                now,
                error,
                retry_at,
            )

    async def redispatch(self, job_id: str, spec: JobSpec, *, attempts: int) -> str:
        """
        Close the running job and schedule `spec` in one transaction.

        Closing first frees the unique key for the replacement. `attempts` is
        carried over so the replacement does not spend retry budget.
        """
        new_job_id = new_id()
        now = self.clock()

        pool = await db_client.get_db_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    """
                    UPDATE background_job
                    SET status = 'succeeded',
                        completed_at = $2,
                        lease_until = NULL,
                        result = $3,
                        updated_at = $2
                    WHERE id = $1
                    """,
                    job_id,
                    now,
                    {"redispatched_to": new_job_id},
                )
                row = await conn.fetchrow(_INSERT_SQL, *_insert_args(new_job_id, spec, attempts=attempts, now=now))

        return str(row["id"]) if row else new_job_id

    async def extend_lease(self, job_id: str, *, worker_id: str, lease_seconds: int) -> bool:
        now = self.clock()
        lease_until = now + timedelta(seconds=max(5, lease_seconds))
        pool = await db_client.get_db_pool()
        async with pool.acquire() as conn:
            updated = await conn.execute(
                """
                UPDATE background_job
                SET lease_until = $3,
                    updated_at = $2
                WHERE id = $1
                  AND status = 'running'
                  AND locked_by = $4
                """,
                job_id,
                now,
                lease_until,
                worker_id,
            )
        # asyncpg returns strings like "UPDATE 1"
        return str(updated).endswith("1")

    async def requeue_expired(self, *, limit: int = 500) -> int:
        """
        Requeue jobs that were marked 'running' but whose lease expired.

        A crashed worker otherwise leaves its job stuck in 'running'.
        """
        now = self.clock()
        safe_limit = int(max(1, limit))

        pool = await db_client.get_db_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                WITH expired AS (
                    SELECT id
                    FROM background_job
                    WHERE status = 'running'
                      AND lease_until IS NOT NULL
                      AND lease_until < $2::timestamptz
                    ORDER BY lease_until ASC
                    LIMIT $1
                    FOR UPDATE SKIP LOCKED
                )
                UPDATE background_job bj
                SET status = CASE WHEN bj.attempts >= bj.max_attempts THEN 'failed' ELSE 'queued' END,
                    completed_at = CASE WHEN bj.attempts >= bj.max_attempts THEN $2::timestamptz ELSE NULL END,
                    lease_until = NULL,
                    locked_by = NULL,
                    last_error = COALESCE(bj.last_error, 'Lease expired'),
                    run_at = CASE WHEN bj.attempts >= bj.max_attempts THEN bj.run_at ELSE $2::timestamptz END,
                    updated_at = $2::timestamptz
                FROM expired
                WHERE bj.id = expired.id
                RETURNING bj.id::text
                """,
                safe_limit,
                now,
            )

        return len(rows or [])

    async def cancel(self, job_id: str) -> bool:
        now = self.clock()
        pool = await db_client.get_db_pool()
        async with pool.acquire() as conn:
            status = await conn.fetchval(
                """
                UPDATE background_job
                SET status = 'cancelled',
                    completed_at = $2,
                    lease_until = NULL,
                    updated_at = $2
                WHERE id = $1 AND status IN ('queued', 'running')
                RETURNING status
                """,
                job_id,
                now,
            )
        return status is not None
