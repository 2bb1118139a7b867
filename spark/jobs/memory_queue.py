"""In-process job queue with the same semantics as `PostgresJobQueue`."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any

from spark.jobs.base import JobSpec
from spark.jobs.queue import ClaimedJob
from spark.kernel.ids import new_id
from spark.kernel.time import Clock, utc_now

_ACTIVE = ("queued", "running")


@dataclass
class QueuedJob:
    id: str
    spec: JobSpec
    run_at: datetime
    seq: int
    status: str = "queued"
    attempts: int = 0
    locked_by: str | None = None
    lease_until: datetime | None = None
    last_error: str | None = None
    result: dict[str, Any] | None = None
    history: list[str] = field(default_factory=list)


class InMemoryJobQueue:
    def __init__(self, clock: Clock | None = None) -> None:
        self.clock = clock or utc_now
        self.jobs: dict[str, QueuedJob] = {}
        self._seq = 0
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Inspection helpers (tests, local runs)
    # ------------------------------------------------------------------

    def find(self, *, job_type: str | None = None, status: str | None = None) -> list[QueuedJob]:
        jobs = sorted(self.jobs.values(), key=lambda j: j.seq)
        return [
            job
            for job in jobs
            if (job_type is None or job.spec.job_type == job_type) and (status is None or job.status == status)
        ]

    def pending(self, job_type: str | None = None) -> list[QueuedJob]:
        return self.find(job_type=job_type, status="queued")

    # ------------------------------------------------------------------
    # Queue protocol
    # ------------------------------------------------------------------

    def _insert(self, spec: JobSpec, *, attempts: int) -> str:
        if spec.unique_id:
            for job in self.jobs.values():
                if job.spec.unique_id == spec.unique_id and job.status in _ACTIVE:
                    return job.id
        self._seq += 1
        job = QueuedJob(
            id=new_id(),
            spec=spec,
            run_at=spec.run_at or self.clock(),
            seq=self._seq,
            attempts=attempts,
        )
        self.jobs[job.id] = job
        return job.id

    async def enqueue(self, spec: JobSpec) -> str:
        async with self._lock:
            return self._insert(spec, attempts=0)

    async def claim(self, *, worker_id: str, lease_seconds: int) -> ClaimedJob | None:
        now = self.clock()
        async with self._lock:
            runnable = [job for job in self.jobs.values() if job.status == "queued" and job.run_at <= now]
            if not runnable:
                return None
            job = min(runnable, key=lambda j: (j.run_at, j.seq))
            job.status = "running"
            job.attempts += 1
            job.locked_by = worker_id
            job.lease_until = now + timedelta(seconds=max(5, lease_seconds))
            job.history.append("running")
            return self._claimed(job)

    def _claimed(self, job: QueuedJob) -> ClaimedJob:
        spec = job.spec
        return ClaimedJob(
            id=job.id,
            job_type=spec.job_type,
            integration_id=spec.integration_id,
            status=job.status,
            run_at=job.run_at,
            attempts=job.attempts,
            max_attempts=spec.max_attempts,
            timeout_seconds=spec.timeout_seconds,
            payload=dict(spec.payload),
            unique_key=spec.unique_id,
            batch_id=spec.batch_id,
            chain=[item.to_dict() for item in spec.chain],
        )

    async def succeed(self, job_id: str, *, result: dict[str, Any] | None = None) -> None:
        job = self.jobs[job_id]
        job.status = "succeeded"
        job.lease_until = None
        job.result = result or {}
        job.history.append("succeeded")

    async def fail(self, job_id: str, *, error: str, retry_at: datetime | None) -> None:
        job = self.jobs[job_id]
        job.last_error = error
        job.lease_until = None
        job.locked_by = None
        if retry_at is None:
            job.status = "failed"
            job.history.append("failed")
        else:
            job.status = "queued"
            job.run_at = retry_at
            job.history.append("retrying")

    async def redispatch(self, job_id: str, spec: JobSpec, *, attempts: int) -> str:
        async with self._lock:
            job = self.jobs[job_id]
            job.status = "succeeded"
            job.lease_until = None
            job.history.append("redispatched")
            new_job_id = self._insert(spec, attempts=attempts)
            job.result = {"redispatched_to": new_job_id}
            return new_job_id

    async def extend_lease(self, job_id: str, *, worker_id: str, lease_seconds: int) -> bool:
        job = self.jobs.get(job_id)
        if job is None or job.status != "running" or job.locked_by != worker_id:
            return False
        job.lease_until = self.clock() + timedelta(seconds=max(5, lease_seconds))
        return True

    async def requeue_expired(self, *, limit: int = 500) -> int:
        now = self.clock()
        expired = [
            job
            for job in self.jobs.values()
            if job.status == "running" and job.lease_until is not None and job.lease_until < now
        ][: max(1, limit)]
        for job in expired:
            job.lease_until = None
            job.locked_by = None
            job.last_error = job.last_error or "Lease expired"
            if job.attempts >= job.spec.max_attempts:
                job.status = "failed"
            else:
                job.status = "queued"
                job.run_at = now
        return len(expired)

    async def cancel(self, job_id: str) -> bool:
        job = self.jobs.get(job_id)
        if job is None or job.status not in _ACTIVE:
            return False
        job.status = "cancelled"
        job.lease_until = None
        return True

    def reschedule_all(self, run_at: datetime) -> None:
        """Pull every queued job forward to `run_at` (drives delayed jobs in tests)."""
        for job in self.jobs.values():
            if job.status == "queued" and job.run_at > run_at:
                job.run_at = run_at
                job.spec = replace(job.spec, run_at=run_at)
