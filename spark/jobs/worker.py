"""
Durable Jobs Worker

Claims jobs from the queue, runs them through `JobRunner`, keeps their
leases alive and requeues jobs whose worker died mid-flight.
"""

from __future__ import annotations

import asyncio
import signal
from uuid import uuid4

import structlog

from spark.config import get_settings
from spark.jobs.base import JobRuntime
from spark.jobs.queue import ClaimedJob
from spark.jobs.registry import JobRegistry, build_job_registry
from spark.jobs.runner import JobRunner

logger = structlog.get_logger()


class JobsWorker:
    def __init__(self, runtime: JobRuntime, registry: JobRegistry | None = None) -> None:
        self.runtime = runtime
        self.settings = runtime.settings
        self.runner = JobRunner(runtime, registry or build_job_registry())
        self.worker_id = f"jobs-worker:{uuid4()}"
        self._shutdown = asyncio.Event()

    async def run_forever(self) -> None:
        logger.info(
            "Jobs worker starting",
            worker_id=self.worker_id,
            lease_seconds=self.settings.job_worker_lease_seconds,
        )

        reaper_task = asyncio.create_task(self._reap_expired_running_jobs())
        try:
            while not self._shutdown.is_set():
                try:
                    job = await self.runtime.queue.claim(
                        worker_id=self.worker_id,
                        lease_seconds=self.settings.job_worker_lease_seconds,
                    )
                except Exception as exc:
                    logger.warning(
                        "Failed to claim job (will retry)",
                        worker_id=self.worker_id,
                        error=str(exc),
                    )
                    await asyncio.sleep(self.settings.job_worker_poll_interval_seconds)
                    continue
                if not job:
                    await asyncio.sleep(self.settings.job_worker_poll_interval_seconds)
                    continue

                # Never crash the worker loop because of a single job.
                try:
                    await self._execute_claimed_job(job)
                except Exception as exc:
                    logger.error(
                        "Unhandled exception executing job",
                        worker_id=self.worker_id,
                        job_id=job.id,
                        job_type=job.job_type,
                        error=str(exc),
                    )
        finally:
            reaper_task.cancel()
            await asyncio.gather(reaper_task, return_exceptions=True)
            logger.info("Jobs worker stopped", worker_id=self.worker_id)

    async def run_until_idle(self, *, max_jobs: int = 1000) -> int:
        """Drain every runnable job (local runs and tests). Returns the number executed."""
        executed = 0
        while executed < max_jobs:
            job = await self.runtime.queue.claim(
                worker_id=self.worker_id,
                lease_seconds=self.settings.job_worker_lease_seconds,
            )
            if not job:
                break
            await self.runner.execute(job)
            executed += 1
        return executed

    async def shutdown(self) -> None:
        self._shutdown.set()

    async def _reap_expired_running_jobs(self) -> None:
        """
        Periodically requeue jobs stuck in 'running' with expired leases.

        If a worker dies mid-job, the lease expires and the job must become
        runnable again.
        """
        interval = max(5, int(self.settings.job_worker_reaper_interval_seconds))
        limit = int(max(1, self.settings.job_worker_reaper_limit))

        while not self._shutdown.is_set():
            try:
                requeued = await self.runtime.queue.requeue_expired(limit=limit)
                if requeued:
                    logger.warning(
                        "Requeued expired running jobs",
                        worker_id=self.worker_id,
                        count=requeued,
                    )
            except Exception as exc:
                logger.warning(
                    "Failed to requeue expired running jobs",
                    worker_id=self.worker_id,
                    error=str(exc),
                )

            await asyncio.sleep(interval)

    async def _execute_claimed_job(self, job: ClaimedJob) -> None:
        logger.info(
            "Executing job",
            job_id=job.id,
            job_type=job.job_type,
            integration_id=job.integration_id,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
        )

        lease_task = asyncio.create_task(self._lease_heartbeat(job.id))
        try:
            await self.runner.execute(job)
        finally:
            lease_task.cancel()
            await asyncio.gather(lease_task, return_exceptions=True)

    async def _lease_heartbeat(self, job_id: str) -> None:
        interval = max(5.0, self.settings.job_worker_lease_seconds / 3)
        while not self._shutdown.is_set():
            await asyncio.sleep(interval)
            try:
                ok = await self.runtime.queue.extend_lease(
                    job_id,
                    worker_id=self.worker_id,
                    lease_seconds=self.settings.job_worker_lease_seconds,
                )
            except Exception as exc:
                logger.warning(
                    "Failed to extend lease",
                    worker_id=self.worker_id,
                    job_id=job_id,
                    error=str(exc),
                )
                return
            if not ok:
                return


async def main() -> None:
    from spark.db.client import close_db, close_db_pool, init_db
    from spark.db.redis import close_redis
    from spark.jobs.runtime import close_runtime, get_runtime
    from spark.logging_config import configure_logging
    from spark.monitoring.prometheus_server import maybe_start_prometheus_http_server

    settings = get_settings()
    configure_logging(settings)
    maybe_start_prometheus_http_server(component="jobs-worker")
    await init_db()

    worker = JobsWorker(await get_runtime())
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda: asyncio.create_task(worker.shutdown()))

    try:
        await worker.run_forever()
    finally:
        await close_runtime()
        await close_db_pool()
        await close_db()
        await close_redis()


if __name__ == "__main__":
    asyncio.run(main())
