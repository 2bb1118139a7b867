"""
Batch-then-process coordination.

`MonitorBatchJob` polls a batch under the named lock `monitor_batch_{id}`
and re-schedules itself until the batch finishes. After the fetch batch it
hands over to `StartProcessingJob` exactly once; after the processing batch
it clears the integration's `migration_batch_id`. Either job failing for
good also clears it and raises an operator alert.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog

from spark.cache.locks import named_lock
from spark.jobs.base import COORDINATOR_POLICY, BaseJob, JobSpec
from spark.kernel.time import isoformat_z
from spark.migrations.coordinator import ProcessPageJob, clear_recorded, recorded_markers
from spark.migrations.cursors import MigrationContext

if TYPE_CHECKING:
    from spark.integrations.models import Integration

logger = structlog.get_logger()

HANDOFF_TTL_SECONDS = 24 * 3600


async def abandon_batch(job: BaseJob, batch_id: str, exc: BaseException) -> None:
    """Unlock an integration whose backfill coordinator gave up."""
    await job.runtime.integrations.set_migration_batch(job.spec.integration_id, None)
    await job.runtime.alerts.raise_alert(
        "migration_coordination_failed",
        f"{job.service} backfill abandoned: {exc}",
        integration_id=job.spec.integration_id,
        service=job.service,
        batch_id=batch_id,
    )


class MonitorBatchJob(BaseJob):
    job_type = "migration.monitor_batch"
    policy = COORDINATOR_POLICY

    @classmethod
    def for_batch(cls, integration: "Integration", batch_id: str, *, phase: str) -> JobSpec:
        # No unique id: the monitor re-enqueues itself while still running.
        return cls.make_spec(
            integration_id=integration.id,
            service=integration.service,
            payload={"batch_id": batch_id, "phase": phase},
        )

    async def run(self) -> dict[str, Any]:
        batch_id = str(self.payload["batch_id"])
        phase = str(self.payload.get("phase") or "fetch")

        async with named_lock(self.runtime.cache, f"monitor_batch_{batch_id}", ttl_seconds=60) as acquired:
            if not acquired:
                return {"skipped": "locked"}

            if not await self.runtime.batches.is_finished(batch_id):
                delay = self.runtime.settings.migration_monitor_interval_seconds
                await self.enqueue(self.redispatch_spec(delay))
                return {"batch_id": batch_id, "finished": False}

            # Set-if-absent so a duplicate monitor cannot hand off twice.
            first = await self.runtime.cache.add(
                f"migration:handoff:{phase}:{batch_id}", isoformat_z(self.now), ttl_seconds=HANDOFF_TTL_SECONDS
            )
            if not first:
                return {"batch_id": batch_id, "finished": True, "handed_off": False}

            integration = await self.integration()
            if phase == "fetch":
                await self.enqueue(StartProcessingJob.for_batch(integration, batch_id))
                logger.info("Migration fetch batch finished", integration_id=integration.id, batch_id=batch_id)
            else:
                await self.runtime.integrations.set_migration_batch(integration.id, None)
                await self.runtime.integrations.mark_successful(integration.id, self.now)
                await clear_recorded(self.runtime, self.service, integration.id)
                status = await self.runtime.batches.status(batch_id)
                logger.info(
                    "Migration completed",
                    integration_id=integration.id,
                    batch_id=batch_id,
                    processed=status["processed"],
                    failed=status["failed"],
                )
            return {"batch_id": batch_id, "finished": True, "handed_off": True}

    async def failed(self, exc: BaseException) -> None:
        await super().failed(exc)
        await abandon_batch(self, str(self.payload["batch_id"]), exc)


class StartProcessingJob(BaseJob):
    job_type = "migration.start_processing"
    policy = COORDINATOR_POLICY

    @classmethod
    def for_batch(cls, integration: "Integration", fetch_batch_id: str) -> JobSpec:
        return cls.make_spec(
            integration_id=integration.id,
            service=integration.service,
            payload={"fetch_batch_id": fetch_batch_id},
            discriminator=fetch_batch_id,
        )

    async def run(self) -> dict[str, Any]:
        integration = await self.integration()
        plugin = self.plugin()
        recorded = await recorded_markers(self.runtime, self.service, integration.id)
        work = plugin.processing_work(recorded)

        batch_id = await self.runtime.batches.create(f"{self.service}_migration_process_{integration.id}")
        await self.runtime.batches.add_jobs(batch_id, len(work))
        for instance_type, items in work:
            context = MigrationContext(
                service=self.service,
                integration_id=integration.id,
                instance_type=instance_type,
                strategy="snapshot",
            )
            await self.enqueue(ProcessPageJob.for_context(context, items, batch_id=batch_id))

        await self.runtime.integrations.set_migration_batch(integration.id, batch_id)
        await self.enqueue(MonitorBatchJob.for_batch(integration, batch_id, phase="process"))
        logger.info(
            "Migration processing batch started",
            integration_id=integration.id,
            batch_id=batch_id,
            jobs=len(work),
        )
        return {"batch_id": batch_id, "jobs": len(work)}

    async def failed(self, exc: BaseException) -> None:
        await super().failed(exc)
        await abandon_batch(self, str(self.payload["fetch_batch_id"]), exc)
