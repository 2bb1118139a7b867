"""
Backfill jobs.

Chain mode: `FetchPageJob` applies `next_step` to each fetched page and, for a
non-empty page, enqueues `ProcessPageJob(items)` carrying
`FetchPageJob(next cursor)` as its chain, so page n is written before page
n+1 is requested.

Batch mode: fetch steps only record markers; processing starts once the
whole fetch batch has finished (see `spark.migrations.monitor`).
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any

import structlog

from spark.jobs.base import COORDINATOR_POLICY, MIGRATION_POLICY, BaseJob, JobRuntime, JobSpec
from spark.jobs.idempotency import job_key_for_payload
from spark.kernel.errors import ConflictError, RateLimited, ValidationError
from spark.kernel.hashing import payload_fingerprint
from spark.kernel.time import isoformat_z, parse_iso8601
from spark.migrations.cursors import (
    Advance,
    Chain,
    MigrationContext,
    Page,
    Record,
    Redispatch,
    Stop,
    next_step,
    timebox_expired,
)
from spark.monitoring.tracing import job_span

if TYPE_CHECKING:
    from spark.integrations.models import Integration

logger = structlog.get_logger()


# ----------------------------------------------------------------------
# Recorded markers (batch mode)
# ----------------------------------------------------------------------


def _recorded_key(service: str, integration_id: str) -> str:
    return f"migration:{service}:{integration_id}:recorded"


async def record_marker(runtime: JobRuntime, context: MigrationContext, marker: dict[str, Any]) -> None:
    """Append a marker; the counter gives every writer its own slot."""
    base = _recorded_key(context.service, context.integration_id)
    ttl = runtime.settings.migration_cache_ttl_seconds
    slot = await runtime.cache.increment(f"{base}:count", 1, ttl_seconds=ttl)
    await runtime.cache.set(
        f"{base}:{slot}",
        {"instance_type": context.instance_type, "marker": marker},
        ttl_seconds=ttl,
    )


async def recorded_markers(runtime: JobRuntime, service: str, integration_id: str) -> list[dict[str, Any]]:
    base = _recorded_key(service, integration_id)
    count = int(await runtime.cache.get(f"{base}:count") or 0)
    entries = []
    for slot in range(1, count + 1):
        entry = await runtime.cache.get(f"{base}:{slot}")
        if entry is not None:
            entries.append(entry)
    return entries


async def clear_recorded(runtime: JobRuntime, service: str, integration_id: str) -> None:
    base = _recorded_key(service, integration_id)
    count = int(await runtime.cache.get(f"{base}:count") or 0)
    for slot in range(1, count + 1):
        await runtime.cache.delete(f"{base}:{slot}")
    await runtime.cache.delete(f"{base}:count")


# ----------------------------------------------------------------------
# Active backfill marker
# ----------------------------------------------------------------------


def _active_key(integration_id: str) -> str:
    return f"migration:active:{integration_id}"


async def claim_backfill(runtime: JobRuntime, integration_id: str, *, timebox_until: datetime | None = None) -> bool:
    """Set-if-absent marker held from the request until the backfill's chains close."""
    ttl = runtime.settings.migration_cache_ttl_seconds
    now = runtime.clock()
    if timebox_until is not None:
        ttl = max(60, int((timebox_until - now).total_seconds()))
    return await runtime.cache.add(_active_key(integration_id), isoformat_z(now), ttl_seconds=ttl)


async def open_chains(runtime: JobRuntime, integration_id: str, count: int) -> None:
    if count <= 0:
        await release_backfill(runtime, integration_id)
        return
    await runtime.cache.set(
        f"{_active_key(integration_id)}:chains", count, ttl_seconds=runtime.settings.migration_cache_ttl_seconds
    )


async def close_chain(runtime: JobRuntime, integration_id: str) -> None:
    """Count one chain as finished; the last one releases the marker."""
    remaining = await runtime.cache.increment(f"{_active_key(integration_id)}:chains", -1)
    if remaining <= 0:
        await release_backfill(runtime, integration_id)


async def release_backfill(runtime: JobRuntime, integration_id: str) -> None:
    await runtime.cache.delete(f"{_active_key(integration_id)}:chains")
    await runtime.cache.delete(_active_key(integration_id))


# ----------------------------------------------------------------------
# Jobs
# ----------------------------------------------------------------------


class StartMigrationJob(BaseJob):
    job_type = "migration.start"
    policy = COORDINATOR_POLICY

    @classmethod
    def for_integration(cls, integration: "Integration", *, timebox_until: datetime | None = None) -> JobSpec:
        return cls.make_spec(
            integration_id=integration.id,
            service=integration.service,
            payload={"timebox_until": isoformat_z(timebox_until) if timebox_until else None},
            discriminator="start",
        )

    async def run(self) -> dict[str, Any]:
        integration = await self.integration()
        plugin = self.plugin()
        if plugin.migration_mode is None:
            raise ValidationError(
                message=f"{self.service} does not support backfill",
                code="migration.unsupported",
                meta={"service": self.service},
            )
        raw_timebox = self.payload.get("timebox_until")
        timebox_until = parse_iso8601(raw_timebox) if raw_timebox else None
        contexts = plugin.migration_contexts(integration, now=self.now, timebox_until=timebox_until)

        if plugin.migration_mode == "chain":
            await open_chains(self.runtime, integration.id, len(contexts))
            for context in contexts:
                await self.enqueue(FetchPageJob.for_context(context))
            logger.info("Migration chains started", integration_id=integration.id, chains=len(contexts))
            return {"mode": "chain", "chains": len(contexts)}

        await clear_recorded(self.runtime, self.service, integration.id)
        batch_id = await self.runtime.batches.create(f"{self.service}_migration_fetch_{integration.id}")
        await self.runtime.batches.add_jobs(batch_id, len(contexts))
        for context in contexts:
            await self.enqueue(FetchPageJob.for_context(context, batch_id=batch_id))
        await self.runtime.integrations.set_migration_batch(integration.id, batch_id)
        # The batch id guards the backfill from here on.
        await release_backfill(self.runtime, integration.id)

        from spark.migrations.monitor import MonitorBatchJob

        await self.enqueue(MonitorBatchJob.for_batch(integration, batch_id, phase="fetch"))
        logger.info(
            "Migration fetch batch started",
            integration_id=integration.id,
            batch_id=batch_id,
            contexts=len(contexts),
        )
        return {"mode": "batch", "batch_id": batch_id, "contexts": len(contexts)}

    async def failed(self, exc: BaseException) -> None:
        await super().failed(exc)
        await release_backfill(self.runtime, self.spec.integration_id)


class FetchPageJob(BaseJob):
    job_type = "migration.fetch_page"
    policy = MIGRATION_POLICY

    @classmethod
    def for_context(cls, context: MigrationContext, *, batch_id: str | None = None) -> JobSpec:
        payload = {"context": context.to_payload()}
        return cls.make_spec(
            integration_id=context.integration_id,
            service=context.service,
            payload=payload,
            discriminator=payload_fingerprint(payload)[:16],
            batch_id=batch_id,
        )

    @property
    def context(self) -> MigrationContext:
        return MigrationContext.from_payload(self.payload["context"])

    def span_name(self) -> str:
        return f"job.migration_fetch:{self.service}:{self.context.instance_type}"

    async def _continue(self, context: MigrationContext) -> None:
        batch_id = self.spec.batch_id
        if batch_id:
            await self.runtime.batches.add_jobs(batch_id, 1)
        await self.enqueue(FetchPageJob.for_context(context, batch_id=batch_id))

    async def _close(self) -> None:
        if self.spec.batch_id is None:
            await close_chain(self.runtime, self.spec.integration_id)

    async def failed(self, exc: BaseException) -> None:
        await super().failed(exc)
        await self._close()

    async def run(self) -> dict[str, Any]:
        context = self.context
        if timebox_expired(context, self.now):
            logger.info(
                "Migration timebox reached, stopping",
                integration_id=context.integration_id,
                instance_type=context.instance_type,
            )
            await self._close()
            return {"stopped": "timebox"}

        integration = await self.integration()
        with job_span(self.span_name(), integration_id=integration.id, cursor=context.cursor) as span:
            try:
                page = await self.plugin().fetch_page(self.runtime, integration, context)
            except RateLimited as exc:
                page = Page.rate_limited(exc.delay_seconds)
            step = next_step(context, page)
            span.set_attribute("step", type(step).__name__)

        if isinstance(step, Redispatch):
            # Same cursor, later; the runner keeps the attempt budget intact.
            raise RateLimited(delay_seconds=step.delay_seconds, meta={"service": self.service})

        if isinstance(step, Stop):
            logger.info(
                "Migration chain finished",
                integration_id=integration.id,
                instance_type=context.instance_type,
                reason=step.reason,
            )
            await self._close()
            return {"stopped": step.reason}

        if isinstance(step, Advance):
            await self._continue(step.next_context)
            return {"advanced": step.next_context.cursor}

        if isinstance(step, Chain):
            process = ProcessPageJob.for_context(context, step.items)
            await self.enqueue(process.with_chain(FetchPageJob.for_context(step.next_context)))
            return {"items": len(step.items), "next_cursor": step.next_context.cursor}

        if isinstance(step, Record):
            await record_marker(self.runtime, context, step.marker)
            if step.next_context is not None:
                await self._continue(step.next_context)
            return {"recorded": step.marker}

        raise TypeError(f"Unhandled migration step: {step!r}")


class ProcessPageJob(BaseJob):
    job_type = "migration.process_page"
    policy = MIGRATION_POLICY

    @classmethod
    def for_context(
        cls, context: MigrationContext, items: list[dict[str, Any]], *, batch_id: str | None = None
    ) -> JobSpec:
        payload = {"context": context.to_payload(), "items": items}
        return cls.make_spec(
            integration_id=context.integration_id,
            service=context.service,
            payload=payload,
            discriminator=payload_fingerprint(payload)[:16],
            batch_id=batch_id,
        )

    async def run(self) -> dict[str, Any]:
        context = MigrationContext.from_payload(self.payload["context"])
        items = list(self.payload.get("items") or [])
        key = job_key_for_payload(self.service, self.job_type, context.integration_id, self.payload)
        if await self.runtime.idempotency.has_been_processed_recently(key):
            return {"skipped": True}

        integration = await self.integration()
        with job_span(f"job.migration_process:{self.service}:{context.instance_type}", integration_id=integration.id):
            report = await self.plugin().process_migration_items(self.runtime, integration, context, items)
        await self.runtime.idempotency.mark_processed(key)
        return report.as_dict()

    async def failed(self, exc: BaseException) -> None:
        await super().failed(exc)
        await self.runtime.alerts.raise_alert(
            "migration_process_failed",
            f"{self.service} backfill page left unprocessed: {exc}",
            integration_id=self.spec.integration_id,
            service=self.service,
        )
        if self.spec.batch_id is None:
            # The chain ends with this page.
            await close_chain(self.runtime, self.spec.integration_id)


async def start_migration(
    runtime: JobRuntime, integration: "Integration", *, timebox_until: datetime | None = None
) -> str:
    plugin = runtime.plugins.get(integration.service)
    if plugin.migration_mode is None:
        raise ValidationError(
            message=f"{integration.service} does not support backfill",
            code="migration.unsupported",
            meta={"service": integration.service},
        )
    if integration.migration_batch_id:
        raise ConflictError(
            message="A backfill is already running",
            code="migration.in_progress",
            meta={"batch_id": integration.migration_batch_id},
        )
    if not await claim_backfill(runtime, integration.id, timebox_until=timebox_until):
        raise ConflictError(
            message="A backfill is already running",
            code="migration.in_progress",
            meta={"integration_id": integration.id},
        )
    job_id = await runtime.queue.enqueue(StartMigrationJob.for_integration(integration, timebox_until=timebox_until))
    logger.info("Migration requested", integration_id=integration.id, service=integration.service, job_id=job_id)
    return job_id
