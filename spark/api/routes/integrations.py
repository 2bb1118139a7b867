"""Operator actions on a single integration."""

from datetime import timedelta

import structlog
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from spark.jobs.base import JobRuntime
from spark.jobs.fetch import fetch_specs
from spark.jobs.runtime import get_runtime
from spark.migrations.coordinator import start_migration

logger = structlog.get_logger()

router = APIRouter(prefix="/integrations", tags=["Integrations"])


class MigrateRequest(BaseModel):
    timebox_minutes: int | None = Field(default=None, ge=1, description="Stop the backfill after this many minutes")


@router.post("/{integration_id}/retry")
async def retry_integration(integration_id: str, runtime: JobRuntime = Depends(get_runtime)):
    """Clear a failed status and pull again right away."""
    integration = await runtime.integrations.require(integration_id)
    plugin = runtime.plugins.get(integration.service)
    integration = await runtime.integrations.reset_failed(integration.id)

    job_ids: list[str] = []
    if plugin.is_pull:
        for spec in fetch_specs(integration, plugin.fetch_types(integration)):
            job_ids.append(await runtime.queue.enqueue(spec))
        await runtime.integrations.mark_triggered(integration.id, runtime.clock())

    logger.info("Integration retry requested", integration_id=integration.id, jobs=len(job_ids))
    return {"status": integration.status, "job_ids": job_ids}


@router.post("/{integration_id}/migrate", status_code=202)
async def migrate_integration(
    integration_id: str,
    body: MigrateRequest | None = None,
    runtime: JobRuntime = Depends(get_runtime),
):
    integration = await runtime.integrations.require(integration_id)
    timebox_until = None
    if body is not None and body.timebox_minutes:
        timebox_until = runtime.clock() + timedelta(minutes=body.timebox_minutes)
    job_id = await start_migration(runtime, integration, timebox_until=timebox_until)
    return {"status": "queued", "job_id": job_id}
