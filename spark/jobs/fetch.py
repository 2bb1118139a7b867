"""Fetch job: pull new data for one integration and fan it out to Process jobs."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog

from spark.jobs.base import FETCH_POLICY, BaseJob, JobSpec
from spark.jobs.process import dispatch_processing_jobs
from spark.monitoring.tracing import job_span

if TYPE_CHECKING:
    from spark.integrations.models import Integration

logger = structlog.get_logger()


class FetchJob(BaseJob):
    job_type = "integration.fetch"
    policy = FETCH_POLICY

    @classmethod
    def for_integration(cls, integration: "Integration", fetch_type: str) -> JobSpec:
        return cls.make_spec(
            integration_id=integration.id,
            service=integration.service,
            payload={"fetch_type": fetch_type},
            discriminator=fetch_type,
        )

    @property
    def fetch_type(self) -> str:
        return str(self.payload.get("fetch_type") or "default")

    def span_name(self) -> str:
        return f"job.fetch:{self.service}:{self.fetch_type}"

    async def run(self) -> dict[str, Any]:
        integration = await self.integration()
        plugin = self.plugin()

        with job_span(self.span_name(), integration_id=integration.id) as span:
            items = await plugin.fetch_data(self.runtime, integration, self.fetch_type)
            span.set_attribute("items", len(items))
            job_ids = await dispatch_processing_jobs(self.runtime, integration, plugin, self.fetch_type, items)

        await self.runtime.integrations.mark_successful(integration.id, self.now)
        return {"items": len(items), "process_jobs": len(job_ids)}

    async def failed(self, exc: BaseException) -> None:
        await super().failed(exc)
        if self.spec.integration_id:
            await self.runtime.integrations.mark_failed(self.spec.integration_id)


def fetch_specs(integration: "Integration", fetch_types: list[str]) -> list[JobSpec]:
    return [FetchJob.for_integration(integration, fetch_type) for fetch_type in fetch_types]
