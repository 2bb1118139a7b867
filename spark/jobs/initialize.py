"""Initialization job: one-shot provider setup for a fresh instance."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from spark.jobs.base import INITIALIZE_POLICY, BaseJob, JobSpec
from spark.monitoring.tracing import job_span

if TYPE_CHECKING:
    from spark.integrations.models import Integration


class InitializeJob(BaseJob):
    job_type = "integration.initialize"
    policy = INITIALIZE_POLICY

    @classmethod
    def for_integration(cls, integration: "Integration") -> JobSpec:
        return cls.make_spec(
            integration_id=integration.id,
            service=integration.service,
            discriminator="initialize",
        )

    async def run(self) -> dict[str, Any]:
        integration = await self.integration()
        with job_span(f"job.initialize:{self.service}", integration_id=integration.id):
            await self.plugin().initialize(self.runtime, integration)
        await self.runtime.integrations.mark_successful(integration.id, self.now)
        return {"initialized": integration.id}

    async def failed(self, exc: BaseException) -> None:
        await super().failed(exc)
        if self.spec.integration_id:
            await self.runtime.integrations.mark_failed(self.spec.integration_id)
