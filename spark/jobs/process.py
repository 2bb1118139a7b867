"""Process job: write one chunk of raw provider items into the canonical store."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog

from spark.jobs.base import PROCESS_POLICY, BaseJob, JobRuntime, JobSpec
from spark.jobs.idempotency import job_key_for_payload
from spark.kernel.hashing import payload_fingerprint
from spark.monitoring.metrics import get_metrics
from spark.monitoring.tracing import job_span

if TYPE_CHECKING:
    from spark.integrations.models import Integration
    from spark.plugins.contracts import ProviderPlugin

logger = structlog.get_logger()


class ProcessJob(BaseJob):
    job_type = "integration.process"
    policy = PROCESS_POLICY

    @classmethod
    def for_items(
        cls,
        integration: "Integration",
        data_type: str,
        items: list[dict[str, Any]],
        *,
        batch_id: str | None = None,
    ) -> JobSpec:
        return cls.make_spec(
            integration_id=integration.id,
            service=integration.service,
            payload={"data_type": data_type, "items": items},
            discriminator=payload_fingerprint([data_type, items])[:16],
            batch_id=batch_id,
        )

    def idempotency_key(self) -> str:
        return job_key_for_payload(
            self.service,
            self.job_type,
            self.spec.integration_id or "none",
            {"data_type": self.payload.get("data_type"), "items": self.payload.get("items")},
        )

    async def run(self) -> dict[str, Any]:
        integration = await self.integration()
        data_type = str(self.payload.get("data_type") or integration.instance_type or "default")
        items = list(self.payload.get("items") or [])

        key = self.idempotency_key()
        if await self.runtime.idempotency.has_been_processed_recently(key):
            get_metrics().track_idempotency_skip(self.service)
            logger.info("Skipping recently processed chunk", integration_id=integration.id, items=len(items))
            return {"skipped": True}

        with job_span(f"job.process:{self.service}:{data_type}", integration_id=integration.id) as span:
            report = await self.plugin().process_items(self.runtime, integration, data_type, items)
            span.set_attribute("written", report.written)
            span.set_attribute("skipped", report.skipped)

        await self.runtime.idempotency.mark_processed(key)
        get_metrics().track_items(self.service, written=report.written, skipped=report.skipped)
        return report.as_dict()

    async def failed(self, exc: BaseException) -> None:
        await super().failed(exc)
        # Unprocessed provider data is a correctness problem, not just staleness.
        await self.runtime.alerts.raise_alert(
            "process_failed",
            f"{self.service} data left unprocessed: {exc}",
            integration_id=self.spec.integration_id,
            service=self.service,
            data_type=self.payload.get("data_type"),
            items=len(self.payload.get("items") or []),
        )


async def dispatch_processing_jobs(
    runtime: JobRuntime,
    integration: "Integration",
    plugin: "ProviderPlugin",
    data_type: str,
    items: list[dict[str, Any]],
) -> list[str]:
    """One Process job per chunk of `plugin.chunk_size` items."""
    job_ids = []
    for chunk in plugin.chunk(items):
        job_ids.append(await runtime.queue.enqueue(ProcessJob.for_items(integration, data_type, chunk)))
    if job_ids:
        logger.info(
            "Processing jobs dispatched",
            integration_id=integration.id,
            service=integration.service,
            data_type=data_type,
            jobs=len(job_ids),
            items=len(items),
        )
    return job_ids
