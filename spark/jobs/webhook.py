"""Webhook job: re-verify a stored delivery, split it and dispatch Process jobs."""

from __future__ import annotations

import base64
import json
from typing import TYPE_CHECKING, Any, Mapping

import structlog

from spark.jobs.base import WEBHOOK_POLICY, BaseJob, JobSpec
from spark.jobs.process import dispatch_processing_jobs
from spark.kernel.errors import SignatureMismatch, UndecodableWebhook
from spark.monitoring.metrics import get_metrics
from spark.monitoring.tracing import job_span

if TYPE_CHECKING:
    from spark.integrations.models import Integration

logger = structlog.get_logger()


def decode_delivery(body: bytes) -> Any:
    try:
        return json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise UndecodableWebhook() from exc


class WebhookJob(BaseJob):
    job_type = "integration.webhook"
    policy = WEBHOOK_POLICY

    @classmethod
    def for_delivery(cls, integration: "Integration", body: bytes, headers: Mapping[str, str]) -> JobSpec:
        return cls.make_spec(
            integration_id=integration.id,
            service=integration.service,
            payload={
                "body": base64.b64encode(body).decode("ascii"),
                "headers": {key.lower(): value for key, value in headers.items()},
            },
        )

    async def run(self) -> dict[str, Any]:
        integration = await self.integration()
        plugin = self.plugin()
        body = base64.b64decode(self.payload.get("body") or "")
        headers = dict(self.payload.get("headers") or {})

        with job_span(f"job.webhook:{self.service}", integration_id=integration.id) as span:
            if not plugin.verify_webhook_signature(integration, body, headers):
                get_metrics().track_webhook(self.service, "signature_invalid")
                raise SignatureMismatch(meta={"service": self.service})

            chunks = plugin.split_webhook(integration, decode_delivery(body), headers)
            job_ids: list[str] = []
            for chunk in chunks:
                job_ids.extend(
                    await dispatch_processing_jobs(self.runtime, integration, plugin, chunk.data_type, chunk.items)
                )
            span.set_attribute("chunks", len(chunks))

        get_metrics().track_webhook(self.service, "accepted")
        return {"chunks": len(chunks), "process_jobs": len(job_ids)}
