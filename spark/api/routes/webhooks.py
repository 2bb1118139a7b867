"""
Webhook ingress.

`POST /webhooks/{service}/{secret}` authenticates a delivery by the
per-group secret in the path plus the provider's signature, then hands the
raw body to a Webhook job. Nothing is written to the canonical store from the
request itself.
"""

import structlog
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from spark.jobs.base import JobRuntime
from spark.jobs.runtime import get_runtime
from spark.jobs.webhook import WebhookJob
from spark.monitoring.metrics import get_metrics

logger = structlog.get_logger()

router = APIRouter(tags=["Webhooks"])


@router.post("/webhooks/{service}/{secret}")
async def receive_webhook(
    service: str,
    secret: str,
    request: Request,
    runtime: JobRuntime = Depends(get_runtime),
):
    if not runtime.plugins.has(service) or not runtime.plugins.get(service).is_webhook:
        return JSONResponse(status_code=404, content={"error": "Unknown service"})
    plugin = runtime.plugins.get(service)

    integrations = await runtime.integrations.find_by_service_and_secret(service, secret)
    if not integrations:
        logger.warning("Webhook for unknown secret", service=service)
        return JSONResponse(status_code=404, content={"error": "Unknown webhook"})

    body = await request.body()
    headers = {key.lower(): value for key, value in request.headers.items()}

    try:
        # Verify every target before queueing anything.
        for integration in integrations:
            if not plugin.verify_webhook_signature(integration, body, headers):
                get_metrics().track_webhook(service, "signature_invalid")
                logger.warning("Webhook signature rejected", service=service, integration_id=integration.id)
                return JSONResponse(status_code=401, content={"error": "Invalid signature"})

        job_ids = [
            await runtime.queue.enqueue(WebhookJob.for_delivery(integration, body, headers))
            for integration in integrations
        ]
    except Exception as exc:
        logger.error("Webhook handling failed", service=service, error=str(exc), exc_info=True)
        get_metrics().track_webhook(service, "error")
        return JSONResponse(status_code=500, content={"error": "Webhook processing failed"})

    get_metrics().track_webhook(service, "accepted")
    logger.info("Webhook accepted", service=service, integrations=len(integrations), jobs=len(job_ids))
    return {"status": "success"}
