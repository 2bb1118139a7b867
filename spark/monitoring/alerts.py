"""
Operator alerts.

Raised when data is known to be left unprocessed (a Process job exhausting
its retries). Always logged at error level and counted; optionally POSTed to
a configured webhook.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from spark.kernel.sanitize import sanitize_data
from spark.kernel.time import Clock, isoformat_z, utc_now
from spark.monitoring.metrics import get_metrics

logger = structlog.get_logger()


class OperatorAlerts:
    def __init__(
        self,
        *,
        webhook_url: str | None = None,
        http: httpx.AsyncClient | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.webhook_url = webhook_url
        self.http = http
        self.clock = clock or utc_now
        self.sent: list[dict[str, Any]] = []

    async def raise_alert(self, kind: str, message: str, **context: Any) -> dict[str, Any]:
        payload = {
            "kind": kind,
            "message": message,
            "raised_at": isoformat_z(self.clock()),
            "context": sanitize_data(context),
        }
        logger.error("Operator alert", alert_kind=kind, alert_message=message, **payload["context"])
        get_metrics().track_alert(kind)
        self.sent.append(payload)

        if self.webhook_url:
            await self._deliver(payload)
        return payload

    async def _deliver(self, payload: dict[str, Any]) -> None:
        try:
            if self.http is not None:
                response = await self.http.post(self.webhook_url, json=payload, timeout=10.0)
            else:
                async with httpx.AsyncClient(timeout=10.0) as client:
                    response = await client.post(self.webhook_url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            # The log line above is the alert of record.
            logger.warning("Operator alert delivery failed", error=str(exc), alert_kind=payload["kind"])
