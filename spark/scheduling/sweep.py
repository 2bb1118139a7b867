"""
Integration update sweep.

Runs once per scheduler tick. Picks pull integrations that are due, enqueues
one Fetch job per fetch type and stamps `last_triggered_at` so the next tick
does not pick them again.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

import structlog

from spark.integrations.models import Integration
from spark.jobs.base import JobRuntime
from spark.jobs.fetch import fetch_specs
from spark.monitoring.metrics import get_metrics
from spark.monitoring.tracing import job_span
from spark.plugins.contracts import Capability, ProviderPlugin

logger = structlog.get_logger()


@dataclass
class SweepResult:
    scheduled: list[str] = field(default_factory=list)
    skipped: dict[str, str] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)


async def _has_credentials(runtime: JobRuntime, plugin: ProviderPlugin, integration: Integration) -> bool:
    if not plugin.is_oauth:
        return plugin.has(Capability.API_KEY)
    group = None
    if integration.integration_group_id:
        group = await runtime.integrations.get_group(integration.integration_group_id)
    access_token, _, _ = integration.effective_tokens(group)
    return bool(access_token)


def skip_reason(integration: Integration, now: datetime) -> str | None:
    """Why `integration` should not be triggered at `now`, or None when it is due."""
    if integration.is_paused:
        return "paused"
    if integration.is_processing(now):
        return "processing"
    if integration.triggered_within_frequency(now):
        return "too_soon"
    if not integration.is_due(now):
        return "not_due"
    return None


async def candidates(runtime: JobRuntime) -> list[tuple[ProviderPlugin, Integration]]:
    """Active pull integrations whose credentials allow an unattended fetch."""
    plugins = {plugin.identifier: plugin for plugin in runtime.plugins.schedulable()}
    if not plugins:
        return []

    selected = []
    for integration in await runtime.integrations.list_active(sorted(plugins)):
        if integration.deleted_at is not None or integration.status != "active":
            continue
        plugin = plugins[integration.service]
        if await _has_credentials(runtime, plugin, integration):
            selected.append((plugin, integration))
    return selected


async def run_sweep(runtime: JobRuntime, now: datetime | None = None) -> SweepResult:
    now = now or runtime.clock()
    result = SweepResult()

    with job_span("job.check_integration_updates") as span:
        due = await candidates(runtime)
        logger.info("Starting integration update check", candidates=len(due))

        for plugin, integration in due:
            reason = skip_reason(integration, now)
            if reason is not None:
                result.skipped[integration.id] = reason
                logger.debug(
                    "Skipping integration",
                    integration_id=integration.id,
                    service=integration.service,
                    reason=reason,
                )
                continue

            try:
                for spec in fetch_specs(integration, plugin.fetch_types(integration)):
                    await runtime.queue.enqueue(spec)
                await runtime.integrations.mark_triggered(integration.id, now)
            except Exception as exc:
                # Errors are recorded per integration.
                result.errors[integration.id] = str(exc)
                logger.error(
                    "Failed to schedule integration",
                    integration_id=integration.id,
                    service=integration.service,
                    error=str(exc),
                )
                continue

            result.scheduled.append(integration.id)
            logger.info("Scheduled fetch jobs", integration_id=integration.id, service=integration.service)

        span.set_attribute("scheduled", len(result.scheduled))
        span.set_attribute("skipped", len(result.skipped))

    get_metrics().track_sweep([integration.service for _, integration in due if integration.id in result.scheduled])
    logger.info(
        "Integration update check completed",
        scheduled=len(result.scheduled),
        skipped=len(result.skipped),
        errors=len(result.errors),
    )
    return result
