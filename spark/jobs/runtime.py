"""Production wiring of the collaborators every job receives."""

from __future__ import annotations

import httpx

from spark.cache import get_cache
from spark.canonical.sql_store import SqlCanonicalStore
from spark.config import Settings, get_settings
from spark.credentials.manager import CredentialManager
from spark.integrations.sql_repository import SqlIntegrationRepository
from spark.jobs.base import JobRuntime
from spark.jobs.batches import BatchTracker
from spark.jobs.idempotency import IdempotencyGuard
from spark.jobs.queue import PostgresJobQueue
from spark.kernel.time import utc_now
from spark.monitoring.alerts import OperatorAlerts
from spark.plugins.registry import get_plugin_registry

_runtime: JobRuntime | None = None


async def build_runtime(settings: Settings | None = None, *, http: httpx.AsyncClient | None = None) -> JobRuntime:
    settings = settings or get_settings()
    cache = await get_cache()
    integrations = SqlIntegrationRepository()
    return JobRuntime(
        settings=settings,
        store=SqlCanonicalStore(),
        integrations=integrations,
        cache=cache,
        queue=PostgresJobQueue(clock=utc_now),
        plugins=get_plugin_registry(),
        credentials=CredentialManager(settings=settings, repository=integrations, cache=cache, http=http),
        alerts=OperatorAlerts(webhook_url=settings.alert_webhook_url, http=http),
        batches=BatchTracker(cache),
        idempotency=IdempotencyGuard(cache, ttl_seconds=settings.idempotency_ttl_seconds),
        clock=utc_now,
        http=http,
    )


async def get_runtime() -> JobRuntime:
    """Process-wide runtime (API and worker)."""
    global _runtime
    if _runtime is None:
        _runtime = await build_runtime()
    return _runtime


async def close_runtime() -> None:
    global _runtime
    if _runtime is None:
        return
    try:
        await _runtime.http.aclose()
    finally:
        _runtime = None
