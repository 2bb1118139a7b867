"""In-memory pipeline harness: every collaborator a job sees, wired to fakes."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx

from spark.cache.base import InMemoryCache
from spark.canonical.store import InMemoryCanonicalStore
from spark.config import Settings
from spark.credentials.manager import CredentialManager
from spark.integrations.models import Integration, IntegrationGroup
from spark.integrations.repository import InMemoryIntegrationRepository
from spark.jobs.base import JobRuntime
from spark.jobs.batches import BatchTracker
from spark.jobs.idempotency import IdempotencyGuard
from spark.jobs.memory_queue import InMemoryJobQueue
from spark.jobs.worker import JobsWorker
from spark.monitoring.alerts import OperatorAlerts
from spark.plugins.registry import build_registry
from tests.support.clock import FakeClock
from tests.support.providers import ProviderStub

OWNER = "owner"

TEST_SETTINGS: dict[str, Any] = {
    "environment": "test",
    "cache_backend": "memory",
    "app_url": "http://testserver",
    "github_client_id": "gh-client",
    "github_client_secret": "gh-secret",
    "spotify_client_id": "sp-client",
    "spotify_client_secret": "sp-secret",
    "oura_client_id": "oura-client",
    "oura_client_secret": "oura-secret",
    "monzo_client_id": "monzo-client",
    "monzo_client_secret": "monzo-secret",
    "gocardless_secret_id": "gc-id",
    "gocardless_secret_key": "gc-key",
    "gocardless_daily_call_cap": 4,
    "hevy_api_key": None,
    "oauth_state_key": "",
    "alert_webhook_url": None,
    "scheduler_enabled": False,
    "owner_user_id": OWNER,
}


def make_settings(**overrides: Any) -> Settings:
    return Settings(**{**TEST_SETTINGS, **overrides})


@dataclass
class Harness:
    runtime: JobRuntime
    clock: FakeClock
    provider: ProviderStub
    store: InMemoryCanonicalStore
    integrations: InMemoryIntegrationRepository
    cache: InMemoryCache
    queue: InMemoryJobQueue
    alerts: OperatorAlerts
    worker: JobsWorker

    async def drain(self, *, max_jobs: int = 1000) -> int:
        """Run every job that is due now."""
        return await self.worker.run_until_idle(max_jobs=max_jobs)

    async def drain_all(self, *, rounds: int = 50) -> int:
        """Run jobs, pulling delayed ones forward, until the queue is empty."""
        executed = 0
        for _ in range(rounds):
            executed += await self.drain()
            if not self.queue.pending():
                break
            self.queue.reschedule_all(self.clock())
        return executed

    async def connect(
        self,
        service: str,
        *,
        instance_type: str | None = None,
        configuration: dict[str, Any] | None = None,
        access_token: str | None = "access-1",
        refresh_token: str | None = "refresh-1",
        expires_in_seconds: int | None = 3600,
        account_id: str | None = None,
    ) -> Integration:
        """A group (with tokens when given) plus one instance, as after a completed connect."""
        plugin = self.runtime.plugins.get(service)
        group = await plugin.initialize_group(self.integrations, user_id=OWNER)
        if access_token:
            from datetime import timedelta

            group = await self.integrations.save_group_tokens(
                group.id,
                access_token=access_token,
                refresh_token=refresh_token,
                expiry=self.clock() + timedelta(seconds=expires_in_seconds) if expires_in_seconds else None,
            )
        if account_id:
            group = await self.integrations.set_group_account(group.id, account_id)
        return await plugin.create_instance(self.integrations, group, instance_type, configuration)

    async def group_of(self, integration: Integration) -> IntegrationGroup:
        return await self.integrations.require_group(str(integration.integration_group_id))

    async def refreshed(self, integration: Integration) -> Integration:
        return await self.integrations.require(integration.id)


def build_harness(**settings_overrides: Any) -> Harness:
    clock = FakeClock.fixed()
    provider = ProviderStub()
    http = httpx.AsyncClient(transport=provider.transport())
    settings = make_settings(**settings_overrides)

    cache = InMemoryCache(clock)
    store = InMemoryCanonicalStore(clock)
    integrations = InMemoryIntegrationRepository()
    queue = InMemoryJobQueue(clock)
    alerts = OperatorAlerts(webhook_url=settings.alert_webhook_url, http=http, clock=clock)

    runtime = JobRuntime(
        settings=settings,
        store=store,
        integrations=integrations,
        cache=cache,
        queue=queue,
        plugins=build_registry(),
        credentials=CredentialManager(
            settings=settings, repository=integrations, cache=cache, http=http, clock=clock
        ),
        alerts=alerts,
        batches=BatchTracker(cache, clock=clock),
        idempotency=IdempotencyGuard(cache, ttl_seconds=settings.idempotency_ttl_seconds, clock=clock),
        clock=clock,
        http=http,
    )
    return Harness(
        runtime=runtime,
        clock=clock,
        provider=provider,
        store=store,
        integrations=integrations,
        cache=cache,
        queue=queue,
        alerts=alerts,
        worker=JobsWorker(runtime),
    )
