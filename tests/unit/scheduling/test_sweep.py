from __future__ import annotations

from datetime import timedelta

import pytest

from spark.scheduling.sweep import run_sweep, skip_reason

pytestmark = pytest.mark.unit


def _fetch_types(harness, integration_id: str) -> list[str]:
    return [
        job.spec.payload["fetch_type"]
        for job in harness.queue.find(job_type="integration.fetch")
        if job.spec.integration_id == integration_id
    ]


class TestRunSweep:
    @pytest.mark.asyncio
    async def test_due_integration_is_fetched_and_stamped(self, harness):
        integration = await harness.connect("spotify")

        result = await run_sweep(harness.runtime)

        assert result.scheduled == [integration.id]
        assert _fetch_types(harness, integration.id) == ["listening"]
        assert (await harness.refreshed(integration)).last_triggered_at == harness.clock()

    @pytest.mark.asyncio
    async def test_second_tick_does_not_double_schedule(self, harness):
        integration = await harness.connect("spotify")
        await run_sweep(harness.runtime)

        harness.clock.advance(minutes=1)
        result = await run_sweep(harness.runtime)

        assert result.scheduled == []
        assert result.skipped == {integration.id: "processing"}
        assert len(harness.queue.find(job_type="integration.fetch")) == 1

    @pytest.mark.asyncio
    async def test_oauth_integration_without_token_is_not_a_candidate(self, harness):
        await harness.connect("spotify", access_token=None)

        result = await run_sweep(harness.runtime)

        assert result.scheduled == [] and result.skipped == {}

    @pytest.mark.asyncio
    async def test_api_key_integrations_are_candidates(self, harness):
        integration = await harness.connect("hevy", access_token=None)

        result = await run_sweep(harness.runtime)

        assert result.scheduled == [integration.id]

    @pytest.mark.asyncio
    async def test_push_and_manual_providers_are_never_swept(self, harness):
        await harness.connect("outline", access_token=None)
        await harness.connect("journal", access_token=None)

        result = await run_sweep(harness.runtime)

        assert result.scheduled == [] and result.skipped == {}
        assert harness.queue.jobs == {}

    @pytest.mark.asyncio
    async def test_paused_and_failed_integrations(self, harness):
        paused = await harness.connect("spotify", configuration={"paused": True})
        failed = await harness.connect("oura", instance_type="sleep")
        await harness.integrations.mark_failed(failed.id)

        result = await run_sweep(harness.runtime)

        assert result.skipped == {paused.id: "paused"}
        assert result.scheduled == []

    @pytest.mark.asyncio
    async def test_one_broken_integration_does_not_stop_the_rest(self, harness, monkeypatch):
        broken = await harness.connect("oura", instance_type="sleep")
        healthy = await harness.connect("spotify")
        oura = harness.runtime.plugins.get("oura")

        def explode(integration):
            raise RuntimeError("bad configuration")

        monkeypatch.setattr(oura, "fetch_types", explode)

        result = await run_sweep(harness.runtime)

        assert result.errors == {broken.id: "bad configuration"}
        assert result.scheduled == [healthy.id]
        assert (await harness.refreshed(broken)).last_triggered_at is None


class TestSkipReason:
    @pytest.mark.asyncio
    async def test_not_due_until_frequency_elapses(self, harness):
        integration = await harness.connect("oura", instance_type="sleep")
        now = harness.clock()
        integration = await harness.integrations.update_integration(
            integration.id, last_successful_update_at=now - timedelta(minutes=10)
        )

        assert skip_reason(integration, now) == "not_due"
        assert skip_reason(integration, now + timedelta(minutes=50)) is None

    @pytest.mark.asyncio
    async def test_too_soon_after_a_finished_trigger(self, harness):
        integration = await harness.connect("oura", instance_type="sleep")
        now = harness.clock()
        integration = await harness.integrations.update_integration(
            integration.id,
            last_triggered_at=now - timedelta(minutes=40),
            last_successful_update_at=now - timedelta(minutes=90),
        )

        assert skip_reason(integration, now) == "too_soon"
        assert skip_reason(integration, now + timedelta(minutes=21)) is None

    @pytest.mark.asyncio
    async def test_running_migration_blocks_scheduling(self, harness):
        integration = await harness.connect("monzo", instance_type="transactions")
        integration = await harness.integrations.set_migration_batch(integration.id, "batch-1")

        assert skip_reason(integration, harness.clock()) == "processing"
