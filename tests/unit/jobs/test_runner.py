from __future__ import annotations

from datetime import timedelta
from typing import Any

import pytest

from spark.jobs.base import BaseJob, RetryPolicy
from spark.jobs.registry import build_job_registry
from spark.jobs.runner import circuit_key, next_in_chain
from spark.jobs.worker import JobsWorker
from spark.kernel.errors import CredentialsRevoked, RateLimited

pytestmark = pytest.mark.unit

RUNS: list[dict[str, Any]] = []
FAILED_HOOKS: list[str] = []


@pytest.fixture(autouse=True)
def _reset_recorders():
    RUNS.clear()
    FAILED_HOOKS.clear()
    yield
    RUNS.clear()
    FAILED_HOOKS.clear()


class ScriptedJob(BaseJob):
    """The Nth run in a test does what `payload["script"][N]` says (the last step repeats)."""

    job_type = "test.scripted"
    policy = RetryPolicy(timeout_seconds=30, tries=3, backoff=(10, 20, 40))

    async def run(self) -> dict[str, Any]:
        script = self.payload.get("script") or ["ok"]
        step = script[min(len(RUNS), len(script) - 1)]
        RUNS.append({"attempt": self.attempt, "step": step, "name": self.payload.get("name")})
        if step == "boom":
            raise RuntimeError("boom")
        if step == "revoked":
            raise CredentialsRevoked()
        if step == "rate_limited":
            raise RateLimited(delay_seconds=90)
        return {"step": step}

    async def failed(self, exc: BaseException) -> None:
        await super().failed(exc)
        FAILED_HOOKS.append(type(exc).__name__)


def _spec(script: list[str], *, integration_id: str = "i1", name: str | None = None, **kwargs):
    return ScriptedJob.make_spec(
        integration_id=integration_id, service="github", payload={"script": script, "name": name}, **kwargs
    )


@pytest.fixture
def worker(harness):
    return JobsWorker(harness.runtime, build_job_registry((ScriptedJob,)))


class TestOutcomes:
    @pytest.mark.asyncio
    async def test_success_marks_job_succeeded(self, harness, worker):
        job_id = await harness.queue.enqueue(_spec(["ok"]))

        assert await worker.run_until_idle() == 1
        job = harness.queue.jobs[job_id]
        assert job.status == "succeeded"
        assert job.result == {"step": "ok"}

    @pytest.mark.asyncio
    async def test_failure_retries_after_backoff_then_succeeds(self, harness, worker):
        job_id = await harness.queue.enqueue(_spec(["boom", "ok"]))

        await worker.run_until_idle()
        job = harness.queue.jobs[job_id]
        assert job.status == "queued"
        assert job.run_at == harness.clock() + timedelta(seconds=10)
        assert job.last_error == "boom"

        # Not yet due.
        assert await worker.run_until_idle() == 0
        harness.clock.advance(seconds=10)
        await worker.run_until_idle()

        assert job.status == "succeeded"
        assert job.attempts == 2
        assert job.history == ["running", "retrying", "running", "succeeded"]

    @pytest.mark.asyncio
    async def test_exhausted_retries_fail_and_call_hook_once(self, harness, worker):
        job_id = await harness.queue.enqueue(_spec(["boom"]))

        for delay in (10, 20, 0):
            await worker.run_until_idle()
            harness.clock.advance(seconds=delay)

        job = harness.queue.jobs[job_id]
        assert job.status == "failed"
        assert job.attempts == 3
        assert [run["attempt"] for run in RUNS] == [1, 2, 3]
        assert FAILED_HOOKS == ["RuntimeError"]

    @pytest.mark.asyncio
    async def test_non_retryable_error_fails_immediately(self, harness, worker):
        job_id = await harness.queue.enqueue(_spec(["revoked", "ok"]))

        await worker.run_until_idle()

        assert harness.queue.jobs[job_id].status == "failed"
        assert len(RUNS) == 1
        assert FAILED_HOOKS == ["CredentialsRevoked"]

    @pytest.mark.asyncio
    async def test_rate_limit_redispatches_without_spending_an_attempt(self, harness, worker):
        job_id = await harness.queue.enqueue(_spec(["rate_limited", "ok"]))

        outcome_count = await worker.run_until_idle()
        assert outcome_count == 1

        original = harness.queue.jobs[job_id]
        assert original.history[-1] == "redispatched"
        [follow_up] = harness.queue.pending()
        assert follow_up.run_at == harness.clock() + timedelta(seconds=90)
        assert follow_up.attempts == 0

        harness.clock.advance(seconds=90)
        await worker.run_until_idle()
        assert follow_up.status == "succeeded"
        assert follow_up.attempts == 1
        assert FAILED_HOOKS == []

    @pytest.mark.asyncio
    async def test_unknown_job_type_fails(self, harness, worker):
        from spark.jobs.base import JobSpec

        job_id = await harness.queue.enqueue(JobSpec(job_type="nope.nothing", integration_id=None))

        await worker.run_until_idle()
        assert harness.queue.jobs[job_id].status == "failed"


class TestCircuitBreaker:
    @pytest.mark.asyncio
    async def test_repeated_failures_open_the_circuit(self, harness, worker):
        harness.runtime.settings.circuit_breaker_threshold = 2
        first = await harness.queue.enqueue(_spec(["boom"], name="a"))

        await worker.run_until_idle()
        assert harness.queue.jobs[first].status == "queued"

        harness.clock.advance(seconds=10)
        await worker.run_until_idle()
        # Second consecutive failure for the integration trips the breaker.
        assert harness.queue.jobs[first].status == "failed"
        assert await harness.cache.get(circuit_key("i1", "github")) == 2

    @pytest.mark.asyncio
    async def test_success_resets_the_circuit(self, harness, worker):
        harness.runtime.settings.circuit_breaker_threshold = 2
        await harness.queue.enqueue(_spec(["boom", "ok"]))

        await worker.run_until_idle()
        harness.clock.advance(seconds=10)
        await worker.run_until_idle()

        assert await harness.cache.get(circuit_key("i1", "github")) is None


class TestChainsAndBatches:
    @pytest.mark.asyncio
    async def test_chain_runs_in_order(self, harness, worker):
        spec = _spec(["ok"], name="first").with_chain(
            _spec(["ok"], name="second"),
            _spec(["ok"], name="third"),
        )
        await harness.queue.enqueue(spec)

        await worker.run_until_idle()

        assert [run["name"] for run in RUNS] == ["first", "second", "third"]

    @pytest.mark.asyncio
    async def test_failed_link_stops_the_chain(self, harness, worker):
        await harness.queue.enqueue(_spec(["revoked"], name="first").with_chain(_spec(["ok"], name="second")))

        await worker.run_until_idle()

        assert [run["name"] for run in RUNS] == ["first"]
        assert harness.queue.pending() == []

    def test_next_in_chain_carries_the_tail(self):
        head = _spec(["ok"], name="a").with_chain(_spec(["ok"], name="b"), _spec(["ok"], name="c"))

        following = next_in_chain(head)
        assert following.payload["name"] == "b"
        assert [spec.payload["name"] for spec in following.chain] == ["c"]
        assert next_in_chain(_spec(["ok"])) is None

    @pytest.mark.asyncio
    async def test_batch_progress_is_reported(self, harness, worker):
        batch_id = await harness.runtime.batches.create("test-batch")
        await harness.runtime.batches.add_jobs(batch_id, 2)
        await harness.queue.enqueue(_spec(["ok"], name="a", batch_id=batch_id))
        await harness.queue.enqueue(_spec(["revoked"], integration_id="i2", name="b", batch_id=batch_id))

        await worker.run_until_idle()

        status = await harness.runtime.batches.status(batch_id)
        assert status["pending"] == 0
        assert status["failed"] == 1
        assert await harness.runtime.batches.is_finished(batch_id) is True
