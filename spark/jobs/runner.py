"""
Executes one claimed job.

Outcome rules:
- success: mark succeeded, reset the circuit, enqueue the next chain
  element, report batch progress
- `RateLimited`: re-dispatch the same step after the provider's delay
  without consuming an attempt
- non-retryable error, last attempt or open circuit: terminal failure,
  `failed` hook, batch progress reported as failed
- anything else: retry after the job class's backoff
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import replace
from datetime import timedelta
from typing import Any

import structlog

from spark.jobs.base import BaseJob, JobRuntime, JobSpec
from spark.jobs.queue import ClaimedJob
from spark.jobs.registry import JobRegistry
from spark.kernel.errors import NotFoundError, QuotaExceeded, RateLimited, is_non_retryable
from spark.monitoring.metrics import get_metrics

logger = structlog.get_logger()


def circuit_key(integration_id: str, service: str) -> str:
    return f"circuit:{integration_id}:{service}"


def next_in_chain(spec: JobSpec) -> JobSpec | None:
    """The first chained spec, carrying the rest of the chain behind it."""
    if not spec.chain:
        return None
    head, rest = spec.chain[0], spec.chain[1:]
    return replace(head, chain=tuple(head.chain) + tuple(rest))


class JobRunner:
    def __init__(self, runtime: JobRuntime, registry: JobRegistry) -> None:
        self.runtime = runtime
        self.registry = registry

    async def execute(self, claimed: ClaimedJob) -> str:
        """Run `claimed` to one of: succeeded, redispatched, retrying, failed."""
        spec = claimed.spec()
        try:
            job = self.registry.build(self.runtime, spec, attempt=claimed.attempts)
        except NotFoundError as exc:
            await self.runtime.queue.fail(claimed.id, error=exc.message, retry_at=None)
            logger.error("Unknown job type, failing job", job_id=claimed.id, job_type=claimed.job_type)
            return "failed"
        started = time.perf_counter()

        with structlog.contextvars.bound_contextvars(
            job_id=claimed.id,
            job_type=claimed.job_type,
            integration_id=claimed.integration_id,
            service=job.service,
            attempt=claimed.attempts,
        ):
            try:
                result = await asyncio.wait_for(job.run(), timeout=max(1, spec.timeout_seconds))
            except RateLimited as exc:
                outcome = await self._redispatch(job, claimed, exc)
            except Exception as exc:
                outcome = await self._handle_failure(job, claimed, exc)
            else:
                outcome = await self._handle_success(job, claimed, result)

            get_metrics().track_job(claimed.job_type, job.service, outcome, time.perf_counter() - started)
            return outcome

    async def _handle_success(self, job: BaseJob, claimed: ClaimedJob, result: dict[str, Any] | None) -> str:
        await self.runtime.queue.succeed(claimed.id, result=result or {})
        if claimed.integration_id:
            await self.runtime.cache.delete(circuit_key(claimed.integration_id, job.service))

        follow_up = next_in_chain(job.spec)
        if follow_up is not None:
            await self.runtime.queue.enqueue(follow_up)
        if job.spec.batch_id:
            await self.runtime.batches.job_finished(job.spec.batch_id)

        logger.info("Job succeeded", chained=follow_up is not None)
        return "succeeded"

    async def _redispatch(self, job: BaseJob, claimed: ClaimedJob, exc: RateLimited) -> str:
        delay = max(1, exc.delay_seconds)
        new_id = await self.runtime.queue.redispatch(
            claimed.id, job.redispatch_spec(delay), attempts=max(0, claimed.attempts - 1)
        )
        get_metrics().track_rate_limit(job.service)
        logger.info("Job rate limited, re-dispatched", delay_seconds=delay, new_job_id=new_id)
        return "redispatched"

    async def _circuit_open(self, job: BaseJob, claimed: ClaimedJob) -> bool:
        if not claimed.integration_id:
            return False
        settings = self.runtime.settings
        failures = await self.runtime.cache.increment(
            circuit_key(claimed.integration_id, job.service),
            1,
            ttl_seconds=settings.circuit_breaker_window_seconds,
        )
        return failures >= settings.circuit_breaker_threshold

    async def _handle_failure(self, job: BaseJob, claimed: ClaimedJob, exc: Exception) -> str:
        error = str(exc) or type(exc).__name__
        if isinstance(exc, asyncio.TimeoutError):
            error = f"Job timed out after {job.spec.timeout_seconds}s"
        if isinstance(exc, QuotaExceeded):
            get_metrics().track_quota_refusal(job.service)

        circuit_open = await self._circuit_open(job, claimed)
        terminal = is_non_retryable(exc) or claimed.is_last_attempt or circuit_open

        if not terminal:
            backoff = job.policy.backoff_for(claimed.attempts)
            await self.runtime.queue.fail(
                claimed.id, error=error, retry_at=self.runtime.clock() + timedelta(seconds=backoff)
            )
            logger.warning(
                "Job failed, will retry",
                error=error,
                error_type=type(exc).__name__,
                backoff_seconds=backoff,
                max_attempts=claimed.max_attempts,
            )
            return "retrying"

        await self.runtime.queue.fail(claimed.id, error=error, retry_at=None)
        logger.error(
            "Job failed terminally",
            error=error,
            error_type=type(exc).__name__,
            non_retryable=is_non_retryable(exc),
            circuit_open=circuit_open,
        )
        try:
            await job.failed(exc)
        except Exception as hook_exc:
            # The job is already terminal.
            logger.error("Job failure hook raised", error=str(hook_exc))
        if job.spec.batch_id:
            await self.runtime.batches.job_finished(job.spec.batch_id, failed=True)
        return "failed"
