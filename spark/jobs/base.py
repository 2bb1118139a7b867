"""
Job lifecycle framework.

Every unit of pipeline work is a `JobSpec` (plain data, persisted by the
queue) executed by a `BaseJob` subclass looked up by `job_type`. Chains and
batch membership travel inside the spec so a restarted worker resumes them.

State machine per job:
    enqueued -> running -> succeeded
    running -> retrying -> running
    running -> failed (terminal)
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, ClassVar

import httpx
import structlog

from spark.kernel.errors import NotFoundError
from spark.kernel.time import Clock, isoformat_z, parse_iso8601

if TYPE_CHECKING:
    from spark.cache.base import Cache
    from spark.canonical.store import CanonicalStore
    from spark.config import Settings
    from spark.credentials.manager import CredentialManager
    from spark.integrations.models import Integration
    from spark.integrations.repository import IntegrationRepository
    from spark.jobs.batches import BatchTracker
    from spark.jobs.idempotency import IdempotencyGuard
    from spark.jobs.queue import JobQueue
    from spark.monitoring.alerts import OperatorAlerts
    from spark.plugins.contracts import ProviderPlugin
    from spark.plugins.registry import PluginRegistry

logger = structlog.get_logger()


@dataclass(frozen=True)
class RetryPolicy:
    timeout_seconds: int
    tries: int
    backoff: tuple[int, ...] = ()

    def backoff_for(self, attempt: int) -> int:
        """Delay before the retry that follows failed attempt number `attempt` (1-based)."""
        if not self.backoff:
            return 60
        return self.backoff[min(max(attempt, 1) - 1, len(self.backoff) - 1)]


FETCH_POLICY = RetryPolicy(timeout_seconds=120, tries=3, backoff=(60, 300, 600))
PROCESS_POLICY = RetryPolicy(timeout_seconds=300, tries=2, backoff=(120, 300))
WEBHOOK_POLICY = RetryPolicy(timeout_seconds=60, tries=3, backoff=(30, 120, 300))
INITIALIZE_POLICY = RetryPolicy(timeout_seconds=600, tries=1)
MIGRATION_POLICY = RetryPolicy(timeout_seconds=300, tries=3, backoff=(60, 300, 600))
# Coordinator jobs are cheap and self-rescheduling.
COORDINATOR_POLICY = RetryPolicy(timeout_seconds=60, tries=3, backoff=(30, 60, 120))


@dataclass(frozen=True)
class JobSpec:
    job_type: str
    integration_id: str | None
    payload: dict[str, Any] = field(default_factory=dict)
    run_at: datetime | None = None
    max_attempts: int = 3
    timeout_seconds: int = 120
    unique_id: str | None = None
    chain: tuple["JobSpec", ...] = ()
    batch_id: str | None = None

    def delayed(self, run_at: datetime) -> "JobSpec":
        return replace(self, run_at=run_at)

    def with_chain(self, *specs: "JobSpec") -> "JobSpec":
        return replace(self, chain=tuple(specs))

    def in_batch(self, batch_id: str | None) -> "JobSpec":
        return replace(self, batch_id=batch_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_type": self.job_type,
            "integration_id": self.integration_id,
            "payload": self.payload,
            "run_at": isoformat_z(self.run_at) if self.run_at else None,
            "max_attempts": self.max_attempts,
            "timeout_seconds": self.timeout_seconds,
            "unique_id": self.unique_id,
            "chain": [spec.to_dict() for spec in self.chain],
            "batch_id": self.batch_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "JobSpec":
        run_at = data.get("run_at")
        return cls(
            job_type=data["job_type"],
            integration_id=data.get("integration_id"),
            payload=dict(data.get("payload") or {}),
            run_at=parse_iso8601(run_at) if isinstance(run_at, str) else run_at,
            max_attempts=int(data.get("max_attempts") or 3),
            timeout_seconds=int(data.get("timeout_seconds") or 120),
            unique_id=data.get("unique_id"),
            chain=tuple(cls.from_dict(item) for item in data.get("chain") or []),
            batch_id=data.get("batch_id"),
        )


@dataclass
class JobRuntime:
    """Collaborators handed to every job."""

    settings: "Settings"
    store: "CanonicalStore"
    integrations: "IntegrationRepository"
    cache: "Cache"
    queue: "JobQueue"
    plugins: "PluginRegistry"
    credentials: "CredentialManager"
    alerts: "OperatorAlerts"
    batches: "BatchTracker"
    idempotency: "IdempotencyGuard"
    clock: Clock
    http: httpx.AsyncClient | None = None


def build_unique_id(service: str, job_type: str, integration_id: str | None, discriminator: str) -> str:
    """`<service>_<jobType>_<integrationId>_<discriminator>`"""
    return f"{service}_{job_type}_{integration_id or 'none'}_{discriminator}"


class BaseJob(ABC):
    """
    Common envelope for all job archetypes.

    Subclasses set `job_type` and `policy` and implement `run`. `failed` is
    called once, after the final attempt, never on an intermediate retry.
    """

    job_type: ClassVar[str]
    policy: ClassVar[RetryPolicy] = FETCH_POLICY

    def __init__(self, runtime: JobRuntime, spec: JobSpec, *, attempt: int = 1) -> None:
        self.runtime = runtime
        self.spec = spec
        self.attempt = attempt
        self._integration: "Integration | None" = None

    # ------------------------------------------------------------------
    # Spec construction
    # ------------------------------------------------------------------

    @classmethod
    def make_spec(
        cls,
        *,
        integration_id: str | None,
        service: str,
        payload: dict[str, Any] | None = None,
        discriminator: str | None = None,
        run_at: datetime | None = None,
        batch_id: str | None = None,
    ) -> JobSpec:
        return JobSpec(
            job_type=cls.job_type,
            integration_id=integration_id,
            payload={"service": service, **(payload or {})},
            run_at=run_at,
            max_attempts=cls.policy.tries,
            timeout_seconds=cls.policy.timeout_seconds,
            unique_id=build_unique_id(service, cls.job_type, integration_id, discriminator) if discriminator else None,
            batch_id=batch_id,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @property
    def payload(self) -> dict[str, Any]:
        return self.spec.payload

    @property
    def service(self) -> str:
        return str(self.spec.payload.get("service") or "unknown")

    @property
    def now(self) -> datetime:
        return self.runtime.clock()

    def span_name(self) -> str:
        return f"job.{self.job_type.split('.')[-1]}:{self.service}"

    async def integration(self) -> "Integration":
        if self._integration is None:
            if not self.spec.integration_id:
                raise NotFoundError(message="Job has no integration", code="job.integration_missing")
            self._integration = await self.runtime.integrations.require(self.spec.integration_id)
        return self._integration

    def plugin(self) -> "ProviderPlugin":
        return self.runtime.plugins.get(self.service)

    async def enqueue(self, spec: JobSpec) -> str:
        return await self.runtime.queue.enqueue(spec)

    def redispatch_spec(self, delay_seconds: int) -> JobSpec:
        """The same step, scheduled `delay_seconds` from now."""
        return self.spec.delayed(self.now + timedelta(seconds=max(1, delay_seconds)))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @abstractmethod
    async def run(self) -> dict[str, Any] | None:
        """Do the work. Raising triggers the retry policy."""

    async def failed(self, exc: BaseException) -> None:
        """Terminal-failure hook."""
        logger.error(
            "Job failed permanently",
            job_type=self.job_type,
            integration_id=self.spec.integration_id,
            service=self.service,
            error=str(exc),
        )
