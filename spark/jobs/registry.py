from __future__ import annotations

from dataclasses import dataclass

from spark.jobs.base import BaseJob, JobRuntime, JobSpec
from spark.jobs.fetch import FetchJob
from spark.jobs.initialize import InitializeJob
from spark.jobs.process import ProcessJob
from spark.jobs.webhook import WebhookJob
from spark.kernel.errors import NotFoundError
from spark.migrations.coordinator import FetchPageJob, ProcessPageJob, StartMigrationJob
from spark.migrations.monitor import MonitorBatchJob, StartProcessingJob

_KNOWN_JOBS: tuple[type[BaseJob], ...] = (
    FetchJob,
    ProcessJob,
    WebhookJob,
    InitializeJob,
    StartMigrationJob,
    FetchPageJob,
    ProcessPageJob,
    MonitorBatchJob,
    StartProcessingJob,
)


@dataclass(frozen=True)
class JobRegistry:
    _jobs: dict[str, type[BaseJob]]

    def job_types(self) -> list[str]:
        return sorted(self._jobs)

    def get(self, job_type: str) -> type[BaseJob]:
        job_cls = self._jobs.get(job_type)
        if job_cls is None:
            raise NotFoundError(message=f"Unknown job_type: {job_type}", code="job.unknown_type")
        return job_cls

    def build(self, runtime: JobRuntime, spec: JobSpec, *, attempt: int = 1) -> BaseJob:
        return self.get(spec.job_type)(runtime, spec, attempt=attempt)


def build_job_registry(jobs: tuple[type[BaseJob], ...] = _KNOWN_JOBS) -> JobRegistry:
    return JobRegistry(_jobs={job_cls.job_type: job_cls for job_cls in jobs})
