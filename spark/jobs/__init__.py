"""
Background Jobs

Queue-backed pipeline jobs: fetch, process, webhook and initialize, plus the
runner and worker that execute them.
"""

from spark.jobs.base import BaseJob, JobRuntime, JobSpec, RetryPolicy
from spark.jobs.registry import JobRegistry, build_job_registry
from spark.jobs.runner import JobRunner

__all__ = [
    "BaseJob",
    "JobRegistry",
    "JobRunner",
    "JobRuntime",
    "JobSpec",
    "RetryPolicy",
    "build_job_registry",
]
