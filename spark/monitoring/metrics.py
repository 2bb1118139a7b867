"""
Prometheus Metrics

Defines and exports metrics for the ingestion pipeline.
"""

from contextlib import contextmanager
import time

import structlog
from prometheus_client import Counter, Gauge, Histogram

logger = structlog.get_logger()

# Singleton metrics instance
_metrics: "Metrics | None" = None


class Metrics:
    """
    Prometheus metrics for the ingestion pipeline.

    Tracks:
    - Job executions by type and outcome
    - Rate-limit re-dispatches and quota refusals
    - Idempotency skips
    - Webhook deliveries
    - Operator alerts
    """

    def __init__(self):
        """Initialize Prometheus metrics."""
        self.jobs_total = Counter(
            "spark_jobs_total",
            "Total job executions",
            ["job_type", "service", "status"],
        )

        self.job_duration_seconds = Histogram(
            "spark_job_duration_seconds",
            "Job execution duration in seconds",
            ["job_type", "service"],
            buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0],
        )

        self.spans_total = Counter(
            "spark_spans_total",
            "Finished job spans by name and status",
            ["span", "status"],
        )

        self.rate_limit_redispatches_total = Counter(
            "spark_rate_limit_redispatches_total",
            "Jobs re-dispatched after a provider rate limit",
            ["service"],
        )

        self.quota_refusals_total = Counter(
            "spark_quota_refusals_total",
            "Calls refused before the network because a daily cap was reached",
            ["service"],
        )

        self.idempotency_skips_total = Counter(
            "spark_idempotency_skips_total",
            "Process jobs skipped because the payload was processed recently",
            ["service"],
        )

        self.webhooks_total = Counter(
            "spark_webhooks_total",
            "Inbound webhook deliveries",
            ["service", "outcome"],
        )

        self.items_written_total = Counter(
            "spark_items_written_total",
            "Canonical events written",
            ["service"],
        )

        self.items_skipped_total = Counter(
            "spark_items_skipped_total",
            "Malformed provider items skipped",
            ["service"],
        )

        self.operator_alerts_total = Counter(
            "spark_operator_alerts_total",
            "Operator alerts raised",
            ["kind"],
        )

        self.integrations_scheduled_total = Counter(
            "spark_integrations_scheduled_total",
            "Integrations selected by the scheduler sweep",
            ["service"],
        )

        self.scheduler_last_sweep_timestamp_seconds = Gauge(
            "spark_scheduler_last_sweep_timestamp_seconds",
            "Unix timestamp of the last scheduler sweep",
        )

        logger.info("Prometheus metrics initialized")

    def track_job(self, job_type: str, service: str, status: str, duration: float) -> None:
        """Track one job execution."""
        self.jobs_total.labels(job_type=job_type, service=service, status=status).inc()
        self.job_duration_seconds.labels(job_type=job_type, service=service).observe(max(duration, 0.0))

    def track_span(self, span: str, status: str) -> None:
        self.spans_total.labels(span=span, status=status).inc()

    def track_rate_limit(self, service: str) -> None:
        self.rate_limit_redispatches_total.labels(service=service).inc()

    def track_quota_refusal(self, service: str) -> None:
        self.quota_refusals_total.labels(service=service).inc()

    def track_idempotency_skip(self, service: str) -> None:
        self.idempotency_skips_total.labels(service=service).inc()

    def track_webhook(self, service: str, outcome: str) -> None:
        self.webhooks_total.labels(service=service, outcome=outcome).inc()

    def track_items(self, service: str, *, written: int, skipped: int) -> None:
        if written:
            self.items_written_total.labels(service=service).inc(written)
        if skipped:
            self.items_skipped_total.labels(service=service).inc(skipped)

    def track_alert(self, kind: str) -> None:
        self.operator_alerts_total.labels(kind=kind).inc()

    def track_sweep(self, services: list[str]) -> None:
        for service in services:
            self.integrations_scheduled_total.labels(service=service).inc()
        self.scheduler_last_sweep_timestamp_seconds.set(time.time())

    @contextmanager
    def time_job(self, job_type: str, service: str):
        """Context manager for timing a job execution."""
        start = time.perf_counter()
        status = "success"
        try:
            yield
        except Exception:
            status = "error"
            raise
        finally:
            self.track_job(job_type, service, status, time.perf_counter() - start)


def get_metrics() -> Metrics:
    """Get or create the singleton metrics instance."""
    global _metrics
    if _metrics is None:
        _metrics = Metrics()
    return _metrics
