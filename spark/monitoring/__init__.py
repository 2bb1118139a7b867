"""
Monitoring Module

Provides Prometheus metrics, job spans and operator alerts.
"""

from spark.monitoring.alerts import OperatorAlerts
from spark.monitoring.metrics import Metrics, get_metrics
from spark.monitoring.tracing import Span, job_span

__all__ = [
    "Metrics",
    "OperatorAlerts",
    "Span",
    "get_metrics",
    "job_span",
]
