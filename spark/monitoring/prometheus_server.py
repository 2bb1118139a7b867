"""Prometheus HTTP server for non-API processes.

The API exposes `/metrics` via ASGI. The jobs worker and the scheduler run as
standalone processes and expose their own metrics port for Prometheus to
scrape when `prometheus_metrics_port` is configured.
"""

from __future__ import annotations

import structlog
from prometheus_client import start_http_server

from spark.config import get_settings

logger = structlog.get_logger()

_started = False


def maybe_start_prometheus_http_server(*, component: str) -> None:
    """Start a metrics server if a port is configured."""
    global _started
    if _started:
        return

    port = get_settings().prometheus_metrics_port
    if not port:
        return
    if port <= 0 or port > 65535:
        logger.warning(
            "Invalid prometheus_metrics_port (metrics server disabled)",
            component=component,
            value=port,
        )
        return

    # Listen on all interfaces so the Prometheus container can scrape it.
    start_http_server(port, addr="0.0.0.0")
    _started = True
    logger.info("Prometheus metrics server started", component=component, port=port)
