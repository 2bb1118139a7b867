"""
Job spans.

A span is a named, timed unit of job work (e.g. `job.fetch:github:activity`).
While open its name and job context are bound into structlog contextvars so
every log line emitted inside carries them.
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from typing import Any, Iterator

import structlog

from spark.monitoring.metrics import get_metrics

logger = structlog.get_logger()


class Span:
    def __init__(self, name: str) -> None:
        self.name = name
        self.status = "ok"
        self.attributes: dict[str, Any] = {}
        self.duration_seconds: float | None = None

    def set_attribute(self, key: str, value: Any) -> None:
        self.attributes[key] = value

    def mark_failed(self) -> None:
        self.status = "internal_error"


@contextmanager
def job_span(name: str, **context: Any) -> Iterator[Span]:
    """
    Open a span for the duration of the block.

    On exception the span is marked `internal_error` and the exception is
    re-raised so the queue's retry machinery still sees it.
    """
    span = Span(name)
    bound = structlog.contextvars.bind_contextvars(span=name, **context)
    start = time.perf_counter()
    try:
        yield span
    except Exception:
        span.mark_failed()
        raise
    finally:
        span.duration_seconds = time.perf_counter() - start
        get_metrics().track_span(name, span.status)
        logger.debug(
            "Span finished",
            status=span.status,
            duration_seconds=round(span.duration_seconds, 3),
            **span.attributes,
        )
        structlog.contextvars.reset_contextvars(**bound)
