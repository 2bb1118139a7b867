"""
Reactive rate-limit handling.

A provider's 429 (or 403 for some) is turned into `RateLimited` carrying the
provider-dictated delay; jobs re-dispatch the same step after that delay
instead of spending a retry.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

import httpx
import structlog

from spark.kernel.errors import RateLimited
from spark.kernel.time import utc_now

logger = structlog.get_logger()


@dataclass(frozen=True)
class RateLimitPolicy:
    statuses: frozenset[int] = frozenset({429})
    floor_seconds: int = 5
    default_seconds: int = 30
    # Epoch-seconds header telling when the window resets.
    reset_header: str | None = None

    def is_rate_limited(self, response: httpx.Response) -> bool:
        return response.status_code in self.statuses

    def delay_for(self, response: httpx.Response, *, now: datetime | None = None) -> int:
        if self.reset_header:
            reset = _int_header(response, self.reset_header)
            if reset is not None:
                delta = reset - int((now or utc_now()).timestamp())
                if delta > 0:
                    return delta
        retry_after = _int_header(response, "Retry-After")
        return max(self.floor_seconds, retry_after if retry_after is not None else self.default_seconds)


DEFAULT_POLICY = RateLimitPolicy()

GITHUB_POLICY = RateLimitPolicy(
    statuses=frozenset({403, 429}),
    floor_seconds=30,
    default_seconds=60,
    reset_header="X-RateLimit-Reset",
)


def _int_header(response: httpx.Response, name: str) -> int | None:
    raw = response.headers.get(name)
    if raw is None:
        return None
    try:
        return int(float(raw.strip()))
    except ValueError:
        return None


def check_response(
    response: httpx.Response,
    policy: RateLimitPolicy = DEFAULT_POLICY,
    *,
    service: str | None = None,
    now: datetime | None = None,
) -> None:
    """Raise `RateLimited` when `response` is a rate-limit response under `policy`."""
    if not policy.is_rate_limited(response):
        return
    delay = policy.delay_for(response, now=now)
    logger.warning(
        "Provider rate limit hit",
        service=service,
        status_code=response.status_code,
        delay_seconds=delay,
    )
    raise RateLimited(delay_seconds=delay, meta={"service": service} if service else None)
