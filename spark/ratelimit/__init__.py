"""Rate-limit backoff and daily quota accounting."""

from spark.ratelimit.backoff import DEFAULT_POLICY, GITHUB_POLICY, RateLimitPolicy, check_response
from spark.ratelimit.quota import QuotaTracker, ResponseCache

__all__ = [
    "DEFAULT_POLICY",
    "GITHUB_POLICY",
    "QuotaTracker",
    "RateLimitPolicy",
    "ResponseCache",
    "check_response",
]
