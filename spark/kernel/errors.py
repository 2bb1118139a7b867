from __future__ import annotations

import re
from typing import Any


_ERROR_CODE_RE = re.compile(r"^[a-z][a-z0-9_]*(\.[a-z][a-z0-9_]*)*$")


class SparkError(Exception):
    """Base typed error for Spark.

    - Stable `code` for programmatic handling (jobs, API clients).
    - Human-readable `message` for API surfaces.
    - Optional `meta` payload (safe-to-expose only).
    """

    def __init__(
        self,
        *,
        code: str,
        message: str,
        status_code: int = 500,
        meta: dict[str, Any] | None = None,
    ) -> None:
        if not _ERROR_CODE_RE.fullmatch(code):
            raise ValueError(
                "Invalid Spark error code. Expected dot-separated lowercase tokens, "
                f"got: {code!r}"
            )
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = int(status_code)
        self.meta = dict(meta or {})

    def to_public_dict(self, *, request_id: str | None = None) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "detail": self.message,
            "code": self.code,
        }
        if request_id:
            payload["request_id"] = request_id
        if self.meta:
            payload["meta"] = self.meta
        return payload


class NotFoundError(SparkError):
    def __init__(self, *, message: str = "Not found", code: str = "resource.not_found", meta: dict[str, Any] | None = None):
        super().__init__(code=code, message=message, status_code=404, meta=meta)


class UnauthorizedError(SparkError):
    def __init__(
        self,
        *,
        message: str = "Not authenticated",
        code: str = "auth.unauthorized",
        meta: dict[str, Any] | None = None,
    ):
        super().__init__(code=code, message=message, status_code=401, meta=meta)


class ForbiddenError(SparkError):
    def __init__(
        self,
        *,
        message: str = "Forbidden",
        code: str = "auth.forbidden",
        meta: dict[str, Any] | None = None,
    ):
        super().__init__(code=code, message=message, status_code=403, meta=meta)


class ConflictError(SparkError):
    def __init__(
        self,
        *,
        message: str = "Conflict",
        code: str = "request.conflict",
        meta: dict[str, Any] | None = None,
    ):
        super().__init__(code=code, message=message, status_code=409, meta=meta)


class ValidationError(SparkError):
    def __init__(
        self,
        *,
        message: str = "Validation error",
        code: str = "request.validation_error",
        meta: dict[str, Any] | None = None,
        status_code: int = 422,
    ):
        super().__init__(code=code, message=message, status_code=status_code, meta=meta)


class UpstreamError(SparkError):
    def __init__(
        self,
        *,
        message: str = "Upstream service error",
        code: str = "upstream.error",
        meta: dict[str, Any] | None = None,
        status_code: int = 502,
    ):
        super().__init__(code=code, message=message, status_code=status_code, meta=meta)


# =============================================================================
# Pipeline errors
# =============================================================================


class NonRetryableJobError:
    """Mixin marking an error that must fail its job immediately."""


class TransientProviderError(UpstreamError):
    """Timeout, 5xx or network failure talking to a provider."""

    def __init__(self, *, message: str = "Provider request failed", meta: dict[str, Any] | None = None):
        super().__init__(message=message, code="provider.transient", meta=meta)


class RateLimited(UpstreamError):
    """The provider asked us to slow down; carries the delay it dictated."""

    def __init__(self, *, delay_seconds: int, meta: dict[str, Any] | None = None):
        super().__init__(
            message=f"Rate limited, retry in {delay_seconds}s",
            code="provider.rate_limited",
            status_code=429,
            meta=meta,
        )
        self.delay_seconds = int(delay_seconds)


class QuotaExceeded(UpstreamError):
    """Daily call cap reached; raised before any network call."""

    def __init__(self, *, message: str = "Daily provider quota exhausted", meta: dict[str, Any] | None = None):
        super().__init__(message=message, code="provider.quota_exceeded", status_code=429, meta=meta)


class AuthenticationExpired(UnauthorizedError):
    def __init__(self, *, message: str = "Access token expired", meta: dict[str, Any] | None = None):
        super().__init__(message=message, code="auth.token_expired", meta=meta)


class CredentialsRevoked(NonRetryableJobError, UnauthorizedError):
    def __init__(self, *, message: str = "Provider credentials were rejected", meta: dict[str, Any] | None = None):
        super().__init__(message=message, code="auth.credentials_revoked", meta=meta)


class SignatureMismatch(NonRetryableJobError, UnauthorizedError):
    def __init__(self, *, message: str = "Invalid webhook signature", meta: dict[str, Any] | None = None):
        super().__init__(message=message, code="webhook.signature_invalid", meta=meta)


class CsrfMismatch(NonRetryableJobError, ForbiddenError):
    def __init__(self, *, message: str = "Invalid or reused CSRF token", meta: dict[str, Any] | None = None):
        super().__init__(message=message, code="oauth.csrf_invalid", meta=meta)


class StateMismatch(NonRetryableJobError, ForbiddenError):
    def __init__(self, *, message: str = "Invalid OAuth state", meta: dict[str, Any] | None = None):
        super().__init__(message=message, code="oauth.state_invalid", meta=meta)


class MalformedPayload(ValidationError):
    """One provider item could not be mapped; callers skip it and continue."""

    def __init__(self, *, message: str = "Malformed provider payload", meta: dict[str, Any] | None = None):
        super().__init__(message=message, code="provider.payload_malformed", meta=meta)


class UndecodableWebhook(NonRetryableJobError, MalformedPayload):
    """A webhook body that is not JSON. Fails its job on the first attempt."""

    def __init__(self, *, message: str = "Webhook body is not valid JSON", meta: dict[str, Any] | None = None):
        super().__init__(message=message, meta=meta)


def is_non_retryable(exc: BaseException) -> bool:
    return isinstance(exc, NonRetryableJobError)
