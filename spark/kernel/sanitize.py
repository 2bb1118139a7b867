"""Redaction helpers for logging provider headers and payloads."""

from __future__ import annotations

from typing import Any, Mapping

REDACTED = "[REDACTED]"

SENSITIVE_KEYS = (
    "password",
    "token",
    "secret",
    "key",
    "auth",
    "signature",
    "api_key",
    "access_token",
    "refresh_token",
    "authorization",
    "webhook_secret",
)


def is_sensitive_key(name: str) -> bool:
    lowered = str(name).lower()
    return any(marker in lowered for marker in SENSITIVE_KEYS)


def sanitize_headers(headers: Mapping[str, Any]) -> dict[str, Any]:
    return {
        name: (REDACTED if is_sensitive_key(name) else value)
        for name, value in headers.items()
    }


def sanitize_data(data: Any) -> Any:
    """Recursively redact sensitive keys in dicts/lists."""
    if isinstance(data, Mapping):
        return {
            key: (REDACTED if is_sensitive_key(key) else sanitize_data(value))
            for key, value in data.items()
        }
    if isinstance(data, (list, tuple)):
        return [sanitize_data(item) for item in data]
    return data
