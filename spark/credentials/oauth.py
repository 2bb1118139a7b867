"""
OAuth2 provider configuration and token parsing.

Provider plugins describe their endpoints with `OAuthProviderConfig`; the
credential manager drives the flows.
"""

from datetime import datetime, timedelta
from typing import Any

from pydantic import BaseModel, Field


class OAuthProviderConfig(BaseModel):
    """Configuration for an OAuth2 provider."""

    client_id: str
    client_secret: str

    # URLs
    authorization_url: str
    token_url: str

    # Scopes
    default_scopes: list[str] = Field(default_factory=list)
    scope_separator: str = " "

    # Provider quirks
    supports_refresh: bool = True
    client_auth_in_body: bool = True

    # Extra parameters
    extra_auth_params: dict[str, str] = Field(default_factory=dict)


class OAuthTokens(BaseModel):
    """OAuth2 token data."""

    access_token: str
    refresh_token: str | None = None
    token_type: str = "Bearer"
    expires_at: datetime | None = None
    refresh_expires_at: datetime | None = None
    scopes: list[str] = Field(default_factory=list)

    # Provider-specific data
    extra: dict[str, Any] = Field(default_factory=dict)


_KNOWN_TOKEN_KEYS = {
    "access_token",
    "refresh_token",
    "token_type",
    "expires_in",
    "refresh_expires_in",
    "scope",
}


def parse_token_response(data: dict[str, Any], *, now: datetime) -> OAuthTokens:
    """Parse a token endpoint response."""
    expires_at = None
    if data.get("expires_in") is not None:
        expires_at = now + timedelta(seconds=int(data["expires_in"]))

    refresh_expires_at = None
    if data.get("refresh_expires_in") is not None:
        refresh_expires_at = now + timedelta(seconds=int(data["refresh_expires_in"]))

    return OAuthTokens(
        access_token=data["access_token"],
        refresh_token=data.get("refresh_token"),
        token_type=data.get("token_type", "Bearer"),
        expires_at=expires_at,
        refresh_expires_at=refresh_expires_at,
        scopes=data.get("scope", "").split() if data.get("scope") else [],
        extra={k: v for k, v in data.items() if k not in _KNOWN_TOKEN_KEYS},
    )
