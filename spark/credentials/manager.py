"""
Credential Manager

Owns the OAuth authorization-code + PKCE flow, CSRF-bound state, lazy token
refresh and API-key resolution for every provider plugin.

Group lifecycle:
    unauthenticated -> authorizing -> authenticated
    authenticated -> (expired -> refreshing -> authenticated)
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, AsyncIterator, Protocol
from urllib.parse import urlencode

import httpx
import structlog

from spark.cache.base import Cache
from spark.credentials.oauth import OAuthProviderConfig, OAuthTokens, parse_token_response
from spark.credentials.pkce import CODE_CHALLENGE_METHOD, code_challenge, generate_code_verifier
from spark.credentials.state import CsrfStore, OAuthState, StateCipher
from spark.integrations.models import Integration, IntegrationGroup
from spark.integrations.repository import IntegrationRepository
from spark.kernel.errors import (
    AuthenticationExpired,
    CredentialsRevoked,
    StateMismatch,
    TransientProviderError,
    UnauthorizedError,
    UpstreamError,
)
from spark.kernel.sanitize import sanitize_data
from spark.kernel.time import Clock, utc_now

if TYPE_CHECKING:
    from spark.config import Settings

logger = structlog.get_logger()

PENDING_GROUP_TTL_SECONDS = 600


class OAuthCapable(Protocol):
    identifier: str

    def oauth_config(self, settings: "Settings") -> OAuthProviderConfig:
        ...

    async def fetch_account_identity(
        self, http: httpx.AsyncClient, access_token: str
    ) -> str | None:
        ...


class ApiKeyCapable(Protocol):
    identifier: str
    api_key_setting: str | None


def pending_group_key(session_id: str, service: str) -> str:
    return f"oauth_pending:{session_id}:{service}"


class CredentialManager:
    def __init__(
        self,
        *,
        settings: "Settings",
        repository: IntegrationRepository,
        cache: Cache,
        http: httpx.AsyncClient | None = None,
        clock: Clock | None = None,
        cipher: StateCipher | None = None,
    ) -> None:
        self.settings = settings
        self.repository = repository
        self.cache = cache
        self.http = http
        self.clock = clock or utc_now
        self.cipher = cipher or StateCipher(settings.oauth_state_key or None)
        self.csrf = CsrfStore(cache, ttl_seconds=settings.oauth_csrf_ttl_seconds)

    def redirect_uri(self, service: str) -> str:
        return f"{self.settings.app_url.rstrip('/')}/integrations/{service}/oauth/callback"

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    async def get_oauth_url(
        self, plugin: OAuthCapable, group: IntegrationGroup, *, session_id: str
    ) -> str:
        """Build the provider authorize URL for `group` and remember the pending flow."""
        config = plugin.oauth_config(self.settings)
        verifier = generate_code_verifier()
        csrf_token = await self.csrf.issue(session_id, group.id)
        state = self.cipher.encrypt(
            OAuthState(
                group_id=group.id,
                user_id=group.user_id,
                csrf_token=csrf_token,
                code_verifier=verifier,
            )
        )
        await self.cache.set(
            pending_group_key(session_id, plugin.identifier),
            group.id,
            ttl_seconds=PENDING_GROUP_TTL_SECONDS,
        )

        params = {
            "client_id": config.client_id,
            "redirect_uri": self.redirect_uri(plugin.identifier),
            "response_type": "code",
            "state": state,
            "code_challenge": code_challenge(verifier),
            "code_challenge_method": CODE_CHALLENGE_METHOD,
        }
        if config.default_scopes:
            params["scope"] = config.scope_separator.join(config.default_scopes)
        params.update(config.extra_auth_params)

        logger.info("OAuth flow initiated", service=plugin.identifier, group_id=group.id)
        return f"{config.authorization_url}?{urlencode(params)}"

    async def pending_group_id(self, session_id: str, service: str) -> str | None:
        return await self.cache.get(pending_group_key(session_id, service))

    async def handle_oauth_callback(
        self,
        plugin: OAuthCapable,
        *,
        group_id: str,
        session_id: str,
        code: str,
        state: str,
    ) -> IntegrationGroup:
        """
        Complete the authorization-code flow for `group_id`.

        Order matters: state is decrypted and matched to the target group,
        then the CSRF token is consumed, and only then is the code exchanged.
        """
        decoded = self.cipher.decrypt(state)
        if decoded.group_id != group_id:
            logger.warning(
                "OAuth state targets a different group",
                service=plugin.identifier,
                group_id=group_id,
            )
            raise StateMismatch()
        await self.csrf.consume(session_id, group_id, decoded.csrf_token)

        config = plugin.oauth_config(self.settings)
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.redirect_uri(plugin.identifier),
            "code_verifier": decoded.code_verifier,
        }
        response = await self._post_token(config, data)
        if response.status_code >= 400:
            logger.error(
                "OAuth code exchange rejected",
                service=plugin.identifier,
                status_code=response.status_code,
                body=sanitize_data(_json_or_text(response)),
            )
            raise UpstreamError(message="Failed to exchange authorization code", code="oauth.exchange_failed")

        tokens = parse_token_response(response.json(), now=self.clock())
        group = await self._persist_tokens(group_id, tokens)

        async with self._client() as http:
            account_id = await plugin.fetch_account_identity(http, tokens.access_token)
        if account_id and group.account_id and getattr(plugin, "is_webhook", False):
            # account_id already holds the webhook secret; keep the login beside it.
            group = await self.repository.update_group(
                group_id, auth_metadata={**group.auth_metadata, "account_login": str(account_id)}
            )
        elif account_id:
            group = await self.repository.set_group_account(group_id, str(account_id))

        logger.info("OAuth flow completed", service=plugin.identifier, group_id=group_id)
        return group

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    async def ensure_fresh_token(self, plugin: OAuthCapable, group: IntegrationGroup) -> IntegrationGroup:
        if not group.token_expired(self.clock()):
            return group
        refreshed = await self.refresh_token(plugin, group)
        # Providers without refresh leave an expired token in place.
        if refreshed.token_expired(self.clock()):
            raise AuthenticationExpired(meta={"service": plugin.identifier, "group_id": group.id})
        return refreshed

    async def refresh_token(self, plugin: OAuthCapable, group: IntegrationGroup) -> IntegrationGroup:
        """
        Exchange the refresh token for a new access token.

        Raises `CredentialsRevoked` when the provider rejects the refresh;
        callers never continue with a stale token.
        """
        config = plugin.oauth_config(self.settings)
        if not config.supports_refresh:
            return group
        if not group.refresh_token:
            raise CredentialsRevoked(message="No refresh token available")

        data = {"grant_type": "refresh_token", "refresh_token": group.refresh_token}
        response = await self._post_token(config, data)
        if 400 <= response.status_code < 500:
            logger.error(
                "Token refresh rejected",
                service=plugin.identifier,
                group_id=group.id,
                status_code=response.status_code,
                body=sanitize_data(_json_or_text(response)),
            )
            raise CredentialsRevoked(meta={"service": plugin.identifier})
        if response.status_code >= 500:
            raise TransientProviderError(
                message="Token refresh failed upstream",
                meta={"service": plugin.identifier, "status_code": response.status_code},
            )

        tokens = parse_token_response(response.json(), now=self.clock())
        refreshed = await self._persist_tokens(group.id, tokens)
        logger.info(
            "Tokens refreshed",
            service=plugin.identifier,
            group_id=group.id,
            expires_at=tokens.expires_at,
        )
        return refreshed

    async def access_token_for(self, plugin: OAuthCapable, integration: Integration) -> str:
        """Effective access token for `integration`, refreshed when expired."""
        group = None
        if integration.integration_group_id:
            group = await self.repository.get_group(integration.integration_group_id)
        if group is not None and group.access_token:
            group = await self.ensure_fresh_token(plugin, group)
            return str(group.access_token)

        access, _, _ = integration.effective_tokens(None)
        if not access:
            raise UnauthorizedError(
                message="Integration has no access token",
                code="auth.missing_token",
                meta={"integration_id": integration.id},
            )
        return access

    # ------------------------------------------------------------------
    # API keys
    # ------------------------------------------------------------------

    def resolve_api_key(self, plugin: ApiKeyCapable, integration: Integration) -> str:
        """Per-instance `configuration["api_key"]`, falling back to the global setting."""
        key = integration.configuration.get("api_key")
        if not key and plugin.api_key_setting:
            key = getattr(self.settings, plugin.api_key_setting, None)
        if not key:
            raise UnauthorizedError(
                message="No API key configured",
                code="auth.missing_api_key",
                meta={"service": plugin.identifier},
            )
        return str(key)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _persist_tokens(self, group_id: str, tokens: OAuthTokens) -> IntegrationGroup:
        return await self.repository.save_group_tokens(
            group_id,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            expiry=tokens.expires_at,
            refresh_expiry=tokens.refresh_expires_at,
        )

    async def _post_token(self, config: OAuthProviderConfig, data: dict[str, Any]) -> httpx.Response:
        auth = None
        body = dict(data)
        if config.client_auth_in_body:
            body.update({"client_id": config.client_id, "client_secret": config.client_secret})
        else:
            auth = (config.client_id, config.client_secret)
        try:
            async with self._client() as http:
                return await http.post(
                    config.token_url,
                    data=body,
                    auth=auth,
                    headers={"Accept": "application/json"},
                )
        except httpx.HTTPError as exc:
            raise TransientProviderError(message=f"Token endpoint unreachable: {type(exc).__name__}") from exc

    @asynccontextmanager
    async def _client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self.http is not None:
            yield self.http
            return
        async with httpx.AsyncClient(timeout=30.0) as http:
            yield http


def _json_or_text(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text[:500]
