"""
Authenticated provider HTTP client.

Wraps httpx for one (plugin, integration) pair:
- bearer/API-key headers resolved through the credential manager
- a 401 triggers one token refresh and one replay of the request
- the plugin's rate-limit policy turns 429/403 into `RateLimited`
- 5xx and network failures become `TransientProviderError`
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Iterable

import httpx
import structlog

from spark.kernel.errors import (
    CredentialsRevoked,
    TransientProviderError,
    UpstreamError,
)
from spark.kernel.sanitize import sanitize_data, sanitize_headers
from spark.kernel.time import Clock, utc_now
from spark.ratelimit.backoff import check_response

if TYPE_CHECKING:
    from spark.credentials.manager import CredentialManager
    from spark.integrations.models import Integration
    from spark.plugins.contracts import ProviderPlugin

logger = structlog.get_logger()

DEFAULT_TIMEOUT_SECONDS = 30.0


class ProviderClient:
    def __init__(
        self,
        plugin: "ProviderPlugin",
        integration: "Integration",
        *,
        credentials: "CredentialManager",
        http: httpx.AsyncClient | None = None,
        clock: Clock | None = None,
        base_url: str | None = None,
    ) -> None:
        self.plugin = plugin
        self.integration = integration
        self.credentials = credentials
        self.clock = clock or utc_now
        self.base_url = (base_url if base_url is not None else plugin.base_url).rstrip("/")
        self._http = http
        self._owned: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "ProviderClient":
        if self._http is None:
            self._owned = httpx.AsyncClient(timeout=DEFAULT_TIMEOUT_SECONDS)
            self._http = self._owned
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        if self._owned is not None:
            await self._owned.aclose()
            self._owned = None
            self._http = None

    def url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    async def _auth_headers(self, *, refresh: bool = False) -> dict[str, str]:
        if self.plugin.is_oauth:
            if refresh:
                await self._refresh()
            token = await self.credentials.access_token_for(self.plugin, self.integration)
            return {"Authorization": f"Bearer {token}"}
        if self.plugin.api_key_setting is not None or "api_key" in self.integration.configuration:
            key = self.credentials.resolve_api_key(self.plugin, self.integration)
            return self.plugin.api_key_headers(key)
        return {}

    async def _refresh(self) -> None:
        group_id = self.integration.integration_group_id
        if not group_id:
            raise CredentialsRevoked(message="Access token rejected and no group to refresh")
        group = await self.credentials.repository.require_group(group_id)
        await self.credentials.refresh_token(self.plugin, group)

    async def _send(self, method: str, url: str, headers: dict[str, str], **kwargs: Any) -> httpx.Response:
        if self._http is None:
            raise RuntimeError("ProviderClient used outside its context manager")
        try:
            return await self._http.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            logger.warning(
                "Provider request failed",
                service=self.plugin.identifier,
                integration_id=self.integration.id,
                error_type=type(exc).__name__,
            )
            raise TransientProviderError(
                message=f"{self.plugin.identifier} request failed: {type(exc).__name__}",
                meta={"service": self.plugin.identifier},
            ) from exc

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
        data: Any = None,
        headers: dict[str, str] | None = None,
        authenticated: bool = True,
        allow_statuses: Iterable[int] = (),
    ) -> httpx.Response:
        url = self.url(path)
        extra = dict(headers or {})
        auth = await self._auth_headers() if authenticated else {}
        response = await self._send(method, url, {**extra, **auth}, params=params, json=json, data=data)

        if response.status_code == 401 and authenticated and self.plugin.is_oauth:
            logger.info(
                "Access token rejected, refreshing once",
                service=self.plugin.identifier,
                integration_id=self.integration.id,
            )
            auth = await self._auth_headers(refresh=True)
            response = await self._send(method, url, {**extra, **auth}, params=params, json=json, data=data)

        check_response(response, self.plugin.rate_limit_policy, service=self.plugin.identifier, now=self.clock())

        allowed = set(allow_statuses)
        if response.status_code in allowed or response.status_code < 400:
            return response

        body = _body_for_log(response)
        logger.error(
            "Provider returned an error",
            service=self.plugin.identifier,
            integration_id=self.integration.id,
            status_code=response.status_code,
            path=path,
            body=body,
            headers=sanitize_headers(response.headers),
        )
        if response.status_code in (401, 403):
            raise CredentialsRevoked(meta={"service": self.plugin.identifier, "status_code": response.status_code})
        if response.status_code >= 500:
            raise TransientProviderError(
                message=f"{self.plugin.identifier} returned {response.status_code}",
                meta={"service": self.plugin.identifier, "status_code": response.status_code},
            )
        raise UpstreamError(
            message=f"{self.plugin.identifier} request rejected with {response.status_code}",
            code="provider.request_failed",
            meta={"service": self.plugin.identifier, "status_code": response.status_code},
        )

    async def get_json(self, path: str, **kwargs: Any) -> Any:
        response = await self.request("GET", path, **kwargs)
        return response.json() if response.content else None

    async def post_json(self, path: str, **kwargs: Any) -> Any:
        response = await self.request("POST", path, **kwargs)
        return response.json() if response.content else None


def _body_for_log(response: httpx.Response) -> Any:
    try:
        return sanitize_data(response.json())
    except ValueError:
        return response.text[:500]
