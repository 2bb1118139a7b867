from __future__ import annotations

import httpx
import pytest

from spark.kernel.errors import CredentialsRevoked, RateLimited, TransientProviderError, UpstreamError

pytestmark = pytest.mark.unit

ME = "https://api.spotify.com/v1/me"
TOKEN_URL = "https://accounts.spotify.com/api/token"


async def _client(harness, service="spotify", **connect):
    integration = await harness.connect(service, **connect)
    plugin = harness.runtime.plugins.get(service)
    return plugin.client(harness.runtime, integration)


class TestProviderClient:
    @pytest.mark.asyncio
    async def test_bearer_token_and_base_url(self, harness):
        harness.provider.json("GET", ME, {"id": "me"})

        async with await _client(harness) as client:
            assert await client.get_json("/me") == {"id": "me"}

        [request] = harness.provider.requests
        assert request.headers["authorization"] == "Bearer access-1"

    @pytest.mark.asyncio
    async def test_401_refreshes_once_and_replays(self, harness):
        harness.provider.add("GET", ME, [httpx.Response(401), httpx.Response(200, json={"id": "me"})])
        harness.provider.json("POST", TOKEN_URL, {"access_token": "access-2", "expires_in": 3600})

        async with await _client(harness) as client:
            assert await client.get_json("/me") == {"id": "me"}

        calls = harness.provider.calls("GET", ME)
        assert [call.headers["authorization"] for call in calls] == ["Bearer access-1", "Bearer access-2"]
        assert len(harness.provider.calls("POST", TOKEN_URL)) == 1

    @pytest.mark.asyncio
    async def test_401_after_refresh_means_revoked(self, harness):
        harness.provider.add("GET", ME, httpx.Response(401))
        harness.provider.json("POST", TOKEN_URL, {"access_token": "access-2", "expires_in": 3600})

        async with await _client(harness) as client:
            with pytest.raises(CredentialsRevoked):
                await client.get_json("/me")

        assert len(harness.provider.calls("GET", ME)) == 2

    @pytest.mark.asyncio
    async def test_429_is_rate_limited_with_delay(self, harness):
        harness.provider.add("GET", ME, httpx.Response(429, headers={"Retry-After": "42"}))

        async with await _client(harness) as client:
            with pytest.raises(RateLimited) as exc_info:
                await client.get_json("/me")

        assert exc_info.value.delay_seconds == 42
        assert exc_info.value.meta["service"] == "spotify"

    @pytest.mark.asyncio
    async def test_github_403_counts_as_rate_limited(self, harness):
        url = "https://api.github.com/user"
        harness.provider.add("GET", url, httpx.Response(403))

        async with await _client(harness, "github", configuration={"repositories": ["o/r"]}) as client:
            with pytest.raises(RateLimited) as exc_info:
                await client.get_json("/user")

        assert exc_info.value.delay_seconds == 60

    @pytest.mark.asyncio
    async def test_403_elsewhere_is_revoked(self, harness):
        harness.provider.add("GET", ME, httpx.Response(403))

        async with await _client(harness) as client:
            with pytest.raises(CredentialsRevoked):
                await client.get_json("/me")

    @pytest.mark.asyncio
    async def test_5xx_is_transient(self, harness):
        harness.provider.add("GET", ME, httpx.Response(503, json={"error": "down"}))

        async with await _client(harness) as client:
            with pytest.raises(TransientProviderError):
                await client.get_json("/me")

    @pytest.mark.asyncio
    async def test_network_failure_is_transient(self, harness):
        def boom(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        harness.provider.add("GET", ME, boom)

        async with await _client(harness) as client:
            with pytest.raises(TransientProviderError):
                await client.get_json("/me")

    @pytest.mark.asyncio
    async def test_other_4xx_is_an_upstream_error_unless_allowed(self, harness):
        harness.provider.add("GET", ME, httpx.Response(404, json={"error": "missing"}))

        async with await _client(harness) as client:
            with pytest.raises(UpstreamError) as exc_info:
                await client.get_json("/me")
            response = await client.request("GET", "/me", allow_statuses=(404,))

        assert exc_info.value.code == "provider.request_failed"
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_absolute_urls_pass_through(self, harness):
        harness.provider.json("GET", "https://example.com/elsewhere", {"ok": True})

        async with await _client(harness) as client:
            assert await client.get_json("https://example.com/elsewhere", authenticated=False) == {"ok": True}

        assert "authorization" not in harness.provider.requests[0].headers
