from __future__ import annotations

import pytest

from spark.integrations.models import Integration
from spark.kernel.errors import MalformedPayload
from spark.plugins.providers.spotify import SpotifyPlugin

pytestmark = pytest.mark.unit


@pytest.fixture
def plugin() -> SpotifyPlugin:
    return SpotifyPlugin()


@pytest.fixture
def integration() -> Integration:
    return Integration(
        id="sp-1",
        user_id="owner",
        service="spotify",
        name="Listening Activity",
        account_id="spotify-user",
        instance_type="listening",
        configuration={"include_album_art": True},
    )


def played(**track_overrides) -> dict:
    track = {
        "id": "track-1",
        "name": "Windowlicker",
        "duration_ms": 367_000,
        "popularity": 61,
        "explicit": False,
        "artists": [{"id": "artist-1", "name": "Aphex Twin", "external_urls": {"spotify": "https://open.spotify.com/artist/1"}}],
        "album": {"id": "album-1", "name": "Windowlicker", "images": [{"url": "https://i.scdn.co/a.jpg", "width": 640}]},
        "external_urls": {"spotify": "https://open.spotify.com/track/1"},
    }
    track.update(track_overrides)
    return {"played_at": "2026-01-15T08:30:00.000Z", "track": track, "context": {"type": "album"}}


class TestConvert:
    def test_play_becomes_listened_to_event(self, plugin, integration):
        [event] = plugin.convert_data(played(), integration, "listening").events

        assert event.source_id == "spotify_track-1_2026-01-15T08:30:00.000Z"
        assert event.action == "listened_to"
        assert event.target.title == "Windowlicker"
        assert event.target.metadata["duration_ms"] == 367_000
        assert event.actor.metadata == {"spotify_user_id": "spotify-user"}
        assert [block.block_type for block in event.blocks] == ["album_art", "track_details", "artist"]
        details = event.blocks[1]
        assert details.metadata["duration"] == "06:07"
        assert details.metadata["artists"] == "Aphex Twin"

    def test_album_art_can_be_turned_off(self, plugin, integration):
        quiet = integration.model_copy(update={"configuration": {"include_album_art": False}})
        [event] = plugin.convert_data(played(), quiet, "listening").events
        assert [block.block_type for block in event.blocks] == ["track_details", "artist"]

    def test_missing_track_is_malformed(self, plugin, integration):
        with pytest.raises(MalformedPayload):
            plugin.convert_data({"played_at": "2026-01-15T08:30:00Z"}, integration, "listening")

    def test_missing_played_at_is_malformed(self, plugin, integration):
        item = played()
        del item["played_at"]
        with pytest.raises(MalformedPayload):
            plugin.convert_data(item, integration, "listening")


class TestProvider:
    def test_token_exchange_uses_basic_auth(self, plugin, harness):
        config = plugin.oauth_config(harness.runtime.settings)
        assert config.client_auth_in_body is False
        assert config.supports_refresh is True
        assert config.token_url == "https://accounts.spotify.com/api/token"

    def test_polls_every_minute_by_default(self, plugin):
        assert plugin.configuration_schema()["update_frequency_minutes"].default == 1

    @pytest.mark.asyncio
    async def test_fetch_reads_recently_played(self, harness):
        harness.provider.json(
            "GET", "https://api.spotify.com/v1/me/player/recently-played", {"items": [played()], "cursors": None}
        )
        integration = await harness.connect("spotify")

        items = await SpotifyPlugin().fetch_data(harness.runtime, integration, "listening")

        assert len(items) == 1
        [request] = harness.provider.requests
        assert request.url.params["limit"] == "50"

    @pytest.mark.asyncio
    async def test_fetch_page_reports_provider_cursor(self, harness):
        harness.provider.json(
            "GET",
            "https://api.spotify.com/v1/me/player/recently-played",
            {"items": [played()], "cursors": {"before": "1768465800000"}},
        )
        integration = await harness.connect("spotify")
        [context] = SpotifyPlugin().migration_contexts(integration, now=harness.clock(), timebox_until=None)

        page = await SpotifyPlugin().fetch_page(harness.runtime, integration, context)

        assert page.next_cursor == {"before_ms": 1768465800000}
        assert len(page.items) == 1
