"""Spotify listening history (recently played)."""

from __future__ import annotations

from datetime import datetime
from typing import Any

import httpx
import structlog

from spark.canonical.records import BlockData, ConvertedData, EventData, ObjectData
from spark.credentials.oauth import OAuthProviderConfig
from spark.integrations.config_schema import ConfigField, with_scheduling
from spark.integrations.models import Integration
from spark.kernel.errors import MalformedPayload
from spark.migrations.cursors import MigrationContext, Page, before_token_context
from spark.plugins.contracts import Capability, PluginContext, ProviderPlugin

logger = structlog.get_logger()

SPOTIFY_API_URL = "https://api.spotify.com/v1"
PAGE_LIMIT = 50


class SpotifyPlugin(ProviderPlugin):
    identifier = "spotify"
    display_name = "Spotify"
    description = "Tracks you listen to"
    domain = "media"
    capabilities = frozenset({Capability.OAUTH})
    instance_types = {"listening": "Listening Activity"}
    base_url = SPOTIFY_API_URL
    migration_mode = "chain"

    def configuration_schema(self) -> dict[str, ConfigField]:
        return with_scheduling(
            {
                "update_frequency_minutes": ConfigField(
                    type="integer",
                    label="Update Frequency (minutes)",
                    required=True,
                    min=1,
                    default=1,
                ),
                "include_album_art": ConfigField(type="boolean", label="Include album art", default=True),
            }
        )

    def oauth_config(self, settings) -> OAuthProviderConfig:
        return OAuthProviderConfig(
            client_id=settings.spotify_client_id,
            client_secret=settings.spotify_client_secret,
            authorization_url="https://accounts.spotify.com/authorize",
            token_url="https://accounts.spotify.com/api/token",
            default_scopes=["user-read-recently-played", "user-read-currently-playing", "user-read-email"],
            client_auth_in_body=False,
        )

    async def fetch_account_identity(self, http: httpx.AsyncClient, access_token: str) -> str | None:
        response = await http.get(f"{SPOTIFY_API_URL}/me", headers={"Authorization": f"Bearer {access_token}"})
        if response.status_code != 200:
            return None
        return response.json().get("id")

    async def fetch_data(self, ctx: PluginContext, integration: Integration, fetch_type: str) -> list[dict[str, Any]]:
        async with self.client(ctx, integration) as client:
            data = await client.get_json("/me/player/recently-played", params={"limit": PAGE_LIMIT})
        return list((data or {}).get("items") or [])

    def convert_data(self, item: dict[str, Any], integration: Integration, data_type: str) -> ConvertedData:
        track = item.get("track") or item.get("item")
        played_at = item.get("played_at")
        if not isinstance(track, dict) or not track.get("id") or not played_at:
            raise MalformedPayload(meta={"missing": "track/played_at"})

        artists = [artist for artist in track.get("artists") or [] if isinstance(artist, dict)]
        artist_names = ", ".join(artist.get("name", "") for artist in artists)
        album = track.get("album") or {}
        images = album.get("images") or []
        track_url = (track.get("external_urls") or {}).get("spotify")

        blocks = []
        if integration.configuration.get("include_album_art", True) and images:
            blocks.append(
                BlockData(
                    block_type="album_art",
                    title="Album Art",
                    metadata={"text": f"Album artwork for {album.get('name')}"},
                    url=track_url,
                    media_url=images[0].get("url"),
                    value=images[0].get("width") or 300,
                    value_unit="pixels",
                )
            )
        duration_seconds = int(track.get("duration_ms") or 0) // 1000
        blocks.append(
            BlockData(
                block_type="track_details",
                title="Track Details",
                metadata={
                    "track": track.get("name"),
                    "artists": artist_names,
                    "album": album.get("name"),
                    "duration": f"{duration_seconds // 60:02d}:{duration_seconds % 60:02d}",
                    "popularity": track.get("popularity"),
                },
                url=track_url,
                value=track.get("popularity") or 0,
                value_unit="popularity",
            )
        )
        if artists:
            blocks.append(
                BlockData(
                    block_type="artist",
                    title="Artist Info",
                    metadata={"artist": artists[0].get("name"), "spotify_id": artists[0].get("id")},
                    url=(artists[0].get("external_urls") or {}).get("spotify"),
                )
            )

        return ConvertedData(
            events=[
                EventData(
                    source_id=f"spotify_{track['id']}_{played_at}",
                    time=played_at,
                    service=self.identifier,
                    domain=self.domain,
                    action="listened_to",
                    metadata={
                        "source": data_type,
                        "context_type": (item.get("context") or {}).get("type"),
                        "track_id": track["id"],
                        "album_id": album.get("id"),
                        "artist_ids": [artist.get("id") for artist in artists],
                    },
                    actor=ObjectData(
                        concept="user",
                        type="spotify_user",
                        title=integration.name or "Spotify user",
                        content="Spotify user account",
                        metadata={"spotify_user_id": integration.account_id},
                    ),
                    target=ObjectData(
                        concept="track",
                        type="spotify_track",
                        title=track.get("name") or track["id"],
                        content=f"Track: {track.get('name')}\nArtist: {artist_names}\nAlbum: {album.get('name') or 'Unknown Album'}",
                        metadata={
                            "spotify_track_id": track["id"],
                            "spotify_album_id": album.get("id"),
                            "duration_ms": track.get("duration_ms") or 0,
                            "explicit": bool(track.get("explicit")),
                            "popularity": track.get("popularity") or 0,
                        },
                        url=track_url,
                        media_url=images[0].get("url") if images else None,
                    ),
                    blocks=blocks,
                )
            ]
        )

    def migration_contexts(
        self, integration: Integration, *, now: datetime, timebox_until: datetime | None
    ) -> list[MigrationContext]:
        return [
            before_token_context(
                service=self.identifier,
                integration_id=integration.id,
                instance_type=integration.instance_type or "listening",
                now=now,
                timebox_until=timebox_until,
            )
        ]

    async def fetch_page(self, ctx: PluginContext, integration: Integration, context: MigrationContext) -> Page:
        async with self.client(ctx, integration) as client:
            data = await client.get_json(
                "/me/player/recently-played",
                params={"limit": PAGE_LIMIT, "before": int(context.cursor["before_ms"])},
            )
        data = data or {}
        before = (data.get("cursors") or {}).get("before")
        return Page(
            items=list(data.get("items") or []),
            next_cursor={"before_ms": int(before)} if before is not None else None,
        )
