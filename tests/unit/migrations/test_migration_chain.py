from __future__ import annotations

from datetime import datetime, timedelta, timezone

import httpx
import pytest

from spark.integrations.models import Integration
from spark.kernel.errors import ConflictError, ValidationError
from spark.kernel.time import to_epoch_ms
from spark.migrations.coordinator import start_migration

pytestmark = pytest.mark.unit

REPO_EVENTS_URL = "https://api.github.com/repos/octo/spark/events"
RECENT_URL = "https://api.spotify.com/v1/me/player/recently-played"


def push_event(event_id: str) -> dict:
    return {
        "id": event_id,
        "type": "PushEvent",
        "created_at": "2026-01-10T10:00:00Z",
        "actor": {"id": 1, "login": "octocat"},
        "repo": {"id": 7, "name": "octo/spark"},
        "payload": {"ref": "refs/heads/main", "commits": [{"sha": "a" * 40, "message": "m"}]},
    }


def play(track_id: str, played_at: datetime) -> dict:
    return {
        "played_at": played_at.isoformat().replace("+00:00", "Z"),
        "track": {
            "id": track_id,
            "name": f"Track {track_id}",
            "duration_ms": 200_000,
            "artists": [{"id": "ar1", "name": "Artist"}],
            "album": {"id": "al1", "name": "Album", "images": []},
        },
    }


class TestGitHubChain:
    @pytest.mark.asyncio
    async def test_each_page_is_written_before_the_next_is_fetched(self, harness):
        stored_at_request: list[tuple[int, int]] = []

        def events(request: httpx.Request) -> httpx.Response:
            page = int(request.url.params["page"])
            stored_at_request.append((page, len(harness.store.events)))
            if page <= 2:
                return httpx.Response(200, json=[push_event(f"evt-{page}")])
            return httpx.Response(200, json=[])

        harness.provider.add("GET", REPO_EVENTS_URL, events)
        integration = await harness.connect("github", configuration={"repositories": ["octo/spark"]}, account_id="s" * 32)

        await start_migration(harness.runtime, integration)
        await harness.drain_all()

        assert stored_at_request == [(1, 0), (2, 1), (3, 2)]
        assert {event.source_id for event in harness.store.events.values()} == {"evt-1", "evt-2"}

        fetches = harness.queue.find(job_type="migration.fetch_page")
        assert [job.status for job in fetches] == ["succeeded"] * 3
        assert fetches[-1].result == {"stopped": "exhausted"}
        assert len(harness.queue.find(job_type="migration.process_page", status="succeeded")) == 2

    @pytest.mark.asyncio
    async def test_timebox_stops_the_chain_at_the_next_fetch(self, harness):
        def events(request: httpx.Request) -> httpx.Response:
            harness.clock.advance(minutes=2)
            return httpx.Response(200, json=[push_event(f"evt-{request.url.params['page']}")])

        harness.provider.add("GET", REPO_EVENTS_URL, events)
        integration = await harness.connect("github", configuration={"repositories": ["octo/spark"]}, account_id="s" * 32)

        await start_migration(harness.runtime, integration, timebox_until=harness.clock() + timedelta(minutes=1))
        await harness.drain_all()

        assert len(harness.provider.calls("GET", REPO_EVENTS_URL)) == 1
        assert len(harness.store.events) == 1
        assert harness.queue.find(job_type="migration.fetch_page")[-1].result == {"stopped": "timebox"}

    @pytest.mark.asyncio
    async def test_rate_limited_page_is_retried_with_the_same_cursor(self, harness):
        harness.provider.add(
            "GET",
            REPO_EVENTS_URL,
            [
                httpx.Response(429, headers={"Retry-After": "90"}),
                httpx.Response(200, json=[]),
            ],
        )
        integration = await harness.connect("github", configuration={"repositories": ["octo/spark"]}, account_id="s" * 32)

        await start_migration(harness.runtime, integration)
        await harness.drain_all()

        fetches = harness.queue.find(job_type="migration.fetch_page")
        assert fetches[0].history[-1] == "redispatched"
        assert fetches[1].spec.payload == fetches[0].spec.payload
        assert fetches[1].result == {"stopped": "exhausted"}
        pages = [request.url.params["page"] for request in harness.provider.calls("GET", REPO_EVENTS_URL)]
        assert pages == ["1", "1"]


class TestSpotifyChain:
    @pytest.mark.asyncio
    async def test_before_cursor_walks_backwards_until_empty(self, harness):
        now_ms = to_epoch_ms(harness.clock())
        oldest = datetime(2026, 1, 15, 10, 0, tzinfo=timezone.utc)

        def recent(request: httpx.Request) -> httpx.Response:
            if int(request.url.params["before"]) == now_ms:
                return httpx.Response(
                    200,
                    json={
                        "items": [play("t1", datetime(2026, 1, 15, 11, 0, tzinfo=timezone.utc)), play("t2", oldest)],
                        "cursors": {"before": str(to_epoch_ms(oldest))},
                    },
                )
            return httpx.Response(200, json={"items": [], "cursors": None})

        harness.provider.add("GET", RECENT_URL, recent)
        integration = await harness.connect("spotify")

        await start_migration(harness.runtime, integration)
        await harness.drain_all()

        befores = [int(request.url.params["before"]) for request in harness.provider.calls("GET", RECENT_URL)]
        assert befores == [now_ms, to_epoch_ms(oldest)]
        assert len(harness.store.events) == 2
        assert harness.queue.find(job_type="migration.fetch_page")[-1].result == {"stopped": "exhausted"}


class TestStartMigration:
    @pytest.mark.asyncio
    async def test_provider_without_backfill_is_rejected(self, harness):
        integration = Integration(id="i1", user_id="owner", service="journal")

        with pytest.raises(ValidationError) as exc_info:
            await start_migration(harness.runtime, integration)

        assert exc_info.value.code == "migration.unsupported"
        assert harness.queue.jobs == {}

    @pytest.mark.asyncio
    async def test_chain_mode_starts_one_chain_per_context(self, harness):
        harness.provider.json("GET", REPO_EVENTS_URL, [])
        integration = await harness.connect(
            "github", configuration={"repositories": ["octo/spark"]}, account_id="s" * 32
        )

        await start_migration(harness.runtime, integration)
        await harness.drain()

        start = harness.queue.find(job_type="migration.start")[0]
        assert start.result == {"mode": "chain", "chains": 1}
        assert (await harness.refreshed(integration)).migration_batch_id is None

    @pytest.mark.asyncio
    async def test_second_chain_start_is_a_conflict_until_the_first_finishes(self, harness):
        harness.provider.json("GET", REPO_EVENTS_URL, [])
        integration = await harness.connect(
            "github", configuration={"repositories": ["octo/spark"]}, account_id="s" * 32
        )

        await start_migration(harness.runtime, integration)
        with pytest.raises(ConflictError) as exc_info:
            await start_migration(harness.runtime, integration)
        assert exc_info.value.code == "migration.in_progress"
        assert len(harness.queue.find(job_type="migration.start")) == 1

        await harness.drain_all()
        assert harness.queue.find(job_type="migration.fetch_page")[-1].result == {"stopped": "exhausted"}

        await start_migration(harness.runtime, integration)
        assert len(harness.queue.pending("migration.start")) == 1

    @pytest.mark.asyncio
    async def test_failed_chain_releases_the_backfill(self, harness):
        harness.provider.json("GET", REPO_EVENTS_URL, {"message": "unavailable"}, status_code=503)
        integration = await harness.connect(
            "github", configuration={"repositories": ["octo/spark"]}, account_id="s" * 32
        )

        await start_migration(harness.runtime, integration)
        await harness.drain_all()

        [fetch] = harness.queue.find(job_type="migration.fetch_page")
        assert fetch.status == "failed"
        await start_migration(harness.runtime, integration)
        assert len(harness.queue.pending("migration.start")) == 1
