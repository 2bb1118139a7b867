from __future__ import annotations

import asyncio

import pytest

pytestmark = pytest.mark.api


@pytest.fixture
def spotify(api_harness):
    return asyncio.run(api_harness.connect("spotify"))


class TestRetry:
    def test_failed_integration_is_reset_and_pulled(self, client, api_harness, spotify):
        asyncio.run(api_harness.integrations.mark_failed(spotify.id))

        response = client.post(f"/integrations/{spotify.id}/retry")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "active"
        assert len(body["job_ids"]) == 1
        [job] = api_harness.queue.pending("integration.fetch")
        assert job.spec.integration_id == spotify.id
        refreshed = asyncio.run(api_harness.refreshed(spotify))
        assert refreshed.last_triggered_at == api_harness.clock()

    def test_push_only_integration_is_reset_without_jobs(self, client, api_harness):
        outline = asyncio.run(api_harness.connect("outline", access_token=None))

        response = client.post(f"/integrations/{outline.id}/retry")

        assert response.json() == {"status": "active", "job_ids": []}
        assert api_harness.queue.pending() == []

    def test_unknown_integration_is_not_found(self, client):
        response = client.post("/integrations/missing/retry")

        assert response.status_code == 404
        assert response.json()["code"] == "integration.not_found"


class TestMigrate:
    def test_backfill_is_queued(self, client, api_harness, spotify):
        response = client.post(f"/integrations/{spotify.id}/migrate", json={"timebox_minutes": 30})

        assert response.status_code == 202
        body = response.json()
        assert body["status"] == "queued"
        [job] = api_harness.queue.pending("migration.start")
        assert job.id == body["job_id"]

    def test_backfill_without_body(self, client, api_harness, spotify):
        response = client.post(f"/integrations/{spotify.id}/migrate")

        assert response.status_code == 202
        assert len(api_harness.queue.pending("migration.start")) == 1

    def test_service_without_backfill_is_rejected(self, client, api_harness):
        journal = asyncio.run(api_harness.connect("journal", access_token=None))

        response = client.post(f"/integrations/{journal.id}/migrate")

        assert response.status_code == 422
        assert response.json()["code"] == "migration.unsupported"
        assert api_harness.queue.pending() == []

    def test_backfill_in_flight_is_a_conflict(self, client, api_harness, spotify):
        asyncio.run(api_harness.integrations.set_migration_batch(spotify.id, "batch-1"))

        response = client.post(f"/integrations/{spotify.id}/migrate")

        assert response.status_code == 409
        assert response.json()["code"] == "migration.in_progress"
        assert api_harness.queue.pending() == []

    def test_second_backfill_request_is_a_conflict(self, client, api_harness, spotify):
        first = client.post(f"/integrations/{spotify.id}/migrate")
        second = client.post(f"/integrations/{spotify.id}/migrate")

        assert first.status_code == 202
        assert second.status_code == 409
        assert second.json()["code"] == "migration.in_progress"
        assert len(api_harness.queue.pending("migration.start")) == 1

    def test_timebox_must_be_positive(self, client, spotify):
        response = client.post(f"/integrations/{spotify.id}/migrate", json={"timebox_minutes": 0})

        assert response.status_code == 422
