"""
Events API tests: create, read, list, update and soft delete over the event log.
"""

from __future__ import annotations

import asyncio

import pytest

pytestmark = pytest.mark.api


@pytest.fixture
def journal(api_harness):
    return asyncio.run(api_harness.connect("journal", access_token=None))


def _payload(integration_id: str, source_id: str = "entry-1", **event_fields) -> dict:
    event = {
        "integration_id": integration_id,
        "source_id": source_id,
        "time": "2026-01-14T21:00:00Z",
        "service": "journal",
        "domain": "health",
        "action": "journaled",
        "value": 7,
        "value_unit": "mood",
    }
    event.update(event_fields)
    return {
        "actor": {"concept": "person", "type": "journal_author", "title": "Me"},
        "target": {"concept": "document", "type": "journal_entry", "title": "Quiet day"},
        "event": event,
        "blocks": [{"title": "Body", "content": "Walked by the river.", "block_type": "journal_body"}],
    }


def _create(client, integration_id: str, **kwargs) -> dict:
    response = client.post("/api/events", json=_payload(integration_id, **kwargs))
    assert response.status_code == 201
    return response.json()


class TestCreateAndRead:
    def test_create_returns_event_with_actor_target_and_blocks(self, client, journal):
        created = _create(client, journal.id)

        assert created["source_id"] == "entry-1"
        assert created["value"] == 7
        assert created["value_multiplier"] == 1
        assert created["actor"]["title"] == "Me"
        assert created["target"]["title"] == "Quiet day"
        assert [block["content"] for block in created["blocks"]] == ["Walked by the river."]

    def test_same_source_id_updates_in_place(self, client, api_harness, journal):
        first = _create(client, journal.id)
        second = _create(client, journal.id, value=9)

        assert second["id"] == first["id"]
        assert second["value"] == 9
        assert len(api_harness.store.events) == 1

    def test_get_by_id(self, client, journal):
        created = _create(client, journal.id)

        response = client.get(f"/api/events/{created['id']}")

        assert response.status_code == 200
        assert response.json()["id"] == created["id"]

    def test_missing_event_is_not_found(self, client):
        response = client.get("/api/events/does-not-exist")

        assert response.status_code == 404
        assert response.json()["code"] == "event.not_found"

    def test_unknown_integration_is_not_found(self, client):
        response = client.post("/api/events", json=_payload("missing"))

        assert response.status_code == 404
        assert response.json()["code"] == "integration.not_found"

    def test_blank_actor_title_is_rejected(self, client, journal):
        payload = _payload(journal.id)
        payload["actor"]["title"] = " "

        response = client.post("/api/events", json=payload)

        assert response.status_code == 422


class TestList:
    def test_filters_and_paginates(self, client, journal):
        for index in range(3):
            _create(client, journal.id, source_id=f"entry-{index}")
        _create(client, journal.id, source_id="other", action="edited")

        page = client.get("/api/events", params={"action": "journaled", "per_page": 2}).json()

        assert page["total"] == 3
        assert page["per_page"] == 2
        assert page["last_page"] == 2
        assert len(page["data"]) == 2
        assert {item["action"] for item in page["data"]} == {"journaled"}

    def test_per_page_is_capped(self, client):
        assert client.get("/api/events", params={"per_page": 500}).status_code == 422


class TestUpdateAndDelete:
    def test_update_changes_only_given_fields(self, client, journal):
        created = _create(client, journal.id)

        response = client.put(f"/api/events/{created['id']}", json={"action": "reflected"})

        assert response.status_code == 200
        body = response.json()
        assert body["action"] == "reflected"
        assert body["value"] == 7

    def test_delete_hides_event_and_blocks(self, client, api_harness, journal):
        created = _create(client, journal.id)

        response = client.delete(f"/api/events/{created['id']}")

        assert response.status_code == 200
        assert client.get(f"/api/events/{created['id']}").status_code == 404
        assert client.get("/api/events").json()["total"] == 0
        assert asyncio.run(api_harness.store.list_blocks(created["id"])) == []

    def test_delete_missing_event_is_not_found(self, client):
        assert client.delete("/api/events/missing").status_code == 404
