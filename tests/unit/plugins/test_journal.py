from __future__ import annotations

import pytest
import pytest_asyncio

from spark.kernel.errors import ValidationError
from spark.plugins.providers.journal import JournalPlugin

pytestmark = pytest.mark.unit


@pytest_asyncio.fixture
async def journal(harness):
    return await harness.connect("journal", access_token=None)


class TestJournal:
    def test_manual_provider_is_never_scheduled(self, harness):
        plugin = harness.runtime.plugins.get("journal")
        assert plugin.is_manual
        assert plugin.is_pull is False
        assert "journal" not in [p.identifier for p in harness.runtime.plugins.schedulable()]

    @pytest.mark.asyncio
    async def test_entry_is_recorded_with_body_and_tags(self, harness, journal):
        entry = {
            "id": "e1",
            "time": "2026-01-15T07:45:00Z",
            "title": "Morning",
            "body": "Slept well.\nLong walk planned.",
            "mood": 7,
            "tags": ["sleep", " ", "walk"],
        }

        report = await JournalPlugin().record_entry(harness.store, journal, entry)

        assert report.created == 1
        [event] = harness.store.events.values()
        assert event.source_id == f"journal_{journal.id}_e1"
        assert (event.value, event.value_unit) == (7, "mood")
        assert event.event_metadata == {"tags": ["sleep", "walk"], "word_count": 5}
        blocks = await harness.store.list_blocks(event.id)
        assert sorted(block.block_type for block in blocks) == ["entry_body", "tag", "tag"]

    @pytest.mark.asyncio
    async def test_entry_without_id_is_keyed_by_content(self, harness, journal):
        entry = {"time": "2026-01-15T07:45:00Z", "body": "Same words"}
        plugin = JournalPlugin()

        await plugin.record_entry(harness.store, journal, entry)
        await plugin.record_entry(harness.store, journal, entry)

        assert len(harness.store.events) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "entry",
        [
            {"time": "2026-01-15T07:45:00Z", "body": "   "},
            {"body": "No time"},
            {"time": "2026-01-15T07:45:00Z", "body": "Rough day", "mood": 11},
        ],
    )
    async def test_invalid_entries_are_rejected(self, harness, journal, entry):
        with pytest.raises(ValidationError):
            await JournalPlugin().record_entry(harness.store, journal, entry)
        assert harness.store.events == {}
