from __future__ import annotations

from datetime import datetime, timezone

import pytest

from spark.canonical.records import BlockData, ConvertedData, EventData, ObjectData
from spark.canonical.store import InMemoryCanonicalStore
from spark.canonical.writer import ingest_items, write_converted, write_event
from spark.kernel.errors import MalformedPayload
from tests.support.clock import FakeClock

pytestmark = pytest.mark.unit

WHEN = datetime(2026, 1, 10, 9, 30, tzinfo=timezone.utc)


def _event(source_id: str = "evt-1", *, value=None, metadata=None, blocks=None, title: str = "coffee") -> EventData:
    return EventData(
        source_id=source_id,
        time=WHEN,
        service="monzo",
        domain="money",
        action="card_payment",
        value=value,
        value_unit="GBP",
        metadata=metadata or {},
        actor=ObjectData(concept="account", type="monzo_account", title="Main"),
        target=ObjectData(concept="merchant", type="monzo_merchant", title=title),
        blocks=blocks or [],
    )


@pytest.fixture
def clock():
    return FakeClock.fixed()


@pytest.fixture
def store(clock):
    return InMemoryCanonicalStore(clock)


class TestWriteEvent:
    @pytest.mark.asyncio
    async def test_first_write_creates_event_and_objects(self, store, clock):
        result = await write_event(store, user_id="u1", integration_id="i1", event=_event(value=3.5), now=clock())

        assert result.change == "created"
        assert result.event.value == 350
        assert result.event.value_multiplier == 100
        assert len(store.events) == 1
        assert len(store.objects) == 2

    @pytest.mark.asyncio
    async def test_reprocessing_same_item_keeps_one_row(self, store, clock):
        first = await write_event(store, user_id="u1", integration_id="i1", event=_event(value=3.5), now=clock())
        second = await write_event(store, user_id="u1", integration_id="i1", event=_event(value=3.5), now=clock())

        assert second.event.id == first.event.id
        assert second.change == "updated"
        assert len(store.events) == 1
        assert len(store.objects) == 2

    @pytest.mark.asyncio
    async def test_same_source_id_in_other_integration_is_a_new_event(self, store, clock):
        await write_event(store, user_id="u1", integration_id="i1", event=_event(), now=clock())
        await write_event(store, user_id="u1", integration_id="i2", event=_event(), now=clock())

        assert len(store.events) == 2

    @pytest.mark.asyncio
    async def test_value_change_is_recorded_in_metadata(self, store, clock):
        await write_event(store, user_id="u1", integration_id="i1", event=_event(value=-12.00), now=clock())
        result = await write_event(store, user_id="u1", integration_id="i1", event=_event(value=-15.25), now=clock())

        assert result.change == "value_changed"
        meta = result.event.event_metadata
        assert meta["value_updated"] is True
        assert meta["previous_value"] == -12
        assert meta["updated_at"] == "2026-01-15T12:00:00Z"
        assert result.event.value == -1525

    @pytest.mark.asyncio
    async def test_status_change_is_recorded_in_metadata(self, store, clock):
        await write_event(
            store, user_id="u1", integration_id="i1", event=_event(value=1, metadata={"status": "pending"}), now=clock()
        )
        result = await write_event(
            store, user_id="u1", integration_id="i1", event=_event(value=1, metadata={"status": "booked"}), now=clock()
        )

        assert result.change == "status_changed"
        assert result.event.event_metadata["status"] == "booked"
        assert result.event.event_metadata["status_updated"] is True
        assert result.event.event_metadata["previous_status"] == "pending"

    @pytest.mark.asyncio
    async def test_blocks_are_replaced_not_appended(self, store, clock):
        blocks = [BlockData(title="a", block_type="note"), BlockData(title="b", block_type="note")]
        result = await write_event(store, user_id="u1", integration_id="i1", event=_event(blocks=blocks), now=clock())
        await write_event(
            store,
            user_id="u1",
            integration_id="i1",
            event=_event(blocks=[BlockData(title="c", block_type="note", value=2)]),
            now=clock(),
        )

        remaining = await store.list_blocks(result.event.id)
        assert [b.title for b in remaining] == ["c"]
        assert remaining[0].value == 2
        assert remaining[0].value_multiplier == 1

    @pytest.mark.asyncio
    async def test_sync_blocks_false_leaves_existing_blocks(self, store, clock):
        result = await write_event(
            store, user_id="u1", integration_id="i1", event=_event(blocks=[BlockData(title="keep")]), now=clock()
        )
        await write_event(store, user_id="u1", integration_id="i1", event=_event(), now=clock(), sync_blocks=False)

        assert [b.title for b in await store.list_blocks(result.event.id)] == ["keep"]


class TestIngestItems:
    @pytest.mark.asyncio
    async def test_malformed_items_are_skipped_and_page_continues(self, store):
        def convert(item):
            if item.get("broken"):
                raise MalformedPayload(message="no id")
            if "title" not in item:
                raise KeyError("title")
            return ConvertedData(events=[_event(item["id"], title=item["title"])])

        report = await ingest_items(
            store,
            user_id="u1",
            integration_id="i1",
            items=[{"id": "a", "title": "x"}, {"broken": True}, {"id": "b"}, {"id": "c", "title": "y"}],
            convert=convert,
        )

        assert report.written == 2
        assert report.created == 2
        assert report.skipped == 2
        assert len(report.errors) == 2
        assert report.as_dict() == {"written": 2, "created": 2, "skipped": 2, "objects": 0}

    @pytest.mark.asyncio
    async def test_blank_titles_fail_validation_and_are_skipped(self, store):
        def convert(item):
            return ConvertedData(events=[_event(item["id"], title=item["title"])])

        report = await ingest_items(
            store, user_id="u1", integration_id="i1", items=[{"id": "a", "title": "  "}], convert=convert
        )

        assert report.skipped == 1
        assert store.events == {}

    @pytest.mark.asyncio
    async def test_standalone_objects_are_upserted(self, store):
        converted = ConvertedData(objects=[ObjectData(concept="collection", type="outline_collection", title="Notes")])

        report = await write_converted(store, user_id="u1", integration_id="i1", converted=converted)
        await write_converted(store, user_id="u1", integration_id="i1", converted=converted)

        assert report.objects == 1
        assert len(store.objects) == 1
