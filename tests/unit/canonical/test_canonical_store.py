from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from spark.canonical.records import BlockData, EventFilters, EventWrite, ObjectData
from spark.canonical.store import InMemoryCanonicalStore
from tests.support.clock import FakeClock

pytestmark = pytest.mark.unit

BASE = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _write(source_id: str, *, integration_id: str = "i1", service: str = "github", days: int = 0, action: str = "push"):
    return EventWrite(
        source_id=source_id,
        time=BASE + timedelta(days=days),
        integration_id=integration_id,
        actor_id="a",
        target_id="t",
        service=service,
        domain="online",
        action=action,
    )


@pytest.fixture
def clock():
    return FakeClock.fixed()


@pytest.fixture
def store(clock):
    return InMemoryCanonicalStore(clock)


@pytest.mark.asyncio
async def test_objects_are_keyed_by_user_concept_type_title(store):
    first = await store.upsert_object("u1", ObjectData(concept="repo", type="github_repo", title="a/b", content="v1"))
    again = await store.upsert_object("u1", ObjectData(concept="repo", type="github_repo", title="a/b", content="v2"))
    other_user = await store.upsert_object("u2", ObjectData(concept="repo", type="github_repo", title="a/b"))

    assert again.id == first.id
    assert again.content == "v2"
    assert other_user.id != first.id


@pytest.mark.asyncio
async def test_upsert_event_keeps_id_and_created_at(store, clock):
    first = await store.upsert_event(_write("s1"))
    clock.advance(minutes=5)
    second = await store.upsert_event(_write("s1", action="pull_request"))

    assert second.id == first.id
    assert second.created_at == first.created_at
    assert second.updated_at > first.updated_at
    assert second.action == "pull_request"


@pytest.mark.asyncio
async def test_list_events_filters_sorts_and_paginates(store):
    for day in range(5):
        await store.upsert_event(_write(f"gh-{day}", days=day))
    await store.upsert_event(_write("sp-1", integration_id="i2", service="spotify", days=10))

    page, total = await store.list_events(EventFilters(service="github"), page=1, per_page=2)
    assert total == 5
    assert [e.source_id for e in page] == ["gh-4", "gh-3"]

    page3, _ = await store.list_events(EventFilters(service="github"), page=3, per_page=2)
    assert [e.source_id for e in page3] == ["gh-0"]

    windowed, total = await store.list_events(
        EventFilters(from_date=BASE + timedelta(days=1), to_date=BASE + timedelta(days=2)), page=1, per_page=10
    )
    assert total == 2
    assert {e.source_id for e in windowed} == {"gh-1", "gh-2"}

    scoped, total = await store.list_events(EventFilters(integration_ids=["i2"]), page=1, per_page=10)
    assert total == 1
    assert scoped[0].service == "spotify"


@pytest.mark.asyncio
async def test_soft_delete_hides_event_and_its_blocks(store):
    event = await store.upsert_event(_write("s1"))
    await store.replace_blocks(event.id, "i1", [BlockData(title="b1"), BlockData(title="b2")])

    assert await store.soft_delete_event(event.id) is True
    assert await store.get_event(event.id) is None
    assert await store.list_blocks(event.id) == []
    assert all(block.deleted_at is not None for block in store.blocks.values())
    assert await store.soft_delete_event(event.id) is False

    _, total = await store.list_events(EventFilters(), page=1, per_page=10)
    assert total == 0


@pytest.mark.asyncio
async def test_add_and_update_blocks(store):
    event = await store.upsert_event(_write("s1"))
    [block] = await store.add_blocks(event.id, "i1", [BlockData(title="task", metadata={"done": False})])
    await store.update_block(block.id, {"metadata": {"done": True}})
    await store.update_block("missing", {"title": "ignored"})

    [reloaded] = await store.list_blocks(event.id)
    assert reloaded.metadata == {"done": True}


@pytest.mark.asyncio
async def test_transaction_rolls_back_on_error(store):
    await store.upsert_event(_write("kept"))

    with pytest.raises(RuntimeError):
        async with store.transaction() as tx:
            await tx.upsert_event(_write("discarded"))
            raise RuntimeError("boom")

    assert await store.find_event("i1", "discarded") is None
    assert await store.find_event("i1", "kept") is not None


@pytest.mark.asyncio
async def test_update_event_ignores_deleted_rows(store):
    event = await store.upsert_event(_write("s1"))
    await store.soft_delete_event(event.id)

    assert await store.update_event(event.id, {"action": "x"}) is None
