"""
Canonical store port.

The relational store is a collaborator; the pipeline only needs
"insert or update by natural key" upserts, reads by key, filtered listing and
soft deletes. `InMemoryCanonicalStore` enforces the same natural keys and is
used for local runs and tests.
"""

from __future__ import annotations

import copy
from contextlib import asynccontextmanager
from typing import AsyncIterator, Protocol

from spark.canonical.records import (
    BlockData,
    EventFilters,
    EventWrite,
    ObjectData,
    StoredBlock,
    StoredEvent,
    StoredObject,
)
from spark.kernel.ids import new_id
from spark.kernel.time import Clock, utc_now


class CanonicalStore(Protocol):
    def transaction(self) -> "AsyncIterator[CanonicalStore]":
        ...

    async def upsert_object(self, user_id: str, data: ObjectData) -> StoredObject:
        ...

    async def get_object(self, object_id: str) -> StoredObject | None:
        ...

    async def find_event(self, integration_id: str, source_id: str) -> StoredEvent | None:
        ...

    async def get_event(self, event_id: str) -> StoredEvent | None:
        ...

    async def upsert_event(self, record: EventWrite) -> StoredEvent:
        ...

    async def update_event(self, event_id: str, fields: dict) -> StoredEvent | None:
        ...

    async def replace_blocks(
        self, event_id: str, integration_id: str, blocks: list[BlockData]
    ) -> list[StoredBlock]:
        ...

    async def list_blocks(self, event_id: str) -> list[StoredBlock]:
        ...

    async def add_blocks(
        self, event_id: str, integration_id: str, blocks: list[BlockData]
    ) -> list[StoredBlock]:
        ...

    async def update_block(self, block_id: str, fields: dict) -> None:
        ...

    async def list_events(
        self, filters: EventFilters, *, page: int, per_page: int
    ) -> tuple[list[StoredEvent], int]:
        ...

    async def soft_delete_event(self, event_id: str) -> bool:
        ...


def block_row(event_id: str, integration_id: str, block: BlockData) -> dict:
    value, multiplier = block.encoded_value()
    return {
        "event_id": event_id,
        "integration_id": integration_id,
        "block_type": block.block_type,
        "time": block.time,
        "title": block.title,
        "content": block.content,
        "metadata": dict(block.metadata),
        "url": block.url,
        "media_url": block.media_url,
        "value": value,
        "value_multiplier": multiplier,
        "value_unit": block.value_unit,
    }


class InMemoryCanonicalStore:
    def __init__(self, clock: Clock | None = None) -> None:
        self._clock = clock or utc_now
        self.objects: dict[str, StoredObject] = {}
        self.events: dict[str, StoredEvent] = {}
        self.blocks: dict[str, StoredBlock] = {}
        self._object_keys: dict[tuple[str, str, str, str], str] = {}
        self._event_keys: dict[tuple[str, str], str] = {}
        self.write_count = 0

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["InMemoryCanonicalStore"]:
        snapshot = copy.deepcopy(
            (self.objects, self.events, self.blocks, self._object_keys, self._event_keys)
        )
        try:
            yield self
        except Exception:
            (self.objects, self.events, self.blocks, self._object_keys, self._event_keys) = snapshot
            raise

    async def upsert_object(self, user_id: str, data: ObjectData) -> StoredObject:
        self.write_count += 1
        key = (user_id, data.concept, data.type, data.title)
        existing_id = self._object_keys.get(key)
        stored = StoredObject(
            id=existing_id or new_id(),
            user_id=user_id,
            **data.model_dump(),
        )
        self.objects[stored.id] = stored
        self._object_keys[key] = stored.id
        return stored

    async def get_object(self, object_id: str) -> StoredObject | None:
        return self.objects.get(object_id)

    async def find_event(self, integration_id: str, source_id: str) -> StoredEvent | None:
        event_id = self._event_keys.get((integration_id, source_id))
        return self.events.get(event_id) if event_id else None

    async def get_event(self, event_id: str) -> StoredEvent | None:
        event = self.events.get(event_id)
        if event is None or event.deleted_at is not None:
            return None
        return event

    async def upsert_event(self, record: EventWrite) -> StoredEvent:
        self.write_count += 1
        now = self._clock()
        key = (record.integration_id, record.source_id)
        existing_id = self._event_keys.get(key)
        previous = self.events.get(existing_id) if existing_id else None
        stored = StoredEvent(
            id=existing_id or new_id(),
            created_at=previous.created_at if previous else now,
            updated_at=now,
            deleted_at=None,
            **record.model_dump(),
        )
        self.events[stored.id] = stored
        self._event_keys[key] = stored.id
        return stored

    async def update_event(self, event_id: str, fields: dict) -> StoredEvent | None:
        event = await self.get_event(event_id)
        if event is None:
            return None
        self.write_count += 1
        updated = event.model_copy(update={**fields, "updated_at": self._clock()})
        self.events[event_id] = updated
        return updated

    async def replace_blocks(
        self, event_id: str, integration_id: str, blocks: list[BlockData]
    ) -> list[StoredBlock]:
        self.write_count += 1
        for block_id in [bid for bid, b in self.blocks.items() if b.event_id == event_id]:
            del self.blocks[block_id]
        stored = []
        for block in blocks:
            row = StoredBlock(id=new_id(), **block_row(event_id, integration_id, block))
            self.blocks[row.id] = row
            stored.append(row)
        return stored

    async def list_blocks(self, event_id: str) -> list[StoredBlock]:
        return [
            block
            for block in self.blocks.values()
            if block.event_id == event_id and block.deleted_at is None
        ]

    async def add_blocks(
        self, event_id: str, integration_id: str, blocks: list[BlockData]
    ) -> list[StoredBlock]:
        self.write_count += 1
        stored = []
        for block in blocks:
            row = StoredBlock(id=new_id(), **block_row(event_id, integration_id, block))
            self.blocks[row.id] = row
            stored.append(row)
        return stored

    async def update_block(self, block_id: str, fields: dict) -> None:
        block = self.blocks.get(block_id)
        if block is None:
            return
        self.write_count += 1
        self.blocks[block_id] = block.model_copy(update=fields)

    async def list_events(
        self, filters: EventFilters, *, page: int, per_page: int
    ) -> tuple[list[StoredEvent], int]:
        def matches(event: StoredEvent) -> bool:
            if event.deleted_at is not None:
                return False
            if filters.integration_ids is not None and event.integration_id not in filters.integration_ids:
                return False
            if filters.integration_id and event.integration_id != filters.integration_id:
                return False
            if filters.service and event.service != filters.service:
                return False
            if filters.domain and event.domain != filters.domain:
                return False
            if filters.action and event.action != filters.action:
                return False
            if filters.from_date and event.time < filters.from_date:
                return False
            if filters.to_date and event.time > filters.to_date:
                return False
            return True

        selected = sorted(
            (event for event in self.events.values() if matches(event)),
            key=lambda event: event.time,
            reverse=True,
        )
        start = (max(1, page) - 1) * per_page
        return selected[start : start + per_page], len(selected)

    async def soft_delete_event(self, event_id: str) -> bool:
        event = await self.get_event(event_id)
        if event is None:
            return False
        self.write_count += 1
        now = self._clock()
        self.events[event_id] = event.model_copy(update={"deleted_at": now})
        for block_id, block in list(self.blocks.items()):
            if block.event_id == event_id and block.deleted_at is None:
                self.blocks[block_id] = block.model_copy(update={"deleted_at": now})
        return True
