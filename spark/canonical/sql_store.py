"""PostgreSQL canonical store (SQLAlchemy 2.0 async)."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import structlog
from sqlalchemy import and_, func, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from spark.canonical.records import (
    BlockData,
    EventFilters,
    EventWrite,
    ObjectData,
    StoredBlock,
    StoredEvent,
    StoredObject,
)
from spark.canonical.store import block_row
from spark.db.client import get_db_session
from spark.db.models.canonical import BlockRow, EventRow, ObjectRow
from spark.kernel.ids import new_id
from spark.kernel.time import utc_now

logger = structlog.get_logger()


def _object_from_row(row: ObjectRow) -> StoredObject:
    return StoredObject(
        id=row.id,
        user_id=row.user_id,
        concept=row.concept,
        type=row.type,
        title=row.title,
        content=row.content,
        metadata=row.metadata_ or {},
        url=row.url,
        media_url=row.media_url,
        time=row.time,
    )


def _event_from_row(row: EventRow) -> StoredEvent:
    return StoredEvent(
        id=row.id,
        source_id=row.source_id,
        time=row.time,
        integration_id=row.integration_id,
        actor_id=row.actor_id,
        target_id=row.target_id,
        service=row.service,
        domain=row.domain,
        action=row.action,
        value=row.value,
        value_multiplier=row.value_multiplier,
        value_unit=row.value_unit,
        event_metadata=row.event_metadata or {},
        created_at=row.created_at,
        updated_at=row.updated_at,
        deleted_at=row.deleted_at,
    )


def _block_from_row(row: BlockRow) -> StoredBlock:
    return StoredBlock(
        id=row.id,
        event_id=row.event_id,
        integration_id=row.integration_id,
        block_type=row.block_type,
        time=row.time,
        title=row.title,
        content=row.content,
        metadata=row.metadata_ or {},
        url=row.url,
        media_url=row.media_url,
        value=row.value,
        value_multiplier=row.value_multiplier,
        value_unit=row.value_unit,
        deleted_at=row.deleted_at,
    )


class SqlCanonicalStore:
    """
    Canonical store over the `objects` / `events` / `blocks` tables.

    Every write is an `INSERT ... ON CONFLICT DO UPDATE` on the natural key so
    concurrent writers converge on one row.
    """

    def __init__(self, session: AsyncSession | None = None) -> None:
        self._session = session

    @asynccontextmanager
    async def _scope(self) -> AsyncIterator[AsyncSession]:
        if self._session is not None:
            yield self._session
            return
        async with get_db_session() as session:
            yield session

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["SqlCanonicalStore"]:
        if self._session is not None:
            yield self
            return
        async with get_db_session() as session:
            yield SqlCanonicalStore(session)

    async def upsert_object(self, user_id: str, data: ObjectData) -> StoredObject:
        now = utc_now()
        values = {
            "id": new_id(),
            "user_id": user_id,
            "concept": data.concept,
            "type": data.type,
            "title": data.title,
            "content": data.content,
            "metadata": dict(data.metadata),
            "url": data.url,
            "media_url": data.media_url,
            "time": data.time,
            "created_at": now,
            "updated_at": now,
        }
        stmt = insert(ObjectRow.__table__).values(**values)
        stmt = stmt.on_conflict_do_update(
            constraint="objects_identity_unique",
            set_={
                "content": stmt.excluded.content,
                "metadata": stmt.excluded["metadata"],
                "url": stmt.excluded.url,
                "media_url": stmt.excluded.media_url,
                "time": func.coalesce(stmt.excluded.time, ObjectRow.__table__.c.time),
                "updated_at": now,
                "deleted_at": None,
            },
        ).returning(ObjectRow.__table__.c.id)
        async with self._scope() as session:
            object_id = (await session.execute(stmt)).scalar_one()
        return StoredObject(id=object_id, user_id=user_id, **data.model_dump())

    async def get_object(self, object_id: str) -> StoredObject | None:
        async with self._scope() as session:
            row = await session.get(ObjectRow, object_id)
            return _object_from_row(row) if row else None

    async def find_event(self, integration_id: str, source_id: str) -> StoredEvent | None:
        async with self._scope() as session:
            result = await session.execute(
                select(EventRow).where(
                    EventRow.integration_id == integration_id,
                    EventRow.source_id == source_id,
                )
            )
            row = result.scalar_one_or_none()
            return _event_from_row(row) if row else None

    async def get_event(self, event_id: str) -> StoredEvent | None:
        async with self._scope() as session:
            result = await session.execute(
                select(EventRow).where(EventRow.id == event_id, EventRow.deleted_at.is_(None))
            )
            row = result.scalar_one_or_none()
            return _event_from_row(row) if row else None

    async def upsert_event(self, record: EventWrite) -> StoredEvent:
        now = utc_now()
        values: dict[str, Any] = {**record.model_dump(), "id": new_id(), "created_at": now, "updated_at": now}
        table = EventRow.__table__
        stmt = insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            constraint="events_integration_source_unique",
            set_={
                "time": stmt.excluded.time,
                "actor_id": stmt.excluded.actor_id,
                "target_id": stmt.excluded.target_id,
                "service": stmt.excluded.service,
                "domain": stmt.excluded.domain,
                "action": stmt.excluded.action,
                "value": stmt.excluded.value,
                "value_multiplier": stmt.excluded.value_multiplier,
                "value_unit": stmt.excluded.value_unit,
                "event_metadata": stmt.excluded.event_metadata,
                "updated_at": now,
                "deleted_at": None,
            },
        ).returning(table.c.id, table.c.created_at)
        async with self._scope() as session:
            row = (await session.execute(stmt)).one()
        return StoredEvent(
            id=row.id,
            created_at=row.created_at,
            updated_at=now,
            **record.model_dump(),
        )

    async def update_event(self, event_id: str, fields: dict) -> StoredEvent | None:
        async with self._scope() as session:
            await session.execute(
                update(EventRow)
                .where(EventRow.id == event_id, EventRow.deleted_at.is_(None))
                .values(**fields, updated_at=utc_now())
            )
        return await self.get_event(event_id)

    async def replace_blocks(
        self, event_id: str, integration_id: str, blocks: list[BlockData]
    ) -> list[StoredBlock]:
        rows = [{"id": new_id(), **block_row(event_id, integration_id, block)} for block in blocks]
        async with self._scope() as session:
            await session.execute(BlockRow.__table__.delete().where(BlockRow.__table__.c.event_id == event_id))
            if rows:
                await session.execute(insert(BlockRow.__table__), rows)
        return [StoredBlock(**row) for row in rows]

    async def list_blocks(self, event_id: str) -> list[StoredBlock]:
        async with self._scope() as session:
            result = await session.execute(
                select(BlockRow).where(BlockRow.event_id == event_id, BlockRow.deleted_at.is_(None))
            )
            return [_block_from_row(row) for row in result.scalars()]

    async def add_blocks(
        self, event_id: str, integration_id: str, blocks: list[BlockData]
    ) -> list[StoredBlock]:
        rows = [{"id": new_id(), **block_row(event_id, integration_id, block)} for block in blocks]
        if rows:
            async with self._scope() as session:
                await session.execute(insert(BlockRow.__table__), rows)
        return [StoredBlock(**row) for row in rows]

    async def update_block(self, block_id: str, fields: dict) -> None:
        async with self._scope() as session:
            await session.execute(
                update(BlockRow).where(BlockRow.id == block_id).values(**fields, updated_at=utc_now())
            )

    async def list_events(
        self, filters: EventFilters, *, page: int, per_page: int
    ) -> tuple[list[StoredEvent], int]:
        conditions = [EventRow.deleted_at.is_(None)]
        if filters.integration_ids is not None:
            conditions.append(EventRow.integration_id.in_(filters.integration_ids))
        if filters.integration_id:
            conditions.append(EventRow.integration_id == filters.integration_id)
        if filters.service:
            conditions.append(EventRow.service == filters.service)
        if filters.domain:
            conditions.append(EventRow.domain == filters.domain)
        if filters.action:
            conditions.append(EventRow.action == filters.action)
        if filters.from_date:
            conditions.append(EventRow.time >= filters.from_date)
        if filters.to_date:
            conditions.append(EventRow.time <= filters.to_date)

        where = and_(*conditions)
        async with self._scope() as session:
            total = (await session.execute(select(func.count()).select_from(EventRow).where(where))).scalar_one()
            result = await session.execute(
                select(EventRow)
                .where(where)
                .order_by(EventRow.time.desc())
                .offset((max(1, page) - 1) * per_page)
                .limit(per_page)
            )
            return [_event_from_row(row) for row in result.scalars()], int(total)

    async def soft_delete_event(self, event_id: str) -> bool:
        now = utc_now()
        async with self._scope() as session:
            result = await session.execute(
                update(EventRow)
                .where(EventRow.id == event_id, EventRow.deleted_at.is_(None))
                .values(deleted_at=now, updated_at=now)
            )
            if not result.rowcount:
                return False
            await session.execute(
                update(BlockRow)
                .where(BlockRow.event_id == event_id, BlockRow.deleted_at.is_(None))
                .values(deleted_at=now, updated_at=now)
            )
        logger.info("Event soft-deleted", event_id=event_id)
        return True
