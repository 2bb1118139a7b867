"""
Events API Routes

CRUD over the canonical event log. Every event is returned together with
its actor, target and live blocks.

OpenAPI Tags:
- events: Canonical event listing and management
"""

from datetime import datetime
from typing import Any

import structlog
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from spark.canonical.records import BlockData, EventData, EventFilters, ObjectData, StoredEvent
from spark.canonical.store import CanonicalStore
from spark.canonical.writer import write_event
from spark.jobs.base import JobRuntime
from spark.jobs.runtime import get_runtime
from spark.kernel.errors import NotFoundError

logger = structlog.get_logger()

router = APIRouter(prefix="/api/events", tags=["Events"])

DEFAULT_PER_PAGE = 15
MAX_PER_PAGE = 100


# =============================================================================
# REQUEST MODELS
# =============================================================================


class EventFields(BaseModel):
    integration_id: str = Field(..., description="Integration the event belongs to")
    source_id: str = Field(..., description="Provider-native identifier, unique per integration")
    time: datetime
    service: str
    domain: str
    action: str
    value: int | None = None
    value_multiplier: int | None = Field(None, description="When set, `value` is already encoded")
    value_unit: str | None = None
    event_metadata: dict[str, Any] = Field(default_factory=dict)


class CreateEventRequest(BaseModel):
    actor: ObjectData
    target: ObjectData
    event: EventFields
    blocks: list[BlockData] = Field(default_factory=list)


class UpdateEventRequest(BaseModel):
    time: datetime | None = None
    service: str | None = None
    domain: str | None = None
    action: str | None = None
    value: int | None = None
    value_multiplier: int | None = None
    value_unit: str | None = None
    event_metadata: dict[str, Any] | None = None


# =============================================================================
# HELPERS
# =============================================================================


async def _present(store: CanonicalStore, event: StoredEvent) -> dict[str, Any]:
    actor = await store.get_object(event.actor_id)
    target = await store.get_object(event.target_id)
    blocks = await store.list_blocks(event.id)
    return {
        **event.model_dump(mode="json"),
        "actor": actor.model_dump(mode="json") if actor else None,
        "target": target.model_dump(mode="json") if target else None,
        "blocks": [block.model_dump(mode="json") for block in blocks],
    }


async def _require_event(store: CanonicalStore, event_id: str) -> StoredEvent:
    event = await store.get_event(event_id)
    if event is None:
        raise NotFoundError(message="Event not found", code="event.not_found")
    return event


# =============================================================================
# ROUTES
# =============================================================================


@router.get("")
async def list_events(
    integration_id: str | None = None,
    service: str | None = None,
    domain: str | None = None,
    action: str | None = None,
    from_date: datetime | None = None,
    to_date: datetime | None = None,
    page: int = Query(1, ge=1),
    per_page: int = Query(DEFAULT_PER_PAGE, ge=1, le=MAX_PER_PAGE),
    runtime: JobRuntime = Depends(get_runtime),
):
    filters = EventFilters(
        integration_id=integration_id,
        service=service,
        domain=domain,
        action=action,
        from_date=from_date,
        to_date=to_date,
    )
    events, total = await runtime.store.list_events(filters, page=page, per_page=per_page)
    return {
        "data": [await _present(runtime.store, event) for event in events],
        "current_page": page,
        "per_page": per_page,
        "total": total,
        "last_page": max(1, -(-total // per_page)),
    }


@router.get("/{event_id}")
async def get_event(event_id: str, runtime: JobRuntime = Depends(get_runtime)):
    event = await _require_event(runtime.store, event_id)
    return await _present(runtime.store, event)


@router.post("", status_code=201)
async def create_event(body: CreateEventRequest, runtime: JobRuntime = Depends(get_runtime)):
    """Actor, target, event and blocks are written in one transaction."""
    integration = await runtime.integrations.require(body.event.integration_id)
    fields = body.event
    event = EventData(
        source_id=fields.source_id,
        time=fields.time,
        service=fields.service,
        domain=fields.domain,
        action=fields.action,
        value=fields.value,
        value_multiplier=fields.value_multiplier,
        value_unit=fields.value_unit,
        metadata=fields.event_metadata,
        actor=body.actor,
        target=body.target,
        blocks=body.blocks,
    )
    async with runtime.store.transaction() as store:
        result = await write_event(
            store,
            user_id=integration.user_id,
            integration_id=integration.id,
            event=event,
            now=runtime.clock(),
        )
        presented = await _present(store, result.event)

    logger.info("Event created via API", event_id=result.event.id, change=result.change)
    return presented


@router.put("/{event_id}")
async def update_event(event_id: str, body: UpdateEventRequest, runtime: JobRuntime = Depends(get_runtime)):
    await _require_event(runtime.store, event_id)
    updated = await runtime.store.update_event(event_id, body.model_dump(exclude_unset=True))
    if updated is None:
        raise NotFoundError(message="Event not found", code="event.not_found")
    return await _present(runtime.store, updated)


@router.delete("/{event_id}")
async def delete_event(event_id: str, runtime: JobRuntime = Depends(get_runtime)):
    """Soft delete; the event's blocks go with it, actor and target stay."""
    if not await runtime.store.soft_delete_event(event_id):
        raise NotFoundError(message="Event not found", code="event.not_found")
    return {"message": "Event deleted successfully"}
