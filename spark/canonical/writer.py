"""
Canonical write helper.

Maps converted provider records onto the store: actor and target objects are
upserted by identity, the event by (integration_id, source_id), and its
blocks are replaced. Re-processing the same provider item never creates a
second event row.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable

import structlog
from pydantic import ValidationError as PydanticValidationError

from spark.canonical.records import ConvertedData, EventData, EventWrite, StoredEvent
from spark.canonical.store import CanonicalStore
from spark.kernel.errors import MalformedPayload
from spark.kernel.sanitize import sanitize_data
from spark.kernel.time import isoformat_z, utc_now

logger = structlog.get_logger()

# Errors that mean "this one item has an unexpected shape".
ITEM_ERRORS = (MalformedPayload, PydanticValidationError, KeyError, TypeError)


@dataclass
class WriteResult:
    event: StoredEvent
    change: str  # created | value_changed | status_changed | updated


@dataclass
class IngestReport:
    written: int = 0
    created: int = 0
    skipped: int = 0
    objects: int = 0
    errors: list[str] = field(default_factory=list)

    def merge(self, other: "IngestReport") -> None:
        self.written += other.written
        self.created += other.created
        self.skipped += other.skipped
        self.objects += other.objects
        self.errors.extend(other.errors)

    def as_dict(self) -> dict[str, Any]:
        return {
            "written": self.written,
            "created": self.created,
            "skipped": self.skipped,
            "objects": self.objects,
        }


def merge_event_metadata(
    existing: StoredEvent | None,
    *,
    value: int | None,
    metadata: dict[str, Any],
    now: datetime,
) -> tuple[dict[str, Any], str]:
    """Return the metadata to persist and the kind of change detected."""
    if existing is None:
        return dict(metadata), "created"

    merged = {**(existing.event_metadata or {}), **metadata}
    if value is not None and existing.value != value:
        merged.update(
            {
                "value_updated": True,
                "previous_value": existing.value,
                "updated_at": isoformat_z(now),
            }
        )
        return merged, "value_changed"

    new_status = metadata.get("status")
    old_status = (existing.event_metadata or {}).get("status")
    if "status" in metadata and new_status != old_status:
        merged.update(
            {
                "status": new_status,
                "status_updated": True,
                "previous_status": old_status,
                "updated_at": isoformat_z(now),
            }
        )
        return merged, "status_changed"

    return merged, "updated"


async def write_event(
    store: CanonicalStore,
    *,
    user_id: str,
    integration_id: str,
    event: EventData,
    now: datetime | None = None,
    sync_blocks: bool = True,
) -> WriteResult:
    """Upsert actor, target, event and blocks for one converted event."""
    actor = await store.upsert_object(user_id, event.actor)
    target = await store.upsert_object(user_id, event.target)
    value, multiplier = event.encoded_value()

    existing = await store.find_event(integration_id, event.source_id)
    metadata, change = merge_event_metadata(
        existing,
        value=value,
        metadata=event.metadata,
        now=now or utc_now(),
    )
    stored = await store.upsert_event(
        EventWrite(
            source_id=event.source_id,
            time=event.time,
            integration_id=integration_id,
            actor_id=actor.id,
            target_id=target.id,
            service=event.service,
            domain=event.domain,
            action=event.action,
            value=value,
            value_multiplier=multiplier,
            value_unit=event.value_unit,
            event_metadata=metadata,
        )
    )
    if sync_blocks:
        await store.replace_blocks(stored.id, integration_id, event.blocks)

    if change != "created":
        logger.debug(
            "Existing event rewritten",
            event_id=stored.id,
            source_id=event.source_id,
            change=change,
        )
    return WriteResult(event=stored, change=change)


async def write_converted(
    store: CanonicalStore,
    *,
    user_id: str,
    integration_id: str,
    converted: ConvertedData,
    report: IngestReport | None = None,
) -> IngestReport:
    report = report or IngestReport()
    for obj in converted.objects:
        await store.upsert_object(user_id, obj)
        report.objects += 1
    for event in converted.events:
        result = await write_event(store, user_id=user_id, integration_id=integration_id, event=event)
        report.written += 1
        if result.change == "created":
            report.created += 1
    return report


async def ingest_items(
    store: CanonicalStore,
    *,
    user_id: str,
    integration_id: str,
    items: Iterable[Any],
    convert: Callable[[Any], ConvertedData],
) -> IngestReport:
    """
    Convert and write a page of raw provider items.

    A malformed item is logged and skipped; the rest of the page continues.
    """
    report = IngestReport()
    for item in items:
        try:
            converted = convert(item)
        except ITEM_ERRORS as exc:
            report.skipped += 1
            report.errors.append(str(exc))
            logger.warning(
                "Skipping malformed provider item",
                integration_id=integration_id,
                error=str(exc),
                item=sanitize_data(item) if isinstance(item, dict) else None,
            )
            continue
        await write_converted(
            store,
            user_id=user_id,
            integration_id=integration_id,
            converted=converted,
            report=report,
        )
    return report
