"""
Canonical record shapes.

`ObjectData` / `EventData` / `BlockData` are what provider plugins produce
from raw payloads; `Stored*` are rows as read back from the store.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field, field_validator

from spark.canonical.values import encode_value
from spark.kernel.time import coerce_utc


class _Valued(BaseModel):
    """Shared value fields.

    `value` is a real quantity unless `value_multiplier` is given, in which
    case it is already the encoded integer.
    """

    value: int | float | Decimal | None = None
    value_multiplier: int | None = None
    value_unit: str | None = None

    def encoded_value(self) -> tuple[int | None, int | None]:
        if self.value is None:
            return None, None
        if self.value_multiplier is not None:
            return int(self.value), int(self.value_multiplier)
        return encode_value(self.value)


class ObjectData(BaseModel):
    concept: str
    type: str
    title: str
    content: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    url: str | None = None
    media_url: str | None = None
    time: datetime | None = None

    @field_validator("concept", "type", "title")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value or not str(value).strip():
            raise ValueError("must not be blank")
        return str(value)


class BlockData(_Valued):
    title: str | None = None
    content: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    url: str | None = None
    media_url: str | None = None
    block_type: str | None = None
    time: datetime | None = None


class EventData(_Valued):
    source_id: str
    time: datetime
    service: str
    domain: str
    action: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    actor: ObjectData
    target: ObjectData
    blocks: list[BlockData] = Field(default_factory=list)

    @field_validator("source_id")
    @classmethod
    def _source_id_present(cls, value: str) -> str:
        if not value or not str(value).strip():
            raise ValueError("source_id is required")
        return str(value)

    @field_validator("time")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return coerce_utc(value)


class ConvertedData(BaseModel):
    """Result of mapping one provider-native record."""

    events: list[EventData] = Field(default_factory=list)
    objects: list[ObjectData] = Field(default_factory=list)


class StoredObject(BaseModel):
    id: str
    user_id: str
    concept: str
    type: str
    title: str
    content: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    url: str | None = None
    media_url: str | None = None
    time: datetime | None = None


class StoredBlock(BaseModel):
    id: str
    event_id: str
    integration_id: str
    block_type: str | None = None
    time: datetime | None = None
    title: str | None = None
    content: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    url: str | None = None
    media_url: str | None = None
    value: int | None = None
    value_multiplier: int | None = None
    value_unit: str | None = None
    deleted_at: datetime | None = None


class StoredEvent(BaseModel):
    id: str
    source_id: str
    time: datetime
    integration_id: str
    actor_id: str
    target_id: str
    service: str
    domain: str
    action: str
    value: int | None = None
    value_multiplier: int | None = None
    value_unit: str | None = None
    event_metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None
    deleted_at: datetime | None = None


class EventWrite(BaseModel):
    """Fully resolved event row handed to the store's upsert."""

    source_id: str
    time: datetime
    integration_id: str
    actor_id: str
    target_id: str
    service: str
    domain: str
    action: str
    value: int | None = None
    value_multiplier: int | None = None
    value_unit: str | None = None
    event_metadata: dict[str, Any] = Field(default_factory=dict)


class EventFilters(BaseModel):
    integration_id: str | None = None
    service: str | None = None
    domain: str | None = None
    action: str | None = None
    from_date: datetime | None = None
    to_date: datetime | None = None
    integration_ids: list[str] | None = None
