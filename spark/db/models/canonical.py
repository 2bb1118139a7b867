"""
Canonical Event Log Models

Objects (entities), Events (actor --action--> target facts) and Blocks
(sub-facts owned by an event). Numeric quantities are stored as
(value, value_multiplier, value_unit) integer triples.
"""

from datetime import datetime

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB

from spark.db.models.integrations import Base
from spark.kernel.ids import new_id


class ObjectRow(Base):
    __tablename__ = "objects"

    id = Column(Text, primary_key=True, default=new_id)
    user_id = Column(Text, nullable=False, index=True)
    time = Column(DateTime(timezone=True), nullable=True)

    concept = Column(Text, nullable=False)
    type = Column(Text, nullable=False)
    title = Column(Text, nullable=False)
    content = Column(Text, nullable=True)
    metadata_ = Column("metadata", JSONB, nullable=False, default=dict)
    url = Column(Text, nullable=True)
    media_url = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("user_id", "concept", "type", "title", name="objects_identity_unique"),
    )


class EventRow(Base):
    __tablename__ = "events"

    id = Column(Text, primary_key=True, default=new_id)
    source_id = Column(Text, nullable=False)
    time = Column(DateTime(timezone=True), nullable=False)
    integration_id = Column(Text, ForeignKey("integrations.id"), nullable=False)

    actor_id = Column(Text, ForeignKey("objects.id"), nullable=False)
    target_id = Column(Text, ForeignKey("objects.id"), nullable=False)
    service = Column(Text, nullable=False)
    domain = Column(Text, nullable=False)
    action = Column(Text, nullable=False)

    value = Column(BigInteger, nullable=True)
    value_multiplier = Column(Integer, nullable=True)
    value_unit = Column(Text, nullable=True)
    event_metadata = Column(JSONB, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("integration_id", "source_id", name="events_integration_source_unique"),
        Index("events_integration_time_idx", "integration_id", "time"),
        Index("events_service_action_idx", "service", "action"),
    )


class BlockRow(Base):
    __tablename__ = "blocks"

    id = Column(Text, primary_key=True, default=new_id)
    event_id = Column(Text, ForeignKey("events.id", ondelete="CASCADE"), nullable=False, index=True)
    integration_id = Column(Text, ForeignKey("integrations.id"), nullable=False)
    block_type = Column(Text, nullable=True)
    time = Column(DateTime(timezone=True), nullable=True)

    title = Column(Text, nullable=True)
    content = Column(Text, nullable=True)
    metadata_ = Column("metadata", JSONB, nullable=False, default=dict)
    url = Column(Text, nullable=True)
    media_url = Column(Text, nullable=True)

    value = Column(BigInteger, nullable=True)
    value_multiplier = Column(Integer, nullable=True)
    value_unit = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)
    deleted_at = Column(DateTime(timezone=True), nullable=True)
