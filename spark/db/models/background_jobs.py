"""Durable background jobs queue models."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, Index, Integer, Text, text

from spark.db.models.integrations import Base
from spark.kernel.ids import new_id


class BackgroundJob(Base):
    __tablename__ = "background_job"

    id = Column(Text, primary_key=True, default=new_id)
    integration_id = Column(Text, nullable=True, index=True)

    job_type = Column(Text, nullable=False, index=True)
    status = Column(Text, nullable=False, index=True)  # queued, running, succeeded, failed, cancelled
    priority = Column(Integer, nullable=False, default=0)
    run_at = Column(DateTime(timezone=True), nullable=False)
    resource_key = Column(Text, nullable=True, index=True)

    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    timeout_seconds = Column(Integer, nullable=False, default=120)

    lease_until = Column(DateTime(timezone=True), nullable=True, index=True)
    locked_by = Column(Text, nullable=True)

    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    unique_key = Column(Text, nullable=True)
    batch_id = Column(Text, nullable=True, index=True)
    payload = Column(JSON, nullable=False, default=dict)
    # Follow-up specs enqueued in order once this job succeeds
    chain = Column(JSON, nullable=False, default=list)
    result = Column(JSON, nullable=True)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)

    __table_args__ = (
        # Logically identical work may only be pending once at a time.
        Index(
            "background_job_active_unique_key",
            "unique_key",
            unique=True,
            postgresql_where=text("status IN ('queued', 'running')"),
        ),
    )
