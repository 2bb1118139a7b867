"""
Integration Database Models

SQLAlchemy models for configured provider connections and the shared
credential groups they run under.
"""

from datetime import datetime

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Index,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.declarative import declarative_base

from spark.kernel.ids import new_id

Base = declarative_base()


class IntegrationGroupRow(Base):
    """
    Shared credential container for every instance of one provider+user.

    Refreshing the token here refreshes it for all instances at once.
    """

    __tablename__ = "integration_groups"

    id = Column(Text, primary_key=True, default=new_id)
    user_id = Column(Text, nullable=False, index=True)
    service = Column(Text, nullable=False, index=True)

    account_id = Column(Text, nullable=True, index=True)
    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    expiry = Column(DateTime(timezone=True), nullable=True)
    refresh_expiry = Column(DateTime(timezone=True), nullable=True)
    auth_metadata = Column(JSONB, nullable=False, default=dict)

    # Explicit "master" instance for providers with several instance types
    primary_integration_id = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index(
            "integration_groups_user_service_account_unique",
            "user_id",
            "service",
            "account_id",
            unique=True,
            postgresql_where=text("account_id IS NOT NULL"),
        ),
    )

    def __repr__(self) -> str:
        return f"<IntegrationGroup {self.service}:{self.id}>"


class IntegrationRow(Base):
    """One configured instance of a provider for a user."""

    __tablename__ = "integrations"

    id = Column(Text, primary_key=True, default=new_id)
    user_id = Column(Text, nullable=False, index=True)
    integration_group_id = Column(
        Text,
        ForeignKey("integration_groups.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )

    service = Column(Text, nullable=False, index=True)
    name = Column(Text, nullable=True)
    account_id = Column(Text, nullable=True, index=True)  # doubles as webhook secret
    instance_type = Column(Text, nullable=True)
    configuration = Column(JSONB, nullable=False, default=dict)
    status = Column(Text, nullable=False, default="active", index=True)  # active | failed

    # Legacy credentials, superseded by the group
    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    expiry = Column(DateTime(timezone=True), nullable=True)

    # Scheduling state
    last_triggered_at = Column(DateTime(timezone=True), nullable=True)
    last_successful_update_at = Column(DateTime(timezone=True), nullable=True)
    migration_batch_id = Column(Text, nullable=True, index=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<Integration {self.service}:{self.instance_type} ({self.status})>"
