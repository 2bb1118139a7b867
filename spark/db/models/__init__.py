"""Database models."""

from spark.db.models.integrations import (
    Base,
    IntegrationGroupRow,
    IntegrationRow,
)
from spark.db.models.canonical import (
    BlockRow,
    EventRow,
    ObjectRow,
)
from spark.db.models.background_jobs import (
    BackgroundJob,
)

__all__ = [
    "Base",
    "IntegrationGroupRow",
    "IntegrationRow",
    "ObjectRow",
    "EventRow",
    "BlockRow",
    "BackgroundJob",
]
