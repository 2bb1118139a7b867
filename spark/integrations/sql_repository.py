"""PostgreSQL integration repository (SQLAlchemy 2.0 async)."""

from __future__ import annotations

from typing import Any

from sqlalchemy import select, update

from spark.db.client import get_db_session
from spark.db.models.integrations import IntegrationGroupRow, IntegrationRow
from spark.integrations.models import Integration, IntegrationGroup
from spark.integrations.repository import IntegrationRepository
from spark.kernel.errors import NotFoundError
from spark.kernel.time import utc_now

_INTEGRATION_FIELDS = tuple(Integration.model_fields)
_GROUP_FIELDS = tuple(IntegrationGroup.model_fields)


def _integration(row: IntegrationRow) -> Integration:
    return Integration.model_validate({name: getattr(row, name) for name in _INTEGRATION_FIELDS})


def _group(row: IntegrationGroupRow) -> IntegrationGroup:
    return IntegrationGroup.model_validate({name: getattr(row, name) for name in _GROUP_FIELDS})


class SqlIntegrationRepository(IntegrationRepository):
    async def get(self, integration_id: str) -> Integration | None:
        async with get_db_session() as session:
            row = await session.get(IntegrationRow, integration_id)
            return _integration(row) if row else None

    async def get_group(self, group_id: str) -> IntegrationGroup | None:
        async with get_db_session() as session:
            row = await session.get(IntegrationGroupRow, group_id)
            return _group(row) if row else None

    async def list_active(self, services: list[str] | None = None) -> list[Integration]:
        query = select(IntegrationRow).where(
            IntegrationRow.deleted_at.is_(None),
            IntegrationRow.status == "active",
        )
        if services is not None:
            query = query.where(IntegrationRow.service.in_(services))
        async with get_db_session() as session:
            result = await session.execute(query)
            return [_integration(row) for row in result.scalars()]

    async def list_for_group(self, group_id: str) -> list[Integration]:
        async with get_db_session() as session:
            result = await session.execute(
                select(IntegrationRow).where(
                    IntegrationRow.integration_group_id == group_id,
                    IntegrationRow.deleted_at.is_(None),
                )
            )
            return [_integration(row) for row in result.scalars()]

    async def find_by_service_and_secret(self, service: str, secret: str) -> list[Integration]:
        async with get_db_session() as session:
            result = await session.execute(
                select(IntegrationRow).where(
                    IntegrationRow.service == service,
                    IntegrationRow.account_id == secret,
                    IntegrationRow.deleted_at.is_(None),
                )
            )
            return [_integration(row) for row in result.scalars()]

    async def add_group(self, group: IntegrationGroup) -> IntegrationGroup:
        async with get_db_session() as session:
            session.add(IntegrationGroupRow(**group.model_dump()))
        return group

    async def add_integration(self, integration: Integration) -> Integration:
        async with get_db_session() as session:
            session.add(IntegrationRow(**integration.model_dump()))
        return integration

    async def update_integration(self, integration_id: str, **fields: Any) -> Integration:
        async with get_db_session() as session:
            result = await session.execute(
                update(IntegrationRow)
                .where(IntegrationRow.id == integration_id)
                .values(**fields, updated_at=utc_now())
                .returning(IntegrationRow)
            )
            row = result.scalar_one_or_none()
            if row is None:
                raise NotFoundError(message="Integration not found", code="integration.not_found")
            return _integration(row)

    async def update_group(self, group_id: str, **fields: Any) -> IntegrationGroup:
        async with get_db_session() as session:
            result = await session.execute(
                update(IntegrationGroupRow)
                .where(IntegrationGroupRow.id == group_id)
                .values(**fields, updated_at=utc_now())
                .returning(IntegrationGroupRow)
            )
            row = result.scalar_one_or_none()
            if row is None:
                raise NotFoundError(message="Integration group not found", code="integration.group_not_found")
            return _group(row)
