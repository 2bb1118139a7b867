"""
Integration repository.

Persistence port for integrations and their credential groups. The
scheduling and lifecycle transitions (triggered, successful, failed) are
expressed once here in terms of two primitives, `update_integration` and
`update_group`, so every backend applies them identically.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

import structlog

from spark.integrations.models import Integration, IntegrationGroup
from spark.kernel.errors import NotFoundError
from spark.kernel.ids import new_id
from spark.kernel.time import utc_now

logger = structlog.get_logger()


class IntegrationRepository(ABC):
    """Abstract storage for integrations and integration groups."""

    @abstractmethod
    async def get(self, integration_id: str) -> Integration | None:
        pass

    @abstractmethod
    async def get_group(self, group_id: str) -> IntegrationGroup | None:
        pass

    @abstractmethod
    async def list_active(self, services: list[str] | None = None) -> list[Integration]:
        """Active, non-deleted integrations, optionally limited to `services`."""
        pass

    @abstractmethod
    async def list_for_group(self, group_id: str) -> list[Integration]:
        pass

    @abstractmethod
    async def find_by_service_and_secret(self, service: str, secret: str) -> list[Integration]:
        pass

    @abstractmethod
    async def add_group(self, group: IntegrationGroup) -> IntegrationGroup:
        pass

    @abstractmethod
    async def add_integration(self, integration: Integration) -> Integration:
        pass

    @abstractmethod
    async def update_integration(self, integration_id: str, **fields: Any) -> Integration:
        pass

    @abstractmethod
    async def update_group(self, group_id: str, **fields: Any) -> IntegrationGroup:
        pass

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_group(
        self,
        *,
        user_id: str,
        service: str,
        account_id: str | None = None,
        access_token: str | None = None,
    ) -> IntegrationGroup:
        now = utc_now()
        return await self.add_group(
            IntegrationGroup(
                id=new_id(),
                user_id=user_id,
                service=service,
                account_id=account_id,
                access_token=access_token,
                created_at=now,
                updated_at=now,
            )
        )

    async def create_integration(
        self,
        *,
        group: IntegrationGroup,
        name: str | None,
        instance_type: str | None,
        configuration: dict[str, Any] | None = None,
        account_id: str | None = None,
    ) -> Integration:
        now = utc_now()
        return await self.add_integration(
            Integration(
                id=new_id(),
                user_id=group.user_id,
                service=group.service,
                integration_group_id=group.id,
                name=name,
                instance_type=instance_type,
                configuration=dict(configuration or {}),
                account_id=account_id,
                created_at=now,
                updated_at=now,
            )
        )

    async def require(self, integration_id: str) -> Integration:
        integration = await self.get(integration_id)
        if integration is None or integration.deleted_at is not None:
            raise NotFoundError(message="Integration not found", code="integration.not_found")
        return integration

    async def require_group(self, group_id: str) -> IntegrationGroup:
        group = await self.get_group(group_id)
        if group is None or group.deleted_at is not None:
            raise NotFoundError(message="Integration group not found", code="integration.group_not_found")
        return group

    # ------------------------------------------------------------------
    # Lifecycle transitions
    # ------------------------------------------------------------------

    async def mark_triggered(self, integration_id: str, now: datetime) -> Integration:
        return await self.update_integration(integration_id, last_triggered_at=now)

    async def mark_successful(self, integration_id: str, now: datetime) -> Integration:
        return await self.update_integration(
            integration_id,
            last_successful_update_at=now,
            last_triggered_at=now,
        )

    async def mark_failed(self, integration_id: str) -> Integration:
        # Clearing the trigger lets an operator retry immediately.
        logger.warning("Integration marked failed", integration_id=integration_id)
        return await self.update_integration(integration_id, status="failed", last_triggered_at=None)

    async def reset_failed(self, integration_id: str) -> Integration:
        return await self.update_integration(
            integration_id,
            status="active",
            last_triggered_at=None,
            migration_batch_id=None,
        )

    async def set_migration_batch(self, integration_id: str, batch_id: str | None) -> Integration:
        return await self.update_integration(integration_id, migration_batch_id=batch_id)

    # ------------------------------------------------------------------
    # Group credentials
    # ------------------------------------------------------------------

    async def save_group_tokens(
        self,
        group_id: str,
        *,
        access_token: str,
        refresh_token: str | None,
        expiry: datetime | None,
        refresh_expiry: datetime | None = None,
    ) -> IntegrationGroup:
        fields: dict[str, Any] = {"access_token": access_token, "expiry": expiry}
        # Keep the stored refresh token unless the provider rotated it.
        if refresh_token:
            fields["refresh_token"] = refresh_token
        if refresh_expiry is not None:
            fields["refresh_expiry"] = refresh_expiry
        return await self.update_group(group_id, **fields)

    async def set_group_account(self, group_id: str, account_id: str) -> IntegrationGroup:
        return await self.update_group(group_id, account_id=account_id)

    async def set_primary_instance(self, group_id: str, integration_id: str) -> IntegrationGroup:
        return await self.update_group(group_id, primary_integration_id=integration_id)


class InMemoryIntegrationRepository(IntegrationRepository):
    """Dict-backed repository for local runs and tests."""

    def __init__(self) -> None:
        self.integrations: dict[str, Integration] = {}
        self.groups: dict[str, IntegrationGroup] = {}

    async def get(self, integration_id: str) -> Integration | None:
        return self.integrations.get(integration_id)

    async def get_group(self, group_id: str) -> IntegrationGroup | None:
        return self.groups.get(group_id)

    async def list_active(self, services: list[str] | None = None) -> list[Integration]:
        return [
            integration
            for integration in self.integrations.values()
            if integration.deleted_at is None
            and integration.status == "active"
            and (services is None or integration.service in services)
        ]

    async def list_for_group(self, group_id: str) -> list[Integration]:
        return [
            integration
            for integration in self.integrations.values()
            if integration.integration_group_id == group_id and integration.deleted_at is None
        ]

    async def find_by_service_and_secret(self, service: str, secret: str) -> list[Integration]:
        return [
            integration
            for integration in self.integrations.values()
            if integration.service == service
            and integration.account_id == secret
            and integration.deleted_at is None
        ]

    async def add_group(self, group: IntegrationGroup) -> IntegrationGroup:
        self.groups[group.id] = group
        return group

    async def add_integration(self, integration: Integration) -> Integration:
        self.integrations[integration.id] = integration
        return integration

    async def update_integration(self, integration_id: str, **fields: Any) -> Integration:
        current = self.integrations.get(integration_id)
        if current is None:
            raise NotFoundError(message="Integration not found", code="integration.not_found")
        updated = current.model_copy(update={**fields, "updated_at": utc_now()})
        self.integrations[integration_id] = updated
        return updated

    async def update_group(self, group_id: str, **fields: Any) -> IntegrationGroup:
        current = self.groups.get(group_id)
        if current is None:
            raise NotFoundError(message="Integration group not found", code="integration.group_not_found")
        updated = current.model_copy(update={**fields, "updated_at": utc_now()})
        self.groups[group_id] = updated
        return updated
