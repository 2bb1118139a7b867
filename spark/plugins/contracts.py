"""
Provider plugin contract.

One plugin per external service. A plugin declares its capabilities
(OAuth, Webhook, ApiKey, Manual) and implements exactly one ingestion path:
pull (`fetch_data` + `convert_data`) or push (`verify_webhook_signature` +
`split_webhook`). Manual plugins only shape user-entered data.

Plugins never schedule work themselves; jobs call into them with a
`PluginContext` carrying the collaborators they may touch.
"""

from __future__ import annotations

from abc import ABC
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, ClassVar, Mapping, Protocol

import httpx
import structlog

from spark.canonical.records import ConvertedData
from spark.canonical.writer import IngestReport, ingest_items
from spark.integrations.config_schema import (
    ConfigField,
    schema_defaults,
    validate_configuration,
    with_scheduling,
)
from spark.integrations.models import Integration, IntegrationGroup
from spark.kernel.ids import random_secret
from spark.kernel.time import Clock
from spark.migrations.cursors import MigrationContext, Page
from spark.plugins.http import ProviderClient
from spark.ratelimit.backoff import DEFAULT_POLICY, RateLimitPolicy

if TYPE_CHECKING:
    from spark.cache.base import Cache
    from spark.canonical.store import CanonicalStore
    from spark.config import Settings
    from spark.credentials.manager import CredentialManager
    from spark.credentials.oauth import OAuthProviderConfig
    from spark.integrations.repository import IntegrationRepository

logger = structlog.get_logger()


class Capability(str, Enum):
    OAUTH = "oauth"
    WEBHOOK = "webhook"
    API_KEY = "api_key"
    MANUAL = "manual"


class PluginContext(Protocol):
    settings: "Settings"
    store: "CanonicalStore"
    integrations: "IntegrationRepository"
    credentials: "CredentialManager"
    cache: "Cache"
    clock: Clock
    http: httpx.AsyncClient | None


@dataclass(frozen=True)
class WebhookChunk:
    """One unit of webhook work, processed by its own Process job."""

    data_type: str
    items: list[dict[str, Any]] = field(default_factory=list)


class ProviderPlugin(ABC):
    identifier: ClassVar[str]
    display_name: ClassVar[str]
    description: ClassVar[str] = ""
    domain: ClassVar[str] = "online"
    capabilities: ClassVar[frozenset[Capability]] = frozenset()

    # instance type -> label
    instance_types: ClassVar[dict[str, str]] = {}
    # The instance every other instance of a group hangs off, if any
    primary_instance_type: ClassVar[str | None] = None

    base_url: ClassVar[str] = ""
    api_key_setting: ClassVar[str | None] = None
    rate_limit_policy: ClassVar[RateLimitPolicy] = DEFAULT_POLICY

    # Raw items per Process job
    chunk_size: ClassVar[int] = 50

    # "chain" (fetch -> process -> fetch) or "batch" (fetch all, then process)
    migration_mode: ClassVar[str | None] = None

    signature_header: ClassVar[str | None] = None

    # ------------------------------------------------------------------
    # Capabilities
    # ------------------------------------------------------------------

    def has(self, capability: Capability) -> bool:
        return capability in self.capabilities

    @property
    def is_oauth(self) -> bool:
        return self.has(Capability.OAUTH)

    @property
    def is_webhook(self) -> bool:
        return self.has(Capability.WEBHOOK)

    @property
    def is_manual(self) -> bool:
        return self.has(Capability.MANUAL)

    @property
    def is_pull(self) -> bool:
        return not self.is_webhook and not self.is_manual

    @property
    def supports_signatures(self) -> bool:
        return self.signature_header is not None

    def configuration_schema(self) -> dict[str, ConfigField]:
        if self.is_pull:
            return with_scheduling({})
        return {}

    def requires_configuration(self) -> bool:
        """True when schema defaults alone cannot produce a valid instance."""
        return any(spec.required and spec.default is None for spec in self.configuration_schema().values())

    def describe(self) -> dict[str, Any]:
        return {
            "identifier": self.identifier,
            "display_name": self.display_name,
            "description": self.description,
            "domain": self.domain,
            "capabilities": sorted(c.value for c in self.capabilities),
            "instance_types": dict(self.instance_types),
            "configuration_schema": {
                name: spec.model_dump(exclude_none=True) for name, spec in self.configuration_schema().items()
            },
            "supports_migration": self.migration_mode is not None,
        }

    # ------------------------------------------------------------------
    # Groups and instances
    # ------------------------------------------------------------------

    async def initialize_group(self, integrations: "IntegrationRepository", *, user_id: str) -> IntegrationGroup:
        # Push providers authenticate deliveries with a per-group secret.
        account_id = random_secret(32) if self.is_webhook else None
        group = await integrations.create_group(user_id=user_id, service=self.identifier, account_id=account_id)
        logger.info("Integration group initialized", service=self.identifier, group_id=group.id)
        return group

    async def create_instance(
        self,
        integrations: "IntegrationRepository",
        group: IntegrationGroup,
        instance_type: str | None = None,
        configuration: Mapping[str, Any] | None = None,
    ) -> Integration:
        instance_type = instance_type or next(iter(self.instance_types), None)
        schema = self.configuration_schema()
        values = {**schema_defaults(schema), **dict(configuration or {})}
        integration = await integrations.create_integration(
            group=group,
            name=self.instance_types.get(instance_type or "", self.display_name),
            instance_type=instance_type,
            configuration=validate_configuration(schema, values),
            account_id=group.account_id if self.is_webhook else None,
        )
        if (
            self.primary_instance_type is not None
            and instance_type == self.primary_instance_type
            and group.primary_integration_id is None
        ):
            await integrations.set_primary_instance(group.id, integration.id)
        logger.info(
            "Integration instance created",
            service=self.identifier,
            group_id=group.id,
            integration_id=integration.id,
            instance_type=instance_type,
        )
        return integration

    async def ensure_primary_instance(
        self, integrations: "IntegrationRepository", group: IntegrationGroup
    ) -> Integration | None:
        """The group's primary instance, created on first use."""
        if self.primary_instance_type is None:
            return None
        if group.primary_integration_id:
            existing = await integrations.get(group.primary_integration_id)
            if existing is not None and existing.deleted_at is None:
                return existing
        return await self.create_instance(integrations, group, self.primary_instance_type)

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    def oauth_config(self, settings: "Settings") -> "OAuthProviderConfig":
        raise NotImplementedError(f"{self.identifier} does not use OAuth")

    async def fetch_account_identity(self, http: httpx.AsyncClient, access_token: str) -> str | None:
        return None

    def api_key_headers(self, api_key: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {api_key}"}

    def client(self, ctx: PluginContext, integration: Integration) -> ProviderClient:
        return ProviderClient(
            self,
            integration,
            credentials=ctx.credentials,
            http=ctx.http,
            clock=ctx.clock,
        )

    # ------------------------------------------------------------------
    # Pull
    # ------------------------------------------------------------------

    def fetch_types(self, integration: Integration) -> list[str]:
        return [integration.instance_type or "default"]

    async def fetch_data(self, ctx: PluginContext, integration: Integration, fetch_type: str) -> list[dict[str, Any]]:
        raise NotImplementedError(f"{self.identifier} does not pull data")

    def convert_data(self, item: dict[str, Any], integration: Integration, data_type: str) -> ConvertedData:
        raise NotImplementedError(f"{self.identifier} does not convert pulled data")

    def chunk(self, items: list[dict[str, Any]]) -> list[list[dict[str, Any]]]:
        size = max(1, self.chunk_size)
        return [items[i : i + size] for i in range(0, len(items), size)]

    async def process_items(
        self, ctx: PluginContext, integration: Integration, data_type: str, items: list[dict[str, Any]]
    ) -> IngestReport:
        return await ingest_items(
            ctx.store,
            user_id=integration.user_id,
            integration_id=integration.id,
            items=items,
            convert=lambda item: self.convert_data(item, integration, data_type),
        )

    # ------------------------------------------------------------------
    # Push
    # ------------------------------------------------------------------

    def verify_webhook_signature(self, integration: Integration, body: bytes, headers: Mapping[str, str]) -> bool:
        """Unsigned deliveries are accepted only when the provider does not sign."""
        return not self.supports_signatures

    def split_webhook(
        self, integration: Integration, payload: Any, headers: Mapping[str, str]
    ) -> list[WebhookChunk]:
        raise NotImplementedError(f"{self.identifier} does not accept webhooks")

    # ------------------------------------------------------------------
    # One-shot setup
    # ------------------------------------------------------------------

    async def initialize(self, ctx: PluginContext, integration: Integration) -> None:
        """One-time setup for a fresh instance (e.g. first account discovery)."""

    # ------------------------------------------------------------------
    # Backfill
    # ------------------------------------------------------------------

    def migration_contexts(
        self, integration: Integration, *, now: datetime, timebox_until: datetime | None
    ) -> list[MigrationContext]:
        return []

    async def fetch_page(self, ctx: PluginContext, integration: Integration, context: MigrationContext) -> Page:
        raise NotImplementedError(f"{self.identifier} does not support backfill")

    def processing_work(self, recorded: list[dict[str, Any]]) -> list[tuple[str, list[dict[str, Any]]]]:
        """Batch mode: one (instance_type, items) unit of processing per recorded marker."""
        return [(entry.get("instance_type") or "default", [dict(entry.get("marker") or {})]) for entry in recorded]

    async def process_migration_items(
        self,
        ctx: PluginContext,
        integration: Integration,
        context: MigrationContext,
        items: list[dict[str, Any]],
    ) -> IngestReport:
        return await self.process_items(ctx, integration, context.instance_type, items)
