"""
Monzo current accounts, pots, balances and transactions.

One OAuth group holds several instances. The `accounts` instance is the
group's primary: it owns the shared account objects and never emits events.
Backfill runs batch-then-process: the fetch phase only probes transaction
windows and records snapshot markers, the processing phase replays them.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Any

import httpx
import structlog

from spark.canonical.records import BlockData, ConvertedData, EventData, ObjectData
from spark.canonical.writer import IngestReport
from spark.credentials.oauth import OAuthProviderConfig
from spark.integrations.config_schema import ConfigField, with_scheduling
from spark.integrations.models import Integration
from spark.kernel.errors import MalformedPayload
from spark.kernel.time import isoformat_z
from spark.migrations.cursors import (
    MigrationContext,
    Page,
    probe_window_bounds,
    probe_window_context,
    snapshot_context,
)
from spark.plugins.contracts import Capability, PluginContext, ProviderPlugin
from spark.plugins.http import ProviderClient

logger = structlog.get_logger()

MONZO_API_URL = "https://api.monzo.com"
RECENT_DAYS = 7
PAGE_LIMIT = 100

ACCOUNT_TITLES = {
    "uk_retail": "Current Account",
    "uk_retail_joint": "Joint Account",
    "uk_monzo_flex": "Monzo Flex",
}

ACCOUNT_KINDS = {
    "uk_retail": "current_account",
    "uk_retail_joint": "current_account",
    "uk_monzo_flex": "credit_card",
}

# scheme -> (debit action, credit action)
SCHEME_ACTIONS = {
    "uk_retail_pot": ("pot_transfer_to", "pot_withdrawal_from"),
    "account_interest": ("interest_repaid", "interest_earned"),
    "monzo_flex": ("monzo_flex_payment", "monzo_flex_loan"),
    "bacs": ("direct_debit_to", "direct_credit_from"),
    "p2p_payment": ("monzo_me_to", "monzo_me_from"),
    "payport_faster_payments": ("bank_transfer_to", "bank_transfer_from"),
    "monzo_paid": ("fee_paid_for", "fee_refunded_for"),
}


def derive_action(tx: dict[str, Any], *, salary_name: str | None = None) -> str:
    amount = int(tx.get("amount") or 0)
    scheme = tx.get("scheme")
    merchant = tx.get("merchant") if isinstance(tx.get("merchant"), dict) else {}

    if scheme == "bacs" and amount > 150000 and salary_name and merchant.get("name") == salary_name:
        return "salary_received_from"
    if scheme == "mastercard":
        if tx.get("declined") or tx.get("decline_reason"):
            return "declined_payment_to"
        return "card_payment_to" if amount < 0 else "card_refund_from"
    debit, credit = SCHEME_ACTIONS.get(scheme or "", ("other_debit_to", "other_credit_from"))
    return debit if amount < 0 else credit


def account_object(account: dict[str, Any]) -> ObjectData:
    account_type = account.get("type")
    title = ACCOUNT_TITLES.get(account_type or "", "Monzo Account")
    return ObjectData(
        concept="account",
        type="monzo_account",
        title=title,
        metadata={
            "name": title,
            "provider": "Monzo",
            "account_type": ACCOUNT_KINDS.get(account_type or "", "other"),
            "account_id": account.get("id"),
            "currency": account.get("currency") or "GBP",
        },
    )


def pot_object(pot: dict[str, Any]) -> ObjectData:
    deleted = bool(pot.get("deleted"))
    return ObjectData(
        concept="account",
        type="monzo_archived_pot" if deleted else "monzo_pot",
        title=pot.get("name") or "Pot",
        content=str(pot.get("balance") or 0),
        metadata={
            "name": pot.get("name") or "Pot",
            "provider": "Monzo",
            "account_type": "savings_account",
            "pot_id": pot.get("id"),
            "deleted": deleted,
            "currency": pot.get("currency") or "GBP",
        },
    )


def day_object(day: str) -> ObjectData:
    return ObjectData(concept="day", type="day", title=day, metadata={"date": day})


def transaction_blocks(tx: dict[str, Any]) -> list[BlockData]:
    blocks = []
    amount = int(tx.get("amount") or 0)
    scheme = tx.get("scheme")
    currency = tx.get("currency") or "GBP"

    merchant = tx.get("merchant")
    if isinstance(merchant, dict) and merchant:
        address = merchant.get("address") or {}
        address_line = ", ".join(
            str(part) for part in (address.get("address"), address.get("city"), address.get("postcode"), address.get("country")) if part
        )
        parts = [str(part) for part in (merchant.get("name"), merchant.get("category"), address_line) if part]
        blocks.append(
            BlockData(block_type="merchant", title="Merchant", content=" • ".join(parts), media_url=merchant.get("logo"))
        )

    local_amount = tx.get("local_amount")
    local_currency = tx.get("local_currency")
    if local_amount is not None and local_currency and str(local_currency).upper() != str(currency).upper():
        converted = abs(amount) / 100
        local = abs(int(local_amount)) / 100
        content = f"Local: {local} {str(local_currency).upper()} → {converted} {str(currency).upper()}"
        if local > 0:
            content += f" (rate {round(converted / local, 6)})"
        blocks.append(BlockData(block_type="fx", title="FX", content=content))

    if tx.get("virtual_card"):
        blocks.append(BlockData(block_type="card", title="Virtual Card", content="Virtual card used"))

    if scheme == "uk_retail_pot":
        blocks.append(
            BlockData(
                block_type="pot",
                title="Pot Transfer",
                content="To Pot" if amount < 0 else "From Pot",
                value=abs(amount),
                value_multiplier=100,
                value_unit=currency,
            )
        )

    if scheme == "payport_faster_payments":
        counterparty = tx.get("counterparty") or {}
        details = []
        if counterparty.get("name"):
            details.append(str(counterparty["name"]))
        if counterparty.get("sort_code") and counterparty.get("account_number"):
            details.append(f"{counterparty['sort_code']}-{counterparty['account_number']}")
        blocks.append(
            BlockData(
                block_type="transfer",
                title="Bank Transfer",
                content=" • ".join(details) or "External transfer",
                value=abs(amount),
                value_multiplier=100,
                value_unit=currency,
            )
        )
    return blocks


class MonzoPlugin(ProviderPlugin):
    identifier = "monzo"
    display_name = "Monzo"
    description = "Transactions, pots and balances from your Monzo accounts"
    domain = "money"
    capabilities = frozenset({Capability.OAUTH})
    instance_types = {
        "accounts": "Accounts (Master)",
        "transactions": "Transactions",
        "pots": "Pots",
        "balances": "Balances",
    }
    primary_instance_type = "accounts"
    base_url = MONZO_API_URL
    migration_mode = "batch"

    def configuration_schema(self) -> dict[str, ConfigField]:
        return with_scheduling(
            {
                "include_pot_transfers": ConfigField(type="boolean", label="Include pot transfers", default=True),
                "salary_name": ConfigField(type="string", label="Salary payer name"),
            }
        )

    def oauth_config(self, settings) -> OAuthProviderConfig:
        return OAuthProviderConfig(
            client_id=settings.monzo_client_id,
            client_secret=settings.monzo_client_secret,
            authorization_url="https://auth.monzo.com/",
            token_url="https://api.monzo.com/oauth2/token",
            default_scopes=["accounts:read", "transactions:read", "balance:read", "pots:read"],
        )

    async def fetch_account_identity(self, http: httpx.AsyncClient, access_token: str) -> str | None:
        response = await http.get(f"{MONZO_API_URL}/accounts", headers={"Authorization": f"Bearer {access_token}"})
        if response.status_code != 200:
            return None
        accounts = response.json().get("accounts") or []
        primary = next((a for a in accounts if a.get("type") == "uk_retail"), accounts[0] if accounts else None)
        return primary.get("id") if primary else None

    async def initialize(self, ctx: PluginContext, integration: Integration) -> None:
        if integration.integration_group_id:
            group = await ctx.integrations.require_group(integration.integration_group_id)
            await self.ensure_primary_instance(ctx.integrations, group)

    # ------------------------------------------------------------------
    # API helpers
    # ------------------------------------------------------------------

    async def _accounts(self, client: ProviderClient) -> list[dict[str, Any]]:
        data = await client.get_json("/accounts")
        return [account for account in (data or {}).get("accounts") or [] if isinstance(account, dict)]

    async def _transactions(
        self, client: ProviderClient, account_id: str, *, since: str, before: str | None = None
    ) -> list[dict[str, Any]]:
        """Every transaction in [since, before), following Monzo's id-based paging."""
        results: list[dict[str, Any]] = []
        cursor = since
        while True:
            params: dict[str, Any] = {"account_id": account_id, "expand[]": "merchant", "since": cursor, "limit": PAGE_LIMIT}
            if before:
                params["before"] = before
            data = await client.get_json("/transactions", params=params)
            page = [tx for tx in (data or {}).get("transactions") or [] if isinstance(tx, dict)]
            results.extend(page)
            if len(page) < PAGE_LIMIT or not page[-1].get("id"):
                return results
            cursor = page[-1]["id"]

    async def _pots(self, client: ProviderClient, account_id: str, day: str) -> list[dict[str, Any]]:
        data = await client.get_json("/pots", params={"current_account_id": account_id})
        return [
            {"pot": pot, "account_id": account_id, "date": day}
            for pot in (data or {}).get("pots") or []
            if isinstance(pot, dict)
        ]

    async def _balance(self, client: ProviderClient, account: dict[str, Any], day: str) -> dict[str, Any]:
        data = await client.get_json("/balance", params={"account_id": account["id"]})
        data = data or {}
        return {
            "account": account,
            "balance": int(data.get("balance") or 0),
            "spend_today": int(data.get("spend_today") or 0),
            "currency": data.get("currency") or account.get("currency") or "GBP",
            "date": day,
        }

    async def _collect(
        self, client: ProviderClient, kind: str, *, today: date, since: str | None = None, before: str | None = None
    ) -> list[dict[str, Any]]:
        day = today.isoformat()
        accounts = await self._accounts(client)
        if kind == "accounts":
            return accounts
        items: list[dict[str, Any]] = []
        for account in accounts:
            if kind == "transactions":
                items.extend(await self._transactions(client, account["id"], since=since or "", before=before))
            elif kind == "pots":
                items.extend(await self._pots(client, account["id"], day))
            elif kind == "balances":
                items.append(await self._balance(client, account, day))
        return items

    # ------------------------------------------------------------------
    # Pull
    # ------------------------------------------------------------------

    async def fetch_data(self, ctx: PluginContext, integration: Integration, fetch_type: str) -> list[dict[str, Any]]:
        now = ctx.clock()
        since = isoformat_z(now.replace(hour=0, minute=0, second=0, microsecond=0) - timedelta(days=RECENT_DAYS))
        async with self.client(ctx, integration) as client:
            return await self._collect(client, fetch_type, today=now.date(), since=since)

    def convert_data(self, item: dict[str, Any], integration: Integration, data_type: str) -> ConvertedData:
        if data_type == "accounts":
            return ConvertedData(objects=[account_object(item)])
        if data_type == "transactions":
            if not integration.configuration.get("include_pot_transfers", True) and item.get("scheme") == "uk_retail_pot":
                return ConvertedData()
            return ConvertedData(events=[self._transaction_event(item, integration)])
        if data_type == "pots":
            return ConvertedData(events=[self._pot_balance_event(item)])
        if data_type == "balances":
            return ConvertedData(events=[self._balance_event(item)])
        return ConvertedData()

    def _transaction_event(self, tx: dict[str, Any], integration: Integration) -> EventData:
        if not tx.get("id") or not tx.get("created"):
            raise MalformedPayload(meta={"missing": "id/created", "kind": "transactions"})
        merchant = tx.get("merchant") if isinstance(tx.get("merchant"), dict) else {}
        amount = int(tx.get("amount") or 0)
        return EventData(
            source_id=str(tx["id"]),
            time=tx["created"],
            service=self.identifier,
            domain=self.domain,
            action=derive_action(tx, salary_name=integration.configuration.get("salary_name")),
            value=abs(amount),
            value_multiplier=100,
            value_unit=tx.get("currency") or "GBP",
            metadata={
                "category": tx.get("category"),
                "scheme": tx.get("scheme"),
                "notes": tx.get("notes"),
                "local_amount": tx.get("local_amount"),
                "local_currency": tx.get("local_currency"),
                "direction": "debit" if amount < 0 else "credit",
                "status": "declined" if tx.get("decline_reason") else ("settled" if tx.get("settled") else "pending"),
            },
            actor=account_object({"id": tx.get("account_id"), "type": "uk_retail"}),
            target=ObjectData(
                concept="counterparty",
                type="monzo_counterparty",
                title=merchant.get("name") or tx.get("description") or "Unknown",
                content=tx.get("description"),
                metadata={
                    "merchant_id": merchant.get("id"),
                    "category": tx.get("category"),
                    "currency": tx.get("currency") or "GBP",
                },
            ),
            blocks=transaction_blocks(tx),
        )

    def _pot_balance_event(self, item: dict[str, Any]) -> EventData:
        pot = item.get("pot") or {}
        day = item.get("date")
        if not pot.get("id") or not day:
            raise MalformedPayload(meta={"missing": "pot.id/date", "kind": "pots"})
        return EventData(
            source_id=f"monzo_pot_balance_{pot['id']}_{day}",
            time=f"{day}T23:59:59Z",
            service=self.identifier,
            domain=self.domain,
            action="had_balance",
            value=abs(int(pot.get("balance") or 0)),
            value_multiplier=100,
            value_unit=pot.get("currency") or "GBP",
            metadata={"pot_id": pot["id"], "pot_name": pot.get("name") or "Pot", "snapshot_date": day},
            actor=pot_object(pot),
            target=day_object(day),
        )

    def _balance_event(self, item: dict[str, Any]) -> EventData:
        account = item.get("account") or {}
        day = item.get("date")
        if not account.get("id") or not day:
            raise MalformedPayload(meta={"missing": "account.id/date", "kind": "balances"})
        currency = item.get("currency") or "GBP"
        spend_today = int(item.get("spend_today") or 0)
        return EventData(
            source_id=f"monzo_balance_{account['id']}_{day}",
            time=f"{day}T23:59:59Z",
            service=self.identifier,
            domain=self.domain,
            action="had_balance",
            value=abs(int(item.get("balance") or 0)),
            value_multiplier=100,
            value_unit=currency,
            metadata={"spend_today": spend_today / 100},
            actor=account_object(account),
            target=day_object(day),
            blocks=[
                BlockData(
                    block_type="balance",
                    title="Spend Today",
                    value=abs(spend_today),
                    value_multiplier=100,
                    value_unit=currency,
                )
            ],
        )

    # ------------------------------------------------------------------
    # Backfill (batch-then-process)
    # ------------------------------------------------------------------

    def migration_contexts(
        self, integration: Integration, *, now: datetime, timebox_until: datetime | None
    ) -> list[MigrationContext]:
        common = {"service": self.identifier, "integration_id": integration.id, "timebox_until": timebox_until}
        return [
            probe_window_context(instance_type="transactions", now=now, window_days=89, **common),
            snapshot_context(instance_type="pots", cursor={"kind": "pots_snapshot"}, **common),
            snapshot_context(
                instance_type="balances",
                cursor={"kind": "balance_snapshot", "date": now.date().isoformat()},
                **common,
            ),
        ]

    async def fetch_page(self, ctx: PluginContext, integration: Integration, context: MigrationContext) -> Page:
        if context.strategy == "snapshot":
            return Page(next_cursor=dict(context.cursor))

        since, before = probe_window_bounds(context)
        async with self.client(ctx, integration) as client:
            for account in await self._accounts(client):
                data = await client.get_json(
                    "/transactions",
                    params={
                        "account_id": account["id"],
                        "since": isoformat_z(since),
                        "before": isoformat_z(before),
                        "limit": 1,
                    },
                )
                if (data or {}).get("transactions"):
                    return Page(has_data=True)
        return Page(has_data=False)

    def processing_work(self, recorded: list[dict[str, Any]]) -> list[tuple[str, list[dict[str, Any]]]]:
        work = []
        for entry in recorded:
            marker = entry.get("marker") or {}
            if "window" in marker:
                work.append(("transactions", [{"kind": "transactions_window", **marker["window"]}]))
            else:
                work.append((entry.get("instance_type") or "pots", [dict(marker)]))
        return work

    async def process_migration_items(
        self,
        ctx: PluginContext,
        integration: Integration,
        context: MigrationContext,
        items: list[dict[str, Any]],
    ) -> IngestReport:
        report = IngestReport()
        async with self.client(ctx, integration) as client:
            for item in items:
                kind = item.get("kind")
                if kind == "transactions_window":
                    data_type = "transactions"
                    raw = await self._collect(
                        client, data_type, today=ctx.clock().date(), since=item["since"], before=item["before"]
                    )
                elif kind == "pots_snapshot":
                    data_type = "pots"
                    raw = await self._collect(client, data_type, today=ctx.clock().date())
                elif kind == "balance_snapshot":
                    data_type = "balances"
                    day = date.fromisoformat(item.get("date") or ctx.clock().date().isoformat())
                    raw = await self._collect(client, data_type, today=day)
                else:
                    logger.warning("Unknown Monzo migration item", kind=kind, integration_id=integration.id)
                    continue
                report.merge(await self.process_items(ctx, integration, data_type, raw))
        return report
