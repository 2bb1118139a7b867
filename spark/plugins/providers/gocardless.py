"""
GoCardless Bank Account Data (open banking).

The provider allows a handful of calls per account and endpoint per day, so
every capped call goes through `QuotaTracker` and slow-changing resources
are served from `ResponseCache` first.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any

import structlog

from spark.canonical.records import ConvertedData, EventData, ObjectData
from spark.integrations.config_schema import ConfigField, with_scheduling
from spark.integrations.models import Integration
from spark.kernel.errors import MalformedPayload, UnauthorizedError
from spark.kernel.hashing import sha256_hexdigest
from spark.plugins.contracts import Capability, PluginContext, ProviderPlugin
from spark.plugins.http import ProviderClient
from spark.ratelimit.quota import QuotaTracker, ResponseCache

logger = structlog.get_logger()

GOCARDLESS_API_URL = "https://bankaccountdata.gocardless.com/api/v2"

ACCOUNT_DETAILS_TTL_SECONDS = 24 * 3600
BALANCES_TTL_SECONDS = 3600
REQUISITION_TTL_SECONDS = 3600

TOKEN_CACHE_KEY = "gocardless:access_token"


def transaction_source_id(tx: dict[str, Any]) -> str:
    """
    Content-derived id, identical for the pending and booked copies of a
    transaction so the booked one updates the pending event in place.
    """
    day = tx.get("bookingDate") or tx.get("valueDate") or ""
    counterparty = tx.get("creditorName") or tx.get("debtorName") or tx.get("remittanceInformationUnstructured") or "unknown"
    amount = tx.get("transactionAmount") or {}
    content = f"{day}_{str(counterparty).strip().lower()}_{abs(_decimal(amount.get('amount')))}_{amount.get('currency') or 'EUR'}"
    return "gc_" + sha256_hexdigest(content.encode("utf-8"))[:32]


def _decimal(raw: Any) -> Decimal:
    try:
        return Decimal(str(raw if raw is not None else 0))
    except InvalidOperation as exc:
        raise MalformedPayload(message=f"Not an amount: {raw!r}") from exc


def _slug(value: str) -> str:
    return "-".join("".join(ch if ch.isalnum() else " " for ch in value.lower()).split())


class GoCardlessPlugin(ProviderPlugin):
    identifier = "gocardless"
    display_name = "GoCardless Bank Account Data"
    description = "Transactions and balances from your bank via open banking"
    domain = "money"
    capabilities = frozenset({Capability.API_KEY})
    instance_types = {
        "accounts": "Accounts (master)",
        "transactions": "Transactions",
        "balances": "Balances",
    }
    primary_instance_type = "accounts"
    base_url = GOCARDLESS_API_URL

    def configuration_schema(self) -> dict[str, ConfigField]:
        return with_scheduling(
            {
                "update_frequency_minutes": ConfigField(
                    type="integer",
                    label="Update Frequency (minutes)",
                    description="The bank allows only a few calls per day. Minimum: 6 hours.",
                    required=True,
                    min=360,
                    default=1440,
                ),
                "requisition_id": ConfigField(type="string", label="Requisition ID"),
            }
        )

    # ------------------------------------------------------------------
    # Auth and limits
    # ------------------------------------------------------------------

    async def _access_token(self, ctx: PluginContext, client: ProviderClient) -> str:
        cached = await ctx.cache.get(TOKEN_CACHE_KEY)
        if cached:
            return str(cached)
        settings = ctx.settings
        if not settings.gocardless_secret_id or not settings.gocardless_secret_key:
            raise UnauthorizedError(message="GoCardless secrets are not configured", code="auth.missing_api_key")
        data = await client.post_json(
            "/token/new/",
            json={"secret_id": settings.gocardless_secret_id, "secret_key": settings.gocardless_secret_key},
            authenticated=False,
        )
        token = (data or {}).get("access")
        if not token:
            raise UnauthorizedError(message="GoCardless returned no access token", code="auth.missing_token")
        ttl = max(60, int((data or {}).get("access_expires") or 86400) - 60)
        await ctx.cache.set(TOKEN_CACHE_KEY, token, ttl_seconds=ttl)
        return str(token)

    def quota(self, ctx: PluginContext) -> QuotaTracker:
        return QuotaTracker(
            ctx.cache,
            provider=self.identifier,
            daily_cap=ctx.settings.gocardless_daily_call_cap,
            clock=ctx.clock,
            retention_days=ctx.settings.quota_retention_days,
        )

    def responses(self, ctx: PluginContext) -> ResponseCache:
        return ResponseCache(
            ctx.cache,
            provider=self.identifier,
            ttls={
                "details": ACCOUNT_DETAILS_TTL_SECONDS,
                "balances": BALANCES_TTL_SECONDS,
                "requisitions": REQUISITION_TTL_SECONDS,
            },
        )

    async def _requisition_id(self, ctx: PluginContext, integration: Integration) -> str:
        requisition_id = integration.configuration.get("requisition_id")
        if not requisition_id and integration.integration_group_id:
            group = await ctx.integrations.require_group(integration.integration_group_id)
            requisition_id = group.account_id
        if not requisition_id:
            raise UnauthorizedError(
                message="Bank connection has no requisition",
                code="auth.missing_requisition",
                meta={"integration_id": integration.id},
            )
        return str(requisition_id)

    # ------------------------------------------------------------------
    # Pull
    # ------------------------------------------------------------------

    async def fetch_data(self, ctx: PluginContext, integration: Integration, fetch_type: str) -> list[dict[str, Any]]:
        quota = self.quota(ctx)
        responses = self.responses(ctx)
        requisition_id = await self._requisition_id(ctx, integration)

        async with self.client(ctx, integration) as client:
            headers = {"Authorization": f"Bearer {await self._access_token(ctx, client)}"}

            async def get(path: str) -> Any:
                return await client.get_json(path, headers=headers, authenticated=False)

            requisition = await responses.fetch(
                "requisitions", requisition_id, None, lambda: get(f"/requisitions/{requisition_id}/")
            )
            account_ids = [str(account_id) for account_id in (requisition or {}).get("accounts") or []]

            items: list[dict[str, Any]] = []
            for account_id in account_ids:
                if fetch_type == "accounts":
                    details = await responses.fetch(
                        "details", account_id, quota, lambda: get(f"/accounts/{account_id}/details/")
                    )
                    items.append({"account_id": account_id, "details": (details or {}).get("account") or {}})
                elif fetch_type == "balances":
                    data = await responses.fetch(
                        "balances", account_id, quota, lambda: get(f"/accounts/{account_id}/balances/")
                    )
                    for balance in (data or {}).get("balances") or []:
                        items.append({"account_id": account_id, "balance": balance})
                elif fetch_type == "transactions":
                    data = await quota.call(
                        account_id, "transactions", lambda: get(f"/accounts/{account_id}/transactions/")
                    )
                    transactions = (data or {}).get("transactions") or {}
                    # Pending first, so the booked copy lands as a status change.
                    for status in ("pending", "booked"):
                        for tx in transactions.get(status) or []:
                            items.append({"account_id": account_id, "status": status, "tx": tx})

        logger.info(
            "GoCardless data fetched",
            integration_id=integration.id,
            fetch_type=fetch_type,
            accounts=len(account_ids),
            items=len(items),
        )
        return items

    def _account(self, account_id: str, details: dict[str, Any] | None = None) -> ObjectData:
        details = details or {}
        name = details.get("name") or details.get("ownerName") or f"Account {account_id[-4:]}"
        return ObjectData(
            concept="account",
            type="bank_account",
            title=name,
            metadata={
                "account_id": account_id,
                "provider": "GoCardless",
                "currency": details.get("currency"),
                "iban": details.get("iban"),
                "product": details.get("product"),
            },
        )

    def convert_data(self, item: dict[str, Any], integration: Integration, data_type: str) -> ConvertedData:
        account_id = item.get("account_id")
        if not account_id:
            raise MalformedPayload(meta={"missing": "account_id"})
        if data_type == "accounts":
            return ConvertedData(objects=[self._account(account_id, item.get("details"))])
        if data_type == "balances":
            return ConvertedData(events=[self._balance_event(account_id, item.get("balance") or {})])
        if data_type == "transactions":
            return ConvertedData(events=[self._transaction_event(account_id, item.get("status") or "booked", item.get("tx") or {})])
        return ConvertedData()

    def _transaction_event(self, account_id: str, status: str, tx: dict[str, Any]) -> EventData:
        amount_info = tx.get("transactionAmount") or {}
        amount = _decimal(amount_info.get("amount"))
        day = tx.get("bookingDateTime") or tx.get("bookingDate") or tx.get("valueDate")
        if not day:
            raise MalformedPayload(meta={"missing": "bookingDate", "kind": "transactions"})
        code = tx.get("bankTransactionCode") or tx.get("proprietaryBankTransactionCode")
        counterparty = tx.get("creditorName") or tx.get("debtorName") or tx.get("remittanceInformationUnstructured") or "Unknown"
        return EventData(
            source_id=transaction_source_id(tx),
            time=day if "T" in str(day) else f"{day}T00:00:00Z",
            service=self.identifier,
            domain=self.domain,
            action="payment_to" if amount < 0 else "payment_from",
            value=abs(amount),
            value_unit=amount_info.get("currency") or "EUR",
            metadata={
                "category": _slug(code) if code else "other",
                "description": tx.get("remittanceInformationUnstructured") or "",
                "booking_date": tx.get("bookingDate"),
                "value_date": tx.get("valueDate"),
                "creditor_account": tx.get("creditorAccount"),
                "debtor_account": tx.get("debtorAccount"),
                "status": status,
            },
            actor=self._account(account_id),
            target=ObjectData(
                concept="counterparty",
                type="bank_counterparty",
                title=str(counterparty),
                metadata={"currency": amount_info.get("currency")},
            ),
        )

    def _balance_event(self, account_id: str, balance: dict[str, Any]) -> EventData:
        reference_date = balance.get("referenceDate")
        amount_info = balance.get("balanceAmount") or {}
        if not reference_date:
            raise MalformedPayload(meta={"missing": "referenceDate", "kind": "balances"})
        balance_type = balance.get("balanceType") or "unknown"
        return EventData(
            source_id=f"balance_{account_id}_{balance_type}_{reference_date}",
            time=f"{reference_date}T23:59:59Z",
            service=self.identifier,
            domain=self.domain,
            action="had_balance",
            value=abs(_decimal(amount_info.get("amount"))),
            value_unit=amount_info.get("currency") or "EUR",
            metadata={"balance_type": balance_type, "reference_date": reference_date, "account_id": account_id},
            actor=self._account(account_id),
            target=ObjectData(concept="day", type="day", title=reference_date, metadata={"date": reference_date}),
        )
