"""
Oura Ring daily summaries, workouts and heart rate.

Each instance type maps onto one `/usercollection` endpoint. Daily kinds
produce one event per day keyed `oura_<kind>_<integration>_<day>`; heart rate
points are aggregated into one event per day before they leave the fetch.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import httpx

from spark.canonical.records import BlockData, ConvertedData, EventData, ObjectData
from spark.credentials.oauth import OAuthProviderConfig
from spark.integrations.config_schema import ConfigField, with_scheduling
from spark.integrations.models import Integration
from spark.kernel.errors import MalformedPayload
from spark.kernel.hashing import payload_fingerprint
from spark.kernel.time import isoformat_z
from spark.migrations.cursors import (
    MigrationContext,
    Page,
    date_window_context,
    datetime_window_context,
)
from spark.plugins.contracts import Capability, PluginContext, ProviderPlugin

OURA_API_URL = "https://api.ouraring.com/v2"

ENDPOINTS = {
    "activity": "/usercollection/daily_activity",
    "sleep": "/usercollection/daily_sleep",
    "readiness": "/usercollection/daily_readiness",
    "resilience": "/usercollection/daily_resilience",
    "stress": "/usercollection/daily_stress",
    "spo2": "/usercollection/daily_spo2",
    "workouts": "/usercollection/workout",
    "heartrate": "/usercollection/heartrate",
}


@dataclass(frozen=True)
class DailyKind:
    title: str
    action: str
    score_field: str = "score"
    contributors_field: str | None = "contributors"
    details_fields: tuple[str, ...] = field(default_factory=tuple)


DAILY_KINDS = {
    "activity": DailyKind(
        "Activity",
        "had_activity_score",
        details_fields=("steps", "cal_total", "equivalent_walking_distance", "target_calories", "non_wear_time"),
    ),
    "sleep": DailyKind("Sleep", "had_sleep_score"),
    "readiness": DailyKind("Readiness", "had_readiness_score"),
    "resilience": DailyKind("Resilience", "had_resilience_score", score_field="resilience_score"),
    "stress": DailyKind("Stress", "had_stress_score", score_field="stress_score"),
    "spo2": DailyKind("SpO2", "had_spo2", score_field="spo2_average", contributors_field=None),
}

DETAIL_UNITS = {
    "steps": "count",
    "cal_total": "kcal",
    "equivalent_walking_distance": "km",
    "target_calories": "kcal",
    "non_wear_time": "seconds",
}


def _titled(name: str) -> str:
    return name.replace("_", " ").title()


def _number(value: Any) -> float | int | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value


def aggregate_heartrate(points: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Collapse heart rate samples into one summary per day."""
    by_day: dict[str, list[int]] = defaultdict(list)
    for point in points:
        stamp = point.get("timestamp") or point.get("start_datetime") or ""
        bpm = point.get("bpm")
        if len(stamp) >= 10 and isinstance(bpm, (int, float)):
            by_day[stamp[:10]].append(bpm)
    return [
        {
            "day": day,
            "min_bpm": min(values),
            "max_bpm": max(values),
            "avg_bpm": round(sum(values) / len(values), 3),
            "count": len(values),
        }
        for day, values in sorted(by_day.items())
    ]


class OuraPlugin(ProviderPlugin):
    identifier = "oura"
    display_name = "Oura"
    description = "Sleep, activity, readiness and heart rate from your Oura Ring"
    domain = "health"
    capabilities = frozenset({Capability.OAUTH})
    instance_types = {
        "activity": "Daily Activity",
        "sleep": "Daily Sleep",
        "readiness": "Daily Readiness",
        "resilience": "Daily Resilience",
        "stress": "Daily Stress",
        "spo2": "Daily SpO2",
        "workouts": "Workouts",
        "heartrate": "Heart Rate (time series)",
    }
    base_url = OURA_API_URL
    migration_mode = "chain"

    def configuration_schema(self) -> dict[str, ConfigField]:
        return with_scheduling(
            {
                "update_frequency_minutes": ConfigField(
                    type="integer", label="Update frequency (minutes)", required=True, min=5, max=1440, default=60
                ),
                "days_back": ConfigField(
                    type="integer", label="Days back to fetch on each run", min=1, max=30, default=7
                ),
            }
        )

    def oauth_config(self, settings) -> OAuthProviderConfig:
        return OAuthProviderConfig(
            client_id=settings.oura_client_id,
            client_secret=settings.oura_client_secret,
            authorization_url="https://cloud.ouraring.com/oauth/authorize",
            token_url="https://api.ouraring.com/oauth/token",
            default_scopes=["email", "personal", "daily", "heartrate", "workout", "session", "spo2"],
        )

    async def fetch_account_identity(self, http: httpx.AsyncClient, access_token: str) -> str | None:
        response = await http.get(
            f"{OURA_API_URL}/usercollection/personal_info",
            headers={"Authorization": f"Bearer {access_token}"},
        )
        if response.status_code != 200:
            return None
        return response.json().get("id")

    async def _fetch(self, ctx: PluginContext, integration: Integration, kind: str, params: dict[str, str]) -> list[dict[str, Any]]:
        endpoint = ENDPOINTS.get(kind)
        if endpoint is None:
            raise MalformedPayload(message=f"Unknown Oura instance type: {kind}")
        async with self.client(ctx, integration) as client:
            data = await client.get_json(endpoint, params=params)
        items = [item for item in (data or {}).get("data") or [] if isinstance(item, dict)]
        return aggregate_heartrate(items) if kind == "heartrate" else items

    async def fetch_data(self, ctx: PluginContext, integration: Integration, fetch_type: str) -> list[dict[str, Any]]:
        now = ctx.clock()
        days_back = int(integration.configuration.get("days_back") or 7)
        start = now - timedelta(days=days_back)
        if fetch_type == "heartrate":
            params = {"start_datetime": isoformat_z(start), "end_datetime": isoformat_z(now)}
        else:
            params = {"start_date": start.date().isoformat(), "end_date": now.date().isoformat()}
        return await self._fetch(ctx, integration, fetch_type, params)

    def _actor(self, integration: Integration) -> ObjectData:
        return ObjectData(
            concept="user",
            type="oura_user",
            title=integration.name or "Oura user",
            content="Oura account",
            metadata={"oura_user_id": integration.account_id},
        )

    def convert_data(self, item: dict[str, Any], integration: Integration, data_type: str) -> ConvertedData:
        if data_type == "heartrate":
            return ConvertedData(events=[self._heartrate_event(item, integration)])
        if data_type == "workouts":
            return ConvertedData(events=[self._workout_event(item, integration)])
        kind = DAILY_KINDS.get(data_type)
        if kind is None:
            return ConvertedData()
        return ConvertedData(events=[self._daily_event(item, integration, data_type, kind)])

    def _daily_event(self, item: dict[str, Any], integration: Integration, name: str, kind: DailyKind) -> EventData:
        day = item.get("day") or item.get("date")
        if not day:
            raise MalformedPayload(meta={"missing": "day", "kind": name})

        blocks = []
        contributors = item.get(kind.contributors_field) if kind.contributors_field else None
        for contributor, value in (contributors or {}).items():
            blocks.append(
                BlockData(
                    block_type="contributor",
                    title=_titled(str(contributor)),
                    metadata={"text": "Contributor score"},
                    value=_number(value),
                    value_unit="percent",
                )
            )
        for detail in kind.details_fields:
            if detail in item:
                blocks.append(
                    BlockData(
                        block_type="detail",
                        title=_titled(detail),
                        value=_number(item[detail]),
                        value_unit=DETAIL_UNITS.get(detail),
                    )
                )

        return EventData(
            source_id=f"oura_{name}_{integration.id}_{day}",
            time=f"{day}T00:00:00Z",
            service=self.identifier,
            domain=self.domain,
            action=kind.action,
            value=_number(item.get(kind.score_field)),
            value_unit="percent",
            metadata={"day": day, "kind": name},
            actor=self._actor(integration),
            target=ObjectData(
                concept="metric",
                type=f"oura_daily_{name}",
                title=kind.title,
                content=f"{kind.title} daily summary",
            ),
            blocks=blocks,
        )

    def _workout_event(self, item: dict[str, Any], integration: Integration) -> EventData:
        start = item.get("start_datetime")
        day = start[:10] if start else item.get("day")
        if not day:
            raise MalformedPayload(meta={"missing": "start_datetime", "kind": "workouts"})
        workout_id = item.get("id") or f"{day}_{payload_fingerprint(item)[:12]}"
        activity = str(item.get("activity") or "workout")
        calories = _number(item.get("calories", item.get("total_calories"))) or 0

        blocks = [
            BlockData(
                block_type="workout",
                title="Calories",
                content="Estimated calories for the workout",
                value=calories,
                value_unit="kcal",
            )
        ]
        if _number(item.get("average_heart_rate")) is not None:
            blocks.append(
                BlockData(
                    block_type="workout",
                    title="Average Heart Rate",
                    content="Average heart rate during workout",
                    value=item["average_heart_rate"],
                    value_unit="bpm",
                )
            )

        return EventData(
            source_id=f"oura_workout_{integration.id}_{workout_id}",
            time=start or f"{day}T00:00:00Z",
            service=self.identifier,
            domain=self.domain,
            action="did_workout",
            value=int(_number(item.get("duration")) or 0),
            value_unit="seconds",
            metadata={"end": item.get("end_datetime"), "calories": calories},
            actor=self._actor(integration),
            target=ObjectData(concept="workout", type=activity, title=_titled(activity), content="Oura workout session"),
            blocks=blocks,
        )

    def _heartrate_event(self, item: dict[str, Any], integration: Integration) -> EventData:
        day = item.get("day")
        if not day:
            raise MalformedPayload(meta={"missing": "day", "kind": "heartrate"})
        return EventData(
            source_id=f"oura_heartrate_{integration.id}_{day}",
            time=f"{day}T00:00:00Z",
            service=self.identifier,
            domain=self.domain,
            action="had_heart_rate",
            value=item.get("avg_bpm"),
            value_unit="bpm",
            metadata={
                "day": day,
                "min_bpm": item.get("min_bpm"),
                "max_bpm": item.get("max_bpm"),
                "avg_bpm": item.get("avg_bpm"),
            },
            actor=self._actor(integration),
            target=ObjectData(
                concept="metric",
                type="heartrate_series",
                title="Heart Rate",
                content="Heart rate time series",
                metadata={"interval": "irregular"},
            ),
            blocks=[
                BlockData(block_type="heart_rate", title="Min Heart Rate", value=item.get("min_bpm"), value_unit="bpm"),
                BlockData(block_type="heart_rate", title="Max Heart Rate", value=item.get("max_bpm"), value_unit="bpm"),
                BlockData(
                    block_type="heart_rate",
                    title="Data Points",
                    metadata={"text": "Count of heart rate points collected for the day"},
                    value=item.get("count"),
                    value_unit="count",
                ),
            ],
        )

    # ------------------------------------------------------------------
    # Backfill
    # ------------------------------------------------------------------

    def migration_contexts(
        self, integration: Integration, *, now: datetime, timebox_until: datetime | None
    ) -> list[MigrationContext]:
        instance_type = integration.instance_type or "activity"
        if instance_type == "heartrate":
            context = datetime_window_context(
                service=self.identifier,
                integration_id=integration.id,
                instance_type=instance_type,
                now=now,
                window_days=7,
                timebox_until=timebox_until,
            )
        else:
            context = date_window_context(
                service=self.identifier,
                integration_id=integration.id,
                instance_type=instance_type,
                today=now.date(),
                window_days=30,
                timebox_until=timebox_until,
            )
        return [context]

    async def fetch_page(self, ctx: PluginContext, integration: Integration, context: MigrationContext) -> Page:
        if context.strategy == "datetime_window":
            params = {
                "start_datetime": context.cursor["start_datetime"],
                "end_datetime": context.cursor["end_datetime"],
            }
        else:
            params = {"start_date": context.cursor["start_date"], "end_date": context.cursor["end_date"]}
        return Page(items=await self._fetch(ctx, integration, context.instance_type, params))
