"""Hevy workouts (API key). Each exercise set becomes one block."""

from __future__ import annotations

from datetime import timedelta
from typing import Any

import structlog

from spark.canonical.records import BlockData, ConvertedData, EventData, ObjectData
from spark.integrations.config_schema import ConfigField, with_scheduling
from spark.integrations.models import Integration
from spark.kernel.errors import MalformedPayload
from spark.kernel.hashing import payload_fingerprint
from spark.plugins.contracts import Capability, PluginContext, ProviderPlugin

logger = structlog.get_logger()

HEVY_API_URL = "https://api.hevyapp.com"
WEIGHT_UNITS = ("kg", "lb")


def normalize_workouts(payload: Any) -> list[dict[str, Any]]:
    """The API has answered with `data`, `workouts` or a bare list."""
    if isinstance(payload, dict):
        items = payload.get("data") or payload.get("workouts") or []
    elif isinstance(payload, list):
        items = payload
    else:
        items = []
    return [item for item in items if isinstance(item, dict)]


def _float(raw: Any) -> float:
    try:
        return float(raw) if raw not in (None, "") else 0.0
    except (TypeError, ValueError):
        return 0.0


class HevyPlugin(ProviderPlugin):
    identifier = "hevy"
    display_name = "Hevy"
    description = "Workouts, with each exercise set as a block"
    domain = "fitness"
    capabilities = frozenset({Capability.API_KEY})
    instance_types = {"workouts": "Workouts"}
    base_url = HEVY_API_URL
    api_key_setting = "hevy_api_key"

    def configuration_schema(self) -> dict[str, ConfigField]:
        return with_scheduling(
            {
                "api_key": ConfigField(
                    type="string",
                    label="API Key",
                    description="Falls back to the global HEVY_API_KEY when empty.",
                ),
                "update_frequency_minutes": ConfigField(
                    type="integer", label="Update frequency (minutes)", default=30, min=5, max=1440
                ),
                "days_back": ConfigField(
                    type="integer", label="Days back to fetch on each run", default=14, min=1, max=90
                ),
                "units": ConfigField(
                    type="select",
                    label="Preferred weight units",
                    options={"kg": "Kilograms", "lb": "Pounds"},
                    default="kg",
                ),
                "include_exercise_summary_blocks": ConfigField(
                    type="array",
                    label="Include per-exercise summary blocks",
                    options={"enabled": "Enabled"},
                    default=["enabled"],
                ),
            }
        )

    def api_key_headers(self, api_key: str) -> dict[str, str]:
        return {"api-key": api_key}

    async def fetch_data(self, ctx: PluginContext, integration: Integration, fetch_type: str) -> list[dict[str, Any]]:
        days_back = int(integration.configuration.get("days_back") or 14)
        today = ctx.clock().date()
        async with self.client(ctx, integration) as client:
            payload = await client.get_json(
                "/v1/workouts",
                params={
                    "start_date": (today - timedelta(days=days_back)).isoformat(),
                    "end_date": today.isoformat(),
                    "limit": 100,
                },
            )
        workouts = normalize_workouts(payload)
        logger.info("Hevy workouts fetched", integration_id=integration.id, workouts=len(workouts))
        return workouts

    def _unit(self, integration: Integration, candidate: Any) -> str:
        unit = str(candidate or integration.configuration.get("units") or "kg").lower()
        return unit if unit in WEIGHT_UNITS else "kg"

    def convert_data(self, item: dict[str, Any], integration: Integration, data_type: str) -> ConvertedData:
        start = item.get("start_time") or item.get("date")
        if not start:
            raise MalformedPayload(meta={"missing": "start_time"})
        workout_id = item.get("id") or payload_fingerprint([integration.id, start, item.get("title")])[:32]
        title = str(item.get("title") or "Workout")
        include_summary = "enabled" in (integration.configuration.get("include_exercise_summary_blocks") or [])

        blocks: list[BlockData] = []
        for exercise in item.get("exercises") or []:
            name = str(exercise.get("name") or exercise.get("title") or "Exercise")
            volume = 0.0
            for number, workout_set in enumerate(exercise.get("sets") or [], start=1):
                reps = int(_float(workout_set.get("reps")))
                weight = _float(workout_set.get("weight") if "weight" in workout_set else workout_set.get("weight_kg"))
                unit = self._unit(integration, workout_set.get("weight_unit") or exercise.get("weight_unit"))
                volume += weight * max(0, reps)
                lines = [f"**Exercise:** {name}", f"**Set:** {number}", f"**Reps:** {reps}", f"**Weight:** {weight:g} {unit}"]
                if workout_set.get("rpe") not in (None, ""):
                    lines.append(f"**RPE:** {workout_set['rpe']}")
                if workout_set.get("rest_seconds") not in (None, ""):
                    lines.append(f"**Rest:** {workout_set['rest_seconds']} s")
                blocks.append(
                    BlockData(
                        block_type="exercise_set",
                        time=start,
                        title=f"{name} - Set {number}",
                        content="\n".join(lines),
                        metadata={"exercise": name, "set": number, "reps": reps},
                        value=weight,
                        value_unit=unit,
                    )
                )
            if include_summary:
                blocks.append(
                    BlockData(
                        block_type="exercise_summary",
                        time=start,
                        title=f"{name} - Total Volume",
                        content="Total volume (weight x reps) for this exercise",
                        value=volume,
                        value_unit=self._unit(integration, exercise.get("weight_unit")),
                    )
                )

        return ConvertedData(
            events=[
                EventData(
                    source_id=f"hevy_workout_{integration.id}_{workout_id}",
                    time=start,
                    service=self.identifier,
                    domain=self.domain,
                    action="completed_workout",
                    value=_float(item.get("total_volume")),
                    value_unit=self._unit(integration, item.get("weight_unit")),
                    metadata={
                        "end": item.get("end_time"),
                        "duration_seconds": int(_float(item.get("duration_seconds"))),
                    },
                    actor=ObjectData(
                        concept="user",
                        type="hevy_user",
                        title=integration.name or "Hevy Account",
                        content="Hevy user account",
                    ),
                    target=ObjectData(
                        concept="workout",
                        type="hevy_workout",
                        title=title,
                        content=item.get("notes") or item.get("description") or "Hevy workout",
                        metadata={"hevy_workout_id": item.get("id"), "exercise_count": len(item.get("exercises") or [])},
                        url=item.get("url"),
                        time=start,
                    ),
                    blocks=blocks,
                )
            ]
        )
