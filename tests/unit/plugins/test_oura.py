from __future__ import annotations

import pytest

from spark.integrations.models import Integration
from spark.kernel.errors import MalformedPayload
from spark.plugins.providers.oura import OuraPlugin, aggregate_heartrate

pytestmark = pytest.mark.unit

OURA = "https://api.ouraring.com/v2"


@pytest.fixture
def plugin() -> OuraPlugin:
    return OuraPlugin()


def _integration(instance_type: str) -> Integration:
    return Integration(id="oura-1", user_id="owner", service="oura", instance_type=instance_type, name="Oura")


def test_heartrate_points_collapse_to_one_summary_per_day():
    points = [
        {"timestamp": "2026-01-14T01:00:00+00:00", "bpm": 50},
        {"timestamp": "2026-01-14T13:00:00+00:00", "bpm": 90},
        {"timestamp": "2026-01-14T18:00:00+00:00", "bpm": 61},
        {"timestamp": "2026-01-15T02:00:00+00:00", "bpm": 55},
        {"timestamp": "", "bpm": 70},
        {"timestamp": "2026-01-15T03:00:00+00:00", "bpm": None},
    ]
    assert aggregate_heartrate(points) == [
        {"day": "2026-01-14", "min_bpm": 50, "max_bpm": 90, "avg_bpm": 67.0, "count": 3},
        {"day": "2026-01-15", "min_bpm": 55, "max_bpm": 55, "avg_bpm": 55.0, "count": 1},
    ]


class TestConvert:
    def test_daily_activity_has_contributor_and_detail_blocks(self, plugin):
        item = {
            "day": "2026-01-14",
            "score": 82,
            "steps": 10432,
            "cal_total": 2450,
            "contributors": {"meet_daily_targets": 60, "stay_active": 91},
        }
        [event] = plugin.convert_data(item, _integration("activity"), "activity").events

        assert event.source_id == "oura_activity_oura-1_2026-01-14"
        assert event.action == "had_activity_score"
        assert event.value == 82
        assert [block.title for block in event.blocks] == ["Meet Daily Targets", "Stay Active", "Steps", "Cal Total"]
        assert event.blocks[2].value_unit == "count"

    def test_score_field_follows_the_kind(self, plugin):
        [resilience] = plugin.convert_data(
            {"day": "2026-01-14", "resilience_score": 3.5, "contributors": {}}, _integration("resilience"), "resilience"
        ).events
        [spo2] = plugin.convert_data({"day": "2026-01-14", "spo2_average": 97.25}, _integration("spo2"), "spo2").events

        assert resilience.encoded_value() == (350, 100)
        assert spo2.encoded_value() == (9725, 100)
        assert spo2.blocks == []

    def test_workout(self, plugin):
        item = {
            "id": "w1",
            "activity": "cycling",
            "start_datetime": "2026-01-14T07:00:00+00:00",
            "end_datetime": "2026-01-14T08:00:00+00:00",
            "duration": 3600,
            "calories": 512.5,
            "average_heart_rate": 134,
        }
        [event] = plugin.convert_data(item, _integration("workouts"), "workouts").events

        assert event.source_id == "oura_workout_oura-1_w1"
        assert event.value == 3600
        assert event.target.title == "Cycling"
        assert [block.title for block in event.blocks] == ["Calories", "Average Heart Rate"]

    def test_heartrate_summary(self, plugin):
        summary = {"day": "2026-01-14", "min_bpm": 50, "max_bpm": 90, "avg_bpm": 67.0, "count": 3}
        [event] = plugin.convert_data(summary, _integration("heartrate"), "heartrate").events
        assert event.source_id == "oura_heartrate_oura-1_2026-01-14"
        assert event.encoded_value() == (67, 1)

    def test_daily_item_without_day_is_malformed(self, plugin):
        with pytest.raises(MalformedPayload):
            plugin.convert_data({"score": 1}, _integration("sleep"), "sleep")


class TestFetch:
    @pytest.mark.asyncio
    async def test_daily_kinds_query_by_date(self, harness):
        harness.provider.json("GET", f"{OURA}/usercollection/daily_sleep", {"data": [{"day": "2026-01-14", "score": 80}]})
        integration = await harness.connect("oura", instance_type="sleep")

        items = await OuraPlugin().fetch_data(harness.runtime, integration, "sleep")

        assert items == [{"day": "2026-01-14", "score": 80}]
        [request] = harness.provider.requests
        assert request.url.params["start_date"] == "2026-01-08"
        assert request.url.params["end_date"] == "2026-01-15"

    @pytest.mark.asyncio
    async def test_heartrate_queries_by_datetime_and_aggregates(self, harness):
        harness.provider.json(
            "GET",
            f"{OURA}/usercollection/heartrate",
            {"data": [{"timestamp": "2026-01-15T01:00:00+00:00", "bpm": 58}]},
        )
        integration = await harness.connect("oura", instance_type="heartrate")

        items = await OuraPlugin().fetch_data(harness.runtime, integration, "heartrate")

        assert items == [{"day": "2026-01-15", "min_bpm": 58, "max_bpm": 58, "avg_bpm": 58.0, "count": 1}]
        [request] = harness.provider.requests
        assert request.url.params["start_datetime"] == "2026-01-08T12:00:00Z"

    @pytest.mark.asyncio
    async def test_backfill_windows(self, harness):
        integration = await harness.connect("oura", instance_type="heartrate")
        [context] = OuraPlugin().migration_contexts(integration, now=harness.clock(), timebox_until=None)
        assert context.strategy == "datetime_window"

        daily = await harness.connect("oura", instance_type="readiness")
        [daily_context] = OuraPlugin().migration_contexts(daily, now=harness.clock(), timebox_until=None)
        assert daily_context.strategy == "date_window"
        assert daily_context.cursor == {"start_date": "2025-12-17", "end_date": "2026-01-15"}
