"""
Integration domain models.

An `Integration` is one configured instance of a provider for a user; an
`IntegrationGroup` is the shared credential container every instance of the
same provider+user runs under.
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta
from typing import Any, Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field

from spark.kernel.time import UTC, coerce_utc

DEFAULT_UPDATE_FREQUENCY_MINUTES = 15
_SCHEDULE_TIME_RE = re.compile(r"^\d{2}:\d{2}$")

IntegrationStatus = Literal["active", "failed"]


class IntegrationGroup(BaseModel):
    id: str
    user_id: str
    service: str
    account_id: str | None = None
    access_token: str | None = None
    refresh_token: str | None = None
    expiry: datetime | None = None
    refresh_expiry: datetime | None = None
    auth_metadata: dict[str, Any] = Field(default_factory=dict)
    primary_integration_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    deleted_at: datetime | None = None

    def token_expired(self, now: datetime) -> bool:
        return self.expiry is not None and coerce_utc(self.expiry) <= now


class Integration(BaseModel):
    id: str
    user_id: str
    service: str
    integration_group_id: str | None = None
    name: str | None = None
    account_id: str | None = None
    instance_type: str | None = None
    configuration: dict[str, Any] = Field(default_factory=dict)
    status: IntegrationStatus = "active"

    # Legacy credentials; the group's take precedence
    access_token: str | None = None
    refresh_token: str | None = None
    expiry: datetime | None = None

    last_triggered_at: datetime | None = None
    last_successful_update_at: datetime | None = None
    migration_batch_id: str | None = None

    created_at: datetime | None = None
    updated_at: datetime | None = None
    deleted_at: datetime | None = None

    # ------------------------------------------------------------------
    # Configuration-derived scheduling state
    # ------------------------------------------------------------------

    @property
    def update_frequency_minutes(self) -> int:
        raw = self.configuration.get("update_frequency_minutes")
        try:
            return int(raw) if raw is not None else DEFAULT_UPDATE_FREQUENCY_MINUTES
        except (TypeError, ValueError):
            return DEFAULT_UPDATE_FREQUENCY_MINUTES

    @property
    def is_paused(self) -> bool:
        return bool(self.configuration.get("paused", False))

    @property
    def use_schedule(self) -> bool:
        return bool(self.configuration.get("use_schedule", False))

    @property
    def schedule_times(self) -> list[str]:
        times = self.configuration.get("schedule_times") or []
        if not isinstance(times, list):
            return []
        return [t for t in times if isinstance(t, str) and _SCHEDULE_TIME_RE.match(t)]

    @property
    def schedule_timezone(self) -> str:
        tz = self.configuration.get("schedule_timezone")
        return tz if isinstance(tz, str) and tz else "UTC"

    def _zone(self) -> ZoneInfo:
        try:
            return ZoneInfo(self.schedule_timezone)
        except ZoneInfoNotFoundError:
            return ZoneInfo("UTC")

    def next_scheduled_run_after(self, after: datetime) -> datetime | None:
        """First scheduled run strictly after `after`, in UTC."""
        if not self.use_schedule or not self.schedule_times:
            return None

        zone = self._zone()
        local = coerce_utc(after).astimezone(zone)
        candidates = []
        for value in self.schedule_times:
            hour, minute = int(value[:2]), int(value[3:])
            if hour > 23 or minute > 59:
                continue
            today = local.replace(hour=hour, minute=minute, second=0, microsecond=0)
            candidates.extend([today, today + timedelta(days=1)])

        for candidate in sorted(candidates):
            if candidate > local:
                return candidate.astimezone(UTC)
        return None

    def is_due(self, now: datetime) -> bool:
        if self.is_paused:
            return False
        if self.last_successful_update_at is None:
            return True
        last_success = coerce_utc(self.last_successful_update_at)
        if self.use_schedule:
            next_run = self.next_scheduled_run_after(last_success)
            return next_run is not None and now >= next_run
        return now >= last_success + timedelta(minutes=self.update_frequency_minutes)

    def triggered_within_frequency(self, now: datetime) -> bool:
        """True while `last_triggered_at + frequency` is still in the future."""
        if self.last_triggered_at is None:
            return False
        return coerce_utc(self.last_triggered_at) + timedelta(minutes=self.update_frequency_minutes) > now

    def is_processing(self, now: datetime) -> bool:
        """Mid-flight: a migration batch is running, or a recent trigger has not finished."""
        if self.migration_batch_id:
            return True
        if self.last_triggered_at is None:
            return False

        # Bounded so a crashed job cannot lock the integration out forever.
        window = max(5, min(30, self.update_frequency_minutes))
        triggered = coerce_utc(self.last_triggered_at)
        recent = triggered > now - timedelta(minutes=window)
        after_success = (
            self.last_successful_update_at is None
            or triggered > coerce_utc(self.last_successful_update_at)
        )
        return recent and after_success

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    def effective_tokens(self, group: IntegrationGroup | None) -> tuple[str | None, str | None, datetime | None]:
        """(access, refresh, expiry) resolved through the group, legacy fields as fallback."""
        if group is not None and group.access_token:
            return group.access_token, group.refresh_token, group.expiry
        return self.access_token, self.refresh_token, self.expiry

    @property
    def is_failed(self) -> bool:
        return self.status == "failed"
