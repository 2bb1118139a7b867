"""
Backfill cursors.

The chain is data: a `MigrationContext` travels in each job's payload and
`next_step` is a pure function from (context, fetched page) to the next
move. Nothing about the chain lives on the call stack, so a restarted worker
picks it up from the queue.

Strategies:
    repo_pages       {repo_index, page} over `resources`; empty page -> next repo
    before_token     {before_ms}; must strictly decrease
    date_window      {start_date, end_date}; slides backward by `window_days`
    datetime_window  {start_datetime, end_datetime}; half-open, each window spans
                     exactly `window_days` and ends where the previous began
    probe_window     {end_iso, window_days}; batch mode, records windows
    snapshot         single shot, records a marker
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Literal, Union

from pydantic import BaseModel, Field

from spark.kernel.time import coerce_utc, isoformat_z, parse_date, parse_iso8601, to_epoch_ms

Strategy = Literal[
    "repo_pages",
    "before_token",
    "date_window",
    "datetime_window",
    "probe_window",
    "snapshot",
]


class MigrationContext(BaseModel):
    service: str
    integration_id: str
    instance_type: str
    strategy: Strategy
    cursor: dict[str, Any] = Field(default_factory=dict)
    window_days: int | None = None
    resources: list[str] = Field(default_factory=list)
    timebox_until: datetime | None = None

    def with_cursor(self, **changes: Any) -> "MigrationContext":
        return self.model_copy(update={"cursor": {**self.cursor, **changes}})

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "MigrationContext":
        return cls.model_validate(data)


@dataclass
class Page:
    """One provider response, as seen by `next_step`."""

    items: list[dict[str, Any]] = field(default_factory=list)
    # Provider-supplied continuation, e.g. {"before_ms": ...}
    next_cursor: dict[str, Any] | None = None
    # Batch mode: whether the probed window holds any data
    has_data: bool | None = None
    retry_after: int | None = None

    @classmethod
    def rate_limited(cls, delay_seconds: int) -> "Page":
        return cls(retry_after=int(delay_seconds))


# ----------------------------------------------------------------------
# Steps
# ----------------------------------------------------------------------


@dataclass(frozen=True)
class Stop:
    reason: str


@dataclass(frozen=True)
class Redispatch:
    delay_seconds: int


@dataclass(frozen=True)
class Advance:
    """Nothing to process here; fetch `next_context` next."""

    next_context: MigrationContext


@dataclass(frozen=True)
class Chain:
    """Process `items`, then fetch `next_context`, strictly in that order."""

    items: list[dict[str, Any]]
    next_context: MigrationContext


@dataclass(frozen=True)
class Record:
    """Batch mode: remember `marker` for the processing phase, then optionally continue."""

    marker: dict[str, Any]
    next_context: MigrationContext | None = None


Step = Union[Stop, Redispatch, Advance, Chain, Record]


def timebox_expired(context: MigrationContext, now: datetime) -> bool:
    return context.timebox_until is not None and now >= coerce_utc(context.timebox_until)


def next_step(context: MigrationContext, page: Page) -> Step:
    if page.retry_after is not None:
        return Redispatch(delay_seconds=page.retry_after)

    handler = _STRATEGIES[context.strategy]
    return handler(context, page)


def _repo_pages(context: MigrationContext, page: Page) -> Step:
    repo_index = int(context.cursor.get("repo_index", 0))
    page_number = int(context.cursor.get("page", 1))
    if repo_index >= len(context.resources):
        return Stop("exhausted")
    if not page.items:
        if repo_index + 1 >= len(context.resources):
            return Stop("exhausted")
        return Advance(context.with_cursor(repo_index=repo_index + 1, page=1))
    return Chain(list(page.items), context.with_cursor(page=page_number + 1))


def _before_token(context: MigrationContext, page: Page) -> Step:
    if not page.items:
        return Stop("exhausted")
    before_ms = int(context.cursor["before_ms"])
    next_before = (page.next_cursor or {}).get("before_ms")
    if next_before is None:
        next_before = _min_played_at_ms(page.items, default=before_ms) - 1
    next_before = int(next_before)
    if next_before >= before_ms:
        return Stop("cursor_not_decreasing")
    return Chain(list(page.items), context.with_cursor(before_ms=next_before))


def _date_window(context: MigrationContext, page: Page) -> Step:
    if not page.items:
        return Stop("exhausted")
    window_days = context.window_days or 30
    start = parse_date(context.cursor["start_date"])
    next_end = start - timedelta(days=1)
    next_start = next_end - timedelta(days=window_days - 1)
    return Chain(
        list(page.items),
        context.with_cursor(start_date=next_start.isoformat(), end_date=next_end.isoformat()),
    )


def _datetime_window(context: MigrationContext, page: Page) -> Step:
    if not page.items:
        return Stop("exhausted")
    window_days = context.window_days or 7
    start = parse_iso8601(context.cursor["start_datetime"])
    next_start = start - timedelta(days=window_days)
    return Chain(
        list(page.items),
        context.with_cursor(start_datetime=isoformat_z(next_start), end_datetime=isoformat_z(start)),
    )


def _probe_window(context: MigrationContext, page: Page) -> Step:
    if not page.has_data:
        return Stop("exhausted")
    since, before = probe_window_bounds(context)
    next_end = since - timedelta(microseconds=1)
    return Record(
        marker={"window": {"since": isoformat_z(since), "before": isoformat_z(before)}},
        next_context=context.with_cursor(end_iso=isoformat_z(next_end)),
    )


def _snapshot(context: MigrationContext, page: Page) -> Step:
    marker = dict(page.next_cursor or {}) or {"snapshot": context.instance_type}
    return Record(marker=marker, next_context=None)


_STRATEGIES = {
    "repo_pages": _repo_pages,
    "before_token": _before_token,
    "date_window": _date_window,
    "datetime_window": _datetime_window,
    "probe_window": _probe_window,
    "snapshot": _snapshot,
}


def probe_window_bounds(context: MigrationContext) -> tuple[datetime, datetime]:
    """(since, before) for a probe window; `since` is snapped to midnight."""
    before = parse_iso8601(context.cursor["end_iso"])
    window_days = int(context.cursor.get("window_days") or context.window_days or 89)
    since = (before - timedelta(days=window_days)).replace(hour=0, minute=0, second=0, microsecond=0)
    return since, before


def _min_played_at_ms(items: list[dict[str, Any]], *, default: int) -> int:
    lowest = default
    for item in items:
        played_at = item.get("played_at")
        if isinstance(played_at, str):
            lowest = min(lowest, to_epoch_ms(parse_iso8601(played_at)))
    return lowest


# ----------------------------------------------------------------------
# Initial contexts
# ----------------------------------------------------------------------


def repo_pages_context(
    *, service: str, integration_id: str, instance_type: str, resources: list[str], timebox_until: datetime | None
) -> MigrationContext:
    return MigrationContext(
        service=service,
        integration_id=integration_id,
        instance_type=instance_type,
        strategy="repo_pages",
        cursor={"repo_index": 0, "page": 1},
        resources=list(resources),
        timebox_until=timebox_until,
    )


def before_token_context(
    *, service: str, integration_id: str, instance_type: str, now: datetime, timebox_until: datetime | None
) -> MigrationContext:
    return MigrationContext(
        service=service,
        integration_id=integration_id,
        instance_type=instance_type,
        strategy="before_token",
        cursor={"before_ms": to_epoch_ms(now)},
        timebox_until=timebox_until,
    )


def date_window_context(
    *,
    service: str,
    integration_id: str,
    instance_type: str,
    today: date,
    window_days: int = 30,
    timebox_until: datetime | None,
) -> MigrationContext:
    start = today - timedelta(days=window_days - 1)
    return MigrationContext(
        service=service,
        integration_id=integration_id,
        instance_type=instance_type,
        strategy="date_window",
        cursor={"start_date": start.isoformat(), "end_date": today.isoformat()},
        window_days=window_days,
        timebox_until=timebox_until,
    )


def datetime_window_context(
    *,
    service: str,
    integration_id: str,
    instance_type: str,
    now: datetime,
    window_days: int = 7,
    timebox_until: datetime | None,
) -> MigrationContext:
    start = now - timedelta(days=window_days)
    return MigrationContext(
        service=service,
        integration_id=integration_id,
        instance_type=instance_type,
        strategy="datetime_window",
        cursor={"start_datetime": isoformat_z(start), "end_datetime": isoformat_z(now)},
        window_days=window_days,
        timebox_until=timebox_until,
    )


def probe_window_context(
    *,
    service: str,
    integration_id: str,
    instance_type: str,
    now: datetime,
    window_days: int = 89,
    timebox_until: datetime | None,
) -> MigrationContext:
    return MigrationContext(
        service=service,
        integration_id=integration_id,
        instance_type=instance_type,
        strategy="probe_window",
        cursor={"end_iso": isoformat_z(now), "window_days": window_days},
        window_days=window_days,
        timebox_until=timebox_until,
    )


def snapshot_context(
    *,
    service: str,
    integration_id: str,
    instance_type: str,
    cursor: dict[str, Any] | None = None,
    timebox_until: datetime | None,
) -> MigrationContext:
    return MigrationContext(
        service=service,
        integration_id=integration_id,
        instance_type=instance_type,
        strategy="snapshot",
        cursor=dict(cursor or {}),
        timebox_until=timebox_until,
    )
