from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

import pytest

from spark.kernel.time import (
    UTC,
    coerce_utc,
    from_epoch_ms,
    is_tz_aware,
    isoformat_z,
    parse_date,
    parse_iso8601,
    to_epoch_ms,
    utc_now,
)


@pytest.mark.unit
def test_utc_now_is_tz_aware_utc():
    now = utc_now()
    assert is_tz_aware(now)
    assert now.utcoffset() == timedelta(0)


@pytest.mark.unit
def test_isoformat_z_uses_z_suffix():
    dt = datetime(2026, 2, 10, 12, 0, 0, tzinfo=UTC)
    assert isoformat_z(dt) == "2026-02-10T12:00:00Z"


@pytest.mark.unit
def test_parse_iso8601_supports_z_suffix_and_offsets():
    assert parse_iso8601("2026-02-10T12:00:00Z") == datetime(2026, 2, 10, 12, tzinfo=UTC)
    assert parse_iso8601("2026-02-10T14:00:00+02:00") == datetime(2026, 2, 10, 12, tzinfo=UTC)
    assert parse_iso8601("2026-02-10T12:00:00").tzinfo is not None


@pytest.mark.unit
def test_coerce_utc_can_refuse_naive_values():
    with pytest.raises(ValueError):
        coerce_utc(datetime(2026, 1, 1), assume_naive_is_utc=False)
    shifted = coerce_utc(datetime(2026, 1, 1, 1, tzinfo=timezone(timedelta(hours=1))))
    assert shifted == datetime(2026, 1, 1, tzinfo=UTC)


@pytest.mark.unit
def test_parse_date_accepts_dates_datetimes_and_strings():
    assert parse_date("2026-01-15T10:00:00Z") == date(2026, 1, 15)
    assert parse_date(datetime(2026, 1, 15, 23, tzinfo=UTC)) == date(2026, 1, 15)
    assert parse_date(date(2026, 1, 15)) == date(2026, 1, 15)


@pytest.mark.unit
def test_epoch_ms_round_trip():
    moment = datetime(2026, 1, 15, 12, 0, 0, 123000, tzinfo=UTC)
    assert to_epoch_ms(moment) == 1768478400123
    assert from_epoch_ms(1768478400123) == moment
