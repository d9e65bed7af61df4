from __future__ import annotations

from datetime import datetime, timezone

import pytest

from agent.clock import is_shutdown_time, is_trading_weekday, minutes_since_midnight, to_timezone


def test_shutdown_time_matches_local_minute() -> None:
    # 21:10 UTC on Oct 19 is 06:10 on Oct 20 in Seoul
    now = datetime(2026, 10, 19, 21, 10, 30, tzinfo=timezone.utc)

    assert is_shutdown_time(now, "06:10", "Asia/Seoul") is True
    assert is_shutdown_time(now, "06:11", "Asia/Seoul") is False
    assert is_shutdown_time(now, None, "Asia/Seoul") is False


def test_naive_datetimes_are_treated_as_utc() -> None:
    local = to_timezone(datetime(2026, 10, 19, 14, 0), "America/New_York")

    assert local.hour == 10


def test_trading_weekday_uses_venue_timezone() -> None:
    # Saturday 01:00 UTC is still Friday evening in New York
    saturday_utc = datetime(2026, 10, 24, 1, 0, tzinfo=timezone.utc)

    assert is_trading_weekday(saturday_utc, "America/New_York") is True
    assert is_trading_weekday(saturday_utc, "Asia/Seoul") is False


def test_minutes_since_midnight() -> None:
    now = datetime(2026, 10, 19, 13, 30, tzinfo=timezone.utc)

    assert minutes_since_midnight(now, "America/New_York") == 9 * 60 + 30


def test_unknown_timezone_raises() -> None:
    with pytest.raises(RuntimeError):
        to_timezone(datetime(2026, 10, 19, tzinfo=timezone.utc), "Mars/Olympus")


@pytest.mark.parametrize(
    ("utc_hour", "utc_minute", "expected"),
    [(21, 9, False), (21, 11, True), (21, 45, True), (21, 59, True), (22, 0, False)],
)
def test_shutdown_window_runs_to_end_of_hour(utc_hour: int, utc_minute: int, expected: bool) -> None:
    now = datetime(2026, 10, 19, utc_hour, utc_minute, tzinfo=timezone.utc)

    assert is_shutdown_time(now, "06:10", "Asia/Seoul") is expected
