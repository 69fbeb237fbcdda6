"""
Quiet-Hours Clock Tests (Unit)
==============================

WHAT: Unit tests for send-window checks and next-sendable-instant calculation.
WHY: Promotional SMS outside 09:00-21:00 local time is a compliance problem; the
     window must hold across DST changes even though the host runs in UTC.

NOTE:
These tests live outside `backend/winback/tests/` to avoid loading the integration-test
`conftest.py`, which configures a database and environment variables not required here.

REFERENCES:
- backend/winback/services/quiet_hours.py
"""

from datetime import datetime, timedelta, timezone

import pytest

from winback.services.clock import FixedClock
from winback.services.quiet_hours import QuietHoursClock


def _utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture
def quiet() -> QuietHoursClock:
    return QuietHoursClock("America/New_York", start_hour=9, end_hour=21, buffer=timedelta(minutes=1))


def test_window_opens_at_nine_local(quiet) -> None:
    # June: EDT, UTC-4
    assert quiet.is_sendable_now(_utc(2026, 6, 10, 12, 59)) is False
    assert quiet.is_sendable_now(_utc(2026, 6, 10, 13, 0)) is True


def test_window_closes_at_twenty_one_local(quiet) -> None:
    assert quiet.is_sendable_now(_utc(2026, 6, 11, 0, 59)) is True
    assert quiet.is_sendable_now(_utc(2026, 6, 11, 1, 0)) is False


def test_inside_window_next_instant_is_now_plus_buffer(quiet) -> None:
    now = _utc(2026, 6, 10, 18, 0)
    assert quiet.next_sendable_instant(now) == now + timedelta(minutes=1)


def test_before_window_waits_until_opening_same_day(quiet) -> None:
    # 07:00 EDT -> 09:00 EDT
    assert quiet.next_sendable_instant(_utc(2026, 6, 10, 11, 0)) == _utc(2026, 6, 10, 13, 0)


def test_after_window_waits_until_next_morning(quiet) -> None:
    # 21:01 EDT -> 09:00 EDT next day
    assert quiet.next_sendable_instant(_utc(2026, 6, 11, 1, 1)) == _utc(2026, 6, 11, 13, 0)


def test_after_window_across_spring_forward(quiet) -> None:
    """2026-03-07 21:01 EST; clocks go forward overnight, so 09:00 is EDT."""
    assert quiet.next_sendable_instant(_utc(2026, 3, 8, 2, 1)) == _utc(2026, 3, 8, 13, 0)


def test_after_window_across_fall_back(quiet) -> None:
    """2026-10-31 22:00 EDT; clocks go back overnight, so 09:00 is EST."""
    assert quiet.next_sendable_instant(_utc(2026, 11, 1, 2, 0)) == _utc(2026, 11, 1, 14, 0)


def test_winter_window_uses_standard_offset(quiet) -> None:
    # January: EST, UTC-5
    assert quiet.is_sendable_now(_utc(2026, 1, 15, 13, 59)) is False
    assert quiet.is_sendable_now(_utc(2026, 1, 15, 14, 0)) is True


def test_uses_injected_clock() -> None:
    clock = FixedClock(_utc(2026, 6, 10, 3, 0))
    quiet = QuietHoursClock("America/New_York", clock=clock)

    assert quiet.is_sendable_now() is False
    clock.set(_utc(2026, 6, 10, 15, 0))
    assert quiet.is_sendable_now() is True


def test_describe() -> None:
    quiet = QuietHoursClock("America/New_York", start_hour=9, end_hour=21)
    snapshot = quiet.describe(_utc(2026, 6, 10, 7, 0))

    assert snapshot["timezone"] == "America/New_York"
    assert snapshot["window"] == "09:00-21:00"
    assert snapshot["sendable"] is False
    assert snapshot["next_sendable_at"] == "2026-06-10T13:00:00+00:00"


@pytest.mark.parametrize("start,end", [(21, 9), (9, 9), (-1, 10), (9, 25)])
def test_invalid_window_rejected(start, end) -> None:
    with pytest.raises(ValueError):
        QuietHoursClock("America/New_York", start_hour=start, end_hour=end)
