"""
Quiet-Hours Clock.

WHAT:
    Decides whether a message may be sent right now and, if not, the next
    instant at which it may.

WHY:
    Carriers and recipients expect promotional SMS only during daytime in
    the business timezone. The host machine usually runs in UTC, so the
    local hour is always resolved through zoneinfo, never the process
    timezone. DST shifts move the UTC instant of the window boundaries;
    building the boundary as a local wall-clock time and converting it
    back handles both the spring-forward and fall-back days.

WINDOW:
    [start_hour, end_hour) local time. Inside the window the next sendable
    instant is now + buffer. Before the window it is today at start_hour,
    at or after the close it is tomorrow at start_hour.

REFERENCES:
    - https://docs.python.org/3/library/zoneinfo.html
    - winback/services/eligibility.py (schedules with next_sendable_instant)
    - winback/services/recovery_pipeline.py (cycle gate)
"""

from datetime import datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from .clock import Clock, ensure_utc


class QuietHoursClock:
    """
    Send-window calculator for one business timezone.

    Usage:
        quiet = QuietHoursClock("America/New_York", start_hour=9, end_hour=21)
        if quiet.is_sendable_now():
            ...
        else:
            next_at = quiet.next_sendable_instant()
    """

    def __init__(
        self,
        tz_name: str = "America/New_York",
        start_hour: int = 9,
        end_hour: int = 21,
        buffer: timedelta = timedelta(minutes=1),
        clock: Optional[Clock] = None,
    ):
        if not 0 <= start_hour < end_hour <= 24:
            raise ValueError(f"Invalid send window: {start_hour}-{end_hour}")
        self.tz = ZoneInfo(tz_name)
        self.start_hour = start_hour
        self.end_hour = end_hour
        self.buffer = buffer
        self.clock = clock or Clock()

    def _now(self, now: Optional[datetime]) -> datetime:
        return ensure_utc(now) if now is not None else self.clock.now()

    def local_time(self, now: Optional[datetime] = None) -> datetime:
        return self._now(now).astimezone(self.tz)

    def is_sendable_now(self, now: Optional[datetime] = None) -> bool:
        local = self.local_time(now)
        return self.start_hour <= local.hour < self.end_hour

    def _window_open(self, day) -> datetime:
        """UTC instant of start_hour local time on the given local date."""
        local_open = datetime.combine(day, time(self.start_hour), tzinfo=self.tz)
        return local_open.astimezone(timezone.utc)

    def next_sendable_instant(self, now: Optional[datetime] = None) -> datetime:
        """Return the earliest UTC instant at which a send is allowed."""
        current = self._now(now)
        local = current.astimezone(self.tz)

        if self.start_hour <= local.hour < self.end_hour:
            return current + self.buffer

        if local.hour < self.start_hour:
            return self._window_open(local.date())

        return self._window_open(local.date() + timedelta(days=1))

    def describe(self, now: Optional[datetime] = None) -> dict:
        """Snapshot used by the status endpoint."""
        current = self._now(now)
        return {
            "timezone": str(self.tz),
            "local_time": current.astimezone(self.tz).isoformat(),
            "window": f"{self.start_hour:02d}:00-{self.end_hour:02d}:00",
            "sendable": self.is_sendable_now(current),
            "next_sendable_at": self.next_sendable_instant(current).isoformat(),
        }
