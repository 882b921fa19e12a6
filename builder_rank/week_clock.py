"""
Weekly competition calendar. ISO-8601 week numbers + launch window state.

The launch window is Monday 00:00 through Friday 23:59:59.999. Saturday
and Sunday are closed.

One clock, one zone: week numbering and the window checks both read the
calendar fields of `now` converted into the clock's timezone. Naive
datetimes are taken as wall time in that zone. The default zone is UTC;
a deployment that wants local-time windows configures BUILDER_RANK_TZ,
and week numbers then follow the same local calendar.
"""

from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone, tzinfo
from typing import Optional


FRIDAY = 5          # isoweekday(): Monday=1 .. Sunday=7
WINDOW_CLOSE = time(23, 59, 59, 999000)


@dataclass(frozen=True)
class Countdown:
    hours: int
    minutes: int


class WeekClock:

    def __init__(self, tz: tzinfo = timezone.utc):
        self.tz = tz

    def now(self) -> datetime:
        return datetime.now(self.tz)

    def localize(self, now: Optional[datetime] = None) -> datetime:
        """`now` as an aware datetime in the clock's zone."""
        if now is None:
            return self.now()
        if now.tzinfo is None:
            return now.replace(tzinfo=self.tz)
        return now.astimezone(self.tz)

    def current_iso_week(self, now: Optional[datetime] = None) -> str:
        """
        "YYYY-Www". The week-year is the year holding this week's
        Thursday, so 2024-12-31 (a Tuesday) is already 2025-W01.
        """
        week_year, week, _ = self.localize(now).date().isocalendar()
        return f"{week_year:04d}-W{week:02d}"

    def is_competition_window_open(self,
                                   now: Optional[datetime] = None) -> bool:
        return self.localize(now).isoweekday() <= FRIDAY

    def time_until_window_closes(
            self, now: Optional[datetime] = None) -> Optional[Countdown]:
        """
        Hours and minutes left until Friday 23:59:59.999, floored.
        None on weekends (window already closed).
        """
        local = self.localize(now)
        weekday = local.isoweekday()
        if weekday > FRIDAY:
            return None

        friday = local.date() + timedelta(days=FRIDAY - weekday)
        close = datetime.combine(friday, WINDOW_CLOSE, tzinfo=self.tz)
        # Compare in UTC so a DST change mid-week is counted correctly.
        remaining = (close.astimezone(timezone.utc)
                     - local.astimezone(timezone.utc))
        total_minutes = int(remaining.total_seconds() // 60)
        return Countdown(hours=total_minutes // 60,
                         minutes=total_minutes % 60)
