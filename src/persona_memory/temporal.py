"""Temporal expressions in recall queries.

Turns phrases such as "yesterday", "last week", "past 3 days", "on Monday" or
"in March" into a UTC time window. Weeks start on Monday. Month names and
weekdays resolve to their most recent occurrence that is not in the future.
"""

from __future__ import annotations

import calendar
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from .models import ensure_utc

_WEEKDAYS = (
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
    "sunday",
)

_MONTHS = (
    "january",
    "february",
    "march",
    "april",
    "may",
    "june",
    "july",
    "august",
    "september",
    "october",
    "november",
    "december",
)

_TODAY = re.compile(r"\b(?:today|tonight|this (?:morning|afternoon|evening))\b")
_YESTERDAY = re.compile(r"\byesterday\b")
_LAST_WEEK = re.compile(r"\blast week\b")
_THIS_WEEK = re.compile(r"\bthis week\b")
_LAST_MONTH = re.compile(r"\blast month\b")
_THIS_MONTH = re.compile(r"\bthis month\b")
_LAST_N_DAYS = re.compile(r"\b(?:last|past) (\d{1,3}) days?\b")
_WEEKDAY = re.compile(r"\b(" + "|".join(_WEEKDAYS) + r")\b")
_MONTH_DAY = re.compile(
    r"\b(" + "|".join(_MONTHS) + r") (\d{1,2})(?:st|nd|rd|th)?\b"
)
# "may" is too common a verb to count as a month without a day number
_MONTH = re.compile(r"\b(" + "|".join(m for m in _MONTHS if m != "may") + r")\b")


@dataclass(frozen=True, slots=True)
class TimeWindow:
    """Inclusive UTC time range named by a query."""

    start: datetime
    end: datetime
    description: str

    def contains(self, moment: datetime) -> bool:
        return self.start <= ensure_utc(moment) <= self.end


def _day_start(moment: datetime) -> datetime:
    return moment.replace(hour=0, minute=0, second=0, microsecond=0)


def _day_end(moment: datetime) -> datetime:
    return moment.replace(hour=23, minute=59, second=59, microsecond=999999)


def _month_window(year: int, month: int, description: str) -> TimeWindow:
    last_day = calendar.monthrange(year, month)[1]
    start = datetime(year, month, 1, tzinfo=timezone.utc)
    end = _day_end(datetime(year, month, last_day, tzinfo=timezone.utc))
    return TimeWindow(start, end, description)


def _most_recent_year(month: int, day: int, now: datetime) -> int:
    """Year in which month/day last occurred, today included."""
    if (month, day) <= (now.month, now.day):
        return now.year
    return now.year - 1


def parse_temporal(query: str, now: datetime | None = None) -> TimeWindow | None:
    """Detect a temporal expression in ``query`` and return its window.

    Returns None when the query names no time period.
    """
    if not query:
        return None

    text = query.lower()
    now = ensure_utc(now or datetime.now(timezone.utc))
    today = _day_start(now)

    if _TODAY.search(text):
        return TimeWindow(today, _day_end(now), "today")

    if _YESTERDAY.search(text):
        day = today - timedelta(days=1)
        return TimeWindow(day, _day_end(day), "yesterday")

    monday = today - timedelta(days=today.weekday())
    if _LAST_WEEK.search(text):
        start = monday - timedelta(days=7)
        return TimeWindow(start, _day_end(start + timedelta(days=6)), "last week")
    if _THIS_WEEK.search(text):
        return TimeWindow(monday, _day_end(now), "this week")

    if _LAST_MONTH.search(text):
        year, month = (now.year, now.month - 1) if now.month > 1 else (now.year - 1, 12)
        return _month_window(year, month, "last month")
    if _THIS_MONTH.search(text):
        return TimeWindow(today.replace(day=1), _day_end(now), "this month")

    match = _LAST_N_DAYS.search(text)
    if match:
        days = int(match.group(1))
        if days > 0:
            start = today - timedelta(days=days - 1)
            return TimeWindow(start, _day_end(now), f"last {days} days")

    match = _WEEKDAY.search(text)
    if match:
        target = _WEEKDAYS.index(match.group(1))
        day = today - timedelta(days=(today.weekday() - target) % 7)
        return TimeWindow(day, _day_end(day), match.group(1))

    match = _MONTH_DAY.search(text)
    if match:
        month = _MONTHS.index(match.group(1)) + 1
        day_number = int(match.group(2))
        year = _most_recent_year(month, day_number, now)
        if 1 <= day_number <= calendar.monthrange(year, month)[1]:
            day = datetime(year, month, day_number, tzinfo=timezone.utc)
            return TimeWindow(day, _day_end(day), f"{match.group(1)} {day_number}")

    match = _MONTH.search(text)
    if match:
        month = _MONTHS.index(match.group(1)) + 1
        year = now.year if month <= now.month else now.year - 1
        return _month_window(year, month, match.group(1))

    return None
