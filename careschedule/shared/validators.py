"""Shared validation utilities"""

from collections.abc import Iterable
from datetime import date, datetime, time, timedelta
from typing import Optional

WEEKDAY_NAMES = ("Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday")


def validate_weekdays(weekdays: Optional[Iterable[int]]) -> list[int]:
    """
    Validate a weekday set (0=Sunday .. 6=Saturday).

    Args:
        weekdays: Iterable of weekday numbers, duplicates allowed

    Returns:
        Sorted list of distinct weekday numbers

    Raises:
        ValueError: If the set is empty or holds a value outside 0-6
    """
    if weekdays is None:
        raise ValueError("At least one weekday is required")

    values = set()
    for day in weekdays:
        if isinstance(day, bool) or not isinstance(day, int):
            raise ValueError(f"Weekday must be an integer between 0 and 6, got {day!r}")
        if day < 0 or day > 6:
            raise ValueError(f"Weekday must be between 0 (Sunday) and 6 (Saturday), got {day}")
        values.add(day)

    if not values:
        raise ValueError("At least one weekday is required")
    return sorted(values)


def weekday_name(day_of_week: int) -> str:
    return WEEKDAY_NAMES[day_of_week] if 0 <= day_of_week <= 6 else "Unknown"


def sunday_weekday(day: date) -> int:
    """Weekday number with Sunday as 0"""
    return (day.weekday() + 1) % 7


def week_start(day: date) -> date:
    """Sunday that starts the calendar week containing day"""
    return day - timedelta(days=sunday_weekday(day))


def validate_time_range(start_time: time, end_time: time) -> None:
    """Template slots live inside one day, so the end must come after the start"""
    if end_time <= start_time:
        raise ValueError("End time must be after start time")


def visit_bounds(event_date: date, start_time: time, end_time: time) -> tuple[datetime, datetime]:
    """
    Absolute start/end timestamps for a visit.

    An end time at or before the start time means the visit runs past midnight
    and ends on the following day.
    """
    end_date = event_date
    if end_time <= start_time:
        end_date = event_date + timedelta(days=1)
    return datetime.combine(event_date, start_time), datetime.combine(end_date, end_time)
