"""
Recurrence expansion for ad-hoc schedule events.

A repeat rule is a pattern (weekly on a weekday set, or monthly on the same
day of month) plus exactly one end condition (an end date or an occurrence
count). Expansion is pure: the same inputs always give the same dates.
"""

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Optional, Union

from dateutil.relativedelta import relativedelta

from ...config import MAX_GENERATED_OCCURRENCES
from ...exceptions import ValidationError
from ...shared.validators import validate_weekdays, week_start

logger = logging.getLogger(__name__)

WEEK = "WEEK"
MONTH = "MONTH"


@dataclass(frozen=True)
class WeeklyRepeat:
    """Every `interval` weeks on each weekday in days_of_week (0=Sunday)"""

    interval: int
    days_of_week: tuple[int, ...]


@dataclass(frozen=True)
class MonthlyRepeat:
    """Every `interval` months on the initial date's day of month"""

    interval: int


@dataclass(frozen=True)
class EndByDate:
    end_date: date


@dataclass(frozen=True)
class EndAfterCount:
    occurrences: int


RepeatPattern = Union[WeeklyRepeat, MonthlyRepeat]
EndCondition = Union[EndByDate, EndAfterCount]


@dataclass(frozen=True)
class RepeatRule:
    pattern: RepeatPattern
    end: EndCondition


def build_repeat_rule(
    interval: Optional[int],
    frequency: Optional[str],
    days_of_week: Optional[list[int]] = None,
    end_date: Optional[date] = None,
    occurrences: Optional[int] = None,
) -> RepeatRule:
    """
    Turn the flat wire form of a repeat configuration into a RepeatRule.

    Raises:
        ValidationError: with one entry per offending field
    """
    errors = []

    if interval is None or interval < 1:
        errors.append({"field": "interval", "message": "Interval must be at least 1"})

    freq = (frequency or "").upper()
    pattern: Optional[RepeatPattern] = None
    if freq == WEEK:
        try:
            weekdays = validate_weekdays(days_of_week)
        except ValueError as e:
            errors.append({"field": "daysOfWeek", "message": str(e)})
        else:
            pattern = WeeklyRepeat(interval=interval or 1, days_of_week=tuple(weekdays))
    elif freq == MONTH:
        pattern = MonthlyRepeat(interval=interval or 1)
    else:
        errors.append({"field": "frequency", "message": "Frequency must be WEEK or MONTH"})

    end: Optional[EndCondition] = None
    if end_date is not None and occurrences is not None:
        errors.append({"field": "endDate", "message": "Set either endDate or occurrences, not both"})
    elif end_date is None and occurrences is None:
        errors.append({"field": "endDate", "message": "Either endDate or occurrences is required"})
    elif occurrences is not None:
        if occurrences < 1:
            errors.append({"field": "occurrences", "message": "Occurrences must be at least 1"})
        elif occurrences > MAX_GENERATED_OCCURRENCES:
            errors.append(
                {
                    "field": "occurrences",
                    "message": f"Occurrences cannot exceed {MAX_GENERATED_OCCURRENCES}",
                }
            )
        else:
            end = EndAfterCount(occurrences=occurrences)
    else:
        end = EndByDate(end_date=end_date)

    if errors:
        raise ValidationError("Invalid repeat configuration", errors=errors)
    return RepeatRule(pattern=pattern, end=end)


def _accept(candidate: date, end: EndCondition, emitted: int) -> bool:
    """False once the end condition has been reached"""
    if isinstance(end, EndByDate):
        return candidate <= end.end_date
    return emitted < end.occurrences


def _check_limit(emitted: int, limit: int) -> None:
    if emitted > limit:
        logger.warning(f"Repeat configuration expands past the {limit} occurrence limit")
        raise ValidationError(
            f"Repeat configuration produces more than {limit} occurrences",
            field="endDate",
        )


def _expand_weekly(initial: date, pattern: WeeklyRepeat, end: EndCondition, limit: int) -> list[date]:
    dates: list[date] = []
    week = week_start(initial)
    while True:
        for dow in pattern.days_of_week:
            candidate = week + timedelta(days=dow)
            # The first, partial week only contributes days on/after the initial date
            if candidate < initial:
                continue
            if not _accept(candidate, end, len(dates)):
                return dates
            dates.append(candidate)
            _check_limit(len(dates), limit)
        week += timedelta(weeks=pattern.interval)


def _expand_monthly(initial: date, pattern: MonthlyRepeat, end: EndCondition, limit: int) -> list[date]:
    dates: list[date] = []
    step = 0
    while True:
        # Always offset from the initial date so a clamped 31st does not drift to the 28th
        candidate = initial + relativedelta(months=step * pattern.interval)
        if not _accept(candidate, end, len(dates)):
            return dates
        dates.append(candidate)
        _check_limit(len(dates), limit)
        step += 1


def expand_dates(
    initial: date, rule: Optional[RepeatRule], limit: int = MAX_GENERATED_OCCURRENCES
) -> list[date]:
    """
    Concrete occurrence dates for an initial date and optional repeat rule.

    Returns an ascending list without duplicates.
    """
    if rule is None:
        return [initial]

    if isinstance(rule.end, EndByDate) and rule.end.end_date < initial:
        raise ValidationError("End date must be on or after the event date", field="endDate")

    if isinstance(rule.pattern, WeeklyRepeat):
        dates = _expand_weekly(initial, rule.pattern, rule.end, limit)
    else:
        dates = _expand_monthly(initial, rule.pattern, rule.end, limit)

    return sorted(set(dates))
