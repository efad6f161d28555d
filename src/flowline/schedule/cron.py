# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Cron expression parsing and evaluation.

Supports standard 5-field expressions (``minute hour day-of-month month
day-of-week``) and 6-field expressions with a leading seconds field.

Each field accepts ``*``, single values, ``a-b`` ranges, ``a,b,c`` lists and
``*/n`` / ``a-b/n`` steps. Month and day-of-week fields also accept
case-insensitive three-letter names (``Jan``..``Dec``, ``Sun``..``Sat``).
Day-of-week runs 0-6 with Sunday = 0.

When both day-of-month and day-of-week are restricted, a date matches if it
satisfies either of them (standard cron OR semantics).

Example:
    >>> cron = parse_cron("*/15 9-17 * * mon-fri")
    >>> cron.minutes
    (0, 15, 30, 45)
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta

from flowline.exceptions import ValidationError

logger = logging.getLogger(__name__)

DAY_NAMES = {"sun": 0, "mon": 1, "tue": 2, "wed": 3, "thu": 4, "fri": 5, "sat": 6}

MONTH_NAMES = {
    "jan": 1,
    "feb": 2,
    "mar": 3,
    "apr": 4,
    "may": 5,
    "jun": 6,
    "jul": 7,
    "aug": 8,
    "sep": 9,
    "oct": 10,
    "nov": 11,
    "dec": 12,
}

# How far ahead get_next_cron_date looks before giving up
SEARCH_HORIZON_YEARS = 10

_VALUE_PATTERN = re.compile(r"^(\d+|[a-z]{3})$", re.IGNORECASE)


@dataclass(frozen=True)
class _FieldSpec:
    name: str
    minimum: int
    maximum: int
    names: dict[str, int] | None = None


_SECONDS = _FieldSpec("second", 0, 59)
_MINUTES = _FieldSpec("minute", 0, 59)
_HOURS = _FieldSpec("hour", 0, 23)
_DAYS_OF_MONTH = _FieldSpec("day-of-month", 1, 31)
_MONTHS = _FieldSpec("month", 1, 12, MONTH_NAMES)
_DAYS_OF_WEEK = _FieldSpec("day-of-week", 0, 6, DAY_NAMES)


@dataclass(frozen=True)
class ParsedCron:
    """A parsed cron expression.

    Every value tuple is sorted and free of duplicates. For 5-field
    expressions ``seconds`` is ``(0,)`` and ``has_seconds`` is False.
    """

    seconds: tuple[int, ...]
    minutes: tuple[int, ...]
    hours: tuple[int, ...]
    days_of_month: tuple[int, ...]
    months: tuple[int, ...]
    days_of_week: tuple[int, ...]
    day_of_month_wildcard: bool
    day_of_week_wildcard: bool
    has_seconds: bool = False


def _invalid(expression: str, detail: str) -> ValidationError:
    return ValidationError(
        f"Invalid cron expression {expression!r}: {detail}",
        suggestion="Use 5 fields (minute hour day month weekday) or 6 with leading seconds",
        value=expression,
    )


def _parse_value(token: str, field_spec: _FieldSpec, expression: str) -> int:
    if not _VALUE_PATTERN.match(token):
        raise _invalid(expression, f"bad {field_spec.name} value {token!r}")
    if token.isdigit():
        value = int(token)
    elif field_spec.names and token.lower() in field_spec.names:
        value = field_spec.names[token.lower()]
    else:
        raise _invalid(expression, f"unknown {field_spec.name} name {token!r}")
    if not field_spec.minimum <= value <= field_spec.maximum:
        raise _invalid(
            expression,
            f"{field_spec.name} value {value} out of range "
            f"{field_spec.minimum}-{field_spec.maximum}",
        )
    return value


def _parse_field(text: str, field_spec: _FieldSpec, expression: str) -> tuple[int, ...]:
    values: set[int] = set()
    for part in text.split(","):
        if not part:
            raise _invalid(expression, f"empty list item in {field_spec.name} field")

        range_text, _, step_text = part.partition("/")
        step = 1
        if step_text or part.endswith("/"):
            if not step_text.isdigit() or int(step_text) == 0:
                raise _invalid(expression, f"bad step {step_text!r} in {field_spec.name} field")
            step = int(step_text)

        if range_text == "*":
            start, end = field_spec.minimum, field_spec.maximum
        elif "-" in range_text:
            low, _, high = range_text.partition("-")
            start = _parse_value(low, field_spec, expression)
            end = _parse_value(high, field_spec, expression)
            if start > end:
                raise _invalid(
                    expression, f"reversed range {range_text!r} in {field_spec.name} field"
                )
        else:
            start = _parse_value(range_text, field_spec, expression)
            # "5/15" means every 15 starting at 5
            end = field_spec.maximum if step_text else start

        values.update(range(start, end + 1, step))
    return tuple(sorted(values))


def parse_cron(expression: str) -> ParsedCron:
    """Parse a 5- or 6-field cron expression.

    Args:
        expression: The cron text.

    Returns:
        The parsed expression.

    Raises:
        ValidationError: If the field count is wrong, a value is out of
            range, or the syntax is not recognized.
    """
    fields = expression.split()
    if len(fields) not in (5, 6):
        raise _invalid(expression, f"expected 5 or 6 fields, got {len(fields)}")

    has_seconds = len(fields) == 6
    if not has_seconds:
        fields = ["0", *fields]
    second, minute, hour, day_of_month, month, day_of_week = fields

    return ParsedCron(
        seconds=_parse_field(second, _SECONDS, expression),
        minutes=_parse_field(minute, _MINUTES, expression),
        hours=_parse_field(hour, _HOURS, expression),
        days_of_month=_parse_field(day_of_month, _DAYS_OF_MONTH, expression),
        months=_parse_field(month, _MONTHS, expression),
        days_of_week=_parse_field(day_of_week, _DAYS_OF_WEEK, expression),
        day_of_month_wildcard=day_of_month == "*",
        day_of_week_wildcard=day_of_week == "*",
        has_seconds=has_seconds,
    )


def _coerce(cron: ParsedCron | str) -> ParsedCron:
    return parse_cron(cron) if isinstance(cron, str) else cron


def _cron_weekday(day: date) -> int:
    """Day of week with Sunday = 0."""
    return (day.weekday() + 1) % 7


def _day_matches(cron: ParsedCron, day: date) -> bool:
    if day.month not in cron.months:
        return False
    dom_matches = day.day in cron.days_of_month
    dow_matches = _cron_weekday(day) in cron.days_of_week
    if cron.day_of_month_wildcard and cron.day_of_week_wildcard:
        return True
    if cron.day_of_month_wildcard:
        return dow_matches
    if cron.day_of_week_wildcard:
        return dom_matches
    return dom_matches or dow_matches


def matches_cron(moment: datetime, cron: ParsedCron | str) -> bool:
    """Check whether ``moment`` matches a cron expression.

    Five-field expressions match at minute granularity, so the seconds of
    ``moment`` are ignored for them.

    Args:
        moment: The date and time to test (naive or aware, read as wall time).
        cron: A parsed expression or cron text.

    Returns:
        True if every field matches.
    """
    cron = _coerce(cron)
    if cron.has_seconds and moment.second not in cron.seconds:
        return False
    return (
        moment.minute in cron.minutes
        and moment.hour in cron.hours
        and _day_matches(cron, moment.date())
    )


def _first_of_next_month(day: date) -> date:
    if day.month == 12:
        return date(day.year + 1, 1, 1)
    return date(day.year, day.month + 1, 1)


def get_next_cron_date(
    cron: ParsedCron | str,
    from_: datetime | None = None,
) -> datetime | None:
    """Find the earliest matching moment strictly after ``from_``.

    The search walks forward one day at a time (skipping whole months that
    cannot match) and then scans that day's allowed hours, minutes and
    seconds, so month lengths and leap years fall out of the calendar.

    Args:
        cron: A parsed expression or cron text.
        from_: Start of the search. Defaults to ``datetime.now()``. The
            result carries the same tzinfo.

    Returns:
        The next matching datetime, or None if nothing matches within
        ``SEARCH_HORIZON_YEARS`` (e.g. ``0 0 31 2 *``).
    """
    cron = _coerce(cron)
    start = from_ if from_ is not None else datetime.now()

    if cron.has_seconds:
        earliest = start.replace(microsecond=0) + timedelta(seconds=1)
    else:
        earliest = start.replace(second=0, microsecond=0) + timedelta(minutes=1)

    day = earliest.date()
    last_year = day.year + SEARCH_HORIZON_YEARS
    while day.year <= last_year:
        if day.month not in cron.months:
            day = _first_of_next_month(day)
            continue
        if _day_matches(cron, day):
            first_day = day == earliest.date()
            for hour in cron.hours:
                if first_day and hour < earliest.hour:
                    continue
                for minute in cron.minutes:
                    for second in cron.seconds:
                        candidate = datetime.combine(
                            day, time(hour, minute, second), tzinfo=start.tzinfo
                        )
                        if candidate >= earliest:
                            return candidate
        day += timedelta(days=1)

    logger.debug("No cron occurrence within %d years of %s", SEARCH_HORIZON_YEARS, start)
    return None


def get_next_cron_ms(cron: ParsedCron | str, from_: datetime | None = None) -> int | None:
    """Milliseconds from ``from_`` until the next occurrence, or None."""
    start = from_ if from_ is not None else datetime.now()
    upcoming = get_next_cron_date(cron, start)
    if upcoming is None:
        return None
    return int((upcoming - start) / timedelta(milliseconds=1))
