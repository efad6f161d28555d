"""Named schedules.

Maps descriptions such as ``"hour"``, ``"weekday"`` or ``"Monday"`` to cron
text, with an optional time of day for the day-level schedules.

Example:
    >>> to_cron("weekday", at="9am")
    '0 9 * * 1-5'
"""

from __future__ import annotations

import re

from flowline.exceptions import ValidationError
from flowline.schedule.cron import parse_cron

KNOWN_PATTERNS: dict[str, str] = {
    # Time units
    "second": "* * * * * *",
    "minute": "* * * * *",
    "hour": "0 * * * *",
    "day": "0 0 * * *",
    "week": "0 0 * * 0",
    "month": "0 0 1 * *",
    "year": "0 0 1 1 *",
    # Days of week
    "sunday": "0 0 * * 0",
    "monday": "0 0 * * 1",
    "tuesday": "0 0 * * 2",
    "wednesday": "0 0 * * 3",
    "thursday": "0 0 * * 4",
    "friday": "0 0 * * 5",
    "saturday": "0 0 * * 6",
    # Common
    "weekday": "0 0 * * 1-5",
    "weekend": "0 0 * * 0,6",
    "midnight": "0 0 * * *",
    "noon": "0 12 * * *",
}

# Schedules that fire more often than daily cannot take a time of day
_SUB_DAILY = {"second", "minute", "hour"}

_TIME_PATTERN = re.compile(r"^(?:at)?(\d{1,2})(?::(\d{2}))?\s*(am|pm)?$")


def parse_time_of_day(text: str) -> tuple[int, int]:
    """Parse ``"9am"``, ``"at5pm"``, ``"9:30am"``, ``"21:15"``, ``"noon"`` or
    ``"midnight"`` into ``(hour, minute)``.

    Raises:
        ValidationError: If the text is not a time of day.
    """
    normalized = text.strip().lower().replace(" ", "")
    if normalized in ("noon", "atnoon"):
        return 12, 0
    if normalized in ("midnight", "atmidnight"):
        return 0, 0

    match = _TIME_PATTERN.match(normalized)
    if match:
        hour = int(match.group(1))
        minute = int(match.group(2) or 0)
        meridiem = match.group(3)
        if meridiem:
            if not 1 <= hour <= 12:
                hour = -1
            elif meridiem == "am":
                hour = 0 if hour == 12 else hour
            else:
                hour = 12 if hour == 12 else hour + 12
        if 0 <= hour <= 23 and 0 <= minute <= 59:
            return hour, minute

    raise ValidationError(
        f"Invalid time of day: {text!r}",
        suggestion="Use forms like '9am', '5:30pm', '21:00', 'noon' or 'midnight'",
        value=text,
    )


def to_cron(description: str, at: str | None = None) -> str:
    """Resolve a schedule description to cron text.

    Args:
        description: A named schedule (case-insensitive) or cron text.
            Cron text is returned unchanged after validation.
        at: Optional time of day for day-level schedules.

    Returns:
        The cron expression.

    Raises:
        ValidationError: If the description is neither a named schedule nor
            valid cron text, or ``at`` is used with a sub-daily schedule.
    """
    key = description.strip().lower()
    pattern = KNOWN_PATTERNS.get(key)

    if pattern is None:
        try:
            parse_cron(description)
        except ValidationError as e:
            raise ValidationError(
                f"Unknown schedule pattern: {description!r}",
                suggestion=f"Use cron text or one of: {', '.join(sorted(KNOWN_PATTERNS))}",
                value=description,
            ) from e
        if at is not None:
            raise ValidationError(
                "A time of day cannot be combined with cron text",
                suggestion="Put the hour and minute in the cron expression instead",
                value=description,
            )
        return description

    if at is None:
        return pattern
    if key in _SUB_DAILY:
        raise ValidationError(
            f"The {key!r} schedule cannot take a time of day",
            value=description,
        )

    hour, minute = parse_time_of_day(at)
    fields = pattern.split()
    fields[0], fields[1] = str(minute), str(hour)
    return " ".join(fields)
