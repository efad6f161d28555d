"""Schedule module for Flowline.

This module evaluates cron expressions for external schedulers. It never
fires timers itself.
"""

from flowline.schedule.cron import (
    ParsedCron,
    get_next_cron_date,
    get_next_cron_ms,
    matches_cron,
    parse_cron,
)
from flowline.schedule.patterns import KNOWN_PATTERNS, parse_time_of_day, to_cron

__all__ = [
    "KNOWN_PATTERNS",
    "ParsedCron",
    "get_next_cron_date",
    "get_next_cron_ms",
    "matches_cron",
    "parse_cron",
    "parse_time_of_day",
    "to_cron",
]
