"""
Parsing and formatting helpers for durations, times of day and weekdays.
"""

import math
import re
from datetime import datetime, time as dtime
from typing import Union

# e.g., "20s", "5m", "1h30m", "2d3h", "90m", "  2h  "
DURATION_RE = re.compile(
    r"(?i)^\s*(?:(\d+)\s*d)?\s*(?:(\d+)\s*h)?\s*(?:(\d+)\s*m)?\s*(?:(\d+(?:\.\d+)?)\s*s)?\s*$"
)

TIME_OF_DAY_RE = re.compile(r"^\s*(\d{1,2}):(\d{2})\s*$")

WEEKDAYS = {
    'mon': 0, 'monday': 0,
    'tue': 1, 'tues': 1, 'tuesday': 1,
    'wed': 2, 'wednesday': 2,
    'thu': 3, 'thur': 3, 'thurs': 3, 'thursday': 3,
    'fri': 4, 'friday': 4,
    'sat': 5, 'saturday': 5,
    'sun': 6, 'sunday': 6,
}

WEEKDAY_NAMES = ['Monday', 'Tuesday', 'Wednesday', 'Thursday', 'Friday', 'Saturday', 'Sunday']


def parse_duration(value: Union[str, int, float]) -> float:
    """
    Parse a duration into seconds.

    Accepts plain numbers (seconds) or strings like '20s', '5m', '1h30m', '2d3h'.
    A bare numeric string is also read as seconds.

    Raises:
        ValueError: on bad input or a non-positive duration
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        total = float(value)
    elif not isinstance(value, str):
        raise ValueError(f"Invalid duration: {value!r}")
    else:
        if not value or not value.strip():
            raise ValueError("duration string is empty")
        stripped = value.strip()
        try:
            total = float(stripped)
        except ValueError:
            m = DURATION_RE.match(stripped)
            if not m or not any(m.groups()):
                raise ValueError(f"Invalid duration format: {value!r}")
            d, h, m_, s_ = m.groups()
            total = 0.0
            if d:  total += int(d) * 86400
            if h:  total += int(h) * 3600
            if m_: total += int(m_) * 60
            if s_: total += float(s_)
    if not math.isfinite(total) or total <= 0:
        raise ValueError("duration must be a finite number of seconds > 0")
    return total


def parse_time_of_day(value: str) -> dtime:
    """Parse 'HH:MM' (24h clock) into a time."""
    m = TIME_OF_DAY_RE.match(value) if isinstance(value, str) else None
    if not m:
        raise ValueError(f"Invalid time of day (expected HH:MM): {value!r}")
    hour, minute = int(m.group(1)), int(m.group(2))
    if hour > 23 or minute > 59:
        raise ValueError(f"Time of day out of range: {value!r}")
    return dtime(hour, minute)


def parse_weekday(value: str) -> int:
    """Parse a weekday name or abbreviation into 0 (Monday) .. 6 (Sunday)."""
    key = value.strip().lower() if isinstance(value, str) else None
    if key not in WEEKDAYS:
        raise ValueError(f"Unknown weekday: {value!r}")
    return WEEKDAYS[key]


def format_duration(seconds: float) -> str:
    """Render seconds compactly, e.g. 5400 -> '1h30m'."""
    if seconds < 60 and seconds != int(seconds):
        return f"{seconds:.2f}s"
    remaining = int(seconds)
    parts = []
    for unit, size in (('d', 86400), ('h', 3600), ('m', 60)):
        if remaining >= size:
            parts.append(f"{remaining // size}{unit}")
            remaining %= size
    if remaining or not parts:
        parts.append(f"{remaining}s")
    return ''.join(parts)


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp as written to the run history."""
    try:
        return datetime.fromisoformat(value)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid ISO timestamp: {value!r}")
