"""
Time-of-day parsing, half-open interval overlap and date bucketing.

Разбор времени HH:MM, проверка пересечения интервалов [start, end) и
определение, относится ли дата к сегодняшнему или завтрашнему дню.
"""

from __future__ import annotations

import logging
import re
from datetime import date, timedelta
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)


_TIME_RE = re.compile(r"^\s*(\d{1,2}):(\d{2})\s*$")
_DATE_RE = re.compile(r"^\s*(\d{4})-(\d{1,2})-(\d{1,2})(?:[T ].*)?\s*$")


class MalformedTimeError(ValueError):
    """Raised when a time of day is not ``HH:MM``."""


class MalformedDateError(ValueError):
    """Raised when a calendar date is not ``YYYY-MM-DD``."""


class Bucket(str, Enum):
    TODAY = "today"
    TOMORROW = "tomorrow"
    NONE = "none"


def to_minutes(value: str) -> int:
    """Convert ``HH:MM`` to minutes since midnight (0..1439)."""
    match = _TIME_RE.match(value or "")
    if not match:
        raise MalformedTimeError(f"Invalid time format: {value!r}")
    hours, minutes = int(match.group(1)), int(match.group(2))
    if hours > 23 or minutes > 59:
        raise MalformedTimeError(f"Invalid time value: {value!r}")
    return hours * 60 + minutes


def overlaps(a_start: int, a_end: int, b_start: int, b_end: int) -> bool:
    """
    Return True if half-open intervals ``[a_start, a_end)`` and ``[b_start, b_end)`` overlap.

    Starting inside, ending inside and enclosing the other interval all reduce
    to this one check; touching edges do not overlap.
    """
    return a_start < b_end and b_start < a_end


def normalize_date(value: str) -> str:
    """Return ``YYYY-MM-DD`` for ``YYYY-M-D`` style input (a time suffix is ignored)."""
    match = _DATE_RE.match(value or "")
    if not match:
        raise MalformedDateError(f"Invalid date format: {value!r}")
    year, month, day = (int(part) for part in match.groups())
    try:
        return date(year, month, day).isoformat()
    except ValueError as exc:
        raise MalformedDateError(f"Invalid date value: {value!r}") from exc


def temporal_bucket(value: str, today: Optional[date] = None) -> Bucket:
    """
    Classify a date string relative to ``today``.

    Malformed dates are logged and treated as not relevant instead of raising,
    so one bad record only loses its own notification.
    """
    today = today or date.today()
    try:
        normalized = normalize_date(value)
    except MalformedDateError as e:
        logger.warning("Skipping date relevance check: %s", e)
        return Bucket.NONE

    if normalized == today.isoformat():
        return Bucket.TODAY
    if normalized == (today + timedelta(days=1)).isoformat():
        return Bucket.TOMORROW
    return Bucket.NONE


__all__ = [
    "Bucket",
    "MalformedDateError",
    "MalformedTimeError",
    "normalize_date",
    "overlaps",
    "temporal_bucket",
    "to_minutes",
]
