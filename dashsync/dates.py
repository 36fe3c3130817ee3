"""Ordered date interpretation strategies for time-series grouping.

Source timestamps arrive in mixed formats. Each strategy turns a raw field
value into a calendar day key (``YYYY-MM-DD``) or ``None``; the aggregation
engine tries them in order and keeps the first one that produces at least
one group.
"""

import re
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Callable, Iterable, List, Optional, Tuple, TypeVar

DATE_KEYWORDS = (
    "created_at",
    "updated_at",
    "date",
    "timestamp",
    "time",
    "created",
    "modified",
)

_ISO_T = re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})T(\d{1,2}):(\d{1,2}):(\d{1,2})")
_ISO_SPACE = re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2}) (\d{1,2}):(\d{1,2}):(\d{1,2})")
_DIGITS = re.compile(r"^[0-9]+$")

T = TypeVar("T")


def is_date_column(name: Optional[str]) -> bool:
    if not name:
        return False
    lowered = name.lower()
    return any(keyword in lowered for keyword in DATE_KEYWORDS)


def _day_from_match(pattern: "re.Pattern[str]", value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    match = pattern.match(value)
    if not match:
        return None
    year, month, day, hour, minute, second = (int(part) for part in match.groups())
    try:
        parsed = datetime(year, month, day, hour, minute, second)
    except ValueError:
        return None
    return parsed.date().isoformat()


def parse_iso_t(value: Optional[str]) -> Optional[str]:
    return _day_from_match(_ISO_T, value)


def parse_iso_space(value: Optional[str]) -> Optional[str]:
    return _day_from_match(_ISO_SPACE, value)


def parse_epoch_seconds(value: Optional[str]) -> Optional[str]:
    if value is None or not _DIGITS.match(value):
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc).date().isoformat()
    except (OverflowError, OSError, ValueError):
        return None


def raw_prefix(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return value[:10]


@dataclass(frozen=True)
class DateStrategy:
    name: str
    sql_function: str
    parse: Callable[[Optional[str]], Optional[str]]


DATE_STRATEGIES: Tuple[DateStrategy, ...] = (
    DateStrategy("iso_t", "ds_date_iso_t", parse_iso_t),
    DateStrategy("iso_space", "ds_date_iso_space", parse_iso_space),
    DateStrategy("epoch_seconds", "ds_date_epoch", parse_epoch_seconds),
    DateStrategy("raw_prefix", "ds_date_raw", raw_prefix),
)


def first_success(
    strategies: Iterable[DateStrategy],
    attempt: Callable[[DateStrategy], List[T]],
) -> Tuple[Optional[DateStrategy], List[T]]:
    """Run ``attempt`` per strategy and return the first non-empty outcome."""
    for strategy in strategies:
        rows = attempt(strategy)
        if rows:
            return strategy, rows
    return None, []


def display_label(day_key: str) -> str:
    """Short display form of a day key, e.g. ``Jan 5``; other keys pass through."""
    try:
        parsed = date.fromisoformat(day_key)
    except ValueError:
        return day_key
    return f"{parsed.strftime('%b')} {parsed.day}"
