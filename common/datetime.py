"""Datetime helpers shared by the ledger packages.

Every ledger operation receives its "as of" instant from the caller. These
helpers normalise whatever the caller hands in (ISO-8601 strings, aware or
naive datetimes) to the single representation the storage layer uses: naive
UTC datetimes.

    parse_iso8601(s)      -> aware UTC datetime
    to_utc_naive(value)   -> naive UTC datetime for persistence
    add_days / add_months -> calendar arithmetic (dateutil.relativedelta)
    day_bounds(value)     -> [start, end) of the UTC day containing value
    elapsed_days(a, b)    -> whole days between two instants, rounded up
"""
from __future__ import annotations

import datetime as _dt
import math
from typing import Tuple, Union

from dateutil.parser import isoparse as _isoparse
from dateutil.relativedelta import relativedelta

__all__ = [
    "parse_iso8601",
    "to_utc_naive",
    "add_days",
    "add_months",
    "day_bounds",
    "elapsed_days",
]

DateLike = Union[str, _dt.datetime]


def _ensure_utc(dt: _dt.datetime) -> _dt.datetime:
    """Return *dt* converted to UTC and TZ-aware."""
    if dt.tzinfo is None or dt.tzinfo.utcoffset(dt) is None:
        # naive → assume already UTC
        return dt.replace(tzinfo=_dt.timezone.utc)
    return dt.astimezone(_dt.timezone.utc)


def parse_iso8601(value: DateLike) -> _dt.datetime:
    """Parse *value* into a timezone-aware UTC datetime.

    Accepts ISO-8601 strings or datetime objects. If *value* is already a
    datetime, it will be normalised to UTC.
    """
    if isinstance(value, _dt.datetime):
        return _ensure_utc(value)

    if not isinstance(value, str):
        raise TypeError("parse_iso8601 expects str or datetime, got " + type(value).__name__)

    try:
        dt = _isoparse(value)
    except ValueError as exc:
        raise ValueError(f"invalid ISO-8601 datetime: {value}") from exc

    return _ensure_utc(dt)


def to_utc_naive(value: DateLike) -> _dt.datetime:
    """Normalise *value* to a naive datetime expressed in UTC."""
    return parse_iso8601(value).replace(tzinfo=None)


def add_days(value: DateLike, days: int) -> _dt.datetime:
    return to_utc_naive(value) + _dt.timedelta(days=days)


def add_months(value: DateLike, months: int) -> _dt.datetime:
    """Calendar-aware month arithmetic (Jan 31 + 1 month = Feb 28/29)."""
    return to_utc_naive(value) + relativedelta(months=months)


def day_bounds(value: DateLike) -> Tuple[_dt.datetime, _dt.datetime]:
    start = to_utc_naive(value).replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + _dt.timedelta(days=1)


def elapsed_days(start: DateLike, end: DateLike) -> int:
    """Whole days from *start* to *end*, partial days counted as full ones.

    Negative spans are clamped to zero.
    """
    delta = to_utc_naive(end) - to_utc_naive(start)
    days = math.ceil(delta.total_seconds() / 86_400)
    return max(days, 0)
