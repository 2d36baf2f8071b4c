"""Calendar arithmetic shared by the ledger, recurrence and target engines.

Months are ``YYYY-MM`` strings, calendar dates are ``YYYY-MM-DD`` strings or
``datetime.date`` objects, and instants are ISO-8601 UTC strings such as
``2026-02-01T00:00:00.000Z``. All month boundaries are computed in UTC.
"""

from __future__ import annotations

import calendar
import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Union

import pandas as pd

from .errors import InvalidInputError

MONTH_RE = re.compile(r"^\d{4}-\d{2}$")
DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

DateLike = Union[str, date]


@dataclass(frozen=True)
class MonthBounds:
    """Half-open UTC interval ``[start, end)`` covering one calendar month."""

    month: str
    year: int
    month_number: int
    start: date
    end: date

    @property
    def start_iso(self) -> str:
        return date_to_instant(self.start)

    @property
    def end_iso(self) -> str:
        return date_to_instant(self.end)


def parse_month(value: str) -> MonthBounds:
    """Parse a strict ``YYYY-MM`` string into its month bounds.

    Raises
    ------
    InvalidInputError
        If the string is not ``YYYY-MM`` or the month is outside 1..12.
    """
    if not isinstance(value, str) or not MONTH_RE.match(value):
        raise InvalidInputError("Month must be in YYYY-MM format")
    year, month = int(value[:4]), int(value[5:7])
    if not 1 <= month <= 12:
        raise InvalidInputError(f"Invalid month: {value}")
    start = date(year, month, 1)
    next_year, next_month = divmod(month_index_of(year, month) + 1, 12)
    end = date(next_year, next_month + 1, 1)
    return MonthBounds(month=value, year=year, month_number=month, start=start, end=end)


def parse_date(value: DateLike) -> date:
    """Parse a ``YYYY-MM-DD`` string (or pass a ``date`` through)."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not DATE_RE.match(value):
        raise InvalidInputError(f"Date must be in YYYY-MM-DD format: {value!r}")
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise InvalidInputError(f"Invalid date: {value}") from None


def format_date(value: date) -> str:
    return value.isoformat()


def month_index_of(year: int, month: int) -> int:
    return year * 12 + (month - 1)


def month_index(month: str) -> int:
    bounds = parse_month(month)
    return month_index_of(bounds.year, bounds.month_number)


def month_from_index(index: int) -> str:
    year, month0 = divmod(index, 12)
    return f"{year:04d}-{month0 + 1:02d}"


def add_months(month: str, delta: int) -> str:
    return month_from_index(month_index(month) + delta)


def month_of(value: DateLike) -> str:
    d = parse_date(value)
    return f"{d.year:04d}-{d.month:02d}"


def days_in_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def months_between_inclusive(from_month: str, to_month: str) -> int:
    """Count months in ``[from_month, to_month]``; may be zero or negative."""
    return month_index(to_month) - month_index(from_month) + 1


def add_days(value: DateLike, days: int) -> date:
    return parse_date(value) + timedelta(days=days)


def date_to_instant(value: DateLike) -> str:
    """UTC midnight of a calendar date as an ISO-8601 instant."""
    return f"{format_date(parse_date(value))}T00:00:00.000Z"


def to_instant(value: DateLike) -> str:
    """Normalize a date or datetime string to an ISO-8601 UTC instant.

    Bare dates map to UTC midnight; naive datetimes are taken as UTC.
    """
    if isinstance(value, date) and not isinstance(value, datetime):
        return date_to_instant(value)
    if isinstance(value, str) and DATE_RE.match(value):
        return date_to_instant(value)
    try:
        ts = pd.Timestamp(value)
    except (ValueError, TypeError):
        raise InvalidInputError(f"Invalid timestamp: {value!r}") from None
    if pd.isna(ts):
        raise InvalidInputError(f"Invalid timestamp: {value!r}")
    ts = ts.tz_localize("UTC") if ts.tzinfo is None else ts.tz_convert("UTC")
    return ts.strftime("%Y-%m-%dT%H:%M:%S.") + f"{ts.microsecond // 1000:03d}Z"


def ceil_div(numerator: int, denominator: int) -> int:
    if denominator <= 0:
        raise InvalidInputError("ceil_div denominator must be > 0")
    return -(-numerator // denominator)
