"""Expand recurrence rules into concrete dates.

Every frequency is phase-aligned to the schedule's start date, and the
expansion jumps straight to the first aligned point inside the query window
instead of walking forward from the start. This keeps the cost proportional
to the number of dates returned, so long-lived schedules stay cheap to query.
"""

from __future__ import annotations

from datetime import date, timedelta
from typing import Iterator, List, Optional

from .date_utils import DateLike, days_in_month, format_date, month_index_of, parse_date
from .rules import WEEKDAYS, DailyRule, MonthlyRule, WeeklyRule, YearlyRule, decode_rule


def _ceil_steps(offset_days: int, step_days: int) -> int:
    if offset_days <= 0:
        return 0
    return -(-offset_days // step_days)


def _resolve_day(year: int, month: int, month_day) -> int:
    dim = days_in_month(year, month)
    if month_day == "last":
        return dim
    return min(int(month_day), dim)


def _fixed_step(anchor: date, step_days: int, lo: date, hi: date) -> Iterator[date]:
    current = anchor + timedelta(days=_ceil_steps((lo - anchor).days, step_days) * step_days)
    step = timedelta(days=step_days)
    while current <= hi:
        yield current
        current += step


def _daily(rule: DailyRule, start: date, lo: date, hi: date) -> Iterator[date]:
    return _fixed_step(start, rule.interval, lo, hi)


def _weekly(rule: WeeklyRule, start: date, lo: date, hi: date) -> List[date]:
    found = set()
    for weekday in rule.weekdays:
        # first such weekday on or after the start date
        anchor = start + timedelta(days=(WEEKDAYS.index(weekday) - start.weekday()) % 7)
        found.update(_fixed_step(anchor, 7 * rule.interval, lo, hi))
    return sorted(found)


def _monthly(rule: MonthlyRule, start: date, lo: date, hi: date) -> Iterator[date]:
    start_idx = month_index_of(start.year, start.month)
    idx = max(start_idx, month_index_of(lo.year, lo.month))
    idx += (-(idx - start_idx)) % rule.interval
    while True:
        year, month0 = divmod(idx, 12)
        occurrence = date(year, month0 + 1, _resolve_day(year, month0 + 1, rule.month_day))
        if occurrence > hi:
            return
        if occurrence >= lo:
            yield occurrence
        idx += rule.interval


def _yearly(rule: YearlyRule, start: date, lo: date, hi: date) -> Iterator[date]:
    year = max(start.year, lo.year)
    year += (-(year - start.year)) % rule.interval
    while True:
        occurrence = date(year, rule.month, _resolve_day(year, rule.month, rule.month_day))
        if occurrence > hi:
            return
        if occurrence >= lo:
            yield occurrence
        year += rule.interval


def expand(
    rule,
    start: DateLike,
    from_date: DateLike,
    to_date: DateLike,
    end: Optional[DateLike] = None,
) -> List[str]:
    """List the occurrence dates of ``rule`` inside ``[from_date, to_date]``.

    Args:
        rule: A decoded rule model, or stored rule JSON / dict.
        start: Schedule start date; also the phase anchor for every frequency.
        from_date: First day of the query window (inclusive).
        to_date: Last day of the query window (inclusive).
        end: Optional inclusive schedule end date.

    Returns:
        Ascending, distinct ``YYYY-MM-DD`` strings. Empty when the window and
        the schedule's lifetime do not overlap.

    Example:
        >>> expand({"freq": "weekly", "weekdays": ["mon"]}, "2026-03-02", "2026-03-01", "2026-03-15")
        ['2026-03-02', '2026-03-09']
    """
    rule = decode_rule(rule)
    start_d = parse_date(start)
    lo = max(start_d, parse_date(from_date))
    hi = parse_date(to_date)
    if end is not None:
        hi = min(hi, parse_date(end))
    if lo > hi:
        return []

    if isinstance(rule, DailyRule):
        dates = _daily(rule, start_d, lo, hi)
    elif isinstance(rule, WeeklyRule):
        dates = _weekly(rule, start_d, lo, hi)
    elif isinstance(rule, MonthlyRule):
        dates = _monthly(rule, start_d, lo, hi)
    else:
        dates = _yearly(rule, start_d, lo, hi)
    return [format_date(d) for d in dates]


def is_occurrence(rule, start: DateLike, candidate: DateLike, end: Optional[DateLike] = None) -> bool:
    """Whether ``candidate`` is one of the rule's dates."""
    day = parse_date(candidate)
    return format_date(day) in expand(rule, start, day, day, end)
