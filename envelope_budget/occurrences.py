"""Occurrence identity and due-date computation for scheduled transactions."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Mapping, Optional, Set, Tuple, Union

from .date_utils import DateLike, format_date, parse_date
from .errors import InvalidInputError, RuleDecodeError
from .models import Occurrence, Schedule
from .recurrence import expand

logger = logging.getLogger(__name__)

OCCURRENCE_ID_RE = re.compile(r"^occ_(?P<scheduled_id>[A-Za-z0-9_-]+)_(?P<date>\d{4}-\d{2}-\d{2})$")


def make_occurrence_id(scheduled_id: str, occurrence_date: DateLike) -> str:
    return f"occ_{scheduled_id}_{format_date(parse_date(occurrence_date))}"


def parse_occurrence_id(occurrence_id: str) -> Tuple[str, str]:
    """Split ``occ_{scheduleId}_{YYYY-MM-DD}`` into its schedule id and date."""
    match = OCCURRENCE_ID_RE.match(str(occurrence_id or "").strip())
    if not match:
        raise InvalidInputError(f"Invalid occurrence id: {occurrence_id}")
    occurrence_date = format_date(parse_date(match.group("date")))
    return match.group("scheduled_id"), occurrence_date


@dataclass
class DueResult:
    occurrences: List[Occurrence] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


def _as_schedule(record: Union[Schedule, Mapping[str, Any]]) -> Schedule:
    if isinstance(record, Schedule):
        return record
    return Schedule.from_row(record)


def decode_schedules(
    records: Iterable[Union[Schedule, Mapping[str, Any]]],
) -> Tuple[List[Schedule], List[str]]:
    """Build schedules from storage rows, skipping rows that fail to decode.

    A skipped row (unreadable rule, malformed dates) is logged and reported
    in the returned warnings so a single corrupt record never hides the rest.
    """
    schedules: List[Schedule] = []
    warnings: List[str] = []
    for record in records:
        try:
            schedules.append(_as_schedule(record))
        except (RuleDecodeError, InvalidInputError) as exc:
            name = record.get("name") if isinstance(record, Mapping) else None
            sched_id = record.get("id") if isinstance(record, Mapping) else None
            message = f"Skipped schedule {name or sched_id}: {exc}"
            logger.warning(message)
            warnings.append(message)
    return schedules, warnings


def due_occurrences(
    schedules: Iterable[Union[Schedule, Mapping[str, Any]]],
    posted: Mapping[str, Set[str]],
    from_date: DateLike,
    to_date: DateLike,
    include_archived: bool = False,
) -> DueResult:
    """Unposted occurrences of every schedule inside ``[from_date, to_date]``.

    ``schedules`` may be :class:`Schedule` objects or raw storage rows; rows
    that fail to decode are skipped with a warning (see
    :func:`decode_schedules`).
    """
    lo, hi = parse_date(from_date), parse_date(to_date)
    if lo > hi:
        raise InvalidInputError("from must be on or before to")

    decoded, warnings = decode_schedules(schedules)
    result = DueResult(warnings=warnings)
    for schedule in decoded:
        if schedule.archived and not include_archived:
            continue

        already = posted.get(schedule.id, set())
        for day in expand(schedule.rule, schedule.start_date, lo, hi, schedule.end_date):
            if day in already:
                continue
            result.occurrences.append(
                Occurrence(
                    occurrence_id=make_occurrence_id(schedule.id, day),
                    scheduled_id=schedule.id,
                    date=day,
                    name=schedule.name,
                    amount=schedule.amount,
                    account_id=schedule.account_id,
                    envelope_id=schedule.envelope_id,
                    payee_name=schedule.payee_name,
                )
            )

    result.occurrences.sort(key=lambda occ: (occ.date, occ.name))
    return result


def split_by_today(occurrences: Iterable[Occurrence], today: DateLike, window_to: Optional[DateLike] = None):
    """Partition occurrences into (overdue, due_soon) relative to ``today``."""
    today_s = format_date(parse_date(today))
    limit = format_date(parse_date(window_to)) if window_to is not None else None
    overdue, due_soon = [], []
    for occ in occurrences:
        if occ.date < today_s:
            overdue.append(occ)
        elif limit is None or occ.date <= limit:
            due_soon.append(occ)
    return overdue, due_soon
