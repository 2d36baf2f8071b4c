"""Dataclasses for scheduled transactions and their occurrences."""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from typing import Any, Dict, Mapping, Optional

from .date_utils import parse_date
from .errors import InvalidInputError
from .money import ensure_minor_units
from .rules import Rule, decode_rule


@dataclass(frozen=True)
class Schedule:
    id: str
    name: str
    account_id: str
    amount: int
    rule: Rule
    start_date: str
    end_date: Optional[str] = None
    envelope_id: Optional[str] = None
    payee_name: Optional[str] = None
    memo: Optional[str] = None
    archived: bool = False

    def __post_init__(self) -> None:
        ensure_minor_units(self.amount)
        start = parse_date(self.start_date)
        if self.end_date is not None and parse_date(self.end_date) < start:
            raise InvalidInputError("end_date must be on or after start_date")

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Schedule":
        """Build a schedule from a ``scheduled_transactions`` row.

        Raises ``RuleDecodeError`` when the stored rule JSON is corrupt.
        """
        def opt(key: str) -> Any:
            value = row.get(key)
            if value is None or value == "" or (isinstance(value, float) and math.isnan(value)):
                return None
            return value

        return cls(
            id=row["id"],
            name=row["name"],
            account_id=row["account_id"],
            amount=int(row["amount"]),
            rule=decode_rule(row["rule_json"]),
            start_date=row["start_date"],
            end_date=opt("end_date"),
            envelope_id=opt("envelope_id"),
            payee_name=opt("payee_name"),
            memo=opt("memo"),
            archived=bool(opt("archived") or False),
        )


@dataclass(frozen=True)
class Occurrence:
    occurrence_id: str
    scheduled_id: str
    date: str
    name: str
    amount: int
    account_id: str
    envelope_id: Optional[str] = None
    payee_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        return {
            "occurrenceId": data["occurrence_id"],
            "scheduledId": data["scheduled_id"],
            "date": data["date"],
            "name": data["name"],
            "amount": data["amount"],
            "accountId": data["account_id"],
            "envelopeId": data["envelope_id"],
            "payeeName": data["payee_name"],
        }
