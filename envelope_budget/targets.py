"""Funding targets and underfunded calculation.

Three target semantics are supported:

* ``monthly`` - budget ``amount`` every month.
* ``needed_for_spending`` - top the envelope up so that rollover plus this
  month's budget reaches ``amount``.
* ``by_date`` - accumulate ``target_amount`` by ``target_month``, spreading
  what remains evenly over the months left (current month included).
"""

from __future__ import annotations

import math
from typing import Annotated, Any, Dict, List, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator, model_validator

from .date_utils import ceil_div, month_index, months_between_inclusive, parse_month
from .errors import InvalidInputError
from .ledger import MonthSummary

TARGET_TYPES = ("monthly", "needed_for_spending", "by_date")


class _TargetBase(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)


class MonthlyTarget(_TargetBase):
    type: Literal["monthly"] = "monthly"
    amount: int = Field(..., ge=0)


class NeededForSpendingTarget(_TargetBase):
    type: Literal["needed_for_spending"] = "needed_for_spending"
    amount: int = Field(..., ge=0)


class ByDateTarget(_TargetBase):
    type: Literal["by_date"] = "by_date"
    target_amount: int = Field(..., ge=0, alias="targetAmount")
    target_month: str = Field(..., alias="targetMonth")
    start_month: str = Field(..., alias="startMonth")

    @field_validator("target_month", "start_month")
    @classmethod
    def validate_month(cls, v):
        parse_month(v)
        return v

    @model_validator(mode="after")
    def check_order(self):
        if month_index(self.start_month) > month_index(self.target_month):
            raise ValueError("startMonth must be on or before targetMonth")
        return self


Target = Annotated[
    Union[MonthlyTarget, NeededForSpendingTarget, ByDateTarget],
    Field(discriminator="type"),
]

_TARGET_ADAPTER: TypeAdapter = TypeAdapter(Target)


def decode_target(data: Mapping[str, Any]) -> Target:
    """Validate a target dict (camelCase or snake_case keys)."""
    try:
        return _TARGET_ADAPTER.validate_python(dict(data))
    except ValidationError as exc:
        problems = "; ".join(err["msg"] for err in exc.errors())
        raise InvalidInputError(f"Invalid target: {problems}") from None


def target_from_row(row: Mapping[str, Any]) -> Target:
    """Decode a ``targets`` table row."""

    def value(key: str) -> Any:
        v = row.get(key)
        if isinstance(v, float) and math.isnan(v):
            return None
        return v

    kind = value("type")
    if kind == "by_date":
        return decode_target({
            "type": kind,
            "target_amount": int(value("target_amount") or 0),
            "target_month": value("target_month"),
            "start_month": value("start_month"),
        })
    return decode_target({"type": kind, "amount": int(value("amount") or 0)})


def target_to_dict(target: Target) -> Dict[str, Any]:
    return target.model_dump(by_alias=True)


def underfunded(month: str, target: Target, budgeted_this_month: int, available_start: int) -> int:
    """How much more should be budgeted to ``month`` to satisfy ``target``.

    Args:
        month: The month being evaluated (``YYYY-MM``).
        target: A decoded target.
        budgeted_this_month: Amount already allocated this month.
        available_start: Rollover carried into the month.

    Returns:
        A non-negative integer in minor units.
    """
    if isinstance(target, MonthlyTarget):
        return max(0, target.amount - budgeted_this_month)
    if isinstance(target, NeededForSpendingTarget):
        return max(0, target.amount - (available_start + budgeted_this_month))

    current = month_index(month)
    if current < month_index(target.start_month) or current > month_index(target.target_month):
        return 0
    remaining = max(0, target.target_amount - available_start)
    months_left = months_between_inclusive(month, target.target_month)
    # months_left is 1 in the target month itself, so the whole remainder is due
    return ceil_div(remaining, months_left)


def evaluate_targets(summary: MonthSummary, targets: Mapping[str, Target]) -> List[Dict[str, Any]]:
    """Underfunded items for every envelope in ``summary`` that has a target."""
    items = []
    for env in summary.envelopes:
        target = targets.get(env.envelope_id)
        if target is None:
            continue
        items.append({
            "envelopeId": env.envelope_id,
            "name": env.name,
            "groupName": env.group_name,
            "isHidden": env.is_hidden,
            "target": target_to_dict(target),
            "metrics": {
                "availableStart": env.available_start,
                "budgetedThisMonth": env.budgeted,
            },
            "underfunded": underfunded(summary.month, target, env.budgeted, env.available_start),
        })
    return items


def underfunded_total(items: List[Dict[str, Any]]) -> int:
    return sum(item["underfunded"] for item in items)


def top_underfunded(items: List[Dict[str, Any]], limit: Optional[int] = 5) -> List[Dict[str, Any]]:
    ranked = sorted(items, key=lambda item: item["underfunded"], reverse=True)
    return ranked if limit is None else ranked[:limit]
