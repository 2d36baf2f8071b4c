"""Recurrence rule schemas.

Rules are stored as JSON on scheduled transactions, e.g.
``{"freq": "monthly", "interval": 1, "monthDay": "last"}``. They are decoded
once at the storage boundary into one of four pydantic models so the
recurrence engine never sees raw JSON.
"""

from __future__ import annotations

import json
from typing import Annotated, Any, List, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator, model_validator

from .errors import RuleDecodeError

WEEKDAYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")

Weekday = Literal["mon", "tue", "wed", "thu", "fri", "sat", "sun"]
MonthDay = Union[Literal["last"], int]


class _RuleBase(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    interval: int = Field(1, ge=1)


def _check_month_day(v):
    if v == "last":
        return v
    if isinstance(v, bool) or not isinstance(v, int) or not 1 <= v <= 31:
        raise ValueError("monthDay must be 1..31 or 'last'")
    return v


class DailyRule(_RuleBase):
    freq: Literal["daily"] = "daily"


class WeeklyRule(_RuleBase):
    freq: Literal["weekly"] = "weekly"
    weekdays: List[Weekday] = Field(..., min_length=1)

    @model_validator(mode="before")
    @classmethod
    def accept_single_weekday(cls, data: Any) -> Any:
        """Older rules stored a single ``weekday`` key."""
        if isinstance(data, dict) and "weekdays" not in data and "weekday" in data:
            data = dict(data)
            data["weekdays"] = [data.pop("weekday")]
        return data

    @field_validator("weekdays", mode="before")
    @classmethod
    def normalize_weekdays(cls, v):
        if isinstance(v, str):
            v = v.split(",")
        if isinstance(v, (list, tuple)):
            return [str(day).strip().lower() for day in v if str(day).strip()]
        return v

    @field_validator("weekdays")
    @classmethod
    def dedupe_weekdays(cls, v):
        return sorted(set(v), key=WEEKDAYS.index)


class MonthlyRule(_RuleBase):
    freq: Literal["monthly"] = "monthly"
    month_day: MonthDay = Field(..., alias="monthDay")

    @field_validator("month_day")
    @classmethod
    def validate_month_day(cls, v):
        return _check_month_day(v)


class YearlyRule(_RuleBase):
    freq: Literal["yearly"] = "yearly"
    month: int = Field(..., ge=1, le=12)
    month_day: MonthDay = Field(..., alias="monthDay")

    @field_validator("month_day")
    @classmethod
    def validate_month_day(cls, v):
        return _check_month_day(v)


Rule = Annotated[
    Union[DailyRule, WeeklyRule, MonthlyRule, YearlyRule],
    Field(discriminator="freq"),
]

_RULE_ADAPTER: TypeAdapter = TypeAdapter(Rule)


def decode_rule(raw: Any) -> Rule:
    """Decode a stored rule (JSON text or dict) into a rule model.

    Raises:
        RuleDecodeError: If the JSON is malformed, ``freq`` is unknown or a
            field is out of range.
    """
    if isinstance(raw, (DailyRule, WeeklyRule, MonthlyRule, YearlyRule)):
        return raw
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise RuleDecodeError(f"Rule is not valid JSON: {exc.msg}") from None
    if not isinstance(raw, dict):
        raise RuleDecodeError("Rule must be a JSON object")
    try:
        return _RULE_ADAPTER.validate_python(raw)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'rule'}: {err['msg']}" for err in exc.errors()
        )
        raise RuleDecodeError(f"Invalid rule: {problems}") from None


def encode_rule(rule: Rule) -> str:
    """Serialize a rule to its stored JSON form (camelCase keys)."""
    return json.dumps(rule.model_dump(by_alias=True), separators=(",", ":"))


def describe_rule(rule: Rule) -> str:
    """Short human description, e.g. ``every 2 weeks on mon,thu``."""
    unit = {"daily": "day", "weekly": "week", "monthly": "month", "yearly": "year"}[rule.freq]
    head = f"every {unit}" if rule.interval == 1 else f"every {rule.interval} {unit}s"
    if isinstance(rule, WeeklyRule):
        return f"{head} on {','.join(rule.weekdays)}"
    if isinstance(rule, MonthlyRule):
        return f"{head} on day {rule.month_day}"
    if isinstance(rule, YearlyRule):
        return f"{head} on {rule.month:02d}/{rule.month_day}"
    return head
