import json

import pytest

from envelope_budget.errors import InvalidInputError, RuleDecodeError
from envelope_budget.rules import MonthlyRule, WeeklyRule, YearlyRule, decode_rule, describe_rule, encode_rule


def test_decode_monthly_rule_from_json():
    rule = decode_rule('{"freq": "monthly", "interval": 1, "monthDay": "last"}')
    assert isinstance(rule, MonthlyRule)
    assert rule.month_day == "last"
    assert rule.interval == 1


def test_weekly_weekdays_are_deduplicated_and_ordered():
    rule = decode_rule({"freq": "weekly", "weekdays": ["fri", "mon", "fri"]})
    assert isinstance(rule, WeeklyRule)
    assert rule.weekdays == ["mon", "fri"]

    from_text = decode_rule({"freq": "weekly", "weekdays": "wed, mon"})
    assert from_text.weekdays == ["mon", "wed"]


def test_legacy_single_weekday_is_accepted():
    rule = decode_rule({"freq": "weekly", "interval": 2, "weekday": "tue"})
    assert rule.weekdays == ["tue"]
    assert rule.interval == 2


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        "[1, 2]",
        {"freq": "hourly"},
        {"freq": "daily", "interval": 0},
        {"freq": "daily", "interval": 1.5},
        {"freq": "monthly", "monthDay": 32},
        {"freq": "monthly", "monthDay": "first"},
        {"freq": "weekly", "weekdays": []},
        {"freq": "weekly", "weekdays": ["funday"]},
        {"freq": "yearly", "monthDay": 1},
        {"freq": "yearly", "month": 13, "monthDay": 1},
    ],
)
def test_malformed_rules_raise(raw):
    with pytest.raises(RuleDecodeError):
        decode_rule(raw)


def test_rule_decode_error_is_a_validation_error():
    with pytest.raises(InvalidInputError):
        decode_rule({"freq": "daily", "interval": -1})


def test_encode_uses_camel_case_keys():
    rule = decode_rule({"freq": "yearly", "month": 2, "monthDay": "last"})
    stored = json.loads(encode_rule(rule))
    assert stored == {"interval": 1, "freq": "yearly", "month": 2, "monthDay": "last"}
    assert isinstance(decode_rule(encode_rule(rule)), YearlyRule)


def test_describe_rule():
    assert describe_rule(decode_rule({"freq": "daily"})) == "every day"
    assert describe_rule(decode_rule({"freq": "weekly", "interval": 2, "weekdays": ["mon", "thu"]})) == "every 2 weeks on mon,thu"
