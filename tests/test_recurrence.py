from datetime import date

import pytest

from envelope_budget.recurrence import expand, is_occurrence


def test_weekly_monday_inside_window():
    rule = {"freq": "weekly", "interval": 1, "weekdays": ["mon"]}
    assert expand(rule, "2026-03-02", "2026-03-01", "2026-03-15") == ["2026-03-02", "2026-03-09"]


def test_yearly_last_day_of_february():
    rule = {"freq": "yearly", "month": 2, "monthDay": "last"}
    assert expand(rule, "2026-01-15", "2027-01-01", "2027-12-31") == ["2027-02-28"]
    assert expand(rule, "2026-01-15", "2028-01-01", "2028-12-31") == ["2028-02-29"]


def test_monthly_day_clamps_to_short_months():
    rule = {"freq": "monthly", "monthDay": 31}
    assert expand(rule, "2026-01-31", "2026-01-01", "2026-04-30") == [
        "2026-01-31",
        "2026-02-28",
        "2026-03-31",
        "2026-04-30",
    ]


def test_monthly_interval_is_anchored_at_start_month():
    rule = {"freq": "monthly", "interval": 2, "monthDay": 10}
    assert expand(rule, "2026-01-10", "2026-02-01", "2026-06-30") == ["2026-03-10", "2026-05-10"]


def test_monthly_skips_day_before_start_in_first_month():
    rule = {"freq": "monthly", "monthDay": 1}
    assert expand(rule, "2026-03-15", "2026-03-01", "2026-05-31") == ["2026-04-01", "2026-05-01"]


def test_daily_interval_rounds_up_to_aligned_point():
    rule = {"freq": "daily", "interval": 3}
    assert expand(rule, "2026-01-01", "2026-01-05", "2026-01-12") == ["2026-01-07", "2026-01-10"]


def test_weekly_multiple_weekdays_with_interval_merge_sorted():
    rule = {"freq": "weekly", "interval": 2, "weekdays": ["wed", "mon"]}
    # start is a Wednesday; the Monday sub-sequence starts on the next Monday
    assert expand(rule, "2026-03-04", "2026-03-01", "2026-03-31") == [
        "2026-03-04",
        "2026-03-09",
        "2026-03-18",
        "2026-03-23",
    ]


def test_end_date_is_inclusive():
    rule = {"freq": "daily"}
    assert expand(rule, "2026-01-01", "2026-01-01", "2026-01-10", end="2026-01-03") == [
        "2026-01-01",
        "2026-01-02",
        "2026-01-03",
    ]


def test_window_before_start_or_after_end_is_empty():
    rule = {"freq": "daily"}
    assert expand(rule, "2026-06-01", "2026-01-01", "2026-05-31") == []
    assert expand(rule, "2026-01-01", "2026-03-01", "2026-03-31", end="2026-02-01") == []


def test_late_window_matches_tail_of_full_expansion():
    rule = {"freq": "daily", "interval": 7}
    full = expand(rule, "2020-01-01", "2020-01-01", "2026-12-31")
    late = expand(rule, "2020-01-01", "2026-06-01", "2026-12-31")
    assert late == [d for d in full if d >= "2026-06-01"]


@pytest.mark.parametrize(
    "rule",
    [
        {"freq": "daily", "interval": 2},
        {"freq": "weekly", "interval": 3, "weekdays": ["tue", "sat"]},
        {"freq": "monthly", "interval": 5, "monthDay": "last"},
        {"freq": "yearly", "interval": 2, "month": 8, "monthDay": 31},
    ],
)
def test_results_are_sorted_distinct_and_restartable(rule):
    whole = expand(rule, "2024-02-29", "2024-01-01", "2030-12-31")
    assert whole == sorted(set(whole))
    first = expand(rule, "2024-02-29", "2024-01-01", "2027-06-30")
    second = expand(rule, "2024-02-29", "2027-07-01", "2030-12-31")
    assert first + second == whole


def test_accepts_date_objects_and_is_occurrence():
    rule = {"freq": "monthly", "monthDay": 15}
    assert expand(rule, date(2026, 1, 15), date(2026, 2, 1), date(2026, 2, 28)) == ["2026-02-15"]
    assert is_occurrence(rule, "2026-01-15", "2026-03-15")
    assert not is_occurrence(rule, "2026-01-15", "2026-03-16")
