from datetime import date

import pandas as pd

from envelope_budget.ledger import aggregate_month
from envelope_budget.models import Occurrence
from envelope_budget.overview import (
    account_balances,
    cashflow,
    compose_overview,
    net_worth,
    schedule_digest,
    top_spending_by_payee,
)
from envelope_budget.targets import MonthlyTarget

TX_COLUMNS = ["id", "account_id", "posted_at", "amount", "payee_name", "cleared", "transfer_group_id"]


def _accounts():
    return pd.DataFrame([
        {"id": "chk", "name": "Checking", "type": "checking", "currency": "MYR"},
        {"id": "sav", "name": "Savings", "type": "savings", "currency": "MYR"},
        {"id": "house", "name": "House", "type": "tracking", "currency": "MYR"},
    ])


def _transactions():
    return pd.DataFrame([
        ("t1", "chk", "2026-02-01T00:00:00.000Z", 300000, "Employer", "cleared", None),
        ("t2", "chk", "2026-02-03T00:00:00.000Z", -12000, "Grocer", "cleared", None),
        ("t3", "chk", "2026-02-05T00:00:00.000Z", -8000, "Grocer", "pending", None),
        ("t4", "chk", "2026-02-06T00:00:00.000Z", -50000, "Transfer", "cleared", "xfer_1"),
        ("t5", "sav", "2026-02-06T00:00:00.000Z", 50000, "Transfer", "cleared", "xfer_1"),
        ("t6", "house", "2026-02-10T00:00:00.000Z", 1000000, None, "cleared", None),
        ("t7", "chk", "2026-02-11T00:00:00.000Z", -3000, None, "reconciled", None),
        ("t8", "chk", "2026-01-15T00:00:00.000Z", -7000, "Grocer", "reconciled", None),
    ], columns=TX_COLUMNS)


def _envelopes():
    return pd.DataFrame([
        {"id": "tbb", "name": "To Be Budgeted", "group_name": "System", "is_hidden": False, "is_system": True},
        {"id": "food", "name": "Food", "group_name": "Living", "is_hidden": False, "is_system": False},
        {"id": "fun", "name": "Fun", "group_name": "Wants", "is_hidden": False, "is_system": False},
    ])


def _activity():
    return pd.DataFrame([
        ("tbb", "2026-02-01T00:00:00.000Z", 300000),
        ("food", "2026-02-03T00:00:00.000Z", -12000),
        ("food", "2026-02-05T00:00:00.000Z", -8000),
        ("fun", "2026-02-11T00:00:00.000Z", -3000),
        ("food", "2026-01-15T00:00:00.000Z", -7000),
    ], columns=["envelope_id", "posted_at", "amount"])


def test_account_balances_and_net_worth():
    balances = account_balances(_accounts(), _transactions())
    checking = balances.set_index("id").loc["chk"]
    assert checking["balance"] == 300000 - 12000 - 8000 - 50000 - 3000 - 7000
    assert checking["pending_balance"] == -8000
    assert checking["cleared_balance"] == checking["balance"] + 8000
    assert checking["last_posted_at"] == "2026-02-11T00:00:00.000Z"

    worth = net_worth(balances)
    assert worth["tracking"] == 1000000
    assert worth["liquid"] == 220000 + 50000
    assert worth["total"] == worth["liquid"] + worth["tracking"]


def test_account_without_transactions_has_zero_balance():
    balances = account_balances(_accounts(), _transactions().iloc[0:0])
    assert balances["balance"].tolist() == [0, 0, 0]
    assert balances["last_posted_at"].tolist() == [None, None, None]


def test_cashflow_excludes_transfers_and_tracking_accounts():
    flow = cashflow("2026-02", _accounts(), _transactions())
    assert flow == {"income": 300000, "expense": 23000, "net": 277000}


def test_top_spending_by_payee_uses_placeholder():
    items = top_spending_by_payee("2026-02", _accounts(), _transactions())
    assert items == [
        {"name": "Grocer", "spent": 20000},
        {"name": "(no payee)", "spent": 3000},
    ]


def test_schedule_digest_counts_overdue_and_due_soon():
    occs = [
        Occurrence("occ_a_2026-02-08", "a", "2026-02-08", "Phone", -5000, "chk"),
        Occurrence("occ_b_2026-02-10", "b", "2026-02-10", "Rent", -150000, "chk"),
        Occurrence("occ_b_2026-02-17", "b", "2026-02-17", "Rent", -150000, "chk"),
        Occurrence("occ_c_2026-02-18", "c", "2026-02-18", "Gym", -2000, "chk"),
    ]
    digest = schedule_digest(occs, date(2026, 2, 10), window_days=7, limit=2)
    assert digest["window"] == {"from": "2026-02-10", "to": "2026-02-17"}
    assert digest["counts"] == {"overdue": 1, "dueSoon": 2}
    assert [o["date"] for o in digest["topDue"]] == ["2026-02-08", "2026-02-10"]
    assert digest["topDue"][0]["occurrenceId"] == "occ_a_2026-02-08"


def test_compose_overview():
    summary = aggregate_month("2026-02", _envelopes(), _activity(), include_hidden=True)
    overview = compose_overview(
        "2026-02",
        summary,
        {"fun": MonthlyTarget(amount=5000)},
        _accounts(),
        _transactions(),
        _envelopes(),
        _activity(),
        occurrences=[],
        today=date(2026, 2, 12),
        warnings=["skipped one schedule"],
    )

    assert overview["flags"] == {"overbudget": False, "overspent": True, "hasPending": True}
    assert [e["name"] for e in overview["budget"]["overspentEnvelopes"]] == ["Food", "Fun"]
    assert overview["budget"]["toBeBudgeted"]["available"] == 300000
    assert overview["goals"] == {
        "underfundedTotal": 5000,
        "topUnderfunded": [overview["goals"]["topUnderfunded"][0]],
    }
    assert overview["goals"]["topUnderfunded"][0]["name"] == "Fun"
    assert overview["reports"]["topSpending"] == [
        {"envelopeId": "food", "name": "Food", "spent": 20000},
        {"envelopeId": "fun", "name": "Fun", "spent": 3000},
    ]
    assert overview["schedules"]["counts"] == {"overdue": 0, "dueSoon": 0}
    assert overview["warnings"] == ["skipped one schedule"]
    assert [a["name"] for a in overview["accounts"]["list"]] == ["Checking", "House", "Savings"]


def test_compose_overview_lists_visible_envelopes_only():
    envelopes = pd.concat([
        _envelopes(),
        pd.DataFrame([{"id": "old", "name": "Old", "group_name": "Wants", "is_hidden": True, "is_system": False}]),
    ], ignore_index=True)
    summary = aggregate_month("2026-02", envelopes, _activity(), include_hidden=True)

    overview = compose_overview(
        "2026-02", summary, {}, _accounts(), _transactions(), envelopes, _activity(),
        occurrences=[], today=date(2026, 2, 12),
    )

    listed = overview["budget"]["envelopes"]
    assert sorted(e["name"] for e in listed) == ["Food", "Fun"]
    assert next(e for e in listed if e["name"] == "Food")["activity"] == -20000
