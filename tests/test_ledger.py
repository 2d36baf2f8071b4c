import pandas as pd
import pytest

from envelope_budget.errors import MissingTBBError
from envelope_budget.ledger import aggregate_month, envelope_balances, split_integrity_warnings


def _envelopes(extra=None):
    rows = [
        {"id": "tbb", "name": "To Be Budgeted", "group_name": "System", "is_hidden": False, "is_system": True},
        {"id": "groceries", "name": "Groceries", "group_name": "Living", "is_hidden": False, "is_system": False},
        {"id": "rent", "name": "Rent", "group_name": "Bills", "is_hidden": False, "is_system": False},
    ]
    rows.extend(extra or [])
    return pd.DataFrame(rows)


def _activity(rows):
    return pd.DataFrame(rows, columns=["envelope_id", "posted_at", "amount"])


def _allocations(rows):
    return pd.DataFrame(rows, columns=["envelope_id", "month", "amount"])


def _moves(rows):
    return pd.DataFrame(rows, columns=["month", "from_envelope_id", "to_envelope_id", "amount"])


def test_funding_and_allocation_scenario():
    activity = _activity([("tbb", "2026-02-01T00:00:00.000Z", 200000)])
    allocations = _allocations([("groceries", "2026-02", 80000), ("tbb", "2026-02", -80000)])

    summary = aggregate_month("2026-02", _envelopes(), activity, allocations)

    assert summary.tbb.activity == 200000
    assert summary.tbb.budgeted == -80000
    assert summary.tbb.available == 120000
    groceries = next(e for e in summary.envelopes if e.name == "Groceries")
    assert groceries.budgeted == 80000
    assert groceries.available == 80000
    assert summary.totals["budgeted"] == 0
    assert summary.totals["available"] == 200000
    assert all(not e.is_system for e in summary.envelopes)


def test_overspending_rolls_into_next_month():
    activity = _activity([("groceries", "2026-01-20T12:00:00.000Z", -2500)])

    january = aggregate_month("2026-01", _envelopes(), activity)
    february = aggregate_month("2026-02", _envelopes(), activity)

    jan_groceries = next(e for e in january.envelopes if e.envelope_id == "groceries")
    feb_groceries = next(e for e in february.envelopes if e.envelope_id == "groceries")
    assert jan_groceries.overspent
    assert jan_groceries.available == -2500
    assert feb_groceries.available_start == -2500
    assert feb_groceries.activity == 0
    assert february.totals["overspentCount"] == 1


def test_moves_and_future_flows():
    allocations = _allocations([
        ("groceries", "2026-01", 10000),
        ("tbb", "2026-01", -10000),
        ("groceries", "2026-03", 99999),
    ])
    moves = _moves([
        ("2026-01", "groceries", "rent", 1000),
        ("2026-02", "groceries", "rent", 2500),
        ("2026-03", "rent", "groceries", 7777),
    ])
    activity = _activity([("rent", "2026-03-01T00:00:00.000Z", -500)])

    balances = envelope_balances("2026-02", _envelopes(), activity, allocations, moves)

    groceries = balances.loc["groceries"]
    rent = balances.loc["rent"]
    assert groceries["available_start"] == 9000
    assert groceries["moved_out"] == 2500
    assert groceries["available"] == 6500
    assert rent["available_start"] == 1000
    assert rent["moved_in"] == 2500
    assert rent["available"] == 3500
    assert rent["activity"] == 0


def test_month_boundaries_are_utc_half_open():
    activity = _activity([
        ("groceries", "2026-01-31T23:59:59.999Z", -100),
        ("groceries", "2026-02-01T00:00:00.000Z", -200),
        ("groceries", "2026-02-28T23:59:59.000Z", -300),
        ("groceries", "2026-03-01T00:00:00.000Z", -400),
    ])
    balances = envelope_balances("2026-02", _envelopes(), activity)
    assert balances.loc["groceries", "available_start"] == -100
    assert balances.loc["groceries", "activity"] == -500


def test_missing_tbb_raises():
    envs = _envelopes()
    envs = envs[~envs["is_system"]]
    with pytest.raises(MissingTBBError) as excinfo:
        aggregate_month("2026-02", envs)
    assert excinfo.value.code == "MISSING_TBB"


def test_hidden_envelopes_excluded_unless_requested():
    hidden = {"id": "old", "name": "Old", "group_name": "Misc", "is_hidden": True, "is_system": False}
    allocations = _allocations([("old", "2026-02", 500), ("tbb", "2026-02", -500)])

    default = aggregate_month("2026-02", _envelopes([hidden]), allocations=allocations)
    with_hidden = aggregate_month("2026-02", _envelopes([hidden]), allocations=allocations, include_hidden=True)

    assert "Old" not in [e.name for e in default.envelopes]
    assert default.totals["budgeted"] == -500
    assert "Old" in [e.name for e in with_hidden.envelopes]
    assert with_hidden.totals["budgeted"] == 0


def test_summary_dict_shape():
    summary = aggregate_month("2026-02", _envelopes(), currency="USD", warnings=["x"])
    data = summary.to_dict()
    assert data["currency"] == "USD"
    assert data["system"] == {"tbbEnvelopeId": "tbb", "tbbEnvelopeName": "To Be Budgeted"}
    assert set(data["tbb"]) == {"budgeted", "activity", "availableStart", "available"}
    assert set(data["envelopes"][0]) == {
        "envelopeId", "name", "groupName", "isHidden", "isSystem", "budgeted", "activity",
        "movedIn", "movedOut", "availableStart", "available", "overspent",
    }
    assert data["warnings"] == ["x"]


def test_split_integrity_warnings_report_mismatches_only():
    transactions = pd.DataFrame([
        {"id": "t1", "amount": -1000, "skip_budget": False, "transfer_group_id": None},
        {"id": "t2", "amount": -2000, "skip_budget": False, "transfer_group_id": None},
        {"id": "t3", "amount": -3000, "skip_budget": True, "transfer_group_id": None},
        {"id": "t4", "amount": 500, "skip_budget": False, "transfer_group_id": "xfer_1"},
    ])
    splits = pd.DataFrame([
        {"transaction_id": "t1", "amount": -600},
        {"transaction_id": "t1", "amount": -400},
        {"transaction_id": "t2", "amount": -1500},
    ])

    warnings = split_integrity_warnings(transactions, splits)

    assert len(warnings) == 1
    assert "t2" in warnings[0]
