import json
import sqlite3

import pytest

from envelope_budget import db as db_mod
from envelope_budget import operations as ops
from envelope_budget import services
from envelope_budget.errors import InvalidInputError, NotFoundError, ReconciledError


def _count(table, where="1=1", params=()):
    conn = sqlite3.connect(str(db_mod.DB_PATH))
    try:
        return conn.execute(f"SELECT COUNT(*) FROM {table} WHERE {where}", params).fetchone()[0]
    finally:
        conn.close()


def _groceries_activity(month="2026-02"):
    return next(e for e in services.month_summary(month).envelopes if e.name == "Groceries").activity


def _spend(amount=-2500, day="2026-02-02", **kwargs):
    kwargs.setdefault("envelope", "Groceries")
    return ops.add_transaction("Checking", amount, day, **kwargs)["transaction"]["id"]


def test_list_filters_and_orders_newest_first(seeded_db):
    ops.create_envelope("Rent", "Bills")
    ops.create_account("Savings", "savings")
    _spend(-1000, "2026-02-01", payee="Grocer", memo="weekly shop")
    _spend(-2000, "2026-02-05", payee="Market")
    ops.add_transaction("Checking", -90000, "2026-02-03", envelope="Rent", payee="Landlord")
    ops.add_transaction("Savings", 500, "2026-02-04", skip_budget=True, memo="interest")

    everything = services.list_transactions()
    assert [t["postedAt"][:10] for t in everything] == ["2026-02-05", "2026-02-04", "2026-02-03", "2026-02-01"]
    assert everything[0]["splits"] == [
        {"envelopeId": everything[0]["splits"][0]["envelopeId"], "envelope": "Groceries", "amount": -2000, "note": None}
    ]
    assert everything[1]["splits"] == []

    assert [t["amount"] for t in services.list_transactions(envelope="Groceries")] == [-2000, -1000]
    assert [t["accountName"] for t in services.list_transactions(account="Savings")] == ["Savings"]
    assert [t["amount"] for t in services.list_transactions(from_date="2026-02-03", to_date="2026-02-04")] == [500, -90000]
    assert [t["payeeName"] for t in services.list_transactions(search="shop")] == ["Grocer"]
    assert len(services.list_transactions(limit=0)) == 1
    with pytest.raises(NotFoundError):
        services.list_transactions(envelope="Nope")


def test_update_fields_and_single_split_follows_amount(seeded_db):
    tx_id = _spend(-2500, memo="old")

    result = ops.update_transaction(tx_id, amount=-4000, memo="new", posted_at="2026-02-03", payee="Grocer")

    tx = result["transaction"]
    assert tx["amount"] == -4000
    assert tx["memo"] == "new"
    assert tx["posted_at"] == "2026-02-03T00:00:00.000Z"
    assert tx["payee_name"] == "Grocer"
    assert [s["amount"] for s in result["splits"]] == [-4000]
    assert _groceries_activity() == -4000


def test_update_replaces_splits_and_checks_their_sum(seeded_db):
    ops.create_envelope("Household", "Living")
    tx_id = _spend(-3000)

    ops.update_transaction(tx_id, splits=[{"envelope": "Groceries", "amount": -1000},
                                          {"envelope": "Household", "amount": -2000}])
    assert _groceries_activity() == -1000

    with pytest.raises(InvalidInputError):
        ops.update_transaction(tx_id, amount=-5000)
    with pytest.raises(InvalidInputError):
        ops.update_transaction(tx_id, splits=[{"envelope": "Groceries", "amount": -10}])
    assert _count("transaction_splits", "transaction_id = ?", (tx_id,)) == 2


def test_update_skip_budget_drops_splits_and_refuses_new_ones(seeded_db):
    tx_id = _spend(-2500)

    ops.update_transaction(tx_id, skip_budget=True)
    assert _count("transaction_splits") == 0
    assert _groceries_activity() == 0

    with pytest.raises(InvalidInputError):
        ops.update_transaction(tx_id, envelope="Groceries")
    with pytest.raises(InvalidInputError):
        ops.update_transaction(tx_id, skip_budget=False)

    ops.update_transaction(tx_id, skip_budget=False, envelope="Groceries")
    assert _groceries_activity() == -2500


def test_cleared_state_changes(seeded_db):
    tx_id = _spend()

    assert ops.set_cleared(tx_id, "pending") == {"id": tx_id, "cleared": "pending"}
    assert ops.set_cleared(tx_id, "cleared")["cleared"] == "cleared"
    assert services.list_transactions()[0]["cleared"] == "cleared"
    with pytest.raises(InvalidInputError):
        ops.set_cleared(tx_id, "void")


def test_reconciled_transactions_need_force(seeded_db):
    tx_id = _spend(-2500, memo="old")
    ops.reconcile("Checking", -2500, "2026-02-28")

    with pytest.raises(ReconciledError):
        ops.update_transaction(tx_id, memo="new")
    with pytest.raises(ReconciledError):
        ops.delete_transaction(tx_id)
    with pytest.raises(ReconciledError):
        ops.set_cleared(tx_id, "pending")

    assert ops.update_transaction(tx_id, memo="new", force=True)["transaction"]["memo"] == "new"
    assert ops.delete_transaction(tx_id, force=True) == {"deletedIds": [tx_id]}
    assert _count("transactions") == 0


def test_delete_removes_splits(seeded_db):
    tx_id = _spend()
    ops.delete_transaction(tx_id)
    assert _count("transaction_splits") == 0
    with pytest.raises(NotFoundError):
        ops.delete_transaction(tx_id)


def test_delete_transfer_removes_both_legs(seeded_db):
    ops.create_account("Savings", "savings")
    transfer = ops.add_transfer("Checking", "Savings", 25000, "2026-02-05")

    result = ops.delete_transaction(transfer["fromTransactionId"])

    assert sorted(result["deletedIds"]) == sorted([transfer["fromTransactionId"], transfer["toTransactionId"]])
    assert _count("transactions") == 0


def test_transfer_leg_amount_cannot_change(seeded_db):
    ops.create_account("Savings", "savings")
    transfer = ops.add_transfer("Checking", "Savings", 25000, "2026-02-05")
    with pytest.raises(InvalidInputError):
        ops.update_transaction(transfer["toTransactionId"], amount=100)
    updated = ops.update_transaction(transfer["toTransactionId"], memo="rainy day")
    assert updated["transaction"]["memo"] == "rainy day"


def test_deleting_posted_occurrence_makes_it_due_again(seeded_db):
    schedule = ops.create_schedule(name="Rent", account="Checking", amount=-150000,
                                   rule={"freq": "monthly", "monthDay": 1}, start_date="2026-02-01")
    posted = ops.post_occurrence(f"occ_{schedule['id']}_2026-02-01")

    assert services.due("2026-02-01").occurrences == []
    ops.delete_transaction(posted["transaction"]["id"])

    assert [o.date for o in services.due("2026-02-01").occurrences] == ["2026-02-01"]


def _jsonl(*records):
    return [r if isinstance(r, str) else json.dumps(r) for r in records]


def test_import_reports_each_line(seeded_db):
    lines = _jsonl(
        {"account": "Checking", "amount": -1200, "date": "2026-02-03", "envelope": "Groceries", "externalId": "b-1"},
        {"account": "Checking", "amount": 5000, "date": "2026-02-04", "skipBudget": True},
        "{not json",
        {"account": "Checking", "amount": -100, "date": "2026-02-05"},
        {"account": "Checking", "amount": -100, "date": "2026-02-05", "envelope": "Groceries", "skipBudget": True},
        {"account": "Checking", "amount": -100, "date": "2026-02-05", "envelope": "Nowhere"},
        "",
        {"account": "Checking", "amount": -1200, "date": "2026-02-03", "envelope": "Groceries", "externalId": "b-1"},
    )

    summary = ops.import_transactions(lines)

    assert [r["status"] for r in summary["results"]] == [
        "created", "created", "error", "error", "error", "error", "exists",
    ]
    assert [r["line"] for r in summary["results"]] == [1, 2, 3, 4, 5, 6, 8]
    assert summary["results"][2]["error"]["message"] == "Invalid JSON"
    assert summary["results"][5]["error"]["code"] == "NOT_FOUND"
    assert summary["results"][6]["id"] == summary["results"][0]["id"]
    assert (summary["total"], summary["created"], summary["exists"], summary["errors"]) == (7, 2, 1, 4)
    assert _count("transactions") == 2
    assert _groceries_activity() == -1200


def test_import_dry_run_writes_nothing(seeded_db):
    _spend(-1200, "2026-02-03", external_id="b-1")
    lines = _jsonl(
        {"account": "Checking", "amount": -1200, "date": "2026-02-03", "envelope": "Groceries", "externalId": "b-1"},
        {"account": "Checking", "amount": -900, "date": "2026-02-06",
         "splits": [{"envelope": "Groceries", "amount": -900}], "payee": "Grocer"},
        {"account": "Checking", "amount": -900, "date": "2026-02-06",
         "splits": [{"envelope": "Groceries", "amount": -800}]},
    )

    summary = ops.import_transactions(lines, dry_run=True)

    assert summary["dryRun"] is True
    assert [r["status"] for r in summary["results"]] == ["exists", "validated", "error"]
    assert _count("transactions") == 1
    assert _count("payees") == 0
