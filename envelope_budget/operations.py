"""Write operations against the budget database.

Each public function validates its input, resolves names to ids and performs
its writes inside a single :func:`db.transaction`, so a failure part-way
leaves nothing behind. Envelopes, accounts and schedules can be referred to
either by id or by name.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, StrictInt, ValidationError, field_validator, model_validator

from . import db
from .config import ACCOUNT_TYPES, CLEARED_STATES, DEFAULT_GROUP, SYSTEM_GROUP, TBB_NAME
from .date_utils import DateLike, date_to_instant, format_date, parse_date, parse_month, to_instant
from .errors import (
    AlreadyExistsError,
    AlreadyPostedError,
    BudgetError,
    InvalidInputError,
    MissingTBBError,
    NotFoundError,
    ReconciledError,
    ScheduleArchivedError,
)
from .models import Schedule
from .money import ensure_minor_units
from .occurrences import make_occurrence_id, parse_occurrence_id
from .payees import PayeeRule, apply_payee_rules, validate_rule
from .recurrence import is_occurrence
from .rules import decode_rule, encode_rule
from .targets import ByDateTarget, Target, decode_target, target_to_dict

logger = logging.getLogger(__name__)

RECONCILE_PAYEE = "Reconciliation Adjustment"

_UNSET = object()


class AllocationItem(BaseModel):
    """One line of an allocation request."""
    envelope: str = Field(..., min_length=1)
    amount: int

    @field_validator("envelope")
    @classmethod
    def strip_whitespace(cls, v):
        return v.strip()


class AllocationRequest(BaseModel):
    allocations: List[AllocationItem] = Field(..., min_length=1)
    note: Optional[str] = None


class SplitInput(BaseModel):
    envelope: str = Field(..., min_length=1)
    amount: StrictInt
    note: Optional[str] = None


def _validated(model, data: Any):
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" if err["loc"] else err["msg"]
            for err in exc.errors()
        )
        raise InvalidInputError(problems) from None


def _one(conn: sqlite3.Connection, sql: str, params: Sequence[Any] = ()) -> Optional[Dict[str, Any]]:
    row = conn.execute(sql, tuple(params)).fetchone()
    return dict(row) if row is not None else None


def _require_text(value: Optional[str], what: str) -> str:
    text = (value or "").strip()
    if not text:
        raise InvalidInputError(f"{what} is required")
    return text


def _resolve(conn: sqlite3.Connection, table: str, ref: str, label: str) -> Dict[str, Any]:
    value = _require_text(ref, label)
    row = _one(conn, f"SELECT * FROM {table} WHERE id = ?", (value,))
    if row is None:
        row = _one(conn, f"SELECT * FROM {table} WHERE name = ?", (value,))
    if row is None:
        raise NotFoundError(f"{label} not found: {value}")
    return row


def resolve_envelope(conn: sqlite3.Connection, ref: str) -> Dict[str, Any]:
    return _resolve(conn, "envelopes", ref, "Envelope")


def resolve_account(conn: sqlite3.Connection, ref: str) -> Dict[str, Any]:
    return _resolve(conn, "accounts", ref, "Account")


def resolve_schedule(conn: sqlite3.Connection, ref: str) -> Dict[str, Any]:
    return _resolve(conn, "scheduled_transactions", ref, "Schedule")


def tbb_envelope(conn: sqlite3.Connection) -> Dict[str, Any]:
    row = _one(conn, "SELECT * FROM envelopes WHERE is_system = 1 ORDER BY created_at LIMIT 1")
    if row is None:
        raise MissingTBBError()
    return row


def _budget_month_id(conn: sqlite3.Connection, month: str) -> str:
    row = _one(conn, "SELECT id FROM budget_months WHERE month = ?", (month,))
    if row is not None:
        return row["id"]
    month_id = db.new_id("bm")
    conn.execute(
        "INSERT INTO budget_months (id, month, created_at) VALUES (?, ?, ?)",
        (month_id, month, db.utc_now_iso()),
    )
    return month_id


# ---------------------------------------------------------------------------
# System, envelopes, accounts
# ---------------------------------------------------------------------------

def init_system(tbb_name: str = TBB_NAME) -> Dict[str, Any]:
    """Create the database schema and the To Be Budgeted envelope (idempotent)."""
    db.init_db()
    with db.transaction() as conn:
        existing = _one(conn, "SELECT * FROM envelopes WHERE is_system = 1 LIMIT 1")
        if existing is not None:
            return {"tbbEnvelopeId": existing["id"], "name": existing["name"], "created": False}
        env_id = db.new_id("env")
        conn.execute(
            "INSERT INTO envelopes (id, name, group_name, is_hidden, is_system, created_at) "
            "VALUES (?, ?, ?, 0, 1, ?)",
            (env_id, tbb_name, SYSTEM_GROUP, db.utc_now_iso()),
        )
    logger.info("Created system envelope %s", tbb_name)
    return {"tbbEnvelopeId": env_id, "name": tbb_name, "created": True}


def create_envelope(name: str, group: str = DEFAULT_GROUP, hidden: bool = False) -> Dict[str, Any]:
    name = _require_text(name, "Envelope name")
    group = (group or DEFAULT_GROUP).strip() or DEFAULT_GROUP
    with db.transaction() as conn:
        if _one(conn, "SELECT id FROM envelopes WHERE name = ?", (name,)):
            raise AlreadyExistsError(f"Envelope already exists: {name}")
        env_id = db.new_id("env")
        conn.execute(
            "INSERT INTO envelopes (id, name, group_name, is_hidden, is_system, created_at) "
            "VALUES (?, ?, ?, ?, 0, ?)",
            (env_id, name, group, int(bool(hidden)), db.utc_now_iso()),
        )
    return {"id": env_id, "name": name, "groupName": group, "isHidden": bool(hidden), "isSystem": False}


def set_envelope_hidden(ref: str, hidden: bool) -> Dict[str, Any]:
    with db.transaction() as conn:
        env = resolve_envelope(conn, ref)
        conn.execute("UPDATE envelopes SET is_hidden = ? WHERE id = ?", (int(bool(hidden)), env["id"]))
    return {"id": env["id"], "name": env["name"], "isHidden": bool(hidden)}


def create_account(
    name: str,
    account_type: str = "checking",
    currency: Optional[str] = None,
    opened_at: Optional[DateLike] = None,
) -> Dict[str, Any]:
    name = _require_text(name, "Account name")
    if account_type not in ACCOUNT_TYPES:
        raise InvalidInputError(f"Account type must be one of: {', '.join(ACCOUNT_TYPES)}")
    opened = format_date(parse_date(opened_at)) if opened_at is not None else None
    with db.transaction() as conn:
        if _one(conn, "SELECT id FROM accounts WHERE name = ?", (name,)):
            raise AlreadyExistsError(f"Account already exists: {name}")
        acct_id = db.new_id("acct")
        conn.execute(
            "INSERT INTO accounts (id, name, type, currency, opened_at, created_at) VALUES (?, ?, ?, ?, ?, ?)",
            (acct_id, name, account_type, currency, opened, db.utc_now_iso()),
        )
    return {"id": acct_id, "name": name, "type": account_type, "currency": currency}


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------

def _check_cleared(cleared: str) -> str:
    if cleared not in CLEARED_STATES:
        raise InvalidInputError(f"cleared must be one of: {', '.join(CLEARED_STATES)}")
    return cleared


def _split_items(
    amount: int,
    envelope: Optional[str],
    splits: Optional[Iterable[Union[Mapping[str, Any], SplitInput]]],
    skip_budget: bool,
) -> List[SplitInput]:
    """Validate the budget side of a transaction and return its splits."""
    if envelope and splits:
        raise InvalidInputError("Use either an envelope or splits, not both")
    if skip_budget:
        if envelope or splits:
            raise InvalidInputError("Off-budget transactions cannot have an envelope or splits")
        return []
    if envelope:
        items = [SplitInput(envelope=envelope, amount=amount)]
    else:
        items = [s if isinstance(s, SplitInput) else _validated(SplitInput, s) for s in (splits or [])]
    split_sum = sum(s.amount for s in items)
    if split_sum != amount:
        raise InvalidInputError(
            f"Split amounts must sum to transaction amount. splits_sum={split_sum}, amount={amount}"
        )
    return items


def _payee_for_name(conn: sqlite3.Connection, name: Optional[str]) -> Optional[Dict[str, Any]]:
    """Canonical payee for free text: rule match, then exact name, else a new payee."""
    text = (name or "").strip()
    if not text:
        return None
    rules = [PayeeRule.from_row(row) for row in db.fetch_payee_rules(conn=conn).to_dict("records")]
    rule = apply_payee_rules(text, rules)
    if rule is not None:
        return {"id": rule.target_payee_id, "name": rule.target_payee_name}
    existing = _one(conn, "SELECT id, name FROM payees WHERE name = ?", (text,))
    if existing is not None:
        return existing
    payee_id = db.new_id("payee")
    now = db.utc_now_iso()
    conn.execute(
        "INSERT INTO payees (id, name, created_at, updated_at) VALUES (?, ?, ?, ?)",
        (payee_id, text, now, now),
    )
    logger.info("Created payee %s", text)
    return {"id": payee_id, "name": text}


def add_transaction(
    account: str,
    amount: int,
    posted_at: DateLike,
    envelope: Optional[str] = None,
    splits: Optional[Iterable[Union[Mapping[str, Any], SplitInput]]] = None,
    payee: Optional[str] = None,
    memo: Optional[str] = None,
    cleared: str = "cleared",
    skip_budget: bool = False,
    external_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Record a transaction and its envelope splits.

    Args:
        account: Account id or name.
        amount: Signed amount in minor units (outflows negative).
        posted_at: ``YYYY-MM-DD`` or an ISO-8601 instant.
        envelope: Shortcut for a single split carrying the full amount.
        splits: Explicit splits ``{"envelope", "amount", "note"}``.
        payee: Payee text; payee rules map it to a canonical payee.
        memo: Free text.
        cleared: ``pending``, ``cleared`` or ``reconciled``.
        skip_budget: Off-budget transaction; it takes no envelope or splits.
        external_id: Import identifier; re-adding it is a no-op.

    Returns:
        ``{"status": "created" | "exists", "transaction": {...}, "splits": [...]}``
    """
    amount = ensure_minor_units(amount)
    _check_cleared(cleared)
    split_items = _split_items(amount, envelope, splits, skip_budget)
    posted = to_instant(posted_at)

    with db.transaction() as conn:
        if external_id:
            existing = _one(conn, "SELECT * FROM transactions WHERE external_id = ?", (external_id,))
            if existing is not None:
                return {"status": "exists", "transaction": existing, "splits": []}
        acct = resolve_account(conn, account)
        resolved = [(resolve_envelope(conn, s.envelope), s) for s in split_items]
        canonical = _payee_for_name(conn, payee)

        tx_id = db.new_id("tx")
        tx_row = {
            "id": tx_id,
            "external_id": external_id,
            "account_id": acct["id"],
            "posted_at": posted,
            "amount": amount,
            "payee_id": canonical["id"] if canonical else None,
            "payee_name": canonical["name"] if canonical else None,
            "memo": memo,
            "cleared": cleared,
            "skip_budget": int(bool(skip_budget)),
            "transfer_group_id": None,
            "transfer_peer_id": None,
        }
        _insert_transaction(conn, tx_row)
        split_rows = []
        for env, item in resolved:
            split_rows.append(_insert_split(conn, tx_id, env["id"], item.amount, item.note))

    logger.info("Added transaction %s on %s amount=%s", tx_id, acct["name"], amount)
    return {"status": "created", "transaction": tx_row, "splits": split_rows}


def _insert_transaction(conn: sqlite3.Connection, row: Dict[str, Any]) -> None:
    conn.execute(
        "INSERT INTO transactions (id, external_id, account_id, posted_at, amount, payee_id, payee_name, memo, "
        "cleared, skip_budget, transfer_group_id, transfer_peer_id, created_at) "
        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
        (
            row["id"], row["external_id"], row["account_id"], row["posted_at"], row["amount"],
            row.get("payee_id"), row["payee_name"], row["memo"], row["cleared"], row["skip_budget"],
            row["transfer_group_id"], row["transfer_peer_id"], db.utc_now_iso(),
        ),
    )


def _insert_split(conn: sqlite3.Connection, tx_id: str, envelope_id: str, amount: int, note: Optional[str]) -> Dict[str, Any]:
    split = {"id": db.new_id("split"), "transaction_id": tx_id, "envelope_id": envelope_id, "amount": amount, "note": note}
    conn.execute(
        "INSERT INTO transaction_splits (id, transaction_id, envelope_id, amount, note) VALUES (?, ?, ?, ?, ?)",
        (split["id"], tx_id, envelope_id, amount, note),
    )
    return split


def _transaction_row(conn: sqlite3.Connection, tx_id: str) -> Dict[str, Any]:
    value = _require_text(tx_id, "Transaction id")
    row = _one(conn, "SELECT * FROM transactions WHERE id = ?", (value,))
    if row is None:
        raise NotFoundError(f"Transaction not found: {value}")
    return row


def _guard_reconciled(row: Mapping[str, Any], force: bool) -> None:
    if row["cleared"] == "reconciled" and not force:
        raise ReconciledError(f"Transaction {row['id']} is reconciled. Use --force to change it anyway")


def update_transaction(
    tx_id: str,
    account: Optional[str] = None,
    amount: Optional[int] = None,
    posted_at: Optional[DateLike] = None,
    payee: Any = _UNSET,
    memo: Any = _UNSET,
    cleared: Optional[str] = None,
    skip_budget: Optional[bool] = None,
    envelope: Optional[str] = None,
    splits: Optional[Iterable[Union[Mapping[str, Any], SplitInput]]] = None,
    force: bool = False,
) -> Dict[str, Any]:
    """Change fields of a transaction and optionally replace its splits.

    Omitted arguments keep their stored value; ``None`` clears ``payee`` and
    ``memo``. The splits must still sum to the amount afterwards. A single
    existing split follows an amount change; several splits must be replaced
    explicitly. Turning ``skip_budget`` on drops the splits. Reconciled
    transactions are only changed with ``force``.
    """
    if cleared is not None:
        _check_cleared(cleared)
    replacing = bool(envelope or splits)
    with db.transaction() as conn:
        row = _transaction_row(conn, tx_id)
        _guard_reconciled(row, force)

        changes: Dict[str, Any] = {}
        if account is not None:
            changes["account_id"] = resolve_account(conn, account)["id"]
        if amount is not None:
            changes["amount"] = ensure_minor_units(amount)
        if posted_at is not None:
            changes["posted_at"] = to_instant(posted_at)
        if payee is not _UNSET:
            canonical = _payee_for_name(conn, payee)
            changes["payee_id"] = canonical["id"] if canonical else None
            changes["payee_name"] = canonical["name"] if canonical else None
        if memo is not _UNSET:
            changes["memo"] = memo
        if cleared is not None:
            changes["cleared"] = cleared
        if skip_budget is not None:
            changes["skip_budget"] = int(bool(skip_budget))

        if row["transfer_group_id"] and (replacing or {"account_id", "amount", "skip_budget"} & changes.keys()):
            raise InvalidInputError("Transfer legs cannot change account, amount, budget flag or splits")

        new_amount = changes.get("amount", row["amount"])
        new_skip = bool(changes.get("skip_budget", row["skip_budget"]))
        if new_skip and replacing:
            raise InvalidInputError("Cannot set splits when skip_budget is on")

        current = [
            dict(r) for r in conn.execute(
                "SELECT envelope_id, amount, note FROM transaction_splits WHERE transaction_id = ? ORDER BY rowid",
                (row["id"],),
            )
        ]
        new_splits: Optional[List[Tuple[str, int, Optional[str]]]] = None
        if replacing:
            items = _split_items(new_amount, envelope, splits, False)
            new_splits = [(resolve_envelope(conn, s.envelope)["id"], s.amount, s.note) for s in items]
        elif new_skip:
            new_splits = [] if current else None
        elif sum(s["amount"] for s in current) != new_amount:
            if len(current) != 1:
                raise InvalidInputError(
                    "Split amounts must sum to transaction amount. "
                    f"splits_sum={sum(s['amount'] for s in current)}, amount={new_amount}"
                )
            only = current[0]
            new_splits = [(only["envelope_id"], new_amount, only["note"])]

        if changes:
            assignments = ", ".join(f"{column} = ?" for column in changes)
            conn.execute(
                f"UPDATE transactions SET {assignments} WHERE id = ?",
                (*changes.values(), row["id"]),
            )
        if new_splits is not None:
            conn.execute("DELETE FROM transaction_splits WHERE transaction_id = ?", (row["id"],))
            for envelope_id, split_amount, note in new_splits:
                _insert_split(conn, row["id"], envelope_id, split_amount, note)

        updated = _transaction_row(conn, row["id"])
        split_rows = [
            dict(r) for r in conn.execute(
                "SELECT id, transaction_id, envelope_id, amount, note FROM transaction_splits "
                "WHERE transaction_id = ? ORDER BY rowid",
                (row["id"],),
            )
        ]
    logger.info("Updated transaction %s (%s)", row["id"], ", ".join(changes) or "splits")
    return {"transaction": updated, "splits": split_rows}


def set_cleared(tx_id: str, cleared: str, force: bool = False) -> Dict[str, Any]:
    """Mark a transaction pending or cleared."""
    result = update_transaction(tx_id, cleared=cleared, force=force)
    tx = result["transaction"]
    return {"id": tx["id"], "cleared": tx["cleared"]}


def delete_transaction(tx_id: str, force: bool = False) -> Dict[str, Any]:
    """Hard-delete a transaction, both legs when it is part of a transfer.

    Its splits go with it, and so does the posting marker of a schedule
    occurrence, which therefore shows as due again.
    """
    with db.transaction() as conn:
        row = _transaction_row(conn, tx_id)
        ids = [row["id"]]
        if row["transfer_group_id"]:
            if row["transfer_peer_id"]:
                ids.append(row["transfer_peer_id"])
            else:
                group = conn.execute(
                    "SELECT id FROM transactions WHERE transfer_group_id = ? AND id != ?",
                    (row["transfer_group_id"], row["id"]),
                )
                ids.extend(r["id"] for r in group)
        marks = ", ".join("?" for _ in ids)
        rows = [dict(r) for r in conn.execute(f"SELECT id, cleared FROM transactions WHERE id IN ({marks})", ids)]
        for found in rows:
            _guard_reconciled(found, force)
        present = {found["id"] for found in rows}
        ids = [i for i in ids if i in present]
        marks = ", ".join("?" for _ in ids)
        conn.execute(f"DELETE FROM scheduled_postings WHERE transaction_id IN ({marks})", ids)
        conn.execute(f"DELETE FROM transaction_splits WHERE transaction_id IN ({marks})", ids)
        conn.execute(f"DELETE FROM transactions WHERE id IN ({marks})", ids)
    logger.info("Deleted transactions %s", ", ".join(ids))
    return {"deletedIds": ids}


class ImportRecord(BaseModel):
    """One line of a JSONL transaction import."""
    model_config = ConfigDict(populate_by_name=True)

    account: str = Field(..., min_length=1)
    amount: StrictInt
    posted: str = Field(..., alias="date", min_length=1)
    envelope: Optional[str] = None
    splits: Optional[List[SplitInput]] = None
    payee: Optional[str] = None
    memo: Optional[str] = None
    cleared: str = "cleared"
    skip_budget: bool = Field(False, alias="skipBudget")
    external_id: Optional[str] = Field(None, alias="externalId")

    @model_validator(mode="after")
    def check_budget_side(self):
        if self.skip_budget:
            if self.envelope or self.splits:
                raise ValueError("skipBudget transactions cannot have an envelope or splits")
        elif bool(self.envelope) == bool(self.splits):
            raise ValueError("Provide envelope or splits (or set skipBudget)")
        return self

    def transaction_kwargs(self) -> Dict[str, Any]:
        return {
            "account": self.account,
            "amount": self.amount,
            "posted_at": self.posted,
            "envelope": self.envelope,
            "splits": self.splits,
            "payee": self.payee,
            "memo": self.memo,
            "cleared": self.cleared,
            "skip_budget": self.skip_budget,
            "external_id": self.external_id,
        }


def _check_import(record: ImportRecord) -> Tuple[str, Optional[str]]:
    """Validate an import record against the database without writing."""
    _check_cleared(record.cleared)
    items = _split_items(record.amount, record.envelope, record.splits, record.skip_budget)
    to_instant(record.posted)
    with db.connect() as conn:
        if record.external_id:
            existing = _one(conn, "SELECT id FROM transactions WHERE external_id = ?", (record.external_id,))
            if existing is not None:
                return "exists", existing["id"]
        resolve_account(conn, record.account)
        for item in items:
            resolve_envelope(conn, item.envelope)
    return "validated", None


def import_transactions(lines: Iterable[str], dry_run: bool = False) -> Dict[str, Any]:
    """Import one JSON transaction per line.

    Each line is handled on its own: a bad line is reported and the rest
    still import. Lines whose ``externalId`` is already stored report
    ``exists``. With ``dry_run`` nothing is written and good lines report
    ``validated``.
    """
    results: List[Dict[str, Any]] = []
    for line_no, line in enumerate(lines, start=1):
        text = line.strip()
        if not text:
            continue
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            results.append({"line": line_no, "externalId": None, "status": "error",
                            "error": {"message": "Invalid JSON", "code": InvalidInputError.code}})
            continue
        external_id = payload.get("externalId") if isinstance(payload, dict) else None
        try:
            record = _validated(ImportRecord, payload)
            if dry_run:
                status, tx_id = _check_import(record)
            else:
                created = add_transaction(**record.transaction_kwargs())
                status, tx_id = created["status"], created["transaction"]["id"]
        except BudgetError as exc:
            logger.warning("Import line %d rejected: %s", line_no, exc)
            results.append({"line": line_no, "externalId": external_id, "status": "error",
                            "error": {"message": str(exc), "code": exc.code}})
            continue
        results.append({"line": line_no, "externalId": external_id, "status": status, "id": tx_id})

    counts = {status: sum(1 for r in results if r["status"] == status)
              for status in ("created", "exists", "validated", "error")}
    return {
        "dryRun": dry_run,
        "total": len(results),
        "created": counts["created"],
        "exists": counts["exists"],
        "validated": counts["validated"],
        "errors": counts["error"],
        "results": results,
    }


def add_transfer(
    from_account: str,
    to_account: str,
    amount: int,
    posted_at: DateLike,
    memo: Optional[str] = None,
) -> Dict[str, Any]:
    """Move money between two accounts as a linked pair of transactions."""
    amount = ensure_minor_units(amount)
    if amount <= 0:
        raise InvalidInputError("Transfer amount must be a positive integer")
    posted = to_instant(posted_at)
    with db.transaction() as conn:
        src = resolve_account(conn, from_account)
        dst = resolve_account(conn, to_account)
        if src["id"] == dst["id"]:
            raise InvalidInputError("Transfer accounts must differ")
        group_id = db.new_id("xfer")
        out_id, in_id = db.new_id("tx"), db.new_id("tx")
        for tx_id, acct, peer, signed in ((out_id, src, in_id, -amount), (in_id, dst, out_id, amount)):
            _insert_transaction(conn, {
                "id": tx_id,
                "external_id": None,
                "account_id": acct["id"],
                "posted_at": posted,
                "amount": signed,
                "payee_name": f"Transfer : {dst['name'] if signed < 0 else src['name']}",
                "memo": memo,
                "cleared": "cleared",
                "skip_budget": 1,
                "transfer_group_id": group_id,
                "transfer_peer_id": peer,
            })
    return {"transferGroupId": group_id, "fromTransactionId": out_id, "toTransactionId": in_id, "amount": amount}


# ---------------------------------------------------------------------------
# Payees
# ---------------------------------------------------------------------------

def resolve_payee(conn: sqlite3.Connection, ref: str) -> Dict[str, Any]:
    return _resolve(conn, "payees", ref, "Payee")


def create_payee(name: str) -> Dict[str, Any]:
    """Return the canonical payee for ``name``, creating it when nothing matches."""
    name = _require_text(name, "Payee name")
    with db.transaction() as conn:
        return _payee_for_name(conn, name)


def rename_payee(ref: str, new_name: str) -> Dict[str, Any]:
    """Rename a payee and the payee name stored on its transactions."""
    new_name = _require_text(new_name, "New payee name")
    with db.transaction() as conn:
        payee = resolve_payee(conn, ref)
        if _one(conn, "SELECT id FROM payees WHERE name = ? AND id != ?", (new_name, payee["id"])):
            raise AlreadyExistsError(f"Payee already exists: {new_name}. Merge the payees instead")
        conn.execute(
            "UPDATE payees SET name = ?, updated_at = ? WHERE id = ?",
            (new_name, db.utc_now_iso(), payee["id"]),
        )
        cur = conn.execute("UPDATE transactions SET payee_name = ? WHERE payee_id = ?", (new_name, payee["id"]))
    return {"id": payee["id"], "name": new_name, "previousName": payee["name"], "updatedTransactions": cur.rowcount}


def merge_payees(source: str, into: str) -> Dict[str, Any]:
    """Fold ``source`` into ``into``: transactions and rules move over, the source is deleted."""
    with db.transaction() as conn:
        src = resolve_payee(conn, source)
        dst = resolve_payee(conn, into)
        if src["id"] == dst["id"]:
            raise InvalidInputError("Source and target payee must differ")
        moved_tx = conn.execute(
            "UPDATE transactions SET payee_id = ?, payee_name = ? WHERE payee_id = ?",
            (dst["id"], dst["name"], src["id"]),
        ).rowcount
        moved_rules = conn.execute(
            "UPDATE payee_rules SET target_payee_id = ?, updated_at = ? WHERE target_payee_id = ?",
            (dst["id"], db.utc_now_iso(), src["id"]),
        ).rowcount
        conn.execute("DELETE FROM payees WHERE id = ?", (src["id"],))
    logger.info("Merged payee %s into %s", src["name"], dst["name"])
    return {
        "sourceId": src["id"],
        "targetId": dst["id"],
        "targetName": dst["name"],
        "movedTransactions": moved_tx,
        "movedRules": moved_rules,
    }


def add_payee_rule(match_type: str, pattern: str, to: str) -> Dict[str, Any]:
    """Map payee text matching ``pattern`` to the existing payee ``to``."""
    pattern = validate_rule(match_type, pattern)
    with db.transaction() as conn:
        target = resolve_payee(conn, to)
        rule = PayeeRule(
            id=db.new_id("payrule"),
            match_type=match_type,
            pattern=pattern,
            target_payee_id=target["id"],
            target_payee_name=target["name"],
        )
        now = db.utc_now_iso()
        conn.execute(
            "INSERT INTO payee_rules (id, match_type, pattern, target_payee_id, archived, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, 0, ?, ?)",
            (rule.id, rule.match_type, rule.pattern, rule.target_payee_id, now, now),
        )
    return rule.to_dict()


def archive_payee_rule(rule_id: str) -> Dict[str, Any]:
    rule_id = _require_text(rule_id, "Rule id")
    with db.transaction() as conn:
        cur = conn.execute(
            "UPDATE payee_rules SET archived = 1, updated_at = ? WHERE id = ?",
            (db.utc_now_iso(), rule_id),
        )
        if cur.rowcount == 0:
            raise NotFoundError(f"Payee rule not found: {rule_id}")
    return {"id": rule_id, "archived": True}


# ---------------------------------------------------------------------------
# Budgeting
# ---------------------------------------------------------------------------

def allocate(month: str, allocations: Any, note: Optional[str] = None, source: str = "manual") -> Dict[str, Any]:
    """Assign money from To Be Budgeted to envelopes for ``month``.

    ``allocations`` is a list of ``{"envelope", "amount"}`` items or a dict
    ``{"allocations": [...], "note": ...}`` as read from a JSON file. A mirror
    row of ``-total`` is written to TBB so the month's allocations net to zero.
    """
    parse_month(month)
    payload = allocations if isinstance(allocations, Mapping) else {"allocations": list(allocations)}
    request = _validated(AllocationRequest, payload)
    note = note if note is not None else request.note

    with db.transaction() as conn:
        tbb = tbb_envelope(conn)
        resolved = []
        for item in request.allocations:
            env = resolve_envelope(conn, item.envelope)
            if env["id"] == tbb["id"]:
                raise InvalidInputError("Cannot allocate directly to To Be Budgeted")
            resolved.append((env, item.amount))
        month_id = _budget_month_id(conn, month)
        now = db.utc_now_iso()
        rows = []
        for env, amount in resolved:
            rows.append((db.new_id("alloc"), month_id, env["id"], amount, source, note, now))
        total = sum(amount for _, amount in resolved)
        if total != 0:
            rows.append((db.new_id("alloc"), month_id, tbb["id"], -total, "mirror", note, now))
        conn.executemany(
            "INSERT INTO allocations (id, budget_month_id, envelope_id, amount, source, note, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            rows,
        )

    logger.info("Allocated %s across %d envelopes for %s", total, len(resolved), month)
    return {
        "month": month,
        "total": total,
        "allocations": [{"envelopeId": env["id"], "name": env["name"], "amount": amount} for env, amount in resolved],
        "tbbMirror": -total,
    }


def move(month: str, from_envelope: str, to_envelope: str, amount: int, note: Optional[str] = None) -> Dict[str, Any]:
    parse_month(month)
    amount = ensure_minor_units(amount)
    if amount <= 0:
        raise InvalidInputError("Move amount must be a positive integer")
    with db.transaction() as conn:
        src = resolve_envelope(conn, from_envelope)
        dst = resolve_envelope(conn, to_envelope)
        if src["id"] == dst["id"]:
            raise InvalidInputError("from and to envelopes must differ")
        month_id = _budget_month_id(conn, month)
        move_id = db.new_id("move")
        conn.execute(
            "INSERT INTO envelope_moves (id, budget_month_id, from_envelope_id, to_envelope_id, amount, note, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (move_id, month_id, src["id"], dst["id"], amount, note, db.utc_now_iso()),
        )
    return {"id": move_id, "month": month, "from": src["name"], "to": dst["name"], "amount": amount}


def set_target(envelope: str, target: Union[Target, Mapping[str, Any]], note: Optional[str] = None) -> Dict[str, Any]:
    """Create or replace the target on an envelope."""
    if isinstance(target, Mapping):
        target = decode_target(target)
    if isinstance(target, ByDateTarget):
        values = (None, target.target_amount, target.target_month, target.start_month)
    else:
        values = (target.amount, None, None, None)
    now = db.utc_now_iso()
    with db.transaction() as conn:
        env = resolve_envelope(conn, envelope)
        conn.execute(
            "INSERT INTO targets (id, envelope_id, type, amount, target_amount, target_month, start_month, "
            "note, archived, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?) "
            "ON CONFLICT(envelope_id) DO UPDATE SET type = excluded.type, amount = excluded.amount, "
            "target_amount = excluded.target_amount, target_month = excluded.target_month, "
            "start_month = excluded.start_month, note = excluded.note, archived = 0, "
            "updated_at = excluded.updated_at",
            (db.new_id("tgt"), env["id"], target.type, *values, note, now, now),
        )
    return {"envelopeId": env["id"], "name": env["name"], "target": target_to_dict(target)}


def clear_target(envelope: str) -> Dict[str, Any]:
    with db.transaction() as conn:
        env = resolve_envelope(conn, envelope)
        cur = conn.execute(
            "UPDATE targets SET archived = 1, updated_at = ? WHERE envelope_id = ? AND archived = 0",
            (db.utc_now_iso(), env["id"]),
        )
    return {"envelopeId": env["id"], "name": env["name"], "cleared": cur.rowcount > 0}


def set_currency(code: str) -> Dict[str, Any]:
    code = _require_text(code, "Currency").upper()
    db.set_setting("currency", code)
    return {"currency": code}


# ---------------------------------------------------------------------------
# Schedules
# ---------------------------------------------------------------------------

def _schedule_dict(schedule: Schedule) -> Dict[str, Any]:
    return {
        "id": schedule.id,
        "name": schedule.name,
        "accountId": schedule.account_id,
        "envelopeId": schedule.envelope_id,
        "amount": schedule.amount,
        "payeeName": schedule.payee_name,
        "memo": schedule.memo,
        "rule": schedule.rule.model_dump(by_alias=True),
        "startDate": schedule.start_date,
        "endDate": schedule.end_date,
        "archived": schedule.archived,
    }


def create_schedule(
    name: str,
    account: str,
    amount: int,
    rule: Any,
    start_date: DateLike,
    end_date: Optional[DateLike] = None,
    envelope: Optional[str] = None,
    payee: Optional[str] = None,
    memo: Optional[str] = None,
) -> Dict[str, Any]:
    """Store a scheduled transaction; the rule and date range are validated first."""
    name = _require_text(name, "Schedule name")
    with db.transaction() as conn:
        if _one(conn, "SELECT id FROM scheduled_transactions WHERE name = ?", (name,)):
            raise AlreadyExistsError(f"Schedule already exists: {name}")
        acct = resolve_account(conn, account)
        env_id = resolve_envelope(conn, envelope)["id"] if envelope else None
        schedule = Schedule(
            id=db.new_id("sched"),
            name=name,
            account_id=acct["id"],
            amount=ensure_minor_units(amount),
            rule=decode_rule(rule),
            start_date=format_date(parse_date(start_date)),
            end_date=format_date(parse_date(end_date)) if end_date is not None else None,
            envelope_id=env_id,
            payee_name=payee,
            memo=memo,
        )
        now = db.utc_now_iso()
        conn.execute(
            "INSERT INTO scheduled_transactions (id, name, account_id, envelope_id, amount, payee_name, memo, "
            "rule_json, start_date, end_date, archived, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?)",
            (
                schedule.id, schedule.name, schedule.account_id, schedule.envelope_id, schedule.amount,
                schedule.payee_name, schedule.memo, encode_rule(schedule.rule), schedule.start_date,
                schedule.end_date, now, now,
            ),
        )
    logger.info("Created schedule %s (%s)", schedule.name, schedule.id)
    return _schedule_dict(schedule)


def update_schedule(
    ref: str,
    name: Optional[str] = None,
    account: Optional[str] = None,
    amount: Optional[int] = None,
    rule: Any = None,
    start_date: Optional[DateLike] = None,
    end_date: Any = _UNSET,
    envelope: Any = _UNSET,
    payee: Any = _UNSET,
    memo: Any = _UNSET,
) -> Dict[str, Any]:
    """Change fields of a schedule. ``None`` clears the optional fields."""
    with db.transaction() as conn:
        row = resolve_schedule(conn, ref)
        if rule is not None:
            # a replacement rule also repairs a row whose stored rule is unreadable
            row["rule_json"] = encode_rule(decode_rule(rule))
        current = Schedule.from_row(row)
        changes: Dict[str, Any] = {}
        if name is not None:
            changes["name"] = _require_text(name, "Schedule name")
        if account is not None:
            changes["account_id"] = resolve_account(conn, account)["id"]
        if amount is not None:
            changes["amount"] = ensure_minor_units(amount)
        if start_date is not None:
            changes["start_date"] = format_date(parse_date(start_date))
        if end_date is not _UNSET:
            changes["end_date"] = format_date(parse_date(end_date)) if end_date is not None else None
        if envelope is not _UNSET:
            changes["envelope_id"] = resolve_envelope(conn, envelope)["id"] if envelope else None
        if payee is not _UNSET:
            changes["payee_name"] = payee
        if memo is not _UNSET:
            changes["memo"] = memo

        fields = {**current.__dict__, **changes}
        updated = Schedule(**fields)
        conn.execute(
            "UPDATE scheduled_transactions SET name = ?, account_id = ?, envelope_id = ?, amount = ?, "
            "payee_name = ?, memo = ?, rule_json = ?, start_date = ?, end_date = ?, updated_at = ? WHERE id = ?",
            (
                updated.name, updated.account_id, updated.envelope_id, updated.amount, updated.payee_name,
                updated.memo, encode_rule(updated.rule), updated.start_date, updated.end_date,
                db.utc_now_iso(), updated.id,
            ),
        )
    return _schedule_dict(updated)


def archive_schedule(ref: str) -> Dict[str, Any]:
    with db.transaction() as conn:
        row = resolve_schedule(conn, ref)
        conn.execute(
            "UPDATE scheduled_transactions SET archived = 1, updated_at = ? WHERE id = ?",
            (db.utc_now_iso(), row["id"]),
        )
    return {"id": row["id"], "name": row["name"], "archived": True}


def post_occurrence(occurrence_id: str) -> Dict[str, Any]:
    """Turn one schedule occurrence into a pending transaction.

    The transaction, its split and the posting marker are written together;
    posting the same occurrence twice raises :class:`AlreadyPostedError` and
    writes nothing.
    """
    scheduled_id, occurrence_date = parse_occurrence_id(occurrence_id)
    with db.transaction() as conn:
        row = _one(conn, "SELECT * FROM scheduled_transactions WHERE id = ?", (scheduled_id,))
        if row is None:
            raise NotFoundError(f"Schedule not found: {scheduled_id}")
        if row["archived"]:
            raise ScheduleArchivedError("Schedule is archived")
        schedule = Schedule.from_row(row)
        if not is_occurrence(schedule.rule, schedule.start_date, occurrence_date, schedule.end_date):
            raise InvalidInputError(f"{occurrence_date} is not an occurrence of schedule {schedule.name}")
        if _one(
            conn,
            "SELECT id FROM scheduled_postings WHERE scheduled_id = ? AND occurrence_date = ?",
            (scheduled_id, occurrence_date),
        ):
            raise AlreadyPostedError("Occurrence already posted")

        canonical = _payee_for_name(conn, schedule.payee_name)
        tx_id = db.new_id("tx")
        _insert_transaction(conn, {
            "id": tx_id,
            "external_id": None,
            "account_id": schedule.account_id,
            "posted_at": date_to_instant(occurrence_date),
            "amount": schedule.amount,
            "payee_id": canonical["id"] if canonical else None,
            "payee_name": canonical["name"] if canonical else None,
            "memo": schedule.memo,
            "cleared": "pending",
            "skip_budget": 0 if schedule.envelope_id else 1,
            "transfer_group_id": None,
            "transfer_peer_id": None,
        })
        if schedule.envelope_id:
            _insert_split(conn, tx_id, schedule.envelope_id, schedule.amount, None)
        try:
            conn.execute(
                "INSERT INTO scheduled_postings (id, scheduled_id, occurrence_date, transaction_id, created_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (db.new_id("schedpost"), scheduled_id, occurrence_date, tx_id, db.utc_now_iso()),
            )
        except sqlite3.IntegrityError:
            raise AlreadyPostedError("Occurrence already posted") from None

    logger.info("Posted occurrence %s as %s", occurrence_id, tx_id)
    return {
        "occurrence": {
            "occurrenceId": make_occurrence_id(scheduled_id, occurrence_date),
            "scheduledId": scheduled_id,
            "occurrenceDate": occurrence_date,
        },
        "transaction": {"id": tx_id},
    }


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------

def _cleared_balance(conn: sqlite3.Connection, account_id: str) -> int:
    row = _one(
        conn,
        "SELECT COALESCE(SUM(amount), 0) AS total FROM transactions "
        "WHERE account_id = ? AND cleared IN ('cleared', 'reconciled')",
        (account_id,),
    )
    return int(row["total"])


def reconcile_preview(account: str, statement_balance: int) -> Dict[str, Any]:
    statement_balance = ensure_minor_units(statement_balance, "statement balance")
    with db.connect() as conn:
        acct = resolve_account(conn, account)
        cleared = _cleared_balance(conn, acct["id"])
    return {
        "accountId": acct["id"],
        "accountName": acct["name"],
        "clearedBalance": cleared,
        "statementBalance": statement_balance,
        "delta": statement_balance - cleared,
    }


def reconcile(account: str, statement_balance: int, on: DateLike) -> Dict[str, Any]:
    """Match an account's cleared balance to a statement.

    A non-zero difference becomes a reconciled adjustment transaction split to
    To Be Budgeted; afterwards every cleared transaction on the account is
    marked reconciled. Both steps commit together.
    """
    statement_balance = ensure_minor_units(statement_balance, "statement balance")
    posted = to_instant(on)
    with db.transaction() as conn:
        acct = resolve_account(conn, account)
        cleared = _cleared_balance(conn, acct["id"])
        delta = statement_balance - cleared
        adjustment = None
        if delta != 0:
            tbb = tbb_envelope(conn)
            adjustment = {
                "id": db.new_id("tx"),
                "external_id": None,
                "account_id": acct["id"],
                "posted_at": posted,
                "amount": delta,
                "payee_name": RECONCILE_PAYEE,
                "memo": "Auto adjustment to match statement balance",
                "cleared": "reconciled",
                "skip_budget": 0,
                "transfer_group_id": None,
                "transfer_peer_id": None,
            }
            _insert_transaction(conn, adjustment)
            _insert_split(conn, adjustment["id"], tbb["id"], delta, "reconcile-adjustment")
        cur = conn.execute(
            "UPDATE transactions SET cleared = 'reconciled' WHERE account_id = ? AND cleared = 'cleared'",
            (acct["id"],),
        )
    logger.info("Reconciled %s delta=%s", acct["name"], delta)
    return {
        "accountId": acct["id"],
        "accountName": acct["name"],
        "statementBalance": statement_balance,
        "clearedBalance": cleared,
        "delta": delta,
        "adjustment": adjustment,
        "reconciledCount": cur.rowcount,
    }
