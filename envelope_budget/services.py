"""Read-side services: fetch rows, run the engines, return plain data.

This is the only layer (besides the CLI and dashboard) that touches the
database for reads or looks at the clock.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any, Dict, List, Optional, Tuple

from . import config, db
from .date_utils import DateLike, add_days, date_to_instant, month_of, parse_date, parse_month
from .errors import InvalidInputError
from .ledger import MonthSummary, aggregate_month, split_integrity_warnings
from .occurrences import DueResult, decode_schedules, due_occurrences
from .operations import resolve_account, resolve_envelope
from .overview import account_balances, compose_overview
from .payees import PayeeRule
from .rules import decode_rule, describe_rule
from .targets import Target, evaluate_targets, target_from_row, underfunded_total

logger = logging.getLogger(__name__)


def budget_currency(conn=None) -> str:
    return db.get_setting("currency", conn=conn) or config.DEFAULT_CURRENCY


def load_targets(conn=None) -> Tuple[Dict[str, Target], List[str]]:
    """Active targets keyed by envelope id, skipping rows that fail to decode."""
    targets: Dict[str, Target] = {}
    warnings: List[str] = []
    for row in db.fetch_targets(conn=conn).to_dict("records"):
        try:
            targets[row["envelope_id"]] = target_from_row(row)
        except InvalidInputError as exc:
            message = f"Skipped target on envelope {row['envelope_id']}: {exc}"
            logger.warning(message)
            warnings.append(message)
    return targets, warnings


def _summary(conn, month: str, include_hidden: bool) -> MonthSummary:
    warnings = split_integrity_warnings(db.fetch_transactions(conn=conn), db.fetch_splits(conn=conn))
    return aggregate_month(
        month,
        db.fetch_envelopes(conn=conn),
        activity=db.fetch_split_activity(conn=conn),
        allocations=db.fetch_allocations(conn=conn),
        moves=db.fetch_moves(conn=conn),
        include_hidden=include_hidden,
        currency=budget_currency(conn),
        warnings=warnings,
    )


def month_summary(month: str, include_hidden: bool = False) -> MonthSummary:
    parse_month(month)
    with db.connect() as conn:
        return _summary(conn, month, include_hidden)


def underfunded_report(month: str, include_hidden: bool = False) -> Dict[str, Any]:
    parse_month(month)
    with db.connect() as conn:
        summary = _summary(conn, month, include_hidden)
        targets, warnings = load_targets(conn)
    items = evaluate_targets(summary, targets)
    return {
        "month": month,
        "items": items,
        "total": underfunded_total(items),
        "warnings": summary.warnings + warnings,
    }


def due(from_date: DateLike, to_date: Optional[DateLike] = None) -> DueResult:
    """Unposted schedule occurrences in ``[from_date, to_date]``.

    A single bound is a one-day window.
    """
    lo = parse_date(from_date)
    hi = parse_date(to_date) if to_date is not None else lo
    with db.connect() as conn:
        schedules = db.fetch_schedules(include_archived=False, conn=conn).to_dict("records")
        posted = db.fetch_posted_dates(conn=conn)
    return due_occurrences(schedules, posted, lo, hi)


def list_schedules(include_archived: bool = False) -> Dict[str, Any]:
    rows = db.fetch_schedules(include_archived=include_archived).to_dict("records")
    items, warnings = [], []
    for row in rows:
        try:
            decoded = decode_rule(row["rule_json"])
            rule, description = decoded.model_dump(by_alias=True), describe_rule(decoded)
        except InvalidInputError as exc:
            rule, description = None, None
            warnings.append(f"Schedule {row['name']} has an unreadable rule: {exc}")
        items.append({
            "id": row["id"],
            "name": row["name"],
            "accountId": row["account_id"],
            "envelopeId": row["envelope_id"],
            "amount": int(row["amount"]),
            "payeeName": row["payee_name"],
            "rule": rule,
            "description": description,
            "startDate": row["start_date"],
            "endDate": row["end_date"],
            "archived": bool(row["archived"]),
        })
    return {"schedules": items, "warnings": warnings}


def overview(month: Optional[str] = None, today: Optional[date] = None) -> Dict[str, Any]:
    """Full overview snapshot; ``today`` defaults to the configured local date."""
    today = parse_date(today) if today is not None else config.today()
    month = month or month_of(today)
    parse_month(month)
    window_to = add_days(today, config.SCHEDULE_WINDOW_DAYS)

    with db.connect() as conn:
        summary = _summary(conn, month, include_hidden=True)
        targets, target_warnings = load_targets(conn)
        accounts = db.fetch_accounts(conn=conn)
        transactions = db.fetch_transactions(conn=conn)
        envelopes = db.fetch_envelopes(conn=conn)
        activity = db.fetch_split_activity(conn=conn)
        schedules = db.fetch_schedules(include_archived=False, conn=conn).to_dict("records")
        posted = db.fetch_posted_dates(conn=conn)

    decoded, schedule_warnings = decode_schedules(schedules)
    # overdue looks back to each schedule's own start date
    earliest = min((parse_date(s.start_date) for s in decoded), default=today)
    due_result = due_occurrences(decoded, posted, min(earliest, today), window_to)

    return compose_overview(
        month,
        summary,
        targets,
        accounts,
        transactions,
        envelopes,
        activity,
        due_result.occurrences,
        today,
        warnings=target_warnings + schedule_warnings + due_result.warnings,
        top_n=config.TOP_N,
        window_days=config.SCHEDULE_WINDOW_DAYS,
    )


def account_detail(account: str, limit: int = 20) -> Dict[str, Any]:
    """Balances plus the most recent transactions of one account."""
    with db.connect() as conn:
        acct = resolve_account(conn, account)
        accounts = db.fetch_accounts(conn=conn)
        transactions = db.fetch_transactions(account_id=acct["id"], conn=conn)
    balances = account_balances(accounts[accounts["id"] == acct["id"]], transactions)
    row = balances.iloc[0]
    recent = transactions.sort_values("posted_at", ascending=False).head(limit)
    return {
        "account": {"id": acct["id"], "name": acct["name"], "type": acct["type"], "currency": acct["currency"]},
        "balance": int(row["balance"]),
        "clearedBalance": int(row["cleared_balance"]),
        "pendingBalance": int(row["pending_balance"]),
        "lastPostedAt": row["last_posted_at"],
        "transactions": [
            {
                "id": tx["id"],
                "postedAt": tx["posted_at"],
                "amount": int(tx["amount"]),
                "payeeName": tx["payee_name"],
                "memo": tx["memo"],
                "cleared": tx["cleared"],
                "transferGroupId": tx["transfer_group_id"],
            }
            for tx in recent.to_dict("records")
        ],
    }


def list_transactions(
    account: Optional[str] = None,
    envelope: Optional[str] = None,
    from_date: Optional[DateLike] = None,
    to_date: Optional[DateLike] = None,
    search: Optional[str] = None,
    limit: int = config.TX_LIST_LIMIT,
) -> List[Dict[str, Any]]:
    """Newest-first transactions with their splits.

    ``from_date`` and ``to_date`` are inclusive calendar dates (UTC days).
    ``limit`` is clamped to ``1..TX_LIST_MAX``.
    """
    limit = max(1, min(int(limit), config.TX_LIST_MAX))
    start = date_to_instant(from_date) if from_date is not None else None
    end = date_to_instant(add_days(to_date, 1)) if to_date is not None else None
    with db.connect() as conn:
        account_id = resolve_account(conn, account)["id"] if account else None
        envelope_id = resolve_envelope(conn, envelope)["id"] if envelope else None
        rows = db.fetch_transaction_list(account_id, envelope_id, start, end, search, limit, conn=conn)
        splits = db.fetch_named_splits(rows["id"].tolist(), conn=conn)

    by_tx: Dict[str, List[Dict[str, Any]]] = {}
    for split in splits.to_dict("records"):
        by_tx.setdefault(split["transaction_id"], []).append({
            "envelopeId": split["envelope_id"],
            "envelope": split["envelope_name"],
            "amount": int(split["amount"]),
            "note": split["note"],
        })
    return [
        {
            "id": tx["id"],
            "externalId": tx["external_id"],
            "accountId": tx["account_id"],
            "accountName": tx["account_name"],
            "postedAt": tx["posted_at"],
            "amount": int(tx["amount"]),
            "payeeId": tx["payee_id"],
            "payeeName": tx["payee_name"],
            "memo": tx["memo"],
            "cleared": tx["cleared"],
            "skipBudget": bool(tx["skip_budget"]),
            "transferGroupId": tx["transfer_group_id"],
            "transferPeerId": tx["transfer_peer_id"],
            "splits": by_tx.get(tx["id"], []),
        }
        for tx in rows.to_dict("records")
    ]


def list_payees() -> List[Dict[str, Any]]:
    df = db.fetch_payees()
    return [
        {"id": row["id"], "name": row["name"], "createdAt": row["created_at"], "updatedAt": row["updated_at"]}
        for row in df.to_dict("records")
    ]


def list_payee_rules(include_archived: bool = False) -> List[Dict[str, Any]]:
    rows = db.fetch_payee_rules(include_archived=include_archived).to_dict("records")
    return [PayeeRule.from_row(row).to_dict() for row in rows]
