"""Compose the one-call budget overview.

Everything here is a pure function of rows that the caller already fetched,
and "today" is always an argument. The service layer owns the clock and the
database; this module only shapes numbers.
"""

from __future__ import annotations

from datetime import date
from typing import Any, Dict, Iterable, List, Mapping, Optional

import numpy as np
import pandas as pd

from .config import LIQUID_ACCOUNT_TYPES, SCHEDULE_WINDOW_DAYS, TOP_N
from .date_utils import DateLike, add_days, format_date, parse_date, parse_month
from .ledger import MonthSummary
from .models import Occurrence
from .occurrences import split_by_today
from .targets import Target, evaluate_targets, top_underfunded, underfunded_total

NO_PAYEE = "(no payee)"


def _in_month(posted_at: pd.Series, month: str) -> pd.Series:
    bounds = parse_month(month)
    posted = pd.to_datetime(posted_at, utc=True, format="ISO8601")
    return (posted >= pd.Timestamp(bounds.start_iso)) & (posted < pd.Timestamp(bounds.end_iso))


def account_balances(accounts: pd.DataFrame, transactions: pd.DataFrame) -> pd.DataFrame:
    """Per-account balance, cleared and pending balances and last posting.

    ``accounts`` needs ``id, name, type, currency``; ``transactions`` needs
    ``account_id, amount, cleared, posted_at``.
    """
    columns = ["id", "name", "type", "currency", "balance", "cleared_balance", "pending_balance", "last_posted_at"]
    if accounts is None or accounts.empty:
        return pd.DataFrame(columns=columns)

    result = accounts[["id", "name", "type", "currency"]].copy()
    tx = transactions if transactions is not None else pd.DataFrame()
    if tx.empty:
        for col in ("balance", "cleared_balance", "pending_balance"):
            result[col] = 0
        result["last_posted_at"] = None
        return result.sort_values("name").reset_index(drop=True)[columns]

    amounts = tx["amount"].astype("int64")
    frame = pd.DataFrame({
        "account_id": tx["account_id"],
        "balance": amounts,
        "cleared_balance": np.where(tx["cleared"].isin(["cleared", "reconciled"]), amounts, 0),
        "pending_balance": np.where(tx["cleared"] == "pending", amounts, 0),
        "last_posted_at": tx["posted_at"],
    })
    grouped = frame.groupby("account_id").agg(
        balance=("balance", "sum"),
        cleared_balance=("cleared_balance", "sum"),
        pending_balance=("pending_balance", "sum"),
        last_posted_at=("last_posted_at", "max"),
    )
    aligned = grouped.reindex(result["id"])
    for col in ("balance", "cleared_balance", "pending_balance"):
        result[col] = aligned[col].fillna(0).astype("int64").to_numpy()
    last = aligned["last_posted_at"].astype(object)
    result["last_posted_at"] = last.where(last.notna(), None).to_numpy()
    return result.sort_values("name").reset_index(drop=True)[columns]


def net_worth(balances: pd.DataFrame) -> Dict[str, int]:
    if balances.empty:
        return {"liquid": 0, "tracking": 0, "total": 0}
    liquid = int(balances.loc[balances["type"].isin(LIQUID_ACCOUNT_TYPES), "balance"].sum())
    tracking = int(balances.loc[balances["type"] == "tracking", "balance"].sum())
    return {"liquid": liquid, "tracking": tracking, "total": liquid + tracking}


def _budget_account_month_tx(month: str, accounts: pd.DataFrame, transactions: pd.DataFrame) -> pd.DataFrame:
    """Month transactions on liquid accounts that are not transfer legs."""
    if transactions is None or transactions.empty or accounts is None or accounts.empty:
        return pd.DataFrame(columns=["amount", "payee_name"])
    liquid_ids = set(accounts.loc[accounts["type"].isin(LIQUID_ACCOUNT_TYPES), "id"])
    mask = (
        _in_month(transactions["posted_at"], month)
        & transactions["transfer_group_id"].isna()
        & transactions["account_id"].isin(liquid_ids)
    )
    return transactions.loc[mask]


def cashflow(month: str, accounts: pd.DataFrame, transactions: pd.DataFrame) -> Dict[str, int]:
    """Income, expense (as a magnitude) and net for the month."""
    amounts = _budget_account_month_tx(month, accounts, transactions)["amount"].astype("int64")
    income = int(amounts[amounts > 0].sum())
    expense = int(-amounts[amounts < 0].sum())
    return {"income": income, "expense": expense, "net": income - expense}


def top_spending_by_envelope(
    month: str,
    envelopes: pd.DataFrame,
    activity: pd.DataFrame,
    limit: int = TOP_N,
) -> List[Dict[str, Any]]:
    """Envelopes with the largest outflow this month, system envelopes excluded."""
    if activity is None or activity.empty or envelopes is None or envelopes.empty:
        return []
    month_rows = activity.loc[_in_month(activity["posted_at"], month)]
    sums = month_rows.groupby("envelope_id")["amount"].sum()
    envs = envelopes.set_index("id")
    items = []
    for env_id, total in sums.items():
        if env_id not in envs.index or bool(envs.at[env_id, "is_system"]):
            continue
        spent = int(-total) if total < 0 else 0
        items.append({"envelopeId": env_id, "name": envs.at[env_id, "name"], "spent": spent})
    items.sort(key=lambda item: item["spent"], reverse=True)
    return items[:limit]


def top_spending_by_payee(
    month: str,
    accounts: pd.DataFrame,
    transactions: pd.DataFrame,
    limit: int = TOP_N,
) -> List[Dict[str, Any]]:
    rows = _budget_account_month_tx(month, accounts, transactions)
    if rows.empty:
        return []
    payees = rows["payee_name"].where(rows["payee_name"].notna() & (rows["payee_name"] != ""), NO_PAYEE)
    sums = rows["amount"].astype("int64").groupby(payees).sum()
    items = [
        {"name": name, "spent": int(-total)}
        for name, total in sums.items()
        if total < 0
    ]
    items.sort(key=lambda item: item["spent"], reverse=True)
    return items[:limit]


def schedule_digest(
    occurrences: Iterable[Occurrence],
    today: DateLike,
    window_days: int = SCHEDULE_WINDOW_DAYS,
    limit: int = TOP_N,
) -> Dict[str, Any]:
    """Overdue and due-soon counts plus the earliest unposted occurrences.

    ``occurrences`` should cover everything unposted up to
    ``today + window_days``; anything dated before ``today`` counts as overdue.
    """
    today_d = parse_date(today)
    window_to = add_days(today_d, window_days)
    overdue, due_soon = split_by_today(occurrences, today_d, window_to)
    ordered = sorted(overdue + due_soon, key=lambda occ: (occ.date, occ.name))
    return {
        "window": {"from": format_date(today_d), "to": format_date(window_to)},
        "counts": {"overdue": len(overdue), "dueSoon": len(due_soon)},
        "topDue": [occ.to_dict() for occ in ordered[:limit]],
    }


def compose_overview(
    month: str,
    summary: MonthSummary,
    targets: Mapping[str, Target],
    accounts: pd.DataFrame,
    transactions: pd.DataFrame,
    envelopes: pd.DataFrame,
    activity: pd.DataFrame,
    occurrences: Iterable[Occurrence],
    today: date,
    warnings: Optional[List[str]] = None,
    top_n: int = TOP_N,
    window_days: int = SCHEDULE_WINDOW_DAYS,
) -> Dict[str, Any]:
    """Build the overview snapshot for ``month``.

    Args:
        month: Target month (``YYYY-MM``).
        summary: Month summary computed with hidden envelopes included.
        targets: Active targets keyed by envelope id.
        accounts: Account rows (``id, name, type, currency``).
        transactions: Every transaction row (balances need all history).
        envelopes: Envelope rows (``id, name, is_system``).
        activity: Split rows with ``posted_at`` for spending by envelope.
        occurrences: Unposted schedule occurrences up to the window end.
        today: The caller's notion of the current date.
        warnings: Extra warnings to append to the summary's own.
        top_n: Length of every "top" list.
        window_days: How far past ``today`` counts as due soon.
    """
    envelope_rows = [env.to_dict() for env in summary.envelopes]
    overspent = sorted((e for e in envelope_rows if e["available"] < 0), key=lambda e: e["available"])
    top_negative = sorted(envelope_rows, key=lambda e: e["available"])[:top_n]

    underfunded_items = evaluate_targets(summary, targets)
    balances = account_balances(accounts, transactions)
    account_list = [
        {
            "id": row["id"],
            "name": row["name"],
            "type": row["type"],
            "currency": row["currency"],
            "balance": int(row["balance"]),
            "clearedBalance": int(row["cleared_balance"]),
            "pendingBalance": int(row["pending_balance"]),
            "lastPostedAt": row["last_posted_at"],
        }
        for row in balances.to_dict("records")
    ]
    tbb = summary.to_dict()["tbb"]

    return {
        "month": month,
        "currency": summary.currency,
        "flags": {
            "overbudget": tbb["available"] < 0,
            "overspent": bool(overspent),
            "hasPending": any(acct["pendingBalance"] != 0 for acct in account_list),
        },
        "budget": {
            "toBeBudgeted": tbb,
            "envelopes": [e for e in envelope_rows if not e["isHidden"]],
            "overspentEnvelopes": overspent,
            "topNegativeEnvelopes": top_negative,
        },
        "goals": {
            "underfundedTotal": underfunded_total(underfunded_items),
            "topUnderfunded": top_underfunded(underfunded_items, top_n),
        },
        "schedules": schedule_digest(occurrences, today, window_days, top_n),
        "netWorth": net_worth(balances),
        "accounts": {"list": account_list},
        "reports": {
            "cashflow": cashflow(month, accounts, transactions),
            "topSpending": top_spending_by_envelope(month, envelopes, activity, top_n),
            "topSpendingByPayee": top_spending_by_payee(month, accounts, transactions, top_n),
        },
        "warnings": list(summary.warnings) + list(warnings or []),
    }
