"""Monthly envelope ledger.

Given a target month and the raw flow tables, compute per-envelope rollover,
budgeted, activity, moves and the resulting ``available`` balance. Every flow
is split into *prior* (before the first day of the month) and *current*
(inside the month); flows dated after the month are ignored. Each table is
reduced with a single grouped sum, so the cost grows with the number of flow
rows rather than with envelopes times months.

Input frames
------------
envelopes
    ``id, name, group_name, is_hidden, is_system``
activity
    ``envelope_id, posted_at, amount`` (one row per transaction split)
allocations
    ``envelope_id, month, amount``
moves
    ``month, from_envelope_id, to_envelope_id, amount``
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd

from .config import DEFAULT_CURRENCY
from .date_utils import parse_month
from .errors import MissingTBBError

logger = logging.getLogger(__name__)

PRIOR = "prior"
CURRENT = "current"
LATER = "later"

ENVELOPE_COLUMNS = ["id", "name", "group_name", "is_hidden", "is_system"]
ACTIVITY_COLUMNS = ["envelope_id", "posted_at", "amount"]
ALLOCATION_COLUMNS = ["envelope_id", "month", "amount"]
MOVE_COLUMNS = ["month", "from_envelope_id", "to_envelope_id", "amount"]


@dataclass
class EnvelopeBalance:
    envelope_id: str
    name: str
    group_name: str
    is_hidden: bool
    is_system: bool
    budgeted: int = 0
    activity: int = 0
    moved_in: int = 0
    moved_out: int = 0
    available_start: int = 0
    available: int = 0

    @property
    def overspent(self) -> bool:
        return self.available < 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "envelopeId": self.envelope_id,
            "name": self.name,
            "groupName": self.group_name,
            "isHidden": self.is_hidden,
            "isSystem": self.is_system,
            "budgeted": self.budgeted,
            "activity": self.activity,
            "movedIn": self.moved_in,
            "movedOut": self.moved_out,
            "availableStart": self.available_start,
            "available": self.available,
            "overspent": self.overspent,
        }


@dataclass
class MonthSummary:
    month: str
    currency: str
    tbb: EnvelopeBalance
    envelopes: List[EnvelopeBalance]
    totals: Dict[str, int]
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "month": self.month,
            "currency": self.currency,
            "system": {
                "tbbEnvelopeId": self.tbb.envelope_id,
                "tbbEnvelopeName": self.tbb.name,
            },
            "tbb": {
                "budgeted": self.tbb.budgeted,
                "activity": self.tbb.activity,
                "availableStart": self.tbb.available_start,
                "available": self.tbb.available,
            },
            "envelopes": [env.to_dict() for env in self.envelopes],
            "totals": dict(self.totals),
            "warnings": list(self.warnings),
        }


def _frame(df: Optional[pd.DataFrame], columns: List[str]) -> pd.DataFrame:
    if df is None or df.empty:
        return pd.DataFrame({col: pd.Series(dtype="object") for col in columns})
    missing = [col for col in columns if col not in df.columns]
    if missing:
        raise ValueError(f"Missing required columns: {', '.join(missing)}")
    return df


def _period_sums(keys: pd.Series, periods: np.ndarray, amounts: pd.Series, index: pd.Index) -> pd.DataFrame:
    """Sum ``amounts`` per (key, period) into an ``index x [prior, current]`` frame."""
    frame = pd.DataFrame({
        "key": keys.to_numpy(),
        "period": periods,
        "amount": pd.to_numeric(amounts, errors="raise").astype("int64").to_numpy(),
    })
    frame = frame[frame["period"] != LATER]
    if frame.empty:
        return pd.DataFrame(0, index=index, columns=[PRIOR, CURRENT], dtype="int64")
    sums = frame.groupby(["key", "period"])["amount"].sum().unstack("period", fill_value=0)
    return sums.reindex(index=index, columns=[PRIOR, CURRENT], fill_value=0).fillna(0).astype("int64")


def _month_periods(months: pd.Series, month: str) -> np.ndarray:
    values = months.astype(str)
    return np.where(values < month, PRIOR, np.where(values == month, CURRENT, LATER))


def envelope_balances(
    month: str,
    envelopes: pd.DataFrame,
    activity: Optional[pd.DataFrame] = None,
    allocations: Optional[pd.DataFrame] = None,
    moves: Optional[pd.DataFrame] = None,
) -> pd.DataFrame:
    """Per-envelope balances for ``month`` as a DataFrame indexed by envelope id.

    Columns: ``budgeted, activity, moved_in, moved_out, available_start,
    available, overspent`` plus the envelope attributes.
    """
    bounds = parse_month(month)
    envs = _frame(envelopes, ENVELOPE_COLUMNS)
    index = pd.Index(envs["id"], name="envelope_id")

    act = _frame(activity, ACTIVITY_COLUMNS)
    posted = pd.to_datetime(act["posted_at"], utc=True, format="ISO8601")
    start, end = pd.Timestamp(bounds.start_iso), pd.Timestamp(bounds.end_iso)
    act_periods = np.where(posted < start, PRIOR, np.where(posted < end, CURRENT, LATER))
    act_sums = _period_sums(act["envelope_id"], act_periods, act["amount"], index)

    alloc = _frame(allocations, ALLOCATION_COLUMNS)
    alloc_sums = _period_sums(alloc["envelope_id"], _month_periods(alloc["month"], month), alloc["amount"], index)

    mv = _frame(moves, MOVE_COLUMNS)
    move_periods = _month_periods(mv["month"], month)
    in_sums = _period_sums(mv["to_envelope_id"], move_periods, mv["amount"], index)
    out_sums = _period_sums(mv["from_envelope_id"], move_periods, mv["amount"], index)

    result = envs.set_index(index)[["name", "group_name", "is_hidden", "is_system"]].copy()
    result["is_hidden"] = result["is_hidden"].fillna(False).astype(bool)
    result["is_system"] = result["is_system"].fillna(False).astype(bool)
    result["budgeted"] = alloc_sums[CURRENT]
    result["activity"] = act_sums[CURRENT]
    result["moved_in"] = in_sums[CURRENT]
    result["moved_out"] = out_sums[CURRENT]
    result["available_start"] = (
        alloc_sums[PRIOR] + act_sums[PRIOR] + in_sums[PRIOR] - out_sums[PRIOR]
    )
    result["available"] = (
        result["available_start"]
        + result["budgeted"]
        + result["activity"]
        + result["moved_in"]
        - result["moved_out"]
    )
    result["overspent"] = result["available"] < 0
    return result


def _to_balance(envelope_id: str, row: pd.Series) -> EnvelopeBalance:
    return EnvelopeBalance(
        envelope_id=envelope_id,
        name=row["name"],
        group_name=row["group_name"],
        is_hidden=bool(row["is_hidden"]),
        is_system=bool(row["is_system"]),
        budgeted=int(row["budgeted"]),
        activity=int(row["activity"]),
        moved_in=int(row["moved_in"]),
        moved_out=int(row["moved_out"]),
        available_start=int(row["available_start"]),
        available=int(row["available"]),
    )


def aggregate_month(
    month: str,
    envelopes: pd.DataFrame,
    activity: Optional[pd.DataFrame] = None,
    allocations: Optional[pd.DataFrame] = None,
    moves: Optional[pd.DataFrame] = None,
    include_hidden: bool = False,
    currency: str = DEFAULT_CURRENCY,
    warnings: Optional[List[str]] = None,
) -> MonthSummary:
    """Compute the month summary: TBB row, visible envelopes and totals.

    Args:
        month: Target month as ``YYYY-MM``.
        envelopes: Every envelope, hidden ones included.
        activity: Transaction splits with their posted-at instants.
        allocations: Allocation rows with their budget month.
        moves: Envelope moves with their budget month.
        include_hidden: Keep hidden envelopes in the list and totals.
        currency: Budget currency echoed in the result.
        warnings: Integrity messages to carry on the summary.

    Returns:
        A :class:`MonthSummary`. Totals are taken over the visible envelopes,
        TBB included, while ``envelopes`` lists the non-system ones.

    Raises:
        MissingTBBError: If no system envelope exists.
    """
    envs = _frame(envelopes, ENVELOPE_COLUMNS)
    system = envs[envs["is_system"].fillna(False).astype(bool)]
    if system.empty:
        raise MissingTBBError()
    tbb_id = system.iloc[0]["id"]

    balances = envelope_balances(month, envs, activity, allocations, moves)
    tbb = _to_balance(tbb_id, balances.loc[tbb_id])

    visible = balances if include_hidden else balances[~balances["is_hidden"]]
    totals = {
        "budgeted": int(visible["budgeted"].sum()),
        "activity": int(visible["activity"].sum()),
        "available": int(visible["available"].sum()),
        "overspentCount": int(visible["overspent"].sum()),
    }
    rows = [
        _to_balance(env_id, row)
        for env_id, row in visible.iterrows()
        if env_id != tbb_id
    ]
    return MonthSummary(
        month=month,
        currency=currency,
        tbb=tbb,
        envelopes=rows,
        totals=totals,
        warnings=list(warnings or []),
    )


def split_integrity_warnings(transactions: pd.DataFrame, splits: pd.DataFrame) -> List[str]:
    """Report budgeted transactions whose splits do not sum to the amount.

    Transfers and skip-budget transactions are exempt. Nothing is corrected;
    the mismatches are only described.

    ``transactions`` needs ``id, amount, skip_budget, transfer_group_id``;
    ``splits`` needs ``transaction_id, amount``.
    """
    if transactions is None or transactions.empty:
        return []
    budgeted = transactions[
        ~transactions["skip_budget"].fillna(False).astype(bool)
        & transactions["transfer_group_id"].isna()
    ]
    if budgeted.empty:
        return []
    if splits is None or splits.empty:
        split_sums = pd.Series(dtype="int64")
    else:
        split_sums = splits.groupby("transaction_id")["amount"].sum()
    sums = split_sums.reindex(budgeted["id"]).fillna(0).astype("int64").to_numpy()
    amounts = budgeted["amount"].astype("int64").to_numpy()
    mismatched = np.flatnonzero(sums != amounts)

    messages = []
    for pos in mismatched:
        tx_id = budgeted["id"].iloc[pos]
        messages.append(
            f"Transaction {tx_id}: split amounts ({sums[pos]}) do not sum to transaction amount ({amounts[pos]})"
        )
    for message in messages:
        logger.warning(message)
    return messages
