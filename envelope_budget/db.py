from __future__ import annotations

import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Sequence, Set

import pandas as pd

from .config import DB_PATH

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
PRAGMA journal_mode=WAL;
PRAGMA synchronous=NORMAL;

CREATE TABLE IF NOT EXISTS accounts (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL UNIQUE,
    type TEXT NOT NULL CHECK (type IN ('checking', 'savings', 'cash', 'tracking')),
    currency TEXT,
    opened_at TEXT,
    closed_at TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS envelopes (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL UNIQUE,
    group_name TEXT NOT NULL DEFAULT 'General',
    is_hidden INTEGER NOT NULL DEFAULT 0,
    is_system INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS payees (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL UNIQUE,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS payee_rules (
    id TEXT PRIMARY KEY,
    match_type TEXT NOT NULL CHECK (match_type IN ('exact', 'contains', 'regex')),
    pattern TEXT NOT NULL,
    target_payee_id TEXT NOT NULL REFERENCES payees(id) ON DELETE CASCADE,
    archived INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS transactions (
    id TEXT PRIMARY KEY,
    external_id TEXT UNIQUE,
    account_id TEXT NOT NULL REFERENCES accounts(id),
    posted_at TEXT NOT NULL,
    amount INTEGER NOT NULL,
    payee_id TEXT REFERENCES payees(id),
    payee_name TEXT,
    memo TEXT,
    cleared TEXT NOT NULL DEFAULT 'cleared' CHECK (cleared IN ('pending', 'cleared', 'reconciled')),
    skip_budget INTEGER NOT NULL DEFAULT 0,
    transfer_group_id TEXT,
    transfer_peer_id TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS ix_tx_account ON transactions (account_id);
CREATE INDEX IF NOT EXISTS ix_tx_posted ON transactions (posted_at);

CREATE TABLE IF NOT EXISTS transaction_splits (
    id TEXT PRIMARY KEY,
    transaction_id TEXT NOT NULL REFERENCES transactions(id) ON DELETE CASCADE,
    envelope_id TEXT NOT NULL REFERENCES envelopes(id),
    amount INTEGER NOT NULL,
    note TEXT
);

CREATE INDEX IF NOT EXISTS ix_split_envelope ON transaction_splits (envelope_id);

CREATE TABLE IF NOT EXISTS budget_months (
    id TEXT PRIMARY KEY,
    month TEXT NOT NULL UNIQUE,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS allocations (
    id TEXT PRIMARY KEY,
    budget_month_id TEXT NOT NULL REFERENCES budget_months(id),
    envelope_id TEXT NOT NULL REFERENCES envelopes(id),
    amount INTEGER NOT NULL,
    source TEXT,
    note TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS envelope_moves (
    id TEXT PRIMARY KEY,
    budget_month_id TEXT NOT NULL REFERENCES budget_months(id),
    from_envelope_id TEXT NOT NULL REFERENCES envelopes(id),
    to_envelope_id TEXT NOT NULL REFERENCES envelopes(id),
    amount INTEGER NOT NULL CHECK (amount > 0),
    note TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS targets (
    id TEXT PRIMARY KEY,
    envelope_id TEXT NOT NULL UNIQUE REFERENCES envelopes(id) ON DELETE CASCADE,
    type TEXT NOT NULL CHECK (type IN ('monthly', 'needed_for_spending', 'by_date')),
    amount INTEGER,
    target_amount INTEGER,
    target_month TEXT,
    start_month TEXT,
    note TEXT,
    archived INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS scheduled_transactions (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL UNIQUE,
    account_id TEXT NOT NULL REFERENCES accounts(id),
    envelope_id TEXT REFERENCES envelopes(id),
    amount INTEGER NOT NULL,
    payee_name TEXT,
    memo TEXT,
    rule_json TEXT NOT NULL,
    start_date TEXT NOT NULL,
    end_date TEXT,
    archived INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS scheduled_postings (
    id TEXT PRIMARY KEY,
    scheduled_id TEXT NOT NULL REFERENCES scheduled_transactions(id),
    occurrence_date TEXT NOT NULL,
    transaction_id TEXT NOT NULL REFERENCES transactions(id),
    created_at TEXT NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS ux_posting_occurrence
ON scheduled_postings (scheduled_id, occurrence_date);

CREATE TABLE IF NOT EXISTS settings (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""


def _ensure_dirs() -> None:
    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4()}"


def utc_now_iso() -> str:
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


@contextmanager
def connect() -> Iterator[sqlite3.Connection]:
    _ensure_dirs()
    conn = sqlite3.connect(str(DB_PATH))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    try:
        yield conn
    finally:
        conn.close()


@contextmanager
def transaction() -> Iterator[sqlite3.Connection]:
    """Run a group of writes atomically.

    Commits when the block exits normally and rolls back on any exception, so
    multi-row writes (allocation mirrors, postings, reconciliation) land
    together or not at all.
    """
    with connect() as conn:
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.rollback()
            raise
        else:
            conn.commit()


def init_db() -> None:
    with connect() as conn:
        conn.executescript(SCHEMA_SQL)
        conn.commit()
        _migrate_database(conn)


def _migrate_database(conn: sqlite3.Connection) -> None:
    """Add columns introduced after a database file was first created."""
    existing_columns = {row[1] for row in conn.execute("PRAGMA table_info(transactions)")}
    new_columns = [("payee_id", "TEXT REFERENCES payees(id)")]
    for column_name, column_type in new_columns:
        if column_name not in existing_columns:
            conn.execute(f"ALTER TABLE transactions ADD COLUMN {column_name} {column_type}")
            logger.info("Added column %s to transactions table", column_name)
    conn.commit()


def _read(sql: str, params: Sequence[Any] = (), conn: Optional[sqlite3.Connection] = None) -> pd.DataFrame:
    if conn is not None:
        return pd.read_sql_query(sql, conn, params=list(params))
    with connect() as own:
        return pd.read_sql_query(sql, own, params=list(params))


def fetch_envelopes(conn: Optional[sqlite3.Connection] = None) -> pd.DataFrame:
    df = _read(
        "SELECT id, name, group_name, is_hidden, is_system FROM envelopes "
        "ORDER BY is_system DESC, group_name, name",
        conn=conn,
    )
    df["is_hidden"] = df["is_hidden"].astype(bool)
    df["is_system"] = df["is_system"].astype(bool)
    return df


def fetch_accounts(conn: Optional[sqlite3.Connection] = None) -> pd.DataFrame:
    return _read(
        "SELECT id, name, type, currency, opened_at, closed_at FROM accounts ORDER BY name",
        conn=conn,
    )


def fetch_transactions(
    account_id: Optional[str] = None,
    conn: Optional[sqlite3.Connection] = None,
) -> pd.DataFrame:
    sql = (
        "SELECT id, external_id, account_id, posted_at, amount, payee_id, payee_name, memo, cleared, "
        "skip_budget, transfer_group_id, transfer_peer_id FROM transactions"
    )
    params: list = []
    if account_id is not None:
        sql += " WHERE account_id = ?"
        params.append(account_id)
    sql += " ORDER BY posted_at, created_at"
    df = _read(sql, params, conn=conn)
    df["skip_budget"] = df["skip_budget"].astype(bool)
    return df


def fetch_splits(conn: Optional[sqlite3.Connection] = None) -> pd.DataFrame:
    return _read("SELECT transaction_id, envelope_id, amount, note FROM transaction_splits", conn=conn)


def fetch_split_activity(conn: Optional[sqlite3.Connection] = None) -> pd.DataFrame:
    """Splits joined to their transaction's posted-at instant."""
    return _read(
        "SELECT s.envelope_id, t.posted_at, s.amount, s.transaction_id "
        "FROM transaction_splits s JOIN transactions t ON t.id = s.transaction_id",
        conn=conn,
    )


def fetch_transaction_list(
    account_id: Optional[str] = None,
    envelope_id: Optional[str] = None,
    start: Optional[str] = None,
    end: Optional[str] = None,
    search: Optional[str] = None,
    limit: int = 50,
    conn: Optional[sqlite3.Connection] = None,
) -> pd.DataFrame:
    """Newest-first transactions with their account name.

    ``start`` and ``end`` are UTC instants bounding ``posted_at`` as a
    half-open range. ``search`` is a case-insensitive substring of the payee
    or memo.
    """
    clauses, params = [], []
    if account_id is not None:
        clauses.append("t.account_id = ?")
        params.append(account_id)
    if envelope_id is not None:
        clauses.append("t.id IN (SELECT transaction_id FROM transaction_splits WHERE envelope_id = ?)")
        params.append(envelope_id)
    if start is not None:
        clauses.append("t.posted_at >= ?")
        params.append(start)
    if end is not None:
        clauses.append("t.posted_at < ?")
        params.append(end)
    if search:
        clauses.append("(t.payee_name LIKE ? OR t.memo LIKE ?)")
        params.extend([f"%{search}%", f"%{search}%"])
    sql = (
        "SELECT t.id, t.external_id, t.account_id, a.name AS account_name, t.posted_at, t.amount, "
        "t.payee_id, t.payee_name, t.memo, t.cleared, t.skip_budget, t.transfer_group_id, "
        "t.transfer_peer_id FROM transactions t JOIN accounts a ON a.id = t.account_id"
    )
    if clauses:
        sql += " WHERE " + " AND ".join(clauses)
    sql += " ORDER BY t.posted_at DESC, t.created_at DESC LIMIT ?"
    params.append(int(limit))
    df = _read(sql, params, conn=conn)
    df["skip_budget"] = df["skip_budget"].astype(bool)
    return df


def fetch_named_splits(transaction_ids: Sequence[str], conn: Optional[sqlite3.Connection] = None) -> pd.DataFrame:
    """Splits of the given transactions joined to their envelope name."""
    columns = ["transaction_id", "envelope_id", "envelope_name", "amount", "note"]
    if not transaction_ids:
        return pd.DataFrame(columns=columns)
    marks = ", ".join("?" for _ in transaction_ids)
    return _read(
        "SELECT s.transaction_id, s.envelope_id, e.name AS envelope_name, s.amount, s.note "
        f"FROM transaction_splits s JOIN envelopes e ON e.id = s.envelope_id WHERE s.transaction_id IN ({marks}) "
        "ORDER BY s.rowid",
        list(transaction_ids),
        conn=conn,
    )


def fetch_payees(conn: Optional[sqlite3.Connection] = None) -> pd.DataFrame:
    return _read("SELECT id, name, created_at, updated_at FROM payees ORDER BY name", conn=conn)


def fetch_payee_rules(include_archived: bool = False, conn: Optional[sqlite3.Connection] = None) -> pd.DataFrame:
    """Payee rules in the order they are applied (oldest first)."""
    sql = (
        "SELECT r.id, r.match_type, r.pattern, r.target_payee_id, p.name AS target_payee_name, r.archived, "
        "r.created_at, r.updated_at FROM payee_rules r JOIN payees p ON p.id = r.target_payee_id"
    )
    if not include_archived:
        sql += " WHERE r.archived = 0"
    sql += " ORDER BY r.created_at, r.rowid"
    df = _read(sql, conn=conn)
    df["archived"] = df["archived"].astype(bool)
    return df


def fetch_allocations(conn: Optional[sqlite3.Connection] = None) -> pd.DataFrame:
    return _read(
        "SELECT a.envelope_id, bm.month, a.amount, a.source, a.note "
        "FROM allocations a JOIN budget_months bm ON bm.id = a.budget_month_id",
        conn=conn,
    )


def fetch_moves(conn: Optional[sqlite3.Connection] = None) -> pd.DataFrame:
    return _read(
        "SELECT bm.month, m.from_envelope_id, m.to_envelope_id, m.amount, m.note "
        "FROM envelope_moves m JOIN budget_months bm ON bm.id = m.budget_month_id",
        conn=conn,
    )


def fetch_targets(include_archived: bool = False, conn: Optional[sqlite3.Connection] = None) -> pd.DataFrame:
    sql = (
        "SELECT envelope_id, type, amount, target_amount, target_month, start_month, note, archived "
        "FROM targets"
    )
    if not include_archived:
        sql += " WHERE archived = 0"
    return _read(sql, conn=conn)


def fetch_schedules(include_archived: bool = True, conn: Optional[sqlite3.Connection] = None) -> pd.DataFrame:
    sql = (
        "SELECT id, name, account_id, envelope_id, amount, payee_name, memo, rule_json, "
        "start_date, end_date, archived FROM scheduled_transactions"
    )
    if not include_archived:
        sql += " WHERE archived = 0"
    sql += " ORDER BY name"
    return _read(sql, conn=conn)


def fetch_posted_dates(conn: Optional[sqlite3.Connection] = None) -> Dict[str, Set[str]]:
    df = _read("SELECT scheduled_id, occurrence_date FROM scheduled_postings", conn=conn)
    posted: Dict[str, Set[str]] = {}
    for sched_id, day in zip(df["scheduled_id"], df["occurrence_date"]):
        posted.setdefault(sched_id, set()).add(day)
    return posted


def get_setting(key: str, conn: Optional[sqlite3.Connection] = None) -> Optional[str]:
    df = _read("SELECT value FROM settings WHERE key = ?", (key,), conn=conn)
    if df.empty:
        return None
    return str(df["value"].iloc[0])


def set_setting(key: str, value: str) -> None:
    with transaction() as conn:
        conn.execute(
            "INSERT INTO settings (key, value, updated_at) VALUES (?, ?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at",
            (key, value, utc_now_iso()),
        )
