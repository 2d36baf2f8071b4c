"""Command-line interface for the envelope budget.

Every command prints a short human summary, or with ``--json`` a
``{"ok": true, "data": ...}`` document on stdout. Failures print a message
(or ``{"ok": false, "error": {...}}``) on stderr and exit with status 2, or 3
when the To Be Budgeted envelope is missing.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import pandas as pd

from . import config, db, operations, services
from .errors import BudgetError, InvalidInputError
from .money import format_minor, parse_major_to_minor, parse_minor_text
from .payees import MATCH_TYPES

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 2
EXIT_MISSING_TBB = 3

Result = Tuple[str, Any]


def _pairs(values: Optional[List[str]], flag: str) -> List[Dict[str, Any]]:
    """Parse repeated ``ENVELOPE=AMOUNT`` options."""
    items = []
    for raw in values or []:
        name, sep, amount = raw.rpartition("=")
        if not sep or not name.strip():
            raise InvalidInputError(f"{flag} expects ENVELOPE=AMOUNT, got {raw!r}")
        items.append({"envelope": name.strip(), "amount": parse_minor_text(amount, flag)})
    return items


def _rule_from_args(args: argparse.Namespace) -> Optional[Dict[str, Any]]:
    if not args.freq:
        return None
    rule: Dict[str, Any] = {"freq": args.freq, "interval": args.interval}
    if args.freq == "weekly":
        rule["weekdays"] = args.weekdays or ""
    if args.freq in ("monthly", "yearly"):
        rule["monthDay"] = args.month_day if args.month_day == "last" else _int_or_raw(args.month_day)
    if args.freq == "yearly":
        rule["month"] = args.month
    return rule


def _int_or_raw(value: Optional[str]) -> Any:
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return value


# ---------------------------------------------------------------------------
# Command handlers: each returns (human message, JSON data)
# ---------------------------------------------------------------------------

def cmd_system_init(args) -> Result:
    data = operations.init_system(args.tbb_name)
    verb = "Created" if data["created"] else "Found"
    return f"{verb} system envelope '{data['name']}'", data


def cmd_currency_set(args) -> Result:
    data = operations.set_currency(args.code)
    return f"Currency set to {data['currency']}", data


def cmd_currency_show(args) -> Result:
    code = services.budget_currency()
    return code, {"currency": code}


def cmd_envelope_create(args) -> Result:
    data = operations.create_envelope(args.name, args.group, args.hidden)
    return f"Created envelope {data['name']} ({data['groupName']})", data


def cmd_envelope_hide(args) -> Result:
    data = operations.set_envelope_hidden(args.envelope, not args.unhide)
    return f"{data['name']} hidden={data['isHidden']}", data


def cmd_envelope_list(args) -> Result:
    df = db.fetch_envelopes()
    return df.to_string(index=False) if not df.empty else "No envelopes", df.to_dict("records")


def cmd_account_create(args) -> Result:
    data = operations.create_account(args.name, args.type, args.currency)
    return f"Created account {data['name']} ({data['type']})", data


def cmd_account_list(args) -> Result:
    df = db.fetch_accounts()
    return df.to_string(index=False) if not df.empty else "No accounts", df.to_dict("records")


def cmd_account_detail(args) -> Result:
    data = services.account_detail(args.account, args.limit)
    currency = services.budget_currency()
    lines = [
        f"{data['account']['name']} ({data['account']['type']})",
        f"  balance  {format_minor(data['balance'], currency)}",
        f"  cleared  {format_minor(data['clearedBalance'], currency)}",
        f"  pending  {format_minor(data['pendingBalance'], currency)}",
    ]
    return "\n".join(lines), data


def cmd_reconcile_preview(args) -> Result:
    data = operations.reconcile_preview(args.account, args.statement_balance)
    return (
        f"Cleared balance={data['clearedBalance']} statement={data['statementBalance']} delta={data['delta']}",
        data,
    )


def cmd_reconcile(args) -> Result:
    data = operations.reconcile(args.account, args.statement_balance, args.date)
    return f"Reconciled {data['accountName']}. delta={data['delta']}", data


def cmd_tx_add(args) -> Result:
    data = operations.add_transaction(
        account=args.account,
        amount=args.amount,
        posted_at=args.date,
        envelope=args.envelope,
        splits=_pairs(args.split, "--split") or None,
        payee=args.payee,
        memo=args.memo,
        cleared=args.cleared,
        skip_budget=args.skip_budget,
        external_id=args.external_id,
    )
    if data["status"] == "exists":
        return f"Transaction with external id {args.external_id} already exists", data
    return f"Added transaction {data['transaction']['id']}", data


def cmd_tx_transfer(args) -> Result:
    data = operations.add_transfer(args.from_account, args.to_account, args.amount, args.date, args.memo)
    return f"Transferred {data['amount']} ({data['transferGroupId']})", data


def cmd_tx_list(args) -> Result:
    rows = services.list_transactions(
        account=args.account,
        envelope=args.envelope,
        from_date=args.from_date,
        to_date=args.to_date,
        search=args.search,
        limit=args.limit,
    )
    table = pd.DataFrame(rows)
    if table.empty:
        return "No transactions", rows
    table["postedAt"] = table["postedAt"].str[:10]
    return table[["id", "postedAt", "accountName", "amount", "payeeName", "cleared"]].to_string(index=False), rows


def cmd_tx_update(args) -> Result:
    changes: Dict[str, Any] = {}
    if args.account:
        changes["account"] = args.account
    if args.amount is not None:
        changes["amount"] = args.amount
    if args.date:
        changes["posted_at"] = args.date
    if args.payee is not None:
        changes["payee"] = args.payee or None
    if args.memo is not None:
        changes["memo"] = args.memo or None
    if args.cleared:
        changes["cleared"] = args.cleared
    if args.skip_budget is not None:
        changes["skip_budget"] = args.skip_budget
    if args.envelope:
        changes["envelope"] = args.envelope
    if args.split:
        changes["splits"] = _pairs(args.split, "--split")
    data = operations.update_transaction(args.id, force=args.force, **changes)
    return f"Updated transaction {data['transaction']['id']}", data


def cmd_tx_clear(args) -> Result:
    data = operations.set_cleared(args.id, "cleared", force=args.force)
    return f"Transaction {data['id']} is cleared", data


def cmd_tx_unclear(args) -> Result:
    data = operations.set_cleared(args.id, "pending", force=args.force)
    return f"Transaction {data['id']} is pending", data


def cmd_tx_delete(args) -> Result:
    data = operations.delete_transaction(args.id, force=args.force)
    return f"Deleted {', '.join(data['deletedIds'])}", data


def cmd_tx_import(args) -> Result:
    with Path(args.from_jsonl).open(encoding="utf-8") as handle:
        data = operations.import_transactions(handle, dry_run=args.dry_run)
    lines = [
        f"{'Validated' if data['dryRun'] else 'Imported'}: created={data['created']} exists={data['exists']} "
        f"validated={data['validated']} errors={data['errors']}"
    ]
    lines.extend(
        f"  line {r['line']}: {r['error']['message']}" for r in data["results"] if r["status"] == "error"
    )
    return "\n".join(lines), data


def cmd_payee_list(args) -> Result:
    rows = services.list_payees()
    return "\n".join(f"{p['name']}  ({p['id']})" for p in rows) or "No payees", rows


def cmd_payee_create(args) -> Result:
    data = operations.create_payee(args.name)
    return f"Payee {data['name']} ({data['id']})", data


def cmd_payee_rename(args) -> Result:
    data = operations.rename_payee(args.payee, args.new_name)
    return f"Renamed payee {data['previousName']} to {data['name']}", data


def cmd_payee_merge(args) -> Result:
    data = operations.merge_payees(args.source, args.into)
    return f"Merged payee into {data['targetName']} ({data['movedTransactions']} transactions)", data


def cmd_payee_rule_list(args) -> Result:
    rows = services.list_payee_rules(include_archived=args.archived)
    lines = [f"{r['match']} {r['pattern']!r} -> {r['targetPayeeName']}  ({r['id']})" for r in rows]
    return "\n".join(lines) or "No payee rules", rows


def cmd_payee_rule_add(args) -> Result:
    data = operations.add_payee_rule(args.match, args.pattern, args.to)
    return f"Added payee rule {data['id']}", data


def cmd_payee_rule_archive(args) -> Result:
    data = operations.archive_payee_rule(args.rule_id)
    return f"Archived payee rule {data['id']}", data


def cmd_month_summary(args) -> Result:
    summary = services.month_summary(args.month, include_hidden=args.hidden)
    data = summary.to_dict()
    table = pd.DataFrame(data["envelopes"])
    lines = [
        f"Month {summary.month}: envelopes={len(summary.envelopes)} TBB_available={summary.tbb.available}",
    ]
    if not table.empty:
        lines.append(table[["name", "groupName", "availableStart", "budgeted", "activity", "available"]].to_string(index=False))
    lines.extend(f"warning: {w}" for w in summary.warnings)
    return "\n".join(lines), data


def cmd_budget_allocate(args) -> Result:
    if args.from_json:
        payload = json.loads(Path(args.from_json).read_text(encoding="utf-8"))
    else:
        payload = {"allocations": _pairs(args.alloc, "--alloc")}
    data = operations.allocate(args.month, payload, note=args.note)
    return f"Allocated {data['total']} in {data['month']}", data


def cmd_budget_move(args) -> Result:
    data = operations.move(args.month, args.from_envelope, args.to_envelope, args.amount, args.note)
    return f"Moved {data['amount']} from {data['from']} to {data['to']} in {data['month']}", data


def cmd_budget_underfunded(args) -> Result:
    data = services.underfunded_report(args.month, include_hidden=args.hidden)
    lines = [f"Underfunded {data['month']}: total={data['total']}"]
    lines.extend(f"  {item['name']}: {item['underfunded']}" for item in data["items"] if item["underfunded"])
    return "\n".join(lines), data


def cmd_target_set(args) -> Result:
    kind = args.type.replace("-", "_")
    if kind == "by_date":
        target = {
            "type": kind,
            "targetAmount": args.target_amount,
            "targetMonth": args.target_month,
            "startMonth": args.start_month,
        }
    else:
        target = {"type": kind, "amount": args.amount}
    data = operations.set_target(args.envelope, target, note=args.note)
    return f"Target set on {data['name']}: {data['target']['type']}", data


def cmd_target_clear(args) -> Result:
    data = operations.clear_target(args.envelope)
    return f"Target cleared on {data['name']}", data


def cmd_schedule_create(args) -> Result:
    rule = _rule_from_args(args)
    if rule is None:
        raise InvalidInputError("--freq is required")
    data = operations.create_schedule(
        name=args.name,
        account=args.account,
        amount=parse_major_to_minor(args.amount),
        rule=rule,
        start_date=args.start,
        end_date=args.end,
        envelope=args.envelope,
        payee=args.payee,
        memo=args.memo,
    )
    return f"Created schedule {data['name']} ({data['id']})", data


def cmd_schedule_update(args) -> Result:
    changes: Dict[str, Any] = {}
    if args.name:
        changes["name"] = args.name
    if args.account:
        changes["account"] = args.account
    if args.amount is not None:
        changes["amount"] = parse_major_to_minor(args.amount)
    rule = _rule_from_args(args)
    if rule is not None:
        changes["rule"] = rule
    if args.start:
        changes["start_date"] = args.start
    if args.end:
        changes["end_date"] = args.end
    if args.clear_end:
        changes["end_date"] = None
    if args.envelope:
        changes["envelope"] = args.envelope
    if args.skip_budget:
        changes["envelope"] = None
    if args.payee is not None:
        changes["payee"] = args.payee or None
    if args.memo is not None:
        changes["memo"] = args.memo or None
    data = operations.update_schedule(args.schedule, **changes)
    return f"Updated schedule {data['name']}", data


def cmd_schedule_archive(args) -> Result:
    data = operations.archive_schedule(args.schedule)
    return f"Archived schedule {data['name']}", data


def cmd_schedule_list(args) -> Result:
    data = services.list_schedules(include_archived=args.archived)
    lines = [
        f"{s['name']}  {s['amount']}  {s['description'] or '(unreadable rule)'}  from {s['startDate']}"
        for s in data["schedules"]
    ] or ["No schedules"]
    lines.extend(f"warning: {w}" for w in data["warnings"])
    return "\n".join(lines), data


def cmd_schedule_due(args) -> Result:
    today = config.today()
    result = services.due(args.from_date or today, args.to_date or args.from_date or today)
    data = {
        "occurrences": [occ.to_dict() for occ in result.occurrences],
        "warnings": result.warnings,
    }
    lines = [f"{occ.date} {occ.name} {occ.amount} {occ.occurrence_id}" for occ in result.occurrences]
    lines = lines or ["Nothing due"]
    lines.extend(f"warning: {w}" for w in result.warnings)
    return "\n".join(lines), data


def cmd_schedule_post(args) -> Result:
    data = operations.post_occurrence(args.occurrence_id)
    return f"Posted schedule occurrence {data['occurrence']['occurrenceDate']}", data


def cmd_overview(args) -> Result:
    data = services.overview(args.month, args.today)
    tbb = data["budget"]["toBeBudgeted"]
    currency = data["currency"]
    lines = [
        f"Overview {data['month']}",
        f"  To Be Budgeted  {format_minor(tbb['available'], currency)}",
        f"  Overspent       {len(data['budget']['overspentEnvelopes'])}",
        f"  Underfunded     {format_minor(data['goals']['underfundedTotal'], currency)}",
        f"  Net worth       {format_minor(data['netWorth']['total'], currency)}",
        f"  Due soon        {data['schedules']['counts']['dueSoon']} (overdue {data['schedules']['counts']['overdue']})",
    ]
    lines.extend(f"warning: {w}" for w in data["warnings"])
    return "\n".join(lines), data


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

def _add_rule_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--freq", choices=["daily", "weekly", "monthly", "yearly"])
    parser.add_argument("--interval", type=int, default=1)
    parser.add_argument("--weekdays", help="Comma list of mon..sun (weekly)")
    parser.add_argument("--month-day", help="1..31 or 'last' (monthly, yearly)")
    parser.add_argument("--month", type=int, help="1..12 (yearly)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="envelope-budget", description="Zero-based envelope budgeting.")
    parser.add_argument("--json", action="store_true", help="Machine-readable output")
    groups = parser.add_subparsers(dest="group", required=True)

    def command(group, name: str, handler: Callable[[argparse.Namespace], Result], help_text: str):
        sub = group.add_parser(name, help=help_text)
        sub.add_argument("--json", action="store_true", default=argparse.SUPPRESS)
        sub.set_defaults(handler=handler)
        return sub

    system = groups.add_parser("system").add_subparsers(dest="command", required=True)
    p = command(system, "init", cmd_system_init, "Create the database and the To Be Budgeted envelope")
    p.add_argument("--tbb-name", default=config.TBB_NAME)

    currency = groups.add_parser("currency").add_subparsers(dest="command", required=True)
    p = command(currency, "set", cmd_currency_set, "Set the budget currency")
    p.add_argument("code")
    command(currency, "show", cmd_currency_show, "Show the budget currency")

    envelope = groups.add_parser("envelope").add_subparsers(dest="command", required=True)
    p = command(envelope, "create", cmd_envelope_create, "Create an envelope")
    p.add_argument("name")
    p.add_argument("--group", default=config.DEFAULT_GROUP)
    p.add_argument("--hidden", action="store_true")
    p = command(envelope, "hide", cmd_envelope_hide, "Hide (or --unhide) an envelope")
    p.add_argument("envelope")
    p.add_argument("--unhide", action="store_true")
    command(envelope, "list", cmd_envelope_list, "List envelopes")

    account = groups.add_parser("account").add_subparsers(dest="command", required=True)
    p = command(account, "create", cmd_account_create, "Create an account")
    p.add_argument("name")
    p.add_argument("--type", choices=config.ACCOUNT_TYPES, default="checking")
    p.add_argument("--currency")
    command(account, "list", cmd_account_list, "List accounts")
    p = command(account, "detail", cmd_account_detail, "Balances and recent transactions")
    p.add_argument("account")
    p.add_argument("--limit", type=int, default=20)
    p = command(account, "reconcile-preview", cmd_reconcile_preview, "Preview the reconcile delta")
    p.add_argument("account")
    p.add_argument("--statement-balance", type=int, required=True, help="Integer minor units")
    p = command(account, "reconcile", cmd_reconcile, "Reconcile to a statement balance")
    p.add_argument("account")
    p.add_argument("--statement-balance", type=int, required=True, help="Integer minor units")
    p.add_argument("--date", required=True)

    tx = groups.add_parser("tx").add_subparsers(dest="command", required=True)
    p = command(tx, "add", cmd_tx_add, "Add a transaction")
    p.add_argument("--account", required=True)
    p.add_argument("--amount", type=int, required=True, help="Signed integer minor units")
    p.add_argument("--date", required=True)
    p.add_argument("--envelope")
    p.add_argument("--split", action="append", metavar="ENVELOPE=AMOUNT")
    p.add_argument("--payee")
    p.add_argument("--memo")
    p.add_argument("--cleared", choices=config.CLEARED_STATES, default="cleared")
    p.add_argument("--skip-budget", action="store_true")
    p.add_argument("--external-id")
    p = command(tx, "transfer", cmd_tx_transfer, "Transfer between accounts")
    p.add_argument("--from", dest="from_account", required=True)
    p.add_argument("--to", dest="to_account", required=True)
    p.add_argument("--amount", type=int, required=True)
    p.add_argument("--date", required=True)
    p.add_argument("--memo")
    p = command(tx, "list", cmd_tx_list, "List transactions, newest first")
    p.add_argument("--account")
    p.add_argument("--envelope")
    p.add_argument("--from", dest="from_date")
    p.add_argument("--to", dest="to_date")
    p.add_argument("--search", help="Substring of payee or memo")
    p.add_argument("--limit", type=int, default=config.TX_LIST_LIMIT)
    p = command(tx, "update", cmd_tx_update, "Update a transaction")
    p.add_argument("id")
    p.add_argument("--account")
    p.add_argument("--amount", type=int, help="Signed integer minor units")
    p.add_argument("--date")
    p.add_argument("--payee", help="Empty string clears the payee")
    p.add_argument("--memo", help="Empty string clears the memo")
    p.add_argument("--cleared", choices=config.CLEARED_STATES)
    p.add_argument("--skip-budget", dest="skip_budget", action="store_const", const=True, default=None)
    p.add_argument("--no-skip-budget", dest="skip_budget", action="store_const", const=False)
    p.add_argument("--envelope", help="Replace the splits with one envelope split")
    p.add_argument("--split", action="append", metavar="ENVELOPE=AMOUNT", help="Replace the splits")
    p.add_argument("--force", action="store_true", help="Allow changing a reconciled transaction")
    for name, handler, help_text in (
        ("clear", cmd_tx_clear, "Mark a transaction cleared"),
        ("unclear", cmd_tx_unclear, "Mark a transaction pending"),
    ):
        p = command(tx, name, handler, help_text)
        p.add_argument("id")
        p.add_argument("--force", action="store_true")
    p = command(tx, "delete", cmd_tx_delete, "Delete a transaction (both legs of a transfer)")
    p.add_argument("id")
    p.add_argument("--force", action="store_true", help="Allow deleting a reconciled transaction")
    p = command(tx, "import", cmd_tx_import, "Import transactions from a JSONL file")
    p.add_argument("--from-jsonl", required=True)
    p.add_argument("--dry-run", action="store_true", help="Validate without writing")

    payee = groups.add_parser("payee").add_subparsers(dest="command", required=True)
    command(payee, "list", cmd_payee_list, "List payees")
    p = command(payee, "create", cmd_payee_create, "Create a payee")
    p.add_argument("name")
    p = command(payee, "rename", cmd_payee_rename, "Rename a payee")
    p.add_argument("payee")
    p.add_argument("new_name")
    p = command(payee, "merge", cmd_payee_merge, "Merge a payee into another")
    p.add_argument("source")
    p.add_argument("--into", required=True)
    rule = payee.add_parser("rule", help="Payee normalization rules").add_subparsers(dest="rule_command", required=True)
    p = command(rule, "list", cmd_payee_rule_list, "List payee rules")
    p.add_argument("--archived", action="store_true")
    p = command(rule, "add", cmd_payee_rule_add, "Add a payee rule")
    p.add_argument("--match", required=True, choices=MATCH_TYPES)
    p.add_argument("--pattern", required=True)
    p.add_argument("--to", required=True, help="Target payee id or name")
    p = command(rule, "archive", cmd_payee_rule_archive, "Archive a payee rule")
    p.add_argument("rule_id")

    month = groups.add_parser("month").add_subparsers(dest="command", required=True)
    p = command(month, "summary", cmd_month_summary, "Summarize a calendar month (includes rollover)")
    p.add_argument("month")
    p.add_argument("--hidden", action="store_true", help="Include hidden envelopes")

    budget = groups.add_parser("budget").add_subparsers(dest="command", required=True)
    p = command(budget, "allocate", cmd_budget_allocate, "Allocate from To Be Budgeted")
    p.add_argument("month")
    p.add_argument("--from-json")
    p.add_argument("--alloc", action="append", metavar="ENVELOPE=AMOUNT")
    p.add_argument("--note")
    p = command(budget, "move", cmd_budget_move, "Move budget between envelopes")
    p.add_argument("month")
    p.add_argument("--from", dest="from_envelope", required=True)
    p.add_argument("--to", dest="to_envelope", required=True)
    p.add_argument("--amount", type=int, required=True)
    p.add_argument("--note")
    p = command(budget, "underfunded", cmd_budget_underfunded, "Underfunded targets for a month")
    p.add_argument("month")
    p.add_argument("--hidden", action="store_true")

    target = groups.add_parser("target").add_subparsers(dest="command", required=True)
    p = command(target, "set", cmd_target_set, "Set an envelope target")
    p.add_argument("envelope")
    p.add_argument("--type", required=True, choices=["monthly", "needed-for-spending", "by-date"])
    p.add_argument("--amount", type=int)
    p.add_argument("--target-amount", type=int)
    p.add_argument("--target-month")
    p.add_argument("--start-month")
    p.add_argument("--note")
    p = command(target, "clear", cmd_target_clear, "Clear an envelope target")
    p.add_argument("envelope")

    schedule = groups.add_parser("schedule").add_subparsers(dest="command", required=True)
    p = command(schedule, "create", cmd_schedule_create, "Create a scheduled transaction")
    p.add_argument("name")
    p.add_argument("--account", required=True)
    p.add_argument("--amount", required=True, help="Major units, e.g. -25 or 3.19")
    p.add_argument("--start", required=True)
    p.add_argument("--end")
    p.add_argument("--envelope")
    p.add_argument("--payee")
    p.add_argument("--memo")
    _add_rule_options(p)
    p = command(schedule, "update", cmd_schedule_update, "Update a scheduled transaction")
    p.add_argument("schedule")
    p.add_argument("--name")
    p.add_argument("--account")
    p.add_argument("--amount", help="Major units")
    p.add_argument("--start")
    p.add_argument("--end")
    p.add_argument("--clear-end", action="store_true")
    p.add_argument("--envelope")
    p.add_argument("--skip-budget", action="store_true", help="Unset envelope (no split when posting)")
    p.add_argument("--payee")
    p.add_argument("--memo")
    _add_rule_options(p)
    p = command(schedule, "archive", cmd_schedule_archive, "Archive a scheduled transaction")
    p.add_argument("schedule")
    p = command(schedule, "list", cmd_schedule_list, "List scheduled transactions")
    p.add_argument("--archived", action="store_true")
    p = command(schedule, "due", cmd_schedule_due, "Unposted occurrences in a date range")
    p.add_argument("--from", dest="from_date")
    p.add_argument("--to", dest="to_date")
    p = command(schedule, "post", cmd_schedule_post, "Post an occurrence as a pending transaction")
    p.add_argument("occurrence_id")

    p = command(groups, "overview", cmd_overview, "One-call budget overview")
    p.add_argument("--month")
    p.add_argument("--today")

    return parser


def _print_json(payload: Dict[str, Any], stream) -> None:
    stream.write(json.dumps(payload, indent=2, default=str) + "\n")


def main(argv: Optional[Sequence[str]] = None) -> int:
    logging.basicConfig(level=getattr(logging, config.LOG_LEVEL.upper(), logging.WARNING))
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        db.init_db()
        message, data = args.handler(args)
    except BudgetError as exc:
        if args.json:
            _print_json({"ok": False, "error": {"message": str(exc), "code": exc.code}}, sys.stderr)
        else:
            print(f"Error: {exc}", file=sys.stderr)
        return EXIT_MISSING_TBB if exc.code == "MISSING_TBB" else EXIT_ERROR
    except (OSError, json.JSONDecodeError) as exc:
        logger.error("Command failed: %s", exc)
        if args.json:
            _print_json({"ok": False, "error": {"message": str(exc), "code": "ERROR"}}, sys.stderr)
        else:
            print(f"Error: {exc}", file=sys.stderr)
        return EXIT_ERROR

    if args.json:
        _print_json({"ok": True, "data": data}, sys.stdout)
    else:
        print(message)
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
