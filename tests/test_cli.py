import json

from envelope_budget.cli import main


def _run_json(capsys, *argv):
    code = main(["--json", *argv])
    captured = capsys.readouterr()
    return code, captured


def test_missing_tbb_exits_with_code_3(budget_db, capsys):
    code, captured = _run_json(capsys, "month", "summary", "2026-02")
    assert code == 3
    error = json.loads(captured.err)
    assert error["ok"] is False
    assert error["error"]["code"] == "MISSING_TBB"
    assert captured.out == ""


def test_invalid_month_exits_with_code_2(budget_db, capsys):
    main(["system", "init"])
    capsys.readouterr()
    code = main(["month", "summary", "2026-13"])
    captured = capsys.readouterr()
    assert code == 2
    assert "Invalid month" in captured.err


def test_budget_flow_with_json_output(budget_db, capsys):
    assert main(["system", "init"]) == 0
    assert main(["account", "create", "Checking", "--type", "checking"]) == 0
    assert main(["envelope", "create", "Groceries", "--group", "Living"]) == 0
    assert main([
        "tx", "add", "--account", "Checking", "--amount", "200000", "--date", "2026-02-01",
        "--envelope", "To Be Budgeted", "--payee", "Employer",
    ]) == 0
    assert main(["budget", "allocate", "2026-02", "--alloc", "Groceries=80000"]) == 0
    capsys.readouterr()

    code = main(["month", "summary", "2026-02", "--json"])
    data = json.loads(capsys.readouterr().out)["data"]

    assert code == 0
    assert data["tbb"]["available"] == 120000
    assert data["envelopes"][0]["name"] == "Groceries"
    assert data["envelopes"][0]["available"] == 80000


def test_allocate_from_json_file(budget_db, capsys, tmp_path):
    main(["system", "init"])
    main(["envelope", "create", "Rent", "--group", "Bills"])
    plan = tmp_path / "plan.json"
    plan.write_text(json.dumps({"allocations": [{"envelope": "Rent", "amount": 150000}], "note": "Feb plan"}))
    capsys.readouterr()

    code, captured = _run_json(capsys, "budget", "allocate", "2026-02", "--from-json", str(plan))

    assert code == 0
    payload = json.loads(captured.out)
    assert payload["ok"] is True
    assert payload["data"]["tbbMirror"] == -150000


def test_split_mismatch_reports_validation_error(budget_db, capsys):
    main(["system", "init"])
    main(["account", "create", "Checking"])
    main(["envelope", "create", "Groceries"])
    capsys.readouterr()

    code, captured = _run_json(
        capsys, "tx", "add", "--account", "Checking", "--amount", "-5000", "--date", "2026-02-03",
        "--split", "Groceries=-3000",
    )

    assert code == 2
    assert json.loads(captured.err)["error"]["code"] == "VALIDATION"


def test_schedule_commands(budget_db, capsys):
    main(["system", "init"])
    main(["account", "create", "Checking"])
    main(["envelope", "create", "Phone", "--group", "Bills"])
    capsys.readouterr()

    code, captured = _run_json(
        capsys, "schedule", "create", "Phone bill", "--account", "Checking", "--amount", "-45.90",
        "--start", "2026-01-15", "--envelope", "Phone", "--freq", "monthly", "--month-day", "15",
    )
    assert code == 0
    schedule = json.loads(captured.out)["data"]
    assert schedule["amount"] == -4590
    assert schedule["rule"] == {"freq": "monthly", "interval": 1, "monthDay": 15}

    code, captured = _run_json(capsys, "schedule", "due", "--from", "2026-02-01", "--to", "2026-02-28")
    occurrences = json.loads(captured.out)["data"]["occurrences"]
    assert [o["date"] for o in occurrences] == ["2026-02-15"]

    occ_id = occurrences[0]["occurrenceId"]
    assert main(["schedule", "post", occ_id]) == 0
    code, captured = _run_json(capsys, "schedule", "post", occ_id)
    assert code == 2
    assert json.loads(captured.err)["error"]["code"] == "ALREADY_POSTED"


def test_overview_command_with_pinned_today(budget_db, capsys):
    main(["system", "init"])
    capsys.readouterr()

    code = main(["overview", "--today", "2026-02-10", "--json"])

    data = json.loads(capsys.readouterr().out)["data"]
    assert code == 0
    assert data["month"] == "2026-02"
    assert data["schedules"]["window"] == {"from": "2026-02-10", "to": "2026-02-17"}


def test_human_output_for_currency(budget_db, capsys):
    assert main(["currency", "set", "usd"]) == 0
    assert "USD" in capsys.readouterr().out
    assert main(["currency", "show"]) == 0
    assert capsys.readouterr().out.strip() == "USD"


def _setup_checking(capsys):
    main(["system", "init"])
    main(["account", "create", "Checking", "--type", "checking"])
    main(["envelope", "create", "Groceries", "--group", "Living"])
    capsys.readouterr()


def _add_groceries(capsys, *extra):
    code, captured = _run_json(
        capsys, "tx", "add", "--account", "Checking", "--amount", "-2500", "--date", "2026-02-02",
        "--envelope", "Groceries", *extra,
    )
    assert code == 0
    return json.loads(captured.out)["data"]["transaction"]["id"]


def test_split_amounts_must_be_integer_minor_units(budget_db, capsys):
    _setup_checking(capsys)
    code, captured = _run_json(
        capsys, "tx", "add", "--account", "Checking", "--amount", "-2500", "--date", "2026-02-02",
        "--split", "Groceries=-25.00",
    )
    assert code == 2
    assert json.loads(captured.err)["error"]["code"] == "VALIDATION"


def test_reconciled_transaction_needs_force(budget_db, capsys):
    _setup_checking(capsys)
    tx_id = _add_groceries(capsys, "--memo", "old")
    main(["account", "reconcile", "Checking", "--statement-balance", "-2500", "--date", "2026-02-28"])
    capsys.readouterr()

    code, captured = _run_json(capsys, "tx", "update", tx_id, "--memo", "new")
    assert code == 2
    assert json.loads(captured.err)["error"]["code"] == "RECONCILED"
    code, _ = _run_json(capsys, "tx", "delete", tx_id)
    assert code == 2

    code, captured = _run_json(capsys, "tx", "update", tx_id, "--memo", "new", "--force")
    assert code == 0
    assert json.loads(captured.out)["data"]["transaction"]["memo"] == "new"
    code, captured = _run_json(capsys, "tx", "delete", tx_id, "--force")
    assert code == 0
    assert json.loads(captured.out)["data"]["deletedIds"] == [tx_id]


def test_clear_unclear_and_list(budget_db, capsys):
    _setup_checking(capsys)
    tx_id = _add_groceries(capsys)

    code, captured = _run_json(capsys, "tx", "unclear", tx_id)
    assert code == 0
    assert json.loads(captured.out)["data"]["cleared"] == "pending"
    code, captured = _run_json(capsys, "tx", "clear", tx_id)
    assert json.loads(captured.out)["data"]["cleared"] == "cleared"

    code, captured = _run_json(capsys, "tx", "list", "--envelope", "Groceries")
    rows = json.loads(captured.out)["data"]
    assert [(r["id"], r["cleared"]) for r in rows] == [(tx_id, "cleared")]
    assert rows[0]["splits"][0]["envelope"] == "Groceries"


def test_transfer_delete_removes_both_legs(budget_db, capsys):
    _setup_checking(capsys)
    main(["account", "create", "Savings", "--type", "savings"])
    capsys.readouterr()
    code, captured = _run_json(
        capsys, "tx", "transfer", "--from", "Checking", "--to", "Savings", "--amount", "25000", "--date", "2026-02-05",
    )
    transfer = json.loads(captured.out)["data"]

    code, captured = _run_json(capsys, "tx", "delete", transfer["toTransactionId"])

    assert code == 0
    assert sorted(json.loads(captured.out)["data"]["deletedIds"]) == sorted(
        [transfer["fromTransactionId"], transfer["toTransactionId"]]
    )
    code, captured = _run_json(capsys, "tx", "list")
    assert json.loads(captured.out)["data"] == []


def test_import_jsonl_dry_run_then_import(budget_db, capsys, tmp_path):
    _setup_checking(capsys)
    path = tmp_path / "bank.jsonl"
    path.write_text(
        "\n".join([
            json.dumps({"account": "Checking", "amount": -1200, "date": "2026-02-03", "envelope": "Groceries",
                        "externalId": "bank-1", "payee": "Grocer"}),
            "not json",
        ]) + "\n",
        encoding="utf-8",
    )

    code, captured = _run_json(capsys, "tx", "import", "--from-jsonl", str(path), "--dry-run")
    preview = json.loads(captured.out)["data"]
    assert code == 0
    assert (preview["validated"], preview["errors"], preview["created"]) == (1, 1, 0)

    code, captured = _run_json(capsys, "tx", "import", "--from-jsonl", str(path))
    summary = json.loads(captured.out)["data"]
    assert (summary["created"], summary["errors"]) == (1, 1)

    code, captured = _run_json(capsys, "tx", "import", "--from-jsonl", str(path))
    assert json.loads(captured.out)["data"]["exists"] == 1


def test_payee_commands(budget_db, capsys):
    _setup_checking(capsys)
    code, captured = _run_json(capsys, "payee", "create", "Grab")
    grab = json.loads(captured.out)["data"]
    assert grab["name"] == "Grab"

    code, captured = _run_json(capsys, "payee", "rule", "add", "--match", "contains", "--pattern", "GRAB*FOOD",
                               "--to", "Grab")
    assert code == 0
    _add_groceries(capsys, "--payee", "GRAB*FOOD 1234")

    code, captured = _run_json(capsys, "tx", "list")
    tx = json.loads(captured.out)["data"][0]
    assert (tx["payeeId"], tx["payeeName"]) == (grab["id"], "Grab")

    assert main(["payee", "rename", "Grab", "Grab Holdings"]) == 0
    capsys.readouterr()
    code, captured = _run_json(capsys, "payee", "list")
    assert [p["name"] for p in json.loads(captured.out)["data"]] == ["Grab Holdings"]

    code, captured = _run_json(capsys, "payee", "rule", "add", "--match", "regex", "--pattern", "(oops",
                               "--to", "Grab Holdings")
    assert code == 2
    assert json.loads(captured.err)["error"]["code"] == "VALIDATION"
