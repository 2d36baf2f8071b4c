import pytest

from envelope_budget import db as db_mod
from envelope_budget import operations as ops


@pytest.fixture
def budget_db(tmp_path, monkeypatch):
    """Fresh SQLite database in a temp dir with the schema created."""
    path = tmp_path / "budget.db"
    monkeypatch.setattr(db_mod, "DB_PATH", path)
    monkeypatch.delenv("ENVELOPE_BUDGET_TODAY", raising=False)
    db_mod.init_db()
    return path


@pytest.fixture
def seeded_db(budget_db):
    """Database with TBB, a checking account and a Groceries envelope."""
    ops.init_system()
    ops.create_account("Checking", "checking")
    ops.create_envelope("Groceries", "Living")
    return budget_db
