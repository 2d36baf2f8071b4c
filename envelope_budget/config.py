"""Configuration management for the envelope budget.

This module centralizes all configuration values including paths,
defaults, and environment variable overrides.
"""

from __future__ import annotations

import os
from datetime import date, datetime
from pathlib import Path
from typing import Optional
from zoneinfo import ZoneInfo

# Base project root - assumes this file is in envelope_budget/
_PROJECT_ROOT = Path(__file__).parent.parent.resolve()

# Data directories
DATA_DIR = Path(os.getenv("ENVELOPE_BUDGET_DATA_DIR", _PROJECT_ROOT / "data"))

# Database
DB_PATH = Path(
    os.getenv("ENVELOPE_BUDGET_DB_PATH", DATA_DIR / "budget.db")
).resolve()

# One currency per budget; the ``currency`` setting wins over this default
DEFAULT_CURRENCY = os.getenv("ENVELOPE_BUDGET_CURRENCY", "MYR")

# Time zone used to decide what "today" is for schedule digests
TIMEZONE = os.getenv("ENVELOPE_BUDGET_TZ", "UTC")

LOG_LEVEL = os.getenv("ENVELOPE_BUDGET_LOG_LEVEL", "WARNING")

# System envelope
TBB_NAME = "To Be Budgeted"
SYSTEM_GROUP = "System"
DEFAULT_GROUP = "General"

# Overview tuning
SCHEDULE_WINDOW_DAYS = 7
TOP_N = 5

ACCOUNT_TYPES = ("checking", "savings", "cash", "tracking")
LIQUID_ACCOUNT_TYPES = ("checking", "savings", "cash")
CLEARED_STATES = ("pending", "cleared", "reconciled")

# tx list
TX_LIST_LIMIT = 50
TX_LIST_MAX = 500


def today(tz_name: Optional[str] = None) -> date:
    """Return the current local date.

    ``ENVELOPE_BUDGET_TODAY`` (``YYYY-MM-DD``) pins the date, which keeps
    scripted runs and demos reproducible.
    """
    pinned = os.getenv("ENVELOPE_BUDGET_TODAY")
    if pinned:
        return date.fromisoformat(pinned)
    return datetime.now(ZoneInfo(tz_name or TIMEZONE)).date()
