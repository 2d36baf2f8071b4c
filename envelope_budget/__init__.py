"""Top-level package for the envelope budget.

The pure engines are:

* ``ledger`` – monthly envelope balances with rollover
* ``recurrence`` – expansion of schedule rules into dates
* ``targets`` – underfunded amounts for envelope goals
* ``overview`` – the one-call overview snapshot

``db``, ``operations`` and ``services`` wrap them around a SQLite file,
``cli`` exposes everything on the command line, and ``dashboard`` is a
Streamlit app::

    streamlit run envelope_budget/dashboard.py
"""

from .ledger import MonthSummary, aggregate_month  # noqa: F401
from .recurrence import expand  # noqa: F401
from .targets import underfunded  # noqa: F401

__all__ = ["MonthSummary", "aggregate_month", "expand", "underfunded"]
