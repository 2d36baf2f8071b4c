"""Streamlit page rendering the budget overview.

To run the dashboard from the command line::

    streamlit run envelope_budget/dashboard.py

or use ``run_dashboard.py`` at the repository root.
"""

from __future__ import annotations

import os
import sys
from datetime import date

import pandas as pd
import streamlit as st

# Support both ``streamlit run envelope_budget/dashboard.py`` and package imports.
if __package__:
    from . import config, services
    from . import visualization as viz
    from .errors import BudgetError
    from .money import format_minor
else:
    CURRENT_DIR = os.path.dirname(os.path.abspath(__file__))
    PARENT_DIR = os.path.dirname(CURRENT_DIR)
    if PARENT_DIR not in sys.path:
        sys.path.insert(0, PARENT_DIR)
    from envelope_budget import config, services  # type: ignore
    from envelope_budget import visualization as viz  # type: ignore
    from envelope_budget.errors import BudgetError  # type: ignore
    from envelope_budget.money import format_minor  # type: ignore


def main() -> None:
    """Entry point for the Streamlit app."""
    st.set_page_config(page_title="Envelope Budget", layout="wide")
    st.title("Envelope Budget")

    today: date = st.sidebar.date_input("Today", value=config.today())
    month = st.sidebar.text_input("Month (YYYY-MM)", value=f"{today.year:04d}-{today.month:02d}")

    try:
        data = services.overview(month, today)
    except BudgetError as exc:  # pragma: no cover - UI display only
        st.error(str(exc))
        st.stop()

    currency = data["currency"]
    tbb = data["budget"]["toBeBudgeted"]
    cols = st.columns(4)
    cols[0].metric("To Be Budgeted", format_minor(tbb["available"], currency))
    cols[1].metric("Underfunded", format_minor(data["goals"]["underfundedTotal"], currency))
    cols[2].metric("Net worth", format_minor(data["netWorth"]["total"], currency))
    counts = data["schedules"]["counts"]
    cols[3].metric("Due soon", counts["dueSoon"], delta=f"{counts['overdue']} overdue", delta_color="inverse")

    if data["flags"]["overbudget"]:
        st.warning("More money is assigned than you have: To Be Budgeted is negative.")
    for message in data["warnings"]:
        st.warning(message)

    st.plotly_chart(viz.create_envelope_availability_chart(data["budget"]["envelopes"]), use_container_width=True)

    left, right = st.columns(2)
    left.plotly_chart(viz.create_cashflow_chart(data["reports"]["cashflow"]), use_container_width=True)
    right.plotly_chart(viz.create_net_worth_chart(data["netWorth"]), use_container_width=True)

    left, right = st.columns(2)
    left.plotly_chart(
        viz.create_top_spending_chart(data["reports"]["topSpending"], "Top spending by envelope"),
        use_container_width=True,
    )
    right.plotly_chart(
        viz.create_top_spending_chart(data["reports"]["topSpendingByPayee"], "Top spending by payee"),
        use_container_width=True,
    )

    st.subheader("Upcoming scheduled transactions")
    due = pd.DataFrame(data["schedules"]["topDue"])
    if due.empty:
        st.info("Nothing due in the next week.")
    else:
        st.dataframe(due[["date", "name", "amount", "occurrenceId"]], use_container_width=True)


if __name__ == "__main__":
    main()
