"""Plotly figures for the budget overview.

Each function takes the plain data returned by :mod:`services` (a month
summary dict or an overview dict) and returns a
``plotly.graph_objects.Figure`` that Streamlit renders with
``st.plotly_chart``. Amounts arrive in minor units and are shown in major
units.
"""

from __future__ import annotations

from typing import Any, Dict, List

import numpy as np
import pandas as pd
import plotly.express as px
import plotly.graph_objects as go


def _empty(title: str) -> go.Figure:
    fig = go.Figure()
    fig.update_layout(title=title)
    return fig


def create_envelope_availability_chart(envelopes: List[Dict[str, Any]], title: str | None = None) -> go.Figure:
    """Horizontal bar chart of ``available`` per envelope.

    Parameters
    ----------
    envelopes : list of dict
        The ``envelopes`` list of a month summary.
    title : str, optional
        Chart title.

    Returns
    -------
    plotly.graph_objects.Figure
        Bars coloured red for overspent envelopes and green otherwise.
    """
    if not envelopes:
        return _empty("No envelopes to display")
    df = pd.DataFrame(envelopes)
    df["Available"] = df["available"] / 100.0
    df["Status"] = np.where(df["available"] < 0, "Overspent", "Funded")
    df = df.sort_values("Available")
    fig = px.bar(
        df,
        x="Available",
        y="name",
        orientation="h",
        color="Status",
        color_discrete_map={"Overspent": "#d62728", "Funded": "#2ca02c"},
        hover_data={"groupName": True, "Available": ":.2f"},
    )
    fig.update_layout(title=title or "Available by envelope", yaxis_title="", xaxis_title="Available")
    return fig


def create_cashflow_chart(cashflow: Dict[str, int], title: str | None = None) -> go.Figure:
    """Income, expense and net for the month as three bars."""
    labels = ["Income", "Expense", "Net"]
    values = [cashflow.get("income", 0) / 100.0, -cashflow.get("expense", 0) / 100.0, cashflow.get("net", 0) / 100.0]
    colors = ["#2ca02c", "#d62728", "#1f77b4"]
    fig = go.Figure(go.Bar(x=labels, y=values, marker_color=colors, text=[f"{v:,.2f}" for v in values]))
    fig.update_layout(title=title or "Cashflow", yaxis_title="Amount")
    return fig


def create_top_spending_chart(items: List[Dict[str, Any]], title: str | None = None) -> go.Figure:
    """Bar chart of the ``topSpending`` or ``topSpendingByPayee`` list."""
    if not items:
        return _empty("No spending this month")
    df = pd.DataFrame(items)
    df["Spent"] = df["spent"] / 100.0
    fig = px.bar(df, x="name", y="Spent")
    fig.update_layout(title=title or "Top spending", xaxis_title="", yaxis_title="Spent")
    return fig


def create_net_worth_chart(net_worth: Dict[str, int], title: str | None = None) -> go.Figure:
    liquid = net_worth.get("liquid", 0) / 100.0
    tracking = net_worth.get("tracking", 0) / 100.0
    if liquid == 0 and tracking == 0:
        return _empty("No account balances")
    fig = go.Figure(go.Pie(labels=["Liquid", "Tracking"], values=[max(liquid, 0), max(tracking, 0)], hole=0.5))
    fig.update_layout(title=title or f"Net worth {net_worth.get('total', 0) / 100.0:,.2f}")
    return fig
