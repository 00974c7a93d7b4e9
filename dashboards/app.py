from __future__ import annotations

import sys
from datetime import date, timedelta
from pathlib import Path

import pandas as pd
import streamlit as st
from sqlalchemy import desc, func, select

_PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(_PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(_PROJECT_ROOT))

from bella_napoli.config import load_settings  # noqa: E402
from bella_napoli.db.engine import get_engine as build_engine  # noqa: E402
from bella_napoli.db.schema import (  # noqa: E402
    gold_customer_activity,
    gold_daily_sales,
    gold_hourly_sales,
    gold_item_performance,
    inventory_alerts,
    ops_dq_checks,
    ops_refresh_history,
    ops_refresh_state,
    ops_task_runs,
    review_sentiment_analysis,
)
from bella_napoli.procedures.anomalies import detect_sales_anomalies  # noqa: E402
from bella_napoli.procedures.rfm import calculate_rfm_segments  # noqa: E402

st.set_page_config(page_title="Bella Napoli Analytics", layout="wide")


@st.cache_resource
def get_settings():
    return load_settings()


@st.cache_resource
def get_engine():
    return build_engine(get_settings())


def _since(days: int) -> date:
    return date.today() - timedelta(days=days)


QUERIES = {
    "daily_sales": lambda days: select(gold_daily_sales)
    .where(gold_daily_sales.c.order_date >= _since(days))
    .order_by(gold_daily_sales.c.order_date, gold_daily_sales.c.location_id),
    "hourly_sales": lambda days: select(gold_hourly_sales)
    .where(gold_hourly_sales.c.order_date >= _since(days))
    .order_by(gold_hourly_sales.c.order_date, gold_hourly_sales.c.order_hour),
    "item_performance": lambda days: select(gold_item_performance).where(
        gold_item_performance.c.order_date >= _since(days)
    ),
    "customer_activity": lambda days: select(gold_customer_activity),
    "refresh_state": lambda days: select(ops_refresh_state).order_by(ops_refresh_state.c.table_name),
    "refresh_history": lambda days: select(ops_refresh_history)
    .order_by(desc(ops_refresh_history.c.started_at))
    .limit(days),
    "task_runs": lambda days: select(ops_task_runs).order_by(desc(ops_task_runs.c.started_at)).limit(days),
    "dq_checks": lambda days: select(ops_dq_checks).order_by(desc(ops_dq_checks.c.check_time)).limit(days),
    "open_alerts": lambda days: select(inventory_alerts)
    .where(inventory_alerts.c.alert_status == "OPEN")
    .order_by(desc(inventory_alerts.c.created_at)),
    "sentiment": lambda days: select(
        review_sentiment_analysis.c.sentiment_label, func.count().label("reviews")
    ).group_by(review_sentiment_analysis.c.sentiment_label),
}


@st.cache_data(ttl=60, show_spinner=False)
def query_df(name: str, days: int = 14) -> pd.DataFrame:
    return pd.read_sql_query(QUERIES[name](days), get_engine())


def _safe_df(name: str, days: int = 14, *, show_error: bool = True) -> pd.DataFrame:
    try:
        return query_df(name, days)
    except Exception as exc:
        if show_error:
            st.error(f"{exc}\n\nQuery: {name}")
        return pd.DataFrame()


@st.cache_data(ttl=300, show_spinner=False)
def rfm_df() -> pd.DataFrame:
    with get_engine().connect() as conn:
        return calculate_rfm_segments(conn)


@st.cache_data(ttl=300, show_spinner=False)
def anomalies_df() -> pd.DataFrame:
    with get_engine().connect() as conn:
        return detect_sales_anomalies(conn)


def _fmt_usd(value) -> str:
    if value is None or (isinstance(value, float) and pd.isna(value)):
        return "N/A"
    try:
        v = float(value)
    except Exception:
        return "N/A"
    return f"${v:,.2f}"


def _fmt_int(value) -> str:
    if value is None or (isinstance(value, float) and pd.isna(value)):
        return "N/A"
    try:
        return f"{int(value):,}"
    except Exception:
        return "N/A"


def sales():
    st.header("Sales")

    daily = _safe_df("daily_sales", 14)
    if daily.empty:
        st.warning("No gold_daily_sales data yet. Load bronze events and run the refresh job first.")
        return

    daily["order_date"] = pd.to_datetime(daily["order_date"])
    latest = daily["order_date"].max()
    today = daily[daily["order_date"] == latest]
    orders = today["total_orders"].sum()
    revenue = today["total_revenue"].sum()

    c1, c2, c3, c4 = st.columns(4)
    c1.metric("Revenue", _fmt_usd(revenue))
    c2.metric("Orders", _fmt_int(orders))
    c3.metric("Avg Order Value", _fmt_usd(revenue / orders if orders else None))
    c4.metric("Delivery Share", f"{today['delivery_orders'].sum() / orders * 100:.1f}%" if orders else "N/A")
    st.caption(f"Latest order date: {latest.date()}")

    st.subheader("Revenue Trend (Last 14 Days)")
    trend = daily.pivot_table(
        index="order_date", columns="location_name", values="total_revenue", aggfunc="sum"
    )
    st.line_chart(trend)

    st.subheader("By Location")
    by_location = (
        today[
            [
                "location_name",
                "total_orders",
                "total_revenue",
                "avg_order_value",
                "delivery_orders",
                "pickup_orders",
                "dine_in_orders",
                "web_orders",
                "mobile_app_orders",
                "pos_orders",
            ]
        ]
        .sort_values("total_revenue", ascending=False)
        .reset_index(drop=True)
    )
    st.dataframe(by_location, use_container_width=True, hide_index=True)

    mix = pd.DataFrame(
        {
            "payment": ["Credit", "Cash", "Mobile"],
            "orders": [
                int(today["credit_orders"].sum()),
                int(today["cash_orders"].sum()),
                int(today["mobile_orders"].sum()),
            ],
        }
    )
    st.bar_chart(mix.set_index("payment")["orders"])


def hours():
    st.header("Hourly")

    hourly = _safe_df("hourly_sales", 7)
    if hourly.empty:
        st.info("No gold_hourly_sales data yet.")
        return

    hourly["order_date"] = pd.to_datetime(hourly["order_date"])
    latest = hourly["order_date"].max()
    day = hourly[hourly["order_date"] == latest]
    st.caption(f"Latest order date: {latest.date()}")
    chart = day.pivot_table(index="order_hour", columns="location_name", values="revenue", aggfunc="sum")
    st.bar_chart(chart)

    st.subheader("Rush Periods (Last 7 Days)")
    periods = (
        hourly.groupby("period_type")
        .agg(orders=("orders", "sum"), revenue=("revenue", "sum"))
        .reset_index()
        .sort_values("revenue", ascending=False)
    )
    st.dataframe(periods, use_container_width=True, hide_index=True)


def menu():
    st.header("Menu")

    items = _safe_df("item_performance", 7)
    if items.empty:
        st.info("No gold_item_performance data yet.")
        return

    top = (
        items.groupby(["item_name", "category_name"])
        .agg(
            quantity_sold=("quantity_sold", "sum"),
            item_revenue=("item_revenue", "sum"),
            estimated_profit=("estimated_profit", "sum"),
        )
        .reset_index()
        .sort_values("item_revenue", ascending=False)
    )
    c1, c2 = st.columns(2)
    with c1:
        st.subheader("Top Items by Revenue (7 Days)")
        st.dataframe(top.head(10), use_container_width=True, hide_index=True)
    with c2:
        st.subheader("Revenue by Category")
        st.bar_chart(top.groupby("category_name")["item_revenue"].sum())


def customers():
    st.header("Customers")

    activity = _safe_df("customer_activity")
    if activity.empty:
        st.info("No gold_customer_activity data yet.")
    else:
        c1, c2 = st.columns(2)
        with c1:
            st.subheader("Activity Level (30 Days)")
            st.bar_chart(activity["activity_level"].value_counts())
        with c2:
            st.subheader("Top Spenders")
            st.dataframe(
                activity.sort_values("recent_spend", ascending=False)[
                    ["customer_name", "city", "recent_orders", "recent_spend", "activity_level"]
                ].head(10),
                use_container_width=True,
                hide_index=True,
            )

    st.subheader("RFM Segments")
    try:
        rfm = rfm_df()
    except Exception as exc:
        st.error(str(exc))
        return
    if rfm.empty:
        st.caption("No customers yet.")
        return
    st.bar_chart(rfm["rfm_segment"].value_counts())

    sentiment = _safe_df("sentiment", show_error=False)
    if not sentiment.empty:
        st.subheader("Review Sentiment")
        st.bar_chart(sentiment.set_index("sentiment_label")["reviews"])


def ops():
    st.header("Ops")

    st.subheader("Dynamic Tables")
    state = _safe_df("refresh_state")
    if state.empty:
        st.caption("No dynamic tables registered yet. Run etl/01_create_warehouse.")
    else:
        st.dataframe(state, use_container_width=True, hide_index=True)

    c1, c2 = st.columns(2)
    with c1:
        st.subheader("Recent Refreshes")
        st.dataframe(_safe_df("refresh_history", 20), use_container_width=True, hide_index=True)
    with c2:
        st.subheader("Recent Task Runs")
        st.dataframe(_safe_df("task_runs", 20), use_container_width=True, hide_index=True)

    st.subheader("Data Quality")
    dq = _safe_df("dq_checks", 10, show_error=False)
    if dq.empty:
        st.caption("No data quality checks recorded yet.")
    else:
        st.dataframe(dq, use_container_width=True, hide_index=True)

    st.subheader("Open Inventory Alerts")
    alerts = _safe_df("open_alerts", show_error=False)
    if alerts.empty:
        st.caption("No open alerts.")
    else:
        st.dataframe(alerts, use_container_width=True, hide_index=True)

    st.subheader("Sales Anomalies (Last 7 Days)")
    try:
        anomalies = anomalies_df()
    except Exception as exc:
        st.error(str(exc))
        return
    if anomalies.empty:
        st.caption("No anomalies detected.")
    else:
        st.dataframe(anomalies, use_container_width=True, hide_index=True)


PAGES = {
    "Sales": sales,
    "Hourly": hours,
    "Menu": menu,
    "Customers": customers,
    "Ops": ops,
}

try:
    st.sidebar.caption(f"Database: {get_engine().dialect.name}")
except Exception:
    pass

choice = st.sidebar.radio("Navigation", list(PAGES.keys()))
PAGES[choice]()
