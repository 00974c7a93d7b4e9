from __future__ import annotations

from datetime import date, timedelta

import pandas as pd
from sqlalchemy import delete, insert, select
from sqlalchemy.engine import Connection

from bella_napoli.db.schema import dim_location, fact_daily_sales, weekly_performance_report

REPORT_WEEKS = 8


def week_starting(day: date) -> date:
    return day - timedelta(days=day.weekday())


def build_weekly_report(conn: Connection, today: date, weeks: int = REPORT_WEEKS) -> int:
    """Rebuild ``weekly_performance_report`` from the last ``weeks`` weeks of daily sales."""
    since = today - timedelta(weeks=weeks)
    stmt = (
        select(fact_daily_sales, dim_location.c.location_name)
        .join(dim_location, fact_daily_sales.c.location_id == dim_location.c.location_id)
        .where(fact_daily_sales.c.sales_date >= since)
    )
    df = pd.DataFrame([dict(r) for r in conn.execute(stmt).mappings()])

    conn.execute(delete(weekly_performance_report))
    if df.empty:
        return 0

    df["week_starting"] = [week_starting(d) for d in df["sales_date"]]
    for col in (
        "total_orders",
        "total_revenue",
        "avg_order_value",
        "delivery_orders",
        "pickup_orders",
        "dine_in_orders",
        "total_pizzas_sold",
        "new_customers",
    ):
        df[col] = pd.to_numeric(df[col])

    weekly = (
        df.groupby(["location_name", "week_starting"], dropna=False)
        .agg(
            weekly_orders=("total_orders", "sum"),
            weekly_revenue=("total_revenue", "sum"),
            avg_order_value=("avg_order_value", "mean"),
            delivery_orders=("delivery_orders", "sum"),
            pickup_orders=("pickup_orders", "sum"),
            dine_in_orders=("dine_in_orders", "sum"),
            pizzas_sold=("total_pizzas_sold", "sum"),
            new_customers=("new_customers", "sum"),
        )
        .reset_index()
        .sort_values(["location_name", "week_starting"])
    )
    weekly["prev_week_revenue"] = weekly.groupby("location_name", dropna=False)[
        "weekly_revenue"
    ].shift(1)

    rows = []
    for r in weekly.to_dict("records"):
        prev = r["prev_week_revenue"]
        growth = None
        if not pd.isna(prev) and prev != 0:
            growth = round((r["weekly_revenue"] - prev) / prev * 100, 1)
        rows.append(
            {
                "week_starting": r["week_starting"],
                "location_name": r["location_name"],
                "weekly_orders": int(r["weekly_orders"]),
                "weekly_revenue": round(float(r["weekly_revenue"]), 2),
                "avg_order_value": (
                    None if pd.isna(r["avg_order_value"]) else round(float(r["avg_order_value"]), 2)
                ),
                "delivery_orders": int(r["delivery_orders"]),
                "pickup_orders": int(r["pickup_orders"]),
                "dine_in_orders": int(r["dine_in_orders"]),
                "pizzas_sold": int(r["pizzas_sold"]),
                "new_customers": int(r["new_customers"]),
                "prev_week_revenue": None if pd.isna(prev) else round(float(prev), 2),
                "wow_growth_pct": growth,
            }
        )
    conn.execute(insert(weekly_performance_report), rows)
    return len(rows)
