from __future__ import annotations

from datetime import date, timedelta

import pandas as pd
from sqlalchemy import select
from sqlalchemy.engine import Connection

from bella_napoli.db.schema import dim_location, fact_daily_sales

MIN_POINTS = 4

ANOMALY_COLUMNS = [
    "anomaly_date",
    "location_id",
    "location_name",
    "actual_revenue",
    "expected_revenue",
    "std_dev",
    "z_score",
    "anomaly_type",
]


def detect_sales_anomalies(
    conn: Connection,
    lookback_days: int = 90,
    threshold: float = 2.0,
    today: date | None = None,
) -> pd.DataFrame:
    """Flag days whose revenue is more than ``threshold`` standard deviations
    away from the mean of the same weekday at the same location."""
    today = today or date.today()
    since = today - timedelta(days=int(lookback_days))
    stmt = (
        select(
            fact_daily_sales.c.sales_date,
            fact_daily_sales.c.location_id,
            dim_location.c.location_name,
            fact_daily_sales.c.total_revenue,
        )
        .join(dim_location, fact_daily_sales.c.location_id == dim_location.c.location_id)
        .where(fact_daily_sales.c.sales_date >= since)
        .order_by(fact_daily_sales.c.location_id, fact_daily_sales.c.sales_date)
    )
    df = pd.DataFrame([dict(r) for r in conn.execute(stmt).mappings()])
    if df.empty:
        return pd.DataFrame(columns=ANOMALY_COLUMNS)

    df["total_revenue"] = pd.to_numeric(df["total_revenue"])
    df["day_of_week"] = [d.weekday() for d in df["sales_date"]]

    anomalies: list[dict] = []
    for (location_id, _dow), grp in df.groupby(["location_id", "day_of_week"], sort=True):
        if len(grp) < MIN_POINTS:
            continue
        mean = grp["total_revenue"].mean()
        std = grp["total_revenue"].std()
        if pd.isna(std) or std == 0:
            continue
        for row in grp.itertuples(index=False):
            z = (row.total_revenue - mean) / std
            if abs(z) > threshold:
                anomalies.append(
                    {
                        "anomaly_date": row.sales_date,
                        "location_id": int(location_id),
                        "location_name": row.location_name,
                        "actual_revenue": float(row.total_revenue),
                        "expected_revenue": float(mean),
                        "std_dev": float(std),
                        "z_score": float(z),
                        "anomaly_type": "HIGH" if z > 0 else "LOW",
                    }
                )

    if not anomalies:
        return pd.DataFrame(columns=ANOMALY_COLUMNS)
    return pd.DataFrame(anomalies, columns=ANOMALY_COLUMNS).sort_values(
        ["location_id", "anomaly_date"], ignore_index=True
    )
