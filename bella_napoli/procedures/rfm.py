"""RFM (recency, frequency, monetary) customer segmentation."""

from __future__ import annotations

from datetime import datetime

import numpy as np
import pandas as pd
from sqlalchemy import distinct, func, select
from sqlalchemy.engine import Connection

from bella_napoli.db.schema import dim_customer, fact_order
from bella_napoli.utils.time import naive_utc_now

NO_ORDER_RECENCY_DAYS = 999

RFM_COLUMNS = [
    "customer_id",
    "customer_name",
    "recency_days",
    "frequency",
    "monetary",
    "r_score",
    "f_score",
    "m_score",
    "rfm_segment",
]


def quintile_scores(values: pd.Series, reverse: bool = False) -> pd.Series:
    """Score 1-5 by quintile of rank; ``reverse`` gives low values the high score."""
    if values.empty:
        return pd.Series([], dtype=int, index=values.index)
    ranks = values.rank(method="first")
    if len(values) >= 5:
        scores = pd.qcut(ranks, q=5, labels=[1, 2, 3, 4, 5]).astype(int)
    else:
        scores = np.ceil(ranks * 5 / len(values)).astype(int)
    return 6 - scores if reverse else scores


def rfm_segment(r: int, f: int, m: int) -> str:
    if r >= 4 and f >= 4 and m >= 4:
        return "Champions"
    if r >= 3 and f >= 3 and m >= 3:
        return "Loyal Customers"
    if r >= 4 and f <= 2:
        return "New Customers"
    if r <= 2 and f >= 3:
        return "At Risk"
    if r <= 2 and f <= 2 and m >= 3:
        return "Cant Lose Them"
    if r <= 2 and f <= 2 and m <= 2:
        return "Lost"
    if r >= 3 and f >= 2:
        return "Potential Loyalists"
    return "Need Attention"


def calculate_rfm_segments(conn: Connection, now: datetime | None = None) -> pd.DataFrame:
    now = now or naive_utc_now()
    stmt = (
        select(
            dim_customer.c.customer_id,
            dim_customer.c.first_name,
            dim_customer.c.last_name,
            func.max(fact_order.c.order_timestamp).label("last_order"),
            func.count(distinct(fact_order.c.order_id)).label("frequency"),
            func.coalesce(func.sum(fact_order.c.total_amount), 0).label("monetary"),
        )
        .select_from(
            dim_customer.outerjoin(
                fact_order, dim_customer.c.customer_id == fact_order.c.customer_id
            )
        )
        .group_by(dim_customer.c.customer_id, dim_customer.c.first_name, dim_customer.c.last_name)
        .order_by(dim_customer.c.customer_id)
    )
    rows = [dict(r) for r in conn.execute(stmt).mappings()]
    if not rows:
        return pd.DataFrame(columns=RFM_COLUMNS)

    df = pd.DataFrame(rows)
    df["customer_name"] = df["first_name"].fillna("") + " " + df["last_name"].fillna("")
    df["recency_days"] = [
        NO_ORDER_RECENCY_DAYS if pd.isna(ts) else (now - pd.Timestamp(ts).to_pydatetime()).days
        for ts in df["last_order"]
    ]
    df["frequency"] = df["frequency"].fillna(0).astype(int)
    df["monetary"] = pd.to_numeric(df["monetary"]).fillna(0.0).astype(float)

    df["r_score"] = quintile_scores(df["recency_days"], reverse=True)
    df["f_score"] = quintile_scores(df["frequency"])
    df["m_score"] = quintile_scores(df["monetary"])
    df["rfm_segment"] = [
        rfm_segment(r, f, m) for r, f, m in zip(df["r_score"], df["f_score"], df["m_score"])
    ]
    return df[RFM_COLUMNS].reset_index(drop=True)
