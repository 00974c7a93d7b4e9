from __future__ import annotations

import pandas as pd
from sqlalchemy import select, true
from sqlalchemy.engine import Connection

from bella_napoli.db.schema import (
    dim_category,
    dim_menu_item,
    fact_order,
    fact_order_item,
    fact_review,
)
from bella_napoli.procedures.daily_sales import PIZZA_CATEGORY_ID

DEFAULT_RATING = 4.0
RESULT_COLUMNS = ["item_id", "item_name", "category_name", "recommendation_score", "reason"]


def _customer_items(conn: Connection, customer_id: int) -> set[int]:
    stmt = (
        select(fact_order_item.c.item_id)
        .join(fact_order, fact_order_item.c.order_id == fact_order.c.order_id)
        .where(fact_order.c.customer_id == customer_id)
        .distinct()
    )
    return set(conn.execute(stmt).scalars().all())


def _similar_customers(conn: Connection, customer_id: int, items: set[int]) -> set[int]:
    if not items:
        return set()
    stmt = (
        select(fact_order.c.customer_id)
        .join(fact_order_item, fact_order_item.c.order_id == fact_order.c.order_id)
        .where(fact_order_item.c.item_id.in_(sorted(items)))
        .where(fact_order.c.customer_id != customer_id)
        .distinct()
    )
    return set(conn.execute(stmt).scalars().all())


def _reason(customer_count: int, avg_rating: float) -> str:
    if customer_count > 10:
        return f"Popular with {int(customer_count)} similar customers"
    if avg_rating >= 4.5:
        return f"Highly rated ({avg_rating:.1f} stars)"
    return "Recommended based on your taste"


def _popular_pizzas(conn: Connection, n: int) -> pd.DataFrame:
    stmt = (
        select(dim_menu_item.c.item_id, dim_menu_item.c.item_name, dim_category.c.category_name)
        .join(dim_category, dim_menu_item.c.category_id == dim_category.c.category_id)
        .where(dim_menu_item.c.is_available == true())
        .where(dim_menu_item.c.category_id == PIZZA_CATEGORY_ID)
        .order_by(dim_menu_item.c.item_id)
        .limit(n)
    )
    df = pd.DataFrame([dict(r) for r in conn.execute(stmt).mappings()])
    if df.empty:
        return pd.DataFrame(columns=RESULT_COLUMNS)
    df["recommendation_score"] = 0.5
    df["reason"] = "Popular item"
    return df[RESULT_COLUMNS]


def recommend_items(conn: Connection, customer_id: int, n: int = 5) -> pd.DataFrame:
    """Items popular with customers who ordered what this customer ordered.

    Score is ``0.4 * orders + 0.3 * customers + 0.3 * rating / 5`` with the
    counts normalised to the best candidate. Falls back to popular pizzas.
    """
    own_items = _customer_items(conn, customer_id)
    similar = _similar_customers(conn, customer_id, own_items)
    if not similar:
        return _popular_pizzas(conn, n)

    stmt = (
        select(
            fact_order.c.order_id,
            fact_order.c.customer_id,
            fact_order_item.c.item_id,
            dim_menu_item.c.item_name,
            dim_category.c.category_name,
            fact_review.c.overall_rating,
        )
        .select_from(
            fact_order.join(fact_order_item, fact_order.c.order_id == fact_order_item.c.order_id)
            .join(dim_menu_item, fact_order_item.c.item_id == dim_menu_item.c.item_id)
            .join(dim_category, dim_menu_item.c.category_id == dim_category.c.category_id)
            .outerjoin(fact_review, fact_order.c.order_id == fact_review.c.order_id)
        )
        .where(fact_order.c.customer_id.in_(sorted(similar)))
        .where(dim_menu_item.c.is_available == true())
    )
    df = pd.DataFrame([dict(r) for r in conn.execute(stmt).mappings()])
    if df.empty:
        return _popular_pizzas(conn, n)

    df["rating"] = pd.to_numeric(df["overall_rating"]).fillna(DEFAULT_RATING)
    stats = (
        df.groupby(["item_id", "item_name", "category_name"], dropna=False)
        .agg(
            order_count=("order_id", "nunique"),
            customer_count=("customer_id", "nunique"),
            avg_rating=("rating", "mean"),
        )
        .reset_index()
    )
    stats = stats[~stats["item_id"].isin(own_items)].copy()
    if stats.empty:
        return _popular_pizzas(conn, n)

    stats["recommendation_score"] = (
        stats["order_count"] / stats["order_count"].max() * 0.4
        + stats["customer_count"] / stats["customer_count"].max() * 0.3
        + stats["avg_rating"] / 5.0 * 0.3
    ).round(3)
    stats["reason"] = [
        _reason(c, r) for c, r in zip(stats["customer_count"], stats["avg_rating"])
    ]
    top = stats.sort_values(
        ["recommendation_score", "order_count", "item_id"], ascending=[False, False, True]
    ).head(n)
    return top[RESULT_COLUMNS].reset_index(drop=True)
