"""Bronze -> silver -> gold dynamic tables, plus aggregates kept over the star
schema facts.

Each compute function returns the rows of its table for a set of partitions
(or for the whole table when ``partitions`` is None). The refresh engine diffs
the result against what is stored, so the functions only ever read.
"""

from __future__ import annotations

import json
from datetime import datetime, time, timedelta
from typing import Any

import pandas as pd
from sqlalchemy import and_, select, true
from sqlalchemy.engine import Connection
from sqlalchemy.sql import Select
from sqlalchemy.sql.schema import Table

from bella_napoli.cdc.changes import match_keys
from bella_napoli.db.schema import (
    bronze_order_events,
    dim_category,
    dim_customer,
    dim_location,
    dim_menu_item,
    fact_order,
    fact_order_item,
    gold_customer_activity,
    gold_daily_sales,
    gold_hourly_sales,
    gold_item_performance,
    mv_customer_metrics,
    mv_hourly_sales,
    mv_menu_profitability,
    silver_order_items,
    silver_orders,
)
from bella_napoli.refresh.definitions import DynamicTable, Partition, dynamic_table, same_columns
from bella_napoli.refresh.graph import RefreshGraph

ORDER_PLACED = "ORDER_PLACED"

LOCATION_CODES = {"DT-001": 1, "WL-002": 2, "RR-003": 3}


def _fetch(
    conn: Connection,
    stmt: Select,
    table: Table,
    columns: tuple[str, ...],
    partitions: set[Partition] | None,
) -> list[dict[str, Any]]:
    if partitions is None:
        return [dict(r) for r in conn.execute(stmt).mappings()]
    rows: list[dict[str, Any]] = []
    for clause in match_keys(table, columns, partitions):
        rows.extend(dict(r) for r in conn.execute(stmt.where(clause)).mappings())
    return rows


def _to_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def _to_money(value: Any) -> float | None:
    if value is None or value == "":
        return None
    try:
        return round(float(value), 2)
    except (TypeError, ValueError):
        return None


def _load_payload(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        payload = json.loads(raw)
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


def period_type(hour: int | None) -> str:
    if hour is not None and 11 <= hour <= 13:
        return "LUNCH_RUSH"
    if hour is not None and 17 <= hour <= 20:
        return "DINNER_RUSH"
    return "REGULAR"


def activity_level(orders: int) -> str:
    if orders >= 5:
        return "HIGH"
    if orders >= 2:
        return "MEDIUM"
    return "LOW"


def _mode(values: pd.Series) -> Any:
    # most frequent value; ties go to the smallest so the result is stable
    counts = values.dropna().value_counts()
    if counts.empty:
        return None
    top = counts[counts == counts.max()].index
    return sorted(top)[0]


# ---------------------------------------------------------------------------
# Silver
# ---------------------------------------------------------------------------


def silver_order_row(event: dict[str, Any]) -> dict[str, Any]:
    """Normalise one ``ORDER_PLACED`` bronze event."""
    payload = _load_payload(event.get("payload"))
    ts = event["event_timestamp"]
    items = payload.get("items")
    order_id = _to_int(payload.get("order_id"))
    total = _to_money(payload.get("total"))
    return {
        "event_id": event["event_id"],
        "event_timestamp": ts,
        "event_type": event.get("event_type"),
        "source_system": event.get("source_system"),
        "order_id": order_id,
        "customer_id": _to_int(payload.get("customer_id")),
        "location_id": LOCATION_CODES.get(event.get("location_code")),
        "order_type": payload.get("order_type"),
        "subtotal": _to_money(payload.get("subtotal")),
        "tax_amount": _to_money(payload.get("tax")),
        "tip_amount": _to_money(payload.get("tip")),
        "total_amount": total,
        "payment_method": payload.get("payment_method"),
        "order_items": json.dumps(items) if items is not None else None,
        "item_count": len(items) if isinstance(items, list) else None,
        "order_date": ts.date(),
        "order_hour": ts.hour,
        "day_of_week": ts.strftime("%a"),
        # a missing total does not invalidate the order
        "is_valid_order": order_id is not None and not (total is not None and total <= 0),
    }


def compute_silver_orders(conn: Connection, partitions: set[Partition] | None):
    stmt = select(bronze_order_events).where(bronze_order_events.c.event_type == ORDER_PLACED)
    rows = _fetch(conn, stmt, bronze_order_events, ("event_id",), partitions)
    return [silver_order_row(r) for r in rows]


def order_item_rows(order: dict[str, Any]) -> list[dict[str, Any]]:
    try:
        items = json.loads(order.get("order_items") or "[]")
    except ValueError:
        return []
    if not isinstance(items, list):
        return []

    out: list[dict[str, Any]] = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            continue
        quantity = _to_int(item.get("quantity"))
        price = _to_money(item.get("price"))
        out.append(
            {
                "event_id": order["event_id"],
                "item_sequence": index + 1,
                "order_id": order.get("order_id"),
                "order_date": order.get("order_date"),
                "location_id": order.get("location_id"),
                "item_id": _to_int(item.get("item_id")),
                "item_name": item.get("item_name"),
                "quantity": quantity,
                "unit_price": price,
                "line_total": (
                    None if quantity is None or price is None else round(quantity * price, 2)
                ),
            }
        )
    return out


def compute_silver_order_items(conn: Connection, partitions: set[Partition] | None):
    stmt = select(silver_orders).where(silver_orders.c.is_valid_order == true())
    out: list[dict[str, Any]] = []
    for order in _fetch(conn, stmt, silver_orders, ("event_id",), partitions):
        out.extend(order_item_rows(order))
    return out


# ---------------------------------------------------------------------------
# Gold
# ---------------------------------------------------------------------------


def _valid_orders_frame(
    conn: Connection, partitions: set[Partition] | None, columns: tuple[str, ...]
) -> pd.DataFrame:
    stmt = (
        select(silver_orders, dim_location.c.location_name)
        .join(dim_location, silver_orders.c.location_id == dim_location.c.location_id)
        .where(silver_orders.c.is_valid_order == true())
    )
    rows = _fetch(conn, stmt, silver_orders, columns, partitions)
    df = pd.DataFrame(rows)
    if not df.empty:
        df["total_amount"] = pd.to_numeric(df["total_amount"])
    return df


_ORDER_TYPES = (("DELIVERY", "delivery"), ("PICKUP", "pickup"), ("DINE_IN", "dine_in"))
_PAYMENTS = (("CREDIT", "credit_orders"), ("CASH", "cash_orders"), ("MOBILE", "mobile_orders"))
_SOURCES = (
    ("WEB_APP", "web_orders"),
    ("MOBILE_APP", "mobile_app_orders"),
    ("POS_TERMINAL", "pos_orders"),
)


def compute_gold_daily_sales(conn: Connection, partitions: set[Partition] | None):
    df = _valid_orders_frame(conn, partitions, ("order_date", "location_id"))
    if df.empty:
        return []

    counted: list[str] = []
    for order_type, prefix in _ORDER_TYPES:
        is_type = df["order_type"] == order_type
        df[f"{prefix}_orders"] = is_type.astype(int)
        df[f"{prefix}_revenue"] = df["total_amount"].where(is_type, 0.0)
        counted += [f"{prefix}_orders", f"{prefix}_revenue"]
    for value, col in _PAYMENTS:
        df[col] = (df["payment_method"] == value).astype(int)
        counted.append(col)
    for value, col in _SOURCES:
        df[col] = (df["source_system"] == value).astype(int)
        counted.append(col)

    out = (
        df.groupby(["order_date", "location_id", "location_name"], dropna=False)
        .agg(
            total_orders=("order_id", "nunique"),
            total_revenue=("total_amount", "sum"),
            avg_order_value=("total_amount", "mean"),
            **{c: (c, "sum") for c in counted},
        )
        .reset_index()
    )
    # stamped by the refresh engine
    out["last_refreshed"] = None
    return out.to_dict("records")


def compute_gold_hourly_sales(conn: Connection, partitions: set[Partition] | None):
    df = _valid_orders_frame(conn, partitions, ("order_date", "order_hour", "location_id"))
    if df.empty:
        return []
    df["item_count"] = pd.to_numeric(df["item_count"])

    out = (
        df.groupby(
            ["order_date", "order_hour", "location_id", "location_name", "day_of_week"],
            dropna=False,
        )
        .agg(
            orders=("order_id", "nunique"),
            revenue=("total_amount", "sum"),
            avg_order_value=("total_amount", "mean"),
            avg_items_per_order=("item_count", "mean"),
        )
        .reset_index()
    )
    out["period_type"] = [period_type(int(h)) for h in out["order_hour"]]
    return out.to_dict("records")


def compute_gold_item_performance(conn: Connection, partitions: set[Partition] | None):
    stmt = (
        select(
            silver_order_items.c.order_date,
            silver_order_items.c.location_id,
            silver_order_items.c.order_id,
            silver_order_items.c.item_id,
            silver_order_items.c.quantity,
            silver_order_items.c.line_total,
            dim_location.c.location_name,
            dim_menu_item.c.item_name,
            dim_menu_item.c.category_id,
            dim_menu_item.c.base_price,
            dim_menu_item.c.cost_to_make,
            dim_category.c.category_name,
        )
        .join(dim_location, silver_order_items.c.location_id == dim_location.c.location_id)
        .join(dim_menu_item, silver_order_items.c.item_id == dim_menu_item.c.item_id)
        .join(dim_category, dim_menu_item.c.category_id == dim_category.c.category_id)
    )
    rows = _fetch(conn, stmt, silver_order_items, ("order_date", "location_id"), partitions)
    df = pd.DataFrame(rows)
    if df.empty:
        return []

    for col in ("quantity", "line_total", "base_price", "cost_to_make"):
        df[col] = pd.to_numeric(df[col])
    df["profit"] = df["quantity"] * (df["base_price"] - df["cost_to_make"])

    out = (
        df.groupby(
            [
                "order_date",
                "location_id",
                "location_name",
                "item_id",
                "item_name",
                "category_id",
                "category_name",
            ],
            dropna=False,
        )
        .agg(
            quantity_sold=("quantity", "sum"),
            item_revenue=("line_total", "sum"),
            orders_containing_item=("order_id", "nunique"),
            avg_quantity_per_order=("quantity", "mean"),
            estimated_profit=("profit", "sum"),
        )
        .reset_index()
    )
    return out.to_dict("records")


def compute_gold_customer_activity(conn: Connection, partitions: set[Partition] | None):
    stmt = (
        select(
            silver_orders,
            dim_customer.c.first_name,
            dim_customer.c.last_name,
            dim_customer.c.email,
            dim_customer.c.city,
        )
        .join(dim_customer, silver_orders.c.customer_id == dim_customer.c.customer_id)
        .where(silver_orders.c.is_valid_order == true())
    )
    rows = _fetch(conn, stmt, silver_orders, ("customer_id",), partitions)
    df = pd.DataFrame(rows)
    if df.empty:
        return []
    df["total_amount"] = pd.to_numeric(df["total_amount"])

    out: list[dict[str, Any]] = []
    for customer_id, grp in df.groupby("customer_id"):
        first = grp.iloc[0]
        orders = int(grp["order_id"].nunique())
        name = None
        if first["first_name"] is not None and first["last_name"] is not None:
            name = f"{first['first_name']} {first['last_name']}"
        out.append(
            {
                "customer_id": customer_id,
                "customer_name": name,
                "email": first["email"],
                "city": first["city"],
                "recent_orders": orders,
                "recent_spend": grp["total_amount"].sum(),
                "avg_order_value": grp["total_amount"].mean(),
                "first_order_in_window": grp["event_timestamp"].min(),
                "last_order_in_window": grp["event_timestamp"].max(),
                "preferred_order_type": _mode(grp["order_type"]),
                "preferred_payment": _mode(grp["payment_method"]),
                "preferred_location": _mode(grp["location_id"]),
                "activity_level": activity_level(orders),
            }
        )
    return out


# ---------------------------------------------------------------------------
# Star schema aggregates
# ---------------------------------------------------------------------------


def order_day_location(row: dict[str, Any]) -> Partition | None:
    ts, location_id = row.get("order_timestamp"), row.get("location_id")
    if ts is None or location_id is None:
        return None
    return (ts.date(), location_id)


def compute_mv_hourly_sales(conn: Connection, partitions: set[Partition] | None):
    stmt = select(
        fact_order.c.order_id,
        fact_order.c.order_timestamp,
        fact_order.c.location_id,
        fact_order.c.order_type,
        fact_order.c.total_amount,
    ).where(fact_order.c.location_id.is_not(None))
    if partitions is None:
        rows = [dict(r) for r in conn.execute(stmt).mappings()]
    else:
        rows = []
        for day, location_id in sorted(partitions):
            start = datetime.combine(day, time.min)
            clause = and_(
                fact_order.c.order_timestamp >= start,
                fact_order.c.order_timestamp < start + timedelta(days=1),
                fact_order.c.location_id == location_id,
            )
            rows.extend(dict(r) for r in conn.execute(stmt.where(clause)).mappings())
    df = pd.DataFrame(rows)
    if df.empty:
        return []

    ts = pd.to_datetime(df["order_timestamp"])
    df["order_date"] = ts.dt.date
    df["order_hour"] = ts.dt.hour
    df["total_amount"] = pd.to_numeric(df["total_amount"])
    counts = {}
    for order_type, col in (
        ("DELIVERY", "delivery_count"),
        ("PICKUP", "pickup_count"),
        ("DINE_IN", "dine_in_count"),
    ):
        df[col] = (df["order_type"] == order_type).astype(int)
        counts[col] = (col, "sum")

    out = (
        df.groupby(["order_date", "order_hour", "location_id"])
        .agg(
            order_count=("order_id", "size"),
            total_revenue=("total_amount", "sum"),
            avg_order_value=("total_amount", "mean"),
            **counts,
        )
        .reset_index()
    )
    return out.to_dict("records")


def compute_mv_customer_metrics(conn: Connection, partitions: set[Partition] | None):
    customers = _fetch(
        conn,
        select(
            dim_customer.c.customer_id,
            dim_customer.c.first_name,
            dim_customer.c.last_name,
            dim_customer.c.city,
            dim_customer.c.loyalty_points,
        ),
        dim_customer,
        ("customer_id",),
        partitions,
    )
    if not customers:
        return []
    orders = pd.DataFrame(
        _fetch(
            conn,
            select(
                fact_order.c.customer_id,
                fact_order.c.order_id,
                fact_order.c.total_amount,
                fact_order.c.order_timestamp,
            ),
            fact_order,
            ("customer_id",),
            partitions,
        )
    )
    stats: dict[Any, dict[str, Any]] = {}
    if not orders.empty:
        orders["total_amount"] = pd.to_numeric(orders["total_amount"])
        stats = (
            orders.groupby("customer_id")
            .agg(
                total_orders=("order_id", "nunique"),
                lifetime_value=("total_amount", "sum"),
                avg_order_value=("total_amount", "mean"),
                first_order_date=("order_timestamp", "min"),
                last_order_date=("order_timestamp", "max"),
            )
            .to_dict("index")
        )

    out: list[dict[str, Any]] = []
    for c in customers:
        s = stats.get(c["customer_id"], {})
        name = None
        if c["first_name"] is not None and c["last_name"] is not None:
            name = f"{c['first_name']} {c['last_name']}"
        out.append(
            {
                "customer_id": c["customer_id"],
                "customer_name": name,
                "city": c["city"],
                "loyalty_points": c["loyalty_points"],
                "total_orders": s.get("total_orders", 0),
                "lifetime_value": s.get("lifetime_value"),
                "avg_order_value": s.get("avg_order_value"),
                "first_order_date": s.get("first_order_date"),
                "last_order_date": s.get("last_order_date"),
            }
        )
    return out


def compute_mv_menu_profitability(conn: Connection, partitions: set[Partition] | None):
    items = _fetch(
        conn,
        select(
            dim_menu_item.c.item_id,
            dim_menu_item.c.item_name,
            dim_menu_item.c.base_price,
            dim_menu_item.c.cost_to_make,
            dim_category.c.category_name,
        ).join(dim_category, dim_menu_item.c.category_id == dim_category.c.category_id),
        dim_menu_item,
        ("item_id",),
        partitions,
    )
    if not items:
        return []
    lines = pd.DataFrame(
        _fetch(
            conn,
            select(
                fact_order_item.c.item_id,
                fact_order_item.c.order_id,
                fact_order_item.c.quantity,
                fact_order_item.c.line_total,
            ),
            fact_order_item,
            ("item_id",),
            partitions,
        )
    )
    stats: dict[Any, dict[str, Any]] = {}
    if not lines.empty:
        lines["quantity"] = pd.to_numeric(lines["quantity"])
        lines["line_total"] = pd.to_numeric(lines["line_total"])
        stats = (
            lines.groupby("item_id")
            .agg(
                times_ordered=("order_id", "nunique"),
                total_quantity_sold=("quantity", "sum"),
                total_revenue=("line_total", "sum"),
            )
            .to_dict("index")
        )

    out: list[dict[str, Any]] = []
    for item in items:
        price, cost = item["base_price"], item["cost_to_make"]
        profit = None if price is None or cost is None else price - cost
        margin = None if profit is None or not price else round(profit / price * 100, 1)
        s = stats.get(item["item_id"])
        sold = revenue = total_cost = total_profit = None
        if s:
            sold = int(s["total_quantity_sold"])
            revenue = float(s["total_revenue"])
            if cost is not None:
                total_cost = sold * cost
                total_profit = revenue - total_cost
        out.append(
            {
                "item_id": item["item_id"],
                "item_name": item["item_name"],
                "category_name": item["category_name"],
                "base_price": price,
                "cost_to_make": cost,
                "profit_per_item": profit,
                "profit_margin_pct": margin,
                "times_ordered": int(s["times_ordered"]) if s else 0,
                "total_quantity_sold": sold,
                "total_revenue": revenue,
                "total_cost": total_cost,
                "total_profit": total_profit,
            }
        )
    return out


# ---------------------------------------------------------------------------
# Definitions
# ---------------------------------------------------------------------------

DYNAMIC_TABLES: list[DynamicTable] = [
    dynamic_table(
        silver_orders,
        sources=["bronze_order_events"],
        compute=compute_silver_orders,
        target_lag="1 minute",
        partition_by=["event_id"],
        partition_maps={"bronze_order_events": same_columns("event_id")},
        comment="Cleaned and typed ORDER_PLACED events",
    ),
    dynamic_table(
        silver_order_items,
        sources=["silver_orders"],
        compute=compute_silver_order_items,
        target_lag="1 minute",
        partition_by=["event_id"],
        partition_maps={"silver_orders": same_columns("event_id")},
        comment="One row per item of every valid order",
    ),
    dynamic_table(
        gold_daily_sales,
        sources=["silver_orders", "dim_location"],
        compute=compute_gold_daily_sales,
        target_lag="5 minutes",
        partition_by=["order_date", "location_id"],
        partition_maps={"silver_orders": same_columns("order_date", "location_id")},
        volatile_columns=["last_refreshed"],
        comment="Daily sales per location",
    ),
    dynamic_table(
        gold_hourly_sales,
        sources=["silver_orders", "dim_location"],
        compute=compute_gold_hourly_sales,
        target_lag="1 minute",
        partition_by=["order_date", "order_hour", "location_id"],
        partition_maps={
            "silver_orders": same_columns("order_date", "order_hour", "location_id")
        },
        comment="Hourly sales with lunch/dinner rush flag",
    ),
    dynamic_table(
        gold_item_performance,
        sources=["silver_order_items", "dim_location", "dim_menu_item", "dim_category"],
        compute=compute_gold_item_performance,
        target_lag="5 minutes",
        partition_by=["order_date", "location_id"],
        partition_maps={"silver_order_items": same_columns("order_date", "location_id")},
        comment="Menu item sales and estimated profit",
    ),
    dynamic_table(
        gold_customer_activity,
        sources=["silver_orders", "dim_customer"],
        compute=compute_gold_customer_activity,
        target_lag="5 minutes",
        partition_by=["customer_id"],
        partition_maps={
            "silver_orders": same_columns("customer_id"),
            "dim_customer": same_columns("customer_id"),
        },
        comment="Customer purchase patterns",
    ),
    dynamic_table(
        mv_hourly_sales,
        sources=["fact_order"],
        compute=compute_mv_hourly_sales,
        target_lag="5 minutes",
        partition_by=["order_date", "location_id"],
        partition_maps={"fact_order": order_day_location},
        comment="Hourly order counts and revenue straight off fact_order",
    ),
    dynamic_table(
        mv_customer_metrics,
        sources=["dim_customer", "fact_order"],
        compute=compute_mv_customer_metrics,
        target_lag="5 minutes",
        partition_by=["customer_id"],
        partition_maps={
            "dim_customer": same_columns("customer_id"),
            "fact_order": same_columns("customer_id"),
        },
        comment="Lifetime customer metrics",
    ),
    dynamic_table(
        mv_menu_profitability,
        sources=["dim_menu_item", "dim_category", "fact_order_item"],
        compute=compute_mv_menu_profitability,
        target_lag="5 minutes",
        partition_by=["item_id"],
        partition_maps={
            "dim_menu_item": same_columns("item_id"),
            "fact_order_item": same_columns("item_id"),
        },
        comment="Margin and lifetime sales per menu item",
    ),
]


def build_graph() -> RefreshGraph:
    return RefreshGraph(DYNAMIC_TABLES)
