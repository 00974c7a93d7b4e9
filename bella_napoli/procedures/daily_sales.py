from __future__ import annotations

from datetime import date, datetime, time, timedelta

from loguru import logger
from sqlalchemy import case, distinct, func, select
from sqlalchemy.engine import Connection

from bella_napoli.cdc.writers import upsert_rows
from bella_napoli.db.schema import (
    dim_customer,
    dim_location,
    dim_menu_item,
    fact_daily_sales,
    fact_order,
    fact_order_item,
)

PIZZA_CATEGORY_ID = 1


def _day_bounds(day: date) -> tuple[datetime, datetime]:
    start = datetime.combine(day, time.min)
    return start, start + timedelta(days=1)


def is_weekend(day: date) -> bool:
    return day.weekday() >= 5


def _money(value) -> float:
    return round(float(value or 0), 2)


def process_daily_sales(conn: Connection, sales_date: date) -> str:
    """Per-location order count, revenue and average for one day.

    Returns ``"Processed N locations for <date>"``, or ``"Error: ..."``.
    """
    start, end = _day_bounds(sales_date)
    try:
        locations = conn.execute(
            select(dim_location.c.location_id).order_by(dim_location.c.location_id)
        ).scalars().all()

        rows = []
        for location_id in locations:
            orders, revenue = conn.execute(
                select(
                    func.count(distinct(fact_order.c.order_id)),
                    func.coalesce(func.sum(fact_order.c.total_amount), 0),
                )
                .where(fact_order.c.location_id == location_id)
                .where(fact_order.c.order_timestamp >= start)
                .where(fact_order.c.order_timestamp < end)
            ).one()
            orders = int(orders or 0)
            revenue = _money(revenue)
            rows.append(
                {
                    "sales_date": sales_date,
                    "location_id": location_id,
                    "total_orders": orders,
                    "total_revenue": revenue,
                    "avg_order_value": round(revenue / orders, 2) if orders > 0 else 0.0,
                    "is_weekend": is_weekend(sales_date),
                }
            )
        upsert_rows(conn, fact_daily_sales, rows)
    except Exception as exc:
        logger.exception("process_daily_sales failed for {}", sales_date)
        return f"Error: {exc}"
    return f"Processed {len(rows)} locations for {sales_date.isoformat()}"


def aggregate_daily_sales(conn: Connection, sales_date: date) -> int:
    """Merge the full daily summary (type split, pizzas, new customers) for one day.

    Returns the number of locations written.
    """
    start, end = _day_bounds(sales_date)
    pizza_counts = (
        select(
            fact_order_item.c.order_id,
            func.sum(
                case(
                    (dim_menu_item.c.category_id == PIZZA_CATEGORY_ID, fact_order_item.c.quantity),
                    else_=0,
                )
            ).label("pizza_count"),
        )
        .join(dim_menu_item, fact_order_item.c.item_id == dim_menu_item.c.item_id)
        .group_by(fact_order_item.c.order_id)
        .subquery()
    )

    def _count_type(order_type: str):
        return func.sum(case((fact_order.c.order_type == order_type, 1), else_=0))

    stmt = (
        select(
            fact_order.c.location_id,
            func.count(distinct(fact_order.c.order_id)).label("total_orders"),
            func.sum(fact_order.c.total_amount).label("total_revenue"),
            func.avg(fact_order.c.total_amount).label("avg_order_value"),
            _count_type("DINE_IN").label("dine_in_orders"),
            _count_type("PICKUP").label("pickup_orders"),
            _count_type("DELIVERY").label("delivery_orders"),
            func.coalesce(func.sum(pizza_counts.c.pizza_count), 0).label("total_pizzas_sold"),
            func.count(
                distinct(
                    case(
                        (dim_customer.c.registration_date == sales_date, dim_customer.c.customer_id)
                    )
                )
            ).label("new_customers"),
        )
        .select_from(
            fact_order.outerjoin(pizza_counts, fact_order.c.order_id == pizza_counts.c.order_id)
            .outerjoin(dim_customer, fact_order.c.customer_id == dim_customer.c.customer_id)
        )
        .where(fact_order.c.order_timestamp >= start)
        .where(fact_order.c.order_timestamp < end)
        .where(fact_order.c.location_id.is_not(None))
        .group_by(fact_order.c.location_id)
    )

    rows = []
    for r in conn.execute(stmt).mappings():
        rows.append(
            {
                "sales_date": sales_date,
                "location_id": r["location_id"],
                "total_orders": int(r["total_orders"] or 0),
                "total_revenue": _money(r["total_revenue"]),
                "avg_order_value": _money(r["avg_order_value"]),
                "dine_in_orders": int(r["dine_in_orders"] or 0),
                "pickup_orders": int(r["pickup_orders"] or 0),
                "delivery_orders": int(r["delivery_orders"] or 0),
                "total_pizzas_sold": int(r["total_pizzas_sold"] or 0),
                "new_customers": int(r["new_customers"] or 0),
                "is_weekend": is_weekend(sales_date),
                "is_holiday": False,
            }
        )
    upsert_rows(conn, fact_daily_sales, rows)
    logger.info("Aggregated daily sales for {} ({} locations)", sales_date, len(rows))
    return len(rows)
