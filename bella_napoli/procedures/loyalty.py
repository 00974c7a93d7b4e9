from __future__ import annotations

import math

from sqlalchemy import select
from sqlalchemy.engine import Connection

from bella_napoli.cdc.writers import update_rows
from bella_napoli.db.schema import dim_customer

TIERS = (("GOLD", 1000), ("SILVER", 500), ("BRONZE", 100))


def loyalty_tier(points: int) -> str:
    for tier, threshold in TIERS:
        if points >= threshold:
            return tier
    return "MEMBER"


def update_loyalty_points(
    conn: Connection,
    customer_id: int,
    order_total: float,
    points: int | None = None,
) -> dict:
    """Add points for an order (one per whole dollar unless ``points`` is given)."""
    current = conn.execute(
        select(dim_customer.c.loyalty_points).where(dim_customer.c.customer_id == customer_id)
    ).first()
    if current is None:
        raise ValueError(f"Customer {customer_id} not found")

    before = int(current[0] or 0)
    earned = int(points) if points is not None else int(math.floor(float(order_total)))
    after = before + earned
    update_rows(conn, dim_customer, [{"customer_id": customer_id, "loyalty_points": after}])
    return {
        "customer_id": customer_id,
        "points_before": before,
        "points_earned": earned,
        "points_after": after,
        "loyalty_tier": loyalty_tier(after),
    }
