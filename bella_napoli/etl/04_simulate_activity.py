from __future__ import annotations

import argparse
import json
import random
import sys
from datetime import datetime
from zoneinfo import ZoneInfo

from loguru import logger
from sqlalchemy import func, select

from bella_napoli.cdc.writers import insert_rows, update_rows
from bella_napoli.config import load_settings
from bella_napoli.db.engine import get_engine
from bella_napoli.db.schema import (
    bronze_order_events,
    dim_customer,
    dim_menu_item,
    fact_inventory,
    fact_order,
    fact_order_item,
    fact_review,
    stg_online_orders,
)
from bella_napoli.etl._ops import LOCATION_CODES, assert_seeded, next_id, order_event, stats, step
from bella_napoli.etl.sample_data import (
    LOCATIONS,
    MENU,
    ORDER_TYPES,
    PAYMENTS,
    REORDER_QUANTITY,
    STREETS,
    generate_order,
    generate_review,
)

logger.remove()
logger.add(sys.stderr, level="INFO")


def simulate_orders(conn, rng: random.Random, now: datetime, n: int, tax_rate: float) -> list[dict]:
    customers = conn.execute(select(func.max(dim_customer.c.customer_id))).scalar() or 1
    names = dict(conn.execute(select(dim_menu_item.c.item_id, dim_menu_item.c.item_name)).all())
    order_id = next_id(conn, fact_order.c.order_id)
    item_id = next_id(conn, fact_order_item.c.order_item_id)

    orders, lines, events = [], [], []
    for _ in range(n):
        order, items = generate_order(
            rng,
            order_id,
            rng.choice(LOCATIONS)[0],
            now,
            rng.randint(1, int(customers)),
            tax_rate,
            item_id,
        )
        orders.append(order)
        lines.extend(items)
        events.append(order_event(order, items, names))
        order_id += 1
        item_id += len(items)

    insert_rows(conn, fact_order, orders)
    insert_rows(conn, fact_order_item, lines)
    insert_rows(conn, bronze_order_events, events)
    return orders


def simulate_reviews(conn, rng: random.Random, now: datetime, orders: list[dict], n: int) -> int:
    if not orders or n <= 0:
        return 0
    review_id = next_id(conn, fact_review.c.review_id)
    rows = []
    for order in rng.sample(orders, k=min(n, len(orders))):
        rows.append(generate_review(rng, review_id, order, now))
        review_id += 1
    return insert_rows(conn, fact_review, rows)


def simulate_inventory_counts(conn, rng: random.Random, now: datetime) -> int:
    """Record today's count for every location/ingredient from its latest count."""
    latest = {}
    for r in conn.execute(
        select(fact_inventory).order_by(fact_inventory.c.record_date, fact_inventory.c.inventory_id)
    ).mappings():
        latest[(r["location_id"], r["ingredient_id"])] = dict(r)

    inventory_id = next_id(conn, fact_inventory.c.inventory_id)
    rows = []
    for (location_id, ingredient_id), prev in sorted(latest.items()):
        on_hand = float(prev["quantity_on_hand"] or 0)
        reorder_point = float(prev["reorder_point"] or 0)
        used = rng.uniform(5.0, 40.0)
        received = REORDER_QUANTITY if on_hand <= reorder_point and rng.random() < 0.5 else 0.0
        on_hand = max(0.0, on_hand + received - used)
        rows.append(
            {
                "inventory_id": inventory_id,
                "location_id": location_id,
                "ingredient_id": ingredient_id,
                "record_date": now.date(),
                "quantity_on_hand": round(on_hand, 2),
                "quantity_used": round(used, 2),
                "quantity_received": round(received, 2),
                "quantity_wasted": 0.0,
                "reorder_point": prev["reorder_point"],
                "reorder_quantity": prev["reorder_quantity"],
            }
        )
        inventory_id += 1
    return insert_rows(conn, fact_inventory, rows)


def online_order_payload(rng: random.Random, customer_id: int, valid: bool = True) -> dict:
    order_type = rng.choice(ORDER_TYPES)
    picks = rng.sample(MENU, k=rng.randint(1, 3))
    payload = {
        "customer_id": customer_id,
        "order_type": order_type,
        "location_code": LOCATION_CODES[rng.choice(LOCATIONS)[0]],
        "payment_method": rng.choice(PAYMENTS),
        "items": [
            {"item_id": m[0], "item_name": m[2], "quantity": rng.randint(1, 2), "price": m[3]}
            for m in picks
        ],
        "order_source": "WEBSITE",
    }
    if order_type == "DELIVERY":
        payload["delivery_address"] = f"{rng.randint(100, 9999)} {rng.choice(STREETS)}"
    if not valid:
        broken = rng.choice(["items", "order_type", "quantity"])
        if broken == "items":
            payload["items"] = []
        elif broken == "order_type":
            payload["order_type"] = "DRIVE_THRU"
        else:
            payload["items"][0]["quantity"] = 0
    return payload


def simulate_online_orders(conn, rng: random.Random, now: datetime, n: int) -> int:
    customers = conn.execute(select(func.max(dim_customer.c.customer_id))).scalar() or 1
    rows = []
    for i in range(n):
        payload = online_order_payload(rng, rng.randint(1, int(customers)), valid=rng.random() >= 0.2)
        rows.append(
            {
                "raw_order_id": f"ONLINE-{now:%Y%m%d%H%M%S}-{i + 1:03d}-{rng.randint(0, 9999):04d}",
                "raw_payload": json.dumps(payload),
                "source_system": "WEB_APP",
                "received_at": now,
                "processed_flag": False,
            }
        )
    return insert_rows(conn, stg_online_orders, rows)


def simulate_customer_updates(conn, rng: random.Random, n: int) -> int:
    customers = conn.execute(select(func.max(dim_customer.c.customer_id))).scalar() or 0
    if not customers or n <= 0:
        return 0
    ids = rng.sample(range(1, int(customers) + 1), k=min(n, int(customers)))
    rows = [
        {
            "customer_id": cid,
            "phone": f"312-555-{rng.randint(0, 9999):04d}",
            "address": f"{rng.randint(100, 9999)} {rng.choice(STREETS)}",
        }
        for cid in ids
    ]
    return update_rows(conn, dim_customer, rows)


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Simulate new activity: orders, reviews, inventory counts, online orders, profile edits."
    )
    parser.add_argument("--orders", type=int, default=10, help="New in-store/app orders.")
    parser.add_argument("--reviews", type=int, default=3, help="Reviews on the new orders.")
    parser.add_argument("--online-orders", type=int, default=5, help="Staged online orders.")
    parser.add_argument("--customer-updates", type=int, default=2, help="Customer profile edits.")
    parser.add_argument("--no-inventory", action="store_true", help="Skip today's inventory count.")
    parser.add_argument("--seed", type=int, default=None, help="Random seed (default: random).")
    args = parser.parse_args()

    settings = load_settings()
    engine = get_engine(settings)
    rng = random.Random(args.seed)
    now = datetime.now(ZoneInfo(settings.scheduler_timezone)).replace(tzinfo=None, microsecond=0)

    counts: dict[str, int] = {}
    with engine.begin() as conn:
        assert_seeded(conn)
        with step("simulate_activity"):
            orders = simulate_orders(conn, rng, now, max(0, args.orders), settings.tax_rate)
            counts["orders"] = len(orders)
            counts["reviews"] = simulate_reviews(conn, rng, now, orders, args.reviews)
            counts["inventory"] = 0 if args.no_inventory else simulate_inventory_counts(conn, rng, now)
            counts["online_orders"] = simulate_online_orders(conn, rng, now, max(0, args.online_orders))
            counts["customer_updates"] = simulate_customer_updates(conn, rng, args.customer_updates)
    stats("simulate_activity", **counts)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
