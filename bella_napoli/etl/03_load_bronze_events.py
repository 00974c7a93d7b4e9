from __future__ import annotations

import argparse
import sys
from datetime import datetime, timedelta

from loguru import logger
from sqlalchemy import select

from bella_napoli.cdc.writers import insert_rows
from bella_napoli.config import load_settings
from bella_napoli.db.engine import get_engine
from bella_napoli.db.schema import bronze_order_events, dim_menu_item, fact_order, fact_order_item
from bella_napoli.etl._ops import assert_seeded, order_event, stats, step

logger.remove()
logger.add(sys.stderr, level="INFO")

DEFAULT_DAYS = 7
DEFAULT_LIMIT = 500


def load_recent_orders(conn, *, days: int = DEFAULT_DAYS, limit: int = DEFAULT_LIMIT, now=None) -> int:
    """Publish recent ``fact_order`` rows as ``ORDER_PLACED`` bronze events.

    Orders already present in bronze are skipped, so the load can be re-run.
    """
    now = now or datetime.now()
    since = datetime.combine(now.date() - timedelta(days=days), datetime.min.time())
    orders = [
        dict(r)
        for r in conn.execute(
            select(fact_order)
            .where(fact_order.c.order_timestamp >= since)
            .order_by(fact_order.c.order_timestamp.desc(), fact_order.c.order_id.desc())
            .limit(limit)
        ).mappings()
    ]
    if not orders:
        return 0

    existing = set(
        conn.execute(
            select(bronze_order_events.c.event_id).where(
                bronze_order_events.c.event_id.like("ord-%")
            )
        ).scalars()
    )
    orders = [o for o in orders if f"ord-{o['order_id']}" not in existing]
    if not orders:
        return 0

    names = dict(conn.execute(select(dim_menu_item.c.item_id, dim_menu_item.c.item_name)).all())
    order_ids = [o["order_id"] for o in orders]
    lines: dict[int, list[dict]] = {}
    for start in range(0, len(order_ids), 500):
        chunk = order_ids[start : start + 500]
        for r in conn.execute(
            select(fact_order_item)
            .where(fact_order_item.c.order_id.in_(chunk))
            .order_by(fact_order_item.c.order_item_id)
        ).mappings():
            lines.setdefault(r["order_id"], []).append(dict(r))

    events = [order_event(o, lines.get(o["order_id"], []), names) for o in reversed(orders)]
    return insert_rows(conn, bronze_order_events, events)


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Load recent orders into bronze_order_events as ORDER_PLACED events."
    )
    parser.add_argument("--days", type=int, default=DEFAULT_DAYS, help="Look-back window in days.")
    parser.add_argument("--limit", type=int, default=DEFAULT_LIMIT, help="Maximum events to load.")
    args = parser.parse_args()

    settings = load_settings()
    engine = get_engine(settings)

    with engine.begin() as conn:
        assert_seeded(conn)
        with step("load_bronze_events"):
            n = load_recent_orders(conn, days=max(1, args.days), limit=max(1, args.limit))
    stats("load_bronze_events", rows=n)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
