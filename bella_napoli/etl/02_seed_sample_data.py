"""Seed deterministic sample data for the Bella Napoli warehouse.

Everything is generated from ``SEED_RANDOM_SEED`` relative to today's date, so
two runs on the same day produce identical rows. Order timestamps are
restaurant wall-clock time (``SCHEDULER_TIMEZONE``).
"""

from __future__ import annotations

import argparse
import random
import sys
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

from loguru import logger
from sqlalchemy import func, select

from bella_napoli.cdc.writers import insert_rows
from bella_napoli.config import load_settings
from bella_napoli.db.engine import get_engine
from bella_napoli.db.schema import (
    create_all,
    dim_customer,
    dim_location,
    fact_inventory,
    fact_order,
    fact_order_item,
    fact_review,
)
from bella_napoli.etl._ops import stats, step
from bella_napoli.etl.sample_data import (
    SeedConfig,
    build_dimensions,
    generate_history,
    generate_inventory,
    loyalty_points,
)
from bella_napoli.pipeline.streams import build_streams
from bella_napoli.procedures.daily_sales import aggregate_daily_sales

logger.remove()
logger.add(sys.stderr, level="INFO")


def wall_clock_now(tz: str) -> datetime:
    return datetime.now(ZoneInfo(tz)).replace(tzinfo=None, microsecond=0)


def main() -> int:
    parser = argparse.ArgumentParser(description="Seed deterministic sample data for Bella Napoli.")
    parser.add_argument("--days", type=int, default=None, help="Days of order history (default: SEED_DAYS).")
    parser.add_argument("--customers", type=int, default=150, help="Number of customers.")
    args = parser.parse_args()

    settings = load_settings()
    engine = get_engine(settings)
    create_all(engine)

    cfg = SeedConfig(
        seed=settings.seed_random_seed,
        days=max(1, int(args.days or settings.seed_days)),
        customers=max(1, int(args.customers)),
        tax_rate=settings.tax_rate,
    )
    now = wall_clock_now(settings.scheduler_timezone)
    rng = random.Random(f"{cfg.seed}:{now.date().isoformat()}")

    with engine.begin() as conn:
        existing = conn.execute(select(func.count()).select_from(dim_location)).scalar()
        if existing:
            print("Sample data already present (dim_location is not empty); exiting.")
            return 0

        dims = build_dimensions(rng, now.date(), cfg)
        orders, items, reviews = generate_history(rng, now, cfg)
        inventory = generate_inventory(rng, now.date())
        # one point per whole dollar spent
        points = loyalty_points(orders)
        for c in dims[dim_customer]:
            c["loyalty_points"] = points.get(c["customer_id"], 0)

        with step("seed_dimensions"):
            for table, rows in dims.items():
                insert_rows(conn, table, rows)
        stats("seed_dimensions", **{t.name: len(r) for t, r in dims.items()})

        with step("seed_facts"):
            insert_rows(conn, fact_order, orders)
            insert_rows(conn, fact_order_item, items)
            insert_rows(conn, fact_review, reviews)
            insert_rows(conn, fact_inventory, inventory)
        stats(
            "seed_facts",
            orders=len(orders),
            order_items=len(items),
            reviews=len(reviews),
            inventory=len(inventory),
        )

        with step("fact_daily_sales"):
            days = 0
            for days_back in range(cfg.days, 0, -1):
                aggregate_daily_sales(conn, now.date() - timedelta(days=days_back))
                days += 1
        stats("fact_daily_sales", days=days)

        with step("create_streams"):
            streams = build_streams()
            streams.create_all(conn)
        stats("create_streams", streams=len(streams.names()))

    print(f"Seed complete: seed={cfg.seed} days={cfg.days} customers={cfg.customers}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
