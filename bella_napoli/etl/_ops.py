from __future__ import annotations

import contextlib
import json
import sys
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.engine import Connection

from bella_napoli.db.schema import dim_location


def ts() -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")


@contextlib.contextmanager
def step(name: str):
    print(f"[{ts()}] START {name}")
    try:
        yield
    except BaseException as exc:
        print(f"[{ts()}] FAIL  {name}: {exc}", file=sys.stderr)
        raise
    print(f"[{ts()}] END   {name}")


def stats(name: str, **counts: int) -> None:
    parts = " ".join(f"{k}={v}" for k, v in counts.items())
    print(f"[{ts()}] STATS {name} {parts}")


def assert_seeded(conn: Connection) -> None:
    n = conn.execute(select(func.count()).select_from(dim_location)).scalar()
    if not n:
        raise RuntimeError(
            "Warehouse has no locations. Run: python -m bella_napoli.etl.02_seed_sample_data"
        )


def next_id(conn: Connection, column) -> int:
    return int(conn.execute(select(func.coalesce(func.max(column), 0))).scalar() or 0) + 1


LOCATION_CODES = {1: "DT-001", 2: "WL-002", 3: "RR-003"}
SOURCE_SYSTEMS = {0: "POS_TERMINAL", 1: "WEB_APP", 2: "MOBILE_APP"}


def order_event(order: dict, lines: list[dict], item_names: dict[int, str]) -> dict:
    """Bronze ``ORDER_PLACED`` event for a ``fact_order`` row and its lines."""
    payload = {
        "order_id": order["order_id"],
        "customer_id": order.get("customer_id"),
        "order_type": order.get("order_type"),
        "subtotal": order.get("subtotal"),
        "tax": order.get("tax_amount"),
        "tip": order.get("tip_amount"),
        "total": order.get("total_amount"),
        "payment_method": order.get("payment_method"),
        "items": [
            {
                "item_id": line["item_id"],
                "item_name": item_names.get(line["item_id"]),
                "quantity": line["quantity"],
                "price": line["unit_price"],
            }
            for line in lines
        ],
    }
    return {
        "event_id": f"ord-{order['order_id']}",
        "event_timestamp": order["order_timestamp"],
        "event_type": "ORDER_PLACED",
        "location_code": LOCATION_CODES.get(order.get("location_id"), "RR-003"),
        "payload": json.dumps(payload),
        "source_system": SOURCE_SYSTEMS[int(order["order_id"]) % 3],
        "processed": False,
    }
