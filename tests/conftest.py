"""
Shared pytest fixtures for the Bella Napoli unit tests.

Every test gets its own in-memory SQLite warehouse, so tests never need a
SQL Server instance and never see each other's rows.
"""

import json
import random
from datetime import UTC, date, datetime

import pytest

from bella_napoli.cdc.writers import insert_rows
from bella_napoli.db.engine import engine_from_url
from bella_napoli.db.schema import bronze_order_events, create_all
from bella_napoli.etl.sample_data import SeedConfig, build_dimensions

SEED_DAY = date(2024, 3, 4)  # a Monday
FIXED_NOW = datetime(2024, 3, 4, 18, 0, tzinfo=UTC)


@pytest.fixture
def engine():
    eng = engine_from_url("sqlite://")
    create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def seeded(engine):
    """Warehouse with the sample dimensions (6 categories, 21 menu items,
    3 locations, 10 customers) and no facts."""
    cfg = SeedConfig(seed=7, days=5, customers=10, tax_rate=0.0825)
    dims = build_dimensions(random.Random(7), SEED_DAY, cfg)
    with engine.begin() as conn:
        for table, rows in dims.items():
            insert_rows(conn, table, rows)
    return engine


@pytest.fixture
def clock():
    return lambda: FIXED_NOW


def _make_event(
    event_id,
    ts,
    *,
    location_code="DT-001",
    order_id=1,
    customer_id=1,
    total=20.0,
    order_type="PICKUP",
    payment_method="CREDIT",
    source_system="POS_TERMINAL",
    items=None,
    event_type="ORDER_PLACED",
):
    """Helper: one bronze ORDER_PLACED event row."""
    if items is None:
        items = [{"item_id": 1, "item_name": "Margherita", "quantity": 1, "price": total}]
    payload = {
        "order_id": order_id,
        "customer_id": customer_id,
        "order_type": order_type,
        "subtotal": total,
        "tax": 0.0,
        "tip": 0.0,
        "total": total,
        "payment_method": payment_method,
        "items": items,
    }
    return {
        "event_id": event_id,
        "event_timestamp": ts,
        "event_type": event_type,
        "location_code": location_code,
        "payload": json.dumps(payload),
        "source_system": source_system,
        "processed": False,
    }


@pytest.fixture
def add_events(engine):
    def _add(*events):
        with engine.begin() as conn:
            insert_rows(conn, bronze_order_events, list(events))

    return _add


@pytest.fixture
def new_event():
    return _make_event
