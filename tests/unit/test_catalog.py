"""
Unit tests for the bodies of the warehouse's scheduled tasks
(bella_napoli/tasks/catalog.py), run directly against an in-memory warehouse.
"""

import json
from datetime import date, datetime, timedelta

import pytest
from sqlalchemy import insert, select, update

from bella_napoli.cdc.writers import insert_rows, update_rows
from bella_napoli.db.schema import (
    audit_log,
    bronze_order_events,
    customer_change_history,
    dim_customer,
    fact_daily_sales,
    fact_inventory,
    fact_order,
    fact_review,
    inventory_alerts,
    ops_change_log,
    processed_order_log,
    review_sentiment_analysis,
    stg_online_orders,
)
from bella_napoli.pipeline.streams import build_streams
from bella_napoli.tasks import catalog
from bella_napoli.tasks.definitions import TaskContext
from bella_napoli.tasks.runner import TaskRunner
from bella_napoli.tasks.sentiment import LexiconScorer

SCHEDULED_AT = datetime(2024, 3, 5, 7, 0)  # 01:00 in Chicago


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def ctx_for(conn, name="t", **services):
    return TaskContext(
        conn=conn,
        task_name=name,
        graph_run_id="g",
        scheduled_at=SCHEDULED_AT,
        services={"timezone": "America/Chicago", "tax_rate": 0.0825, **services},
    )


def order(order_id, ts, total=25.0, location_id=1, customer_id=1, order_type="PICKUP"):
    return {
        "order_id": order_id,
        "customer_id": customer_id,
        "location_id": location_id,
        "order_timestamp": ts,
        "order_type": order_type,
        "subtotal": total,
        "tax_amount": 0.0,
        "tip_amount": 0.0,
        "total_amount": total,
        "payment_method": "CREDIT",
        "order_status": "COMPLETED",
    }


def inventory(inventory_id, qty, ingredient_id=1, record_date=date(2024, 3, 5)):
    return {
        "inventory_id": inventory_id,
        "location_id": 1,
        "ingredient_id": ingredient_id,
        "record_date": record_date,
        "quantity_on_hand": qty,
        "reorder_point": 25.0,
        "reorder_quantity": 80.0,
    }


def all_rows(engine, table):
    with engine.connect() as conn:
        return [dict(r) for r in conn.execute(select(table)).mappings()]


@pytest.fixture
def warehouse(seeded):
    """Seeded warehouse with every stream created after the seed."""
    with seeded.begin() as conn:
        build_streams().create_all(conn)
    return seeded


# ---------------------------------------------------------------------------
# Stream consumers
# ---------------------------------------------------------------------------

class TestProcessNewOrders:

    def test_new_orders_logged_once(self, warehouse):
        with warehouse.begin() as conn:
            insert_rows(conn, fact_order, [order(1, SCHEDULED_AT), order(2, SCHEDULED_AT, total=40.0)])
            assert catalog.process_new_orders(ctx_for(conn)) == "Processed 2 new orders"
            assert catalog.process_new_orders(ctx_for(conn)) == "Processed 0 new orders"

        logged = all_rows(warehouse, processed_order_log)
        assert sorted(r["order_total"] for r in logged) == [25.0, 40.0]
        assert {r["action_type"] for r in logged} == {"INSERT"}

    def test_updates_ignored(self, warehouse):
        with warehouse.begin() as conn:
            insert_rows(conn, fact_order, [order(1, SCHEDULED_AT)])
            catalog.process_new_orders(ctx_for(conn))
            update_rows(conn, fact_order, [{"order_id": 1, "order_status": "REFUNDED"}])
            assert catalog.process_new_orders(ctx_for(conn)) == "Processed 0 new orders"


class TestReviewSentiment:

    def test_negative_review_needs_response(self, warehouse):
        with warehouse.begin() as conn:
            insert_rows(
                conn,
                fact_review,
                [
                    {"review_id": 1, "overall_rating": 1, "review_text": "Terrible, cold and soggy pizza."},
                    {"review_id": 2, "overall_rating": 5, "review_text": "Amazing crust, friendly staff!"},
                    {"review_id": 3, "overall_rating": 3, "review_text": None},
                ],
            )
            result = catalog.analyze_review_sentiment(ctx_for(conn, scorer=LexiconScorer()))
        assert result == "Analyzed 2 reviews"

        by_review = {r["review_id"]: r for r in all_rows(warehouse, review_sentiment_analysis)}
        assert by_review[1]["sentiment_label"] == "NEGATIVE"
        assert by_review[1]["requires_response"] is True
        assert by_review[2]["sentiment_label"] == "POSITIVE"
        assert "service" in json.loads(by_review[2]["topics"])

    def test_custom_scorer(self, warehouse):
        class Always:
            def score(self, text):
                return 0.0

        with warehouse.begin() as conn:
            insert_rows(conn, fact_review, [{"review_id": 1, "review_text": "Amazing!"}])
            catalog.analyze_review_sentiment(ctx_for(conn, scorer=Always()))
        (row,) = all_rows(warehouse, review_sentiment_analysis)
        assert row["sentiment_label"] == "NEUTRAL"


class TestInventoryAlerts:

    @pytest.mark.parametrize(
        "qty, expected",
        [(0.0, "OUT_OF_STOCK"), (10.0, "CRITICAL"), (12.5, "CRITICAL"), (20.0, "LOW_STOCK")],
    )
    def test_alert_type(self, qty, expected):
        assert catalog.alert_type(qty, 25.0) == expected

    def test_low_stock_opens_one_alert(self, warehouse):
        with warehouse.begin() as conn:
            insert_rows(conn, fact_inventory, [inventory(1, 0.0)])
            catalog.check_inventory_alerts(ctx_for(conn))
            insert_rows(conn, fact_inventory, [inventory(2, 5.0, record_date=date(2024, 3, 6))])
            catalog.check_inventory_alerts(ctx_for(conn))

        (alert,) = all_rows(warehouse, inventory_alerts)
        assert alert["alert_type"] == "OUT_OF_STOCK"
        assert alert["alert_status"] == "OPEN"
        assert alert["ingredient_name"] == "Mozzarella"

    def test_restock_resolves_alert(self, warehouse):
        with warehouse.begin() as conn:
            insert_rows(conn, fact_inventory, [inventory(1, 10.0)])
            catalog.check_inventory_alerts(ctx_for(conn))
            insert_rows(conn, fact_inventory, [inventory(2, 90.0, record_date=date(2024, 3, 6))])
            result = catalog.check_inventory_alerts(ctx_for(conn))

        assert result == "Created 0 inventory alerts, resolved 1"
        (alert,) = all_rows(warehouse, inventory_alerts)
        assert alert["alert_status"] == "RESOLVED"
        assert alert["resolved_at"] == SCHEDULED_AT

    def test_healthy_stock_ignored(self, warehouse):
        with warehouse.begin() as conn:
            insert_rows(conn, fact_inventory, [inventory(1, 60.0)])
            catalog.check_inventory_alerts(ctx_for(conn))
        assert all_rows(warehouse, inventory_alerts) == []


class TestCustomerChanges:

    def test_update_logs_old_and_new_values(self, warehouse):
        with warehouse.begin() as conn:
            update_rows(conn, dim_customer, [{"customer_id": 3, "phone": "312-555-0000"}])
            assert catalog.log_customer_changes(ctx_for(conn)) == "Logged 1 customer changes"

        (row,) = all_rows(warehouse, customer_change_history)
        assert row["change_type"] == "UPDATE"
        assert row["customer_id"] == 3
        assert json.loads(row["new_values"])["phone"] == "312-555-0000"
        assert json.loads(row["old_values"])["phone"] != "312-555-0000"

    def test_new_customer_logged_as_insert(self, warehouse):
        with warehouse.begin() as conn:
            insert_rows(conn, dim_customer, [{"customer_id": 99, "first_name": "Ada"}])
            catalog.log_customer_changes(ctx_for(conn))

        (row,) = all_rows(warehouse, customer_change_history)
        assert row["change_type"] == "INSERT"
        assert row["old_values"] is None
        assert json.loads(row["new_values"])["first_name"] == "Ada"

    def test_insert_then_update_in_one_window_is_an_insert(self, warehouse):
        with warehouse.begin() as conn:
            insert_rows(conn, dim_customer, [{"customer_id": 99, "first_name": "Ada"}])
            update_rows(conn, dim_customer, [{"customer_id": 99, "first_name": "Adele"}])
            catalog.log_customer_changes(ctx_for(conn))

        (row,) = all_rows(warehouse, customer_change_history)
        assert row["change_type"] == "INSERT"
        assert json.loads(row["new_values"])["first_name"] == "Adele"


# ---------------------------------------------------------------------------
# Calendar jobs
# ---------------------------------------------------------------------------

class TestCalendarJobs:

    def test_local_today_uses_task_timezone(self, engine):
        with engine.connect() as conn:
            assert catalog.local_today(ctx_for(conn)) == date(2024, 3, 5)
            assert catalog.local_today(ctx_for(conn, timezone="UTC")) == date(2024, 3, 5)
            assert catalog.local_today(ctx_for(conn, timezone="Pacific/Honolulu")) == date(2024, 3, 4)

    def test_daily_aggregation_covers_yesterday(self, warehouse):
        with warehouse.begin() as conn:
            insert_rows(
                conn,
                fact_order,
                [
                    order(1, datetime(2024, 3, 4, 19, 0), total=30.0),
                    order(2, datetime(2024, 3, 4, 20, 0), total=10.0, order_type="DELIVERY"),
                    order(3, datetime(2024, 3, 5, 0, 30), total=99.0),
                ],
            )
            result = catalog.daily_sales_aggregation(ctx_for(conn))
        assert result == "Aggregated 1 locations for 2024-03-04"

        (row,) = all_rows(warehouse, fact_daily_sales)
        assert row["sales_date"] == date(2024, 3, 4)
        assert row["total_orders"] == 2
        assert row["total_revenue"] == pytest.approx(40.0)
        assert row["delivery_orders"] == 1

    def test_cleanup_applies_retention(self, warehouse):
        old = SCHEDULED_AT - timedelta(days=40)
        with warehouse.begin() as conn:
            conn.execute(
                insert(processed_order_log),
                [
                    {"order_id": 1, "action_type": "INSERT", "processed_at": old},
                    {"order_id": 2, "action_type": "INSERT", "processed_at": SCHEDULED_AT},
                ],
            )
            conn.execute(
                insert(inventory_alerts),
                [
                    {
                        "location_id": 1,
                        "ingredient_id": 1,
                        "alert_status": "RESOLVED",
                        "created_at": old - timedelta(days=70),
                        "resolved_at": old - timedelta(days=60),
                    },
                    {
                        "location_id": 1,
                        "ingredient_id": 2,
                        "alert_status": "OPEN",
                        "created_at": old - timedelta(days=70),
                        "resolved_at": None,
                    },
                ],
            )
            result = catalog.cleanup(ctx_for(conn))

        assert result.startswith("Removed 1 processed order logs, 1 resolved alerts")
        assert [r["order_id"] for r in all_rows(warehouse, processed_order_log)] == [2]
        assert [r["alert_status"] for r in all_rows(warehouse, inventory_alerts)] == ["OPEN"]
        assert all_rows(warehouse, ops_change_log) == []

    def test_cleanup_purges_order_changes_past_retention(self, warehouse):
        with warehouse.begin() as conn:
            insert_rows(conn, fact_order, [order(1, SCHEDULED_AT - timedelta(days=20))])
            catalog.process_new_orders(ctx_for(conn))
            conn.execute(
                update(ops_change_log)
                .where(ops_change_log.c.table_name == "fact_order")
                .values(changed_at=SCHEDULED_AT - timedelta(days=20))
            )
            insert_rows(conn, fact_order, [order(2, SCHEDULED_AT)])
            catalog.process_new_orders(ctx_for(conn))
            catalog.cleanup(ctx_for(conn))

        # only the order inside the retention window is still waiting for stream_order_changes
        remaining = [json.loads(r["row_data"])["order_id"] for r in all_rows(warehouse, ops_change_log)]
        assert remaining == [2]


# ---------------------------------------------------------------------------
# Online order ETL
# ---------------------------------------------------------------------------

GOOD_ONLINE_ORDER = {
    "order_id": 501,
    "customer_id": 1,
    "location_code": "DT-001",
    "order_type": "PICKUP",
    "payment_method": "MOBILE",
    "tip": 3.0,
    "items": [{"item_id": 1, "item_name": "Margherita", "quantity": 2, "price": 14.99}],
}


@pytest.fixture
def staged(warehouse):
    with warehouse.begin() as conn:
        insert_rows(
            conn,
            stg_online_orders,
            [
                {
                    "raw_order_id": "A1",
                    "raw_payload": json.dumps(GOOD_ONLINE_ORDER),
                    "source_system": "WEB_APP",
                    "received_at": datetime(2024, 3, 5, 6, 50),
                },
                {
                    "raw_order_id": "B2",
                    "raw_payload": json.dumps({"customer_id": 1, "order_type": "DELIVERY", "items": []}),
                    "source_system": "MOBILE_APP",
                    "received_at": datetime(2024, 3, 5, 6, 55),
                },
            ],
        )
    return warehouse


class TestOnlineOrderEtl:

    def test_extract_counts_pending(self, staged):
        with staged.connect() as conn:
            assert catalog.etl_extract(ctx_for(conn)) == "Extract phase completed: 2 staged online orders"

    def test_transform_rejects_invalid_orders(self, staged):
        with staged.begin() as conn:
            result = catalog.etl_transform(ctx_for(conn))
        assert result == "Transform phase completed: 1 valid, 1 rejected"

        flags = {r["raw_order_id"]: r["processed_flag"] for r in all_rows(staged, stg_online_orders)}
        assert flags == {"A1": False, "B2": True}
        (audit,) = all_rows(staged, audit_log)
        assert audit["event_type"] == "REJECTED_ONLINE_ORDER"
        details = json.loads(audit["details"])
        assert details["raw_order_id"] == "B2"
        assert "Order must contain at least one item" in details["errors"]
        assert "Delivery orders require delivery_address" in details["errors"]

    def test_load_writes_bronze_event(self, staged):
        with staged.begin() as conn:
            catalog.etl_transform(ctx_for(conn))
            assert catalog.etl_load(ctx_for(conn)) == "Load phase completed: 1 orders loaded"

        (event,) = all_rows(staged, bronze_order_events)
        assert event["event_id"] == "web-A1"
        assert event["location_code"] == "DT-001"
        assert event["source_system"] == "WEB_APP"
        payload = json.loads(event["payload"])
        assert payload["subtotal"] == pytest.approx(29.98)
        assert payload["tax"] == pytest.approx(2.47)
        assert payload["total"] == pytest.approx(35.45)
        assert {r["processed_flag"] for r in all_rows(staged, stg_online_orders)} == {True}

    def test_load_is_idempotent(self, staged):
        with staged.begin() as conn:
            catalog.etl_load(ctx_for(conn))
            update_rows(conn, stg_online_orders, [{"raw_order_id": "A1", "processed_flag": False}])
            assert catalog.etl_load(ctx_for(conn)) == "Load phase completed: 0 orders loaded"
        assert len(all_rows(staged, bronze_order_events)) == 1

    def test_graph_run_end_to_end(self, staged, clock):
        runner = TaskRunner(staged, catalog.build_task_graph(), services={"tax_rate": 0.0825}, clock=clock)
        result = runner.execute_task("task_parent_etl_orchestrator")
        assert result.ok
        assert [r["event_id"] for r in all_rows(staged, bronze_order_events)] == ["web-A1"]

    def test_malformed_row_does_not_block_later_orders(self, warehouse, clock):
        bad = dict(GOOD_ONLINE_ORDER, items=[{"item_id": 1, "quantity": 1, "price": "abc"}])
        with warehouse.begin() as conn:
            insert_rows(
                conn,
                stg_online_orders,
                [
                    {"raw_order_id": "P1", "raw_payload": json.dumps(bad), "received_at": datetime(2024, 3, 5, 6, 40)},
                    {
                        "raw_order_id": "G1",
                        "raw_payload": json.dumps(GOOD_ONLINE_ORDER),
                        "received_at": datetime(2024, 3, 5, 6, 45),
                    },
                ],
            )
        runner = TaskRunner(warehouse, catalog.build_task_graph(), services={"tax_rate": 0.0825}, clock=clock)
        result = runner.execute_task("task_parent_etl_orchestrator")

        assert result.ok
        assert [r["event_id"] for r in all_rows(warehouse, bronze_order_events)] == ["web-G1"]
        (audit,) = all_rows(warehouse, audit_log)
        assert json.loads(audit["details"]) == {"raw_order_id": "P1", "errors": ["Item 1 has invalid price"]}
