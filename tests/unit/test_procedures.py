"""
Unit tests for the warehouse procedures: loyalty, order validation, daily
and weekly sales, RFM, anomaly detection, recommendations, data quality,
promotions, email content and audit logging.
"""

import json
from datetime import date, datetime, timedelta

import pandas as pd
import pytest
from sqlalchemy import select

from bella_napoli.cdc.writers import insert_rows
from bella_napoli.db.schema import (
    audit_log,
    dim_customer,
    dim_menu_item,
    fact_daily_sales,
    fact_order,
    fact_order_item,
    fact_review,
    ops_dq_checks,
    promotions,
    weekly_performance_report,
)
from bella_napoli.procedures.anomalies import ANOMALY_COLUMNS, detect_sales_anomalies
from bella_napoli.procedures.audit import log_audit_event
from bella_napoli.procedures.daily_sales import aggregate_daily_sales, process_daily_sales
from bella_napoli.procedures.data_quality import run_data_quality_checks
from bella_napoli.procedures.email_content import generate_email_content
from bella_napoli.procedures.loyalty import loyalty_tier, update_loyalty_points
from bella_napoli.procedures.order_validation import round_cents, validate_order_json
from bella_napoli.procedures.promotions import generate_promotions
from bella_napoli.procedures.recommendations import recommend_items
from bella_napoli.procedures.reports import build_weekly_report, week_starting
from bella_napoli.procedures.rfm import calculate_rfm_segments, quintile_scores, rfm_segment

DAY = date(2024, 3, 4)
NOW = datetime(2024, 3, 4, 18, 0)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def customer(customer_id, first_name="Ada", points=0, **extra):
    return {
        "customer_id": customer_id,
        "first_name": first_name,
        "last_name": "Lovelace",
        "email": f"{first_name.lower()}{customer_id}@example.com",
        "loyalty_points": points,
        **extra,
    }


def order(order_id, customer_id, ts=NOW, total=20.0, location_id=1, order_type="PICKUP"):
    return {
        "order_id": order_id,
        "customer_id": customer_id,
        "location_id": location_id,
        "order_timestamp": ts,
        "order_type": order_type,
        "total_amount": total,
    }


def order_item(order_item_id, order_id, item_id, quantity=1, price=10.0):
    return {
        "order_item_id": order_item_id,
        "order_id": order_id,
        "item_id": item_id,
        "quantity": quantity,
        "unit_price": price,
        "line_total": price * quantity,
    }


def add(engine, table, rows):
    with engine.begin() as conn:
        insert_rows(conn, table, rows)


def all_rows(engine, table):
    with engine.connect() as conn:
        return [dict(r) for r in conn.execute(select(table)).mappings()]


# ---------------------------------------------------------------------------
# Loyalty
# ---------------------------------------------------------------------------

class TestLoyalty:

    @pytest.mark.parametrize(
        "points, tier",
        [(0, "MEMBER"), (99, "MEMBER"), (100, "BRONZE"), (500, "SILVER"), (999, "SILVER"), (1000, "GOLD")],
    )
    def test_tiers(self, points, tier):
        assert loyalty_tier(points) == tier

    def test_one_point_per_whole_dollar(self, engine):
        add(engine, dim_customer, [customer(99, points=480)])
        with engine.begin() as conn:
            result = update_loyalty_points(conn, 99, 25.75)
        assert result["points_before"] == 480
        assert result["points_earned"] == 25
        assert result["points_after"] == 505
        assert result["loyalty_tier"] == "SILVER"
        (row,) = all_rows(engine, dim_customer)
        assert row["loyalty_points"] == 505

    def test_explicit_points(self, engine):
        add(engine, dim_customer, [customer(99)])
        with engine.begin() as conn:
            assert update_loyalty_points(conn, 99, 25.75, points=200)["points_after"] == 200

    def test_unknown_customer(self, engine):
        with engine.begin() as conn:
            with pytest.raises(ValueError):
                update_loyalty_points(conn, 12345, 10.0)


# ---------------------------------------------------------------------------
# Order validation
# ---------------------------------------------------------------------------

class TestOrderValidation:

    def test_valid_order_priced(self):
        doc = {
            "customer_id": 1,
            "order_type": "PICKUP",
            "items": [{"item_id": 1, "quantity": 2, "price": 14.99}],
        }
        result = validate_order_json(json.dumps(doc))
        assert result["is_valid"] is True
        assert result["errors"] == []
        parsed = result["parsed_order"]
        assert parsed["subtotal"] == pytest.approx(29.98)
        assert parsed["tax"] == pytest.approx(2.47)
        assert parsed["total"] == pytest.approx(32.45)

    def test_missing_fields(self):
        result = validate_order_json(json.dumps({"items": [{"item_id": 1, "quantity": 1}]}))
        assert result["is_valid"] is False
        assert "Missing required field: customer_id" in result["errors"]
        assert "Missing required field: order_type" in result["errors"]
        assert result["parsed_order"] is None

    def test_item_errors_numbered_from_one(self):
        doc = {"customer_id": 1, "order_type": "PICKUP", "items": [{"item_id": 1, "quantity": 1}, {"quantity": 0}]}
        errors = validate_order_json(json.dumps(doc))["errors"]
        assert errors == ["Item 2 missing item_id", "Item 2 has invalid quantity"]

    def test_empty_items(self):
        doc = {"customer_id": 1, "order_type": "PICKUP", "items": []}
        assert validate_order_json(json.dumps(doc))["errors"] == ["Order must contain at least one item"]

    def test_order_type_checks(self):
        doc = {"customer_id": 1, "order_type": "DRONE", "items": [{"item_id": 1, "quantity": 1}]}
        (error,) = validate_order_json(json.dumps(doc))["errors"]
        assert error == "Invalid order_type. Must be: DELIVERY, PICKUP, DINE_IN"

        doc["order_type"] = "DELIVERY"
        assert validate_order_json(json.dumps(doc))["errors"] == ["Delivery orders require delivery_address"]

    @pytest.mark.parametrize("price", ["abc", -1, True, [14.99]])
    def test_bad_price_reported(self, price):
        doc = {"customer_id": 1, "order_type": "PICKUP", "items": [{"item_id": 1, "quantity": 1, "price": price}]}
        result = validate_order_json(json.dumps(doc))
        assert result["is_valid"] is False
        assert result["errors"] == ["Item 1 has invalid price"]

    def test_bad_tip_reported(self):
        doc = {"customer_id": 1, "order_type": "PICKUP", "tip": "lots", "items": [{"item_id": 1, "quantity": 1}]}
        assert validate_order_json(json.dumps(doc))["errors"] == ["Invalid tip"]

    def test_missing_price_counts_as_zero(self):
        doc = {"customer_id": 1, "order_type": "PICKUP", "items": [{"item_id": 1, "quantity": 3}]}
        parsed = validate_order_json(json.dumps(doc))["parsed_order"]
        assert parsed["total"] == 0.0

    def test_not_json(self):
        result = validate_order_json("{oops")
        assert result["is_valid"] is False
        assert result["errors"][0].startswith("JSON parsing error")

    @pytest.mark.parametrize("value, expected", [(2.675, 2.68), (1.005, 1.01), (2.0, 2.0), (-1.005, -1.01)])
    def test_round_cents_half_up(self, value, expected):
        assert round_cents(value) == expected


# ---------------------------------------------------------------------------
# Daily and weekly sales
# ---------------------------------------------------------------------------

class TestDailySales:

    def test_process_daily_sales_covers_every_location(self, seeded):
        add(seeded, fact_order, [order(1, 1, total=30.0), order(2, 2, total=10.0)])
        with seeded.begin() as conn:
            assert process_daily_sales(conn, DAY) == "Processed 3 locations for 2024-03-04"

        by_location = {r["location_id"]: r for r in all_rows(seeded, fact_daily_sales)}
        assert by_location[1]["total_orders"] == 2
        assert by_location[1]["avg_order_value"] == pytest.approx(20.0)
        assert by_location[2]["total_orders"] == 0
        assert by_location[2]["avg_order_value"] == 0.0

    def test_aggregate_counts_types_pizzas_and_new_customers(self, engine):
        add(engine, dim_menu_item, [
            {"item_id": 1, "category_id": 1, "item_name": "Margherita", "base_price": 14.99},
            {"item_id": 8, "category_id": 2, "item_name": "Garlic Knots", "base_price": 6.99},
        ])
        add(engine, dim_customer, [customer(1, registration_date=DAY), customer(2, registration_date=DAY - timedelta(days=9))])
        add(engine, fact_order, [
            order(1, 1, total=36.97),
            order(2, 2, total=14.99, order_type="DELIVERY"),
            order(3, 2, ts=NOW + timedelta(days=1), total=50.0),
        ])
        add(engine, fact_order_item, [
            order_item(1, 1, 1, quantity=2, price=14.99),
            order_item(2, 1, 8, quantity=1, price=6.99),
            order_item(3, 2, 1, quantity=1, price=14.99),
        ])
        with engine.begin() as conn:
            assert aggregate_daily_sales(conn, DAY) == 1

        (row,) = all_rows(engine, fact_daily_sales)
        assert row["total_orders"] == 2
        assert row["total_revenue"] == pytest.approx(51.96)
        assert row["pickup_orders"] == 1
        assert row["delivery_orders"] == 1
        assert row["total_pizzas_sold"] == 3
        assert row["new_customers"] == 1
        assert row["is_weekend"] is False

    def test_aggregate_is_a_merge(self, engine):
        add(engine, fact_order, [order(1, 1, total=10.0)])
        with engine.begin() as conn:
            aggregate_daily_sales(conn, DAY)
        add(engine, fact_order, [order(2, 1, total=30.0)])
        with engine.begin() as conn:
            aggregate_daily_sales(conn, DAY)

        (row,) = all_rows(engine, fact_daily_sales)
        assert row["total_revenue"] == pytest.approx(40.0)


class TestWeeklyReport:

    def test_week_starts_on_monday(self):
        assert week_starting(date(2024, 3, 10)) == date(2024, 3, 4)
        assert week_starting(date(2024, 3, 4)) == date(2024, 3, 4)

    def test_week_over_week_growth(self, seeded):
        add(seeded, fact_daily_sales, [
            {"sales_date": date(2024, 2, 26), "location_id": 1, "total_orders": 4, "total_revenue": 60.0},
            {"sales_date": date(2024, 2, 28), "location_id": 1, "total_orders": 3, "total_revenue": 40.0},
            {"sales_date": date(2024, 3, 4), "location_id": 1, "total_orders": 9, "total_revenue": 150.0},
        ])
        with seeded.begin() as conn:
            assert build_weekly_report(conn, date(2024, 3, 5)) == 2

        by_week = {r["week_starting"]: r for r in all_rows(seeded, weekly_performance_report)}
        first, second = by_week[date(2024, 2, 26)], by_week[date(2024, 3, 4)]
        assert first["location_name"] == "Bella Napoli Downtown"
        assert first["weekly_orders"] == 7
        assert first["wow_growth_pct"] is None
        assert second["prev_week_revenue"] == pytest.approx(100.0)
        assert second["wow_growth_pct"] == pytest.approx(50.0)

    def test_empty_history(self, seeded):
        with seeded.begin() as conn:
            assert build_weekly_report(conn, date(2024, 3, 5)) == 0


# ---------------------------------------------------------------------------
# RFM
# ---------------------------------------------------------------------------

class TestRfm:

    def test_quintiles_of_ten(self):
        scores = quintile_scores(pd.Series(range(10)))
        assert scores.tolist() == [1, 1, 2, 2, 3, 3, 4, 4, 5, 5]

    def test_reverse_gives_low_values_high_scores(self):
        scores = quintile_scores(pd.Series(range(10)), reverse=True)
        assert scores.tolist() == [5, 5, 4, 4, 3, 3, 2, 2, 1, 1]

    def test_fewer_than_five_values(self):
        assert quintile_scores(pd.Series([10, 20, 30])).tolist() == [2, 4, 5]

    @pytest.mark.parametrize(
        "r, f, m, segment",
        [
            (5, 5, 5, "Champions"),
            (3, 3, 3, "Loyal Customers"),
            (5, 1, 1, "New Customers"),
            (1, 4, 2, "At Risk"),
            (2, 2, 4, "Cant Lose Them"),
            (1, 1, 1, "Lost"),
            (3, 2, 1, "Potential Loyalists"),
            (3, 1, 5, "Need Attention"),
        ],
    )
    def test_segments(self, r, f, m, segment):
        assert rfm_segment(r, f, m) == segment

    def test_segments_from_orders(self, engine):
        add(engine, dim_customer, [customer(cid, first_name=f"C{cid}") for cid in range(1, 6)])
        add(engine, fact_order, [
            order(1, 1, ts=NOW - timedelta(days=1), total=100.0),
            order(2, 1, ts=NOW - timedelta(days=3), total=100.0),
            order(3, 1, ts=NOW - timedelta(days=5), total=100.0),
            order(4, 2, ts=NOW - timedelta(days=10), total=80.0),
            order(5, 2, ts=NOW - timedelta(days=12), total=80.0),
            order(6, 3, ts=NOW - timedelta(days=30), total=40.0),
            order(7, 4, ts=NOW - timedelta(days=60), total=20.0),
        ])
        with engine.connect() as conn:
            df = calculate_rfm_segments(conn, now=NOW).set_index("customer_id")

        assert df.loc[1, "recency_days"] == 1
        assert df.loc[1, "frequency"] == 3
        assert df.loc[1, "rfm_segment"] == "Champions"
        assert df.loc[5, "recency_days"] == 999
        assert df.loc[5, "frequency"] == 0
        assert df.loc[5, "rfm_segment"] == "Lost"
        assert df.loc[5, "customer_name"] == "C5 Lovelace"


# ---------------------------------------------------------------------------
# Anomalies
# ---------------------------------------------------------------------------

class TestAnomalies:

    def test_spike_flagged_high(self, seeded):
        mondays = [DAY - timedelta(weeks=w) for w in range(7)]
        revenue = [1000.0] + [100.0] * 6
        add(seeded, fact_daily_sales, [
            {"sales_date": d, "location_id": 1, "total_revenue": r} for d, r in zip(mondays, revenue)
        ])
        with seeded.connect() as conn:
            df = detect_sales_anomalies(conn, today=DAY + timedelta(days=1))

        assert len(df) == 1
        row = df.iloc[0]
        assert row["anomaly_date"] == DAY
        assert row["anomaly_type"] == "HIGH"
        assert row["location_name"] == "Bella Napoli Downtown"
        assert row["z_score"] > 2.0

    def test_too_few_points_ignored(self, seeded):
        add(seeded, fact_daily_sales, [
            {"sales_date": DAY - timedelta(weeks=w), "location_id": 1, "total_revenue": r}
            for w, r in enumerate([1000.0, 100.0, 100.0])
        ])
        with seeded.connect() as conn:
            df = detect_sales_anomalies(conn, today=DAY)
        assert df.empty
        assert list(df.columns) == ANOMALY_COLUMNS


# ---------------------------------------------------------------------------
# Recommendations
# ---------------------------------------------------------------------------

class TestRecommendations:

    def test_falls_back_to_pizzas(self, seeded):
        with seeded.connect() as conn:
            df = recommend_items(conn, customer_id=1)
        assert df["item_id"].tolist() == [1, 2, 3, 4, 5]
        assert set(df["recommendation_score"]) == {0.5}
        assert set(df["reason"]) == {"Popular item"}
        assert set(df["category_name"]) == {"Pizza"}

    def test_items_from_similar_customers(self, seeded):
        add(seeded, fact_order, [order(1, 1), order(2, 2), order(3, 3), order(4, 2)])
        add(seeded, fact_order_item, [
            order_item(1, 1, 1),
            order_item(2, 2, 1),
            order_item(3, 2, 2),
            order_item(4, 3, 1),
            order_item(5, 3, 3),
            order_item(6, 4, 2),
        ])
        with seeded.connect() as conn:
            df = recommend_items(conn, customer_id=1, n=5)

        assert df["item_id"].tolist() == [2, 3]
        assert df.loc[0, "recommendation_score"] == pytest.approx(0.94)
        assert df.loc[1, "recommendation_score"] == pytest.approx(0.74)
        assert df.loc[0, "reason"] == "Recommended based on your taste"

    def test_high_rating_reason(self, seeded):
        add(seeded, fact_order, [order(1, 1), order(2, 2)])
        add(seeded, fact_order_item, [order_item(1, 1, 1), order_item(2, 2, 1), order_item(3, 2, 9)])
        add(seeded, fact_review, [{"review_id": 1, "order_id": 2, "overall_rating": 5}])
        with seeded.connect() as conn:
            df = recommend_items(conn, customer_id=1)
        assert df.loc[0, "item_name"] == "Bruschetta"
        assert df.loc[0, "reason"] == "Highly rated (5.0 stars)"


# ---------------------------------------------------------------------------
# Data quality
# ---------------------------------------------------------------------------

class TestDataQuality:

    def test_clean_warehouse_passes(self, seeded):
        with seeded.begin() as conn:
            results = run_data_quality_checks(conn, persist=False)
        assert {r["status"] for r in results} == {"PASS"}
        assert [r["check_name"] for r in results] == [
            "Duplicate Emails",
            "Invalid Ratings",
            "Negative Totals",
            "Null Customer ID",
            "Orphaned Order Items",
        ]
        assert all_rows(seeded, ops_dq_checks) == []

    def test_issues_ordered_warn_pass_fail(self, engine):
        add(engine, dim_customer, [
            customer(1, email="same@example.com"),
            customer(2, email="same@example.com"),
            customer(3, email=None),
            customer(4, email=None),
        ])
        add(engine, fact_order, [order(1, None, total=-5.0)])
        add(engine, fact_order_item, [order_item(1, 999, 1)])
        with engine.begin() as conn:
            results = run_data_quality_checks(conn)

        assert [(r["check_name"], r["status"], r["issue_count"]) for r in results] == [
            ("Duplicate Emails", "WARN", 1),
            ("Invalid Ratings", "PASS", 0),
            ("Negative Totals", "FAIL", 1),
            ("Null Customer ID", "FAIL", 1),
            ("Orphaned Order Items", "FAIL", 1),
        ]
        assert len(all_rows(engine, ops_dq_checks)) == 5


# ---------------------------------------------------------------------------
# Promotions, email and audit
# ---------------------------------------------------------------------------

class TestPromotions:

    def test_three_codes_for_the_window(self, engine):
        with engine.begin() as conn:
            result = generate_promotions(conn, date(2024, 3, 4), date(2024, 3, 31))
        assert result == "Created 3 promotions for 2024-03-04 to 2024-03-31"

        by_code = {r["promo_code"]: r for r in all_rows(engine, promotions)}
        assert set(by_code) == {"COMEBACK0304", "BDAY0304", "VIP0304"}
        assert by_code["COMEBACK0304"]["discount_percent"] == 15
        assert by_code["BDAY0304"]["discount_percent"] == 100
        assert by_code["VIP0304"]["discount_percent"] == 20
        assert by_code["VIP0304"]["end_date"] == date(2024, 3, 31)


class TestEmailContent:

    def test_winback(self, engine):
        add(engine, dim_customer, [customer(99, points=120)])
        with engine.connect() as conn:
            email = generate_email_content(conn, 99, "WINBACK")
        assert email["success"] is True
        assert email["subject"] == "We Miss You, Ada! 😢🍕"
        assert email["recipient"] == "ada99@example.com"
        assert "Your 120 loyalty points are waiting for you!" in email["body"]

    def test_loyalty_update_counts_down_to_silver(self, engine):
        add(engine, dim_customer, [customer(99, points=450)])
        add(engine, fact_order, [order(1, 99, total=12.5), order(2, 99, total=7.5)])
        with engine.connect() as conn:
            email = generate_email_content(conn, 99, "LOYALTY_UPDATE")
        assert "Just 50 more points until Silver status!" in email["body"]
        assert "You've ordered 2 times" in email["body"]
        assert email["customer_data"]["lifetime_value"] == pytest.approx(20.0)

    def test_unknown_type_uses_welcome(self, engine):
        add(engine, dim_customer, [customer(99)])
        with engine.connect() as conn:
            email = generate_email_content(conn, 99, "NEWSLETTER")
        assert email["subject"] == "Welcome to Bella Napoli, Ada! 🍕"
        assert email["email_type"] == "NEWSLETTER"

    def test_unknown_customer(self, engine):
        with engine.connect() as conn:
            assert generate_email_content(conn, 1, "WELCOME") == {
                "success": False,
                "error": "Customer not found",
            }


class TestAudit:

    def test_event_written(self, engine):
        with engine.begin() as conn:
            result = log_audit_event(conn, "PRICE_CHANGE", "dim_menu_item", 1, {"old": 14.99, "new": 15.49}, "ops")
        assert result == "Audit event logged successfully"

        (row,) = all_rows(engine, audit_log)
        assert row["event_type"] == "PRICE_CHANGE"
        assert row["record_id"] == 1
        assert row["user_name"] == "ops"
        assert json.loads(row["details"]) == {"old": 14.99, "new": 15.49}
