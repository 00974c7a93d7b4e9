"""Warehouse table definitions.

One database holds every layer; table names carry the layer prefix
(``dim_``/``fact_`` for the star schema, ``bronze_``/``silver_``/``gold_`` and ``mv_`` for
the refresh pipeline, ``ops_`` for bookkeeping).
"""

from __future__ import annotations

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    Time,
)
from sqlalchemy.engine import Engine


def _money(precision: int = 10) -> Numeric:
    return Numeric(precision, 2, asdecimal=False)


def _qty() -> Numeric:
    return Numeric(10, 2, asdecimal=False)


_ChangeId = BigInteger().with_variant(Integer, "sqlite")

metadata = MetaData()

# ---------------------------------------------------------------------------
# Dimensions
# ---------------------------------------------------------------------------

dim_category = Table(
    "dim_category",
    metadata,
    Column("category_id", Integer, primary_key=True, autoincrement=False),
    Column("category_name", String(50), nullable=False),
    Column("description", String(200)),
    Column("display_order", Integer),
)

dim_menu_item = Table(
    "dim_menu_item",
    metadata,
    Column("item_id", Integer, primary_key=True, autoincrement=False),
    Column("category_id", Integer, ForeignKey("dim_category.category_id")),
    Column("item_name", String(100), nullable=False),
    Column("description", String(500)),
    Column("base_price", _money(8), nullable=False),
    Column("cost_to_make", _money(8)),
    Column("prep_time_minutes", Integer),
    Column("calories", Integer),
    Column("is_vegetarian", Boolean, default=False),
    Column("is_vegan", Boolean, default=False),
    Column("is_gluten_free", Boolean, default=False),
    Column("is_available", Boolean, default=True),
    Column("created_date", Date),
)

dim_size = Table(
    "dim_size",
    metadata,
    Column("size_id", Integer, primary_key=True, autoincrement=False),
    Column("size_name", String(20), nullable=False),
    Column("size_inches", Integer),
    Column("price_multiplier", Numeric(4, 2, asdecimal=False), default=1.0),
)

dim_customer = Table(
    "dim_customer",
    metadata,
    Column("customer_id", Integer, primary_key=True, autoincrement=False),
    Column("first_name", String(50)),
    Column("last_name", String(50)),
    Column("email", String(100)),
    Column("phone", String(20)),
    Column("address", String(200)),
    Column("city", String(50)),
    Column("state", String(2)),
    Column("zip_code", String(10)),
    Column("registration_date", Date),
    Column("loyalty_points", Integer, default=0),
    Column("preferred_order_type", String(20)),
    Column("birthday", Date),
)

dim_employee = Table(
    "dim_employee",
    metadata,
    Column("employee_id", Integer, primary_key=True, autoincrement=False),
    Column("first_name", String(50)),
    Column("last_name", String(50)),
    Column("role", String(50)),
    Column("hourly_rate", Numeric(6, 2, asdecimal=False)),
    Column("hire_date", Date),
    Column("is_active", Boolean, default=True),
)

dim_location = Table(
    "dim_location",
    metadata,
    Column("location_id", Integer, primary_key=True, autoincrement=False),
    Column("location_code", String(10), unique=True),
    Column("location_name", String(100)),
    Column("address", String(200)),
    Column("city", String(50)),
    Column("state", String(2)),
    Column("zip_code", String(10)),
    Column("phone", String(20)),
    Column("opening_time", Time),
    Column("closing_time", Time),
    Column("seating_capacity", Integer),
    Column("has_delivery", Boolean, default=True),
)

dim_ingredient = Table(
    "dim_ingredient",
    metadata,
    Column("ingredient_id", Integer, primary_key=True, autoincrement=False),
    Column("ingredient_name", String(100), nullable=False),
    Column("unit_of_measure", String(20)),
    Column("cost_per_unit", Numeric(8, 4, asdecimal=False)),
    Column("supplier", String(100)),
    Column("is_perishable", Boolean, default=True),
    Column("shelf_life_days", Integer),
)

# ---------------------------------------------------------------------------
# Facts
# ---------------------------------------------------------------------------

fact_order = Table(
    "fact_order",
    metadata,
    Column("order_id", Integer, primary_key=True, autoincrement=False),
    Column("customer_id", Integer, ForeignKey("dim_customer.customer_id")),
    Column("employee_id", Integer, ForeignKey("dim_employee.employee_id")),
    Column("location_id", Integer, ForeignKey("dim_location.location_id")),
    Column("order_timestamp", DateTime, nullable=False),
    Column("order_type", String(20)),
    Column("subtotal", _money()),
    Column("tax_amount", _money()),
    Column("tip_amount", _money()),
    Column("discount_amount", _money(), default=0),
    Column("total_amount", _money()),
    Column("payment_method", String(20)),
    Column("order_status", String(20)),
    Column("delivery_address", String(200)),
    Column("estimated_ready_time", DateTime),
    Column("actual_ready_time", DateTime),
    Column("delivery_time", DateTime),
    Column("special_instructions", String(500)),
)

fact_order_item = Table(
    "fact_order_item",
    metadata,
    Column("order_item_id", Integer, primary_key=True, autoincrement=False),
    Column("order_id", Integer, ForeignKey("fact_order.order_id")),
    Column("item_id", Integer, ForeignKey("dim_menu_item.item_id")),
    Column("size_id", Integer, ForeignKey("dim_size.size_id")),
    Column("quantity", Integer, nullable=False),
    Column("unit_price", _money(8), nullable=False),
    Column("line_total", _money(), nullable=False),
    Column("special_requests", String(300)),
)

fact_review = Table(
    "fact_review",
    metadata,
    Column("review_id", Integer, primary_key=True, autoincrement=False),
    Column("order_id", Integer, ForeignKey("fact_order.order_id")),
    Column("customer_id", Integer, ForeignKey("dim_customer.customer_id")),
    Column("location_id", Integer, ForeignKey("dim_location.location_id")),
    Column("review_date", DateTime),
    Column("overall_rating", Integer),
    Column("food_rating", Integer),
    Column("service_rating", Integer),
    Column("delivery_rating", Integer),
    Column("review_text", String(2000)),
    Column("review_source", String(50)),
)

fact_inventory = Table(
    "fact_inventory",
    metadata,
    Column("inventory_id", Integer, primary_key=True, autoincrement=False),
    Column("location_id", Integer, ForeignKey("dim_location.location_id")),
    Column("ingredient_id", Integer, ForeignKey("dim_ingredient.ingredient_id")),
    Column("record_date", Date),
    Column("quantity_on_hand", _qty()),
    Column("quantity_used", _qty()),
    Column("quantity_received", _qty()),
    Column("quantity_wasted", _qty()),
    Column("reorder_point", _qty()),
    Column("reorder_quantity", _qty()),
)

fact_daily_sales = Table(
    "fact_daily_sales",
    metadata,
    Column("sales_date", Date, primary_key=True),
    Column(
        "location_id",
        Integer,
        ForeignKey("dim_location.location_id"),
        primary_key=True,
        autoincrement=False,
    ),
    Column("total_orders", Integer),
    Column("total_revenue", _money(12)),
    Column("avg_order_value", _money(8)),
    Column("dine_in_orders", Integer),
    Column("pickup_orders", Integer),
    Column("delivery_orders", Integer),
    Column("total_pizzas_sold", Integer),
    Column("new_customers", Integer),
    Column("weather_condition", String(50)),
    Column("is_weekend", Boolean),
    Column("is_holiday", Boolean),
)

# ---------------------------------------------------------------------------
# Bronze
# ---------------------------------------------------------------------------

bronze_order_events = Table(
    "bronze_order_events",
    metadata,
    Column("event_id", String(50), primary_key=True),
    Column("event_timestamp", DateTime, nullable=False),
    Column("event_type", String(20), nullable=False),
    Column("location_code", String(10)),
    Column("payload", Text, nullable=False),
    Column("source_system", String(20)),
    Column("processed", Boolean, default=False),
)

stg_online_orders = Table(
    "stg_online_orders",
    metadata,
    Column("raw_order_id", String(50), primary_key=True),
    Column("raw_payload", Text, nullable=False),
    Column("source_system", String(20)),
    Column("received_at", DateTime, nullable=False),
    Column("processed_flag", Boolean, default=False),
)

# ---------------------------------------------------------------------------
# Silver / gold (maintained by the refresh engine)
# ---------------------------------------------------------------------------

silver_orders = Table(
    "silver_orders",
    metadata,
    Column("event_id", String(50), primary_key=True),
    Column("event_timestamp", DateTime, nullable=False),
    Column("event_type", String(20)),
    Column("source_system", String(20)),
    Column("order_id", Integer),
    Column("customer_id", Integer),
    Column("location_id", Integer),
    Column("order_type", String(20)),
    Column("subtotal", _money()),
    Column("tax_amount", _money()),
    Column("tip_amount", _money()),
    Column("total_amount", _money()),
    Column("payment_method", String(20)),
    Column("order_items", Text),
    Column("item_count", Integer),
    Column("order_date", Date),
    Column("order_hour", Integer),
    Column("day_of_week", String(3)),
    Column("is_valid_order", Boolean, nullable=False),
)

silver_order_items = Table(
    "silver_order_items",
    metadata,
    Column("event_id", String(50), primary_key=True),
    Column("item_sequence", Integer, primary_key=True, autoincrement=False),
    Column("order_id", Integer),
    Column("order_date", Date),
    Column("location_id", Integer),
    Column("item_id", Integer),
    Column("item_name", String(100)),
    Column("quantity", Integer),
    Column("unit_price", _money(8)),
    Column("line_total", _money()),
)

gold_daily_sales = Table(
    "gold_daily_sales",
    metadata,
    Column("order_date", Date, primary_key=True),
    Column("location_id", Integer, primary_key=True, autoincrement=False),
    Column("location_name", String(100)),
    Column("total_orders", Integer),
    Column("total_revenue", _money(12)),
    Column("avg_order_value", _money(8)),
    Column("delivery_orders", Integer),
    Column("pickup_orders", Integer),
    Column("dine_in_orders", Integer),
    Column("delivery_revenue", _money(12)),
    Column("pickup_revenue", _money(12)),
    Column("dine_in_revenue", _money(12)),
    Column("credit_orders", Integer),
    Column("cash_orders", Integer),
    Column("mobile_orders", Integer),
    Column("web_orders", Integer),
    Column("mobile_app_orders", Integer),
    Column("pos_orders", Integer),
    Column("last_refreshed", DateTime),
)

gold_hourly_sales = Table(
    "gold_hourly_sales",
    metadata,
    Column("order_date", Date, primary_key=True),
    Column("order_hour", Integer, primary_key=True, autoincrement=False),
    Column("location_id", Integer, primary_key=True, autoincrement=False),
    Column("location_name", String(100)),
    Column("day_of_week", String(3)),
    Column("orders", Integer),
    Column("revenue", _money(12)),
    Column("avg_order_value", _money(8)),
    Column("avg_items_per_order", Numeric(8, 2, asdecimal=False)),
    Column("period_type", String(20)),
)

gold_item_performance = Table(
    "gold_item_performance",
    metadata,
    Column("order_date", Date, primary_key=True),
    Column("location_id", Integer, primary_key=True, autoincrement=False),
    Column("item_id", Integer, primary_key=True, autoincrement=False),
    Column("location_name", String(100)),
    Column("item_name", String(100)),
    Column("category_id", Integer),
    Column("category_name", String(50)),
    Column("quantity_sold", Integer),
    Column("item_revenue", _money(12)),
    Column("orders_containing_item", Integer),
    Column("avg_quantity_per_order", Numeric(8, 2, asdecimal=False)),
    Column("estimated_profit", _money(12)),
)

gold_customer_activity = Table(
    "gold_customer_activity",
    metadata,
    Column("customer_id", Integer, primary_key=True, autoincrement=False),
    Column("customer_name", String(101)),
    Column("email", String(100)),
    Column("city", String(50)),
    Column("recent_orders", Integer),
    Column("recent_spend", _money(12)),
    Column("avg_order_value", _money(8)),
    Column("first_order_in_window", DateTime),
    Column("last_order_in_window", DateTime),
    Column("preferred_order_type", String(20)),
    Column("preferred_payment", String(20)),
    Column("preferred_location", Integer),
    Column("activity_level", String(10)),
)

# Aggregates maintained straight off the star schema facts.

mv_hourly_sales = Table(
    "mv_hourly_sales",
    metadata,
    Column("order_date", Date, primary_key=True),
    Column("order_hour", Integer, primary_key=True, autoincrement=False),
    Column("location_id", Integer, primary_key=True, autoincrement=False),
    Column("order_count", Integer),
    Column("total_revenue", _money(12)),
    Column("avg_order_value", _money(8)),
    Column("delivery_count", Integer),
    Column("pickup_count", Integer),
    Column("dine_in_count", Integer),
)

mv_customer_metrics = Table(
    "mv_customer_metrics",
    metadata,
    Column("customer_id", Integer, primary_key=True, autoincrement=False),
    Column("customer_name", String(101)),
    Column("city", String(50)),
    Column("loyalty_points", Integer),
    Column("total_orders", Integer),
    Column("lifetime_value", _money(12)),
    Column("avg_order_value", _money(8)),
    Column("first_order_date", DateTime),
    Column("last_order_date", DateTime),
)

mv_menu_profitability = Table(
    "mv_menu_profitability",
    metadata,
    Column("item_id", Integer, primary_key=True, autoincrement=False),
    Column("item_name", String(100)),
    Column("category_name", String(50)),
    Column("base_price", _money(8)),
    Column("cost_to_make", _money(8)),
    Column("profit_per_item", _money(8)),
    Column("profit_margin_pct", Numeric(6, 1, asdecimal=False)),
    Column("times_ordered", Integer),
    Column("total_quantity_sold", Integer),
    Column("total_revenue", _money(12)),
    Column("total_cost", _money(12)),
    Column("total_profit", _money(12)),
)

# ---------------------------------------------------------------------------
# Task targets
# ---------------------------------------------------------------------------

processed_order_log = Table(
    "processed_order_log",
    metadata,
    Column("log_id", Integer, primary_key=True, autoincrement=True),
    Column("order_id", Integer),
    Column("action_type", String(20)),
    Column("processed_at", DateTime, nullable=False),
    Column("order_total", _money()),
    Column("customer_id", Integer),
    Column("location_id", Integer),
    Column("notification_sent", Boolean, default=False),
)

review_sentiment_analysis = Table(
    "review_sentiment_analysis",
    metadata,
    Column("analysis_id", Integer, primary_key=True, autoincrement=True),
    Column("review_id", Integer),
    Column("review_text", String(2000)),
    Column("sentiment_score", Numeric(6, 4, asdecimal=False)),
    Column("sentiment_label", String(20)),
    Column("topics", Text),
    Column("analyzed_at", DateTime, nullable=False),
    Column("requires_response", Boolean, default=False),
)

inventory_alerts = Table(
    "inventory_alerts",
    metadata,
    Column("alert_id", Integer, primary_key=True, autoincrement=True),
    Column("location_id", Integer),
    Column("ingredient_id", Integer),
    Column("ingredient_name", String(100)),
    Column("current_quantity", _qty()),
    Column("reorder_point", _qty()),
    Column("alert_type", String(20)),
    Column("alert_status", String(20), nullable=False, default="OPEN"),
    Column("created_at", DateTime, nullable=False),
    Column("resolved_at", DateTime),
)

customer_change_history = Table(
    "customer_change_history",
    metadata,
    Column("change_id", Integer, primary_key=True, autoincrement=True),
    Column("customer_id", Integer),
    Column("change_type", String(20)),
    Column("old_values", Text),
    Column("new_values", Text),
    Column("changed_at", DateTime, nullable=False),
)

weekly_performance_report = Table(
    "weekly_performance_report",
    metadata,
    Column("week_starting", Date, primary_key=True),
    Column("location_name", String(100), primary_key=True),
    Column("weekly_orders", Integer),
    Column("weekly_revenue", _money(12)),
    Column("avg_order_value", _money(8)),
    Column("delivery_orders", Integer),
    Column("pickup_orders", Integer),
    Column("dine_in_orders", Integer),
    Column("pizzas_sold", Integer),
    Column("new_customers", Integer),
    Column("prev_week_revenue", _money(12)),
    Column("wow_growth_pct", Numeric(8, 1, asdecimal=False)),
)

promotions = Table(
    "promotions",
    metadata,
    Column("promo_id", Integer, primary_key=True, autoincrement=True),
    Column("promo_code", String(20), nullable=False),
    Column("description", String(200)),
    Column("discount_percent", Integer),
    Column("start_date", Date),
    Column("end_date", Date),
    Column("target_segment", String(50)),
    Column("min_order_value", _money(8)),
    Column("max_uses", Integer),
    Column("current_uses", Integer, default=0),
    Column("is_active", Boolean, default=True),
    Column("created_at", DateTime, nullable=False),
)

audit_log = Table(
    "audit_log",
    metadata,
    Column("audit_id", Integer, primary_key=True, autoincrement=True),
    Column("event_timestamp", DateTime, nullable=False),
    Column("event_type", String(50)),
    Column("table_name", String(100)),
    Column("record_id", Integer),
    Column("user_name", String(100)),
    Column("details", Text),
)

# ---------------------------------------------------------------------------
# Ops
# ---------------------------------------------------------------------------

ops_change_log = Table(
    "ops_change_log",
    metadata,
    Column("change_id", _ChangeId, primary_key=True, autoincrement=True),
    Column("table_name", String(100), nullable=False, index=True),
    Column("action", String(10), nullable=False),
    Column("is_update", Boolean, nullable=False, default=False),
    Column("row_key", String(400), nullable=False),
    Column("row_data", Text, nullable=False),
    Column("changed_at", DateTime, nullable=False),
)

ops_change_offsets = Table(
    "ops_change_offsets",
    metadata,
    Column("consumer", String(150), primary_key=True),
    Column("table_name", String(100), primary_key=True),
    Column("last_change_id", BigInteger, nullable=False, default=0),
    Column("append_only", Boolean, nullable=False, default=False),
    Column("created_at", DateTime, nullable=False),
    Column("comment", String(500)),
)

ops_refresh_state = Table(
    "ops_refresh_state",
    metadata,
    Column("table_name", String(100), primary_key=True),
    Column("target_lag", String(30), nullable=False),
    Column("refresh_mode", String(20), nullable=False),
    Column("scheduling_state", String(20), nullable=False, default="ACTIVE"),
    Column("data_timestamp", DateTime),
    Column("last_refresh_at", DateTime),
    Column("last_refresh_action", String(20)),
    Column("consecutive_failures", Integer, nullable=False, default=0),
    Column("row_count", Integer, nullable=False, default=0),
)

ops_refresh_history = Table(
    "ops_refresh_history",
    metadata,
    Column("refresh_id", String(36), primary_key=True),
    Column("table_name", String(100), nullable=False, index=True),
    Column("refresh_trigger", String(20), nullable=False),
    Column("refresh_action", String(20)),
    Column("state", String(20), nullable=False),
    Column("data_timestamp", DateTime),
    Column("started_at", DateTime, nullable=False),
    Column("finished_at", DateTime),
    Column("changed_source_rows", Integer, nullable=False, default=0),
    Column("rows_inserted", Integer, nullable=False, default=0),
    Column("rows_deleted", Integer, nullable=False, default=0),
    Column("error_message", Text),
)

ops_task_state = Table(
    "ops_task_state",
    metadata,
    Column("task_name", String(100), primary_key=True),
    Column("state", String(20), nullable=False),
    Column("updated_at", DateTime, nullable=False),
)

ops_task_runs = Table(
    "ops_task_runs",
    metadata,
    Column("run_id", String(36), primary_key=True),
    Column("task_name", String(100), nullable=False, index=True),
    Column("root_task_name", String(100), nullable=False),
    Column("graph_run_id", String(36), nullable=False),
    Column("run_trigger", String(20), nullable=False),
    Column("started_at", DateTime, nullable=False),
    Column("finished_at", DateTime),
    Column("status", String(20), nullable=False),
    Column("return_value", Text),
    Column("error_message", Text),
)

ops_dq_checks = Table(
    "ops_dq_checks",
    metadata,
    Column("check_id", String(36), primary_key=True),
    Column("check_time", DateTime, nullable=False),
    Column("check_name", String(100), nullable=False),
    Column("table_name", String(100), nullable=False),
    Column("status", String(20), nullable=False),
    Column("issue_count", Integer, nullable=False),
    Column("details", String(500)),
)

ops_locks = Table(
    "ops_locks",
    metadata,
    Column("lock_name", String(150), primary_key=True),
    Column("owner", String(100), nullable=False),
    Column("acquired_at", DateTime, nullable=False),
    Column("expires_at", DateTime, nullable=False),
)

# Base tables whose writes are change-captured. Dynamic tables are tracked too,
# because the refresh engine writes them through the same writers.
TRACKED_TABLES: dict[str, Table] = {
    t.name: t
    for t in (
        dim_category,
        dim_menu_item,
        dim_size,
        dim_customer,
        dim_employee,
        dim_location,
        dim_ingredient,
        fact_order,
        fact_order_item,
        fact_review,
        fact_inventory,
        fact_daily_sales,
        bronze_order_events,
        stg_online_orders,
        silver_orders,
        silver_order_items,
        gold_daily_sales,
        gold_hourly_sales,
        gold_item_performance,
        gold_customer_activity,
        mv_hourly_sales,
        mv_customer_metrics,
        mv_menu_profitability,
    )
}


def get_table(name: str) -> Table:
    try:
        return metadata.tables[name]
    except KeyError:
        raise KeyError(f"Unknown table: {name}") from None


def key_columns(table: Table) -> tuple[str, ...]:
    return tuple(c.name for c in table.primary_key.columns)


def create_all(engine: Engine) -> None:
    metadata.create_all(engine)
