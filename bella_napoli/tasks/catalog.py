"""The warehouse's scheduled tasks."""

from __future__ import annotations

import json
from datetime import UTC, date, timedelta
from zoneinfo import ZoneInfo

from sqlalchemy import and_, false, func, insert, or_, select, update
from sqlalchemy.engine import Connection

from bella_napoli.cdc.changes import DELETE, INSERT, purge_consumed_changes
from bella_napoli.cdc.streams import consume_stream, stream_has_data
from bella_napoli.cdc.writers import insert_rows, update_rows
from bella_napoli.db.schema import (
    bronze_order_events,
    customer_change_history,
    dim_ingredient,
    inventory_alerts,
    processed_order_log,
    review_sentiment_analysis,
    stg_online_orders,
)
from bella_napoli.pipeline.streams import (
    STREAM_CUSTOMER_CHANGES,
    STREAM_INVENTORY_CHANGES,
    STREAM_NEW_ORDERS,
    STREAM_NEW_REVIEWS,
)
from bella_napoli.procedures.audit import log_audit_event
from bella_napoli.procedures.daily_sales import aggregate_daily_sales
from bella_napoli.procedures.order_validation import DEFAULT_TAX_RATE, validate_order_json
from bella_napoli.procedures.reports import build_weekly_report
from bella_napoli.tasks.definitions import TaskContext, TaskDefinition, task
from bella_napoli.tasks.graph import TaskGraph
from bella_napoli.tasks.sentiment import LexiconScorer, extract_topics, sentiment_label

DEFAULT_TIMEZONE = "America/Chicago"
PROCESSED_LOG_RETENTION_DAYS = 30
RESOLVED_ALERT_RETENTION_DAYS = 90
CHANGE_LOG_RETENTION_DAYS = 14

CUSTOMER_AUDIT_FIELDS = ("first_name", "last_name", "email", "phone", "address", "loyalty_points")


def local_today(ctx: TaskContext) -> date:
    tz = ZoneInfo(ctx.services.get("timezone") or DEFAULT_TIMEZONE)
    return ctx.scheduled_at.replace(tzinfo=UTC).astimezone(tz).date()


# ---------------------------------------------------------------------------
# Stream consumers
# ---------------------------------------------------------------------------


def process_new_orders(ctx: TaskContext) -> str:
    rows = consume_stream(ctx.conn, STREAM_NEW_ORDERS)
    if rows:
        ctx.conn.execute(
            insert(processed_order_log),
            [
                {
                    "order_id": r.get("order_id"),
                    "action_type": r.action,
                    "processed_at": ctx.scheduled_at,
                    "order_total": r.get("total_amount"),
                    "customer_id": r.get("customer_id"),
                    "location_id": r.get("location_id"),
                    "notification_sent": False,
                }
                for r in rows
            ],
        )
    return f"Processed {len(rows)} new orders"


def analyze_review_sentiment(ctx: TaskContext) -> str:
    scorer = ctx.services.get("scorer") or LexiconScorer()
    rows = [r for r in consume_stream(ctx.conn, STREAM_NEW_REVIEWS) if r.get("review_text")]
    out = []
    for r in rows:
        text = r["review_text"]
        score = float(scorer.score(text))
        label = sentiment_label(score)
        out.append(
            {
                "review_id": r.get("review_id"),
                "review_text": text,
                "sentiment_score": score,
                "sentiment_label": label,
                "topics": json.dumps(extract_topics(text)),
                "analyzed_at": ctx.scheduled_at,
                "requires_response": label == "NEGATIVE",
            }
        )
    if out:
        ctx.conn.execute(insert(review_sentiment_analysis), out)
    return f"Analyzed {len(out)} reviews"


def alert_type(quantity_on_hand: float, reorder_point: float) -> str:
    if quantity_on_hand == 0:
        return "OUT_OF_STOCK"
    if quantity_on_hand <= reorder_point * 0.5:
        return "CRITICAL"
    return "LOW_STOCK"


def check_inventory_alerts(ctx: TaskContext) -> str:
    conn = ctx.conn
    rows = [r for r in consume_stream(conn, STREAM_INVENTORY_CHANGES) if r.action == INSERT]
    names = dict(
        conn.execute(select(dim_ingredient.c.ingredient_id, dim_ingredient.c.ingredient_name)).all()
    )
    open_alerts = {
        (loc, ing)
        for loc, ing in conn.execute(
            select(inventory_alerts.c.location_id, inventory_alerts.c.ingredient_id).where(
                inventory_alerts.c.alert_status == "OPEN"
            )
        ).all()
    }

    created = resolved = 0
    for r in rows:
        qty, reorder = r.get("quantity_on_hand"), r.get("reorder_point")
        key = (r.get("location_id"), r.get("ingredient_id"))
        if qty is None or reorder is None or key[1] not in names:
            continue
        if qty > reorder:
            # restocked above the reorder point
            if key in open_alerts:
                conn.execute(
                    update(inventory_alerts)
                    .where(inventory_alerts.c.location_id == key[0])
                    .where(inventory_alerts.c.ingredient_id == key[1])
                    .where(inventory_alerts.c.alert_status == "OPEN")
                    .values(alert_status="RESOLVED", resolved_at=ctx.scheduled_at)
                )
                open_alerts.discard(key)
                resolved += 1
            continue
        if key in open_alerts:
            continue
        conn.execute(
            insert(inventory_alerts).values(
                location_id=key[0],
                ingredient_id=key[1],
                ingredient_name=names[key[1]],
                current_quantity=qty,
                reorder_point=reorder,
                alert_type=alert_type(float(qty), float(reorder)),
                alert_status="OPEN",
                created_at=ctx.scheduled_at,
            )
        )
        open_alerts.add(key)
        created += 1
    return f"Created {created} inventory alerts, resolved {resolved}"


def _customer_values(data: dict | None) -> str | None:
    if data is None:
        return None
    return json.dumps({k: data.get(k) for k in CUSTOMER_AUDIT_FIELDS})


def log_customer_changes(ctx: TaskContext) -> str:
    rows = consume_stream(ctx.conn, STREAM_CUSTOMER_CHANGES)
    by_key: dict[str, dict] = {}
    for r in rows:
        entry = by_key.setdefault(r.row_id, {"old": None, "new": None, "is_update": False})
        entry["is_update"] = entry["is_update"] or r.is_update
        if r.action == DELETE:
            entry["old"] = r.data
        else:
            entry["new"] = r.data

    out = []
    for entry in by_key.values():
        if entry["is_update"]:
            change_type = "UPDATE"
        elif entry["new"] is not None:
            change_type = INSERT
        else:
            change_type = DELETE
        image = entry["new"] or entry["old"]
        out.append(
            {
                "customer_id": image.get("customer_id"),
                "change_type": change_type,
                "old_values": _customer_values(entry["old"]),
                "new_values": _customer_values(entry["new"]),
                "changed_at": ctx.scheduled_at,
            }
        )
    if out:
        ctx.conn.execute(insert(customer_change_history), out)
    return f"Logged {len(out)} customer changes"


# ---------------------------------------------------------------------------
# Calendar jobs
# ---------------------------------------------------------------------------


def daily_sales_aggregation(ctx: TaskContext) -> str:
    yesterday = local_today(ctx) - timedelta(days=1)
    n = aggregate_daily_sales(ctx.conn, yesterday)
    return f"Aggregated {n} locations for {yesterday.isoformat()}"


def weekly_report(ctx: TaskContext) -> str:
    n = build_weekly_report(ctx.conn, local_today(ctx))
    return f"Weekly report rebuilt with {n} rows"


def cleanup(ctx: TaskContext) -> str:
    conn = ctx.conn
    today = ctx.scheduled_at.replace(hour=0, minute=0, second=0, microsecond=0)
    logs = conn.execute(
        processed_order_log.delete().where(
            processed_order_log.c.processed_at
            < today - timedelta(days=PROCESSED_LOG_RETENTION_DAYS)
        )
    ).rowcount
    alerts = conn.execute(
        inventory_alerts.delete().where(
            and_(
                inventory_alerts.c.alert_status == "RESOLVED",
                inventory_alerts.c.resolved_at
                < today - timedelta(days=RESOLVED_ALERT_RETENTION_DAYS),
            )
        )
    ).rowcount
    changes = purge_consumed_changes(
        conn, stale_before=today - timedelta(days=CHANGE_LOG_RETENTION_DAYS)
    )
    return (
        f"Removed {int(logs or 0)} processed order logs, {int(alerts or 0)} resolved alerts, "
        f"{changes} consumed change log entries"
    )


# ---------------------------------------------------------------------------
# Online order ETL graph
# ---------------------------------------------------------------------------


def _pending_online_orders(conn: Connection) -> list[dict]:
    stmt = (
        select(stg_online_orders)
        .where(
            or_(
                stg_online_orders.c.processed_flag.is_(None),
                stg_online_orders.c.processed_flag == false(),
            )
        )
        .order_by(stg_online_orders.c.received_at, stg_online_orders.c.raw_order_id)
    )
    return [dict(r) for r in conn.execute(stmt).mappings()]


def etl_orchestrator(ctx: TaskContext) -> str:
    return f"ETL Pipeline Started at {ctx.scheduled_at.isoformat(sep=' ')}"


def etl_extract(ctx: TaskContext) -> str:
    pending = len(_pending_online_orders(ctx.conn))
    return f"Extract phase completed: {pending} staged online orders"


def etl_transform(ctx: TaskContext) -> str:
    tax_rate = float(ctx.services.get("tax_rate") or DEFAULT_TAX_RATE)
    valid = rejected = 0
    for staged in _pending_online_orders(ctx.conn):
        result = validate_order_json(staged["raw_payload"], tax_rate=tax_rate)
        if result["is_valid"]:
            valid += 1
            continue
        update_rows(
            ctx.conn,
            stg_online_orders,
            [{"raw_order_id": staged["raw_order_id"], "processed_flag": True}],
        )
        log_audit_event(
            ctx.conn,
            "REJECTED_ONLINE_ORDER",
            "stg_online_orders",
            None,
            {"raw_order_id": staged["raw_order_id"], "errors": result["errors"]},
        )
        rejected += 1
    return f"Transform phase completed: {valid} valid, {rejected} rejected"


def etl_load(ctx: TaskContext) -> str:
    conn = ctx.conn
    tax_rate = float(ctx.services.get("tax_rate") or DEFAULT_TAX_RATE)
    loaded = 0
    for staged in _pending_online_orders(conn):
        result = validate_order_json(staged["raw_payload"], tax_rate=tax_rate)
        if not result["is_valid"]:
            continue
        order = result["parsed_order"]
        event_id = f"web-{staged['raw_order_id']}"
        exists = conn.execute(
            select(func.count())
            .select_from(bronze_order_events)
            .where(bronze_order_events.c.event_id == event_id)
        ).scalar()
        if not exists:
            tip = float(order.get("tip") or 0)
            payload = {
                "order_id": order.get("order_id"),
                "customer_id": order.get("customer_id"),
                "order_type": order.get("order_type"),
                "subtotal": order["subtotal"],
                "tax": order["tax"],
                "tip": tip,
                "total": round(order["total"] + tip, 2),
                "payment_method": order.get("payment_method"),
                "items": order.get("items"),
            }
            insert_rows(
                conn,
                bronze_order_events,
                [
                    {
                        "event_id": event_id,
                        "event_timestamp": staged["received_at"],
                        "event_type": "ORDER_PLACED",
                        "location_code": order.get("location_code"),
                        "payload": json.dumps(payload),
                        "source_system": staged.get("source_system") or "WEB_APP",
                        "processed": False,
                    }
                ],
            )
            loaded += 1
        update_rows(
            conn,
            stg_online_orders,
            [{"raw_order_id": staged["raw_order_id"], "processed_flag": True}],
        )
    return f"Load phase completed: {loaded} orders loaded"


# ---------------------------------------------------------------------------
# Definitions
# ---------------------------------------------------------------------------


def _has_data(stream):
    def _when(conn: Connection) -> bool:
        return stream_has_data(conn, stream)

    return _when


TASKS: list[TaskDefinition] = [
    task(
        "task_process_new_orders",
        process_new_orders,
        schedule="1 MINUTE",
        when=_has_data(STREAM_NEW_ORDERS),
        comment="Process new orders from stream every minute",
    ),
    task(
        "task_analyze_review_sentiment",
        analyze_review_sentiment,
        schedule="5 MINUTES",
        when=_has_data(STREAM_NEW_REVIEWS),
        comment="Score the sentiment of new reviews",
    ),
    task(
        "task_check_inventory_alerts",
        check_inventory_alerts,
        schedule="15 MINUTES",
        when=_has_data(STREAM_INVENTORY_CHANGES),
        comment="Check inventory levels and create alerts for low stock",
    ),
    task(
        "task_log_customer_changes",
        log_customer_changes,
        schedule="10 MINUTES",
        when=_has_data(STREAM_CUSTOMER_CHANGES),
        comment="Track all customer profile changes for audit",
    ),
    task(
        "task_daily_sales_aggregation",
        daily_sales_aggregation,
        schedule="USING CRON 0 1 * * * America/Chicago",
        comment="Aggregate daily sales metrics at end of day",
    ),
    task(
        "task_weekly_report",
        weekly_report,
        schedule="USING CRON 0 6 * * MON America/Chicago",
        comment="Generate weekly performance summary",
    ),
    task(
        "task_parent_etl_orchestrator",
        etl_orchestrator,
        schedule="30 MINUTES",
        comment="Parent task to orchestrate the online order ETL",
    ),
    task(
        "task_child_extract",
        etl_extract,
        after=["task_parent_etl_orchestrator"],
        comment="Extract phase",
    ),
    task(
        "task_child_transform",
        etl_transform,
        after=["task_child_extract"],
        comment="Transform phase",
    ),
    task(
        "task_child_load",
        etl_load,
        after=["task_child_transform"],
        comment="Load phase",
    ),
    task(
        "task_cleanup",
        cleanup,
        schedule="USING CRON 0 2 * * * America/Chicago",
        comment="Daily data cleanup",
    ),
]


def build_task_graph() -> TaskGraph:
    return TaskGraph(TASKS)
