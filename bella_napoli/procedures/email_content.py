from __future__ import annotations

from typing import Any

from sqlalchemy import distinct, func, select
from sqlalchemy.engine import Connection

from bella_napoli.db.schema import dim_customer, fact_order

EMAIL_TYPES = ("WELCOME", "ORDER_CONFIRMATION", "LOYALTY_UPDATE", "WINBACK")
SIGNATURE = "The Bella Napoli Team"


def _customer_summary(conn: Connection, customer_id: int) -> dict[str, Any] | None:
    row = conn.execute(
        select(
            dim_customer.c.first_name,
            dim_customer.c.last_name,
            dim_customer.c.email,
            dim_customer.c.loyalty_points,
            func.count(distinct(fact_order.c.order_id)).label("total_orders"),
            func.coalesce(func.sum(fact_order.c.total_amount), 0).label("lifetime_value"),
        )
        .select_from(
            dim_customer.outerjoin(
                fact_order, dim_customer.c.customer_id == fact_order.c.customer_id
            )
        )
        .where(dim_customer.c.customer_id == customer_id)
        .group_by(
            dim_customer.c.customer_id,
            dim_customer.c.first_name,
            dim_customer.c.last_name,
            dim_customer.c.email,
            dim_customer.c.loyalty_points,
        )
    ).mappings().first()
    if row is None:
        return None
    return {
        "first_name": row["first_name"],
        "last_name": row["last_name"],
        "email": row["email"],
        "loyalty_points": int(row["loyalty_points"] or 0),
        "total_orders": int(row["total_orders"] or 0),
        "lifetime_value": round(float(row["lifetime_value"] or 0), 2),
    }


def _templates(c: dict[str, Any]) -> dict[str, tuple[str, str]]:
    name = c["first_name"]
    points = c["loyalty_points"]
    if points >= 500:
        silver_line = "🎊 Congratulations! You're a Silver member!"
    else:
        silver_line = f"Just {500 - points} more points until Silver status!"
    return {
        "WELCOME": (
            f"Welcome to Bella Napoli, {name}! 🍕",
            f"Dear {name},\n\n"
            "Welcome to the Bella Napoli family! We're thrilled to have you.\n\n"
            "As a welcome gift, enjoy 15% off your first order with code: WELCOME15\n\n"
            "Start earning loyalty points with every purchase - "
            f"you already have {points} points!\n\n"
            f"Buon appetito!\n{SIGNATURE}",
        ),
        "ORDER_CONFIRMATION": (
            "Your Bella Napoli Order is Confirmed! 🎉",
            f"Hi {name},\n\n"
            "Great news - we've received your order and our kitchen is firing up the ovens!\n\n"
            f"You now have {points} loyalty points. Keep ordering to unlock rewards!\n\n"
            "Track your order in the Bella Napoli app.\n\n"
            f"Grazie mille!\n{SIGNATURE}",
        ),
        "LOYALTY_UPDATE": (
            f"{name}, You've Earned More Points! ⭐",
            f"Hey {name}!\n\n"
            f"Your loyalty is paying off! You now have {points} points.\n\n"
            f"{silver_line}\n\n"
            f"You've ordered {c['total_orders']} times and we appreciate every single one.\n\n"
            f"Keep those points coming!\n{SIGNATURE}",
        ),
        "WINBACK": (
            f"We Miss You, {name}! 😢🍕",
            f"Dear {name},\n\n"
            "It's been a while since your last slice! We miss seeing you.\n\n"
            "Here's 20% off your next order to welcome you back: MISSYOU20\n\n"
            f"Your {points} loyalty points are waiting for you!\n\n"
            "Come back soon - your favorite pizza is calling!\n\n"
            f"Warmly,\n{SIGNATURE}",
        ),
    }


def generate_email_content(conn: Connection, customer_id: int, email_type: str) -> dict[str, Any]:
    customer = _customer_summary(conn, customer_id)
    if customer is None:
        return {"success": False, "error": "Customer not found"}

    templates = _templates(customer)
    subject, body = templates.get(email_type, templates["WELCOME"])
    return {
        "success": True,
        "email_type": email_type,
        "recipient": customer["email"],
        "subject": subject,
        "body": body,
        "customer_data": customer,
    }
