from __future__ import annotations

from datetime import date

from sqlalchemy import insert
from sqlalchemy.engine import Connection

from bella_napoli.db.schema import promotions
from bella_napoli.utils.time import naive_utc_now


def generate_promotions(
    conn: Connection, start_date: date, end_date: date, discount_percent: int = 15
) -> str:
    """Comeback, birthday and VIP codes for the given window."""
    suffix = start_date.strftime("%m%d")
    rows = [
        {
            "promo_code": f"COMEBACK{suffix}",
            "description": f"We miss you! {discount_percent}% off your next order",
            "discount_percent": discount_percent,
            "target_segment": "LAPSED_CUSTOMERS",
            "min_order_value": 15.00,
            "max_uses": 1000,
        },
        {
            "promo_code": f"BDAY{suffix}",
            "description": "Happy Birthday! Free dessert with any order",
            # the dessert itself is free
            "discount_percent": 100,
            "target_segment": "BIRTHDAY_MONTH",
            "min_order_value": 20.00,
            "max_uses": 500,
        },
        {
            "promo_code": f"VIP{suffix}",
            "description": f"VIP Exclusive: {discount_percent + 5}% off",
            "discount_percent": discount_percent + 5,
            "target_segment": "VIP_CUSTOMERS",
            "min_order_value": 30.00,
            "max_uses": 200,
        },
    ]
    created_at = naive_utc_now()
    conn.execute(
        insert(promotions),
        [
            {
                **r,
                "start_date": start_date,
                "end_date": end_date,
                "current_uses": 0,
                "is_active": True,
                "created_at": created_at,
            }
            for r in rows
        ],
    )
    return (
        f"Created {len(rows)} promotions for {start_date.isoformat()} to {end_date.isoformat()}"
    )
