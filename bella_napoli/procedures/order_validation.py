from __future__ import annotations

import json
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

VALID_ORDER_TYPES = ("DELIVERY", "PICKUP", "DINE_IN")
REQUIRED_FIELDS = ("customer_id", "items", "order_type")
DEFAULT_TAX_RATE = 0.0825


def round_cents(value: float) -> float:
    return float(Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_positive_number(value: Any) -> bool:
    return _is_number(value) and value > 0


def _is_price(value: Any) -> bool:
    # a missing price counts as zero
    return value is None or (_is_number(value) and value >= 0)


def validate_order_json(order_json: str, tax_rate: float = DEFAULT_TAX_RATE) -> dict[str, Any]:
    """Validate an incoming order document.

    Returns ``{"is_valid", "errors", "parsed_order"}``; ``parsed_order`` carries
    ``subtotal``, ``tax`` and ``total`` when the order is valid.
    """
    result: dict[str, Any] = {"is_valid": True, "errors": [], "parsed_order": None}

    def fail(message: str) -> None:
        result["errors"].append(message)
        result["is_valid"] = False

    try:
        order = json.loads(order_json)
    except (TypeError, ValueError) as exc:
        fail(f"JSON parsing error: {exc}")
        return result
    if not isinstance(order, dict):
        fail("JSON parsing error: order must be an object")
        return result

    for field in REQUIRED_FIELDS:
        if order.get(field) is None:
            fail(f"Missing required field: {field}")

    items = order.get("items")
    if items is not None and not isinstance(items, list):
        fail("items must be an array")
    elif isinstance(items, list):
        if not items:
            fail("Order must contain at least one item")
        for index, item in enumerate(items, start=1):
            item = item if isinstance(item, dict) else {}
            if not item.get("item_id"):
                fail(f"Item {index} missing item_id")
            if not _is_positive_number(item.get("quantity")):
                fail(f"Item {index} has invalid quantity")
            if not _is_price(item.get("price")):
                fail(f"Item {index} has invalid price")

    order_type = order.get("order_type")
    if order_type and order_type not in VALID_ORDER_TYPES:
        fail(f"Invalid order_type. Must be: {', '.join(VALID_ORDER_TYPES)}")

    if order_type == "DELIVERY" and not order.get("delivery_address"):
        fail("Delivery orders require delivery_address")

    if not _is_price(order.get("tip")):
        fail("Invalid tip")

    if result["is_valid"]:
        subtotal = sum(float(item.get("price") or 0) * item["quantity"] for item in items)
        subtotal = round_cents(subtotal)
        tax = round_cents(subtotal * tax_rate)
        order["subtotal"] = subtotal
        order["tax"] = tax
        order["total"] = round_cents(subtotal + tax)
        result["parsed_order"] = order

    return result
