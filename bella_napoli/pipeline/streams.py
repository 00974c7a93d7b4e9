from __future__ import annotations

from bella_napoli.cdc.streams import StreamDefinition, StreamRegistry
from bella_napoli.db.schema import dim_customer, fact_inventory, fact_order, fact_review

STREAM_ORDER_CHANGES = StreamDefinition(
    "stream_order_changes", fact_order, comment="All DML on orders"
)
STREAM_NEW_ORDERS = StreamDefinition(
    "stream_new_orders", fact_order, append_only=True, comment="New orders only"
)
STREAM_NEW_REVIEWS = StreamDefinition(
    "stream_new_reviews", fact_review, append_only=True, comment="New reviews for sentiment"
)
STREAM_CUSTOMER_CHANGES = StreamDefinition(
    "stream_customer_changes", dim_customer, comment="Customer profile changes"
)
STREAM_INVENTORY_CHANGES = StreamDefinition(
    "stream_inventory_changes", fact_inventory, comment="Inventory level changes"
)


def build_streams() -> StreamRegistry:
    return StreamRegistry(
        [
            STREAM_ORDER_CHANGES,
            STREAM_NEW_ORDERS,
            STREAM_NEW_REVIEWS,
            STREAM_CUSTOMER_CHANGES,
            STREAM_INVENTORY_CHANGES,
        ]
    )
