from __future__ import annotations

from dataclasses import asdict, dataclass
from uuid import uuid4

from loguru import logger
from sqlalchemy import exists, func, insert, not_, or_, select
from sqlalchemy.engine import Connection

from bella_napoli.db.schema import dim_customer, fact_order, fact_order_item, fact_review, ops_dq_checks
from bella_napoli.utils.time import naive_utc_now

PASS = "PASS"
FAIL = "FAIL"
WARN = "WARN"


@dataclass(frozen=True)
class CheckResult:
    check_name: str
    table_name: str
    status: str
    issue_count: int
    details: str


def _count(conn: Connection, stmt) -> int:
    return int(conn.execute(stmt).scalar() or 0)


def run_data_quality_checks(conn: Connection, persist: bool = True) -> list[dict]:
    """Warehouse integrity checks, ordered by status (WARN, PASS, FAIL) then name."""
    null_customer = _count(
        conn, select(func.count()).select_from(fact_order).where(fact_order.c.customer_id.is_(None))
    )
    negative_totals = _count(
        conn, select(func.count()).select_from(fact_order).where(fact_order.c.total_amount < 0)
    )
    orphan_items = _count(
        conn,
        select(func.count())
        .select_from(fact_order_item)
        .where(not_(exists().where(fact_order.c.order_id == fact_order_item.c.order_id))),
    )
    invalid_ratings = _count(
        conn,
        select(func.count())
        .select_from(fact_review)
        .where(or_(fact_review.c.overall_rating < 1, fact_review.c.overall_rating > 5)),
    )
    duplicated = (
        select(dim_customer.c.email)
        .where(dim_customer.c.email.is_not(None))
        .group_by(dim_customer.c.email)
        .having(func.count() > 1)
        .subquery()
    )
    duplicate_emails = _count(conn, select(func.count()).select_from(duplicated))

    def status(count: int, failing: str = FAIL) -> str:
        return PASS if count == 0 else failing

    results = [
        CheckResult(
            "Null Customer ID",
            "fact_order",
            status(null_customer),
            null_customer,
            "Orders without customer reference",
        ),
        CheckResult(
            "Negative Totals",
            "fact_order",
            status(negative_totals),
            negative_totals,
            "Orders with negative total_amount",
        ),
        CheckResult(
            "Orphaned Order Items",
            "fact_order_item",
            status(orphan_items),
            orphan_items,
            "Order items without parent order",
        ),
        CheckResult(
            "Invalid Ratings",
            "fact_review",
            status(invalid_ratings),
            invalid_ratings,
            "Reviews with rating outside 1-5 range",
        ),
        CheckResult(
            "Duplicate Emails",
            "dim_customer",
            status(duplicate_emails, WARN),
            duplicate_emails,
            "Customers with duplicate email addresses",
        ),
    ]
    results.sort(key=lambda r: r.check_name)
    results.sort(key=lambda r: r.status, reverse=True)

    if persist:
        check_time = naive_utc_now()
        conn.execute(
            insert(ops_dq_checks),
            [{"check_id": str(uuid4()), "check_time": check_time, **asdict(r)} for r in results],
        )

    failed = [r.check_name for r in results if r.status != PASS]
    if failed:
        logger.warning("Data quality issues: {}", failed)
    else:
        logger.info("Data quality checks passed ({} checks)", len(results))
    return [asdict(r) for r in results]
