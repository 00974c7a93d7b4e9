from __future__ import annotations

from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine

from bella_napoli.db.schema import metadata
from bella_napoli.utils.time import utc_now


def missing_tables(engine: Engine) -> list[str]:
    existing = set(inspect(engine).get_table_names())
    return sorted(name for name in metadata.tables if name not in existing)


def run_healthcheck(engine: Engine) -> dict:
    """Round-trip a query and report which warehouse tables are not created yet."""
    with engine.connect() as conn:
        ok = conn.execute(text("SELECT 1 AS ok")).scalar_one()
    missing = missing_tables(engine)
    return {
        "ok": ok,
        "now": utc_now(),
        "dialect": engine.dialect.name,
        "tables": len(metadata.tables) - len(missing),
        "missing_tables": missing,
    }
