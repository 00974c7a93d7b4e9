from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any

from loguru import logger
from sqlalchemy import Boolean, Date, DateTime, Float, Integer, Numeric, func, select
from sqlalchemy.engine import Connection
from sqlalchemy.sql.schema import Table

from bella_napoli.cdc.changes import key_tuple, log_head, match_keys, read_changes
from bella_napoli.cdc.streams import get_offset, register_consumer, set_offset
from bella_napoli.cdc.writers import delete_rows, insert_rows, update_rows
from bella_napoli.db.schema import get_table
from bella_napoli.refresh.definitions import (
    DynamicTable,
    Partition,
    RefreshAction,
    RefreshMode,
)
from bella_napoli.refresh.graph import RefreshGraph
from bella_napoli.refresh.state import ensure_state, mark_succeeded


@dataclass(frozen=True)
class RefreshOutcome:
    table_name: str
    action: RefreshAction
    changed_source_rows: int = 0
    partitions: int = 0
    rows_inserted: int = 0
    rows_updated: int = 0
    rows_deleted: int = 0
    row_count: int = 0


def consumer_name(dt: DynamicTable) -> str:
    return f"dynamic_table:{dt.name}"


def coerce_value(column, value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, float) and math.isnan(value):
        return None
    if hasattr(value, "to_pydatetime"):
        value = value.to_pydatetime()
    elif hasattr(value, "item") and not isinstance(value, (str, bytes)):
        value = value.item()
    col_type = column.type
    if isinstance(col_type, Boolean):
        return bool(value)
    if isinstance(col_type, Integer):
        return int(value)
    if isinstance(col_type, Numeric) and not isinstance(col_type, Float):
        scale = col_type.scale
        return round(float(value), scale) if scale is not None else float(value)
    if isinstance(col_type, Float):
        return float(value)
    if isinstance(col_type, DateTime):
        if isinstance(value, str):
            return datetime.fromisoformat(value)
        return value
    if isinstance(col_type, Date):
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, str):
            return date.fromisoformat(value)
        return value
    return value


def coerce_row(table: Table, row: dict[str, Any]) -> dict[str, Any]:
    unknown = set(row) - set(table.c.keys())
    if unknown:
        raise ValueError(f"{table.name}: computed unknown columns {sorted(unknown)}")
    return {c.name: coerce_value(c, row.get(c.name)) for c in table.columns}


def _strip(row: dict[str, Any], volatile: Iterable[str]) -> dict[str, Any]:
    return {k: v for k, v in row.items() if k not in volatile}


def _existing_rows(
    conn: Connection, dt: DynamicTable, partitions: set[Partition] | None
) -> dict[tuple, dict[str, Any]]:
    table = dt.table
    key_cols = dt.key_columns
    if partitions is None:
        rows = [dict(r) for r in conn.execute(select(table)).mappings()]
    else:
        rows = []
        for clause in match_keys(table, dt.partition_by, partitions):
            rows.extend(dict(r) for r in conn.execute(select(table).where(clause)).mappings())
    return {key_tuple(r, key_cols): coerce_row(table, r) for r in rows}


def apply_rows(
    conn: Connection,
    dt: DynamicTable,
    computed: list[dict[str, Any]],
    partitions: set[Partition] | None,
    data_timestamp: datetime,
) -> tuple[int, int, int]:
    """Diff computed rows against the stored ones and write only the differences.

    Returns ``(inserted, updated, deleted)``.
    """
    table = dt.table
    key_cols = dt.key_columns
    existing = _existing_rows(conn, dt, partitions)

    new_by_key: dict[tuple, dict[str, Any]] = {}
    for raw in computed:
        row = coerce_row(table, raw)
        for c in dt.volatile_columns:
            row[c] = data_timestamp
        if partitions is not None and key_tuple(row, dt.partition_by) not in partitions:
            raise ValueError(
                f"{dt.name}: computed row outside requested partitions: "
                f"{key_tuple(row, dt.partition_by)}"
            )
        k = key_tuple(row, key_cols)
        if k in new_by_key:
            raise ValueError(f"{dt.name}: duplicate key {k}")
        new_by_key[k] = row

    deletes = [k for k in existing if k not in new_by_key]
    inserts = [r for k, r in new_by_key.items() if k not in existing]
    updates = [
        r
        for k, r in new_by_key.items()
        if k in existing
        and _strip(r, dt.volatile_columns) != _strip(existing[k], dt.volatile_columns)
    ]

    deleted = delete_rows(conn, table, deletes)
    inserted = insert_rows(conn, table, inserts)
    updated = update_rows(conn, table, updates)
    return inserted, updated, deleted


def _partitions_for(dt: DynamicTable, source: str, records) -> set[Partition]:
    mapper = dt.partition_maps[source]
    out: set[Partition] = set()
    for rec in records:
        mapped = mapper(rec.data)
        if mapped is None:
            continue
        if isinstance(mapped, tuple):
            out.add(mapped)
        else:
            out.update(p for p in mapped if p is not None)
    return out


def _row_count(conn: Connection, table: Table) -> int:
    return int(conn.execute(select(func.count()).select_from(table)).scalar() or 0)


def refresh_table(
    conn: Connection,
    dt: DynamicTable,
    graph: RefreshGraph,
    *,
    base_head: int,
    data_timestamp: datetime,
    full_threshold_ratio: float = 0.5,
) -> RefreshOutcome:
    """Bring ``dt`` up to ``data_timestamp`` inside the caller's transaction.

    Base-table changes are read up to ``base_head`` (the log position the
    cycle started at); changes of upstream dynamic tables are read up to the
    current log head, since those were written earlier in the same cycle.
    """
    state = ensure_state(conn, dt)
    consumer = consumer_name(dt)

    bounds: dict[str, int] = {}
    offsets: dict[str, int | None] = {}
    for src in dt.sources:
        src_table = get_table(src)
        bounds[src] = log_head(conn) if graph.is_dynamic(src) else base_head
        offsets[src] = get_offset(conn, consumer, src_table)

    reinitialize = state.data_timestamp is None or any(o is None for o in offsets.values())

    changed_rows = 0
    partitions: set[Partition] | None = None
    action: RefreshAction
    if reinitialize:
        action = RefreshAction.REINITIALIZE
    else:
        changes = {
            src: read_changes(conn, get_table(src), offsets[src] or 0, bounds[src])
            for src in dt.sources
        }
        changed = {src: recs for src, recs in changes.items() if recs}
        changed_rows = sum(len({r.row_key for r in recs}) for recs in changed.values())

        if not changed:
            action = RefreshAction.NO_DATA
        elif dt.supports_incremental(changed):
            partitions = set()
            for src, recs in changed.items():
                partitions |= _partitions_for(dt, src, recs)
            too_many = changed_rows > full_threshold_ratio * max(state.row_count, 1)
            if dt.refresh_mode is RefreshMode.AUTO and too_many:
                logger.debug(
                    "{}: {} source rows changed (rows={}), falling back to full refresh",
                    dt.name,
                    changed_rows,
                    state.row_count,
                )
                partitions = None
                action = RefreshAction.FULL
            else:
                action = RefreshAction.INCREMENTAL
        else:
            action = RefreshAction.FULL

    inserted = updated = deleted = 0
    if action in (RefreshAction.REINITIALIZE, RefreshAction.FULL):
        inserted, updated, deleted = apply_rows(
            conn, dt, dt.compute(conn, None), None, data_timestamp
        )
    elif action is RefreshAction.INCREMENTAL and partitions:
        inserted, updated, deleted = apply_rows(
            conn, dt, dt.compute(conn, partitions), partitions, data_timestamp
        )

    for src in dt.sources:
        src_table = get_table(src)
        if offsets[src] is None:
            register_consumer(conn, consumer, src_table, start_at=bounds[src])
        else:
            set_offset(conn, consumer, src_table, bounds[src])

    row_count = _row_count(conn, dt.table)
    mark_succeeded(
        conn, dt.name, action=action.value, data_timestamp=data_timestamp, row_count=row_count
    )
    return RefreshOutcome(
        table_name=dt.name,
        action=action,
        changed_source_rows=changed_rows,
        partitions=len(partitions) if partitions else 0,
        rows_inserted=inserted,
        rows_updated=updated,
        rows_deleted=deleted,
        row_count=row_count,
    )
