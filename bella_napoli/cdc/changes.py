from __future__ import annotations

import json
from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any

from sqlalchemy import Date, DateTime, Time, and_, delete, func, insert, or_, select
from sqlalchemy.engine import Connection
from sqlalchemy.sql import ColumnElement
from sqlalchemy.sql.schema import Table

from bella_napoli.db.schema import ops_change_log, ops_change_offsets
from bella_napoli.utils.time import naive_utc_now

INSERT = "INSERT"
DELETE = "DELETE"

KEY_CHUNK_SIZE = 200
STREAM_CONSUMER_PREFIX = "stream:"


@dataclass(frozen=True)
class ChangeRecord:
    change_id: int
    table_name: str
    action: str
    is_update: bool
    row_key: str
    data: dict[str, Any]


def encode_value(value: Any) -> Any:
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    return value


def _json_dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"), default=encode_value)


def encode_row(row: dict[str, Any]) -> dict[str, Any]:
    return {k: encode_value(v) for k, v in row.items()}


def decode_row(table: Table, data: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for name, value in data.items():
        col = table.c.get(name)
        if value is None or col is None or not isinstance(value, str):
            out[name] = value
        elif isinstance(col.type, DateTime):
            out[name] = datetime.fromisoformat(value)
        elif isinstance(col.type, Date):
            out[name] = date.fromisoformat(value)
        elif isinstance(col.type, Time):
            out[name] = time.fromisoformat(value)
        else:
            out[name] = value
    return out


def row_key(row: dict[str, Any], key_cols: Sequence[str]) -> str:
    return _json_dumps([encode_value(row[c]) for c in key_cols])


def key_tuple(row: dict[str, Any], key_cols: Sequence[str]) -> tuple:
    return tuple(row[c] for c in key_cols)


def match_keys(
    table: Table, columns: Sequence[str], keys: Iterable[tuple]
) -> Iterator[ColumnElement[bool]]:
    """Yield WHERE clauses matching ``keys`` on ``columns``, in chunks."""
    keys = list(dict.fromkeys(keys))
    for start in range(0, len(keys), KEY_CHUNK_SIZE):
        chunk = keys[start : start + KEY_CHUNK_SIZE]
        if len(columns) == 1:
            yield table.c[columns[0]].in_([k[0] for k in chunk])
        else:
            yield or_(
                *(and_(*(table.c[c] == v for c, v in zip(columns, k))) for k in chunk)
            )


def append_changes(
    conn: Connection,
    table: Table,
    action: str,
    rows: Sequence[dict[str, Any]],
    *,
    key_cols: Sequence[str],
    is_update: bool = False,
) -> None:
    if not rows:
        return
    changed_at = naive_utc_now()
    conn.execute(
        insert(ops_change_log),
        [
            {
                "table_name": table.name,
                "action": action,
                "is_update": is_update,
                "row_key": row_key(r, key_cols),
                "row_data": _json_dumps(encode_row(r)),
                "changed_at": changed_at,
            }
            for r in rows
        ],
    )


def log_head(conn: Connection) -> int:
    return int(conn.execute(select(func.max(ops_change_log.c.change_id))).scalar() or 0)


def read_changes(
    conn: Connection,
    table: Table,
    after_id: int,
    upto_id: int | None = None,
) -> list[ChangeRecord]:
    stmt = (
        select(ops_change_log)
        .where(ops_change_log.c.table_name == table.name)
        .where(ops_change_log.c.change_id > after_id)
        .order_by(ops_change_log.c.change_id)
    )
    if upto_id is not None:
        stmt = stmt.where(ops_change_log.c.change_id <= upto_id)
    return [
        ChangeRecord(
            change_id=int(r["change_id"]),
            table_name=r["table_name"],
            action=r["action"],
            is_update=bool(r["is_update"]),
            row_key=r["row_key"],
            data=decode_row(table, json.loads(r["row_data"])),
        )
        for r in conn.execute(stmt).mappings()
    ]


def has_changes(conn: Connection, table: Table, after_id: int) -> bool:
    row = conn.execute(
        select(ops_change_log.c.change_id)
        .where(ops_change_log.c.table_name == table.name)
        .where(ops_change_log.c.change_id > after_id)
        .limit(1)
    ).first()
    return row is not None


def purge_consumed_changes(conn: Connection, stale_before: datetime | None = None) -> int:
    """Delete log entries that every registered consumer has already read.

    Entries logged before ``stale_before`` stop waiting for stream consumers:
    a stream that has not been read since then goes stale and skips them.
    Dynamic table offsets always hold their entries.
    """
    offsets: dict[str, int] = {}
    held: dict[str, int] = {}
    for consumer, table_name, offset in conn.execute(
        select(
            ops_change_offsets.c.consumer,
            ops_change_offsets.c.table_name,
            ops_change_offsets.c.last_change_id,
        )
    ).all():
        offsets[table_name] = min(offsets.get(table_name, offset), offset)
        if not consumer.startswith(STREAM_CONSUMER_PREFIX):
            held[table_name] = min(held.get(table_name, offset), offset)
    logged = conn.execute(select(ops_change_log.c.table_name).distinct()).scalars().all()

    purged = 0
    for table_name in logged:
        stmt = delete(ops_change_log).where(ops_change_log.c.table_name == table_name)
        if table_name in offsets:
            consumed = ops_change_log.c.change_id <= int(offsets[table_name])
            if stale_before is not None:
                expired = ops_change_log.c.changed_at < stale_before
                if table_name in held:
                    expired = and_(expired, ops_change_log.c.change_id <= int(held[table_name]))
                consumed = or_(consumed, expired)
            stmt = stmt.where(consumed)
        res = conn.execute(stmt)
        purged += int(getattr(res, "rowcount", 0) or 0)
    return purged
