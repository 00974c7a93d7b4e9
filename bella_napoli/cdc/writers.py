"""Change-captured DML.

Every write to a tracked table goes through these helpers so that the row
images land in ``ops_change_log`` in the same transaction as the write.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import Any

from sqlalchemy import delete, insert, select, update
from sqlalchemy.engine import Connection
from sqlalchemy.sql import ColumnElement
from sqlalchemy.sql.schema import Table

from bella_napoli.cdc.changes import (
    DELETE,
    INSERT,
    append_changes,
    key_tuple,
    match_keys,
)
from bella_napoli.db.schema import TRACKED_TABLES, key_columns


def _tracked(table: Table) -> bool:
    return table.name in TRACKED_TABLES


def _full_rows(table: Table, rows: Sequence[dict[str, Any]]) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    for r in rows:
        row: dict[str, Any] = {}
        for col in table.columns:
            if col.name in r:
                row[col.name] = r[col.name]
            elif col.default is not None and getattr(col.default, "is_scalar", False):
                row[col.name] = col.default.arg
            else:
                row[col.name] = None
        unknown = set(r) - set(row)
        if unknown:
            raise ValueError(f"Unknown columns for {table.name}: {sorted(unknown)}")
        out.append(row)
    return out


def fetch_rows_by_key(
    conn: Connection, table: Table, keys: Iterable[tuple]
) -> dict[tuple, dict[str, Any]]:
    key_cols = key_columns(table)
    found: dict[tuple, dict[str, Any]] = {}
    for clause in match_keys(table, key_cols, keys):
        for r in conn.execute(select(table).where(clause)).mappings():
            row = dict(r)
            found[key_tuple(row, key_cols)] = row
    return found


def insert_rows(conn: Connection, table: Table, rows: Sequence[dict[str, Any]]) -> int:
    if not rows:
        return 0
    full = _full_rows(table, rows)
    conn.execute(insert(table), full)
    if _tracked(table):
        append_changes(conn, table, INSERT, full, key_cols=key_columns(table))
    return len(full)


def update_rows(conn: Connection, table: Table, rows: Sequence[dict[str, Any]]) -> int:
    """Update rows by primary key; each dict carries the key and changed columns."""
    if not rows:
        return 0
    key_cols = key_columns(table)
    existing = fetch_rows_by_key(conn, table, [key_tuple(r, key_cols) for r in rows])

    before: list[dict[str, Any]] = []
    after: list[dict[str, Any]] = []
    for r in rows:
        k = key_tuple(r, key_cols)
        old = existing.get(k)
        if old is None:
            continue
        new = {**old, **r}
        if new == old:
            continue
        stmt = update(table).values(
            {c: v for c, v in r.items() if c not in key_cols}
        )
        for c, v in zip(key_cols, k):
            stmt = stmt.where(table.c[c] == v)
        conn.execute(stmt)
        before.append(old)
        after.append(new)

    if _tracked(table):
        append_changes(conn, table, DELETE, before, key_cols=key_cols, is_update=True)
        append_changes(conn, table, INSERT, after, key_cols=key_cols, is_update=True)
    return len(after)


def upsert_rows(
    conn: Connection, table: Table, rows: Sequence[dict[str, Any]]
) -> tuple[int, int]:
    """Insert new keys, update existing ones. Returns ``(inserted, updated)``."""
    if not rows:
        return 0, 0
    key_cols = key_columns(table)
    existing = fetch_rows_by_key(conn, table, [key_tuple(r, key_cols) for r in rows])
    new_rows = [r for r in rows if key_tuple(r, key_cols) not in existing]
    old_rows = [r for r in rows if key_tuple(r, key_cols) in existing]
    return insert_rows(conn, table, new_rows), update_rows(conn, table, old_rows)


def delete_rows(conn: Connection, table: Table, keys: Iterable[tuple]) -> int:
    key_cols = key_columns(table)
    existing = fetch_rows_by_key(conn, table, keys)
    if not existing:
        return 0
    for clause in match_keys(table, key_cols, existing.keys()):
        conn.execute(delete(table).where(clause))
    if _tracked(table):
        append_changes(conn, table, DELETE, list(existing.values()), key_cols=key_cols)
    return len(existing)


def delete_where(conn: Connection, table: Table, where: ColumnElement[bool]) -> int:
    key_cols = key_columns(table)
    keys = [
        key_tuple(dict(r), key_cols)
        for r in conn.execute(select(*(table.c[c] for c in key_cols)).where(where)).mappings()
    ]
    return delete_rows(conn, table, keys)
