from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from loguru import logger
from sqlalchemy import delete, insert, select, update
from sqlalchemy.engine import Connection
from sqlalchemy.sql.schema import Table

from bella_napoli.cdc.changes import (
    DELETE,
    INSERT,
    STREAM_CONSUMER_PREFIX,
    ChangeRecord,
    has_changes,
    log_head,
    read_changes,
)
from bella_napoli.db.schema import TRACKED_TABLES, ops_change_offsets
from bella_napoli.utils.time import naive_utc_now


class UnknownObjectError(Exception):
    pass


@dataclass(frozen=True)
class StreamDefinition:
    name: str
    table: Table
    append_only: bool = False
    comment: str | None = None


@dataclass(frozen=True)
class StreamRow:
    action: str
    is_update: bool
    row_id: str
    data: dict[str, Any]

    def __getitem__(self, key: str) -> Any:
        return self.data[key]

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)


@dataclass(frozen=True)
class StreamBatch:
    rows: list[StreamRow]
    offset_before: int
    offset_after: int


def register_consumer(
    conn: Connection,
    consumer: str,
    table: Table,
    *,
    append_only: bool = False,
    start_at: int | None = None,
    comment: str | None = None,
) -> int:
    """Create an offset for ``consumer`` on ``table`` if it does not exist yet."""
    if table.name not in TRACKED_TABLES:
        raise UnknownObjectError(f"{table.name} is not change-tracked")
    current = get_offset(conn, consumer, table)
    if current is not None:
        return current
    offset = log_head(conn) if start_at is None else int(start_at)
    conn.execute(
        insert(ops_change_offsets).values(
            consumer=consumer,
            table_name=table.name,
            last_change_id=offset,
            append_only=append_only,
            created_at=naive_utc_now(),
            comment=comment,
        )
    )
    return offset


def get_offset(conn: Connection, consumer: str, table: Table) -> int | None:
    value = conn.execute(
        select(ops_change_offsets.c.last_change_id)
        .where(ops_change_offsets.c.consumer == consumer)
        .where(ops_change_offsets.c.table_name == table.name)
    ).scalar()
    return None if value is None else int(value)


def set_offset(conn: Connection, consumer: str, table: Table, offset: int) -> None:
    conn.execute(
        update(ops_change_offsets)
        .where(ops_change_offsets.c.consumer == consumer)
        .where(ops_change_offsets.c.table_name == table.name)
        .values(last_change_id=int(offset))
    )


def drop_consumer(conn: Connection, consumer: str) -> None:
    conn.execute(delete(ops_change_offsets).where(ops_change_offsets.c.consumer == consumer))


def net_changes(records: list[ChangeRecord], *, append_only: bool = False) -> list[StreamRow]:
    """Collapse a change window into its net effect per row.

    Append-only consumers see every inserted row (updates and deletes are
    ignored). Standard consumers see, per row key, the difference between
    the row before the window and after it.
    """
    if append_only:
        return [
            StreamRow(action=INSERT, is_update=False, row_id=r.row_key, data=r.data)
            for r in records
            if r.action == INSERT and not r.is_update
        ]

    by_key: dict[str, list[ChangeRecord]] = {}
    for r in records:
        by_key.setdefault(r.row_key, []).append(r)

    out: list[StreamRow] = []
    for key, recs in by_key.items():
        first, last = recs[0], recs[-1]
        existed_before = first.action == DELETE
        exists_after = last.action == INSERT
        if existed_before and exists_after:
            if first.data == last.data:
                continue
            out.append(StreamRow(DELETE, True, key, first.data))
            out.append(StreamRow(INSERT, True, key, last.data))
        elif existed_before:
            out.append(StreamRow(DELETE, False, key, first.data))
        elif exists_after:
            out.append(StreamRow(INSERT, False, key, last.data))
    return out


class StreamRegistry:
    def __init__(self, streams: list[StreamDefinition] | None = None) -> None:
        self._streams: dict[str, StreamDefinition] = {}
        for s in streams or []:
            self.add(s)

    def add(self, stream: StreamDefinition) -> None:
        if stream.name in self._streams:
            raise ValueError(f"Duplicate stream: {stream.name}")
        self._streams[stream.name] = stream

    def get(self, name: str) -> StreamDefinition:
        try:
            return self._streams[name]
        except KeyError:
            raise UnknownObjectError(f"Unknown stream: {name}") from None

    def names(self) -> list[str]:
        return sorted(self._streams)

    def create_all(self, conn: Connection) -> None:
        for s in self._streams.values():
            create_stream(conn, s)


def _consumer_name(stream: StreamDefinition) -> str:
    return f"{STREAM_CONSUMER_PREFIX}{stream.name}"


def create_stream(conn: Connection, stream: StreamDefinition) -> int:
    offset = register_consumer(
        conn,
        _consumer_name(stream),
        stream.table,
        append_only=stream.append_only,
        comment=stream.comment,
    )
    logger.debug("Stream {} on {} at offset {}", stream.name, stream.table.name, offset)
    return offset


def drop_stream(conn: Connection, stream: StreamDefinition) -> None:
    drop_consumer(conn, _consumer_name(stream))


def _require_offset(conn: Connection, stream: StreamDefinition) -> int:
    offset = get_offset(conn, _consumer_name(stream), stream.table)
    if offset is None:
        raise UnknownObjectError(f"Stream {stream.name} has not been created")
    return offset


def stream_has_data(conn: Connection, stream: StreamDefinition) -> bool:
    offset = _require_offset(conn, stream)
    if not has_changes(conn, stream.table, offset):
        return False
    # net changes may cancel out; the cheap check above is only a pre-filter
    return bool(read_stream(conn, stream).rows)


def read_stream(conn: Connection, stream: StreamDefinition) -> StreamBatch:
    offset = _require_offset(conn, stream)
    head = log_head(conn)
    records = read_changes(conn, stream.table, offset, head)
    return StreamBatch(
        rows=net_changes(records, append_only=stream.append_only),
        offset_before=offset,
        offset_after=max(head, offset),
    )


def consume_stream(conn: Connection, stream: StreamDefinition) -> list[StreamRow]:
    """Read the stream and advance its offset inside the caller's transaction."""
    batch = read_stream(conn, stream)
    set_offset(conn, _consumer_name(stream), stream.table, batch.offset_after)
    return batch.rows
