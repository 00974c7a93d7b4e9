from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from uuid import uuid4

from sqlalchemy import insert, select, update
from sqlalchemy.engine import Connection

from bella_napoli.db.schema import ops_refresh_history, ops_refresh_state
from bella_napoli.refresh.definitions import DynamicTable, SchedulingState
from bella_napoli.utils.time import naive_utc_now

MAX_ERROR_CHARS = 3800


def _truncate(msg: str | None) -> str | None:
    if msg is not None and len(msg) > MAX_ERROR_CHARS:
        return msg[:MAX_ERROR_CHARS] + "..."
    return msg


@dataclass(frozen=True)
class TableState:
    table_name: str
    scheduling_state: str
    data_timestamp: datetime | None
    last_refresh_at: datetime | None
    last_refresh_action: str | None
    consecutive_failures: int
    row_count: int

    @property
    def suspended(self) -> bool:
        return self.scheduling_state == SchedulingState.SUSPENDED.value


def ensure_state(conn: Connection, dt: DynamicTable) -> TableState:
    state = load_state(conn, dt.name)
    if state is not None:
        conn.execute(
            update(ops_refresh_state)
            .where(ops_refresh_state.c.table_name == dt.name)
            .values(target_lag=dt.lag_label, refresh_mode=dt.refresh_mode.value)
        )
        return state
    conn.execute(
        insert(ops_refresh_state).values(
            table_name=dt.name,
            target_lag=dt.lag_label,
            refresh_mode=dt.refresh_mode.value,
            scheduling_state=SchedulingState.ACTIVE.value,
            consecutive_failures=0,
            row_count=0,
        )
    )
    return TableState(dt.name, SchedulingState.ACTIVE.value, None, None, None, 0, 0)


def load_state(conn: Connection, table_name: str) -> TableState | None:
    row = conn.execute(
        select(ops_refresh_state).where(ops_refresh_state.c.table_name == table_name)
    ).mappings().first()
    if row is None:
        return None
    return TableState(
        table_name=row["table_name"],
        scheduling_state=row["scheduling_state"],
        data_timestamp=row["data_timestamp"],
        last_refresh_at=row["last_refresh_at"],
        last_refresh_action=row["last_refresh_action"],
        consecutive_failures=int(row["consecutive_failures"] or 0),
        row_count=int(row["row_count"] or 0),
    )


def load_all_states(conn: Connection) -> dict[str, TableState]:
    states: dict[str, TableState] = {}
    for name in conn.execute(select(ops_refresh_state.c.table_name)).scalars().all():
        state = load_state(conn, name)
        if state is not None:
            states[name] = state
    return states


def set_scheduling_state(conn: Connection, table_name: str, state: SchedulingState) -> None:
    values: dict = {"scheduling_state": state.value}
    if state is SchedulingState.ACTIVE:
        values["consecutive_failures"] = 0
    conn.execute(
        update(ops_refresh_state)
        .where(ops_refresh_state.c.table_name == table_name)
        .values(**values)
    )


def mark_succeeded(
    conn: Connection,
    table_name: str,
    *,
    action: str,
    data_timestamp: datetime,
    row_count: int,
) -> None:
    conn.execute(
        update(ops_refresh_state)
        .where(ops_refresh_state.c.table_name == table_name)
        .values(
            data_timestamp=data_timestamp,
            last_refresh_at=naive_utc_now(),
            last_refresh_action=action,
            consecutive_failures=0,
            row_count=int(row_count),
        )
    )


def mark_failed(conn: Connection, table_name: str, *, max_failures: int) -> bool:
    """Bump the failure counter; returns True when the table got auto-suspended."""
    state = load_state(conn, table_name)
    failures = (state.consecutive_failures if state else 0) + 1
    suspend = failures >= max_failures
    values: dict = {"consecutive_failures": failures}
    if suspend:
        values["scheduling_state"] = SchedulingState.SUSPENDED.value
    conn.execute(
        update(ops_refresh_state)
        .where(ops_refresh_state.c.table_name == table_name)
        .values(**values)
    )
    return suspend


def record_history(
    conn: Connection,
    *,
    table_name: str,
    trigger: str,
    state: str,
    started_at: datetime,
    action: str | None = None,
    data_timestamp: datetime | None = None,
    changed_source_rows: int = 0,
    rows_inserted: int = 0,
    rows_deleted: int = 0,
    error_message: str | None = None,
) -> str:
    refresh_id = str(uuid4())
    conn.execute(
        insert(ops_refresh_history).values(
            refresh_id=refresh_id,
            table_name=table_name,
            refresh_trigger=trigger,
            refresh_action=action,
            state=state,
            data_timestamp=data_timestamp,
            started_at=started_at,
            finished_at=naive_utc_now(),
            changed_source_rows=int(changed_source_rows),
            rows_inserted=int(rows_inserted),
            rows_deleted=int(rows_deleted),
            error_message=_truncate(error_message),
        )
    )
    return refresh_id


def refresh_history(
    conn: Connection, table_name: str | None = None, limit: int = 20
) -> list[dict]:
    stmt = select(ops_refresh_history).order_by(
        ops_refresh_history.c.started_at.desc(), ops_refresh_history.c.finished_at.desc()
    )
    if table_name is not None:
        stmt = stmt.where(ops_refresh_history.c.table_name == table_name)
    return [dict(r) for r in conn.execute(stmt.limit(limit)).mappings()]
