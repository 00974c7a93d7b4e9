from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from loguru import logger
from sqlalchemy.engine import Engine

from bella_napoli.cdc.changes import log_head
from bella_napoli.refresh.definitions import (
    RefreshAction,
    RefreshState,
    SchedulingState,
)
from bella_napoli.refresh.executor import RefreshOutcome, refresh_table
from bella_napoli.refresh.graph import RefreshGraph
from bella_napoli.refresh.state import (
    TableState,
    ensure_state,
    load_all_states,
    mark_failed,
    record_history,
    refresh_history,
    set_scheduling_state,
)
from bella_napoli.utils.time import format_duration, to_naive_utc, utc_now

SCHEDULED = "SCHEDULED"
MANUAL = "MANUAL"


@dataclass
class CycleResult:
    data_timestamp: datetime
    planned: list[str] = field(default_factory=list)
    outcomes: dict[str, RefreshOutcome] = field(default_factory=dict)
    failed: dict[str, str] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed and not self.skipped


class RefreshScheduler:
    """Keeps dynamic tables within their target lag.

    Each call to :meth:`run_cycle` works out which tables are due, pulls in
    their upstream dynamic tables, and refreshes them in dependency order to a
    single shared data timestamp. Every table is refreshed in its own
    transaction.
    """

    def __init__(
        self,
        engine: Engine,
        graph: RefreshGraph,
        *,
        tick: timedelta = timedelta(seconds=30),
        full_threshold_ratio: float = 0.5,
        max_failures: int = 5,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.engine = engine
        self.graph = graph
        self.tick = tick
        self.full_threshold_ratio = full_threshold_ratio
        self.max_failures = max_failures
        self._clock = clock

    def now(self) -> datetime:
        return to_naive_utc(self._clock())

    def register_all(self) -> None:
        with self.engine.begin() as conn:
            for dt in self.graph.order():
                ensure_state(conn, dt)

    def _states(self) -> dict[str, TableState]:
        with self.engine.connect() as conn:
            return load_all_states(conn)

    def effectively_suspended(self, name: str, states: dict[str, TableState]) -> bool:
        for n in [name, *self.graph.upstream(name)]:
            st = states.get(n)
            if st is not None and st.suspended:
                return True
        return False

    def is_due(self, name: str, now: datetime, states: dict[str, TableState]) -> bool:
        lag = self.graph.effective_lag(name)
        if lag is None or self.effectively_suspended(name, states):
            return False
        st = states.get(name)
        if st is None or st.data_timestamp is None:
            return True
        # refresh one tick early so the lag never overshoots between ticks
        return now - st.data_timestamp + self.tick >= lag

    def plan(self, now: datetime | None = None) -> list[str]:
        now = now or self.now()
        states = self._states()
        due = [dt.name for dt in self.graph.order() if self.is_due(dt.name, now, states)]
        return self.graph.closure_with_upstream(due)

    def run_cycle(self, now: datetime | None = None) -> CycleResult:
        self.register_all()
        now = now or self.now()
        planned = self.plan(now)
        return self._execute(planned, now, trigger=SCHEDULED)

    def refresh_now(self, names: str | Iterable[str]) -> CycleResult:
        """Manual refresh of the named tables and every upstream dynamic table."""
        if isinstance(names, str):
            names = [names]
        self.register_all()
        planned = self.graph.closure_with_upstream(names)
        return self._execute(planned, self.now(), trigger=MANUAL)

    def _execute(self, planned: list[str], now: datetime, *, trigger: str) -> CycleResult:
        result = CycleResult(data_timestamp=now, planned=list(planned))
        if not planned:
            return result

        with self.engine.connect() as conn:
            base_head = log_head(conn)

        broken: set[str] = set()
        for name in planned:
            dt = self.graph.get(name)
            upstream_broken = [u for u in self.graph.upstream(name) if u in broken]
            started_at = self.now()
            if upstream_broken:
                broken.add(name)
                result.skipped.append(name)
                with self.engine.begin() as conn:
                    record_history(
                        conn,
                        table_name=name,
                        trigger=trigger,
                        state=RefreshState.UPSTREAM_FAILED.value,
                        started_at=started_at,
                        data_timestamp=now,
                        error_message=f"Upstream failed: {', '.join(upstream_broken)}",
                    )
                logger.warning("Refresh of {} skipped: upstream failed ({})", name, upstream_broken)
                continue

            try:
                with self.engine.begin() as conn:
                    outcome = refresh_table(
                        conn,
                        dt,
                        self.graph,
                        base_head=base_head,
                        data_timestamp=now,
                        full_threshold_ratio=self.full_threshold_ratio,
                    )
                    record_history(
                        conn,
                        table_name=name,
                        trigger=trigger,
                        state=RefreshState.SUCCEEDED.value,
                        started_at=started_at,
                        action=outcome.action.value,
                        data_timestamp=now,
                        changed_source_rows=outcome.changed_source_rows,
                        rows_inserted=outcome.rows_inserted + outcome.rows_updated,
                        rows_deleted=outcome.rows_deleted + outcome.rows_updated,
                    )
            except Exception as exc:
                broken.add(name)
                result.failed[name] = str(exc)
                logger.exception("Refresh of {} failed", name)
                with self.engine.begin() as conn:
                    suspended = mark_failed(conn, name, max_failures=self.max_failures)
                    record_history(
                        conn,
                        table_name=name,
                        trigger=trigger,
                        state=RefreshState.FAILED.value,
                        started_at=started_at,
                        data_timestamp=now,
                        error_message=str(exc),
                    )
                if suspended:
                    logger.error(
                        "{} auto-suspended after {} consecutive failures", name, self.max_failures
                    )
                continue

            result.outcomes[name] = outcome
            if outcome.action is not RefreshAction.NO_DATA:
                logger.info(
                    "Refreshed {} action={} changed_rows={} +{} ~{} -{} rows={}",
                    name,
                    outcome.action.value,
                    outcome.changed_source_rows,
                    outcome.rows_inserted,
                    outcome.rows_updated,
                    outcome.rows_deleted,
                    outcome.row_count,
                )
        return result

    def suspend(self, name: str) -> None:
        with self.engine.begin() as conn:
            ensure_state(conn, self.graph.get(name))
            set_scheduling_state(conn, name, SchedulingState.SUSPENDED)
        logger.info("Dynamic table {} suspended", name)

    def resume(self, name: str) -> None:
        with self.engine.begin() as conn:
            ensure_state(conn, self.graph.get(name))
            set_scheduling_state(conn, name, SchedulingState.ACTIVE)
        logger.info("Dynamic table {} resumed", name)

    def describe(self, now: datetime | None = None) -> list[dict]:
        now = now or self.now()
        states = self._states()
        out: list[dict] = []
        for dt in self.graph.order():
            st = states.get(dt.name)
            lag = self.graph.effective_lag(dt.name)
            data_ts = st.data_timestamp if st else None
            out.append(
                {
                    "name": dt.name,
                    "target_lag": dt.lag_label,
                    "effective_lag": format_duration(lag) if lag else None,
                    "refresh_mode": dt.refresh_mode.value,
                    "scheduling_state": (
                        SchedulingState.SUSPENDED.value
                        if self.effectively_suspended(dt.name, states)
                        else SchedulingState.ACTIVE.value
                    ),
                    "sources": list(dt.sources),
                    "data_timestamp": data_ts,
                    "last_refresh_at": st.last_refresh_at if st else None,
                    "last_refresh_action": st.last_refresh_action if st else None,
                    "current_lag_seconds": (
                        None if data_ts is None else (now - data_ts).total_seconds()
                    ),
                    "row_count": st.row_count if st else 0,
                    "consecutive_failures": st.consecutive_failures if st else 0,
                }
            )
        return out

    def history(self, name: str | None = None, limit: int = 20) -> list[dict]:
        with self.engine.connect() as conn:
            return refresh_history(conn, name, limit)
