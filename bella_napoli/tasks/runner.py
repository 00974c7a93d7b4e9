from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import uuid4

from loguru import logger
from sqlalchemy import insert, select, update
from sqlalchemy.engine import Engine

from bella_napoli.db.schema import ops_task_state
from bella_napoli.jobs.locking import LockNotAcquired, db_lock
from bella_napoli.ops.run_logger import finish_run, record_skipped_run, start_run, task_history
from bella_napoli.tasks.definitions import TaskContext, TaskState, TaskStatus
from bella_napoli.tasks.graph import TaskGraph
from bella_napoli.utils.time import naive_utc_now, to_naive_utc, utc_now

SCHEDULED = "SCHEDULED"
MANUAL = "MANUAL"


@dataclass
class GraphRunResult:
    root: str
    graph_run_id: str
    statuses: dict[str, str] = field(default_factory=dict)
    return_values: dict[str, Any] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return TaskStatus.FAILED.value not in self.statuses.values()


class TaskRunner:
    """Runs task graphs and records every task run in ``ops_task_runs``.

    A task runs only when all of its predecessors succeeded in the same graph
    run. A false ``when`` condition, a failure or a suspended task skips the
    task and everything below it.
    """

    def __init__(
        self,
        engine: Engine,
        graph: TaskGraph,
        *,
        services: dict[str, Any] | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.engine = engine
        self.graph = graph
        self.services = dict(services or {})
        self._clock = clock

    # -- state ---------------------------------------------------------------

    def register_all(self, initial_state: TaskState = TaskState.STARTED) -> None:
        with self.engine.begin() as conn:
            known = set(conn.execute(select(ops_task_state.c.task_name)).scalars().all())
            for name in self.graph.names():
                if name in known:
                    continue
                conn.execute(
                    insert(ops_task_state).values(
                        task_name=name, state=initial_state.value, updated_at=naive_utc_now()
                    )
                )

    def state(self, name: str) -> TaskState:
        self.graph.get(name)
        with self.engine.connect() as conn:
            value = conn.execute(
                select(ops_task_state.c.state).where(ops_task_state.c.task_name == name)
            ).scalar()
        return TaskState(value) if value else TaskState.STARTED

    def _set_state(self, name: str, state: TaskState) -> None:
        self.graph.get(name)
        self.register_all()
        with self.engine.begin() as conn:
            conn.execute(
                update(ops_task_state)
                .where(ops_task_state.c.task_name == name)
                .values(state=state.value, updated_at=naive_utc_now())
            )
        logger.info("Task {} {}", name, state.value.lower())

    def suspend(self, name: str) -> None:
        self._set_state(name, TaskState.SUSPENDED)

    def resume(self, name: str) -> None:
        self._set_state(name, TaskState.STARTED)

    def describe(self) -> list[dict]:
        out: list[dict] = []
        for name in self.graph.names():
            t = self.graph.get(name)
            out.append(
                {
                    "name": name,
                    "state": self.state(name).value,
                    "schedule": t.schedule.label if t.schedule else None,
                    "predecessors": list(t.after),
                    "root": self.graph.root_of(name),
                    "allow_overlapping": t.allow_overlapping,
                    "comment": t.comment,
                }
            )
        return out

    def history(self, name: str | None = None, limit: int = 50) -> list[dict]:
        return task_history(self.engine, name, limit)

    # -- running -------------------------------------------------------------

    def run_root(self, root: str, *, trigger: str = SCHEDULED) -> GraphRunResult:
        """Scheduled entry point: a suspended root does not run at all."""
        if self.state(root) is TaskState.SUSPENDED:
            logger.debug("Task {} is suspended; not running", root)
            return GraphRunResult(root=root, graph_run_id="")
        return self.run_graph(root, trigger=trigger)

    def execute_task(self, name: str) -> GraphRunResult:
        """Run ``name`` and its descendants now, regardless of schedule."""
        return self.run_graph(name, trigger=MANUAL, force_start=True)

    def run_graph(
        self, start: str, *, trigger: str = SCHEDULED, force_start: bool = False
    ) -> GraphRunResult:
        self.register_all()
        definition = self.graph.get(start)
        graph_run_id = str(uuid4())
        root = self.graph.root_of(start)
        result = GraphRunResult(root=start, graph_run_id=graph_run_id)

        if definition.allow_overlapping:
            self._run_tasks(start, root, trigger, result, force_start)
            return result

        try:
            with db_lock(self.engine, f"task:{root}"):
                self._run_tasks(start, root, trigger, result, force_start)
        except LockNotAcquired:
            logger.info("Task graph {} is already running; skipping", root)
            record_skipped_run(
                self.engine,
                start,
                root_task_name=root,
                graph_run_id=graph_run_id,
                trigger=trigger,
                reason="Skipped: previous run of this task graph still in progress.",
            )
            result.statuses[start] = TaskStatus.SKIPPED.value
        return result

    def _skip(
        self, name: str, root: str, trigger: str, result: GraphRunResult, reason: str
    ) -> None:
        record_skipped_run(
            self.engine,
            name,
            root_task_name=root,
            graph_run_id=result.graph_run_id,
            trigger=trigger,
            reason=reason,
        )
        result.statuses[name] = TaskStatus.SKIPPED.value

    def _run_tasks(
        self, start: str, root: str, trigger: str, result: GraphRunResult, force_start: bool
    ) -> None:
        scheduled_at = to_naive_utc(self._clock())
        for name in self.graph.run_order(start):
            t = self.graph.get(name)
            if name != start:
                blocked = [
                    p
                    for p in t.after
                    if p in result.statuses and result.statuses[p] != TaskStatus.SUCCEEDED.value
                ]
                if blocked:
                    self._skip(name, root, trigger, result, f"Predecessor did not succeed: {blocked}")
                    continue

            if self.state(name) is TaskState.SUSPENDED and not (force_start and name == start):
                self._skip(name, root, trigger, result, "Task is suspended.")
                continue

            if t.when is not None:
                with self.engine.connect() as conn:
                    should_run = bool(t.when(conn))
                if not should_run:
                    self._skip(name, root, trigger, result, "WHEN condition evaluated to false.")
                    continue

            run_id = start_run(
                self.engine,
                name,
                root_task_name=root,
                graph_run_id=result.graph_run_id,
                trigger=trigger,
            )
            try:
                with self.engine.begin() as conn:
                    ctx = TaskContext(
                        conn=conn,
                        task_name=name,
                        graph_run_id=result.graph_run_id,
                        scheduled_at=scheduled_at,
                        services=self.services,
                    )
                    value = t.body(ctx)
            except Exception as exc:
                logger.exception("Task {} failed", name)
                finish_run(self.engine, run_id, TaskStatus.FAILED.value, error_message=str(exc))
                result.statuses[name] = TaskStatus.FAILED.value
                result.errors[name] = str(exc)
                continue

            finish_run(
                self.engine,
                run_id,
                TaskStatus.SUCCEEDED.value,
                return_value=None if value is None else str(value),
            )
            result.statuses[name] = TaskStatus.SUCCEEDED.value
            result.return_values[name] = value
            logger.info("Task {} succeeded: {}", name, value)
