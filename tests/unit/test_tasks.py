"""
Unit tests for task definitions, task graphs and the task runner.
"""

from datetime import timedelta

import pytest
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import insert, select

from bella_napoli.db.schema import audit_log, ops_task_runs
from bella_napoli.jobs.locking import db_lock
from bella_napoli.ops.run_logger import fail_stale_running_runs
from bella_napoli.tasks.catalog import build_task_graph
from bella_napoli.tasks.definitions import TaskState, parse_schedule, task
from bella_napoli.tasks.graph import TaskGraph, TaskGraphError
from bella_napoli.tasks.runner import TaskRunner
from bella_napoli.utils.time import naive_utc_now


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def ok(ctx):
    return f"{ctx.task_name} done"


def boom(ctx):
    raise RuntimeError("kaboom")


def write_audit(ctx):
    ctx.conn.execute(
        insert(audit_log).values(event_timestamp=ctx.scheduled_at, event_type=ctx.task_name)
    )
    return "written"


def runs(engine, **filters):
    stmt = select(ops_task_runs)
    for col, value in filters.items():
        stmt = stmt.where(ops_task_runs.c[col] == value)
    with engine.connect() as conn:
        return [dict(r) for r in conn.execute(stmt).mappings()]


def statuses(engine):
    return {r["task_name"]: r["status"] for r in runs(engine)}


# ---------------------------------------------------------------------------
# Schedules
# ---------------------------------------------------------------------------

class TestSchedules:

    def test_interval(self):
        s = parse_schedule("15 MINUTES")
        assert s.interval == timedelta(minutes=15)
        assert s.label == "15 MINUTES"
        assert isinstance(s.trigger(), IntervalTrigger)

    def test_cron_with_timezone(self):
        s = parse_schedule("USING CRON 0 6 * * MON America/Chicago")
        assert (s.cron, s.timezone) == ("0 6 * * MON", "America/Chicago")
        assert s.label == "USING CRON 0 6 * * MON America/Chicago"
        assert isinstance(s.trigger(), CronTrigger)

    def test_cron_needs_five_fields(self):
        with pytest.raises(ValueError):
            parse_schedule("USING CRON 0 6 * * America/Chicago")

    def test_garbage_rejected(self):
        with pytest.raises(ValueError):
            parse_schedule("whenever")


# ---------------------------------------------------------------------------
# Graph validation
# ---------------------------------------------------------------------------

class TestTaskGraph:

    def test_root_needs_schedule(self):
        with pytest.raises(TaskGraphError):
            TaskGraph([task("a", ok)])

    def test_child_cannot_have_schedule(self):
        with pytest.raises(TaskGraphError):
            TaskGraph([task("a", ok, schedule="1 MINUTE"), task("b", ok, schedule="1 MINUTE", after=["a"])])

    def test_unknown_predecessor(self):
        with pytest.raises(TaskGraphError):
            TaskGraph([task("a", ok, schedule="1 MINUTE"), task("b", ok, after=["zz"])])

    def test_cycle(self):
        with pytest.raises(TaskGraphError):
            TaskGraph([task("a", ok, schedule="1 MINUTE"), task("b", ok, after=["c"]), task("c", ok, after=["b"])])

    def test_duplicate_name(self):
        with pytest.raises(TaskGraphError):
            TaskGraph([task("a", ok, schedule="1 MINUTE"), task("a", ok, schedule="1 MINUTE")])

    def test_predecessors_from_two_graphs(self):
        with pytest.raises(TaskGraphError):
            TaskGraph(
                [
                    task("a", ok, schedule="1 MINUTE"),
                    task("b", ok, schedule="1 MINUTE"),
                    task("c", ok, after=["a", "b"]),
                ]
            )

    def test_run_order_parents_first(self):
        graph = TaskGraph(
            [
                task("root", ok, schedule="1 MINUTE"),
                task("left", ok, after=["root"]),
                task("right", ok, after=["root"]),
                task("join", ok, after=["left", "right"]),
            ]
        )
        assert graph.run_order("root") == ["root", "left", "right", "join"]
        assert graph.root_of("join") == "root"


class TestWarehouseTasks:

    def test_roots(self):
        roots = {t.name for t in build_task_graph().roots()}
        assert roots == {
            "task_process_new_orders",
            "task_analyze_review_sentiment",
            "task_check_inventory_alerts",
            "task_log_customer_changes",
            "task_daily_sales_aggregation",
            "task_weekly_report",
            "task_parent_etl_orchestrator",
            "task_cleanup",
        }

    def test_etl_chain(self):
        assert build_task_graph().run_order("task_parent_etl_orchestrator") == [
            "task_parent_etl_orchestrator",
            "task_child_extract",
            "task_child_transform",
            "task_child_load",
        ]

    def test_every_root_has_a_trigger(self):
        for root in build_task_graph().roots():
            assert root.schedule.trigger("America/Chicago") is not None


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------

@pytest.fixture
def chain_runner(engine, clock):
    graph = TaskGraph(
        [
            task("root", ok, schedule="1 MINUTE"),
            task("writer", write_audit, after=["root"]),
            task("fails", boom, after=["root"]),
            task("after_fail", ok, after=["fails"]),
        ]
    )
    runner = TaskRunner(engine, graph, clock=clock)
    runner.register_all()
    return runner


class TestRunner:

    def test_failure_skips_only_its_descendants(self, engine, chain_runner):
        result = chain_runner.run_root("root")
        assert result.statuses == {
            "root": "SUCCEEDED",
            "writer": "SUCCEEDED",
            "fails": "FAILED",
            "after_fail": "SKIPPED",
        }
        assert not result.ok
        assert "kaboom" in result.errors["fails"]
        assert statuses(engine) == result.statuses

    def test_runs_share_graph_run_id(self, engine, chain_runner):
        result = chain_runner.run_root("root")
        assert {r["graph_run_id"] for r in runs(engine)} == {result.graph_run_id}
        assert {r["root_task_name"] for r in runs(engine)} == {"root"}

    def test_return_value_recorded(self, engine, chain_runner):
        chain_runner.run_root("root")
        (row,) = runs(engine, task_name="root")
        assert row["return_value"] == "root done"
        assert row["finished_at"] is not None

    def test_body_writes_committed(self, engine, chain_runner):
        chain_runner.run_root("root")
        with engine.connect() as conn:
            assert conn.execute(select(audit_log.c.event_type)).scalars().all() == ["writer"]

    def test_failed_body_rolled_back(self, engine, clock):
        def write_then_fail(ctx):
            write_audit(ctx)
            raise RuntimeError("late failure")

        runner = TaskRunner(engine, TaskGraph([task("root", write_then_fail, schedule="1 MINUTE")]), clock=clock)
        runner.run_root("root")
        with engine.connect() as conn:
            assert conn.execute(select(audit_log)).first() is None

    def test_suspended_root_does_not_run(self, engine, chain_runner):
        chain_runner.suspend("root")
        result = chain_runner.run_root("root")
        assert result.statuses == {}
        assert runs(engine) == []

    def test_execute_task_forces_suspended_root(self, chain_runner):
        chain_runner.suspend("root")
        result = chain_runner.execute_task("root")
        assert result.statuses["root"] == "SUCCEEDED"

    def test_suspended_child_skipped(self, chain_runner):
        chain_runner.suspend("writer")
        result = chain_runner.run_root("root")
        assert result.statuses["writer"] == "SKIPPED"
        assert result.statuses["fails"] == "FAILED"

    def test_when_false_skips_whole_graph(self, engine, clock):
        graph = TaskGraph(
            [
                task("root", ok, schedule="1 MINUTE", when=lambda conn: False),
                task("child", ok, after=["root"]),
            ]
        )
        result = TaskRunner(engine, graph, clock=clock).run_root("root")
        assert result.statuses == {"root": "SKIPPED", "child": "SKIPPED"}
        (row,) = runs(engine, task_name="root")
        assert "WHEN" in row["error_message"]

    def test_overlapping_run_skipped(self, engine, chain_runner):
        with db_lock(engine, "task:root"):
            result = chain_runner.run_root("root")
        assert result.statuses == {"root": "SKIPPED"}

    def test_allow_overlapping_ignores_lock(self, engine, clock):
        graph = TaskGraph([task("root", ok, schedule="1 MINUTE", allow_overlapping=True)])
        runner = TaskRunner(engine, graph, clock=clock)
        with db_lock(engine, "task:root"):
            result = runner.run_root("root")
        assert result.statuses == {"root": "SUCCEEDED"}

    def test_describe(self, chain_runner):
        chain_runner.suspend("fails")
        info = {d["name"]: d for d in chain_runner.describe()}
        assert info["root"]["schedule"] == "1 MINUTE"
        assert info["fails"]["state"] == TaskState.SUSPENDED.value
        assert info["after_fail"]["predecessors"] == ["fails"]
        assert info["after_fail"]["root"] == "root"

    def test_history_filters_by_task(self, chain_runner):
        chain_runner.run_root("root")
        chain_runner.run_root("root")
        assert len(chain_runner.history("writer")) == 2
        assert len(chain_runner.history()) == 8


class TestStaleRuns:

    def test_old_running_rows_failed(self, engine):
        with engine.begin() as conn:
            conn.execute(
                insert(ops_task_runs).values(
                    run_id="r1",
                    task_name="root",
                    root_task_name="root",
                    graph_run_id="g1",
                    run_trigger="SCHEDULED",
                    started_at=naive_utc_now() - timedelta(hours=3),
                    status="RUNNING",
                )
            )
        assert fail_stale_running_runs(engine, older_than_minutes=60) == 1
        (row,) = runs(engine)
        assert row["status"] == "FAILED"
