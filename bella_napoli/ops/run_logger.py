from __future__ import annotations

from datetime import timedelta
from uuid import uuid4

from sqlalchemy import insert, select, update
from sqlalchemy.engine import Engine

from bella_napoli.db.schema import ops_task_runs
from bella_napoli.utils.time import naive_utc_now

RUNNING = "RUNNING"
MAX_TEXT_CHARS = 3800


def _truncate(msg: str | None) -> str | None:
    if msg is not None and len(msg) > MAX_TEXT_CHARS:
        return msg[:MAX_TEXT_CHARS] + "..."
    return msg


def fail_stale_running_runs(engine: Engine, older_than_minutes: int = 60) -> int:
    cutoff = naive_utc_now() - timedelta(minutes=int(older_than_minutes))
    with engine.begin() as conn:
        res = conn.execute(
            update(ops_task_runs)
            .where(ops_task_runs.c.status == RUNNING)
            .where(ops_task_runs.c.finished_at.is_(None))
            .where(ops_task_runs.c.started_at < cutoff)
            .values(
                status="FAILED",
                finished_at=naive_utc_now(),
                error_message=(
                    f"Auto-failed stale running run (older than {int(older_than_minutes)} minutes)."
                ),
            )
        )
        return int(getattr(res, "rowcount", 0) or 0)


def start_run(
    engine: Engine,
    task_name: str,
    *,
    root_task_name: str,
    graph_run_id: str,
    trigger: str,
) -> str:
    run_id = str(uuid4())
    with engine.begin() as conn:
        conn.execute(
            insert(ops_task_runs).values(
                run_id=run_id,
                task_name=task_name,
                root_task_name=root_task_name,
                graph_run_id=graph_run_id,
                run_trigger=trigger,
                started_at=naive_utc_now(),
                status=RUNNING,
            )
        )
    return run_id


def finish_run(
    engine: Engine,
    run_id: str,
    status: str,
    return_value: str | None = None,
    error_message: str | None = None,
) -> None:
    with engine.begin() as conn:
        conn.execute(
            update(ops_task_runs)
            .where(ops_task_runs.c.run_id == run_id)
            .where(ops_task_runs.c.finished_at.is_(None))
            .values(
                finished_at=naive_utc_now(),
                status=str(status)[:20],
                return_value=_truncate(return_value),
                error_message=_truncate(error_message),
            )
        )


def record_skipped_run(
    engine: Engine,
    task_name: str,
    *,
    root_task_name: str,
    graph_run_id: str,
    trigger: str,
    reason: str,
) -> str:
    run_id = start_run(
        engine,
        task_name,
        root_task_name=root_task_name,
        graph_run_id=graph_run_id,
        trigger=trigger,
    )
    finish_run(engine, run_id, "SKIPPED", error_message=reason)
    return run_id


def task_history(engine: Engine, task_name: str | None = None, limit: int = 50) -> list[dict]:
    stmt = select(ops_task_runs).order_by(ops_task_runs.c.started_at.desc())
    if task_name is not None:
        stmt = stmt.where(ops_task_runs.c.task_name == task_name)
    with engine.connect() as conn:
        return [dict(r) for r in conn.execute(stmt.limit(limit)).mappings()]
