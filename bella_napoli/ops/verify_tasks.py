from __future__ import annotations

import argparse

from sqlalchemy import func, select

from bella_napoli.config import load_settings
from bella_napoli.db.engine import get_engine
from bella_napoli.db.schema import ops_task_runs
from bella_napoli.jobs.scheduler import build_task_runner


def main() -> int:
    parser = argparse.ArgumentParser(description="Show task states and recent task runs.")
    parser.add_argument("--task", default=None, help="Only show runs of this task.")
    parser.add_argument("--limit", type=int, default=10, help="Runs to show (default: 10).")
    args = parser.parse_args()

    settings = load_settings()
    engine = get_engine(settings)
    runner = build_task_runner(settings, engine)

    with engine.connect() as conn:
        running = conn.execute(
            select(func.count()).select_from(ops_task_runs).where(ops_task_runs.c.status == "RUNNING")
        ).scalar_one()
    print(f"running_count={int(running)}")

    print("tasks:")
    for t in runner.describe():
        print(
            f"- name={t['name']} state={t['state']} schedule={t['schedule']} "
            f"after={','.join(t['predecessors']) or '-'} root={t['root']}"
        )

    print(f"last_{args.limit}_runs:")
    for r in runner.history(args.task, limit=args.limit):
        print(
            f"- run_id={r.get('run_id')} task={r.get('task_name')} status={r.get('status')} "
            f"trigger={r.get('run_trigger')} started_at={r.get('started_at')} "
            f"finished_at={r.get('finished_at')} return_value={r.get('return_value')} "
            f"error_message={r.get('error_message')}"
        )

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
