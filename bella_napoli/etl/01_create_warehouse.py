from __future__ import annotations

import argparse
import sys

from loguru import logger

from bella_napoli.config import load_settings
from bella_napoli.db.engine import ensure_database_exists, get_engine
from bella_napoli.db.schema import create_all, metadata
from bella_napoli.etl._ops import stats, step
from bella_napoli.jobs.runner import build_refresh_scheduler
from bella_napoli.jobs.scheduler import build_task_runner
from bella_napoli.tasks.definitions import TaskState

logger.remove()
logger.add(sys.stderr, level="INFO")


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Create the warehouse tables and register dynamic tables and tasks."
    )
    parser.add_argument(
        "--no-create-db",
        action="store_true",
        help="Do not create DB_NAME if it does not exist (SQL Server only).",
    )
    parser.add_argument(
        "--suspend-tasks",
        action="store_true",
        help="Register tasks as SUSPENDED (resume them one by one later).",
    )
    args = parser.parse_args()

    settings = load_settings()

    if not args.no_create_db:
        result = ensure_database_exists(settings)
        if result.created:
            print(f"Database created: {settings.db_name}")

    engine = get_engine(settings)

    with step("create_tables"):
        create_all(engine)
    stats("create_tables", tables=len(metadata.tables))

    with step("register_dynamic_tables"):
        refresh = build_refresh_scheduler(settings, engine)
        refresh.register_all()
    stats("register_dynamic_tables", dynamic_tables=len(refresh.graph.order()))

    with step("register_tasks"):
        runner = build_task_runner(settings, engine)
        runner.register_all(
            TaskState.SUSPENDED if args.suspend_tasks else TaskState.STARTED
        )
    stats("register_tasks", tasks=len(runner.graph.names()))

    print("Warehouse ready. Streams are created by 02_seed_sample_data (after the historical load).")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
