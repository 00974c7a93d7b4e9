from __future__ import annotations

import sys
import time
from datetime import timedelta

from apscheduler.schedulers.background import BackgroundScheduler
from loguru import logger

from bella_napoli.config import Settings, load_settings
from bella_napoli.db.engine import get_engine
from bella_napoli.jobs.runner import build_refresh_scheduler, prepare, run_refresh_once
from bella_napoli.ops.run_logger import fail_stale_running_runs
from bella_napoli.refresh.scheduler import RefreshScheduler
from bella_napoli.tasks.catalog import build_task_graph
from bella_napoli.tasks.runner import TaskRunner
from bella_napoli.tasks.sentiment import LexiconScorer

logger.remove()
logger.add(sys.stderr, level="INFO")


def _run_refresh_job(refresh: RefreshScheduler) -> None:
    try:
        run_refresh_once(refresh)
    except Exception:
        logger.exception("Scheduled refresh failed")


def _run_task_job(runner: TaskRunner, root: str) -> None:
    try:
        result = runner.run_root(root)
        if not result.ok:
            logger.error("Task graph {} finished with failures: {}", root, result.errors)
    except Exception:
        logger.exception("Task graph {} crashed", root)


def build_task_runner(settings: Settings, engine) -> TaskRunner:
    return TaskRunner(
        engine,
        build_task_graph(),
        services={
            "scorer": LexiconScorer(),
            "timezone": settings.scheduler_timezone,
            "tax_rate": settings.tax_rate,
        },
    )


def build_scheduler(settings: Settings, refresh: RefreshScheduler, runner: TaskRunner | None):
    scheduler = BackgroundScheduler(
        timezone=settings.scheduler_timezone,
        job_defaults={
            # cross-process overlap is guarded by db_lock
            "max_instances": 1,
            "coalesce": settings.scheduler_coalesce,
            "misfire_grace_time": settings.scheduler_misfire_grace_seconds,
        },
    )

    scheduler.add_job(
        _run_refresh_job,
        "interval",
        seconds=int(refresh.tick / timedelta(seconds=1)),
        args=[refresh],
        id="dynamic_table_refresh",
    )

    if runner is not None:
        for root in runner.graph.roots():
            scheduler.add_job(
                _run_task_job,
                root.schedule.trigger(settings.scheduler_timezone),
                args=[runner, root.name],
                id=root.name,
                name=root.comment or root.name,
            )
    return scheduler


def main() -> int:
    settings = load_settings()
    engine = get_engine(settings)
    prepare(engine)

    refresh = build_refresh_scheduler(settings, engine)
    refresh.register_all()

    runner = None
    if settings.tasks_enabled:
        runner = build_task_runner(settings, engine)
        runner.register_all()
        stale = fail_stale_running_runs(engine, older_than_minutes=60)
        if stale:
            logger.warning("Marked {} stale task runs as failed", stale)

    scheduler = build_scheduler(settings, refresh, runner)
    scheduler.start()
    logger.info(
        "Scheduler started: refresh tick={}s tasks={}",
        settings.refresh_tick_seconds,
        "on" if runner is not None else "off",
    )
    for job in scheduler.get_jobs():
        logger.info("  {} -> {}", job.id, job.trigger)

    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("Scheduler stopping...")
        scheduler.shutdown(wait=False)
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
