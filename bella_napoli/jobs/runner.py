from __future__ import annotations

import argparse
import sys
import time
from datetime import timedelta

from loguru import logger

from bella_napoli.config import Settings, load_settings
from bella_napoli.db.engine import get_engine
from bella_napoli.db.schema import create_all
from bella_napoli.jobs.locking import LockNotAcquired, db_lock
from bella_napoli.pipeline.dynamic_tables import build_graph
from bella_napoli.pipeline.streams import build_streams
from bella_napoli.refresh.scheduler import RefreshScheduler

logger.remove()
logger.add(sys.stderr, level="INFO")


def build_refresh_scheduler(settings: Settings, engine=None) -> RefreshScheduler:
    engine = engine or get_engine(settings)
    return RefreshScheduler(
        engine,
        build_graph(),
        tick=timedelta(seconds=settings.refresh_tick_seconds),
        full_threshold_ratio=settings.refresh_full_threshold_ratio,
        max_failures=settings.refresh_max_failures,
    )


def prepare(engine) -> None:
    create_all(engine)
    with engine.begin() as conn:
        build_streams().create_all(conn)


def run_refresh_once(scheduler: RefreshScheduler, *, tables: list[str] | None = None) -> dict:
    try:
        with db_lock(scheduler.engine):
            if tables:
                result = scheduler.refresh_now(tables)
            else:
                result = scheduler.run_cycle()
    except LockNotAcquired:
        logger.info("Another refresh cycle is in progress; skipping.")
        return {"status": "skipped"}

    if not result.planned:
        logger.info("Nothing due.")
    if result.failed:
        logger.error("Refresh failed for: {}", sorted(result.failed))
        return {"status": "failed", "failed": result.failed, "skipped": result.skipped}
    return {"status": "success", "refreshed": list(result.outcomes)}


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Refresh the dynamic tables (bronze -> silver -> gold) to their target lag."
    )
    mode_group = parser.add_mutually_exclusive_group()
    mode_group.add_argument("--once", action="store_true", help="Run a single cycle and exit.")
    mode_group.add_argument("--watch", action="store_true", help="Run forever, one cycle per interval.")
    parser.add_argument(
        "--interval-seconds",
        type=int,
        default=None,
        help="Watch interval in seconds (default: REFRESH_TICK_SECONDS).",
    )
    parser.add_argument(
        "--table",
        action="append",
        dest="tables",
        help="Refresh this table (and its upstream tables) now. Repeatable; implies --once.",
    )
    args = parser.parse_args()

    settings = load_settings()
    engine = get_engine(settings)
    prepare(engine)
    scheduler = build_refresh_scheduler(settings, engine)

    if args.once or args.tables:
        result = run_refresh_once(scheduler, tables=args.tables)
        return 0 if result["status"] in {"success", "skipped"} else 1

    interval_s = max(5, int(args.interval_seconds or settings.refresh_tick_seconds))
    logger.info("Refresh loop started: interval={}s", interval_s)
    while True:
        result = run_refresh_once(scheduler)
        if result["status"] == "failed":
            logger.error("Refresh cycle failed (will retry next interval).")
        time.sleep(interval_s)


if __name__ == "__main__":
    raise SystemExit(main())
