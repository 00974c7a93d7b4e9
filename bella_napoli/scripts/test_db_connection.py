from __future__ import annotations

import argparse
import sys
from pathlib import Path

from loguru import logger
from sqlalchemy.exc import DBAPIError, OperationalError
from tenacity import retry, stop_after_attempt, wait_fixed

PROJECT_ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(PROJECT_ROOT))

from bella_napoli.config import load_settings  # noqa: E402
from bella_napoli.db.engine import build_sqlalchemy_url, ensure_database_exists, get_engine  # noqa: E402
from bella_napoli.db.healthcheck import run_healthcheck  # noqa: E402

logger.remove()
logger.add(sys.stderr, level="WARNING")

# (substring of the driver message, hint)
HINTS = [
    ("LOGIN FAILED", "check DB_USER/DB_PASSWORD and that SQL Server allows SQL authentication."),
    ("28000", "check DB_USER/DB_PASSWORD and that SQL Server allows SQL authentication."),
    ("CREATE DATABASE PERMISSION DENIED", "create DB_NAME by hand or use a login that may create databases."),
    ("CANNOT OPEN DATABASE", "DB_NAME does not exist yet; drop --no-create-db or create it by hand."),
    ("08001", "check the server is running and DB_HOST/DB_PORT are reachable."),
    ("SERVER WAS NOT FOUND", "check the server is running and DB_HOST/DB_PORT are reachable."),
    ("CERTIFICATE", "for local development keep DB_TRUST_CERT=yes."),
    ("UNABLE TO OPEN DATABASE FILE", "the directory of the SQLite file in DATABASE_URL must exist."),
]


def hint_for(exc: BaseException) -> str:
    message = str(getattr(exc, "orig", exc)).upper()
    for needle, hint in HINTS:
        if needle in message:
            return f"Hint: {hint}"
    return "Hint: verify DATABASE_URL, or the DB_* connection settings."


@retry(stop=stop_after_attempt(3), wait=wait_fixed(1), reraise=True)
def _healthcheck_with_retry(settings) -> dict:
    return run_healthcheck(get_engine(settings))


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Check the warehouse database is reachable and report missing tables."
    )
    parser.add_argument(
        "--no-create-db",
        action="store_true",
        help="Do not create DB_NAME if it does not exist (SQL Server only).",
    )
    args = parser.parse_args()

    try:
        settings = load_settings()
    except RuntimeError as exc:
        print(f"CONFIG ERROR: {exc}")
        return 2

    url = build_sqlalchemy_url(settings)
    print(f"Connecting to {url.render_as_string(hide_password=True)}")

    try:
        if not args.no_create_db:
            result = ensure_database_exists(settings)
            if result.created:
                print(f"Database created: {settings.db_name}")
        report = _healthcheck_with_retry(settings)
    except (OperationalError, DBAPIError) as exc:
        logger.debug("DB error: {}", exc)
        print("FAILURE: could not connect to the warehouse database.")
        print(hint_for(exc))
        print(f"Details: {getattr(exc, 'orig', exc)}")
        return 1

    print(f"SUCCESS: dialect={report['dialect']} now={report['now']} tables={report['tables']}")
    if report["missing_tables"]:
        print(f"Missing tables: {', '.join(report['missing_tables'])}")
        print("Run: python -m bella_napoli.etl.01_create_warehouse")
        return 3
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
