from __future__ import annotations

import os
import socket
from contextlib import contextmanager
from datetime import timedelta
from uuid import uuid4

from loguru import logger
from sqlalchemy import delete, insert, select, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from bella_napoli.db.schema import ops_locks
from bella_napoli.utils.time import naive_utc_now

LOCK_NAME = "bella_napoli_refresh_lock"
DEFAULT_LOCK_TTL = timedelta(hours=1)


class LockNotAcquired(Exception):
    pass


def _owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:8]}"


def _get_app_lock(conn: Connection, lock_name: str, timeout_ms: int = 0) -> int:
    return int(
        conn.execute(
            text("""
                DECLARE @res int;
                EXEC @res = sp_getapplock
                    @Resource = :resource,
                    @LockMode = 'Exclusive',
                    @LockOwner = 'Session',
                    @LockTimeout = :timeout_ms;
                SELECT @res AS res;
                """),
            {"resource": lock_name, "timeout_ms": int(timeout_ms)},
        ).scalar_one()
    )


def _release_app_lock(conn: Connection, lock_name: str) -> None:
    conn.execute(
        text("""
            DECLARE @res int;
            EXEC @res = sp_releaseapplock
                @Resource = :resource,
                @LockOwner = 'Session';
            """),
        {"resource": lock_name},
    )


def _acquire_lock_row(engine: Engine, lock_name: str, owner: str, ttl: timedelta) -> bool:
    now = naive_utc_now()
    with engine.begin() as conn:
        # a holder that died without releasing loses the lock once it expires
        conn.execute(
            delete(ops_locks)
            .where(ops_locks.c.lock_name == lock_name)
            .where(ops_locks.c.expires_at < now)
        )
    try:
        with engine.begin() as conn:
            conn.execute(
                insert(ops_locks).values(
                    lock_name=lock_name, owner=owner, acquired_at=now, expires_at=now + ttl
                )
            )
    except IntegrityError:
        return False
    return True


def _release_lock_row(engine: Engine, lock_name: str, owner: str) -> None:
    with engine.begin() as conn:
        conn.execute(
            delete(ops_locks)
            .where(ops_locks.c.lock_name == lock_name)
            .where(ops_locks.c.owner == owner)
        )


def lock_holder(engine: Engine, lock_name: str = LOCK_NAME) -> str | None:
    with engine.connect() as conn:
        return conn.execute(
            select(ops_locks.c.owner).where(ops_locks.c.lock_name == lock_name)
        ).scalar()


@contextmanager
def db_lock(
    engine: Engine,
    lock_name: str = LOCK_NAME,
    timeout_ms: int = 0,
    ttl: timedelta = DEFAULT_LOCK_TTL,
):
    """Exclusive, cross-process lock.

    SQL Server uses a session-owned ``sp_getapplock``; other databases fall
    back to a row in ``ops_locks`` that expires after ``ttl``.
    """
    if engine.dialect.name == "mssql":
        with engine.connect() as conn:
            conn = conn.execution_options(isolation_level="AUTOCOMMIT")
            res = _get_app_lock(conn, lock_name=lock_name, timeout_ms=timeout_ms)
            if res < 0:
                logger.info("Lock not acquired (res={}): {}", res, lock_name)
                raise LockNotAcquired(lock_name)

            logger.debug("Lock acquired: {}", lock_name)
            try:
                yield
            finally:
                try:
                    _release_app_lock(conn, lock_name)
                    logger.debug("Lock released: {}", lock_name)
                except Exception as exc:
                    logger.warning("Failed to release lock '{}': {}", lock_name, exc)
        return

    owner = _owner()
    if not _acquire_lock_row(engine, lock_name, owner, ttl):
        logger.info("Lock not acquired (held by {}): {}", lock_holder(engine, lock_name), lock_name)
        raise LockNotAcquired(lock_name)

    logger.debug("Lock acquired: {} ({})", lock_name, owner)
    try:
        yield
    finally:
        try:
            _release_lock_row(engine, lock_name, owner)
            logger.debug("Lock released: {}", lock_name)
        except Exception as exc:
            logger.warning("Failed to release lock '{}': {}", lock_name, exc)
