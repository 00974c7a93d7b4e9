from __future__ import annotations

import json
import os
from typing import Any

from sqlalchemy import insert
from sqlalchemy.engine import Connection

from bella_napoli.cdc.changes import encode_value
from bella_napoli.db.schema import audit_log
from bella_napoli.utils.time import naive_utc_now


def current_user() -> str:
    return os.environ.get("USER") or os.environ.get("USERNAME") or "bella_napoli"


def log_audit_event(
    conn: Connection,
    event_type: str,
    table_name: str | None,
    record_id: int | None,
    details: Any = None,
    user_name: str | None = None,
) -> str:
    conn.execute(
        insert(audit_log).values(
            event_timestamp=naive_utc_now(),
            event_type=event_type,
            table_name=table_name,
            record_id=record_id,
            user_name=user_name or current_user(),
            details=None if details is None else json.dumps(details, default=encode_value),
        )
    )
    return "Audit event logged successfully"
