from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any

from sqlalchemy.engine import Connection
from sqlalchemy.sql.schema import Table

from bella_napoli.db.schema import key_columns
from bella_napoli.utils.time import format_duration, parse_duration

DOWNSTREAM = "DOWNSTREAM"

Partition = tuple
ComputeFn = Callable[[Connection, "set[Partition] | None"], list[dict[str, Any]]]
PartitionFn = Callable[[dict[str, Any]], "Partition | Iterable[Partition] | None"]


class RefreshMode(str, Enum):
    AUTO = "AUTO"
    INCREMENTAL = "INCREMENTAL"
    FULL = "FULL"


class RefreshAction(str, Enum):
    NO_DATA = "NO_DATA"
    INCREMENTAL = "INCREMENTAL"
    FULL = "FULL"
    REINITIALIZE = "REINITIALIZE"


class RefreshState(str, Enum):
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    UPSTREAM_FAILED = "UPSTREAM_FAILED"
    SKIPPED = "SKIPPED"


class SchedulingState(str, Enum):
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"


def same_columns(*columns: str) -> PartitionFn:
    """Partition mapping that reads the partition values straight off the source row."""

    def _map(row: dict[str, Any]) -> Partition | None:
        values = tuple(row.get(c) for c in columns)
        return None if any(v is None for v in values) else values

    return _map


@dataclass(frozen=True)
class DynamicTable:
    """A derived table kept fresh by the refresh scheduler.

    ``compute`` returns the table's rows for the given partitions (all rows
    when called with ``None``). ``partition_maps`` tell the executor which
    partitions a changed source row touches; a changed source without a
    mapping forces a full refresh.
    """

    table: Table
    sources: tuple[str, ...]
    compute: ComputeFn
    target_lag: timedelta | None = None
    partition_by: tuple[str, ...] = ()
    partition_maps: Mapping[str, PartitionFn] = field(default_factory=dict)
    refresh_mode: RefreshMode = RefreshMode.AUTO
    volatile_columns: tuple[str, ...] = ()
    comment: str | None = None

    def __post_init__(self) -> None:
        missing = [c for c in self.partition_by if c not in self.table.c]
        if missing:
            raise ValueError(f"{self.name}: unknown partition columns {missing}")
        unknown = set(self.partition_maps) - set(self.sources)
        if unknown:
            raise ValueError(f"{self.name}: partition maps for non-sources {sorted(unknown)}")
        if self.refresh_mode is RefreshMode.INCREMENTAL and not self.partition_by:
            raise ValueError(f"{self.name}: INCREMENTAL refresh needs partition_by")

    @property
    def name(self) -> str:
        return self.table.name

    @property
    def key_columns(self) -> tuple[str, ...]:
        return key_columns(self.table)

    @property
    def lag_label(self) -> str:
        return DOWNSTREAM if self.target_lag is None else format_duration(self.target_lag)

    def supports_incremental(self, changed_sources: Iterable[str]) -> bool:
        if self.refresh_mode is RefreshMode.FULL or not self.partition_by:
            return False
        return all(s in self.partition_maps for s in changed_sources)


def dynamic_table(
    table: Table,
    *,
    sources: Iterable[str],
    compute: ComputeFn,
    target_lag: str | timedelta = DOWNSTREAM,
    partition_by: Iterable[str] = (),
    partition_maps: Mapping[str, PartitionFn] | None = None,
    refresh_mode: RefreshMode | str = RefreshMode.AUTO,
    volatile_columns: Iterable[str] = (),
    comment: str | None = None,
) -> DynamicTable:
    lag = None if target_lag == DOWNSTREAM else parse_duration(target_lag)
    return DynamicTable(
        table=table,
        sources=tuple(sources),
        compute=compute,
        target_lag=lag,
        partition_by=tuple(partition_by),
        partition_maps=dict(partition_maps or {}),
        refresh_mode=RefreshMode(refresh_mode),
        volatile_columns=tuple(volatile_columns),
        comment=comment,
    )
