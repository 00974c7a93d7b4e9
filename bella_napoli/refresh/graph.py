from __future__ import annotations

from collections.abc import Iterable
from datetime import timedelta

from bella_napoli.db.schema import TRACKED_TABLES
from bella_napoli.refresh.definitions import DynamicTable


class CycleError(Exception):
    pass


class UnknownSourceError(Exception):
    pass


class RefreshGraph:
    """Dependency graph of dynamic tables over change-tracked base tables."""

    def __init__(self, tables: Iterable[DynamicTable]) -> None:
        self._tables: dict[str, DynamicTable] = {}
        for dt in tables:
            if dt.name in self._tables:
                raise ValueError(f"Duplicate dynamic table: {dt.name}")
            self._tables[dt.name] = dt

        for dt in self._tables.values():
            for src in dt.sources:
                if src == dt.name:
                    raise CycleError(f"{dt.name} reads from itself")
                if src not in self._tables and src not in TRACKED_TABLES:
                    raise UnknownSourceError(f"{dt.name}: unknown source {src}")

        self._consumers: dict[str, list[str]] = {name: [] for name in self._tables}
        for dt in self._tables.values():
            for src in dt.sources:
                if src in self._tables:
                    self._consumers[src].append(dt.name)

        self._order = self._topological_order()

    def __contains__(self, name: str) -> bool:
        return name in self._tables

    def __iter__(self):
        return iter(self.order())

    def __len__(self) -> int:
        return len(self._tables)

    def get(self, name: str) -> DynamicTable:
        try:
            return self._tables[name]
        except KeyError:
            raise KeyError(f"Unknown dynamic table: {name}") from None

    def is_dynamic(self, name: str) -> bool:
        return name in self._tables

    def order(self) -> list[DynamicTable]:
        return [self._tables[n] for n in self._order]

    def _topological_order(self) -> list[str]:
        # Kahn's algorithm; ties broken by name so the order is stable
        indegree = {
            name: sum(1 for s in dt.sources if s in self._tables)
            for name, dt in self._tables.items()
        }
        ready = sorted(n for n, d in indegree.items() if d == 0)
        order: list[str] = []
        while ready:
            name = ready.pop(0)
            order.append(name)
            for consumer in sorted(self._consumers[name]):
                indegree[consumer] -= 1
                if indegree[consumer] == 0:
                    ready.append(consumer)
            ready.sort()
        if len(order) != len(self._tables):
            stuck = sorted(n for n, d in indegree.items() if d > 0)
            raise CycleError(f"Cycle between dynamic tables: {', '.join(stuck)}")
        return order

    def upstream(self, name: str) -> list[str]:
        """Dynamic tables ``name`` depends on, directly or transitively."""
        seen: set[str] = set()
        stack = [s for s in self.get(name).sources if s in self._tables]
        while stack:
            n = stack.pop()
            if n in seen:
                continue
            seen.add(n)
            stack.extend(s for s in self._tables[n].sources if s in self._tables)
        return [n for n in self._order if n in seen]

    def downstream(self, name: str) -> list[str]:
        seen: set[str] = set()
        stack = list(self._consumers[self.get(name).name])
        while stack:
            n = stack.pop()
            if n in seen:
                continue
            seen.add(n)
            stack.extend(self._consumers[n])
        return [n for n in self._order if n in seen]

    def consumers(self, name: str) -> list[str]:
        return sorted(self._consumers[self.get(name).name])

    def effective_lag(self, name: str) -> timedelta | None:
        """Target lag, resolving ``DOWNSTREAM`` to the tightest consumer lag."""
        dt = self.get(name)
        if dt.target_lag is not None:
            return dt.target_lag
        lags = [self.effective_lag(c) for c in self._consumers[name]]
        lags = [lag for lag in lags if lag is not None]
        return min(lags) if lags else None

    def closure_with_upstream(self, names: Iterable[str]) -> list[str]:
        wanted: set[str] = set()
        for n in names:
            wanted.add(self.get(n).name)
            wanted.update(self.upstream(n))
        return [n for n in self._order if n in wanted]
