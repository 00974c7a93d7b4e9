from __future__ import annotations

from collections.abc import Iterable

from bella_napoli.tasks.definitions import TaskDefinition


class TaskGraphError(Exception):
    pass


class TaskGraph:
    """All task definitions, grouped into graphs that hang off a scheduled root."""

    def __init__(self, tasks: Iterable[TaskDefinition]) -> None:
        self._tasks: dict[str, TaskDefinition] = {}
        for t in tasks:
            if t.name in self._tasks:
                raise TaskGraphError(f"Duplicate task: {t.name}")
            self._tasks[t.name] = t

        self._children: dict[str, list[str]] = {n: [] for n in self._tasks}
        for t in self._tasks.values():
            if t.is_root and t.schedule is None:
                raise TaskGraphError(f"{t.name}: root task needs a schedule")
            if not t.is_root and t.schedule is not None:
                raise TaskGraphError(f"{t.name}: child task cannot have its own schedule")
            for parent in t.after:
                if parent not in self._tasks:
                    raise TaskGraphError(f"{t.name}: unknown predecessor {parent}")
                if parent == t.name:
                    raise TaskGraphError(f"{t.name} runs after itself")
                self._children[parent].append(t.name)

        self._order = self._topological_order()
        self._roots = {n: self._find_root(n) for n in self._order}

    def __contains__(self, name: str) -> bool:
        return name in self._tasks

    def get(self, name: str) -> TaskDefinition:
        try:
            return self._tasks[name]
        except KeyError:
            raise TaskGraphError(f"Unknown task: {name}") from None

    def names(self) -> list[str]:
        return list(self._order)

    def roots(self) -> list[TaskDefinition]:
        return [self._tasks[n] for n in self._order if self._tasks[n].is_root]

    def children(self, name: str) -> list[str]:
        return sorted(self._children[self.get(name).name])

    def _topological_order(self) -> list[str]:
        indegree = {n: len(t.after) for n, t in self._tasks.items()}
        ready = sorted(n for n, d in indegree.items() if d == 0)
        order: list[str] = []
        while ready:
            name = ready.pop(0)
            order.append(name)
            for child in sorted(self._children[name]):
                indegree[child] -= 1
                if indegree[child] == 0:
                    ready.append(child)
            ready.sort()
        if len(order) != len(self._tasks):
            stuck = sorted(n for n, d in indegree.items() if d > 0)
            raise TaskGraphError(f"Cycle between tasks: {', '.join(stuck)}")
        return order

    def _find_root(self, name: str) -> str:
        t = self._tasks[name]
        if t.is_root:
            return name
        roots = {self._find_root(p) for p in t.after}
        if len(roots) != 1:
            raise TaskGraphError(f"{name}: predecessors belong to different graphs {sorted(roots)}")
        return roots.pop()

    def root_of(self, name: str) -> str:
        return self._roots[self.get(name).name]

    def descendants(self, name: str) -> list[str]:
        seen: set[str] = set()
        stack = list(self._children[self.get(name).name])
        while stack:
            n = stack.pop()
            if n in seen:
                continue
            seen.add(n)
            stack.extend(self._children[n])
        return [n for n in self._order if n in seen]

    def run_order(self, name: str) -> list[str]:
        """``name`` followed by its descendants, parents before children."""
        wanted = {name, *self.descendants(name)}
        return [n for n in self._order if n in wanted]
