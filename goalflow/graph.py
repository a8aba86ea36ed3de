"""
Dependency graph over a plan's tasks: layering and critical-path analysis.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from functools import cached_property

from .domain import Task
from .errors import CircularDependencyError, DuplicateTaskError, UnknownDependencyError

_EPSILON = 1e-6


@dataclass(frozen=True)
class TaskSchedule:
    """Earliest/latest start and finish for one task, in minutes from plan start."""

    earliest_start: float
    earliest_finish: float
    latest_start: float
    latest_finish: float

    @property
    def slack(self) -> float:
        return self.latest_start - self.earliest_start

    @property
    def critical(self) -> bool:
        return abs(self.slack) < _EPSILON


def find_cycle(tasks: Sequence[Task]) -> list[str]:
    """Return one dependency cycle as a path of task ids, or an empty list."""
    by_id = {task.id: task for task in tasks}
    state: dict[str, int] = {}  # 1 = on stack, 2 = done

    def visit(task_id: str, path: list[str]) -> list[str]:
        state[task_id] = 1
        path.append(task_id)
        for dep in sorted(by_id[task_id].dependencies):
            if dep not in by_id:
                continue
            if state.get(dep) == 1:
                return path[path.index(dep) :] + [dep]
            if dep not in state:
                cycle = visit(dep, path)
                if cycle:
                    return cycle
        path.pop()
        state[task_id] = 2
        return []

    for task in tasks:
        if task.id not in state:
            cycle = visit(task.id, [])
            if cycle:
                return cycle
    return []


class DependencyGraph:
    """DAG over a task set; edges point from a task to the tasks it depends on.

    Construction validates the task set and raises ``DuplicateTaskError``,
    ``UnknownDependencyError`` or ``CircularDependencyError``.
    """

    def __init__(self, tasks: Iterable[Task]) -> None:
        self._tasks: dict[str, Task] = {}
        for task in tasks:
            if task.id in self._tasks:
                raise DuplicateTaskError(task.id)
            self._tasks[task.id] = task

        for task in self._tasks.values():
            if task.id in task.dependencies:
                raise CircularDependencyError([task.id, task.id])
            for dep in sorted(task.dependencies):
                if dep not in self._tasks:
                    raise UnknownDependencyError(task.id, dep)

        cycle = find_cycle(list(self._tasks.values()))
        if cycle:
            raise CircularDependencyError(cycle)

        self._dependents: dict[str, list[str]] = {task_id: [] for task_id in self._tasks}
        for task in self._tasks.values():
            for dep in task.dependencies:
                self._dependents[dep].append(task.id)

    def __len__(self) -> int:
        return len(self._tasks)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    @property
    def task_ids(self) -> list[str]:
        return list(self._tasks)

    @property
    def edges(self) -> list[tuple[str, str]]:
        """(prerequisite, dependent) pairs."""
        return [(dep, task.id) for task in self._tasks.values() for dep in sorted(task.dependencies)]

    def dependencies_of(self, task_id: str) -> frozenset[str]:
        return self._tasks[task_id].dependencies

    def dependents_of(self, task_id: str) -> list[str]:
        return list(self._dependents[task_id])

    def descendants(self, task_id: str, *, data_only: bool = False) -> list[str]:
        """Tasks that depend on ``task_id`` directly or transitively, in task order.

        With ``data_only`` the walk only follows edges where the dependent
        consumes the prerequisite's output.
        """
        seen: set[str] = set()
        frontier = [task_id]
        while frontier:
            current = frontier.pop()
            for child in self._dependents[current]:
                if child in seen:
                    continue
                if data_only and current in self._tasks[child].soft_dependencies:
                    continue
                seen.add(child)
                frontier.append(child)
        return [t for t in self._tasks if t in seen]

    def has_path(self, source: str, target: str) -> bool:
        """True if ``target`` transitively depends on ``source``."""
        return target in self.descendants(source)

    @cached_property
    def layers(self) -> list[list[str]]:
        """Layer 0 has no dependencies; layer k depends only on layers < k."""
        layer_of: dict[str, int] = {}
        for task_id in self.topological_order:
            deps = self._tasks[task_id].dependencies
            layer_of[task_id] = 1 + max((layer_of[d] for d in deps), default=-1)
        depth = max(layer_of.values(), default=-1) + 1
        return [[t for t in self._tasks if layer_of[t] == k] for k in range(depth)]

    @cached_property
    def topological_order(self) -> list[str]:
        remaining = {task_id: len(task.dependencies) for task_id, task in self._tasks.items()}
        order: list[str] = []
        ready = [task_id for task_id, count in remaining.items() if count == 0]
        while ready:
            current = ready.pop(0)
            order.append(current)
            for child in self._dependents[current]:
                remaining[child] -= 1
                if remaining[child] == 0:
                    ready.append(child)
        return order

    @cached_property
    def schedule(self) -> dict[str, TaskSchedule]:
        """Forward and backward pass of the critical path method."""
        earliest_start: dict[str, float] = {}
        earliest_finish: dict[str, float] = {}
        for task_id in self.topological_order:
            task = self._tasks[task_id]
            start = max((earliest_finish[d] for d in task.dependencies), default=0.0)
            earliest_start[task_id] = start
            earliest_finish[task_id] = start + task.estimated_minutes

        finish = max(earliest_finish.values(), default=0.0)
        latest_start: dict[str, float] = {}
        latest_finish: dict[str, float] = {}
        for task_id in reversed(self.topological_order):
            task = self._tasks[task_id]
            successors = self._dependents[task_id]
            latest = min((latest_start[s] for s in successors), default=finish)
            latest_finish[task_id] = latest
            latest_start[task_id] = latest - task.estimated_minutes

        return {
            task_id: TaskSchedule(
                earliest_start=earliest_start[task_id],
                earliest_finish=earliest_finish[task_id],
                latest_start=latest_start[task_id],
                latest_finish=latest_finish[task_id],
            )
            for task_id in self._tasks
        }

    @property
    def total_minutes(self) -> float:
        return max((s.earliest_finish for s in self.schedule.values()), default=0.0)

    def slack(self, task_id: str) -> float:
        return self.schedule[task_id].slack

    def is_critical(self, task_id: str) -> bool:
        return self.schedule[task_id].critical

    @property
    def critical_tasks(self) -> list[str]:
        return [task_id for task_id in self._tasks if self.schedule[task_id].critical]

    @cached_property
    def critical_path(self) -> list[str]:
        """One longest chain, in execution order; its durations sum to ``total_minutes``."""
        schedule = self.schedule
        current = next(
            (
                t
                for t in self.topological_order
                if schedule[t].critical and not self._tasks[t].dependencies
            ),
            None,
        )
        path: list[str] = []
        while current is not None:
            path.append(current)
            finish = schedule[current].earliest_finish
            current = next(
                (
                    child
                    for child in self._dependents[current]
                    if schedule[child].critical
                    and abs(schedule[child].earliest_start - finish) < _EPSILON
                ),
                None,
            )
        return path
