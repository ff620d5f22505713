"""Task graph queries: readiness, ordering, acyclicity and progress."""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable, Mapping, Sequence
from enum import Enum
from typing import Protocol, TypeVar

from course_orchestrator.orchestrator.models import SETTLED_TASK_STATUSES, TaskSpec, TaskStatus


class GraphTask(Protocol):
    task_key: str
    status: TaskStatus
    dependencies: list[str]
    execution_priority: int
    sequence: int


_T = TypeVar("_T", bound=GraphTask)


class TaskGraphCycleError(ValueError):
    """Raised when task dependencies form a cycle."""

    def __init__(self, cycle: list[str]) -> None:
        self.cycle = cycle
        super().__init__(f"Task graph has a dependency cycle: {' -> '.join(cycle)}")


class _Color(Enum):
    WHITE = 0
    GRAY = 1
    BLACK = 2


class TaskGraph:
    """Adjacency view of one job's tasks keyed by symbolic identifier."""

    def __init__(self, dependencies: Mapping[str, Sequence[str]]) -> None:
        self._dependencies: dict[str, list[str]] = {
            key: list(deps) for key, deps in dependencies.items()
        }
        self._dependents: defaultdict[str, list[str]] = defaultdict(list)
        for key, deps in self._dependencies.items():
            for dep in deps:
                self._dependents[dep].append(key)

    @classmethod
    def from_specs(cls, specs: Iterable[TaskSpec]) -> TaskGraph:
        return cls({spec.task_key: spec.dependencies for spec in specs})

    def dependents_of(self, key: str) -> list[str]:
        """Keys that list `key` among their dependencies."""

        return list(self._dependents.get(key, []))

    def find_cycle(self) -> list[str] | None:
        """Return one dependency cycle as a closed key path, or None.

        Depth-first search with three-state coloring; references to keys outside
        the graph are ignored here since readiness already treats them as unmet.
        """

        colors = dict.fromkeys(self._dependencies, _Color.WHITE)

        def visit(key: str, path: list[str]) -> list[str] | None:
            if colors[key] is _Color.GRAY:
                return path[path.index(key) :] + [key]
            if colors[key] is _Color.BLACK:
                return None
            colors[key] = _Color.GRAY
            path.append(key)
            for dep in self._dependencies[key]:
                if dep in colors and (cycle := visit(dep, path)):
                    return cycle
            path.pop()
            colors[key] = _Color.BLACK
            return None

        for key in self._dependencies:
            if colors[key] is _Color.WHITE and (cycle := visit(key, [])):
                return cycle
        return None


def find_cycle(specs: Iterable[TaskSpec]) -> list[str] | None:
    return TaskGraph.from_specs(specs).find_cycle()


def validate_acyclic(specs: Iterable[TaskSpec]) -> None:
    """Reject a decomposition whose dependencies contain a cycle."""

    cycle = find_cycle(specs)
    if cycle is not None:
        raise TaskGraphCycleError(cycle)


def is_ready(task: GraphTask, tasks_by_key: Mapping[str, GraphTask]) -> bool:
    """True iff every dependency resolves to a completed or skipped task.

    An unresolved reference makes the task not ready; it is never an error.
    """

    for dep_key in task.dependencies:
        dependency = tasks_by_key.get(dep_key)
        if dependency is None or dependency.status not in SETTLED_TASK_STATUSES:
            return False
    return True


def next_ready_tasks(tasks: Sequence[_T]) -> list[_T]:
    """Ready pending/queued tasks, highest priority first, then creation order."""

    tasks_by_key = {task.task_key: task for task in tasks}
    ready = [
        task
        for task in tasks
        if task.status in {TaskStatus.PENDING, TaskStatus.QUEUED}
        and is_ready(task, tasks_by_key)
    ]
    return sorted(ready, key=lambda task: (-task.execution_priority, task.sequence))


def calculate_job_completion_percentage(total: int, completed: int) -> float:
    """Percentage of finished tasks, two decimals; 0 for an empty job."""

    if total <= 0:
        return 0.0
    return round(100.0 * completed / total, 2)
