from __future__ import annotations

from dataclasses import dataclass, field

import allure
import pytest

from course_orchestrator.orchestrator.graph import (
    TaskGraph,
    TaskGraphCycleError,
    calculate_job_completion_percentage,
    find_cycle,
    is_ready,
    next_ready_tasks,
    validate_acyclic,
)
from course_orchestrator.orchestrator.models import TaskSpec, TaskStatus, TaskType

pytestmark = [
    allure.epic("Task Graph"),
    allure.feature("Readiness & Ordering"),
]


@dataclass
class _Task:
    task_key: str
    status: TaskStatus = TaskStatus.PENDING
    dependencies: list[str] = field(default_factory=list)
    execution_priority: int = 0
    sequence: int = 0


def _spec(key: str, *deps: str) -> TaskSpec:
    return TaskSpec(task_key=key, task_type=TaskType.LESSON_SECTION, dependencies=list(deps))


def test_task_without_dependencies_is_ready() -> None:
    task = _Task("a")
    assert is_ready(task, {"a": task}) is True


@pytest.mark.parametrize(
    ("dependency_status", "expected"),
    [
        (TaskStatus.COMPLETED, True),
        (TaskStatus.SKIPPED, True),
        (TaskStatus.PENDING, False),
        (TaskStatus.RUNNING, False),
        (TaskStatus.RETRYING, False),
        (TaskStatus.FAILED, False),
        (TaskStatus.CANCELLED, False),
    ],
)
def test_readiness_requires_completed_or_skipped_dependencies(
    dependency_status: TaskStatus,
    expected: bool,
) -> None:
    dependency = _Task("a", status=dependency_status)
    task = _Task("b", dependencies=["a"])
    assert is_ready(task, {"a": dependency, "b": task}) is expected


def test_unresolved_dependency_is_not_ready_and_not_an_error() -> None:
    task = _Task("b", dependencies=["missing"])
    assert is_ready(task, {"b": task}) is False


def test_next_ready_tasks_orders_by_priority_then_creation() -> None:
    tasks = [
        _Task("root", status=TaskStatus.COMPLETED, sequence=0),
        _Task("low", dependencies=["root"], execution_priority=1, sequence=1),
        _Task("high-late", dependencies=["root"], execution_priority=5, sequence=3),
        _Task("high-early", dependencies=["root"], execution_priority=5, sequence=2),
        _Task("blocked", dependencies=["low"], execution_priority=99, sequence=4),
        _Task("running", status=TaskStatus.RUNNING, execution_priority=99, sequence=5),
        _Task("queued", status=TaskStatus.QUEUED, execution_priority=3, sequence=6),
    ]

    ready = next_ready_tasks(tasks)

    assert [task.task_key for task in ready] == ["high-early", "high-late", "queued", "low"]


def test_task_graph_dependents() -> None:
    graph = TaskGraph.from_specs([_spec("a"), _spec("b", "a"), _spec("c", "a"), _spec("d", "b")])
    assert sorted(graph.dependents_of("a")) == ["b", "c"]
    assert graph.dependents_of("b") == ["d"]
    assert graph.dependents_of("d") == []
    assert graph.dependents_of("unknown") == []


def test_find_cycle_returns_closed_path() -> None:
    cycle = find_cycle([_spec("a", "c"), _spec("b", "a"), _spec("c", "b"), _spec("d")])
    assert cycle is not None
    assert cycle[0] == cycle[-1]
    assert set(cycle) == {"a", "b", "c"}


def test_acyclic_graph_with_dangling_reference_passes_validation() -> None:
    validate_acyclic([_spec("a"), _spec("b", "a", "elsewhere")])


def test_validate_acyclic_rejects_self_dependency() -> None:
    with pytest.raises(TaskGraphCycleError, match="a -> a") as error:
        validate_acyclic([_spec("a", "a")])
    assert error.value.cycle == ["a", "a"]


@pytest.mark.parametrize(
    ("total", "completed", "expected"),
    [
        (0, 0, 0.0),
        (3, 0, 0.0),
        (3, 1, 33.33),
        (3, 2, 66.67),
        (5, 5, 100.0),
    ],
)
def test_completion_percentage(total: int, completed: int, expected: float) -> None:
    assert calculate_job_completion_percentage(total, completed) == expected
