"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from pathlib import Path

import pytest
from support import ScriptedHandler

from course_orchestrator.config import RetrySettings
from course_orchestrator.orchestrator.circuit_breaker import CircuitBreakerRegistry
from course_orchestrator.orchestrator.executor import TaskExecutor
from course_orchestrator.orchestrator.handlers import HandlerRegistry
from course_orchestrator.orchestrator.models import JobCreate, JobView, TaskSpec, TaskType
from course_orchestrator.orchestrator.repository import OrchestratorRepository


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[OrchestratorRepository]:
    repo = OrchestratorRepository(tmp_path / "orchestrator.db")
    repo.init_schema()
    yield repo
    repo.close()


@pytest.fixture()
def create_job(repository: OrchestratorRepository) -> Callable[..., JobView]:
    """Persist a job from `{key: [dependency keys]}` in declaration order."""

    def _create(
        graph: dict[str, list[str]],
        *,
        max_retry_count: int = 3,
        priorities: dict[str, int] | None = None,
        dependency_name: str = "llm",
        title: str = "Test course",
    ) -> JobView:
        specs = [
            TaskSpec(
                task_key=key,
                task_type=TaskType.LESSON_SECTION,
                dependencies=list(dependencies),
                execution_priority=(priorities or {}).get(key, 0),
                dependency_name=dependency_name,
                input={"section_title": key},
            )
            for key, dependencies in graph.items()
        ]
        return repository.create_job(
            JobCreate(
                title=title,
                tasks=specs,
                owner_id="owner-1",
                tenant_id="tenant-1",
                max_retry_count=max_retry_count,
            ),
        )

    return _create


@pytest.fixture()
def make_executor(repository: OrchestratorRepository) -> Callable[..., TaskExecutor]:
    """Executor with zero retry backoff so retries are claimable immediately."""

    def _make(
        handler: ScriptedHandler | None = None,
        *,
        breakers: CircuitBreakerRegistry | None = None,
        registry: HandlerRegistry | None = None,
    ) -> TaskExecutor:
        return TaskExecutor(
            repository=repository,
            handlers=registry or HandlerRegistry(default=handler or ScriptedHandler()),
            breakers=breakers or CircuitBreakerRegistry(failure_threshold=100),
            worker_id="worker-test",
            retry=RetrySettings(max_retry_count=3, base_delay_seconds=0, max_delay_seconds=0),
        )

    return _make
