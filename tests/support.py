"""Test helpers shared by orchestrator test modules."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy import update as sa_update
from sqlmodel import Session, col

from course_orchestrator.orchestrator.executor import TaskExecutionResult, TaskExecutor
from course_orchestrator.orchestrator.handlers import HandlerResult, TaskContext
from course_orchestrator.orchestrator.models import TaskUsage, TaskView
from course_orchestrator.orchestrator.repository import OrchestratorRepository
from course_orchestrator.storage.common import to_db_datetime, utc_now
from course_orchestrator.storage.sqlmodel_models import GenerationJob, GenerationTask, QueueEntry

SAMPLE_REQUEST = {
    "title": "Intro to Rust",
    "base_class_id": "rust-101",
    "knowledge_base_id": "kb-1",
    "modules": [
        {
            "id": "m1",
            "title": "Basics",
            "lessons": [
                {"id": "l1", "title": "Ownership", "sections": ["Moves", "Borrows"]},
                {"id": "l2", "title": "Traits", "sections": ["Generics"]},
            ],
        },
    ],
}


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ScriptedHandler:
    """Raises the scripted errors per task key in order, then succeeds."""

    def __init__(
        self,
        errors: dict[str, list[BaseException]] | None = None,
        *,
        tokens_used: int = 100,
        on_call: Callable[[TaskContext], None] | None = None,
    ) -> None:
        self.errors = {key: list(items) for key, items in (errors or {}).items()}
        self.tokens_used = tokens_used
        self.on_call = on_call
        self.calls: list[tuple[str, int]] = []

    def __call__(self, context: TaskContext) -> HandlerResult:
        self.calls.append((context.task_key, context.attempt))
        if self.on_call is not None:
            self.on_call(context)
        pending = self.errors.get(context.task_key)
        if pending:
            raise pending.pop(0)
        return HandlerResult(
            output={"task_key": context.task_key, "inputs": sorted(context.dependency_outputs)},
            usage=TaskUsage(api_calls=1, tokens_used=self.tokens_used),
        )

    def attempts_for(self, task_key: str) -> int:
        return sum(1 for key, _ in self.calls if key == task_key)


def claim_and_execute(
    repository: OrchestratorRepository,
    executor: TaskExecutor,
    *,
    worker_id: str = "worker-test",
) -> TaskExecutionResult | None:
    """Claim the next entry and run it; None when the queue is empty."""

    entry = repository.claim(worker_id=worker_id)
    if entry is None:
        return None
    task = repository.get_task(entry.task_id)
    assert task is not None
    return executor.execute(task, queue_entry_id=entry.entry_id)


def drain(repository: OrchestratorRepository, executor: TaskExecutor) -> list[TaskExecutionResult]:
    results: list[TaskExecutionResult] = []
    while (result := claim_and_execute(repository, executor)) is not None:
        results.append(result)
    return results


def tasks_by_key(repository: OrchestratorRepository, job_id: str) -> dict[str, TaskView]:
    return {task.task_key: task for task in repository.list_tasks(job_id)}


def set_task_times(
    repository: OrchestratorRepository,
    task_id: str,
    *,
    started_at: datetime | None,
    completed_at: datetime | None = None,
) -> None:
    with Session(repository.engine) as session:
        session.exec(
            sa_update(GenerationTask)
            .where(col(GenerationTask.task_id) == task_id)
            .values(
                started_at=to_db_datetime(started_at) if started_at else None,
                completed_at=to_db_datetime(completed_at) if completed_at else None,
            ),
        )
        session.commit()


def age_job(repository: OrchestratorRepository, job_id: str, *, seconds: float) -> None:
    """Pretend the job has seen no update for `seconds`."""

    with Session(repository.engine) as session:
        session.exec(
            sa_update(GenerationJob)
            .where(col(GenerationJob.job_id) == job_id)
            .values(updated_at=to_db_datetime(utc_now() - timedelta(seconds=seconds))),
        )
        session.commit()


def expire_claim(repository: OrchestratorRepository, entry_id: int, *, seconds: float) -> None:
    """Backdate a claim as if its worker took the lease `seconds` ago."""

    with Session(repository.engine) as session:
        session.exec(
            sa_update(QueueEntry)
            .where(col(QueueEntry.entry_id) == entry_id)
            .values(claimed_at=to_db_datetime(utc_now() - timedelta(seconds=seconds))),
        )
        session.commit()
