from __future__ import annotations

from collections.abc import Callable
from datetime import timedelta

import allure
import pytest
from support import FakeClock, ScriptedHandler, claim_and_execute, drain, tasks_by_key

from course_orchestrator.config import RetrySettings
from course_orchestrator.orchestrator.circuit_breaker import CircuitBreakerRegistry
from course_orchestrator.orchestrator.executor import (
    ExecutionOutcome,
    TaskExecutor,
    compute_retry_delay,
)
from course_orchestrator.orchestrator.handlers import (
    HandlerRegistry,
    HandlerTimeoutError,
    TaskContext,
)
from course_orchestrator.orchestrator.models import (
    ErrorSeverity,
    JobView,
    QueueEntryStatus,
    TaskStatus,
    TaskUsage,
)
from course_orchestrator.orchestrator.pricing import PricingTable
from course_orchestrator.orchestrator.repository import OrchestratorRepository
from course_orchestrator.storage.common import utc_now

pytestmark = [
    allure.epic("Execution"),
    allure.feature("Task Executor"),
]


@pytest.mark.parametrize(
    ("retry_number", "expected"),
    [(1, 1.0), (2, 2.0), (3, 4.0), (5, 16.0), (6, 30.0), (12, 30.0)],
)
def test_retry_delay_doubles_up_to_cap(retry_number: int, expected: float) -> None:
    assert (
        compute_retry_delay(retry_number=retry_number, base_seconds=1.0, max_seconds=30.0)
        == expected
    )


def test_success_passes_dependency_outputs_and_unlocks_dependents(
    repository: OrchestratorRepository,
    create_job: Callable[..., JobView],
    make_executor: Callable[..., TaskExecutor],
) -> None:
    job = create_job({"outline": [], "section": ["outline"]})
    handler = ScriptedHandler()

    results = drain(repository, make_executor(handler))

    assert [(result.task_key, result.outcome) for result in results] == [
        ("outline", ExecutionOutcome.COMPLETED),
        ("section", ExecutionOutcome.COMPLETED),
    ]
    tasks = tasks_by_key(repository, job.job_id)
    assert tasks["section"].output == {"task_key": "section", "inputs": ["outline"]}
    assert tasks["outline"].api_calls == 1
    assert tasks["outline"].tokens_used == 100
    assert repository.require_job(job.job_id).progress == 100.0


def test_recoverable_failures_retry_until_budget_then_fail(
    repository: OrchestratorRepository,
    create_job: Callable[..., JobView],
    make_executor: Callable[..., TaskExecutor],
) -> None:
    job = create_job({"a": []}, max_retry_count=2)
    handler = ScriptedHandler({"a": [HandlerTimeoutError("llm did not answer")] * 3})

    results = drain(repository, make_executor(handler))

    assert [result.outcome for result in results] == [
        ExecutionOutcome.RETRY_SCHEDULED,
        ExecutionOutcome.RETRY_SCHEDULED,
        ExecutionOutcome.FAILED,
    ]
    assert [result.attempt for result in results] == [1, 2, 3]
    assert handler.attempts_for("a") == 3
    task = tasks_by_key(repository, job.job_id)["a"]
    assert task.status is TaskStatus.FAILED
    assert task.current_retry_count == 2
    assert task.is_recoverable is True
    assert task.error_severity is ErrorSeverity.LOW
    errors = repository.list_errors(job_id=job.job_id)
    assert [error.error_type for error in errors] == ["timeout"] * 3
    assert all(error.context["task_key"] == "a" for error in errors)
    assert [event.event_type for event in repository.get_task_events(task.task_id)][-1] == (
        "failed"
    )


def test_retry_succeeds_and_resolves_recorded_errors(
    repository: OrchestratorRepository,
    create_job: Callable[..., JobView],
    make_executor: Callable[..., TaskExecutor],
) -> None:
    job = create_job({"a": []})
    handler = ScriptedHandler({"a": [HandlerTimeoutError("slow")]})

    results = drain(repository, make_executor(handler))

    assert [result.outcome for result in results] == [
        ExecutionOutcome.RETRY_SCHEDULED,
        ExecutionOutcome.COMPLETED,
    ]
    task = tasks_by_key(repository, job.job_id)["a"]
    assert task.status is TaskStatus.COMPLETED
    assert task.current_retry_count == 1
    assert task.error_message is None
    assert repository.list_errors(job_id=job.job_id, unresolved_only=True) == []


def test_critical_failure_is_never_retried(
    repository: OrchestratorRepository,
    create_job: Callable[..., JobView],
    make_executor: Callable[..., TaskExecutor],
) -> None:
    job = create_job({"a": [], "b": ["a"]})
    handler = ScriptedHandler({"a": [RuntimeError("No documents found for kb-1")]})

    results = drain(repository, make_executor(handler))

    assert [result.outcome for result in results] == [ExecutionOutcome.FAILED]
    assert handler.attempts_for("a") == 1
    classification = results[0].classification
    assert classification is not None
    assert classification.error_type == "knowledge_base_empty"
    tasks = tasks_by_key(repository, job.job_id)
    assert tasks["a"].status is TaskStatus.FAILED
    assert tasks["a"].is_recoverable is False
    assert tasks["a"].error_severity is ErrorSeverity.CRITICAL
    assert tasks["a"].recovery_suggestions[0] == (
        "Critical error: manual intervention may be required"
    )
    assert tasks["b"].status is TaskStatus.PENDING


def test_missing_handler_fails_without_tripping_breaker(
    repository: OrchestratorRepository,
    create_job: Callable[..., JobView],
    make_executor: Callable[..., TaskExecutor],
) -> None:
    job = create_job({"a": []})
    breakers = CircuitBreakerRegistry(failure_threshold=1)

    result = claim_and_execute(
        repository,
        make_executor(registry=HandlerRegistry(), breakers=breakers),
    )

    assert result is not None
    assert result.outcome is ExecutionOutcome.FAILED
    assert result.classification is not None
    assert result.classification.error_type == "missing_handler"
    assert breakers.get("llm").failure_count == 0
    assert tasks_by_key(repository, job.job_id)["a"].status is TaskStatus.FAILED


def test_open_breaker_short_circuits_and_delays_retry(
    repository: OrchestratorRepository,
    create_job: Callable[..., JobView],
    make_executor: Callable[..., TaskExecutor],
) -> None:
    job = create_job({"first": [], "second": []})
    handler = ScriptedHandler({"first": [HandlerTimeoutError("llm down")]})
    breakers = CircuitBreakerRegistry(failure_threshold=1, cooldown_seconds=60, clock=FakeClock())
    executor = make_executor(handler, breakers=breakers)

    first = claim_and_execute(repository, executor)
    second = claim_and_execute(repository, executor)

    assert first is not None
    assert first.task_key == "first"
    assert first.outcome is ExecutionOutcome.RETRY_SCHEDULED
    assert second is not None
    assert second.task_key == "second"
    assert second.outcome is ExecutionOutcome.RETRY_SCHEDULED
    assert second.classification is not None
    assert second.classification.error_type == "circuit_open"
    assert second.retry_delay_seconds == pytest.approx(60)
    assert handler.calls == [("first", 1)]
    assert tasks_by_key(repository, job.job_id)["first"].api_calls == 1

    second_task = tasks_by_key(repository, job.job_id)["second"]
    assert second_task.status is TaskStatus.RETRYING
    assert second_task.api_calls == 0
    pending = [
        entry
        for entry in repository.list_queue_entries(
            job_id=job.job_id,
            status=QueueEntryStatus.PENDING,
        )
        if entry.task_id == second_task.task_id
    ]
    assert len(pending) == 1
    assert pending[0].scheduled_for > utc_now() + timedelta(seconds=50)


def test_task_with_unsettled_dependencies_is_deferred(
    repository: OrchestratorRepository,
    create_job: Callable[..., JobView],
    make_executor: Callable[..., TaskExecutor],
) -> None:
    job = create_job({"a": [], "b": ["a"]})
    handler = ScriptedHandler()
    executor = make_executor(handler)
    b = tasks_by_key(repository, job.job_id)["b"]
    entry = repository.enqueue(b.task_id)
    assert entry is not None

    queued_b = repository.get_task(b.task_id)
    assert queued_b is not None
    result = executor.execute(queued_b, queue_entry_id=entry.entry_id)

    assert result.outcome is ExecutionOutcome.DEFERRED
    assert handler.calls == []
    assert tasks_by_key(repository, job.job_id)["b"].status is TaskStatus.PENDING
    entry_after = repository.get_queue_entry(entry.entry_id)
    assert entry_after is not None
    assert entry_after.status is QueueEntryStatus.COMPLETED

    results = drain(repository, executor)
    assert [result.task_key for result in results] == ["a", "b"]
    assert handler.calls == [("a", 1), ("b", 1)]


def test_claimed_task_of_paused_job_is_deferred(
    repository: OrchestratorRepository,
    create_job: Callable[..., JobView],
    make_executor: Callable[..., TaskExecutor],
) -> None:
    job = create_job({"a": []})
    handler = ScriptedHandler()
    entry = repository.claim(worker_id="worker-test")
    assert entry is not None
    repository.pause_job(job_id=job.job_id)

    task = repository.get_task(entry.task_id)
    assert task is not None
    result = make_executor(handler).execute(task, queue_entry_id=entry.entry_id)

    assert result.outcome is ExecutionOutcome.DEFERRED
    assert result.message == "job paused"
    assert handler.calls == []
    assert tasks_by_key(repository, job.job_id)["a"].status is TaskStatus.PENDING


def test_result_of_task_cancelled_mid_run_is_dropped(
    repository: OrchestratorRepository,
    create_job: Callable[..., JobView],
    make_executor: Callable[..., TaskExecutor],
) -> None:
    job = create_job({"a": [], "b": ["a"]})

    def _cancel(context: TaskContext) -> None:
        repository.cancel_job(job_id=context.job_id)

    result = claim_and_execute(repository, make_executor(ScriptedHandler(on_call=_cancel)))

    assert result is not None
    assert result.outcome is ExecutionOutcome.DROPPED
    tasks = tasks_by_key(repository, job.job_id)
    assert tasks["a"].status is TaskStatus.CANCELLED
    assert tasks["a"].output is None
    assert tasks["b"].status is TaskStatus.CANCELLED
    assert repository.claim(worker_id="worker-test") is None


def test_cost_is_estimated_from_pricing_table(
    repository: OrchestratorRepository,
    create_job: Callable[..., JobView],
) -> None:
    job = create_job({"a": []})
    executor = TaskExecutor(
        repository=repository,
        handlers=HandlerRegistry(default=ScriptedHandler(tokens_used=250_000)),
        breakers=CircuitBreakerRegistry(),
        worker_id="worker-test",
        retry=RetrySettings(base_delay_seconds=0, max_delay_seconds=0),
        pricing=PricingTable.parse("llm:lesson_section:4.0"),
    )

    assert claim_and_execute(repository, executor) is not None

    task = tasks_by_key(repository, job.job_id)["a"]
    assert task.estimated_cost_usd == pytest.approx(1.0)


def test_failed_attempts_add_to_usage_and_cost(
    repository: OrchestratorRepository,
    create_job: Callable[..., JobView],
) -> None:
    job = create_job({"a": []})
    handler = ScriptedHandler(
        {
            "a": [
                HandlerTimeoutError("slow"),
                HandlerTimeoutError("cut off", usage=TaskUsage(api_calls=2, tokens_used=50_000)),
            ]
        },
        tokens_used=200_000,
    )
    executor = TaskExecutor(
        repository=repository,
        handlers=HandlerRegistry(default=handler),
        breakers=CircuitBreakerRegistry(),
        worker_id="worker-test",
        retry=RetrySettings(base_delay_seconds=0, max_delay_seconds=0),
        pricing=PricingTable.parse("llm:lesson_section:4.0"),
    )

    results = drain(repository, executor)

    assert [result.outcome for result in results][-1] is ExecutionOutcome.COMPLETED
    task = tasks_by_key(repository, job.job_id)["a"]
    assert task.api_calls == 4
    assert task.tokens_used == 250_000
    assert task.estimated_cost_usd == pytest.approx(1.0)
