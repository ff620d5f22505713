"""Single-task execution with circuit breaking, classification and retry policy."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from course_orchestrator.config import RetrySettings
from course_orchestrator.orchestrator.circuit_breaker import (
    CircuitBreakerRegistry,
    CircuitOpenError,
)
from course_orchestrator.orchestrator.error_classifier import (
    ErrorClassification,
    classify,
    recovery_suggestions,
)
from course_orchestrator.orchestrator.graph import is_ready
from course_orchestrator.orchestrator.handlers import (
    HandlerError,
    HandlerNotFoundError,
    HandlerRegistry,
    HandlerResult,
    TaskContext,
)
from course_orchestrator.orchestrator.models import (
    SETTLED_TASK_STATUSES,
    TERMINAL_JOB_STATUSES,
    ErrorSeverity,
    JobStatus,
    TaskStatus,
    TaskUsage,
    TaskView,
)
from course_orchestrator.orchestrator.pricing import PricingTable
from course_orchestrator.orchestrator.repository import OrchestratorRepository

logger = logging.getLogger(__name__)


class ExecutionOutcome(str, Enum):
    """What happened to a task handed to the executor."""

    COMPLETED = "completed"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"
    DEFERRED = "deferred"
    DROPPED = "dropped"


@dataclass(slots=True)
class TaskExecutionResult:
    task_id: str
    task_key: str
    outcome: ExecutionOutcome
    attempt: int
    message: str = ""
    classification: ErrorClassification | None = None
    retry_delay_seconds: float | None = None


def compute_retry_delay(
    *,
    retry_number: int,
    base_seconds: float,
    max_seconds: float,
) -> float:
    """Exponential backoff: base * 2^(n-1), capped."""

    return min(max_seconds, base_seconds * (2 ** max(retry_number - 1, 0)))


class TaskExecutor:
    """Runs one claimed task to a persisted outcome.

    Handler exceptions are contained here: every attempt ends in completed,
    retrying or failed state, never in an exception propagating to the worker.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: OrchestratorRepository,
        handlers: HandlerRegistry,
        breakers: CircuitBreakerRegistry,
        worker_id: str,
        retry: RetrySettings | None = None,
        pricing: PricingTable | None = None,
    ) -> None:
        self.repository = repository
        self.handlers = handlers
        self.breakers = breakers
        self.worker_id = worker_id
        self.retry = retry or RetrySettings()
        self.pricing = pricing or PricingTable()

    def execute(
        self,
        task: TaskView,
        *,
        queue_entry_id: int | None = None,
    ) -> TaskExecutionResult:
        attempt = task.current_retry_count + 1
        job = self.repository.require_job(task.job_id)

        if job.status in TERMINAL_JOB_STATUSES:
            if queue_entry_id is not None:
                self.repository.complete(queue_entry_id)
            logger.info(
                "Dropping task %s: job %s is %s",
                task.task_key,
                job.job_id,
                job.status.value,
            )
            return TaskExecutionResult(
                task_id=task.task_id,
                task_key=task.task_key,
                outcome=ExecutionOutcome.DROPPED,
                attempt=attempt,
                message=f"job {job.status.value}",
            )
        if job.status is JobStatus.PAUSED:
            self.repository.defer_task(
                task_id=task.task_id,
                entry_id=queue_entry_id,
                reason="job_paused",
            )
            return TaskExecutionResult(
                task_id=task.task_id,
                task_key=task.task_key,
                outcome=ExecutionOutcome.DEFERRED,
                attempt=attempt,
                message="job paused",
            )

        siblings = {
            sibling.task_key: sibling for sibling in self.repository.list_tasks(job.job_id)
        }
        current = siblings.get(task.task_key, task)
        if not is_ready(current, siblings):
            self.repository.defer_task(
                task_id=task.task_id,
                entry_id=queue_entry_id,
                reason="dependencies_not_ready",
            )
            logger.debug("Task %s deferred: dependencies not settled", task.task_key)
            return TaskExecutionResult(
                task_id=task.task_id,
                task_key=task.task_key,
                outcome=ExecutionOutcome.DEFERRED,
                attempt=attempt,
                message="dependencies not ready",
            )

        if not self.repository.start_task(task_id=task.task_id, worker_id=self.worker_id):
            if queue_entry_id is not None:
                self.repository.complete(queue_entry_id)
            latest = self.repository.get_task(task.task_id)
            if (
                current.status is TaskStatus.RUNNING
                and latest is not None
                and latest.status is TaskStatus.FAILED
            ):
                logger.error(
                    "Task %s failed: worker lost after %d attempts",
                    task.task_key,
                    latest.current_retry_count,
                )
                return TaskExecutionResult(
                    task_id=task.task_id,
                    task_key=task.task_key,
                    outcome=ExecutionOutcome.FAILED,
                    attempt=latest.current_retry_count,
                    message=latest.error_message or "",
                )
            return TaskExecutionResult(
                task_id=task.task_id,
                task_key=task.task_key,
                outcome=ExecutionOutcome.DROPPED,
                attempt=attempt,
                message="task no longer startable",
            )
        # A restart after a lost worker spends an attempt inside start_task.
        current = self.repository.get_task(task.task_id) or current
        attempt = current.current_retry_count + 1

        context = TaskContext(
            job_id=job.job_id,
            task_id=task.task_id,
            task_key=task.task_key,
            task_type=task.task_type,
            attempt=attempt,
            input=dict(current.input),
            dependency_outputs={
                key: dict(siblings[key].output or {})
                for key in current.dependencies
                if key in siblings and siblings[key].status in SETTLED_TASK_STATUSES
            },
            generation_config=dict(job.generation_config),
        )
        try:
            handler = self.handlers.resolve(task.task_type)
            result: HandlerResult = self.breakers.call(
                current.dependency_name,
                lambda: handler(context),
            )
        except Exception as error:  # noqa: BLE001
            return self._handle_failure(
                task=current,
                attempt=attempt,
                error=error,
                queue_entry_id=queue_entry_id,
            )

        return self._persist_success(
            task=current,
            attempt=attempt,
            result=result,
            queue_entry_id=queue_entry_id,
        )

    def _persist_success(
        self,
        *,
        task: TaskView,
        attempt: int,
        result: HandlerResult,
        queue_entry_id: int | None,
    ) -> TaskExecutionResult:
        persisted = self.repository.complete_task(
            task_id=task.task_id,
            entry_id=queue_entry_id,
            output=result.output,
            usage=self._priced(task, result.usage),
        )
        if not persisted:
            logger.info("Discarding late result of task %s", task.task_key)
            return TaskExecutionResult(
                task_id=task.task_id,
                task_key=task.task_key,
                outcome=ExecutionOutcome.DROPPED,
                attempt=attempt,
                message="task left running state before completion",
            )
        logger.info("Task %s completed on attempt %d", task.task_key, attempt)
        return TaskExecutionResult(
            task_id=task.task_id,
            task_key=task.task_key,
            outcome=ExecutionOutcome.COMPLETED,
            attempt=attempt,
        )

    def _handle_failure(
        self,
        *,
        task: TaskView,
        attempt: int,
        error: Exception,
        queue_entry_id: int | None,
    ) -> TaskExecutionResult:
        classification = classify(
            error,
            context={
                "task_key": task.task_key,
                "task_type": task.task_type.value,
                "dependency_name": task.dependency_name,
                "attempt": attempt,
                "worker_id": self.worker_id,
            },
        )
        self.repository.add_error_record(
            classification.to_error_record(job_id=task.job_id, task_id=task.task_id),
        )
        suggestions = recovery_suggestions(classification)
        usage = self._priced(task, _failed_attempt_usage(error))

        retryable = (
            classification.recoverable
            and classification.severity is not ErrorSeverity.CRITICAL
            and task.current_retry_count < task.max_retry_count
        )
        if retryable:
            delay = compute_retry_delay(
                retry_number=task.current_retry_count + 1,
                base_seconds=self.retry.base_delay_seconds,
                max_seconds=self.retry.max_delay_seconds,
            )
            if isinstance(error, CircuitOpenError):
                delay = max(delay, error.time_until_retry)
            scheduled = self.repository.schedule_retry(
                task_id=task.task_id,
                entry_id=queue_entry_id,
                delay_seconds=delay,
                error_message=classification.message,
                severity=classification.severity,
                category=classification.category,
                suggestions=suggestions,
                usage=usage,
            )
            logger.warning(
                "Task %s attempt %d failed (%s); retry in %.1fs",
                task.task_key,
                attempt,
                classification.error_type,
                delay,
            )
            return TaskExecutionResult(
                task_id=task.task_id,
                task_key=task.task_key,
                outcome=(
                    ExecutionOutcome.RETRY_SCHEDULED if scheduled else ExecutionOutcome.DROPPED
                ),
                attempt=attempt,
                message=classification.message,
                classification=classification,
                retry_delay_seconds=delay,
            )

        failed = self.repository.fail_task(
            task_id=task.task_id,
            entry_id=queue_entry_id,
            error_message=classification.message,
            severity=classification.severity,
            category=classification.category,
            recoverable=classification.recoverable,
            suggestions=suggestions,
            usage=usage,
        )
        logger.error(
            "Task %s failed permanently on attempt %d (%s, severity=%s)",
            task.task_key,
            attempt,
            classification.error_type,
            classification.severity.value,
        )
        return TaskExecutionResult(
            task_id=task.task_id,
            task_key=task.task_key,
            outcome=ExecutionOutcome.FAILED if failed else ExecutionOutcome.DROPPED,
            attempt=attempt,
            message=classification.message,
            classification=classification,
        )

    def _priced(self, task: TaskView, usage: TaskUsage) -> TaskUsage:
        if usage.estimated_cost_usd is not None:
            return usage
        return TaskUsage(
            api_calls=usage.api_calls,
            tokens_used=usage.tokens_used,
            estimated_cost_usd=self.pricing.estimate_cost_usd(
                dependency_name=task.dependency_name,
                task_type=task.task_type.value,
                tokens_used=usage.tokens_used,
            ),
        )


def _failed_attempt_usage(error: Exception) -> TaskUsage:
    """Usage of an attempt that raised; one call unless the handler was never reached."""

    if isinstance(error, (CircuitOpenError, HandlerNotFoundError)):
        return TaskUsage()
    if isinstance(error, HandlerError) and error.usage is not None:
        return error.usage
    return TaskUsage(api_calls=1)
