"""Controllers for orchestrator CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from course_orchestrator.config import Settings
from course_orchestrator.orchestrator.analytics import AnalyticsAggregator
from course_orchestrator.orchestrator.circuit_breaker import CircuitBreakerRegistry
from course_orchestrator.orchestrator.error_classifier import summarize_error_patterns
from course_orchestrator.orchestrator.executor import TaskExecutor
from course_orchestrator.orchestrator.flows import run_health_sweep, serve_health_sweep
from course_orchestrator.orchestrator.handlers import HandlerRegistry, build_default_registry
from course_orchestrator.orchestrator.models import JobStatus, LogLevel, UserActionType
from course_orchestrator.orchestrator.pricing import PricingTable
from course_orchestrator.orchestrator.recovery import RecoveryHandler
from course_orchestrator.orchestrator.repository import OrchestratorRepository
from course_orchestrator.orchestrator.services import OrchestratorService, SubmitJobCommand
from course_orchestrator.orchestrator.worker import OrchestratorWorker


@dataclass(slots=True)
class JobSubmitCommand:
    """CLI input for job submission."""

    db_path: Path | None
    request_path: Path
    owner_id: str | None
    tenant_id: str | None
    max_retry_count: int | None


@dataclass(slots=True)
class JobListCommand:
    """CLI input for job listing."""

    db_path: Path | None
    status: str | None
    owner_id: str | None
    limit: int


@dataclass(slots=True)
class JobStatusCommand:
    """CLI input for job status inspection."""

    db_path: Path | None
    job_id: str
    output_format: str = "table"


@dataclass(slots=True)
class JobExportCommand:
    db_path: Path | None
    job_id: str
    output_path: Path | None


@dataclass(slots=True)
class WorkerRunCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    once: bool
    max_tasks: int | None
    max_idle_polls: int | None = 1


@dataclass(slots=True)
class HealthCommand:
    db_path: Path | None


@dataclass(slots=True)
class AnalyticsCommand:
    """CLI input for analytics summary."""

    db_path: Path | None
    job_id: str
    record: bool


@dataclass(slots=True)
class ActionApplyCommand:
    """CLI input for a recovery action."""

    db_path: Path | None
    job_id: str
    action_type: str
    task_ids: tuple[str, ...]
    actor_id: str | None
    context_json: str | None


@dataclass(slots=True)
class ErrorsListCommand:
    """CLI input for error record listing."""

    db_path: Path | None
    job_id: str | None
    unresolved_only: bool
    limit: int
    output_format: str = "table"


@dataclass(slots=True)
class CommandResult:
    """Lines to render plus whether the command succeeded."""

    lines: list[str]
    success: bool


class OrchestratorCliController:
    """Coordinates job, worker, health, analytics and recovery CLI operations."""

    def __init__(self, handlers: HandlerRegistry | None = None) -> None:
        self.handlers = handlers

    def submit_job(self, command: JobSubmitCommand) -> list[str]:
        settings = _settings(command.db_path)
        request = _load_json_file(command.request_path)
        with _repository(settings) as repository:
            job = OrchestratorService(repository=repository).submit_job(
                SubmitJobCommand(
                    request=request,
                    owner_id=command.owner_id or settings.user_context.owner_id,
                    tenant_id=command.tenant_id or settings.user_context.tenant_id,
                    max_retry_count=(
                        command.max_retry_count
                        if command.max_retry_count is not None
                        else settings.retry.max_retry_count
                    ),
                ),
            )
            queued = repository.list_queue_entries(job_id=job.job_id)
        return [
            f"Job submitted: job_id={job.job_id} status={job.status.value} "
            f"tasks={job.total_tasks} enqueued={len(queued)}",
        ]

    def list_jobs(self, command: JobListCommand) -> list[str]:
        settings = _settings(command.db_path)
        status = JobStatus(command.status.strip().lower()) if command.status else None
        with _repository(settings) as repository:
            jobs = OrchestratorService(repository=repository).list_jobs(
                status=status,
                owner_id=command.owner_id,
                limit=command.limit,
            )
        lines = [f"Jobs: {len(jobs)}"]
        for job in jobs:
            lines.append(
                f"  {job.job_id} status={job.status.value} progress={job.progress:.2f}% "
                f"tasks={job.completed_tasks}/{job.total_tasks} failed={job.failed_tasks} "
                f"title={job.title!r}",
            )
        return lines

    def job_status(self, command: JobStatusCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            service = OrchestratorService(repository=repository)
            status = service.get_job_status(command.job_id)
            alerts = [
                log
                for log in service.list_logs(job_id=command.job_id)
                if log.level in {LogLevel.WARNING, LogLevel.ERROR, LogLevel.CRITICAL}
            ]

        job = status.job
        if command.output_format == "json":
            return [
                json.dumps(
                    {
                        "job_id": job.job_id,
                        "status": job.status.value,
                        "progress": job.progress,
                        "tasks": [
                            {
                                "task_key": task.task_key,
                                "task_type": task.task_type.value,
                                "status": task.status.value,
                                "retries": task.current_retry_count,
                            }
                            for task in status.tasks
                        ],
                    },
                    indent=2,
                    ensure_ascii=False,
                ),
            ]

        lines = [
            f"Job: {job.job_id}",
            f"Title: {job.title}",
            f"Status: {job.status.value}",
            f"Progress: {job.progress:.2f}% "
            f"({job.completed_tasks} completed, {job.skipped_tasks} skipped, "
            f"{job.failed_tasks} failed of {job.total_tasks})",
            f"Error: {job.error_summary or '-'}",
            f"Tasks: {len(status.tasks)}",
        ]
        for task in status.tasks:
            lines.append(
                f"  {task.task_key} type={task.task_type.value} status={task.status.value} "
                f"priority={task.execution_priority} "
                f"retries={task.current_retry_count}/{task.max_retry_count}"
                + (f" error={task.error_message}" if task.error_message else ""),
            )
        if alerts:
            lines.append(f"Alerts: {len(alerts)}")
            for alert in alerts:
                lines.append(
                    f"  {alert.created_at.isoformat()} {alert.level.value} {alert.message}",
                )
        return lines

    def export_job(self, command: JobExportCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            document = OrchestratorService(repository=repository).export_job(command.job_id)
        rendered = json.dumps(document, indent=2, ensure_ascii=False)
        if command.output_path is None:
            return [rendered]
        command.output_path.parent.mkdir(parents=True, exist_ok=True)
        command.output_path.write_text(rendered, "utf-8")
        return [f"Job exported: {command.output_path}"]

    def run_worker(self, command: WorkerRunCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            worker = OrchestratorWorker(
                repository=repository,
                executor=TaskExecutor(
                    repository=repository,
                    handlers=self.handlers or build_default_registry(),
                    breakers=CircuitBreakerRegistry(
                        failure_threshold=settings.circuit_breaker.failure_threshold,
                        cooldown_seconds=settings.circuit_breaker.cooldown_seconds,
                    ),
                    worker_id=settings.orchestrator.worker_id,
                    retry=settings.retry,
                    pricing=PricingTable.parse(settings.orchestrator.pricing),
                ),
                worker_id=settings.orchestrator.worker_id,
                poll_interval_seconds=settings.orchestrator.poll_interval_seconds,
                lease_seconds=settings.orchestrator.lease_seconds,
                graceful_shutdown_seconds=settings.orchestrator.graceful_shutdown_seconds,
            )
            summary = (
                worker.run_once()
                if command.once
                else worker.run_loop(
                    max_tasks=command.max_tasks,
                    max_idle_polls=command.max_idle_polls,
                )
            )

        return [
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} retried={summary.retried} "
            f"deferred={summary.deferred} dropped={summary.dropped} "
            f"reclaimed={summary.reclaimed} idle_polls={summary.idle_polls}",
        ]

    def health_sweep(self, command: HealthCommand) -> list[str]:
        settings = _settings(command.db_path)
        report = run_health_sweep(settings)
        lines = [
            "Health sweep: "
            f"checked={report.checked_jobs} completed={len(report.completed_jobs)} "
            f"failed={len(report.failed_jobs)} stuck={len(report.stuck_jobs)} "
            f"stalled={len(report.stalled_jobs)}",
        ]
        for job in report.jobs:
            line = (
                f"  {job.job_id} action={job.action.value} "
                f"tasks={job.completed}/{job.total} running={job.running} failed={job.failed}"
            )
            if job.reset_tasks:
                line += f" reset={','.join(job.reset_tasks)}"
            lines.append(line)
        return lines

    def health_serve(self, command: HealthCommand) -> list[str]:
        settings = _settings(command.db_path)
        serve_health_sweep(settings)
        return ["Health sweep service stopped."]

    def analytics(self, command: AnalyticsCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            aggregator = AnalyticsAggregator(
                repository=repository,
                pricing=PricingTable.parse(settings.orchestrator.pricing),
            )
            summary = (
                aggregator.record(command.job_id)
                if command.record
                else aggregator.summarize(command.job_id)
            )

        wall_clock = (
            f"{summary.wall_clock_seconds:.1f}s" if summary.wall_clock_seconds is not None else "-"
        )
        average = (
            f"{summary.average_task_duration_seconds:.1f}s"
            if summary.average_task_duration_seconds is not None
            else "-"
        )
        lines = [
            f"Analytics: {summary.job_id}",
            f"Total generation time: {summary.total_generation_time_seconds:.1f}s",
            f"Wall clock: {wall_clock}",
            f"Average task duration: {average}",
            f"Success rate: {summary.success_rate:.2f}%",
            f"Tasks: total={summary.total_tasks} completed={summary.completed_tasks} "
            f"failed={summary.failed_tasks} skipped={summary.skipped_tasks} "
            f"retried={summary.retried_tasks}",
            f"Usage: api_calls={summary.api_calls} tokens={summary.tokens_used} "
            f"estimated_cost_usd={summary.estimated_cost_usd:.6f}",
        ]
        if command.record:
            lines.append("Analytics record saved.")
        return lines

    def apply_action(self, command: ActionApplyCommand) -> CommandResult:
        settings = _settings(command.db_path)
        action = UserActionType(command.action_type.strip().lower())
        context = _parse_context(command.context_json)
        with _repository(settings) as repository:
            result = RecoveryHandler(repository=repository).apply(
                job_id=command.job_id,
                action_type=action,
                task_ids=list(command.task_ids),
                actor_id=command.actor_id or settings.user_context.owner_id,
                context=context,
            )
        lines = [f"Action {action.value}: {'ok' if result.success else 'rejected'}"]
        lines.append(f"Message: {result.message}")
        if result.affected_tasks:
            lines.append(f"Affected tasks: {', '.join(result.affected_tasks)}")
        return CommandResult(lines=lines, success=result.success)

    def list_errors(self, command: ErrorsListCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            errors = OrchestratorService(repository=repository).list_errors(
                job_id=command.job_id,
                unresolved_only=command.unresolved_only,
                limit=command.limit,
            )

        if command.output_format == "json":
            return [
                json.dumps(
                    {
                        "errors": [
                            {
                                "job_id": error.job_id,
                                "task_id": error.task_id,
                                "error_type": error.error_type,
                                "severity": error.severity.value,
                                "category": error.category.value,
                                "recoverable": error.is_recoverable,
                                "message": error.message,
                                "resolved_at": (
                                    error.resolved_at.isoformat() if error.resolved_at else None
                                ),
                            }
                            for error in errors
                        ],
                        "count": len(errors),
                    },
                    indent=2,
                    ensure_ascii=False,
                ),
            ]

        lines = [f"Errors: {len(errors)}"]
        for error in errors:
            resolution = error.resolution_method.value if error.resolution_method else "open"
            lines.append(
                f"  {error.created_at.isoformat()} job={error.job_id} "
                f"type={error.error_type} severity={error.severity.value} "
                f"category={error.category.value} recoverable={error.is_recoverable} "
                f"resolution={resolution} message={error.message}",
            )
        patterns = summarize_error_patterns(errors)
        if patterns is not None:
            for suggestion in patterns.suggestions:
                lines.append(f"Suggestion: {suggestion}")
        return lines


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


def _load_json_file(path: Path) -> dict[str, Any]:
    try:
        payload = json.loads(path.read_text("utf-8"))
    except json.JSONDecodeError as error:
        raise ValueError(f"Invalid JSON in {path}: {error}") from error
    if not isinstance(payload, dict):
        raise ValueError(f"Expected a JSON object in {path}")
    return payload


def _parse_context(raw: str | None) -> dict[str, Any] | None:
    if not raw:
        return None
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as error:
        raise ValueError(f"Invalid --context JSON: {error}") from error
    if not isinstance(payload, dict):
        raise ValueError("--context must be a JSON object")
    return payload


@contextmanager
def _repository(settings: Settings) -> Iterator[OrchestratorRepository]:
    repository = OrchestratorRepository(
        settings.db_path,
        busy_timeout_ms=settings.orchestrator.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
