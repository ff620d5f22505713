"""CLI entrypoint for course-orchestrator."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from course_orchestrator import __version__
from course_orchestrator.orchestrator.controllers import (
    ActionApplyCommand,
    AnalyticsCommand,
    ErrorsListCommand,
    HealthCommand,
    JobExportCommand,
    JobListCommand,
    JobStatusCommand,
    JobSubmitCommand,
    OrchestratorCliController,
    WorkerRunCommand,
)
from course_orchestrator.orchestrator.models import JobStatus, UserActionType

click.rich_click.USE_MARKDOWN = True
ORCHESTRATOR_CONTROLLER = OrchestratorCliController()

_T = TypeVar("_T")

_DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)


@click.group()
@click.version_option(version=__version__, prog_name="course-orchestrator")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Root logger level.",
)
def course_orchestrator(log_level: str) -> None:
    """Course-generation job orchestrator CLI."""

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@course_orchestrator.group()
def jobs() -> None:
    """Job submission and inspection commands."""


@jobs.command("submit")
@_DB_PATH_OPTION
@click.option(
    "--request",
    "request_path",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    required=True,
    help="JSON file with the course request (title, base_class_id, modules, ...).",
)
@click.option("--owner-id", default=None, help="Owner id; defaults to the configured owner.")
@click.option("--tenant-id", default=None, help="Tenant id; defaults to the configured tenant.")
@click.option(
    "--max-retry-count",
    type=click.IntRange(min=0),
    default=None,
    help="Per-task retry budget; defaults to COURSE_ORCHESTRATOR_MAX_RETRY_COUNT.",
)
def jobs_submit(
    db_path: Path | None,
    request_path: Path,
    owner_id: str | None,
    tenant_id: str | None,
    max_retry_count: int | None,
) -> None:
    """Decompose a course request into tasks and queue the job."""

    _emit_lines(
        _run(
            lambda: ORCHESTRATOR_CONTROLLER.submit_job(
                JobSubmitCommand(
                    db_path=db_path,
                    request_path=request_path,
                    owner_id=owner_id,
                    tenant_id=tenant_id,
                    max_retry_count=max_retry_count,
                ),
            ),
        ),
    )


@jobs.command("list")
@_DB_PATH_OPTION
@click.option(
    "--status",
    type=click.Choice([status.value for status in JobStatus]),
    default=None,
    help="Optional status filter.",
)
@click.option("--owner-id", default=None, help="Optional owner filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max number of jobs to print.",
)
def jobs_list(db_path: Path | None, status: str | None, owner_id: str | None, limit: int) -> None:
    """List recent jobs."""

    _emit_lines(
        _run(
            lambda: ORCHESTRATOR_CONTROLLER.list_jobs(
                JobListCommand(db_path=db_path, status=status, owner_id=owner_id, limit=limit),
            ),
        ),
    )


@jobs.command("status")
@_DB_PATH_OPTION
@click.argument("job_id")
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"]),
    default="table",
    show_default=True,
)
def jobs_status(db_path: Path | None, job_id: str, output_format: str) -> None:
    """Show job progress, per-task status and alerts."""

    _emit_lines(
        _run(
            lambda: ORCHESTRATOR_CONTROLLER.job_status(
                JobStatusCommand(db_path=db_path, job_id=job_id, output_format=output_format),
            ),
        ),
    )


@jobs.command("export")
@_DB_PATH_OPTION
@click.argument("job_id")
@click.option(
    "--output",
    "output_path",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="Write the export to this file instead of stdout.",
)
def jobs_export(db_path: Path | None, job_id: str, output_path: Path | None) -> None:
    """Export job, tasks, errors, actions and analytics as JSON."""

    _emit_lines(
        _run(
            lambda: ORCHESTRATOR_CONTROLLER.export_job(
                JobExportCommand(db_path=db_path, job_id=job_id, output_path=output_path),
            ),
        ),
    )


@course_orchestrator.group()
def worker() -> None:
    """Queue worker commands."""


@worker.command("run")
@_DB_PATH_OPTION
@click.option("--once", is_flag=True, help="Process at most one queue entry.")
@click.option(
    "--max-tasks",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many processed entries.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Exit after this many consecutive empty polls.",
)
@click.option("--forever", is_flag=True, help="Keep polling until SIGINT/SIGTERM.")
def worker_run(
    db_path: Path | None,
    once: bool,
    max_tasks: int | None,
    max_idle_polls: int,
    forever: bool,
) -> None:
    """Claim and execute queued tasks."""

    _emit_lines(
        _run(
            lambda: ORCHESTRATOR_CONTROLLER.run_worker(
                WorkerRunCommand(
                    db_path=db_path,
                    once=once,
                    max_tasks=max_tasks,
                    max_idle_polls=None if forever else max_idle_polls,
                ),
            ),
        ),
    )


@course_orchestrator.group()
def health() -> None:
    """Health sweep commands."""


@health.command("sweep")
@_DB_PATH_OPTION
def health_sweep(db_path: Path | None) -> None:
    """Run one health sweep over processing jobs."""

    _emit_lines(_run(lambda: ORCHESTRATOR_CONTROLLER.health_sweep(HealthCommand(db_path))))


@health.command("serve")
@_DB_PATH_OPTION
def health_serve(db_path: Path | None) -> None:
    """Serve the Prefect health sweep flow on the configured interval."""

    _emit_lines(_run(lambda: ORCHESTRATOR_CONTROLLER.health_serve(HealthCommand(db_path))))


@course_orchestrator.group()
def analytics() -> None:
    """Job analytics commands."""


@analytics.command("summarize")
@_DB_PATH_OPTION
@click.argument("job_id")
@click.option("--record", is_flag=True, help="Persist the summary as the job's analytics record.")
def analytics_summarize(db_path: Path | None, job_id: str, record: bool) -> None:
    """Compute timing, success rate and usage for one job."""

    _emit_lines(
        _run(
            lambda: ORCHESTRATOR_CONTROLLER.analytics(
                AnalyticsCommand(db_path=db_path, job_id=job_id, record=record),
            ),
        ),
    )


@course_orchestrator.group()
def actions() -> None:
    """Operator recovery actions."""


@actions.command("apply")
@_DB_PATH_OPTION
@click.argument("job_id")
@click.argument("action_type", type=click.Choice([action.value for action in UserActionType]))
@click.option(
    "--task",
    "task_ids",
    multiple=True,
    help="Task key or id. Can be repeated.",
)
@click.option("--actor-id", default=None, help="Actor recorded in the audit trail.")
@click.option(
    "--context",
    "context_json",
    default=None,
    help='JSON object, e.g. \'{"max_retry_count": 5}\' for modify_config.',
)
def actions_apply(  # noqa: PLR0913
    db_path: Path | None,
    job_id: str,
    action_type: str,
    task_ids: tuple[str, ...],
    actor_id: str | None,
    context_json: str | None,
) -> None:
    """Retry, skip, cancel, pause, resume or reconfigure a job."""

    result = _run(
        lambda: ORCHESTRATOR_CONTROLLER.apply_action(
            ActionApplyCommand(
                db_path=db_path,
                job_id=job_id,
                action_type=action_type,
                task_ids=task_ids,
                actor_id=actor_id,
                context_json=context_json,
            ),
        ),
    )
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Action rejected.")


@course_orchestrator.group()
def errors() -> None:
    """Error record commands."""


@errors.command("list")
@_DB_PATH_OPTION
@click.option("--job-id", default=None, help="Optional job filter.")
@click.option("--unresolved", "unresolved_only", is_flag=True, help="Only unresolved errors.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=10_000),
    default=100,
    show_default=True,
)
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"]),
    default="table",
    show_default=True,
)
def errors_list(
    db_path: Path | None,
    job_id: str | None,
    unresolved_only: bool,
    limit: int,
    output_format: str,
) -> None:
    """List classified task errors."""

    _emit_lines(
        _run(
            lambda: ORCHESTRATOR_CONTROLLER.list_errors(
                ErrorsListCommand(
                    db_path=db_path,
                    job_id=job_id,
                    unresolved_only=unresolved_only,
                    limit=limit,
                    output_format=output_format,
                ),
            ),
        ),
    )


def _run(call: Callable[[], _T]) -> _T:
    try:
        return call()
    except (ValueError, RuntimeError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    course_orchestrator()
