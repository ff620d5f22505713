from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import allure
from support import drain

from course_orchestrator.config import Settings
from course_orchestrator.orchestrator.executor import TaskExecutor
from course_orchestrator.orchestrator.flows import (
    health_sweep_task,
    refresh_analytics,
    run_health_sweep,
)
from course_orchestrator.orchestrator.models import JobStatus, JobView
from course_orchestrator.orchestrator.repository import OrchestratorRepository

pytestmark = [
    allure.epic("Operations"),
    allure.feature("Scheduled Flows"),
]


def test_run_health_sweep_finishes_jobs_and_records_analytics(
    repository: OrchestratorRepository,
    create_job: Callable[..., JobView],
    make_executor: Callable[..., TaskExecutor],
) -> None:
    job = create_job({"a": [], "b": ["a"]})
    drain(repository, make_executor())

    report = run_health_sweep(Settings(db_path=repository.db_path))

    assert report.completed_jobs == [job.job_id]
    assert repository.require_job(job.job_id).status is JobStatus.COMPLETED
    analytics = repository.get_analytics(job.job_id)
    assert analytics is not None
    assert analytics.completed_tasks == 2
    assert analytics.wall_clock_seconds is not None


def test_refresh_analytics_upserts_each_job(
    repository: OrchestratorRepository,
    create_job: Callable[..., JobView],
) -> None:
    first = create_job({"a": []})
    second = create_job({"b": []})

    written = refresh_analytics(
        Settings(db_path=repository.db_path),
        [first.job_id, second.job_id],
    )

    assert written == 2
    assert repository.get_analytics(first.job_id) is not None
    assert repository.get_analytics(second.job_id) is not None


def test_health_sweep_task_returns_plain_report(tmp_path: Path) -> None:
    report = health_sweep_task.fn(str(tmp_path / "empty.db"))

    assert report["checked_jobs"] == 0
    assert report["jobs"] == []
