"""Periodic reconciliation of processing jobs: stuck/stalled detection and finishing."""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum

from course_orchestrator.config import HealthSettings
from course_orchestrator.orchestrator.analytics import AnalyticsAggregator
from course_orchestrator.orchestrator.models import (
    JobStatus,
    LogLevel,
    TaskStatus,
    TaskView,
)
from course_orchestrator.orchestrator.repository import OrchestratorRepository
from course_orchestrator.storage.common import utc_now

logger = logging.getLogger(__name__)

HEALTH_SOURCE = "health_monitor"


class HealthAction(str, Enum):
    """Outcome of checking one job."""

    HEALTHY = "healthy"
    COMPLETED = "completed"
    FAILED = "failed"
    STUCK = "stuck"
    STALLED = "stalled"
    SKIPPED = "skipped"


@dataclass(slots=True)
class JobHealthReport:
    job_id: str
    action: HealthAction
    total: int = 0
    completed: int = 0
    running: int = 0
    failed: int = 0
    skipped: int = 0
    reset_tasks: list[str] = field(default_factory=list)
    stalled_tasks: list[str] = field(default_factory=list)


@dataclass(slots=True)
class HealthSweepReport:
    """Sweep-wide summary for CLI output and flow logs."""

    checked_jobs: int = 0
    completed_jobs: list[str] = field(default_factory=list)
    failed_jobs: list[str] = field(default_factory=list)
    stuck_jobs: list[str] = field(default_factory=list)
    stalled_jobs: list[str] = field(default_factory=list)
    jobs: list[JobHealthReport] = field(default_factory=list)


class HealthMonitor:
    """Reconciles job status from task rows and raises alerts into the job log."""

    def __init__(
        self,
        *,
        repository: OrchestratorRepository,
        settings: HealthSettings | None = None,
        analytics: AnalyticsAggregator | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.settings = settings or HealthSettings()
        self.analytics = analytics
        self._clock = clock

    def sweep(self) -> HealthSweepReport:
        """Check every processing job once. Safe to repeat."""

        report = HealthSweepReport()
        for job_id in self.repository.list_job_ids(status=JobStatus.PROCESSING):
            job_report = self.check_job(job_id)
            report.checked_jobs += 1
            report.jobs.append(job_report)
            if job_report.action is HealthAction.COMPLETED:
                report.completed_jobs.append(job_id)
            elif job_report.action is HealthAction.FAILED:
                report.failed_jobs.append(job_id)
            elif job_report.action is HealthAction.STUCK:
                report.stuck_jobs.append(job_id)
            elif job_report.action is HealthAction.STALLED:
                report.stalled_jobs.append(job_id)
        logger.info(
            "Health sweep: checked=%d completed=%d failed=%d stuck=%d stalled=%d",
            report.checked_jobs,
            len(report.completed_jobs),
            len(report.failed_jobs),
            len(report.stuck_jobs),
            len(report.stalled_jobs),
        )
        return report

    def check_job(self, job_id: str) -> JobHealthReport:
        job = self.repository.get_job(job_id)
        if job is None or job.status is not JobStatus.PROCESSING:
            return JobHealthReport(job_id=job_id, action=HealthAction.SKIPPED)

        tasks = self.repository.list_tasks(job_id)
        counts = Counter(task.status for task in tasks)
        report = JobHealthReport(
            job_id=job_id,
            action=HealthAction.HEALTHY,
            total=len(tasks),
            completed=counts[TaskStatus.COMPLETED],
            running=counts[TaskStatus.RUNNING],
            failed=counts[TaskStatus.FAILED],
            skipped=counts[TaskStatus.SKIPPED],
        )

        # Settled jobs finish before any stuck or stalled check.
        settled = report.completed + report.skipped
        if report.total > 0 and settled == report.total:
            self._finish(report, status=JobStatus.COMPLETED, error_summary=None)
            return report
        if report.failed and settled + report.failed == report.total:
            summary = _failure_summary(tasks)
            self._finish(report, status=JobStatus.FAILED, error_summary=summary)
            return report

        now = self._clock()
        stalled_cutoff = now - timedelta(seconds=self.settings.stalled_after_seconds)
        stuck_cutoff = now - timedelta(seconds=self.settings.stuck_after_seconds)
        stalled = [
            task
            for task in tasks
            if task.status is TaskStatus.RUNNING
            and task.started_at is not None
            and task.started_at < stalled_cutoff
        ]
        report.stalled_tasks = [task.task_key for task in stalled]

        if job.updated_at < stuck_cutoff:
            report.action = HealthAction.STUCK
            report.reset_tasks = self.repository.reset_stalled_tasks(
                job_id=job_id,
                started_before=stalled_cutoff,
            )
            enqueued = self.repository.enqueue_ready_tasks(job_id)
            idle_minutes = (now - job.updated_at).total_seconds() / 60
            message = (
                f"Job stuck: no progress for {idle_minutes:.0f} minutes; "
                f"reset {len(report.reset_tasks)} stalled tasks"
            )
            self.repository.add_job_log(
                job_id=job_id,
                level=LogLevel.CRITICAL,
                message=message,
                source=HEALTH_SOURCE,
                details={
                    "reset_tasks": report.reset_tasks,
                    "enqueued_tasks": enqueued,
                    "counts": _counts_details(report),
                },
            )
            logger.error("%s (job_id=%s)", message, job_id)
            return report

        if stalled:
            report.action = HealthAction.STALLED
            message = f"{len(stalled)} tasks running longer than expected"
            self.repository.add_job_log(
                job_id=job_id,
                level=LogLevel.WARNING,
                message=message,
                source=HEALTH_SOURCE,
                details={
                    "stalled_tasks": report.stalled_tasks,
                    "stalled_after_seconds": self.settings.stalled_after_seconds,
                },
            )
            logger.warning("%s (job_id=%s)", message, job_id)
        return report

    def _finish(
        self,
        report: JobHealthReport,
        *,
        status: JobStatus,
        error_summary: str | None,
    ) -> None:
        finished = self.repository.finish_job(
            job_id=report.job_id,
            status=status,
            error_summary=error_summary,
        )
        if not finished:
            report.action = HealthAction.SKIPPED
            return

        report.action = (
            HealthAction.COMPLETED if status is JobStatus.COMPLETED else HealthAction.FAILED
        )
        if status is JobStatus.COMPLETED:
            self.repository.add_job_log(
                job_id=report.job_id,
                level=LogLevel.INFO,
                message="Job completed",
                source=HEALTH_SOURCE,
                details=_counts_details(report),
            )
        else:
            self.repository.add_job_log(
                job_id=report.job_id,
                level=LogLevel.ERROR,
                message=error_summary or "Job failed",
                source=HEALTH_SOURCE,
                details=_counts_details(report),
            )
        logger.info("Job %s finished as %s", report.job_id, status.value)
        if self.analytics is not None:
            self.analytics.record(report.job_id)


def _failure_summary(tasks: list[TaskView]) -> str:
    failed = [task for task in tasks if task.status is TaskStatus.FAILED]
    first = failed[0]
    detail = ""
    if first.error_message:
        detail = f" First failure: {first.task_key}: {first.error_message}"
    return f"Job failed with {len(failed)} failed tasks out of {len(tasks)}.{detail}"


def _counts_details(report: JobHealthReport) -> dict[str, object]:
    return {
        "total": report.total,
        "completed": report.completed,
        "running": report.running,
        "failed": report.failed,
        "skipped": report.skipped,
    }
