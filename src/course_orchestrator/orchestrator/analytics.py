"""Post-hoc job metrics: timing, success rate, usage and cost."""

from __future__ import annotations

import logging
from collections import Counter, defaultdict

from course_orchestrator.orchestrator.models import (
    TERMINAL_TASK_STATUSES,
    AnalyticsRecordView,
    JobView,
    TaskStatus,
    TaskView,
)
from course_orchestrator.orchestrator.pricing import PricingTable
from course_orchestrator.orchestrator.repository import OrchestratorRepository

logger = logging.getLogger(__name__)


class AnalyticsAggregator:
    """Computes analytics from job and task rows; persisting is a separate step."""

    def __init__(
        self,
        *,
        repository: OrchestratorRepository,
        pricing: PricingTable | None = None,
    ) -> None:
        self.repository = repository
        self.pricing = pricing or PricingTable()

    def summarize(self, job_id: str) -> AnalyticsRecordView:
        job = self.repository.require_job(job_id)
        tasks = self.repository.list_tasks(job_id)
        return summarize_job(job=job, tasks=tasks, pricing=self.pricing)

    def record(self, job_id: str) -> AnalyticsRecordView:
        """Summarize and upsert the job's analytics record."""

        summary = self.summarize(job_id)
        self.repository.upsert_analytics(summary)
        logger.info(
            "Recorded analytics for job %s: success_rate=%.2f total_time=%.1fs",
            job_id,
            summary.success_rate,
            summary.total_generation_time_seconds,
        )
        return summary


def summarize_job(
    *,
    job: JobView,
    tasks: list[TaskView],
    pricing: PricingTable | None = None,
) -> AnalyticsRecordView:
    """Aggregate one job's task rows into an analytics record."""

    pricing = pricing or PricingTable()
    durations = [
        (task.completed_at - task.started_at).total_seconds()
        for task in tasks
        if task.status in TERMINAL_TASK_STATUSES
        and task.started_at is not None
        and task.completed_at is not None
    ]
    total_time = sum(durations)
    statuses = Counter(task.status for task in tasks)
    completed = statuses[TaskStatus.COMPLETED]

    estimated_cost = 0.0
    tokens_by_dependency: dict[str, int] = defaultdict(int)
    for task in tasks:
        tokens_by_dependency[task.dependency_name] += task.tokens_used
        if task.estimated_cost_usd is not None:
            estimated_cost += task.estimated_cost_usd
            continue
        fallback = pricing.estimate_cost_usd(
            dependency_name=task.dependency_name,
            task_type=task.task_type.value,
            tokens_used=task.tokens_used,
        )
        if fallback is not None:
            estimated_cost += fallback

    wall_clock = None
    if job.started_at is not None and job.completed_at is not None:
        wall_clock = (job.completed_at - job.started_at).total_seconds()

    tokens_used = sum(task.tokens_used for task in tasks)
    return AnalyticsRecordView(
        job_id=job.job_id,
        total_generation_time_seconds=round(total_time, 3),
        wall_clock_seconds=round(wall_clock, 3) if wall_clock is not None else None,
        average_task_duration_seconds=(
            round(total_time / len(durations), 3) if durations else None
        ),
        success_rate=round(completed / len(tasks) * 100, 2) if tasks else 0.0,
        total_tasks=len(tasks),
        completed_tasks=completed,
        failed_tasks=statuses[TaskStatus.FAILED],
        skipped_tasks=statuses[TaskStatus.SKIPPED],
        retried_tasks=sum(1 for task in tasks if task.current_retry_count > 0),
        api_calls=sum(task.api_calls for task in tasks),
        tokens_used=tokens_used,
        estimated_cost_usd=round(estimated_cost, 6),
        task_type_counts=dict(Counter(task.task_type.value for task in tasks)),
        resource_usage={
            "tokens_by_dependency": dict(sorted(tokens_by_dependency.items())),
            "average_tokens_per_task": round(tokens_used / len(tasks), 2) if tasks else 0.0,
            "total_retries": sum(task.current_retry_count for task in tasks),
        },
    )
