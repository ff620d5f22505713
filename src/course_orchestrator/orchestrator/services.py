"""Use-case services for course-generation jobs."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

from course_orchestrator.orchestrator.error_classifier import summarize_error_patterns
from course_orchestrator.orchestrator.models import (
    ErrorRecordView,
    JobCreate,
    JobLogView,
    JobStatus,
    JobStatusView,
    JobView,
    LogLevel,
    UserActionView,
)
from course_orchestrator.orchestrator.planner import CourseRequest, decompose
from course_orchestrator.orchestrator.repository import OrchestratorRepository

logger = logging.getLogger(__name__)

EXPORT_FORMAT_VERSION = 1


@dataclass(slots=True)
class SubmitJobCommand:
    """High-level command to submit a course-generation job."""

    request: dict[str, Any]
    owner_id: str
    tenant_id: str
    max_retry_count: int = 3
    generation_config: dict[str, Any] = field(default_factory=dict)
    job_id: str | None = None


class OrchestratorService:
    """Coordinates request decomposition, job persistence and read models."""

    def __init__(self, *, repository: OrchestratorRepository) -> None:
        self.repository = repository

    def submit_job(self, command: SubmitJobCommand) -> JobView:
        """Decompose the request into a task graph and persist it as a queued job."""

        course = CourseRequest.from_payload(command.request)
        specs = decompose(course)
        job = self.repository.create_job(
            JobCreate(
                title=course.title,
                tasks=specs,
                owner_id=command.owner_id,
                tenant_id=command.tenant_id,
                request=command.request,
                generation_config=command.generation_config,
                max_retry_count=command.max_retry_count,
                job_id=command.job_id,
            ),
        )
        self.repository.add_job_log(
            job_id=job.job_id,
            level=LogLevel.INFO,
            message=f"Job submitted with {job.total_tasks} tasks",
            source="service",
            details={"owner_id": command.owner_id, "tenant_id": command.tenant_id},
        )
        logger.info("Submitted job %s (%s) with %d tasks", job.job_id, job.title, job.total_tasks)
        return job

    def get_job_status(self, job_id: str) -> JobStatusView:
        job = self.repository.require_job(job_id)
        return JobStatusView(job=job, tasks=self.repository.list_tasks(job_id))

    def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        owner_id: str | None = None,
        limit: int = 50,
    ) -> list[JobView]:
        return self.repository.list_jobs(status=status, owner_id=owner_id, limit=limit)

    def list_errors(
        self,
        *,
        job_id: str | None = None,
        unresolved_only: bool = False,
        limit: int = 100,
    ) -> list[ErrorRecordView]:
        return self.repository.list_errors(
            job_id=job_id,
            unresolved_only=unresolved_only,
            limit=limit,
        )

    def list_logs(
        self,
        *,
        job_id: str | None = None,
        level: LogLevel | None = None,
        limit: int = 100,
    ) -> list[JobLogView]:
        return self.repository.list_job_logs(job_id=job_id, level=level, limit=limit)

    def list_actions(self, *, job_id: str | None = None) -> list[UserActionView]:
        return self.repository.list_user_actions(job_id=job_id)

    def export_job(self, job_id: str) -> dict[str, Any]:
        """Full JSON-serializable snapshot of one job for archival or support."""

        status = self.get_job_status(job_id)
        errors = self.repository.list_errors(job_id=job_id, limit=10_000)
        analytics = self.repository.get_analytics(job_id)
        patterns = summarize_error_patterns(errors)
        return _jsonable(
            {
                "format_version": EXPORT_FORMAT_VERSION,
                "job": status.job,
                "tasks": status.tasks,
                "errors": errors,
                "error_patterns": patterns,
                "actions": self.repository.list_user_actions(job_id=job_id),
                "logs": self.repository.list_job_logs(job_id=job_id, limit=10_000),
                "analytics": analytics,
            },
        )


def _jsonable(value: Any) -> Any:
    if hasattr(value, "__dataclass_fields__"):
        return _jsonable(asdict(value))
    if isinstance(value, dict):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    if isinstance(value, Enum):
        return value.value
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return value
