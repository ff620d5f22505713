from __future__ import annotations

import json

import allure
import pytest
from support import SAMPLE_REQUEST

from course_orchestrator.orchestrator.models import JobStatus, LogLevel, TaskStatus, UserActionType
from course_orchestrator.orchestrator.recovery import RecoveryHandler
from course_orchestrator.orchestrator.repository import OrchestratorRepository
from course_orchestrator.orchestrator.services import (
    EXPORT_FORMAT_VERSION,
    OrchestratorService,
    SubmitJobCommand,
)

pytestmark = [
    allure.epic("Jobs"),
    allure.feature("Submission & Read Models"),
]


@pytest.fixture()
def service(repository: OrchestratorRepository) -> OrchestratorService:
    return OrchestratorService(repository=repository)


def _submit(service: OrchestratorService, **overrides: object) -> str:
    command = SubmitJobCommand(
        request=SAMPLE_REQUEST,
        owner_id="owner-1",
        tenant_id="tenant-1",
        generation_config={"tone": "friendly"},
    )
    for name, value in overrides.items():
        setattr(command, name, value)
    return service.submit_job(command).job_id


def test_submit_decomposes_and_enqueues_root(service: OrchestratorService) -> None:
    job_id = _submit(service, max_retry_count=4, job_id="job-fixed")

    status = service.get_job_status(job_id)

    assert job_id == "job-fixed"
    assert status.job.status is JobStatus.QUEUED
    assert status.job.title == "Intro to Rust"
    assert status.job.request == SAMPLE_REQUEST
    assert status.job.generation_config == {"tone": "friendly"}
    assert status.job.total_tasks == len(status.tasks) == 14
    queued = [task.task_key for task in status.tasks if task.status is TaskStatus.QUEUED]
    assert queued == ["knowledge-analysis"]
    retry_budgets = {task.task_key: task.max_retry_count for task in status.tasks}
    assert retry_budgets["outline"] == 4
    assert retry_budgets["mindmap-l1"] == 2
    logs = service.list_logs(job_id=job_id, level=LogLevel.INFO)
    assert [log.message for log in logs] == ["Job submitted with 14 tasks"]


def test_submit_rejects_invalid_request(service: OrchestratorService) -> None:
    with pytest.raises(ValueError):
        _submit(service, request={"title": "Broken", "modules": "not-a-list"})
    assert service.list_jobs() == []


def test_list_jobs_filters_by_owner_and_status(service: OrchestratorService) -> None:
    first = _submit(service)
    second = _submit(service, owner_id="owner-2")

    assert {job.job_id for job in service.list_jobs()} == {first, second}
    assert [job.job_id for job in service.list_jobs(owner_id="owner-2")] == [second]
    assert service.list_jobs(status=JobStatus.COMPLETED) == []
    assert len(service.list_jobs(limit=1)) == 1


def test_get_job_status_of_unknown_job(service: OrchestratorService) -> None:
    with pytest.raises(RuntimeError, match="Job not found: nope"):
        service.get_job_status("nope")


def test_export_is_json_serializable(service: OrchestratorService) -> None:
    job_id = _submit(service)

    document = service.export_job(job_id)

    assert document["format_version"] == EXPORT_FORMAT_VERSION
    assert document["job"]["job_id"] == job_id
    assert document["job"]["status"] == "queued"
    assert len(document["tasks"]) == 14
    assert document["errors"] == []
    assert document["error_patterns"] is None
    assert document["analytics"] is None
    assert document["logs"][0]["level"] == "info"
    assert json.loads(json.dumps(document)) == document


def test_actions_are_listed_per_job(
    service: OrchestratorService,
    repository: OrchestratorRepository,
) -> None:
    job_id = _submit(service)
    RecoveryHandler(repository=repository).apply(
        job_id=job_id,
        action_type=UserActionType.PAUSE_JOB,
        actor_id="operator-1",
    )

    actions = service.list_actions(job_id=job_id)

    assert [(action.action_type, action.successful) for action in actions] == [
        ("pause_job", True),
    ]
    assert actions[0].affected_tasks == ["knowledge-analysis"]
