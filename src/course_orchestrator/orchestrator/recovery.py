"""Operator recovery actions with an append-only audit trail."""

from __future__ import annotations

import logging
from typing import Any

from course_orchestrator.orchestrator.models import (
    TERMINAL_JOB_STATUSES,
    ActionResult,
    JobStatus,
    JobView,
    TaskStatus,
    TaskView,
    UserActionType,
)
from course_orchestrator.orchestrator.repository import (
    NON_TERMINAL_TASK_STATUSES,
    SKIPPABLE_TASK_STATUSES,
    OrchestratorRepository,
)

logger = logging.getLogger(__name__)


class ActionRejectedError(ValueError):
    """Raised internally when an action fails validation; nothing is mutated."""


class RecoveryHandler:
    """Applies retry/skip/cancel/pause/resume/modify-config actions to a job.

    Validation is all-or-nothing: every referenced task is checked before any
    state changes. Every call, accepted or rejected, is recorded as a user action.
    """

    def __init__(self, *, repository: OrchestratorRepository) -> None:
        self.repository = repository

    def apply(
        self,
        *,
        job_id: str,
        action_type: UserActionType | str,
        task_ids: list[str] | None = None,
        actor_id: str,
        context: dict[str, Any] | None = None,
    ) -> ActionResult:
        references = list(dict.fromkeys(task_ids or []))
        job = self.repository.get_job(job_id)
        if job is None:
            # No job row to attach an audit record to.
            return ActionResult(success=False, message=f"Job not found: {job_id}")

        raw_action = action_type.value if isinstance(action_type, UserActionType) else action_type
        try:
            action = UserActionType(raw_action)
        except ValueError:
            result = ActionResult(success=False, message=f"Unsupported action: {raw_action}")
        else:
            try:
                result = self._dispatch(
                    job=job,
                    action=action,
                    references=references,
                    context=context or {},
                )
            except ActionRejectedError as error:
                result = ActionResult(success=False, message=str(error))
            except RuntimeError as error:
                # Lost a race with a worker or another operator.
                result = ActionResult(success=False, message=str(error))

        self.repository.add_user_action(
            job_id=job_id,
            actor_id=actor_id,
            action_type=raw_action,
            context={"task_ids": references, **(context or {})},
            affected_tasks=result.affected_tasks,
            successful=result.success,
            message=result.message,
        )
        log = logger.info if result.success else logger.warning
        log("Action %s on job %s by %s: %s", raw_action, job_id, actor_id, result.message)
        return result

    def _dispatch(
        self,
        *,
        job: JobView,
        action: UserActionType,
        references: list[str],
        context: dict[str, Any],
    ) -> ActionResult:
        if job.status in TERMINAL_JOB_STATUSES:
            raise ActionRejectedError(
                f"Job {job.job_id} is {job.status.value}; actions are not allowed",
            )

        if action is UserActionType.RETRY_TASK:
            tasks = self._resolve_tasks(job.job_id, references, required=True)
            for task in tasks:
                if task.status is not TaskStatus.FAILED:
                    raise ActionRejectedError(
                        f"Task {task.task_key} is {task.status.value}; only failed tasks retry",
                    )
                if task.is_recoverable is False:
                    raise ActionRejectedError(
                        f"Task {task.task_key} failed with a non-recoverable error",
                    )
            keys = self.repository.retry_failed_tasks(
                job_id=job.job_id,
                task_ids=[task.task_id for task in tasks],
            )
            return ActionResult(True, f"Retrying {len(keys)} tasks", keys)

        if action is UserActionType.SKIP_TASK:
            tasks = self._resolve_tasks(job.job_id, references, required=True)
            for task in tasks:
                if task.status not in SKIPPABLE_TASK_STATUSES:
                    raise ActionRejectedError(
                        f"Task {task.task_key} is {task.status.value} and cannot be skipped",
                    )
            keys = self.repository.skip_tasks(
                job_id=job.job_id,
                task_ids=[task.task_id for task in tasks],
            )
            return ActionResult(True, f"Skipped {len(keys)} tasks", keys)

        if action is UserActionType.CANCEL_JOB:
            keys = self.repository.cancel_job(job_id=job.job_id)
            return ActionResult(True, f"Job cancelled; {len(keys)} tasks cancelled", keys)

        if action is UserActionType.PAUSE_JOB:
            if job.status not in {JobStatus.QUEUED, JobStatus.PROCESSING}:
                raise ActionRejectedError(f"Job {job.job_id} is {job.status.value}")
            keys = self.repository.pause_job(job_id=job.job_id)
            return ActionResult(True, f"Job paused; {len(keys)} waiting tasks held", keys)

        if action is UserActionType.RESUME_JOB:
            if job.status is not JobStatus.PAUSED:
                raise ActionRejectedError(f"Job {job.job_id} is not paused")
            keys = self.repository.resume_job(job_id=job.job_id)
            return ActionResult(True, f"Job resumed; {len(keys)} tasks enqueued", keys)

        return self._modify_config(job=job, references=references, context=context)

    def _modify_config(
        self,
        *,
        job: JobView,
        references: list[str],
        context: dict[str, Any],
    ) -> ActionResult:
        patch = dict(context)
        max_retry_count = _optional_int(patch.pop("max_retry_count", None), "max_retry_count")
        execution_priority = _optional_int(
            patch.pop("execution_priority", None),
            "execution_priority",
        )
        if max_retry_count is not None and max_retry_count < 0:
            raise ActionRejectedError("max_retry_count must be >= 0")
        if not patch and max_retry_count is None and execution_priority is None:
            raise ActionRejectedError("modify_config requires a non-empty context")

        if references:
            tasks = self._resolve_tasks(job.job_id, references, required=True)
            for task in tasks:
                if task.status.value not in NON_TERMINAL_TASK_STATUSES:
                    raise ActionRejectedError(
                        f"Task {task.task_key} is {task.status.value}; config is frozen",
                    )
        else:
            tasks = [
                task
                for task in self.repository.list_tasks(job.job_id)
                if task.status.value in NON_TERMINAL_TASK_STATUSES
            ]
        keys = self.repository.modify_job_config(
            job_id=job.job_id,
            config_patch=patch,
            task_ids=[task.task_id for task in tasks],
            max_retry_count=max_retry_count,
            execution_priority=execution_priority,
        )
        return ActionResult(True, f"Configuration updated; {len(keys)} tasks adjusted", keys)

    def _resolve_tasks(
        self,
        job_id: str,
        references: list[str],
        *,
        required: bool,
    ) -> list[TaskView]:
        if required and not references:
            raise ActionRejectedError("At least one task id or key is required")
        tasks: list[TaskView] = []
        missing: list[str] = []
        for reference in references:
            task = self.repository.find_task(job_id=job_id, reference=reference)
            if task is None:
                missing.append(reference)
            else:
                tasks.append(task)
        if missing:
            raise ActionRejectedError(f"Unknown tasks: {', '.join(missing)}")
        return tasks


def _optional_int(value: Any, name: str) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as error:
        raise ActionRejectedError(f"{name} must be an integer") from error
