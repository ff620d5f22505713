"""Persistent job, task and queue repository for the course orchestrator."""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from course_orchestrator.orchestrator.error_classifier import ERROR_CLASSIFIER_VERSION
from course_orchestrator.orchestrator.graph import (
    TaskGraph,
    calculate_job_completion_percentage,
    next_ready_tasks,
    validate_acyclic,
)
from course_orchestrator.orchestrator.models import (
    TERMINAL_JOB_STATUSES,
    TERMINAL_TASK_STATUSES,
    AnalyticsRecordView,
    ErrorCategory,
    ErrorRecordCreate,
    ErrorRecordView,
    ErrorSeverity,
    JobCreate,
    JobLogView,
    JobStatus,
    JobView,
    LogLevel,
    QueueEntryStatus,
    QueueEntryView,
    ResolutionMethod,
    RetryStrategy,
    TaskEventView,
    TaskStatus,
    TaskType,
    TaskUsage,
    TaskView,
    UserActionView,
)
from course_orchestrator.storage.alembic_runner import upgrade_head
from course_orchestrator.storage.common import (
    build_sqlite_engine,
    dump_json,
    load_json_list,
    load_json_object,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from course_orchestrator.storage.sqlmodel_models import (
    AnalyticsRecord,
    ErrorRecord,
    GenerationJob,
    GenerationTask,
    GenerationTaskEvent,
    JobLog,
    QueueEntry,
    UserAction,
)

ACTIVE_ENTRY_STATUSES = (QueueEntryStatus.PENDING.value, QueueEntryStatus.PROCESSING.value)
STARTABLE_TASK_STATUSES = (
    TaskStatus.QUEUED.value,
    TaskStatus.RETRYING.value,
    # A reclaimed entry whose previous holder died mid-run.
    TaskStatus.RUNNING.value,
)
SKIPPABLE_TASK_STATUSES = frozenset(
    {TaskStatus.PENDING, TaskStatus.QUEUED, TaskStatus.RETRYING, TaskStatus.FAILED},
)
CANCELLABLE_TASK_STATUSES = (
    TaskStatus.PENDING.value,
    TaskStatus.QUEUED.value,
    TaskStatus.RUNNING.value,
    TaskStatus.RETRYING.value,
)
NON_TERMINAL_TASK_STATUSES = CANCELLABLE_TASK_STATUSES
RUNNABLE_JOB_STATUSES = (JobStatus.QUEUED.value, JobStatus.PROCESSING.value)
ENQUEUEABLE_TASK_STATUSES = (
    TaskStatus.PENDING.value,
    TaskStatus.QUEUED.value,
    TaskStatus.RETRYING.value,
)
TERMINAL_TASK_STATUS_VALUES = frozenset(status.value for status in TERMINAL_TASK_STATUSES)
LOST_WORKER_ERROR_TYPE = "worker_lost"
LOST_WORKER_MESSAGE = "Worker lost while running the task; retry budget exhausted"
LOST_WORKER_SUGGESTIONS = [
    "Check worker logs for crashes or out-of-memory kills",
    "Retry the task once workers are stable",
]


class OrchestratorRepository:
    """Job, task and queue persistence facade backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    # Jobs

    def create_job(self, payload: JobCreate) -> JobView:
        """Persist a job with its task graph and enqueue the ready roots."""

        keys = [spec.task_key for spec in payload.tasks]
        duplicates = sorted(key for key, count in Counter(keys).items() if count > 1)
        if duplicates:
            raise ValueError(f"Duplicate task keys in job: {', '.join(duplicates)}")
        validate_acyclic(payload.tasks)

        now = _db_now()
        job_id = payload.job_id or str(uuid4())
        with Session(self.engine) as session:
            job = GenerationJob(
                job_id=job_id,
                owner_id=payload.owner_id,
                tenant_id=payload.tenant_id,
                title=payload.title,
                status=JobStatus.QUEUED.value,
                total_tasks=len(payload.tasks),
                request_json=dump_json(payload.request),
                generation_config_json=dump_json(payload.generation_config),
                created_at=now,
                updated_at=now,
            )
            session.add(job)
            session.flush()
            for sequence, spec in enumerate(payload.tasks):
                task_id = str(uuid4())
                session.add(
                    GenerationTask(
                        task_id=task_id,
                        job_id=job_id,
                        task_key=spec.task_key,
                        task_type=spec.task_type.value,
                        status=TaskStatus.PENDING.value,
                        dependencies_json=dump_json(list(spec.dependencies)),
                        execution_priority=spec.execution_priority,
                        current_retry_count=0,
                        max_retry_count=(
                            spec.max_retry_count
                            if spec.max_retry_count is not None
                            else payload.max_retry_count
                        ),
                        dependency_name=spec.dependency_name,
                        sequence=sequence,
                        input_json=dump_json(spec.input),
                        created_at=now,
                        updated_at=now,
                    ),
                )
                session.flush()
                self._add_event(
                    session=session,
                    task_id=task_id,
                    job_id=job_id,
                    event_type="created",
                    status_from=None,
                    status_to=TaskStatus.PENDING,
                    details={"task_key": spec.task_key, "task_type": spec.task_type.value},
                )
            self._enqueue_ready_in_session(session=session, job_id=job_id, now=now)
            self._refresh_job_counters(session=session, job_id=job_id, now=now)
            session.commit()
            session.refresh(job)
            return _to_job_view(job)

    def get_job(self, job_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.get(GenerationJob, job_id)
            return _to_job_view(row) if row is not None else None

    def require_job(self, job_id: str) -> JobView:
        job = self.get_job(job_id)
        if job is None:
            raise RuntimeError(f"Job not found: {job_id}")
        return job

    def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        owner_id: str | None = None,
        limit: int = 50,
    ) -> list[JobView]:
        """List recent jobs, optionally filtered by status and owner."""

        with Session(self.engine) as session:
            statement = select(GenerationJob)
            if status is not None:
                statement = statement.where(GenerationJob.status == status.value)
            if owner_id is not None:
                statement = statement.where(GenerationJob.owner_id == owner_id)
            statement = statement.order_by(col(GenerationJob.created_at).desc()).limit(limit)
            rows = session.exec(statement).all()
        return [_to_job_view(row) for row in rows]

    def list_job_ids(self, *, status: JobStatus) -> list[str]:
        with Session(self.engine) as session:
            return list(
                session.exec(
                    select(GenerationJob.job_id)
                    .where(GenerationJob.status == status.value)
                    .order_by(col(GenerationJob.created_at).asc()),
                ).all(),
            )

    def finish_job(
        self,
        *,
        job_id: str,
        status: JobStatus,
        error_summary: str | None = None,
    ) -> bool:
        """Move a processing job to a terminal status; False if it already left processing."""

        if status not in {JobStatus.COMPLETED, JobStatus.FAILED}:
            raise ValueError(f"Unsupported job finish status: {status}")

        now = _db_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(GenerationJob)
                .where(
                    col(GenerationJob.job_id) == job_id,
                    col(GenerationJob.status) == JobStatus.PROCESSING.value,
                )
                .values(
                    status=status.value,
                    completed_at=now,
                    error_summary=error_summary,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            if status is JobStatus.COMPLETED:
                rows = session.exec(
                    select(GenerationTask)
                    .where(
                        GenerationTask.job_id == job_id,
                        GenerationTask.status == TaskStatus.COMPLETED.value,
                    )
                    .order_by(col(GenerationTask.sequence).asc()),
                ).all()
                outputs = {row.task_key: load_json_object(row.output_json) for row in rows}
                session.exec(
                    sa_update(GenerationJob)
                    .where(col(GenerationJob.job_id) == job_id)
                    .values(result_json=dump_json({"outputs": outputs})),
                )
            session.commit()
            return True

    # Tasks

    def list_tasks(self, job_id: str, *, status: TaskStatus | None = None) -> list[TaskView]:
        """Tasks of one job in creation order."""

        with Session(self.engine) as session:
            statement = select(GenerationTask).where(GenerationTask.job_id == job_id)
            if status is not None:
                statement = statement.where(GenerationTask.status == status.value)
            rows = session.exec(statement.order_by(col(GenerationTask.sequence).asc())).all()
        return [_to_task_view(row) for row in rows]

    def get_task(self, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.get(GenerationTask, task_id)
            return _to_task_view(row) if row is not None else None

    def find_task(self, *, job_id: str, reference: str) -> TaskView | None:
        """Resolve a task by symbolic key first, then by task id."""

        with Session(self.engine) as session:
            row = session.exec(
                select(GenerationTask).where(
                    GenerationTask.job_id == job_id,
                    GenerationTask.task_key == reference,
                ),
            ).one_or_none()
            if row is None:
                row = session.exec(
                    select(GenerationTask).where(
                        GenerationTask.job_id == job_id,
                        GenerationTask.task_id == reference,
                    ),
                ).one_or_none()
            return _to_task_view(row) if row is not None else None

    def get_task_events(self, task_id: str) -> list[TaskEventView]:
        """Return the event stream of one task."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(GenerationTaskEvent)
                .where(GenerationTaskEvent.task_id == task_id)
                .order_by(col(GenerationTaskEvent.id).asc()),
            ).all()
        return [
            TaskEventView(
                event_id=row.id or 0,
                task_id=row.task_id,
                event_type=row.event_type,
                status_from=TaskStatus(row.status_from) if row.status_from is not None else None,
                status_to=TaskStatus(row.status_to) if row.status_to is not None else None,
                created_at=to_utc_aware_datetime(row.created_at),
                details=load_json_object(row.details_json),
            )
            for row in rows
        ]

    def start_task(self, *, task_id: str, worker_id: str) -> bool:
        """Mark a claimed task running; False when the task or its job can no longer start.

        Restarting a task that is still `running` means its previous worker died
        mid-attempt. That attempt counts against the retry budget, and a task whose
        budget is spent is failed here instead of being started again.
        """

        now = _db_now()
        with Session(self.engine) as session:
            current = session.exec(
                select(
                    GenerationTask.status,
                    GenerationTask.current_retry_count,
                    GenerationTask.max_retry_count,
                ).where(GenerationTask.task_id == task_id),
            ).one_or_none()
            if current is None:
                raise RuntimeError(f"Task not found: {task_id}")
            previous, retry_count, max_retry_count = current

            if previous == TaskStatus.RUNNING.value:
                retry_count += 1
                if retry_count > max_retry_count:
                    self._fail_lost_tasks(
                        session=session,
                        task_ids=[task_id],
                        now=now,
                        details={"worker_id": worker_id},
                    )
                    session.commit()
                    return False

            result = session.exec(
                sa_update(GenerationTask)
                .where(
                    col(GenerationTask.task_id) == task_id,
                    col(GenerationTask.status) == previous,
                    col(GenerationTask.status).in_(STARTABLE_TASK_STATUSES),
                )
                .values(
                    status=TaskStatus.RUNNING.value,
                    current_retry_count=retry_count,
                    started_at=now,
                    completed_at=None,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False

            task = session.get(GenerationTask, task_id)
            job = session.get(GenerationJob, task.job_id) if task is not None else None
            if task is None or job is None or job.status not in RUNNABLE_JOB_STATUSES:
                session.rollback()
                return False

            if job.status == JobStatus.QUEUED.value:
                session.exec(
                    sa_update(GenerationJob)
                    .where(
                        col(GenerationJob.job_id) == job.job_id,
                        col(GenerationJob.status) == JobStatus.QUEUED.value,
                    )
                    .values(status=JobStatus.PROCESSING.value, started_at=now),
                )
            self._add_event(
                session=session,
                task_id=task_id,
                job_id=task.job_id,
                event_type="started",
                status_from=TaskStatus(previous),
                status_to=TaskStatus.RUNNING,
                details={"worker_id": worker_id, "attempt": task.current_retry_count + 1},
            )
            self._refresh_job_counters(session=session, job_id=task.job_id, now=now)
            session.commit()
            return True

    def defer_task(self, *, task_id: str, entry_id: int | None, reason: str) -> bool:
        """Return a not-yet-running task to pending and drop its queue entry."""

        now = _db_now()
        with Session(self.engine) as session:
            if entry_id is not None:
                self._complete_entry(session=session, entry_id=entry_id, now=now)
            row = session.get(GenerationTask, task_id)
            if row is None:
                session.rollback()
                raise RuntimeError(f"Task not found: {task_id}")
            previous = row.status
            result = session.exec(
                sa_update(GenerationTask)
                .where(
                    col(GenerationTask.task_id) == task_id,
                    col(GenerationTask.status).in_(
                        [TaskStatus.QUEUED.value, TaskStatus.RETRYING.value],
                    ),
                )
                .values(status=TaskStatus.PENDING.value, updated_at=now),
            )
            if result.rowcount != 1:
                session.commit()
                return False
            self._drop_active_entries(session=session, task_ids=[task_id], now=now)
            self._add_event(
                session=session,
                task_id=task_id,
                job_id=row.job_id,
                event_type="deferred",
                status_from=TaskStatus(previous),
                status_to=TaskStatus.PENDING,
                details={"reason": reason},
            )
            self._refresh_job_counters(session=session, job_id=row.job_id, now=now)
            session.commit()
            return True

    def complete_task(
        self,
        *,
        task_id: str,
        entry_id: int | None,
        output: dict[str, Any],
        usage: TaskUsage,
    ) -> bool:
        """Persist a successful run and enqueue dependents that became ready."""

        now = _db_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(GenerationTask)
                .where(
                    col(GenerationTask.task_id) == task_id,
                    col(GenerationTask.status) == TaskStatus.RUNNING.value,
                )
                .values(
                    status=TaskStatus.COMPLETED.value,
                    output_json=dump_json(output),
                    completed_at=now,
                    error_message=None,
                    error_severity=None,
                    error_category=None,
                    is_recoverable=None,
                    recovery_suggestions_json=None,
                    updated_at=now,
                    **_usage_values(usage),
                ),
            )
            if entry_id is not None:
                self._complete_entry(session=session, entry_id=entry_id, now=now)
            if result.rowcount != 1:
                session.commit()
                return False

            row = session.get(GenerationTask, task_id)
            if row is None:
                session.rollback()
                raise RuntimeError(f"Task not found: {task_id}")
            self._resolve_errors(
                session=session,
                task_ids=[task_id],
                method=ResolutionMethod.AUTO_RETRY,
                now=now,
            )
            self._add_event(
                session=session,
                task_id=task_id,
                job_id=row.job_id,
                event_type="completed",
                status_from=TaskStatus.RUNNING,
                status_to=TaskStatus.COMPLETED,
                details={
                    "api_calls": usage.api_calls,
                    "tokens_used": usage.tokens_used,
                    "estimated_cost_usd": usage.estimated_cost_usd,
                },
            )
            self._enqueue_ready_in_session(
                session=session,
                job_id=row.job_id,
                now=now,
                settled_keys=[row.task_key],
            )
            self._refresh_job_counters(session=session, job_id=row.job_id, now=now)
            session.commit()
            return True

    def schedule_retry(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        entry_id: int | None,
        delay_seconds: float,
        error_message: str,
        severity: ErrorSeverity,
        category: ErrorCategory,
        suggestions: list[str],
        usage: TaskUsage | None = None,
    ) -> bool:
        """Move a running task to retrying and enqueue a deferred entry."""

        now = _db_now()
        scheduled_for = now + timedelta(seconds=delay_seconds)
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(GenerationTask)
                .where(
                    col(GenerationTask.task_id) == task_id,
                    col(GenerationTask.status) == TaskStatus.RUNNING.value,
                )
                .values(
                    status=TaskStatus.RETRYING.value,
                    current_retry_count=col(GenerationTask.current_retry_count) + 1,
                    last_retry_at=now,
                    error_message=error_message,
                    error_severity=severity.value,
                    error_category=category.value,
                    is_recoverable=True,
                    recovery_suggestions_json=dump_json(suggestions),
                    updated_at=now,
                    **_usage_values(usage or TaskUsage()),
                ),
            )
            if entry_id is not None:
                self._complete_entry(session=session, entry_id=entry_id, now=now)
            if result.rowcount != 1:
                session.commit()
                return False

            row = session.get(GenerationTask, task_id)
            if row is None:
                session.rollback()
                raise RuntimeError(f"Task not found: {task_id}")
            self._drop_active_entries(session=session, task_ids=[task_id], now=now)
            self._insert_entry(session=session, task=row, now=now, scheduled_for=scheduled_for)
            self._add_event(
                session=session,
                task_id=task_id,
                job_id=row.job_id,
                event_type="retry_scheduled",
                status_from=TaskStatus.RUNNING,
                status_to=TaskStatus.RETRYING,
                details={
                    "retry_number": row.current_retry_count,
                    "scheduled_for": to_utc_aware_datetime(scheduled_for).isoformat(),
                    "severity": severity.value,
                    "category": category.value,
                },
            )
            self._refresh_job_counters(session=session, job_id=row.job_id, now=now)
            session.commit()
            return True

    def fail_task(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        entry_id: int | None,
        error_message: str,
        severity: ErrorSeverity,
        category: ErrorCategory,
        recoverable: bool,
        suggestions: list[str],
        usage: TaskUsage | None = None,
    ) -> bool:
        """Mark a running task failed with its classification."""

        now = _db_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(GenerationTask)
                .where(
                    col(GenerationTask.task_id) == task_id,
                    col(GenerationTask.status) == TaskStatus.RUNNING.value,
                )
                .values(
                    status=TaskStatus.FAILED.value,
                    completed_at=now,
                    error_message=error_message,
                    error_severity=severity.value,
                    error_category=category.value,
                    is_recoverable=recoverable,
                    recovery_suggestions_json=dump_json(suggestions),
                    updated_at=now,
                    **_usage_values(usage or TaskUsage()),
                ),
            )
            if entry_id is not None:
                self._complete_entry(session=session, entry_id=entry_id, now=now)
            if result.rowcount != 1:
                session.commit()
                return False

            row = session.get(GenerationTask, task_id)
            if row is None:
                session.rollback()
                raise RuntimeError(f"Task not found: {task_id}")
            self._add_event(
                session=session,
                task_id=task_id,
                job_id=row.job_id,
                event_type="failed",
                status_from=TaskStatus.RUNNING,
                status_to=TaskStatus.FAILED,
                details={
                    "severity": severity.value,
                    "category": category.value,
                    "recoverable": recoverable,
                    "error_message": error_message,
                },
            )
            self._refresh_job_counters(session=session, job_id=row.job_id, now=now)
            session.commit()
            return True

    # Queue

    def enqueue(
        self,
        task_id: str,
        *,
        scheduled_for: datetime | None = None,
    ) -> QueueEntryView | None:
        """Insert a queue entry unless the task already has an active one."""

        now = _db_now()
        with Session(self.engine) as session:
            row = session.get(GenerationTask, task_id)
            if row is None:
                raise RuntimeError(f"Task not found: {task_id}")
            if row.status not in ENQUEUEABLE_TASK_STATUSES:
                return None
            try:
                entry = self._insert_entry(
                    session=session,
                    task=row,
                    now=now,
                    scheduled_for=to_db_datetime(scheduled_for) if scheduled_for else now,
                )
                session.exec(
                    sa_update(GenerationTask)
                    .where(
                        col(GenerationTask.task_id) == task_id,
                        col(GenerationTask.status) == TaskStatus.PENDING.value,
                    )
                    .values(status=TaskStatus.QUEUED.value, queued_at=now, updated_at=now),
                )
                self._refresh_job_counters(session=session, job_id=row.job_id, now=now)
                session.commit()
            except IntegrityError:
                session.rollback()
                return None
            session.refresh(entry)
            return _to_entry_view(entry)

    def claim(self, *, worker_id: str) -> QueueEntryView | None:
        """Atomically claim the best eligible pending entry."""

        while True:
            now = _db_now()
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(QueueEntry)
                    .where(
                        QueueEntry.status == QueueEntryStatus.PENDING.value,
                        QueueEntry.scheduled_for <= now,
                    )
                    .order_by(
                        col(QueueEntry.priority).desc(),
                        col(QueueEntry.scheduled_for).asc(),
                        col(QueueEntry.entry_id).asc(),
                    )
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                result = session.exec(
                    sa_update(QueueEntry)
                    .where(
                        col(QueueEntry.entry_id) == candidate.entry_id,
                        col(QueueEntry.status) == QueueEntryStatus.PENDING.value,
                    )
                    .values(
                        status=QueueEntryStatus.PROCESSING.value,
                        worker_id=worker_id,
                        claimed_at=now,
                        updated_at=now,
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue

                session.commit()
                session.refresh(candidate)
                return _to_entry_view(candidate)

    def release(self, entry_id: int) -> bool:
        """Return a processing entry to pending and count the lost attempt."""

        now = _db_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(QueueEntry)
                .where(
                    col(QueueEntry.entry_id) == entry_id,
                    col(QueueEntry.status) == QueueEntryStatus.PROCESSING.value,
                )
                .values(
                    status=QueueEntryStatus.PENDING.value,
                    retry_count=col(QueueEntry.retry_count) + 1,
                    worker_id=None,
                    claimed_at=None,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def complete(self, entry_id: int) -> bool:
        now = _db_now()
        with Session(self.engine) as session:
            completed = self._complete_entry(session=session, entry_id=entry_id, now=now)
            session.commit()
            return completed

    def reclaim_stale(self, lease_duration: timedelta) -> int:
        """Release every processing entry whose claim is older than the lease."""

        now = _db_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(QueueEntry)
                .where(
                    col(QueueEntry.status) == QueueEntryStatus.PROCESSING.value,
                    col(QueueEntry.claimed_at) < now - lease_duration,
                )
                .values(
                    status=QueueEntryStatus.PENDING.value,
                    retry_count=col(QueueEntry.retry_count) + 1,
                    worker_id=None,
                    claimed_at=None,
                    updated_at=now,
                ),
            )
            session.commit()
            return int(result.rowcount or 0)

    def get_queue_entry(self, entry_id: int) -> QueueEntryView | None:
        with Session(self.engine) as session:
            row = session.get(QueueEntry, entry_id)
            return _to_entry_view(row) if row is not None else None

    def list_queue_entries(
        self,
        *,
        job_id: str | None = None,
        status: QueueEntryStatus | None = None,
    ) -> list[QueueEntryView]:
        with Session(self.engine) as session:
            statement = select(QueueEntry)
            if job_id is not None:
                statement = statement.where(QueueEntry.job_id == job_id)
            if status is not None:
                statement = statement.where(QueueEntry.status == status.value)
            rows = session.exec(statement.order_by(col(QueueEntry.entry_id).asc())).all()
        return [_to_entry_view(row) for row in rows]

    # Health

    def reset_stalled_tasks(self, *, job_id: str, started_before: datetime) -> list[str]:
        """Force running tasks started before the cutoff back to pending.

        Each reset spends one attempt of the task's retry budget; tasks with no
        budget left are failed instead. Returns the keys of the reset tasks.
        """

        now = _db_now()
        cutoff = to_db_datetime(started_before)
        with Session(self.engine) as session:
            candidates = session.exec(
                select(GenerationTask).where(
                    GenerationTask.job_id == job_id,
                    GenerationTask.status == TaskStatus.RUNNING.value,
                    col(GenerationTask.started_at) < cutoff,
                ),
            ).all()
            reset: list[GenerationTask] = []
            exhausted: list[str] = []
            for task in candidates:
                if task.current_retry_count >= task.max_retry_count:
                    exhausted.append(task.task_id)
                    continue
                result = session.exec(
                    sa_update(GenerationTask)
                    .where(
                        col(GenerationTask.task_id) == task.task_id,
                        col(GenerationTask.status) == TaskStatus.RUNNING.value,
                    )
                    .values(
                        status=TaskStatus.PENDING.value,
                        current_retry_count=col(GenerationTask.current_retry_count) + 1,
                        started_at=None,
                        updated_at=now,
                    ),
                )
                if result.rowcount == 1:
                    reset.append(task)
            failed = self._fail_lost_tasks(
                session=session,
                task_ids=exhausted,
                now=now,
                details={"cutoff": to_utc_aware_datetime(cutoff).isoformat()},
            )
            if not reset and not failed:
                session.rollback()
                return []

            self._drop_active_entries(
                session=session,
                task_ids=[task.task_id for task in reset],
                now=now,
            )
            for task in reset:
                self._add_event(
                    session=session,
                    task_id=task.task_id,
                    job_id=job_id,
                    event_type="reset_stalled",
                    status_from=TaskStatus.RUNNING,
                    status_to=TaskStatus.PENDING,
                    details={"cutoff": to_utc_aware_datetime(cutoff).isoformat()},
                )
            self._enqueue_ready_in_session(session=session, job_id=job_id, now=now)
            self._refresh_job_counters(session=session, job_id=job_id, now=now)
            session.commit()
            return [task.task_key for task in reset]

    def enqueue_ready_tasks(self, job_id: str) -> list[str]:
        """Enqueue every pending task of a runnable job whose dependencies settled."""

        now = _db_now()
        with Session(self.engine) as session:
            keys = self._enqueue_ready_in_session(session=session, job_id=job_id, now=now)
            if keys:
                self._refresh_job_counters(session=session, job_id=job_id, now=now)
            session.commit()
            return keys

    def add_job_log(
        self,
        *,
        job_id: str,
        level: LogLevel,
        message: str,
        source: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        with Session(self.engine) as session:
            session.add(
                JobLog(
                    job_id=job_id,
                    level=level.value,
                    message=message,
                    details_json=dump_json(details) if details else None,
                    source=source,
                    created_at=_db_now(),
                ),
            )
            session.commit()

    def list_job_logs(
        self,
        *,
        job_id: str | None = None,
        level: LogLevel | None = None,
        limit: int = 100,
    ) -> list[JobLogView]:
        with Session(self.engine) as session:
            statement = select(JobLog)
            if job_id is not None:
                statement = statement.where(JobLog.job_id == job_id)
            if level is not None:
                statement = statement.where(JobLog.level == level.value)
            rows = session.exec(statement.order_by(col(JobLog.id).asc()).limit(limit)).all()
        return [
            JobLogView(
                log_id=row.id or 0,
                job_id=row.job_id,
                level=LogLevel(row.level),
                message=row.message,
                details=load_json_object(row.details_json),
                source=row.source,
                created_at=to_utc_aware_datetime(row.created_at),
            )
            for row in rows
        ]

    # Errors

    def add_error_record(self, payload: ErrorRecordCreate) -> ErrorRecordView:
        with Session(self.engine) as session:
            row = ErrorRecord(
                job_id=payload.job_id,
                task_id=payload.task_id,
                error_type=payload.error_type,
                severity=payload.severity.value,
                category=payload.category.value,
                message=payload.message,
                context_json=dump_json(payload.context) if payload.context else None,
                is_recoverable=payload.is_recoverable,
                retry_strategy=payload.retry_strategy.value,
                suggested_actions_json=dump_json(payload.suggested_actions),
                matched_rule=payload.matched_rule,
                classifier_version=payload.classifier_version,
                created_at=_db_now(),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_error_view(row)

    def list_errors(
        self,
        *,
        job_id: str | None = None,
        unresolved_only: bool = False,
        limit: int = 100,
    ) -> list[ErrorRecordView]:
        with Session(self.engine) as session:
            statement = select(ErrorRecord)
            if job_id is not None:
                statement = statement.where(ErrorRecord.job_id == job_id)
            if unresolved_only:
                statement = statement.where(col(ErrorRecord.resolved_at).is_(None))
            rows = session.exec(statement.order_by(col(ErrorRecord.id).asc()).limit(limit)).all()
        return [_to_error_view(row) for row in rows]

    # Recovery

    def retry_failed_tasks(self, *, job_id: str, task_ids: list[str]) -> list[str]:
        """Reopen failed tasks for another run, keeping their retry counters."""

        now = _db_now()
        with Session(self.engine) as session:
            keys = self._transition_tasks(
                session=session,
                job_id=job_id,
                task_ids=task_ids,
                allowed=(TaskStatus.FAILED.value,),
                status_to=TaskStatus.PENDING,
                event_type="manual_retry",
                values={
                    "completed_at": None,
                    "error_message": None,
                    "error_severity": None,
                    "error_category": None,
                    "is_recoverable": None,
                    "recovery_suggestions_json": None,
                },
                now=now,
            )
            self._resolve_errors(
                session=session,
                task_ids=task_ids,
                method=ResolutionMethod.USER_ACTION,
                now=now,
            )
            self._enqueue_ready_in_session(session=session, job_id=job_id, now=now)
            self._refresh_job_counters(session=session, job_id=job_id, now=now)
            session.commit()
            return keys

    def skip_tasks(self, *, job_id: str, task_ids: list[str]) -> list[str]:
        """Mark tasks skipped so their dependents can proceed."""

        now = _db_now()
        with Session(self.engine) as session:
            keys = self._transition_tasks(
                session=session,
                job_id=job_id,
                task_ids=task_ids,
                allowed=tuple(status.value for status in SKIPPABLE_TASK_STATUSES),
                status_to=TaskStatus.SKIPPED,
                event_type="skipped",
                values={"completed_at": now},
                now=now,
            )
            self._drop_active_entries(session=session, task_ids=task_ids, now=now)
            self._resolve_errors(
                session=session,
                task_ids=task_ids,
                method=ResolutionMethod.SKIPPED,
                now=now,
            )
            self._enqueue_ready_in_session(session=session, job_id=job_id, now=now)
            self._refresh_job_counters(session=session, job_id=job_id, now=now)
            session.commit()
            return keys

    def cancel_job(self, *, job_id: str) -> list[str]:
        """Cancel a job and every non-terminal task; running tasks stop cooperatively."""

        now = _db_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(GenerationJob)
                .where(
                    col(GenerationJob.job_id) == job_id,
                    col(GenerationJob.status).not_in(
                        [status.value for status in TERMINAL_JOB_STATUSES],
                    ),
                )
                .values(status=JobStatus.CANCELLED.value, completed_at=now, updated_at=now),
            )
            if result.rowcount != 1:
                session.rollback()
                raise RuntimeError(
                    "Job state changed concurrently while cancelling; "
                    f"please retry command (job_id={job_id}).",
                )
            rows = session.exec(
                select(GenerationTask).where(
                    GenerationTask.job_id == job_id,
                    col(GenerationTask.status).in_(CANCELLABLE_TASK_STATUSES),
                ),
            ).all()
            task_ids = [row.task_id for row in rows]
            keys = self._transition_tasks(
                session=session,
                job_id=job_id,
                task_ids=task_ids,
                allowed=CANCELLABLE_TASK_STATUSES,
                status_to=TaskStatus.CANCELLED,
                event_type="cancelled",
                values={"completed_at": now},
                now=now,
            )
            session.exec(
                sa_update(QueueEntry)
                .where(
                    col(QueueEntry.job_id) == job_id,
                    col(QueueEntry.status) == QueueEntryStatus.PENDING.value,
                )
                .values(status=QueueEntryStatus.COMPLETED.value, updated_at=now),
            )
            self._resolve_errors(
                session=session,
                task_ids=task_ids,
                method=ResolutionMethod.CANCELLED,
                now=now,
            )
            self._refresh_job_counters(session=session, job_id=job_id, now=now)
            session.commit()
            return keys

    def pause_job(self, *, job_id: str) -> list[str]:
        """Pause a runnable job; waiting tasks go back to pending."""

        now = _db_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(GenerationJob)
                .where(
                    col(GenerationJob.job_id) == job_id,
                    col(GenerationJob.status).in_(RUNNABLE_JOB_STATUSES),
                )
                .values(status=JobStatus.PAUSED.value, updated_at=now),
            )
            if result.rowcount != 1:
                session.rollback()
                raise RuntimeError(
                    "Job state changed concurrently while pausing; "
                    f"please retry command (job_id={job_id}).",
                )
            waiting = (TaskStatus.QUEUED.value, TaskStatus.RETRYING.value)
            rows = session.exec(
                select(GenerationTask).where(
                    GenerationTask.job_id == job_id,
                    col(GenerationTask.status).in_(waiting),
                ),
            ).all()
            task_ids = [row.task_id for row in rows]
            keys = self._transition_tasks(
                session=session,
                job_id=job_id,
                task_ids=task_ids,
                allowed=waiting,
                status_to=TaskStatus.PENDING,
                event_type="paused",
                values={},
                now=now,
            )
            self._drop_active_entries(session=session, task_ids=task_ids, now=now)
            self._refresh_job_counters(session=session, job_id=job_id, now=now)
            session.commit()
            return keys

    def resume_job(self, *, job_id: str) -> list[str]:
        """Resume a paused job and enqueue whatever is ready."""

        now = _db_now()
        with Session(self.engine) as session:
            job = session.get(GenerationJob, job_id)
            if job is None:
                raise RuntimeError(f"Job not found: {job_id}")
            resumed = JobStatus.PROCESSING if job.started_at is not None else JobStatus.QUEUED
            result = session.exec(
                sa_update(GenerationJob)
                .where(
                    col(GenerationJob.job_id) == job_id,
                    col(GenerationJob.status) == JobStatus.PAUSED.value,
                )
                .values(status=resumed.value, updated_at=now),
            )
            if result.rowcount != 1:
                session.rollback()
                raise RuntimeError(
                    "Job state changed concurrently while resuming; "
                    f"please retry command (job_id={job_id}).",
                )
            keys = self._enqueue_ready_in_session(session=session, job_id=job_id, now=now)
            self._refresh_job_counters(session=session, job_id=job_id, now=now)
            session.commit()
            return keys

    def modify_job_config(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        config_patch: dict[str, Any],
        task_ids: list[str],
        max_retry_count: int | None = None,
        execution_priority: int | None = None,
    ) -> list[str]:
        """Merge config into the job and apply per-task overrides to non-terminal tasks."""

        now = _db_now()
        with Session(self.engine) as session:
            job = session.get(GenerationJob, job_id)
            if job is None:
                raise RuntimeError(f"Job not found: {job_id}")
            merged = load_json_object(job.generation_config_json)
            merged.update(config_patch)
            result = session.exec(
                sa_update(GenerationJob)
                .where(
                    col(GenerationJob.job_id) == job_id,
                    col(GenerationJob.status).not_in(
                        [status.value for status in TERMINAL_JOB_STATUSES],
                    ),
                )
                .values(generation_config_json=dump_json(merged), updated_at=now),
            )
            if result.rowcount != 1:
                session.rollback()
                raise RuntimeError(
                    "Job state changed concurrently while modifying config; "
                    f"please retry command (job_id={job_id}).",
                )

            overrides: dict[str, Any] = {}
            if max_retry_count is not None:
                overrides["max_retry_count"] = max_retry_count
            if execution_priority is not None:
                overrides["execution_priority"] = execution_priority
            keys: list[str] = []
            if overrides and task_ids:
                keys = self._transition_tasks(
                    session=session,
                    job_id=job_id,
                    task_ids=task_ids,
                    allowed=NON_TERMINAL_TASK_STATUSES,
                    status_to=None,
                    event_type="config_modified",
                    values=overrides,
                    now=now,
                )
                if execution_priority is not None:
                    session.exec(
                        sa_update(QueueEntry)
                        .where(
                            col(QueueEntry.task_id).in_(task_ids),
                            col(QueueEntry.status) == QueueEntryStatus.PENDING.value,
                        )
                        .values(priority=execution_priority, updated_at=now),
                    )
            session.commit()
            return keys

    def add_user_action(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        actor_id: str,
        action_type: str,
        context: dict[str, Any] | None,
        affected_tasks: list[str],
        successful: bool,
        message: str,
    ) -> UserActionView:
        with Session(self.engine) as session:
            row = UserAction(
                job_id=job_id,
                actor_id=actor_id,
                action_type=action_type,
                action_context_json=dump_json(context) if context else None,
                affected_tasks_json=dump_json(affected_tasks),
                successful=successful,
                message=message,
                created_at=_db_now(),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_action_view(row)

    def list_user_actions(self, *, job_id: str | None = None) -> list[UserActionView]:
        with Session(self.engine) as session:
            statement = select(UserAction)
            if job_id is not None:
                statement = statement.where(UserAction.job_id == job_id)
            rows = session.exec(statement.order_by(col(UserAction.id).asc())).all()
        return [_to_action_view(row) for row in rows]

    # Analytics

    def upsert_analytics(self, record: AnalyticsRecordView) -> None:
        now = _db_now()
        with Session(self.engine) as session:
            row = session.get(AnalyticsRecord, record.job_id)
            if row is None:
                row = AnalyticsRecord(
                    job_id=record.job_id,
                    task_type_counts_json="{}",
                    resource_usage_json="{}",
                    created_at=now,
                    updated_at=now,
                )
            row.total_generation_time_seconds = record.total_generation_time_seconds
            row.wall_clock_seconds = record.wall_clock_seconds
            row.average_task_duration_seconds = record.average_task_duration_seconds
            row.success_rate = record.success_rate
            row.total_tasks = record.total_tasks
            row.completed_tasks = record.completed_tasks
            row.failed_tasks = record.failed_tasks
            row.skipped_tasks = record.skipped_tasks
            row.retried_tasks = record.retried_tasks
            row.api_calls = record.api_calls
            row.tokens_used = record.tokens_used
            row.estimated_cost_usd = record.estimated_cost_usd
            row.task_type_counts_json = dump_json(record.task_type_counts)
            row.resource_usage_json = dump_json(record.resource_usage)
            row.updated_at = now
            session.add(row)
            session.commit()

    def get_analytics(self, job_id: str) -> AnalyticsRecordView | None:
        with Session(self.engine) as session:
            row = session.get(AnalyticsRecord, job_id)
            if row is None:
                return None
            return AnalyticsRecordView(
                job_id=row.job_id,
                total_generation_time_seconds=row.total_generation_time_seconds,
                wall_clock_seconds=row.wall_clock_seconds,
                average_task_duration_seconds=row.average_task_duration_seconds,
                success_rate=row.success_rate,
                total_tasks=row.total_tasks,
                completed_tasks=row.completed_tasks,
                failed_tasks=row.failed_tasks,
                skipped_tasks=row.skipped_tasks,
                retried_tasks=row.retried_tasks,
                api_calls=row.api_calls,
                tokens_used=row.tokens_used,
                estimated_cost_usd=row.estimated_cost_usd,
                task_type_counts={
                    key: int(value)
                    for key, value in load_json_object(row.task_type_counts_json).items()
                },
                resource_usage=load_json_object(row.resource_usage_json),
            )

    # Internals

    def _transition_tasks(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        task_ids: Iterable[str],
        allowed: tuple[str, ...],
        status_to: TaskStatus | None,
        event_type: str,
        values: dict[str, Any],
        now: datetime,
    ) -> list[str]:
        keys: list[str] = []
        for task_id in task_ids:
            row = session.get(GenerationTask, task_id)
            if row is None or row.job_id != job_id:
                session.rollback()
                raise RuntimeError(f"Task not found: {task_id}")
            previous = row.status
            if previous not in allowed:
                session.rollback()
                raise RuntimeError(
                    f"Task {row.task_key} cannot be changed from status={previous}",
                )
            update_values = dict(values)
            update_values["updated_at"] = now
            if status_to is not None:
                update_values["status"] = status_to.value
            result = session.exec(
                sa_update(GenerationTask)
                .where(
                    col(GenerationTask.task_id) == task_id,
                    col(GenerationTask.status) == previous,
                )
                .values(**update_values),
            )
            if result.rowcount != 1:
                session.rollback()
                raise RuntimeError(
                    "Task state changed concurrently; "
                    f"please retry command (task_id={task_id}).",
                )
            self._add_event(
                session=session,
                task_id=task_id,
                job_id=job_id,
                event_type=event_type,
                status_from=TaskStatus(previous),
                status_to=status_to if status_to is not None else TaskStatus(previous),
                details={
                    key: value
                    for key, value in values.items()
                    if isinstance(value, (int, str)) and key != "completed_at"
                },
            )
            keys.append(row.task_key)
        return keys

    def _enqueue_ready_in_session(
        self,
        *,
        session: Session,
        job_id: str,
        now: datetime,
        settled_keys: list[str] | None = None,
    ) -> list[str]:
        """Enqueue ready pending tasks, limited to dependents of `settled_keys` when given."""

        # Core updates earlier in this transaction leave loaded rows stale.
        session.expire_all()
        job_status = session.exec(
            select(GenerationJob.status).where(GenerationJob.job_id == job_id),
        ).one_or_none()
        if job_status not in RUNNABLE_JOB_STATUSES:
            return []

        rows = session.exec(
            select(GenerationTask)
            .where(GenerationTask.job_id == job_id)
            .order_by(col(GenerationTask.sequence).asc()),
        ).all()
        views = [_to_task_view(row) for row in rows]
        rows_by_id = {row.task_id: row for row in rows}
        ready = next_ready_tasks(views)
        if settled_keys is not None:
            graph = TaskGraph({view.task_key: view.dependencies for view in views})
            candidates = {key for settled in settled_keys for key in graph.dependents_of(settled)}
            ready = [view for view in ready if view.task_key in candidates]
        enqueued: list[str] = []
        for view in ready:
            if view.status is not TaskStatus.PENDING:
                continue
            result = session.exec(
                sa_update(GenerationTask)
                .where(
                    col(GenerationTask.task_id) == view.task_id,
                    col(GenerationTask.status) == TaskStatus.PENDING.value,
                )
                .values(status=TaskStatus.QUEUED.value, queued_at=now, updated_at=now),
            )
            if result.rowcount != 1:
                continue
            self._drop_active_entries(session=session, task_ids=[view.task_id], now=now)
            self._insert_entry(
                session=session,
                task=rows_by_id[view.task_id],
                now=now,
                scheduled_for=now,
            )
            self._add_event(
                session=session,
                task_id=view.task_id,
                job_id=job_id,
                event_type="enqueued",
                status_from=TaskStatus.PENDING,
                status_to=TaskStatus.QUEUED,
                details={"priority": view.execution_priority},
            )
            enqueued.append(view.task_key)
        return enqueued

    def _insert_entry(
        self,
        *,
        session: Session,
        task: GenerationTask,
        now: datetime,
        scheduled_for: datetime,
    ) -> QueueEntry:
        entry = QueueEntry(
            job_id=task.job_id,
            task_id=task.task_id,
            priority=task.execution_priority,
            scheduled_for=scheduled_for,
            status=QueueEntryStatus.PENDING.value,
            retry_count=0,
            created_at=now,
            updated_at=now,
        )
        session.add(entry)
        session.flush()
        return entry

    def _complete_entry(self, *, session: Session, entry_id: int, now: datetime) -> bool:
        result = session.exec(
            sa_update(QueueEntry)
            .where(
                col(QueueEntry.entry_id) == entry_id,
                col(QueueEntry.status).in_(ACTIVE_ENTRY_STATUSES),
            )
            .values(status=QueueEntryStatus.COMPLETED.value, updated_at=now),
        )
        return result.rowcount == 1

    def _drop_active_entries(
        self,
        *,
        session: Session,
        task_ids: list[str],
        now: datetime,
    ) -> None:
        if not task_ids:
            return
        session.exec(
            sa_update(QueueEntry)
            .where(
                col(QueueEntry.task_id).in_(task_ids),
                col(QueueEntry.status).in_(ACTIVE_ENTRY_STATUSES),
            )
            .values(status=QueueEntryStatus.COMPLETED.value, updated_at=now),
        )

    def _resolve_errors(
        self,
        *,
        session: Session,
        task_ids: list[str],
        method: ResolutionMethod,
        now: datetime,
    ) -> None:
        if not task_ids:
            return
        session.exec(
            sa_update(ErrorRecord)
            .where(
                col(ErrorRecord.task_id).in_(task_ids),
                col(ErrorRecord.resolved_at).is_(None),
            )
            .values(resolved_at=now, resolution_method=method.value),
        )

    def _fail_lost_tasks(
        self,
        *,
        session: Session,
        task_ids: list[str],
        now: datetime,
        details: dict[str, object],
    ) -> list[str]:
        """Fail running tasks whose last attempt died with its worker and has no retry left."""

        failed: list[str] = []
        for task_id in task_ids:
            result = session.exec(
                sa_update(GenerationTask)
                .where(
                    col(GenerationTask.task_id) == task_id,
                    col(GenerationTask.status) == TaskStatus.RUNNING.value,
                )
                .values(
                    status=TaskStatus.FAILED.value,
                    current_retry_count=col(GenerationTask.current_retry_count) + 1,
                    completed_at=now,
                    error_message=LOST_WORKER_MESSAGE,
                    error_severity=ErrorSeverity.HIGH.value,
                    error_category=ErrorCategory.SYSTEM.value,
                    is_recoverable=True,
                    recovery_suggestions_json=dump_json(LOST_WORKER_SUGGESTIONS),
                    updated_at=now,
                ),
            )
            task = session.get(GenerationTask, task_id)
            if result.rowcount != 1 or task is None:
                continue
            session.add(
                ErrorRecord(
                    job_id=task.job_id,
                    task_id=task_id,
                    error_type=LOST_WORKER_ERROR_TYPE,
                    severity=ErrorSeverity.HIGH.value,
                    category=ErrorCategory.SYSTEM.value,
                    message=LOST_WORKER_MESSAGE,
                    context_json=dump_json(details),
                    is_recoverable=True,
                    retry_strategy=RetryStrategy.MANUAL.value,
                    suggested_actions_json=dump_json(LOST_WORKER_SUGGESTIONS),
                    matched_rule=LOST_WORKER_ERROR_TYPE,
                    classifier_version=ERROR_CLASSIFIER_VERSION,
                    created_at=now,
                ),
            )
            self._drop_active_entries(session=session, task_ids=[task_id], now=now)
            self._add_event(
                session=session,
                task_id=task_id,
                job_id=task.job_id,
                event_type="failed",
                status_from=TaskStatus.RUNNING,
                status_to=TaskStatus.FAILED,
                details={**details, "error_type": LOST_WORKER_ERROR_TYPE},
            )
            self._refresh_job_counters(session=session, job_id=task.job_id, now=now)
            failed.append(task.task_key)
        return failed

    def _refresh_job_counters(self, *, session: Session, job_id: str, now: datetime) -> None:
        """Recompute job counters and progress from task rows.

        A queued job whose tasks all settled without any task starting (for
        example, every task skipped) moves to processing so the health sweep
        can finish it.
        """

        statuses = session.exec(
            select(GenerationTask.status).where(GenerationTask.job_id == job_id),
        ).all()
        counts = Counter(statuses)
        total = len(statuses)
        completed = counts[TaskStatus.COMPLETED.value]
        skipped = counts[TaskStatus.SKIPPED.value]
        session.exec(
            sa_update(GenerationJob)
            .where(col(GenerationJob.job_id) == job_id)
            .values(
                total_tasks=total,
                completed_tasks=completed,
                failed_tasks=counts[TaskStatus.FAILED.value],
                skipped_tasks=skipped,
                progress=calculate_job_completion_percentage(total, completed + skipped),
                updated_at=now,
            ),
        )
        if total and all(status in TERMINAL_TASK_STATUS_VALUES for status in statuses):
            session.exec(
                sa_update(GenerationJob)
                .where(
                    col(GenerationJob.job_id) == job_id,
                    col(GenerationJob.status) == JobStatus.QUEUED.value,
                )
                .values(
                    status=JobStatus.PROCESSING.value,
                    started_at=func.coalesce(col(GenerationJob.started_at), now),
                ),
            )

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str,
        job_id: str,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            GenerationTaskEvent(
                task_id=task_id,
                job_id=job_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=dump_json(details) if details else None,
                created_at=_db_now(),
            ),
        )


def _db_now() -> datetime:
    return to_db_datetime(utc_now())


def _usage_values(usage: TaskUsage) -> dict[str, Any]:
    """Column increments adding one attempt's usage to the task totals."""

    values: dict[str, Any] = {
        "api_calls": col(GenerationTask.api_calls) + usage.api_calls,
        "tokens_used": col(GenerationTask.tokens_used) + usage.tokens_used,
    }
    if usage.estimated_cost_usd is not None:
        values["estimated_cost_usd"] = (
            func.coalesce(col(GenerationTask.estimated_cost_usd), 0.0) + usage.estimated_cost_usd
        )
    return values


def _to_job_view(row: GenerationJob) -> JobView:
    return JobView(
        job_id=row.job_id,
        owner_id=row.owner_id,
        tenant_id=row.tenant_id,
        title=row.title,
        status=JobStatus(row.status),
        progress=row.progress,
        total_tasks=row.total_tasks,
        completed_tasks=row.completed_tasks,
        failed_tasks=row.failed_tasks,
        skipped_tasks=row.skipped_tasks,
        request=load_json_object(row.request_json),
        result=load_json_object(row.result_json) if row.result_json else None,
        generation_config=load_json_object(row.generation_config_json),
        error_summary=row.error_summary,
        created_at=to_utc_aware_datetime(row.created_at),
        started_at=optional_utc(row.started_at),
        completed_at=optional_utc(row.completed_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_task_view(row: GenerationTask) -> TaskView:
    return TaskView(
        task_id=row.task_id,
        job_id=row.job_id,
        task_key=row.task_key,
        task_type=TaskType(row.task_type),
        status=TaskStatus(row.status),
        dependencies=load_json_list(row.dependencies_json),
        execution_priority=row.execution_priority,
        current_retry_count=row.current_retry_count,
        max_retry_count=row.max_retry_count,
        dependency_name=row.dependency_name,
        sequence=row.sequence,
        queued_at=optional_utc(row.queued_at),
        started_at=optional_utc(row.started_at),
        completed_at=optional_utc(row.completed_at),
        last_retry_at=optional_utc(row.last_retry_at),
        input=load_json_object(row.input_json),
        output=load_json_object(row.output_json) if row.output_json else None,
        error_message=row.error_message,
        error_severity=ErrorSeverity(row.error_severity) if row.error_severity else None,
        error_category=ErrorCategory(row.error_category) if row.error_category else None,
        is_recoverable=row.is_recoverable,
        recovery_suggestions=load_json_list(row.recovery_suggestions_json),
        api_calls=row.api_calls,
        tokens_used=row.tokens_used,
        estimated_cost_usd=row.estimated_cost_usd,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_entry_view(row: QueueEntry) -> QueueEntryView:
    return QueueEntryView(
        entry_id=row.entry_id or 0,
        job_id=row.job_id,
        task_id=row.task_id,
        priority=row.priority,
        scheduled_for=to_utc_aware_datetime(row.scheduled_for),
        status=QueueEntryStatus(row.status),
        worker_id=row.worker_id,
        claimed_at=optional_utc(row.claimed_at),
        retry_count=row.retry_count,
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_error_view(row: ErrorRecord) -> ErrorRecordView:
    return ErrorRecordView(
        error_id=row.id or 0,
        job_id=row.job_id,
        task_id=row.task_id,
        error_type=row.error_type,
        severity=ErrorSeverity(row.severity),
        category=ErrorCategory(row.category),
        message=row.message,
        context=load_json_object(row.context_json),
        is_recoverable=row.is_recoverable,
        retry_strategy=RetryStrategy(row.retry_strategy),
        suggested_actions=load_json_list(row.suggested_actions_json),
        matched_rule=row.matched_rule,
        classifier_version=row.classifier_version,
        resolved_at=optional_utc(row.resolved_at),
        resolution_method=(
            ResolutionMethod(row.resolution_method) if row.resolution_method else None
        ),
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_action_view(row: UserAction) -> UserActionView:
    return UserActionView(
        action_id=row.id or 0,
        job_id=row.job_id,
        actor_id=row.actor_id,
        action_type=row.action_type,
        context=load_json_object(row.action_context_json),
        affected_tasks=load_json_list(row.affected_tasks_json),
        successful=row.successful,
        message=row.message,
        created_at=to_utc_aware_datetime(row.created_at),
    )
