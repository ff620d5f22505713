"""SQLModel ORM tables for orchestrator storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint, text
from sqlmodel import Field, SQLModel

DEFAULT_OWNER_ID = "default_owner"
DEFAULT_TENANT_ID = "default_tenant"


class GenerationJob(SQLModel, table=True):
    __tablename__ = "generation_jobs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_generation_jobs_status_updated", "status", "updated_at"),)

    job_id: str = Field(primary_key=True)
    owner_id: str = Field(default=DEFAULT_OWNER_ID, index=True)
    tenant_id: str = Field(default=DEFAULT_TENANT_ID, index=True)
    title: str
    status: str = Field(index=True)
    progress: float = Field(default=0.0)
    total_tasks: int = Field(default=0)
    completed_tasks: int = Field(default=0)
    failed_tasks: int = Field(default=0)
    skipped_tasks: int = Field(default=0)
    request_json: str = Field(sa_column=Column(Text, nullable=False))
    result_json: str | None = Field(default=None, sa_column=Column(Text))
    generation_config_json: str = Field(sa_column=Column(Text, nullable=False))
    error_summary: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class GenerationTask(SQLModel, table=True):
    __tablename__ = "generation_tasks"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("job_id", "task_key", name="uq_generation_tasks_job_key"),
        Index("idx_generation_tasks_job_status", "job_id", "status"),
    )

    task_id: str = Field(primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("generation_jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    task_key: str
    task_type: str = Field(index=True)
    status: str = Field(index=True)
    dependencies_json: str = Field(sa_column=Column(Text, nullable=False))
    execution_priority: int = Field(default=0)
    current_retry_count: int = Field(default=0)
    max_retry_count: int = Field(default=3)
    dependency_name: str
    sequence: int = Field(default=0)
    queued_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    last_retry_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    input_json: str = Field(sa_column=Column(Text, nullable=False))
    output_json: str | None = Field(default=None, sa_column=Column(Text))
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    error_severity: str | None = Field(default=None, index=True)
    error_category: str | None = Field(default=None, index=True)
    is_recoverable: bool | None = None
    recovery_suggestions_json: str | None = Field(default=None, sa_column=Column(Text))
    api_calls: int = Field(default=0)
    tokens_used: int = Field(default=0)
    estimated_cost_usd: float | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class GenerationTaskEvent(SQLModel, table=True):
    __tablename__ = "generation_task_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_generation_task_events_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("generation_tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("generation_jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = Field(default=None, index=True)
    status_to: str | None = Field(default=None, index=True)
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class QueueEntry(SQLModel, table=True):
    __tablename__ = "queue_entries"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_queue_entries_claim", "status", "priority", "scheduled_for"),
        Index(
            "uq_queue_entries_active_task",
            "task_id",
            unique=True,
            sqlite_where=text("status IN ('pending', 'processing')"),
        ),
    )

    entry_id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("generation_jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("generation_tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    priority: int = Field(default=0)
    scheduled_for: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    status: str
    worker_id: str | None = Field(default=None, index=True)
    claimed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    retry_count: int = Field(default=0)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ErrorRecord(SQLModel, table=True):
    __tablename__ = "error_records"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_error_records_job_time", "job_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("generation_jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    task_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("generation_tasks.task_id", ondelete="CASCADE"),
            nullable=True,
            index=True,
        ),
    )
    error_type: str = Field(index=True)
    severity: str = Field(index=True)
    category: str = Field(index=True)
    message: str = Field(sa_column=Column(Text, nullable=False))
    context_json: str | None = Field(default=None, sa_column=Column(Text))
    is_recoverable: bool
    retry_strategy: str
    suggested_actions_json: str = Field(sa_column=Column(Text, nullable=False))
    matched_rule: str | None = None
    classifier_version: str
    resolved_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    resolution_method: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AnalyticsRecord(SQLModel, table=True):
    __tablename__ = "analytics_records"  # type: ignore[bad-override]

    job_id: str = Field(
        sa_column=Column(
            ForeignKey("generation_jobs.job_id", ondelete="CASCADE"),
            primary_key=True,
        ),
    )
    total_generation_time_seconds: float = Field(default=0.0)
    wall_clock_seconds: float | None = None
    average_task_duration_seconds: float | None = None
    success_rate: float = Field(default=0.0)
    total_tasks: int = Field(default=0)
    completed_tasks: int = Field(default=0)
    failed_tasks: int = Field(default=0)
    skipped_tasks: int = Field(default=0)
    retried_tasks: int = Field(default=0)
    api_calls: int = Field(default=0)
    tokens_used: int = Field(default=0)
    estimated_cost_usd: float = Field(default=0.0)
    task_type_counts_json: str = Field(sa_column=Column(Text, nullable=False))
    resource_usage_json: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class UserAction(SQLModel, table=True):
    __tablename__ = "user_actions"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_user_actions_job_time", "job_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("generation_jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    actor_id: str = Field(index=True)
    action_type: str = Field(index=True)
    action_context_json: str | None = Field(default=None, sa_column=Column(Text))
    affected_tasks_json: str = Field(sa_column=Column(Text, nullable=False))
    successful: bool
    message: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class JobLog(SQLModel, table=True):
    __tablename__ = "job_logs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_job_logs_job_time", "job_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("generation_jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    level: str = Field(index=True)
    message: str = Field(sa_column=Column(Text, nullable=False))
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    source: str = Field(index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
