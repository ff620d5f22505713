"""Initial orchestrator schema: jobs, tasks, queue and audit tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "generation_jobs",
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("owner_id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("progress", sa.Float(), nullable=False),
        sa.Column("total_tasks", sa.Integer(), nullable=False),
        sa.Column("completed_tasks", sa.Integer(), nullable=False),
        sa.Column("failed_tasks", sa.Integer(), nullable=False),
        sa.Column("skipped_tasks", sa.Integer(), nullable=False),
        sa.Column("request_json", sa.Text(), nullable=False),
        sa.Column("result_json", sa.Text(), nullable=True),
        sa.Column("generation_config_json", sa.Text(), nullable=False),
        sa.Column("error_summary", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("job_id"),
    )
    op.create_index("ix_generation_jobs_owner_id", "generation_jobs", ["owner_id"])
    op.create_index("ix_generation_jobs_tenant_id", "generation_jobs", ["tenant_id"])
    op.create_index("ix_generation_jobs_status", "generation_jobs", ["status"])
    op.create_index(
        "idx_generation_jobs_status_updated",
        "generation_jobs",
        ["status", "updated_at"],
    )

    op.create_table(
        "generation_tasks",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("task_key", sa.String(), nullable=False),
        sa.Column("task_type", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("dependencies_json", sa.Text(), nullable=False),
        sa.Column("execution_priority", sa.Integer(), nullable=False),
        sa.Column("current_retry_count", sa.Integer(), nullable=False),
        sa.Column("max_retry_count", sa.Integer(), nullable=False),
        sa.Column("dependency_name", sa.String(), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("queued_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("input_json", sa.Text(), nullable=False),
        sa.Column("output_json", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("error_severity", sa.String(), nullable=True),
        sa.Column("error_category", sa.String(), nullable=True),
        sa.Column("is_recoverable", sa.Boolean(), nullable=True),
        sa.Column("recovery_suggestions_json", sa.Text(), nullable=True),
        sa.Column("api_calls", sa.Integer(), nullable=False),
        sa.Column("tokens_used", sa.Integer(), nullable=False),
        sa.Column("estimated_cost_usd", sa.Float(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["generation_jobs.job_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("task_id"),
        sa.UniqueConstraint("job_id", "task_key", name="uq_generation_tasks_job_key"),
    )
    op.create_index("ix_generation_tasks_job_id", "generation_tasks", ["job_id"])
    op.create_index("ix_generation_tasks_task_type", "generation_tasks", ["task_type"])
    op.create_index("ix_generation_tasks_status", "generation_tasks", ["status"])
    op.create_index(
        "ix_generation_tasks_error_severity",
        "generation_tasks",
        ["error_severity"],
    )
    op.create_index(
        "ix_generation_tasks_error_category",
        "generation_tasks",
        ["error_category"],
    )
    op.create_index(
        "idx_generation_tasks_job_status",
        "generation_tasks",
        ["job_id", "status"],
    )

    op.create_table(
        "generation_task_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["generation_tasks.task_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["job_id"], ["generation_jobs.job_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_generation_task_events_task_id",
        "generation_task_events",
        ["task_id"],
    )
    op.create_index("ix_generation_task_events_job_id", "generation_task_events", ["job_id"])
    op.create_index(
        "ix_generation_task_events_event_type",
        "generation_task_events",
        ["event_type"],
    )
    op.create_index(
        "ix_generation_task_events_status_from",
        "generation_task_events",
        ["status_from"],
    )
    op.create_index(
        "ix_generation_task_events_status_to",
        "generation_task_events",
        ["status_to"],
    )
    op.create_index(
        "idx_generation_task_events_task_time",
        "generation_task_events",
        ["task_id", "created_at"],
    )

    op.create_table(
        "queue_entries",
        sa.Column("entry_id", sa.Integer(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["generation_jobs.job_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["task_id"], ["generation_tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("entry_id"),
    )
    op.create_index("ix_queue_entries_job_id", "queue_entries", ["job_id"])
    op.create_index("ix_queue_entries_task_id", "queue_entries", ["task_id"])
    op.create_index("ix_queue_entries_worker_id", "queue_entries", ["worker_id"])
    op.create_index(
        "idx_queue_entries_claim",
        "queue_entries",
        ["status", "priority", "scheduled_for"],
    )
    op.create_index(
        "uq_queue_entries_active_task",
        "queue_entries",
        ["task_id"],
        unique=True,
        sqlite_where=sa.text("status IN ('pending', 'processing')"),
    )

    op.create_table(
        "error_records",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=True),
        sa.Column("error_type", sa.String(), nullable=False),
        sa.Column("severity", sa.String(), nullable=False),
        sa.Column("category", sa.String(), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("context_json", sa.Text(), nullable=True),
        sa.Column("is_recoverable", sa.Boolean(), nullable=False),
        sa.Column("retry_strategy", sa.String(), nullable=False),
        sa.Column("suggested_actions_json", sa.Text(), nullable=False),
        sa.Column("matched_rule", sa.String(), nullable=True),
        sa.Column("classifier_version", sa.String(), nullable=False),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolution_method", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["generation_jobs.job_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["task_id"], ["generation_tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_error_records_job_id", "error_records", ["job_id"])
    op.create_index("ix_error_records_task_id", "error_records", ["task_id"])
    op.create_index("ix_error_records_error_type", "error_records", ["error_type"])
    op.create_index("ix_error_records_severity", "error_records", ["severity"])
    op.create_index("ix_error_records_category", "error_records", ["category"])
    op.create_index("idx_error_records_job_time", "error_records", ["job_id", "created_at"])

    op.create_table(
        "analytics_records",
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("total_generation_time_seconds", sa.Float(), nullable=False),
        sa.Column("wall_clock_seconds", sa.Float(), nullable=True),
        sa.Column("average_task_duration_seconds", sa.Float(), nullable=True),
        sa.Column("success_rate", sa.Float(), nullable=False),
        sa.Column("total_tasks", sa.Integer(), nullable=False),
        sa.Column("completed_tasks", sa.Integer(), nullable=False),
        sa.Column("failed_tasks", sa.Integer(), nullable=False),
        sa.Column("skipped_tasks", sa.Integer(), nullable=False),
        sa.Column("retried_tasks", sa.Integer(), nullable=False),
        sa.Column("api_calls", sa.Integer(), nullable=False),
        sa.Column("tokens_used", sa.Integer(), nullable=False),
        sa.Column("estimated_cost_usd", sa.Float(), nullable=False),
        sa.Column("task_type_counts_json", sa.Text(), nullable=False),
        sa.Column("resource_usage_json", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["generation_jobs.job_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("job_id"),
    )

    op.create_table(
        "user_actions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=False),
        sa.Column("action_type", sa.String(), nullable=False),
        sa.Column("action_context_json", sa.Text(), nullable=True),
        sa.Column("affected_tasks_json", sa.Text(), nullable=False),
        sa.Column("successful", sa.Boolean(), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["generation_jobs.job_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_user_actions_job_id", "user_actions", ["job_id"])
    op.create_index("ix_user_actions_actor_id", "user_actions", ["actor_id"])
    op.create_index("ix_user_actions_action_type", "user_actions", ["action_type"])
    op.create_index("idx_user_actions_job_time", "user_actions", ["job_id", "created_at"])

    op.create_table(
        "job_logs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("level", sa.String(), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["generation_jobs.job_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_job_logs_job_id", "job_logs", ["job_id"])
    op.create_index("ix_job_logs_level", "job_logs", ["level"])
    op.create_index("ix_job_logs_source", "job_logs", ["source"])
    op.create_index("idx_job_logs_job_time", "job_logs", ["job_id", "created_at"])


def downgrade() -> None:
    op.drop_table("job_logs")
    op.drop_table("user_actions")
    op.drop_table("analytics_records")
    op.drop_table("error_records")
    op.drop_table("queue_entries")
    op.drop_table("generation_task_events")
    op.drop_table("generation_tasks")
    op.drop_table("generation_jobs")
