"""Domain models for course-generation jobs, tasks and the work queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    """Job lifecycle states."""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    PAUSED = "paused"


class TaskStatus(str, Enum):
    """Task lifecycle states."""

    PENDING = "pending"
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    RETRYING = "retrying"
    CANCELLED = "cancelled"


class TaskType(str, Enum):
    """Units of course generation work."""

    KNOWLEDGE_ANALYSIS = "knowledge_analysis"
    OUTLINE_GENERATION = "outline_generation"
    LESSON_SECTION = "lesson_section"
    LESSON_ASSESSMENT = "lesson_assessment"
    LESSON_MIND_MAP = "lesson_mind_map"
    LESSON_BRAINBYTES = "lesson_brainbytes"
    PATH_QUIZ = "path_quiz"
    CLASS_EXAM = "class_exam"
    CONTENT_VALIDATION = "content_validation"


class QueueEntryStatus(str, Enum):
    """Queue entry claim states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"


class ErrorSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(str, Enum):
    EXTERNAL_DEPENDENCY = "external_dependency"
    VALIDATION = "validation"
    RESOURCE_EXHAUSTION = "resource_exhaustion"
    SYSTEM = "system"


class RetryStrategy(str, Enum):
    """How a classified error should be retried, if at all."""

    EXPONENTIAL_BACKOFF = "exponential_backoff"
    MANUAL = "manual"
    NONE = "none"


class ResolutionMethod(str, Enum):
    AUTO_RETRY = "auto_retry"
    USER_ACTION = "user_action"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class UserActionType(str, Enum):
    """Operator actions accepted by the recovery handler."""

    RETRY_TASK = "retry_task"
    SKIP_TASK = "skip_task"
    CANCEL_JOB = "cancel_job"
    MODIFY_CONFIG = "modify_config"
    PAUSE_JOB = "pause_job"
    RESUME_JOB = "resume_job"


class LogLevel(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


TERMINAL_JOB_STATUSES = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED},
)
TERMINAL_TASK_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.SKIPPED, TaskStatus.CANCELLED},
)
# Statuses that satisfy a dependent's readiness check.
SETTLED_TASK_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.SKIPPED})


@dataclass(slots=True)
class TaskSpec:
    """One node of a job's task graph, as produced by decomposition."""

    task_key: str
    task_type: TaskType
    dependencies: list[str] = field(default_factory=list)
    execution_priority: int = 0
    dependency_name: str = "llm"
    input: dict[str, Any] = field(default_factory=dict)
    max_retry_count: int | None = None


@dataclass(slots=True)
class JobCreate:
    """Input payload for persisting a decomposed job."""

    title: str
    tasks: list[TaskSpec]
    owner_id: str
    tenant_id: str
    request: dict[str, Any] = field(default_factory=dict)
    generation_config: dict[str, Any] = field(default_factory=dict)
    max_retry_count: int = 3
    job_id: str | None = None


@dataclass(slots=True)
class JobView:
    """Readable job view with rolled-up counters."""

    job_id: str
    owner_id: str
    tenant_id: str
    title: str
    status: JobStatus
    progress: float
    total_tasks: int
    completed_tasks: int
    failed_tasks: int
    skipped_tasks: int
    request: dict[str, Any]
    result: dict[str, Any] | None
    generation_config: dict[str, Any]
    error_summary: str | None
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    updated_at: datetime


@dataclass(slots=True)
class TaskView:
    """Readable task view for executor, health and recovery logic."""

    task_id: str
    job_id: str
    task_key: str
    task_type: TaskType
    status: TaskStatus
    dependencies: list[str]
    execution_priority: int
    current_retry_count: int
    max_retry_count: int
    dependency_name: str
    sequence: int
    queued_at: datetime | None
    started_at: datetime | None
    completed_at: datetime | None
    last_retry_at: datetime | None
    input: dict[str, Any]
    output: dict[str, Any] | None
    error_message: str | None
    error_severity: ErrorSeverity | None
    error_category: ErrorCategory | None
    is_recoverable: bool | None
    recovery_suggestions: list[str]
    api_calls: int
    tokens_used: int
    estimated_cost_usd: float | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class TaskEventView:
    """Task event entry for audit trail."""

    event_id: int
    task_id: str
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class QueueEntryView:
    entry_id: int
    job_id: str
    task_id: str
    priority: int
    scheduled_for: datetime
    status: QueueEntryStatus
    worker_id: str | None
    claimed_at: datetime | None
    retry_count: int
    created_at: datetime


@dataclass(slots=True)
class ErrorRecordCreate:
    """Classified failure to append to the error log."""

    job_id: str
    task_id: str | None
    error_type: str
    severity: ErrorSeverity
    category: ErrorCategory
    message: str
    is_recoverable: bool
    retry_strategy: RetryStrategy
    suggested_actions: list[str]
    classifier_version: str
    matched_rule: str | None = None
    context: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ErrorRecordView:
    error_id: int
    job_id: str
    task_id: str | None
    error_type: str
    severity: ErrorSeverity
    category: ErrorCategory
    message: str
    context: dict[str, Any]
    is_recoverable: bool
    retry_strategy: RetryStrategy
    suggested_actions: list[str]
    matched_rule: str | None
    classifier_version: str
    resolved_at: datetime | None
    resolution_method: ResolutionMethod | None
    created_at: datetime


@dataclass(slots=True)
class UserActionView:
    action_id: int
    job_id: str
    actor_id: str
    action_type: str
    context: dict[str, Any]
    affected_tasks: list[str]
    successful: bool
    message: str
    created_at: datetime


@dataclass(slots=True)
class JobLogView:
    log_id: int
    job_id: str
    level: LogLevel
    message: str
    details: dict[str, Any]
    source: str
    created_at: datetime


@dataclass(slots=True)
class AnalyticsRecordView:
    """Post-hoc job metrics."""

    job_id: str
    total_generation_time_seconds: float
    wall_clock_seconds: float | None
    average_task_duration_seconds: float | None
    success_rate: float
    total_tasks: int
    completed_tasks: int
    failed_tasks: int
    skipped_tasks: int
    retried_tasks: int
    api_calls: int
    tokens_used: int
    estimated_cost_usd: float
    task_type_counts: dict[str, int] = field(default_factory=dict)
    resource_usage: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class JobStatusView:
    """Job with its task list, as returned to status readers."""

    job: JobView
    tasks: list[TaskView]


@dataclass(slots=True)
class TaskUsage:
    """Usage counters a handler reports for one attempt."""

    api_calls: int = 0
    tokens_used: int = 0
    estimated_cost_usd: float | None = None


@dataclass(slots=True)
class ActionResult:
    success: bool
    message: str
    affected_tasks: list[str] = field(default_factory=list)
