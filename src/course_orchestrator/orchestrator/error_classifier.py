"""Deterministic task failure classification for retry policy and reporting."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Any

from course_orchestrator.orchestrator.circuit_breaker import CircuitOpenError
from course_orchestrator.orchestrator.handlers import (
    HandlerNotFoundError,
    HandlerRateLimitError,
    HandlerTimeoutError,
    HandlerValidationError,
    ResourceExhaustedError,
)
from course_orchestrator.orchestrator.models import (
    ErrorCategory,
    ErrorRecordCreate,
    ErrorRecordView,
    ErrorSeverity,
    RetryStrategy,
)

ERROR_CLASSIFIER_VERSION = "1"


@dataclass(frozen=True, slots=True)
class _Rule:
    name: str
    category: ErrorCategory
    severity: ErrorSeverity
    recoverable: bool
    retry_strategy: RetryStrategy
    suggestions: tuple[str, ...]
    patterns: tuple[str, ...] = ()


_CIRCUIT_OPEN = _Rule(
    name="circuit_open",
    category=ErrorCategory.EXTERNAL_DEPENDENCY,
    severity=ErrorSeverity.MEDIUM,
    recoverable=True,
    retry_strategy=RetryStrategy.EXPONENTIAL_BACKOFF,
    suggestions=(
        "Wait for the dependency cool-down to elapse",
        "Check the health of the external generation service",
    ),
)
_RATE_LIMIT = _Rule(
    name="rate_limit",
    category=ErrorCategory.EXTERNAL_DEPENDENCY,
    severity=ErrorSeverity.MEDIUM,
    recoverable=True,
    retry_strategy=RetryStrategy.EXPONENTIAL_BACKOFF,
    suggestions=(
        "Wait for rate limit to reset",
        "Reduce parallel API calls",
        "Implement request queuing",
    ),
    patterns=("rate limit", "too many requests", "429"),
)
_TIMEOUT = _Rule(
    name="timeout",
    category=ErrorCategory.EXTERNAL_DEPENDENCY,
    severity=ErrorSeverity.LOW,
    recoverable=True,
    retry_strategy=RetryStrategy.EXPONENTIAL_BACKOFF,
    suggestions=(
        "Check network connectivity",
        "Reduce request payload size",
        "Increase timeout threshold",
    ),
    patterns=("timeout", "timed out", "etimedout", "econnaborted"),
)
_KNOWLEDGE_BASE_EMPTY = _Rule(
    name="knowledge_base_empty",
    category=ErrorCategory.VALIDATION,
    severity=ErrorSeverity.CRITICAL,
    recoverable=False,
    retry_strategy=RetryStrategy.NONE,
    suggestions=(
        "Upload documents to knowledge base",
        "Verify document processing completed",
        "Check knowledge base permissions",
    ),
    patterns=("no documents found", "empty knowledge base", "no chunks available"),
)
_KNOWLEDGE_BASE_INSUFFICIENT = _Rule(
    name="knowledge_base_insufficient",
    category=ErrorCategory.VALIDATION,
    severity=ErrorSeverity.HIGH,
    recoverable=False,
    retry_strategy=RetryStrategy.MANUAL,
    suggestions=(
        "Upload additional learning materials",
        "Reduce course scope or duration",
        "Switch to standard generation mode",
    ),
    patterns=("insufficient content", "not enough material", "minimal chunks"),
)
_QUOTA = _Rule(
    name="quota_exhausted",
    category=ErrorCategory.RESOURCE_EXHAUSTION,
    severity=ErrorSeverity.HIGH,
    recoverable=False,
    retry_strategy=RetryStrategy.MANUAL,
    suggestions=(
        "Check API billing and quota",
        "Lower the generation budget for this job",
    ),
    patterns=("quota", "resource_exhausted", "billing", "credits", "usage limit"),
)
_DATABASE_CONNECTION = _Rule(
    name="database_connection",
    category=ErrorCategory.SYSTEM,
    severity=ErrorSeverity.CRITICAL,
    recoverable=False,
    retry_strategy=RetryStrategy.NONE,
    suggestions=(
        "Check database server status",
        "Verify connection credentials",
        "Review firewall settings",
    ),
    patterns=("database is locked", "unable to open database", "connection refused"),
)
_DATABASE_CONSTRAINT = _Rule(
    name="database_constraint",
    category=ErrorCategory.SYSTEM,
    severity=ErrorSeverity.MEDIUM,
    recoverable=False,
    retry_strategy=RetryStrategy.MANUAL,
    suggestions=(
        "Check for duplicate content",
        "Verify data integrity",
        "Clean up orphaned records",
    ),
    patterns=("unique constraint", "duplicate key", "foreign key"),
)
_PERMISSION_DENIED = _Rule(
    name="permission_denied",
    category=ErrorCategory.SYSTEM,
    severity=ErrorSeverity.HIGH,
    recoverable=False,
    retry_strategy=RetryStrategy.MANUAL,
    suggestions=(
        "Verify user permissions",
        "Check resource ownership",
        "Review access policies",
    ),
    patterns=("eacces", "permission denied", "access denied", "unauthorized", "forbidden"),
)
_OUT_OF_MEMORY = _Rule(
    name="out_of_memory",
    category=ErrorCategory.RESOURCE_EXHAUSTION,
    severity=ErrorSeverity.CRITICAL,
    recoverable=False,
    retry_strategy=RetryStrategy.NONE,
    suggestions=(
        "Reduce batch size",
        "Process in smaller chunks",
        "Increase memory allocation",
    ),
    patterns=("out of memory", "heap out of memory", "enomem", "memoryerror"),
)
_RESOURCE_EXHAUSTED = _Rule(
    name="resource_exhausted",
    category=ErrorCategory.RESOURCE_EXHAUSTION,
    severity=ErrorSeverity.HIGH,
    recoverable=True,
    retry_strategy=RetryStrategy.EXPONENTIAL_BACKOFF,
    suggestions=(
        "Retry after capacity frees up",
        "Reduce the size of the generation request",
    ),
)
_TRANSIENT = _Rule(
    name="transient_network",
    category=ErrorCategory.EXTERNAL_DEPENDENCY,
    severity=ErrorSeverity.MEDIUM,
    recoverable=True,
    retry_strategy=RetryStrategy.EXPONENTIAL_BACKOFF,
    suggestions=("Retry once the network recovers",),
    patterns=(
        "temporarily unavailable",
        "temporary failure",
        "connection reset",
        "network error",
        "service unavailable",
        "503",
    ),
)
_VALIDATION = _Rule(
    name="validation",
    category=ErrorCategory.VALIDATION,
    severity=ErrorSeverity.HIGH,
    recoverable=False,
    retry_strategy=RetryStrategy.MANUAL,
    suggestions=(
        "Review the task input payload",
        "Regenerate with different parameters",
        "Skip the task and continue",
    ),
)
_MISSING_HANDLER = _Rule(
    name="missing_handler",
    category=ErrorCategory.SYSTEM,
    severity=ErrorSeverity.CRITICAL,
    recoverable=False,
    retry_strategy=RetryStrategy.NONE,
    suggestions=("Register a handler for this task type",),
)
_UNKNOWN = _Rule(
    name="fallback_unknown",
    category=ErrorCategory.SYSTEM,
    severity=ErrorSeverity.MEDIUM,
    recoverable=True,
    retry_strategy=RetryStrategy.EXPONENTIAL_BACKOFF,
    suggestions=(
        "Review error logs",
        "Contact technical support",
        "Retry with default settings",
    ),
)

_TYPED_RULES: tuple[tuple[type[BaseException], _Rule], ...] = (
    (CircuitOpenError, _CIRCUIT_OPEN),
    (HandlerRateLimitError, _RATE_LIMIT),
    (HandlerTimeoutError, _TIMEOUT),
    (TimeoutError, _TIMEOUT),
    (HandlerValidationError, _VALIDATION),
    (MemoryError, _OUT_OF_MEMORY),
    (ResourceExhaustedError, _RESOURCE_EXHAUSTED),
    (HandlerNotFoundError, _MISSING_HANDLER),
)
# Order matters: first match wins.
_PATTERN_RULES: tuple[_Rule, ...] = (
    _RATE_LIMIT,
    _TIMEOUT,
    _KNOWLEDGE_BASE_EMPTY,
    _KNOWLEDGE_BASE_INSUFFICIENT,
    _QUOTA,
    _DATABASE_CONNECTION,
    _DATABASE_CONSTRAINT,
    _PERMISSION_DENIED,
    _OUT_OF_MEMORY,
    _TRANSIENT,
)


@dataclass(slots=True)
class ErrorClassification:
    """Normalized failure classification result."""

    category: ErrorCategory
    severity: ErrorSeverity
    recoverable: bool
    suggestions: list[str]
    error_type: str
    retry_strategy: RetryStrategy
    message: str
    matched_rule: str
    matched_pattern: str | None
    context: dict[str, Any] = field(default_factory=dict)

    def to_event_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for task events and logs."""

        return {
            "classifier_version": ERROR_CLASSIFIER_VERSION,
            "error_type": self.error_type,
            "category": self.category.value,
            "severity": self.severity.value,
            "recoverable": self.recoverable,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }

    def to_error_record(self, *, job_id: str, task_id: str | None) -> ErrorRecordCreate:
        return ErrorRecordCreate(
            job_id=job_id,
            task_id=task_id,
            error_type=self.error_type,
            severity=self.severity,
            category=self.category,
            message=self.message,
            is_recoverable=self.recoverable,
            retry_strategy=self.retry_strategy,
            suggested_actions=list(self.suggestions),
            classifier_version=ERROR_CLASSIFIER_VERSION,
            matched_rule=self.matched_rule,
            context=dict(self.context),
        )


@dataclass(slots=True)
class ErrorPatternSummary:
    """Roll-up of a job's error records."""

    total_errors: int
    errors_by_category: dict[str, int]
    most_common_category: str | None
    critical_error_count: int
    recoverable_error_count: int
    unresolved_error_count: int
    average_resolution_seconds: float | None
    suggestions: list[str]


def classify(
    raw_error: BaseException | str,
    context: dict[str, Any] | None = None,
) -> ErrorClassification:
    """Classify a handler failure into category, severity and recoverability."""

    message = str(raw_error) or type(raw_error).__name__
    if isinstance(raw_error, BaseException):
        for exc_type, rule in _TYPED_RULES:
            if isinstance(raw_error, exc_type):
                return _build(rule, message=message, pattern=None, context=context)
        haystack = f"{type(raw_error).__name__}\n{message}".lower()
    else:
        haystack = message.lower()

    for rule in _PATTERN_RULES:
        pattern = _first_match(haystack, rule.patterns)
        if pattern is not None:
            return _build(rule, message=message, pattern=pattern, context=context)
    return _build(_UNKNOWN, message=message, pattern=None, context=context)


def recovery_suggestions(classification: ErrorClassification) -> list[str]:
    """Suggested actions plus hints that depend on severity and recoverability."""

    suggestions = list(classification.suggestions)
    if classification.severity is ErrorSeverity.CRITICAL:
        suggestions.insert(0, "Critical error: manual intervention may be required")
    if classification.recoverable:
        suggestions.append("This error is recoverable: automatic retry available")
    else:
        suggestions.append("This error requires manual resolution")
    return suggestions


def summarize_error_patterns(errors: list[ErrorRecordView]) -> ErrorPatternSummary | None:
    """Group a job's errors by category and derive pattern-based suggestions."""

    if not errors:
        return None

    by_category = Counter(error.category.value for error in errors)
    by_type = Counter(error.error_type for error in errors)
    resolved = [error for error in errors if error.resolved_at is not None]
    average_resolution = None
    if resolved:
        average_resolution = sum(
            (error.resolved_at - error.created_at).total_seconds()  # type: ignore[operator]
            for error in resolved
        ) / len(resolved)

    suggestions: list[str] = []
    if by_type[_RATE_LIMIT.name] > 3:  # noqa: PLR2004
        suggestions.append("Consider implementing request throttling or upgrading API plan")
    if by_type[_KNOWLEDGE_BASE_EMPTY.name] or by_type[_KNOWLEDGE_BASE_INSUFFICIENT.name]:
        suggestions.append("Ensure sufficient documents are uploaded before generation")
    if by_type[_DATABASE_CONNECTION.name] > 2:  # noqa: PLR2004
        suggestions.append("Database connectivity issues detected: check connection settings")
    if by_type[_CIRCUIT_OPEN.name]:
        suggestions.append("An external dependency tripped its circuit breaker")

    return ErrorPatternSummary(
        total_errors=len(errors),
        errors_by_category=dict(by_category),
        most_common_category=by_category.most_common(1)[0][0],
        critical_error_count=sum(
            1 for error in errors if error.severity is ErrorSeverity.CRITICAL
        ),
        recoverable_error_count=sum(1 for error in errors if error.is_recoverable),
        unresolved_error_count=len(errors) - len(resolved),
        average_resolution_seconds=average_resolution,
        suggestions=suggestions,
    )


def _build(
    rule: _Rule,
    *,
    message: str,
    pattern: str | None,
    context: dict[str, Any] | None,
) -> ErrorClassification:
    return ErrorClassification(
        category=rule.category,
        severity=rule.severity,
        recoverable=rule.recoverable and rule.severity is not ErrorSeverity.CRITICAL,
        suggestions=list(rule.suggestions),
        error_type=rule.name,
        retry_strategy=rule.retry_strategy,
        message=message,
        matched_rule=rule.name,
        matched_pattern=pattern,
        context=dict(context or {}),
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
