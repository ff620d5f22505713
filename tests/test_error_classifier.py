from __future__ import annotations

from datetime import UTC, datetime, timedelta

import allure
import pytest

from course_orchestrator.orchestrator.circuit_breaker import CircuitOpenError
from course_orchestrator.orchestrator.error_classifier import (
    ERROR_CLASSIFIER_VERSION,
    classify,
    recovery_suggestions,
    summarize_error_patterns,
)
from course_orchestrator.orchestrator.handlers import (
    HandlerNotFoundError,
    HandlerRateLimitError,
    HandlerTimeoutError,
    HandlerValidationError,
    ResourceExhaustedError,
)
from course_orchestrator.orchestrator.models import (
    ErrorCategory,
    ErrorRecordView,
    ErrorSeverity,
    RetryStrategy,
    TaskType,
)

pytestmark = [
    allure.epic("Execution"),
    allure.feature("Error Classification"),
]


def test_classifier_version_is_stable() -> None:
    assert ERROR_CLASSIFIER_VERSION == "1"


@pytest.mark.parametrize(
    ("error", "error_type", "category", "severity", "recoverable"),
    [
        (
            HandlerRateLimitError("slow down"),
            "rate_limit",
            ErrorCategory.EXTERNAL_DEPENDENCY,
            ErrorSeverity.MEDIUM,
            True,
        ),
        (
            HandlerTimeoutError("no answer"),
            "timeout",
            ErrorCategory.EXTERNAL_DEPENDENCY,
            ErrorSeverity.LOW,
            True,
        ),
        (TimeoutError(), "timeout", ErrorCategory.EXTERNAL_DEPENDENCY, ErrorSeverity.LOW, True),
        (
            HandlerValidationError("bad outline"),
            "validation",
            ErrorCategory.VALIDATION,
            ErrorSeverity.HIGH,
            False,
        ),
        (
            ResourceExhaustedError("gpu pool busy"),
            "resource_exhausted",
            ErrorCategory.RESOURCE_EXHAUSTION,
            ErrorSeverity.HIGH,
            True,
        ),
        (
            MemoryError(),
            "out_of_memory",
            ErrorCategory.RESOURCE_EXHAUSTION,
            ErrorSeverity.CRITICAL,
            False,
        ),
        (
            CircuitOpenError("llm", 12.0),
            "circuit_open",
            ErrorCategory.EXTERNAL_DEPENDENCY,
            ErrorSeverity.MEDIUM,
            True,
        ),
        (
            HandlerNotFoundError(TaskType.CLASS_EXAM),
            "missing_handler",
            ErrorCategory.SYSTEM,
            ErrorSeverity.CRITICAL,
            False,
        ),
    ],
)
def test_typed_handler_errors(
    error: BaseException,
    error_type: str,
    category: ErrorCategory,
    severity: ErrorSeverity,
    recoverable: bool,
) -> None:
    classified = classify(error)
    assert classified.error_type == error_type
    assert classified.category is category
    assert classified.severity is severity
    assert classified.recoverable is recoverable
    assert classified.matched_pattern is None


@pytest.mark.parametrize(
    ("message", "rule", "pattern"),
    [
        ("HTTP 429 Too Many Requests", "rate_limit", "too many requests"),
        ("upstream request timed out after 30s", "timeout", "timed out"),
        ("No documents found in kb-1", "knowledge_base_empty", "no documents found"),
        (
            "Insufficient content for 12 lessons",
            "knowledge_base_insufficient",
            "insufficient content",
        ),
        ("Monthly quota exceeded", "quota_exhausted", "quota"),
        ("sqlite3: database is locked", "database_connection", "database is locked"),
        ("UNIQUE constraint failed: lessons.slug", "database_constraint", "unique constraint"),
        ("403 Forbidden", "permission_denied", "forbidden"),
        ("JavaScript heap out of memory", "out_of_memory", "out of memory"),
        ("503 Service Unavailable", "transient_network", "service unavailable"),
    ],
)
def test_message_patterns(message: str, rule: str, pattern: str) -> None:
    classified = classify(RuntimeError(message))
    assert classified.matched_rule == rule
    assert classified.matched_pattern == pattern
    assert classified.message == message


def test_rate_limit_wins_over_later_rules() -> None:
    classified = classify("429: quota window exhausted, please retry")
    assert classified.error_type == "rate_limit"


def test_critical_severity_is_never_recoverable() -> None:
    for raw in ("no chunks available", "connection refused by db host", "ENOMEM"):
        classified = classify(raw)
        assert classified.severity is ErrorSeverity.CRITICAL
        assert classified.recoverable is False
        assert classified.retry_strategy is RetryStrategy.NONE


def test_unknown_errors_fall_back_to_recoverable_system_error() -> None:
    classified = classify(KeyError("lesson_id"), context={"task_key": "outline"})
    assert classified.error_type == "fallback_unknown"
    assert classified.category is ErrorCategory.SYSTEM
    assert classified.severity is ErrorSeverity.MEDIUM
    assert classified.recoverable is True
    assert classified.context == {"task_key": "outline"}


def test_exception_type_name_participates_in_matching() -> None:
    class GatewayTimeout(Exception):
        pass

    assert classify(GatewayTimeout("gateway gave up")).error_type == "timeout"


def test_empty_message_uses_type_name() -> None:
    assert classify(RuntimeError()).message == "RuntimeError"


def test_event_details_and_error_record() -> None:
    classified = classify(HandlerRateLimitError("slow down"), context={"attempt": 2})

    details = classified.to_event_details()
    assert details["classifier_version"] == ERROR_CLASSIFIER_VERSION
    assert details["matched_rule"] == "rate_limit"
    assert details["recoverable"] is True

    record = classified.to_error_record(job_id="job-1", task_id="task-1")
    assert record.error_type == "rate_limit"
    assert record.retry_strategy is RetryStrategy.EXPONENTIAL_BACKOFF
    assert record.context == {"attempt": 2}
    assert record.suggested_actions[0] == "Wait for rate limit to reset"


def test_recovery_suggestions_add_context_hints() -> None:
    critical = recovery_suggestions(classify("empty knowledge base"))
    assert critical[0] == "Critical error: manual intervention may be required"
    assert critical[-1] == "This error requires manual resolution"

    transient = recovery_suggestions(classify(HandlerTimeoutError("slow")))
    assert transient[-1] == "This error is recoverable: automatic retry available"


def _record(
    error_type: str,
    category: ErrorCategory,
    *,
    severity: ErrorSeverity = ErrorSeverity.MEDIUM,
    resolved_after: float | None = None,
) -> ErrorRecordView:
    created = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)
    return ErrorRecordView(
        error_id=0,
        job_id="job-1",
        task_id=None,
        error_type=error_type,
        severity=severity,
        category=category,
        message=error_type,
        context={},
        is_recoverable=severity is not ErrorSeverity.CRITICAL,
        retry_strategy=RetryStrategy.EXPONENTIAL_BACKOFF,
        suggested_actions=[],
        matched_rule=error_type,
        classifier_version=ERROR_CLASSIFIER_VERSION,
        resolved_at=(
            created + timedelta(seconds=resolved_after) if resolved_after is not None else None
        ),
        resolution_method=None,
        created_at=created,
    )


def test_summarize_error_patterns() -> None:
    errors = [
        _record("rate_limit", ErrorCategory.EXTERNAL_DEPENDENCY, resolved_after=10)
        for _ in range(4)
    ]
    errors.append(
        _record(
            "knowledge_base_empty",
            ErrorCategory.VALIDATION,
            severity=ErrorSeverity.CRITICAL,
        ),
    )

    summary = summarize_error_patterns(errors)

    assert summary is not None
    assert summary.total_errors == 5
    assert summary.errors_by_category == {"external_dependency": 4, "validation": 1}
    assert summary.most_common_category == "external_dependency"
    assert summary.critical_error_count == 1
    assert summary.recoverable_error_count == 4
    assert summary.unresolved_error_count == 1
    assert summary.average_resolution_seconds == pytest.approx(10)
    assert summary.suggestions == [
        "Consider implementing request throttling or upgrading API plan",
        "Ensure sufficient documents are uploaded before generation",
    ]


def test_summarize_error_patterns_empty() -> None:
    assert summarize_error_patterns([]) is None
