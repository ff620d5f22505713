"""Task handler interface, registry and the deterministic echo handler."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

from course_orchestrator.orchestrator.models import TaskType, TaskUsage


class HandlerError(Exception):
    """Base class for failures a handler reports explicitly.

    `usage` carries what the failed attempt consumed, when the handler knows it.
    """

    def __init__(self, message: str = "", *, usage: TaskUsage | None = None) -> None:
        super().__init__(message)
        self.usage = usage


class HandlerTimeoutError(HandlerError):
    """The external capability did not answer in time."""


class HandlerRateLimitError(HandlerError):
    """The external capability throttled the request."""


class HandlerValidationError(HandlerError):
    """Inputs or generated output failed validation; retrying will not help."""


class ResourceExhaustedError(HandlerError):
    """A quota, budget or memory limit was hit."""


class HandlerNotFoundError(LookupError):
    def __init__(self, task_type: TaskType) -> None:
        self.task_type = task_type
        super().__init__(f"No handler registered for task type: {task_type.value}")


@dataclass(slots=True)
class TaskContext:
    """Inputs required to execute one task attempt."""

    job_id: str
    task_id: str
    task_key: str
    task_type: TaskType
    attempt: int
    input: dict[str, Any]
    dependency_outputs: dict[str, dict[str, Any]] = field(default_factory=dict)
    generation_config: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class HandlerResult:
    """Output payload and usage of a successful run."""

    output: dict[str, Any]
    usage: TaskUsage = field(default_factory=TaskUsage)


class TaskHandler(Protocol):
    """Protocol implemented by generation capabilities."""

    def __call__(self, context: TaskContext) -> HandlerResult:
        """Run one task attempt and return its output."""


class HandlerRegistry:
    """Maps task types to handlers, with an optional fallback."""

    def __init__(
        self,
        handlers: Mapping[TaskType, TaskHandler] | None = None,
        *,
        default: TaskHandler | None = None,
    ) -> None:
        self._handlers: dict[TaskType, TaskHandler] = dict(handlers or {})
        self._default = default

    def register(self, task_type: TaskType, handler: TaskHandler) -> None:
        self._handlers[task_type] = handler

    def resolve(self, task_type: TaskType) -> TaskHandler:
        handler = self._handlers.get(task_type, self._default)
        if handler is None:
            raise HandlerNotFoundError(task_type)
        return handler


class EchoHandler:
    """Local deterministic handler that echoes inputs back as generated content.

    Token usage is derived from the payload size so cost estimation has something
    to work with in demos and tests.
    """

    def __call__(self, context: TaskContext) -> HandlerResult:
        title = (
            context.input.get("section_title")
            or context.input.get("lesson_title")
            or context.input.get("path_title")
            or context.input.get("title")
            or context.task_key
        )
        text = f"{context.task_type.value}: {title}"
        return HandlerResult(
            output={
                "text": text,
                "task_key": context.task_key,
                "dependencies": sorted(context.dependency_outputs),
                "backend": "echo",
            },
            usage=TaskUsage(api_calls=1, tokens_used=len(text.split()) * 4),
        )


def build_default_registry() -> HandlerRegistry:
    """Registry used by the CLI worker until real generation handlers are plugged in."""

    return HandlerRegistry(default=EchoHandler())
