"""Queue worker that claims entries and hands tasks to the executor."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy.exc import SQLAlchemyError

from course_orchestrator.orchestrator.executor import ExecutionOutcome, TaskExecutor
from course_orchestrator.orchestrator.models import LogLevel
from course_orchestrator.orchestrator.repository import OrchestratorRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    deferred: int = 0
    dropped: int = 0
    reclaimed: int = 0
    idle_polls: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.retried += other.retried
        self.deferred += other.deferred
        self.dropped += other.dropped
        self.reclaimed += other.reclaimed
        self.idle_polls += other.idle_polls


_OUTCOME_COUNTERS = {
    ExecutionOutcome.COMPLETED: "succeeded",
    ExecutionOutcome.FAILED: "failed",
    ExecutionOutcome.RETRY_SCHEDULED: "retried",
    ExecutionOutcome.DEFERRED: "deferred",
    ExecutionOutcome.DROPPED: "dropped",
}


class OrchestratorWorker:
    """Consumes queue entries one at a time."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: OrchestratorRepository,
        executor: TaskExecutor,
        worker_id: str,
        poll_interval_seconds: float = 2.0,
        lease_seconds: int = 600,
        graceful_shutdown_seconds: int = 30,
    ) -> None:
        self.repository = repository
        self.executor = executor
        self.worker_id = worker_id
        self.poll_interval_seconds = poll_interval_seconds
        self.lease_seconds = lease_seconds
        self.graceful_shutdown_seconds = graceful_shutdown_seconds
        self._stop_requested = False
        self._stop_signal_name: str | None = None
        self._current_job_id: str | None = None

    def run_once(self) -> WorkerRunSummary:
        """Process at most one queue entry."""

        summary = WorkerRunSummary()
        if self._stop_requested:
            summary.idle_polls = 1
            return summary

        summary.reclaimed = self._reclaim_stale_entries()
        if self._stop_requested:
            summary.idle_polls = 1
            return summary

        entry = self.repository.claim(worker_id=self.worker_id)
        if entry is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        task = self.repository.get_task(entry.task_id)
        if task is None:
            self.repository.complete(entry.entry_id)
            summary.dropped = 1
            return summary

        self._current_job_id = task.job_id
        try:
            result = self.executor.execute(task, queue_entry_id=entry.entry_id)
        finally:
            self._current_job_id = None
        counter = _OUTCOME_COUNTERS[result.outcome]
        setattr(summary, counter, getattr(summary, counter) + 1)
        return summary

    def run_loop(
        self,
        *,
        max_tasks: int | None = None,
        max_idle_polls: int | None = 1,
    ) -> WorkerRunSummary:
        """Run worker loop until queue is idle or max_tasks reached.

        Args:
            max_tasks: Stop after processing this many entries (None = unlimited).
            max_idle_polls: How many consecutive empty polls before exiting
                (None = poll until stopped by a signal).
        """

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        with self._signal_handlers():
            while True:
                if self._stop_requested:
                    return aggregate
                if max_tasks is not None and aggregate.processed >= max_tasks:
                    return aggregate

                summary = self.run_once()
                aggregate.add(summary)

                if summary.processed == 0:
                    consecutive_idle += 1
                    if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                        return aggregate
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue
                consecutive_idle = 0

    def request_stop(self) -> None:
        self._request_stop(signal_name="request")

    def _reclaim_stale_entries(self) -> int:
        if self.lease_seconds <= 0:
            return 0
        reclaimed = self.repository.reclaim_stale(timedelta(seconds=self.lease_seconds))
        if reclaimed:
            logger.warning(
                "Reclaimed %d queue entries with leases older than %ds",
                reclaimed,
                self.lease_seconds,
            )
        return reclaimed

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self._request_stop(signal_name=name)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)

    def _request_stop(self, *, signal_name: str) -> None:
        self._stop_requested = True
        self._stop_signal_name = signal_name
        logger.warning(
            "Worker %s stopping on %s; finishing current task (grace %ds)",
            self.worker_id,
            signal_name,
            self.graceful_shutdown_seconds,
        )
        if self._current_job_id is None:
            return
        try:
            self.repository.add_job_log(
                job_id=self._current_job_id,
                level=LogLevel.WARNING,
                message=f"Worker {self.worker_id} shutdown requested",
                source="worker",
                details={
                    "signal": signal_name,
                    "graceful_shutdown_seconds": self.graceful_shutdown_seconds,
                },
            )
        except (RuntimeError, SQLAlchemyError):  # pragma: no cover - best effort
            return
