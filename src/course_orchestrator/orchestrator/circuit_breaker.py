"""Per-dependency circuit breakers for external generation capabilities.

Each breaker moves through three states:
- CLOSED: calls pass through and failures are counted
- OPEN: calls fail fast until the cool-down elapses
- HALF_OPEN: exactly one probe call is admitted to test recovery

Breaker state lives in memory and is scoped to one worker process; workers do
not share breaker state with each other.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import TypeVar

logger = logging.getLogger(__name__)

_T = TypeVar("_T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(Exception):
    """Raised when a breaker rejects a call without invoking the dependency."""

    def __init__(self, name: str, time_until_retry: float) -> None:
        self.name = name
        self.time_until_retry = time_until_retry
        super().__init__(f"Circuit {name} is open. Retry in {time_until_retry:.1f}s")


@dataclass(slots=True)
class CircuitBreakerSnapshot:
    name: str
    state: CircuitState
    failure_count: int
    last_failure_at: float | None
    probe_in_flight: bool


class CircuitBreaker:
    """Thread-safe breaker guarding one named dependency."""

    def __init__(
        self,
        name: str,
        *,
        failure_threshold: int = 5,
        cooldown_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if failure_threshold <= 0:
            raise ValueError("failure_threshold must be > 0")
        self.name = name
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_at: float | None = None
        self._probe_in_flight = False

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    @property
    def failure_count(self) -> int:
        with self._lock:
            return self._failure_count

    def snapshot(self) -> CircuitBreakerSnapshot:
        with self._lock:
            return CircuitBreakerSnapshot(
                name=self.name,
                state=self._state,
                failure_count=self._failure_count,
                last_failure_at=self._last_failure_at,
                probe_in_flight=self._probe_in_flight,
            )

    def call(self, func: Callable[[], _T]) -> _T:
        """Invoke `func` through the breaker, recording its outcome."""

        is_probe = self.acquire()
        try:
            result = func()
        except Exception:
            self.record_failure(is_probe=is_probe)
            raise
        except BaseException:
            if is_probe:
                self.release_probe()
            raise
        self.record_success(is_probe=is_probe)
        return result

    def acquire(self) -> bool:
        """Admit one call or raise CircuitOpenError; True when the call is the probe."""

        with self._lock:
            if self._state is CircuitState.CLOSED:
                return False
            if self._state is CircuitState.HALF_OPEN:
                raise CircuitOpenError(self.name, self.cooldown_seconds)

            elapsed = self._clock() - (self._last_failure_at or 0.0)
            if elapsed < self.cooldown_seconds:
                raise CircuitOpenError(self.name, self.cooldown_seconds - elapsed)
            self._state = CircuitState.HALF_OPEN
            self._probe_in_flight = True
            logger.info("Circuit %s half-open: admitting probe call", self.name)
            return True

    def release_probe(self) -> None:
        """Abandon an interrupted probe without a verdict; the next call probes again."""

        with self._lock:
            if self._state is CircuitState.HALF_OPEN and self._probe_in_flight:
                self._state = CircuitState.OPEN
                self._probe_in_flight = False

    def record_success(self, *, is_probe: bool = False) -> None:
        with self._lock:
            if is_probe and self._state is CircuitState.HALF_OPEN:
                self._state = CircuitState.CLOSED
                self._failure_count = 0
                self._probe_in_flight = False
                logger.info("Circuit %s closed after successful probe", self.name)

    def record_failure(self, *, is_probe: bool = False) -> None:
        with self._lock:
            now = self._clock()
            self._failure_count += 1
            if is_probe and self._state is CircuitState.HALF_OPEN:
                self._state = CircuitState.OPEN
                self._last_failure_at = now
                self._probe_in_flight = False
                logger.warning("Circuit %s re-opened after failed probe", self.name)
                return
            if self._state is CircuitState.CLOSED:
                self._last_failure_at = now
                if self._failure_count >= self.failure_threshold:
                    self._state = CircuitState.OPEN
                    logger.warning(
                        "Circuit %s opened after %d failures",
                        self.name,
                        self._failure_count,
                    )


class CircuitBreakerRegistry:
    """Lazily created breakers keyed by dependency name."""

    def __init__(
        self,
        *,
        failure_threshold: int = 5,
        cooldown_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._breakers: dict[str, CircuitBreaker] = {}

    def get(self, name: str) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(name)
            if breaker is None:
                breaker = CircuitBreaker(
                    name,
                    failure_threshold=self.failure_threshold,
                    cooldown_seconds=self.cooldown_seconds,
                    clock=self._clock,
                )
                self._breakers[name] = breaker
            return breaker

    def call(self, name: str, func: Callable[[], _T]) -> _T:
        return self.get(name).call(func)

    def snapshots(self) -> list[CircuitBreakerSnapshot]:
        with self._lock:
            breakers = list(self._breakers.values())
        return [breaker.snapshot() for breaker in sorted(breakers, key=lambda item: item.name)]
