from __future__ import annotations

import threading

import allure
import pytest
from support import FakeClock

from course_orchestrator.orchestrator.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitOpenError,
    CircuitState,
)

pytestmark = [
    allure.epic("Execution"),
    allure.feature("Circuit Breaker"),
]


def _fail() -> None:
    raise RuntimeError("upstream 500")


def _trip(breaker: CircuitBreaker, times: int) -> None:
    for _ in range(times):
        with pytest.raises(RuntimeError):
            breaker.call(_fail)


def test_breaker_opens_exactly_at_threshold() -> None:
    clock = FakeClock()
    breaker = CircuitBreaker("llm", failure_threshold=3, cooldown_seconds=60, clock=clock)

    _trip(breaker, 2)
    assert breaker.state is CircuitState.CLOSED
    assert breaker.call(lambda: "ok") == "ok"

    _trip(breaker, 1)
    assert breaker.state is CircuitState.OPEN
    assert breaker.failure_count == 3


def test_open_breaker_fails_fast_without_calling() -> None:
    clock = FakeClock()
    breaker = CircuitBreaker("llm", failure_threshold=1, cooldown_seconds=60, clock=clock)
    _trip(breaker, 1)
    calls: list[str] = []

    clock.advance(20)
    with pytest.raises(CircuitOpenError) as error:
        breaker.call(lambda: calls.append("called"))

    assert calls == []
    assert error.value.name == "llm"
    assert error.value.time_until_retry == pytest.approx(40)


def test_half_open_admits_single_probe_per_cooldown() -> None:
    clock = FakeClock()
    breaker = CircuitBreaker("llm", failure_threshold=1, cooldown_seconds=60, clock=clock)
    _trip(breaker, 1)
    clock.advance(60)

    assert breaker.acquire() is True
    assert breaker.state is CircuitState.HALF_OPEN
    assert breaker.snapshot().probe_in_flight is True
    with pytest.raises(CircuitOpenError):
        breaker.acquire()

    breaker.record_failure(is_probe=True)
    assert breaker.state is CircuitState.OPEN

    # Failed probe restarts the cool-down.
    clock.advance(59)
    with pytest.raises(CircuitOpenError):
        breaker.acquire()
    clock.advance(1)
    assert breaker.acquire() is True


def test_successful_probe_closes_and_resets_counter() -> None:
    clock = FakeClock()
    breaker = CircuitBreaker("llm", failure_threshold=2, cooldown_seconds=10, clock=clock)
    _trip(breaker, 2)
    clock.advance(10)

    assert breaker.call(lambda: 42) == 42

    assert breaker.state is CircuitState.CLOSED
    assert breaker.failure_count == 0
    _trip(breaker, 1)
    assert breaker.state is CircuitState.CLOSED


def test_concurrent_callers_get_one_probe() -> None:
    clock = FakeClock()
    breaker = CircuitBreaker("llm", failure_threshold=1, cooldown_seconds=5, clock=clock)
    _trip(breaker, 1)
    clock.advance(5)

    start = threading.Event()
    admitted: list[bool] = []
    rejected: list[CircuitOpenError] = []
    lock = threading.Lock()

    def _attempt() -> None:
        start.wait(timeout=2)
        try:
            is_probe = breaker.acquire()
        except CircuitOpenError as error:
            with lock:
                rejected.append(error)
        else:
            with lock:
                admitted.append(is_probe)

    threads = [threading.Thread(target=_attempt, daemon=True) for _ in range(8)]
    for thread in threads:
        thread.start()
    start.set()
    for thread in threads:
        thread.join(timeout=5)

    assert admitted == [True]
    assert len(rejected) == 7


def test_registry_scopes_breakers_by_dependency_name() -> None:
    clock = FakeClock()
    registry = CircuitBreakerRegistry(failure_threshold=1, cooldown_seconds=30, clock=clock)

    with pytest.raises(RuntimeError):
        registry.call("llm", _fail)

    assert registry.get("llm") is registry.get("llm")
    assert registry.get("llm").state is CircuitState.OPEN
    assert registry.call("knowledge_base", lambda: "kb") == "kb"
    assert [(item.name, item.state) for item in registry.snapshots()] == [
        ("knowledge_base", CircuitState.CLOSED),
        ("llm", CircuitState.OPEN),
    ]


def test_breaker_rejects_non_positive_threshold() -> None:
    with pytest.raises(ValueError, match="failure_threshold"):
        CircuitBreaker("llm", failure_threshold=0)


def test_interrupted_trial_call_does_not_wedge_breaker() -> None:
    clock = FakeClock()
    breaker = CircuitBreaker("llm", failure_threshold=1, cooldown_seconds=60, clock=clock)
    _trip(breaker, 1)
    clock.advance(60)

    def _interrupted() -> None:
        raise KeyboardInterrupt

    with pytest.raises(KeyboardInterrupt):
        breaker.call(_interrupted)

    snapshot = breaker.snapshot()
    assert snapshot.state is CircuitState.OPEN
    assert snapshot.probe_in_flight is False
    assert snapshot.failure_count == 1
    assert breaker.call(lambda: "ok") == "ok"
    assert breaker.state is CircuitState.CLOSED
