"""
tests/test_breaker.py -- CircuitBreaker state machine.

Covers:
  - CLOSED counts failures and opens at the threshold
  - OPEN rejects without calling the operation, until the timeout elapses
  - HALF_OPEN admits exactly one trial call; success closes, failure re-opens
  - excluded exception types pass through without counting
"""

from __future__ import annotations

import threading

import pytest

from core.breaker import CircuitBreaker, CircuitState
from core.errors import CircuitOpenError, ServiceUnavailable


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _boom():
    raise RuntimeError("down")


def _trip(breaker: CircuitBreaker, times: int) -> None:
    for _ in range(times):
        with pytest.raises(RuntimeError):
            breaker.call(_boom)


class TestClosed:
    def test_success_returns_value(self):
        breaker = CircuitBreaker("db", threshold=3)
        assert breaker.call(lambda x: x * 2, 21) == 42
        assert breaker.state is CircuitState.CLOSED

    def test_opens_at_threshold(self):
        breaker = CircuitBreaker("db", threshold=3)
        _trip(breaker, 2)
        assert breaker.state is CircuitState.CLOSED
        _trip(breaker, 1)
        assert breaker.state is CircuitState.OPEN
        assert breaker.snapshot().failure_count == 3

    def test_success_resets_failure_count(self):
        breaker = CircuitBreaker("db", threshold=3)
        _trip(breaker, 2)
        breaker.call(lambda: None)
        assert breaker.snapshot().failure_count == 0

    def test_threshold_must_be_positive(self):
        with pytest.raises(ValueError):
            CircuitBreaker("db", threshold=0)


class TestOpen:
    def test_rejects_without_calling(self):
        clock = FakeClock()
        breaker = CircuitBreaker("db", threshold=1, timeout=60.0, clock=clock)
        _trip(breaker, 1)
        calls = []
        with pytest.raises(CircuitOpenError) as exc_info:
            breaker.call(calls.append, 1)
        assert calls == []
        assert exc_info.value.breaker_name == "db"

    def test_circuit_open_is_service_unavailable(self):
        """Callers that handle ServiceUnavailable handle an open circuit the same way."""
        breaker = CircuitBreaker("db", threshold=1)
        _trip(breaker, 1)
        with pytest.raises(ServiceUnavailable):
            breaker.call(lambda: None)

    def test_timeout_allows_trial_call_that_closes(self):
        clock = FakeClock()
        breaker = CircuitBreaker("db", threshold=1, timeout=60.0, clock=clock)
        _trip(breaker, 1)
        clock.now += 61
        assert breaker.call(lambda: "ok") == "ok"
        assert breaker.state is CircuitState.CLOSED

    def test_failed_trial_call_reopens(self):
        clock = FakeClock()
        breaker = CircuitBreaker("db", threshold=1, timeout=60.0, clock=clock)
        _trip(breaker, 1)
        clock.now += 61
        _trip(breaker, 1)
        assert breaker.state is CircuitState.OPEN
        with pytest.raises(CircuitOpenError):
            breaker.call(lambda: None)

    def test_reset_closes(self):
        breaker = CircuitBreaker("db", threshold=1)
        _trip(breaker, 1)
        breaker.reset()
        assert breaker.state is CircuitState.CLOSED
        assert breaker.snapshot().last_failure_at is None


class TestHalfOpenSingleTrial:
    def test_second_caller_rejected_while_trial_in_flight(self):
        clock = FakeClock()
        breaker = CircuitBreaker("db", threshold=1, timeout=1.0, clock=clock)
        _trip(breaker, 1)
        clock.now += 2

        entered = threading.Event()
        release = threading.Event()

        def slow_trial():
            entered.set()
            release.wait(5)
            return "trial"

        results = []
        trial = threading.Thread(target=lambda: results.append(breaker.call(slow_trial)))
        trial.start()
        assert entered.wait(5)
        assert breaker.state is CircuitState.HALF_OPEN
        with pytest.raises(CircuitOpenError):
            breaker.call(lambda: "second")
        release.set()
        trial.join(5)
        assert results == ["trial"]
        assert breaker.state is CircuitState.CLOSED


class TestExclude:
    def test_excluded_exception_does_not_count(self):
        breaker = CircuitBreaker("db", threshold=1, exclude=(KeyError,))

        def missing():
            raise KeyError("dup")

        for _ in range(3):
            with pytest.raises(KeyError):
                breaker.call(missing)
        assert breaker.state is CircuitState.CLOSED
        assert breaker.snapshot().failure_count == 0
