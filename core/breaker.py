"""
core/breaker.py -- Circuit breaker for fallible dependencies (database, email).

States:
  CLOSED     operations run normally; consecutive failures are counted.
  OPEN       entered after `threshold` consecutive failures. Calls are
             rejected with CircuitOpenError without invoking the operation.
  HALF_OPEN  entered by the first call made `timeout` seconds or more after
             the last failure. That call is the trial call; every other caller is
             rejected until it finishes. Success closes the circuit,
             trial failure re-opens it with a fresh last_failure_at.

Any success resets the failure count and closes the circuit. Exceptions whose
type is listed in `exclude` (e.g. unique-constraint violations) are business
outcomes, not outages: they propagate but count as a success.

Thread safety: sync route handlers run in Starlette's thread pool, so every
state transition happens under a threading.Lock. The wrapped operation itself
runs outside the lock -- only the bookkeeping is serialized.

Each instance owns its state. The application builds one breaker per
dependency in the lifespan and hands them to the components that need them;
there are no module-level breakers.

Layer rule: no imports from api/ or auth/.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, TypeVar

from core.errors import CircuitOpenError

logger = logging.getLogger("portcullis.breaker")

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass(frozen=True)
class CircuitSnapshot:
    """Point-in-time copy of a breaker's state (health endpoint, tests)."""

    name: str
    state: CircuitState
    failure_count: int
    last_failure_at: float | None


class CircuitBreaker:
    """Failure-isolation wrapper around any callable.

    Usage:
        db_breaker = CircuitBreaker("database", threshold=5, timeout=60.0)
        row = db_breaker.call(conn.execute, stmt)
    """

    def __init__(
        self,
        name: str,
        threshold: int = 5,
        timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        exclude: tuple[type[BaseException], ...] = (),
    ) -> None:
        if threshold < 1:
            raise ValueError("threshold must be >= 1")
        self.name = name
        self.threshold = threshold
        self.timeout = timeout
        self._clock = clock
        self.exclude = exclude
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_at: float | None = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def call(self, operation: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run operation(*args, **kwargs) under the breaker.

        Raises CircuitOpenError without calling operation when the circuit is
        OPEN (or HALF_OPEN with the trial call still in flight). Exceptions raised
        by operation are counted and re-raised unchanged.
        """
        self._admit()
        try:
            result = operation(*args, **kwargs)
        except self.exclude:
            self._record_success()
            raise
        except Exception:
            self._record_failure()
            raise
        self._record_success()
        return result

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    def snapshot(self) -> CircuitSnapshot:
        with self._lock:
            return CircuitSnapshot(
                name=self.name,
                state=self._state,
                failure_count=self._failure_count,
                last_failure_at=self._last_failure_at,
            )

    def reset(self) -> None:
        """Force the circuit closed. Used by tests and operator tooling."""
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._last_failure_at = None

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _admit(self) -> None:
        with self._lock:
            if self._state == CircuitState.CLOSED:
                return
            if self._state == CircuitState.HALF_OPEN:
                # A trial call is already running; only one is allowed through.
                raise CircuitOpenError(self.name)
            # OPEN
            elapsed = self._clock() - (self._last_failure_at or 0.0)
            if elapsed < self.timeout:
                raise CircuitOpenError(self.name)
            self._state = CircuitState.HALF_OPEN
            logger.info("Circuit %r half-open, admitting trial call", self.name)

    def _record_success(self) -> None:
        with self._lock:
            if self._state != CircuitState.CLOSED:
                logger.info("Circuit %r closed after successful trial call", self.name)
            self._state = CircuitState.CLOSED
            self._failure_count = 0

    def _record_failure(self) -> None:
        with self._lock:
            self._failure_count += 1
            self._last_failure_at = self._clock()
            if self._state == CircuitState.HALF_OPEN:
                self._state = CircuitState.OPEN
                logger.warning("Circuit %r trial call failed, re-opening", self.name)
            elif self._failure_count >= self.threshold and self._state == CircuitState.CLOSED:
                self._state = CircuitState.OPEN
                logger.warning(
                    "Circuit %r opened after %d consecutive failures",
                    self.name,
                    self._failure_count,
                )
