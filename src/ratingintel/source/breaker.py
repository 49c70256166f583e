"""Circuit breaker owned by a source client."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from enum import Enum

import structlog

from ratingintel.errors import CircuitOpenError

logger = structlog.get_logger()


class BreakerState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Closed -> Open after N consecutive failures; Open -> Half-Open after a timeout.

    In Half-Open a single probe is allowed: success closes the circuit,
    failure re-opens it and restarts the timeout.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout_seconds: float = 60.0,
        *,
        now_fn: Callable[[], float] = time.monotonic,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.reset_timeout_seconds = reset_timeout_seconds
        self._now_fn = now_fn
        self._lock = threading.Lock()
        self._state = BreakerState.CLOSED
        self._failures = 0
        self._opened_at: float | None = None

    @property
    def state(self) -> BreakerState:
        with self._lock:
            return self._state

    def before_call(self) -> None:
        with self._lock:
            if self._state is BreakerState.CLOSED:
                return
            if self._state is BreakerState.HALF_OPEN:
                raise CircuitOpenError("Circuit half-open: probe already in flight")
            if self._opened_at is None:
                raise RuntimeError("Circuit is open without an open timestamp")
            elapsed = self._now_fn() - self._opened_at
            if elapsed < self.reset_timeout_seconds:
                raise CircuitOpenError(
                    f"Circuit open, retry in {self.reset_timeout_seconds - elapsed:.1f}s"
                )
            self._state = BreakerState.HALF_OPEN
            logger.info("Circuit half-open, probing upstream")

    def record_success(self) -> None:
        with self._lock:
            if self._state is not BreakerState.CLOSED:
                logger.info("Circuit closed")
            self._state = BreakerState.CLOSED
            self._failures = 0
            self._opened_at = None

    def record_failure(self) -> None:
        with self._lock:
            self._failures += 1
            if self._state is BreakerState.HALF_OPEN or self._failures >= self.failure_threshold:
                self._state = BreakerState.OPEN
                self._opened_at = self._now_fn()
                logger.warning("Circuit opened", failures=self._failures)

    def release(self) -> None:
        """Return a Half-Open probe that ended without a verdict (e.g. cancelled)."""
        with self._lock:
            if self._state is BreakerState.HALF_OPEN:
                self._state = BreakerState.OPEN
