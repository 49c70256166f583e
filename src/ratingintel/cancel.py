"""Cancellation and deadline signal shared by every blocking wait."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable

from ratingintel.errors import OperationCancelled


class CancelToken:
    """Caller-controlled cancel flag with an optional monotonic deadline.

    All suspension points (HTTP timeouts, retry backoff, rate-limit pauses)
    go through ``sleep``/``clamp_timeout`` so a cancel wakes them at once.
    """

    def __init__(
        self,
        timeout_seconds: float | None = None,
        *,
        now_fn: Callable[[], float] = time.monotonic,
    ) -> None:
        self._event = threading.Event()
        self._now_fn = now_fn
        self._deadline = now_fn() + timeout_seconds if timeout_seconds is not None else None

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set() or self.deadline_exceeded

    @property
    def deadline_exceeded(self) -> bool:
        return self._deadline is not None and self._now_fn() >= self._deadline

    def remaining(self) -> float | None:
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - self._now_fn())

    def check(self) -> None:
        if self._event.is_set():
            raise OperationCancelled("Operation cancelled")
        if self.deadline_exceeded:
            raise OperationCancelled("Deadline exceeded")

    def sleep(self, seconds: float) -> None:
        """Wait up to ``seconds``, raising ``OperationCancelled`` on cancel or deadline."""
        self.check()
        if seconds <= 0:
            return
        remaining = self.remaining()
        wait_for = seconds if remaining is None else min(seconds, remaining)
        if self._event.wait(wait_for):
            raise OperationCancelled("Operation cancelled")
        if remaining is not None and seconds >= remaining:
            raise OperationCancelled("Deadline exceeded")

    def clamp_timeout(self, timeout_seconds: float) -> float:
        remaining = self.remaining()
        if remaining is None:
            return timeout_seconds
        return max(0.001, min(timeout_seconds, remaining))