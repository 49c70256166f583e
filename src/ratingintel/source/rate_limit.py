"""Fixed-delay pacing between successive page fetches."""

from __future__ import annotations

import time
from collections.abc import Callable

import structlog

from ratingintel.cancel import CancelToken

logger = structlog.get_logger()


class RateLimiter:
    def __init__(self, delay_seconds: float, *, now_fn: Callable[[], float] = time.monotonic) -> None:
        self._delay_seconds = delay_seconds
        self._now_fn = now_fn
        self._last_success: float | None = None

    def wait(self, cancel: CancelToken) -> None:
        if self._last_success is None:
            return
        remaining = self._delay_seconds - (self._now_fn() - self._last_success)
        if remaining > 0:
            logger.debug("Rate limiting page fetch", sleep_seconds=round(remaining, 2))
            cancel.sleep(remaining)

    def mark_success(self) -> None:
        self._last_success = self._now_fn()
