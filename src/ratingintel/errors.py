"""Exception hierarchy for ingestion, enrichment and persistence."""

from __future__ import annotations

from typing import Any


class RatingIntelError(RuntimeError):
    """Base class for all application errors."""


class ConfigurationError(RatingIntelError):
    """Raised when a required setting is missing or invalid."""


class FetchError(RatingIntelError):
    """Raised when a page or payload could not be fetched from upstream."""


class TransientFetchError(FetchError):
    """Network failure, timeout or 5xx. Retried before being surfaced."""


class ProtocolError(FetchError):
    """4xx response or malformed body. Never retried."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class CircuitOpenError(FetchError):
    """Raised while the circuit breaker refuses calls."""


class OperationCancelled(RatingIntelError):
    """Raised when the caller cancels or the deadline expires."""


class PersistenceError(RatingIntelError):
    """Raised when a sub-batch cannot be written."""


class RunRefused(RatingIntelError):
    """Raised when another run of the same type is still active."""


class RunFailed(RatingIntelError):
    """Run-level failure carrying the partial summary."""

    def __init__(self, message: str, summary: Any):
        super().__init__(message)
        self.summary = summary


class RunCancelled(RunFailed):
    """Run aborted by cancellation or deadline, with partial counts."""
