"""Shared HTTP retry policy for upstream sources."""

from __future__ import annotations

import httpx
import structlog
from tenacity import RetryCallState, Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ratingintel.cancel import CancelToken
from ratingintel.errors import ProtocolError, TransientFetchError

logger = structlog.get_logger()


def _log_retry(state: RetryCallState) -> None:
    exc = state.outcome.exception() if state.outcome else None
    logger.warning(
        "Retrying upstream request",
        attempt=state.attempt_number,
        sleep_seconds=round(state.next_action.sleep, 2) if state.next_action else None,
        error=str(exc) if exc else None,
    )


def build_retrying(
    cancel: CancelToken,
    *,
    max_retries: int,
    backoff_base_seconds: float,
    backoff_max_seconds: float,
) -> Retrying:
    """Retry transient failures, waiting ``base * 2**attempt`` through the cancel token."""
    return Retrying(
        stop=stop_after_attempt(max_retries + 1),
        wait=wait_exponential(multiplier=backoff_base_seconds, max=backoff_max_seconds),
        retry=retry_if_exception_type(TransientFetchError),
        sleep=cancel.sleep,
        before_sleep=_log_retry,
        reraise=True,
    )


def is_retryable_status(status_code: int) -> bool:
    return status_code >= 500


def send(client: httpx.Client, url: str, *, params: dict | None, cancel: CancelToken, timeout: float) -> httpx.Response:
    """Issue one GET, mapping failures onto the transient/protocol taxonomy."""
    cancel.check()
    try:
        response = client.get(url, params=params, timeout=cancel.clamp_timeout(timeout))
    except httpx.TimeoutException as exc:
        raise TransientFetchError(f"Timeout fetching {url}: {exc}") from exc
    except httpx.RequestError as exc:
        raise TransientFetchError(f"Request error fetching {url}: {exc}") from exc

    if is_retryable_status(response.status_code):
        raise TransientFetchError(f"HTTP {response.status_code} from {url}")
    if response.status_code >= 400:
        raise ProtocolError(f"HTTP {response.status_code} from {url}", status_code=response.status_code)
    return response
