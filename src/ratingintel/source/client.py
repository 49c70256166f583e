"""Paginated client for the external ratings API."""

from __future__ import annotations

from dataclasses import dataclass

import httpx
import structlog

from ratingintel.cancel import CancelToken
from ratingintel.config import Settings, settings
from ratingintel.errors import ConfigurationError, ProtocolError, TransientFetchError
from ratingintel.ratings.schema import RawRating
from ratingintel.source.breaker import CircuitBreaker
from ratingintel.source.rate_limit import RateLimiter
from ratingintel.source.retry import build_retrying, send

logger = structlog.get_logger()

USER_AGENT = "RatingIntel/0.1"


@dataclass(frozen=True)
class Page:
    """One fully parsed page of raw records."""

    records: list[RawRating]
    next_cursor: str | None


def parse_page(response: httpx.Response) -> Page:
    """Parse a page body as a whole; any malformed part rejects the page."""
    try:
        body = response.json()
    except ValueError as exc:
        raise ProtocolError(f"Invalid JSON in ratings page: {exc}") from exc
    if not isinstance(body, dict):
        raise ProtocolError("Ratings page is not a JSON object")

    items = body.get("items")
    if not isinstance(items, list):
        raise ProtocolError("Ratings page has no 'items' list")

    next_cursor = body.get("next_page")
    if next_cursor is not None and not isinstance(next_cursor, str):
        raise ProtocolError(f"Invalid next_page cursor: {next_cursor!r}")

    records = [RawRating.from_json(item) for item in items]
    return Page(records=records, next_cursor=next_cursor or None)


class RatingsClient:
    """Fetch pages from the ratings API with retry, pacing and a circuit breaker."""

    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        timeout_seconds: float = 30.0,
        max_retries: int = 3,
        backoff_base_seconds: float = 1.0,
        backoff_max_seconds: float = 30.0,
        page_delay_seconds: float = 0.5,
        breaker: CircuitBreaker | None = None,
        rate_limiter: RateLimiter | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        if not base_url:
            raise ConfigurationError("Ratings API URL is not configured")
        self._base_url = base_url
        self._timeout_seconds = timeout_seconds
        self._max_retries = max_retries
        self._backoff_base_seconds = backoff_base_seconds
        self._backoff_max_seconds = backoff_max_seconds
        self._breaker = breaker or CircuitBreaker()
        self._rate_limiter = rate_limiter or RateLimiter(page_delay_seconds)
        self._http = httpx.Client(
            headers={
                "Authorization": f"Bearer {token}",
                "Accept": "application/json",
                "User-Agent": USER_AGENT,
            },
            follow_redirects=True,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, config: Settings = settings, **kwargs) -> RatingsClient:
        return cls(
            config.ratings_api_url,
            config.ratings_api_token.get_secret_value(),
            timeout_seconds=config.fetch_timeout_seconds,
            max_retries=config.fetch_max_retries,
            backoff_base_seconds=config.fetch_backoff_base_seconds,
            backoff_max_seconds=config.fetch_backoff_max_seconds,
            page_delay_seconds=config.page_delay_seconds,
            breaker=CircuitBreaker(config.breaker_failure_threshold, config.breaker_reset_seconds),
            **kwargs,
        )

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> RatingsClient:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def fetch_page(self, cursor: str | None = None, cancel: CancelToken | None = None) -> Page:
        """Fetch one page; an empty cursor means the first page.

        Raises TransientFetchError after retries are exhausted, ProtocolError
        on 4xx or malformed bodies, CircuitOpenError while the breaker is open
        and OperationCancelled if the cancel token fires during any wait.
        """
        cancel = cancel or CancelToken()
        self._rate_limiter.wait(cancel)
        self._breaker.before_call()

        params = {"next_page": cursor} if cursor else None
        retrying = build_retrying(
            cancel,
            max_retries=self._max_retries,
            backoff_base_seconds=self._backoff_base_seconds,
            backoff_max_seconds=self._backoff_max_seconds,
        )
        try:
            page = retrying(self._fetch_once, params, cancel)
        except TransientFetchError:
            self._breaker.record_failure()
            logger.error("Ratings page fetch failed after retries", cursor=cursor, max_retries=self._max_retries)
            raise
        except ProtocolError as exc:
            # Upstream answered; the request or body is at fault, not availability.
            self._breaker.record_success()
            logger.error("Ratings page rejected", cursor=cursor, status=exc.status_code, error=str(exc))
            raise
        except Exception:
            # Cancelled or unexpected: no verdict on upstream health.
            self._breaker.release()
            raise

        self._breaker.record_success()
        self._rate_limiter.mark_success()
        logger.info("Fetched ratings page", cursor=cursor, records=len(page.records), has_next=bool(page.next_cursor))
        return page

    def _fetch_once(self, params: dict | None, cancel: CancelToken) -> Page:
        response = send(self._http, self._base_url, params=params, cancel=cancel, timeout=self._timeout_seconds)
        return parse_page(response)
