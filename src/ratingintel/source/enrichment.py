"""Per-ticker enrichment source (closing prices + news sentiment)."""

from __future__ import annotations

from typing import Any, Protocol
from urllib.parse import quote

import httpx
import structlog
from pydantic import ValidationError

from ratingintel.cancel import CancelToken
from ratingintel.config import Settings, settings
from ratingintel.errors import ConfigurationError, ProtocolError
from ratingintel.ratings.schema import EnrichedPayload
from ratingintel.source.client import USER_AGENT
from ratingintel.source.retry import build_retrying, send

logger = structlog.get_logger()


class EnrichmentSource(Protocol):
    def fetch(self, ticker: str, cancel: CancelToken) -> EnrichedPayload: ...


def _nested_object(body: dict[str, Any], key: str) -> dict[str, Any]:
    value = body.get(key) or {}
    if not isinstance(value, dict):
        raise ProtocolError(f"{key} is not a JSON object")
    return value


def parse_enrichment(body: Any) -> EnrichedPayload:
    """Accept either the flat shape or the nested historical/news shape.

    Flat:   {"closes": [...], "sentiment_score": 0.4}
    Nested: {"historical_prices": {"data": [{"close": ...}]}, "news_sentiment": {"sentiment_score": 0.4}}
    """
    if not isinstance(body, dict):
        raise ProtocolError("Enrichment payload is not a JSON object")

    closes = body.get("closes")
    if closes is None:
        history = _nested_object(body, "historical_prices")
        data = history.get("data") or []
        if not isinstance(data, list):
            raise ProtocolError("historical_prices.data is not a list")
        closes = [point.get("close") for point in data if isinstance(point, dict)]

    sentiment = body.get("sentiment_score")
    if sentiment is None:
        sentiment = _nested_object(body, "news_sentiment").get("sentiment_score")

    try:
        return EnrichedPayload(closes=closes, sentiment_score=sentiment)
    except ValidationError as exc:
        raise ProtocolError(f"Invalid enrichment payload: {exc.error_count()} errors") from exc


class EnrichmentClient:
    """HTTP enrichment source: ``GET <base_url>/<TICKER>``."""

    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        timeout_seconds: float = 30.0,
        max_retries: int = 3,
        backoff_base_seconds: float = 1.0,
        backoff_max_seconds: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        if not base_url:
            raise ConfigurationError("Enrichment API URL is not configured")
        self._base_url = base_url.rstrip("/")
        self._timeout_seconds = timeout_seconds
        self._max_retries = max_retries
        self._backoff_base_seconds = backoff_base_seconds
        self._backoff_max_seconds = backoff_max_seconds
        # httpx.Client is safe to share across the enrichment worker threads
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
    def from_settings(cls, config: Settings = settings, **kwargs) -> EnrichmentClient:
        return cls(
            config.enrichment_api_url,
            config.enrichment_api_token.get_secret_value(),
            timeout_seconds=config.fetch_timeout_seconds,
            max_retries=config.fetch_max_retries,
            backoff_base_seconds=config.fetch_backoff_base_seconds,
            backoff_max_seconds=config.fetch_backoff_max_seconds,
            **kwargs,
        )

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> EnrichmentClient:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def fetch(self, ticker: str, cancel: CancelToken) -> EnrichedPayload:
        url = f"{self._base_url}/{quote(ticker.upper())}"
        retrying = build_retrying(
            cancel,
            max_retries=self._max_retries,
            backoff_base_seconds=self._backoff_base_seconds,
            backoff_max_seconds=self._backoff_max_seconds,
        )
        payload = retrying(self._fetch_once, url, cancel)
        logger.debug("Fetched enrichment", ticker=ticker, closes=len(payload.closes))
        return payload

    def _fetch_once(self, url: str, cancel: CancelToken) -> EnrichedPayload:
        response = send(self._http, url, params=None, cancel=cancel, timeout=self._timeout_seconds)
        try:
            body = response.json()
        except ValueError as exc:
            raise ProtocolError(f"Invalid JSON from {url}: {exc}") from exc
        return parse_enrichment(body)
