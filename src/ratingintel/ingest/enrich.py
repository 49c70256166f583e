"""Fetch and store auxiliary per-ticker data in parallel."""

from __future__ import annotations

import threading
from collections.abc import Iterable
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any

import structlog
from sqlalchemy.exc import SQLAlchemyError

from ratingintel.cancel import CancelToken
from ratingintel.db import get_db
from ratingintel.errors import FetchError, OperationCancelled, RunCancelled, RunFailed
from ratingintel.ratings.repository import upsert_enriched_data
from ratingintel.source.enrichment import EnrichmentSource

logger = structlog.get_logger()


@dataclass
class EnrichmentSummary:
    requested: int = 0
    enriched: int = 0
    failed: int = 0
    errors: dict[str, str] = field(default_factory=dict)
    cancelled: bool = False

    @property
    def status(self) -> str:
        if self.cancelled:
            return "cancelled"
        if self.requested and self.failed == self.requested:
            return "failed"
        return "succeeded"

    def describe(self) -> str:
        return f"{self.status}: enriched {self.enriched} of {self.requested}, failed {self.failed}"

    def as_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "requested": self.requested,
            "enriched": self.enriched,
            "failed": self.failed,
            "errors": dict(self.errors),
        }


def normalize_tickers(tickers: Iterable[str]) -> list[str]:
    """Uppercase, strip and de-duplicate, keeping first-seen order."""
    seen: dict[str, None] = {}
    for ticker in tickers:
        cleaned = ticker.strip().upper()
        if cleaned:
            seen.setdefault(cleaned, None)
    return list(seen)


def run_enrichment(
    tickers: Iterable[str],
    source: EnrichmentSource,
    *,
    max_tickers: int = 100,
    max_workers: int = 5,
    cancel: CancelToken | None = None,
) -> EnrichmentSummary:
    """Enrich each ticker independently; one failure never blocks the rest."""
    wanted = normalize_tickers(tickers)
    if len(wanted) > max_tickers:
        raise ValueError(f"Too many tickers: {len(wanted)} (max {max_tickers})")

    cancel = cancel or CancelToken()
    summary = EnrichmentSummary(requested=len(wanted))
    lock = threading.Lock()
    # Local to this run so the caller's token is left as it was
    stop = threading.Event()

    def enrich_one(ticker: str) -> None:
        try:
            if stop.is_set():
                raise OperationCancelled("Enrichment cancelled")
            cancel.check()
            payload = source.fetch(ticker, cancel)
            with get_db() as session:
                upsert_enriched_data(session, ticker, payload)
        except OperationCancelled:
            with lock:
                summary.cancelled = True
            raise
        except (FetchError, SQLAlchemyError) as e:
            logger.warning("Enrichment failed", ticker=ticker, error=str(e))
            with lock:
                summary.failed += 1
                summary.errors[ticker] = str(e)
            return

        with lock:
            summary.enriched += 1

    if wanted:
        with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(wanted)))) as pool:
            futures = {pool.submit(enrich_one, ticker): ticker for ticker in wanted}
            for future in as_completed(futures):
                try:
                    future.result()
                except OperationCancelled:
                    # Queued tickers see the stop flag and bail out immediately.
                    stop.set()

    if summary.cancelled:
        logger.warning("Enrichment cancelled", **summary.as_dict())
        raise RunCancelled("Enrichment cancelled", summary)
    if summary.requested and summary.failed == summary.requested:
        logger.error("Enrichment failed for every ticker", **summary.as_dict())
        raise RunFailed("Enrichment failed for every ticker", summary)

    logger.info("Enrichment complete", **summary.as_dict())
    return summary
