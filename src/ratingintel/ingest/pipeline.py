"""Full traversal of the ratings source: fetch -> transform -> batch persist."""

from __future__ import annotations

from collections import Counter
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol

import structlog
from sqlalchemy.exc import SQLAlchemyError

from ratingintel.cancel import CancelToken
from ratingintel.db import get_db
from ratingintel.errors import FetchError, OperationCancelled, PersistenceError, RunCancelled, RunFailed
from ratingintel.ratings.repository import persist_ratings
from ratingintel.ratings.schema import Rating, RawRating, Rejection
from ratingintel.ratings.transform import transform
from ratingintel.source.client import Page

logger = structlog.get_logger()

DEFAULT_BATCH_SIZE = 100


class PageSource(Protocol):
    def fetch_page(self, cursor: str | None = None, cancel: CancelToken | None = None) -> Page: ...


@dataclass
class IngestionSummary:
    fetched: int = 0
    stored: int = 0
    rejected: int = 0
    duplicates: int = 0
    pages: int = 0
    sub_batches: int = 0
    failed_sub_batches: int = 0
    rejection_reasons: Counter[str] = field(default_factory=Counter)
    errors: list[str] = field(default_factory=list)
    fatal_error: str | None = None
    cancelled: bool = False

    @property
    def status(self) -> str:
        if self.cancelled:
            return "cancelled"
        if self.fatal_error:
            return "failed"
        return "succeeded"

    def record_rejection(self, rejection: Rejection) -> None:
        self.rejected += 1
        self.rejection_reasons[rejection.reason.value] += 1

    def describe(self) -> str:
        counts = f"stored {self.stored}, rejected {self.rejected}, duplicates {self.duplicates}"
        if self.status == "succeeded":
            return f"succeeded: {counts}"
        return f"{self.status} ({self.fatal_error}): {counts}"

    def as_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "fetched": self.fetched,
            "stored": self.stored,
            "rejected": self.rejected,
            "duplicates": self.duplicates,
            "pages": self.pages,
            "sub_batches": self.sub_batches,
            "failed_sub_batches": self.failed_sub_batches,
            "rejection_reasons": dict(self.rejection_reasons),
            "errors": list(self.errors),
            "fatal_error": self.fatal_error,
        }


def chunked(items: Sequence[Rating], size: int) -> list[Sequence[Rating]]:
    if size < 1:
        raise ValueError("batch size must be at least 1")
    return [items[start : start + size] for start in range(0, len(items), size)]


class IngestionPipeline:
    """Drive a run from the first page to the end of the source.

    Pages are fetched strictly in cursor order. Each sub-batch of valid
    ratings is written in its own transaction, opened only after the page
    has been fetched, so no transaction spans network I/O.
    """

    def __init__(
        self,
        source: PageSource,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ):
        if batch_size < 1:
            raise ValueError("batch size must be at least 1")
        self._source = source
        self._batch_size = batch_size
        self._clock = clock

    def run(self, cancel: CancelToken | None = None) -> IngestionSummary:
        cancel = cancel or CancelToken()
        summary = IngestionSummary()
        cursor: str | None = None

        while True:
            try:
                cancel.check()
                page = self._source.fetch_page(cursor, cancel)
            except OperationCancelled as exc:
                summary.cancelled = True
                summary.fatal_error = str(exc)
                logger.warning("Ingestion cancelled", **summary.as_dict())
                raise RunCancelled(f"Ingestion cancelled: {exc}", summary) from exc
            except FetchError as exc:
                summary.fatal_error = f"fetch failed: {exc}"
                summary.errors.append(summary.fatal_error)
                logger.error("Ingestion aborted on fetch failure", cursor=cursor, error=str(exc))
                raise RunFailed(summary.fatal_error, summary) from exc

            summary.pages += 1
            summary.fetched += len(page.records)
            if not page.records:
                logger.info("Empty page, end of data", page=summary.pages)
                break

            ratings = self._transform_page(page.records, summary)
            self._persist_page(ratings, summary)

            if not page.next_cursor:
                break
            cursor = page.next_cursor

        if summary.sub_batches and summary.failed_sub_batches == summary.sub_batches:
            summary.fatal_error = "every sub-batch failed to persist"
            logger.error("Ingestion failed", **summary.as_dict())
            raise RunFailed(summary.fatal_error, summary)

        logger.info("Ingestion complete", **summary.as_dict())
        return summary

    def _transform_page(self, records: Sequence[RawRating], summary: IngestionSummary) -> list[Rating]:
        now = self._clock()
        ratings: list[Rating] = []
        for raw in records:
            result = transform(raw, now=now)
            if isinstance(result, Rejection):
                summary.record_rejection(result)
                logger.debug("Rating rejected", reason=result.reason.value, detail=result.detail, ticker=result.ticker)
                continue
            ratings.append(result)
        return ratings

    def _persist_page(self, ratings: Sequence[Rating], summary: IngestionSummary) -> None:
        for index, batch in enumerate(chunked(ratings, self._batch_size)):
            summary.sub_batches += 1
            try:
                with get_db() as session:
                    outcome = persist_ratings(session, batch)
            except (SQLAlchemyError, PersistenceError) as exc:
                summary.failed_sub_batches += 1
                message = f"page {summary.pages} sub-batch {index}: {exc}"
                summary.errors.append(message)
                logger.error(
                    "Sub-batch rolled back", page=summary.pages, sub_batch=index, size=len(batch), error=str(exc)
                )
                continue

            summary.stored += outcome.stored
            summary.duplicates += outcome.duplicates
            logger.info(
                "Sub-batch persisted",
                page=summary.pages,
                sub_batch=index,
                stored=outcome.stored,
                duplicates=outcome.duplicates,
            )
