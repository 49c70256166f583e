"""Persistence capability for ratings and enriched data."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime

import structlog
from sqlalchemy import func
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session, aliased

from ratingintel.db import dialect_name
from ratingintel.errors import PersistenceError
from ratingintel.models import NATURAL_KEY_COLUMNS, EnrichedStockData, StockRating
from ratingintel.ratings.schema import EnrichedPayload, Rating, RatingAction

logger = structlog.get_logger()

_INSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


@dataclass(frozen=True)
class BatchOutcome:
    stored: int
    duplicates: int


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _to_rating(row: StockRating) -> Rating:
    return Rating(
        id=row.id,
        ticker=row.ticker,
        company=row.company,
        brokerage=row.brokerage,
        action=RatingAction(row.action),
        rating_from=row.rating_from,
        rating_to=row.rating_to,
        target_from=row.target_from,
        target_to=row.target_to,
        event_time=_as_utc(row.event_time),
        created_at=_as_utc(row.created_at) if row.created_at else None,
    )


def insert_rating(session: Session, rating: Rating) -> bool:
    """Insert one rating; False when the natural key already exists."""
    dialect = dialect_name(session)
    insert_fn = _INSERTS.get(dialect)
    if insert_fn is None:
        raise PersistenceError(f"Unsupported database dialect: {dialect}")

    stmt = (
        insert_fn(StockRating.__table__)
        .values(
            id=rating.id,
            ticker=rating.ticker,
            company=rating.company,
            brokerage=rating.brokerage,
            action=rating.action.value,
            rating_from=rating.rating_from,
            rating_to=rating.rating_to,
            target_from=rating.target_from,
            target_to=rating.target_to,
            event_time=rating.event_time,
            created_at=rating.created_at or datetime.now(UTC),
        )
        .on_conflict_do_nothing(index_elements=list(NATURAL_KEY_COLUMNS))
    )
    result = session.execute(stmt)
    return result.rowcount > 0


def persist_ratings(session: Session, ratings: Sequence[Rating]) -> BatchOutcome:
    """Insert a sub-batch inside the caller's transaction."""
    stored = 0
    duplicates = 0
    for rating in ratings:
        if insert_rating(session, rating):
            stored += 1
        else:
            logger.debug(
                "Duplicate rating skipped",
                ticker=rating.ticker,
                brokerage=rating.brokerage,
                rating_to=rating.rating_to,
            )
            duplicates += 1
    return BatchOutcome(stored=stored, duplicates=duplicates)


def latest_rating_per_ticker(session: Session) -> dict[str, Rating]:
    """Most recent rating per ticker (ties broken by created_at), ordered by ticker."""
    rank = (
        func.row_number()
        .over(
            partition_by=StockRating.ticker,
            order_by=(StockRating.event_time.desc(), StockRating.created_at.desc()),
        )
        .label("rank")
    )
    ranked = session.query(StockRating, rank).subquery()
    latest = aliased(StockRating, ranked)
    rows = session.query(latest).filter(ranked.c.rank == 1).order_by(latest.ticker).all()
    return {row.ticker: _to_rating(row) for row in rows}


def ratings_for_ticker(session: Session, ticker: str) -> list[Rating]:
    rows = (
        session.query(StockRating)
        .filter(StockRating.ticker == ticker.upper())
        .order_by(StockRating.event_time.desc(), StockRating.created_at.desc())
        .all()
    )
    return [_to_rating(row) for row in rows]


def list_unique_tickers(session: Session) -> set[str]:
    return {ticker for (ticker,) in session.query(StockRating.ticker).distinct().all()}


def count_ratings(session: Session) -> int:
    return session.query(StockRating).count()


def upsert_enriched_data(session: Session, ticker: str, payload: EnrichedPayload) -> None:
    ticker = ticker.upper()
    existing = session.query(EnrichedStockData).filter_by(ticker=ticker).first()
    if existing:
        existing.historical_closes = list(payload.closes)
        existing.sentiment_score = payload.sentiment_score
        existing.updated_at = datetime.now(UTC)
        return
    session.add(
        EnrichedStockData(
            ticker=ticker,
            historical_closes=list(payload.closes),
            sentiment_score=payload.sentiment_score,
        )
    )


def _to_payload(row: EnrichedStockData) -> EnrichedPayload:
    return EnrichedPayload(closes=list(row.historical_closes or []), sentiment_score=row.sentiment_score)


def get_enriched_data(session: Session, ticker: str) -> EnrichedPayload | None:
    row = session.query(EnrichedStockData).filter_by(ticker=ticker.upper()).first()
    if row is None:
        return None
    return _to_payload(row)


def enriched_data_for(session: Session, tickers: Iterable[str]) -> dict[str, EnrichedPayload]:
    wanted = {ticker.upper() for ticker in tickers}
    if not wanted:
        return {}
    rows = session.query(EnrichedStockData).filter(EnrichedStockData.ticker.in_(wanted)).all()
    return {row.ticker: _to_payload(row) for row in rows}
