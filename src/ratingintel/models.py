"""SQLAlchemy ORM models."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import JSON, CheckConstraint, DateTime, Float, Index, String, UniqueConstraint, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JsonType = JSON().with_variant(JSONB(), "postgresql")

NATURAL_KEY_COLUMNS = ("ticker", "brokerage", "rating_to", "event_time")

NAME_MAX_LENGTH = 255
LABEL_MAX_LENGTH = 50


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class StockRating(Base):
    """Analyst rating event as ingested from the ratings source."""

    __tablename__ = "stock_ratings"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    ticker: Mapped[str] = mapped_column(String(10), nullable=False)
    company: Mapped[str] = mapped_column(String(NAME_MAX_LENGTH), nullable=False)
    brokerage: Mapped[str] = mapped_column(String(NAME_MAX_LENGTH), nullable=False)
    action: Mapped[str] = mapped_column(String(20), nullable=False)  # upgrade/downgrade/initiate/maintain
    rating_from: Mapped[str | None] = mapped_column(String(LABEL_MAX_LENGTH))
    rating_to: Mapped[str] = mapped_column(String(LABEL_MAX_LENGTH), nullable=False)
    target_from: Mapped[float | None] = mapped_column(Float)
    target_to: Mapped[float | None] = mapped_column(Float)
    event_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        CheckConstraint("target_from IS NULL OR target_from > 0", name="ck_stock_ratings_target_from_positive"),
        CheckConstraint("target_to IS NULL OR target_to > 0", name="ck_stock_ratings_target_to_positive"),
        UniqueConstraint(*NATURAL_KEY_COLUMNS, name="uq_stock_ratings_natural_key"),
        Index("ix_stock_ratings_ticker_time", "ticker", "event_time"),
    )


class EnrichedStockData(Base):
    """Auxiliary per-ticker data used to annotate recommendations."""

    __tablename__ = "enriched_stock_data"

    ticker: Mapped[str] = mapped_column(String(10), primary_key=True)
    historical_closes: Mapped[list[float]] = mapped_column(JsonType, default=list)
    sentiment_score: Mapped[float | None] = mapped_column(Float)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "sentiment_score IS NULL OR sentiment_score BETWEEN -1 AND 1",
            name="ck_enriched_stock_data_sentiment_range",
        ),
    )


class IngestionRun(Base):
    """Trigger run tracking (ingest / enrich)."""

    __tablename__ = "ingestion_runs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    run_type: Mapped[str] = mapped_column(String(20), nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    status: Mapped[str] = mapped_column(String(20), default="running")  # running/succeeded/failed/cancelled
    stats_json: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)
    error_json: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)

    __table_args__ = (Index("ix_ingestion_runs_type_started", "run_type", "started_at"),)

