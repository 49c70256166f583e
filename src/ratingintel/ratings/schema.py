"""Canonical rating types shared by ingestion and recommendations."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from ratingintel.errors import ProtocolError

RAW_FIELDS = (
    "ticker",
    "company",
    "brokerage",
    "action",
    "rating_from",
    "rating_to",
    "target_from",
    "target_to",
    "time",
)


class RatingAction(str, Enum):
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    INITIATE = "initiate"
    MAINTAIN = "maintain"


# Upstream phrases -> canonical action
ACTION_ALIASES: dict[str, RatingAction] = {
    "upgraded by": RatingAction.UPGRADE,
    "downgraded by": RatingAction.DOWNGRADE,
    "initiated by": RatingAction.INITIATE,
    "reiterated by": RatingAction.MAINTAIN,
    "target raised by": RatingAction.MAINTAIN,
    "target lowered by": RatingAction.MAINTAIN,
    "target set by": RatingAction.MAINTAIN,
}


class RejectReason(str, Enum):
    MISSING_TICKER = "missing_ticker"
    INVALID_TICKER = "invalid_ticker"
    MISSING_COMPANY = "missing_company"
    MISSING_BROKERAGE = "missing_brokerage"
    MISSING_ACTION = "missing_action"
    INVALID_ACTION = "invalid_action"
    MISSING_RATING = "missing_rating"
    MISSING_TIME = "missing_time"
    INVALID_TIME = "invalid_time"
    FUTURE_TIME = "future_time"
    NON_POSITIVE_TARGET = "non_positive_target"
    FIELD_TOO_LONG = "field_too_long"


@dataclass(frozen=True)
class RawRating:
    """Rating record exactly as the upstream API reports it (all strings)."""

    ticker: str = ""
    company: str = ""
    brokerage: str = ""
    action: str = ""
    rating_from: str = ""
    rating_to: str = ""
    target_from: str = ""
    target_to: str = ""
    time: str = ""

    @classmethod
    def from_json(cls, item: Any) -> RawRating:
        if not isinstance(item, dict):
            raise ProtocolError(f"Rating item is not an object: {type(item).__name__}")
        values = {}
        for name in RAW_FIELDS:
            value = item.get(name)
            values[name] = "" if value is None else str(value)
        return cls(**values)


@dataclass(frozen=True)
class Rating:
    """Validated analyst rating event."""

    id: UUID
    ticker: str
    company: str
    brokerage: str
    action: RatingAction
    rating_from: str | None
    rating_to: str
    target_from: float | None
    target_to: float | None
    event_time: datetime
    created_at: datetime | None = None

    @property
    def natural_key(self) -> tuple[str, str, str, datetime]:
        return (self.ticker, self.brokerage, self.rating_to, self.event_time)


@dataclass(frozen=True)
class Rejection:
    """Why a raw record was excluded from persistence."""

    reason: RejectReason
    detail: str
    ticker: str = ""


class EnrichedPayload(BaseModel):
    """Auxiliary per-ticker inputs for technical and sentiment signals."""

    closes: list[float] = Field(default_factory=list, description="Closing prices, oldest first")
    sentiment_score: float | None = Field(None, ge=-1, le=1, description="News sentiment in [-1, 1]")
