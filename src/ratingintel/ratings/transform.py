"""Raw upstream record -> validated Rating."""

from __future__ import annotations

import math
import re
from datetime import UTC, datetime
from uuid import uuid4

from dateutil.parser import isoparse  # type: ignore[import-untyped]

from ratingintel.models import LABEL_MAX_LENGTH, NAME_MAX_LENGTH
from ratingintel.ratings.schema import (
    ACTION_ALIASES,
    Rating,
    RatingAction,
    RawRating,
    Rejection,
    RejectReason,
)

TICKER_PATTERN = re.compile(r"^[A-Z0-9]{1,10}$")
CURRENCY_SYMBOLS = "$€£"


def parse_price(value: str | None) -> float | None:
    """Parse an optional price string.

    Example:
        Input:  " $1,250.50"
        Output: 1250.5

    Empty or unparsable input yields None, never 0.
    """
    if not value:
        return None
    cleaned = value.strip().lstrip(CURRENCY_SYMBOLS).strip().replace(",", "")
    if not cleaned:
        return None
    try:
        price = float(cleaned)
    except ValueError:
        return None
    if not math.isfinite(price):
        return None
    return price


def parse_event_time(value: str) -> datetime:
    """Parse an ISO-8601 timestamp into an aware UTC datetime (naive = UTC)."""
    parsed = isoparse(value.strip())
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _too_long(label: str, value: str, limit: int, ticker: str) -> Rejection | None:
    if len(value) > limit:
        return Rejection(RejectReason.FIELD_TOO_LONG, f"{label} is longer than {limit} characters", ticker)
    return None


def normalize_action(value: str) -> RatingAction | None:
    action = " ".join(value.strip().lower().split())
    if action in ACTION_ALIASES:
        return ACTION_ALIASES[action]
    try:
        return RatingAction(action)
    except ValueError:
        return None


def transform(raw: RawRating, now: datetime | None = None) -> Rating | Rejection:
    """Convert one raw record, or explain why it was rejected."""
    if now is None:
        now = datetime.now(UTC)

    ticker = raw.ticker.strip().upper()
    if not ticker:
        return Rejection(RejectReason.MISSING_TICKER, "ticker is empty")
    if not TICKER_PATTERN.match(ticker):
        return Rejection(RejectReason.INVALID_TICKER, f"ticker {ticker!r} is not 1-10 letters/digits", ticker)

    company = raw.company.strip()
    if not company:
        return Rejection(RejectReason.MISSING_COMPANY, "company is empty", ticker)

    brokerage = raw.brokerage.strip()
    if not brokerage:
        return Rejection(RejectReason.MISSING_BROKERAGE, "brokerage is empty", ticker)

    for label, value in (("company", company), ("brokerage", brokerage)):
        if rejection := _too_long(label, value, NAME_MAX_LENGTH, ticker):
            return rejection

    if not raw.action.strip():
        return Rejection(RejectReason.MISSING_ACTION, "action is empty", ticker)
    action = normalize_action(raw.action)
    if action is None:
        return Rejection(RejectReason.INVALID_ACTION, f"unknown action {raw.action.strip()!r}", ticker)

    rating_to = raw.rating_to.strip()
    if not rating_to:
        return Rejection(RejectReason.MISSING_RATING, "rating_to is empty", ticker)
    rating_from = raw.rating_from.strip()
    for label, value in (("rating_from", rating_from), ("rating_to", rating_to)):
        if rejection := _too_long(label, value, LABEL_MAX_LENGTH, ticker):
            return rejection

    if not raw.time.strip():
        return Rejection(RejectReason.MISSING_TIME, "time is empty", ticker)
    try:
        event_time = parse_event_time(raw.time)
    except (ValueError, OverflowError):
        return Rejection(RejectReason.INVALID_TIME, f"unparsable time {raw.time!r}", ticker)
    if event_time > now:
        return Rejection(RejectReason.FUTURE_TIME, f"time {event_time.isoformat()} is in the future", ticker)

    target_from = parse_price(raw.target_from)
    target_to = parse_price(raw.target_to)
    for label, price in (("target_from", target_from), ("target_to", target_to)):
        if price is not None and price <= 0:
            return Rejection(RejectReason.NON_POSITIVE_TARGET, f"{label} must be positive, got {price}", ticker)

    return Rating(
        id=uuid4(),
        ticker=ticker,
        company=company,
        brokerage=brokerage,
        action=action,
        rating_from=rating_from or None,
        rating_to=rating_to,
        target_from=target_from,
        target_to=target_to,
        event_time=event_time,
    )
