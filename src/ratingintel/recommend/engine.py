"""Derive buy-side recommendations from the latest rating per ticker.

Pipeline
--------
1. Latest rating per ticker (most recent event time, ties by created_at).
2. Keep positive candidates: a positive label keyword, a strict upgrade on
   the ordinal scale, or an ``upgrade`` action that the known labels do not
   contradict.
3. Score = base + label bonus, capped at 1.0.
4. Keep scores strictly above the acceptance threshold.
5. Stable sort by descending score, truncated to ``max_results``.

Enriched data only annotates a recommendation (technical signal, sentiment);
it never moves the score.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from types import MappingProxyType

import structlog
from pydantic import BaseModel, ConfigDict

from ratingintel.db import get_db
from ratingintel.ratings.repository import enriched_data_for, latest_rating_per_ticker
from ratingintel.ratings.schema import EnrichedPayload, Rating, RatingAction
from ratingintel.recommend.signals import PENDING_ANALYSIS, analyze_sentiment, analyze_technical

logger = structlog.get_logger()


def _frozen(mapping: Mapping[str, float | int]) -> MappingProxyType:
    return MappingProxyType({key.lower(): value for key, value in mapping.items()})


@dataclass(frozen=True)
class ScoringConfig:
    """Immutable scoring tables. Label keys are matched case-insensitively."""

    base_score: float = 0.7
    acceptance_threshold: float = 0.6
    max_results: int | None = 10
    positive_keywords: tuple[str, ...] = ("buy", "outperform", "overweight")
    label_bonus: Mapping[str, float] = field(
        default_factory=lambda: _frozen(
            {
                "Strong Buy": 0.2,
                "Buy": 0.15,
                "Outperform": 0.1,
                "Overweight": 0.1,
            }
        )
    )
    rating_scale: Mapping[str, int] = field(
        default_factory=lambda: _frozen(
            {
                "Sell": 1,
                "Underperform": 2,
                "Hold": 3,
                "Market Perform": 3,
                "Neutral": 3,
                "Buy": 4,
                "Outperform": 4,
                "Overweight": 4,
                "Strong Buy": 5,
            }
        )
    )

    def __post_init__(self) -> None:
        # Normalise caller-supplied plain dicts into read-only views.
        if not isinstance(self.label_bonus, MappingProxyType):
            object.__setattr__(self, "label_bonus", _frozen(self.label_bonus))
        if not isinstance(self.rating_scale, MappingProxyType):
            object.__setattr__(self, "rating_scale", _frozen(self.rating_scale))


DEFAULT_SCORING = ScoringConfig()


class Recommendation(BaseModel):
    """Ephemeral, recomputed on every request."""

    model_config = ConfigDict(frozen=True)

    ticker: str
    company: str
    score: float
    rationale: str
    latest_rating: str
    target_price: float | None = None
    technical_signal: str = PENDING_ANALYSIS
    sentiment_score: float | None = None
    generated_at: datetime


def _rank_of(label: str | None, config: ScoringConfig) -> int | None:
    if not label:
        return None
    return config.rating_scale.get(label.strip().lower())


def is_upgrade(prior: str | None, new: str | None, config: ScoringConfig = DEFAULT_SCORING) -> bool:
    """True only when both labels are on the scale and ``new`` strictly outranks ``prior``."""
    prior_rank = _rank_of(prior, config)
    new_rank = _rank_of(new, config)
    if prior_rank is None or new_rank is None:
        return False
    return new_rank > prior_rank


def is_positive(rating: Rating, config: ScoringConfig = DEFAULT_SCORING) -> bool:
    label = rating.rating_to.lower()
    if any(keyword in label for keyword in config.positive_keywords):
        return True
    if is_upgrade(rating.rating_from, rating.rating_to, config):
        return True
    if rating.action is RatingAction.UPGRADE:
        prior_rank = _rank_of(rating.rating_from, config)
        new_rank = _rank_of(rating.rating_to, config)
        # Both labels known but not an improvement: the action label is wrong.
        return prior_rank is None or new_rank is None
    return False


def score_rating(rating: Rating, config: ScoringConfig = DEFAULT_SCORING) -> float:
    bonus = config.label_bonus.get(rating.rating_to.strip().lower(), 0.0)
    return min(1.0, round(config.base_score + bonus, 10))


def build_rationale(rating: Rating, now: datetime) -> str:
    parts = [f"Recent {rating.rating_to} rating by {rating.brokerage}"]

    days_since = int((now - rating.event_time).total_seconds() // 86400)
    if days_since <= 1:
        parts.append("issued today")
    elif days_since <= 7:
        parts.append(f"issued {days_since} days ago")

    if rating.target_to is not None:
        parts.append(f"price target ${rating.target_to:.2f}")

    return ", ".join(parts)


class RecommendationEngine:
    def __init__(
        self,
        config: ScoringConfig = DEFAULT_SCORING,
        *,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ):
        self.config = config
        self._clock = clock

    def generate(self) -> list[Recommendation]:
        """Load the latest ratings and enriched data, then rank."""
        with get_db() as session:
            latest = latest_rating_per_ticker(session)
            enriched = enriched_data_for(session, latest.keys())

        recommendations = self.rank(latest, enriched)
        logger.info("Recommendations generated", tickers=len(latest), recommended=len(recommendations))
        return recommendations

    def rank(
        self,
        latest: Mapping[str, Rating],
        enriched: Mapping[str, EnrichedPayload] | None = None,
        now: datetime | None = None,
    ) -> list[Recommendation]:
        now = now or self._clock()
        enriched = enriched or {}

        recommendations: list[Recommendation] = []
        for ticker, rating in latest.items():
            if not is_positive(rating, self.config):
                continue
            score = score_rating(rating, self.config)
            if score <= self.config.acceptance_threshold:
                continue
            recommendations.append(self._build(ticker, rating, score, enriched.get(ticker), now))

        # sorted() is stable: equal scores keep per-ticker input order
        recommendations = sorted(recommendations, key=lambda rec: rec.score, reverse=True)
        if self.config.max_results is not None:
            recommendations = recommendations[: self.config.max_results]
        return recommendations

    def _build(
        self,
        ticker: str,
        rating: Rating,
        score: float,
        payload: EnrichedPayload | None,
        now: datetime,
    ) -> Recommendation:
        technical_signal = PENDING_ANALYSIS
        sentiment = None
        if payload is not None:
            technical_signal = analyze_technical(payload.closes).signal
            sentiment = analyze_sentiment(payload.sentiment_score)

        return Recommendation(
            ticker=ticker,
            company=rating.company,
            score=score,
            rationale=build_rationale(rating, now),
            latest_rating=rating.rating_to,
            target_price=rating.target_to,
            technical_signal=technical_signal,
            sentiment_score=sentiment,
            generated_at=now,
        )


class RecommendationCache:
    """Thread-safe TTL cache in front of ``RecommendationEngine.generate``."""

    def __init__(
        self,
        engine: RecommendationEngine,
        ttl_seconds: float = 300.0,
        *,
        now_fn: Callable[[], float] = time.monotonic,
    ):
        self._engine = engine
        self._ttl_seconds = ttl_seconds
        self._now_fn = now_fn
        self._lock = threading.Lock()
        self._cached: list[Recommendation] | None = None
        self._loaded_at = 0.0

    def get(self) -> list[Recommendation]:
        with self._lock:
            if self._cached is not None and self._now_fn() - self._loaded_at < self._ttl_seconds:
                return list(self._cached)
            self._cached = self._engine.generate()
            self._loaded_at = self._now_fn()
            return list(self._cached)

    def invalidate(self) -> None:
        with self._lock:
            self._cached = None
