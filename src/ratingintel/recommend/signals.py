"""Technical and sentiment annotations for recommendations."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

TREND_THRESHOLD_PCT = 2.0

GOLDEN_CROSS = "Golden Cross"
DEATH_CROSS = "Death Cross"
SIDEWAYS = "Sideways"
INSUFFICIENT_DATA = "Insufficient Data"
PENDING_ANALYSIS = "Pending Analysis"


@dataclass(frozen=True)
class TechnicalReading:
    signal: str
    score: float


def analyze_technical(closes: Sequence[float]) -> TechnicalReading:
    """Classify the trend from the first to the last close."""
    if len(closes) < 2 or closes[0] <= 0:
        return TechnicalReading(INSUFFICIENT_DATA, 0.0)

    change_pct = (closes[-1] - closes[0]) / closes[0] * 100
    if change_pct > TREND_THRESHOLD_PCT:
        return TechnicalReading(GOLDEN_CROSS, 0.8)
    if change_pct < -TREND_THRESHOLD_PCT:
        return TechnicalReading(DEATH_CROSS, 0.2)
    return TechnicalReading(SIDEWAYS, 0.5)


def analyze_sentiment(value: float | None) -> float | None:
    """Map a [-1, 1] sentiment onto [0, 1]; out-of-range input is clamped."""
    if value is None:
        return None
    clamped = max(-1.0, min(1.0, value))
    return (clamped + 1) / 2
