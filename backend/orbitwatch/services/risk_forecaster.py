"""Short-horizon risk forecasting from recent screening snapshots.

The engine records a ``RiskSnapshot`` after every scan and asks a ``Scorer``
for a forecast.  ``TrendScorer`` is the default: a least-squares linear
trend over the recent window, extrapolated to each horizon, plus a z-score
check that flags the latest snapshot when it departs from the window.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol, Sequence

import numpy as np

from .orbital_constants import RiskTier
from .risk_engine import ConjunctionEvent
from .timeframes import ensure_utc

FORECAST_HORIZONS_HOURS = (24, 48, 72)
ANOMALY_Z_THRESHOLD = 2.5
MIN_TREND_POINTS = 3


@dataclass(frozen=True)
class RiskSnapshot:
    """Aggregate risk of one screening scan."""

    at: datetime
    counts: dict[str, int]
    max_pc: float
    conjunction_rate_per_hour: float
    objects_screened: int = 0

    @property
    def weighted_score(self) -> float:
        """Tier-weighted event count; each tier outweighs the ones below it."""
        weights = {RiskTier.LOW: 0.1, RiskTier.MODERATE: 1.0, RiskTier.HIGH: 5.0, RiskTier.CRITICAL: 20.0}
        return float(sum(self.counts.get(tier.value, 0) * weight for tier, weight in weights.items()))

    def to_dict(self) -> dict:
        return {
            "at": self.at.isoformat(),
            "counts": dict(self.counts),
            "max_pc": self.max_pc,
            "conjunction_rate_per_hour": self.conjunction_rate_per_hour,
            "objects_screened": self.objects_screened,
            "weighted_score": self.weighted_score,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RiskSnapshot":
        return cls(
            at=ensure_utc(datetime.fromisoformat(data["at"])),
            counts={k: int(v) for k, v in data["counts"].items()},
            max_pc=float(data["max_pc"]),
            conjunction_rate_per_hour=float(data["conjunction_rate_per_hour"]),
            objects_screened=int(data.get("objects_screened", 0)),
        )

    @classmethod
    def from_events(
        cls, at: datetime, events: Sequence[ConjunctionEvent], window_hours: float, objects_screened: int = 0
    ) -> "RiskSnapshot":
        counts = {tier.value: 0 for tier in RiskTier}
        for event in events:
            counts[event.risk_tier.value] += 1
        return cls(
            at=ensure_utc(at),
            counts=counts,
            max_pc=max((e.probability_of_collision for e in events), default=0.0),
            conjunction_rate_per_hour=len(events) / window_hours if window_hours > 0 else 0.0,
            objects_screened=objects_screened,
        )


@dataclass(frozen=True)
class HorizonForecast:
    horizon_hours: int
    risk_class: RiskTier
    projected_score: float
    confidence: float

    def to_dict(self) -> dict:
        return {
            "horizon_hours": self.horizon_hours,
            "risk_class": self.risk_class.value,
            "projected_score": self.projected_score,
            "confidence": self.confidence,
        }


@dataclass(frozen=True)
class Forecast:
    generated_at: datetime
    horizons: list[HorizonForecast] = field(default_factory=list)
    anomaly: bool = False
    anomaly_z_score: float | None = None
    model: str = "trend"
    samples: int = 0

    def to_dict(self) -> dict:
        return {
            "generated_at": self.generated_at.isoformat(),
            "horizons": [h.to_dict() for h in self.horizons],
            "anomaly": self.anomaly,
            "anomaly_z_score": self.anomaly_z_score,
            "model": self.model,
            "samples": self.samples,
        }


class Scorer(Protocol):
    def score(self, snapshots: Sequence[RiskSnapshot], now: datetime) -> Forecast:
        ...


def risk_class_for_score(score: float) -> RiskTier:
    if score >= 20.0:
        return RiskTier.CRITICAL
    if score >= 5.0:
        return RiskTier.HIGH
    if score >= 1.0:
        return RiskTier.MODERATE
    return RiskTier.LOW


class TrendScorer:
    def __init__(self, window: int = 48, anomaly_z: float = ANOMALY_Z_THRESHOLD):
        self.window = window
        self.anomaly_z = anomaly_z

    def score(self, snapshots: Sequence[RiskSnapshot], now: datetime) -> Forecast:
        """Project the tier-weighted score to 24/48/72 h.

        With fewer than three snapshots the latest score is carried forward at
        low confidence.  Confidence otherwise follows the fit's R^2 and decays
        with horizon length.
        """
        now = ensure_utc(now)
        recent = sorted(snapshots, key=lambda s: s.at)[-self.window:]
        if not recent:
            return Forecast(
                generated_at=now,
                horizons=[HorizonForecast(h, RiskTier.LOW, 0.0, 0.0) for h in FORECAST_HORIZONS_HOURS],
                samples=0,
            )

        scores = np.array([s.weighted_score for s in recent])
        hours = np.array([(s.at - recent[0].at).total_seconds() / 3600.0 for s in recent])
        now_h = (now - recent[0].at).total_seconds() / 3600.0

        if len(recent) < MIN_TREND_POINTS or np.ptp(hours) == 0.0:
            latest = float(scores[-1])
            horizons = [
                HorizonForecast(h, risk_class_for_score(latest), latest, 0.3) for h in FORECAST_HORIZONS_HOURS
            ]
            return Forecast(generated_at=now, horizons=horizons, samples=len(recent))

        slope, intercept = np.polyfit(hours, scores, 1)
        fitted = slope * hours + intercept
        ss_res = float(np.sum((scores - fitted) ** 2))
        ss_tot = float(np.sum((scores - scores.mean()) ** 2))
        r_squared = 1.0 - ss_res / ss_tot if ss_tot > 0.0 else 1.0

        horizons = []
        for h in FORECAST_HORIZONS_HOURS:
            projected = max(0.0, float(slope * (now_h + h) + intercept))
            confidence = max(0.05, min(0.95, r_squared * (1.0 - h / 240.0)))
            horizons.append(HorizonForecast(h, risk_class_for_score(projected), projected, confidence))

        history = scores[:-1]
        z = None
        anomaly = False
        if len(history) >= 2 and float(np.std(history)) > 0.0:
            z = float((scores[-1] - history.mean()) / np.std(history))
            anomaly = abs(z) >= self.anomaly_z
        return Forecast(generated_at=now, horizons=horizons, anomaly=anomaly, anomaly_z_score=z, samples=len(recent))
