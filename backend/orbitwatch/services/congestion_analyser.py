"""Orbital shell congestion and per-object risk summary.

Objects are bucketed into altitude shells by mean altitude. Each object's
risk score blends how crowded its shell is with how close its nearest
screened conjunction comes:

    congestion_factor = min(2 * shell_count / 100, 3)
    congestion_risk   = congestion_factor / 3
    conjunction_risk  = clamp(1 - closest_miss / threshold, 0, 1)
    risk_score        = 0.4 * congestion_risk + 0.6 * conjunction_risk
"""
from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from typing import Iterable

from ..errors import UnknownObject
from .catalog_store import CatalogEntry, orbital_regime
from .orbital_constants import R_EARTH_KM
from .risk_engine import ConjunctionEvent

MAX_CONGESTION_FACTOR = 3.0
CONGESTION_WEIGHT = 0.4
CONJUNCTION_WEIGHT = 0.6
HIGH_RISK_SCORE = 0.6
MEDIUM_RISK_SCORE = 0.3


def shell_label(mean_altitude_km: float, band_width_km: float) -> str:
    floor = int(mean_altitude_km // band_width_km) * band_width_km
    return f"{floor:g}-{floor + band_width_km:g}"


def congestion_factor(shell_count: int) -> float:
    return min(2.0 * shell_count / 100.0, MAX_CONGESTION_FACTOR)


def risk_class_for_score(score: float) -> str:
    if score >= HIGH_RISK_SCORE:
        return "high"
    if score >= MEDIUM_RISK_SCORE:
        return "medium"
    return "low"


@dataclass(frozen=True)
class ObjectRisk:
    norad_id: int
    name: str
    mean_altitude_km: float
    shell: str
    shell_count: int
    congestion_risk: float
    conjunction_risk: float
    risk_score: float
    conjunction_count: int
    closest_miss_km: float | None
    max_pc: float
    highest_tier: str | None

    @property
    def risk_class(self) -> str:
        return risk_class_for_score(self.risk_score)

    def to_dict(self) -> dict:
        return {
            "norad_id": self.norad_id,
            "name": self.name,
            "mean_altitude_km": self.mean_altitude_km,
            "shell": self.shell,
            "shell_count": self.shell_count,
            "congestion_risk": self.congestion_risk,
            "conjunction_risk": self.conjunction_risk,
            "risk_score": self.risk_score,
            "risk_class": self.risk_class,
            "has_active_conjunction": self.conjunction_count > 0,
            "conjunction_count": self.conjunction_count,
            "closest_miss_km": self.closest_miss_km,
            "max_pc": self.max_pc,
            "highest_tier": self.highest_tier,
        }


class CongestionAnalyser:
    def __init__(
        self,
        entries: Iterable[CatalogEntry],
        events: Iterable[ConjunctionEvent],
        threshold_km: float = 10.0,
        band_width_km: float = 10.0,
    ):
        self.entries = list(entries)
        self.events = list(events)
        self.threshold_km = threshold_km
        self.band_width_km = band_width_km

        self._altitude = {e.norad_id: e.tle.semi_major_axis_km - R_EARTH_KM for e in self.entries}
        self._shell = {nid: shell_label(alt, band_width_km) for nid, alt in self._altitude.items()}
        self._shell_counts: dict[str, int] = defaultdict(int)
        for label in self._shell.values():
            self._shell_counts[label] += 1

        self._by_object: dict[int, list[ConjunctionEvent]] = defaultdict(list)
        for event in self.events:
            self._by_object[event.norad_id_a].append(event)
            self._by_object[event.norad_id_b].append(event)

    def compute(self) -> list[dict]:
        """Per-shell object counts and conjunctions per object, lowest shell first."""
        conjunctions: dict[str, int] = defaultdict(int)
        for event in self.events:
            # Counted in the shell of the lower catalog id, as one event per pair
            label = self._shell.get(event.norad_id_a)
            if label is not None:
                conjunctions[label] += 1

        response = []
        for label in sorted(self._shell_counts, key=lambda x: float(x.split("-")[0])):
            obj_count = self._shell_counts[label]
            conj_count = conjunctions[label]
            response.append(
                {
                    "altitude_band_km": label,
                    "object_count": obj_count,
                    "conjunction_count": conj_count,
                    "conjunction_rate": float(conj_count) / obj_count if obj_count else 0.0,
                }
            )
        return response

    def object_risk(self, norad_id: int) -> ObjectRisk:
        entry = next((e for e in self.entries if e.norad_id == norad_id), None)
        if entry is None:
            raise UnknownObject(norad_id)
        return self._score(entry)

    def object_risks(self, min_score: float = 0.0, limit: int | None = None) -> list[ObjectRisk]:
        """Objects scoring at least ``min_score``, highest score first."""
        risks = [risk for risk in map(self._score, self.entries) if risk.risk_score >= min_score]
        risks.sort(key=lambda r: (-r.risk_score, r.norad_id))
        return risks[:limit] if limit is not None else risks

    def statistics(self) -> dict:
        risks = [self._score(entry) for entry in self.entries]
        distribution = {"high": 0, "medium": 0, "low": 0}
        regimes: dict[str, int] = defaultdict(int)
        for risk, entry in zip(risks, self.entries):
            distribution[risk.risk_class] += 1
            regimes[orbital_regime(entry.tle)] += 1
        total = len(risks)
        return {
            "total": total,
            "risk_distribution": distribution,
            "regime_distribution": dict(regimes),
            "average_risk": sum(r.risk_score for r in risks) / total if total else 0.0,
            "most_congested_shell": max(self._shell_counts, key=self._shell_counts.get, default=None),
        }

    def _score(self, entry: CatalogEntry) -> ObjectRisk:
        label = self._shell[entry.norad_id]
        shell_count = self._shell_counts[label]
        congestion_risk = congestion_factor(shell_count) / MAX_CONGESTION_FACTOR

        events = self._by_object.get(entry.norad_id, [])
        closest = min(events, key=lambda e: e.miss_distance_km, default=None)
        if closest is None:
            conjunction_risk = 0.0
        else:
            conjunction_risk = max(0.0, min(1.0, 1.0 - closest.miss_distance_km / self.threshold_km))
        highest = max(events, key=lambda e: e.risk_tier.rank, default=None)

        return ObjectRisk(
            norad_id=entry.norad_id,
            name=entry.tle.name,
            mean_altitude_km=self._altitude[entry.norad_id],
            shell=label,
            shell_count=shell_count,
            congestion_risk=congestion_risk,
            conjunction_risk=conjunction_risk,
            risk_score=min(1.0, CONGESTION_WEIGHT * congestion_risk + CONJUNCTION_WEIGHT * conjunction_risk),
            conjunction_count=len(events),
            closest_miss_km=closest.miss_distance_km if closest else None,
            max_pc=max((e.probability_of_collision for e in events), default=0.0),
            highest_tier=highest.risk_tier.value if highest else None,
        )
