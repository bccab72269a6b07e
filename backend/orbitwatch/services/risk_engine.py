"""Risk and probability assessment of refined close approaches.

``RiskEngine.assess`` is a pure function of its inputs: the refined approach,
both element sets and their metadata. It retains nothing between calls.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

import numpy as np

from .bplane_analysis import compute_encounter_frame
from .catalog_store import ObjectMetadata
from .covariance_handler import (
    covariance_for_object,
    eci_to_rtn_covariance,
    ensure_positive_definite,
    project_covariance_to_plane,
)
from .orbital_constants import DEFAULT_HBR_KM, RiskTier, classify_risk
from .pc_calculator import PcResult, compute_pc_foster, compute_pc_monte_carlo
from .tca_finder import CloseApproach
from .timeframes import days_between, ensure_utc, floor_to_minute
from .tle_validator import TLE

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConjunctionEvent:
    """One assessed close approach. Immutable once created."""

    norad_id_a: int
    norad_id_b: int
    name_a: str
    name_b: str
    tca: datetime
    miss_distance_km: float
    relative_velocity_kms: float
    sigma1_rtn_km: tuple[float, float, float]
    sigma3_rtn_km: tuple[float, float, float]
    probability_of_collision: float
    risk_tier: RiskTier
    created_at: datetime

    @property
    def fingerprint(self) -> tuple[int, int, datetime]:
        return conjunction_fingerprint(self.norad_id_a, self.norad_id_b, self.tca)

    @property
    def fingerprint_key(self) -> str:
        return fingerprint_key(self.fingerprint)

    def to_dict(self) -> dict:
        return {
            "fingerprint": self.fingerprint_key,
            "norad_id_a": self.norad_id_a,
            "norad_id_b": self.norad_id_b,
            "name_a": self.name_a,
            "name_b": self.name_b,
            "tca": self.tca.isoformat(),
            "miss_distance_km": self.miss_distance_km,
            "relative_velocity_kms": self.relative_velocity_kms,
            "sigma1_rtn_km": list(self.sigma1_rtn_km),
            "sigma3_rtn_km": list(self.sigma3_rtn_km),
            "probability_of_collision": self.probability_of_collision,
            "risk_tier": self.risk_tier.value,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ConjunctionEvent":
        return cls(
            norad_id_a=int(data["norad_id_a"]),
            norad_id_b=int(data["norad_id_b"]),
            name_a=data.get("name_a", ""),
            name_b=data.get("name_b", ""),
            tca=ensure_utc(datetime.fromisoformat(data["tca"])),
            miss_distance_km=float(data["miss_distance_km"]),
            relative_velocity_kms=float(data["relative_velocity_kms"]),
            sigma1_rtn_km=tuple(float(x) for x in data["sigma1_rtn_km"]),
            sigma3_rtn_km=tuple(float(x) for x in data["sigma3_rtn_km"]),
            probability_of_collision=float(data["probability_of_collision"]),
            risk_tier=RiskTier(data["risk_tier"]),
            created_at=ensure_utc(datetime.fromisoformat(data["created_at"])),
        )


def conjunction_fingerprint(id_a: int, id_b: int, tca: datetime) -> tuple[int, int, datetime]:
    return (min(id_a, id_b), max(id_a, id_b), floor_to_minute(tca))


def fingerprint_key(fingerprint: tuple[int, int, datetime]) -> str:
    id_a, id_b, minute = fingerprint
    return f"{id_a}-{id_b}-{minute.strftime('%Y%m%dT%H%M')}"


@dataclass
class RiskAssessment:
    """Full risk-engine output, including the intermediate geometry.

    Attributes:
        event: The resulting conjunction event.
        miss_plane_km: Miss vector in conjunction-plane coordinates [km].
        cov_plane_km2: Projected 2x2 combined covariance [km^2].
        cov_combined_rtn_km2: Combined 3x3 covariance in the primary's RTN frame [km^2].
        hard_body_radius_km: Combined hard-body radius [km].
        pc_result: Pc computation detail.
        correlated: True when both objects share one element set.
        uncertainty_classes: Covariance table rows used for (a, b).
    """
    event: ConjunctionEvent
    miss_plane_km: np.ndarray
    cov_plane_km2: np.ndarray
    cov_combined_rtn_km2: np.ndarray
    hard_body_radius_km: float
    pc_result: PcResult
    correlated: bool
    uncertainty_classes: tuple[str, str]

    def to_dict(self) -> dict:
        return {
            "event": self.event.to_dict(),
            "miss_plane_km": [float(x) for x in self.miss_plane_km],
            "cov_plane_km2": np.asarray(self.cov_plane_km2).tolist(),
            "cov_combined_rtn_km2": np.asarray(self.cov_combined_rtn_km2).tolist(),
            "hard_body_radius_km": self.hard_body_radius_km,
            "pc_method": self.pc_result.method,
            "correlated": self.correlated,
            "uncertainty_classes": list(self.uncertainty_classes),
        }


def hard_body_radius_km(metadata: ObjectMetadata | None, default_m: float) -> float:
    if metadata is not None and metadata.hard_body_radius_m:
        return metadata.hard_body_radius_m / 1000.0
    return default_m / 1000.0


class RiskEngine:
    def __init__(self, default_hard_body_radius_m: float = DEFAULT_HBR_KM * 1000.0):
        self.default_hard_body_radius_m = default_hard_body_radius_m

    def assess(
        self,
        approach: CloseApproach,
        tle_a: TLE,
        tle_b: TLE,
        created_at: datetime,
        metadata_a: ObjectMetadata | None = None,
        metadata_b: ObjectMetadata | None = None,
    ) -> RiskAssessment:
        """Turn a refined approach into a risk-tiered conjunction event.

        Parameters:
            approach: Refined close approach (ids ordered a < b).
            tle_a: Element set of approach.norad_id_a.
            tle_b: Element set of approach.norad_id_b.
            created_at: Instant stamped on the event (the scan start).
            metadata_a, metadata_b: Optional metadata for hard-body radii.

        Returns:
            RiskAssessment whose ``event`` is the emitted ConjunctionEvent.
        """
        if tle_a.norad_id != approach.norad_id_a or tle_b.norad_id != approach.norad_id_b:
            raise ValueError("Element sets do not match the approach's catalog ids")

        r_a, v_a = approach.r_a_km, approach.v_a_kms
        r_b, v_b = approach.r_b_km, approach.v_b_kms
        frame = compute_encounter_frame(r_a, v_a, r_b, v_b)

        cov_a = covariance_for_object(tle_a, days_between(tle_a.epoch, approach.tca), r_a, v_a)
        cov_b = covariance_for_object(tle_b, days_between(tle_b.epoch, approach.tca), r_b, v_b)

        # One element set shared by both objects: errors are fully correlated
        correlated = tle_a.same_elements(tle_b)
        if correlated:
            cov_combined = np.zeros((3, 3))
        else:
            cov_combined = cov_a.cov_eci + cov_b.cov_eci

        hbr = hard_body_radius_km(metadata_a, self.default_hard_body_radius_m) + hard_body_radius_km(
            metadata_b, self.default_hard_body_radius_m
        )

        cov_plane = project_covariance_to_plane(cov_combined, frame)
        if not correlated:
            cov_plane, _ = ensure_positive_definite(cov_plane)
        pc_result = compute_pc_foster(frame.miss_plane_km, cov_plane, hbr)

        cov_rtn = eci_to_rtn_covariance(cov_combined, r_a, v_a)
        sigma1 = tuple(float(np.sqrt(max(cov_rtn[i, i], 0.0))) for i in range(3))
        sigma3 = tuple(3.0 * s for s in sigma1)

        pc = max(0.0, min(1.0, pc_result.pc))
        tier = classify_risk(pc, approach.miss_distance_km)
        event = ConjunctionEvent(
            norad_id_a=approach.norad_id_a,
            norad_id_b=approach.norad_id_b,
            name_a=tle_a.name,
            name_b=tle_b.name,
            tca=approach.tca,
            miss_distance_km=approach.miss_distance_km,
            relative_velocity_kms=approach.relative_speed_kms,
            sigma1_rtn_km=sigma1,
            sigma3_rtn_km=sigma3,
            probability_of_collision=pc,
            risk_tier=tier,
            created_at=ensure_utc(created_at),
        )
        return RiskAssessment(
            event=event,
            miss_plane_km=frame.miss_plane_km,
            cov_plane_km2=cov_plane,
            cov_combined_rtn_km2=cov_rtn,
            hard_body_radius_km=hbr,
            pc_result=pc_result,
            correlated=correlated,
            uncertainty_classes=(cov_a.uncertainty_class, cov_b.uncertainty_class),
        )

    @staticmethod
    def monte_carlo_reference(
        assessment: RiskAssessment, n_samples: int = 200_000, seed: int | None = 0
    ) -> PcResult:
        return compute_pc_monte_carlo(
            assessment.miss_plane_km,
            assessment.cov_plane_km2,
            assessment.hard_body_radius_km,
            n_samples=n_samples,
            seed=seed,
        )
