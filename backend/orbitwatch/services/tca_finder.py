"""Time of Closest Approach (TCA) refinement within a coarse bracket.

A bounded Brent search (golden-section with parabolic steps) locates the
minimum of |r_rel(t)|, then the root of d/dt |r_rel|^2 / 2 = r_rel · v_rel is
polished with Brent's method so the reported miss distance is within metres
of the true minimum even at head-on closing speeds.

Reference: Vallado (2013), Chapter 10, Close Approach Analysis.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

import numpy as np
from scipy.optimize import brentq, minimize_scalar

from .propagate_engine import StateVector, minutes_since_epoch, propagate_minutes
from .tle_validator import TLE

MINIMIZER_XATOL_S = 1e-3
POLISH_HALF_WIDTH_S = 0.05
POLISH_XTOL_S = 1e-9
TIE_TOLERANCE_KM = 1e-9


@dataclass
class CloseApproach:
    """A refined close approach between two objects, ids ordered a < b.

    Attributes:
        norad_id_a: Lower catalog id.
        norad_id_b: Higher catalog id.
        tca: UTC instant of closest approach.
        miss_distance_km: |r_a - r_b| at TCA [km].
        relative_speed_kms: |v_a - v_b| at TCA [km/s].
        r_a_km, v_a_kms, r_b_km, v_b_kms: TEME states at TCA.
        offset_seconds: TCA offset from the scan start [s].
    """
    norad_id_a: int
    norad_id_b: int
    tca: datetime
    miss_distance_km: float
    relative_speed_kms: float
    r_a_km: np.ndarray
    v_a_kms: np.ndarray
    r_b_km: np.ndarray
    v_b_kms: np.ndarray
    offset_seconds: float

    @property
    def state_a(self) -> StateVector:
        return StateVector(self.tca, tuple(map(float, self.r_a_km)), tuple(map(float, self.v_a_kms)))

    @property
    def state_b(self) -> StateVector:
        return StateVector(self.tca, tuple(map(float, self.r_b_km)), tuple(map(float, self.v_b_kms)))


class PairGeometry:
    """Relative geometry of two element sets as a function of seconds from ``origin``."""

    def __init__(self, tle_a: TLE, tle_b: TLE, origin: datetime):
        if tle_a.norad_id > tle_b.norad_id:
            tle_a, tle_b = tle_b, tle_a
        self.tle_a = tle_a
        self.tle_b = tle_b
        self.origin = origin
        self._base_a = minutes_since_epoch(tle_a, origin)
        self._base_b = minutes_since_epoch(tle_b, origin)

    def states(self, t_s: float) -> tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
        r_a, v_a = propagate_minutes(self.tle_a, self._base_a + t_s / 60.0)
        r_b, v_b = propagate_minutes(self.tle_b, self._base_b + t_s / 60.0)
        return r_a, v_a, r_b, v_b

    def distance(self, t_s: float) -> float:
        r_a, _, r_b, _ = self.states(t_s)
        return float(np.linalg.norm(r_a - r_b))

    def range_rate_term(self, t_s: float) -> float:
        """r_rel · v_rel [km^2/s]; negative while closing, positive while receding."""
        r_a, v_a, r_b, v_b = self.states(t_s)
        return float(np.dot(r_a - r_b, v_a - v_b))

    def approach_at(self, t_s: float) -> CloseApproach:
        r_a, v_a, r_b, v_b = self.states(t_s)
        return CloseApproach(
            norad_id_a=self.tle_a.norad_id,
            norad_id_b=self.tle_b.norad_id,
            tca=self.origin + timedelta(seconds=t_s),
            miss_distance_km=float(np.linalg.norm(r_a - r_b)),
            relative_speed_kms=float(np.linalg.norm(v_a - v_b)),
            r_a_km=r_a,
            v_a_kms=v_a,
            r_b_km=r_b,
            v_b_kms=v_b,
            offset_seconds=t_s,
        )


def refine_tca(geometry: PairGeometry, lo_s: float, hi_s: float) -> CloseApproach:
    """Refine the closest approach inside [lo_s, hi_s] seconds from the origin.

    Parameters:
        geometry: Pair to evaluate.
        lo_s: Bracket start [s].
        hi_s: Bracket end [s].

    Returns:
        CloseApproach at the refined TCA. When several instants share the
        minimum distance (co-located objects) the earliest one is returned.

    Raises:
        PropagationError: either object failed to propagate inside the bracket.
    """
    if hi_s <= lo_s:
        return geometry.approach_at(lo_s)

    result = minimize_scalar(
        geometry.distance,
        bounds=(lo_s, hi_s),
        method="bounded",
        options={"xatol": MINIMIZER_XATOL_S},
    )
    t_best = float(result.x)

    a = max(lo_s, t_best - POLISH_HALF_WIDTH_S)
    b = min(hi_s, t_best + POLISH_HALF_WIDTH_S)
    if b > a:
        f_a = geometry.range_rate_term(a)
        f_b = geometry.range_rate_term(b)
        if f_a < 0.0 < f_b:
            t_best = brentq(geometry.range_rate_term, a, b, xtol=POLISH_XTOL_S)

    best_t, best_d = t_best, geometry.distance(t_best)
    for t_edge in (lo_s, hi_s):
        d_edge = geometry.distance(t_edge)
        if d_edge < best_d - TIE_TOLERANCE_KM or (
            abs(d_edge - best_d) <= TIE_TOLERANCE_KM and t_edge < best_t
        ):
            best_t, best_d = t_edge, d_edge
    return geometry.approach_at(best_t)


def find_closest_approach(
    tle_a: TLE,
    tle_b: TLE,
    start: datetime,
    window_s: float,
    step_s: float,
    candidates: int = 3,
) -> CloseApproach:
    """Closest approach of one pair over a whole window, whatever the distance.

    The pair is sampled every ``step_s`` seconds and the ``candidates``
    deepest sampled minima are refined; the closest refined approach wins.
    Used for on-demand pair analysis, where no screening threshold applies.
    """
    geometry = PairGeometry(tle_a, tle_b, start)
    offsets = np.arange(0.0, window_s + 1e-9, step_s)
    distances = np.array([geometry.distance(float(t)) for t in offsets])

    minima = [
        k
        for k in range(len(distances))
        if (k == 0 or distances[k] < distances[k - 1])
        and (k == len(distances) - 1 or distances[k] <= distances[k + 1])
    ]
    minima.sort(key=lambda k: distances[k])

    best: CloseApproach | None = None
    for k in minima[:candidates]:
        lo = float(offsets[max(k - 1, 0)])
        hi = float(offsets[min(k + 1, len(offsets) - 1)])
        approach = refine_tca(geometry, lo, hi)
        if best is None or approach.miss_distance_km < best.miss_distance_km:
            best = approach
    return best if best is not None else geometry.approach_at(0.0)
