"""Pair pruning for the coarse conjunction pass.

Three cheap tests narrow the all-pairs problem at every coarse instant:

- perigee/apogee band separation (time independent),
- along-track phase separation of coplanar pairs,
- a KD-tree range query so only objects within reach of each other are paired.

Everything here is vectorised over index arrays; callers pass global object
indices sorted by catalog id so that i < j implies id_i < id_j.
"""
from __future__ import annotations

import math

import numpy as np
from scipy.spatial import cKDTree

from .orbital_constants import GM_EARTH_KM3_S2
from .tle_validator import TLE

PHASE_RATE_SAFETY = 2.0
GRAVITY_GRADIENT_FACTOR = 1.5


def altitude_bands(tles: list[TLE]) -> tuple[np.ndarray, np.ndarray]:
    """Mean-element perigee and apogee altitudes [km] per object."""
    perigee = np.array([tle.perigee_altitude_km for tle in tles], dtype=float)
    apogee = np.array([tle.apogee_altitude_km for tle in tles], dtype=float)
    return perigee, apogee


def band_gap_km(
    perigee: np.ndarray, apogee: np.ndarray, i: np.ndarray, j: np.ndarray
) -> np.ndarray:
    """Radial gap between the altitude bands of each pair; negative when they overlap."""
    return np.maximum(perigee[i], perigee[j]) - np.minimum(apogee[i], apogee[j])


def band_overlap_mask(
    perigee: np.ndarray, apogee: np.ndarray, i: np.ndarray, j: np.ndarray, threshold_km: float
) -> np.ndarray:
    """True for pairs whose altitude bands come within ``threshold_km`` of each other."""
    return band_gap_km(perigee, apogee, i, j) <= threshold_km


def coplanar_phase_prune_mask(
    positions: np.ndarray,
    velocities: np.ndarray,
    i: np.ndarray,
    j: np.ndarray,
    threshold_km: float,
    step_seconds: float,
    coplanar_tolerance_rad: float,
) -> np.ndarray:
    """True for coplanar pairs too far apart in phase to close within one step.

    Two objects whose orbit normals agree within the tolerance can only close
    their angular separation at the difference of their angular rates, so a
    separation larger than that rate times the step (with a safety factor)
    plus the threshold's angular size rules the pair out at this instant.
    """
    if len(i) == 0:
        return np.zeros(0, dtype=bool)
    r_i, r_j = positions[i], positions[j]
    h_i = np.cross(r_i, velocities[i])
    h_j = np.cross(r_j, velocities[j])
    h_i_mag = np.linalg.norm(h_i, axis=1)
    h_j_mag = np.linalg.norm(h_j, axis=1)
    r_i_mag = np.linalg.norm(r_i, axis=1)
    r_j_mag = np.linalg.norm(r_j, axis=1)

    cos_planes = np.einsum("ij,ij->i", h_i, h_j) / (h_i_mag * h_j_mag)
    coplanar = cos_planes >= math.cos(coplanar_tolerance_rad)

    cos_sep = np.einsum("ij,ij->i", r_i, r_j) / (r_i_mag * r_j_mag)
    separation = np.arccos(np.clip(cos_sep, -1.0, 1.0))
    rate_i = h_i_mag / r_i_mag ** 2
    rate_j = h_j_mag / r_j_mag ** 2
    bound = (
        PHASE_RATE_SAFETY * np.abs(rate_i - rate_j) * step_seconds
        + threshold_km / np.minimum(r_i_mag, r_j_mag)
    )
    return coplanar & (separation > bound)


def neighbour_pairs(positions: np.ndarray, radius_km: float) -> tuple[np.ndarray, np.ndarray]:
    """Pairs of rows of ``positions`` no more than ``radius_km`` apart.

    Returns:
        (i, j) index arrays with i < j, sorted by i then j.
    """
    if len(positions) < 2:
        empty = np.zeros(0, dtype=np.int64)
        return empty, empty
    pairs = cKDTree(positions).query_pairs(radius_km, output_type="ndarray")
    if len(pairs) == 0:
        empty = np.zeros(0, dtype=np.int64)
        return empty, empty
    pairs = pairs[np.lexsort((pairs[:, 1], pairs[:, 0]))]
    return pairs[:, 0].astype(np.int64), pairs[:, 1].astype(np.int64)


def linear_min_distance(rel_pos: np.ndarray, rel_vel: np.ndarray, horizon_s: float) -> np.ndarray:
    """Closest distance of straight-line relative motion within +/- horizon_s."""
    speed_sq = np.einsum("ij,ij->i", rel_vel, rel_vel)
    closing = np.einsum("ij,ij->i", rel_pos, rel_vel)
    with np.errstate(divide="ignore", invalid="ignore"):
        tau = np.where(speed_sq > 0.0, -closing / speed_sq, 0.0)
    tau = np.clip(tau, -horizon_s, horizon_s)
    return np.linalg.norm(rel_pos + rel_vel * tau[:, None], axis=1)


def curvature_margin_km(
    separation_km: np.ndarray, radius_km: np.ndarray, horizon_s: float
) -> np.ndarray:
    """Bound on how far true relative motion departs from a straight line.

    The differential gravity between two objects is about 3 n^2 times their
    separation; integrated over the horizon it bends the path by 0.5 a t^2.
    """
    n_sq = GM_EARTH_KM3_S2 / radius_km ** 3
    return GRAVITY_GRADIENT_FACTOR * n_sq * separation_km * horizon_s ** 2
