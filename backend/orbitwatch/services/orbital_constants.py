"""Physical constants, enumerations and frame helpers for the orbital computations.

All constants are sourced from standard references (WGS-84, WGS-72 for SGP4, IAU).
Units: km, kg, seconds unless otherwise noted.
"""
from __future__ import annotations

from enum import Enum

import numpy as np

# --- Earth constants (WGS-84) ---
GM_EARTH_KM3_S2 = 398600.4418  # Earth gravitational parameter [km^3/s^2]
R_EARTH_KM = 6378.137  # Earth equatorial radius [km]
EARTH_ROTATION_RAD_S = 7.292115146706979e-5  # Earth rotation rate [rad/s]
EARTH_FLATTENING = 1.0 / 298.257223563  # WGS-84
EARTH_ECC_SQ = EARTH_FLATTENING * (2.0 - EARTH_FLATTENING)

# --- Time ---
SECONDS_PER_DAY = 86400.0
MINUTES_PER_DAY = 1440.0
J2000_JD = 2451545.0
JULIAN_CENTURY_DAYS = 36525.0

# --- Regimes ---
ATMOSPHERIC_BOUNDARY_KM = 80.0  # Below this an object is considered decayed
LEO_MAX_PERIGEE_KM = 2000.0
GEO_ALTITUDE_KM = 35786.0
GEO_ALTITUDE_TOLERANCE_KM = 200.0
GEO_MAX_INCLINATION_DEG = 15.0
DEEP_SPACE_PERIOD_MIN = 225.0  # SDP4 is selected at or above this period

# --- Risk thresholds ---
PC_THRESHOLD_CRITICAL = 1e-3
PC_THRESHOLD_HIGH = 1e-4
PC_THRESHOLD_MODERATE = 1e-5
MISS_THRESHOLD_CRITICAL_KM = 0.1
MISS_THRESHOLD_HIGH_KM = 1.0
MISS_THRESHOLD_MODERATE_KM = 5.0

# --- Default hard-body radius ---
DEFAULT_HBR_KM = 0.005  # 5 meters per object


class RiskTier(str, Enum):
    """Conjunction risk tier, ordered from least to most severe."""
    LOW = "low"
    MODERATE = "moderate"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _TIER_RANK[self]


_TIER_RANK = {
    RiskTier.LOW: 0,
    RiskTier.MODERATE: 1,
    RiskTier.HIGH: 2,
    RiskTier.CRITICAL: 3,
}


def classify_risk(pc: float, miss_distance_km: float) -> RiskTier:
    """Classify a conjunction by probability of collision and miss distance jointly."""
    if pc >= PC_THRESHOLD_CRITICAL or miss_distance_km <= MISS_THRESHOLD_CRITICAL_KM:
        return RiskTier.CRITICAL
    if pc >= PC_THRESHOLD_HIGH or miss_distance_km <= MISS_THRESHOLD_HIGH_KM:
        return RiskTier.HIGH
    if pc >= PC_THRESHOLD_MODERATE or miss_distance_km <= MISS_THRESHOLD_MODERATE_KM:
        return RiskTier.MODERATE
    return RiskTier.LOW


def eci_to_rtn(r_vec: np.ndarray, v_vec: np.ndarray) -> np.ndarray:
    """Compute inertial-to-RTN rotation matrix.

    Parameters:
        r_vec: Position vector [km], shape (3,).
        v_vec: Velocity vector [km/s], shape (3,).

    Returns:
        3x3 rotation matrix where rows are R-hat, T-hat, N-hat.
    """
    r_hat = r_vec / np.linalg.norm(r_vec)
    h_vec = np.cross(r_vec, v_vec)
    n_hat = h_vec / np.linalg.norm(h_vec)
    t_hat = np.cross(n_hat, r_hat)
    return np.array([r_hat, t_hat, n_hat])


def rtn_to_eci(r_vec: np.ndarray, v_vec: np.ndarray) -> np.ndarray:
    """Compute RTN-to-inertial rotation matrix (transpose of inertial-to-RTN)."""
    return eci_to_rtn(r_vec, v_vec).T


def semi_major_axis_from_mean_motion(mean_motion_rev_day: float) -> float:
    """Kepler's third law: a = (mu / n^2)^(1/3) with n in rad/s."""
    n_rad_s = mean_motion_rev_day * 2.0 * np.pi / SECONDS_PER_DAY
    return float((GM_EARTH_KM3_S2 / (n_rad_s ** 2)) ** (1.0 / 3.0))


def mean_motion_from_altitude(altitude_km: float) -> float:
    """Mean motion [rev/day] of a circular orbit at the given altitude."""
    a = R_EARTH_KM + altitude_km
    n_rad_s = np.sqrt(GM_EARTH_KM3_S2 / a ** 3)
    return float(n_rad_s * SECONDS_PER_DAY / (2.0 * np.pi))
