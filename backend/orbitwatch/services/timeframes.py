"""Time scales and reference-frame transforms.

Pure functions between the frames the engine works in:

    TEME     True Equator Mean Equinox, the native SGP4 output frame
    ECI      J2000 mean equator and equinox (IAU-76 precession, truncated IAU-80 nutation)
    ECEF     Earth-fixed, obtained from TEME by a Z rotation through GMST (polar motion neglected)
    Geodetic latitude, longitude, altitude above the WGS-84 ellipsoid

Angles are radians and distances km everywhere in here; ``Geodetic.to_degrees``
is the only conversion to degrees and is meant for the API boundary.
UTC is used in place of UT1 and TT; the sub-second differences are far below
the accuracy of TLE-based propagation.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import numpy as np
from sgp4.api import jday

from .orbital_constants import (
    EARTH_ECC_SQ,
    EARTH_FLATTENING,
    EARTH_ROTATION_RAD_S,
    J2000_JD,
    JULIAN_CENTURY_DAYS,
    R_EARTH_KM,
    SECONDS_PER_DAY,
)

ARCSEC_TO_RAD = math.pi / (180.0 * 3600.0)
BOWRING_TOLERANCE_RAD = 1e-9
BOWRING_MAX_ITERATIONS = 6


@dataclass(frozen=True)
class Geodetic:
    latitude_rad: float
    longitude_rad: float
    altitude_km: float

    def to_degrees(self) -> dict:
        return {
            "latitude_deg": math.degrees(self.latitude_rad),
            "longitude_deg": math.degrees(self.longitude_rad),
            "altitude_km": self.altitude_km,
        }


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Return an aware UTC datetime; naive inputs are interpreted as UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def julian_date(dt: datetime) -> tuple[float, float]:
    """Split Julian date (whole part, fraction) as consumed by SGP4."""
    dt = ensure_utc(dt)
    seconds = dt.second + dt.microsecond / 1e6
    return jday(dt.year, dt.month, dt.day, dt.hour, dt.minute, seconds)


def julian_date_value(dt: datetime) -> float:
    jd, fr = julian_date(dt)
    return jd + fr


def datetime_from_julian(jd: float, fr: float = 0.0) -> datetime:
    days = (jd - J2000_JD) + fr
    return datetime(2000, 1, 1, 12, tzinfo=timezone.utc) + timedelta(days=days)


def julian_centuries(dt: datetime) -> float:
    jd, fr = julian_date(dt)
    return ((jd - J2000_JD) + fr) / JULIAN_CENTURY_DAYS


def gmst(dt: datetime) -> float:
    """Greenwich Mean Sidereal Time [rad] using the IAU-82 expression.

    GMST(s) = 67310.54841 + (876600h + 8640184.812866) T + 0.093104 T^2 - 6.2e-6 T^3
    """
    t = julian_centuries(dt)
    seconds = (
        67310.54841
        + (876600.0 * 3600.0 + 8640184.812866) * t
        + 0.093104 * t ** 2
        - 6.2e-6 * t ** 3
    )
    # 240 seconds of time per degree
    return math.radians(seconds / 240.0) % (2.0 * math.pi)


def _rot1(angle: float) -> np.ndarray:
    c, s = math.cos(angle), math.sin(angle)
    return np.array([[1.0, 0.0, 0.0], [0.0, c, s], [0.0, -s, c]])


def _rot2(angle: float) -> np.ndarray:
    c, s = math.cos(angle), math.sin(angle)
    return np.array([[c, 0.0, -s], [0.0, 1.0, 0.0], [s, 0.0, c]])


def _rot3(angle: float) -> np.ndarray:
    c, s = math.cos(angle), math.sin(angle)
    return np.array([[c, s, 0.0], [-s, c, 0.0], [0.0, 0.0, 1.0]])


def precession_matrix(dt: datetime) -> np.ndarray:
    """IAU-76 precession, J2000 -> mean-of-date (r_mod = P @ r_j2000)."""
    t = julian_centuries(dt)
    zeta = (2306.2181 * t + 0.30188 * t ** 2 + 0.017998 * t ** 3) * ARCSEC_TO_RAD
    theta = (2004.3109 * t - 0.42665 * t ** 2 - 0.041833 * t ** 3) * ARCSEC_TO_RAD
    z = (2306.2181 * t + 1.09468 * t ** 2 + 0.018203 * t ** 3) * ARCSEC_TO_RAD
    return _rot3(-z) @ _rot2(theta) @ _rot3(-zeta)


def nutation_terms(dt: datetime) -> tuple[float, float, float]:
    """Dominant IAU-80 nutation terms.

    Returns:
        (delta_psi, delta_eps, mean_obliquity) in radians.
    """
    t = julian_centuries(dt)
    mean_eps = (84381.448 - 46.8150 * t - 0.00059 * t ** 2 + 0.001813 * t ** 3) * ARCSEC_TO_RAD
    omega = math.radians(125.04452 - 1934.136261 * t)
    l_sun = math.radians(280.4665 + 36000.7698 * t)
    l_moon = math.radians(218.3165 + 481267.8813 * t)
    delta_psi = (
        -17.20 * math.sin(omega)
        - 1.32 * math.sin(2.0 * l_sun)
        - 0.23 * math.sin(2.0 * l_moon)
        + 0.21 * math.sin(2.0 * omega)
    ) * ARCSEC_TO_RAD
    delta_eps = (
        9.20 * math.cos(omega)
        + 0.57 * math.cos(2.0 * l_sun)
        + 0.10 * math.cos(2.0 * l_moon)
        - 0.09 * math.cos(2.0 * omega)
    ) * ARCSEC_TO_RAD
    return delta_psi, delta_eps, mean_eps


def equation_of_equinoxes(dt: datetime) -> float:
    delta_psi, _, mean_eps = nutation_terms(dt)
    return delta_psi * math.cos(mean_eps)


def teme_to_eci_matrix(dt: datetime) -> np.ndarray:
    """Rotation taking TEME vectors to J2000 ECI."""
    delta_psi, delta_eps, mean_eps = nutation_terms(dt)
    true_eps = mean_eps + delta_eps
    nutation = _rot1(-true_eps) @ _rot3(-delta_psi) @ _rot1(mean_eps)
    eqe = delta_psi * math.cos(mean_eps)
    teme_to_tod = _rot3(-eqe)
    return precession_matrix(dt).T @ nutation.T @ teme_to_tod


def teme_to_eci(
    position_km: np.ndarray, velocity_kms: np.ndarray, at: datetime
) -> tuple[np.ndarray, np.ndarray]:
    """Both frames are quasi-inertial, so velocity rotates with the same matrix."""
    m = teme_to_eci_matrix(at)
    return m @ np.asarray(position_km, dtype=float), m @ np.asarray(velocity_kms, dtype=float)


def eci_to_teme(
    position_km: np.ndarray, velocity_kms: np.ndarray, at: datetime
) -> tuple[np.ndarray, np.ndarray]:
    m = teme_to_eci_matrix(at).T
    return m @ np.asarray(position_km, dtype=float), m @ np.asarray(velocity_kms, dtype=float)


def teme_to_ecef(
    position_km: np.ndarray, velocity_kms: np.ndarray, at: datetime
) -> tuple[np.ndarray, np.ndarray]:
    """Rotate TEME into the Earth-fixed frame through GMST.

    Velocity picks up the transport term -omega x r of the rotating frame.
    """
    rotation = _rot3(gmst(at))
    r_ecef = rotation @ np.asarray(position_km, dtype=float)
    omega = np.array([0.0, 0.0, EARTH_ROTATION_RAD_S])
    v_ecef = rotation @ np.asarray(velocity_kms, dtype=float) - np.cross(omega, r_ecef)
    return r_ecef, v_ecef


def ecef_to_geodetic(position_km: np.ndarray) -> Geodetic:
    """Geodetic coordinates on the WGS-84 ellipsoid via iterated Bowring latitude.

    Iterates until the latitude update is below 1e-9 rad or six iterations ran,
    whichever comes first.
    """
    x, y, z = (float(c) for c in position_km)
    a = R_EARTH_KM
    b = a * (1.0 - EARTH_FLATTENING)
    e2 = EARTH_ECC_SQ
    ep2 = (a * a - b * b) / (b * b)
    p = math.hypot(x, y)
    lon = math.atan2(y, x)

    if p < 1e-9:
        lat = math.copysign(math.pi / 2.0, z) if z != 0.0 else 0.0
        return Geodetic(lat, lon, abs(z) - b)

    # Bowring's initial parametric latitude
    beta = math.atan2(a * z, b * p)
    lat = math.atan2(z + ep2 * b * math.sin(beta) ** 3, p - e2 * a * math.cos(beta) ** 3)
    for _ in range(BOWRING_MAX_ITERATIONS):
        beta = math.atan2((1.0 - EARTH_FLATTENING) * math.sin(lat), math.cos(lat))
        updated = math.atan2(
            z + ep2 * b * math.sin(beta) ** 3, p - e2 * a * math.cos(beta) ** 3
        )
        converged = abs(updated - lat) < BOWRING_TOLERANCE_RAD
        lat = updated
        if converged:
            break

    sin_lat = math.sin(lat)
    n = a / math.sqrt(1.0 - e2 * sin_lat * sin_lat)
    cos_lat = math.cos(lat)
    if abs(cos_lat) > 1e-10:
        alt = p / cos_lat - n
    else:
        alt = abs(z) - b
    return Geodetic(lat, lon, alt)


def geodetic_to_ecef(geo: Geodetic) -> np.ndarray:
    a = R_EARTH_KM
    e2 = EARTH_ECC_SQ
    sin_lat = math.sin(geo.latitude_rad)
    cos_lat = math.cos(geo.latitude_rad)
    n = a / math.sqrt(1.0 - e2 * sin_lat * sin_lat)
    return np.array(
        [
            (n + geo.altitude_km) * cos_lat * math.cos(geo.longitude_rad),
            (n + geo.altitude_km) * cos_lat * math.sin(geo.longitude_rad),
            (n * (1.0 - e2) + geo.altitude_km) * sin_lat,
        ]
    )


def teme_to_geodetic(position_km: np.ndarray, at: datetime) -> Geodetic:
    r_ecef = _rot3(gmst(at)) @ np.asarray(position_km, dtype=float)
    return ecef_to_geodetic(r_ecef)


def to_view_axes(position_km) -> list[float]:
    """Swap y and z for the dashboard's Y-up scene convention."""
    x, y, z = (float(c) for c in position_km)
    return [x, z, y]


def seconds_between(start: datetime, end: datetime) -> float:
    return (ensure_utc(end) - ensure_utc(start)).total_seconds()


def days_between(start: datetime, end: datetime) -> float:
    return seconds_between(start, end) / SECONDS_PER_DAY


def floor_to_minute(dt: datetime) -> datetime:
    return ensure_utc(dt).replace(second=0, microsecond=0)
