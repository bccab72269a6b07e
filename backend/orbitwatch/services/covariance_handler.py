"""Position covariance for conjunction assessment.

Handles:
- Heuristic RTN covariance from TLE age and altitude uncertainty class
- RTN <-> inertial rotation of covariances
- Positive-definite validation and correction (Higham 1988)
- Projection to the conjunction plane

No operator covariance is available for TLE-only objects, so every object is
assigned a diagonal RTN covariance from the table below. Sigmas grow with
uncertainty class (class order is the table order) and with time since epoch.

    class   perigee            sigma R / T / N at epoch [km]
    leo     350-2000 km        1.2 / 2.5 / 0.05
    vleo    < 350 km           1.5 / 5.0 / 0.08
    meo     2000 km to GEO     2.0 / 6.0 / 0.15
    geo     GEO belt           3.0 / 12.0 / 0.3
    heo     everything else    5.0 / 20.0 / 0.5

The orbit plane (inclination, RAAN) is well fixed by a TLE, so N stays small;
R carries the mean-motion and drag error.

Reference:
    - Vallado (2013), Section 10.5
    - Higham (1988), "Computing a nearest symmetric positive semidefinite matrix"
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np

from .bplane_analysis import EncounterFrame
from .catalog_store import orbital_regime
from .orbital_constants import eci_to_rtn
from .tle_validator import TLE

logger = logging.getLogger(__name__)
_PD_CORRECTION_WARN_COUNT = 0
_PD_CORRECTION_WARN_LIMIT = 5

VLEO_MAX_PERIGEE_KM = 350.0

UNCERTAINTY_CLASSES = ("leo", "vleo", "meo", "geo", "heo")
BASE_SIGMA_RTN_KM = {
    "leo": (1.2, 2.5, 0.05),
    "vleo": (1.5, 5.0, 0.08),
    "meo": (2.0, 6.0, 0.15),
    "geo": (3.0, 12.0, 0.3),
    "heo": (5.0, 20.0, 0.5),
}


@dataclass
class CovarianceInfo:
    """Covariance information for one object at TCA.

    Attributes:
        cov_rtn: 3x3 position covariance in the object's RTN frame [km^2].
        cov_eci: The same covariance rotated to the inertial frame [km^2].
        uncertainty_class: Row of the heuristic table used.
        epoch_age_days: Time between TLE epoch and TCA [days].
        source: Origin of the covariance ("estimated").
    """
    cov_rtn: np.ndarray
    cov_eci: np.ndarray
    uncertainty_class: str
    epoch_age_days: float
    source: str = "estimated"


def uncertainty_class(tle: TLE) -> str:
    regime = orbital_regime(tle)
    if regime == "leo":
        return "vleo" if tle.perigee_altitude_km < VLEO_MAX_PERIGEE_KM else "leo"
    if regime == "other":
        return "heo"
    return regime


def estimate_rtn_covariance(
    uncertainty: str,
    epoch_age_days: float,
    bstar: float = 0.0,
) -> np.ndarray:
    """Estimate a diagonal RTN position covariance.

    Parameters:
        uncertainty: Uncertainty class, one of UNCERTAINTY_CLASSES.
        epoch_age_days: Time since TLE epoch [days]; the sign is ignored.
        bstar: B* drag term; drag-heavy objects are less predictable.

    Returns:
        3x3 covariance [km^2], diagonal in (R, T, N).
    """
    age = abs(epoch_age_days)
    sigma_r, sigma_t, sigma_n = BASE_SIGMA_RTN_KM[uncertainty]
    # In-track error grows roughly quadratically with age, R and N linearly
    along_factor = 1.0 + 0.5 * age + 0.1 * age ** 2
    cross_factor = 1.0 + 0.25 * age
    drag_factor = 1.0 + min(abs(bstar) * 1e3, 1.0)
    return np.diag(
        [
            (sigma_r * cross_factor * drag_factor) ** 2,
            (sigma_t * along_factor * drag_factor) ** 2,
            (sigma_n * cross_factor * drag_factor) ** 2,
        ]
    )


def rtn_to_eci_covariance(cov_rtn: np.ndarray, r_vec: np.ndarray, v_vec: np.ndarray) -> np.ndarray:
    rotation = eci_to_rtn(r_vec, v_vec)
    return rotation.T @ cov_rtn @ rotation


def eci_to_rtn_covariance(cov_eci: np.ndarray, r_vec: np.ndarray, v_vec: np.ndarray) -> np.ndarray:
    rotation = eci_to_rtn(r_vec, v_vec)
    return rotation @ cov_eci @ rotation.T


def covariance_for_object(
    tle: TLE, epoch_age_days: float, r_vec: np.ndarray, v_vec: np.ndarray
) -> CovarianceInfo:
    klass = uncertainty_class(tle)
    cov_rtn = estimate_rtn_covariance(klass, epoch_age_days, tle.bstar)
    return CovarianceInfo(
        cov_rtn=cov_rtn,
        cov_eci=rtn_to_eci_covariance(cov_rtn, r_vec, v_vec),
        uncertainty_class=klass,
        epoch_age_days=epoch_age_days,
    )


def ensure_positive_definite(matrix: np.ndarray) -> tuple[np.ndarray, bool]:
    """Ensure a matrix is symmetric positive definite.

    If the matrix is not PD, applies the Higham (1988) nearest PD correction.

    Parameters:
        matrix: Square symmetric matrix.

    Returns:
        (corrected_matrix, was_corrected) tuple.
    """
    global _PD_CORRECTION_WARN_COUNT

    sym = (matrix + matrix.T) / 2.0

    eigvals = np.linalg.eigvalsh(sym)
    if float(np.min(eigvals)) > 0.0:
        return sym, False

    # Higham correction: eigenvalue clipping
    eigvals, eigvecs = np.linalg.eigh(sym)
    eigvals_clipped = np.maximum(eigvals, 1e-10)
    corrected = eigvecs @ np.diag(eigvals_clipped) @ eigvecs.T
    corrected = (corrected + corrected.T) / 2.0

    if _PD_CORRECTION_WARN_COUNT < _PD_CORRECTION_WARN_LIMIT:
        logger.warning(
            "Covariance matrix is not positive definite; applying Higham correction "
            "(%s/%s)",
            _PD_CORRECTION_WARN_COUNT + 1,
            _PD_CORRECTION_WARN_LIMIT,
        )
        if _PD_CORRECTION_WARN_COUNT + 1 == _PD_CORRECTION_WARN_LIMIT:
            logger.warning("Further covariance PD correction warnings will be suppressed for this process")
    _PD_CORRECTION_WARN_COUNT += 1

    return corrected, True


def project_covariance_to_plane(cov_combined_eci: np.ndarray, frame: EncounterFrame) -> np.ndarray:
    """Project a combined 3x3 inertial covariance onto the conjunction plane.

    Returns:
        2x2 covariance in the plane's (x, y) coordinates [km^2].
    """
    rotation = frame.plane_rotation
    projected = rotation @ cov_combined_eci @ rotation.T
    return (projected + projected.T) / 2.0
