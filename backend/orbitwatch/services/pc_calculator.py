"""Probability of Collision (Pc) computation.

Implements:
1. Foster (2D Gaussian) quadrature, the operational method
2. Monte Carlo, as an independent reference with a Wilson confidence interval

Both work in the conjunction plane: the relative position is Gaussian with
mean at the projected miss vector and the projected combined covariance, and
a collision is the event that it falls inside the combined hard-body disk.

Reference:
    - Alfano (2005), "A Numerical Implementation of Spherical Object Collision Probability"
    - Foster & Estes (1992), original B-plane Pc method
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np
from scipy.integrate import dblquad
from scipy.stats import norm

from .orbital_constants import DEFAULT_HBR_KM

logger = logging.getLogger(__name__)

# Relative covariance determinant below which the encounter is treated as deterministic
DEGENERATE_DET_KM4 = 1e-24
WILSON_CONFIDENCE = 0.95


@dataclass
class PcResult:
    """Probability of collision computation result.

    Attributes:
        pc: Probability of collision (dimensionless, 0-1).
        method: Computation method used ("foster", "deterministic", "monte_carlo").
        ci_low: Lower 95% CI (Monte Carlo only).
        ci_high: Upper 95% CI (Monte Carlo only).
    """
    pc: float
    method: str
    ci_low: Optional[float] = None
    ci_high: Optional[float] = None


def deterministic_pc(miss_distance_km: float, hard_body_radius_km: float) -> PcResult:
    """Pc for an encounter without relative uncertainty: 1 inside the disk, else 0."""
    return PcResult(pc=1.0 if miss_distance_km <= hard_body_radius_km else 0.0, method="deterministic")


def compute_pc_foster(
    miss_vector_plane: np.ndarray,
    cov_plane_2x2: np.ndarray,
    hard_body_radius_km: float = 2 * DEFAULT_HBR_KM,
) -> PcResult:
    """Compute Pc using Foster's 2D Gaussian method.

    Integrates a bivariate normal PDF centered at the miss vector
    over a disk of radius HBR in the conjunction plane.

    Pc = ∬_{disk} f(x; μ, Σ) dA

    Parameters:
        miss_vector_plane: (x, y) miss vector in the plane [km].
        cov_plane_2x2: 2x2 combined covariance in the plane [km^2].
        hard_body_radius_km: Combined hard-body radius [km].

    Returns:
        PcResult with Foster Pc value, clamped to [0, 1].
    """
    mu = np.asarray(miss_vector_plane, dtype=float)
    cov = np.asarray(cov_plane_2x2, dtype=float)
    hbr = hard_body_radius_km

    det = float(np.linalg.det(cov))
    if det <= DEGENERATE_DET_KM4:
        return deterministic_pc(float(np.linalg.norm(mu)), hbr)

    cov_inv = np.linalg.inv(cov)
    norm_const = 1.0 / (2.0 * np.pi * np.sqrt(det))

    def integrand(y: float, x: float) -> float:
        d = np.array([x - mu[0], y - mu[1]])
        exponent = -0.5 * d @ cov_inv @ d
        return norm_const * np.exp(exponent)

    pc, _abserr = dblquad(
        integrand,
        -hbr, hbr,
        lambda x: -np.sqrt(max(0.0, hbr ** 2 - x ** 2)),
        lambda x: np.sqrt(max(0.0, hbr ** 2 - x ** 2)),
        epsabs=1e-14,
        epsrel=1e-10,
    )

    pc = max(0.0, min(1.0, float(pc)))
    return PcResult(pc=pc, method="foster")


def compute_pc_monte_carlo(
    miss_vector_plane: np.ndarray,
    cov_plane_2x2: np.ndarray,
    hard_body_radius_km: float = 2 * DEFAULT_HBR_KM,
    n_samples: int = 100_000,
    seed: Optional[int] = None,
) -> PcResult:
    """Compute Pc via Monte Carlo sampling.

    Samples relative positions from the combined covariance and counts the
    fraction that fall within the HBR disk.

    Parameters:
        miss_vector_plane: (x, y) miss vector [km].
        cov_plane_2x2: 2x2 combined covariance in the plane [km^2].
        hard_body_radius_km: Combined HBR [km].
        n_samples: Number of Monte Carlo samples.
        seed: Random seed for reproducibility.

    Returns:
        PcResult with Monte Carlo Pc and 95% confidence interval.
    """
    mu = np.asarray(miss_vector_plane, dtype=float)
    cov = np.asarray(cov_plane_2x2, dtype=float)
    if float(np.linalg.det(cov)) <= DEGENERATE_DET_KM4:
        return deterministic_pc(float(np.linalg.norm(mu)), hard_body_radius_km)

    rng = np.random.default_rng(seed)
    samples = rng.multivariate_normal(mu, cov, n_samples)
    distances = np.linalg.norm(samples, axis=1)
    n_collisions = int(np.sum(distances < hard_body_radius_km))

    pc = n_collisions / n_samples

    # Wilson score interval
    z = float(norm.ppf(0.5 + WILSON_CONFIDENCE / 2.0))
    n = n_samples
    denom = 1.0 + z ** 2 / n
    center = (pc + z ** 2 / (2 * n)) / denom
    halfwidth = z * float(np.sqrt((pc * (1 - pc) + z ** 2 / (4 * n)) / n)) / denom

    return PcResult(
        pc=pc,
        method="monte_carlo",
        ci_low=max(0.0, center - halfwidth),
        ci_high=min(1.0, center + halfwidth),
    )
