"""SGP4/SDP4 propagation of catalog element sets.

``propagate`` is the single-object entry point and is a pure function of
(TLE, instant). ``PropagateEngine`` batches many objects over a time grid
with ``SatrecArray`` for the screener's coarse pass.
"""
from __future__ import annotations

import logging
from concurrent.futures import Executor
from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Iterator

import numpy as np
from sgp4.api import Satrec, SatrecArray

from ..errors import Decayed, NumericalDivergence, PropagationError
from .orbital_constants import ATMOSPHERIC_BOUNDARY_KM, GM_EARTH_KM3_S2, R_EARTH_KM
from .timeframes import ensure_utc
from .tle_validator import TLE

logger = logging.getLogger(__name__)

SGP4_ERROR_MESSAGES = {
    1: "mean elements (eccentricity >= 1.0 or < -0.001, or a < 0.95)",
    2: "mean motion less than 0.0",
    3: "perturbation elements (eccentricity < 0.0 or > 1.0)",
    4: "semi-latus rectum < 0.0",
    5: "epoch elements are sub-orbital (mrt < 1.0)",
    6: "satellite has decayed",
}
DECAY_ERROR_CODES = {5, 6}


@dataclass(frozen=True)
class StateVector:
    """TEME position [km] and velocity [km/s] at a UTC instant."""

    epoch: datetime
    position: tuple[float, float, float]
    velocity: tuple[float, float, float]

    @property
    def r(self) -> np.ndarray:
        return np.array(self.position)

    @property
    def v(self) -> np.ndarray:
        return np.array(self.velocity)

    @property
    def radius_km(self) -> float:
        return float(np.linalg.norm(self.position))

    @property
    def speed_kms(self) -> float:
        return float(np.linalg.norm(self.velocity))

    def to_dict(self) -> dict:
        return {
            "epoch": self.epoch.isoformat(),
            "position_km": list(self.position),
            "velocity_kms": list(self.velocity),
        }


@lru_cache(maxsize=65536)
def _satrec(line1: str, line2: str) -> Satrec:
    return Satrec.twoline2rv(line1, line2)


def satrec_for(tle: TLE) -> Satrec:
    return _satrec(tle.line1, tle.line2)


def is_deep_space(tle: TLE) -> bool:
    """True when SGP4 initialised this element set on the SDP4 (deep-space) branch."""
    return satrec_for(tle).method == "d"


def minutes_since_epoch(tle: TLE, at: datetime) -> float:
    return (ensure_utc(at) - tle.epoch).total_seconds() / 60.0


def error_for_code(code: int, tle: TLE, tsince_min: float) -> PropagationError:
    message = (
        f"SGP4 error code {code} for {tle.norad_id} at t={tsince_min:.3f} min: "
        f"{SGP4_ERROR_MESSAGES.get(code, 'unknown error')}"
    )
    if code in DECAY_ERROR_CODES:
        return Decayed(message, tle.norad_id)
    return NumericalDivergence(message, tle.norad_id)


def check_epoch_elements(tle: TLE) -> None:
    """Reject element sets whose mean perigee is already inside the atmosphere."""
    if tle.perigee_altitude_km < ATMOSPHERIC_BOUNDARY_KM:
        raise Decayed(
            f"Perigee altitude {tle.perigee_altitude_km:.1f} km of {tle.norad_id} is below "
            f"{ATMOSPHERIC_BOUNDARY_KM:.0f} km",
            tle.norad_id,
        )


def _check_osculating(tle: TLE, r: np.ndarray, v: np.ndarray, tsince_min: float) -> None:
    radius = float(np.linalg.norm(r))
    energy_term = 2.0 / radius - float(np.dot(v, v)) / GM_EARTH_KM3_S2
    if energy_term <= 0.0:
        raise NumericalDivergence(
            f"Unbound osculating orbit for {tle.norad_id} at t={tsince_min:.3f} min",
            tle.norad_id,
        )
    a = 1.0 / energy_term
    if a < R_EARTH_KM + ATMOSPHERIC_BOUNDARY_KM:
        raise Decayed(
            f"Semi-major axis {a:.1f} km of {tle.norad_id} below atmospheric boundary",
            tle.norad_id,
        )


def propagate_minutes(tle: TLE, tsince_min: float) -> tuple[np.ndarray, np.ndarray]:
    """Propagate to ``tsince_min`` minutes from the element-set epoch.

    Raises:
        Decayed: the orbit has fallen into the atmosphere.
        NumericalDivergence: SGP4 rejected the elements or the state is unbound.
    """
    sat = satrec_for(tle)
    err, position, velocity = sat.sgp4_tsince(tsince_min)
    if err != 0:
        raise error_for_code(err, tle, tsince_min)
    r = np.array(position)
    v = np.array(velocity)
    if not (np.all(np.isfinite(r)) and np.all(np.isfinite(v))):
        raise NumericalDivergence(
            f"Non-finite state for {tle.norad_id} at t={tsince_min:.3f} min", tle.norad_id
        )
    _check_osculating(tle, r, v, tsince_min)
    return r, v


def propagate(tle: TLE, at: datetime) -> StateVector:
    """TEME state of ``tle`` at ``at``.

    Parameters:
        tle: Element set to propagate.
        at: Target instant (naive datetimes are taken as UTC).

    Returns:
        StateVector with position [km] and velocity [km/s].
    """
    at = ensure_utc(at)
    check_epoch_elements(tle)
    r, v = propagate_minutes(tle, minutes_since_epoch(tle, at))
    return StateVector(
        epoch=at,
        position=(float(r[0]), float(r[1]), float(r[2])),
        velocity=(float(v[0]), float(v[1]), float(v[2])),
    )


def orbit_path(
    tle: TLE, span: timedelta, step: timedelta, start: datetime | None = None
) -> Iterator[StateVector]:
    """Lazily sample ``tle`` from ``start`` (default: its epoch) over ``span``."""
    if step.total_seconds() <= 0:
        raise ValueError("step must be positive")
    origin = ensure_utc(start) if start is not None else tle.epoch
    count = int(span.total_seconds() // step.total_seconds())
    for k in range(count + 1):
        yield propagate(tle, origin + k * step)


@dataclass
class BatchStates:
    """Catalog states on a time grid.

    Attributes:
        errors: SGP4 error codes, shape (n_objects, n_times); 0 means success.
        positions: TEME positions [km], shape (n_objects, n_times, 3).
        velocities: TEME velocities [km/s], shape (n_objects, n_times, 3).
    """
    errors: np.ndarray
    positions: np.ndarray
    velocities: np.ndarray


class PropagateEngine:
    """Vectorised propagation of many objects over a shared time grid."""

    def __init__(self, chunk_size: int = 512, executor: Executor | None = None):
        self.chunk_size = max(1, chunk_size)
        self.executor = executor

    @staticmethod
    def _propagate_chunk(tles: list[TLE], jd: np.ndarray, fr: np.ndarray) -> BatchStates:
        sats = SatrecArray([satrec_for(tle) for tle in tles])
        errors, positions, velocities = sats.sgp4(jd, fr)
        return BatchStates(errors=errors, positions=positions, velocities=velocities)

    def propagate_many(self, tles: list[TLE], jd: np.ndarray, fr: np.ndarray) -> BatchStates:
        """Propagate every object to every (jd, fr) instant.

        Chunks run on the executor when one is configured; results are
        reassembled in catalog order regardless of completion order.
        """
        n_times = len(jd)
        if not tles:
            return BatchStates(
                errors=np.zeros((0, n_times), dtype=np.uint8),
                positions=np.zeros((0, n_times, 3)),
                velocities=np.zeros((0, n_times, 3)),
            )
        chunks = [tles[i:i + self.chunk_size] for i in range(0, len(tles), self.chunk_size)]
        if self.executor is None or len(chunks) == 1:
            parts = [self._propagate_chunk(chunk, jd, fr) for chunk in chunks]
        else:
            futures = [self.executor.submit(self._propagate_chunk, chunk, jd, fr) for chunk in chunks]
            parts = [future.result() for future in futures]
        positions = np.concatenate([p.positions for p in parts], axis=0)
        velocities = np.concatenate([p.velocities for p in parts], axis=0)
        errors = np.concatenate([p.errors for p in parts], axis=0)
        # SatrecArray reports NaN states without an error code in rare divergent cases
        bad = ~np.all(np.isfinite(positions), axis=2) & (errors == 0)
        if np.any(bad):
            errors = errors.copy()
            errors[bad] = 1
        return BatchStates(errors=errors, positions=positions, velocities=velocities)
