"""Conjunction-plane geometry.

The conjunction (encounter) plane is the plane through the primary that is
perpendicular to the relative velocity at TCA. Its in-plane axes are built
from Earth's pole as the reference direction.

Reference: Vallado (2013) Eq. 10-1 through 10-5.
"""
from __future__ import annotations

from dataclasses import dataclass

import numpy as np

RELATIVE_SPEED_EPSILON_KMS = 1e-9


@dataclass
class EncounterFrame:
    """Conjunction-plane frame and the projected miss vector.

    Attributes:
        z_hat: Plane normal, along the relative velocity.
        x_hat: First in-plane axis (perpendicular to z_hat and the pole).
        y_hat: Second in-plane axis, z_hat x x_hat.
        miss_vector_km: r_primary - r_secondary at TCA [km].
        miss_plane_km: Miss vector components (x, y) in the plane [km].
        relative_speed_kms: |v_primary - v_secondary| [km/s].
        degenerate: True when the objects are co-moving and the plane normal
            had to fall back to the primary's velocity direction.
    """
    z_hat: np.ndarray
    x_hat: np.ndarray
    y_hat: np.ndarray
    miss_vector_km: np.ndarray
    miss_plane_km: np.ndarray
    relative_speed_kms: float
    degenerate: bool = False

    @property
    def plane_rotation(self) -> np.ndarray:
        """2x3 matrix mapping inertial vectors to in-plane (x, y) coordinates."""
        return np.array([self.x_hat, self.y_hat])


def compute_encounter_frame(
    r_primary: np.ndarray,
    v_primary: np.ndarray,
    r_secondary: np.ndarray,
    v_secondary: np.ndarray,
) -> EncounterFrame:
    """Construct the conjunction-plane frame and project the miss vector.

    Algorithm:
    1. z_hat = v_rel / |v_rel| (falls back to the primary's velocity when co-moving)
    2. Use Earth's pole K_hat as reference: x_hat = z_hat x K_hat / |...|
    3. y_hat = z_hat x x_hat
    4. Project the miss vector onto (x_hat, y_hat)
    """
    v_rel = np.asarray(v_primary, dtype=float) - np.asarray(v_secondary, dtype=float)
    v_rel_mag = float(np.linalg.norm(v_rel))
    degenerate = v_rel_mag < RELATIVE_SPEED_EPSILON_KMS
    normal = np.asarray(v_primary, dtype=float) if degenerate else v_rel
    z_hat = normal / np.linalg.norm(normal)

    k_hat = np.array([0.0, 0.0, 1.0])
    # If z_hat is nearly aligned with the pole, use an alternate reference
    if abs(np.dot(z_hat, k_hat)) > 0.999:
        k_hat = np.array([1.0, 0.0, 0.0])

    x_hat = np.cross(z_hat, k_hat)
    x_hat = x_hat / np.linalg.norm(x_hat)
    y_hat = np.cross(z_hat, x_hat)
    y_hat = y_hat / np.linalg.norm(y_hat)

    miss_vec = np.asarray(r_primary, dtype=float) - np.asarray(r_secondary, dtype=float)
    miss_plane = np.array([np.dot(miss_vec, x_hat), np.dot(miss_vec, y_hat)])

    return EncounterFrame(
        z_hat=z_hat,
        x_hat=x_hat,
        y_hat=y_hat,
        miss_vector_km=miss_vec,
        miss_plane_km=miss_plane,
        relative_speed_kms=v_rel_mag,
        degenerate=degenerate,
    )
