"""Encounter-plane geometry, covariance handling and coarse-pass pruning."""
from __future__ import annotations

import math

import numpy as np
import pytest

from conftest import make_tle


class TestEncounterFrame:
    def test_head_on_frame(self):
        from orbitwatch.services.bplane_analysis import compute_encounter_frame

        frame = compute_encounter_frame(
            np.array([7000.0, 0.0, 0.0]),
            np.array([0.0, 7.5, 0.0]),
            np.array([7000.0, 0.0, 1.0]),
            np.array([0.0, -7.5, 0.0]),
        )

        assert frame.relative_speed_kms == pytest.approx(15.0)
        assert np.allclose(frame.z_hat, [0.0, 1.0, 0.0])
        assert np.allclose(frame.miss_plane_km, [0.0, 1.0])
        assert frame.degenerate is False

    def test_frame_is_orthonormal(self):
        from orbitwatch.services.bplane_analysis import compute_encounter_frame

        frame = compute_encounter_frame(
            np.array([6800.0, 120.0, -40.0]),
            np.array([0.3, 7.4, 1.1]),
            np.array([6801.0, 119.0, -39.0]),
            np.array([-2.0, 3.1, 6.5]),
        )
        basis = np.array([frame.x_hat, frame.y_hat, frame.z_hat])
        assert np.allclose(basis @ basis.T, np.eye(3), atol=1e-12)
        assert np.linalg.norm(frame.miss_plane_km) <= np.linalg.norm(frame.miss_vector_km) + 1e-12

    def test_co_moving_objects_fall_back_to_primary_velocity(self):
        from orbitwatch.services.bplane_analysis import compute_encounter_frame

        v = np.array([0.0, 7.5, 0.0])
        frame = compute_encounter_frame(np.array([7000.0, 0.0, 0.0]), v, np.array([7000.5, 0.0, 0.0]), v)

        assert frame.degenerate is True
        assert np.allclose(frame.z_hat, [0.0, 1.0, 0.0])


class TestCovarianceHandler:
    def test_uncertainty_class_follows_regime(self):
        from orbitwatch.services.covariance_handler import uncertainty_class

        assert uncertainty_class(make_tle(1, altitude_km=500.0)) == "leo"
        assert uncertainty_class(make_tle(2, altitude_km=300.0)) == "vleo"
        assert uncertainty_class(make_tle(3, mean_motion=1.00273791, inclination_deg=0.05)) == "geo"

    def test_sigmas_at_epoch_and_growth_with_age(self):
        from orbitwatch.services.covariance_handler import estimate_rtn_covariance

        fresh = estimate_rtn_covariance("leo", 0.0)
        assert np.allclose(np.diag(fresh), [1.44, 6.25, 0.0025])

        stale = estimate_rtn_covariance("leo", 3.0)
        assert np.all(np.diag(stale) > np.diag(fresh))
        # In-track grows fastest
        ratios = np.diag(stale) / np.diag(fresh)
        assert ratios[1] > ratios[0]

        assert np.all(np.diag(estimate_rtn_covariance("leo", 0.0, bstar=1e-3)) > np.diag(fresh))

    def test_rtn_rotation_round_trip(self):
        from orbitwatch.services.covariance_handler import eci_to_rtn_covariance, rtn_to_eci_covariance

        r = np.array([6778.0, 100.0, 20.0])
        v = np.array([-0.1, 7.6, 0.4])
        cov_rtn = np.diag([0.25, 4.0, 0.64])

        cov_eci = rtn_to_eci_covariance(cov_rtn, r, v)

        assert np.allclose(eci_to_rtn_covariance(cov_eci, r, v), cov_rtn)
        assert np.trace(cov_eci) == pytest.approx(np.trace(cov_rtn))

    def test_positive_definite_matrix_is_unchanged(self):
        from orbitwatch.services.covariance_handler import ensure_positive_definite

        matrix = np.array([[2.0, 0.5], [0.5, 1.0]])
        corrected, was_corrected = ensure_positive_definite(matrix)

        assert was_corrected is False
        assert np.allclose(corrected, matrix)

    def test_indefinite_matrix_is_corrected(self):
        from orbitwatch.services.covariance_handler import ensure_positive_definite

        corrected, was_corrected = ensure_positive_definite(np.array([[1.0, 2.0], [2.0, 1.0]]))

        assert was_corrected is True
        assert np.all(np.linalg.eigvalsh(corrected) > 0.0)
        assert np.allclose(corrected, corrected.T)

    def test_plane_projection_of_isotropic_covariance(self):
        from orbitwatch.services.bplane_analysis import compute_encounter_frame
        from orbitwatch.services.covariance_handler import project_covariance_to_plane

        frame = compute_encounter_frame(
            np.array([7000.0, 0.0, 0.0]),
            np.array([0.0, 7.5, 0.0]),
            np.array([7000.0, 0.0, 1.0]),
            np.array([0.0, -7.5, 0.0]),
        )

        assert np.allclose(project_covariance_to_plane(np.eye(3) * 4.0, frame), np.eye(2) * 4.0)


class TestCoarsePruning:
    def test_band_gap(self):
        from orbitwatch.services.orbital_filter import altitude_bands, band_gap_km, band_overlap_mask

        tles = [make_tle(1, altitude_km=500.0), make_tle(2, altitude_km=505.0), make_tle(3, altitude_km=800.0)]
        perigee, apogee = altitude_bands(tles)
        i = np.array([0, 0])
        j = np.array([1, 2])

        assert band_gap_km(perigee, apogee, i, j) == pytest.approx([5.0, 300.0], abs=0.5)
        assert list(band_overlap_mask(perigee, apogee, i, j, 10.0)) == [True, False]

    def test_neighbour_pairs_within_radius(self):
        from orbitwatch.services.orbital_filter import neighbour_pairs

        positions = np.array([[1.0, 1.0, 1.0], [5.0, 1.0, 1.0], [14.0, 1.0, 1.0], [100.0, 1.0, 1.0], [4.0, 7.0, 1.0]])

        i, j = neighbour_pairs(positions, 10.0)

        assert list(zip(i.tolist(), j.tolist())) == [(0, 1), (0, 4), (1, 2), (1, 4)]
        assert i.dtype == np.int64

    def test_neighbour_pairs_of_a_single_object(self):
        from orbitwatch.services.orbital_filter import neighbour_pairs

        i, j = neighbour_pairs(np.zeros((1, 3)), 10.0)
        assert len(i) == 0 and len(j) == 0

    def test_linear_min_distance_respects_horizon(self):
        from orbitwatch.services.orbital_filter import linear_min_distance

        rel_pos = np.array([[10.0, 1.0, 0.0]])
        rel_vel = np.array([[-1.0, 0.0, 0.0]])

        assert linear_min_distance(rel_pos, rel_vel, 100.0)[0] == pytest.approx(1.0)
        assert linear_min_distance(rel_pos, rel_vel, 5.0)[0] == pytest.approx(math.sqrt(26.0))

    def test_coplanar_phase_prune(self):
        from orbitwatch.services.orbital_filter import coplanar_phase_prune_mask

        positions = np.array([[7000.0, 0.0, 0.0], [-7000.0, 0.0, 0.0], [7000.0, 5.0, 0.0], [0.0, 0.0, 7000.0]])
        velocities = np.array([[0.0, 7.5, 0.0], [0.0, -7.5, 0.0], [0.0, 7.5, 0.0], [0.0, 7.5, 0.0]])
        i = np.array([0, 0, 0])
        j = np.array([1, 2, 3])

        mask = coplanar_phase_prune_mask(positions, velocities, i, j, 10.0, 300.0, math.radians(3.0))

        # Opposite sides of one orbit are pruned; a close neighbour and a
        # crossing plane are kept
        assert list(mask) == [True, False, False]
