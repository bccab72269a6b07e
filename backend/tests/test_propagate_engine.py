from datetime import timedelta

import numpy as np
import pytest
from sgp4.api import Satrec

from orbitwatch.errors import Decayed
from orbitwatch.services.propagate_engine import (
    PropagateEngine,
    is_deep_space,
    orbit_path,
    propagate,
)
from orbitwatch.services.timeframes import julian_date

from conftest import EPOCH, make_tle


def test_propagate_at_epoch_matches_sgp4():
    tle = make_tle(41001, altitude_km=550.0, inclination_deg=53.0, raan_deg=40.0, mean_anomaly_deg=10.0)
    reference = Satrec.twoline2rv(tle.line1, tle.line2)
    error, r_ref, v_ref = reference.sgp4_tsince(0.0)

    state = propagate(tle, tle.epoch)

    assert error == 0
    np.testing.assert_allclose(state.position, r_ref, atol=1e-9)
    np.testing.assert_allclose(state.velocity, v_ref, atol=1e-12)
    assert state.epoch == tle.epoch


def test_low_earth_orbit_speed_and_radius():
    tle = make_tle(41001, altitude_km=500.0)
    state = propagate(tle, EPOCH + timedelta(minutes=37))
    assert 6860.0 < state.radius_km < 6900.0
    assert 7.5 < state.speed_kms < 7.7


def test_deep_space_branch_selection():
    geo = make_tle(41001, mean_motion=1.0027, inclination_deg=0.05)
    leo = make_tle(41002, mean_motion=15.5)
    assert is_deep_space(geo) is True
    assert is_deep_space(leo) is False


def test_sub_atmospheric_elements_are_decayed():
    tle = make_tle(41001, altitude_km=70.0)
    with pytest.raises(Decayed) as excinfo:
        propagate(tle, EPOCH)
    assert excinfo.value.norad_id == 41001
    assert excinfo.value.kind == "decayed"


def test_orbit_path_samples_inclusive_span():
    tle = make_tle(41001)
    states = list(orbit_path(tle, timedelta(minutes=10), timedelta(minutes=1)))
    assert len(states) == 11
    assert states[-1].epoch - states[0].epoch == timedelta(minutes=10)


def test_batch_matches_single_propagation():
    tles = [make_tle(41001 + k, raan_deg=30.0 * k) for k in range(5)]
    offsets = np.array([0.0, 600.0, 1200.0])
    jd0, fr0 = julian_date(EPOCH)
    jd = np.full(len(offsets), jd0)
    fr = fr0 + offsets / 86400.0

    batch = PropagateEngine(chunk_size=2).propagate_many(tles, jd, fr)

    assert batch.positions.shape == (5, 3, 3)
    assert not batch.errors.any()
    single = propagate(tles[3], EPOCH + timedelta(seconds=1200))
    np.testing.assert_allclose(batch.positions[3, 2], single.position, atol=1e-6)


def test_empty_batch():
    jd0, fr0 = julian_date(EPOCH)
    batch = PropagateEngine().propagate_many([], np.array([jd0]), np.array([fr0]))
    assert batch.positions.shape == (0, 1, 3)
