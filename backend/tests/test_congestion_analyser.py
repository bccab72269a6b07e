from datetime import timedelta

import pytest

from orbitwatch.errors import UnknownObject
from orbitwatch.services.congestion_analyser import (
    CongestionAnalyser,
    congestion_factor,
    risk_class_for_score,
    shell_label,
)
from orbitwatch.services.orbital_constants import RiskTier
from orbitwatch.services.risk_engine import ConjunctionEvent

from conftest import EPOCH, make_entry, make_tle


def _event(ids=(41001, 41002), miss_km=2.5, pc=3e-5, tier=RiskTier.MODERATE):
    return ConjunctionEvent(
        norad_id_a=ids[0],
        norad_id_b=ids[1],
        name_a=f"OBJECT {ids[0]}",
        name_b=f"OBJECT {ids[1]}",
        tca=EPOCH + timedelta(hours=2),
        miss_distance_km=miss_km,
        relative_velocity_kms=11.0,
        sigma1_rtn_km=(0.1, 0.5, 0.1),
        sigma3_rtn_km=(0.3, 1.5, 0.3),
        probability_of_collision=pc,
        risk_tier=tier,
        created_at=EPOCH,
    )


def _analyser(events=None):
    entries = [
        make_entry(make_tle(41001, altitude_km=505.0)),
        make_entry(make_tle(41002, altitude_km=507.0)),
        make_entry(make_tle(41003, altitude_km=805.0)),
    ]
    return CongestionAnalyser(entries, [_event()] if events is None else events)


def test_shell_label_and_congestion_factor():
    assert shell_label(505.2, 10.0) == "500-510"
    assert shell_label(35786.0, 10.0) == "35780-35790"
    assert congestion_factor(2) == pytest.approx(0.04)
    assert congestion_factor(500) == 3.0


def test_risk_class_boundaries():
    assert risk_class_for_score(0.6) == "high"
    assert risk_class_for_score(0.3) == "medium"
    assert risk_class_for_score(0.29) == "low"


def test_bands_count_objects_and_conjunctions():
    bands = _analyser().compute()

    assert [b["altitude_band_km"] for b in bands] == ["500-510", "800-810"]
    assert bands[0]["object_count"] == 2
    assert bands[0]["conjunction_count"] == 1
    assert bands[0]["conjunction_rate"] == pytest.approx(0.5)
    assert bands[1]["conjunction_rate"] == 0.0


def test_object_risk_blends_shell_density_and_closest_miss():
    risk = _analyser().object_risk(41001)

    assert risk.shell == "500-510"
    assert risk.shell_count == 2
    assert risk.congestion_risk == pytest.approx(0.04 / 3.0)
    assert risk.conjunction_risk == pytest.approx(0.75)
    assert risk.risk_score == pytest.approx(0.4 * 0.04 / 3.0 + 0.6 * 0.75)
    assert risk.risk_class == "medium"
    assert risk.closest_miss_km == 2.5
    assert risk.highest_tier == "moderate"
    assert risk.to_dict()["has_active_conjunction"] is True


def test_closest_event_drives_conjunction_risk():
    events = [_event(miss_km=8.0), _event(miss_km=0.5, pc=2e-3, tier=RiskTier.CRITICAL)]

    risk = _analyser(events).object_risk(41002)

    assert risk.conjunction_count == 2
    assert risk.closest_miss_km == 0.5
    assert risk.conjunction_risk == pytest.approx(0.95)
    assert risk.max_pc == pytest.approx(2e-3)
    assert risk.highest_tier == "critical"
    assert risk.risk_class == "high"


def test_object_without_conjunctions():
    risk = _analyser().object_risk(41003)

    assert risk.conjunction_risk == 0.0
    assert risk.closest_miss_km is None
    assert risk.highest_tier is None
    assert risk.risk_class == "low"


def test_ranking_and_statistics():
    analyser = _analyser()

    ranked = analyser.object_risks(min_score=0.3)
    assert [r.norad_id for r in ranked] == [41001, 41002]
    assert [r.norad_id for r in analyser.object_risks(limit=1)] == [41001]

    stats = analyser.statistics()
    assert stats["total"] == 3
    assert stats["risk_distribution"] == {"high": 0, "medium": 2, "low": 1}
    assert stats["regime_distribution"] == {"leo": 3}
    assert stats["most_congested_shell"] == "500-510"


def test_unknown_object():
    with pytest.raises(UnknownObject):
        _analyser().object_risk(99999)


def test_empty_catalog():
    analyser = CongestionAnalyser([], [])
    assert analyser.compute() == []
    assert analyser.statistics()["average_risk"] == 0.0
