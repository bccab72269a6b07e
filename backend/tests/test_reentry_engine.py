import asyncio
import threading
from datetime import timedelta

import pytest

from orbitwatch.errors import UnknownAlert
from orbitwatch.services.catalog_store import ObjectMetadata
from orbitwatch.services.reentry_engine import (
    ReentryAlert,
    ReentryAlertActor,
    ReentryPredictor,
    ReentrySweepResult,
    confidence_for_age,
    reentry_statistics,
    status_for_days,
)

from conftest import EPOCH, make_entry, make_tle


def _prediction(predictor, norad_id, days, decay_rate=1.0, now=EPOCH):
    entry = make_entry(make_tle(norad_id, altitude_km=250.0))
    return predictor.classify(entry, 250.0, decay_rate, now, days=days)


@pytest.mark.parametrize(
    "days, status",
    [(0.5, "critical"), (1.0, "critical"), (3.0, "warning"), (7.0, "warning"), (20.0, "elevated"), (31.0, "normal")],
)
def test_status_thresholds(days, status):
    assert status_for_days(days) == status


def test_confidence_follows_element_age():
    assert confidence_for_age(1.0) == "high"
    assert confidence_for_age(5.0) == "medium"
    assert confidence_for_age(12.0) == "low"


def test_rapid_decay_floors_status_to_warning():
    entry = make_entry(make_tle(48000, altitude_km=180.0))

    prediction = ReentryPredictor().classify(entry, 180.0, 3.0, EPOCH)

    # 180 km at 3 km/day is 60 days out, which alone would be "normal"
    assert prediction.days_to_reentry == pytest.approx(60.0)
    assert prediction.status == "warning"
    assert prediction.uncontrolled.is_uncontrolled is True
    assert any("Rapid decay" in reason for reason in prediction.uncontrolled.reasons)


def test_days_are_clamped():
    entry = make_entry(make_tle(48000, altitude_km=400.0))
    predictor = ReentryPredictor()

    assert predictor.classify(entry, 400.0, 0.0, EPOCH).days_to_reentry == 365.0
    assert predictor.classify(entry, 400.0, 0.5, EPOCH).days_to_reentry == 365.0
    assert predictor.classify(entry, 400.0, 1.0, EPOCH, days=-2.0).days_to_reentry == 0.0


def test_uncontrolled_requires_dense_unoperated_object_or_rapid_decay():
    predictor = ReentryPredictor()
    dense = ObjectMetadata(mass_kg=8000.0, area_m2=20.0)
    operated = ObjectMetadata(mass_kg=8000.0, area_m2=20.0, operator="ESA", controlled=True)

    assessment = predictor.assess_uncontrolled(dense, 0.5, "critical")
    assert assessment.is_uncontrolled is True
    assert assessment.risk_level == "critical"

    assert predictor.assess_uncontrolled(operated, 0.5, "critical").is_uncontrolled is False
    assert predictor.assess_uncontrolled(None, 0.5, "warning").risk_level == "medium"


def test_decayed_object_is_reported_as_reentering_now():
    entry = make_entry(make_tle(48000, altitude_km=70.0))

    prediction = ReentryPredictor().predict(entry, EPOCH)

    assert prediction.status == "critical"
    assert prediction.days_to_reentry == 0.0
    assert prediction.predicted_reentry_at == EPOCH


def test_stable_orbit_is_normal():
    entry = make_entry(make_tle(48000, altitude_km=450.0, bstar=0.0))

    prediction = ReentryPredictor().predict(entry, EPOCH)

    assert prediction.status == "normal"
    assert 440.0 < prediction.altitude_km < 480.0
    assert prediction.confidence == "high"


def test_sweep_only_predicts_candidates_and_honours_cancel():
    predictor = ReentryPredictor(perigee_threshold_km=500.0)
    entries = [
        make_entry(make_tle(48001, altitude_km=70.0)),
        make_entry(make_tle(48002, altitude_km=800.0)),
        make_entry(make_tle(48003, altitude_km=75.0)),
    ]

    result = predictor.sweep(entries, EPOCH)
    assert result.candidates == 2
    assert [p.norad_id for p in result.predictions] == [48001, 48003]
    assert result.complete

    cancel = threading.Event()
    cancel.set()
    cancelled = predictor.sweep(entries, EPOCH, cancel=cancel)
    assert cancelled.interrupted is True
    assert cancelled.predictions == []


def test_statistics():
    predictor = ReentryPredictor()
    predictions = [_prediction(predictor, 48001, 0.5), _prediction(predictor, 48002, 100.0)]

    stats = reentry_statistics(predictions)

    assert stats["total"] == 2
    assert stats["by_status"]["critical"] == 1
    assert stats["by_status"]["normal"] == 1


def test_alert_actor_lifecycle():
    predictor = ReentryPredictor()
    seen = []

    async def run():
        actor = ReentryAlertActor(on_event=seen.append)
        await actor.start()
        try:
            created = await actor.apply_sweep(
                ReentrySweepResult(predictions=[_prediction(predictor, 48001, 20.0)]), EPOCH
            )
            worsened = await actor.apply_sweep(
                ReentrySweepResult(predictions=[_prediction(predictor, 48001, 3.0)]), EPOCH + timedelta(hours=1)
            )
            acknowledged = await actor.acknowledge(48001, "ops", EPOCH + timedelta(hours=2))
            partial = await actor.apply_sweep(ReentrySweepResult(interrupted=True), EPOCH + timedelta(hours=3))
            errored = await actor.apply_sweep(
                ReentrySweepResult(errors={48001: "numerical_divergence"}), EPOCH + timedelta(hours=4)
            )
            snapshot_before = actor.snapshot()
            resolved = await actor.apply_sweep(
                ReentrySweepResult(predictions=[_prediction(predictor, 48001, 200.0)]), EPOCH + timedelta(hours=5)
            )
            with pytest.raises(UnknownAlert):
                await actor.acknowledge(48001, "ops")
            return created, worsened, acknowledged, partial, errored, snapshot_before, resolved, actor
        finally:
            await actor.stop()

    created, worsened, acknowledged, partial, errored, snapshot_before, resolved, actor = asyncio.run(run())

    assert [e.type for e in created] == ["reentry_created"]
    assert created[0].alert.priority == "medium"
    assert [e.type for e in worsened] == ["reentry_escalated"]
    assert worsened[0].alert.status == "escalated"
    assert worsened[0].alert.priority == "high"
    assert acknowledged == []
    assert partial == []
    assert errored == []
    assert snapshot_before[48001].status == "acknowledged"
    assert [e.type for e in resolved] == ["reentry_resolved"]
    assert actor.list_alerts() == []
    assert len(actor.list_alerts(include_resolved=True)) == 1
    assert [e.type for e in seen] == ["reentry_created", "reentry_escalated", "reentry_resolved"]


def test_new_alert_after_resolution():
    predictor = ReentryPredictor()

    async def run():
        actor = ReentryAlertActor()
        await actor.start()
        try:
            first = await actor.apply_sweep(ReentrySweepResult(predictions=[_prediction(predictor, 48001, 2.0)]), EPOCH)
            await actor.apply_sweep(ReentrySweepResult(), EPOCH + timedelta(hours=1))
            second = await actor.apply_sweep(
                ReentrySweepResult(predictions=[_prediction(predictor, 48001, 2.0)]), EPOCH + timedelta(hours=2)
            )
            return first, second
        finally:
            await actor.stop()

    first, second = asyncio.run(run())

    assert first[0].alert.id != second[0].alert.id
    assert second[0].type == "reentry_created"


def test_actor_requires_start():
    actor = ReentryAlertActor()
    with pytest.raises(RuntimeError):
        asyncio.run(actor.apply_sweep(ReentrySweepResult(), EPOCH))


def test_reentry_alert_round_trip():
    predictor = ReentryPredictor()

    async def run():
        actor = ReentryAlertActor()
        await actor.start()
        try:
            await actor.apply_sweep(ReentrySweepResult(predictions=[_prediction(predictor, 48001, 0.5)]), EPOCH)
            await actor.acknowledge(48001, "ops", EPOCH)
            return actor.snapshot()[48001]
        finally:
            await actor.stop()

    alert = asyncio.run(run())

    assert ReentryAlert.from_dict(alert.to_dict()) == alert
