from dataclasses import replace
from datetime import timedelta

from orbitwatch.engine import OrbitWatchEngine
from orbitwatch.repository import Repository
from orbitwatch.services.alert_service import AlertManager
from orbitwatch.services.catalog_store import CatalogStore, ObjectMetadata
from orbitwatch.services.orbital_constants import RiskTier
from orbitwatch.services.reentry_engine import ReentryPredictor
from orbitwatch.services.risk_engine import ConjunctionEvent
from orbitwatch.services.risk_forecaster import RiskSnapshot
from orbitwatch.services.webhook_service import EndpointRegistry

from conftest import EPOCH, head_on_pair, make_entry, make_tle


def _event(tier=RiskTier.HIGH):
    return ConjunctionEvent(
        norad_id_a=41001,
        norad_id_b=41002,
        name_a="OBJECT 41001",
        name_b="OBJECT 41002",
        tca=EPOCH + timedelta(minutes=30),
        miss_distance_km=0.9,
        relative_velocity_kms=15.2,
        sigma1_rtn_km=(0.1, 0.5, 0.1),
        sigma3_rtn_km=(0.3, 1.5, 0.3),
        probability_of_collision=1.5e-4,
        risk_tier=tier,
        created_at=EPOCH,
    )


def test_catalog_round_trip_keeps_history(db_session):
    repo = Repository(db_session)
    store = CatalogStore()
    store.ingest_batch(head_on_pair(), now=EPOCH)
    store.set_metadata(41001, ObjectMetadata(mass_kg=420.0, area_m2=2.0))

    assert repo.save_catalog(store.list_entries(), now=EPOCH) == 2
    assert repo.save_catalog(store.list_entries(), now=EPOCH) == 0

    newer = make_tle(41001, altitude_km=499.0, inclination_deg=0.0, epoch=EPOCH + timedelta(hours=6))
    store.upsert_tle(newer, now=EPOCH + timedelta(hours=6))
    assert repo.save_catalog(store.list_entries(), now=EPOCH + timedelta(hours=6)) == 1

    history = repo.tle_history(41001)
    assert len(history) == 2
    assert history[0].superseded_at is not None
    assert history[1].superseded_at is None

    loaded = {entry.norad_id: entry for entry in repo.load_catalog()}
    assert sorted(loaded) == [41001, 41002]
    assert loaded[41001].tle.line1 == newer.line1
    assert loaded[41001].metadata.mass_kg == 420.0


def test_object_missing_from_catalog_is_retired(db_session):
    repo = Repository(db_session)
    store = CatalogStore()
    store.ingest_batch(head_on_pair(), now=EPOCH)
    repo.save_catalog(store.list_entries(), now=EPOCH)

    store.remove(41002)
    repo.save_catalog(store.list_entries(), now=EPOCH + timedelta(hours=1))

    assert [entry.norad_id for entry in repo.load_catalog()] == [41001]
    assert len(repo.tle_history(41002)) == 1


def test_events_are_keyed_by_fingerprint(db_session):
    repo = Repository(db_session)
    repo.save_events([_event(RiskTier.MODERATE)])
    repo.save_events([_event(RiskTier.HIGH)])

    events = repo.load_events()
    assert len(events) == 1
    assert events[0].risk_tier == RiskTier.HIGH
    assert repo.load_events(since=EPOCH + timedelta(hours=1)) == []


def test_alerts_round_trip(db_session):
    repo = Repository(db_session)
    manager = AlertManager()
    alert_id = manager.ingest_event(_event(), now=EPOCH).alert.id
    manager.acknowledge(alert_id, by="ops", note="tracking", now=EPOCH + timedelta(minutes=1))

    repo.save_alerts(manager.all_alerts())
    loaded = repo.load_alerts()

    assert loaded == [manager.get(alert_id)]


def test_endpoints_replace_stored_set(db_session):
    repo = Repository(db_session)
    registry = EndpointRegistry()
    kept = registry.create(
        {"type": "generic", "url": "https://hooks.example.com/a", "auth": {"type": "bearer", "token": "s3cret"}}
    )
    dropped = registry.create({"type": "slack", "url": "https://hooks.example.com/b"})
    repo.save_endpoints(registry.list())

    registry.delete(dropped.id)
    repo.save_endpoints(registry.list())

    loaded = repo.load_endpoints()
    assert [endpoint.id for endpoint in loaded] == [kept.id]
    assert loaded[0].auth.token == "s3cret"


def test_predictions_and_reentry_alerts(db_session):
    repo = Repository(db_session)
    predictor = ReentryPredictor()
    entry = make_entry(make_tle(48000, altitude_km=250.0))
    urgent = predictor.classify(entry, 250.0, 1.0, EPOCH, days=0.5)
    calm = predictor.classify(make_entry(make_tle(48001, altitude_km=300.0)), 300.0, 1.0, EPOCH, days=90.0)

    repo.save_predictions([calm, urgent])
    assert [p.norad_id for p in repo.load_predictions()] == [48000, 48001]

    repo.save_predictions([calm])
    assert repo.load_predictions() == [calm]


def test_latest_reentry_alert_per_object_is_loaded(db_session):
    from orbitwatch.services.reentry_engine import ReentryAlert

    first = ReentryAlert(
        id="RNT-1",
        norad_id=48000,
        name="DEBRIS",
        status="resolved",
        priority="high",
        reentry_status="warning",
        days_to_reentry=4.0,
        predicted_reentry_at=EPOCH + timedelta(days=4),
        is_uncontrolled=False,
        created_at=EPOCH,
        updated_at=EPOCH + timedelta(hours=1),
        resolved_at=EPOCH + timedelta(hours=1),
    )
    second = replace(first, id="RNT-2", status="new", created_at=EPOCH + timedelta(hours=2), resolved_at=None)
    repo = Repository(db_session)
    repo.save_reentry_alerts([first, second])

    assert repo.load_reentry_alerts() == [second]


def test_snapshots_load_most_recent_in_order(db_session):
    repo = Repository(db_session)
    for hour in range(5):
        repo.add_snapshot(
            RiskSnapshot(
                at=EPOCH + timedelta(hours=hour),
                counts={"low": hour, "moderate": 0, "high": 0, "critical": 0},
                max_pc=0.0,
                conjunction_rate_per_hour=0.0,
            )
        )

    snapshots = repo.load_snapshots(limit=3)

    assert [s.at for s in snapshots] == [EPOCH + timedelta(hours=h) for h in (2, 3, 4)]


def test_engine_persist_and_restore(db_session):
    engine = OrbitWatchEngine()
    engine.store.ingest_batch(head_on_pair(), now=EPOCH)
    alert_id = engine.alerts.ingest_event(_event(), now=EPOCH).alert.id
    endpoint = engine.registry.create({"type": "generic", "url": "https://hooks.example.com/a"})
    engine.persist(db_session)

    restored = OrbitWatchEngine()
    restored.restore(db_session)

    assert len(restored.store) == 2
    assert restored.store.get_current(41002).line2 == engine.store.get_current(41002).line2
    assert restored.alerts.get(alert_id) == engine.alerts.get(alert_id)
    assert [e.id for e in restored.registry.list()] == [endpoint.id]
