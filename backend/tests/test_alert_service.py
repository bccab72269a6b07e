from datetime import timedelta

import pytest

from orbitwatch.errors import InvalidRequest, InvalidTransition, UnknownAlert
from orbitwatch.services.alert_service import (
    Alert,
    AlertManager,
    AlertStatus,
    DispatchRecord,
    EscalationPolicy,
    Priority,
)
from orbitwatch.services.orbital_constants import RiskTier
from orbitwatch.services.risk_engine import ConjunctionEvent

from conftest import EPOCH

TCA = EPOCH + timedelta(hours=10)


def _event(tier=RiskTier.MODERATE, tca=TCA, miss_km=3.0, pc=2e-5, ids=(41001, 41002)):
    return ConjunctionEvent(
        norad_id_a=ids[0],
        norad_id_b=ids[1],
        name_a=f"OBJECT {ids[0]}",
        name_b=f"OBJECT {ids[1]}",
        tca=tca,
        miss_distance_km=miss_km,
        relative_velocity_kms=14.2,
        sigma1_rtn_km=(0.1, 0.5, 0.1),
        sigma3_rtn_km=(0.3, 1.5, 0.3),
        probability_of_collision=pc,
        risk_tier=tier,
        created_at=EPOCH,
    )


def _manager(**policy):
    events = []
    manager = AlertManager(EscalationPolicy(**policy))
    manager.add_listener(events.append)
    return manager, events


def test_new_event_creates_alert_with_tier_priority():
    manager, events = _manager()

    created = manager.ingest_event(_event(RiskTier.HIGH), now=EPOCH)

    assert created.type == "alert_created"
    alert = created.alert
    assert alert.status == AlertStatus.NEW
    assert alert.priority == Priority.HIGH
    assert alert.id.startswith("ALT-")
    assert [e.type for e in events] == ["alert_created"]


def test_same_fingerprint_refreshes_in_place():
    manager, events = _manager()
    first = manager.ingest_event(_event(), now=EPOCH)

    again = manager.ingest_event(_event(miss_km=2.9, tca=TCA + timedelta(seconds=20)), now=EPOCH + timedelta(minutes=5))

    assert again is None
    assert len(manager.all_alerts()) == 1
    alert = manager.get(first.alert.id)
    assert alert.event.miss_distance_km == 2.9
    assert alert.updated_at == EPOCH + timedelta(minutes=5)
    assert len(events) == 1


def test_upgrade_after_acknowledge_escalates():
    manager, events = _manager()
    alert_id = manager.ingest_event(_event(RiskTier.MODERATE), now=EPOCH).alert.id
    manager.acknowledge(alert_id, by="ops", now=EPOCH + timedelta(minutes=1))

    escalated = manager.ingest_event(
        _event(RiskTier.CRITICAL, miss_km=0.05, pc=2e-3), now=EPOCH + timedelta(minutes=2)
    )

    assert escalated.type == "alert_escalated"
    alert = escalated.alert
    assert alert.status == AlertStatus.ESCALATED
    assert alert.escalation_level == 1
    assert alert.escalation_history[-1].reason == "risk_upgraded"
    assert alert.priority == Priority.CRITICAL
    assert [e.type for e in events] == ["alert_created", "alert_acknowledged", "alert_escalated"]


def test_acknowledge_twice_is_a_no_op():
    manager, events = _manager()
    alert_id = manager.ingest_event(_event(), now=EPOCH).alert.id

    first = manager.acknowledge(alert_id, by="ops", note="looking", now=EPOCH)
    second = manager.acknowledge(alert_id, by="someone-else", now=EPOCH + timedelta(minutes=1))

    assert first.status == AlertStatus.ACKNOWLEDGED
    assert second.acknowledgment.by == "ops"
    assert [e.type for e in events] == ["alert_created", "alert_acknowledged"]


def test_unknown_ack_method_is_rejected():
    manager, _ = _manager()
    alert_id = manager.ingest_event(_event(), now=EPOCH).alert.id
    with pytest.raises(InvalidRequest):
        manager.acknowledge(alert_id, by="ops", method="carrier-pigeon")


def test_lifecycle_to_closed_frees_fingerprint():
    manager, _ = _manager()
    alert_id = manager.ingest_event(_event(), now=EPOCH).alert.id
    manager.acknowledge(alert_id, by="ops", now=EPOCH)
    resolved = manager.resolve(alert_id, by="ops", note="maneuvered", now=EPOCH)
    closed = manager.close(alert_id, now=EPOCH)

    assert resolved.resolution.note == "maneuvered"
    assert closed.status == AlertStatus.CLOSED
    assert manager.for_fingerprint(_event().fingerprint) is None

    fresh = manager.ingest_event(_event(), now=EPOCH + timedelta(minutes=1))
    assert fresh.type == "alert_created"
    assert fresh.alert.id != alert_id


def test_resolved_alert_only_takes_snapshot_updates():
    manager, _ = _manager()
    alert_id = manager.ingest_event(_event(), now=EPOCH).alert.id
    manager.resolve(alert_id, by="ops", now=EPOCH)

    result = manager.ingest_event(_event(RiskTier.CRITICAL, miss_km=0.05), now=EPOCH + timedelta(minutes=1))

    assert result is None
    alert = manager.get(alert_id)
    assert alert.status == AlertStatus.RESOLVED
    assert alert.event.risk_tier == RiskTier.CRITICAL


@pytest.mark.parametrize(
    "action",
    ["close_new", "acknowledge_resolved", "escalate_acknowledged", "resolve_closed"],
)
def test_invalid_transitions(action):
    manager, _ = _manager()
    alert_id = manager.ingest_event(_event(), now=EPOCH).alert.id
    if action == "close_new":
        call = lambda: manager.close(alert_id)
    elif action == "acknowledge_resolved":
        manager.resolve(alert_id, by="ops")
        call = lambda: manager.acknowledge(alert_id, by="ops")
    elif action == "escalate_acknowledged":
        manager.acknowledge(alert_id, by="ops")
        call = lambda: manager.escalate(alert_id)
    else:
        manager.resolve(alert_id, by="ops")
        manager.close(alert_id)
        call = lambda: manager.resolve(alert_id, by="ops")

    with pytest.raises(InvalidTransition) as excinfo:
        call()
    assert excinfo.value.http_status == 409


def test_manual_escalation_stops_at_cap():
    manager, _ = _manager(max_level=2)
    alert_id = manager.ingest_event(_event(RiskTier.LOW, miss_km=8.0, pc=1e-7), now=EPOCH).alert.id

    first = manager.escalate(alert_id, now=EPOCH)
    second = manager.escalate(alert_id, reason="duty officer", now=EPOCH)

    assert first.priority == Priority.HIGH
    assert second.priority == Priority.CRITICAL
    assert [e.level for e in second.escalation_history] == [1, 2]
    with pytest.raises(InvalidTransition):
        manager.escalate(alert_id, now=EPOCH)


def test_upgrade_at_cap_sets_escalated_without_new_level():
    manager, _ = _manager(max_level=1)
    alert_id = manager.ingest_event(_event(RiskTier.LOW, miss_km=8.0, pc=1e-7), now=EPOCH).alert.id
    manager.escalate(alert_id, now=EPOCH)
    manager.acknowledge(alert_id, by="ops", now=EPOCH)

    event = manager.ingest_event(_event(RiskTier.HIGH, miss_km=0.5), now=EPOCH + timedelta(minutes=1))

    assert event.alert.status == AlertStatus.ESCALATED
    assert event.alert.escalation_level == 1
    assert len(event.alert.escalation_history) == 1


def test_auto_escalation_dwell_doubles_per_level():
    manager, _ = _manager(critical=timedelta(minutes=5))
    alert_id = manager.ingest_event(_event(RiskTier.CRITICAL, miss_km=0.05), now=EPOCH).alert.id

    assert manager.check_escalations(EPOCH + timedelta(minutes=4)) == []
    first = manager.check_escalations(EPOCH + timedelta(minutes=5))
    assert [e.alert.escalation_level for e in first] == [1]
    assert first[0].alert.escalation_history[-1].reason == "unacknowledged_timeout"

    # Level 1 is held for 10 minutes
    assert manager.check_escalations(EPOCH + timedelta(minutes=14)) == []
    second = manager.check_escalations(EPOCH + timedelta(minutes=15))
    assert second[0].alert.escalation_level == 2
    assert manager.get(alert_id).status == AlertStatus.ESCALATED


def test_acknowledged_and_low_alerts_never_auto_escalate():
    manager, _ = _manager()
    low_id = manager.ingest_event(_event(RiskTier.LOW, miss_km=8.0, pc=1e-7), now=EPOCH).alert.id
    acked_id = manager.ingest_event(_event(RiskTier.CRITICAL, ids=(41003, 41004)), now=EPOCH).alert.id
    manager.acknowledge(acked_id, by="ops", now=EPOCH)

    assert manager.check_escalations(EPOCH + timedelta(days=30)) == []
    assert manager.get(low_id).escalation_level == 0


def test_unknown_alert():
    manager, _ = _manager()
    with pytest.raises(UnknownAlert) as excinfo:
        manager.get("ALT-MISSING")
    assert excinfo.value.kind == "unknown_alert"


def test_listing_statistics_and_unacknowledged():
    manager, _ = _manager()
    ids = []
    for k, tier in enumerate([RiskTier.LOW, RiskTier.MODERATE, RiskTier.HIGH, RiskTier.CRITICAL]):
        created = manager.ingest_event(
            _event(tier, ids=(41001 + 2 * k, 41002 + 2 * k)), now=EPOCH + timedelta(minutes=k)
        )
        ids.append(created.alert.id)
    manager.acknowledge(ids[0], by="ops")

    page, pagination = manager.list_alerts(limit=3, skip=0)
    assert [a.id for a in page] == [ids[3], ids[2], ids[1]]
    assert pagination == {"total": 4, "limit": 3, "skip": 0, "pages": 2}

    high_only, _ = manager.list_alerts(priority=Priority.HIGH)
    assert [a.id for a in high_only] == [ids[2]]

    pending = manager.unacknowledged()
    assert [a.id for a in pending] == [ids[3], ids[2], ids[1]]

    stats = manager.statistics()
    assert stats["total"] == 4
    assert stats["by_status"]["acknowledged"] == 1
    assert stats["unacknowledged"] == 3
    assert stats["active"] == 4


def test_alert_round_trips_through_dict():
    manager, _ = _manager()
    alert_id = manager.ingest_event(_event(), now=EPOCH).alert.id
    manager.escalate(alert_id, now=EPOCH)
    manager.acknowledge(alert_id, by="ops", method="websocket", now=EPOCH)
    manager.record_dispatch(
        alert_id,
        DispatchRecord(
            endpoint_id="WH-1", event="alert_created", sequence=1, status="sent",
            attempts=1, status_code=200, error=None, at=EPOCH,
        ),
    )
    alert = manager.get(alert_id)

    restored = Alert.from_dict(alert.to_dict())

    assert restored == alert

    other, _ = _manager()
    other.restore([restored])
    assert other.for_fingerprint(alert.fingerprint).id == alert_id


def test_listener_failure_does_not_break_transition():
    manager = AlertManager()

    def broken(_event):
        raise RuntimeError("listener down")

    manager.add_listener(broken)
    created = manager.ingest_event(_event(), now=EPOCH)
    assert manager.get(created.alert.id).status == AlertStatus.NEW
