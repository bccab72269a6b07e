import asyncio
import hashlib
import hmac
import json
from datetime import timedelta

import httpx
import pytest

from orbitwatch.errors import InvalidRequest, UnknownEndpoint
from orbitwatch.services.alert_service import AlertManager
from orbitwatch.services.orbital_constants import RiskTier
from orbitwatch.services.risk_engine import ConjunctionEvent
from orbitwatch.services.webhook_payloads import (
    Notification,
    email_payload,
    generic_payload,
    pagerduty_payload,
    slack_payload,
)
from orbitwatch.services.webhook_service import (
    SIGNATURE_HEADER,
    EndpointRegistry,
    WebhookDispatcher,
    WebhookFilters,
)

from conftest import EPOCH


def _alert_dict(tier=RiskTier.HIGH, miss_km=0.8):
    event = ConjunctionEvent(
        norad_id_a=41001,
        norad_id_b=41002,
        name_a="ALPHA",
        name_b="BETA",
        tca=EPOCH + timedelta(hours=3),
        miss_distance_km=miss_km,
        relative_velocity_kms=14.9,
        sigma1_rtn_km=(0.1, 0.6, 0.1),
        sigma3_rtn_km=(0.3, 1.8, 0.3),
        probability_of_collision=2.4e-4,
        risk_tier=tier,
        created_at=EPOCH,
    )
    return AlertManager().ingest_event(event, now=EPOCH).alert.to_dict()


def _notification(event="alert_created", sequence=1, **kwargs):
    return Notification(event=event, sequence=sequence, at=EPOCH, alert=_alert_dict(**kwargs))


def _reentry_notification(status="warning"):
    alert = {
        "id": "RNT-1",
        "norad_id": 48000,
        "name": "DEBRIS",
        "status": "new",
        "priority": "high",
        "reentry_status": status,
        "days_to_reentry": 4.2,
        "predicted_reentry_at": (EPOCH + timedelta(days=4.2)).isoformat(),
        "is_uncontrolled": True,
        "created_at": EPOCH.isoformat(),
    }
    return Notification(event="reentry_created", sequence=9, at=EPOCH, alert=alert, kind="reentry")


class Recorder:
    def __init__(self, responses=(200,)):
        self.requests = []
        self.responses = list(responses)

    def __call__(self, request):
        self.requests.append(request)
        status = self.responses[min(len(self.requests), len(self.responses)) - 1]
        return httpx.Response(status, json={"ok": status < 300})


def _dispatcher(recorder, **kwargs):
    registry = EndpointRegistry()
    client = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
    sleeps = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    dispatcher = WebhookDispatcher(registry, client=client, sleep=fake_sleep, **kwargs)
    return registry, dispatcher, sleeps


def test_generic_payload_shape():
    payload = generic_payload(_notification())

    assert payload["event"] == "alert_created"
    assert payload["sequence"] == 1
    alert = payload["alert"]
    assert alert["riskLevel"] == "high"
    assert alert["satellites"]["satA"] == {"noradCatId": 41001, "name": "ALPHA"}
    assert alert["conjunction"]["closestApproachDistance"] == 0.8
    assert alert["escalation"] == {"currentLevel": 0, "isEscalated": False}


def test_slack_payload_has_dashboard_button():
    payload = slack_payload(_notification(), dashboard_url="https://ops.example.com/", channel="#ssa")

    assert payload["channel"] == "#ssa"
    assert payload["text"] == "Conjunction Alert: ALPHA and BETA"
    button = payload["blocks"][-1]["elements"][0]
    assert button["url"].startswith("https://ops.example.com/alerts/ALT-")


def test_pagerduty_resolve_action_and_dedup_key():
    trigger = pagerduty_payload(_notification(), "routing-key")
    resolve = pagerduty_payload(_notification(event="alert_resolved"), "routing-key")

    assert trigger["event_action"] == "trigger"
    assert resolve["event_action"] == "resolve"
    assert trigger["dedup_key"] == trigger["payload"]["custom_details"]["alertId"]
    assert trigger["payload"]["severity"] == "high"


def test_email_payload_for_reentry():
    payload = email_payload(_reentry_notification(), ["ops@example.com"], sender="orbitwatch@example.com")

    assert payload["to"] == ["ops@example.com"]
    assert payload["subject"] == "[HIGH] Re-entry Alert: DEBRIS (48000)"
    assert "Days to Re-entry: 4.2" in payload["text"]
    assert payload["from"] == "orbitwatch@example.com"


def test_filters():
    conjunction = _notification()
    reentry = _reentry_notification()

    assert WebhookFilters().matches(conjunction)
    assert WebhookFilters(risk_levels=("high",)).matches(conjunction)
    assert not WebhookFilters(risk_levels=("critical",)).matches(conjunction)
    assert WebhookFilters(satellite_ids=(41002,)).matches(conjunction)
    assert WebhookFilters(min_distance_km=1.0).matches(conjunction)
    assert not WebhookFilters(min_distance_km=0.5).matches(conjunction)
    assert not WebhookFilters(min_distance_km=1000.0).matches(reentry)
    assert WebhookFilters(risk_levels=("high",)).matches(reentry)
    assert not WebhookFilters(event_types=("alert_resolved",)).matches(conjunction)


def test_registry_validates_and_redacts():
    registry = EndpointRegistry()
    with pytest.raises(InvalidRequest):
        registry.create({"type": "fax", "url": "https://example.com"})
    with pytest.raises(InvalidRequest):
        registry.create({"type": "generic", "url": "ftp://example.com"})

    endpoint = registry.create(
        {"type": "generic", "url": "https://hooks.example.com/a", "auth": {"type": "bearer", "token": "s3cret"}}
    )
    assert endpoint.to_dict()["auth"]["token"] == "***"
    assert endpoint.to_dict(redact=False)["auth"]["token"] == "s3cret"

    updated = registry.update(endpoint.id, {"name": "renamed", "filters": {"risk_levels": ["critical"]}})
    assert updated.name == "renamed"
    assert updated.auth.token == "s3cret"
    assert updated.filters.risk_levels == ("critical",)

    registry.delete(endpoint.id)
    with pytest.raises(UnknownEndpoint):
        registry.get(endpoint.id)


def test_breaker_short_circuits_after_five_failures():
    recorder = Recorder(responses=(500,))
    clock = [0.0]
    registry, dispatcher, _ = _dispatcher(recorder, clock=lambda: clock[0])
    endpoint = registry.create(
        {"type": "generic", "url": "https://hooks.example.com/a", "retry": {"max_attempts": 1}}
    )

    async def run():
        records = [await dispatcher.deliver(endpoint, _notification(sequence=n)) for n in range(1, 7)]
        requests_while_open = len(recorder.requests)
        clock[0] += 60.0
        records.append(await dispatcher.deliver(endpoint, _notification(sequence=7)))
        await dispatcher.stop()
        return records, requests_while_open

    records, requests_while_open = asyncio.run(run())

    assert [r.status for r in records[:5]] == ["failed"] * 5
    assert records[5].status == "short_circuited"
    assert records[5].attempts == 0
    assert requests_while_open == 5
    assert records[6].attempts == 1
    assert len(recorder.requests) == 6
    assert endpoint.stats.short_circuited == 1


def test_retry_with_backoff_until_success():
    recorder = Recorder(responses=(503, 429, 200))
    registry, dispatcher, sleeps = _dispatcher(recorder)
    endpoint = registry.create({"type": "slack", "url": "https://hooks.example.com/slack"})

    async def run():
        record = await dispatcher.deliver(endpoint, _notification())
        await dispatcher.stop()
        return record

    record = asyncio.run(run())

    assert record.status == "sent"
    assert record.attempts == 3
    assert sleeps == [1.0, 2.0]
    assert endpoint.stats.succeeded == 1


def test_client_errors_are_not_retried():
    recorder = Recorder(responses=(400,))
    registry, dispatcher, sleeps = _dispatcher(recorder)
    endpoint = registry.create({"type": "generic", "url": "https://hooks.example.com/a"})

    record = asyncio.run(dispatcher.deliver(endpoint, _notification()))

    assert record.status == "failed"
    assert record.attempts == 1
    assert record.status_code == 400
    assert sleeps == []


def test_transport_errors_are_retried():
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    registry, dispatcher, sleeps = _dispatcher(refuse)
    endpoint = registry.create({"type": "generic", "url": "https://hooks.example.com/a"})

    record = asyncio.run(dispatcher.deliver(endpoint, _notification()))

    assert record.status == "failed"
    assert record.attempts == 3
    assert record.status_code is None
    assert "ConnectError" in record.error
    assert sleeps == [1.0, 2.0]


def test_hmac_signature_covers_raw_body():
    recorder = Recorder()
    registry, dispatcher, _ = _dispatcher(recorder)
    endpoint = registry.create(
        {
            "type": "generic",
            "url": "https://hooks.example.com/signed",
            "auth": {"type": "hmac", "secret": "topsecret"},
        }
    )

    asyncio.run(dispatcher.deliver(endpoint, _notification()))

    request = recorder.requests[0]
    expected = hmac.new(b"topsecret", request.content, hashlib.sha256).hexdigest()
    assert request.headers[SIGNATURE_HEADER] == f"sha256={expected}"
    assert json.loads(request.content)["event"] == "alert_created"


def test_queued_notifications_keep_order_per_endpoint():
    recorder = Recorder()
    dispatched = []
    registry, dispatcher, _ = _dispatcher(recorder, on_dispatch=lambda alert_id, record: dispatched.append(record))
    registry.create({"type": "generic", "url": "https://hooks.example.com/a"})
    registry.create({"type": "generic", "url": "https://hooks.example.com/b", "filters": {"risk_levels": ["critical"]}})

    async def run():
        counts = [dispatcher.enqueue(_notification(sequence=n)) for n in range(1, 4)]
        await dispatcher.drain()
        await dispatcher.stop()
        return counts

    counts = asyncio.run(run())

    assert counts == [1, 1, 1]
    assert [json.loads(r.content)["sequence"] for r in recorder.requests] == [1, 2, 3]
    assert [r.sequence for r in dispatched] == [1, 2, 3]
    assert all(r.status == "sent" for r in dispatched)


def test_closing_an_alert_sends_no_webhook():
    recorder = Recorder()
    registry, dispatcher, _ = _dispatcher(recorder)
    registry.create({"type": "generic", "url": "https://hooks.example.com/a"})
    manager = AlertManager()
    counts = []
    manager.add_listener(
        lambda event: counts.append(
            dispatcher.enqueue(
                Notification(event=event.type, sequence=event.sequence, at=event.at, alert=event.alert.to_dict())
            )
        )
    )

    async def run():
        alert_id = manager.ingest_event(ConjunctionEvent.from_dict(_alert_dict()["conjunction"]), now=EPOCH).alert.id
        manager.resolve(alert_id, by="ops", now=EPOCH)
        manager.close(alert_id, now=EPOCH)
        await dispatcher.drain()
        await dispatcher.stop()

    asyncio.run(run())

    assert counts == [1, 1, 0]
    assert [json.loads(r.content)["event"] for r in recorder.requests] == ["alert_created", "alert_resolved"]
