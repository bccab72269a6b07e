"""Per-integration payload templates for alert notifications.

Every builder takes a ``Notification`` (the alert snapshot as a plain dict
plus the lifecycle event that produced it) and returns a JSON-ready dict.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

RISK_EMOJI = {
    "critical": ":rotating_light:",
    "high": ":warning:",
    "moderate": ":large_blue_circle:",
    "medium": ":large_blue_circle:",
    "low": ":white_circle:",
}
STATUS_EMOJI = {
    "new": ":new:",
    "acknowledged": ":ok:",
    "escalated": ":exclamation:",
    "resolved": ":white_check_mark:",
    "closed": ":lock:",
}
REENTRY_SEVERITY = {"critical": "critical", "warning": "high", "elevated": "moderate", "normal": "low"}
RESOLVE_EVENTS = {"alert_resolved", "reentry_resolved"}


@dataclass(frozen=True)
class Notification:
    """One lifecycle event to fan out.

    Attributes:
        event: Event type, e.g. ``alert_created`` or ``reentry_escalated``.
        sequence: Monotonic sequence number of the event.
        at: Instant of the event.
        alert: Snapshot of the alert as produced by its ``to_dict``.
        kind: ``conjunction`` or ``reentry``.
    """
    event: str
    sequence: int
    at: datetime
    alert: dict
    kind: str = "conjunction"

    @property
    def alert_id(self) -> str:
        return self.alert["id"]

    @property
    def risk_level(self) -> str | None:
        if self.kind == "reentry":
            return REENTRY_SEVERITY.get(self.alert.get("reentry_status"), "low")
        return self.alert.get("risk_level")

    @property
    def priority(self) -> str | None:
        return self.alert.get("priority")

    @property
    def satellite_ids(self) -> list[int]:
        if self.kind == "reentry":
            return [self.alert["norad_id"]]
        return [sat["norad_id"] for sat in self.alert.get("satellites", [])]

    @property
    def miss_distance_km(self) -> float | None:
        if self.kind == "reentry":
            return None
        return self.alert["conjunction"]["miss_distance_km"]

    def title(self) -> str:
        if self.kind == "reentry":
            return f"Re-entry Alert: {self.alert['name']} ({self.alert['norad_id']})"
        sat_a, sat_b = self.alert["satellites"]
        return f"Conjunction Alert: {sat_a['name']} and {sat_b['name']}"


def generic_payload(notification: Notification) -> dict:
    alert = notification.alert
    body = {
        "id": alert["id"],
        "status": alert["status"],
        "priority": alert["priority"],
        "riskLevel": notification.risk_level,
        "createdAt": alert["created_at"],
    }
    if notification.kind == "reentry":
        body["reentry"] = {
            "noradCatId": alert["norad_id"],
            "name": alert["name"],
            "status": alert["reentry_status"],
            "daysToReentry": alert["days_to_reentry"],
            "predictedReentryAt": alert["predicted_reentry_at"],
            "isUncontrolled": alert["is_uncontrolled"],
        }
    else:
        conjunction = alert["conjunction"]
        sat_a, sat_b = alert["satellites"]
        body.update(
            {
                "satellites": {
                    "satA": {"noradCatId": sat_a["norad_id"], "name": sat_a["name"]},
                    "satB": {"noradCatId": sat_b["norad_id"], "name": sat_b["name"]},
                },
                "conjunction": {
                    "closestApproachDistance": conjunction["miss_distance_km"],
                    "timeOfClosestApproach": conjunction["tca"],
                    "relativeVelocity": conjunction["relative_velocity_kms"],
                    "probabilityOfCollision": conjunction["probability_of_collision"],
                },
                "acknowledgment": alert.get("acknowledgment"),
                "escalation": {
                    "currentLevel": alert["escalation_level"],
                    "isEscalated": alert["escalation_level"] > 0,
                },
            }
        )
    return {
        "event": notification.event,
        "timestamp": notification.at.isoformat(),
        "sequence": notification.sequence,
        "alert": body,
    }


def _alert_fields(notification: Notification) -> list[tuple[str, str]]:
    alert = notification.alert
    if notification.kind == "reentry":
        return [
            ("Object", f"{alert['name']} ({alert['norad_id']})"),
            ("Re-entry Status", alert["reentry_status"].upper()),
            ("Days to Re-entry", f"{alert['days_to_reentry']:.1f}"),
            ("Predicted Re-entry", alert["predicted_reentry_at"]),
            ("Uncontrolled", "yes" if alert["is_uncontrolled"] else "no"),
        ]
    conjunction = alert["conjunction"]
    sat_a, sat_b = alert["satellites"]
    return [
        ("Risk Level", alert["risk_level"].upper()),
        ("Status", alert["status"].upper()),
        ("Satellite A", f"{sat_a['name']} ({sat_a['norad_id']})"),
        ("Satellite B", f"{sat_b['name']} ({sat_b['norad_id']})"),
        ("Closest Approach", f"{conjunction['miss_distance_km']:.2f} km"),
        ("Time of Closest Approach", conjunction["tca"]),
        ("Relative Velocity", f"{conjunction['relative_velocity_kms']:.2f} km/s"),
        ("Probability of Collision", f"{conjunction['probability_of_collision']:.2e}"),
        ("Escalation Level", str(alert["escalation_level"])),
    ]


def slack_payload(notification: Notification, dashboard_url: str | None = None, channel: str | None = None) -> dict:
    alert = notification.alert
    header = (
        f"{RISK_EMOJI.get(notification.risk_level or 'low', '')} "
        f"{STATUS_EMOJI.get(alert['status'], '')} {notification.title()}"
    ).strip()
    blocks: list[dict] = [
        {"type": "header", "text": {"type": "plain_text", "text": header[:150], "emoji": True}},
        {
            "type": "section",
            "fields": [{"type": "mrkdwn", "text": f"*{label}:*\n{value}"} for label, value in _alert_fields(notification)],
        },
        {
            "type": "context",
            "elements": [
                {"type": "mrkdwn", "text": f"{notification.event} | {alert['id']} | seq {notification.sequence}"}
            ],
        },
    ]
    if dashboard_url:
        blocks.append(
            {
                "type": "actions",
                "elements": [
                    {
                        "type": "button",
                        "text": {"type": "plain_text", "text": "View in Dashboard", "emoji": True},
                        "url": f"{dashboard_url.rstrip('/')}/alerts/{alert['id']}",
                        "style": "primary",
                    }
                ],
            }
        )
    payload = {"text": notification.title(), "blocks": blocks}
    if channel:
        payload["channel"] = channel
    return payload


def pagerduty_payload(
    notification: Notification, routing_key: str | None, dashboard_url: str | None = None
) -> dict:
    alert = notification.alert
    custom_details = {
        "alertId": alert["id"],
        "event": notification.event,
        "sequence": notification.sequence,
        "status": alert["status"],
        "priority": alert["priority"],
    }
    custom_details.update({label: value for label, value in _alert_fields(notification)})
    payload = {
        "routing_key": routing_key or "",
        "event_action": "resolve" if notification.event in RESOLVE_EVENTS else "trigger",
        "dedup_key": alert["id"],
        "payload": {
            "summary": f"{notification.title()} - {(notification.risk_level or 'low').upper()} risk",
            "severity": notification.risk_level,
            "source": "OrbitWatch",
            "timestamp": notification.at.isoformat(),
            "custom_details": custom_details,
        },
        "client": "OrbitWatch",
    }
    if dashboard_url:
        payload["client_url"] = dashboard_url
    return payload


def email_payload(notification: Notification, recipients: list[str], sender: str | None = None) -> dict:
    fields = _alert_fields(notification)
    level = (notification.risk_level or "low").upper()
    subject = f"[{level}] {notification.title()}"
    rows = "".join(
        f'<tr><td style="padding: 8px; border: 1px solid #ddd;"><strong>{label}</strong></td>'
        f'<td style="padding: 8px; border: 1px solid #ddd;">{value}</td></tr>'
        for label, value in fields
    )
    html = (
        f"<h2>{notification.title()}</h2>"
        f"<p>Event: {notification.event} (alert {notification.alert_id})</p>"
        f'<table style="border-collapse: collapse;">{rows}</table>'
    )
    text = "\n".join(
        [notification.title(), f"Event: {notification.event}", ""]
        + [f"{label}: {value}" for label, value in fields]
        + ["", f"Alert ID: {notification.alert_id}"]
    )
    payload = {"to": list(recipients), "subject": subject, "html": html, "text": text}
    if sender:
        payload["from"] = sender
    return payload
