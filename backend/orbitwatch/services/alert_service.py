"""Conjunction alert lifecycle.

Alerts are deduplicated by conjunction fingerprint and move through the state
machine in ``TRANSITIONS``: new alerts are acknowledged, escalated or
resolved; escalated alerts are acknowledged or escalated again; acknowledged
alerts are resolved; resolved alerts are closed, which is terminal.

Any non-terminal alert superseded by a strictly higher-risk refinement moves
to ``escalated`` as well.  Every transition for one alert happens under that
alert's shard lock and is published to listeners with a process-wide
monotonic sequence number.
"""
from __future__ import annotations

import itertools
import logging
import math
import secrets
import threading
import zlib
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Iterable

import numpy as np

from ..errors import InvalidRequest, InvalidTransition, UnknownAlert
from .orbital_constants import RiskTier
from .risk_engine import ConjunctionEvent, fingerprint_key
from .timeframes import ensure_utc, utc_now

logger = logging.getLogger(__name__)


class AlertStatus(str, Enum):
    NEW = "new"
    ACKNOWLEDGED = "acknowledged"
    ESCALATED = "escalated"
    RESOLVED = "resolved"
    CLOSED = "closed"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {Priority.LOW: 0, Priority.MEDIUM: 1, Priority.HIGH: 2, Priority.CRITICAL: 3}

PRIORITY_FOR_TIER = {
    RiskTier.LOW: Priority.LOW,
    RiskTier.MODERATE: Priority.MEDIUM,
    RiskTier.HIGH: Priority.HIGH,
    RiskTier.CRITICAL: Priority.CRITICAL,
}

ACK_METHODS = ("websocket", "api", "webhook", "email")

# (from, event) -> to
TRANSITIONS: dict[tuple[AlertStatus, str], AlertStatus] = {
    (AlertStatus.NEW, "acknowledge"): AlertStatus.ACKNOWLEDGED,
    (AlertStatus.NEW, "escalate"): AlertStatus.ESCALATED,
    (AlertStatus.NEW, "resolve"): AlertStatus.RESOLVED,
    (AlertStatus.ESCALATED, "acknowledge"): AlertStatus.ACKNOWLEDGED,
    (AlertStatus.ESCALATED, "escalate"): AlertStatus.ESCALATED,
    (AlertStatus.ACKNOWLEDGED, "resolve"): AlertStatus.RESOLVED,
    (AlertStatus.RESOLVED, "close"): AlertStatus.CLOSED,
}


def _parse_dt(value: str | None) -> datetime | None:
    return ensure_utc(datetime.fromisoformat(value)) if value else None


@dataclass(frozen=True)
class EscalationEntry:
    level: int
    reason: str
    at: datetime

    def to_dict(self) -> dict:
        return {"level": self.level, "reason": self.reason, "at": self.at.isoformat()}


@dataclass(frozen=True)
class Acknowledgment:
    by: str
    at: datetime
    method: str = "api"
    note: str | None = None

    def to_dict(self) -> dict:
        return {"acknowledged_by": self.by, "acknowledged_at": self.at.isoformat(), "method": self.method, "note": self.note}


@dataclass(frozen=True)
class Resolution:
    by: str
    at: datetime
    note: str | None = None

    def to_dict(self) -> dict:
        return {"resolved_by": self.by, "resolved_at": self.at.isoformat(), "note": self.note}


@dataclass(frozen=True)
class DispatchRecord:
    endpoint_id: str
    event: str
    sequence: int
    status: str
    attempts: int
    status_code: int | None
    error: str | None
    at: datetime

    def to_dict(self) -> dict:
        return {
            "endpoint_id": self.endpoint_id,
            "event": self.event,
            "sequence": self.sequence,
            "status": self.status,
            "attempts": self.attempts,
            "status_code": self.status_code,
            "error": self.error,
            "at": self.at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DispatchRecord":
        return cls(
            endpoint_id=data["endpoint_id"],
            event=data["event"],
            sequence=int(data["sequence"]),
            status=data["status"],
            attempts=int(data["attempts"]),
            status_code=data.get("status_code"),
            error=data.get("error"),
            at=_parse_dt(data["at"]),
        )


@dataclass
class Alert:
    """One conjunction alert. Instances handed out by AlertManager are snapshots."""

    id: str
    event: ConjunctionEvent
    status: AlertStatus
    priority: Priority
    created_at: datetime
    updated_at: datetime
    level_changed_at: datetime
    escalation_level: int = 0
    escalation_history: list[EscalationEntry] = field(default_factory=list)
    acknowledgment: Acknowledgment | None = None
    resolution: Resolution | None = None
    dispatches: list[DispatchRecord] = field(default_factory=list)

    @property
    def fingerprint(self) -> tuple[int, int, datetime]:
        return self.event.fingerprint

    @property
    def risk_tier(self) -> RiskTier:
        return self.event.risk_tier

    def snapshot(self) -> "Alert":
        return replace(self, escalation_history=list(self.escalation_history), dispatches=list(self.dispatches))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "fingerprint": self.event.fingerprint_key,
            "status": self.status.value,
            "priority": self.priority.value,
            "risk_level": self.event.risk_tier.value,
            "escalation_level": self.escalation_level,
            "escalation_history": [entry.to_dict() for entry in self.escalation_history],
            "acknowledgment": self.acknowledgment.to_dict() if self.acknowledgment else None,
            "resolution": self.resolution.to_dict() if self.resolution else None,
            "satellites": [
                {"norad_id": self.event.norad_id_a, "name": self.event.name_a},
                {"norad_id": self.event.norad_id_b, "name": self.event.name_b},
            ],
            "conjunction": self.event.to_dict(),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "level_changed_at": self.level_changed_at.isoformat(),
            "dispatches": [record.to_dict() for record in self.dispatches],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Alert":
        ack = data.get("acknowledgment")
        res = data.get("resolution")
        return cls(
            id=data["id"],
            event=ConjunctionEvent.from_dict(data["conjunction"]),
            status=AlertStatus(data["status"]),
            priority=Priority(data["priority"]),
            created_at=_parse_dt(data["created_at"]),
            updated_at=_parse_dt(data["updated_at"]),
            level_changed_at=_parse_dt(data.get("level_changed_at") or data["updated_at"]),
            escalation_level=int(data.get("escalation_level", 0)),
            escalation_history=[
                EscalationEntry(level=int(e["level"]), reason=e["reason"], at=_parse_dt(e["at"]))
                for e in data.get("escalation_history", [])
            ],
            acknowledgment=Acknowledgment(
                by=ack["acknowledged_by"], at=_parse_dt(ack["acknowledged_at"]),
                method=ack.get("method", "api"), note=ack.get("note"),
            ) if ack else None,
            resolution=Resolution(
                by=res["resolved_by"], at=_parse_dt(res["resolved_at"]), note=res.get("note"),
            ) if res else None,
            dispatches=[DispatchRecord.from_dict(d) for d in data.get("dispatches", [])],
        )


@dataclass(frozen=True)
class AlertEvent:
    """A lifecycle event as published to listeners (WebSocket hub, dispatcher, store)."""

    type: str
    alert: Alert
    sequence: int
    at: datetime

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "sequence": self.sequence,
            "timestamp": self.at.isoformat(),
            "alert": self.alert.to_dict(),
        }


@dataclass(frozen=True)
class EscalationPolicy:
    """Dwell times before an unacknowledged alert climbs one level.

    Level L is held for ``base(tier) * 2**L`` before advancing; ``low`` tier
    alerts never auto-escalate.
    """

    critical: timedelta = timedelta(minutes=5)
    high: timedelta = timedelta(minutes=15)
    moderate: timedelta = timedelta(minutes=60)
    max_level: int = 3

    @classmethod
    def from_settings(cls, settings) -> "EscalationPolicy":
        return cls(
            critical=timedelta(minutes=settings.escalation_dwell_critical_minutes),
            high=timedelta(minutes=settings.escalation_dwell_high_minutes),
            moderate=timedelta(minutes=settings.escalation_dwell_moderate_minutes),
            max_level=settings.escalation_max_level,
        )

    def dwell(self, tier: RiskTier, level: int) -> timedelta | None:
        base = {
            RiskTier.CRITICAL: self.critical,
            RiskTier.HIGH: self.high,
            RiskTier.MODERATE: self.moderate,
        }.get(tier)
        if base is None:
            return None
        return base * (2 ** level)


def generate_alert_id(now: datetime) -> str:
    millis = int(now.timestamp() * 1000)
    return f"ALT-{np.base_repr(millis, 36)}-{secrets.token_hex(4)}".upper()


AlertListener = Callable[[AlertEvent], None]


class AlertManager:
    """Owns every conjunction alert and the fingerprint dedup index."""

    def __init__(self, policy: EscalationPolicy | None = None, shards: int = 16):
        self.policy = policy or EscalationPolicy()
        self._alerts: dict[str, Alert] = {}
        self._by_fingerprint: dict[tuple[int, int, datetime], str] = {}
        self._index_lock = threading.Lock()
        self._shards = [threading.Lock() for _ in range(max(1, shards))]
        self._sequence = itertools.count(1)
        self._sequence_lock = threading.Lock()
        self._listeners: list[AlertListener] = []

    # --- plumbing ---

    def add_listener(self, listener: AlertListener) -> None:
        self._listeners.append(listener)

    def _shard(self, alert_id: str) -> threading.Lock:
        return self._shards[zlib.crc32(alert_id.encode()) % len(self._shards)]

    def next_sequence(self) -> int:
        with self._sequence_lock:
            return next(self._sequence)

    def _publish(self, event_type: str, alert: Alert, now: datetime) -> AlertEvent:
        event = AlertEvent(type=event_type, alert=alert.snapshot(), sequence=self.next_sequence(), at=now)
        for listener in self._listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("Alert listener failed for %s %s", event_type, alert.id)
        return event

    def _require(self, alert_id: str) -> Alert:
        alert = self._alerts.get(alert_id)
        if alert is None:
            raise UnknownAlert(alert_id)
        return alert

    def restore(self, alerts: Iterable[Alert]) -> None:
        with self._index_lock:
            self._alerts = {}
            self._by_fingerprint = {}
            for alert in alerts:
                self._alerts[alert.id] = alert
                if alert.status != AlertStatus.CLOSED:
                    self._by_fingerprint[alert.fingerprint] = alert.id
        logger.info("Alert state restored: alerts=%d open=%d", len(self._alerts), len(self._by_fingerprint))

    # --- ingest ---

    def ingest_event(self, event: ConjunctionEvent, now: datetime | None = None) -> AlertEvent | None:
        """Create, escalate or refresh the alert for ``event``'s fingerprint.

        Returns:
            The published lifecycle event, or None when the alert was only
            refreshed in place.
        """
        now = ensure_utc(now) if now is not None else utc_now()
        fingerprint = event.fingerprint
        while True:
            with self._index_lock:
                alert_id = self._by_fingerprint.get(fingerprint)
                if alert_id is None:
                    alert = Alert(
                        id=generate_alert_id(now),
                        event=event,
                        status=AlertStatus.NEW,
                        priority=PRIORITY_FOR_TIER[event.risk_tier],
                        created_at=now,
                        updated_at=now,
                        level_changed_at=now,
                    )
                    with self._shard(alert.id):
                        self._alerts[alert.id] = alert
                        self._by_fingerprint[fingerprint] = alert.id
                        logger.info(
                            "Alert created: id=%s fingerprint=%s tier=%s",
                            alert.id, fingerprint_key(fingerprint), event.risk_tier.value,
                        )
                        return self._publish("alert_created", alert, now)
            with self._shard(alert_id):
                alert = self._alerts[alert_id]
                if alert.status == AlertStatus.CLOSED:
                    # Closed between the index lookup and the shard lock
                    continue
                return self._supersede(alert, event, now)

    def _supersede(self, alert: Alert, event: ConjunctionEvent, now: datetime) -> AlertEvent | None:
        upgraded = event.risk_tier.rank > alert.event.risk_tier.rank
        alert.event = event
        alert.updated_at = now
        if not upgraded or alert.status == AlertStatus.RESOLVED:
            return None

        tier_priority = PRIORITY_FOR_TIER[event.risk_tier]
        if tier_priority.rank > alert.priority.rank:
            alert.priority = tier_priority
        if alert.escalation_level < self.policy.max_level:
            self._raise_level(alert, "risk_upgraded", now)
        alert.status = AlertStatus.ESCALATED
        logger.info(
            "Alert escalated: id=%s reason=risk_upgraded tier=%s level=%d",
            alert.id, event.risk_tier.value, alert.escalation_level,
        )
        return self._publish("alert_escalated", alert, now)

    def _raise_level(self, alert: Alert, reason: str, now: datetime) -> None:
        alert.escalation_level += 1
        alert.escalation_history.append(EscalationEntry(level=alert.escalation_level, reason=reason, at=now))
        alert.level_changed_at = now
        floor = Priority.CRITICAL if alert.escalation_level >= 2 else Priority.HIGH
        if floor.rank > alert.priority.rank:
            alert.priority = floor

    # --- transitions ---

    def _transition(self, alert: Alert, event_name: str) -> AlertStatus:
        target = TRANSITIONS.get((alert.status, event_name))
        if target is None:
            raise InvalidTransition(alert.status.value, event_name)
        return target

    def acknowledge(
        self,
        alert_id: str,
        by: str,
        note: str | None = None,
        method: str = "api",
        now: datetime | None = None,
    ) -> Alert:
        if method not in ACK_METHODS:
            raise InvalidRequest(f"Unknown acknowledgment method '{method}'")
        now = ensure_utc(now) if now is not None else utc_now()
        with self._shard(alert_id):
            alert = self._require(alert_id)
            if alert.status == AlertStatus.ACKNOWLEDGED:
                return alert.snapshot()
            alert.status = self._transition(alert, "acknowledge")
            alert.acknowledgment = Acknowledgment(by=by, at=now, method=method, note=note)
            alert.updated_at = now
            logger.info("Alert acknowledged: id=%s by=%s method=%s", alert.id, by, method)
            self._publish("alert_acknowledged", alert, now)
            return alert.snapshot()

    def resolve(self, alert_id: str, by: str, note: str | None = None, now: datetime | None = None) -> Alert:
        now = ensure_utc(now) if now is not None else utc_now()
        with self._shard(alert_id):
            alert = self._require(alert_id)
            alert.status = self._transition(alert, "resolve")
            alert.resolution = Resolution(by=by, at=now, note=note)
            alert.updated_at = now
            logger.info("Alert resolved: id=%s by=%s", alert.id, by)
            self._publish("alert_resolved", alert, now)
            return alert.snapshot()

    def close(self, alert_id: str, now: datetime | None = None) -> Alert:
        now = ensure_utc(now) if now is not None else utc_now()
        with self._shard(alert_id):
            alert = self._require(alert_id)
            alert.status = self._transition(alert, "close")
            alert.updated_at = now
            logger.info("Alert closed: id=%s", alert.id)
            self._publish("alert_closed", alert, now)
            snapshot = alert.snapshot()
        with self._index_lock:
            if self._by_fingerprint.get(snapshot.fingerprint) == alert_id:
                del self._by_fingerprint[snapshot.fingerprint]
        return snapshot

    def escalate(self, alert_id: str, reason: str = "manual", now: datetime | None = None) -> Alert:
        now = ensure_utc(now) if now is not None else utc_now()
        with self._shard(alert_id):
            alert = self._require(alert_id)
            target = self._transition(alert, "escalate")
            if alert.escalation_level >= self.policy.max_level:
                raise InvalidTransition(
                    alert.status.value, "escalate", f"already at maximum level {self.policy.max_level}"
                )
            self._raise_level(alert, reason, now)
            alert.status = target
            alert.updated_at = now
            logger.info("Alert escalated: id=%s reason=%s level=%d", alert.id, reason, alert.escalation_level)
            self._publish("alert_escalated", alert, now)
            return alert.snapshot()

    def check_escalations(self, now: datetime | None = None) -> list[AlertEvent]:
        """Advance every unacknowledged alert whose level dwell time has run out."""
        now = ensure_utc(now) if now is not None else utc_now()
        events: list[AlertEvent] = []
        for alert_id in list(self._alerts):
            with self._shard(alert_id):
                alert = self._alerts[alert_id]
                if alert.status not in (AlertStatus.NEW, AlertStatus.ESCALATED):
                    continue
                if alert.escalation_level >= self.policy.max_level:
                    continue
                dwell = self.policy.dwell(alert.event.risk_tier, alert.escalation_level)
                if dwell is None or now - alert.level_changed_at < dwell:
                    continue
                self._raise_level(alert, "unacknowledged_timeout", now)
                alert.status = AlertStatus.ESCALATED
                alert.updated_at = now
                logger.info("Alert auto-escalated: id=%s level=%d", alert.id, alert.escalation_level)
                events.append(self._publish("alert_escalated", alert, now))
        return events

    def record_dispatch(self, alert_id: str, record: DispatchRecord) -> None:
        with self._shard(alert_id):
            alert = self._alerts.get(alert_id)
            if alert is not None:
                alert.dispatches.append(record)

    # --- queries ---

    def get(self, alert_id: str) -> Alert:
        with self._shard(alert_id):
            return self._require(alert_id).snapshot()

    def for_fingerprint(self, fingerprint: tuple[int, int, datetime]) -> Alert | None:
        alert_id = self._by_fingerprint.get(fingerprint)
        return self.get(alert_id) if alert_id else None

    def all_alerts(self) -> list[Alert]:
        return [self.get(alert_id) for alert_id in list(self._alerts)]

    def list_alerts(
        self,
        status: AlertStatus | None = None,
        priority: Priority | None = None,
        limit: int = 50,
        skip: int = 0,
    ) -> tuple[list[Alert], dict]:
        """Filtered alerts, newest first, with pagination metadata.

        Returns:
            (page, {"total", "limit", "skip", "pages"})
        """
        alerts = [
            alert
            for alert in self.all_alerts()
            if (status is None or alert.status == status) and (priority is None or alert.priority == priority)
        ]
        alerts.sort(key=lambda a: (a.created_at, a.id), reverse=True)
        total = len(alerts)
        limit = max(1, limit)
        page = alerts[skip:skip + limit]
        return page, {"total": total, "limit": limit, "skip": skip, "pages": math.ceil(total / limit)}

    def unacknowledged(self) -> list[Alert]:
        alerts = [a for a in self.all_alerts() if a.status in (AlertStatus.NEW, AlertStatus.ESCALATED)]
        return sorted(alerts, key=lambda a: (-a.priority.rank, a.created_at))

    def statistics(self) -> dict:
        alerts = self.all_alerts()
        by_status = {status.value: 0 for status in AlertStatus}
        by_priority = {priority.value: 0 for priority in Priority}
        for alert in alerts:
            by_status[alert.status.value] += 1
            by_priority[alert.priority.value] += 1
        return {
            "total": len(alerts),
            "by_status": by_status,
            "by_priority": by_priority,
            "unacknowledged": by_status["new"] + by_status["escalated"],
            "active": len(alerts) - by_status["closed"] - by_status["resolved"],
        }
