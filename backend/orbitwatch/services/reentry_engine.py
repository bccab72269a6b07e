"""Atmospheric re-entry prediction for low-perigee objects.

The decay rate is measured, not modelled: the orbit-averaged altitude is
sampled now and one look-ahead later with SGP4 (whose B* drag term carries
the atmosphere), and the difference per day drives a days-to-re-entry
estimate.  Re-entry alerts are held by a single asyncio actor.
"""
from __future__ import annotations

import asyncio
import logging
import secrets
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from time import perf_counter
from types import MappingProxyType
from typing import Callable, Iterable, Mapping

import numpy as np

from ..errors import Decayed, PropagationError, UnknownAlert
from .catalog_store import CatalogEntry, ObjectMetadata
from .propagate_engine import propagate
from .timeframes import days_between, ensure_utc, teme_to_geodetic, utc_now

logger = logging.getLogger(__name__)

ALTITUDE_SAMPLES_PER_ORBIT = 36
MAX_DAYS_TO_REENTRY = 365.0

STATUS_ORDER = ("normal", "elevated", "warning", "critical")
STATUS_THRESHOLDS_DAYS = (("critical", 1.0), ("warning", 7.0), ("elevated", 30.0))
CONFIDENCE_HIGH_MAX_AGE_DAYS = 3.0
CONFIDENCE_MEDIUM_MAX_AGE_DAYS = 7.0

REENTRY_PRIORITY = {"critical": "critical", "warning": "high", "elevated": "medium", "normal": "low"}


def status_rank(status: str) -> int:
    return STATUS_ORDER.index(status)


@dataclass(frozen=True)
class UncontrolledAssessment:
    is_uncontrolled: bool
    risk_level: str
    reasons: tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {
            "is_uncontrolled": self.is_uncontrolled,
            "risk_level": self.risk_level,
            "reasons": list(self.reasons),
        }


@dataclass(frozen=True)
class ReentryPrediction:
    norad_id: int
    name: str
    altitude_km: float
    perigee_altitude_km: float
    decay_rate_km_per_day: float
    days_to_reentry: float
    predicted_reentry_at: datetime
    confidence: str
    status: str
    uncontrolled: UncontrolledAssessment
    computed_at: datetime
    tle_epoch: datetime

    def to_dict(self) -> dict:
        return {
            "norad_id": self.norad_id,
            "name": self.name,
            "altitude_km": self.altitude_km,
            "perigee_altitude_km": self.perigee_altitude_km,
            "decay_rate_km_per_day": self.decay_rate_km_per_day,
            "days_to_reentry": self.days_to_reentry,
            "predicted_reentry_at": self.predicted_reentry_at.isoformat(),
            "confidence": self.confidence,
            "status": self.status,
            "uncontrolled": self.uncontrolled.to_dict(),
            "computed_at": self.computed_at.isoformat(),
            "tle_epoch": self.tle_epoch.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ReentryPrediction":
        unc = data["uncontrolled"]
        return cls(
            norad_id=int(data["norad_id"]),
            name=data["name"],
            altitude_km=float(data["altitude_km"]),
            perigee_altitude_km=float(data["perigee_altitude_km"]),
            decay_rate_km_per_day=float(data["decay_rate_km_per_day"]),
            days_to_reentry=float(data["days_to_reentry"]),
            predicted_reentry_at=ensure_utc(datetime.fromisoformat(data["predicted_reentry_at"])),
            confidence=data["confidence"],
            status=data["status"],
            uncontrolled=UncontrolledAssessment(
                is_uncontrolled=bool(unc["is_uncontrolled"]),
                risk_level=unc["risk_level"],
                reasons=tuple(unc.get("reasons", ())),
            ),
            computed_at=ensure_utc(datetime.fromisoformat(data["computed_at"])),
            tle_epoch=ensure_utc(datetime.fromisoformat(data["tle_epoch"])),
        )


@dataclass
class ReentrySweepResult:
    predictions: list[ReentryPrediction] = field(default_factory=list)
    errors: dict[int, str] = field(default_factory=dict)
    candidates: int = 0
    interrupted: bool = False
    elapsed_seconds: float = 0.0

    @property
    def complete(self) -> bool:
        return not self.interrupted


def status_for_days(days_to_reentry: float) -> str:
    for status, bound in STATUS_THRESHOLDS_DAYS:
        if days_to_reentry <= bound:
            return status
    return "normal"


def confidence_for_age(tle_age_days: float) -> str:
    if tle_age_days <= CONFIDENCE_HIGH_MAX_AGE_DAYS:
        return "high"
    if tle_age_days <= CONFIDENCE_MEDIUM_MAX_AGE_DAYS:
        return "medium"
    return "low"


def reentry_statistics(predictions: Iterable[ReentryPrediction]) -> dict:
    by_status = {status: 0 for status in STATUS_ORDER}
    uncontrolled = 0
    total = 0
    for prediction in predictions:
        total += 1
        by_status[prediction.status] += 1
        if prediction.uncontrolled.is_uncontrolled:
            uncontrolled += 1
    return {
        "total": total,
        "by_status": by_status,
        "uncontrolled": uncontrolled,
        "controlled": total - uncontrolled,
    }


class ReentryPredictor:
    def __init__(
        self,
        perigee_threshold_km: float = 500.0,
        lookahead_hours: float = 24.0,
        mass_to_area_bound: float = 100.0,
        rapid_decay_km_per_day: float = 2.0,
        on_object_error: Callable[[int, str], None] | None = None,
    ):
        self.perigee_threshold_km = perigee_threshold_km
        self.lookahead_hours = lookahead_hours
        self.mass_to_area_bound = mass_to_area_bound
        self.rapid_decay_km_per_day = rapid_decay_km_per_day
        self.on_object_error = on_object_error

    @classmethod
    def from_settings(cls, settings, on_object_error=None) -> "ReentryPredictor":
        return cls(
            perigee_threshold_km=settings.reentry_perigee_threshold_km,
            lookahead_hours=settings.reentry_lookahead_hours,
            mass_to_area_bound=settings.reentry_mass_to_area_bound,
            rapid_decay_km_per_day=settings.reentry_rapid_decay_km_per_day,
            on_object_error=on_object_error,
        )

    def is_candidate(self, entry: CatalogEntry) -> bool:
        return entry.tle.perigee_altitude_km <= self.perigee_threshold_km

    @staticmethod
    def mean_altitude_km(entry: CatalogEntry, at: datetime) -> float:
        """Geodetic altitude averaged over one orbital period starting at ``at``."""
        tle = entry.tle
        period_s = tle.period_minutes * 60.0
        altitudes = []
        for k in range(ALTITUDE_SAMPLES_PER_ORBIT):
            instant = at + timedelta(seconds=period_s * k / ALTITUDE_SAMPLES_PER_ORBIT)
            state = propagate(tle, instant)
            altitudes.append(teme_to_geodetic(state.r, instant).altitude_km)
        return float(np.mean(altitudes))

    def measure_decay(self, entry: CatalogEntry, now: datetime) -> tuple[float, float]:
        """(altitude now [km], decay rate [km/day]) from the look-ahead difference."""
        altitude_now = self.mean_altitude_km(entry, now)
        later = now + timedelta(hours=self.lookahead_hours)
        altitude_later = self.mean_altitude_km(entry, later)
        decay_rate = (altitude_now - altitude_later) / (self.lookahead_hours / 24.0)
        return altitude_now, decay_rate

    def assess_uncontrolled(
        self, metadata: ObjectMetadata | None, decay_rate_km_per_day: float, status: str
    ) -> UncontrolledAssessment:
        metadata = metadata or ObjectMetadata()
        reasons: list[str] = []
        uncontrolled_flag = not metadata.controlled and not metadata.operator
        if uncontrolled_flag:
            reasons.append("No operator or active control recorded")
        mass_to_area = metadata.mass_to_area
        dense = mass_to_area is not None and mass_to_area > self.mass_to_area_bound
        if dense:
            reasons.append(
                f"Mass-to-area ratio {mass_to_area:.1f} kg/m^2 exceeds {self.mass_to_area_bound:.0f} kg/m^2"
            )
        rapid = decay_rate_km_per_day > self.rapid_decay_km_per_day
        if rapid:
            reasons.append(
                f"Rapid decay of {decay_rate_km_per_day:.2f} km/day exceeds "
                f"{self.rapid_decay_km_per_day:.1f} km/day"
            )

        is_uncontrolled = (uncontrolled_flag and dense) or rapid
        satisfied = sum((uncontrolled_flag, dense, rapid))
        if is_uncontrolled and status == "critical":
            risk_level = "critical"
        elif satisfied >= 2:
            risk_level = "high"
        elif satisfied == 1:
            risk_level = "medium"
        else:
            risk_level = "low"
        return UncontrolledAssessment(is_uncontrolled=is_uncontrolled, risk_level=risk_level, reasons=tuple(reasons))

    def classify(
        self,
        entry: CatalogEntry,
        altitude_km: float,
        decay_rate_km_per_day: float,
        now: datetime,
        days: float | None = None,
    ) -> ReentryPrediction:
        """Build a prediction from a measured altitude and decay rate.

        Parameters:
            entry: Catalog entry the prediction is for.
            altitude_km: Current orbit-averaged altitude [km].
            decay_rate_km_per_day: Altitude loss per day; non-positive means not decaying.
            now: Prediction instant.
            days: Known days to re-entry, bypassing the altitude/decay estimate.
        """
        now = ensure_utc(now)
        if days is None:
            if decay_rate_km_per_day > 0.0:
                days = altitude_km / decay_rate_km_per_day
            else:
                days = MAX_DAYS_TO_REENTRY
        days = min(max(days, 0.0), MAX_DAYS_TO_REENTRY)

        status = status_for_days(days)
        if decay_rate_km_per_day > self.rapid_decay_km_per_day and status_rank(status) < status_rank("warning"):
            status = "warning"

        tle = entry.tle
        return ReentryPrediction(
            norad_id=tle.norad_id,
            name=tle.name,
            altitude_km=altitude_km,
            perigee_altitude_km=tle.perigee_altitude_km,
            decay_rate_km_per_day=decay_rate_km_per_day,
            days_to_reentry=days,
            predicted_reentry_at=now + timedelta(days=days),
            confidence=confidence_for_age(days_between(tle.epoch, now)),
            status=status,
            uncontrolled=self.assess_uncontrolled(entry.metadata, decay_rate_km_per_day, status),
            computed_at=now,
            tle_epoch=tle.epoch,
        )

    def predict(self, entry: CatalogEntry, now: datetime | None = None) -> ReentryPrediction:
        """Predict re-entry for one object.

        An object that SGP4 already reports as decayed is reported as
        re-entering now rather than dropped.

        Raises:
            NumericalDivergence: the element set cannot be propagated.
        """
        now = ensure_utc(now) if now is not None else utc_now()
        try:
            altitude, decay_rate = self.measure_decay(entry, now)
        except Decayed:
            return self.classify(entry, max(entry.tle.perigee_altitude_km, 0.0), 0.0, now, days=0.0)
        return self.classify(entry, altitude, decay_rate, now)

    def sweep(
        self,
        entries: Iterable[CatalogEntry],
        now: datetime | None = None,
        cancel: threading.Event | None = None,
        deadline: float | None = None,
    ) -> ReentrySweepResult:
        """Predict every candidate object; pre-emptible between objects.

        Parameters:
            entries: Catalog entries; only those at or below the perigee threshold are predicted.
            now: Prediction instant (default: current time).
            cancel: Set to stop the sweep before the next object.
            deadline: ``time.monotonic()`` value after which the sweep stops.
        """
        started = perf_counter()
        now = ensure_utc(now) if now is not None else utc_now()
        result = ReentrySweepResult()
        candidates = sorted(
            (entry for entry in entries if self.is_candidate(entry)), key=lambda e: e.norad_id
        )
        result.candidates = len(candidates)
        for entry in candidates:
            if (cancel is not None and cancel.is_set()) or (
                deadline is not None and time.monotonic() >= deadline
            ):
                result.interrupted = True
                logger.warning(
                    "Re-entry sweep interrupted: predicted=%d of candidates=%d",
                    len(result.predictions), result.candidates,
                )
                break
            try:
                result.predictions.append(self.predict(entry, now))
            except PropagationError as exc:
                result.errors[entry.norad_id] = exc.kind
                logger.warning("Re-entry prediction skipped: norad_id=%d reason=%s", entry.norad_id, exc.kind)
                if self.on_object_error is not None:
                    self.on_object_error(entry.norad_id, exc.kind)
        result.elapsed_seconds = perf_counter() - started
        logger.info(
            "Re-entry sweep complete: candidates=%d predictions=%d errors=%d elapsed_s=%.2f",
            result.candidates, len(result.predictions), len(result.errors), result.elapsed_seconds,
        )
        return result


# --- Re-entry alerts ---


@dataclass(frozen=True)
class ReentryAlert:
    id: str
    norad_id: int
    name: str
    status: str
    priority: str
    reentry_status: str
    days_to_reentry: float
    predicted_reentry_at: datetime
    is_uncontrolled: bool
    created_at: datetime
    updated_at: datetime
    acknowledged_by: str | None = None
    acknowledged_at: datetime | None = None
    resolved_at: datetime | None = None

    @property
    def active(self) -> bool:
        return self.status != "resolved"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "norad_id": self.norad_id,
            "name": self.name,
            "status": self.status,
            "priority": self.priority,
            "reentry_status": self.reentry_status,
            "days_to_reentry": self.days_to_reentry,
            "predicted_reentry_at": self.predicted_reentry_at.isoformat(),
            "is_uncontrolled": self.is_uncontrolled,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "acknowledged_by": self.acknowledged_by,
            "acknowledged_at": self.acknowledged_at.isoformat() if self.acknowledged_at else None,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ReentryAlert":
        def parse(value: str | None) -> datetime | None:
            return ensure_utc(datetime.fromisoformat(value)) if value else None

        return cls(
            id=data["id"],
            norad_id=int(data["norad_id"]),
            name=data.get("name", ""),
            status=data["status"],
            priority=data["priority"],
            reentry_status=data["reentry_status"],
            days_to_reentry=float(data["days_to_reentry"]),
            predicted_reentry_at=parse(data["predicted_reentry_at"]),
            is_uncontrolled=bool(data.get("is_uncontrolled", False)),
            created_at=parse(data["created_at"]),
            updated_at=parse(data["updated_at"]),
            acknowledged_by=data.get("acknowledged_by"),
            acknowledged_at=parse(data.get("acknowledged_at")),
            resolved_at=parse(data.get("resolved_at")),
        )


@dataclass(frozen=True)
class ReentryEvent:
    type: str
    alert: ReentryAlert


def generate_reentry_alert_id(now: datetime) -> str:
    millis = int(now.timestamp() * 1000)
    return f"RNT-{np.base_repr(millis, 36)}-{secrets.token_hex(3)}".upper()


@dataclass
class _Message:
    kind: str
    payload: tuple
    reply: asyncio.Future


class ReentryAlertActor:
    """Single owner of the re-entry alert registry.

    Updates are messages processed one at a time by ``run``; readers use
    ``snapshot()``, which returns an immutable mapping replaced after every
    message, so they never observe a half-applied update.
    """

    def __init__(self, on_event: Callable[[ReentryEvent], None] | None = None):
        self.on_event = on_event
        self._alerts: dict[int, ReentryAlert] = {}
        self._snapshot: Mapping[int, ReentryAlert] = MappingProxyType({})
        self._inbox: asyncio.Queue | None = None
        self._task: asyncio.Task | None = None

    def snapshot(self) -> Mapping[int, ReentryAlert]:
        return self._snapshot

    def list_alerts(self, include_resolved: bool = False) -> list[ReentryAlert]:
        alerts = [a for a in self._snapshot.values() if include_resolved or a.active]
        return sorted(alerts, key=lambda a: (a.predicted_reentry_at, a.norad_id))

    def restore(self, alerts: Iterable[ReentryAlert]) -> None:
        if self._task is not None:
            raise RuntimeError("Cannot restore a running actor")
        self._alerts = {alert.norad_id: alert for alert in alerts}
        self._snapshot = MappingProxyType(dict(self._alerts))

    async def start(self) -> None:
        if self._task is None:
            self._inbox = asyncio.Queue()
            self._task = asyncio.create_task(self.run(), name="reentry-alert-actor")

    async def stop(self) -> None:
        if self._task is None:
            return
        await self._inbox.put(None)
        await self._task
        self._task = None

    async def _ask(self, kind: str, *payload) -> list[ReentryEvent]:
        if self._task is None:
            raise RuntimeError("Re-entry alert actor is not running")
        reply = asyncio.get_running_loop().create_future()
        await self._inbox.put(_Message(kind, payload, reply))
        return await reply

    async def apply_sweep(self, result: ReentrySweepResult, now: datetime | None = None) -> list[ReentryEvent]:
        return await self._ask("sweep", result, ensure_utc(now) if now else utc_now())

    async def acknowledge(self, norad_id: int, by: str, now: datetime | None = None) -> list[ReentryEvent]:
        return await self._ask("acknowledge", norad_id, by, ensure_utc(now) if now else utc_now())

    async def run(self) -> None:
        while True:
            message = await self._inbox.get()
            if message is None:
                return
            try:
                if message.kind == "sweep":
                    events = self._handle_sweep(*message.payload)
                else:
                    events = self._handle_acknowledge(*message.payload)
            except Exception as exc:
                message.reply.set_exception(exc)
                continue
            self._snapshot = MappingProxyType(dict(self._alerts))
            for event in events:
                if self.on_event is not None:
                    self.on_event(event)
            message.reply.set_result(events)

    def _handle_sweep(self, result: ReentrySweepResult, now: datetime) -> list[ReentryEvent]:
        events: list[ReentryEvent] = []
        at_risk = {p.norad_id: p for p in result.predictions if p.status != "normal"}
        predicted = {p.norad_id for p in result.predictions}

        for norad_id, prediction in sorted(at_risk.items()):
            existing = self._alerts.get(norad_id)
            if existing is None or not existing.active:
                alert = ReentryAlert(
                    id=generate_reentry_alert_id(now),
                    norad_id=norad_id,
                    name=prediction.name,
                    status="new",
                    priority=REENTRY_PRIORITY[prediction.status],
                    reentry_status=prediction.status,
                    days_to_reentry=prediction.days_to_reentry,
                    predicted_reentry_at=prediction.predicted_reentry_at,
                    is_uncontrolled=prediction.uncontrolled.is_uncontrolled,
                    created_at=now,
                    updated_at=now,
                )
                self._alerts[norad_id] = alert
                events.append(ReentryEvent("reentry_created", alert))
                logger.info("Re-entry alert created: id=%s norad_id=%d status=%s", alert.id, norad_id, prediction.status)
                continue

            worsened = status_rank(prediction.status) > status_rank(existing.reentry_status)
            updated = replace(
                existing,
                status="escalated" if worsened else existing.status,
                priority=REENTRY_PRIORITY[prediction.status] if worsened else existing.priority,
                reentry_status=prediction.status,
                days_to_reentry=prediction.days_to_reentry,
                predicted_reentry_at=prediction.predicted_reentry_at,
                is_uncontrolled=prediction.uncontrolled.is_uncontrolled,
                updated_at=now,
            )
            self._alerts[norad_id] = updated
            if worsened:
                events.append(ReentryEvent("reentry_escalated", updated))
                logger.info(
                    "Re-entry alert escalated: id=%s norad_id=%d status=%s",
                    updated.id, norad_id, prediction.status,
                )

        for norad_id, alert in sorted(self._alerts.items()):
            if not alert.active or norad_id in at_risk:
                continue
            # A partial sweep says nothing about objects it did not reach
            if norad_id not in predicted and not result.complete:
                continue
            if norad_id in result.errors:
                continue
            resolved = replace(alert, status="resolved", resolved_at=now, updated_at=now)
            self._alerts[norad_id] = resolved
            events.append(ReentryEvent("reentry_resolved", resolved))
            logger.info("Re-entry alert resolved: id=%s norad_id=%d", alert.id, norad_id)
        return events

    def _handle_acknowledge(self, norad_id: int, by: str, now: datetime) -> list[ReentryEvent]:
        alert = self._alerts.get(norad_id)
        if alert is None or not alert.active:
            raise UnknownAlert(str(norad_id))
        if alert.status == "acknowledged":
            return []
        self._alerts[norad_id] = replace(
            alert, status="acknowledged", acknowledged_by=by, acknowledged_at=now, updated_at=now
        )
        return []
