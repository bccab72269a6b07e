"""Document-shaped persistence for the in-memory engine state.

The engine's components stay the source of truth while the process runs;
this layer writes them out after each change and reads them back at
startup.  Every table keeps its key and a few indexed columns next to the
full JSON document.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from .models import (
    AlertRecord,
    ConjunctionEventRecord,
    ObjectMetadataRecord,
    ReentryAlertRecord,
    ReentryPredictionRecord,
    RiskSnapshotRecord,
    TLERecord,
    WebhookEndpointRecord,
)
from .services.alert_service import Alert
from .services.catalog_store import CatalogEntry, ObjectMetadata, orbital_regime
from .services.reentry_engine import ReentryAlert, ReentryPrediction
from .services.risk_engine import ConjunctionEvent
from .services.risk_forecaster import RiskSnapshot
from .services.timeframes import ensure_utc, utc_now
from .services.tle_validator import parse_tle
from .services.webhook_service import WebhookEndpoint

logger = logging.getLogger(__name__)


class Repository:
    def __init__(self, session: Session):
        self.session = session

    # --- catalog ---

    def save_catalog(self, entries: Iterable[CatalogEntry], now: datetime | None = None) -> int:
        """Write the current catalog, retiring rows whose element set changed.

        Returns:
            Number of new ``tle_records`` rows.
        """
        now = ensure_utc(now) if now else utc_now()
        current = {
            row.norad_id: row
            for row in self.session.scalars(select(TLERecord).where(TLERecord.superseded_at.is_(None)))
        }
        inserted = 0
        seen: set[int] = set()
        for entry in entries:
            tle = entry.tle
            seen.add(tle.norad_id)
            row = current.get(tle.norad_id)
            if row is not None and row.line1 == tle.line1 and row.line2 == tle.line2:
                row.name = tle.name
                row.error_count = entry.error_count
                row.last_error_kind = entry.last_error_kind
            else:
                if row is not None:
                    row.superseded_at = entry.ingested_at
                self.session.add(
                    TLERecord(
                        norad_id=tle.norad_id,
                        name=tle.name,
                        line1=tle.line1,
                        line2=tle.line2,
                        epoch=tle.epoch,
                        regime=orbital_regime(tle),
                        ingested_at=entry.ingested_at,
                        superseded_at=None,
                        error_count=entry.error_count,
                        last_error_kind=entry.last_error_kind,
                    )
                )
                inserted += 1
            self.session.merge(
                ObjectMetadataRecord(
                    norad_id=tle.norad_id,
                    controlled=entry.metadata.controlled,
                    document=entry.metadata.to_dict(),
                )
            )

        for norad_id, row in current.items():
            if norad_id not in seen:
                row.superseded_at = now
        self.session.commit()
        return inserted

    def load_catalog(self) -> list[CatalogEntry]:
        metadata = {
            row.norad_id: ObjectMetadata.from_dict(row.document)
            for row in self.session.scalars(select(ObjectMetadataRecord))
        }
        entries = []
        rows = self.session.scalars(
            select(TLERecord).where(TLERecord.superseded_at.is_(None)).order_by(TLERecord.norad_id)
        )
        for row in rows:
            entries.append(
                CatalogEntry(
                    tle=parse_tle(row.line1, row.line2, row.name),
                    ingested_at=ensure_utc(row.ingested_at),
                    metadata=metadata.get(row.norad_id, ObjectMetadata()),
                    error_count=row.error_count or 0,
                    last_error_kind=row.last_error_kind,
                )
            )
        return entries

    def tle_history(self, norad_id: int) -> list[TLERecord]:
        return list(
            self.session.scalars(
                select(TLERecord).where(TLERecord.norad_id == norad_id).order_by(TLERecord.ingested_at)
            )
        )

    # --- conjunctions ---

    def save_events(self, events: Iterable[ConjunctionEvent]) -> None:
        for event in events:
            self.session.merge(
                ConjunctionEventRecord(
                    fingerprint=event.fingerprint_key,
                    norad_id_a=event.norad_id_a,
                    norad_id_b=event.norad_id_b,
                    tca=event.tca,
                    miss_distance_km=event.miss_distance_km,
                    probability_of_collision=event.probability_of_collision,
                    risk_tier=event.risk_tier.value,
                    document=event.to_dict(),
                )
            )
        self.session.commit()

    def load_events(self, since: datetime | None = None) -> list[ConjunctionEvent]:
        events = [
            ConjunctionEvent.from_dict(row.document)
            for row in self.session.scalars(select(ConjunctionEventRecord))
        ]
        if since is not None:
            since = ensure_utc(since)
            events = [event for event in events if event.tca >= since]
        return sorted(events, key=lambda e: (e.tca, e.norad_id_a, e.norad_id_b))

    # --- alerts ---

    def save_alerts(self, alerts: Iterable[Alert]) -> None:
        for alert in alerts:
            document = alert.to_dict()
            self.session.merge(
                AlertRecord(
                    id=alert.id,
                    fingerprint=document["fingerprint"],
                    status=alert.status.value,
                    priority=alert.priority.value,
                    risk_tier=alert.risk_tier.value,
                    escalation_level=alert.escalation_level,
                    created_at=alert.created_at,
                    updated_at=alert.updated_at,
                    document=document,
                )
            )
        self.session.commit()

    def load_alerts(self) -> list[Alert]:
        rows = self.session.scalars(select(AlertRecord).order_by(AlertRecord.created_at))
        return [Alert.from_dict(row.document) for row in rows]

    # --- webhooks ---

    def save_endpoints(self, endpoints: Iterable[WebhookEndpoint]) -> None:
        """Replace the stored endpoint set with ``endpoints``."""
        keep = []
        for endpoint in endpoints:
            keep.append(endpoint.id)
            self.session.merge(
                WebhookEndpointRecord(
                    id=endpoint.id,
                    name=endpoint.name,
                    type=endpoint.type,
                    enabled=endpoint.enabled,
                    document=endpoint.to_dict(redact=False),
                )
            )
        self.session.execute(delete(WebhookEndpointRecord).where(WebhookEndpointRecord.id.not_in(keep)))
        self.session.commit()

    def load_endpoints(self) -> list[WebhookEndpoint]:
        return [
            WebhookEndpoint.from_dict(row.document)
            for row in self.session.scalars(select(WebhookEndpointRecord))
        ]

    # --- re-entry ---

    def save_predictions(self, predictions: Iterable[ReentryPrediction], replace_all: bool = True) -> None:
        predictions = list(predictions)
        if replace_all:
            self.session.execute(delete(ReentryPredictionRecord))
        for prediction in predictions:
            self.session.merge(
                ReentryPredictionRecord(
                    norad_id=prediction.norad_id,
                    status=prediction.status,
                    days_to_reentry=prediction.days_to_reentry,
                    uncontrolled=prediction.uncontrolled.is_uncontrolled,
                    computed_at=prediction.computed_at,
                    document=prediction.to_dict(),
                )
            )
        self.session.commit()

    def load_predictions(self) -> list[ReentryPrediction]:
        rows = self.session.scalars(select(ReentryPredictionRecord).order_by(ReentryPredictionRecord.days_to_reentry))
        return [ReentryPrediction.from_dict(row.document) for row in rows]

    def save_reentry_alerts(self, alerts: Iterable[ReentryAlert]) -> None:
        for alert in alerts:
            self.session.merge(
                ReentryAlertRecord(
                    id=alert.id,
                    norad_id=alert.norad_id,
                    status=alert.status,
                    priority=alert.priority,
                    document=alert.to_dict(),
                )
            )
        self.session.commit()

    def load_reentry_alerts(self) -> list[ReentryAlert]:
        """Latest alert per object; older resolved alerts stay in the table as history."""
        latest: dict[int, ReentryAlert] = {}
        for row in self.session.scalars(select(ReentryAlertRecord)):
            alert = ReentryAlert.from_dict(row.document)
            current = latest.get(alert.norad_id)
            if current is None or alert.created_at > current.created_at:
                latest[alert.norad_id] = alert
        return list(latest.values())

    # --- forecast ---

    def add_snapshot(self, snapshot: RiskSnapshot) -> None:
        self.session.add(
            RiskSnapshotRecord(at=snapshot.at, weighted_score=snapshot.weighted_score, document=snapshot.to_dict())
        )
        self.session.commit()

    def load_snapshots(self, limit: int = 48) -> list[RiskSnapshot]:
        rows = self.session.scalars(select(RiskSnapshotRecord).order_by(RiskSnapshotRecord.at.desc()).limit(limit))
        return sorted((RiskSnapshot.from_dict(row.document) for row in rows), key=lambda s: s.at)
