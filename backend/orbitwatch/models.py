from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, Float, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from .db import Base


class TLERecord(Base):
    """One ingested element set. The current record per object has ``superseded_at`` NULL."""

    __tablename__ = "tle_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    norad_id: Mapped[int] = mapped_column(Integer, index=True)
    name: Mapped[str] = mapped_column(String(256), index=True)
    line1: Mapped[str] = mapped_column(String(80))
    line2: Mapped[str] = mapped_column(String(80))
    epoch: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    regime: Mapped[str] = mapped_column(String(8), index=True)
    ingested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    superseded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    error_count: Mapped[int] = mapped_column(Integer, default=0)
    last_error_kind: Mapped[str | None] = mapped_column(String(32), nullable=True)


class ObjectMetadataRecord(Base):
    __tablename__ = "object_metadata"

    norad_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    controlled: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    document: Mapped[dict] = mapped_column(JSON)


class ConjunctionEventRecord(Base):
    """Latest refinement of one conjunction, keyed by its fingerprint."""

    __tablename__ = "conjunction_events"

    fingerprint: Mapped[str] = mapped_column(String(48), primary_key=True)
    norad_id_a: Mapped[int] = mapped_column(Integer, index=True)
    norad_id_b: Mapped[int] = mapped_column(Integer, index=True)
    tca: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    miss_distance_km: Mapped[float] = mapped_column(Float)
    probability_of_collision: Mapped[float] = mapped_column(Float)
    risk_tier: Mapped[str] = mapped_column(String(16), index=True)
    document: Mapped[dict] = mapped_column(JSON)


class AlertRecord(Base):
    __tablename__ = "alerts"

    id: Mapped[str] = mapped_column(String(48), primary_key=True)
    fingerprint: Mapped[str] = mapped_column(String(48), index=True)
    status: Mapped[str] = mapped_column(String(16), index=True)
    priority: Mapped[str] = mapped_column(String(16), index=True)
    risk_tier: Mapped[str] = mapped_column(String(16), index=True)
    escalation_level: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    document: Mapped[dict] = mapped_column(JSON)


class WebhookEndpointRecord(Base):
    __tablename__ = "webhook_endpoints"

    id: Mapped[str] = mapped_column(String(48), primary_key=True)
    name: Mapped[str] = mapped_column(String(128))
    type: Mapped[str] = mapped_column(String(16), index=True)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    document: Mapped[dict] = mapped_column(JSON)


class ReentryPredictionRecord(Base):
    __tablename__ = "reentry_predictions"

    norad_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    status: Mapped[str] = mapped_column(String(16), index=True)
    days_to_reentry: Mapped[float] = mapped_column(Float, index=True)
    uncontrolled: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    computed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    document: Mapped[dict] = mapped_column(JSON)


class ReentryAlertRecord(Base):
    __tablename__ = "reentry_alerts"

    id: Mapped[str] = mapped_column(String(48), primary_key=True)
    norad_id: Mapped[int] = mapped_column(Integer, index=True)
    status: Mapped[str] = mapped_column(String(16), index=True)
    priority: Mapped[str] = mapped_column(String(16), index=True)
    document: Mapped[dict] = mapped_column(JSON)


class RiskSnapshotRecord(Base):
    __tablename__ = "risk_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    weighted_score: Mapped[float] = mapped_column(Float)
    document: Mapped[dict] = mapped_column(JSON)
