import asyncio
import logging
from datetime import datetime
from time import perf_counter

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from .config import settings
from .db import get_session
from .engine import OrbitWatchEngine, get_engine
from .errors import InvalidRequest
from .repository import Repository
from .schemas import (
    AcknowledgeRequest,
    EscalateRequest,
    MetadataUpdate,
    ReentryAcknowledgeRequest,
    RefreshRequest,
    ResolveRequest,
    TLEUpload,
    WebhookCreate,
    WebhookUpdate,
)
from .services.alert_service import AlertStatus, Priority
from .services.catalog_store import ObjectMetadata, orbital_regime
from .services.orbital_constants import RiskTier
from .services.timeframes import ensure_utc, utc_now

router = APIRouter(prefix="/api")
logger = logging.getLogger(__name__)


def ok(data) -> dict:
    return {"success": True, "data": data}


def _parse_enum(enum_cls, value: str | None, label: str):
    if value is None:
        return None
    try:
        return enum_cls(value.lower())
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise InvalidRequest(f"Unknown {label} '{value}' (expected one of: {allowed})")


def _instant(value: datetime | None) -> datetime:
    return ensure_utc(value) if value is not None else utc_now()


@router.get("/health")
def health(engine: OrbitWatchEngine = Depends(get_engine)):
    return ok(
        {
            "name": settings.app_name,
            "status": "ok",
            "objects": len(engine.store),
            "active_conjunctions": len(engine.conjunctions()),
            "websocket_connections": engine.hub.connection_count,
            "breakers": engine.dispatcher.breaker_states(),
            "timestamp": utc_now().isoformat(),
        }
    )


# --- satellites ---


@router.get("/satellites")
def list_satellites(
    limit: int = Query(default=200, ge=1, le=50000),
    engine: OrbitWatchEngine = Depends(get_engine),
):
    tles = engine.store.list_current()
    return ok(
        {
            "total": len(tles),
            "satellites": [{**tle.summary(), "regime": orbital_regime(tle)} for tle in tles[:limit]],
        }
    )


@router.get("/satellites/statistics")
def satellite_statistics(engine: OrbitWatchEngine = Depends(get_engine)):
    return ok(engine.store.stats())


@router.get("/satellites/positions")
def satellite_positions(
    limit: int = Query(default=500, ge=1, le=50000),
    at: datetime | None = Query(default=None),
    engine: OrbitWatchEngine = Depends(get_engine),
):
    started = perf_counter()
    rows = engine.positions(limit=limit, at=_instant(at))
    logger.info("Positions computed: count=%d elapsed_ms=%.1f", len(rows), (perf_counter() - started) * 1000.0)
    return ok({"count": len(rows), "positions": rows})


@router.get("/satellites/search")
def search_satellites(
    q: str = Query(min_length=1),
    limit: int = Query(default=20, ge=1, le=500),
    engine: OrbitWatchEngine = Depends(get_engine),
):
    return ok([tle.summary() for tle in engine.store.search_by_name(q, limit)])


@router.get("/satellites/orbit/{norad_id}")
def satellite_orbit(
    norad_id: int,
    samples: int = Query(default=120, ge=8, le=2000),
    at: datetime | None = Query(default=None),
    engine: OrbitWatchEngine = Depends(get_engine),
):
    return ok(engine.orbit(norad_id, samples=samples, start=_instant(at)))


@router.post("/satellites/refresh")
async def refresh_satellites(
    payload: RefreshRequest | None = None,
    engine: OrbitWatchEngine = Depends(get_engine),
    db: Session = Depends(get_session),
):
    summary = await engine.refresh_catalog(payload.url if payload else None)
    await asyncio.to_thread(engine.persist, db)
    return ok(
        {
            "inserted": summary.inserted,
            "superseded": summary.superseded,
            "unchanged": summary.unchanged,
            "total": summary.total,
            "catalog_size": len(engine.store),
        }
    )


@router.post("/satellites/tle", status_code=201)
def upload_tle(
    payload: TLEUpload,
    engine: OrbitWatchEngine = Depends(get_engine),
    db: Session = Depends(get_session),
):
    summary = engine.ingest.ingest_text(payload.text)
    engine.persist(db)
    return ok({"inserted": summary.inserted, "superseded": summary.superseded, "unchanged": summary.unchanged})


@router.put("/satellites/{norad_id}/metadata")
def update_metadata(
    norad_id: int,
    payload: MetadataUpdate,
    engine: OrbitWatchEngine = Depends(get_engine),
    db: Session = Depends(get_session),
):
    entry = engine.store.set_metadata(norad_id, ObjectMetadata.from_dict(payload.model_dump()))
    engine.persist(db)
    return ok(entry.to_dict())


@router.get("/satellites/{norad_id}")
def satellite_detail(
    norad_id: int,
    engine: OrbitWatchEngine = Depends(get_engine),
    db: Session = Depends(get_session),
):
    entry = engine.store.get_entry(norad_id)
    detail = entry.to_dict()
    detail["history"] = [
        {
            "epoch": record.tle.epoch.isoformat(),
            "ingested_at": record.ingested_at.isoformat(),
            "superseded_at": record.superseded_at.isoformat(),
        }
        for record in engine.store.history(norad_id)
    ]
    detail["stored_records"] = len(Repository(db).tle_history(norad_id))
    return ok(detail)


# --- conjunctions ---


@router.get("/conjunctions")
def list_conjunctions(
    limit: int = Query(default=100, ge=1, le=10000),
    engine: OrbitWatchEngine = Depends(get_engine),
):
    events = engine.conjunctions()
    return ok({"total": len(events), "conjunctions": [event.to_dict() for event in events[:limit]]})


@router.get("/conjunctions/high")
def high_risk_conjunctions(
    level: str = Query(default="high"),
    limit: int = Query(default=100, ge=1, le=10000),
    engine: OrbitWatchEngine = Depends(get_engine),
):
    tier = _parse_enum(RiskTier, level, "risk level")
    events = engine.conjunctions(min_tier=tier)
    return ok({"level": tier.value, "total": len(events), "conjunctions": [e.to_dict() for e in events[:limit]]})


@router.get("/conjunctions/stats")
def conjunction_stats(engine: OrbitWatchEngine = Depends(get_engine)):
    return ok(engine.conjunction_stats())


@router.get("/conjunctions/analysis/{norad_id_a}/{norad_id_b}")
async def analyze_conjunction(
    norad_id_a: int,
    norad_id_b: int,
    at: datetime | None = Query(default=None),
    engine: OrbitWatchEngine = Depends(get_engine),
):
    analysis = await asyncio.to_thread(engine.analyze_pair, norad_id_a, norad_id_b, _instant(at))
    return ok(analysis)


@router.post("/conjunctions/run")
async def run_screening(
    at: datetime | None = Query(default=None),
    engine: OrbitWatchEngine = Depends(get_engine),
    db: Session = Depends(get_session),
):
    result = await asyncio.to_thread(engine.run_screening, _instant(at))
    await asyncio.to_thread(engine.persist, db)
    summary = result.to_dict()
    summary["events"] = len(result.events)
    return ok(summary)


# --- alerts ---


@router.get("/alerts")
def list_alerts(
    status: str | None = Query(default=None),
    priority: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=1000),
    skip: int = Query(default=0, ge=0),
    engine: OrbitWatchEngine = Depends(get_engine),
):
    page, pagination = engine.alerts.list_alerts(
        status=_parse_enum(AlertStatus, status, "status"),
        priority=_parse_enum(Priority, priority, "priority"),
        limit=limit,
        skip=skip,
    )
    return ok({"alerts": [alert.to_dict() for alert in page], "pagination": pagination})


@router.get("/alerts/statistics")
def alert_statistics(engine: OrbitWatchEngine = Depends(get_engine)):
    return ok(engine.alerts.statistics())


@router.get("/alerts/unacknowledged")
def unacknowledged_alerts(engine: OrbitWatchEngine = Depends(get_engine)):
    return ok([alert.to_dict() for alert in engine.alerts.unacknowledged()])


@router.get("/alerts/{alert_id}")
def alert_detail(alert_id: str, engine: OrbitWatchEngine = Depends(get_engine)):
    return ok(engine.alerts.get(alert_id).to_dict())


@router.post("/alerts/{alert_id}/acknowledge")
def acknowledge_alert(
    alert_id: str,
    payload: AcknowledgeRequest | None = None,
    engine: OrbitWatchEngine = Depends(get_engine),
    db: Session = Depends(get_session),
):
    payload = payload or AcknowledgeRequest()
    alert = engine.alerts.acknowledge(alert_id, payload.by, note=payload.note, method=payload.method)
    Repository(db).save_alerts([alert])
    return ok(alert.to_dict())


@router.post("/alerts/{alert_id}/escalate")
def escalate_alert(
    alert_id: str,
    payload: EscalateRequest | None = None,
    engine: OrbitWatchEngine = Depends(get_engine),
    db: Session = Depends(get_session),
):
    payload = payload or EscalateRequest()
    alert = engine.alerts.escalate(alert_id, reason=payload.reason)
    Repository(db).save_alerts([alert])
    return ok(alert.to_dict())


@router.post("/alerts/{alert_id}/resolve")
def resolve_alert(
    alert_id: str,
    payload: ResolveRequest | None = None,
    engine: OrbitWatchEngine = Depends(get_engine),
    db: Session = Depends(get_session),
):
    payload = payload or ResolveRequest()
    alert = engine.alerts.resolve(alert_id, payload.by, note=payload.note)
    Repository(db).save_alerts([alert])
    return ok(alert.to_dict())


@router.post("/alerts/{alert_id}/close")
def close_alert(
    alert_id: str,
    engine: OrbitWatchEngine = Depends(get_engine),
    db: Session = Depends(get_session),
):
    alert = engine.alerts.close(alert_id)
    Repository(db).save_alerts([alert])
    return ok(alert.to_dict())


# --- webhooks ---


@router.get("/webhooks")
def list_webhooks(engine: OrbitWatchEngine = Depends(get_engine)):
    return ok([endpoint.to_dict() for endpoint in engine.registry.list()])


@router.post("/webhooks", status_code=201)
def create_webhook(
    payload: WebhookCreate,
    engine: OrbitWatchEngine = Depends(get_engine),
    db: Session = Depends(get_session),
):
    endpoint = engine.registry.create(payload.model_dump())
    Repository(db).save_endpoints(engine.registry.list())
    return ok(endpoint.to_dict())


@router.put("/webhooks/{endpoint_id}")
def update_webhook(
    endpoint_id: str,
    payload: WebhookUpdate,
    engine: OrbitWatchEngine = Depends(get_engine),
    db: Session = Depends(get_session),
):
    endpoint = engine.registry.update(endpoint_id, payload.model_dump(exclude_unset=True))
    Repository(db).save_endpoints(engine.registry.list())
    return ok(endpoint.to_dict())


@router.delete("/webhooks/{endpoint_id}")
def delete_webhook(
    endpoint_id: str,
    engine: OrbitWatchEngine = Depends(get_engine),
    db: Session = Depends(get_session),
):
    engine.registry.delete(endpoint_id)
    Repository(db).save_endpoints(engine.registry.list())
    return ok({"deleted": endpoint_id})


@router.post("/webhooks/{endpoint_id}/test")
async def test_webhook(endpoint_id: str, engine: OrbitWatchEngine = Depends(get_engine)):
    record = await engine.dispatcher.send_test(endpoint_id)
    return ok(record.to_dict())


# --- re-entry ---


@router.get("/reentry")
def list_reentry(
    limit: int = Query(default=100, ge=1, le=10000),
    engine: OrbitWatchEngine = Depends(get_engine),
):
    predictions = engine.predictions()
    return ok({"total": len(predictions), "predictions": [p.to_dict() for p in predictions[:limit]]})


@router.get("/reentry/upcoming")
def upcoming_reentry(
    days: float = Query(default=7.0, gt=0, le=365),
    engine: OrbitWatchEngine = Depends(get_engine),
):
    return ok([p.to_dict() for p in engine.upcoming_reentries(days)])


@router.get("/reentry/statistics")
def reentry_statistics(engine: OrbitWatchEngine = Depends(get_engine)):
    return ok(engine.reentry_statistics())


@router.get("/reentry/alerts")
def reentry_alerts(
    include_resolved: bool = Query(default=False),
    engine: OrbitWatchEngine = Depends(get_engine),
):
    return ok([alert.to_dict() for alert in engine.reentry_alerts.list_alerts(include_resolved)])


@router.post("/reentry/alerts/{norad_id}/acknowledge")
async def acknowledge_reentry_alert(
    norad_id: int,
    payload: ReentryAcknowledgeRequest | None = None,
    engine: OrbitWatchEngine = Depends(get_engine),
    db: Session = Depends(get_session),
):
    payload = payload or ReentryAcknowledgeRequest()
    await engine.reentry_alerts.acknowledge(norad_id, payload.by)
    alert = engine.reentry_alerts.snapshot()[norad_id]
    await asyncio.to_thread(Repository(db).save_reentry_alerts, [alert])
    return ok(alert.to_dict())


@router.post("/reentry/run")
async def run_reentry(
    at: datetime | None = Query(default=None),
    engine: OrbitWatchEngine = Depends(get_engine),
    db: Session = Depends(get_session),
):
    result, events = await engine.reentry_cycle(_instant(at))
    await asyncio.to_thread(engine.persist, db)
    return ok(
        {
            "candidates": result.candidates,
            "predictions": len(result.predictions),
            "errors": {str(k): v for k, v in sorted(result.errors.items())},
            "interrupted": result.interrupted,
            "alert_events": [{"type": event.type, "alert_id": event.alert.id} for event in events],
            "elapsed_seconds": result.elapsed_seconds,
        }
    )


@router.get("/reentry/{norad_id}")
def reentry_detail(norad_id: int, engine: OrbitWatchEngine = Depends(get_engine)):
    return ok(engine.prediction(norad_id).to_dict())


# --- congestion and per-object risk ---


@router.get("/congestion")
def congestion(engine: OrbitWatchEngine = Depends(get_engine)):
    return ok({"generated_at": utc_now().isoformat(), "bands": engine.congestion().compute()})


@router.get("/risk/objects")
def object_risks(
    min_score: float = Query(default=0.0, ge=0.0, le=1.0),
    limit: int = Query(default=100, ge=1, le=10000),
    engine: OrbitWatchEngine = Depends(get_engine),
):
    analyser = engine.congestion()
    risks = analyser.object_risks(min_score=min_score)
    return ok({"total": len(risks), "objects": [r.to_dict() for r in risks[:limit]]})


@router.get("/risk/statistics")
def object_risk_statistics(engine: OrbitWatchEngine = Depends(get_engine)):
    return ok(engine.congestion().statistics())


@router.get("/risk/objects/{norad_id}")
def object_risk(norad_id: int, engine: OrbitWatchEngine = Depends(get_engine)):
    return ok(engine.congestion().object_risk(norad_id).to_dict())


# --- forecast ---


@router.get("/forecast")
def forecast(engine: OrbitWatchEngine = Depends(get_engine)):
    return ok(engine.forecast().to_dict())
