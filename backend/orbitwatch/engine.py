"""Process-wide wiring of the OrbitWatch components.

``OrbitWatchEngine`` owns one instance of every stateful component and is
shared by the HTTP API, the WebSocket stream, the background loops and the
CLI.  CPU-bound work (screening, re-entry sweeps) runs on worker threads;
alert lifecycle events raised there are handed to the event loop with
``call_soon_threadsafe`` for webhook fan-out and WebSocket broadcast.
"""
from __future__ import annotations

import asyncio
import logging
import threading
import time
from datetime import datetime, timedelta
from time import perf_counter

import httpx
from fastapi import Request
from sqlalchemy.orm import Session

from .config import Settings, settings as default_settings
from .errors import InvalidRequest, PropagationError
from .repository import Repository
from .services.alert_service import AlertEvent, AlertManager, EscalationPolicy
from .services.alert_stream import AlertStreamHub
from .services.catalog_store import CatalogStore, IngestSummary
from .services.circuit_breaker import RetryPolicy
from .services.congestion_analyser import CongestionAnalyser
from .services.ingest_service import IngestService
from .services.orbital_constants import RiskTier
from .services.propagate_engine import orbit_path, propagate
from .services.reentry_engine import (
    ReentryAlertActor,
    ReentryEvent,
    ReentryPrediction,
    ReentryPredictor,
    ReentrySweepResult,
    reentry_statistics,
)
from .services.risk_engine import ConjunctionEvent, RiskEngine
from .services.risk_forecaster import Forecast, RiskSnapshot, Scorer, TrendScorer
from .services.screening_engine import ConjunctionScreener, ScreeningConfig, ScreeningResult
from .services.tca_finder import find_closest_approach
from .services.timeframes import ensure_utc, teme_to_geodetic, to_view_axes, utc_now
from .services.webhook_payloads import Notification
from .services.webhook_service import EndpointRegistry, WebhookDispatcher

logger = logging.getLogger(__name__)

ANALYSIS_MONTE_CARLO_SAMPLES = 100_000


class OrbitWatchEngine:
    def __init__(
        self,
        config: Settings | None = None,
        scorer: Scorer | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.config = config or default_settings
        cfg = self.config

        self.store = CatalogStore()
        self.ingest = IngestService(self.store, client=http_client)
        self.risk_engine = RiskEngine(cfg.hard_body_radius_m)
        self.screening_config = ScreeningConfig.from_settings(cfg)
        self.screener = ConjunctionScreener(
            self.risk_engine, self.screening_config, on_object_error=self.store.record_error
        )
        self.predictor = ReentryPredictor.from_settings(cfg, on_object_error=self.store.record_error)

        self.alerts = AlertManager(EscalationPolicy.from_settings(cfg), shards=cfg.alert_shards)
        self.alerts.add_listener(self._on_alert_event)
        self.reentry_alerts = ReentryAlertActor(on_event=self._on_reentry_event)

        self.registry = EndpointRegistry(
            RetryPolicy(max_attempts=cfg.webhook_max_attempts, base_backoff_seconds=cfg.webhook_base_backoff_seconds)
        )
        self.dispatcher = WebhookDispatcher.from_settings(
            self.registry, cfg, client=http_client, on_dispatch=self.alerts.record_dispatch
        )
        self.hub = AlertStreamHub()
        self.scorer: Scorer = scorer or TrendScorer()

        self._active: dict[str, ConjunctionEvent] = {}
        self._last_scan: ScreeningResult | None = None
        self._predictions: dict[int, ReentryPrediction] = {}
        self._last_sweep_at: datetime | None = None
        self._snapshots: list[RiskSnapshot] = []
        self._unsaved_snapshots: list[RiskSnapshot] = []
        self._scan_lock = threading.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._broadcasts: set[asyncio.Task] = set()

    # --- lifecycle ---

    async def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        await self.reentry_alerts.start()

    async def stop(self) -> None:
        await self.reentry_alerts.stop()
        await self.dispatcher.stop()
        self._loop = None

    def restore(self, session: Session) -> None:
        repo = Repository(session)
        self.store.restore(repo.load_catalog())
        self._active = {event.fingerprint_key: event for event in repo.load_events()}
        self.alerts.restore(repo.load_alerts())
        self.registry.restore(repo.load_endpoints())
        self._predictions = {p.norad_id: p for p in repo.load_predictions()}
        self.reentry_alerts.restore(repo.load_reentry_alerts())
        self._snapshots = repo.load_snapshots(limit=getattr(self.scorer, "window", 48))
        logger.info(
            "Engine state restored: objects=%d conjunctions=%d endpoints=%d predictions=%d",
            len(self.store), len(self._active), len(self.registry.list()), len(self._predictions),
        )

    def persist(self, session: Session) -> None:
        started = perf_counter()
        repo = Repository(session)
        repo.save_catalog(self.store.list_entries())
        repo.save_events(self._active.values())
        repo.save_alerts(self.alerts.all_alerts())
        repo.save_endpoints(self.registry.list())
        repo.save_predictions(self._predictions.values())
        repo.save_reentry_alerts(self.reentry_alerts.list_alerts(include_resolved=True))
        pending, self._unsaved_snapshots = self._unsaved_snapshots, []
        for snapshot in pending:
            repo.add_snapshot(snapshot)
        logger.debug("Engine state persisted: elapsed_ms=%.1f", (perf_counter() - started) * 1000.0)

    # --- event bridge ---

    def _on_alert_event(self, event: AlertEvent) -> None:
        self._publish(Notification(event=event.type, sequence=event.sequence, at=event.at, alert=event.alert.to_dict()))

    def _on_reentry_event(self, event: ReentryEvent) -> None:
        self._publish(
            Notification(
                event=event.type,
                sequence=self.alerts.next_sequence(),
                at=event.alert.updated_at,
                alert=event.alert.to_dict(),
                kind="reentry",
            )
        )

    def _publish(self, notification: Notification) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self._fan_out, notification)

    def _fan_out(self, notification: Notification) -> None:
        self.dispatcher.enqueue(notification)
        task = asyncio.create_task(self.hub.broadcast(notification))
        self._broadcasts.add(task)
        task.add_done_callback(self._broadcasts.discard)

    # --- operations ---

    async def refresh_catalog(self, url: str | None = None) -> IngestSummary:
        return await self.ingest.ingest_latest_tles(url)

    def run_screening(self, now: datetime | None = None) -> ScreeningResult:
        """Screen the whole catalog and feed every event into the alert lifecycle.

        Only one scan runs at a time; a second caller waits for the first.
        Raises ScreeningInvariantError without touching stored state when
        the scan is internally inconsistent.
        """
        now = ensure_utc(now) if now else utc_now()
        with self._scan_lock:
            entries = self.store.list_entries()
            deadline = time.monotonic() + self.config.screening_deadline_seconds
            result = self.screener.screen(entries, now, deadline=deadline)

            self._active = {event.fingerprint_key: event for event in result.events}
            self._last_scan = result
            for event in result.events:
                self.alerts.ingest_event(event, now)

            snapshot = RiskSnapshot.from_events(
                now, result.events, self.screening_config.window_hours, result.objects_screened
            )
            self._snapshots.append(snapshot)
            self._snapshots = self._snapshots[-getattr(self.scorer, "window", 48):]
            self._unsaved_snapshots.append(snapshot)
        return result

    def run_reentry_sweep(
        self, now: datetime | None = None, cancel: threading.Event | None = None
    ) -> ReentrySweepResult:
        now = ensure_utc(now) if now else utc_now()
        result = self.predictor.sweep(self.store.list_entries(), now, cancel=cancel)
        if result.complete:
            self._predictions = {p.norad_id: p for p in result.predictions}
        else:
            self._predictions.update({p.norad_id: p for p in result.predictions})
        self._last_sweep_at = now
        return result

    async def reentry_cycle(self, now: datetime | None = None) -> tuple[ReentrySweepResult, list[ReentryEvent]]:
        result = await asyncio.to_thread(self.run_reentry_sweep, now)
        events = await self.reentry_alerts.apply_sweep(result, now)
        return result, events

    def check_escalations(self, now: datetime | None = None) -> list[AlertEvent]:
        return self.alerts.check_escalations(now)

    def analyze_pair(self, norad_id_a: int, norad_id_b: int, now: datetime | None = None) -> dict:
        """Closest approach and risk assessment for one pair over the screening window.

        Unlike a scan, no distance threshold applies: the pair's closest
        approach in the window is always assessed, and a Monte Carlo estimate
        is attached as a reference for the analytic Pc.
        """
        if norad_id_a == norad_id_b:
            raise InvalidRequest("Pair analysis needs two distinct objects")
        now = ensure_utc(now) if now else utc_now()
        low, high = sorted((norad_id_a, norad_id_b))
        entry_a = self.store.get_entry(low)
        entry_b = self.store.get_entry(high)
        approach = find_closest_approach(
            entry_a.tle,
            entry_b.tle,
            now,
            self.screening_config.window_hours * 3600.0,
            self.screening_config.step_seconds,
        )
        assessment = self.risk_engine.assess(
            approach, entry_a.tle, entry_b.tle, now, entry_a.metadata, entry_b.metadata
        )
        reference = self.risk_engine.monte_carlo_reference(assessment, n_samples=ANALYSIS_MONTE_CARLO_SAMPLES)
        return {
            "assessment": assessment.to_dict(),
            "within_threshold": approach.miss_distance_km <= self.screening_config.threshold_km,
            "monte_carlo": {
                "pc": reference.pc,
                "ci_low": reference.ci_low,
                "ci_high": reference.ci_high,
                "samples": ANALYSIS_MONTE_CARLO_SAMPLES,
            },
            "window_hours": self.screening_config.window_hours,
        }

    # --- catalog queries ---

    def positions(self, limit: int = 500, at: datetime | None = None) -> list[dict]:
        at = ensure_utc(at) if at else utc_now()
        rows = []
        for tle in self.store.list_current()[:limit]:
            try:
                state = propagate(tle, at)
            except PropagationError as exc:
                self.store.record_error(tle.norad_id, exc.kind)
                continue
            rows.append(
                {
                    "norad_id": tle.norad_id,
                    "name": tle.name,
                    **state.to_dict(),
                    "view_position": to_view_axes(state.position),
                    "geodetic": teme_to_geodetic(state.r, at).to_degrees(),
                }
            )
        return rows

    def orbit(self, norad_id: int, samples: int = 120, start: datetime | None = None) -> dict:
        tle = self.store.get_current(norad_id)
        start = ensure_utc(start) if start else utc_now()
        period = timedelta(minutes=tle.period_minutes)
        step = period / max(samples, 1)
        path = []
        for state in orbit_path(tle, period, step, start):
            path.append({**state.to_dict(), "view_position": to_view_axes(state.position)})
        return {"norad_id": norad_id, "name": tle.name, "period_minutes": tle.period_minutes, "path": path}

    # --- conjunction queries ---

    def conjunctions(self, limit: int | None = None, min_tier: RiskTier | None = None) -> list[ConjunctionEvent]:
        events = sorted(self._active.values(), key=lambda e: (e.tca, e.norad_id_a, e.norad_id_b))
        if min_tier is not None:
            events = [e for e in events if e.risk_tier.rank >= min_tier.rank]
        return events[:limit] if limit is not None else events

    def conjunction_stats(self) -> dict:
        events = list(self._active.values())
        by_tier = {tier.value: 0 for tier in RiskTier}
        for event in events:
            by_tier[event.risk_tier.value] += 1
        closest = min(events, key=lambda e: e.miss_distance_km, default=None)
        scan = self._last_scan
        return {
            "total": len(events),
            "by_tier": by_tier,
            "closest_approach": closest.to_dict() if closest else None,
            "max_probability_of_collision": max((e.probability_of_collision for e in events), default=0.0),
            "last_scan": None
            if scan is None
            else {
                "started_at": scan.started_at.isoformat(),
                "objects_screened": scan.objects_screened,
                "pairs_considered": scan.pairs_considered,
                "brackets_refined": scan.brackets_refined,
                "excluded": len(scan.excluded),
                "truncated": scan.truncated,
                "elapsed_seconds": scan.elapsed_seconds,
            },
        }

    # --- re-entry queries ---

    def predictions(self, limit: int | None = None, at_risk_only: bool = False) -> list[ReentryPrediction]:
        predictions = sorted(self._predictions.values(), key=lambda p: (p.days_to_reentry, p.norad_id))
        if at_risk_only:
            predictions = [p for p in predictions if p.status != "normal"]
        return predictions[:limit] if limit is not None else predictions

    def prediction(self, norad_id: int) -> ReentryPrediction:
        prediction = self._predictions.get(norad_id)
        if prediction is None:
            # Not swept yet: predict on demand
            prediction = self.predictor.predict(self.store.get_entry(norad_id))
        return prediction

    def upcoming_reentries(self, days: float) -> list[ReentryPrediction]:
        return [p for p in self.predictions() if p.days_to_reentry <= days]

    def reentry_statistics(self) -> dict:
        stats = reentry_statistics(self._predictions.values())
        stats["active_alerts"] = len(self.reentry_alerts.list_alerts())
        stats["last_sweep_at"] = self._last_sweep_at.isoformat() if self._last_sweep_at else None
        return stats

    # --- forecast ---

    def congestion(self) -> CongestionAnalyser:
        """Shell congestion and per-object risk over the catalog and the latest scan."""
        return CongestionAnalyser(
            self.store.list_entries(),
            self._active.values(),
            threshold_km=self.screening_config.threshold_km,
            band_width_km=self.config.congestion_band_width_km,
        )

    def forecast(self, now: datetime | None = None) -> Forecast:
        return self.scorer.score(self._snapshots, ensure_utc(now) if now else utc_now())


def get_engine(request: Request) -> OrbitWatchEngine:
    return request.app.state.engine
