"""All-pairs conjunction screening over a forward propagation window.

Coarse pass: the whole catalog is propagated on a fixed grid (chunks in
parallel), pairs are pruned by altitude band, coplanar phase and a spatial
hash, and the surviving pairs' coarse distances are recorded whenever a
straight-line extrapolation says they could come within the threshold.

Refinement: each local minimum of a pair's coarse distances is refined to a
TCA, the best minimum per pair is selected, and the resulting approaches flow
through a bounded queue into the risk engine.
"""
from __future__ import annotations

import logging
import math
import os
import queue
import threading
import time
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from time import perf_counter
from typing import Callable

import numpy as np

from ..errors import PropagationError, ScreeningInvariantError
from .catalog_store import CatalogEntry
from .orbital_filter import (
    altitude_bands,
    band_overlap_mask,
    coplanar_phase_prune_mask,
    curvature_margin_km,
    linear_min_distance,
    neighbour_pairs,
)
from .propagate_engine import DECAY_ERROR_CODES, PropagateEngine, check_epoch_elements
from .risk_engine import ConjunctionEvent, RiskAssessment, RiskEngine
from .tca_finder import CloseApproach, PairGeometry, refine_tca
from .timeframes import ensure_utc, julian_date

logger = logging.getLogger(__name__)

TIE_MISS_TOLERANCE_KM = 0.1
TIE_TIME_TOLERANCE_S = 600.0
DUPLICATE_TCA_TOLERANCE_S = 1.0
BLOCK_STEPS = 36


@dataclass(frozen=True)
class ScreeningConfig:
    window_hours: float = 72.0
    step_seconds: float = 300.0
    threshold_km: float = 10.0
    workers: int = 0
    chunk_size: int = 512
    queue_size: int = 256
    coplanar_tolerance_deg: float = 3.0

    @property
    def worker_count(self) -> int:
        return self.workers if self.workers > 0 else (os.cpu_count() or 1)

    @classmethod
    def from_settings(cls, settings) -> "ScreeningConfig":
        return cls(
            window_hours=settings.screening_window_hours,
            step_seconds=settings.screening_step_seconds,
            threshold_km=settings.screening_threshold_km,
            workers=settings.screening_workers,
            chunk_size=settings.screening_chunk_size,
            queue_size=settings.screening_queue_size,
            coplanar_tolerance_deg=settings.coplanar_tolerance_deg,
        )


@dataclass
class ScreeningResult:
    started_at: datetime
    window_end: datetime
    events: list[ConjunctionEvent] = field(default_factory=list)
    assessments: list[RiskAssessment] = field(default_factory=list)
    excluded: dict[int, str] = field(default_factory=dict)
    objects_screened: int = 0
    pairs_considered: int = 0
    brackets_refined: int = 0
    truncated: bool = False
    elapsed_seconds: float = 0.0

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at.isoformat(),
            "window_end": self.window_end.isoformat(),
            "events": [event.to_dict() for event in self.events],
            "excluded": {str(k): v for k, v in sorted(self.excluded.items())},
            "objects_screened": self.objects_screened,
            "pairs_considered": self.pairs_considered,
            "brackets_refined": self.brackets_refined,
            "truncated": self.truncated,
            "elapsed_seconds": self.elapsed_seconds,
        }


@dataclass
class _PairTask:
    i: int
    j: int
    brackets: list[tuple[float, float]]


_QUEUE_DONE = object()


def _local_minima(samples: list[tuple[int, float]]) -> list[int]:
    """Grid indices of local minima within runs of consecutive samples.

    A plateau contributes only its first index; missing neighbours count as
    farther away.
    """
    minima: list[int] = []
    n = len(samples)
    for pos, (k, d) in enumerate(samples):
        has_prev = pos > 0 and samples[pos - 1][0] == k - 1
        has_next = pos + 1 < n and samples[pos + 1][0] == k + 1
        if has_prev and not d < samples[pos - 1][1]:
            continue
        if has_next and not d <= samples[pos + 1][1]:
            continue
        minima.append(k)
    return minima


def select_approach(candidates: list[CloseApproach]) -> CloseApproach | None:
    """Pick one approach per pair: smallest miss, preferring an earlier near-tie.

    Two minima within 0.1 km and 10 min of each other are treated as the same
    physical encounter and the earlier one wins.
    """
    if not candidates:
        return None
    best = min(candidates, key=lambda c: (c.miss_distance_km, c.offset_seconds))
    near_ties = [
        c
        for c in candidates
        if c.miss_distance_km <= best.miss_distance_km + TIE_MISS_TOLERANCE_KM
        and abs(c.offset_seconds - best.offset_seconds) <= TIE_TIME_TOLERANCE_S
    ]
    return min(near_ties, key=lambda c: (c.offset_seconds, c.miss_distance_km))


class ConjunctionScreener:
    def __init__(
        self,
        risk_engine: RiskEngine,
        config: ScreeningConfig | None = None,
        on_object_error: Callable[[int, str], None] | None = None,
    ):
        self.risk_engine = risk_engine
        self.config = config or ScreeningConfig()
        self.on_object_error = on_object_error

    def screen(
        self,
        entries: list[CatalogEntry],
        start: datetime,
        deadline: float | None = None,
    ) -> ScreeningResult:
        """Screen every pair of ``entries`` over the configured window from ``start``.

        Parameters:
            entries: Catalog entries to screen (duplicate ids are collapsed).
            start: Window start instant.
            deadline: ``time.monotonic()`` value after which no further pair is
                refined; events refined so far are still returned.

        Returns:
            ScreeningResult with events ordered by (TCA, id_a, id_b).
        """
        started = perf_counter()
        cfg = self.config
        start = ensure_utc(start)
        window_s = cfg.window_hours * 3600.0
        result = ScreeningResult(started_at=start, window_end=start + timedelta(seconds=window_s))

        by_id: dict[int, CatalogEntry] = {}
        for entry in entries:
            by_id[entry.norad_id] = entry
        ordered = [by_id[key] for key in sorted(by_id)]

        usable: list[CatalogEntry] = []
        for entry in ordered:
            try:
                check_epoch_elements(entry.tle)
            except PropagationError as exc:
                self._exclude(result, entry.norad_id, exc.kind)
                continue
            usable.append(entry)
        result.objects_screened = len(usable)

        logger.info(
            "Screening start: objects=%d window_h=%.1f step_s=%.0f threshold_km=%.1f workers=%d",
            len(usable), cfg.window_hours, cfg.step_seconds, cfg.threshold_km, cfg.worker_count,
        )
        if len(usable) < 2:
            result.elapsed_seconds = perf_counter() - started
            logger.info("Screening complete: objects=%d events=0 (nothing to pair)", len(usable))
            return result

        with ThreadPoolExecutor(max_workers=cfg.worker_count, thread_name_prefix="screen") as pool:
            tasks = self._coarse_pass(usable, start, window_s, result, pool, deadline)
            if tasks is not None:
                self._refine_and_assess(usable, tasks, start, result, pool, deadline)

        result.events.sort(key=lambda e: (e.tca, e.norad_id_a, e.norad_id_b))
        result.assessments.sort(key=lambda a: (a.event.tca, a.event.norad_id_a, a.event.norad_id_b))
        result.elapsed_seconds = perf_counter() - started
        logger.info(
            "Screening complete: objects=%d excluded=%d pairs=%d brackets=%d events=%d "
            "truncated=%s elapsed_s=%.2f",
            result.objects_screened, len(result.excluded), result.pairs_considered,
            result.brackets_refined, len(result.events), result.truncated, result.elapsed_seconds,
        )
        return result

    def screen_pair(
        self, entry_a: CatalogEntry, entry_b: CatalogEntry, start: datetime
    ) -> ScreeningResult:
        if entry_a.norad_id == entry_b.norad_id:
            now = ensure_utc(start)
            return ScreeningResult(started_at=now, window_end=now)
        return self.screen([entry_a, entry_b], start)

    def _exclude(self, result: ScreeningResult, norad_id: int, kind: str) -> None:
        if norad_id in result.excluded:
            return
        result.excluded[norad_id] = kind
        logger.warning("Screening excluded object: norad_id=%d reason=%s", norad_id, kind)
        if self.on_object_error is not None:
            self.on_object_error(norad_id, kind)

    @staticmethod
    def _expired(deadline: float | None) -> bool:
        return deadline is not None and time.monotonic() >= deadline

    def _coarse_pass(
        self,
        entries: list[CatalogEntry],
        start: datetime,
        window_s: float,
        result: ScreeningResult,
        pool: ThreadPoolExecutor,
        deadline: float | None,
    ) -> list[_PairTask] | None:
        cfg = self.config
        step = cfg.step_seconds
        threshold = cfg.threshold_km
        tles = [entry.tle for entry in entries]
        n = len(tles)
        perigee, apogee = altitude_bands(tles)
        coplanar_tol = math.radians(cfg.coplanar_tolerance_deg)

        offsets = np.arange(0.0, window_s + 1e-9, step)
        jd0, fr0 = julian_date(start)
        jd = np.full(len(offsets), jd0)
        fr = fr0 + offsets / 86400.0

        engine = PropagateEngine(chunk_size=cfg.chunk_size, executor=pool)
        failed = np.zeros(n, dtype=bool)
        records: dict[tuple[int, int], list[tuple[int, float]]] = defaultdict(list)
        coarse_started = perf_counter()

        for block_start in range(0, len(offsets), BLOCK_STEPS):
            if self._expired(deadline):
                result.truncated = True
                logger.warning("Screening deadline reached during coarse pass")
                return None
            block = slice(block_start, min(block_start + BLOCK_STEPS, len(offsets)))
            batch = engine.propagate_many(tles, jd[block], fr[block])

            for idx in np.flatnonzero(np.any(batch.errors != 0, axis=1)):
                codes = batch.errors[idx]
                code = int(codes[codes != 0][0])
                failed[idx] = True
                kind = "decayed" if code in DECAY_ERROR_CODES else "numerical_divergence"
                self._exclude(result, tles[idx].norad_id, kind)

            active = np.flatnonzero(~failed)
            if len(active) < 2:
                break
            for local_step in range(batch.positions.shape[1]):
                k = block_start + local_step
                positions = batch.positions[:, local_step, :]
                velocities = batch.velocities[:, local_step, :]
                self._screen_step(
                    k, positions, velocities, active, perigee, apogee,
                    threshold, step, coplanar_tol, records,
                )

        tasks: list[_PairTask] = []
        for (i, j), samples in sorted(records.items()):
            if failed[i] or failed[j]:
                continue
            brackets = []
            for k in _local_minima(samples):
                lo = max(0.0, (k - 1) * step)
                hi = min(window_s, (k + 1) * step)
                brackets.append((lo, hi))
            if brackets:
                tasks.append(_PairTask(i=i, j=j, brackets=brackets))
        result.pairs_considered = len(tasks)
        logger.info(
            "Screening coarse pass complete: steps=%d candidate_pairs=%d elapsed_ms=%.1f",
            len(offsets), len(tasks), (perf_counter() - coarse_started) * 1000.0,
        )
        return tasks

    @staticmethod
    def _screen_step(
        k: int,
        positions: np.ndarray,
        velocities: np.ndarray,
        active: np.ndarray,
        perigee: np.ndarray,
        apogee: np.ndarray,
        threshold: float,
        step: float,
        coplanar_tol: float,
        records: dict[tuple[int, int], list[tuple[int, float]]],
    ) -> None:
        pos_active = positions[active]
        max_speed = float(np.max(np.linalg.norm(velocities[active], axis=1)))
        # Any approach within half a step of t_k starts inside this separation
        reach = threshold + max_speed * step
        local_i, local_j = neighbour_pairs(pos_active, reach)
        if len(local_i) == 0:
            return
        i = active[local_i]
        j = active[local_j]

        keep = band_overlap_mask(perigee, apogee, i, j, threshold)
        i, j = i[keep], j[keep]
        if len(i) == 0:
            return
        keep = ~coplanar_phase_prune_mask(positions, velocities, i, j, threshold, step, coplanar_tol)
        i, j = i[keep], j[keep]
        if len(i) == 0:
            return

        rel_pos = positions[i] - positions[j]
        rel_vel = velocities[i] - velocities[j]
        distance = np.linalg.norm(rel_pos, axis=1)
        radius = np.minimum(np.linalg.norm(positions[i], axis=1), np.linalg.norm(positions[j], axis=1))
        reachable = linear_min_distance(rel_pos, rel_vel, step) <= threshold + curvature_margin_km(
            distance, radius, step
        )
        for a, b, d in zip(i[reachable].tolist(), j[reachable].tolist(), distance[reachable].tolist()):
            records[(a, b)].append((k, d))

    def _refine_pair(
        self,
        task: _PairTask,
        entries: list[CatalogEntry],
        start: datetime,
    ) -> CloseApproach | None:
        geometry = PairGeometry(entries[task.i].tle, entries[task.j].tle, start)
        candidates: list[CloseApproach] = []
        for lo, hi in task.brackets:
            approach = refine_tca(geometry, lo, hi)
            if approach.miss_distance_km > self.config.threshold_km:
                continue
            if any(
                abs(approach.offset_seconds - c.offset_seconds) <= DUPLICATE_TCA_TOLERANCE_S
                for c in candidates
            ):
                continue
            candidates.append(approach)
        return select_approach(candidates)

    def _refine_and_assess(
        self,
        entries: list[CatalogEntry],
        tasks: list[_PairTask],
        start: datetime,
        result: ScreeningResult,
        pool: ThreadPoolExecutor,
        deadline: float | None,
    ) -> None:
        refine_started = perf_counter()
        by_id = {entry.norad_id: entry for entry in entries}
        approaches: queue.Queue = queue.Queue(maxsize=max(1, self.config.queue_size))
        consumer_errors: list[BaseException] = []

        def consume() -> None:
            while True:
                item = approaches.get()
                if item is _QUEUE_DONE:
                    return
                if consumer_errors:
                    continue
                entry_a = by_id[item.norad_id_a]
                entry_b = by_id[item.norad_id_b]
                try:
                    assessment = self.risk_engine.assess(
                        item, entry_a.tle, entry_b.tle, start, entry_a.metadata, entry_b.metadata
                    )
                except Exception as exc:
                    logger.exception("Risk assessment failed for %s/%s", item.norad_id_a, item.norad_id_b)
                    consumer_errors.append(exc)
                    continue
                result.assessments.append(assessment)
                result.events.append(assessment.event)

        consumer = threading.Thread(target=consume, name="risk-engine", daemon=True)
        consumer.start()

        truncated = threading.Event()

        def produce(task: _PairTask) -> int:
            if truncated.is_set() or self._expired(deadline):
                truncated.set()
                return 0
            try:
                approach = self._refine_pair(task, entries, start)
            except PropagationError as exc:
                logger.warning(
                    "Screening refinement dropped pair %s/%s: %s",
                    entries[task.i].norad_id, entries[task.j].norad_id, exc,
                )
                if self.on_object_error is not None and exc.norad_id is not None:
                    self.on_object_error(exc.norad_id, exc.kind)
                return len(task.brackets)
            if approach is not None:
                # Blocks while the risk engine is behind
                approaches.put(approach)
            return len(task.brackets)

        try:
            futures = [pool.submit(produce, task) for task in tasks]
            result.brackets_refined = sum(future.result() for future in futures)
        finally:
            approaches.put(_QUEUE_DONE)
            consumer.join()

        result.truncated = result.truncated or truncated.is_set()
        if result.truncated:
            logger.warning("Screening deadline reached: refined events kept, remaining pairs dropped")
        if consumer_errors:
            raise ScreeningInvariantError(
                f"Risk assessment failed during screening: {consumer_errors[0]}"
            )
        logger.info(
            "Screening refinement complete: pairs=%d events=%d elapsed_ms=%.1f",
            len(tasks), len(result.events), (perf_counter() - refine_started) * 1000.0,
        )
