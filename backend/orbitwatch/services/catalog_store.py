"""In-memory catalog of current element sets with snapshot isolation.

Writers serialise on one lock and publish a fresh immutable mapping;
readers grab whatever mapping is current and never block.
"""
from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from types import MappingProxyType
from typing import Iterable, Mapping

from ..errors import MalformedTLE, UnknownObject
from .orbital_constants import (
    GEO_ALTITUDE_KM,
    GEO_ALTITUDE_TOLERANCE_KM,
    GEO_MAX_INCLINATION_DEG,
    LEO_MAX_PERIGEE_KM,
    R_EARTH_KM,
)
from .timeframes import ensure_utc, utc_now
from .tle_validator import TLE, parse_tle

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ObjectMetadata:
    """Physical and operational facts known about an object, all optional."""

    mass_kg: float | None = None
    area_m2: float | None = None
    operator: str | None = None
    controlled: bool = False
    hard_body_radius_m: float | None = None
    object_type: str | None = None

    @property
    def mass_to_area(self) -> float | None:
        if self.mass_kg is None or not self.area_m2:
            return None
        return self.mass_kg / self.area_m2

    def to_dict(self) -> dict:
        return {
            "mass_kg": self.mass_kg,
            "area_m2": self.area_m2,
            "operator": self.operator,
            "controlled": self.controlled,
            "hard_body_radius_m": self.hard_body_radius_m,
            "object_type": self.object_type,
        }

    @classmethod
    def from_dict(cls, data: dict | None) -> "ObjectMetadata":
        data = data or {}
        return cls(
            mass_kg=data.get("mass_kg"),
            area_m2=data.get("area_m2"),
            operator=data.get("operator"),
            controlled=bool(data.get("controlled", False)),
            hard_body_radius_m=data.get("hard_body_radius_m"),
            object_type=data.get("object_type"),
        )


@dataclass(frozen=True)
class CatalogEntry:
    tle: TLE
    ingested_at: datetime
    metadata: ObjectMetadata = field(default_factory=ObjectMetadata)
    error_count: int = 0
    last_error_kind: str | None = None

    @property
    def norad_id(self) -> int:
        return self.tle.norad_id

    def to_dict(self) -> dict:
        data = self.tle.detail()
        data.update(
            {
                "ingested_at": self.ingested_at.isoformat(),
                "regime": orbital_regime(self.tle),
                "metadata": self.metadata.to_dict(),
                "error_count": self.error_count,
                "last_error_kind": self.last_error_kind,
            }
        )
        return data


@dataclass(frozen=True)
class SupersededRecord:
    tle: TLE
    ingested_at: datetime
    superseded_at: datetime


@dataclass(frozen=True)
class IngestSummary:
    inserted: int = 0
    superseded: int = 0
    unchanged: int = 0

    @property
    def total(self) -> int:
        return self.inserted + self.superseded + self.unchanged


def orbital_regime(tle: TLE) -> str:
    """Bucket an orbit into leo, meo, geo or other."""
    mean_altitude = tle.semi_major_axis_km - R_EARTH_KM
    if (
        abs(mean_altitude - GEO_ALTITUDE_KM) <= GEO_ALTITUDE_TOLERANCE_KM
        and math.degrees(tle.inclination_rad) <= GEO_MAX_INCLINATION_DEG
    ):
        return "geo"
    perigee = tle.perigee_altitude_km
    if perigee <= LEO_MAX_PERIGEE_KM:
        return "leo"
    if perigee <= GEO_ALTITUDE_KM:
        return "meo"
    return "other"


def _revalidate(record: TLE) -> TLE:
    """Re-decode the raw lines so a hand-built record cannot bypass validation."""
    parsed = parse_tle(record.line1, record.line2, record.name)
    if parsed.norad_id != record.norad_id:
        raise MalformedTLE(
            f"Record id {record.norad_id} does not match its lines ({parsed.norad_id})"
        )
    return parsed


class CatalogStore:
    def __init__(self) -> None:
        self._write_lock = threading.Lock()
        self._entries: Mapping[int, CatalogEntry] = MappingProxyType({})
        self._history: dict[int, tuple[SupersededRecord, ...]] = {}
        self._version = 0

    @property
    def version(self) -> int:
        return self._version

    def snapshot(self) -> Mapping[int, CatalogEntry]:
        return self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def _apply(
        self,
        entries: dict[int, CatalogEntry],
        record: TLE,
        now: datetime,
    ) -> str:
        current = entries.get(record.norad_id)
        if current is not None and current.tle.line1 == record.line1 and current.tle.line2 == record.line2:
            if current.tle.name != record.name:
                entries[record.norad_id] = replace(current, tle=record)
                return "superseded"
            return "unchanged"
        if current is None:
            entries[record.norad_id] = CatalogEntry(tle=record, ingested_at=now)
            return "inserted"
        retired = SupersededRecord(tle=current.tle, ingested_at=current.ingested_at, superseded_at=now)
        self._history[record.norad_id] = self._history.get(record.norad_id, ()) + (retired,)
        entries[record.norad_id] = replace(current, tle=record, ingested_at=now)
        return "superseded"

    def _publish(self, entries: dict[int, CatalogEntry]) -> None:
        self._entries = MappingProxyType(entries)
        self._version += 1

    def upsert_tle(self, record: TLE, now: datetime | None = None) -> bool:
        """Make ``record`` the current element set for its catalog id.

        Returns:
            True when the catalog changed, False for an identical re-ingest.

        Raises:
            MalformedTLE: the record's lines fail checksum or range validation.
        """
        record = _revalidate(record)
        now = ensure_utc(now) if now else utc_now()
        with self._write_lock:
            entries = dict(self._entries)
            outcome = self._apply(entries, record, now)
            if outcome != "unchanged":
                self._publish(entries)
        return outcome != "unchanged"

    def ingest_batch(self, records: Iterable[TLE], now: datetime | None = None) -> IngestSummary:
        """Apply a whole fetch atomically: every record validates or none is applied."""
        validated = [_revalidate(record) for record in records]
        now = ensure_utc(now) if now else utc_now()
        counts = {"inserted": 0, "superseded": 0, "unchanged": 0}
        with self._write_lock:
            entries = dict(self._entries)
            history_backup = dict(self._history)
            try:
                for record in validated:
                    counts[self._apply(entries, record, now)] += 1
            except Exception:
                self._history = history_backup
                raise
            if counts["inserted"] or counts["superseded"]:
                self._publish(entries)
        summary = IngestSummary(**counts)
        logger.info(
            "Catalog ingest applied: inserted=%d superseded=%d unchanged=%d",
            summary.inserted, summary.superseded, summary.unchanged,
        )
        return summary

    def restore(self, entries: Iterable[CatalogEntry]) -> None:
        with self._write_lock:
            self._publish({entry.norad_id: entry for entry in entries})

    def get_entry(self, norad_id: int) -> CatalogEntry:
        entry = self._entries.get(norad_id)
        if entry is None:
            raise UnknownObject(norad_id)
        return entry

    def get_current(self, norad_id: int) -> TLE:
        return self.get_entry(norad_id).tle

    def list_current(self) -> list[TLE]:
        return [entry.tle for entry in self.list_entries()]

    def list_entries(self) -> list[CatalogEntry]:
        entries = self._entries
        return [entries[key] for key in sorted(entries)]

    def history(self, norad_id: int) -> list[SupersededRecord]:
        return list(self._history.get(norad_id, ()))

    def stats(self) -> dict:
        counts = {"total": 0, "leo": 0, "meo": 0, "geo": 0, "other": 0}
        for entry in self._entries.values():
            counts["total"] += 1
            counts[orbital_regime(entry.tle)] += 1
        return counts

    def search_by_name(self, substring: str, limit: int = 20) -> list[TLE]:
        needle = substring.casefold()
        matches = [
            entry.tle
            for entry in self._entries.values()
            if needle in entry.tle.name.casefold()
        ]
        matches.sort(key=lambda tle: (tle.name.casefold(), tle.norad_id))
        return matches[:limit]

    def _update_entry(self, norad_id: int, **changes) -> CatalogEntry:
        with self._write_lock:
            current = self._entries.get(norad_id)
            if current is None:
                raise UnknownObject(norad_id)
            updated = replace(current, **changes)
            entries = dict(self._entries)
            entries[norad_id] = updated
            self._publish(entries)
        return updated

    def set_metadata(self, norad_id: int, metadata: ObjectMetadata) -> CatalogEntry:
        return self._update_entry(norad_id, metadata=metadata)

    def get_metadata(self, norad_id: int) -> ObjectMetadata:
        return self.get_entry(norad_id).metadata

    def record_error(self, norad_id: int, kind: str) -> None:
        """Count a numerical failure against an object; unknown ids are ignored."""
        with self._write_lock:
            current = self._entries.get(norad_id)
            if current is None:
                return
            entries = dict(self._entries)
            entries[norad_id] = replace(
                current, error_count=current.error_count + 1, last_error_kind=kind
            )
            self._publish(entries)

    def remove(self, norad_id: int) -> None:
        with self._write_lock:
            if norad_id not in self._entries:
                raise UnknownObject(norad_id)
            entries = dict(self._entries)
            del entries[norad_id]
            self._publish(entries)
