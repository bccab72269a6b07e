import os
import tempfile
from datetime import datetime, timezone

import pytest

# Point the application at a throwaway database before anything imports orbitwatch.config
_DB_DIR = tempfile.mkdtemp(prefix="orbitwatch-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_DB_DIR}/orbitwatch.db"
os.environ["BACKGROUND_TASKS_ENABLED"] = "false"

EPOCH = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def make_tle(
    norad_id: int,
    altitude_km: float = 500.0,
    inclination_deg: float = 51.6,
    raan_deg: float = 0.0,
    mean_anomaly_deg: float = 0.0,
    eccentricity: float = 0.0,
    arg_perigee_deg: float = 0.0,
    bstar: float = 0.0,
    epoch: datetime = EPOCH,
    name: str | None = None,
    mean_motion: float | None = None,
):
    from orbitwatch.services.orbital_constants import mean_motion_from_altitude
    from orbitwatch.services.tle_validator import format_tle

    return format_tle(
        norad_id,
        epoch,
        inclination_deg,
        raan_deg,
        eccentricity,
        arg_perigee_deg,
        mean_anomaly_deg,
        mean_motion if mean_motion is not None else mean_motion_from_altitude(altitude_km),
        bstar=bstar,
        name=name or f"OBJECT {norad_id}",
    )


def make_entry(tle, metadata=None):
    from orbitwatch.services.catalog_store import CatalogEntry, ObjectMetadata

    return CatalogEntry(tle=tle, ingested_at=EPOCH, metadata=metadata or ObjectMetadata())


def head_on_pair(miss_km: float = 2.0, meet_after_s: float = 1800.0, altitude_km: float = 500.0):
    """Two circular equatorial orbits, one retrograde, that meet ``meet_after_s`` after EPOCH."""
    from orbitwatch.services.orbital_constants import mean_motion_from_altitude

    n_a = mean_motion_from_altitude(altitude_km)
    n_b = mean_motion_from_altitude(altitude_km + miss_km)
    deg_per_s = 360.0 / 86400.0
    m0_b = -(n_a + n_b) * deg_per_s * meet_after_s
    tle_a = make_tle(41001, altitude_km=altitude_km, inclination_deg=0.0, mean_anomaly_deg=0.0)
    tle_b = make_tle(41002, altitude_km=altitude_km + miss_km, inclination_deg=180.0, mean_anomaly_deg=m0_b)
    return tle_a, tle_b


@pytest.fixture()
def tle_factory():
    return make_tle


@pytest.fixture()
def entry_factory():
    return make_entry


@pytest.fixture()
def db_session():
    from sqlalchemy import create_engine
    from sqlalchemy.orm import sessionmaker
    from sqlalchemy.pool import StaticPool

    from orbitwatch.db import Base
    from orbitwatch import models  # noqa: F401

    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    TestSession = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    session = TestSession()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def client(db_session):
    from fastapi.testclient import TestClient

    from orbitwatch.db import get_session
    from orbitwatch.main import app

    def _override():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_session] = _override
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
