"""Global test configuration and fixtures."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from mymoto_telemetry.config import Settings
from mymoto_telemetry.models import DetectionMethod, NormalizedPosition
from mymoto_telemetry.store import FleetStore

T0 = datetime(2026, 3, 2, 0, 0, tzinfo=timezone.utc)

# Nairobi CBD; each 0.005 deg step in latitude is roughly 556 m.
BASE_LAT = -1.2921
BASE_LON = 36.8219
LAT_STEP = 0.005


@pytest.fixture(autouse=True)
def api_tracker_db(tmp_path, monkeypatch):
    """Keep the API call log out of the working tree."""
    path = tmp_path / "api_tracker.db"
    monkeypatch.setenv("API_TRACKER_DB", str(path))
    return path


@pytest.fixture()
def store(tmp_path):
    return FleetStore(str(tmp_path / "fleet.db"))


@pytest.fixture()
def settings(tmp_path):
    return Settings(
        gps51_username="fleet-ops",
        gps51_password="s3cret",
        fleet_db_path=str(tmp_path / "fleet.db"),
    )


def make_position(
    seconds: float,
    *,
    device_id: str = "dev-1",
    ignition_on: bool = True,
    speed: float = 0.0,
    step: int | None = None,
    lat: float | None = None,
    lon: float | None = None,
    method: DetectionMethod = DetectionMethod.STATUS_BIT,
    confidence: float | None = None,
    odometer_km: float | None = None,
    base: datetime = T0,
) -> NormalizedPosition:
    """Position `seconds` after `base`; `step` places it `step` lat steps north."""
    if step is not None:
        lat, lon = BASE_LAT + step * LAT_STEP, BASE_LON
    if confidence is None:
        confidence = {
            DetectionMethod.STATUS_BIT: 0.6,
            DetectionMethod.STRING_PARSE: 0.9,
            DetectionMethod.SPEED_INFERENCE: 0.4 if ignition_on else 0.5,
            DetectionMethod.MULTI_SIGNAL: 0.95,
            DetectionMethod.UNKNOWN: 0.0,
        }[method]
    return NormalizedPosition(
        device_id=device_id,
        gps_time=base + timedelta(seconds=seconds),
        ingested_at=datetime.now(timezone.utc),
        lat=lat,
        lon=lon,
        speed_kmh=speed,
        heading=None,
        battery_percent=None,
        ignition_on=ignition_on,
        ignition_confidence=confidence,
        ignition_detection_method=method,
        odometer_km=odometer_km,
        is_moving=speed > 3,
    )


@pytest.fixture()
def position():
    return make_position
