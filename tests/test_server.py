"""Tests for the MCP operator tools."""

from datetime import timedelta

import pytest
from conftest import make_position

from mymoto_telemetry import server
from mymoto_telemetry.models import VendorTrip
from mymoto_telemetry.utils import utcnow


@pytest.fixture(autouse=True)
def wired(store, settings, monkeypatch):
    monkeypatch.setattr(server, "_settings", settings)
    monkeypatch.setattr(server, "_store", store)


def test_segment_and_list_trips(store):
    base = utcnow() - timedelta(hours=2)
    store.insert_positions([
        make_position(0, speed=0, step=0, base=base),
        make_position(120, speed=40, step=1, base=base),
        make_position(600, ignition_on=False, speed=0, step=2, base=base),
    ])
    result = server.segment_trips()
    assert result["succeeded"] == 1

    trips = server.get_device_trips("dev-1", days=1)
    assert trips["count"] == 1
    assert trips["total_distance_km"] > 0


def test_backfill_bad_range_returns_error():
    result = server.backfill_trips("2026-03-02T00:00:00", "2026-03-01T00:00:00")
    assert "error" in result


def test_sync_status_counts_errors(store):
    store.save_sync_status("dev-1", "error", error_message="boom")
    store.save_sync_status("dev-2", "completed")
    result = server.get_sync_status()
    assert result["count"] == 2
    assert result["errors"] == 1


def test_check_ignition_quality_empty():
    assert server.check_ignition_quality(hours=1)["positions"] == 0


def test_vendor_trip_sync_and_comparison(store, monkeypatch):
    class TripsOnly:
        def query_trips(self, device_id, start, end):
            return [VendorTrip(device_id, start, start + timedelta(minutes=10), distance_km=1.0)]

    monkeypatch.setattr(server, "_client", TripsOnly())
    start = (utcnow() - timedelta(hours=3)).isoformat()
    end = utcnow().isoformat()
    result = server.sync_vendor_trips(start, end, device_ids=["dev-1"])
    assert result["succeeded"] == 1

    comparison = server.compare_vendor_trips("dev-1", days=1)
    assert comparison["vendor_trips"] == 1
    assert comparison["local_trips"] == 0
    assert len(comparison["vendor_only"]) == 1
