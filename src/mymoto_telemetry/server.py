"""MyMoto Fleet MCP server: telemetry jobs and trip queries for operators."""

from __future__ import annotations

import sys
from datetime import datetime, timedelta, timezone

from dotenv import load_dotenv

load_dotenv()

from mcp.server.fastmcp import FastMCP

from mymoto_telemetry import pipeline
from mymoto_telemetry.config import Settings
from mymoto_telemetry.gps51_client import Gps51Client
from mymoto_telemetry.log import setup_logging
from mymoto_telemetry.quality import QualityAnalyzer
from mymoto_telemetry.store import FleetStore, trip_to_dict
from mymoto_telemetry.utils import utcnow

# stdout carries the JSON-RPC stream
setup_logging("mymoto-mcp", stream=sys.stderr)

mcp = FastMCP(
    "MyMoto Fleet Telemetry",
    instructions=(
        "You operate the MyMoto Fleet telemetry core for GPS51 trackers. You can pull "
        "the latest positions, segment them into trips, backfill or reconcile trip "
        "history, and inspect ignition detection quality per device. Times are ISO-8601; "
        "naive times are read as UTC."
    ),
)

# Shared state (initialized lazily on first use)
_settings: Settings | None = None
_store: FleetStore | None = None
_client: Gps51Client | None = None


def _get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


def _get_store() -> FleetStore:
    global _store
    if _store is None:
        _store = FleetStore(_get_settings().fleet_db_path)
    return _store


def _get_client() -> Gps51Client:
    global _client
    if _client is None:
        _client = Gps51Client(_get_settings())
        _client.login()
    return _client


def _parse(value: str | None) -> datetime | None:
    if not value:
        return None
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Tool 1: Sync latest positions
# ---------------------------------------------------------------------------
@mcp.tool()
def sync_latest_positions(device_ids: list[str] | None = None) -> dict:
    """Poll GPS51 for the latest position of each device and store it.

    Leave device_ids empty to poll every device on the account. Returns
    per-device outcomes plus ignition detection counts for the batch.
    """
    try:
        report = pipeline.ingest_latest(
            _get_client(), _get_store(), _get_settings(), device_ids=device_ids or None
        )
        return report.as_dict()
    except Exception as e:
        return {"error": str(e)}


# ---------------------------------------------------------------------------
# Tool 2: Segment trips
# ---------------------------------------------------------------------------
@mcp.tool()
def segment_trips(device_ids: list[str] | None = None) -> dict:
    """Run incremental trip segmentation from each device's saved cursor."""
    try:
        report = pipeline.segment_incremental(
            _get_store(), _get_settings(), device_ids=device_ids or None
        )
        return report.as_dict()
    except Exception as e:
        return {"error": str(e)}


# ---------------------------------------------------------------------------
# Tool 3: Backfill trips
# ---------------------------------------------------------------------------
@mcp.tool()
def backfill_trips(start: str, end: str, device_ids: list[str] | None = None) -> dict:
    """Segment stored positions over a historical range.

    Args:
        start: Range start, ISO-8601.
        end: Range end, ISO-8601 (exclusive).
        device_ids: Devices to backfill; all known devices when omitted.

    If the run reports timed_out, call again with the same range to resume.
    """
    try:
        report = pipeline.segment_backfill(
            _get_store(), _get_settings(), _parse(start), _parse(end),
            device_ids=device_ids or None,
        )
        return report.as_dict()
    except Exception as e:
        return {"error": str(e)}


# ---------------------------------------------------------------------------
# Tool 4: Reconcile trips
# ---------------------------------------------------------------------------
@mcp.tool()
def reconcile_trips(device_id: str | None = None, days: int = 7) -> dict:
    """Fill zero start/end coordinates on recent trips from nearby positions."""
    try:
        start = utcnow() - timedelta(days=days)
        report = pipeline.reconcile_trip_coordinates(
            _get_store(), _get_settings(), device_id=device_id, start=start
        )
        return report.as_dict()
    except Exception as e:
        return {"error": str(e)}


# ---------------------------------------------------------------------------
# Tool 5: Ignition quality
# ---------------------------------------------------------------------------
@mcp.tool()
def check_ignition_quality(hours: int = 24) -> dict:
    """Ignition detection breakdown per device and per method.

    Flags devices whose average confidence is low; those usually lack a
    wired ACC line and rely on speed inference.
    """
    analyzer = QualityAnalyzer(_get_store())
    try:
        return analyzer.ignition_quality(hours)
    except Exception as e:
        return {"error": str(e)}
    finally:
        analyzer.close()


# ---------------------------------------------------------------------------
# Tool 6: Device trips
# ---------------------------------------------------------------------------
@mcp.tool()
def get_device_trips(device_id: str, days: int = 1, include_open: bool = True) -> dict:
    """Trips for one device over the last N days, oldest first."""
    try:
        start = utcnow() - timedelta(days=days)
        trips = _get_store().trips_for_device(
            device_id, start=start, include_open=include_open
        )
        return {
            "device_id": device_id,
            "count": len(trips),
            "total_distance_km": round(sum(t.distance_km for t in trips), 2),
            "trips": [trip_to_dict(t) for t in trips],
        }
    except Exception as e:
        return {"error": str(e)}


# ---------------------------------------------------------------------------
# Tool 7: Sync status
# ---------------------------------------------------------------------------
@mcp.tool()
def get_sync_status() -> dict:
    """Per-device segmentation cursor, status and last error."""
    try:
        rows = _get_store().list_sync_status()
        return {
            "count": len(rows),
            "errors": sum(1 for r in rows if r["sync_status"] == "error"),
            "devices": rows,
        }
    except Exception as e:
        return {"error": str(e)}


# ---------------------------------------------------------------------------
# Tool 8: Vendor trips
# ---------------------------------------------------------------------------
@mcp.tool()
def sync_vendor_trips(start: str, end: str, device_ids: list[str] | None = None) -> dict:
    """Pull the trips GPS51 itself computed for a range and store them.

    Args:
        start: Range start, ISO-8601.
        end: Range end, ISO-8601.
        device_ids: Devices to sync; all known devices when omitted.
    """
    try:
        store = _get_store()
        report = pipeline.sync_vendor_trips(
            _get_client(), store, _get_settings(),
            device_ids or store.known_devices(), _parse(start), _parse(end),
        )
        return report.as_dict()
    except Exception as e:
        return {"error": str(e)}


# ---------------------------------------------------------------------------
# Tool 9: Compare with vendor
# ---------------------------------------------------------------------------
@mcp.tool()
def compare_vendor_trips(device_id: str, days: int = 7) -> dict:
    """Line local trips up against synced GPS51 trips for the last N days.

    Reports trip count and distance deltas, matched pairs with their start
    and end offsets, and trips found on only one side. Run sync_vendor_trips
    first for the same period.
    """
    analyzer = QualityAnalyzer(_get_store())
    try:
        end = utcnow()
        return analyzer.vendor_trip_comparison(device_id, end - timedelta(days=days), end)
    except Exception as e:
        return {"error": str(e)}
    finally:
        analyzer.close()


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------
def main():
    """Run the MyMoto Fleet MCP server."""
    mcp.run()


if __name__ == "__main__":
    main()
