"""Flask HTTP surface for scheduled telemetry jobs and operator reads."""

from __future__ import annotations

import os
from datetime import datetime, timezone

from dotenv import load_dotenv
from flask import Flask, jsonify, request

load_dotenv()

from mymoto_telemetry import api_tracker
from mymoto_telemetry import pipeline
from mymoto_telemetry.config import Settings
from mymoto_telemetry.gps51_client import Gps51Client
from mymoto_telemetry.log import setup_logging
from mymoto_telemetry.normalizer import is_online
from mymoto_telemetry.quality import QualityAnalyzer
from mymoto_telemetry.store import FleetStore, trip_to_dict
from mymoto_telemetry.utils import to_db_time, utcnow

log = setup_logging("mymoto-jobs")

app = Flask(__name__)

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
    return _client


def _parse_time(value: str | None, name: str) -> datetime | None:
    """ISO-8601 timestamp from a request; naive values are taken as UTC."""
    if value is None or value == "":
        return None
    try:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        raise ValueError(f"'{name}' must be an ISO-8601 timestamp, got {value!r}") from None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _body() -> dict:
    return request.get_json(silent=True) or {}


def _required_range(body: dict) -> tuple[datetime, datetime]:
    start = _parse_time(body.get("start"), "start")
    end = _parse_time(body.get("end"), "end")
    if start is None or end is None:
        raise ValueError("'start' and 'end' are required")
    if end <= start:
        raise ValueError("'end' must be after 'start'")
    return start, end


def _device_ids(body: dict) -> list[str] | None:
    ids = body.get("device_ids")
    if ids is None:
        return None
    if not isinstance(ids, list):
        raise ValueError("'device_ids' must be a list")
    return [str(d) for d in ids]


# ── Jobs ─────────────────────────────────────────────────────────────────

@app.route("/api/jobs/ingest", methods=["POST"])
def job_ingest():
    """Poll latest positions from GPS51 and store them normalized."""
    try:
        device_ids = _device_ids(_body())
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    try:
        report = pipeline.ingest_latest(
            _get_client(), _get_store(), _get_settings(), device_ids=device_ids
        )
        return jsonify(report.as_dict())
    except Exception as e:
        log.exception("job_failed", job="ingest")
        return jsonify({"error": str(e)}), 500


@app.route("/api/jobs/segment", methods=["POST"])
def job_segment():
    """Incremental trip segmentation from each device's cursor."""
    try:
        device_ids = _device_ids(_body())
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    try:
        report = pipeline.segment_incremental(
            _get_store(), _get_settings(), device_ids=device_ids
        )
        return jsonify(report.as_dict())
    except Exception as e:
        log.exception("job_failed", job="segment")
        return jsonify({"error": str(e)}), 500


@app.route("/api/jobs/backfill", methods=["POST"])
def job_backfill():
    """Segment an explicit historical range; rerun to resume after a timeout."""
    body = _body()
    try:
        start, end = _required_range(body)
        device_ids = _device_ids(body)
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    try:
        report = pipeline.segment_backfill(
            _get_store(), _get_settings(), start, end, device_ids=device_ids
        )
        return jsonify(report.as_dict())
    except Exception as e:
        log.exception("job_failed", job="backfill")
        return jsonify({"error": str(e)}), 500


@app.route("/api/jobs/reconcile", methods=["POST"])
def job_reconcile():
    """Fill missing trip coordinates from nearby positions."""
    body = _body()
    try:
        start = _parse_time(body.get("start"), "start")
        end = _parse_time(body.get("end"), "end")
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    try:
        report = pipeline.reconcile_trip_coordinates(
            _get_store(), _get_settings(),
            device_id=body.get("device_id"), start=start, end=end,
        )
        return jsonify(report.as_dict())
    except Exception as e:
        log.exception("job_failed", job="reconcile")
        return jsonify({"error": str(e)}), 500


@app.route("/api/jobs/acc-sync", methods=["POST"])
def job_acc_sync():
    """Pull vendor ACC intervals for the given devices and range."""
    body = _body()
    try:
        start, end = _required_range(body)
        device_ids = _device_ids(body)
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    try:
        store = _get_store()
        report = pipeline.sync_acc_intervals(
            _get_client(), store, _get_settings(),
            device_ids if device_ids is not None else store.known_devices(),
            start, end,
        )
        return jsonify(report.as_dict())
    except Exception as e:
        log.exception("job_failed", job="acc_sync")
        return jsonify({"error": str(e)}), 500


@app.route("/api/jobs/history-backfill", methods=["POST"])
def job_history_backfill():
    """Pull vendor track history into position history."""
    body = _body()
    try:
        start, end = _required_range(body)
        device_ids = _device_ids(body)
        if not device_ids:
            raise ValueError("'device_ids' is required")
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    try:
        report = pipeline.backfill_history(
            _get_client(), _get_store(), _get_settings(), device_ids, start, end
        )
        return jsonify(report.as_dict())
    except Exception as e:
        log.exception("job_failed", job="history_backfill")
        return jsonify({"error": str(e)}), 500


@app.route("/api/jobs/vendor-trips-sync", methods=["POST"])
def job_vendor_trips_sync():
    """Pull the vendor's own trip list for the given devices and range."""
    body = _body()
    try:
        start, end = _required_range(body)
        device_ids = _device_ids(body)
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    try:
        store = _get_store()
        report = pipeline.sync_vendor_trips(
            _get_client(), store, _get_settings(),
            device_ids if device_ids is not None else store.known_devices(),
            start, end,
        )
        return jsonify(report.as_dict())
    except Exception as e:
        log.exception("job_failed", job="vendor_trip_sync")
        return jsonify({"error": str(e)}), 500


# ── Reads ────────────────────────────────────────────────────────────────

@app.route("/api/devices/<device_id>/trips")
def device_trips(device_id: str):
    """Trips for a device, optionally bounded by ?from= and ?to=."""
    try:
        start = _parse_time(request.args.get("from"), "from")
        end = _parse_time(request.args.get("to"), "to")
        limit = int(request.args.get("limit", 100))
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    include_open = request.args.get("include_open", "true").lower() == "true"
    try:
        trips = _get_store().trips_for_device(
            device_id, start=start, end=end, include_open=include_open, limit=limit
        )
        return jsonify({"count": len(trips), "trips": [trip_to_dict(t) for t in trips]})
    except Exception as e:
        return jsonify({"error": str(e)}), 500


@app.route("/api/devices/<device_id>/latest")
def device_latest(device_id: str):
    """Latest normalized position, with an online flag."""
    try:
        settings = _get_settings()
        position = _get_store().get_latest(device_id)
        if position is None:
            return jsonify({"error": f"No position for device {device_id}"}), 404
        return jsonify({
            "device_id": position.device_id,
            "gps_time": to_db_time(position.gps_time),
            "lat": position.lat,
            "lon": position.lon,
            "speed_kmh": position.speed_kmh,
            "heading": position.heading,
            "battery_percent": position.battery_percent,
            "ignition_on": position.ignition_on,
            "ignition_confidence": position.ignition_confidence,
            "ignition_detection_method": position.ignition_detection_method.value,
            "is_moving": position.is_moving,
            "data_quality": position.data_quality,
            "online": is_online(position, utcnow(), settings.offline_threshold_minutes),
        })
    except Exception as e:
        return jsonify({"error": str(e)}), 500


@app.route("/api/devices/<device_id>/vendor-comparison")
def device_vendor_comparison(device_id: str):
    """Local trips against synced vendor trips over ?from= and ?to=."""
    try:
        start, end = _required_range(
            {"start": request.args.get("from"), "end": request.args.get("to")}
        )
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    analyzer = QualityAnalyzer(_get_store())
    try:
        return jsonify(analyzer.vendor_trip_comparison(device_id, start, end))
    except Exception as e:
        return jsonify({"error": str(e)}), 500
    finally:
        analyzer.close()


@app.route("/api/quality")
def quality_view():
    """Ignition detection quality over the last ?hours= (default 24)."""
    try:
        hours = int(request.args.get("hours", 24))
    except ValueError:
        return jsonify({"error": "'hours' must be an integer"}), 400
    analyzer = QualityAnalyzer(_get_store())
    try:
        return jsonify(analyzer.ignition_quality(hours))
    except Exception as e:
        return jsonify({"error": str(e)}), 500
    finally:
        analyzer.close()


@app.route("/api/sync-status")
def sync_status_view():
    """Per-device segmentation cursors and last errors."""
    try:
        rows = _get_store().list_sync_status()
        return jsonify({"count": len(rows), "devices": rows})
    except Exception as e:
        return jsonify({"error": str(e)}), 500


@app.route("/api/api-usage")
def api_usage_view():
    """GPS51 call usage summary and recent calls."""
    try:
        hours = int(request.args.get("hours", 24))
        limit = int(request.args.get("limit", 50))
    except ValueError:
        return jsonify({"error": "'hours' and 'limit' must be integers"}), 400
    try:
        api_tracker.init_db()
        backoff = api_tracker.get_backoff_until("gps51")
        return jsonify({
            "summary": api_tracker.get_summary(hours=hours),
            "recent": api_tracker.get_recent(limit=limit),
            "vendor_statuses": api_tracker.get_status_breakdown(hours=hours),
            "backoff_until": (
                to_db_time(datetime.fromtimestamp(backoff, tz=timezone.utc)) if backoff else None
            ),
        })
    except Exception as e:
        return jsonify({"error": str(e)}), 500


# ── Entry Point ──────────────────────────────────────────────────────────

def main():
    """Run the job server."""
    port = int(os.getenv("DASHBOARD_PORT", "5030"))
    debug = os.getenv("DASHBOARD_DEBUG", "false").lower() == "true"
    log.info("job_server_starting", port=port)
    app.run(host="0.0.0.0", port=port, debug=debug, threaded=True)


if __name__ == "__main__":
    main()
