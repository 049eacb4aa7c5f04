"""Batch jobs: ingestion, trip segmentation, reconciliation and vendor syncs.

Each job handles devices one at a time, isolates failures per device and
returns an aggregate report. Every job has a wall-clock budget; work left
when it runs out is reported as unprocessed and picked up by the next run.
"""

from __future__ import annotations

import time
from collections import defaultdict
from datetime import datetime, timedelta

import structlog

from mymoto_telemetry.config import Settings
from mymoto_telemetry.gps51_client import Gps51Client, Gps51Error
from mymoto_telemetry.models import (
    BatchReport,
    DeviceResult,
    NormalizedPosition,
    RawDeviceReport,
    ReconcileReport,
    Trip,
)
from mymoto_telemetry.normalizer import normalize_report
from mymoto_telemetry.quality import QualityMetrics
from mymoto_telemetry.segmentation import (
    SegmenterState,
    SegmentParams,
    TripSegmenter,
    corroborate_ignition,
    trip_distance_km,
)
from mymoto_telemetry.store import FleetStore, trip_to_dict
from mymoto_telemetry.utils import utcnow

log = structlog.get_logger(__name__)

LAST_POSITION_BATCH = 50
BACKFILL_CHUNK = timedelta(days=1)


class Deadline:
    """Wall-clock budget for one invocation."""

    def __init__(self, seconds: float, clock=time.monotonic) -> None:
        self._clock = clock
        self._end = clock() + seconds

    def expired(self) -> bool:
        return self._clock() >= self._end


def _chunks(items: list, size: int):
    for i in range(0, len(items), size):
        yield items[i:i + size]


def normalize_records(
    records: list[dict],
    settings: Settings,
    now: datetime,
    metrics: QualityMetrics | None = None,
) -> list[NormalizedPosition]:
    """Normalize raw vendor records, dropping ones with no device id."""
    positions = []
    for record in records:
        result = normalize_report(RawDeviceReport.from_payload(record), settings, now)
        if not result.position.device_id:
            log.info("report_without_device_id", keys=sorted(record))
            continue
        if metrics is not None:
            metrics.record(result)
        positions.append(result.position)
    return positions


def _record_trips(store: FleetStore, trips: list[Trip]) -> tuple[int, int]:
    inserted = skipped = 0
    for trip in trips:
        outcome = store.record_trip(trip)
        if outcome in ("inserted", "closed"):
            inserted += 1
        else:
            skipped += 1
    return inserted, skipped


# ── Ingestion ────────────────────────────────────────────────────────────

def ingest_latest(
    client: Gps51Client,
    store: FleetStore,
    settings: Settings,
    device_ids: list[str] | None = None,
    now: datetime | None = None,
    deadline: Deadline | None = None,
) -> BatchReport:
    """Poll latest positions, normalize them and persist history + latest rows."""
    now = now or utcnow()
    deadline = deadline or Deadline(settings.job_deadline_s)
    report = BatchReport(job="ingest")
    metrics = QualityMetrics()

    if device_ids is None:
        try:
            device_ids = [d["device_id"] for d in client.monitor_list() if d["device_id"]]
        except Gps51Error as exc:
            log.error("device_discovery_failed", error=str(exc))
            device_ids = store.known_devices()
            report.extra["discovery_error"] = str(exc)

    batches = list(_chunks(list(device_ids), LAST_POSITION_BATCH))
    for i, batch in enumerate(batches):
        if deadline.expired():
            report.timed_out = True
            report.unprocessed = [d for b in batches[i:] for d in b]
            break
        try:
            records, _ = client.last_positions(batch)
        except Gps51Error as exc:
            log.error("last_positions_failed", devices=len(batch), error=str(exc))
            for device_id in batch:
                report.add(DeviceResult(device_id, "failed", error=str(exc)))
            continue

        by_device: dict[str, list[NormalizedPosition]] = defaultdict(list)
        for position in normalize_records(records, settings, now, metrics):
            by_device[position.device_id].append(position)

        for device_id in batch:
            positions = by_device.get(device_id)
            if not positions:
                report.add(DeviceResult(device_id, "skipped"))
                continue
            try:
                inserted = store.insert_positions(positions)
                store.upsert_latest(max(positions, key=lambda p: p.gps_time))
                report.add(DeviceResult(device_id, positions=inserted))
            except Exception as exc:
                log.exception("store_positions_failed", device_id=device_id)
                report.add(DeviceResult(device_id, "failed", error=str(exc)))

    report.extra["quality"] = metrics.as_dict()
    log.info(
        "ingest_complete",
        succeeded=report.succeeded,
        skipped=report.skipped,
        failed=report.failed,
        timed_out=report.timed_out,
        **{f"method_{k}": v for k, v in metrics.as_dict()["by_method"].items()},
    )
    return report


def backfill_history(
    client: Gps51Client,
    store: FleetStore,
    settings: Settings,
    device_ids: list[str],
    start: datetime,
    end: datetime,
    now: datetime | None = None,
    deadline: Deadline | None = None,
) -> BatchReport:
    """Pull vendor track history day by day and append it to position history."""
    now = now or utcnow()
    deadline = deadline or Deadline(settings.job_deadline_s)
    report = BatchReport(job="history_backfill")
    metrics = QualityMetrics()

    for i, device_id in enumerate(device_ids):
        if deadline.expired():
            report.timed_out = True
            report.unprocessed = list(device_ids[i:])
            break
        result = DeviceResult(device_id)
        try:
            chunk_start = start
            while chunk_start < end:
                chunk_end = min(chunk_start + BACKFILL_CHUNK, end)
                records = client.query_track(device_id, chunk_start, chunk_end)
                positions = normalize_records(records, settings, now, metrics)
                result.positions += store.insert_positions(
                    [p for p in positions if p.device_id == device_id]
                )
                chunk_start = chunk_end
            if not result.positions:
                result.outcome = "skipped"
        except Exception as exc:
            log.exception("history_backfill_failed", device_id=device_id)
            result.outcome = "failed"
            result.error = str(exc)
        report.add(result)

    report.extra["quality"] = metrics.as_dict()
    return report


def sync_acc_intervals(
    client: Gps51Client,
    store: FleetStore,
    settings: Settings,
    device_ids: list[str],
    start: datetime,
    end: datetime,
    deadline: Deadline | None = None,
) -> BatchReport:
    """Store vendor ACC on/off intervals used to corroborate ignition."""
    deadline = deadline or Deadline(settings.job_deadline_s)
    report = BatchReport(job="acc_sync")
    for i, device_id in enumerate(device_ids):
        if deadline.expired():
            report.timed_out = True
            report.unprocessed = list(device_ids[i:])
            break
        try:
            intervals = client.acc_report([device_id], start, end)
            inserted = store.insert_acc_intervals(intervals)
            outcome = "succeeded" if intervals else "skipped"
            report.add(DeviceResult(device_id, outcome, positions=inserted))
        except Exception as exc:
            log.exception("acc_sync_failed", device_id=device_id)
            report.add(DeviceResult(device_id, "failed", error=str(exc)))
    return report


def sync_vendor_trips(
    client: Gps51Client,
    store: FleetStore,
    settings: Settings,
    device_ids: list[str],
    start: datetime,
    end: datetime,
    deadline: Deadline | None = None,
) -> BatchReport:
    """Store the vendor's own trip list for comparison with local trips.

    Per device, trips_inserted counts new vendor trips and trips_skipped
    counts ones already stored (refreshed in place).
    """
    deadline = deadline or Deadline(settings.job_deadline_s)
    report = BatchReport(job="vendor_trip_sync")
    distance_km = 0.0
    for i, device_id in enumerate(device_ids):
        if deadline.expired():
            report.timed_out = True
            report.unprocessed = list(device_ids[i:])
            break
        try:
            trips = client.query_trips(device_id, start, end)
            inserted, updated = store.upsert_vendor_trips(trips)
            distance_km += sum(t.distance_km or 0.0 for t in trips)
            outcome = "succeeded" if trips else "skipped"
            report.add(DeviceResult(
                device_id, outcome, trips_inserted=inserted, trips_skipped=updated
            ))
        except Exception as exc:
            log.exception("vendor_trip_sync_failed", device_id=device_id)
            report.add(DeviceResult(device_id, "failed", error=str(exc)))
    report.extra["vendor_distance_km"] = round(distance_km, 3)
    log.info(
        "vendor_trip_sync_complete",
        succeeded=report.succeeded,
        skipped=report.skipped,
        failed=report.failed,
        timed_out=report.timed_out,
    )
    return report


# ── Segmentation ─────────────────────────────────────────────────────────

def segment_device_incremental(
    store: FleetStore,
    settings: Settings,
    device_id: str,
    now: datetime | None = None,
) -> DeviceResult:
    """Feed positions newer than the device's cursor into its saved state."""
    now = now or utcnow()
    params = SegmentParams.from_settings(settings)
    status = store.get_sync_status(device_id)
    if status and status["last_position_time"] is not None:
        cursor = status["last_position_time"]
        state = SegmenterState.from_dict(status["state"])
    else:
        cursor = now - timedelta(hours=settings.initial_lookback_hours)
        state = SegmenterState()

    store.save_sync_status(device_id, "processing")
    positions = store.positions_after(device_id, cursor, limit=settings.position_batch_limit)
    if not positions:
        store.save_sync_status(device_id, "completed")
        return DeviceResult(device_id, "skipped")

    intervals = store.acc_intervals_between(
        device_id, positions[0].gps_time, positions[-1].gps_time
    )
    positions = corroborate_ignition(positions, intervals, settings.ignition.acc_report)

    segmenter = TripSegmenter(device_id, params, state)
    closed = segmenter.feed_many(positions)
    inserted, skipped = _record_trips(store, closed)

    open_trip = segmenter.open_trip()
    if open_trip is not None:
        store.save_open_trip(open_trip)
    else:
        store.discard_open_trip(device_id)

    store.save_sync_status(
        device_id,
        "completed",
        last_position_time=positions[-1].gps_time,
        state=segmenter.state.to_dict(),
        trips_added=inserted,
    )
    log.info(
        "device_segmented",
        device_id=device_id,
        positions=len(positions),
        trips_inserted=inserted,
        trips_skipped=skipped,
        open_trip=open_trip is not None,
    )
    return DeviceResult(
        device_id,
        positions=len(positions),
        trips_inserted=inserted,
        trips_skipped=skipped,
    )


def segment_incremental(
    store: FleetStore,
    settings: Settings,
    device_ids: list[str] | None = None,
    now: datetime | None = None,
    deadline: Deadline | None = None,
) -> BatchReport:
    """Incremental segmentation for every device, isolated per device."""
    now = now or utcnow()
    deadline = deadline or Deadline(settings.job_deadline_s)
    devices = list(device_ids) if device_ids is not None else store.known_devices()
    report = BatchReport(job="segment")
    for i, device_id in enumerate(devices):
        if deadline.expired():
            report.timed_out = True
            report.unprocessed = devices[i:]
            break
        try:
            report.add(segment_device_incremental(store, settings, device_id, now))
        except Exception as exc:
            log.exception("segmentation_failed", device_id=device_id)
            store.save_sync_status(device_id, "error", error_message=str(exc))
            report.add(DeviceResult(device_id, "failed", error=str(exc)))
    return report


def backfill_device(
    store: FleetStore,
    settings: Settings,
    device_id: str,
    start: datetime,
    end: datetime,
    deadline: Deadline,
) -> tuple[DeviceResult, Trip | None, bool]:
    """Segment [start, end) day by day from a fresh state.

    Progress is checkpointed after every chunk, so a rerun over the same
    range resumes where the last one stopped. Returns the device result,
    the trip still open at the range end, and whether the range finished.
    """
    params = SegmentParams.from_settings(settings)
    checkpoint = store.get_checkpoint(device_id, start, end)
    if checkpoint and not checkpoint["completed"]:
        chunk_start = checkpoint["next_chunk_start"]
        state = SegmenterState.from_dict(checkpoint["state"])
        log.info("backfill_resumed", device_id=device_id, from_time=chunk_start.isoformat())
    else:
        chunk_start = start
        state = SegmenterState()

    segmenter = TripSegmenter(device_id, params, state)
    result = DeviceResult(device_id)
    while chunk_start < end:
        if deadline.expired():
            return result, None, False
        chunk_end = min(chunk_start + BACKFILL_CHUNK, end)
        positions = store.positions_between(device_id, chunk_start, chunk_end)
        if positions:
            intervals = store.acc_intervals_between(
                device_id, positions[0].gps_time, positions[-1].gps_time
            )
            positions = corroborate_ignition(positions, intervals, settings.ignition.acc_report)
            inserted, skipped = _record_trips(store, segmenter.feed_many(positions))
            result.positions += len(positions)
            result.trips_inserted += inserted
            result.trips_skipped += skipped
        chunk_start = chunk_end
        store.save_checkpoint(
            device_id, start, end, chunk_start, segmenter.state.to_dict(),
            completed=chunk_start >= end,
        )
    if not result.positions:
        result.outcome = "skipped"
    return result, segmenter.open_trip(), True


def segment_backfill(
    store: FleetStore,
    settings: Settings,
    start: datetime,
    end: datetime,
    device_ids: list[str] | None = None,
    deadline: Deadline | None = None,
) -> BatchReport:
    """Backfill segmentation over an explicit historical range.

    Open trips at the range end are reported but not persisted; the
    incremental job owns the in-progress row.
    """
    if end <= start:
        raise ValueError("backfill range end must be after start")
    deadline = deadline or Deadline(settings.job_deadline_s)
    devices = list(device_ids) if device_ids is not None else store.known_devices()
    report = BatchReport(job="backfill")
    open_trips = []
    for i, device_id in enumerate(devices):
        try:
            result, open_trip, finished = backfill_device(
                store, settings, device_id, start, end, deadline
            )
        except Exception as exc:
            log.exception("backfill_failed", device_id=device_id)
            report.add(DeviceResult(device_id, "failed", error=str(exc)))
            continue
        if not finished:
            report.timed_out = True
            report.unprocessed = devices[i:]
            if result.positions:
                report.add(result)
            break
        report.add(result)
        if open_trip is not None:
            open_trips.append(trip_to_dict(open_trip))
    report.extra["open_at_range_end"] = open_trips
    return report


# ── Reconciliation ───────────────────────────────────────────────────────

def reconcile_trip_coordinates(
    store: FleetStore,
    settings: Settings,
    device_id: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
) -> ReconcileReport:
    """Fill zero start/end coordinates from the nearest position in time."""
    window = timedelta(minutes=settings.backfill_window_minutes)
    params = SegmentParams.from_settings(settings)
    report = ReconcileReport()

    for trip_id, trip in store.trips_missing_coordinates(device_id, start, end):
        report.trips_checked += 1
        try:
            start_lat, start_lon = trip.start_lat, trip.start_lon
            end_lat, end_lon = trip.end_lat or 0.0, trip.end_lon or 0.0
            filled = 0
            if not start_lat or not start_lon:
                nearest = store.nearest_position(trip.device_id, trip.start_time, window)
                if nearest is not None:
                    start_lat, start_lon = nearest.lat, nearest.lon
                    filled += 1
            if not end_lat or not end_lon:
                nearest = store.nearest_position(trip.device_id, trip.end_time, window)
                if nearest is not None:
                    end_lat, end_lon = nearest.lat, nearest.lon
                    filled += 1
            if not filled:
                continue

            positions = store.positions_between(
                trip.device_id, trip.start_time, trip.end_time + timedelta(microseconds=1)
            )
            distance = trip_distance_km(positions, params)
            if distance <= 0:
                distance = trip.distance_km
            store.update_trip_coordinates(
                trip_id, start_lat, start_lon, end_lat, end_lon, distance
            )
            report.trips_fixed += 1
            report.coordinates_backfilled += filled
        except Exception as exc:
            log.exception("reconcile_failed", trip_id=trip_id)
            report.errors.append(f"trip {trip_id}: {exc}")

    log.info("reconcile_complete", **report.as_dict())
    return report
