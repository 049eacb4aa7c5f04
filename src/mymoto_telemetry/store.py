"""SQLite store for normalized positions, trips and sync bookkeeping.

Every write is an upsert or an insert-or-skip so concurrent invocations
never need long-held locks; the unique constraints are the final arbiter.
"""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta

import structlog

from mymoto_telemetry.models import (
    AccStateInterval,
    DetectionMethod,
    NormalizedPosition,
    Trip,
    VendorTrip,
)
from mymoto_telemetry.utils import from_db_time, to_db_time, utcnow

log = structlog.get_logger(__name__)

# In-progress row. A provisional row the segmenter no longer backs is kept
# with close_reason 'discarded' rather than deleted.
_OPEN = "end_time IS NULL AND close_reason = 'open'"

_POSITION_COLUMNS = (
    "device_id", "gps_time", "ingested_at", "lat", "lon", "speed_kmh", "heading",
    "battery_percent", "ignition_on", "ignition_confidence",
    "ignition_detection_method", "odometer_km", "signal_strength", "altitude",
    "is_moving", "timestamp_source", "data_quality",
)

_POSITION_DDL = """
    device_id                 TEXT NOT NULL,
    gps_time                  TEXT NOT NULL,
    ingested_at               TEXT NOT NULL,
    lat                       REAL,
    lon                       REAL,
    speed_kmh                 REAL NOT NULL DEFAULT 0,
    heading                   REAL,
    battery_percent           INTEGER,
    ignition_on               INTEGER NOT NULL DEFAULT 0,
    ignition_confidence       REAL NOT NULL DEFAULT 0,
    ignition_detection_method TEXT NOT NULL DEFAULT 'unknown',
    odometer_km               REAL,
    signal_strength           INTEGER,
    altitude                  REAL,
    is_moving                 INTEGER NOT NULL DEFAULT 0,
    timestamp_source          TEXT NOT NULL DEFAULT 'gps',
    data_quality              TEXT NOT NULL DEFAULT 'low'
"""


def _position_values(p: NormalizedPosition) -> tuple:
    return (
        p.device_id,
        to_db_time(p.gps_time),
        to_db_time(p.ingested_at),
        p.lat,
        p.lon,
        p.speed_kmh,
        p.heading,
        p.battery_percent,
        1 if p.ignition_on else 0,
        p.ignition_confidence,
        p.ignition_detection_method.value,
        p.odometer_km,
        p.signal_strength,
        p.altitude,
        1 if p.is_moving else 0,
        p.timestamp_source,
        p.data_quality,
    )


def _row_to_position(row: sqlite3.Row) -> NormalizedPosition:
    return NormalizedPosition(
        device_id=row["device_id"],
        gps_time=from_db_time(row["gps_time"]),
        ingested_at=from_db_time(row["ingested_at"]),
        lat=row["lat"],
        lon=row["lon"],
        speed_kmh=row["speed_kmh"],
        heading=row["heading"],
        battery_percent=row["battery_percent"],
        ignition_on=bool(row["ignition_on"]),
        ignition_confidence=row["ignition_confidence"],
        ignition_detection_method=DetectionMethod(row["ignition_detection_method"]),
        odometer_km=row["odometer_km"],
        signal_strength=row["signal_strength"],
        altitude=row["altitude"],
        is_moving=bool(row["is_moving"]),
        timestamp_source=row["timestamp_source"],
        data_quality=row["data_quality"],
    )


def _row_to_trip(row: sqlite3.Row) -> Trip:
    return Trip(
        device_id=row["device_id"],
        start_time=from_db_time(row["start_time"]),
        end_time=from_db_time(row["end_time"]),
        start_lat=row["start_lat"],
        start_lon=row["start_lon"],
        end_lat=row["end_lat"],
        end_lon=row["end_lon"],
        distance_km=row["distance_km"],
        max_speed_kmh=row["max_speed_kmh"],
        avg_speed_kmh=row["avg_speed_kmh"],
        close_reason=row["close_reason"],
        detection_mode=row["detection_mode"],
    )


def _row_to_interval(row: sqlite3.Row) -> AccStateInterval:
    return AccStateInterval(
        device_id=row["device_id"],
        state=row["state"],
        begin_time=from_db_time(row["begin_time"]),
        end_time=from_db_time(row["end_time"]),
        begin_lat=row["begin_lat"],
        begin_lon=row["begin_lon"],
        end_lat=row["end_lat"],
        end_lon=row["end_lon"],
        source=row["source"],
    )


def _row_to_vendor_trip(row: sqlite3.Row) -> VendorTrip:
    return VendorTrip(
        device_id=row["device_id"],
        start_time=from_db_time(row["start_time"]),
        end_time=from_db_time(row["end_time"]),
        start_lat=row["start_lat"],
        start_lon=row["start_lon"],
        end_lat=row["end_lat"],
        end_lon=row["end_lon"],
        distance_km=row["distance_km"],
        avg_speed_kmh=row["avg_speed_kmh"],
        max_speed_kmh=row["max_speed_kmh"],
        raw=json.loads(row["raw_json"]) if row["raw_json"] else {},
    )


def vendor_trip_to_dict(trip: VendorTrip) -> dict:
    return {
        "device_id": trip.device_id,
        "start_time": to_db_time(trip.start_time),
        "end_time": to_db_time(trip.end_time) if trip.end_time else None,
        "start_lat": trip.start_lat,
        "start_lon": trip.start_lon,
        "end_lat": trip.end_lat,
        "end_lon": trip.end_lon,
        "distance_km": trip.distance_km,
        "duration_seconds": trip.duration_seconds,
        "avg_speed_kmh": trip.avg_speed_kmh,
        "max_speed_kmh": trip.max_speed_kmh,
    }


def trip_to_dict(trip: Trip) -> dict:
    return {
        "device_id": trip.device_id,
        "start_time": to_db_time(trip.start_time),
        "end_time": to_db_time(trip.end_time) if trip.end_time else None,
        "start_lat": trip.start_lat,
        "start_lon": trip.start_lon,
        "end_lat": trip.end_lat,
        "end_lon": trip.end_lon,
        "distance_km": trip.distance_km,
        "duration_seconds": trip.duration_seconds,
        "max_speed_kmh": trip.max_speed_kmh,
        "avg_speed_kmh": trip.avg_speed_kmh,
        "close_reason": trip.close_reason,
        "detection_mode": trip.detection_mode,
    }


class FleetStore:
    """Position and trip persistence over a single SQLite file."""

    def __init__(self, db_path: str = "fleet.db") -> None:
        self.db_path = db_path
        self.init_db()

    @contextmanager
    def _db(self):
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def init_db(self) -> None:
        """Create tables and indexes if they don't exist."""
        with self._db() as conn:
            conn.execute(f"""
                CREATE TABLE IF NOT EXISTS normalized_positions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    {_POSITION_DDL},
                    UNIQUE (device_id, gps_time)
                )
            """)
            conn.execute(f"""
                CREATE TABLE IF NOT EXISTS latest_positions (
                    {_POSITION_DDL},
                    PRIMARY KEY (device_id)
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS trips (
                    id               INTEGER PRIMARY KEY AUTOINCREMENT,
                    device_id        TEXT NOT NULL,
                    start_time       TEXT NOT NULL,
                    end_time         TEXT,
                    start_lat        REAL NOT NULL DEFAULT 0,
                    start_lon        REAL NOT NULL DEFAULT 0,
                    end_lat          REAL,
                    end_lon          REAL,
                    distance_km      REAL NOT NULL DEFAULT 0,
                    duration_seconds INTEGER,
                    max_speed_kmh    REAL NOT NULL DEFAULT 0,
                    avg_speed_kmh    REAL NOT NULL DEFAULT 0,
                    close_reason     TEXT NOT NULL DEFAULT 'open',
                    detection_mode   TEXT NOT NULL DEFAULT 'ignition',
                    created_at       TEXT NOT NULL,
                    updated_at       TEXT NOT NULL,
                    UNIQUE (device_id, start_time, end_time)
                )
            """)
            # At most one in-progress trip per device
            conn.execute(f"""
                CREATE UNIQUE INDEX IF NOT EXISTS idx_trips_open
                ON trips (device_id) WHERE {_OPEN}
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS acc_state_intervals (
                    id         INTEGER PRIMARY KEY AUTOINCREMENT,
                    device_id  TEXT NOT NULL,
                    state      TEXT NOT NULL,
                    begin_time TEXT NOT NULL,
                    end_time   TEXT NOT NULL,
                    begin_lat  REAL,
                    begin_lon  REAL,
                    end_lat    REAL,
                    end_lon    REAL,
                    source     TEXT NOT NULL DEFAULT 'gps51',
                    created_at TEXT NOT NULL,
                    UNIQUE (device_id, begin_time, end_time, state)
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS vendor_trips (
                    device_id        TEXT NOT NULL,
                    start_time       TEXT NOT NULL,
                    end_time         TEXT,
                    start_lat        REAL,
                    start_lon        REAL,
                    end_lat          REAL,
                    end_lon          REAL,
                    distance_km      REAL,
                    avg_speed_kmh    REAL,
                    max_speed_kmh    REAL,
                    duration_seconds INTEGER,
                    raw_json         TEXT,
                    synced_at        TEXT NOT NULL,
                    PRIMARY KEY (device_id, start_time)
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS trip_sync_status (
                    device_id          TEXT PRIMARY KEY,
                    last_position_time TEXT,
                    state_json         TEXT,
                    sync_status        TEXT NOT NULL DEFAULT 'idle',
                    error_message      TEXT,
                    trips_processed    INTEGER NOT NULL DEFAULT 0,
                    updated_at         TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS backfill_checkpoints (
                    device_id        TEXT NOT NULL,
                    range_start      TEXT NOT NULL,
                    range_end        TEXT NOT NULL,
                    next_chunk_start TEXT NOT NULL,
                    state_json       TEXT,
                    completed        INTEGER NOT NULL DEFAULT 0,
                    updated_at       TEXT NOT NULL,
                    PRIMARY KEY (device_id, range_start, range_end)
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_trips_device_start
                ON trips (device_id, start_time)
            """)

    # ── Positions ────────────────────────────────────────────────────────

    def insert_positions(self, positions: list[NormalizedPosition]) -> int:
        """Append positions to history, skipping (device, gps_time) repeats.

        Returns the number of rows actually inserted.
        """
        if not positions:
            return 0
        placeholders = ", ".join("?" for _ in _POSITION_COLUMNS)
        with self._db() as conn:
            cursor = conn.executemany(
                f"INSERT OR IGNORE INTO normalized_positions ({', '.join(_POSITION_COLUMNS)}) "
                f"VALUES ({placeholders})",
                [_position_values(p) for p in positions],
            )
            return cursor.rowcount

    def upsert_latest(self, position: NormalizedPosition) -> None:
        """Overwrite the device's latest row unless the stored one is newer."""
        columns = ", ".join(_POSITION_COLUMNS)
        placeholders = ", ".join("?" for _ in _POSITION_COLUMNS)
        updates = ", ".join(f"{c} = excluded.{c}" for c in _POSITION_COLUMNS if c != "device_id")
        with self._db() as conn:
            conn.execute(
                f"INSERT INTO latest_positions ({columns}) VALUES ({placeholders}) "
                f"ON CONFLICT (device_id) DO UPDATE SET {updates} "
                f"WHERE excluded.gps_time >= latest_positions.gps_time",
                _position_values(position),
            )

    def get_latest(self, device_id: str) -> NormalizedPosition | None:
        with self._db() as conn:
            row = conn.execute(
                "SELECT * FROM latest_positions WHERE device_id = ?", (device_id,)
            ).fetchone()
        return _row_to_position(row) if row else None

    def positions_after(
        self, device_id: str, after: datetime, limit: int = 5000
    ) -> list[NormalizedPosition]:
        """Positions strictly newer than `after`, oldest first."""
        with self._db() as conn:
            rows = conn.execute(
                "SELECT * FROM normalized_positions WHERE device_id = ? AND gps_time > ? "
                "ORDER BY gps_time ASC LIMIT ?",
                (device_id, to_db_time(after), limit),
            ).fetchall()
        return [_row_to_position(r) for r in rows]

    def positions_between(
        self,
        device_id: str,
        start: datetime,
        end: datetime,
        limit: int | None = None,
        with_coordinates: bool = False,
    ) -> list[NormalizedPosition]:
        """Positions with start <= gps_time < end, oldest first."""
        sql = (
            "SELECT * FROM normalized_positions "
            "WHERE device_id = ? AND gps_time >= ? AND gps_time < ?"
        )
        if with_coordinates:
            sql += " AND lat IS NOT NULL AND lon IS NOT NULL"
        sql += " ORDER BY gps_time ASC"
        params: list = [device_id, to_db_time(start), to_db_time(end)]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        with self._db() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_row_to_position(r) for r in rows]

    def nearest_position(
        self, device_id: str, moment: datetime, window: timedelta
    ) -> NormalizedPosition | None:
        """The position with coordinates closest in time to `moment`."""
        candidates = self.positions_between(
            device_id,
            moment - window,
            moment + window + timedelta(microseconds=1),
            with_coordinates=True,
        )
        if not candidates:
            return None
        return min(candidates, key=lambda p: (abs((p.gps_time - moment).total_seconds()), p.gps_time))

    def first_position_time(self, device_id: str) -> datetime | None:
        with self._db() as conn:
            row = conn.execute(
                "SELECT MIN(gps_time) AS t FROM normalized_positions WHERE device_id = ?",
                (device_id,),
            ).fetchone()
        return from_db_time(row["t"]) if row else None

    def known_devices(self) -> list[str]:
        with self._db() as conn:
            rows = conn.execute(
                "SELECT device_id FROM latest_positions "
                "UNION SELECT DISTINCT device_id FROM normalized_positions "
                "ORDER BY device_id"
            ).fetchall()
        return [r["device_id"] for r in rows]

    def positions_since(self, hours: int = 24) -> list[dict]:
        """Raw history rows from the last N hours of ingestion, for analytics."""
        cutoff = to_db_time(utcnow() - timedelta(hours=hours))
        with self._db() as conn:
            rows = conn.execute(
                "SELECT device_id, gps_time, speed_kmh, ignition_on, ignition_confidence, "
                "ignition_detection_method, data_quality "
                "FROM normalized_positions WHERE ingested_at >= ? ORDER BY gps_time",
                (cutoff,),
            ).fetchall()
        return [dict(r) for r in rows]

    # ── Trips ────────────────────────────────────────────────────────────

    def record_trip(self, trip: Trip) -> str:
        """Persist a trip once.

        Returns "inserted", "closed" (an open row was closed in place),
        "duplicate", "overlap" or "open".
        """
        if trip.is_open:
            return self.save_open_trip(trip)

        start, end = to_db_time(trip.start_time), to_db_time(trip.end_time)
        now = to_db_time(utcnow())
        with self._db() as conn:
            existing = conn.execute(
                "SELECT id FROM trips WHERE device_id = ? AND start_time = ? AND end_time = ?",
                (trip.device_id, start, end),
            ).fetchone()
            if existing:
                return "duplicate"

            overlap = conn.execute(
                "SELECT start_time, end_time FROM trips "
                "WHERE device_id = ? AND end_time IS NOT NULL "
                "AND start_time < ? AND end_time > ? LIMIT 1",
                (trip.device_id, end, start),
            ).fetchone()
            if overlap:
                log.warning(
                    "overlapping_trip_rejected",
                    device_id=trip.device_id,
                    start=start,
                    end=end,
                    existing_start=overlap["start_time"],
                    existing_end=overlap["end_time"],
                )
                return "overlap"

            open_row = conn.execute(
                f"SELECT id FROM trips WHERE device_id = ? AND {_OPEN} AND start_time = ?",
                (trip.device_id, start),
            ).fetchone()
            try:
                return self._write_trip(conn, trip, open_row["id"] if open_row else None, now)
            except sqlite3.IntegrityError:
                # Another run inserted the same trip between our check and write.
                return "duplicate"

    def _write_trip(
        self, conn: sqlite3.Connection, trip: Trip, open_row_id: int | None, now: str
    ) -> str:
        """Close the matching open row in place, or insert a new closed row."""
        values = trip_to_dict(trip)
        start, end = to_db_time(trip.start_time), to_db_time(trip.end_time)
        if open_row_id is not None:
            conn.execute(
                "UPDATE trips SET end_time = ?, start_lat = ?, start_lon = ?, "
                "end_lat = ?, end_lon = ?, distance_km = ?, duration_seconds = ?, "
                "max_speed_kmh = ?, avg_speed_kmh = ?, close_reason = ?, "
                "detection_mode = ?, updated_at = ? WHERE id = ?",
                (
                    end, trip.start_lat, trip.start_lon, trip.end_lat, trip.end_lon,
                    trip.distance_km, trip.duration_seconds, trip.max_speed_kmh,
                    trip.avg_speed_kmh, trip.close_reason, trip.detection_mode,
                    now, open_row_id,
                ),
            )
            return "closed"
        conn.execute(
            "INSERT INTO trips (device_id, start_time, end_time, start_lat, start_lon, "
            "end_lat, end_lon, distance_km, duration_seconds, max_speed_kmh, "
            "avg_speed_kmh, close_reason, detection_mode, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                values["device_id"], start, end, values["start_lat"],
                values["start_lon"], values["end_lat"], values["end_lon"],
                values["distance_km"], values["duration_seconds"],
                values["max_speed_kmh"], values["avg_speed_kmh"],
                values["close_reason"], values["detection_mode"], now, now,
            ),
        )
        return "inserted"

    def save_open_trip(self, trip: Trip) -> str:
        """Upsert the device's single in-progress trip row."""
        start = to_db_time(trip.start_time)
        now = to_db_time(utcnow())
        with self._db() as conn:
            row = conn.execute(
                f"SELECT id FROM trips WHERE device_id = ? AND {_OPEN}",
                (trip.device_id,),
            ).fetchone()
            try:
                if row:
                    conn.execute(
                        "UPDATE trips SET start_time = ?, start_lat = ?, start_lon = ?, "
                        "end_lat = ?, end_lon = ?, distance_km = ?, max_speed_kmh = ?, "
                        "avg_speed_kmh = ?, detection_mode = ?, updated_at = ? WHERE id = ?",
                        (
                            start, trip.start_lat, trip.start_lon, trip.end_lat, trip.end_lon,
                            trip.distance_km, trip.max_speed_kmh, trip.avg_speed_kmh,
                            trip.detection_mode, now, row["id"],
                        ),
                    )
                else:
                    conn.execute(
                        "INSERT INTO trips (device_id, start_time, end_time, start_lat, "
                        "start_lon, end_lat, end_lon, distance_km, max_speed_kmh, "
                        "avg_speed_kmh, close_reason, detection_mode, created_at, updated_at) "
                        "VALUES (?, ?, NULL, ?, ?, ?, ?, ?, ?, ?, 'open', ?, ?, ?)",
                        (
                            trip.device_id, start, trip.start_lat, trip.start_lon,
                            trip.end_lat, trip.end_lon, trip.distance_km,
                            trip.max_speed_kmh, trip.avg_speed_kmh,
                            trip.detection_mode, now, now,
                        ),
                    )
            except sqlite3.IntegrityError:
                return "duplicate"
        return "open"

    def discard_open_trip(self, device_id: str) -> int:
        """Retire a provisional open row that no longer matches the segmenter state.

        Trips are never deleted; the row stays with close_reason 'discarded'
        and drops out of every trip query.
        """
        with self._db() as conn:
            cursor = conn.execute(
                "UPDATE trips SET close_reason = 'discarded', updated_at = ? "
                f"WHERE device_id = ? AND {_OPEN}",
                (to_db_time(utcnow()), device_id),
            )
            return cursor.rowcount

    def get_open_trip(self, device_id: str) -> Trip | None:
        with self._db() as conn:
            row = conn.execute(
                f"SELECT * FROM trips WHERE device_id = ? AND {_OPEN}", (device_id,)
            ).fetchone()
        return _row_to_trip(row) if row else None

    def trips_for_device(
        self,
        device_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
        include_open: bool = False,
        limit: int = 500,
    ) -> list[Trip]:
        sql = "SELECT * FROM trips WHERE device_id = ?"
        params: list = [device_id]
        if include_open:
            sql += f" AND (end_time IS NOT NULL OR ({_OPEN}))"
        else:
            sql += " AND end_time IS NOT NULL"
        if start is not None:
            sql += " AND start_time >= ?"
            params.append(to_db_time(start))
        if end is not None:
            sql += " AND start_time < ?"
            params.append(to_db_time(end))
        sql += " ORDER BY start_time ASC LIMIT ?"
        params.append(limit)
        with self._db() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_row_to_trip(r) for r in rows]

    def trips_missing_coordinates(
        self,
        device_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 500,
    ) -> list[tuple[int, Trip]]:
        """Closed trips whose start or end still has zero coordinates."""
        sql = (
            "SELECT * FROM trips WHERE end_time IS NOT NULL AND ("
            "start_lat = 0 OR start_lon = 0 OR end_lat IS NULL OR end_lon IS NULL "
            "OR end_lat = 0 OR end_lon = 0)"
        )
        params: list = []
        if device_id is not None:
            sql += " AND device_id = ?"
            params.append(device_id)
        if start is not None:
            sql += " AND start_time >= ?"
            params.append(to_db_time(start))
        if end is not None:
            sql += " AND start_time < ?"
            params.append(to_db_time(end))
        sql += " ORDER BY start_time DESC LIMIT ?"
        params.append(limit)
        with self._db() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [(r["id"], _row_to_trip(r)) for r in rows]

    def update_trip_coordinates(
        self,
        trip_id: int,
        start_lat: float,
        start_lon: float,
        end_lat: float,
        end_lon: float,
        distance_km: float,
    ) -> None:
        with self._db() as conn:
            conn.execute(
                "UPDATE trips SET start_lat = ?, start_lon = ?, end_lat = ?, end_lon = ?, "
                "distance_km = ?, updated_at = ? WHERE id = ?",
                (start_lat, start_lon, end_lat, end_lon, distance_km,
                 to_db_time(utcnow()), trip_id),
            )

    # ── ACC intervals ────────────────────────────────────────────────────

    def insert_acc_intervals(self, intervals: list[AccStateInterval]) -> int:
        if not intervals:
            return 0
        now = to_db_time(utcnow())
        with self._db() as conn:
            cursor = conn.executemany(
                "INSERT OR IGNORE INTO acc_state_intervals (device_id, state, begin_time, "
                "end_time, begin_lat, begin_lon, end_lat, end_lon, source, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                [
                    (
                        iv.device_id, iv.state, to_db_time(iv.begin_time),
                        to_db_time(iv.end_time), iv.begin_lat, iv.begin_lon,
                        iv.end_lat, iv.end_lon, iv.source, now,
                    )
                    for iv in intervals
                ],
            )
            return cursor.rowcount

    def acc_intervals_between(
        self, device_id: str, start: datetime, end: datetime
    ) -> list[AccStateInterval]:
        """Intervals overlapping [start, end], ordered by begin time."""
        with self._db() as conn:
            rows = conn.execute(
                "SELECT * FROM acc_state_intervals WHERE device_id = ? "
                "AND begin_time <= ? AND end_time >= ? ORDER BY begin_time ASC",
                (device_id, to_db_time(end), to_db_time(start)),
            ).fetchall()
        return [_row_to_interval(r) for r in rows]

    # ── Vendor trips ─────────────────────────────────────────────────────

    def upsert_vendor_trips(self, trips: list[VendorTrip]) -> tuple[int, int]:
        """Store vendor trips keyed by (device_id, start_time).

        A trip seen again overwrites the stored copy, since the vendor keeps
        extending a trip that was still running at the last sync. Returns
        (inserted, updated).
        """
        if not trips:
            return 0, 0
        now = to_db_time(utcnow())
        inserted = updated = 0
        with self._db() as conn:
            for t in trips:
                start = to_db_time(t.start_time)
                exists = conn.execute(
                    "SELECT 1 FROM vendor_trips WHERE device_id = ? AND start_time = ?",
                    (t.device_id, start),
                ).fetchone()
                conn.execute(
                    "INSERT INTO vendor_trips (device_id, start_time, end_time, start_lat, "
                    "start_lon, end_lat, end_lon, distance_km, avg_speed_kmh, max_speed_kmh, "
                    "duration_seconds, raw_json, synced_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
                    "ON CONFLICT (device_id, start_time) DO UPDATE SET "
                    "end_time = excluded.end_time, start_lat = excluded.start_lat, "
                    "start_lon = excluded.start_lon, end_lat = excluded.end_lat, "
                    "end_lon = excluded.end_lon, distance_km = excluded.distance_km, "
                    "avg_speed_kmh = excluded.avg_speed_kmh, "
                    "max_speed_kmh = excluded.max_speed_kmh, "
                    "duration_seconds = excluded.duration_seconds, "
                    "raw_json = excluded.raw_json, synced_at = excluded.synced_at",
                    (
                        t.device_id, start,
                        to_db_time(t.end_time) if t.end_time else None,
                        t.start_lat, t.start_lon, t.end_lat, t.end_lon,
                        t.distance_km, t.avg_speed_kmh, t.max_speed_kmh,
                        t.duration_seconds, json.dumps(t.raw, default=str), now,
                    ),
                )
                if exists:
                    updated += 1
                else:
                    inserted += 1
        return inserted, updated

    def vendor_trips_between(
        self, device_id: str, start: datetime, end: datetime
    ) -> list[VendorTrip]:
        """Vendor trips starting in [start, end), oldest first."""
        with self._db() as conn:
            rows = conn.execute(
                "SELECT * FROM vendor_trips WHERE device_id = ? "
                "AND start_time >= ? AND start_time < ? ORDER BY start_time ASC",
                (device_id, to_db_time(start), to_db_time(end)),
            ).fetchall()
        return [_row_to_vendor_trip(r) for r in rows]

    # ── Sync bookkeeping ─────────────────────────────────────────────────

    def get_sync_status(self, device_id: str) -> dict | None:
        with self._db() as conn:
            row = conn.execute(
                "SELECT * FROM trip_sync_status WHERE device_id = ?", (device_id,)
            ).fetchone()
        if row is None:
            return None
        result = dict(row)
        result["state"] = json.loads(row["state_json"]) if row["state_json"] else None
        result["last_position_time"] = from_db_time(row["last_position_time"])
        return result

    def list_sync_status(self) -> list[dict]:
        with self._db() as conn:
            rows = conn.execute(
                "SELECT device_id, last_position_time, sync_status, error_message, "
                "trips_processed, updated_at FROM trip_sync_status ORDER BY device_id"
            ).fetchall()
        return [dict(r) for r in rows]

    def save_sync_status(
        self,
        device_id: str,
        sync_status: str,
        last_position_time: datetime | None = None,
        state: dict | None = None,
        trips_added: int = 0,
        error_message: str | None = None,
    ) -> None:
        """Upsert the device's cursor. A None cursor or state keeps the stored one."""
        with self._db() as conn:
            conn.execute(
                "INSERT INTO trip_sync_status (device_id, last_position_time, state_json, "
                "sync_status, error_message, trips_processed, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT (device_id) DO UPDATE SET "
                "last_position_time = COALESCE(excluded.last_position_time, "
                "trip_sync_status.last_position_time), "
                "state_json = COALESCE(excluded.state_json, trip_sync_status.state_json), "
                "sync_status = excluded.sync_status, "
                "error_message = excluded.error_message, "
                "trips_processed = trip_sync_status.trips_processed + excluded.trips_processed, "
                "updated_at = excluded.updated_at",
                (
                    device_id,
                    to_db_time(last_position_time) if last_position_time else None,
                    json.dumps(state) if state is not None else None,
                    sync_status,
                    error_message,
                    trips_added,
                    to_db_time(utcnow()),
                ),
            )

    def get_checkpoint(self, device_id: str, start: datetime, end: datetime) -> dict | None:
        with self._db() as conn:
            row = conn.execute(
                "SELECT * FROM backfill_checkpoints "
                "WHERE device_id = ? AND range_start = ? AND range_end = ?",
                (device_id, to_db_time(start), to_db_time(end)),
            ).fetchone()
        if row is None:
            return None
        return {
            "next_chunk_start": from_db_time(row["next_chunk_start"]),
            "state": json.loads(row["state_json"]) if row["state_json"] else None,
            "completed": bool(row["completed"]),
        }

    def save_checkpoint(
        self,
        device_id: str,
        start: datetime,
        end: datetime,
        next_chunk_start: datetime,
        state: dict | None,
        completed: bool = False,
    ) -> None:
        with self._db() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO backfill_checkpoints (device_id, range_start, "
                "range_end, next_chunk_start, state_json, completed, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    device_id, to_db_time(start), to_db_time(end),
                    to_db_time(next_chunk_start),
                    json.dumps(state) if state is not None else None,
                    1 if completed else 0,
                    to_db_time(utcnow()),
                ),
            )
