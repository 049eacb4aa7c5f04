"""Ignition detection quality metrics.

QualityMetrics is filled in while an ingestion run normalizes reports.
QualityAnalyzer loads stored history into DuckDB for the per-device and
per-method breakdowns operators look at, and lines local trips up against
the trips the vendor platform reports.
"""

from __future__ import annotations

import json
import os
import tempfile
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime

import duckdb

from mymoto_telemetry.models import DetectionMethod, NormalizeResult, Trip, VendorTrip
from mymoto_telemetry.store import FleetStore, trip_to_dict, vendor_trip_to_dict
from mymoto_telemetry.utils import to_db_time

LOW_CONFIDENCE = 0.7


@dataclass
class QualityMetrics:
    """Counters for one ingestion run."""

    total: int = 0
    degraded: int = 0
    low_confidence: int = 0
    ignition_on: int = 0
    confidence_sum: float = 0.0
    by_method: Counter = field(default_factory=Counter)
    defaulted_fields: Counter = field(default_factory=Counter)

    def record(self, result: NormalizeResult) -> None:
        p = result.position
        self.total += 1
        self.confidence_sum += p.ignition_confidence
        self.by_method[p.ignition_detection_method.value] += 1
        if p.ignition_on:
            self.ignition_on += 1
        if p.ignition_confidence < LOW_CONFIDENCE:
            self.low_confidence += 1
        if result.degraded:
            self.degraded += 1
            self.defaulted_fields.update(result.defaulted)

    @property
    def avg_confidence(self) -> float:
        return round(self.confidence_sum / self.total, 3) if self.total else 0.0

    def as_dict(self) -> dict:
        return {
            "positions": self.total,
            "avg_confidence": self.avg_confidence,
            "low_confidence": self.low_confidence,
            "degraded": self.degraded,
            "ignition_on": self.ignition_on,
            "ignition_off": self.total - self.ignition_on,
            "by_method": {m.value: self.by_method.get(m.value, 0) for m in DetectionMethod},
            "defaulted_fields": dict(self.defaulted_fields),
        }


class QualityAnalyzer:
    """DuckDB analytics over recently ingested positions."""

    def __init__(self, store: FleetStore, db_path: str | None = None) -> None:
        self.store = store
        self._db_path = db_path or os.getenv("DUCKDB_PATH", ":memory:")
        self._conn: duckdb.DuckDBPyConnection | None = None

    @property
    def conn(self) -> duckdb.DuckDBPyConnection:
        if self._conn is None:
            self._conn = duckdb.connect(self._db_path)
        return self._conn

    def cache_dataset(self, name: str, data: list[dict]) -> dict:
        """Load a list of dicts as a DuckDB table, replacing any previous one."""
        table_name = _sanitize_table_name(name)
        self.conn.execute(f"DROP TABLE IF EXISTS {table_name}")
        if not data:
            return {"dataset": table_name, "rows": 0, "status": "empty - nothing cached"}

        # Write JSON to temp file for DuckDB to read
        with tempfile.NamedTemporaryFile(mode="w", suffix=".json", delete=False) as tmp:
            json.dump(data, tmp)
            tmp_path = tmp.name

        try:
            self.conn.execute(
                f"CREATE TABLE {table_name} AS SELECT * FROM read_json_auto('{tmp_path}')"
            )
        finally:
            os.unlink(tmp_path)

        row_count = self.conn.execute(f"SELECT COUNT(*) FROM {table_name}").fetchone()[0]
        return {"dataset": table_name, "rows": row_count, "status": "cached"}

    def query(self, sql: str, params: list | None = None) -> list[dict]:
        result = self.conn.execute(sql, params or [])
        columns = [desc[0] for desc in result.description]
        return [dict(zip(columns, row)) for row in result.fetchall()]

    def _load(self, hours: int) -> int:
        return self.cache_dataset("positions", self.store.positions_since(hours))["rows"]

    def ignition_quality(self, hours: int = 24) -> dict:
        """Per-device, per-method breakdown of ignition detection."""
        if not self._load(hours):
            return {"hours": hours, "positions": 0, "devices": [], "methods": [],
                    "low_confidence_devices": []}
        devices = self.query("""
            SELECT device_id,
                   ignition_detection_method AS method,
                   COUNT(*) AS sample_count,
                   ROUND(AVG(CAST(ignition_confidence AS DOUBLE)), 3) AS avg_confidence,
                   ROUND(CAST(COUNT(*) AS DOUBLE) * 100
                         / SUM(COUNT(*)) OVER (PARTITION BY device_id), 1) AS method_percentage,
                   CAST(SUM(CASE WHEN ignition_on = 1 THEN 1 ELSE 0 END) AS INTEGER)
                       AS ignition_on_count,
                   CAST(SUM(CASE WHEN ignition_on = 1 THEN 0 ELSE 1 END) AS INTEGER)
                       AS ignition_off_count
            FROM positions
            GROUP BY device_id, ignition_detection_method
            ORDER BY device_id, sample_count DESC
        """)
        total = self.query("SELECT COUNT(*) AS n FROM positions")[0]["n"]
        return {
            "hours": hours,
            "positions": total,
            "devices": devices,
            "methods": self._method_summary(),
            "low_confidence_devices": self._low_confidence_devices(LOW_CONFIDENCE),
        }

    def method_summary(self, hours: int = 24) -> list[dict]:
        if not self._load(hours):
            return []
        return self._method_summary()

    def low_confidence_devices(self, hours: int = 24, threshold: float = LOW_CONFIDENCE) -> list[dict]:
        """Devices whose average ignition confidence sits under threshold."""
        if not self._load(hours):
            return []
        return self._low_confidence_devices(threshold)

    def _method_summary(self) -> list[dict]:
        return self.query("""
            SELECT ignition_detection_method AS method,
                   COUNT(*) AS sample_count,
                   COUNT(DISTINCT device_id) AS device_count,
                   ROUND(AVG(CAST(ignition_confidence AS DOUBLE)), 3) AS avg_confidence,
                   ROUND(CAST(COUNT(*) AS DOUBLE) * 100 / SUM(COUNT(*)) OVER (), 1)
                       AS percentage
            FROM positions
            GROUP BY ignition_detection_method
            ORDER BY sample_count DESC
        """)

    def _low_confidence_devices(self, threshold: float) -> list[dict]:
        return self.query(
            """
            SELECT device_id,
                   COUNT(*) AS sample_count,
                   ROUND(AVG(CAST(ignition_confidence AS DOUBLE)), 3) AS avg_confidence,
                   MODE(ignition_detection_method) AS dominant_method
            FROM positions
            GROUP BY device_id
            HAVING AVG(CAST(ignition_confidence AS DOUBLE)) < ?
            ORDER BY avg_confidence ASC
            """,
            [threshold],
        )

    def vendor_trip_comparison(self, device_id: str, start: datetime, end: datetime) -> dict:
        """Closed local trips against synced vendor trips starting in [start, end)."""
        local = self.store.trips_for_device(device_id, start=start, end=end, limit=10_000)
        vendor = self.store.vendor_trips_between(device_id, start, end)
        return {
            "device_id": device_id,
            "start": to_db_time(start),
            "end": to_db_time(end),
            **compare_trips(local, vendor),
        }

    def close(self) -> None:
        """Close the DuckDB connection."""
        if self._conn:
            self._conn.close()
            self._conn = None


def _sanitize_table_name(name: str) -> str:
    """Sanitize a string for use as a DuckDB table name."""
    clean = "".join(c if c.isalnum() or c == "_" else "_" for c in name)
    if clean[0].isdigit():
        clean = "t_" + clean
    return clean.lower()


# ── Local vs vendor trips ────────────────────────────────────────────────

def _span(start: datetime, end: datetime | None) -> tuple[datetime, datetime]:
    return start, end or start


def _overlap_seconds(a: tuple[datetime, datetime], b: tuple[datetime, datetime]) -> float | None:
    """Seconds the two closed intervals share, or None when they are disjoint."""
    lo, hi = max(a[0], b[0]), min(a[1], b[1])
    if lo > hi:
        return None
    return (hi - lo).total_seconds()


def compare_trips(local: list[Trip], vendor: list[VendorTrip]) -> dict:
    """Pair local trips with vendor trips by time overlap and report the gaps.

    Each vendor trip takes the unpaired local trip it overlaps most; ties go
    to the closer start time. Unpaired trips on either side are listed.
    """
    unpaired = list(local)
    pairs = []
    vendor_only = []
    for v in sorted(vendor, key=lambda t: t.start_time):
        v_span = _span(v.start_time, v.end_time)
        best = None
        best_key = None
        for t in unpaired:
            overlap = _overlap_seconds(v_span, _span(t.start_time, t.end_time))
            if overlap is None:
                continue
            key = (overlap, -abs((t.start_time - v.start_time).total_seconds()))
            if best_key is None or key > best_key:
                best, best_key = t, key
        if best is None:
            vendor_only.append(v)
            continue
        unpaired.remove(best)
        pairs.append(_pair(best, v))

    local_km = sum(t.distance_km for t in local)
    vendor_km = sum(v.distance_km or 0.0 for v in vendor)
    return {
        "local_trips": len(local),
        "vendor_trips": len(vendor),
        "matched": len(pairs),
        "count_delta": len(local) - len(vendor),
        "local_distance_km": round(local_km, 3),
        "vendor_distance_km": round(vendor_km, 3),
        "distance_delta_km": round(local_km - vendor_km, 3),
        "pairs": pairs,
        "local_only": [trip_to_dict(t) for t in sorted(unpaired, key=lambda t: t.start_time)],
        "vendor_only": [vendor_trip_to_dict(v) for v in vendor_only],
    }


def _pair(local: Trip, vendor: VendorTrip) -> dict:
    end_offset = None
    if local.end_time is not None and vendor.end_time is not None:
        end_offset = int((local.end_time - vendor.end_time).total_seconds())
    distance_delta = None
    if vendor.distance_km is not None:
        distance_delta = round(local.distance_km - vendor.distance_km, 3)
    return {
        "local_start": to_db_time(local.start_time),
        "vendor_start": to_db_time(vendor.start_time),
        "start_offset_s": int((local.start_time - vendor.start_time).total_seconds()),
        "end_offset_s": end_offset,
        "local_distance_km": local.distance_km,
        "vendor_distance_km": vendor.distance_km,
        "distance_delta_km": distance_delta,
    }
