"""Data models for device reports, normalized positions, trips and job reports."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class DetectionMethod(str, Enum):
    """Which signal produced an ignition determination."""

    STATUS_BIT = "status_bit"
    STRING_PARSE = "string_parse"
    SPEED_INFERENCE = "speed_inference"
    MULTI_SIGNAL = "multi_signal"
    UNKNOWN = "unknown"


# Methods backed by a real ignition line (or vendor ACC reports), as opposed
# to guesses from movement.
IGNITION_METHODS = frozenset({
    DetectionMethod.STATUS_BIT,
    DetectionMethod.STRING_PARSE,
    DetectionMethod.MULTI_SIGNAL,
})


def _first(payload: dict, *keys: str) -> object | None:
    """Return the first value among keys that is neither None nor blank."""
    for key in keys:
        value = payload.get(key)
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return value
    return None


@dataclass(frozen=True)
class RawDeviceReport:
    """One telemetry sample as delivered by the vendor.

    Every field is optional and loosely typed; coercion happens in the
    normalizer so that one bad field never poisons the rest of the report.
    """

    device_id: str = ""
    status: object = None
    status_text: str | None = None
    lat: object = None
    lon: object = None
    speed: object = None
    heading: object = None
    moving: object = None
    battery_percent: object = None
    voltage: object = None
    external_voltage: object = None
    signal_level: object = None
    altitude: object = None
    odometer: object = None
    gps_time: object = None
    server_time: object = None

    @classmethod
    def from_payload(cls, payload: dict) -> RawDeviceReport:
        """Build a report from a GPS51 record, tolerating the field aliases
        used by the different endpoints (lastposition, querytrack)."""
        status_text = _first(payload, "strstatus", "strstatusen")
        return cls(
            device_id=str(_first(payload, "deviceid", "device_id") or ""),
            status=_first(payload, "status"),
            status_text=str(status_text) if status_text is not None else None,
            lat=_first(payload, "callat", "lat", "latitude"),
            lon=_first(payload, "callon", "lon", "lng", "longitude"),
            speed=_first(payload, "speed"),
            heading=_first(payload, "direction", "heading"),
            moving=_first(payload, "moving"),
            battery_percent=_first(payload, "voltagepercent"),
            voltage=_first(payload, "voltagev"),
            external_voltage=_first(payload, "exvoltage"),
            signal_level=_first(payload, "rxlevel"),
            altitude=_first(payload, "altitude"),
            odometer=_first(payload, "totaldistance"),
            gps_time=_first(payload, "gpstime", "devicetime", "validpoistiontime"),
            server_time=_first(payload, "updatetime", "time"),
        )


@dataclass(frozen=True)
class NormalizedPosition:
    """The canonical, persisted position record."""

    device_id: str
    gps_time: datetime
    ingested_at: datetime
    lat: float | None
    lon: float | None
    speed_kmh: float
    heading: float | None
    battery_percent: int | None
    ignition_on: bool
    ignition_confidence: float
    ignition_detection_method: DetectionMethod
    odometer_km: float | None = None
    signal_strength: int | None = None
    altitude: float | None = None
    is_moving: bool = False
    timestamp_source: str = "gps"
    data_quality: str = "low"

    @property
    def has_coordinates(self) -> bool:
        return self.lat is not None and self.lon is not None


@dataclass(frozen=True)
class NormalizeResult:
    """Tagged normalizer output: the position plus what had to be defaulted."""

    position: NormalizedPosition
    defaulted: tuple[str, ...] = ()

    @property
    def degraded(self) -> bool:
        return bool(self.defaulted)


@dataclass(frozen=True)
class Trip:
    """A contiguous run of positions from ignition on (or movement) to stop."""

    device_id: str
    start_time: datetime
    end_time: datetime | None
    start_lat: float
    start_lon: float
    end_lat: float | None
    end_lon: float | None
    distance_km: float
    max_speed_kmh: float
    avg_speed_kmh: float
    close_reason: str = "open"
    detection_mode: str = "ignition"

    @property
    def is_open(self) -> bool:
        return self.end_time is None

    @property
    def duration_seconds(self) -> int | None:
        if self.end_time is None:
            return None
        return int((self.end_time - self.start_time).total_seconds())

    @property
    def missing_coordinates(self) -> bool:
        """True when either end still carries the zero placeholder."""
        return (
            not self.start_lat or not self.start_lon
            or (not self.is_open and (not self.end_lat or not self.end_lon))
        )


@dataclass(frozen=True)
class AccStateInterval:
    """Vendor-reported ACC on/off interval, used to corroborate ignition."""

    device_id: str
    state: str  # "ON" | "OFF"
    begin_time: datetime
    end_time: datetime
    begin_lat: float | None = None
    begin_lon: float | None = None
    end_lat: float | None = None
    end_lon: float | None = None
    source: str = "gps51"

    def covers(self, moment: datetime) -> bool:
        return self.begin_time <= moment <= self.end_time


@dataclass(frozen=True)
class VendorTrip:
    """A trip as the GPS51 platform itself reports it (querytrips).

    Kept as delivered apart from unit conversion, so locally segmented
    trips can be checked against what operators see on the vendor side.
    """

    device_id: str
    start_time: datetime
    end_time: datetime | None = None
    start_lat: float | None = None
    start_lon: float | None = None
    end_lat: float | None = None
    end_lon: float | None = None
    distance_km: float | None = None
    avg_speed_kmh: float | None = None
    max_speed_kmh: float | None = None
    raw: dict = field(default_factory=dict, compare=False)

    @property
    def duration_seconds(self) -> int | None:
        if self.end_time is None:
            return None
        return int((self.end_time - self.start_time).total_seconds())


# ── Job reports ──────────────────────────────────────────────────────────

@dataclass
class DeviceResult:
    device_id: str
    outcome: str = "succeeded"  # succeeded | skipped | failed
    positions: int = 0
    trips_inserted: int = 0
    trips_skipped: int = 0
    error: str | None = None

    def as_dict(self) -> dict:
        return {
            "device_id": self.device_id,
            "outcome": self.outcome,
            "positions": self.positions,
            "trips_inserted": self.trips_inserted,
            "trips_skipped": self.trips_skipped,
            "error": self.error,
        }


@dataclass
class BatchReport:
    """Aggregate result of a batch job; one DeviceResult per device touched."""

    job: str
    results: list[DeviceResult] = field(default_factory=list)
    unprocessed: list[str] = field(default_factory=list)
    timed_out: bool = False
    extra: dict = field(default_factory=dict)

    def add(self, result: DeviceResult) -> None:
        self.results.append(result)

    def _count(self, outcome: str) -> int:
        return sum(1 for r in self.results if r.outcome == outcome)

    @property
    def succeeded(self) -> int:
        return self._count("succeeded")

    @property
    def skipped(self) -> int:
        return self._count("skipped")

    @property
    def failed(self) -> int:
        return self._count("failed")

    def as_dict(self) -> dict:
        return {
            "job": self.job,
            "succeeded": self.succeeded,
            "skipped": self.skipped,
            "failed": self.failed,
            "timed_out": self.timed_out,
            "unprocessed": list(self.unprocessed),
            "devices": [r.as_dict() for r in self.results],
            **self.extra,
        }


@dataclass
class ReconcileReport:
    trips_checked: int = 0
    trips_fixed: int = 0
    coordinates_backfilled: int = 0
    errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "trips_checked": self.trips_checked,
            "trips_fixed": self.trips_fixed,
            "coordinates_backfilled": self.coordinates_backfilled,
            "errors": list(self.errors),
        }
