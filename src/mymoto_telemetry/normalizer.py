"""GPS51 telemetry normalizer.

Turns one RawDeviceReport into one NormalizedPosition. Ignition state comes
from an ordered list of detector strategies; the first detector whose
confidence reaches the decision threshold wins. Nothing in here raises on bad
input: malformed fields fall back to defaults and are listed on the result.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import structlog

from mymoto_telemetry.config import BatteryProfile, IgnitionWeights, Settings
from mymoto_telemetry.models import (
    DetectionMethod,
    NormalizedPosition,
    NormalizeResult,
    RawDeviceReport,
)
from mymoto_telemetry.utils import utcnow, valid_coordinates

log = structlog.get_logger(__name__)

# Firmware that reports m/h instead of km/h sends values in the thousands.
_MPH_THRESHOLD = 200.0
_MAX_SPEED_KMH = 300.0
_STOPPED_BELOW_KMH = 3.0

_EARLIEST_VALID_TIME = datetime(2020, 1, 1, tzinfo=timezone.utc)
_MAX_CLOCK_SKEW = timedelta(days=1)


def _to_float(value: object) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


# ── Units ────────────────────────────────────────────────────────────────

def normalize_speed(raw: object) -> float:
    """Convert a vendor speed to km/h.

    One correction pass only: values above 200 are m/h and get divided by
    1000 once. Anything under 3 km/h is GPS drift and snaps to 0.
    """
    speed = _to_float(raw)
    if speed is None or speed < 0:
        return 0.0
    if speed > _MPH_THRESHOLD:
        speed = speed / 1000.0
    if speed < _STOPPED_BELOW_KMH:
        return 0.0
    return round(min(speed, _MAX_SPEED_KMH), 1)


def split_status(status: object) -> tuple[int, int] | None:
    """Split a status word into (base, extended) 16-bit halves.

    Values above 65535 are the GPS51 32-bit extension and are valid.
    Negative, fractional or unparseable values return None.
    """
    if status is None or isinstance(status, bool):
        return None
    if isinstance(status, str):
        status = status.strip()
        if not status.isdigit():
            return None
        value = int(status)
    elif isinstance(status, int):
        value = status
    elif isinstance(status, float) and status.is_integer():
        value = int(status)
    else:
        return None
    if value < 0 or value > 0xFFFFFFFF:
        return None
    return value & 0xFFFF, value >> 16


# ── Ignition detectors ───────────────────────────────────────────────────

@dataclass(frozen=True)
class DetectorResult:
    matched: bool
    ignition_on: bool = False
    confidence: float = 0.0


NO_MATCH = DetectorResult(matched=False)


@dataclass(frozen=True)
class IgnitionReading:
    ignition_on: bool
    confidence: float
    method: DetectionMethod


class StatusBitDetector:
    """Weighted vote over the base ACC bit, the extended ACC bit and speed."""

    method = DetectionMethod.STATUS_BIT

    def __init__(self, weights: IgnitionWeights) -> None:
        self.weights = weights

    def detect(self, report: RawDeviceReport, speed_kmh: float | None) -> DetectorResult:
        parts = split_status(report.status)
        if parts is None:
            return NO_MATCH
        base, extended = parts
        base_acc = (base & 0x01) == 1
        extended_acc = (extended & 0x01) == 1
        moving = speed_kmh is not None and speed_kmh > _STOPPED_BELOW_KMH

        confidence = 0.0
        if base_acc:
            confidence += self.weights.base_acc
        if extended_acc:
            confidence += self.weights.extended_acc
        if moving:
            confidence += self.weights.status_speed
        confidence = round(min(confidence, 1.0), 2)
        ignition_on = confidence >= self.weights.threshold

        if not ignition_on and (base_acc or extended_acc or moving):
            signals = []
            if base_acc:
                signals.append("base_acc=ON")
            if extended_acc:
                signals.append("ext_acc=ON")
            if moving:
                signals.append(f"speed={speed_kmh}km/h")
            log.warning(
                "ignition_signal_conflict",
                device_id=report.device_id,
                status=report.status,
                confidence=confidence,
                signals=signals,
            )
        return DetectorResult(True, ignition_on, confidence)


# OFF is checked first; both patterns allow "ACC OFF", "ACC:OFF", "ACC_OFF",
# "ACC=OFF" and the Chinese firmware variants.
_ACC_OFF = re.compile(r"ACC\s*[:：_=]?\s*(?:OFF\b|关)", re.IGNORECASE)
_ACC_ON = re.compile(r"ACC\s*[:：_=]?\s*(?:ON\b|开)", re.IGNORECASE)


class StringParseDetector:
    method = DetectionMethod.STRING_PARSE

    def __init__(self, weights: IgnitionWeights) -> None:
        self.weights = weights

    def detect(self, report: RawDeviceReport, speed_kmh: float | None) -> DetectorResult:
        text = report.status_text
        if not text:
            return NO_MATCH
        off = _ACC_OFF.search(text) is not None
        on = _ACC_ON.search(text) is not None
        if off and on:
            log.info("ambiguous_status_text", device_id=report.device_id, status_text=text)
            return NO_MATCH
        if off:
            return DetectorResult(True, False, self.weights.string_match)
        if on:
            return DetectorResult(True, True, self.weights.string_match)
        return NO_MATCH


class SpeedInferenceDetector:
    """Last resort: guess ignition from movement alone."""

    method = DetectionMethod.SPEED_INFERENCE

    def __init__(self, weights: IgnitionWeights) -> None:
        self.weights = weights

    def detect(self, report: RawDeviceReport, speed_kmh: float | None) -> DetectorResult:
        if speed_kmh is None:
            return NO_MATCH
        if speed_kmh > 5:
            return DetectorResult(True, True, self.weights.speed_strong)
        if speed_kmh > _STOPPED_BELOW_KMH:
            return DetectorResult(True, True, self.weights.speed_weak)
        if speed_kmh == 0 and not _has_contrary_signal(report):
            return DetectorResult(True, False, self.weights.speed_stopped)
        return NO_MATCH


def _has_contrary_signal(report: RawDeviceReport) -> bool:
    """True when something other than speed says the engine may be running."""
    if _to_float(report.moving) == 1:
        return True
    parts = split_status(report.status)
    if parts is None:
        return False
    base, extended = parts
    return bool(base & 0x01 or extended & 0x01)


def default_detectors(weights: IgnitionWeights) -> list:
    return [
        StatusBitDetector(weights),
        StringParseDetector(weights),
        SpeedInferenceDetector(weights),
    ]


def detect_ignition(
    report: RawDeviceReport,
    speed_kmh: float | None,
    weights: IgnitionWeights | None = None,
    detectors: list | None = None,
) -> IgnitionReading:
    """Run the detector cascade and return the winning reading.

    If no detector reaches the threshold, the lowest-tier detector that
    matched with some confidence is used; failing that the reading is
    unknown (off, 0.0).
    """
    weights = weights or IgnitionWeights()
    if detectors is None:
        detectors = default_detectors(weights)

    fallback: IgnitionReading | None = None
    for detector in detectors:
        result = detector.detect(report, speed_kmh)
        if not result.matched:
            continue
        reading = IgnitionReading(result.ignition_on, result.confidence, detector.method)
        if result.confidence >= weights.threshold:
            return reading
        if result.confidence > 0:
            fallback = reading
    if fallback is not None:
        return fallback
    return IgnitionReading(False, 0.0, DetectionMethod.UNKNOWN)


# ── Coordinates, time, battery, signal ───────────────────────────────────

def normalize_coordinates(report: RawDeviceReport) -> tuple[float | None, float | None]:
    lat = _to_float(report.lat)
    lon = _to_float(report.lon)
    if not valid_coordinates(lat, lon):
        return None, None
    return lat, lon


def parse_vendor_time(value: object, tz: timezone) -> datetime | None:
    """Parse epoch seconds/milliseconds or a date string into aware UTC.

    Naive strings are read in the vendor's timezone.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        dt = value if value.tzinfo else value.replace(tzinfo=tz)
        return dt.astimezone(timezone.utc)
    number = _to_float(value)
    if number is not None:
        if number <= 0:
            return None
        if number > 1e11:
            number = number / 1000.0
        try:
            return datetime.fromtimestamp(number, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if not isinstance(value, str):
        return None
    try:
        dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=tz)
    return dt.astimezone(timezone.utc)


def _plausible(dt: datetime | None, now: datetime) -> bool:
    return dt is not None and _EARLIEST_VALID_TIME <= dt <= now + _MAX_CLOCK_SKEW


def normalize_timestamp(
    report: RawDeviceReport, now: datetime, tz: timezone
) -> tuple[datetime, str]:
    """Pick GPS time, then server time, then ingestion time."""
    gps_time = parse_vendor_time(report.gps_time, tz)
    if _plausible(gps_time, now):
        return gps_time, "gps"  # type: ignore[return-value]
    server_time = parse_vendor_time(report.server_time, tz)
    if _plausible(server_time, now):
        return server_time, "server"  # type: ignore[return-value]
    return now, "ingest"


def voltage_to_percent(voltage: float, profile: BatteryProfile) -> int | None:
    """Map a voltage onto 0-100 using the profile's window.

    Lead-acid and AGM discharge non-linearly, so they use a ^1.5 curve;
    lithium is close to linear.
    """
    if voltage <= 0:
        return None
    voltage = min(voltage, 100.0)
    if voltage >= profile.max_voltage:
        return 100
    if voltage <= profile.min_voltage:
        return 0
    fraction = (voltage - profile.min_voltage) / (profile.max_voltage - profile.min_voltage)
    if profile.chemistry == "lithium":
        percent = fraction * 100
    else:
        percent = math.pow(fraction, 1.5) * 100
    return max(0, min(100, round(percent)))


def normalize_battery(report: RawDeviceReport, profile: BatteryProfile) -> int | None:
    percent = _to_float(report.battery_percent)
    if percent is not None and percent > 0:
        return max(0, min(100, round(percent)))
    for raw in (report.voltage, report.external_voltage):
        voltage = _to_float(raw)
        if voltage is not None and voltage > 0:
            return voltage_to_percent(voltage, profile)
    return None


def normalize_signal_strength(level: object) -> int | None:
    """GPS51 rxlevel comes on a 0-31 or 0-99 scale; map either to 0-100."""
    value = _to_float(level)
    if value is None:
        return None
    value = max(0.0, value)
    if value <= 31:
        return round(value / 31 * 100)
    if value <= 99:
        return round(value / 99 * 100)
    return min(100, round(value))


def data_quality(
    has_coordinates: bool,
    speed_kmh: float,
    battery_percent: int | None,
    ignition_known: bool,
    signal_strength: int | None,
) -> str:
    score = 0
    if has_coordinates:
        score += 2
    if speed_kmh > 0:
        score += 1
    if battery_percent is not None:
        score += 1
    if ignition_known:
        score += 1
    if signal_strength is not None:
        score += 1
    if score >= 5:
        return "high"
    if score >= 3:
        return "medium"
    return "low"


def is_online(position: NormalizedPosition, now: datetime, threshold_minutes: int = 10) -> bool:
    return now - position.gps_time < timedelta(minutes=threshold_minutes)


# ── Entry point ──────────────────────────────────────────────────────────

def normalize_report(
    report: RawDeviceReport,
    settings: Settings | None = None,
    now: datetime | None = None,
) -> NormalizeResult:
    """Normalize one raw report. Never raises on malformed fields."""
    settings = settings or Settings()
    now = now or utcnow()
    defaulted: list[str] = []

    lat, lon = normalize_coordinates(report)
    if lat is None:
        defaulted.append("coordinates")

    raw_speed = _to_float(report.speed)
    if raw_speed is None:
        defaulted.append("speed")
    speed_kmh = normalize_speed(raw_speed)

    reading = detect_ignition(
        report,
        speed_kmh if raw_speed is not None else None,
        weights=settings.ignition,
    )
    if reading.method == DetectionMethod.UNKNOWN:
        defaulted.append("ignition")

    gps_time, source = normalize_timestamp(report, now, settings.vendor_tz)
    if source != "gps":
        defaulted.append("gps_time")

    heading = _to_float(report.heading)
    if heading is not None:
        heading = heading % 360

    odometer_m = _to_float(report.odometer)
    odometer_km = round(odometer_m / 1000.0, 3) if odometer_m and odometer_m > 0 else None

    battery = normalize_battery(report, settings.battery_profile)
    signal = normalize_signal_strength(report.signal_level)

    position = NormalizedPosition(
        device_id=report.device_id,
        gps_time=gps_time,
        ingested_at=now,
        lat=lat,
        lon=lon,
        speed_kmh=speed_kmh,
        heading=heading,
        battery_percent=battery,
        ignition_on=reading.ignition_on,
        ignition_confidence=reading.confidence,
        ignition_detection_method=reading.method,
        odometer_km=odometer_km,
        signal_strength=signal,
        altitude=_to_float(report.altitude),
        is_moving=speed_kmh > _STOPPED_BELOW_KMH or _to_float(report.moving) == 1,
        timestamp_source=source,
        data_quality=data_quality(
            lat is not None,
            speed_kmh,
            battery,
            reading.method != DetectionMethod.UNKNOWN,
            signal,
        ),
    )
    return NormalizeResult(position=position, defaulted=tuple(defaulted))
