"""Trip segmentation over an ordered stream of normalized positions.

One TripSegmenter handles one device. It is a small state machine (idle or
in a trip) whose whole state lives in SegmenterState, so an incremental run
can persist the state, stop, and pick up later with exactly the trips a
single pass over the same positions would have produced.

Ignition transitions drive trip boundaries once the device has shown a real
ignition signal; before that, movement onset and sustained stops are used
instead, together with a minimum-distance filter against GPS jitter.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, replace
from datetime import datetime, timedelta

import structlog

from mymoto_telemetry.config import Settings
from mymoto_telemetry.models import (
    IGNITION_METHODS,
    AccStateInterval,
    DetectionMethod,
    NormalizedPosition,
    Trip,
)
from mymoto_telemetry.utils import from_db_time, haversine_km, to_db_time

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class SegmentParams:
    """Thresholds for opening and closing trips."""

    idle_timeout_s: int = 180
    min_trip_distance_km: float = 0.1
    movement_threshold_kmh: float = 1.0
    max_gap_s: int = 1800
    max_implied_speed_kmh: float = 300.0

    @classmethod
    def from_settings(cls, settings: Settings) -> SegmentParams:
        return cls(
            idle_timeout_s=settings.idle_timeout_s,
            min_trip_distance_km=settings.min_trip_distance_km,
            movement_threshold_kmh=settings.movement_threshold_kmh,
            max_gap_s=settings.max_gap_minutes * 60,
            max_implied_speed_kmh=settings.max_implied_speed_kmh,
        )


# ── State ────────────────────────────────────────────────────────────────

@dataclass
class OpenTripState:
    start_time: datetime
    mode: str  # "ignition" | "speed"
    start_lat: float | None = None
    start_lon: float | None = None
    start_odometer: float | None = None
    last_time: datetime | None = None
    last_lat: float | None = None
    last_lon: float | None = None
    last_coord_time: datetime | None = None
    last_odometer: float | None = None
    distance_km: float = 0.0
    max_speed: float = 0.0
    speed_sum: float = 0.0
    speed_samples: int = 0
    stop_since: datetime | None = None
    stop_lat: float | None = None
    stop_lon: float | None = None
    stop_distance_km: float = 0.0
    stop_odometer: float | None = None


@dataclass
class SegmenterState:
    """Everything the segmenter remembers between positions."""

    last_time: datetime | None = None
    prev_ignition: bool = False
    prev_moving: bool = False
    ignition_seen: bool = False
    trip: OpenTripState | None = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["last_time"] = _encode_time(self.last_time)
        if self.trip is not None:
            data["trip"] = {
                k: _encode_time(v) if isinstance(v, datetime) else v
                for k, v in data["trip"].items()
            }
        return data

    @classmethod
    def from_dict(cls, data: dict | None) -> SegmenterState:
        if not data:
            return cls()
        trip_data = data.get("trip")
        trip = None
        if trip_data:
            trip = OpenTripState(**{
                k: from_db_time(v) if k in _TRIP_TIME_FIELDS else v
                for k, v in trip_data.items()
            })
        return cls(
            last_time=from_db_time(data.get("last_time")),
            prev_ignition=bool(data.get("prev_ignition", False)),
            prev_moving=bool(data.get("prev_moving", False)),
            ignition_seen=bool(data.get("ignition_seen", False)),
            trip=trip,
        )


_TRIP_TIME_FIELDS = ("start_time", "last_time", "last_coord_time", "stop_since")


def _encode_time(value: datetime | None) -> str | None:
    return to_db_time(value) if value is not None else None


# ── Distance ─────────────────────────────────────────────────────────────

def _segment_km(
    lat1: float, lon1: float, t1: datetime,
    lat2: float, lon2: float, t2: datetime,
    params: SegmentParams,
) -> float | None:
    """Distance between two fixes, or None when it implies a GPS jump."""
    distance = haversine_km(lat1, lon1, lat2, lon2)
    elapsed_h = (t2 - t1).total_seconds() / 3600.0
    if elapsed_h <= 0:
        return distance if distance == 0 else None
    if distance / elapsed_h > params.max_implied_speed_kmh:
        return None
    return distance


def _odometer_km(start: float | None, end: float | None) -> float | None:
    if start is None or end is None or end <= start:
        return None
    return end - start


def trip_distance_km(
    positions: list[NormalizedPosition], params: SegmentParams | None = None
) -> float:
    """Distance covered by an ordered run of positions.

    Odometer delta between the first and last reading when it strictly
    increases; otherwise great-circle accumulation between consecutive fixes.
    """
    params = params or SegmentParams()
    if not positions:
        return 0.0
    odometer = _odometer_km(positions[0].odometer_km, positions[-1].odometer_km)
    if odometer is not None:
        return round(odometer, 2)
    total = 0.0
    prev: NormalizedPosition | None = None
    for p in positions:
        if not p.has_coordinates:
            continue
        if prev is not None:
            step = _segment_km(
                prev.lat, prev.lon, prev.gps_time, p.lat, p.lon, p.gps_time, params
            )
            if step is not None:
                total += step
        prev = p
    return round(total, 2)


# ── Segmenter ────────────────────────────────────────────────────────────

class TripSegmenter:
    """Per-device trip state machine."""

    def __init__(
        self,
        device_id: str,
        params: SegmentParams | None = None,
        state: SegmenterState | None = None,
    ) -> None:
        self.device_id = device_id
        self.params = params or SegmentParams()
        self.state = state or SegmenterState()

    def feed_many(self, positions: list[NormalizedPosition]) -> list[Trip]:
        closed: list[Trip] = []
        for position in positions:
            closed.extend(self.feed(position))
        return closed

    def feed(self, p: NormalizedPosition) -> list[Trip]:
        """Process one position; return the trips it closed (0, 1 or 2)."""
        s = self.state
        if s.last_time is not None and p.gps_time <= s.last_time:
            log.warning(
                "out_of_order_position",
                device_id=self.device_id,
                gps_time=p.gps_time.isoformat(),
                last_time=s.last_time.isoformat(),
            )
            return []

        closed: list[Trip] = []
        if p.ignition_detection_method in IGNITION_METHODS:
            s.ignition_seen = True
        ignition_mode = s.ignition_seen
        known = p.ignition_detection_method != DetectionMethod.UNKNOWN
        moving = p.speed_kmh > self.params.movement_threshold_kmh
        prev_ignition, prev_moving = s.prev_ignition, s.prev_moving

        if s.last_time is not None:
            gap = (p.gps_time - s.last_time).total_seconds()
            if gap > self.params.max_gap_s:
                if s.trip is not None:
                    closed.extend(self._close_at_gap(s.trip))
                # After an outage the next point starts from a clean slate.
                prev_ignition = prev_moving = False
        # An undecided reading carries no ignition information; the last
        # known state stands and it never opens a trip on its own.
        ignition_on = p.ignition_on if known else prev_ignition

        if s.trip is None:
            if known or not ignition_mode:
                self._maybe_open(
                    p, ignition_mode, ignition_on, moving, prev_ignition, prev_moving
                )
        else:
            closed.extend(self._advance(s.trip, p, ignition_mode, ignition_on, moving))

        s.last_time = p.gps_time
        s.prev_ignition = ignition_on
        s.prev_moving = moving
        return closed

    def open_trip(self) -> Trip | None:
        """Snapshot of the trip in progress, with end_time None."""
        t = self.state.trip
        if t is None:
            return None
        return Trip(
            device_id=self.device_id,
            start_time=t.start_time,
            end_time=None,
            start_lat=t.start_lat or 0.0,
            start_lon=t.start_lon or 0.0,
            end_lat=t.last_lat,
            end_lon=t.last_lon,
            distance_km=round(t.distance_km, 2),
            max_speed_kmh=round(t.max_speed, 1),
            avg_speed_kmh=_average(t),
            close_reason="open",
            detection_mode=t.mode,
        )

    # ── transitions ──

    def _maybe_open(
        self,
        p: NormalizedPosition,
        ignition_mode: bool,
        ignition_on: bool,
        moving: bool,
        prev_ignition: bool,
        prev_moving: bool,
    ) -> None:
        if ignition_mode:
            if not ignition_on:
                return
            if prev_ignition:
                if not moving:
                    return
                # Ignition stayed on but no trip is open (e.g. after an idle
                # timeout with a stuck ACC line) and the vehicle moves again.
                log.warning(
                    "trip_reopened_without_transition",
                    device_id=self.device_id,
                    gps_time=p.gps_time.isoformat(),
                )
            self._open(p, "ignition", moving)
            return

        if not moving:
            return
        if prev_moving:
            log.warning(
                "trip_reopened_without_transition",
                device_id=self.device_id,
                gps_time=p.gps_time.isoformat(),
            )
        self._open(p, "speed", moving)

    def _open(self, p: NormalizedPosition, mode: str, moving: bool) -> None:
        t = OpenTripState(
            start_time=p.gps_time,
            mode=mode,
            start_lat=p.lat,
            start_lon=p.lon,
            start_odometer=p.odometer_km,
        )
        self.state.trip = t
        self._accumulate(t, p)
        if not moving:
            self._mark_stop(t, p)
        log.debug("trip_opened", device_id=self.device_id, start=p.gps_time.isoformat(), mode=mode)

    def _advance(
        self,
        t: OpenTripState,
        p: NormalizedPosition,
        ignition_mode: bool,
        ignition_on: bool,
        moving: bool,
    ) -> list[Trip]:
        self._accumulate(t, p)

        if ignition_mode and not ignition_on:
            return self._close(
                t,
                end_time=p.gps_time,
                end_lat=p.lat,
                end_lon=p.lon,
                distance_km=t.distance_km,
                end_odometer=t.last_odometer,
                reason="ignition_off",
            )

        if moving:
            t.stop_since = None
        elif t.stop_since is None:
            self._mark_stop(t, p)

        if t.stop_since is not None:
            stopped_for = (p.gps_time - t.stop_since).total_seconds()
            if stopped_for >= self.params.idle_timeout_s:
                if ignition_mode:
                    end_time = min(
                        p.gps_time, t.stop_since + timedelta(seconds=self.params.idle_timeout_s)
                    )
                else:
                    end_time = t.stop_since
                return self._close(
                    t,
                    end_time=end_time,
                    end_lat=t.stop_lat,
                    end_lon=t.stop_lon,
                    distance_km=t.stop_distance_km,
                    end_odometer=t.stop_odometer,
                    reason="idle_timeout",
                )
        return []

    def _close_at_gap(self, t: OpenTripState) -> list[Trip]:
        return self._close(
            t,
            end_time=t.last_time,
            end_lat=t.last_lat,
            end_lon=t.last_lon,
            distance_km=t.distance_km,
            end_odometer=t.last_odometer,
            reason="gap",
        )

    def _close(
        self,
        t: OpenTripState,
        end_time: datetime | None,
        end_lat: float | None,
        end_lon: float | None,
        distance_km: float,
        end_odometer: float | None,
        reason: str,
    ) -> list[Trip]:
        self.state.trip = None
        if end_time is None or end_time <= t.start_time:
            log.info(
                "zero_length_trip_dropped",
                device_id=self.device_id,
                start=t.start_time.isoformat(),
                reason=reason,
            )
            return []

        odometer = _odometer_km(t.start_odometer, end_odometer)
        if odometer is not None:
            distance_km = odometer

        if t.mode == "speed" and distance_km < self.params.min_trip_distance_km:
            log.info(
                "short_trip_discarded",
                device_id=self.device_id,
                start=t.start_time.isoformat(),
                distance_km=round(distance_km, 3),
            )
            return []

        trip = Trip(
            device_id=self.device_id,
            start_time=t.start_time,
            end_time=end_time,
            start_lat=t.start_lat or 0.0,
            start_lon=t.start_lon or 0.0,
            end_lat=end_lat or 0.0,
            end_lon=end_lon or 0.0,
            distance_km=round(distance_km, 2),
            max_speed_kmh=round(t.max_speed, 1),
            avg_speed_kmh=_average(t),
            close_reason=reason,
            detection_mode=t.mode,
        )
        log.debug(
            "trip_closed",
            device_id=self.device_id,
            start=trip.start_time.isoformat(),
            end=end_time.isoformat(),
            reason=reason,
            distance_km=trip.distance_km,
        )
        return [trip]

    # ── accumulation ──

    def _accumulate(self, t: OpenTripState, p: NormalizedPosition) -> None:
        if p.has_coordinates:
            if t.last_lat is not None and t.last_coord_time is not None:
                step = _segment_km(
                    t.last_lat, t.last_lon, t.last_coord_time,
                    p.lat, p.lon, p.gps_time, self.params,
                )
                if step is None:
                    log.info(
                        "gps_jump_skipped",
                        device_id=self.device_id,
                        gps_time=p.gps_time.isoformat(),
                    )
                else:
                    t.distance_km += step
            t.last_lat, t.last_lon, t.last_coord_time = p.lat, p.lon, p.gps_time
        if p.odometer_km is not None:
            t.last_odometer = p.odometer_km
        t.last_time = p.gps_time
        t.max_speed = max(t.max_speed, p.speed_kmh)
        if p.speed_kmh > 0:
            t.speed_sum += p.speed_kmh
            t.speed_samples += 1

    @staticmethod
    def _mark_stop(t: OpenTripState, p: NormalizedPosition) -> None:
        t.stop_since = p.gps_time
        t.stop_lat = p.lat if p.has_coordinates else t.last_lat
        t.stop_lon = p.lon if p.has_coordinates else t.last_lon
        t.stop_distance_km = t.distance_km
        t.stop_odometer = t.last_odometer


def _average(t: OpenTripState) -> float:
    if not t.speed_samples:
        return 0.0
    return round(t.speed_sum / t.speed_samples, 1)


def segment_positions(
    device_id: str,
    positions: list[NormalizedPosition],
    params: SegmentParams | None = None,
    state: SegmenterState | None = None,
) -> tuple[list[Trip], Trip | None, SegmenterState]:
    """Segment a full run of positions in one go.

    Returns the closed trips, the trip still open at the end (if any), and
    the final state for resuming later.
    """
    segmenter = TripSegmenter(device_id, params, state)
    closed = segmenter.feed_many(positions)
    return closed, segmenter.open_trip(), segmenter.state


def corroborate_ignition(
    positions: list[NormalizedPosition],
    intervals: list[AccStateInterval],
    confidence: float = 0.95,
) -> list[NormalizedPosition]:
    """Overlay vendor ACC intervals on positions lacking a hardware signal.

    Positions already decided by the status bit or status text are left
    alone. Both lists must be sorted by time.
    """
    if not intervals:
        return list(positions)
    out: list[NormalizedPosition] = []
    idx = 0
    for p in positions:
        while idx < len(intervals) and intervals[idx].end_time < p.gps_time:
            idx += 1
        if p.ignition_detection_method in (
            DetectionMethod.STATUS_BIT,
            DetectionMethod.STRING_PARSE,
        ):
            out.append(p)
            continue
        match = None
        for interval in intervals[idx:]:
            if interval.begin_time > p.gps_time:
                break
            if interval.covers(p.gps_time):
                match = interval
                break
        if match is None:
            out.append(p)
            continue
        out.append(replace(
            p,
            ignition_on=match.state == "ON",
            ignition_confidence=confidence,
            ignition_detection_method=DetectionMethod.MULTI_SIGNAL,
        ))
    return out
