"""Unit tests for the trip segmentation engine."""

from datetime import timedelta

import pytest
from conftest import BASE_LAT, BASE_LON, LAT_STEP, T0, make_position
from structlog.testing import capture_logs

from mymoto_telemetry.models import AccStateInterval, DetectionMethod
from mymoto_telemetry.segmentation import (
    SegmenterState,
    SegmentParams,
    TripSegmenter,
    corroborate_ignition,
    segment_positions,
    trip_distance_km,
)
from mymoto_telemetry.utils import haversine_km

SPEED = DetectionMethod.SPEED_INFERENCE


def path_km(*steps: int) -> float:
    total = 0.0
    for a, b in zip(steps, steps[1:]):
        total += haversine_km(BASE_LAT + a * LAT_STEP, BASE_LON, BASE_LAT + b * LAT_STEP, BASE_LON)
    return total


def ignition_drive():
    """Ignition on at 0, driving, ignition off at 600."""
    return [
        make_position(0, speed=0, step=0),
        make_position(60, speed=40, step=1),
        make_position(300, speed=40, step=2),
        make_position(600, ignition_on=False, speed=0, step=3,
                      method=SPEED, confidence=0.5),
    ]


class TestIgnitionMode:
    """Trips bounded by ignition transitions."""

    def test_ignition_on_to_off(self):
        closed, open_trip, _ = segment_positions("dev-1", ignition_drive())
        assert open_trip is None
        assert len(closed) == 1
        trip = closed[0]
        assert trip.start_time == T0
        assert trip.end_time == T0 + timedelta(seconds=600)
        assert trip.duration_seconds == 600
        assert trip.close_reason == "ignition_off"
        assert trip.detection_mode == "ignition"
        assert trip.distance_km == pytest.approx(path_km(0, 1, 2, 3), abs=0.01)
        assert trip.max_speed_kmh == 40.0
        assert trip.avg_speed_kmh == 40.0
        assert trip.start_lat == pytest.approx(BASE_LAT)
        assert trip.end_lat == pytest.approx(BASE_LAT + 3 * LAT_STEP)

    def test_undecided_reading_does_not_split_trip(self):
        positions = [
            make_position(0, speed=30, step=0),
            make_position(60, speed=40, step=1),
            make_position(120, ignition_on=False, method=DetectionMethod.UNKNOWN),
            make_position(180, speed=40, step=2),
            make_position(600, ignition_on=False, speed=0, step=3),
        ]
        segmenter = TripSegmenter("dev-1")
        assert segmenter.feed_many(positions[:3]) == []
        assert segmenter.state.prev_ignition is True
        assert segmenter.state.trip is not None

        [trip] = segmenter.feed_many(positions[3:])
        assert trip.start_time == T0
        assert trip.end_time == T0 + timedelta(seconds=600)
        assert trip.close_reason == "ignition_off"
        assert trip.distance_km == pytest.approx(path_km(0, 1, 2, 3), abs=0.01)

    def test_undecided_reading_never_opens_trip(self):
        # Idle timeout closes the trip while ignition stays on
        positions = [make_position(s, speed=0, step=0) for s in (0, 60, 120, 180)]
        positions.append(
            make_position(240, ignition_on=False, speed=20, step=1, method=DetectionMethod.UNKNOWN)
        )
        closed, open_trip, state = segment_positions("dev-1", positions)
        assert len(closed) == 1
        assert open_trip is None
        assert state.prev_ignition is True

    def test_idle_timeout_closes_at_timeout(self):
        positions = [make_position(s, speed=0, step=0) for s in (0, 60, 120, 180)]
        closed, open_trip, _ = segment_positions("dev-1", positions)
        assert len(closed) == 1
        assert closed[0].end_time == T0 + timedelta(seconds=180)
        assert closed[0].close_reason == "idle_timeout"
        assert open_trip is None

    def test_idle_timeout_end_capped_at_stop_plus_timeout(self):
        positions = [
            make_position(0, speed=30, step=0),
            make_position(60, speed=0, step=1),
            make_position(400, speed=0, step=1),
        ]
        closed, _, _ = segment_positions("dev-1", positions)
        assert closed[0].end_time == T0 + timedelta(seconds=60 + 180)

    def test_reopens_when_moving_again_with_stuck_ignition(self):
        positions = [make_position(s, speed=0, step=0) for s in (0, 60, 120, 180)]
        positions += [make_position(240, speed=30, step=1), make_position(300, speed=30, step=2)]
        with capture_logs() as logs:
            closed, open_trip, _ = segment_positions("dev-1", positions)
        [reopened] = [e for e in logs if e["event"] == "trip_reopened_without_transition"]
        assert reopened["log_level"] == "warning"
        assert reopened["device_id"] == "dev-1"
        assert reopened["gps_time"] == (T0 + timedelta(seconds=240)).isoformat()
        assert len(closed) == 1
        assert open_trip is not None
        assert open_trip.start_time == T0 + timedelta(seconds=240)
        assert open_trip.end_time is None

    def test_no_trip_while_ignition_stays_off(self):
        positions = [
            make_position(s, ignition_on=False, speed=0, step=0, confidence=0.0)
            for s in (0, 60, 120)
        ]
        closed, open_trip, _ = segment_positions("dev-1", positions)
        assert closed == []
        assert open_trip is None

    def test_gap_closes_trip_at_last_point(self):
        positions = [
            make_position(0, speed=30, step=0),
            make_position(60, speed=30, step=1),
            make_position(60 + 1801, speed=30, step=2),
        ]
        closed, open_trip, _ = segment_positions("dev-1", positions)
        assert len(closed) == 1
        assert closed[0].end_time == T0 + timedelta(seconds=60)
        assert closed[0].close_reason == "gap"
        # The point after the outage starts a fresh trip
        assert open_trip is not None
        assert open_trip.start_time == T0 + timedelta(seconds=1861)

    def test_zero_length_trip_dropped(self):
        positions = [
            make_position(0, speed=0, step=0),
            make_position(1900, speed=0, step=0),
        ]
        closed, open_trip, _ = segment_positions("dev-1", positions)
        assert closed == []
        assert open_trip is not None

    def test_odometer_overrides_distance(self):
        positions = [
            make_position(0, speed=30, step=0, odometer_km=1000.0),
            make_position(300, speed=30, step=1, odometer_km=1006.0),
            make_position(600, ignition_on=False, speed=0, step=2, odometer_km=1012.5,
                          method=SPEED, confidence=0.5),
        ]
        closed, _, _ = segment_positions("dev-1", positions)
        assert closed[0].distance_km == 12.5

    def test_gps_jump_excluded_from_distance(self):
        positions = ignition_drive()
        jump = make_position(450, speed=40, lat=BASE_LAT + 1.0, lon=BASE_LON)
        positions.insert(3, jump)
        closed, _, _ = segment_positions("dev-1", positions)
        # Neither the jump nor the hop back from it count
        assert closed[0].distance_km == pytest.approx(path_km(0, 1, 2), abs=0.01)

    def test_out_of_order_position_ignored(self):
        segmenter = TripSegmenter("dev-1")
        segmenter.feed(make_position(60, speed=30, step=0))
        before = segmenter.state.to_dict()
        assert segmenter.feed(make_position(30, speed=30, step=1)) == []
        assert segmenter.state.to_dict() == before


class TestSpeedMode:
    """Devices without an ignition line."""

    def test_movement_onset_to_sustained_stop(self):
        positions = [
            make_position(0, ignition_on=False, speed=0, step=0, method=SPEED),
            make_position(60, speed=30, step=1, method=SPEED),
            make_position(120, speed=30, step=2, method=SPEED),
            make_position(180, ignition_on=False, speed=0, step=3, method=SPEED),
            make_position(360, ignition_on=False, speed=0, step=3, method=SPEED),
        ]
        closed, open_trip, _ = segment_positions("dev-1", positions)
        assert open_trip is None
        assert len(closed) == 1
        trip = closed[0]
        assert trip.detection_mode == "speed"
        assert trip.start_time == T0 + timedelta(seconds=60)
        assert trip.end_time == T0 + timedelta(seconds=180)
        assert trip.close_reason == "idle_timeout"
        assert trip.distance_km == pytest.approx(path_km(1, 2, 3), abs=0.01)

    def test_short_trip_discarded(self):
        tiny = 0.0002  # about 22 m
        positions = [
            make_position(0, speed=10, lat=BASE_LAT, lon=BASE_LON, method=SPEED),
            make_position(60, speed=10, lat=BASE_LAT + tiny, lon=BASE_LON, method=SPEED),
            make_position(120, ignition_on=False, speed=0, lat=BASE_LAT + tiny, lon=BASE_LON,
                          method=SPEED),
            make_position(300, ignition_on=False, speed=0, lat=BASE_LAT + tiny, lon=BASE_LON,
                          method=SPEED),
        ]
        closed, open_trip, _ = segment_positions("dev-1", positions)
        assert closed == []
        assert open_trip is None

    def test_switches_to_ignition_mode_once_signal_seen(self):
        positions = [
            make_position(0, speed=30, step=0, method=SPEED),
            make_position(60, speed=30, step=1),
            make_position(120, ignition_on=False, speed=30, step=2,
                          method=DetectionMethod.STRING_PARSE),
        ]
        closed, _, state = segment_positions("dev-1", positions)
        assert state.ignition_seen
        assert closed[0].close_reason == "ignition_off"
        assert closed[0].end_time == T0 + timedelta(seconds=120)


class TestResumableState:
    """Incremental runs must match a single pass."""

    def long_stream(self):
        positions = ignition_drive()
        later = T0 + timedelta(hours=1)
        positions += [
            make_position(0, speed=0, step=5, base=later),
            make_position(120, speed=50, step=6, base=later),
            make_position(240, speed=50, step=7, base=later),
            make_position(360, speed=0, step=8, base=later),
            make_position(600, speed=0, step=8, base=later),
            make_position(4000, speed=20, step=9, base=later),
            make_position(4060, speed=20, step=10, base=later),
            make_position(4300, ignition_on=False, speed=0, step=10, method=SPEED,
                          confidence=0.5, base=later),
            make_position(4400, speed=30, step=11, base=later),
        ]
        return positions

    @pytest.mark.parametrize("cuts", [(1,), (3, 6), (2, 5, 8, 10)])
    def test_chunked_equals_single_pass(self, cuts):
        positions = self.long_stream()
        single, single_open, _ = segment_positions("dev-1", positions)

        chunked = []
        state = None
        bounds = (0, *cuts, len(positions))
        for lo, hi in zip(bounds, bounds[1:]):
            closed, chunk_open, state = segment_positions("dev-1", positions[lo:hi], state=state)
            chunked.extend(closed)
            # Persist and restore between chunks as the store does
            state = SegmenterState.from_dict(state.to_dict())

        assert chunked == single
        assert chunk_open == single_open
        assert len(single) == 3

    def test_state_round_trip(self):
        segmenter = TripSegmenter("dev-1")
        segmenter.feed_many(ignition_drive()[:2])
        restored = SegmenterState.from_dict(segmenter.state.to_dict())
        assert restored == segmenter.state

    def test_empty_state(self):
        assert SegmenterState.from_dict(None) == SegmenterState()


class TestDistance:
    """Distance helpers."""

    def test_haversine_sum(self):
        positions = [make_position(i * 60, speed=30, step=i) for i in range(4)]
        assert trip_distance_km(positions) == pytest.approx(path_km(0, 1, 2, 3), abs=0.01)

    def test_odometer_preferred_when_increasing(self):
        positions = [
            make_position(0, step=0, odometer_km=10.0),
            make_position(60, step=1, odometer_km=13.0),
        ]
        assert trip_distance_km(positions) == 3.0

    def test_odometer_ignored_when_not_increasing(self):
        positions = [
            make_position(0, step=0, odometer_km=10.0),
            make_position(60, step=1, odometer_km=10.0),
        ]
        assert trip_distance_km(positions) == pytest.approx(path_km(0, 1), abs=0.01)

    def test_positions_without_coordinates_skipped(self):
        positions = [
            make_position(0, step=0),
            make_position(30),
            make_position(60, step=1),
        ]
        assert trip_distance_km(positions) == pytest.approx(path_km(0, 1), abs=0.01)

    def test_custom_jump_threshold(self):
        positions = [make_position(0, step=0), make_position(60, step=1)]
        assert trip_distance_km(positions, SegmentParams(max_implied_speed_kmh=10)) == 0.0


class TestCorroboration:
    """Vendor ACC intervals over inferred ignition."""

    def test_overrides_speed_inference_only(self):
        positions = [
            make_position(0, ignition_on=False, speed=0, step=0, method=SPEED),
            make_position(60, speed=0, step=0),
            make_position(120, ignition_on=False, speed=0, step=0, method=SPEED),
            make_position(900, ignition_on=False, speed=0, step=0, method=SPEED),
        ]
        intervals = [
            AccStateInterval("dev-1", "ON", T0 - timedelta(seconds=10), T0 + timedelta(seconds=300)),
        ]
        result = corroborate_ignition(positions, intervals)
        assert result[0].ignition_on is True
        assert result[0].ignition_detection_method == DetectionMethod.MULTI_SIGNAL
        assert result[0].ignition_confidence == 0.95
        assert result[1] == positions[1]
        assert result[2].ignition_on is True
        assert result[3] == positions[3]

    def test_no_intervals_is_identity(self):
        positions = ignition_drive()
        assert corroborate_ignition(positions, []) == positions
