"""Unit tests for the GPS51 API client."""

import hashlib
import json
from datetime import datetime, timezone

import httpx
import pytest

from mymoto_telemetry import api_tracker
from mymoto_telemetry.config import Settings
from mymoto_telemetry.gps51_client import (
    Gps51AuthError,
    Gps51Client,
    Gps51Error,
    Gps51RateLimitError,
    RateLimiter,
)


class FakeClock:
    """Monotonic and wall clock in one; sleeping advances it."""

    def __init__(self, start: float = 1_800_000_000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeGps51:
    """Scripted GPS51 endpoint: a queue of replies per action."""

    def __init__(self, replies: dict[str, list] | None = None) -> None:
        self.replies = replies or {}
        self.requests: list[tuple[str, dict, httpx.Request]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content or b"{}")
        action = request.url.params.get("action")
        if action is None:
            # Proxied call: the real target travels in the body
            target = httpx.URL(body["targetUrl"])
            action = target.params.get("action")
            body = body["data"]
        self.requests.append((action, body, request))
        queue = self.replies.get(action)
        if action == "login" and not queue:
            return httpx.Response(200, json={"status": 0, "token": "tok-1", "serverid": "7"})
        reply = queue.pop(0) if queue else {"status": 0}
        if isinstance(reply, httpx.Response):
            return reply
        return httpx.Response(200, json=reply)

    def actions(self) -> list[str]:
        return [a for a, _, _ in self.requests]


@pytest.fixture()
def clock():
    return FakeClock()


def make_client(fake: FakeGps51, clock: FakeClock, **overrides) -> Gps51Client:
    settings = Settings(gps51_username="fleet-ops", gps51_password="s3cret", **overrides)
    return Gps51Client(
        settings,
        transport=httpx.MockTransport(fake),
        sleep=clock.sleep,
        clock=clock,
        wall_clock=clock,
    )


class TestAuth:
    """Login and token refresh."""

    def test_login_hashes_password(self, clock):
        fake = FakeGps51()
        client = make_client(fake, clock)
        result = client.login()
        _, body, request = fake.requests[0]
        assert result["status"] == "authenticated"
        assert body["type"] == "USER"
        assert body["password"] == hashlib.md5(b"s3cret").hexdigest()
        assert request.url.params["action"] == "login"
        assert client.authenticated

    def test_login_requires_credentials(self, clock):
        client = Gps51Client(
            Settings(), transport=httpx.MockTransport(FakeGps51()), sleep=clock.sleep,
            clock=clock, wall_clock=clock,
        )
        with pytest.raises(ValueError, match="GPS51_USERNAME"):
            client.login()

    def test_login_failure(self, clock):
        fake = FakeGps51({"login": [{"status": 1, "cause": "bad password"}]})
        with pytest.raises(Gps51AuthError, match="bad password"):
            make_client(fake, clock).login()

    def test_token_expiry_relogs_once(self, clock):
        fake = FakeGps51({
            "login": [
                {"status": 0, "token": "tok-1", "serverid": "7"},
                {"status": 0, "token": "tok-2", "serverid": "7"},
            ],
            "lastposition": [{"status": 9903}, {"status": 0, "records": []}],
        })
        client = make_client(fake, clock)
        records, _ = client.last_positions(["dev-1"])
        assert records == []
        assert fake.actions() == ["login", "lastposition", "login", "lastposition"]
        last_request = fake.requests[-1][2]
        assert last_request.url.params["token"] == "tok-2"

    def test_token_expiry_twice_fails(self, clock):
        fake = FakeGps51({"lastposition": [{"status": 9906}, {"status": 9906}]})
        with pytest.raises(Gps51AuthError):
            make_client(fake, clock).last_positions(["dev-1"])


class TestRetries:
    """Rate limits and transport failures."""

    def test_rate_limit_retried_with_backoff(self, clock):
        fake = FakeGps51({
            "lastposition": [{"status": 8902}, {"status": 9904}, {"status": 0, "records": []}],
        })
        client = make_client(fake, clock)
        client.last_positions(["dev-1"])
        assert fake.actions().count("lastposition") == 3
        assert 1.0 in clock.sleeps
        assert 2.0 in clock.sleeps
        # Success clears the shared backoff
        assert api_tracker.get_backoff_until("gps51") == 0.0
        assert api_tracker.get_status_breakdown() == {"8902": 1, "9904": 1}

    def test_rate_limit_exhausted(self, clock):
        fake = FakeGps51({"lastposition": [{"status": 8902}] * 5})
        client = make_client(fake, clock, max_retries=2)
        with pytest.raises(Gps51RateLimitError):
            client.last_positions(["dev-1"])
        assert fake.actions().count("lastposition") == 3

    def test_shared_backoff_respected(self, clock):
        api_tracker.init_db()
        api_tracker.set_backoff_until("gps51", clock.now + 5.0)
        client = make_client(FakeGps51(), clock)
        client.login()
        assert clock.sleeps[0] == pytest.approx(5.0)

    def test_server_error_retried(self, clock):
        fake = FakeGps51({
            "lastposition": [httpx.Response(502), {"status": 0, "records": [{"deviceid": "d"}]}],
        })
        records, _ = make_client(fake, clock).last_positions(["d"])
        assert records == [{"deviceid": "d"}]

    def test_error_status_raises(self, clock):
        fake = FakeGps51({"querymonitorlist": [{"status": 2, "cause": "no permission"}]})
        with pytest.raises(Gps51Error, match="no permission"):
            make_client(fake, clock).monitor_list()

    def test_calls_are_tracked(self, clock):
        make_client(FakeGps51(), clock).monitor_list()
        actions = {row["action"]: row["vendor_status"] for row in api_tracker.get_recent()}
        assert actions == {"login": 0, "querymonitorlist": 0}


class TestRateLimiter:
    """Call spacing."""

    def test_min_interval(self, clock):
        limiter = RateLimiter(min_interval_ms=200, clock=clock, sleep=clock.sleep)
        limiter.acquire()
        waited = limiter.acquire()
        assert waited == pytest.approx(0.2)

    def test_per_minute_cap(self, clock):
        limiter = RateLimiter(
            min_interval_ms=0, max_per_second=100, max_per_minute=3,
            clock=clock, sleep=clock.sleep,
        )
        for _ in range(3):
            assert limiter.acquire() == 0.0
        assert limiter.acquire() == pytest.approx(60.0)


class TestOperations:
    """Request shapes and response parsing."""

    def test_proxy_mode_wraps_target(self, clock):
        fake = FakeGps51()
        client = make_client(fake, clock, gps51_proxy_url="https://proxy.example.com/gps51")
        client.login()
        _, body, request = fake.requests[0]
        assert str(request.url) == "https://proxy.example.com/gps51"
        assert body["username"] == "fleet-ops"

    def test_monitor_list_flattens_groups(self, clock):
        fake = FakeGps51({"querymonitorlist": [{
            "status": 0,
            "groups": [
                {"groupname": "Nairobi", "devices": [{"deviceid": 1001, "devicename": "KDA 001"}]},
                {"groupname": "Mombasa", "devices": [{"deviceid": "1002", "devicename": "KDB 002"}]},
            ],
        }]})
        devices = make_client(fake, clock).monitor_list()
        assert devices == [
            {"device_id": "1001", "name": "KDA 001", "group": "Nairobi"},
            {"device_id": "1002", "name": "KDB 002", "group": "Mombasa"},
        ]

    def test_query_track_sends_vendor_local_times(self, clock):
        fake = FakeGps51({"querytrack": [{"status": 0, "data": {"records": [{"speed": 10}]}}]})
        client = make_client(fake, clock)
        start = datetime(2026, 3, 2, 0, 0, tzinfo=timezone.utc)
        end = datetime(2026, 3, 2, 6, 0, tzinfo=timezone.utc)
        records = client.query_track("dev-1", start, end)
        _, body, _ = fake.requests[-1]
        assert body["starttime"] == "2026-03-02 08:00:00"
        assert body["endtime"] == "2026-03-02 14:00:00"
        assert records == [{"speed": 10, "deviceid": "dev-1"}]

    def test_acc_report_parsing(self, clock):
        begin = int(datetime(2026, 3, 2, 1, 0, tzinfo=timezone.utc).timestamp() * 1000)
        end = begin + 30 * 60 * 1000
        fake = FakeGps51({"reportaccsbytime": [{
            "status": 0,
            "records": [
                {"accstate": 3, "begintime": begin, "endtime": end, "slat": -1.29, "slon": 36.82},
                {"accstate": 2, "begintime": end, "endtime": end + 60000, "deviceid": "dev-1"},
                {"accstate": 9, "begintime": end, "endtime": end + 60000},
                {"accstate": 3, "begintime": "bad", "endtime": end},
            ],
        }]})
        start = datetime(2026, 3, 2, tzinfo=timezone.utc)
        intervals = make_client(fake, clock).acc_report(["dev-1"], start, start)
        assert [(iv.state, iv.device_id) for iv in intervals] == [("ON", "dev-1"), ("OFF", "dev-1")]
        assert intervals[0].begin_time == datetime(2026, 3, 2, 1, 0, tzinfo=timezone.utc)
        assert intervals[0].begin_lat == -1.29
        assert intervals[1].begin_lat is None

    def test_query_trips_request_and_units(self, clock):
        begin = int(datetime(2026, 3, 2, 1, 0, tzinfo=timezone.utc).timestamp() * 1000)
        fake = FakeGps51({"querytrips": [{
            "status": 0,
            "records": [
                {
                    "starttime": begin, "endtime": begin + 40 * 60 * 1000,
                    "distance": 12500, "maxspeed": 80000, "avgspeed": 42000,
                    "startlat": -1.29, "startlon": 36.82, "endlat": -1.30, "endlon": 36.83,
                },
                {
                    "starttime_str": "2026-03-02 10:00:00",
                    "endtime_str": "2026-03-02 10:30:00",
                    "totaldistance": 3000,
                },
                {"distance": 100},
            ],
        }]})
        start = datetime(2026, 3, 2, 0, 0, tzinfo=timezone.utc)
        end = datetime(2026, 3, 3, 0, 0, tzinfo=timezone.utc)
        trips = make_client(fake, clock).query_trips("dev-1", start, end)

        action, body, _ = fake.requests[-1]
        assert action == "querytrips"
        assert body == {
            "deviceid": "dev-1",
            "begintime": "2026-03-02 08:00:00",
            "endtime": "2026-03-03 08:00:00",
            "timezone": 8,
        }
        assert len(trips) == 2
        first, second = trips
        assert first.device_id == "dev-1"
        assert first.start_time == datetime(2026, 3, 2, 1, 0, tzinfo=timezone.utc)
        assert first.duration_seconds == 40 * 60
        assert first.distance_km == 12.5
        assert first.max_speed_kmh == 80.0
        assert first.avg_speed_kmh == 42.0
        assert (first.start_lat, first.end_lon) == (-1.29, 36.83)
        # Date strings are vendor local time (GMT+8)
        assert second.start_time == datetime(2026, 3, 2, 2, 0, tzinfo=timezone.utc)
        assert second.end_time == datetime(2026, 3, 2, 2, 30, tzinfo=timezone.utc)
        assert second.distance_km == 3.0
        assert second.avg_speed_kmh is None
        assert second.start_lat is None

    def test_query_trips_error_status(self, clock):
        fake = FakeGps51({"querytrips": [{"status": 1, "cause": "no such device"}]})
        start = datetime(2026, 3, 2, tzinfo=timezone.utc)
        with pytest.raises(Gps51Error, match="no such device"):
            make_client(fake, clock).query_trips("dev-9", start, start)
