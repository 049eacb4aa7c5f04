"""GPS51 open API client with throttling, retry and token refresh."""

from __future__ import annotations

import hashlib
import threading
import time
from collections import deque
from datetime import datetime, timezone
from urllib.parse import urlencode

import httpx
import structlog

from mymoto_telemetry import api_tracker
from mymoto_telemetry.config import Settings
from mymoto_telemetry.models import AccStateInterval, VendorTrip
from mymoto_telemetry.normalizer import parse_vendor_time
from mymoto_telemetry.utils import from_epoch_ms, to_vendor_time, valid_coordinates

log = structlog.get_logger(__name__)

SERVICE = "gps51"

# 8902: per-IP call limit, 9904: too many requests for the account
RATE_LIMIT_CODES = frozenset({8902, 9904})
TOKEN_EXPIRED_CODES = frozenset({9903, 9906})

ACC_STATE_ON = 3
ACC_STATE_OFF = 2


class Gps51Error(Exception):
    """A GPS51 call failed after all retries, or returned an error status."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class Gps51AuthError(Gps51Error):
    pass


class Gps51TokenExpiredError(Gps51AuthError):
    pass


class Gps51RateLimitError(Gps51Error):
    pass


class RateLimiter:
    """Serializes calls and spaces them out.

    Enforces a minimum gap between calls plus rolling per-second and
    per-minute caps. `clock` and `sleep` are injectable for tests.
    """

    def __init__(
        self,
        min_interval_ms: int = 200,
        max_per_second: int = 5,
        max_per_minute: int = 120,
        clock=time.monotonic,
        sleep=time.sleep,
    ) -> None:
        self.min_interval = min_interval_ms / 1000.0
        self.max_per_second = max_per_second
        self.max_per_minute = max_per_minute
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._calls: deque[float] = deque()

    def acquire(self) -> float:
        """Block until a call may go out; return the seconds spent waiting."""
        waited = 0.0
        with self._lock:
            while True:
                now = self._clock()
                while self._calls and now - self._calls[0] >= 60.0:
                    self._calls.popleft()
                wait = 0.0
                if self._calls:
                    wait = self._calls[-1] + self.min_interval - now
                in_last_second = [t for t in self._calls if now - t < 1.0]
                if len(in_last_second) >= self.max_per_second:
                    wait = max(wait, in_last_second[0] + 1.0 - now)
                if len(self._calls) >= self.max_per_minute:
                    wait = max(wait, self._calls[0] + 60.0 - now)
                if wait <= 0:
                    break
                self._sleep(wait)
                waited += wait
            self._calls.append(self._clock())
        return waited


class Gps51Client:
    """Wrapper around the GPS51 open API for position and ACC data."""

    def __init__(
        self,
        settings: Settings | None = None,
        transport: httpx.BaseTransport | None = None,
        sleep=time.sleep,
        clock=time.monotonic,
        wall_clock=time.time,
    ) -> None:
        self.settings = settings or Settings.from_env()
        self._transport = transport
        self._sleep = sleep
        self._wall_clock = wall_clock
        self._client: httpx.Client | None = None
        self._token: str | None = None
        self._server_id: str = ""
        self.limiter = RateLimiter(
            self.settings.min_interval_ms,
            self.settings.max_calls_per_second,
            self.settings.max_calls_per_minute,
            clock=clock,
            sleep=sleep,
        )
        api_tracker.init_db()

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(
                timeout=self.settings.gps51_timeout_s,
                transport=self._transport,
            )
        return self._client

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    @property
    def authenticated(self) -> bool:
        return self._token is not None

    # ── Transport ────────────────────────────────────────────────────────

    def _target_url(self, action: str, token: str | None) -> str:
        params = {"action": action}
        if token is not None:
            params["token"] = token
            params["serverid"] = self._server_id
        return f"{self.settings.gps51_base_url}?{urlencode(params)}"

    def _wait_for_shared_backoff(self) -> None:
        remaining = api_tracker.get_backoff_until(SERVICE) - self._wall_clock()
        if remaining > 0:
            remaining = min(remaining, self.settings.max_retry_delay_ms / 1000.0)
            log.info("gps51_shared_backoff", wait_s=round(remaining, 2))
            self._sleep(remaining)

    def _send(self, action: str, body: dict, token: str | None) -> dict:
        """One throttled round trip. Raises on HTTP errors and error statuses."""
        self._wait_for_shared_backoff()
        self.limiter.acquire()
        target = self._target_url(action, token)
        with api_tracker.track(SERVICE, action) as call:
            if self.settings.gps51_proxy_url:
                resp = self.client.post(
                    self.settings.gps51_proxy_url,
                    json={"targetUrl": target, "method": "POST", "data": body},
                )
            else:
                resp = self.client.post(target, json=body)
            resp.raise_for_status()
            data = resp.json()
            if not isinstance(data, dict):
                raise Gps51Error(f"GPS51 {action}: unexpected response type {type(data).__name__}")
            status = data.get("status")
            call["vendor_status"] = status if isinstance(status, int) else None
            if status in RATE_LIMIT_CODES:
                raise Gps51RateLimitError(
                    f"GPS51 rate limit on {action}: {data.get('cause', 'unknown')}", status
                )
            if status in TOKEN_EXPIRED_CODES:
                raise Gps51TokenExpiredError(f"GPS51 token expired on {action}", status)
        return data

    def _backoff_delay(self, attempt: int) -> float:
        delay_ms = self.settings.initial_retry_delay_ms * (
            self.settings.backoff_multiplier ** attempt
        )
        return min(delay_ms, self.settings.max_retry_delay_ms) / 1000.0

    # ── Auth ─────────────────────────────────────────────────────────────

    def login(self) -> dict:
        """Log in with the configured credentials and keep the session token."""
        username = self.settings.gps51_username
        password = self.settings.gps51_password
        if not username or not password:
            raise ValueError(
                "Missing credentials. Set GPS51_USERNAME and GPS51_PASSWORD "
                "environment variables."
            )
        body = {
            "type": "USER",
            "from": "web",
            "username": username,
            "password": hashlib.md5(password.encode("utf-8")).hexdigest(),
            "browser": "Chrome",
        }
        result = self._send("login", body, token=None)
        if result.get("status") != 0 or not result.get("token"):
            raise Gps51AuthError(
                f"GPS51 login failed: {result.get('cause') or result.get('message') or 'unknown'}",
                result.get("status"),
            )
        self._token = str(result["token"])
        self._server_id = str(result.get("serverid", ""))
        log.info("gps51_login", username=username, serverid=self._server_id)
        return {"username": username, "serverid": self._server_id, "status": "authenticated"}

    # ── Calls ────────────────────────────────────────────────────────────

    def call(self, action: str, body: dict) -> dict:
        """Call an API action with retries and one transparent re-login.

        Rate-limit responses and transport errors are retried with
        exponential backoff; a rate limit also sets the shared backoff so
        other invocations hold off. Non-zero statuses other than those are
        returned to the caller unchanged.
        """
        if self._token is None:
            self.login()

        refreshed = False
        attempt = 0
        backoff_set = False
        while True:
            try:
                result = self._send(action, body, self._token)
                if backoff_set:
                    api_tracker.set_backoff_until(SERVICE, 0.0)
                return result
            except Gps51TokenExpiredError:
                if refreshed:
                    raise Gps51AuthError(
                        f"GPS51 token expired again on {action} right after re-login"
                    )
                log.info("gps51_token_refresh", action=action)
                self._token = None
                self.login()
                refreshed = True
                continue
            except Gps51RateLimitError as exc:
                if attempt >= self.settings.max_retries:
                    raise Gps51RateLimitError(
                        f"GPS51 rate limit on {action} after {attempt} retries",
                        exc.status,
                    ) from exc
                delay = self._backoff_delay(attempt)
                api_tracker.set_backoff_until(SERVICE, self._wall_clock() + delay, str(exc))
                backoff_set = True
            except (httpx.HTTPError, ValueError) as exc:
                if attempt >= self.settings.max_retries:
                    raise Gps51Error(
                        f"GPS51 {action} failed after {attempt} retries: {exc}"
                    ) from exc
                delay = self._backoff_delay(attempt)
            log.warning(
                "gps51_retry",
                action=action,
                attempt=attempt + 1,
                delay_ms=int(delay * 1000),
            )
            self._sleep(delay)
            attempt += 1

    def _checked(self, action: str, body: dict) -> dict:
        result = self.call(action, body)
        if result.get("status") != 0:
            raise Gps51Error(
                f"GPS51 {action} error: {result.get('cause') or 'unknown'} "
                f"(status: {result.get('status')})",
                result.get("status"),
            )
        return result

    def monitor_list(self) -> list[dict]:
        """All devices visible to the account, flattened across groups."""
        result = self._checked("querymonitorlist", {"username": self.settings.gps51_username})
        devices = []
        for group in result.get("groups") or []:
            for d in group.get("devices") or []:
                devices.append({
                    "device_id": str(d.get("deviceid", "")),
                    "name": d.get("devicename", ""),
                    "group": group.get("groupname", ""),
                })
        return devices

    def last_positions(
        self, device_ids: list[str], last_query_time: int = 0
    ) -> tuple[list[dict], int]:
        """Latest position record per device.

        Returns the raw records and the vendor's lastquerypositiontime cursor
        to pass on the next call.
        """
        result = self._checked(
            "lastposition",
            {"deviceids": list(device_ids), "lastquerypositiontime": last_query_time},
        )
        records = result.get("records") or []
        cursor = result.get("lastquerypositiontime") or last_query_time
        return records, int(cursor)

    def query_track(self, device_id: str, start: datetime, end: datetime) -> list[dict]:
        """Position history for one device over [start, end]."""
        tz = self.settings.vendor_tz
        result = self._checked(
            "querytrack",
            {
                "deviceid": device_id,
                "starttime": to_vendor_time(start, tz),
                "endtime": to_vendor_time(end, tz),
                "coordsys": "wgs84",
            },
        )
        data = result.get("data")
        if isinstance(data, dict) and data.get("records") is not None:
            records = data["records"]
        else:
            records = result.get("records") or []
        for r in records:
            r.setdefault("deviceid", device_id)
        return records

    def acc_report(
        self, device_ids: list[str], start: datetime, end: datetime
    ) -> list[AccStateInterval]:
        """Vendor-computed ACC on/off intervals for the given devices."""
        tz = self.settings.vendor_tz
        result = self._checked(
            "reportaccsbytime",
            {
                "deviceids": list(device_ids),
                "starttime": to_vendor_time(start, tz),
                "endtime": to_vendor_time(end, tz),
                "offset": self.settings.gps51_timezone_offset_hours,
            },
        )
        intervals = []
        for r in result.get("records") or []:
            interval = _parse_acc_record(r, device_ids)
            if interval is not None:
                intervals.append(interval)
        return intervals

    def query_trips(self, device_id: str, start: datetime, end: datetime) -> list[VendorTrip]:
        """Trips as computed by the GPS51 platform for one device."""
        tz = self.settings.vendor_tz
        result = self._checked(
            "querytrips",
            {
                "deviceid": device_id,
                "begintime": to_vendor_time(start, tz),
                "endtime": to_vendor_time(end, tz),
                "timezone": self.settings.gps51_timezone_offset_hours,
            },
        )
        trips = []
        for r in result.get("records") or []:
            trip = _parse_trip_record(r, device_id, tz)
            if trip is not None:
                trips.append(trip)
        return trips


def _coord(lat: object, lon: object) -> tuple[float | None, float | None]:
    try:
        flat, flon = float(lat), float(lon)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None, None
    if not valid_coordinates(flat, flon):
        return None, None
    return flat, flon


def _parse_acc_record(record: dict, device_ids: list[str]) -> AccStateInterval | None:
    state_code = record.get("accstate")
    if state_code == ACC_STATE_ON:
        state = "ON"
    elif state_code == ACC_STATE_OFF:
        state = "OFF"
    else:
        log.info("acc_record_unknown_state", accstate=state_code)
        return None
    device_id = record.get("deviceid")
    if device_id is None:
        if len(device_ids) != 1:
            log.info("acc_record_without_device", record=record)
            return None
        device_id = device_ids[0]
    try:
        begin = from_epoch_ms(float(record["begintime"]))
        end = from_epoch_ms(float(record["endtime"]))
    except (KeyError, TypeError, ValueError):
        log.info("acc_record_bad_times", record=record)
        return None
    if end < begin:
        return None
    begin_lat, begin_lon = _coord(record.get("slat"), record.get("slon"))
    end_lat, end_lon = _coord(record.get("elat"), record.get("elon"))
    return AccStateInterval(
        device_id=str(device_id),
        state=state,
        begin_time=begin,
        end_time=end,
        begin_lat=begin_lat,
        begin_lon=begin_lon,
        end_lat=end_lat,
        end_lon=end_lon,
    )


def _number(value: object) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None


def _parse_trip_record(record: dict, device_id: str, tz: timezone) -> VendorTrip | None:
    start = parse_vendor_time(record.get("starttime") or record.get("starttime_str"), tz)
    if start is None:
        log.info("vendor_trip_without_start", record=record)
        return None
    end = parse_vendor_time(record.get("endtime") or record.get("endtime_str"), tz)
    if end is not None and end < start:
        end = None
    start_lat, start_lon = _coord(
        record.get("startlat", record.get("startlatitude")),
        record.get("startlon", record.get("startlongitude")),
    )
    end_lat, end_lon = _coord(
        record.get("endlat", record.get("endlatitude")),
        record.get("endlon", record.get("endlongitude")),
    )
    # distance in metres; speeds in metres per hour
    distance_m = _number(record.get("distance")) or _number(record.get("totaldistance"))
    max_speed = _number(record.get("maxspeed"))
    avg_speed = _number(record.get("avgspeed"))
    return VendorTrip(
        device_id=str(record.get("deviceid") or device_id),
        start_time=start,
        end_time=end,
        start_lat=start_lat,
        start_lon=start_lon,
        end_lat=end_lat,
        end_lon=end_lon,
        distance_km=round(distance_m / 1000.0, 3) if distance_m is not None else None,
        avg_speed_kmh=round(avg_speed / 1000.0, 2) if avg_speed is not None else None,
        max_speed_kmh=round(max_speed / 1000.0, 2) if max_speed is not None else None,
        raw=record,
    )
