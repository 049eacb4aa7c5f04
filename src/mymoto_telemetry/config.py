"""Runtime settings for the telemetry core, read from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import timedelta, timezone


@dataclass(frozen=True)
class BatteryProfile:
    """Voltage window used to map a battery voltage to a percentage."""

    name: str
    chemistry: str  # lead_acid | lithium | agm
    min_voltage: float
    max_voltage: float


BATTERY_PROFILES: dict[str, BatteryProfile] = {
    "12v_lead_acid": BatteryProfile("12v_lead_acid", "lead_acid", 11.0, 12.8),
    "24v_lead_acid": BatteryProfile("24v_lead_acid", "lead_acid", 22.0, 25.6),
    "48v_lithium": BatteryProfile("48v_lithium", "lithium", 40.0, 54.4),
}


@dataclass(frozen=True)
class IgnitionWeights:
    """Confidence constants for the ignition detector cascade.

    The values were tuned against GPS51 devices in the field; keep them
    configurable rather than editing them in place.
    """

    base_acc: float = 0.6
    extended_acc: float = 0.2
    status_speed: float = 0.2
    string_match: float = 0.9
    speed_strong: float = 0.4
    speed_weak: float = 0.3
    speed_stopped: float = 0.5
    acc_report: float = 0.95
    threshold: float = 0.5


@dataclass(frozen=True)
class Settings:
    # Vendor API
    gps51_base_url: str = "https://api.gps51.com/openapi"
    gps51_proxy_url: str = ""
    gps51_username: str = ""
    gps51_password: str = ""
    gps51_timezone_offset_hours: int = 8
    gps51_timeout_s: float = 30.0
    min_interval_ms: int = 200
    max_calls_per_second: int = 5
    max_calls_per_minute: int = 120
    max_retries: int = 3
    initial_retry_delay_ms: int = 1000
    max_retry_delay_ms: int = 30000
    backoff_multiplier: float = 2.0

    # Trip segmentation
    idle_timeout_s: int = 180
    min_trip_distance_km: float = 0.1
    movement_threshold_kmh: float = 1.0
    max_gap_minutes: int = 30
    max_implied_speed_kmh: float = 300.0
    backfill_window_minutes: int = 15
    initial_lookback_hours: int = 24
    position_batch_limit: int = 5000

    # Jobs and storage
    job_deadline_s: float = 50.0
    fleet_db_path: str = "fleet.db"
    offline_threshold_minutes: int = 10
    battery_profile: BatteryProfile = BATTERY_PROFILES["12v_lead_acid"]
    ignition: IgnitionWeights = field(default_factory=IgnitionWeights)

    @property
    def vendor_tz(self) -> timezone:
        return timezone(timedelta(hours=self.gps51_timezone_offset_hours))

    @classmethod
    def from_env(cls) -> Settings:
        """Build settings from environment variables, falling back to defaults."""
        profile_name = os.getenv("BATTERY_PROFILE", "12v_lead_acid")
        if profile_name not in BATTERY_PROFILES:
            raise ValueError(
                f"Unknown BATTERY_PROFILE {profile_name!r}. "
                f"Expected one of: {', '.join(sorted(BATTERY_PROFILES))}"
            )
        return cls(
            gps51_base_url=os.getenv("GPS51_BASE_URL", cls.gps51_base_url),
            gps51_proxy_url=os.getenv("GPS51_PROXY_URL", ""),
            gps51_username=os.getenv("GPS51_USERNAME", ""),
            gps51_password=os.getenv("GPS51_PASSWORD", ""),
            gps51_timezone_offset_hours=int(os.getenv("GPS51_TIMEZONE_OFFSET", "8")),
            gps51_timeout_s=float(os.getenv("GPS51_TIMEOUT_SECONDS", "30")),
            min_interval_ms=int(os.getenv("GPS51_MIN_INTERVAL_MS", "200")),
            max_calls_per_second=int(os.getenv("GPS51_MAX_CALLS_PER_SECOND", "5")),
            max_calls_per_minute=int(os.getenv("GPS51_MAX_CALLS_PER_MINUTE", "120")),
            max_retries=int(os.getenv("GPS51_MAX_RETRIES", "3")),
            idle_timeout_s=int(os.getenv("TRIP_IDLE_TIMEOUT_SECONDS", "180")),
            min_trip_distance_km=float(os.getenv("TRIP_MIN_DISTANCE_KM", "0.1")),
            movement_threshold_kmh=float(os.getenv("TRIP_MOVEMENT_THRESHOLD_KMH", "1.0")),
            max_gap_minutes=int(os.getenv("TRIP_MAX_GAP_MINUTES", "30")),
            backfill_window_minutes=int(os.getenv("TRIP_BACKFILL_WINDOW_MINUTES", "15")),
            initial_lookback_hours=int(os.getenv("TRIP_INITIAL_LOOKBACK_HOURS", "24")),
            position_batch_limit=int(os.getenv("TRIP_POSITION_BATCH_LIMIT", "5000")),
            job_deadline_s=float(os.getenv("JOB_DEADLINE_SECONDS", "50")),
            fleet_db_path=os.getenv("FLEET_DB_PATH", "fleet.db"),
            offline_threshold_minutes=int(os.getenv("OFFLINE_THRESHOLD_MINUTES", "10")),
            battery_profile=BATTERY_PROFILES[profile_name],
        )
