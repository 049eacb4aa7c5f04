"""Unit tests for configuration management."""

import os
from datetime import timedelta
from unittest.mock import patch

import pytest

from mymoto_telemetry.config import BATTERY_PROFILES, Settings


class TestSettingsDefault:
    """Default configuration values."""

    def test_default_values(self):
        settings = Settings()
        assert settings.idle_timeout_s == 180
        assert settings.min_trip_distance_km == 0.1
        assert settings.max_gap_minutes == 30
        assert settings.backfill_window_minutes == 15
        assert settings.min_interval_ms == 200
        assert settings.max_calls_per_second == 5
        assert settings.max_calls_per_minute == 120
        assert settings.battery_profile == BATTERY_PROFILES["12v_lead_acid"]
        assert settings.ignition.threshold == 0.5
        assert settings.vendor_tz.utcoffset(None) == timedelta(hours=8)


class TestSettingsEnvironmentVariables:
    """Configuration from environment variables."""

    def test_overrides(self):
        env_vars = {
            "GPS51_USERNAME": "ops",
            "GPS51_PASSWORD": "pw",
            "GPS51_PROXY_URL": "https://proxy.example.com",
            "GPS51_TIMEZONE_OFFSET": "3",
            "TRIP_IDLE_TIMEOUT_SECONDS": "300",
            "TRIP_MIN_DISTANCE_KM": "0.25",
            "JOB_DEADLINE_SECONDS": "20",
            "FLEET_DB_PATH": "/tmp/fleet-test.db",
            "BATTERY_PROFILE": "48v_lithium",
        }
        with patch.dict(os.environ, env_vars):
            settings = Settings.from_env()

        assert settings.gps51_username == "ops"
        assert settings.gps51_proxy_url == "https://proxy.example.com"
        assert settings.vendor_tz.utcoffset(None) == timedelta(hours=3)
        assert settings.idle_timeout_s == 300
        assert settings.min_trip_distance_km == 0.25
        assert settings.job_deadline_s == 20.0
        assert settings.fleet_db_path == "/tmp/fleet-test.db"
        assert settings.battery_profile.chemistry == "lithium"

    def test_unknown_battery_profile(self):
        with patch.dict(os.environ, {"BATTERY_PROFILE": "9v_alkaline"}):
            with pytest.raises(ValueError, match="BATTERY_PROFILE"):
                Settings.from_env()
