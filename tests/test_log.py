"""Tests for logging setup."""

import logging
import os
import sys
from unittest.mock import patch

import pytest
import structlog

from mymoto_telemetry.log import setup_logging


@pytest.fixture()
def basic_config(monkeypatch):
    """Record basicConfig calls and restore the structlog config afterwards."""
    calls = []
    monkeypatch.setattr(logging, "basicConfig", lambda **kwargs: calls.append(kwargs))
    saved = structlog.get_config()
    yield calls
    structlog.configure(**saved)


class TestSetupLogging:
    """Stream and renderer selection."""

    def test_records_go_to_stderr_by_default(self, basic_config):
        setup_logging("mymoto-mcp")
        assert basic_config[0]["stream"] is sys.stderr
        assert basic_config[0]["stream"] is not sys.stdout

    def test_explicit_stream(self, basic_config):
        stream = object()
        setup_logging("mymoto-jobs", stream=stream)
        assert basic_config[0]["stream"] is stream

    def test_json_renderer_and_level(self, basic_config):
        with patch.dict(os.environ, {"LOG_FORMAT": "json", "LOG_LEVEL": "warning"}):
            setup_logging("mymoto-jobs")
        assert basic_config[0]["level"] == logging.WARNING
        assert isinstance(structlog.get_config()["processors"][-1], structlog.processors.JSONRenderer)
