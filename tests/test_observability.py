"""Tests for logging setup, metrics, health checks and the Observability context."""

import io
import json
import logging
import sys

import pytest

from observability import (
    LOGGER_NAME,
    HealthCheck,
    JsonLogFormatter,
    MetricsCollector,
    Observability,
    setup_logging,
)


class TestMetricsCollector:
    def test_increment_and_gauge(self):
        m = MetricsCollector()
        m.increment("calls")
        m.increment("calls", 2)
        m.gauge("plugs", 4)
        assert m.get("calls") == 3
        assert m.get("plugs") == 4.0
        assert m.get("missing") is None

    def test_snapshot(self):
        m = MetricsCollector()
        m.increment("b")
        m.increment("a")
        snap = m.snapshot()
        assert list(snap["metrics"]) == ["a", "b"]
        assert snap["metrics"]["a"]["value"] == 1
        assert snap["uptime_s"] >= 0

    def test_reset(self):
        m = MetricsCollector()
        m.increment("x")
        m.reset()
        assert m.snapshot()["metrics"] == {}


class TestHealthCheck:
    def test_checks(self):
        h = HealthCheck()
        h.register_check("ok", lambda: True)
        h.register_check("bad", lambda: False)
        h.register_check("boom", lambda: 1 / 0)
        assert h.perform_checks() == {"ok": True, "bad": False, "boom": False}
        assert h.last_results["boom"] is False


class TestMeasure:
    def test_success(self):
        obs = Observability()
        with obs.measure("op"):
            pass
        assert obs.metrics.get("op_total") == 1
        assert obs.metrics.get("op_errors") is None
        assert obs.metrics.get("op_duration_ms") >= 0

    def test_failure(self):
        obs = Observability()
        with pytest.raises(KeyError):
            with obs.measure("op"):
                raise KeyError("x")
        assert obs.metrics.get("op_errors") == 1
        assert obs.metrics.get("op_total") is None

    def test_child_shares_metrics(self):
        obs = Observability()
        child = obs.child("engine")
        child.increment("n")
        assert obs.metrics.get("n") == 1
        assert child.logger.name == f"{LOGGER_NAME}.engine"
        assert child.health is obs.health


class TestLogging:
    def test_text_format_with_fields(self):
        stream = io.StringIO()
        logger = setup_logging("DEBUG", "text", stream=stream)
        assert logger.propagate is False
        Observability(logger=logger).info("Executing tool: list_smart_plugs", tool="list_smart_plugs")
        line = stream.getvalue().strip()
        assert "[INFO] ghome_mcp: Executing tool: list_smart_plugs" in line
        assert line.endswith("tool=list_smart_plugs")

    def test_json_format(self):
        stream = io.StringIO()
        logger = setup_logging("INFO", "json", stream=stream)
        Observability(logger=logger).child("engine").warning("Dropping malformed message", id=3)
        record = json.loads(stream.getvalue())
        assert record["level"] == "warning"
        assert record["logger"] == "ghome_mcp.engine"
        assert record["msg"] == "Dropping malformed message"
        assert record["id"] == 3

    def test_level_filters(self):
        stream = io.StringIO()
        logger = setup_logging("WARNING", "text", stream=stream)
        logger.info("hidden")
        assert stream.getvalue() == ""

    def test_exception_is_serialized(self):
        record = logging.LogRecord(LOGGER_NAME, logging.ERROR, __file__, 1, "failed", None, None)
        try:
            raise ValueError("bad")
        except ValueError:
            record.exc_info = sys.exc_info()
        data = json.loads(JsonLogFormatter().format(record))
        assert "ValueError: bad" in data["exc"]
