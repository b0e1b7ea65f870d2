"""Logging, metrics and health checks for the ghome-mcp server.

Everything here writes to stderr or stays in memory: stdout belongs to the
JSON-RPC stream when running under a stdio client.

The server never reaches for module-level singletons. One `Observability`
object is built at startup and handed to the protocol engine, the dispatcher
and the backend adapter.
"""

from __future__ import annotations

import json
import logging
import sys
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, Optional

LOGGER_NAME = "ghome_mcp"


class JsonLogFormatter(logging.Formatter):
    """One JSON object per line. Structured fields ride on `extra={"fields": {...}}`."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "msg": record.getMessage(),
        }
        fields = getattr(record, "fields", None)
        if isinstance(fields, dict):
            for k, v in fields.items():
                log_data.setdefault(str(k), v)
        if record.exc_info:
            log_data["exc"] = self.formatException(record.exc_info)
        return json.dumps(log_data, ensure_ascii=False, default=str, separators=(",", ":"))


class TextLogFormatter(logging.Formatter):
    """Plain text with structured fields appended as key=value pairs."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = getattr(record, "fields", None)
        if isinstance(fields, dict) and fields:
            line += " " + " ".join(f"{k}={v}" for k, v in fields.items())
        return line


def setup_logging(level: str = "INFO", log_format: str = "text", stream: Any = None) -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    logger.handlers.clear()

    lvl = getattr(logging, str(level or "INFO").upper(), logging.INFO)
    logger.setLevel(lvl)
    logger.propagate = False

    handler = logging.StreamHandler(stream if stream is not None else sys.stderr)
    handler.setLevel(lvl)
    if str(log_format).lower() == "json":
        handler.setFormatter(JsonLogFormatter())
    else:
        handler.setFormatter(TextLogFormatter())
    logger.addHandler(handler)
    return logger


# ---------- metrics ----------


@dataclass
class MetricValue:
    value: float
    timestamp: float


class MetricsCollector:
    """Named counters and gauges. Thread-safe: the diagnostics app reads from another thread."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._metrics: Dict[str, MetricValue] = {}
        self._start_time = time.time()

    def increment(self, name: str, value: float = 1) -> None:
        with self._lock:
            current = self._metrics.get(name)
            self._metrics[name] = MetricValue((current.value if current else 0) + value, time.time())

    def gauge(self, name: str, value: float) -> None:
        with self._lock:
            self._metrics[name] = MetricValue(float(value), time.time())

    def get(self, name: str) -> Optional[float]:
        with self._lock:
            m = self._metrics.get(name)
            return m.value if m else None

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "uptime_s": round(time.time() - self._start_time, 1),
                "metrics": {k: {"value": m.value, "timestamp": m.timestamp} for k, m in sorted(self._metrics.items())},
            }

    def reset(self) -> None:
        with self._lock:
            self._metrics.clear()
            self._start_time = time.time()


# ---------- health ----------


class HealthCheck:
    """Named boolean checks. A check that raises counts as unhealthy."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._checks: Dict[str, Callable[[], bool]] = {}
        self._last: Dict[str, bool] = {}

    def register_check(self, name: str, check: Callable[[], bool]) -> None:
        with self._lock:
            self._checks[name] = check

    def perform_checks(self) -> Dict[str, bool]:
        with self._lock:
            checks = list(self._checks.items())
        results: Dict[str, bool] = {}
        for name, check in checks:
            try:
                results[name] = bool(check())
            except Exception:
                results[name] = False
        with self._lock:
            self._last = dict(results)
        return results

    @property
    def last_results(self) -> Dict[str, bool]:
        with self._lock:
            return dict(self._last)


# ---------- context object ----------


class Observability:
    """Sink passed explicitly to the engine, dispatcher and adapter.

    Usage:
        obs.increment("tool_execution_list_smart_plugs")
        with obs.measure("execute_tool_list_smart_plugs"):
            ...
    """

    def __init__(
        self,
        metrics: Optional[MetricsCollector] = None,
        logger: Optional[logging.Logger] = None,
        health: Optional[HealthCheck] = None,
    ) -> None:
        self.metrics = metrics or MetricsCollector()
        self.logger = logger or logging.getLogger(LOGGER_NAME)
        self.health = health or HealthCheck()

    def child(self, namespace: str) -> "Observability":
        return Observability(self.metrics, self.logger.getChild(namespace), self.health)

    def increment(self, name: str, value: float = 1) -> None:
        self.metrics.increment(name, value)

    def gauge(self, name: str, value: float) -> None:
        self.metrics.gauge(name, value)

    def log(self, level: int, msg: str, exc_info: Any = None, **fields: Any) -> None:
        self.logger.log(level, msg, exc_info=exc_info, extra={"fields": fields} if fields else None)

    def debug(self, msg: str, **fields: Any) -> None:
        self.log(logging.DEBUG, msg, **fields)

    def info(self, msg: str, **fields: Any) -> None:
        self.log(logging.INFO, msg, **fields)

    def warning(self, msg: str, **fields: Any) -> None:
        self.log(logging.WARNING, msg, **fields)

    def error(self, msg: str, exc_info: Any = None, **fields: Any) -> None:
        self.log(logging.ERROR, msg, exc_info=exc_info, **fields)

    @contextmanager
    def measure(self, name: str) -> Iterator[None]:
        """Time the enclosed block: `<name>_duration_ms` gauge, `<name>_total` or `<name>_errors` counter.

        BaseException (cancellation included) counts as an error exit so every
        entry is paired with exactly one exit event.
        """
        start = time.perf_counter()
        try:
            yield
        except BaseException:
            self.metrics.increment(f"{name}_errors")
            raise
        else:
            self.metrics.increment(f"{name}_total")
        finally:
            self.metrics.gauge(f"{name}_duration_ms", (time.perf_counter() - start) * 1000.0)
