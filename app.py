# app.py

"""Loopback diagnostics for a running ghome-mcp server.

Exposes:
- GET /healthz  -> registered health checks (200 when all pass, 503 otherwise)
- GET /metrics  -> counters/gauges snapshot

Only served when GHOME_DIAGNOSTICS_PORT is set; the MCP traffic itself stays on stdio.
"""

from __future__ import annotations

import threading
from typing import Optional

from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException
from werkzeug.serving import BaseWSGIServer, make_server

from observability import Observability


def create_app(obs: Observability) -> Flask:
    app = Flask(__name__)

    # Return JSON errors, but preserve correct HTTP status codes (e.g., 404).
    @app.errorhandler(HTTPException)
    def _handle_http_exception(e: HTTPException):
        status = int(getattr(e, "code", 500) or 500)
        return (
            jsonify(
                {
                    "ok": False,
                    "error": e.name,
                    "status": status,
                    "details": str(getattr(e, "description", "")) or None,
                }
            ),
            status,
        )

    @app.errorhandler(Exception)
    def _handle_any_exception(e: Exception):
        return jsonify({"ok": False, "error": repr(e)}), 500

    @app.get("/healthz")
    def healthz():
        checks = obs.health.perform_checks()
        for name, ok in checks.items():
            obs.gauge(f"health_{name}", 1 if ok else 0)
        healthy = all(checks.values())
        return jsonify({"ok": healthy, "checks": checks}), (200 if healthy else 503)

    @app.get("/metrics")
    def metrics():
        return jsonify({"ok": True, **obs.metrics.snapshot()})

    return app


class DiagnosticsServer:
    """Runs the diagnostics app on 127.0.0.1 in a daemon thread."""

    def __init__(self, app: Flask, port: int, host: str = "127.0.0.1") -> None:
        self._server: BaseWSGIServer = make_server(host, int(port), app, threaded=True)
        self._thread: Optional[threading.Thread] = None

    @property
    def port(self) -> int:
        return int(self._server.server_port)

    def start(self) -> None:
        if self._thread is None:
            self._thread = threading.Thread(target=self._server.serve_forever, name="ghome-diagnostics", daemon=True)
            self._thread.start()

    def stop(self) -> None:
        if self._thread is not None:
            self._server.shutdown()
            self._thread.join(timeout=5)
            self._thread = None
        self._server.server_close()
