r"""Claude Desktop STDIO MCP server for Google Home smart plugs.

Run (for Claude):
    python claude_stdio_server.py [--config path/to/config.json]

Notes:
- All logs go to stderr (stdout is reserved for JSON-RPC responses).
- Exit code 1 when the stored credential/config is missing or the client's
  protocol version is rejected; 0 after a clean shutdown (EOF, SIGINT, SIGTERM).
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
import threading
from typing import IO, Optional

from app import DiagnosticsServer, create_app
from observability import LOGGER_NAME, Observability, setup_logging
from protocol_engine import ProtocolEngine
from sdm_adapter import SdmDeviceBackend
from sdm_gateway import Config, OAuthAuthenticator, SdmGateway, load_config
from tool_dispatch import ToolDispatcher
from tool_registry import build_tool_table

__version__ = "1.0.0"

logger = logging.getLogger(LOGGER_NAME)


class StdioTransport:
    """Newline-delimited JSON over the process's stdin/stdout.

    stdin is drained by a daemon thread (works the same on Windows pipes and
    never holds up interpreter exit); lines are handed to the event loop
    through a queue. Writes are small and flushed immediately.
    """

    def __init__(self, stdin: Optional[IO[bytes]] = None, stdout: Optional[IO[bytes]] = None) -> None:
        self._stdin = stdin if stdin is not None else sys.stdin.buffer
        self._stdout = stdout if stdout is not None else sys.stdout.buffer
        self._queue: Optional[asyncio.Queue] = None
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._queue is not None:
            return
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()
        self._queue = queue

        def _put(item: Optional[bytes]) -> None:
            try:
                loop.call_soon_threadsafe(queue.put_nowait, item)
            except RuntimeError:
                pass  # loop already closed

        def _pump() -> None:
            try:
                for raw in iter(self._stdin.readline, b""):
                    _put(raw)
            except (OSError, ValueError) as e:
                logger.error("stdin read failed: %s", e)
            finally:
                _put(None)

        self._thread = threading.Thread(target=_pump, name="stdin-reader", daemon=True)
        self._thread.start()

    async def read_message(self) -> Optional[bytes]:
        self.start()
        assert self._queue is not None
        raw = await self._queue.get()
        if raw is None:
            return None
        # bytes as read; parse_message decodes strictly
        return raw

    async def write_message(self, message: str) -> None:
        self._stdout.write((message + "\n").encode("utf-8"))
        self._stdout.flush()


async def _health_loop(obs: Observability, interval_s: float) -> None:
    while True:
        await asyncio.sleep(interval_s)
        results = obs.health.perform_checks()
        obs.debug("Health check results", health=results)
        for name, ok in results.items():
            obs.gauge(f"health_{name}", 1 if ok else 0)


async def serve(cfg: Config, transport: Optional[StdioTransport] = None) -> int:
    obs = Observability(logger=logger)

    auth = OAuthAuthenticator.from_config(cfg)
    backend = SdmDeviceBackend(SdmGateway.from_config(cfg, auth), obs)
    dispatcher = ToolDispatcher(build_tool_table(backend), obs, timeout_s=cfg.tool_timeout_s)
    engine = ProtocolEngine(
        transport or StdioTransport(),
        dispatcher,
        obs,
        server_name="ghome-mcp",
        server_version=os.getenv("GHOME_VERSION", __version__),
        result_format=cfg.result_format,
        backend=backend,
        authenticator=auth,
        shutdown_grace_s=cfg.shutdown_grace_s,
    )

    obs.health.register_check("auth", lambda: auth.has_refresh_token and not auth.closed)
    obs.health.register_check("backend", lambda: not backend.closed)

    diagnostics: Optional[DiagnosticsServer] = None
    if cfg.diagnostics_port > 0:
        diagnostics = DiagnosticsServer(create_app(obs), cfg.diagnostics_port)
        diagnostics.start()
        logger.info("Diagnostics listening on http://127.0.0.1:%s", diagnostics.port)

    loop = asyncio.get_running_loop()
    stop = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            pass  # Windows: KeyboardInterrupt still reaches main()

    run_task = asyncio.create_task(engine.run())
    stop_task = asyncio.create_task(stop.wait())
    background = [stop_task]
    if cfg.health_interval_s > 0:
        background.append(asyncio.create_task(_health_loop(obs, cfg.health_interval_s)))

    logger.info("Google Home MCP server started (tools: %s)", ", ".join(dispatcher.tool_names))
    rc = 0
    try:
        await asyncio.wait({run_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        if stop.is_set():
            logger.info("Received shutdown signal")
            obs.increment("shutdown_signals")
        elif run_task.exception() is not None:
            logger.error("Fatal error during server execution", exc_info=run_task.exception())
            obs.increment("fatal_errors")
            rc = 1
    finally:
        for task in background:
            task.cancel()
        # Shut down before cancelling the reader so a shutdown already running inside it completes.
        await engine.shutdown()
        run_task.cancel()
        await asyncio.gather(run_task, *background, return_exceptions=True)
        if diagnostics is not None:
            diagnostics.stop()

    if engine.handshake_rejected:
        rc = 1
    logger.info("Google Home MCP server exiting (rc=%s)", rc)
    return rc


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Google Home smart plug MCP server (stdio).")
    parser.add_argument("--config", default=None, help="Path to config.json (default: GHOME_CONFIG_PATH or ./config.json)")
    args = parser.parse_args(argv)

    setup_logging(os.environ.get("GHOME_LOG_LEVEL", "INFO"), os.environ.get("GHOME_LOG_FORMAT", "text"))
    try:
        cfg = load_config(args.config)
    except RuntimeError as e:
        logger.error("Failed to start server: %s", e)
        return 1
    setup_logging(cfg.log_level, cfg.log_format)

    try:
        return asyncio.run(serve(cfg))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
