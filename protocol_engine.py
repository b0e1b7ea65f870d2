"""MCP protocol engine: handshake, connection lifecycle and request routing.

Claude Desktop (and other MCP clients) speak JSON-RPC 2.0 with these methods:
- initialize
- tools/list
- tools/call
- ping
plus notifications (notifications/initialized, notifications/cancelled).

The engine reads one message at a time, but every tools/call runs as its own
task so a slow vendor round-trip never blocks the next request. Responses may
therefore complete out of order; they are correlated by id and written one at
a time so frames never interleave.
"""

from __future__ import annotations

import asyncio
import enum
import json
import re
from typing import Any, Dict, Optional, Protocol, Set, Union

from jsonrpc import (
    INVALID_REQUEST,
    METHOD_NOT_FOUND,
    EnvelopeError,
    NotARequest,
    ProtocolError,
    Request,
    RequestId,
    Response,
    describe_exception,
    encode_response,
    internal_error,
    invalid_params,
    is_valid_id,
    parse_message,
)
from observability import Observability
from tool_dispatch import ToolDispatcher

# Leading integer of the version string: "2025-06-18" -> 2025, "0.3.1" -> 0.
# 0 is this server's own protocol line; the years cover the MCP revisions it speaks.
SUPPORTED_MAJOR_VERSIONS = frozenset({0, 2024, 2025})
_MAJOR_RE = re.compile(r"^\s*(\d+)")

RESULT_FORMATS = ("raw", "text")


class ConnectionState(enum.IntEnum):
    CREATED = 0
    INITIALIZING = 1
    READY = 2
    STOPPING = 3
    STOPPED = 4


class Transport(Protocol):
    async def read_message(self) -> Optional[Union[str, bytes]]: ...

    async def write_message(self, message: str) -> None: ...


class Closeable(Protocol):
    async def aclose(self) -> None: ...


def protocol_major(version: str) -> Optional[int]:
    m = _MAJOR_RE.match(version or "")
    return int(m.group(1)) if m else None


def wrap_tool_result(value: Any, result_format: str = "raw") -> Dict[str, Any]:
    if result_format == "text":
        # Desktop clients expect a content array. Keep it simple and return JSON as text.
        text = value if isinstance(value, str) else json.dumps(value, ensure_ascii=False, indent=2, default=str)
        return {"content": [{"type": "text", "text": text}], "isError": False}
    return {"content": value}


class ProtocolEngine:
    def __init__(
        self,
        transport: Transport,
        dispatcher: ToolDispatcher,
        obs: Optional[Observability] = None,
        server_name: str = "ghome-mcp",
        server_version: str = "1.0.0",
        result_format: str = "raw",
        backend: Optional[Closeable] = None,
        authenticator: Optional[Closeable] = None,
        shutdown_grace_s: float = 10.0,
    ) -> None:
        if result_format not in RESULT_FORMATS:
            raise ValueError(f"Unknown result format: {result_format!r}")
        self._transport = transport
        self._dispatcher = dispatcher
        self._obs = (obs or Observability()).child("engine")
        self._server_info = {"name": server_name, "version": server_version}
        self._result_format = result_format
        self._backend = backend
        self._authenticator = authenticator
        self._shutdown_grace_s = float(shutdown_grace_s)

        self._state = ConnectionState.CREATED
        self._write_lock = asyncio.Lock()
        self._inflight: Dict[RequestId, asyncio.Task] = {}
        self._background: Set[asyncio.Task] = set()
        self._stopped = asyncio.Event()
        self.negotiated_version: Optional[str] = None
        self.handshake_rejected = False

    # ---------- lifecycle ----------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def inflight_ids(self) -> list:
        return list(self._inflight.keys())

    def _advance(self, new_state: ConnectionState) -> None:
        if new_state <= self._state:
            raise RuntimeError(f"Illegal state transition {self._state.name} -> {new_state.name}")
        self._obs.debug(f"Connection state {self._state.name} -> {new_state.name}")
        self._state = new_state

    async def initialize(self, params: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        if self._state is not ConnectionState.CREATED:
            raise ProtocolError(INVALID_REQUEST, f"Already initialized (state={self._state.name})")

        params = params or {}
        version = params.get("protocolVersion", params.get("version"))
        if not isinstance(version, str) or not version.strip():
            raise invalid_params("Missing params.protocolVersion")

        self._advance(ConnectionState.INITIALIZING)
        major = protocol_major(version)
        if major not in SUPPORTED_MAJOR_VERSIONS:
            self._obs.error("Unsupported protocol version", requested=version)
            self._obs.increment("unsupported_version_errors")
            self.handshake_rejected = True
            await self.shutdown()
            raise invalid_params(
                f"Unsupported protocol version: {version}",
                {"requested": version, "supported": sorted(SUPPORTED_MAJOR_VERSIONS)},
            )

        self.negotiated_version = version
        client_info = params.get("clientInfo") if isinstance(params.get("clientInfo"), dict) else {}
        self._advance(ConnectionState.READY)
        self._obs.info("Client initialized", protocol_version=version, client=client_info.get("name"))
        self._obs.increment("server_starts")

        return {
            "protocolVersion": version,
            "capabilities": {"tools": {"listChanged": False, "manifest": self._dispatcher.manifest()}},
            "serverName": self._server_info["name"],
            "serverVersion": self._server_info["version"],
            "serverInfo": dict(self._server_info),
        }

    async def drain(self, timeout_s: Optional[float] = None) -> None:
        """Wait (bounded) for in-flight tool calls so their responses still go out."""
        pending = list(self._inflight.values()) + list(self._background)
        if not pending:
            return
        self._obs.info(f"Waiting for {len(pending)} in-flight call(s)")
        await asyncio.wait(pending, timeout=timeout_s if timeout_s is not None else self._shutdown_grace_s)

    async def shutdown(self) -> None:
        """Idempotent; a second caller waits for the first one to finish."""
        if self._state >= ConnectionState.STOPPING:
            await self._stopped.wait()
            return
        self._advance(ConnectionState.STOPPING)
        self._obs.info("Cleaning up server...")

        try:
            tasks = list(self._inflight.values()) + list(self._background)
            self._inflight.clear()
            self._background.clear()
            for task in tasks:
                task.cancel()
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)

            backend, self._backend = self._backend, None
            authenticator, self._authenticator = self._authenticator, None
            for resource in (backend, authenticator):
                if resource is None:
                    continue
                try:
                    await resource.aclose()
                except Exception as e:
                    self._obs.error(f"Error during cleanup: {e}")
                    self._obs.increment("cleanup_errors")
        finally:
            self._advance(ConnectionState.STOPPED)
            self._stopped.set()
        self._obs.info("Server cleanup completed")

    async def run(self) -> None:
        """Read until end of input (or until stopped), then drain and shut down."""
        while self._state is not ConnectionState.STOPPED:
            raw = await self._transport.read_message()
            if raw is None:
                self._obs.info("Input closed")
                break
            await self.handle_inbound(raw)

        if self._state < ConnectionState.STOPPING:
            await self.drain()
            await self.shutdown()

    # ---------- inbound ----------

    async def handle_inbound(self, raw: Any) -> None:
        if isinstance(raw, (str, bytes)) and not raw.strip():
            return
        try:
            try:
                req = parse_message(raw)
            except NotARequest as e:
                self._obs.debug("Ignoring client response", id=e.request_id)
                return
            except EnvelopeError as e:
                self._obs.increment("invalid_messages")
                if e.request_id is None:
                    self._obs.warning(f"Dropping malformed message: {e.error.message}")
                    return
                await self._send(Response(e.request_id, error=e.error))
                return

            if req.is_notification:
                await self._handle_notification(req)
            elif req.method == "tools/call":
                await self._start_tool_call(req)
            else:
                await self._handle_request(req)
        except Exception as e:
            # A bad message must never take the read loop down.
            self._obs.error(f"Unhandled error: {e}", exc_info=True)
            self._obs.increment("unhandled_errors")

    async def _handle_request(self, req: Request) -> None:
        self._obs.debug(f"Handling {req.method} request", id=req.id)
        self._obs.increment(f"{req.method.replace('/', '_')}_requests")
        try:
            result = await self._call_method(req)
        except ProtocolError as e:
            await self._send(Response(req.id, error=e))
            return
        except Exception as e:
            self._obs.error(f"Error handling {req.method}: {e}", exc_info=True)
            await self._send(Response(req.id, error=internal_error(str(e) or e.__class__.__name__, describe_exception(e))))
            return
        await self._send(Response(req.id, result=result))

    def _require_ready(self) -> None:
        if self._state is ConnectionState.READY:
            return
        if self._state >= ConnectionState.STOPPING:
            raise ProtocolError(INVALID_REQUEST, "Server is shutting down")
        raise ProtocolError(INVALID_REQUEST, "Server not initialized")

    async def _call_method(self, req: Request) -> Any:
        method = req.method
        if method == "initialize":
            return await self.initialize(req.params)
        if method == "ping":
            if self._state >= ConnectionState.STOPPING:
                raise ProtocolError(INVALID_REQUEST, "Server is shutting down")
            return {}
        if method == "tools/list":
            self._require_ready()
            return {"tools": self._dispatcher.manifest()}
        if method == "resources/list":
            self._require_ready()
            return {"resources": []}
        if method == "prompts/list":
            self._require_ready()
            return {"prompts": []}
        self._obs.warning(f"Method not found: {method}")
        raise ProtocolError(METHOD_NOT_FOUND, f"Method not found: {method}")

    async def _handle_notification(self, req: Request) -> None:
        method = req.method
        params = req.params or {}
        if method in ("notifications/initialized", "initialized"):
            self._obs.debug("Client reported initialized")
            return
        if method == "notifications/cancelled":
            self.cancel(params.get("requestId"), params.get("reason"))
            return
        if method == "tools/call":
            # No reply channel: run it, log the outcome, never write.
            if self._state is not ConnectionState.READY:
                self._obs.warning("Dropping tools/call notification before initialize")
                return
            task = asyncio.create_task(self._run_notification_call(params))
            self._background.add(task)
            task.add_done_callback(self._background.discard)
            return
        self._obs.debug(f"Ignoring notification {method}")

    def cancel(self, request_id: Any, reason: Any = None) -> bool:
        """Abandon the in-flight tools/call `request_id`; its response is never written.

        An actuation already sent to the vendor cannot be recalled.
        """
        if not is_valid_id(request_id):
            self._obs.warning("Ignoring cancellation without a valid requestId")
            return False
        task = self._inflight.pop(request_id, None)
        if task is None:
            self._obs.debug("Cancellation for unknown or completed request", id=request_id)
            return False
        task.cancel()
        self._obs.info("Request cancelled", id=request_id, reason=reason)
        self._obs.increment("cancelled_requests")
        return True

    # ---------- tools/call ----------

    async def _start_tool_call(self, req: Request) -> None:
        rid = req.id
        try:
            self._require_ready()
            params = req.params or {}
            name = params.get("name")
            arguments = params.get("arguments")
            if not isinstance(name, str) or not name:
                raise invalid_params("Missing params.name")
            if arguments is not None and not isinstance(arguments, dict):
                raise invalid_params("params.arguments must be an object")
            if rid in self._inflight:
                raise ProtocolError(INVALID_REQUEST, f"Duplicate request id: {rid!r}")
        except ProtocolError as e:
            await self._send(Response(rid, error=e))
            return

        task = asyncio.create_task(self._run_tool_call(rid, name, arguments or {}))
        self._inflight[rid] = task

    async def _run_tool_call(self, rid: RequestId, name: str, arguments: Dict[str, Any]) -> None:
        me = asyncio.current_task()
        try:
            payload = await self._dispatcher.dispatch(name, arguments)
            response = Response(rid, result=wrap_tool_result(payload, self._result_format))
        except asyncio.CancelledError:
            self._obs.debug("Suppressing response for cancelled request", id=rid)
            raise
        except ProtocolError as e:
            response = Response(rid, error=e)
        except Exception as e:
            self._obs.error(f"Unexpected dispatch failure: {e}", exc_info=True)
            response = Response(rid, error=internal_error(f"Tool error: {name}", describe_exception(e)))

        # Still owning the id means nobody cancelled us; from here on we cannot be cancelled by id.
        if self._inflight.get(rid) is not me:
            return
        del self._inflight[rid]
        await self._send(response)

    async def _run_notification_call(self, params: Dict[str, Any]) -> None:
        name = params.get("name")
        try:
            await self._dispatcher.dispatch(str(name), params.get("arguments") or {})
        except ProtocolError as e:
            self._obs.warning(f"tools/call notification failed: {e.message}", tool=name, code=e.code)
        except Exception as e:
            self._obs.error(f"tools/call notification failed: {e}", exc_info=True, tool=name)

    # ---------- outbound ----------

    async def _send(self, response: Response) -> None:
        line = encode_response(response)
        async with self._write_lock:
            try:
                await self._transport.write_message(line)
            except (ConnectionError, OSError) as e:
                self._obs.error(f"Failed to write response id={response.id!r}: {e}")
                self._obs.increment("write_errors")
