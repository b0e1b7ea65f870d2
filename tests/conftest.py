"""Shared fixtures: an in-memory transport and a scriptable device backend."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

import pytest

from jsonrpc import invalid_params
from observability import LOGGER_NAME, Observability
from protocol_engine import ProtocolEngine
from sdm_adapter import DeviceSnapshot
from tool_dispatch import ToolDispatcher
from tool_registry import build_tool_table

PLUG_1 = "enterprises/proj/devices/plug-1"
PLUG_2 = "enterprises/proj/devices/plug-2"


class FakeBackend:
    """DeviceBackend double with call spies.

    `gates[device_id]` holds a call on that device until the event is set, which
    lets tests force responses to complete out of order.
    """

    def __init__(self, plugs: Optional[List[DeviceSnapshot]] = None) -> None:
        if plugs is None:
            plugs = [
                DeviceSnapshot(PLUG_1, "Lamp", False, True),
                DeviceSnapshot(PLUG_2, "Fan", True, False),
            ]
        self.plugs: Dict[str, DeviceSnapshot] = {p.id: p for p in plugs}
        self.calls: List[tuple] = []
        self.gates: Dict[str, asyncio.Event] = {}
        self.fail_with: Optional[BaseException] = None
        self.closed = False

    async def _enter(self, *call: Any) -> None:
        self.calls.append(call)
        if self.fail_with is not None:
            raise self.fail_with
        if len(call) > 1 and call[1] in self.gates:
            await self.gates[call[1]].wait()

    def calls_to(self, method: str) -> List[tuple]:
        return [c for c in self.calls if c[0] == method]

    async def list(self) -> List[DeviceSnapshot]:
        await self._enter("list")
        return list(self.plugs.values())

    async def get(self, device_id: str) -> DeviceSnapshot:
        await self._enter("get", device_id)
        if device_id not in self.plugs:
            raise invalid_params(f"Device not found: {device_id}")
        return self.plugs[device_id]

    async def set(self, device_id: str, on: bool) -> None:
        await self._enter("set", device_id, on)
        if device_id not in self.plugs:
            raise invalid_params(f"Device not found or not controllable: {device_id}")
        p = self.plugs[device_id]
        self.plugs[device_id] = DeviceSnapshot(p.id, p.name, on, p.online)

    async def aclose(self) -> None:
        self.closed = True


class MemoryTransport:
    """Transport double: tests push inbound lines and inspect what was written."""

    def __init__(self) -> None:
        self.inbound: asyncio.Queue = asyncio.Queue()
        self.outbound: List[str] = []

    def feed(self, message: Any) -> None:
        self.inbound.put_nowait(message if isinstance(message, (str, bytes)) else json.dumps(message))

    def close(self) -> None:
        self.inbound.put_nowait(None)

    async def read_message(self) -> Optional[str]:
        return await self.inbound.get()

    async def write_message(self, message: str) -> None:
        self.outbound.append(message)

    @property
    def responses(self) -> List[Dict[str, Any]]:
        return [json.loads(line) for line in self.outbound]

    async def wait_for(self, count: int, timeout: float = 2.0) -> List[Dict[str, Any]]:
        async def _poll() -> None:
            while len(self.outbound) < count:
                await asyncio.sleep(0.005)

        await asyncio.wait_for(_poll(), timeout)
        return self.responses


def initialize_request(rid: Any = 1, version: str = "2024-11-05") -> Dict[str, Any]:
    return {
        "jsonrpc": "2.0",
        "id": rid,
        "method": "initialize",
        "params": {"protocolVersion": version, "capabilities": {}, "clientInfo": {"name": "pytest", "version": "0"}},
    }


def tool_call(rid: Any, name: str, arguments: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    params: Dict[str, Any] = {"name": name}
    if arguments is not None:
        params["arguments"] = arguments
    return {"jsonrpc": "2.0", "id": rid, "method": "tools/call", "params": params}


@pytest.fixture(autouse=True)
def _restore_logger():
    logger = logging.getLogger(LOGGER_NAME)
    saved = (list(logger.handlers), logger.level, logger.propagate)
    yield
    logger.handlers[:] = saved[0]
    logger.setLevel(saved[1])
    logger.propagate = saved[2]


@pytest.fixture
def obs() -> Observability:
    return Observability(logger=logging.getLogger(f"{LOGGER_NAME}.tests"))


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def dispatcher(backend: FakeBackend, obs: Observability) -> ToolDispatcher:
    return ToolDispatcher(build_tool_table(backend), obs, timeout_s=2.0)


@pytest.fixture
def transport() -> MemoryTransport:
    return MemoryTransport()


@pytest.fixture
def engine(transport: MemoryTransport, dispatcher: ToolDispatcher, obs: Observability, backend: FakeBackend) -> ProtocolEngine:
    return ProtocolEngine(transport, dispatcher, obs, backend=backend, shutdown_grace_s=1.0)
