"""Static tool catalog: descriptors plus the handlers that back them.

The table is closed: it is built once from TOOL_DESCRIPTORS at startup and is
read-only afterwards, so lookups need no locking.
"""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Dict, List, Mapping

from arg_validator import FieldSpec, ParameterSchema
from sdm_adapter import DeviceBackend

Handler = Callable[[Dict[str, Any]], Awaitable[Any]]


@dataclass(frozen=True)
class ToolDescriptor:
    name: str
    description: str
    schema: ParameterSchema

    def to_manifest(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.schema.to_json_schema(),
        }


@dataclass(frozen=True)
class ToolEntry:
    descriptor: ToolDescriptor
    handler: Handler


LIST_SMART_PLUGS = ToolDescriptor(
    name="list_smart_plugs",
    description="List all available smart plugs and their current states",
    schema=ParameterSchema(),
)

CONTROL_SMART_PLUG = ToolDescriptor(
    name="control_smart_plug",
    description="Turn a smart plug on or off",
    schema=ParameterSchema(
        properties={
            "deviceId": FieldSpec("string", "The ID of the smart plug to control"),
            "state": FieldSpec("boolean", "True to turn on, false to turn off"),
        },
        required=("deviceId", "state"),
    ),
)

GET_SMART_PLUG_STATE = ToolDescriptor(
    name="get_smart_plug_state",
    description="Get the current state of a specific smart plug",
    schema=ParameterSchema(
        properties={"deviceId": FieldSpec("string", "The ID of the smart plug to query")},
        required=("deviceId",),
    ),
)

TOOL_DESCRIPTORS = (LIST_SMART_PLUGS, CONTROL_SMART_PLUG, GET_SMART_PLUG_STATE)


# ---------- handlers ----------


def _list_smart_plugs(backend: DeviceBackend) -> Handler:
    async def handler(args: Dict[str, Any]) -> List[Dict[str, Any]]:
        return [plug.to_dict() for plug in await backend.list()]

    return handler


def _control_smart_plug(backend: DeviceBackend) -> Handler:
    async def handler(args: Dict[str, Any]) -> Dict[str, Any]:
        device_id = args["deviceId"]
        on = args["state"]
        await backend.set(device_id, on)
        # Optimistic report: the vendor acknowledged the command, the plug catches up on its own.
        return {"success": True, "device": {"id": device_id, "state": {"on": on, "online": True}}}

    return handler


def _get_smart_plug_state(backend: DeviceBackend) -> Handler:
    async def handler(args: Dict[str, Any]) -> Dict[str, Any]:
        return (await backend.get(args["deviceId"])).to_dict()

    return handler


_HANDLER_FACTORIES: Mapping[str, Callable[[DeviceBackend], Handler]] = {
    LIST_SMART_PLUGS.name: _list_smart_plugs,
    CONTROL_SMART_PLUG.name: _control_smart_plug,
    GET_SMART_PLUG_STATE.name: _get_smart_plug_state,
}


def build_tool_table(backend: DeviceBackend) -> Mapping[str, ToolEntry]:
    table: Dict[str, ToolEntry] = {}
    for descriptor in TOOL_DESCRIPTORS:
        if descriptor.name in table:
            raise ValueError(f"Tool {descriptor.name!r} already registered")
        table[descriptor.name] = ToolEntry(descriptor, _HANDLER_FACTORIES[descriptor.name](backend))
    return MappingProxyType(table)


def manifest(table: Mapping[str, ToolEntry]) -> List[Dict[str, Any]]:
    return [entry.descriptor.to_manifest() for entry in table.values()]
