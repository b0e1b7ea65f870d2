# sdm_adapter.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

from jsonrpc import describe_exception, internal_error, invalid_params
from observability import Observability
from sdm_gateway import SdmApiError, SdmGateway

Json = Dict[str, Any]

OUTLET_TYPE = "sdm.devices.types.OUTLET"
INFO_TRAIT = "sdm.devices.traits.Info"
ONOFF_TRAIT = "sdm.devices.traits.OnOff"
CONNECTIVITY_TRAIT = "sdm.devices.traits.Connectivity"
ONOFF_SET_COMMAND = "sdm.devices.commands.OnOff.Set"

# SDM answers 404 for unknown devices and 400 INVALID_ARGUMENT for malformed names;
# both mean the caller cited a bad id. A 400 FAILED_PRECONDITION (device offline,
# command unsupported) is a backend fault.
_CALLER_FAULT_VENDOR_STATUSES = {"NOT_FOUND", "INVALID_ARGUMENT"}


def is_caller_fault(error: SdmApiError) -> bool:
    if error.status == 404:
        return True
    return error.status == 400 and error.vendor_status in _CALLER_FAULT_VENDOR_STATUSES


@dataclass(frozen=True)
class DeviceSnapshot:
    id: str
    name: str
    on: bool
    online: bool

    def to_dict(self) -> Json:
        return {"id": self.id, "name": self.name, "state": {"on": self.on, "online": self.online}}


class DeviceBackend(Protocol):
    async def list(self) -> List[DeviceSnapshot]: ...

    async def get(self, device_id: str) -> DeviceSnapshot: ...

    async def set(self, device_id: str, on: bool) -> None: ...

    async def aclose(self) -> None: ...


def is_plug(device: Json) -> bool:
    return device.get("type") == OUTLET_TYPE and bool(device.get("name"))


def snapshot_from_device(device: Json) -> DeviceSnapshot:
    traits = device.get("traits") if isinstance(device.get("traits"), dict) else {}
    device_id = str(device.get("name") or "")

    info = traits.get(INFO_TRAIT) if isinstance(traits.get(INFO_TRAIT), dict) else {}
    onoff = traits.get(ONOFF_TRAIT) if isinstance(traits.get(ONOFF_TRAIT), dict) else {}
    connectivity = traits.get(CONNECTIVITY_TRAIT) if isinstance(traits.get(CONNECTIVITY_TRAIT), dict) else {}

    return DeviceSnapshot(
        id=device_id,
        name=str(info.get("customName") or device_id),
        on=onoff.get("on") is True,
        online=connectivity.get("status") == "ONLINE",
    )


class SdmDeviceBackend:
    """DeviceBackend over the Smart Device Management API.

    Every call hits the vendor; a plug can be switched from a wall button or
    another app at any moment, so nothing is cached here.
    """

    def __init__(self, gateway: SdmGateway, obs: Optional[Observability] = None) -> None:
        self._gateway: Optional[SdmGateway] = gateway
        self._obs = (obs or Observability()).child("sdm")

    @property
    def closed(self) -> bool:
        return self._gateway is None

    def _require_gateway(self) -> SdmGateway:
        if self._gateway is None:
            self._obs.error("Smart Device Management API not initialized")
            self._obs.increment("sdm_not_initialized_errors")
            raise internal_error("Smart Device Management API not initialized")
        return self._gateway

    async def list(self) -> List[DeviceSnapshot]:
        gateway = self._require_gateway()
        try:
            devices = await gateway.list_devices()
        except Exception as e:
            self._obs.error("Failed to get devices", error=str(e))
            self._obs.increment("get_devices_errors")
            raise internal_error("Failed to get devices", describe_exception(e)) from e

        plugs = [snapshot_from_device(d) for d in devices if is_plug(d)]
        self._obs.gauge("smart_plugs_count", len(plugs))
        self._obs.info(f"Found {len(plugs)} smart plugs")
        return plugs

    async def get(self, device_id: str) -> DeviceSnapshot:
        gateway = self._require_gateway()
        try:
            device = await gateway.get_device(device_id)
        except SdmApiError as e:
            if is_caller_fault(e):
                self._obs.warning(f"Device not found: {device_id}", status=e.status)
                self._obs.increment("device_not_found_errors")
                raise invalid_params(f"Device not found: {device_id}", describe_exception(e)) from e
            self._obs.error(f"Failed to get device state: {device_id}", error=str(e))
            self._obs.increment("get_device_state_errors")
            raise internal_error(f"Failed to get device state: {device_id}", describe_exception(e)) from e
        except Exception as e:
            self._obs.error(f"Failed to get device state: {device_id}", error=str(e))
            self._obs.increment("get_device_state_errors")
            raise internal_error(f"Failed to get device state: {device_id}", describe_exception(e)) from e

        if not device.get("name"):
            self._obs.increment("device_not_found_errors")
            raise invalid_params(f"Device not found: {device_id}")
        if device.get("type") != OUTLET_TYPE:
            raise invalid_params(f"Device is not a smart plug: {device_id}", {"type": device.get("type")})

        self._obs.info(f"Successfully retrieved state for device {device_id}")
        self._obs.increment("get_device_state_success")
        return snapshot_from_device(device)

    async def set(self, device_id: str, on: bool) -> None:
        gateway = self._require_gateway()
        try:
            await gateway.execute_command(device_id, ONOFF_SET_COMMAND, {"on": bool(on)})
        except SdmApiError as e:
            self._obs.error(f"Failed to control device {device_id}", error=str(e), state=on)
            self._obs.increment("device_control_errors")
            if is_caller_fault(e):
                raise invalid_params(f"Device not found or not controllable: {device_id}", describe_exception(e)) from e
            raise internal_error(f"Failed to control device {device_id}", describe_exception(e)) from e
        except Exception as e:
            self._obs.error(f"Failed to control device {device_id}", error=str(e), state=on)
            self._obs.increment("device_control_errors")
            raise internal_error(f"Failed to control device {device_id}", describe_exception(e)) from e

        self._obs.info(f"Successfully controlled device {device_id}", state=on)
        self._obs.increment("device_control_success")

    async def aclose(self) -> None:
        gateway, self._gateway = self._gateway, None
        if gateway is not None:
            await gateway.aclose()
