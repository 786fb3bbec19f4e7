"""Control surface: uniform device operations returning response envelopes."""

from __future__ import annotations

import asyncio
import functools
from typing import Any, Awaitable, Callable, Dict, Iterable, Mapping, Optional, Union

from .adapters import DeviceAdapter, get_adapter
from .config import Config
from .errors import BridgeError, DeviceNotFoundError, DeviceValidationError, ProtocolError
from .logging import get_logger
from .models import (
    POWER_OFF,
    POWER_ON,
    Capability,
    ControlRequest,
    Device,
    Envelope,
    parse_device_changes,
)
from .registry import DeviceRegistry

AdapterFactory = Callable[[Device], DeviceAdapter]
AdapterOperation = Callable[[DeviceAdapter], Awaitable[None]]

_CAPABILITY_LABELS = {
    Capability.POWER: "power",
    Capability.BRIGHTNESS: "brightness",
    Capability.COLOR: "color",
    Capability.COLOR_TEMP: "color temperature",
}


def _require(device: Device, capabilities: Iterable[Capability]) -> None:
    for capability in capabilities:
        if not device.supports(capability):
            raise DeviceValidationError(f"Device does not support {_CAPABILITY_LABELS[capability]} control")


def _failure(exc: BridgeError) -> Envelope:
    return Envelope.fail(str(exc), exc.kind)


class ControlService:
    """Resolve devices, dispatch adapter calls, and write results back.

    Calls for the same device id are serialized with a per-device lock so raw
    protocol exchanges never interleave on one device. Validation failures
    never reach the adapter; protocol failures mark the device offline before
    the error is returned.
    """

    def __init__(
        self,
        registry: DeviceRegistry,
        config: Optional[Config] = None,
        adapter_factory: Optional[AdapterFactory] = None,
    ) -> None:
        self.registry = registry
        self.config = config or Config()
        self.adapter_factory: AdapterFactory = adapter_factory or functools.partial(
            get_adapter, config=self.config
        )
        self.logger = get_logger("smarthome.control")
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, device_id: str) -> asyncio.Lock:
        lock = self._locks.get(device_id)
        if lock is None:
            lock = self._locks[device_id] = asyncio.Lock()
        return lock

    def _resolve(self, device_id: str) -> Device:
        device = self.registry.device(device_id)
        if device is None:
            raise DeviceNotFoundError(device_id)
        return device

    def _is_current(self, device: Device) -> bool:
        return self.registry.device(device.id) is device

    # Queries

    async def list_devices(
        self,
        room: Optional[str] = None,
        device_type: Optional[str] = None,
        brand: Optional[str] = None,
        online: Optional[bool] = None,
    ) -> Envelope:
        try:
            devices = self.registry.filter_devices(room=room, device_type=device_type, brand=brand, online=online)
        except DeviceValidationError as exc:
            return _failure(exc)
        return Envelope.ok([device.as_dict() for device in devices])

    async def search_devices(self, query: str) -> Envelope:
        return Envelope.ok([device.as_dict() for device in self.registry.search(query)])

    async def stats(self) -> Envelope:
        return Envelope.ok(self.registry.stats())

    async def get_device(self, device_id: str) -> Envelope:
        """Return a device after a live poll, falling back to last-known state."""

        if device_id not in self.registry:
            return _failure(DeviceNotFoundError(device_id))
        async with self._lock_for(device_id):
            try:
                device = self._resolve(device_id)
            except DeviceNotFoundError as exc:
                return _failure(exc)
            try:
                adapter = self.adapter_factory(device)
                state = await adapter.get_state()
            except BridgeError as exc:
                self.logger.warning(
                    "Device poll failed; returning last known state",
                    extra={"device_id": device_id, "error": str(exc), "kind": exc.kind},
                )
                self.registry.set_online_status(device_id, False)
            else:
                self.registry.update_device(
                    device_id, state=state.restricted_to(device.capabilities), online=True
                )
            return Envelope.ok(self._resolve(device_id).as_dict())

    # Commands

    async def control(self, device_id: str, payload: Union[ControlRequest, Mapping[str, Any]]) -> Envelope:
        """Apply a unified control request (power action plus optional attributes)."""

        try:
            request = payload if isinstance(payload, ControlRequest) else ControlRequest.from_mapping(payload)
        except DeviceValidationError as exc:
            if self.registry.device(device_id) is None:
                return _failure(DeviceNotFoundError(device_id))
            return _failure(exc)

        def _validate(device: Device, adapter: DeviceAdapter) -> None:
            _require(device, request.required_capabilities())
            if request.action != POWER_OFF:
                adapter.validate_request(request)

        return await self._execute(device_id, request.action, _validate, lambda adapter: adapter.control(request))

    async def set_power(self, device_id: str, state: Any) -> Envelope:
        if state not in (POWER_ON, POWER_OFF):
            if self.registry.device(device_id) is None:
                return _failure(DeviceNotFoundError(device_id))
            return Envelope.fail('State must be "on" or "off"', DeviceValidationError.kind)
        return await self.control(device_id, ControlRequest(action=state))

    async def set_brightness(self, device_id: str, level: Any) -> Envelope:
        def _validate(device: Device, adapter: DeviceAdapter) -> None:
            _require(device, (Capability.BRIGHTNESS,))
            adapter.validate_brightness(level)

        return await self._execute(
            device_id, "brightness", _validate, lambda adapter: adapter.set_brightness(level)
        )

    async def set_rgb_color(
        self, device_id: str, r: Any, g: Any, b: Any, brightness: Optional[Any] = None
    ) -> Envelope:
        def _validate(device: Device, adapter: DeviceAdapter) -> None:
            _require(device, (Capability.COLOR,))
            if brightness is not None:
                _require(device, (Capability.BRIGHTNESS,))
            adapter.validate_rgb(r, g, b)
            if brightness is not None:
                adapter.validate_brightness(brightness)

        return await self._execute(
            device_id, "color", _validate, lambda adapter: adapter.set_rgb_color(r, g, b, brightness)
        )

    async def _execute(
        self,
        device_id: str,
        action: str,
        validate: Callable[[Device, DeviceAdapter], None],
        operation: AdapterOperation,
    ) -> Envelope:
        if device_id not in self.registry:
            return _failure(DeviceNotFoundError(device_id))
        async with self._lock_for(device_id):
            try:
                device = self._resolve(device_id)
                adapter = self.adapter_factory(device)
                validate(device, adapter)
            except BridgeError as exc:
                self.logger.info(
                    "Rejected device command",
                    extra={"device_id": device_id, "action": action, "error": str(exc), "kind": exc.kind},
                )
                return _failure(exc)

            try:
                await operation(adapter)
                state = (await adapter.get_state()).restricted_to(device.capabilities)
            except ProtocolError as exc:
                if self._is_current(device):
                    self.registry.set_online_status(device_id, False)
                self.logger.warning(
                    "Device command failed; marked offline",
                    extra={"device_id": device_id, "action": action, "error": str(exc)},
                )
                return _failure(exc)
            except DeviceValidationError as exc:
                return _failure(exc)

            if not self._is_current(device):
                self.logger.info(
                    "Device entry replaced during command; result not stored",
                    extra={"device_id": device_id, "action": action},
                )
                return Envelope.ok({"device": device.name, "action": action, "state": state.as_dict()})

            updated = self.registry.update_device(device_id, state=state, online=True)
            self.logger.info(
                "Device command applied",
                extra={"device_id": device_id, "action": action, "state": state.as_dict()},
            )
            name = updated.name if updated is not None else device.name
            return Envelope.ok({"device": name, "action": action, "state": state.as_dict()})

    # Registry management

    async def register_device(self, payload: Mapping[str, Any], probe: bool = False) -> Envelope:
        """Register (or replace) a device, optionally filling details from a live probe."""

        try:
            device = Device.from_mapping(payload)
        except DeviceValidationError as exc:
            return _failure(exc)

        failure: Optional[BridgeError] = None
        async with self._lock_for(device.id):
            if probe:
                try:
                    profile = await self.adapter_factory(device).describe()
                    device = Device.from_mapping({**profile, **payload, "online": True})
                except BridgeError as exc:
                    self.logger.warning(
                        "Device probe failed; not registered",
                        extra={"device_id": device.id, "ip": device.ip, "error": str(exc)},
                    )
                    failure = exc
            if failure is None:
                stored = self.registry.add_device(device)

        if failure is not None:
            if device.id not in self.registry:
                self._locks.pop(device.id, None)
            return _failure(failure)
        return Envelope.ok(stored.as_dict())

    async def update_device(self, device_id: str, changes: Mapping[str, Any]) -> Envelope:
        if device_id not in self.registry:
            return _failure(DeviceNotFoundError(device_id))
        async with self._lock_for(device_id):
            try:
                self._resolve(device_id)
                parsed = parse_device_changes(changes)
            except BridgeError as exc:
                return _failure(exc)
            updated = self.registry.update_device(device_id, **parsed)
            if updated is None:
                return _failure(DeviceNotFoundError(device_id))
            return Envelope.ok(updated.as_dict())

    async def remove_device(self, device_id: str) -> Envelope:
        if device_id not in self.registry:
            return _failure(DeviceNotFoundError(device_id))
        async with self._lock_for(device_id):
            if not self.registry.remove_device(device_id):
                return _failure(DeviceNotFoundError(device_id))
        self._locks.pop(device_id, None)
        return Envelope.ok({"id": device_id, "removed": True})
