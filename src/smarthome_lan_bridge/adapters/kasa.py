"""Kasa-style adapter speaking the autokey XOR protocol over TCP."""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import json
import operator
import struct
import time
from typing import Any, Dict, Mapping, Optional, Tuple

from ..errors import ProtocolError
from ..metrics import record_adapter_command
from ..models import POWER_OFF, POWER_ON, Brand, Capability, Device, DeviceState, DeviceType
from .base import DEFAULT_COLOR_TEMP_RANGE, DeviceAdapter

DEFAULT_PORT = 9999
DEFAULT_TIMEOUT = 5.0
INITIAL_KEY = 171

LIGHTING_SERVICE = "smartlife.iot.smartbulb.lightingservice"
SYSINFO_COMMAND: Dict[str, Any] = {"system": {"get_sysinfo": {}}}

_HEADER = struct.Struct(">I")


def encrypt(plaintext: bytes, key: int = INITIAL_KEY) -> bytes:
    """Autokey XOR: each ciphertext byte keys the next plaintext byte."""

    return bytes(itertools.accumulate(plaintext, operator.xor, initial=key))[1:]


def decrypt(ciphertext: bytes, key: int = INITIAL_KEY) -> bytes:
    keys = itertools.chain((key,), ciphertext)
    return bytes(byte ^ k for byte, k in zip(ciphertext, keys))


def encode_frame(command: Mapping[str, Any]) -> bytes:
    """Serialize a command as a length-prefixed encrypted JSON frame."""

    payload = json.dumps(command, separators=(",", ":")).encode("utf-8")
    return _HEADER.pack(len(payload)) + encrypt(payload)


def decode_frame(data: bytes) -> bytes:
    """Decrypt a frame, stripping the length header when it matches the body."""

    if len(data) > _HEADER.size and _HEADER.unpack_from(data)[0] == len(data) - _HEADER.size:
        data = data[_HEADER.size :]
    return decrypt(data)


def _flag(info: Mapping[str, Any], key: str) -> bool:
    return info.get(key) == 1


def _optional_int(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return int(value)


class KasaAdapter(DeviceAdapter):
    """Adapter for Kasa-style plugs, switches and bulbs.

    Each command opens a fresh TCP connection; connect, write, read and close
    share one timeout. There are no retries.
    """

    brand = Brand.KASA

    def __init__(
        self,
        device: Device,
        *,
        port: int = DEFAULT_PORT,
        timeout: float = DEFAULT_TIMEOUT,
        color_temp_range: Tuple[int, int] = DEFAULT_COLOR_TEMP_RANGE,
    ) -> None:
        super().__init__(device, color_temp_range=color_temp_range)
        self.port = port
        self.timeout = timeout

    @property
    def is_bulb(self) -> bool:
        return self.device.type is DeviceType.LIGHT

    async def turn_on(self) -> None:
        await self._set_power(True)

    async def turn_off(self) -> None:
        await self._set_power(False)

    async def set_brightness(self, brightness: int) -> None:
        brightness = self.validate_brightness(brightness)
        await self._transition(brightness=brightness)

    async def set_color(self, hue: int, saturation: int, brightness: Optional[int] = None) -> None:
        hue = self.validate_hue(hue)
        saturation = self.validate_saturation(saturation)
        if brightness is not None:
            brightness = self.validate_brightness(brightness)
        # color_temp 0 switches bulbs out of white mode.
        await self._transition(hue=hue, saturation=saturation, color_temp=0, brightness=brightness)

    async def set_color_temperature(self, kelvin: int, brightness: Optional[int] = None) -> None:
        kelvin = self.validate_color_temp(kelvin)
        if brightness is not None:
            brightness = self.validate_brightness(brightness)
        await self._transition(color_temp=kelvin, brightness=brightness)

    async def get_device_info(self) -> Dict[str, Any]:
        response = await self._send_command(SYSINFO_COMMAND)
        return dict(response["system"]["get_sysinfo"])

    async def get_state(self) -> DeviceState:
        return self.state_from_sysinfo(await self.get_device_info())

    async def describe(self) -> Dict[str, Any]:
        return self.profile_from_sysinfo(self.device.ip, await self.get_device_info())

    async def _set_power(self, on: bool) -> None:
        if self.is_bulb:
            await self._transition(on_off=1 if on else 0)
        else:
            await self._send_command({"system": {"set_relay_state": {"state": 1 if on else 0}}})

    async def _transition(self, **values: Optional[int]) -> None:
        params: Dict[str, Any] = {key: value for key, value in values.items() if value is not None}
        params["ignore_default"] = 1
        await self._send_command({LIGHTING_SERVICE: {"transition_light_state": params}})

    async def _send_command(self, command: Mapping[str, Any]) -> Dict[str, Any]:
        """Run one request/response exchange and return the checked response."""

        name = _command_name(command)
        frame = encode_frame(command)
        start = time.perf_counter()
        result = "error"
        self.logger.debug(
            "Sending device command",
            extra={"device_id": self.device.id, "ip": self.device.ip, "command": name},
        )
        try:
            try:
                raw = await asyncio.wait_for(self._exchange(frame), timeout=self.timeout)
            except asyncio.TimeoutError as exc:
                result = "timeout"
                raise ProtocolError("Connection timeout") from exc
            except asyncio.IncompleteReadError as exc:
                raise ProtocolError("Connection closed before a full response was received") from exc
            except OSError as exc:
                raise ProtocolError(f"Connection error: {exc}") from exc
            response = _parse_response(raw)
            _check_response(command, response)
            result = "success"
            return response
        except ProtocolError as exc:
            self.logger.debug(
                "Device command failed",
                extra={"device_id": self.device.id, "command": name, "error": str(exc)},
            )
            raise
        finally:
            record_adapter_command(self.brand.value, name, result, time.perf_counter() - start)

    async def _exchange(self, frame: bytes) -> bytes:
        reader, writer = await asyncio.open_connection(self.device.ip, self.port)
        try:
            writer.write(frame)
            await writer.drain()
            header = await reader.readexactly(_HEADER.size)
            (length,) = _HEADER.unpack(header)
            body = await reader.readexactly(length)
        finally:
            writer.close()
            with contextlib.suppress(Exception):
                await writer.wait_closed()
        return decode_frame(header + body)

    @staticmethod
    def state_from_sysinfo(info: Mapping[str, Any]) -> DeviceState:
        """Decode relay or light state from a ``get_sysinfo`` payload."""

        if "relay_state" in info:
            return DeviceState(power=POWER_ON if info.get("relay_state") == 1 else POWER_OFF)
        light = info.get("light_state")
        if not isinstance(light, Mapping):
            return DeviceState()
        powered = light.get("on_off") == 1
        attrs = light
        if not powered and isinstance(light.get("dft_on_state"), Mapping):
            attrs = light["dft_on_state"]
        return DeviceState(
            power=POWER_ON if powered else POWER_OFF,
            brightness=_optional_int(attrs.get("brightness")),
            hue=_optional_int(attrs.get("hue")),
            saturation=_optional_int(attrs.get("saturation")),
            color_temp=_optional_int(attrs.get("color_temp")),
        )

    @staticmethod
    def profile_from_sysinfo(ip: str, info: Mapping[str, Any]) -> Dict[str, Any]:
        """Build registration fields from a ``get_sysinfo`` payload."""

        if not isinstance(info, Mapping) or not info:
            raise ProtocolError("Invalid device info response")
        capabilities = [Capability.POWER.value]
        if _flag(info, "is_dimmable"):
            capabilities.append(Capability.BRIGHTNESS.value)
        if _flag(info, "is_color"):
            capabilities.append(Capability.COLOR.value)
        if _flag(info, "is_variable_color_temp"):
            capabilities.append(Capability.COLOR_TEMP.value)
        kind = str(info.get("mic_type") or info.get("type") or "")
        profile: Dict[str, Any] = {
            "ip": ip,
            "name": info.get("alias") or info.get("dev_name"),
            "alias": info.get("alias"),
            "mac": info.get("mac") or info.get("mic_mac"),
            "model": info.get("model"),
            "hardware_id": info.get("deviceId"),
            "sw_ver": info.get("sw_ver"),
            "hw_ver": info.get("hw_ver"),
            "type": DeviceType.LIGHT.value if "SMARTBULB" in kind.upper() else DeviceType.PLUG.value,
            "brand": Brand.KASA.value,
            "capabilities": capabilities,
            "features": {
                "is_dimmable": _flag(info, "is_dimmable"),
                "is_color": _flag(info, "is_color"),
                "is_variable_color_temp": _flag(info, "is_variable_color_temp"),
            },
        }
        return {key: value for key, value in profile.items() if value not in (None, "")}


def _command_name(command: Mapping[str, Any]) -> str:
    for section in command.values():
        if isinstance(section, Mapping):
            for method in section:
                return str(method)
    return "unknown"


def _parse_response(raw: bytes) -> Dict[str, Any]:
    try:
        parsed = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ProtocolError(f"Failed to parse response: {exc}") from exc
    if not isinstance(parsed, dict):
        raise ProtocolError("Failed to parse response: expected a JSON object")
    return parsed


def _check_response(command: Mapping[str, Any], response: Mapping[str, Any]) -> None:
    """Raise on missing sections or non-zero vendor error codes."""

    for namespace, methods in command.items():
        section = response.get(namespace)
        if not isinstance(section, Mapping):
            raise ProtocolError(f"Device response is missing '{namespace}'")
        _check_err_code(section, namespace)
        for method in methods:
            result = section.get(method)
            if not isinstance(result, Mapping):
                raise ProtocolError(f"Device response is missing '{namespace}.{method}'")
            _check_err_code(result, f"{namespace}.{method}")


def _check_err_code(section: Mapping[str, Any], where: str) -> None:
    code = section.get("err_code", 0)
    if code not in (0, None):
        message = section.get("err_msg") or f"Device returned error code {code} for {where}"
        raise ProtocolError(str(message))
