"""Shared device, state, and request value types."""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple, Type, TypeVar

from .errors import DeviceValidationError

E = TypeVar("E", bound=Enum)

POWER_ON = "on"
POWER_OFF = "off"
ACTIONS = ("on", "off", "toggle")


class Capability(str, Enum):
    """Controllable dimension a device advertises."""

    POWER = "power"
    BRIGHTNESS = "brightness"
    COLOR = "color"
    COLOR_TEMP = "color_temp"


class DeviceType(str, Enum):
    LIGHT = "light"
    PLUG = "plug"
    SWITCH = "switch"


class Brand(str, Enum):
    """Vendor families; each supported brand has one adapter."""

    KASA = "kasa"
    TUYA = "tuya"
    UNKNOWN = "unknown"


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def isoformat_utc(value: datetime) -> str:
    """Render a timestamp as ISO-8601 UTC with millisecond precision."""

    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value))
        except ValueError as exc:
            raise DeviceValidationError(f"Invalid timestamp: {value}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def coerce_enum(enum_cls: Type[E], value: Any, name: str) -> E:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError as exc:
        allowed = ", ".join(member.value for member in enum_cls)
        raise DeviceValidationError(f"Invalid {name} '{value}'; expected one of: {allowed}") from exc


def coerce_int(value: Any, name: str) -> int:
    """Accept integers (or integral floats) and reject everything else."""

    if isinstance(value, bool):
        raise DeviceValidationError(f"{name} must be a number")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    raise DeviceValidationError(f"{name} must be a number")


def _optional_int(value: Any, name: str) -> Optional[int]:
    if value is None:
        return None
    return coerce_int(value, name)


def _optional_bool(value: Any, name: str) -> Optional[bool]:
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    raise DeviceValidationError(f"{name} must be true or false")


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)


def coerce_capabilities(value: Any) -> Tuple[Capability, ...]:
    """Normalize a capability list, dropping duplicates while keeping order."""

    if value is None:
        return (Capability.POWER,)
    if isinstance(value, str):
        value = [item for item in value.split(",") if item.strip()]
    if not isinstance(value, Iterable):
        raise DeviceValidationError("capabilities must be a list")
    result = []
    for item in value:
        capability = coerce_enum(Capability, item, "capability")
        if capability not in result:
            result.append(capability)
    return tuple(result)


@dataclass(frozen=True)
class RGBColor:
    r: int
    g: int
    b: int

    def as_dict(self) -> Dict[str, int]:
        return {"r": self.r, "g": self.g, "b": self.b}

    @classmethod
    def from_mapping(cls, value: Any) -> "RGBColor":
        if not isinstance(value, Mapping):
            raise DeviceValidationError("color must be an object with r, g, b")
        missing = [channel for channel in ("r", "g", "b") if channel not in value]
        if missing:
            raise DeviceValidationError(f"color is missing channel(s): {', '.join(missing)}")
        return cls(
            r=coerce_int(value["r"], "r"),
            g=coerce_int(value["g"], "g"),
            b=coerce_int(value["b"], "b"),
        )


@dataclass(frozen=True)
class DeviceState:
    """Last-observed device state; unsupported fields stay ``None``."""

    power: Optional[str] = None
    brightness: Optional[int] = None
    color: Optional[RGBColor] = None
    hue: Optional[int] = None
    saturation: Optional[int] = None
    color_temp: Optional[int] = None

    def as_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        for item in fields(self):
            value = getattr(self, item.name)
            if value is None:
                continue
            data[item.name] = value.as_dict() if isinstance(value, RGBColor) else value
        return data

    def restricted_to(self, capabilities: Iterable[Capability]) -> "DeviceState":
        """Drop attributes the capability set does not cover."""

        caps = set(capabilities)
        has_color = Capability.COLOR in caps
        return replace(
            self,
            brightness=self.brightness if Capability.BRIGHTNESS in caps else None,
            color=self.color if has_color else None,
            hue=self.hue if has_color else None,
            saturation=self.saturation if has_color else None,
            color_temp=self.color_temp if Capability.COLOR_TEMP in caps else None,
        )

    @classmethod
    def from_mapping(cls, value: Any) -> "DeviceState":
        if not isinstance(value, Mapping):
            raise DeviceValidationError("state must be an object")
        power = value.get("power")
        if power is not None and power not in (POWER_ON, POWER_OFF):
            raise DeviceValidationError("power must be 'on' or 'off'")
        color = value.get("color")
        return cls(
            power=power,
            brightness=_optional_int(value.get("brightness"), "brightness"),
            color=RGBColor.from_mapping(color) if color is not None else None,
            hue=_optional_int(value.get("hue"), "hue"),
            saturation=_optional_int(value.get("saturation"), "saturation"),
            color_temp=_optional_int(value.get("color_temp"), "color_temp"),
        )


@dataclass(frozen=True)
class DeviceFeatures:
    """Vendor feature flags reported during registration."""

    is_dimmable: Optional[bool] = None
    is_color: Optional[bool] = None
    is_variable_color_temp: Optional[bool] = None

    def as_dict(self) -> Dict[str, bool]:
        return {item.name: getattr(self, item.name) for item in fields(self) if getattr(self, item.name) is not None}

    @classmethod
    def from_mapping(cls, value: Any) -> "DeviceFeatures":
        if not isinstance(value, Mapping):
            raise DeviceValidationError("features must be an object")
        return cls(**{item.name: bool(value[item.name]) for item in fields(cls) if value.get(item.name) is not None})


@dataclass(frozen=True)
class Device:
    """Registry entry for a controllable device."""

    id: str
    name: str
    ip: str
    type: DeviceType = DeviceType.PLUG
    brand: Brand = Brand.UNKNOWN
    capabilities: Tuple[Capability, ...] = (Capability.POWER,)
    alias: Optional[str] = None
    mac: Optional[str] = None
    hardware_id: Optional[str] = None
    room: Optional[str] = None
    model: Optional[str] = None
    sw_ver: Optional[str] = None
    hw_ver: Optional[str] = None
    features: Optional[DeviceFeatures] = None
    note: Optional[str] = None
    state: Optional[DeviceState] = None
    online: Optional[bool] = None
    last_seen: Optional[datetime] = None

    def supports(self, capability: Capability) -> bool:
        return capability in self.capabilities

    def as_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "ip": self.ip,
            "type": self.type.value,
            "brand": self.brand.value,
            "capabilities": [capability.value for capability in self.capabilities],
        }
        for key in ("alias", "mac", "hardware_id", "room", "model", "sw_ver", "hw_ver", "note"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        if self.features is not None:
            data["features"] = self.features.as_dict()
        if self.state is not None:
            data["state"] = self.state.as_dict()
        data["online"] = self.online
        data["last_seen"] = isoformat_utc(self.last_seen) if self.last_seen else None
        return data

    @classmethod
    def from_mapping(cls, value: Mapping[str, Any]) -> "Device":
        if not isinstance(value, Mapping):
            raise DeviceValidationError("Device entries must be objects")
        if not value.get("id") or not value.get("ip"):
            raise DeviceValidationError("Devices require 'id' and 'ip' fields")
        data = dict(value)
        # Older snapshots used camelCase for these two keys.
        if "lastSeen" in data and "last_seen" not in data:
            data["last_seen"] = data.pop("lastSeen")
        if "deviceId" in data and "hardware_id" not in data:
            data["hardware_id"] = data.pop("deviceId")
        name = data.get("name") or data.get("alias") or data["id"]
        changes = parse_device_changes(
            {key: val for key, val in data.items() if key in _MUTABLE_FIELDS and key != "name"}
        )
        return cls(id=str(data["id"]), name=str(name), **changes)


_MUTABLE_FIELDS = frozenset(item.name for item in fields(Device)) - {"id"}


def parse_device_changes(changes: Mapping[str, Any]) -> Dict[str, Any]:
    """Convert raw (JSON-shaped) device fields into typed ``Device`` values."""

    parsed: Dict[str, Any] = {}
    for key, value in changes.items():
        if key == "id":
            raise DeviceValidationError("Device id cannot be changed")
        if key not in _MUTABLE_FIELDS:
            raise DeviceValidationError(f"Unknown device field: {key}")
        if key == "type":
            parsed[key] = coerce_enum(DeviceType, value, "type")
        elif key == "brand":
            parsed[key] = coerce_enum(Brand, value, "brand")
        elif key == "capabilities":
            parsed[key] = coerce_capabilities(value)
        elif key == "state":
            parsed[key] = DeviceState.from_mapping(value) if value is not None else None
        elif key == "features":
            parsed[key] = DeviceFeatures.from_mapping(value) if value is not None else None
        elif key == "last_seen":
            parsed[key] = parse_timestamp(value)
        elif key == "online":
            parsed[key] = _optional_bool(value, "online")
        elif key in ("name", "ip"):
            if value is None or str(value) == "":
                raise DeviceValidationError(f"{key} cannot be empty")
            parsed[key] = str(value)
        else:
            parsed[key] = _optional_str(value)
    return parsed


@dataclass(frozen=True)
class ControlRequest:
    """Unified control request: a power action plus optional attributes."""

    action: str
    brightness: Optional[int] = None
    color: Optional[RGBColor] = None
    color_temp: Optional[int] = None
    hue: Optional[int] = None
    saturation: Optional[int] = None

    def __post_init__(self) -> None:
        if self.action not in ACTIONS:
            raise DeviceValidationError("Action must be one of: on, off, toggle")

    @property
    def has_extras(self) -> bool:
        return any(
            value is not None
            for value in (self.brightness, self.color, self.color_temp, self.hue, self.saturation)
        )

    def required_capabilities(self) -> Tuple[Capability, ...]:
        """Capabilities the request touches; extras are ignored when powering off."""

        required = [Capability.POWER]
        if self.action == POWER_OFF:
            return tuple(required)
        if self.brightness is not None:
            required.append(Capability.BRIGHTNESS)
        if self.color is not None or self.hue is not None or self.saturation is not None:
            required.append(Capability.COLOR)
        if self.color_temp is not None:
            required.append(Capability.COLOR_TEMP)
        return tuple(required)

    def as_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"action": self.action}
        for key in ("brightness", "color_temp", "hue", "saturation"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        if self.color is not None:
            data["color"] = self.color.as_dict()
        return data

    @classmethod
    def from_mapping(cls, value: Any) -> "ControlRequest":
        if not isinstance(value, Mapping):
            raise DeviceValidationError("Control request must be an object")
        action = value.get("action")
        if action is None:
            raise DeviceValidationError("Action must be one of: on, off, toggle")
        color = value.get("color")
        return cls(
            action=str(action).lower(),
            brightness=_optional_int(value.get("brightness"), "brightness"),
            color=RGBColor.from_mapping(color) if color is not None else None,
            color_temp=_optional_int(value.get("color_temp"), "color_temp"),
            hue=_optional_int(value.get("hue"), "hue"),
            saturation=_optional_int(value.get("saturation"), "saturation"),
        )


def _timestamp() -> str:
    return isoformat_utc(utc_now())


@dataclass(frozen=True)
class Envelope:
    """Uniform response wrapper returned by every control-surface call."""

    success: bool
    data: Any = None
    error: Optional[str] = None
    timestamp: str = field(default_factory=_timestamp)
    kind: Optional[str] = field(default=None, compare=False)

    @classmethod
    def ok(cls, data: Any = None) -> "Envelope":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, kind: str = "error") -> "Envelope":
        return cls(success=False, error=error, kind=kind)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "data": self.data,
            "error": self.error,
            "timestamp": self.timestamp,
        }
