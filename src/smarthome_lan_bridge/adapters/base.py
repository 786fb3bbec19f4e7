"""Base adapter interface for brand-specific device control."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple

from ..color import rgb_to_hsv
from ..errors import DeviceValidationError, ProtocolError
from ..logging import get_logger
from ..models import POWER_OFF, POWER_ON, Brand, ControlRequest, Device, DeviceState, coerce_int

DEFAULT_COLOR_TEMP_RANGE: Tuple[int, int] = (2500, 9000)


def check_range(name: str, value: Any, minimum: int, maximum: int, unit: str = "") -> int:
    """Validate an integer setting, raising before any device I/O happens."""

    number = coerce_int(value, name)
    if number < minimum or number > maximum:
        raise DeviceValidationError(f"{name} must be between {minimum}{unit} and {maximum}{unit}")
    return number


class DeviceAdapter(ABC):
    """Abstract base class for device adapters.

    One adapter instance talks to one device. Subclasses implement the
    primitive operations; the base class supplies the RGB conversion, the
    unified ``control`` sequence and the connectivity probe on top of them.

    Every numeric setter validates its inputs before any network I/O and
    raises :class:`DeviceValidationError` on out-of-range values. Transport,
    timeout and vendor failures surface as :class:`ProtocolError`.
    """

    brand: Brand = Brand.UNKNOWN

    def __init__(
        self,
        device: Device,
        *,
        color_temp_range: Tuple[int, int] = DEFAULT_COLOR_TEMP_RANGE,
    ) -> None:
        self.device = device
        self.color_temp_range = color_temp_range
        self.logger = get_logger("smarthome.adapters")

    @abstractmethod
    async def turn_on(self) -> None:
        pass

    @abstractmethod
    async def turn_off(self) -> None:
        pass

    @abstractmethod
    async def set_brightness(self, brightness: int) -> None:
        """Set brightness as a percentage (0-100)."""
        pass

    @abstractmethod
    async def set_color(self, hue: int, saturation: int, brightness: Optional[int] = None) -> None:
        """Set colour from hue (0-360) and saturation (0-100)."""
        pass

    @abstractmethod
    async def set_color_temperature(self, kelvin: int, brightness: Optional[int] = None) -> None:
        """Set white colour temperature within ``color_temp_range``."""
        pass

    @abstractmethod
    async def get_state(self) -> DeviceState:
        """Poll the device and return its current state."""
        pass

    @abstractmethod
    async def get_device_info(self) -> Dict[str, Any]:
        """Return the raw vendor description of the device."""
        pass

    async def describe(self) -> Dict[str, Any]:
        """Return registration fields (capabilities, metadata) probed from the device.

        Adapters that cannot derive registration data return an empty mapping.
        """

        return {}

    def validate_brightness(self, brightness: Any) -> int:
        return check_range("Brightness", brightness, 0, 100)

    def validate_hue(self, hue: Any) -> int:
        return check_range("Hue", hue, 0, 360)

    def validate_saturation(self, saturation: Any) -> int:
        return check_range("Saturation", saturation, 0, 100)

    def validate_color_temp(self, kelvin: Any) -> int:
        minimum, maximum = self.color_temp_range
        return check_range("Color temperature", kelvin, minimum, maximum, unit="K")

    def validate_rgb(self, r: Any, g: Any, b: Any) -> Tuple[int, int, int]:
        channels = []
        for name, value in (("r", r), ("g", g), ("b", b)):
            number = coerce_int(value, name)
            if number < 0 or number > 255:
                raise DeviceValidationError("RGB values must be between 0 and 255")
            channels.append(number)
        return channels[0], channels[1], channels[2]

    def validate_request(self, request: ControlRequest) -> None:
        """Check every attribute of a control request without touching the device."""

        if (request.hue is None) != (request.saturation is None):
            raise DeviceValidationError("Hue and saturation must be provided together")
        if request.brightness is not None:
            self.validate_brightness(request.brightness)
        if request.color is not None:
            self.validate_rgb(request.color.r, request.color.g, request.color.b)
        if request.hue is not None:
            self.validate_hue(request.hue)
            self.validate_saturation(request.saturation)
        if request.color_temp is not None:
            self.validate_color_temp(request.color_temp)

    async def set_rgb_color(self, r: int, g: int, b: int, brightness: Optional[int] = None) -> None:
        r, g, b = self.validate_rgb(r, g, b)
        if brightness is not None:
            self.validate_brightness(brightness)
        hsv = rgb_to_hsv(r, g, b)
        await self.set_color(hsv.hue, hsv.saturation, brightness)

    async def control(self, request: ControlRequest) -> None:
        """Apply a power action followed by at most one attribute change.

        ``off`` powers down and ignores every attribute. ``toggle`` polls the
        device first; a device that is on is switched off and nothing else is
        sent. Attributes are applied in precedence order: RGB colour, then
        hue and saturation, then colour temperature, then brightness alone.
        """

        if request.action == POWER_OFF:
            await self.turn_off()
            return

        self.validate_request(request)
        if request.action == "toggle":
            state = await self.get_state()
            if state.power == POWER_ON:
                await self.turn_off()
                return
        await self.turn_on()
        await self._apply_attributes(request)

    async def _apply_attributes(self, request: ControlRequest) -> None:
        if request.color is not None:
            color = request.color
            await self.set_rgb_color(color.r, color.g, color.b, request.brightness)
        elif request.hue is not None and request.saturation is not None:
            await self.set_color(request.hue, request.saturation, request.brightness)
        elif request.color_temp is not None:
            await self.set_color_temperature(request.color_temp, request.brightness)
        elif request.brightness is not None:
            await self.set_brightness(request.brightness)

    async def test_connection(self) -> bool:
        try:
            await self.get_device_info()
        except ProtocolError as exc:
            self.logger.debug(
                "Connection test failed",
                extra={"device_id": self.device.id, "ip": self.device.ip, "error": str(exc)},
            )
            return False
        return True
