"""Error taxonomy shared by the registry, adapters, and control surface."""

from __future__ import annotations


class BridgeError(Exception):
    """Base class for expected bridge failures."""

    kind = "error"


class DeviceNotFoundError(BridgeError):
    """Raised when a device id is not present in the registry."""

    kind = "not_found"

    def __init__(self, device_id: str) -> None:
        super().__init__("Device not found")
        self.device_id = device_id


class DeviceValidationError(BridgeError):
    """Raised for out-of-range values or capabilities a device does not advertise."""

    kind = "validation"


class UnsupportedBrandError(BridgeError):
    """Raised when no adapter exists for a device brand."""

    kind = "unsupported"


class ProtocolError(BridgeError):
    """Raised for connect, timeout, parse, or vendor-reported failures."""

    kind = "protocol"


class PersistenceError(BridgeError):
    """Raised when the registry snapshot cannot be written."""

    kind = "persistence"
