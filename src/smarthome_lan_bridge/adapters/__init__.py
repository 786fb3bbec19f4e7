"""Adapter registry keyed by device brand."""

from __future__ import annotations

from typing import Dict, List, Optional, Type

from ..config import Config
from ..errors import UnsupportedBrandError
from ..models import Brand, Device
from .base import DeviceAdapter
from .kasa import KasaAdapter

# Registry of available adapters; add a brand by adding an entry here.
_ADAPTERS: Dict[Brand, Type[DeviceAdapter]] = {
    Brand.KASA: KasaAdapter,
}


def get_adapter(device: Device, config: Optional[Config] = None) -> DeviceAdapter:
    """Build the adapter for a device's brand.

    Args:
        device: Registry entry the adapter will talk to.
        config: Bridge configuration supplying ports, timeouts and ranges.

    Returns:
        Adapter instance bound to ``device``.

    Raises:
        UnsupportedBrandError: If no adapter exists for the brand.
    """
    config = config or Config()
    adapter_cls = _ADAPTERS.get(device.brand)
    if adapter_cls is None:
        if device.brand is Brand.TUYA:
            raise UnsupportedBrandError("Tuya devices not yet supported")
        raise UnsupportedBrandError(f"Unsupported device brand: {device.brand.value}")
    if adapter_cls is KasaAdapter:
        return KasaAdapter(
            device,
            port=config.kasa_port,
            timeout=config.device_timeout,
            color_temp_range=(config.color_temp_min, config.color_temp_max),
        )
    return adapter_cls(device, color_temp_range=(config.color_temp_min, config.color_temp_max))


def supported_brands() -> List[str]:
    """Get list of brands that have an adapter."""
    return [brand.value for brand in _ADAPTERS]


__all__ = [
    "DeviceAdapter",
    "KasaAdapter",
    "get_adapter",
    "supported_brands",
]
