"""Entrypoint for the smart-home LAN bridge."""

from __future__ import annotations

import asyncio
import contextlib
import signal
from typing import Iterable, List, Optional

from .api import ApiService
from .config import Config, load_config
from .control import ControlService
from .errors import DeviceValidationError
from .logging import configure_logging, get_logger
from .models import Device
from .persistence import JsonFileSnapshotStore
from .registry import DeviceRegistry


def manual_devices(config: Config) -> List[Device]:
    """Convert configured manual devices into registry entries."""

    logger = get_logger("smarthome")
    devices: List[Device] = []
    for manual in config.manual_devices:
        try:
            devices.append(Device.from_mapping(manual.as_mapping()))
        except DeviceValidationError as exc:
            logger.warning(
                "Ignoring invalid manual device",
                extra={"device_id": manual.id, "error": str(exc)},
            )
    return devices


def build_service(config: Config) -> ControlService:
    registry = DeviceRegistry(JsonFileSnapshotStore(config.registry_path))
    registry.sync_manual_devices(manual_devices(config))
    return ControlService(registry, config)


async def _run_async(config: Config) -> None:
    logger = get_logger("smarthome")
    stop_event = asyncio.Event()
    service = build_service(config)

    def _request_shutdown(sig: Optional[str] = None) -> None:
        if not stop_event.is_set():
            logger.warning("Shutdown requested", extra={"signal": sig})
            stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, _request_shutdown, sig.name)

    api = ApiService(config, service)
    await api.start()
    logger.info(
        "Bridge started",
        extra={
            "api_host": config.api_host,
            "api_port": config.api_port,
            "registry_path": str(config.registry_path),
            "devices": len(service.registry),
        },
    )
    try:
        await stop_event.wait()
    finally:
        await api.stop()
        logger.info("Bridge shutdown complete")


def run(cli_args: Optional[Iterable[str]] = None) -> None:
    """CLI entrypoint used by setuptools."""

    config = load_config(cli_args)
    configure_logging(config)
    logger = get_logger("smarthome")
    logger.info("Loaded configuration", extra={"config": config.logging_dict()})
    try:
        asyncio.run(_run_async(config))
    except KeyboardInterrupt:
        logger.warning("Interrupted by user")


if __name__ == "__main__":
    run()
