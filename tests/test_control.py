import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict, List

import pytest

from fakes import BULB_SYSINFO, FakeKasaDevice, RecordingAdapter
from smarthome_lan_bridge.config import Config
from smarthome_lan_bridge.control import ControlService
from smarthome_lan_bridge.models import Brand, Capability, Device, DeviceType
from smarthome_lan_bridge.persistence import MemorySnapshotStore
from smarthome_lan_bridge.registry import DeviceRegistry


class _Clock:
    def __init__(self) -> None:
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


class _Factory:
    """Adapter factory handing out one recording adapter per device id."""

    def __init__(self, power: str = "off", fail_on=None) -> None:
        self.power = power
        self.fail_on = fail_on
        self.adapters: Dict[str, RecordingAdapter] = {}

    def __call__(self, device: Device) -> RecordingAdapter:
        adapter = self.adapters.get(device.id)
        if adapter is None:
            adapter = self.adapters[device.id] = RecordingAdapter(device, power=self.power, fail_on=self.fail_on)
        return adapter

    def calls(self, device_id: str) -> List[str]:
        adapter = self.adapters.get(device_id)
        return adapter.call_names if adapter else []


def _plug() -> Device:
    return Device(id="plug", name="Kettle", ip="10.0.0.2", brand=Brand.KASA)


def _bulb() -> Device:
    return Device(
        id="bulb",
        name="Lamp",
        ip="10.0.0.3",
        type=DeviceType.LIGHT,
        brand=Brand.KASA,
        capabilities=(Capability.POWER, Capability.BRIGHTNESS, Capability.COLOR),
    )


def _service(*devices: Device, factory="recording", config=None, store=None):
    registry = DeviceRegistry(store or MemorySnapshotStore(), clock=_Clock())
    for device in devices:
        registry.add_device(device)
    if factory == "recording":
        factory = _Factory()
    return ControlService(registry, config or Config(), adapter_factory=factory)


@pytest.mark.asyncio
async def test_unknown_device_is_not_found_without_mutation() -> None:
    store = MemorySnapshotStore()
    factory = _Factory()
    service = _service(_plug(), factory=factory, store=store)
    saves = store.saves

    for envelope in (
        await service.control("ghost", {"action": "on"}),
        await service.set_power("ghost", "on"),
        await service.set_brightness("ghost", 10),
        await service.set_rgb_color("ghost", 1, 2, 3),
        await service.get_device("ghost"),
        await service.update_device("ghost", {"name": "x"}),
        await service.remove_device("ghost"),
    ):
        assert envelope.success is False
        assert envelope.error == "Device not found"
        assert envelope.kind == "not_found"

    assert factory.adapters == {}
    assert store.saves == saves


@pytest.mark.asyncio
@pytest.mark.parametrize("level", [0, 50, 100])
async def test_brightness_requires_capability(level) -> None:
    factory = _Factory()
    service = _service(_plug(), _bulb(), factory=factory)

    on_plug = await service.set_brightness("plug", level)
    on_bulb = await service.set_brightness("bulb", level)

    assert on_plug.success is False
    assert on_plug.kind == "validation"
    assert on_plug.error == "Device does not support brightness control"
    assert factory.calls("plug") == []
    assert on_bulb.success is True
    assert on_bulb.data["state"]["brightness"] == level


@pytest.mark.asyncio
@pytest.mark.parametrize("level", [-1, 101, 1000])
async def test_out_of_range_brightness_never_reaches_device(level) -> None:
    factory = _Factory()
    service = _service(_bulb(), factory=factory)

    envelope = await service.set_brightness("bulb", level)

    assert envelope.success is False
    assert envelope.kind == "validation"
    assert factory.calls("bulb") == []
    assert service.registry.device("bulb").online is None


@pytest.mark.asyncio
async def test_control_capability_checks_skip_off() -> None:
    factory = _Factory(power="on")
    service = _service(_plug(), factory=factory)

    rejected = await service.control("plug", {"action": "on", "color_temp": 3000})
    accepted = await service.control("plug", {"action": "off", "brightness": 80})

    assert rejected.success is False
    assert rejected.error == "Device does not support color temperature control"
    assert accepted.success is True
    assert factory.calls("plug") == ["turn_off", "get_state"]


@pytest.mark.asyncio
async def test_successful_command_writes_back_restricted_state() -> None:
    factory = _Factory()
    service = _service(_plug(), factory=factory)

    envelope = await service.control("plug", {"action": "on"})

    device = service.registry.device("plug")
    assert envelope.success is True
    assert envelope.data == {"device": "Kettle", "action": "on", "state": {"power": "on"}}
    assert device.state.as_dict() == {"power": "on"}
    assert device.online is True


@pytest.mark.asyncio
async def test_protocol_failure_marks_device_offline() -> None:
    factory = _Factory(fail_on={"turn_on"})
    service = _service(_plug(), factory=factory)
    seen = service.registry.device("plug").last_seen

    envelope = await service.set_power("plug", "on")

    device = service.registry.device("plug")
    assert envelope.success is False
    assert envelope.kind == "protocol"
    assert envelope.error == "Connection timeout"
    assert device.online is False
    assert device.last_seen > seen


@pytest.mark.asyncio
async def test_invalid_power_state_is_rejected() -> None:
    service = _service(_plug())

    envelope = await service.set_power("plug", "dim")

    assert envelope.success is False
    assert envelope.error == 'State must be "on" or "off"'


@pytest.mark.asyncio
async def test_rgb_colour_requires_colour_capability() -> None:
    factory = _Factory()
    service = _service(_plug(), _bulb(), factory=factory)

    rejected = await service.set_rgb_color("plug", 255, 0, 0)
    out_of_range = await service.set_rgb_color("bulb", 0, 0, 256)
    applied = await service.set_rgb_color("bulb", 0, 255, 0, brightness=60)

    assert rejected.error == "Device does not support color control"
    assert out_of_range.error == "RGB values must be between 0 and 255"
    assert applied.success is True
    assert applied.data["state"] == {"power": "off", "brightness": 60, "hue": 120, "saturation": 100}


@pytest.mark.asyncio
async def test_unsupported_brand_fails_without_io() -> None:
    service = _service(Device(id="strip", name="Strip", ip="10.0.0.4", brand=Brand.TUYA), factory=None)

    envelope = await service.control("strip", {"action": "on"})

    assert envelope.success is False
    assert envelope.kind == "unsupported"
    assert envelope.error == "Tuya devices not yet supported"
    assert service.registry.device("strip").online is None


@pytest.mark.asyncio
async def test_get_device_degrades_to_last_known_state() -> None:
    factory = _Factory(fail_on={"get_state"})
    service = _service(_plug(), factory=factory)

    envelope = await service.get_device("plug")

    assert envelope.success is True
    assert envelope.data["id"] == "plug"
    assert envelope.data["online"] is False


@pytest.mark.asyncio
async def test_get_device_refreshes_state() -> None:
    factory = _Factory(power="on")
    service = _service(_plug(), factory=factory)

    envelope = await service.get_device("plug")

    assert envelope.data["state"] == {"power": "on"}
    assert envelope.data["online"] is True


@pytest.mark.asyncio
async def test_same_device_calls_are_serialized() -> None:
    active = 0
    peak = 0

    class _SlowAdapter(RecordingAdapter):
        async def turn_on(self) -> None:
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            await super().turn_on()

    service = _service(_plug(), factory=lambda device: _SlowAdapter(device))

    results = await asyncio.gather(*(service.set_power("plug", "on") for _ in range(5)))

    assert all(result.success for result in results)
    assert peak == 1


@pytest.mark.asyncio
async def test_registry_management_operations() -> None:
    service = _service()

    created = await service.register_device({"id": "lamp", "ip": "10.0.0.8", "room": "Office", "brand": "kasa"})
    updated = await service.update_device("lamp", {"room": "Hall"})
    bad_update = await service.update_device("lamp", {"id": "other"})
    listed = await service.list_devices(room="hall")
    found = await service.search_devices("hall")
    stats = await service.stats()
    removed = await service.remove_device("lamp")

    assert created.success and created.data["name"] == "lamp"
    assert updated.data["room"] == "Hall"
    assert bad_update.success is False and bad_update.kind == "validation"
    assert [device["id"] for device in listed.data] == ["lamp"]
    assert [device["id"] for device in found.data] == ["lamp"]
    assert stats.data["total"] == 1
    assert removed.success is True
    assert service.registry.device("lamp") is None


@pytest.mark.asyncio
async def test_list_devices_rejects_unknown_type() -> None:
    envelope = await _service(_plug()).list_devices(device_type="toaster")

    assert envelope.success is False
    assert envelope.kind == "validation"


@pytest.mark.asyncio
async def test_end_to_end_control_sets_registry_state() -> None:
    async with FakeKasaDevice(BULB_SYSINFO) as fake:
        config = Config(kasa_port=fake.port, device_timeout=1.0)
        service = _service(config=config, factory=None)
        registered = await service.register_device(
            {
                "id": "A",
                "ip": "127.0.0.1",
                "type": "light",
                "brand": "kasa",
                "capabilities": ["power", "brightness", "color"],
            }
        )
        envelope = await service.control("A", {"action": "on", "brightness": 50})

    device = service.registry.device("A")
    assert registered.success is True
    assert envelope.success is True
    assert device.state.as_dict() == {"power": "on", "brightness": 50}
    assert device.online is True


@pytest.mark.asyncio
async def test_end_to_end_ghost_device() -> None:
    service = _service(_bulb(), factory=None)
    before = service.registry.all_devices()

    envelope = await service.control("ghost", {"action": "on"})

    assert envelope.as_dict()["success"] is False
    assert envelope.as_dict()["error"] == "Device not found"
    assert service.registry.all_devices() == before


@pytest.mark.asyncio
async def test_end_to_end_timeout_marks_device_offline() -> None:
    async with FakeKasaDevice(BULB_SYSINFO, mode="silent") as fake:
        config = Config(kasa_port=fake.port, device_timeout=0.2)
        service = _service(config=config, factory=None)
        await service.register_device(
            {"id": "A", "ip": "127.0.0.1", "type": "light", "brand": "kasa", "capabilities": ["power", "brightness"]}
        )
        seen = service.registry.device("A").last_seen
        envelope = await service.control("A", {"action": "on"})

    device = service.registry.device("A")
    assert envelope.success is False
    assert envelope.error == "Connection timeout"
    assert device.online is False
    assert device.last_seen > seen


@pytest.mark.asyncio
async def test_register_with_probe_fills_capabilities() -> None:
    async with FakeKasaDevice(BULB_SYSINFO) as fake:
        service = _service(config=Config(kasa_port=fake.port, device_timeout=1.0), factory=None)
        envelope = await service.register_device(
            {"id": "bulb", "ip": "127.0.0.1", "brand": "kasa", "room": "Lounge"}, probe=True
        )

    assert envelope.success is True
    assert envelope.data["name"] == "Living Room Bulb"
    assert envelope.data["type"] == "light"
    assert envelope.data["capabilities"] == ["power", "brightness", "color", "color_temp"]
    assert envelope.data["room"] == "Lounge"
    assert envelope.data["online"] is True


class _BlockingAdapter(RecordingAdapter):
    """Recording adapter whose ``turn_on`` waits until released."""

    def __init__(self, device: Device, entered: asyncio.Event, release: asyncio.Event) -> None:
        super().__init__(device)
        self.entered = entered
        self.release = release

    async def turn_on(self) -> None:
        self.entered.set()
        await self.release.wait()
        await super().turn_on()


def _blocking_service():
    entered = asyncio.Event()
    release = asyncio.Event()
    service = _service(
        Device(id="x", name="X", ip="10.0.0.1", brand=Brand.KASA),
        factory=lambda device: _BlockingAdapter(device, entered, release),
    )
    return service, entered, release


@pytest.mark.asyncio
async def test_reregistration_waits_for_in_flight_command() -> None:
    service, entered, release = _blocking_service()

    command = asyncio.create_task(service.set_power("x", "on"))
    await entered.wait()
    registration = asyncio.create_task(service.register_device({"id": "x", "ip": "10.0.0.99", "brand": "kasa"}))
    await asyncio.sleep(0.01)
    assert not registration.done()

    release.set()
    powered, registered = await asyncio.gather(command, registration)

    device = service.registry.device("x")
    assert powered.success is True
    assert registered.success is True
    assert device.ip == "10.0.0.99"
    assert device.online is None
    assert device.state is None


@pytest.mark.asyncio
async def test_command_result_is_not_written_onto_replaced_entry() -> None:
    service, entered, release = _blocking_service()

    command = asyncio.create_task(service.set_power("x", "on"))
    await entered.wait()
    service.registry.add_device(Device(id="x", name="X", ip="10.0.0.99", brand=Brand.KASA))
    release.set()
    envelope = await command

    device = service.registry.device("x")
    assert envelope.success is True
    assert envelope.data["state"] == {"power": "on"}
    assert device.ip == "10.0.0.99"
    assert device.online is None
    assert device.state is None


@pytest.mark.asyncio
async def test_failed_probe_registers_nothing_and_keeps_no_lock() -> None:
    service = _service(factory=None)

    envelope = await service.register_device({"id": "strip", "ip": "10.0.0.4", "brand": "tuya"}, probe=True)

    assert envelope.success is False
    assert envelope.kind == "unsupported"
    assert "strip" not in service.registry
    assert "strip" not in service._locks


@pytest.mark.asyncio
async def test_get_device_without_adapter_marks_offline() -> None:
    service = _service(Device(id="strip", name="Strip", ip="10.0.0.4", brand=Brand.TUYA), factory=None)

    envelope = await service.get_device("strip")

    assert envelope.success is True
    assert envelope.data["id"] == "strip"
    assert envelope.data["online"] is False
