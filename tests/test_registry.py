import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from smarthome_lan_bridge.errors import DeviceValidationError
from smarthome_lan_bridge.metrics import latest_metrics
from smarthome_lan_bridge.models import Brand, Capability, Device, DeviceState, DeviceType
from smarthome_lan_bridge.persistence import JsonFileSnapshotStore, MemorySnapshotStore
from smarthome_lan_bridge.registry import DeviceRegistry


class _Clock:
    def __init__(self) -> None:
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


def _device(device_id: str, **kwargs) -> Device:
    defaults = {"name": device_id.title(), "ip": f"10.0.0.{len(device_id)}"}
    defaults.update(kwargs)
    return Device(id=device_id, **defaults)


def _registry(*devices: Device, store=None) -> DeviceRegistry:
    registry = DeviceRegistry(store or MemorySnapshotStore(), clock=_Clock())
    for device in devices:
        registry.add_device(device)
    return registry


def test_missing_snapshot_starts_empty(tmp_path: Path) -> None:
    registry = DeviceRegistry(JsonFileSnapshotStore(tmp_path / "registry.json"))

    assert len(registry) == 0


def test_malformed_snapshot_starts_empty_and_keeps_backup(tmp_path: Path) -> None:
    path = tmp_path / "registry.json"
    path.write_text("{not json", encoding="utf-8")

    registry = DeviceRegistry(JsonFileSnapshotStore(path))

    assert registry.all_devices() == []
    assert list(tmp_path.glob("registry.corrupt-*.json"))


def test_undecodable_snapshot_starts_empty_and_keeps_backup(tmp_path: Path) -> None:
    path = tmp_path / "registry.json"
    path.write_bytes(b'{"devices": [\xff\xfe]}')

    registry = DeviceRegistry(JsonFileSnapshotStore(path))

    assert registry.all_devices() == []
    assert list(tmp_path.glob("registry.corrupt-*.json"))


def test_malformed_entries_are_skipped() -> None:
    store = MemorySnapshotStore(
        {
            "devices": [
                {"id": "good", "ip": "10.0.0.1", "name": "Good"},
                {"name": "no id or ip"},
                {"id": "bad-type", "ip": "10.0.0.2", "type": "toaster"},
            ]
        }
    )

    registry = DeviceRegistry(store)

    assert [device.id for device in registry.all_devices()] == ["good"]


def test_snapshot_round_trip(tmp_path: Path) -> None:
    path = tmp_path / "registry.json"
    registry = DeviceRegistry(JsonFileSnapshotStore(path))
    registry.add_device(_device("lamp", brand=Brand.KASA, room="Office", state=DeviceState(power="on")))

    snapshot = json.loads(path.read_text(encoding="utf-8"))
    reloaded = DeviceRegistry(JsonFileSnapshotStore(path))

    assert set(snapshot) == {"devices", "last_updated", "notes"}
    assert snapshot["devices"][0]["id"] == "lamp"
    assert reloaded.device("lamp").as_dict() == registry.device("lamp").as_dict()


def test_add_device_replaces_and_refreshes_last_seen() -> None:
    registry = _registry(_device("lamp"))
    first_seen = registry.device("lamp").last_seen

    stored = registry.add_device(_device("lamp", name="Renamed"))

    assert len(registry) == 1
    assert stored.name == "Renamed"
    assert stored.last_seen > first_seen


def test_update_unknown_device_does_not_mutate_or_persist() -> None:
    store = MemorySnapshotStore()
    registry = _registry(_device("lamp"), store=store)
    saves = store.saves
    before = registry.all_devices()

    assert registry.update_device("ghost", name="Nope") is None
    assert registry.set_online_status("ghost", False) is False
    assert registry.update_state("ghost", DeviceState(power="on")) is False
    assert registry.remove_device("ghost") is False
    assert store.saves == saves
    assert registry.all_devices() == before


def test_update_device_rejects_id_change() -> None:
    registry = _registry(_device("lamp"))

    with pytest.raises(DeviceValidationError):
        registry.update_device("lamp", id="other")


def test_successful_mutations_persist_and_advance_last_seen() -> None:
    store = MemorySnapshotStore()
    registry = _registry(_device("lamp"), store=store)
    saves = store.saves
    seen = registry.device("lamp").last_seen

    assert registry.set_online_status("lamp", False) is True
    assert registry.device("lamp").online is False
    assert registry.device("lamp").last_seen > seen
    assert store.saves == saves + 1
    assert store.snapshot["devices"][0]["online"] is False


def test_persistence_failure_keeps_in_memory_change() -> None:
    store = MemorySnapshotStore(read_only=True)
    registry = DeviceRegistry(store)

    registry.add_device(_device("lamp"))
    updated = registry.update_device("lamp", room="Kitchen")

    assert updated is not None
    assert registry.device("lamp").room == "Kitchen"
    assert store.saves == 0


def test_persistence_failure_is_counted() -> None:
    registry = DeviceRegistry(MemorySnapshotStore(read_only=True))

    registry.add_device(_device("lamp"))

    exposition = latest_metrics().decode("utf-8")
    assert 'smarthome_registry_persists_total{result="error"}' in exposition


def test_remove_device() -> None:
    registry = _registry(_device("lamp"), _device("plug"))

    assert registry.remove_device("lamp") is True
    assert registry.device("lamp") is None
    assert "plug" in registry


def test_lookup_by_ip_and_fuzzy_name() -> None:
    registry = _registry(
        _device("lr-lamp", name="Living Room Lamp", ip="10.0.0.10", alias=""),
        _device("kettle", name="Kitchen Kettle", ip="10.0.0.11", alias="Tea-Maker"),
    )

    assert registry.device_by_ip("10.0.0.11").id == "kettle"
    assert registry.device_by_ip("10.9.9.9") is None
    assert registry.device_by_name("living room").id == "lr-lamp"
    assert registry.device_by_name("TEA MAKER").id == "kettle"
    assert registry.device_by_name("the kitchen kettle please").id == "kettle"
    assert registry.device_by_name("garage") is None
    assert registry.device_by_name("!!") is None


def test_filters_and_online_semantics() -> None:
    registry = _registry(
        _device("lamp", type=DeviceType.LIGHT, brand=Brand.KASA, room="Office"),
        _device("plug", type=DeviceType.PLUG, brand=Brand.KASA, room="office", online=True),
        _device("strip", type=DeviceType.LIGHT, brand=Brand.TUYA, online=False),
    )

    assert {device.id for device in registry.devices_by_room("OFFICE")} == {"lamp", "plug"}
    assert {device.id for device in registry.devices_by_type("light")} == {"lamp", "strip"}
    assert {device.id for device in registry.devices_by_brand(Brand.TUYA)} == {"strip"}
    assert {device.id for device in registry.online_devices()} == {"lamp", "plug"}
    assert [device.id for device in registry.filter_devices(room="office", device_type="light")] == ["lamp"]
    assert [device.id for device in registry.filter_devices(online=True)] == ["plug"]
    assert [device.id for device in registry.filter_devices(online=False)] == ["strip"]


def test_search_matches_any_text_field() -> None:
    registry = _registry(
        _device("lamp", name="Desk Lamp", model="KL130", room="Study"),
        _device("plug", name="Heater", brand=Brand.TUYA),
    )

    assert [device.id for device in registry.search("kl13")] == ["lamp"]
    assert [device.id for device in registry.search("study")] == ["lamp"]
    assert [device.id for device in registry.search("TUYA")] == ["plug"]
    assert registry.search("nothing") == []


def test_stats_counts_unknown_room_and_unprobed_as_online() -> None:
    registry = _registry(
        _device("lamp", type=DeviceType.LIGHT, brand=Brand.KASA, room="Office"),
        _device("plug", brand=Brand.KASA, online=False),
        _device("switch", type=DeviceType.SWITCH, online=True),
    )

    stats = registry.stats()

    assert stats == {
        "total": 3,
        "by_type": {"light": 1, "plug": 1, "switch": 1},
        "by_brand": {"kasa": 2, "unknown": 1},
        "by_room": {"Office": 1, "unknown": 2},
        "online": 2,
        "offline": 1,
    }


def test_sync_manual_devices_preserves_observed_state() -> None:
    registry = _registry(_device("lamp", state=DeviceState(power="on"), online=True, room="Office"))

    registry.sync_manual_devices(
        [
            _device("lamp", ip="10.0.0.99", capabilities=(Capability.POWER, Capability.BRIGHTNESS)),
            _device("plug"),
        ]
    )

    lamp = registry.device("lamp")
    assert lamp.ip == "10.0.0.99"
    assert lamp.capabilities == (Capability.POWER, Capability.BRIGHTNESS)
    assert lamp.state == DeviceState(power="on")
    assert lamp.online is True
    assert lamp.room == "Office"
    assert "plug" in registry
