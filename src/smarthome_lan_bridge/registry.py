"""In-memory device registry backed by a rewritable snapshot."""

from __future__ import annotations

import re
from dataclasses import fields, replace
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

from .errors import DeviceValidationError, PersistenceError
from .logging import get_logger
from .metrics import record_persist_result, set_device_counts
from .models import Brand, Device, DeviceState, DeviceType, coerce_enum, utc_now
from .persistence import SnapshotStore, build_snapshot, snapshot_entries

_UPDATABLE_FIELDS = frozenset(item.name for item in fields(Device)) - {"id"}
_NON_ALNUM = re.compile(r"[^a-z0-9]")


def _normalize_name(value: Optional[str]) -> str:
    if not value:
        return ""
    return _NON_ALNUM.sub("", value.lower())


class DeviceRegistry:
    """Single source of truth for device metadata, state, and reachability.

    Every successful mutation refreshes ``last_seen`` and rewrites the whole
    snapshot synchronously. A failed write is logged and counted but never
    rolls back the in-memory change, so durability is best-effort per call.
    Write cost grows with the size of the registry; large installations need a
    transactional :class:`~smarthome_lan_bridge.persistence.SnapshotStore`.
    """

    def __init__(self, store: SnapshotStore, clock: Callable[[], datetime] = utc_now) -> None:
        self.store = store
        self.logger = get_logger("smarthome.registry")
        self._clock = clock
        self._devices: Dict[str, Device] = {}
        self._load()

    def __len__(self) -> int:
        return len(self._devices)

    def __contains__(self, device_id: object) -> bool:
        return device_id in self._devices

    def _load(self) -> None:
        try:
            snapshot = self.store.load()
            if snapshot is None:
                self.logger.info("No device registry snapshot found; starting with empty registry")
                return
            entries = snapshot_entries(snapshot)
        except PersistenceError as exc:
            self.logger.warning(
                "Failed to load device registry; starting with empty registry",
                extra={"error": str(exc)},
            )
            return
        for entry in entries:
            try:
                device = Device.from_mapping(entry)
            except DeviceValidationError as exc:
                self.logger.warning(
                    "Skipping malformed registry entry",
                    extra={
                        "error": str(exc),
                        "entry_id": entry.get("id") if isinstance(entry, Mapping) else None,
                    },
                )
                continue
            self._devices[device.id] = device
        self.logger.info("Loaded device registry", extra={"count": len(self._devices)})
        self._refresh_metrics()

    def _persist(self) -> bool:
        self._refresh_metrics()
        try:
            self.store.save(build_snapshot(self._devices.values()))
        except PersistenceError as exc:
            record_persist_result("error")
            self.logger.error(
                "Failed to save device registry",
                extra={"error": str(exc), "count": len(self._devices)},
            )
            return False
        record_persist_result("success")
        self.logger.debug("Saved device registry", extra={"count": len(self._devices)})
        return True

    def _refresh_metrics(self) -> None:
        offline = sum(1 for device in self._devices.values() if device.online is False)
        set_device_counts(len(self._devices) - offline, offline)

    # Queries

    def all_devices(self) -> List[Device]:
        return list(self._devices.values())

    def device(self, device_id: str) -> Optional[Device]:
        return self._devices.get(device_id)

    def device_by_ip(self, ip: str) -> Optional[Device]:
        return next((device for device in self._devices.values() if device.ip == ip), None)

    def device_by_name(self, name: str) -> Optional[Device]:
        """Fuzzy lookup matching name, alias, or id in either direction.

        Both sides are lowercased and stripped of non-alphanumerics before a
        substring test; values that normalize to nothing never match.
        """

        query = _normalize_name(name)
        if not query:
            return None
        for device in self._devices.values():
            for candidate in (device.name, device.alias, device.id):
                normalized = _normalize_name(candidate)
                if normalized and (query in normalized or normalized in query):
                    return device
        return None

    def devices_by_room(self, room: str) -> List[Device]:
        wanted = room.lower()
        return [device for device in self._devices.values() if device.room and device.room.lower() == wanted]

    def devices_by_type(self, device_type: Union[DeviceType, str]) -> List[Device]:
        wanted = coerce_enum(DeviceType, device_type, "type")
        return [device for device in self._devices.values() if device.type is wanted]

    def devices_by_brand(self, brand: Union[Brand, str]) -> List[Device]:
        wanted = coerce_enum(Brand, brand, "brand")
        return [device for device in self._devices.values() if device.brand is wanted]

    def online_devices(self) -> List[Device]:
        """Devices not known to be offline (never-probed devices count as online)."""

        return [device for device in self._devices.values() if device.online is not False]

    def filter_devices(
        self,
        *,
        room: Optional[str] = None,
        device_type: Optional[Union[DeviceType, str]] = None,
        brand: Optional[Union[Brand, str]] = None,
        online: Optional[bool] = None,
    ) -> List[Device]:
        devices = self.all_devices()
        if room:
            wanted_room = room.lower()
            devices = [device for device in devices if device.room and device.room.lower() == wanted_room]
        if device_type:
            wanted_type = coerce_enum(DeviceType, device_type, "type")
            devices = [device for device in devices if device.type is wanted_type]
        if brand:
            wanted_brand = coerce_enum(Brand, brand, "brand")
            devices = [device for device in devices if device.brand is wanted_brand]
        if online is not None:
            devices = [device for device in devices if device.online is online]
        return devices

    def search(self, query: str) -> List[Device]:
        needle = query.lower()
        results = []
        for device in self._devices.values():
            haystack = (
                device.name,
                device.alias,
                device.id,
                device.room,
                device.model,
                device.type.value,
                device.brand.value,
            )
            if any(value and needle in value.lower() for value in haystack):
                results.append(device)
        return results

    def stats(self) -> Dict[str, Any]:
        by_type: Dict[str, int] = {}
        by_brand: Dict[str, int] = {}
        by_room: Dict[str, int] = {}
        online = offline = 0
        for device in self._devices.values():
            by_type[device.type.value] = by_type.get(device.type.value, 0) + 1
            by_brand[device.brand.value] = by_brand.get(device.brand.value, 0) + 1
            room = device.room or "unknown"
            by_room[room] = by_room.get(room, 0) + 1
            if device.online is False:
                offline += 1
            else:
                online += 1
        return {
            "total": len(self._devices),
            "by_type": by_type,
            "by_brand": by_brand,
            "by_room": by_room,
            "online": online,
            "offline": offline,
        }

    # Mutations

    def add_device(self, device: Device) -> Device:
        """Register a device, replacing any existing entry with the same id."""

        replaced = device.id in self._devices
        stored = replace(device, last_seen=self._clock())
        self._devices[stored.id] = stored
        self._persist()
        self.logger.info(
            "Replaced device" if replaced else "Registered device",
            extra={"device_id": stored.id, "ip": stored.ip, "brand": stored.brand.value},
        )
        return stored

    def update_device(self, device_id: str, **changes: Any) -> Optional[Device]:
        """Apply a partial update; returns ``None`` for unknown ids."""

        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise DeviceValidationError(f"Cannot update device field(s): {', '.join(sorted(unknown))}")
        device = self._devices.get(device_id)
        if device is None:
            return None
        changes["last_seen"] = self._clock()
        updated = replace(device, **changes)
        self._devices[device_id] = updated
        self._persist()
        return updated

    def remove_device(self, device_id: str) -> bool:
        if self._devices.pop(device_id, None) is None:
            return False
        self._persist()
        self.logger.info("Removed device", extra={"device_id": device_id})
        return True

    def set_online_status(self, device_id: str, online: bool) -> bool:
        return self.update_device(device_id, online=online) is not None

    def update_state(self, device_id: str, state: DeviceState) -> bool:
        return self.update_device(device_id, state=state) is not None

    def sync_manual_devices(self, devices: Iterable[Device]) -> None:
        """Seed configured devices, keeping observed state for known ids."""

        count = 0
        now = self._clock()
        for device in devices:
            existing = self._devices.get(device.id)
            if existing is None:
                self._devices[device.id] = replace(device, last_seen=now)
            else:
                self._devices[device.id] = replace(
                    existing,
                    name=device.name,
                    ip=device.ip,
                    type=device.type,
                    brand=device.brand,
                    capabilities=device.capabilities,
                    room=device.room or existing.room,
                    model=device.model or existing.model,
                    last_seen=now,
                )
            count += 1
        if count:
            self._persist()
            self.logger.info("Synced configured devices", extra={"count": count})
