"""Snapshot persistence for the device registry.

The registry rewrites its whole device set on every mutation. Stores only
have to load and save one flat record; swapping in a transactional backend
means implementing :class:`SnapshotStore`.
"""

from __future__ import annotations

import contextlib
import copy
import json
import os
import shutil
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from tempfile import NamedTemporaryFile
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .errors import PersistenceError
from .logging import get_logger
from .models import Device, isoformat_utc, utc_now

SNAPSHOT_NOTES = (
    "This registry contains both verified and discovered devices",
    "Verified devices have complete information from device queries",
    "Discovered devices need to be queried for full details",
)


def build_snapshot(devices: Iterable[Device]) -> Dict[str, Any]:
    """Serialize the full device set into the persisted record layout."""

    return {
        "devices": [device.as_dict() for device in devices],
        "last_updated": isoformat_utc(utc_now()),
        "notes": list(SNAPSHOT_NOTES),
    }


def snapshot_entries(snapshot: Mapping[str, Any]) -> List[Any]:
    """Return the raw device entries of a loaded snapshot."""

    entries = snapshot.get("devices")
    if not isinstance(entries, list):
        raise PersistenceError("Registry snapshot has no 'devices' list")
    return entries


class SnapshotStore(ABC):
    """Port for loading and saving the registry snapshot."""

    @abstractmethod
    def load(self) -> Optional[Mapping[str, Any]]:
        """Return the stored snapshot, or ``None`` when nothing was saved yet.

        Raises:
            PersistenceError: If the snapshot exists but cannot be read or parsed.
        """

    @abstractmethod
    def save(self, snapshot: Mapping[str, Any]) -> None:
        """Replace the stored snapshot.

        Raises:
            PersistenceError: If the snapshot could not be written.
        """


class JsonFileSnapshotStore(SnapshotStore):
    """Snapshot kept as a single pretty-printed JSON document on disk."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self.logger = get_logger("smarthome.registry")

    def load(self) -> Optional[Mapping[str, Any]]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except UnicodeDecodeError as exc:
            self._backup_corrupt_snapshot(str(exc))
            raise PersistenceError(f"Device registry is not valid UTF-8: {exc}") from exc
        except OSError as exc:
            raise PersistenceError(f"Failed to read device registry: {exc}") from exc
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            self._backup_corrupt_snapshot(str(exc))
            raise PersistenceError(f"Device registry is not valid JSON: {exc}") from exc
        if not isinstance(parsed, Mapping):
            self._backup_corrupt_snapshot("top-level value is not an object")
            raise PersistenceError("Device registry must contain a JSON object")
        return parsed

    def save(self, snapshot: Mapping[str, Any]) -> None:
        tmp_path: Optional[Path] = None
        try:
            payload = json.dumps(snapshot, indent=2, ensure_ascii=False)
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=self.path.parent,
                prefix=f".{self.path.name}.",
                suffix=".tmp",
                delete=False,
            ) as handle:
                tmp_path = Path(handle.name)
                handle.write(payload)
            os.replace(tmp_path, self.path)
        except (OSError, TypeError, ValueError) as exc:
            if tmp_path is not None:
                with contextlib.suppress(OSError):
                    tmp_path.unlink()
            raise PersistenceError(f"Failed to save device registry: {exc}") from exc

    def _backup_corrupt_snapshot(self, reason: str) -> Path:
        timestamp = datetime.now(tz=timezone.utc).strftime("%Y%m%d%H%M%S")
        backup_path = self.path.with_suffix(f".corrupt-{timestamp}{self.path.suffix}")
        try:
            shutil.copy2(self.path, backup_path)
            self.logger.error(
                "Malformed registry snapshot; backup created",
                extra={"reason": reason, "backup_path": str(backup_path)},
            )
        except OSError:
            self.logger.exception(
                "Failed to back up malformed registry snapshot",
                extra={"reason": reason},
            )
        return backup_path


class MemorySnapshotStore(SnapshotStore):
    """In-process store for ephemeral registries."""

    def __init__(self, snapshot: Optional[Mapping[str, Any]] = None, read_only: bool = False) -> None:
        self.snapshot: Optional[Dict[str, Any]] = copy.deepcopy(dict(snapshot)) if snapshot is not None else None
        self.saves = 0
        self.read_only = read_only

    def load(self) -> Optional[Mapping[str, Any]]:
        return copy.deepcopy(self.snapshot)

    def save(self, snapshot: Mapping[str, Any]) -> None:
        if self.read_only:
            raise PersistenceError("Failed to save device registry: store is read-only")
        self.snapshot = copy.deepcopy(dict(snapshot))
        self.saves += 1
