"""Configuration loading for the smart-home LAN bridge."""

from __future__ import annotations

import argparse
import json
import os
import re
import sys
import tomllib
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence


CONFIG_ENV_PREFIX = "SMARTHOME_BRIDGE_"
CONFIG_VERSION = 1
MIN_SUPPORTED_CONFIG_VERSION = 1


def _default_registry_path() -> Path:
    base = Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local" / "share"))
    return base / "smarthome-lan-bridge" / "device-registry.json"


@dataclass(frozen=True)
class ManualDevice:
    """User-specified device seeded into the registry at startup."""

    id: str
    ip: str
    brand: str = "kasa"
    type: str = "plug"
    name: Optional[str] = None
    room: Optional[str] = None
    model: Optional[str] = None
    capabilities: Optional[Any] = None

    def as_mapping(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "ip": self.ip,
            "brand": self.brand,
            "type": self.type,
            "name": self.name or self.id,
        }
        for key in ("room", "model", "capabilities"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data


@dataclass(frozen=True)
class Config:
    """Application configuration."""

    api_host: str = "0.0.0.0"
    api_port: int = 3001
    api_key: Optional[str] = None
    api_bearer_token: Optional[str] = None
    api_docs: bool = True
    registry_path: Path = _default_registry_path()
    device_timeout: float = 5.0
    kasa_port: int = 9999
    color_temp_min: int = 2500
    color_temp_max: int = 9000
    manual_devices: Sequence[ManualDevice] = ()
    log_format: str = "plain"
    log_level: str = "INFO"
    registry_log_level: Optional[str] = None
    adapter_log_level: Optional[str] = None
    api_log_level: Optional[str] = None
    config_version: int = CONFIG_VERSION

    def __post_init__(self) -> None:
        _validate_config(self)

    def logging_dict(self) -> Dict[str, Any]:
        """Return a sanitized mapping suitable for structured logging."""

        return {
            "config_version": self.config_version,
            "api_host": self.api_host,
            "api_port": self.api_port,
            "api_docs": self.api_docs,
            "api_key": "***REDACTED***" if self.api_key else None,
            "api_bearer_token": "***REDACTED***" if self.api_bearer_token else None,
            "registry_path": str(self.registry_path),
            "device_timeout": self.device_timeout,
            "kasa_port": self.kasa_port,
            "color_temp_min": self.color_temp_min,
            "color_temp_max": self.color_temp_max,
            "manual_devices": [device.as_mapping() for device in self.manual_devices],
            "log_format": self.log_format,
            "log_level": self.log_level,
            "registry_log_level": self.registry_log_level,
            "adapter_log_level": self.adapter_log_level,
            "api_log_level": self.api_log_level,
        }

    @classmethod
    def from_sources(cls, cli_args: Optional[Iterable[str]] = None) -> "Config":
        """Load configuration from defaults, file, env, and CLI (in that order)."""

        args = _parse_cli(cli_args)
        file_config = _load_file_config(
            args.config
            or _coerce_path(os.environ.get(f"{CONFIG_ENV_PREFIX}CONFIG"))
            or None
        )
        env_config = _load_env_config(CONFIG_ENV_PREFIX)
        cli_config = _cli_overrides(args)

        config = cls()
        config = _apply_mapping(config, file_config)
        config = _apply_mapping(config, env_config)
        config = _apply_mapping(config, cli_config)
        return config


def _validate_config(config: Config) -> None:
    _validate_version(config.config_version)
    _validate_range("api_port", config.api_port, 1, 65535)
    _validate_range("kasa_port", config.kasa_port, 1, 65535)
    _validate_range("device_timeout", config.device_timeout, 0.1, 120.0)
    _validate_range("color_temp_min", config.color_temp_min, 1000, 20000)
    _validate_range("color_temp_max", config.color_temp_max, 1000, 20000)
    if config.color_temp_min >= config.color_temp_max:
        raise ValueError("color_temp_min must be lower than color_temp_max.")
    if config.log_format not in {"plain", "json"}:
        raise ValueError(f"log_format must be 'plain' or 'json'; got {config.log_format}.")
    for field_name, value in (
        ("log_level", config.log_level),
        ("registry_log_level", config.registry_log_level),
        ("adapter_log_level", config.adapter_log_level),
        ("api_log_level", config.api_log_level),
    ):
        _validate_log_level_value(value, field_name)


def _validate_version(version: int) -> None:
    if version < MIN_SUPPORTED_CONFIG_VERSION:
        raise ValueError(
            f"Config version {version} is too old; minimum supported is {MIN_SUPPORTED_CONFIG_VERSION}."
        )
    if version > CONFIG_VERSION:
        raise ValueError(
            f"Config version {version} is newer than supported ({CONFIG_VERSION}); please upgrade the bridge."
        )


def _validate_range(name: str, value: float, minimum: float, maximum: float) -> None:
    if value < minimum or value > maximum:
        raise ValueError(f"{name} must be between {minimum} and {maximum}; got {value}.")


def _validate_log_level_value(value: Optional[str], name: str) -> None:
    if value is None:
        return
    allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
    if value.upper() not in allowed:
        raise ValueError(f"{name} must be one of {sorted(allowed)}; got {value}.")


_LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def _parse_cli(cli_args: Optional[Iterable[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="smarthome-bridge",
        description="Run the smart-home LAN bridge API.",
    )
    parser.add_argument("--config", type=Path, help="Path to TOML config file.")
    parser.add_argument("--api-host", type=str, help="Interface the HTTP API binds to.")
    parser.add_argument("--api-port", type=int, help="TCP port for the HTTP API server.")
    parser.add_argument(
        "--api-key",
        type=str,
        help="API key required via X-API-Key or Authorization: ApiKey <key>.",
    )
    parser.add_argument(
        "--api-bearer-token",
        type=str,
        help="Bearer token required via Authorization: Bearer <token>.",
    )
    parser.add_argument(
        "--no-api-docs",
        action="store_true",
        help="Disable interactive API docs.",
    )
    parser.add_argument(
        "--registry-path",
        type=Path,
        help="Path to the JSON device registry snapshot.",
    )
    parser.add_argument(
        "--device-timeout",
        type=float,
        help="Seconds allowed for one device protocol exchange.",
    )
    parser.add_argument("--kasa-port", type=int, help="TCP port Kasa devices listen on.")
    parser.add_argument(
        "--color-temp-min",
        type=int,
        help="Lowest colour temperature (Kelvin) accepted for bulbs.",
    )
    parser.add_argument(
        "--color-temp-max",
        type=int,
        help="Highest colour temperature (Kelvin) accepted for bulbs.",
    )
    parser.add_argument(
        "--manual-device",
        action="append",
        dest="manual_devices",
        help=(
            "Seed a device as id=<id>,ip=<ip>,brand=<brand>,type=<type>,name=<name>,"
            "room=<room>,model=<model>,capabilities=<json>"
        ),
    )
    parser.add_argument("--log-format", choices=["plain", "json"], help="Structured logging format.")
    parser.add_argument("--log-level", choices=_LOG_LEVELS, help="Log verbosity level.")
    parser.add_argument("--registry-log-level", choices=_LOG_LEVELS, help="Log verbosity for the registry.")
    parser.add_argument("--adapter-log-level", choices=_LOG_LEVELS, help="Log verbosity for device adapters.")
    parser.add_argument("--api-log-level", choices=_LOG_LEVELS, help="Log verbosity for the API server.")
    parser.add_argument(
        "--config-version",
        type=int,
        help="Version of the configuration schema being supplied.",
    )
    return parser.parse_args(args=cli_args)


def _load_file_config(path: Optional[Path]) -> Dict[str, Any]:
    if path is None:
        return {}
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    with path.open("rb") as f:
        parsed = tomllib.load(f)
    if not isinstance(parsed, Mapping):
        raise ValueError("Configuration file must contain a TOML table.")
    return {k.replace("-", "_"): v for k, v in parsed.items()}


def _load_env_config(prefix: str) -> Dict[str, Any]:
    mapping: Dict[str, Any] = {}
    for field in Config.__dataclass_fields__:
        env_key = f"{prefix}{field}".upper()
        if env_key in os.environ:
            mapping[field] = os.environ[env_key]
    return mapping


def _cli_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    mapping = {k: v for k, v in vars(args).items() if k not in ("config", "no_api_docs") and v is not None}
    if args.no_api_docs:
        mapping["api_docs"] = False
    return mapping


def _apply_mapping(config: Config, overrides: Mapping[str, Any]) -> Config:
    data: MutableMapping[str, Any] = {}
    for key, value in overrides.items():
        if value is None:
            continue
        if key == "registry_path":
            data[key] = _coerce_path(value)
        elif key in {"api_port", "kasa_port", "color_temp_min", "color_temp_max", "config_version"}:
            data[key] = int(value)
        elif key == "device_timeout":
            data[key] = float(value)
        elif key == "log_format":
            data[key] = str(value).lower()
        elif key in {"log_level", "registry_log_level", "adapter_log_level", "api_log_level"}:
            data[key] = str(value).upper()
        elif key == "api_docs":
            data[key] = _coerce_bool(value)
        elif key == "manual_devices":
            data[key] = _coerce_manual_devices(value)
        elif key in Config.__dataclass_fields__:
            data[key] = value
    return replace(config, **data)


def _coerce_path(value: Any) -> Optional[Path]:
    if value is None:
        return None
    return value if isinstance(value, Path) else Path(str(value)).expanduser()


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _coerce_manual_devices(value: Any) -> Sequence[ManualDevice]:
    if value is None:
        return ()
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            return (_manual_from_str(value),)
        return _coerce_manual_devices(parsed)

    if isinstance(value, ManualDevice):
        return (value,)
    if isinstance(value, Mapping):
        return (_manual_from_mapping(value),)

    if isinstance(value, Iterable):
        devices: List[ManualDevice] = []
        for item in value:
            if isinstance(item, ManualDevice):
                devices.append(item)
            elif isinstance(item, Mapping):
                devices.append(_manual_from_mapping(item))
            elif isinstance(item, str):
                devices.extend(_coerce_manual_devices(item))
            else:
                raise ValueError("Unsupported manual device entry")
        return tuple(devices)

    raise ValueError("Unsupported manual_devices configuration")


def _manual_from_mapping(value: Mapping[str, Any]) -> ManualDevice:
    if "id" not in value or "ip" not in value:
        raise ValueError("Manual devices require 'id' and 'ip' fields")

    def _opt(key: str) -> Optional[str]:
        return str(value[key]) if value.get(key) is not None else None

    return ManualDevice(
        id=str(value["id"]),
        ip=str(value["ip"]),
        brand=str(value.get("brand") or "kasa").lower(),
        type=str(value.get("type") or "plug").lower(),
        name=_opt("name"),
        room=_opt("room"),
        model=_opt("model"),
        capabilities=value.get("capabilities"),
    )


_PAIR = re.compile(r"(?P<key>[^=]+)=(?P<value>.+)")


def _manual_from_str(value: str) -> ManualDevice:
    cap_value: Optional[str] = None
    if "capabilities=" in value:
        prefix, cap_raw = value.split("capabilities=", 1)
        value = prefix.rstrip(",")
        cap_value = cap_raw.strip()

    parts = [part.strip() for part in value.split(",") if part.strip()]
    mapping: Dict[str, Any] = {}
    for part in parts:
        match = _PAIR.match(part)
        if not match:
            raise ValueError(
                "Manual device arguments must be key=value pairs separated by commas"
            )
        mapping[match.group("key").strip()] = match.group("value").strip()
    if cap_value is not None:
        try:
            mapping["capabilities"] = json.loads(cap_value)
        except json.JSONDecodeError:
            mapping["capabilities"] = cap_value
    return _manual_from_mapping(mapping)


def load_config(cli_args: Optional[Iterable[str]] = None) -> Config:
    """Public helper used by the entrypoint."""

    try:
        return Config.from_sources(cli_args)
    except Exception as exc:  # pragma: no cover - startup feedback path
        print(f"Failed to load configuration: {exc}", file=sys.stderr)
        raise
