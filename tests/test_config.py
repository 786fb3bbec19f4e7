from pathlib import Path

import pytest

from smarthome_lan_bridge.__main__ import manual_devices
from smarthome_lan_bridge.config import (
    CONFIG_VERSION,
    MIN_SUPPORTED_CONFIG_VERSION,
    Config,
    ManualDevice,
)
from smarthome_lan_bridge.models import Brand, Capability, DeviceType


def test_default_config_passes_validation() -> None:
    config = Config()
    assert config.config_version == CONFIG_VERSION
    assert config.api_port == 3001
    assert config.kasa_port == 9999
    assert config.device_timeout == 5.0
    assert (config.color_temp_min, config.color_temp_max) == (2500, 9000)


@pytest.mark.parametrize(
    "field,value,error",
    [
        ("api_port", 0, "api_port"),
        ("kasa_port", 70000, "kasa_port"),
        ("device_timeout", 0.0, "device_timeout"),
        ("color_temp_max", 500, "color_temp_max"),
        ("log_format", "xml", "log_format"),
        ("adapter_log_level", "LOUD", "adapter_log_level"),
    ],
)
def test_bounds_enforced(field: str, value: object, error: str) -> None:
    with pytest.raises(ValueError, match=error):
        Config(**{field: value})


def test_colour_temperature_range_must_be_ordered() -> None:
    with pytest.raises(ValueError, match="color_temp_min"):
        Config(color_temp_min=6000, color_temp_max=3000)


def test_future_config_version_rejected() -> None:
    with pytest.raises(ValueError, match="newer than supported"):
        Config(config_version=CONFIG_VERSION + 1)


def test_ancient_config_version_rejected() -> None:
    with pytest.raises(ValueError, match="too old"):
        Config(config_version=MIN_SUPPORTED_CONFIG_VERSION - 1)


def test_logging_dict_masks_secrets() -> None:
    config = Config(api_key="secret-key", api_bearer_token="token")
    logged = config.logging_dict()
    assert logged["api_key"] == "***REDACTED***"
    assert logged["api_bearer_token"] == "***REDACTED***"


def test_sources_are_layered(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_file = tmp_path / "bridge.toml"
    config_file.write_text(
        'api-port = 4000\ndevice_timeout = 2.0\nlog_level = "debug"\n'
        '[[manual_devices]]\nid = "lamp"\nip = "10.0.0.5"\ntype = "light"\n'
        'capabilities = ["power", "brightness"]\n',
        encoding="utf-8",
    )
    monkeypatch.setenv("SMARTHOME_BRIDGE_DEVICE_TIMEOUT", "3.5")
    monkeypatch.setenv("SMARTHOME_BRIDGE_API_DOCS", "false")

    config = Config.from_sources(["--config", str(config_file), "--kasa-port", "10000"])

    assert config.api_port == 4000
    assert config.device_timeout == 3.5
    assert config.kasa_port == 10000
    assert config.log_level == "DEBUG"
    assert config.api_docs is False
    assert config.manual_devices == (
        ManualDevice(id="lamp", ip="10.0.0.5", type="light", capabilities=["power", "brightness"]),
    )


def test_manual_device_strings() -> None:
    config = Config.from_sources(
        [
            "--manual-device",
            "id=plug,ip=10.0.0.9,brand=kasa,name=Kettle,room=Kitchen",
            "--manual-device",
            'id=bulb,ip=10.0.0.10,type=light,capabilities=["power","color"]',
        ]
    )

    plug, bulb = config.manual_devices
    assert plug.name == "Kettle"
    assert plug.room == "Kitchen"
    assert bulb.capabilities == ["power", "color"]


def test_manual_devices_become_registry_entries() -> None:
    config = Config(
        manual_devices=(
            ManualDevice(id="bulb", ip="10.0.0.10", type="light", capabilities=["power", "color"]),
            ManualDevice(id="broken", ip="10.0.0.11", type="toaster"),
        )
    )

    devices = manual_devices(config)

    assert len(devices) == 1
    bulb = devices[0]
    assert bulb.name == "bulb"
    assert bulb.type is DeviceType.LIGHT
    assert bulb.brand is Brand.KASA
    assert bulb.capabilities == (Capability.POWER, Capability.COLOR)
