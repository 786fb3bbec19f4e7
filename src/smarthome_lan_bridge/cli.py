"""Command-line client for interacting with the bridge HTTP API."""

from __future__ import annotations

import argparse
import json
import os
import sys
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, MutableMapping, Optional
from urllib.parse import quote

import httpx
import yaml


DEFAULT_SERVER_URL = "http://127.0.0.1:3001"
ENV_PREFIX = "SMARTHOME_BRIDGE_"


class CliError(Exception):
    """Raised when the CLI encounters an expected error condition."""


@dataclass(frozen=True)
class ClientConfig:
    """Configuration for the API client."""

    server_url: str
    api_key: Optional[str]
    api_bearer_token: Optional[str]
    output: str
    timeout: float = 10.0


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(f"{ENV_PREFIX}{name}", default)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="smarthome-ctl",
        description=(
            "CLI for the smart-home LAN bridge API. Uses SMARTHOME_BRIDGE_* env vars "
            "for defaults and prints JSON (default) or YAML. Examples: "
            "`smarthome-ctl devices list --room kitchen`, "
            "`smarthome-ctl control lamp-1 --action on --brightness 40`."
        ),
    )
    parser.add_argument(
        "--server-url",
        default=_env("SERVER_URL", DEFAULT_SERVER_URL),
        help=(
            f"Base URL for the bridge API (env: {ENV_PREFIX}SERVER_URL). "
            f"Defaults to {DEFAULT_SERVER_URL}."
        ),
    )
    parser.add_argument(
        "--api-key",
        default=_env("API_KEY"),
        help=(
            f"API key for authentication (env: {ENV_PREFIX}API_KEY). Sets both "
            "'X-API-Key' and 'Authorization: ApiKey <key>' headers when provided."
        ),
    )
    parser.add_argument(
        "--api-bearer-token",
        default=_env("API_BEARER_TOKEN"),
        help=(
            f"Bearer token for authentication (env: {ENV_PREFIX}API_BEARER_TOKEN). "
            "Overrides Authorization header when set."
        ),
    )
    parser.add_argument(
        "--output",
        choices=["json", "yaml"],
        default=_env("OUTPUT", "json"),
        help=f"Output format for responses (env: {ENV_PREFIX}OUTPUT). Defaults to 'json'.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)
    _add_status_commands(subparsers)
    _add_device_commands(subparsers)
    _add_control_commands(subparsers)
    return parser


def _add_status_commands(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    health = subparsers.add_parser(
        "health",
        help="Check API health (GET /health)",
        description="Checks bridge liveness and reports the number of registered devices.",
    )
    health.set_defaults(func=_cmd_health)

    stats = subparsers.add_parser(
        "stats",
        help="Show registry statistics (GET /api/registry/stats)",
        description="Totals by type, brand and room plus online/offline counts.",
    )
    stats.set_defaults(func=_cmd_stats)


def _add_device_commands(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    devices = subparsers.add_parser(
        "devices",
        help="Device registry commands (list/show/search/add/update/remove)",
        description="Inspect and manage the device registry.",
    )
    device_sub = devices.add_subparsers(dest="device_command", required=True)

    list_cmd = device_sub.add_parser("list", help="List devices (GET /api/devices)")
    list_cmd.add_argument("--room", help="Only devices in this room (case-insensitive)")
    list_cmd.add_argument("--type", dest="device_type", choices=["light", "plug", "switch"], help="Filter by type")
    list_cmd.add_argument("--brand", help="Filter by brand")
    online = list_cmd.add_mutually_exclusive_group()
    online.add_argument("--online", dest="online", action="store_true", default=None, help="Only online devices")
    online.add_argument("--offline", dest="online", action="store_false", help="Only offline devices")
    list_cmd.set_defaults(func=_cmd_devices_list, online=None)

    show = device_sub.add_parser("show", help="Poll and show one device (GET /api/devices/{id})")
    show.add_argument("device_id", help="Device identifier")
    show.set_defaults(func=_cmd_devices_show)

    search = device_sub.add_parser("search", help="Free-text device search")
    search.add_argument("query", help="Text matched against name, alias, id, room, model, type and brand")
    search.set_defaults(func=_cmd_devices_search)

    add = device_sub.add_parser(
        "add",
        help="Register a device (POST /api/devices)",
        description="Registers or replaces a device. Use --probe to fill details from the device itself.",
    )
    add.add_argument("--id", required=True, dest="device_id", help="Caller-assigned device identifier")
    add.add_argument("--ip", required=True, help="Device IP address")
    _add_device_fields(add)
    add.add_argument("--probe", action="store_true", help="Query the device for capabilities and metadata")
    add.set_defaults(func=_cmd_devices_add)

    update = device_sub.add_parser("update", help="Update device fields (PATCH /api/devices/{id})")
    update.add_argument("device_id", help="Device identifier")
    update.add_argument("--ip", help="Device IP address")
    _add_device_fields(update)
    update.set_defaults(func=_cmd_devices_update)

    remove = device_sub.add_parser("remove", help="Remove a device (DELETE /api/devices/{id})")
    remove.add_argument("device_id", help="Device identifier")
    remove.set_defaults(func=_cmd_devices_remove)


def _add_device_fields(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--name", help="Display name")
    parser.add_argument("--alias", help="Vendor alias")
    parser.add_argument("--type", dest="device_type", choices=["light", "plug", "switch"], help="Device type")
    parser.add_argument("--brand", help="Device brand (kasa, tuya, unknown)")
    parser.add_argument(
        "--capabilities",
        help="Comma-separated capabilities (power,brightness,color,color_temp) or a JSON list",
    )
    parser.add_argument("--room", help="Room the device is in")
    parser.add_argument("--model", help="Model identifier")
    parser.add_argument("--note", help="Free-text note")


def _add_control_commands(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    control = subparsers.add_parser(
        "control",
        help="Unified control (POST /api/devices/{id}/control)",
        description=(
            "Apply a power action plus optional attributes. 'off' ignores attributes; "
            "'toggle' reads the current state first."
        ),
    )
    control.add_argument("device_id", help="Device identifier")
    control.add_argument("--action", required=True, choices=["on", "off", "toggle"], help="Power action")
    control.add_argument("--brightness", type=int, help="Brightness 0-100")
    control.add_argument("--color", help="RGB colour as R,G,B (0-255 each)")
    control.add_argument("--color-temp", type=int, help="Colour temperature in Kelvin")
    control.add_argument("--hue", type=int, help="Hue 0-360 (requires --saturation)")
    control.add_argument("--saturation", type=int, help="Saturation 0-100 (requires --hue)")
    control.set_defaults(func=_cmd_control)

    power = subparsers.add_parser("power", help="Switch a device on or off")
    power.add_argument("device_id", help="Device identifier")
    power.add_argument("state", choices=["on", "off"], help="Desired power state")
    power.set_defaults(func=_cmd_power)

    brightness = subparsers.add_parser("brightness", help="Set brightness (0-100)")
    brightness.add_argument("device_id", help="Device identifier")
    brightness.add_argument("level", type=int, help="Brightness level 0-100")
    brightness.set_defaults(func=_cmd_brightness)

    color = subparsers.add_parser("color", help="Set an RGB colour")
    color.add_argument("device_id", help="Device identifier")
    color.add_argument("r", type=int, help="Red 0-255")
    color.add_argument("g", type=int, help="Green 0-255")
    color.add_argument("b", type=int, help="Blue 0-255")
    color.add_argument("--brightness", type=int, help="Optional brightness 0-100")
    color.set_defaults(func=_cmd_color)


def _load_config(args: argparse.Namespace) -> ClientConfig:
    output = args.output or "json"
    if output not in {"json", "yaml"}:
        raise CliError("Output format must be 'json' or 'yaml'")

    return ClientConfig(
        server_url=args.server_url,
        api_key=args.api_key,
        api_bearer_token=args.api_bearer_token,
        output=output,
    )


def _build_client(config: ClientConfig) -> httpx.Client:
    headers: MutableMapping[str, str] = {}
    if config.api_key:
        headers["X-API-Key"] = config.api_key
        headers.setdefault("Authorization", f"ApiKey {config.api_key}")
    if config.api_bearer_token:
        headers["Authorization"] = f"Bearer {config.api_bearer_token}"

    return httpx.Client(base_url=config.server_url, headers=headers, timeout=config.timeout)


def _print_output(data: Any, output: str) -> None:
    if output == "yaml":
        yaml.safe_dump(data, sys.stdout, sort_keys=False)
    else:
        json.dump(data, sys.stdout, indent=2)
        sys.stdout.write("\n")


def _handle_response(response: httpx.Response) -> Any:
    """Unwrap a response envelope, raising on failure envelopes or HTTP errors."""

    try:
        body = response.json() if response.content else None
    except ValueError:
        body = None
    if not isinstance(body, dict) or "success" not in body:
        if response.is_error:
            raise CliError(f"Request failed ({response.status_code}): {response.text}")
        return body
    if not body.get("success") or response.is_error:
        raise CliError(f"Request failed ({response.status_code}): {body.get('error')}")
    return body.get("data")


def _segment(value: str) -> str:
    """Percent-encode a value used as a single URL path segment."""

    return quote(value, safe="")


def _parse_rgb(value: str) -> Dict[str, int]:
    parts = [part.strip() for part in value.split(",")]
    if len(parts) != 3:
        raise CliError("Colour must be given as R,G,B")
    try:
        r, g, b = (int(part) for part in parts)
    except ValueError as exc:
        raise CliError("Colour channels must be integers") from exc
    return {"r": r, "g": g, "b": b}


def _parse_capabilities(value: str) -> Any:
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError:
        return [item.strip() for item in value.split(",") if item.strip()]
    if not isinstance(parsed, list):
        raise CliError("Capabilities must be a list")
    return parsed


def _device_fields(args: argparse.Namespace) -> Dict[str, Any]:
    payload: Dict[str, Any] = {}
    for key, attr in (
        ("ip", "ip"),
        ("name", "name"),
        ("alias", "alias"),
        ("type", "device_type"),
        ("brand", "brand"),
        ("room", "room"),
        ("model", "model"),
        ("note", "note"),
    ):
        value = getattr(args, attr, None)
        if value is not None:
            payload[key] = value
    if getattr(args, "capabilities", None):
        payload["capabilities"] = _parse_capabilities(args.capabilities)
    return payload


def _cmd_health(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    data = _handle_response(client.get("/health"))
    _print_output(data, config.output)


def _cmd_stats(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    data = _handle_response(client.get("/api/registry/stats"))
    _print_output(data, config.output)


def _cmd_devices_list(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    params: Dict[str, str] = {}
    if args.room:
        params["room"] = args.room
    if args.device_type:
        params["type"] = args.device_type
    if args.brand:
        params["brand"] = args.brand
    if args.online is not None:
        params["online"] = "true" if args.online else "false"
    data = _handle_response(client.get("/api/devices", params=params))
    _print_output(data, config.output)


def _cmd_devices_show(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    data = _handle_response(client.get(f"/api/devices/{_segment(args.device_id)}"))
    _print_output(data, config.output)


def _cmd_devices_search(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    data = _handle_response(client.get(f"/api/devices/search/{_segment(args.query)}"))
    _print_output(data, config.output)


def _cmd_devices_add(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    payload = {"id": args.device_id, **_device_fields(args)}
    if args.probe:
        payload["probe"] = True
    data = _handle_response(client.post("/api/devices", json=payload))
    _print_output(data, config.output)


def _cmd_devices_update(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    payload = _device_fields(args)
    if not payload:
        raise CliError("No fields provided to update")
    data = _handle_response(client.patch(f"/api/devices/{_segment(args.device_id)}", json=payload))
    _print_output(data, config.output)


def _cmd_devices_remove(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    data = _handle_response(client.delete(f"/api/devices/{_segment(args.device_id)}"))
    _print_output(data, config.output)


def _cmd_control(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    if (args.hue is None) != (args.saturation is None):
        raise CliError("--hue and --saturation must be given together")
    payload: Dict[str, Any] = {"action": args.action}
    for key in ("brightness", "color_temp", "hue", "saturation"):
        value = getattr(args, key)
        if value is not None:
            payload[key] = value
    if args.color:
        payload["color"] = _parse_rgb(args.color)
    data = _handle_response(client.post(f"/api/devices/{_segment(args.device_id)}/control", json=payload))
    _print_output(data, config.output)


def _cmd_power(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    data = _handle_response(
        client.post(f"/api/devices/{_segment(args.device_id)}/power", json={"state": args.state})
    )
    _print_output(data, config.output)


def _cmd_brightness(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    data = _handle_response(
        client.post(f"/api/devices/{_segment(args.device_id)}/brightness", json={"level": args.level})
    )
    _print_output(data, config.output)


def _cmd_color(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    payload: Dict[str, Any] = {"r": args.r, "g": args.g, "b": args.b}
    if args.brightness is not None:
        payload["brightness"] = args.brightness
    data = _handle_response(client.post(f"/api/devices/{_segment(args.device_id)}/color", json=payload))
    _print_output(data, config.output)


def main(argv: Optional[Iterable[str]] = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(args=argv)

    try:
        config = _load_config(args)
        client = _build_client(config)
        with client:
            func: Callable[[ClientConfig, httpx.Client, argparse.Namespace], None] = args.func
            func(config, client, args)
    except CliError as exc:  # pragma: no cover - CLI feedback path
        sys.stderr.write(f"Error: {exc}\n")
        sys.exit(1)
    except httpx.RequestError as exc:  # pragma: no cover - CLI feedback path
        sys.stderr.write(f"HTTP request failed: {exc}\n")
        sys.exit(1)


if __name__ == "__main__":
    main()
