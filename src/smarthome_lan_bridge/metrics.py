"""Prometheus metrics helpers."""

from __future__ import annotations

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

_REGISTRY = CollectorRegistry()

REQUEST_LATENCY = Histogram(
    "smarthome_api_request_duration_seconds",
    "Time spent processing API requests",
    ["method", "path", "status"],
    registry=_REGISTRY,
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10],
)
REQUEST_COUNT = Counter(
    "smarthome_api_requests_total",
    "HTTP requests processed by the API",
    ["method", "path", "status"],
    registry=_REGISTRY,
)
ADAPTER_COMMANDS = Counter(
    "smarthome_adapter_commands_total",
    "Protocol exchanges performed by device adapters",
    ["brand", "command", "result"],
    registry=_REGISTRY,
)
ADAPTER_COMMAND_DURATION = Histogram(
    "smarthome_adapter_command_duration_seconds",
    "Time spent in one device protocol exchange",
    ["brand", "result"],
    registry=_REGISTRY,
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5],
)
REGISTRY_PERSISTS = Counter(
    "smarthome_registry_persists_total",
    "Registry snapshot writes",
    ["result"],
    registry=_REGISTRY,
)
REGISTRY_DEVICES = Gauge(
    "smarthome_registry_devices",
    "Devices in the registry by observed status",
    ["status"],
    registry=_REGISTRY,
)


def get_registry() -> CollectorRegistry:
    """Return the registry holding the bridge metrics."""

    return _REGISTRY


def latest_metrics() -> bytes:
    """Render the latest metrics payload for scraping."""

    return generate_latest(_REGISTRY)


def observe_request(method: str, path: str, status: int, duration_seconds: float) -> None:
    """Record API request metrics."""

    status_str = str(status)
    REQUEST_COUNT.labels(method=method, path=path, status=status_str).inc()
    REQUEST_LATENCY.labels(method=method, path=path, status=status_str).observe(duration_seconds)


def record_adapter_command(brand: str, command: str, result: str, duration_seconds: float) -> None:
    """Record the outcome and duration of one protocol exchange."""

    ADAPTER_COMMANDS.labels(brand=brand, command=command, result=result).inc()
    ADAPTER_COMMAND_DURATION.labels(brand=brand, result=result).observe(duration_seconds)


def record_persist_result(result: str) -> None:
    """Record whether a registry snapshot write succeeded."""

    REGISTRY_PERSISTS.labels(result=result).inc()


def set_device_counts(online: int, offline: int) -> None:
    REGISTRY_DEVICES.labels(status="online").set(online)
    REGISTRY_DEVICES.labels(status="offline").set(offline)


METRICS_CONTENT_TYPE = CONTENT_TYPE_LATEST
