"""Core package for the smart-home LAN bridge - uniform control of vendor WiFi plugs and bulbs."""

__all__ = ["adapters", "api", "config", "control", "logging", "models", "registry"]
__version__ = "1.0.0"
