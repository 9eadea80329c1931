"""Constants used across the fleetlink package."""

from __future__ import annotations

from pathlib import Path

APP_NAME = "fleetlink"
DEFAULT_CONFIG_FILENAME = f"{APP_NAME}.cfg"
DEFAULT_CONFIG_PATH = Path.home() / ".config" / APP_NAME / DEFAULT_CONFIG_FILENAME

DEFAULT_HISTORY_PATH = Path.home() / ".local" / "state" / APP_NAME / "history.jsonl"

DEFAULT_TELEMETRY_URL = "ws://localhost:8086/api/realtime/ws"
DEFAULT_REGISTRY_URL = "http://localhost:8086"

DEFAULT_COMMAND_HOST = "127.0.0.1"
# Per-device command endpoints listen on base port + numeric device id.
DEFAULT_COMMAND_BASE_PORT = 2333

DEFAULT_SENSOR_BROKER_HOST = "localhost"
DEFAULT_SENSOR_BROKER_PORT = 1883
