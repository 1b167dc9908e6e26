"""Constants used across the simulated-crane package."""

from __future__ import annotations

from pathlib import Path

APP_NAME = "simulated-crane"
DEFAULT_CONFIG_FILENAME = f"{APP_NAME}.cfg"
DEFAULT_CONFIG_PATH = Path.home() / f".{APP_NAME}" / DEFAULT_CONFIG_FILENAME

CONNECTION_STRING_ENV = "IOTHUB_DEVICE_CONNECTION_STRING"

DEFAULT_MQTT_PORT = 8883
DEFAULT_API_VERSION = "2021-04-12"

DEFAULT_LATITUDE = -37.816368
DEFAULT_LONGITUDE = 144.967005
DEFAULT_INITIAL_HEIGHT = 13.0
DEFAULT_LOAD_WEIGHT = 1.5
DEFAULT_LIFT_ANGLE = 2.1042
DEFAULT_INITIAL_WIND_SPEED = 2.0

DEFAULT_TELEMETRY_INTERVAL_MS = 1000
DEFAULT_HEIGHT_INCREMENT = 0.5

# Direct method limits. The interval must fit a signed 32-bit millisecond count.
MAX_TELEMETRY_INTERVAL_MS = 2**31 - 1
MAX_HEIGHT_INCREMENT = 1_000_000.0

DEVICE_TIME_FORMAT = "%Y/%m/%d %H:%M:%S"
