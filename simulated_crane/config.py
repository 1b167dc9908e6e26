"""Configuration loader for simulated-crane."""

from __future__ import annotations

import os
from configparser import ConfigParser
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from . import constants


@dataclass(slots=True)
class HubConfig:
    connection_string: Optional[str] = None
    port: int = constants.DEFAULT_MQTT_PORT
    keepalive: int = 60
    use_tls: bool = True
    sas_ttl_seconds: int = 86400
    connect_timeout_seconds: float = 30.0
    api_version: str = constants.DEFAULT_API_VERSION


@dataclass(slots=True)
class DeviceConfig:
    device_id: Optional[str] = None  # Reported in telemetry; the hub identity is unchanged
    latitude: float = constants.DEFAULT_LATITUDE
    longitude: float = constants.DEFAULT_LONGITUDE
    initial_height: float = constants.DEFAULT_INITIAL_HEIGHT
    load_weight: float = constants.DEFAULT_LOAD_WEIGHT
    lift_angle: float = constants.DEFAULT_LIFT_ANGLE
    initial_wind_speed: float = constants.DEFAULT_INITIAL_WIND_SPEED


@dataclass(slots=True)
class TelemetryConfig:
    interval_ms: int = constants.DEFAULT_TELEMETRY_INTERVAL_MS
    height_increment: float = constants.DEFAULT_HEIGHT_INCREMENT
    ack_timeout_seconds: float = 30.0  # 0 waits for the hub indefinitely
    send_attempts: int = 1
    retry_initial_seconds: float = 1.0
    retry_max_seconds: float = 10.0


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    path: Optional[Path] = None
    log_network: bool = False


@dataclass(slots=True)
class HealthConfig:
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 0


@dataclass(slots=True)
class CraneConfig:
    hub: HubConfig
    device: DeviceConfig
    telemetry: TelemetryConfig
    logging: LoggingConfig
    health: HealthConfig
    raw: ConfigParser
    path: Path


def load_config(path: Optional[Path] = None) -> CraneConfig:
    """Load configuration from disk, applying defaults where necessary."""

    config_path = path or constants.DEFAULT_CONFIG_PATH
    parser = ConfigParser(interpolation=None)
    parser.read_dict(
        {
            "hub": {
                "port": str(constants.DEFAULT_MQTT_PORT),
                "keepalive": "60",
                "use_tls": "true",
                "sas_ttl_seconds": "86400",
                "connect_timeout_seconds": "30.0",
                "api_version": constants.DEFAULT_API_VERSION,
            },
            "device": {
                "latitude": str(constants.DEFAULT_LATITUDE),
                "longitude": str(constants.DEFAULT_LONGITUDE),
                "initial_height": str(constants.DEFAULT_INITIAL_HEIGHT),
                "load_weight": str(constants.DEFAULT_LOAD_WEIGHT),
                "lift_angle": str(constants.DEFAULT_LIFT_ANGLE),
                "initial_wind_speed": str(constants.DEFAULT_INITIAL_WIND_SPEED),
            },
            "telemetry": {
                "interval_ms": str(constants.DEFAULT_TELEMETRY_INTERVAL_MS),
                "height_increment": str(constants.DEFAULT_HEIGHT_INCREMENT),
                "ack_timeout_seconds": "30.0",
                "send_attempts": "1",
                "retry_initial_seconds": "1.0",
                "retry_max_seconds": "10.0",
            },
            "logging": {
                "level": "INFO",
                "log_network": "false",
            },
            "health": {
                "enabled": "false",
                "host": "127.0.0.1",
                "port": "0",
            },
        }
    )

    if config_path.exists():
        parser.read(config_path)

    connection_string = parser.get("hub", "connection_string", fallback="").strip()
    if not connection_string:
        connection_string = os.environ.get(constants.CONNECTION_STRING_ENV, "").strip()

    hub = HubConfig(
        connection_string=connection_string or None,
        port=parser.getint("hub", "port", fallback=constants.DEFAULT_MQTT_PORT),
        keepalive=max(5, parser.getint("hub", "keepalive", fallback=60)),
        use_tls=parser.getboolean("hub", "use_tls", fallback=True),
        sas_ttl_seconds=max(
            60, parser.getint("hub", "sas_ttl_seconds", fallback=86400)
        ),
        connect_timeout_seconds=max(
            1.0, parser.getfloat("hub", "connect_timeout_seconds", fallback=30.0)
        ),
        api_version=parser.get(
            "hub", "api_version", fallback=constants.DEFAULT_API_VERSION
        ),
    )

    device_defaults = DeviceConfig()
    device = DeviceConfig(
        device_id=parser.get("device", "device_id", fallback="").strip() or None,
        latitude=parser.getfloat(
            "device", "latitude", fallback=device_defaults.latitude
        ),
        longitude=parser.getfloat(
            "device", "longitude", fallback=device_defaults.longitude
        ),
        initial_height=parser.getfloat(
            "device", "initial_height", fallback=device_defaults.initial_height
        ),
        load_weight=parser.getfloat(
            "device", "load_weight", fallback=device_defaults.load_weight
        ),
        lift_angle=parser.getfloat(
            "device", "lift_angle", fallback=device_defaults.lift_angle
        ),
        initial_wind_speed=parser.getfloat(
            "device",
            "initial_wind_speed",
            fallback=device_defaults.initial_wind_speed,
        ),
    )

    telemetry_defaults = TelemetryConfig()
    retry_initial = max(
        0.0,
        parser.getfloat(
            "telemetry",
            "retry_initial_seconds",
            fallback=telemetry_defaults.retry_initial_seconds,
        ),
    )
    telemetry = TelemetryConfig(
        interval_ms=max(
            0,
            parser.getint(
                "telemetry", "interval_ms", fallback=telemetry_defaults.interval_ms
            ),
        ),
        height_increment=parser.getfloat(
            "telemetry",
            "height_increment",
            fallback=telemetry_defaults.height_increment,
        ),
        ack_timeout_seconds=max(
            0.0,
            parser.getfloat(
                "telemetry",
                "ack_timeout_seconds",
                fallback=telemetry_defaults.ack_timeout_seconds,
            ),
        ),
        send_attempts=max(
            1,
            parser.getint(
                "telemetry", "send_attempts", fallback=telemetry_defaults.send_attempts
            ),
        ),
        retry_initial_seconds=retry_initial,
        retry_max_seconds=max(
            retry_initial,
            parser.getfloat(
                "telemetry",
                "retry_max_seconds",
                fallback=telemetry_defaults.retry_max_seconds,
            ),
        ),
    )

    log_path_value = parser.get("logging", "path", fallback="").strip()
    logging_config = LoggingConfig(
        level=parser.get("logging", "level", fallback="INFO"),
        path=Path(log_path_value).expanduser() if log_path_value else None,
        log_network=parser.getboolean("logging", "log_network", fallback=False),
    )

    health = HealthConfig(
        enabled=parser.getboolean("health", "enabled", fallback=False),
        host=parser.get("health", "host", fallback="127.0.0.1"),
        port=parser.getint("health", "port", fallback=0),
    )

    return CraneConfig(
        hub=hub,
        device=device,
        telemetry=telemetry,
        logging=logging_config,
        health=health,
        raw=parser,
        path=config_path,
    )
