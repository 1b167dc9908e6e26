"""Domain models for telemetry and direct methods."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from enum import IntEnum
from typing import Any, Dict

from .. import constants

TEMPERATURE_ALERT_THRESHOLD = 30.0


@dataclass(slots=True, frozen=True)
class TelemetrySample:
    device_id: str
    temperature: float
    humidity: float
    height: float
    latitude: float
    longitude: float
    wind_speed: float
    load_weight: float
    lift_angle: float
    device_time: datetime

    @property
    def temperature_alert(self) -> bool:
        return self.temperature > TEMPERATURE_ALERT_THRESHOLD

    def as_dict(self) -> Dict[str, Any]:
        return {
            "device_id": self.device_id,
            "temperature": self.temperature,
            "humidity": self.humidity,
            "height": self.height,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "wind_speed": self.wind_speed,
            "load_weight": self.load_weight,
            "lift_angle": self.lift_angle,
            "device_time": self.device_time.strftime(constants.DEVICE_TIME_FORMAT),
        }

    def to_json(self) -> str:
        return json.dumps(self.as_dict())

    def properties(self) -> Dict[str, str]:
        """Application properties carried outside the message body."""
        return {"temperatureAlert": "true" if self.temperature_alert else "false"}


class StatusCode(IntEnum):
    SUCCESS = 200
    INVALID_PARAMETER = 400
    NOT_DEFINED = 404
    INTERNAL_ERROR = 500


@dataclass(slots=True, frozen=True)
class RemoteCommand:
    name: str
    payload: bytes
    request_id: str = ""


@dataclass(slots=True, frozen=True)
class CommandResult:
    status: StatusCode
    message: str

    @property
    def succeeded(self) -> bool:
        return self.status == StatusCode.SUCCESS

    def to_json(self) -> str:
        return json.dumps({"message": self.message})
