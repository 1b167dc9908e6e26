"""Adapter modules for external integrations."""

from .iothub import IoTHubDeviceClient
from .mqtt import MQTTClient, MQTTConnectionError

__all__ = [
    "IoTHubDeviceClient",
    "MQTTClient",
    "MQTTConnectionError",
]
