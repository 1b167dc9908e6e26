"""Azure IoT Hub device protocol spoken over the MQTT adapter.

Topic layout used by the hub for a device identity:
    devices/{deviceId}/messages/events/{propertyBag}   device-to-cloud telemetry
    $iothub/methods/POST/{methodName}/?$rid={rid}      direct method request
    $iothub/methods/res/{status}/?$rid={rid}           direct method response
"""

from __future__ import annotations

import asyncio
import logging
from typing import Mapping, Optional
from urllib.parse import parse_qs, quote

from ..config import HubConfig
from ..core import CommandResult, MethodRequestHandler, RemoteCommand, StatusCode
from ..credentials import ConnectionString, build_mqtt_credentials
from .mqtt import MQTTClient

LOGGER = logging.getLogger(__name__)

METHOD_REQUEST_PREFIX = "$iothub/methods/POST/"
METHOD_SUBSCRIPTION = f"{METHOD_REQUEST_PREFIX}#"
# Content type and encoding system properties, already URL-encoded.
_JSON_SYSTEM_PROPERTIES = "$.ct=application%2Fjson&$.ce=utf-8"


def build_telemetry_topic(device_id: str, properties: Mapping[str, str]) -> str:
    bag = [
        f"{quote(str(key), safe='')}={quote(str(value), safe='')}"
        for key, value in properties.items()
    ]
    bag.append(_JSON_SYSTEM_PROPERTIES)
    return f"devices/{device_id}/messages/events/{'&'.join(bag)}"


def build_method_response_topic(status: int, request_id: str) -> str:
    return f"$iothub/methods/res/{int(status)}/?$rid={request_id}"


def parse_method_topic(topic: str) -> Optional[tuple[str, str]]:
    """Return ``(method_name, request_id)`` for a direct method topic."""

    if not topic.startswith(METHOD_REQUEST_PREFIX):
        return None

    remainder = topic[len(METHOD_REQUEST_PREFIX) :]
    method_name, _, query = remainder.partition("/")
    if not method_name or not query.startswith("?"):
        return None

    request_ids = parse_qs(query[1:]).get("$rid")
    if not request_ids or not request_ids[0]:
        return None

    return method_name, request_ids[0]


class IoTHubDeviceClient:
    """Device-side IoT Hub client: telemetry submission and direct methods."""

    def __init__(
        self,
        connection: ConnectionString,
        hub: Optional[HubConfig] = None,
        *,
        mqtt_client: Optional[MQTTClient] = None,
    ) -> None:
        self._connection = connection
        self._hub = hub or HubConfig()
        self._mqtt = mqtt_client or MQTTClient(
            connection.endpoint,
            self._hub.port,
            client_id=connection.device_id,
            keepalive=self._hub.keepalive,
            use_tls=self._hub.use_tls,
            credentials=self._credentials,
        )
        self._method_handler: Optional[MethodRequestHandler] = None
        self._methods_enabled = False

    @property
    def device_id(self) -> str:
        return self._connection.device_id

    @property
    def mqtt(self) -> MQTTClient:
        return self._mqtt

    def is_connected(self) -> bool:
        return self._mqtt.is_connected()

    def _credentials(self) -> tuple[str, str]:
        return build_mqtt_credentials(
            self._connection,
            api_version=self._hub.api_version,
            ttl_seconds=self._hub.sas_ttl_seconds,
        )

    async def connect(self) -> None:
        LOGGER.info(
            "Connecting device %s to %s",
            self._connection.device_id,
            self._connection.endpoint,
        )
        await self._mqtt.connect(timeout=self._hub.connect_timeout_seconds)

    async def disconnect(self) -> None:
        await self.disable_methods()
        await self._mqtt.disconnect()

    # ------------------------------------------------------------------
    # Telemetry
    # ------------------------------------------------------------------
    def send_telemetry(
        self, body: str, properties: Mapping[str, str]
    ) -> asyncio.Future[int]:
        topic = build_telemetry_topic(self._connection.device_id, properties)
        return self._mqtt.publish(topic, body.encode("utf-8"), qos=1)

    # ------------------------------------------------------------------
    # Direct methods
    # ------------------------------------------------------------------
    def set_method_handler(self, handler: Optional[MethodRequestHandler]) -> None:
        self._method_handler = handler

    async def enable_methods(self) -> None:
        if self._methods_enabled:
            return
        self._mqtt.set_message_handler(self._handle_message)
        self._mqtt.subscribe(METHOD_SUBSCRIPTION, qos=0)
        self._methods_enabled = True
        LOGGER.info("Subscribed to direct methods on %s", METHOD_SUBSCRIPTION)

    async def disable_methods(self) -> None:
        if not self._methods_enabled:
            return
        try:
            self._mqtt.unsubscribe(METHOD_SUBSCRIPTION)
        except Exception as exc:
            LOGGER.debug("Ignoring unsubscribe failure during shutdown: %s", exc)
        finally:
            self._mqtt.set_message_handler(None)
            self._methods_enabled = False

    async def _handle_message(self, topic: str, payload: bytes) -> None:
        parsed = parse_method_topic(topic)
        if parsed is None:
            LOGGER.debug("Ignoring message on unexpected topic %s", topic)
            return

        method_name, request_id = parsed
        handler = self._method_handler
        if handler is None:
            LOGGER.warning(
                "Direct method %s (rid=%s) arrived with no handler registered",
                method_name,
                request_id,
            )
            return

        command = RemoteCommand(
            name=method_name, payload=bytes(payload or b""), request_id=request_id
        )
        try:
            result = await handler(command)
        except Exception:
            LOGGER.exception("Direct method %s (rid=%s) failed", method_name, request_id)
            result = CommandResult(
                StatusCode.INTERNAL_ERROR, f"Failed direct method {method_name}"
            )
        self._respond(command, result)

    def _respond(self, command: RemoteCommand, result: CommandResult) -> None:
        topic = build_method_response_topic(result.status, command.request_id)
        try:
            ack = self._mqtt.publish(topic, result.to_json().encode("utf-8"), qos=1)
        except Exception as exc:
            LOGGER.warning(
                "Unable to send direct method response for %s: %s",
                command.name,
                exc,
            )
            return

        ack.add_done_callback(
            lambda future: _log_method_response_ack(command.name, future)
        )


def _log_method_response_ack(method_name: str, future: asyncio.Future[int]) -> None:
    if future.cancelled():
        LOGGER.info("Direct method %s response cancelled", method_name)
        return
    exc = future.exception()
    if exc is not None:
        LOGGER.warning(
            "Hub did not acknowledge direct method %s response: %s",
            method_name,
            exc,
        )
        return
    LOGGER.info(
        "Direct method %s response acknowledged with status %s",
        method_name,
        future.result(),
    )
