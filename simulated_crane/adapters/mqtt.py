"""MQTT adapter encapsulating paho-mqtt client usage."""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import ssl
import threading
from typing import Awaitable, Callable, Dict, List, Optional, Set

import paho.mqtt.client as mqtt

LOGGER = logging.getLogger(__name__)

MessageHandler = Callable[[str, bytes], Awaitable[None] | None]
CredentialsProvider = Callable[[], tuple[str, str]]


class MQTTConnectionError(RuntimeError):
    """Raised when the MQTT client fails to connect or deliver a message."""


def _reason_value(reason_code) -> int:
    value = getattr(reason_code, "value", reason_code)
    try:
        return int(value)
    except (TypeError, ValueError):
        return -1


class MQTTClient:
    """Async-friendly wrapper over the threaded paho-mqtt client.

    ``publish`` hands back an ``asyncio.Future`` that resolves with the broker
    reason code once the PUBACK arrives, or fails with ``MQTTConnectionError``
    when the broker rejects the message or the connection drops first.
    """

    def __init__(
        self,
        host: str,
        port: int,
        *,
        client_id: str,
        keepalive: int = 60,
        use_tls: bool = True,
        credentials: Optional[CredentialsProvider] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.client_id = client_id
        self.keepalive = keepalive
        self.use_tls = use_tls
        self._credentials = credentials

        self._client: Optional[mqtt.Client] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._connected_event: Optional[asyncio.Event] = None
        self._disconnect_event: Optional[asyncio.Event] = None
        self._message_handler: Optional[MessageHandler] = None
        self._last_connect_rc: Optional[int] = None
        self._connected: bool = False
        self._disconnect_handlers: List[Callable[[int], None]] = []

        # Guards the mid bookkeeping shared with the paho network thread.
        self._ack_lock = threading.RLock()
        self._pending_acks: Dict[int, asyncio.Future[int]] = {}
        self._early_acks: Dict[int, int] = {}
        self._abandoned_mids: Set[int] = set()

    async def connect(self, timeout: float = 30.0) -> None:
        """Connect to the MQTT broker and wait for acknowledgement."""

        self._loop = asyncio.get_running_loop()
        self._connected_event = asyncio.Event()
        self._disconnect_event = asyncio.Event()
        self._last_connect_rc = None

        client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=self.client_id,
            protocol=mqtt.MQTTv311,
        )
        client.enable_logger(LOGGER)

        if self._credentials is not None:
            username, password = self._credentials()
            client.username_pw_set(username, password)

        if self.use_tls:
            client.tls_set(cert_reqs=ssl.CERT_REQUIRED)

        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        client.on_publish = self._on_publish

        self._client = client

        LOGGER.info("Connecting to MQTT broker %s:%s", self.host, self.port)

        try:
            client.connect_async(self.host, self.port, self.keepalive)
        except (OSError, ValueError) as exc:
            self._client = None
            raise MQTTConnectionError(f"Unable to start MQTT connection: {exc}") from exc
        client.loop_start()

        try:
            await asyncio.wait_for(self._connected_event.wait(), timeout=timeout)
            if self._last_connect_rc is None or self._last_connect_rc != 0:
                raise MQTTConnectionError(
                    f"MQTT broker rejected connection (rc={self._last_connect_rc})"
                )
        except asyncio.TimeoutError as exc:
            client.loop_stop()
            self._client = None
            raise MQTTConnectionError("Timed out connecting to MQTT broker") from exc
        except MQTTConnectionError:
            client.loop_stop()
            self._client = None
            raise

    async def disconnect(self, timeout: float = 5.0) -> None:
        """Gracefully disconnect from the broker."""

        if not self._client:
            return

        assert self._disconnect_event is not None

        self._client.disconnect()

        try:
            await asyncio.wait_for(self._disconnect_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            LOGGER.warning("Timed out waiting for MQTT disconnect acknowledgement")
        finally:
            self._client.loop_stop()
            self._client = None
            self._connected = False
            self._fail_pending("MQTT client disconnected")

    def publish(
        self, topic: str, payload: bytes, qos: int = 1, retain: bool = False
    ) -> asyncio.Future[int]:
        """Queue a message and return a future for its broker acknowledgement."""

        if not self._client or not self._loop:
            raise MQTTConnectionError("MQTT client not connected")

        future: asyncio.Future[int] = self._loop.create_future()
        with self._ack_lock:
            info = self._client.publish(topic, payload, qos=qos, retain=retain)
            if info.rc != mqtt.MQTT_ERR_SUCCESS:
                raise MQTTConnectionError(f"Publish failed with rc={info.rc}")
            early = self._early_acks.pop(info.mid, None)
            if early is None:
                self._pending_acks[info.mid] = future
        if early is not None:
            self._settle(future, early)
        return future

    def subscribe(self, topic: str, qos: int = 1) -> None:
        if not self._client:
            raise MQTTConnectionError("MQTT client not connected")
        result, _ = self._client.subscribe(topic, qos=qos)
        if result != mqtt.MQTT_ERR_SUCCESS:
            raise MQTTConnectionError(f"Subscribe failed with rc={result}")

    def unsubscribe(self, topic: str) -> None:
        if not self._client:
            raise MQTTConnectionError("MQTT client not connected")
        result, _ = self._client.unsubscribe(topic)
        if result != mqtt.MQTT_ERR_SUCCESS:
            raise MQTTConnectionError(f"Unsubscribe failed with rc={result}")

    def set_message_handler(self, handler: Optional[MessageHandler]) -> None:
        self._message_handler = handler

    def register_disconnect_handler(self, handler: Callable[[int], None]) -> None:
        self._disconnect_handlers.append(handler)

    def is_connected(self) -> bool:
        return self._connected

    @property
    def pending_ack_count(self) -> int:
        with self._ack_lock:
            return len(self._pending_acks)

    def _settle(self, future: asyncio.Future[int], rc: int) -> None:
        if future.done():
            return
        if rc == 0:
            future.set_result(rc)
        else:
            future.set_exception(
                MQTTConnectionError(f"Broker rejected publish (rc={rc})")
            )

    def _fail_pending(self, reason: str) -> None:
        with self._ack_lock:
            pending = list(self._pending_acks.items())
            self._abandoned_mids.update(mid for mid, _ in pending)
            self._pending_acks.clear()
            self._early_acks.clear()

        for _, future in pending:
            if not future.done():
                future.set_exception(MQTTConnectionError(reason))

    # ------------------------------------------------------------------
    # Internal callbacks bridging the threaded paho callbacks into asyncio
    # ------------------------------------------------------------------
    def _on_connect(self, client, userdata, flags, reason_code, properties=None) -> None:
        rc = _reason_value(reason_code)
        self._last_connect_rc = rc
        loop = self._loop
        if rc == 0:
            LOGGER.info("Connected to MQTT broker")
            self._connected = True
        else:
            LOGGER.error("MQTT connection failed with rc=%s", rc)
            self._connected = False
        if self._connected_event and loop:
            loop.call_soon_threadsafe(self._connected_event.set)

    def _on_disconnect(
        self, client, userdata, flags, reason_code, properties=None
    ) -> None:
        rc = _reason_value(reason_code)
        LOGGER.info("Disconnected from MQTT broker (rc=%s)", rc)
        self._connected = False
        loop = self._loop
        if not loop:
            return
        if self._disconnect_event:
            loop.call_soon_threadsafe(self._disconnect_event.set)
        loop.call_soon_threadsafe(self._fail_pending, f"Connection lost (rc={rc})")
        for handler in self._disconnect_handlers:
            loop.call_soon_threadsafe(handler, rc)

    def _on_publish(self, client, userdata, mid: int, reason_code, properties=None) -> None:
        rc = _reason_value(reason_code)
        with self._ack_lock:
            if mid in self._abandoned_mids:
                self._abandoned_mids.discard(mid)
                return
            future = self._pending_acks.pop(mid, None)
            if future is None:
                self._early_acks[mid] = rc
                return
        loop = self._loop
        if loop is not None:
            loop.call_soon_threadsafe(self._settle, future, rc)

    def _on_message(self, client, userdata, message: mqtt.MQTTMessage) -> None:
        handler = self._message_handler
        loop = self._loop
        if not handler or not loop:
            return

        try:
            result = handler(message.topic, message.payload)
            if asyncio.iscoroutine(result):
                future = asyncio.run_coroutine_threadsafe(result, loop)
                future.add_done_callback(_log_handler_failure)
        except Exception:  # pragma: no cover - defensive logging
            LOGGER.exception("MQTT message handler raised an exception")


def _log_handler_failure(future: concurrent.futures.Future[None]) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        LOGGER.error("MQTT message handler failed", exc_info=exc)
