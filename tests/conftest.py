import asyncio
import base64
from configparser import ConfigParser
from pathlib import Path
from types import SimpleNamespace

import paho.mqtt.client as mqtt
import pytest

from simulated_crane.config import (
    CraneConfig,
    DeviceConfig,
    HealthConfig,
    HubConfig,
    LoggingConfig,
    TelemetryConfig,
)

DEVICE_KEY = base64.b64encode(b"crane-device-secret-key-32-bytes").decode("ascii")
CONNECTION_STRING = (
    "HostName=crane-hub.azure-devices.net;DeviceId=crane-01;"
    f"SharedAccessKey={DEVICE_KEY}"
)


class FakePahoClient:
    """Minimal fake paho-mqtt client speaking the VERSION2 callback API."""

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        events: dict,
        *,
        rc_connect: int = 0,
        rc_disconnect: int = 0,
        publish_rc: int = mqtt.MQTT_ERR_SUCCESS,
        auto_ack: bool = True,
        ack_inline: bool = False,
        ack_rc: int = 0,
    ):
        self._loop = loop
        self._events = events
        self._rc_connect = rc_connect
        self._rc_disconnect = rc_disconnect
        self._publish_rc = publish_rc
        self._auto_ack = auto_ack
        self._ack_inline = ack_inline
        self._ack_rc = ack_rc
        self._next_mid = 0

        self.on_connect = None
        self.on_disconnect = None
        self.on_message = None
        self.on_publish = None

    def _record(self, call: str) -> None:
        self._events.setdefault("calls", []).append(call)

    # paho interface -------------------------------------------------
    def enable_logger(self, logger):
        self._events.setdefault("logger_enabled", True)

    def username_pw_set(self, username, password=None):
        self._events["auth"] = (username, password)

    def tls_set(self, **kwargs):
        self._events["tls"] = kwargs

    def connect_async(self, host, port, keepalive):
        self._events["connect_args"] = (host, port, keepalive)
        self._record("connect")
        if self.on_connect:
            self._loop.call_soon(
                self.on_connect, self, None, None, self._rc_connect, None
            )

    def loop_start(self):
        self._events["loop_start"] = self._events.get("loop_start", 0) + 1

    def loop_stop(self):
        self._events["loop_stop"] = self._events.get("loop_stop", 0) + 1

    def disconnect(self):
        self._events["disconnect_called"] = True
        self._record("disconnect")
        if self.on_disconnect:
            self._loop.call_soon(
                self.on_disconnect, self, None, None, self._rc_disconnect, None
            )

    def publish(self, topic, payload, qos=0, retain=False):
        self._next_mid += 1
        mid = self._next_mid
        self._events.setdefault("published", []).append((topic, payload, qos, retain))
        self._record("publish")
        if self._publish_rc == mqtt.MQTT_ERR_SUCCESS and self.on_publish:
            if self._ack_inline:
                self.on_publish(self, None, mid, self._ack_rc, None)
            elif self._auto_ack:
                self._loop.call_soon(self.on_publish, self, None, mid, self._ack_rc, None)
        return SimpleNamespace(rc=self._publish_rc, mid=mid)

    def subscribe(self, topic, qos=0):
        self._events.setdefault("subscribed", []).append((topic, qos))
        self._record("subscribe")
        return mqtt.MQTT_ERR_SUCCESS, 1

    def unsubscribe(self, topic):
        self._events.setdefault("unsubscribed", []).append(topic)
        self._record("unsubscribe")
        return mqtt.MQTT_ERR_SUCCESS, 2


@pytest.fixture
def fake_paho(monkeypatch):
    """Replace ``paho.mqtt.client.Client`` inside the adapter with ``FakePahoClient``.

    Call the fixture with fake options; it returns the dict the fake records into.
    """

    def install(**options) -> dict:
        events: dict = {}

        def factory(*args, **kwargs):
            events["client_args"] = args
            events["client_kwargs"] = kwargs
            return FakePahoClient(asyncio.get_running_loop(), events, **options)

        monkeypatch.setattr("simulated_crane.adapters.mqtt.mqtt.Client", factory)
        return events

    return install


@pytest.fixture
def connection_string() -> str:
    return CONNECTION_STRING


@pytest.fixture
def crane_config():
    """Build a CraneConfig without touching the filesystem."""

    def factory(**telemetry_overrides) -> CraneConfig:
        return CraneConfig(
            hub=HubConfig(connection_string=CONNECTION_STRING, use_tls=False),
            device=DeviceConfig(),
            telemetry=TelemetryConfig(**telemetry_overrides),
            logging=LoggingConfig(),
            health=HealthConfig(),
            raw=ConfigParser(),
            path=Path("simulated-crane.cfg"),
        )

    return factory
