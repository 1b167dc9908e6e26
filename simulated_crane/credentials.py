"""Device connection string parsing and shared access signature tokens."""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional
from urllib.parse import quote

LOGGER = logging.getLogger(__name__)


class ConnectionStringError(ValueError):
    """Raised when a device connection string is malformed or incomplete."""


@dataclass(slots=True, frozen=True)
class ConnectionString:
    """Parsed IoT Hub device connection string."""

    host_name: str
    device_id: str
    shared_access_key: str
    gateway_host_name: Optional[str] = None

    @classmethod
    def parse(cls, value: str) -> "ConnectionString":
        """Parse ``HostName=...;DeviceId=...;SharedAccessKey=...``."""

        if not value or not value.strip():
            raise ConnectionStringError("Connection string is empty")

        parts: dict[str, str] = {}
        for segment in value.strip().split(";"):
            if not segment:
                continue
            key, sep, item = segment.partition("=")
            if not sep:
                raise ConnectionStringError(
                    f"Connection string segment {key!r} is missing '='"
                )
            # Base64 keys legitimately end with '=' padding.
            parts[key.strip()] = item.strip()

        if "ModuleId" in parts:
            raise ConnectionStringError("Module identities are not supported")
        if "x509" in parts:
            raise ConnectionStringError("X.509 authentication is not supported")

        missing = [
            name
            for name in ("HostName", "DeviceId", "SharedAccessKey")
            if not parts.get(name)
        ]
        if missing:
            raise ConnectionStringError(
                f"Connection string is missing {', '.join(missing)}"
            )

        try:
            base64.b64decode(parts["SharedAccessKey"], validate=True)
        except ValueError as exc:
            raise ConnectionStringError("SharedAccessKey is not valid base64") from exc

        return cls(
            host_name=parts["HostName"],
            device_id=parts["DeviceId"],
            shared_access_key=parts["SharedAccessKey"],
            gateway_host_name=parts.get("GatewayHostName") or None,
        )

    @property
    def endpoint(self) -> str:
        """Host the MQTT connection is opened against."""
        return self.gateway_host_name or self.host_name

    @property
    def resource_uri(self) -> str:
        return f"{self.host_name}/devices/{self.device_id}"

    def masked(self) -> str:
        return (
            f"HostName={self.host_name};DeviceId={self.device_id};"
            "SharedAccessKey=****"
        )


def generate_sas_token(
    resource_uri: str,
    key: str,
    ttl_seconds: int,
    *,
    clock: Callable[[], float] = time.time,
) -> str:
    """Build a ``SharedAccessSignature`` token valid for ``ttl_seconds``.

    The signature is the base64 HMAC-SHA256 of ``"{url-encoded uri}\\n{expiry}"``
    keyed with the decoded shared access key.
    """

    expiry = int(clock()) + int(ttl_seconds)
    encoded_uri = quote(resource_uri, safe="")
    to_sign = f"{encoded_uri}\n{expiry}".encode("utf-8")
    digest = hmac.new(base64.b64decode(key), to_sign, hashlib.sha256).digest()
    signature = base64.b64encode(digest).decode("ascii")

    query = f"sr={encoded_uri}&sig={quote(signature, safe='')}&se={expiry}"
    LOGGER.debug("Generated SAS token for %s expiring at %d", resource_uri, expiry)
    return f"SharedAccessSignature {query}"


def build_mqtt_credentials(
    connection: ConnectionString, *, api_version: str, ttl_seconds: int
) -> tuple[str, str]:
    """Return the ``(username, password)`` pair the hub expects over MQTT."""

    username = f"{connection.host_name}/{connection.device_id}/?api-version={api_version}"
    password = generate_sas_token(
        connection.resource_uri, connection.shared_access_key, ttl_seconds
    )
    return username, password
