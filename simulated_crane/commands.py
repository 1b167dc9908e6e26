"""Direct method handling for the simulated crane."""

from __future__ import annotations

import json
import logging
import math
import re
from enum import Enum
from typing import Callable, Dict, Optional

from . import constants
from .core import (
    CommandResult,
    MethodTransport,
    RemoteCommand,
    SharedConfig,
    StatusCode,
)

LOGGER = logging.getLogger(__name__)

_INTEGER_PATTERN = re.compile(r"^[+-]?\d+$")
_MAX_INTERVAL_SECONDS = constants.MAX_TELEMETRY_INTERVAL_MS // 1000


class DirectMethod(str, Enum):
    """Direct methods the crane understands."""

    SET_TELEMETRY_INTERVAL = "SetTelemetryInterval"
    """Telemetry interval in whole seconds."""

    SET_HEIGHT_INCREMENTS = "SetHeightIncrements"
    """Percentage by which to slow (positive) or speed up (negative) the lift."""

    @classmethod
    def lookup(cls, name: str) -> Optional["DirectMethod"]:
        """Resolve a method name, ignoring case (``setHeightIncrements`` works)."""
        folded = name.strip().casefold()
        for member in cls:
            if member.value.casefold() == folded:
                return member
        return None


class CommandHandler:
    """Applies direct methods to the shared crane settings.

    Every branch is total: malformed payloads produce ``INVALID_PARAMETER``
    and unknown method names produce ``NOT_DEFINED``; nothing raises.
    """

    def __init__(self, settings: SharedConfig) -> None:
        self._settings = settings
        self._handlers: Dict[DirectMethod, Callable[[RemoteCommand], CommandResult]] = {
            DirectMethod.SET_TELEMETRY_INTERVAL: self._set_telemetry_interval,
            DirectMethod.SET_HEIGHT_INCREMENTS: self._set_height_increments,
        }
        self.invocations = 0

    def handle(self, command: RemoteCommand) -> CommandResult:
        self.invocations += 1
        method = DirectMethod.lookup(command.name)
        if method is None:
            LOGGER.warning("Direct method %s is not defined", command.name)
            return CommandResult(
                StatusCode.NOT_DEFINED, f"Not defined direct method {command.name}"
            )

        result = self._handlers[method](command)
        LOGGER.info(
            "Direct method %s (rid=%s) -> %d %s",
            command.name,
            command.request_id or "-",
            result.status,
            result.message,
        )
        return result

    async def __call__(self, command: RemoteCommand) -> CommandResult:
        return self.handle(command)

    def _set_telemetry_interval(self, command: RemoteCommand) -> CommandResult:
        text = _decode_payload(command.payload)
        seconds = _parse_seconds(text)
        if seconds is None:
            return _invalid_parameter(command, text)

        self._settings.telemetry_interval_millis = seconds * 1000
        LOGGER.info("Setting telemetry interval (seconds): %d", seconds)
        return CommandResult(StatusCode.SUCCESS, f"Executed direct method {command.name}")

    def _set_height_increments(self, command: RemoteCommand) -> CommandResult:
        text = _decode_payload(command.payload)
        percentage = _parse_percentage(text)
        if percentage is None:
            return _invalid_parameter(command, text)

        factor = 1 - percentage / 100
        try:
            previous, updated = self._settings.scale_height_increment(
                factor, limit=constants.MAX_HEIGHT_INCREMENT
            )
        except ValueError:
            return _invalid_parameter(command, text)
        LOGGER.info(
            "Slowing crane by %.2f%%: height increment %s -> %s",
            percentage,
            previous,
            updated,
        )
        return CommandResult(StatusCode.SUCCESS, f"Executed direct method {command.name}")


class CommandDispatcher:
    """Registers a ``CommandHandler`` with the hub's direct method channel."""

    def __init__(self, handler: CommandHandler, transport: MethodTransport) -> None:
        self._handler = handler
        self._transport = transport
        self._started = False

    async def start(self) -> None:
        if self._started:
            raise RuntimeError("CommandDispatcher already started")
        self._transport.set_method_handler(self._handler)
        await self._transport.enable_methods()
        self._started = True

    async def stop(self) -> None:
        if not self._started:
            return
        try:
            await self._transport.disable_methods()
        except Exception as exc:  # pragma: no cover - defensive cleanup
            LOGGER.debug("Direct method unsubscribe failed: %s", exc)
        finally:
            self._transport.set_method_handler(None)
            self._started = False


def _invalid_parameter(command: RemoteCommand, text: str) -> CommandResult:
    LOGGER.warning("Direct method %s rejected payload %r", command.name, text)
    return CommandResult(StatusCode.INVALID_PARAMETER, f"Invalid parameter {text}")


def _decode_payload(payload: bytes) -> str:
    """Decode a method payload, unwrapping a JSON string literal if present."""

    text = payload.decode("utf-8", errors="replace").strip()
    if len(text) >= 2 and text[0] == '"' and text[-1] == '"':
        try:
            unwrapped = json.loads(text)
        except json.JSONDecodeError:
            return text
        if isinstance(unwrapped, str):
            return unwrapped.strip()
    return text


def _parse_seconds(text: str) -> Optional[int]:
    if not _INTEGER_PATTERN.match(text):
        return None
    # Checked before int() so oversized payloads never reach the digit limit.
    if len(text.lstrip("+-").lstrip("0")) > len(str(_MAX_INTERVAL_SECONDS)):
        return None
    seconds = int(text)
    if not 0 <= seconds <= _MAX_INTERVAL_SECONDS:
        return None
    return seconds


def _parse_percentage(text: str) -> Optional[float]:
    try:
        value = float(text)
    except ValueError:
        return None
    if not math.isfinite(value):
        return None
    return value
