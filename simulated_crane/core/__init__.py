"""Core primitives shared by the telemetry loop and command handling."""

from .models import (
    CommandResult,
    RemoteCommand,
    StatusCode,
    TelemetrySample,
)
from .protocols import MethodRequestHandler, MethodTransport, TelemetrySender
from .shared_config import SharedConfig, round3

__all__ = [
    "CommandResult",
    "MethodRequestHandler",
    "MethodTransport",
    "RemoteCommand",
    "SharedConfig",
    "StatusCode",
    "TelemetrySample",
    "TelemetrySender",
    "round3",
]
