"""Protocol definitions for the hub transport seen by the crane core."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Mapping, Optional, Protocol

from .models import CommandResult, RemoteCommand

MethodRequestHandler = Callable[[RemoteCommand], Awaitable[CommandResult]]


class TelemetrySender(Protocol):
    """Capability to submit a telemetry message and observe its delivery."""

    def send_telemetry(
        self, body: str, properties: Mapping[str, str]
    ) -> asyncio.Future[int]:
        """Submit ``body`` and return a future resolved on acknowledgement.

        The future fails when the transport reports a terminal delivery error.
        """
        ...


class MethodTransport(Protocol):
    """Capability to receive direct method requests and answer them."""

    def set_method_handler(self, handler: Optional[MethodRequestHandler]) -> None:
        ...

    async def enable_methods(self) -> None:
        ...

    async def disable_methods(self) -> None:
        ...
