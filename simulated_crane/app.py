"""Main application entry-point for simulated-crane."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
import signal
from enum import Enum
from typing import Awaitable, Optional, Set

from .adapters import IoTHubDeviceClient, MQTTConnectionError
from .commands import CommandDispatcher, CommandHandler
from .config import CraneConfig, load_config
from .core import SharedConfig
from .credentials import ConnectionString, ConnectionStringError
from .health import HealthReporter, HealthServer
from .logging import configure_logging
from .telemetry import CraneSimulator, TelemetryLoop, TickOutcome

LOGGER = logging.getLogger(__name__)


class DeviceState(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


class SimulatedCraneApp:
    """Coordinates device startup and shutdown.

    Startup connects to the hub (fatal on failure), registers the direct
    method handler and starts the telemetry loop. Shutdown runs in the
    opposite order: telemetry loop, direct methods, hub connection.

    The hub client can be injected for testing.
    """

    def __init__(
        self,
        config: Optional[CraneConfig] = None,
        *,
        hub_client: Optional[IoTHubDeviceClient] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._config = config or load_config()
        telemetry = self._config.telemetry
        self._settings = SharedConfig(
            telemetry_interval_millis=telemetry.interval_ms,
            height_increment=telemetry.height_increment,
        )
        self._command_handler = CommandHandler(self._settings)
        self._hub_client = hub_client
        self._rng = rng
        self._dispatcher: Optional[CommandDispatcher] = None
        self._telemetry_loop: Optional[TelemetryLoop] = None
        self._health = HealthReporter()
        self._health_server: Optional[HealthServer] = None
        self._shutdown_event: Optional[asyncio.Event] = None
        self._background_tasks: Set[asyncio.Task[None]] = set()
        self._state = DeviceState.STOPPED

    @property
    def settings(self) -> SharedConfig:
        return self._settings

    @property
    def state(self) -> DeviceState:
        return self._state

    @property
    def telemetry_loop(self) -> Optional[TelemetryLoop]:
        return self._telemetry_loop

    @property
    def health(self) -> HealthReporter:
        return self._health

    async def run(self) -> None:
        """Run until ``request_shutdown`` is called or the task is cancelled."""

        self._shutdown_event = asyncio.Event()
        LOGGER.info("simulated-crane starting with config: %s", self._config.path)

        try:
            await self._start_services()
            await self._idle_loop()
        except asyncio.CancelledError:
            LOGGER.info("simulated-crane received shutdown signal")
            raise
        finally:
            await self._stop_services()

    def request_shutdown(self) -> None:
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    @classmethod
    def start(cls, config: Optional[CraneConfig] = None) -> int:
        instance = cls(config=config)
        configure_logging(
            instance._config.logging.level,
            log_path=instance._config.logging.path,
            log_network=instance._config.logging.log_network,
        )
        try:
            asyncio.run(instance._run_with_signals())
        except KeyboardInterrupt:
            LOGGER.info("simulated-crane received shutdown signal")
        except (ConnectionStringError, MQTTConnectionError) as exc:
            LOGGER.error("simulated-crane cannot start: %s", exc)
            return 1
        return 0

    async def _run_with_signals(self) -> None:
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError, RuntimeError):
                loop.add_signal_handler(signum, self.request_shutdown)
        await self.run()

    async def _transition_state(self, state: DeviceState) -> None:
        if state == self._state:
            return
        previous = self._state
        self._state = state
        LOGGER.info("Device state transition %s -> %s", previous.value, state.value)
        await self._health.set_device_state(
            state.value, healthy=state == DeviceState.RUNNING
        )

    async def _idle_loop(self) -> None:
        assert self._shutdown_event is not None
        telemetry = self._telemetry_loop
        shutdown = asyncio.create_task(self._shutdown_event.wait())
        waiters = {shutdown}
        if telemetry is not None:
            waiters.add(asyncio.create_task(telemetry.wait_stopped()))

        try:
            done, _ = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()

        for waiter in done:
            if waiter is not shutdown and not waiter.cancelled():
                exc = waiter.exception()
                if exc is not None:
                    LOGGER.error("Telemetry loop terminated unexpectedly", exc_info=exc)

    async def _start_services(self) -> None:
        await self._transition_state(DeviceState.STARTING)
        await self._health.update("hub", False, "connecting")
        await self._health.update("commands", False, "awaiting hub connection")
        await self._health.update("telemetry", False, "awaiting hub connection")

        await self._start_health_server()

        hub = self._hub_client or self._build_hub_client()
        self._hub_client = hub
        hub.mqtt.register_disconnect_handler(self._on_hub_disconnect)

        await hub.connect()
        await self._health.update("hub", True, None)

        self._dispatcher = CommandDispatcher(self._command_handler, hub)
        await self._dispatcher.start()
        await self._health.update("commands", True, None)

        simulator = CraneSimulator(
            self._config.device.device_id or hub.device_id,
            self._config.device,
            rng=self._rng,
        )
        telemetry = TelemetryLoop(
            self._settings, hub, simulator, self._config.telemetry
        )
        telemetry.add_listener(self._on_telemetry_tick)
        self._health.register_metrics(
            "telemetry",
            lambda: {
                "sent": telemetry.sent_count,
                "failed": telemetry.failed_count,
                "height": simulator.height,
                **self._settings.snapshot(),
            },
        )
        self._telemetry_loop = telemetry
        await telemetry.start()

        await self._transition_state(DeviceState.RUNNING)

    async def _stop_services(self) -> None:
        await self._transition_state(DeviceState.STOPPING)

        if self._telemetry_loop is not None:
            await self._telemetry_loop.stop()
            await self._health.update("telemetry", False, "stopped")

        if self._dispatcher is not None:
            await self._dispatcher.stop()
            self._dispatcher = None
            await self._health.update("commands", False, "stopped")

        if self._hub_client is not None:
            try:
                await self._hub_client.disconnect()
            except MQTTConnectionError as exc:
                LOGGER.warning("Hub disconnect failed: %s", exc)
            await self._health.update("hub", False, "shutdown")

        if self._health_server is not None:
            await self._health_server.stop()
            self._health_server = None

        if self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)

        await self._transition_state(DeviceState.STOPPED)

    def _build_hub_client(self) -> IoTHubDeviceClient:
        connection_string = self._config.hub.connection_string
        if not connection_string:
            raise ConnectionStringError(
                "No device connection string configured; set [hub] connection_string "
                "or IOTHUB_DEVICE_CONNECTION_STRING"
            )
        connection = ConnectionString.parse(connection_string)
        return IoTHubDeviceClient(connection, self._config.hub)

    async def _start_health_server(self) -> None:
        health = self._config.health
        if not health.enabled or health.port <= 0:
            return

        server = HealthServer(self._health, health.host, health.port)
        try:
            await server.start()
        except OSError as exc:
            LOGGER.error("Failed to start health endpoint: %s", exc)
            await self._health.update("health-endpoint", False, str(exc))
        else:
            self._health_server = server
            await self._health.update("health-endpoint", True, None)

    def _on_hub_disconnect(self, rc: int) -> None:
        if self._state == DeviceState.RUNNING:
            LOGGER.warning("Hub connection lost (rc=%s)", rc)
        self._spawn(self._health.update("hub", False, f"disconnected rc={rc}"))

    def _on_telemetry_tick(self, outcome: TickOutcome) -> None:
        detail = None if outcome.delivered else outcome.error
        self._spawn(self._health.update("telemetry", outcome.delivered, detail))

    def _spawn(self, awaitable: Awaitable[None]) -> None:
        task = asyncio.ensure_future(awaitable)
        self._background_tasks.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task[None]) -> None:
        self._background_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            LOGGER.error("Background task failed", exc_info=task.exception())
