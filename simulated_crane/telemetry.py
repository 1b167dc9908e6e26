"""Crane telemetry simulation and the send loop."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional

from . import constants
from .config import DeviceConfig, TelemetryConfig
from .core import SharedConfig, TelemetrySample, TelemetrySender, round3

LOGGER = logging.getLogger(__name__)

MIN_TEMPERATURE = 2.0
TEMPERATURE_SPREAD = 2.0
MIN_HUMIDITY = 60.0
HUMIDITY_SPREAD = 20.0
WIND_SPEED_DRIFT = 0.1


class TelemetryDeliveryError(RuntimeError):
    """Raised when a telemetry sample could not be delivered to the hub."""


class LoopState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


@dataclass(slots=True)
class TickOutcome:
    sample: TelemetrySample
    delivered: bool
    attempts: int
    error: Optional[str] = None


TickListener = Callable[[TickOutcome], None]


class CraneSimulator:
    """Produces successive crane readings.

    Height climbs by the supplied increment each reading; humidity and
    temperature are redrawn every reading while wind speed drifts upward.
    """

    def __init__(
        self,
        device_id: str,
        device: Optional[DeviceConfig] = None,
        *,
        rng: Optional[random.Random] = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        device = device or DeviceConfig()
        self.device_id = device_id
        self.latitude = device.latitude
        self.longitude = device.longitude
        self.load_weight = device.load_weight
        self.lift_angle = device.lift_angle
        self._height = device.initial_height
        self._wind_speed = device.initial_wind_speed
        self._rng = rng or random.Random()
        self._clock = clock

    @property
    def height(self) -> float:
        return self._height

    @property
    def wind_speed(self) -> float:
        return self._wind_speed

    def next_sample(self, height_increment: float) -> TelemetrySample:
        humidity = MIN_HUMIDITY + self._rng.random() * HUMIDITY_SPREAD
        self._height = round3(self._height + height_increment)
        self._wind_speed = self._wind_speed + self._rng.random() * WIND_SPEED_DRIFT
        temperature = MIN_TEMPERATURE + self._rng.random() * TEMPERATURE_SPREAD

        return TelemetrySample(
            device_id=self.device_id,
            temperature=temperature,
            humidity=humidity,
            height=self._height,
            latitude=self.latitude,
            longitude=self.longitude,
            wind_speed=self._wind_speed,
            load_weight=self.load_weight,
            lift_angle=self.lift_angle,
            device_time=self._clock(),
        )


class TelemetryLoop:
    """Sends one crane sample per interval, never more than one in flight.

    Each tick reads the height increment from ``SharedConfig``, builds a
    sample, submits it and awaits that submission's acknowledgement before
    sleeping for the interval currently held in ``SharedConfig``. ``stop``
    interrupts either wait.
    """

    def __init__(
        self,
        settings: SharedConfig,
        sender: TelemetrySender,
        simulator: CraneSimulator,
        config: Optional[TelemetryConfig] = None,
    ) -> None:
        config = config or TelemetryConfig()
        self._settings = settings
        self._sender = sender
        self._simulator = simulator
        self._ack_timeout = config.ack_timeout_seconds
        self._send_attempts = max(1, config.send_attempts)
        self._retry_initial = config.retry_initial_seconds
        self._retry_max = max(config.retry_initial_seconds, config.retry_max_seconds)

        self._state = LoopState.IDLE
        self._stop_event = asyncio.Event()
        self._worker: Optional[asyncio.Task[None]] = None
        self._listeners: List[TickListener] = []
        self._in_flight = 0

        self.sent_count = 0
        self.failed_count = 0
        self.last_interval_ms: Optional[int] = None

    @property
    def state(self) -> LoopState:
        return self._state

    @property
    def in_flight(self) -> int:
        return self._in_flight

    def add_listener(self, listener: TickListener) -> None:
        self._listeners.append(listener)

    async def start(self) -> None:
        if self._worker is not None and not self._worker.done():
            raise RuntimeError("TelemetryLoop already running")
        self._stop_event.clear()
        self._state = LoopState.RUNNING
        self._worker = asyncio.create_task(self._run())
        LOGGER.info("Telemetry loop started for %s", self._simulator.device_id)

    async def stop(self) -> None:
        was_running = self._state == LoopState.RUNNING
        self._stop_event.set()
        worker = self._worker
        if worker is not None:
            if not worker.done():
                worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await worker
            self._worker = None
        if was_running:
            LOGGER.info("Telemetry loop finished")
        self._state = LoopState.STOPPED

    async def wait_stopped(self) -> None:
        """Wait for the worker to exit; re-raises an unexpected worker failure."""
        if self._worker is not None:
            await asyncio.shield(self._worker)

    async def tick(self) -> TickOutcome:
        """Build, send and await one sample."""

        increment = self._settings.height_increment
        sample = self._simulator.next_sample(increment)
        body = sample.to_json()
        properties = sample.properties()

        LOGGER.info("Sending message: %s", body)
        delivered, attempts, error = await self._deliver(body, properties)

        if delivered:
            self.sent_count += 1
        else:
            self.failed_count += 1
            LOGGER.warning(
                "Dropping telemetry at height %s after %d attempt(s): %s",
                sample.height,
                attempts,
                error,
            )

        outcome = TickOutcome(
            sample=sample, delivered=delivered, attempts=attempts, error=error
        )
        for listener in self._listeners:
            try:
                listener(outcome)
            except Exception:  # pragma: no cover - defensive logging
                LOGGER.exception("Telemetry listener failed")
        return outcome

    async def _run(self) -> None:
        try:
            while not self._stop_event.is_set():
                try:
                    await self.tick()
                except (ArithmeticError, ValueError):
                    self.failed_count += 1
                    LOGGER.exception("Skipping telemetry sample that could not be built")

                interval_ms = min(
                    max(0, self._settings.telemetry_interval_millis),
                    constants.MAX_TELEMETRY_INTERVAL_MS,
                )
                self.last_interval_ms = interval_ms
                if await self._wait_or_stop(interval_ms / 1000.0):
                    break
        finally:
            self._state = LoopState.STOPPED

    async def _deliver(
        self, body: str, properties: dict[str, str]
    ) -> tuple[bool, int, Optional[str]]:
        delay = self._retry_initial
        error: Optional[str] = None

        for attempt in range(1, self._send_attempts + 1):
            try:
                status = await self._send_once(body, properties)
            except (RuntimeError, OSError) as exc:
                # MQTTConnectionError and TelemetryDeliveryError are RuntimeErrors.
                error = str(exc) or exc.__class__.__name__
                LOGGER.warning(
                    "Telemetry attempt %d/%d failed: %s",
                    attempt,
                    self._send_attempts,
                    error,
                )
            else:
                LOGGER.info("IoT Hub responded to message with status: %s", status)
                return True, attempt, None

            if attempt < self._send_attempts:
                if await self._wait_or_stop(delay):
                    return False, attempt, "stopped"
                delay = min(delay * 2, self._retry_max)

        return False, self._send_attempts, error

    async def _send_once(self, body: str, properties: dict[str, str]) -> int:
        self._in_flight += 1
        try:
            future = self._sender.send_telemetry(body, properties)
            if self._ack_timeout > 0:
                try:
                    return await asyncio.wait_for(future, timeout=self._ack_timeout)
                except asyncio.TimeoutError as exc:
                    raise TelemetryDeliveryError(
                        f"No acknowledgement within {self._ack_timeout:.1f}s"
                    ) from exc
            return await future
        finally:
            self._in_flight -= 1

    async def _wait_or_stop(self, seconds: float) -> bool:
        """Sleep for ``seconds``; return True when stop was requested meanwhile."""
        if seconds <= 0:
            await asyncio.sleep(0)
            return self._stop_event.is_set()
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True
