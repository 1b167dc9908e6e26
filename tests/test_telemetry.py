"""Tests for the crane simulator and the telemetry loop."""

import asyncio
import json
import random
from datetime import datetime
from typing import Callable, List, Optional

import pytest

from simulated_crane.adapters import MQTTConnectionError
from simulated_crane.commands import CommandHandler
from simulated_crane.config import DeviceConfig, TelemetryConfig
from simulated_crane.core import RemoteCommand, SharedConfig, TelemetrySample, round3
from simulated_crane.telemetry import (
    CraneSimulator,
    LoopState,
    TelemetryLoop,
    TickOutcome,
)

FIXED_TIME = datetime(2024, 1, 2, 3, 4, 5)


class FakeSender:
    """Records submissions; acknowledges them immediately unless told not to."""

    def __init__(self, *, auto_ack: bool = True, failures: int = 0) -> None:
        self.auto_ack = auto_ack
        self.failures = failures
        self.sent: List[tuple[str, dict]] = []
        self.futures: List[asyncio.Future] = []
        self.max_outstanding = 0

    @property
    def outstanding(self) -> int:
        return sum(1 for future in self.futures if not future.done())

    def send_telemetry(self, body: str, properties):
        self.sent.append((body, dict(properties)))
        future = asyncio.get_running_loop().create_future()
        self.futures.append(future)
        if self.failures > 0:
            self.failures -= 1
            future.set_exception(MQTTConnectionError("Connection lost (rc=7)"))
        elif self.auto_ack:
            future.set_result(0)
        self.max_outstanding = max(self.max_outstanding, self.outstanding)
        return future

    def ack(self, index: int = -1) -> None:
        self.futures[index].set_result(0)


async def wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.001)

    await asyncio.wait_for(_poll(), timeout=timeout)


def make_loop(
    sender: FakeSender,
    settings: Optional[SharedConfig] = None,
    config: Optional[TelemetryConfig] = None,
) -> TelemetryLoop:
    simulator = CraneSimulator(
        "crane-01", rng=random.Random(7), clock=lambda: FIXED_TIME
    )
    return TelemetryLoop(settings or SharedConfig(), sender, simulator, config)


def test_simulator_height_climbs_by_increment():
    simulator = CraneSimulator("crane-01", rng=random.Random(1))

    heights = [simulator.next_sample(increment).height for increment in (0.5, 0.25, 0.125)]

    assert heights == [13.5, 13.75, 13.875]
    assert simulator.height == 13.875


@pytest.mark.parametrize("seed", [0, 1, 42])
def test_simulator_readings_stay_in_range(seed):
    simulator = CraneSimulator("crane-01", rng=random.Random(seed))
    wind_before = simulator.wind_speed

    for _ in range(20):
        height_before = simulator.height
        sample = simulator.next_sample(0.333)

        assert sample.height == round3(height_before + 0.333)
        assert 60.0 <= sample.humidity < 80.0
        assert 2.0 <= sample.temperature < 4.0
        assert sample.wind_speed >= wind_before
        assert not sample.temperature_alert
        wind_before = sample.wind_speed


def test_simulator_uses_device_defaults():
    device = DeviceConfig(initial_height=20.0, load_weight=3.0)
    simulator = CraneSimulator("crane-07", device, clock=lambda: FIXED_TIME)

    sample = simulator.next_sample(1.0)

    assert sample.height == 21.0
    assert sample.load_weight == 3.0
    assert sample.device_id == "crane-07"
    assert sample.latitude == -37.816368
    assert sample.longitude == 144.967005


def test_sample_json_layout():
    sample = CraneSimulator(
        "crane-01", rng=random.Random(3), clock=lambda: FIXED_TIME
    ).next_sample(0.5)

    payload = json.loads(sample.to_json())

    assert set(payload) == {
        "device_id",
        "temperature",
        "humidity",
        "height",
        "latitude",
        "longitude",
        "wind_speed",
        "load_weight",
        "lift_angle",
        "device_time",
    }
    assert payload["device_time"] == "2024/01/02 03:04:05"
    assert payload["height"] == 13.5
    assert sample.properties() == {"temperatureAlert": "false"}


@pytest.mark.parametrize("temperature, flag", [(30.0, "false"), (30.5, "true")])
def test_temperature_alert_property(temperature, flag):
    sample = TelemetrySample(
        device_id="crane-01",
        temperature=temperature,
        humidity=70.0,
        height=13.0,
        latitude=0.0,
        longitude=0.0,
        wind_speed=2.0,
        load_weight=1.5,
        lift_angle=2.1,
        device_time=FIXED_TIME,
    )

    assert sample.properties() == {"temperatureAlert": flag}


@pytest.mark.asyncio
async def test_height_increment_command_applies_to_next_tick():
    settings = SharedConfig()
    handler = CommandHandler(settings)
    loop = make_loop(FakeSender(), settings)

    first = await loop.tick()
    handler.handle(RemoteCommand(name="SetHeightIncrements", payload=b"50"))
    second = await loop.tick()

    assert first.sample.height == 13.5
    assert settings.height_increment == 0.25
    assert second.sample.height == 13.75
    assert loop.sent_count == 2


@pytest.mark.asyncio
async def test_tick_sends_sample_with_properties():
    sender = FakeSender()
    loop = make_loop(sender)

    outcome = await loop.tick()

    body, properties = sender.sent[0]
    assert json.loads(body) == json.loads(outcome.sample.to_json())
    assert properties == {"temperatureAlert": "false"}
    assert outcome.delivered
    assert outcome.attempts == 1


@pytest.mark.asyncio
async def test_only_one_submission_in_flight():
    settings = SharedConfig(telemetry_interval_millis=0)
    sender = FakeSender(auto_ack=False)
    loop = make_loop(sender, settings)

    await loop.start()
    await wait_until(lambda: len(sender.sent) == 1)
    for _ in range(10):
        await asyncio.sleep(0)

    assert len(sender.sent) == 1
    assert loop.in_flight == 1

    sender.ack(0)
    await wait_until(lambda: len(sender.sent) == 2)
    sender.ack(1)
    await wait_until(lambda: len(sender.sent) == 3)

    await loop.stop()

    assert sender.max_outstanding == 1
    assert loop.sent_count == 2
    assert loop.in_flight == 0


@pytest.mark.asyncio
async def test_interval_change_applies_to_next_sleep():
    settings = SharedConfig()
    handler = CommandHandler(settings)
    sender = FakeSender(auto_ack=False)
    loop = make_loop(sender, settings)

    await loop.start()
    await wait_until(lambda: len(sender.sent) == 1)
    handler.handle(RemoteCommand(name="SetTelemetryInterval", payload=b"5"))
    sender.ack(0)

    await wait_until(lambda: loop.last_interval_ms == 5000)
    await asyncio.sleep(0.05)

    assert len(sender.sent) == 1
    await asyncio.wait_for(loop.stop(), timeout=1.0)
    assert loop.state == LoopState.STOPPED


@pytest.mark.asyncio
async def test_stop_while_waiting_for_acknowledgement():
    sender = FakeSender(auto_ack=False)
    loop = make_loop(sender)

    await loop.start()
    await wait_until(lambda: len(sender.sent) == 1)

    await asyncio.wait_for(loop.stop(), timeout=1.0)
    await asyncio.sleep(0.01)

    assert loop.state == LoopState.STOPPED
    assert len(sender.sent) == 1
    assert loop.sent_count == 0
    assert sender.futures[0].cancelled()


@pytest.mark.asyncio
async def test_stop_while_sleeping_logs_finish(caplog):
    caplog.set_level("INFO")
    sender = FakeSender()
    loop = make_loop(sender, SharedConfig(telemetry_interval_millis=60_000))

    await loop.start()
    await wait_until(lambda: loop.sent_count == 1)

    await asyncio.wait_for(loop.stop(), timeout=1.0)

    assert loop.state == LoopState.STOPPED
    assert len(sender.sent) == 1
    assert "Telemetry loop finished" in caplog.text
    assert "IoT Hub responded to message with status: 0" in caplog.text


@pytest.mark.asyncio
async def test_start_twice_is_rejected():
    loop = make_loop(FakeSender(), SharedConfig(telemetry_interval_millis=60_000))

    await loop.start()
    with pytest.raises(RuntimeError):
        await loop.start()
    await loop.stop()


@pytest.mark.asyncio
async def test_failed_submission_is_retried():
    sender = FakeSender(failures=1)
    config = TelemetryConfig(send_attempts=2, retry_initial_seconds=0.01)
    loop = make_loop(sender, config=config)

    outcome = await loop.tick()

    assert outcome.delivered
    assert outcome.attempts == 2
    assert len(sender.sent) == 2
    assert loop.failed_count == 0


@pytest.mark.asyncio
async def test_sample_dropped_after_attempts_exhausted():
    sender = FakeSender(failures=5)
    config = TelemetryConfig(
        send_attempts=3, retry_initial_seconds=0.001, retry_max_seconds=0.002
    )
    loop = make_loop(sender, config=config)

    outcome = await loop.tick()

    assert not outcome.delivered
    assert outcome.attempts == 3
    assert "Connection lost" in (outcome.error or "")
    assert loop.failed_count == 1
    assert loop.sent_count == 0


@pytest.mark.asyncio
async def test_missing_acknowledgement_times_out():
    sender = FakeSender(auto_ack=False)
    loop = make_loop(sender, config=TelemetryConfig(ack_timeout_seconds=0.02))

    outcome = await loop.tick()

    assert not outcome.delivered
    assert "No acknowledgement" in (outcome.error or "")
    assert loop.in_flight == 0


@pytest.mark.asyncio
async def test_synchronous_send_failure_is_contained():
    class DisconnectedSender:
        def send_telemetry(self, body, properties):
            raise MQTTConnectionError("MQTT client not connected")

    simulator = CraneSimulator("crane-01", rng=random.Random(0))
    loop = TelemetryLoop(SharedConfig(), DisconnectedSender(), simulator)

    outcome = await loop.tick()

    assert not outcome.delivered
    assert outcome.error == "MQTT client not connected"
    assert simulator.height == 13.5


@pytest.mark.asyncio
async def test_listeners_receive_outcomes():
    outcomes: List[TickOutcome] = []
    loop = make_loop(FakeSender())
    loop.add_listener(outcomes.append)

    await loop.tick()
    await loop.tick()

    assert [outcome.sample.height for outcome in outcomes] == [13.5, 14.0]


class FlakySimulator(CraneSimulator):
    """Fails to build its first sample, then behaves normally."""

    def __init__(self) -> None:
        super().__init__("crane-01", rng=random.Random(5), clock=lambda: FIXED_TIME)
        self.failures = 1

    def next_sample(self, height_increment: float) -> TelemetrySample:
        if self.failures:
            self.failures -= 1
            raise OverflowError("height out of range")
        return super().next_sample(height_increment)


@pytest.mark.asyncio
async def test_loop_survives_a_sample_that_cannot_be_built():
    sender = FakeSender()
    loop = TelemetryLoop(
        SharedConfig(telemetry_interval_millis=0), sender, FlakySimulator()
    )

    await loop.start()
    await wait_until(lambda: loop.sent_count >= 2)
    await loop.stop()

    assert loop.failed_count == 1
    assert json.loads(sender.sent[0][0])["height"] == 13.5


@pytest.mark.asyncio
async def test_loop_keeps_ticking_after_extreme_commands():
    settings = SharedConfig(telemetry_interval_millis=0)
    handler = CommandHandler(settings)
    sender = FakeSender()
    loop = make_loop(sender, settings)

    rejected = [
        handler.handle(RemoteCommand(name="SetHeightIncrements", payload=b"-1e25")),
        handler.handle(
            RemoteCommand(name="SetTelemetryInterval", payload=b"1" + b"0" * 400)
        ),
    ]
    accepted = handler.handle(
        RemoteCommand(name="SetHeightIncrements", payload=b"-99900")
    )

    await loop.start()
    await wait_until(lambda: loop.sent_count >= 50)
    await loop.stop()

    assert [result.status for result in rejected] == [400, 400]
    assert accepted.succeeded
    assert loop.failed_count == 0
    assert json.loads(sender.sent[-1][0])["height"] >= 13.0 + 49 * 500


@pytest.mark.asyncio
async def test_sleep_is_capped_for_oversized_interval():
    settings = SharedConfig(telemetry_interval_millis=10**400)
    loop = make_loop(FakeSender(), settings)

    await loop.start()
    await wait_until(lambda: loop.last_interval_ms is not None)

    assert loop.last_interval_ms == 2**31 - 1
    assert loop.state == LoopState.RUNNING
    await asyncio.wait_for(loop.stop(), timeout=1.0)
