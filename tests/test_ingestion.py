from __future__ import annotations

import asyncio
import random
import time
from collections.abc import Callable
from decimal import Decimal
from typing import Any

import pytest
import serial

from weighsync.config import ControllerChannelConfig, ScaleChannelConfig
from weighsync.ingestion.controller import ControllerIngestor
from weighsync.ingestion.scale import ScaleIngestor
from weighsync.models import ChannelState, ChannelStatus, WeightSample, WeightSource


class _FakeRuntime:
    """Stands in for the paho runtime; ``accept=None`` never answers."""

    def __init__(
        self,
        *,
        loop: asyncio.AbstractEventLoop,
        config: ControllerChannelConfig,
        on_weight: Callable[[str, Decimal], None],
        on_connect_result: Callable[[bool, str], None],
        on_lost: Callable[[str], None],
        accept: bool | None = True,
        **_: Any,
    ) -> None:
        self._loop = loop
        self._config = config
        self._on_weight = on_weight
        self._on_connect_result = on_connect_result
        self._on_lost = on_lost
        self._accept = accept
        self.started = False
        self.stopped = False

    @property
    def is_running(self) -> bool:
        return self.started and not self.stopped

    def start(self) -> None:
        self.started = True
        if self._accept is not None:
            reason = "Success" if self._accept else "Not authorized"
            self._loop.call_soon_threadsafe(self._on_connect_result, self._accept, reason)

    def stop(self) -> None:
        self.stopped = True

    def push(self, kg: str) -> None:
        self._loop.call_soon_threadsafe(self._on_weight, self._config.weight_topic, Decimal(kg))

    def drop(self, reason: str) -> None:
        self._loop.call_soon_threadsafe(self._on_lost, reason)


class _FakePort:
    def __init__(self, chunks: list[bytes | Exception]) -> None:
        self._chunks = list(chunks)
        self.closed = False

    def read_until(self, expected: bytes = b"\n", size: int | None = None) -> bytes:
        if not self._chunks:
            time.sleep(0.005)
            return b""
        chunk = self._chunks.pop(0)
        if isinstance(chunk, Exception):
            raise chunk
        return chunk

    def close(self) -> None:
        self.closed = True


def _runtime_factory(runtimes: list[_FakeRuntime], accept: bool | None = True) -> Callable[..., _FakeRuntime]:
    def _factory(**kwargs: Any) -> _FakeRuntime:
        runtime = _FakeRuntime(accept=accept, **kwargs)
        runtimes.append(runtime)
        return runtime

    return _factory


def _watch(ingestor: ControllerIngestor | ScaleIngestor) -> tuple[list[WeightSample], list[ChannelStatus]]:
    samples: list[WeightSample] = []
    statuses: list[ChannelStatus] = []
    ingestor.on_sample(samples.append)
    ingestor.on_status(statuses.append)
    return samples, statuses


async def _wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


_FAST_CONTROLLER = ControllerChannelConfig(probe_timeout=1.0, sim_interval=0.01)
_SILENT_CONTROLLER = ControllerChannelConfig(probe_timeout=0.05, sim_interval=0.01)
_FAST_SCALE = ScaleChannelConfig(probe_timeout=1.0, sim_interval=0.01, read_timeout=0.01)


@pytest.mark.asyncio
async def test_controller_connects_and_forwards_weights() -> None:
    runtimes: list[_FakeRuntime] = []
    ingestor = ControllerIngestor(_FAST_CONTROLLER, runtime_factory=_runtime_factory(runtimes))
    samples, statuses = _watch(ingestor)

    state = await ingestor.connect()
    runtimes[0].push("15.420")
    await _wait_for(lambda: len(samples) == 1)

    assert state == ChannelState.CONNECTED
    assert [s.state for s in statuses] == [ChannelState.CONNECTING, ChannelState.CONNECTED]
    assert samples[0].source == WeightSource.CONTROLLER
    assert samples[0].value == Decimal("15.420")
    assert samples[0].simulated is False
    await ingestor.disconnect()
    assert runtimes[0].stopped


@pytest.mark.asyncio
async def test_controller_probe_timeout_falls_back_to_simulator() -> None:
    ingestor = ControllerIngestor(
        _SILENT_CONTROLLER,
        runtime_factory=_runtime_factory([], accept=None),
        rng=random.Random(7),
    )
    samples, statuses = _watch(ingestor)

    state = await ingestor.connect()
    await _wait_for(lambda: len(samples) >= 5)
    await ingestor.disconnect()

    assert state == ChannelState.SIMULATED
    assert [s.state for s in statuses] == [
        ChannelState.CONNECTING,
        ChannelState.SIMULATED,
        ChannelState.DISCONNECTED,
    ]
    assert all(s.simulated for s in samples)
    assert all(Decimal("15.4") <= s.value <= Decimal("15.6") for s in samples)


@pytest.mark.asyncio
async def test_controller_refused_by_broker_falls_back_without_waiting() -> None:
    ingestor = ControllerIngestor(
        ControllerChannelConfig(probe_timeout=5.0),
        runtime_factory=_runtime_factory([], accept=False),
    )
    started = time.monotonic()

    state = await ingestor.connect()

    assert state == ChannelState.SIMULATED
    assert time.monotonic() - started < 1.0
    assert ingestor.status().detail is not None
    await ingestor.disconnect()


@pytest.mark.asyncio
async def test_simulated_mode_stays_simulated_until_reconnect() -> None:
    ingestor = ControllerIngestor(
        _SILENT_CONTROLLER,
        runtime_factory=_runtime_factory([], accept=None),
    )
    await ingestor.connect()
    await asyncio.sleep(0.1)

    assert ingestor.state == ChannelState.SIMULATED
    await ingestor.disconnect()


@pytest.mark.asyncio
async def test_simulate_config_skips_hardware() -> None:
    runtimes: list[_FakeRuntime] = []
    ingestor = ControllerIngestor(
        ControllerChannelConfig(simulate=True, sim_interval=0.01),
        runtime_factory=_runtime_factory(runtimes),
    )

    state = await ingestor.connect()
    await ingestor.disconnect()

    assert state == ChannelState.SIMULATED
    assert runtimes == []


@pytest.mark.asyncio
async def test_disconnect_is_idempotent() -> None:
    ingestor = ControllerIngestor(_FAST_CONTROLLER, runtime_factory=_runtime_factory([]))
    _, statuses = _watch(ingestor)

    await ingestor.disconnect()
    await ingestor.connect()
    await ingestor.disconnect()
    await ingestor.disconnect()

    assert ingestor.state == ChannelState.DISCONNECTED
    assert [s.state for s in statuses] == [
        ChannelState.CONNECTING,
        ChannelState.CONNECTED,
        ChannelState.DISCONNECTED,
    ]


@pytest.mark.asyncio
async def test_samples_from_previous_connection_are_dropped() -> None:
    runtimes: list[_FakeRuntime] = []
    ingestor = ControllerIngestor(_FAST_CONTROLLER, runtime_factory=_runtime_factory(runtimes))
    samples, _ = _watch(ingestor)
    await ingestor.connect()
    old = runtimes[0]

    await ingestor.reconnect(cooldown=0)
    old.push("99.000")
    runtimes[1].push("15.000")
    await _wait_for(lambda: len(samples) >= 1)
    await asyncio.sleep(0.02)

    assert [s.value for s in samples] == [Decimal("15.000")]
    assert ingestor.generation == 3
    await ingestor.disconnect()


@pytest.mark.asyncio
async def test_transport_loss_degrades_to_simulated() -> None:
    runtimes: list[_FakeRuntime] = []
    ingestor = ControllerIngestor(_FAST_CONTROLLER, runtime_factory=_runtime_factory(runtimes))
    await ingestor.connect()

    runtimes[0].drop("keepalive timeout")
    await _wait_for(lambda: ingestor.state == ChannelState.SIMULATED)

    assert runtimes[0].stopped
    assert "keepalive timeout" in (ingestor.status().detail or "")
    await ingestor.disconnect()


@pytest.mark.asyncio
async def test_scale_reads_lines_from_port() -> None:
    port = _FakePort([b"ST,GS, 12.010 kg\r\nUS 12.5", b"00 kg\r\n", b"garbage\r\n"])
    ingestor = ScaleIngestor(_FAST_SCALE, port_factory=lambda _cfg: port)
    samples, _ = _watch(ingestor)

    state = await ingestor.connect()
    await _wait_for(lambda: len(samples) == 2)
    await ingestor.disconnect()

    assert state == ChannelState.CONNECTED
    assert [(s.value, s.stable) for s in samples] == [
        (Decimal("12.010"), True),
        (Decimal("12.500"), False),
    ]
    assert port.closed


@pytest.mark.asyncio
async def test_scale_missing_port_falls_back_to_simulator() -> None:
    def _no_port(_config: ScaleChannelConfig) -> _FakePort:
        raise serial.SerialException("could not open port COM3")

    ingestor = ScaleIngestor(_FAST_SCALE, port_factory=_no_port)

    state = await ingestor.connect()

    assert state == ChannelState.SIMULATED
    assert "COM3" in (ingestor.status().detail or "")
    await ingestor.disconnect()


@pytest.mark.asyncio
async def test_scale_read_error_degrades_to_simulated() -> None:
    port = _FakePort([serial.SerialException("device disconnected")])
    ingestor = ScaleIngestor(_FAST_SCALE, port_factory=lambda _cfg: port)

    await ingestor.connect()
    await _wait_for(lambda: ingestor.state == ChannelState.SIMULATED)
    await ingestor.disconnect()

    assert port.closed


@pytest.mark.asyncio
async def test_scale_simulator_stays_within_variance() -> None:
    ingestor = ScaleIngestor(
        ScaleChannelConfig(simulate=True, sim_interval=0.005),
        rng=random.Random(42),
    )
    samples, _ = _watch(ingestor)

    await ingestor.connect()
    await _wait_for(lambda: len(samples) >= 40)
    await ingestor.disconnect()

    assert all(Decimal("11.950") <= s.value <= Decimal("12.050") for s in samples)
    assert all(s.source == WeightSource.SCALE for s in samples)
    assert any(s.stable for s in samples)
