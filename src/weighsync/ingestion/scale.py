"""Scale channel over a line-oriented serial port (pyserial)."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from typing import Any, Protocol

import serial

from weighsync.config import ScaleChannelConfig
from weighsync.exceptions import ParseFailure, TransportUnavailable
from weighsync.ingestion.base import SensorIngestor
from weighsync.ingestion.normalize import parse_scale_line
from weighsync.ingestion.simulator import simulated_value
from weighsync.models._base import WeightSource
from weighsync.models.sample import WeightSample

_logger = logging.getLogger(__name__)

# A line longer than this without a terminator is noise; the buffer is reset.
MAX_LINE_BUFFER = 4096

_PARITY = {
    "none": serial.PARITY_NONE,
    "even": serial.PARITY_EVEN,
    "odd": serial.PARITY_ODD,
    "mark": serial.PARITY_MARK,
    "space": serial.PARITY_SPACE,
}

_STOP_BITS = {
    1: serial.STOPBITS_ONE,
    2: serial.STOPBITS_TWO,
}


class SerialPort(Protocol):
    """The subset of :class:`serial.Serial` the ingestor uses."""

    def read_until(self, expected: bytes = ..., size: int | None = ...) -> bytes: ...

    def close(self) -> None: ...


PortFactory = Callable[[ScaleChannelConfig], SerialPort]


def open_serial_port(config: ScaleChannelConfig) -> serial.Serial:
    """Open the configured port. Blocking; call from a worker thread."""
    return serial.Serial(
        config.port,
        config.baud_rate,
        bytesize=config.data_bits,
        parity=_PARITY[config.parity.lower()],
        stopbits=_STOP_BITS[config.stop_bits],
        timeout=config.read_timeout,
    )


def split_lines(buffer: bytes, terminator: bytes) -> tuple[list[bytes], bytes]:
    """Split *buffer* on *terminator*; returns complete lines and the tail."""
    *lines, tail = buffer.split(terminator)
    if len(tail) > MAX_LINE_BUFFER:
        _logger.debug("Scale line buffer overflow (%d bytes); discarding", len(tail))
        tail = b""
    return [line for line in lines if line.strip()], tail


class ScaleIngestor(SensorIngestor[ScaleChannelConfig]):
    """Scale weight feed with simulator fallback."""

    source = WeightSource.SCALE

    def __init__(
        self,
        config: ScaleChannelConfig | None = None,
        *,
        port_factory: PortFactory | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(config or ScaleChannelConfig(), logger=_logger, **kwargs)
        self._port_factory: PortFactory = port_factory or open_serial_port
        self._port: SerialPort | None = None
        self._reader: asyncio.Task[None] | None = None

    @property
    def probe_timeout(self) -> float:
        return self._config.probe_timeout

    @property
    def simulate_only(self) -> bool:
        return self._config.simulate

    @property
    def _simulator_interval(self) -> float:
        return self._config.sim_interval

    def _simulated_sample(self) -> WeightSample:
        config = self._config
        return WeightSample(
            source=self.source,
            value=simulated_value(self._rng, config.sim_baseline, config.sim_variance),
            stable=self._rng.random() >= config.sim_unstable_ratio,
            simulated=True,
        )

    async def _open(self, generation: int) -> None:
        config = self._config
        _logger.debug("Opening serial port %s at %d baud", config.port, config.baud_rate)
        try:
            port = await asyncio.to_thread(self._port_factory, config)
        except (serial.SerialException, OSError, ValueError) as exc:
            raise TransportUnavailable(f"serial port {config.port}: {exc}", channel="scale") from exc
        self._port = port

    def _after_connect(self, generation: int) -> None:
        port = self._port
        if port is None:
            return
        self._reader = asyncio.get_running_loop().create_task(
            self._read_loop(generation, port),
            name="scale-reader",
        )

    async def _close(self) -> None:
        reader = self._reader
        self._reader = None
        port = self._port
        self._port = None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reader
        if port is not None:
            await asyncio.to_thread(port.close)
            _logger.debug("Serial port closed")

    async def _read_loop(self, generation: int, port: SerialPort) -> None:
        terminator = self._config.line_terminator.encode("ascii")
        buffer = b""
        while True:
            try:
                # returns what arrived so far on read timeout
                chunk = await asyncio.to_thread(port.read_until, terminator)
            except (serial.SerialException, OSError) as exc:
                await self._transport_lost(generation, str(exc) or type(exc).__name__)
                return
            if not chunk:
                continue
            buffer += chunk
            lines, buffer = split_lines(buffer, terminator)
            for raw in lines:
                self._handle_line(generation, raw)

    def _handle_line(self, generation: int, raw: bytes) -> None:
        try:
            parsed = parse_scale_line(raw)
        except ParseFailure as exc:
            _logger.debug("Scale line dropped: %s", exc)
            return
        self._emit(
            generation,
            WeightSample(source=self.source, value=parsed.value, stable=parsed.stable),
        )
