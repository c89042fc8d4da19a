"""Sensor ingestor base: connection state machine and simulator fallback.

Every ingestor follows the same states::

    DISCONNECTED -> CONNECTING -> CONNECTED    (hardware answered)
    DISCONNECTED -> CONNECTING -> SIMULATED    (probe failed or timed out)

SIMULATED is sticky: nothing retries the hardware on a timer. Only an
explicit ``connect``/``reconnect`` leaves it. Losing a CONNECTED transport
also degrades to SIMULATED.

Each ``connect`` opens a new *generation*. Samples are stamped with the
generation of the transport that produced them and dropped at hand-off
when that generation is no longer current, so nothing read on an old
connection is ever attributed to a new one.
"""

from __future__ import annotations

import abc
import asyncio
import contextlib
import logging
import random
from collections.abc import Callable
from typing import ClassVar, Generic, TypeVar

from weighsync.ingestion.simulator import WeightSimulator
from weighsync.models._base import WeightSource
from weighsync.models.sample import ChannelState, ChannelStatus, WeightSample

TConfig = TypeVar("TConfig")

SampleCallback = Callable[[WeightSample], None]
StatusCallback = Callable[[ChannelStatus], None]


class SensorIngestor(abc.ABC, Generic[TConfig]):
    """One logical connection to a physical weight source."""

    source: ClassVar[WeightSource]

    def __init__(
        self,
        config: TConfig,
        *,
        rng: random.Random | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._rng = rng or random.Random()
        self._logger = logger or logging.getLogger(type(self).__module__)
        self._state = ChannelState.DISCONNECTED
        self._generation = 0
        self._connect_lock = asyncio.Lock()
        self._probe: asyncio.Task[None] | None = None
        self._simulator: WeightSimulator | None = None
        self._sample_callbacks: list[SampleCallback] = []
        self._status_callbacks: list[StatusCallback] = []
        self._last_detail: str | None = None

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def on_sample(self, callback: SampleCallback) -> Callable[[], None]:
        """Register a sample observer; returns a function that removes it."""
        self._sample_callbacks.append(callback)

        def _remove() -> None:
            if callback in self._sample_callbacks:
                self._sample_callbacks.remove(callback)

        return _remove

    def on_status(self, callback: StatusCallback) -> Callable[[], None]:
        """Register a status observer; transitions arrive in order."""
        self._status_callbacks.append(callback)

        def _remove() -> None:
            if callback in self._status_callbacks:
                self._status_callbacks.remove(callback)

        return _remove

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def config(self) -> TConfig:
        return self._config

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def is_simulated(self) -> bool:
        return self._state == ChannelState.SIMULATED

    @property
    def is_live(self) -> bool:
        return self._state in (ChannelState.CONNECTED, ChannelState.SIMULATED)

    def status(self) -> ChannelStatus:
        return ChannelStatus(channel=self.source, state=self._state, detail=self._last_detail)

    def _set_state(self, state: ChannelState, detail: str | None = None) -> None:
        previous = self._state
        if state == previous:
            return
        self._state = state
        self._last_detail = detail
        self._logger.info(
            "%s channel %s -> %s%s",
            self.source.value,
            previous.value,
            state.value,
            f" ({detail})" if detail else "",
        )
        status = ChannelStatus(channel=self.source, state=state, previous=previous, detail=detail)
        for callback in list(self._status_callbacks):
            try:
                callback(status)
            except Exception:
                self._logger.warning("%s status callback failed", self.source.value, exc_info=True)

    def _emit(self, generation: int, sample: WeightSample) -> None:
        """Hand a sample to observers if it belongs to the live generation."""
        if generation != self._generation or self._state == ChannelState.DISCONNECTED:
            self._logger.debug(
                "Dropping stale %s sample from generation %d (current %d)",
                self.source.value,
                generation,
                self._generation,
            )
            return
        for callback in list(self._sample_callbacks):
            try:
                callback(sample)
            except Exception:
                self._logger.warning("%s sample callback failed", self.source.value, exc_info=True)

    # ------------------------------------------------------------------
    # Transport hooks
    # ------------------------------------------------------------------

    @property
    @abc.abstractmethod
    def probe_timeout(self) -> float:
        """Seconds allowed for the hardware probe."""

    @property
    @abc.abstractmethod
    def simulate_only(self) -> bool:
        """Config asks to skip hardware entirely."""

    @abc.abstractmethod
    async def _open(self, generation: int) -> None:
        """Open the real transport; return once it is usable.

        Raise :class:`TransportUnavailable` (or any error) when the
        hardware cannot be reached.
        """

    @abc.abstractmethod
    async def _close(self) -> None:
        """Release the real transport. Must be idempotent."""

    @abc.abstractmethod
    def _simulated_sample(self) -> WeightSample:
        """Build one synthetic sample."""

    @property
    @abc.abstractmethod
    def _simulator_interval(self) -> float: ...

    def _after_connect(self, generation: int) -> None:
        """Hook run once the channel is CONNECTED; starts any reader."""

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self, config: TConfig | None = None) -> ChannelState:
        """Connect to hardware, degrading to simulated mode on failure.

        Never raises for transport problems. Returns the resulting state.
        """
        async with self._connect_lock:
            if self._state != ChannelState.DISCONNECTED:
                await self._shutdown()
            if config is not None:
                self._config = config

            self._generation += 1
            generation = self._generation
            self._set_state(ChannelState.CONNECTING)

            if self.simulate_only:
                self._start_simulator(generation, "simulation requested by configuration")
                return self._state

            probe = asyncio.get_running_loop().create_task(
                self._open(generation),
                name=f"{self.source.value}-probe",
            )
            self._probe = probe
            try:
                done, _ = await asyncio.wait({probe}, timeout=self.probe_timeout)
            except asyncio.CancelledError:
                probe.cancel()
                await self._close()
                self._set_state(ChannelState.DISCONNECTED)
                raise
            finally:
                self._probe = None

            if generation != self._generation:
                # disconnect() ran while probing
                return self._state

            reason: str | None = None
            if not done:
                probe.cancel()
                with contextlib.suppress(asyncio.CancelledError, Exception):
                    await probe
                reason = f"no response within {self.probe_timeout:g}s"
            elif probe.cancelled():
                reason = "probe cancelled"
            elif probe.exception() is not None:
                exc = probe.exception()
                reason = str(exc) or type(exc).__name__

            if reason is not None:
                self._logger.warning("%s hardware unavailable: %s; using simulator", self.source.value, reason)
                await self._close()
                self._start_simulator(generation, reason)
                return self._state

            self._set_state(ChannelState.CONNECTED)
            self._after_connect(generation)
            return self._state

    def configure(self, config: TConfig) -> None:
        """Swap the config without touching the connection.

        Takes effect on the next ``connect``.
        """
        self._config = config

    async def disconnect(self) -> None:
        """Stop everything and end in DISCONNECTED. Safe from any state."""
        self._generation += 1
        probe = self._probe
        if probe is not None and not probe.done():
            probe.cancel()
        await self._shutdown()

    async def reconnect(self, config: TConfig | None = None, *, cooldown: float = 0.5) -> ChannelState:
        """Disconnect, wait *cooldown* seconds, connect with *config*."""
        await self.disconnect()
        if cooldown > 0:
            await asyncio.sleep(cooldown)
        return await self.connect(config)

    async def _shutdown(self) -> None:
        simulator = self._simulator
        self._simulator = None
        if simulator is not None:
            await simulator.stop()
        try:
            await self._close()
        except Exception:
            self._logger.debug("%s transport close failed", self.source.value, exc_info=True)
        self._set_state(ChannelState.DISCONNECTED)

    def _start_simulator(self, generation: int, reason: str) -> None:
        simulator = WeightSimulator(
            make_sample=self._simulated_sample,
            emit=lambda sample: self._emit(generation, sample),
            interval=self._simulator_interval,
            name=f"{self.source.value}-simulator",
        )
        self._simulator = simulator
        self._set_state(ChannelState.SIMULATED, reason)
        simulator.start()

    async def _transport_lost(self, generation: int, reason: str) -> None:
        """Called by subclasses when a CONNECTED transport drops."""
        if generation != self._generation or self._state != ChannelState.CONNECTED:
            return
        self._logger.warning("%s transport lost: %s; using simulator", self.source.value, reason)
        try:
            await self._close()
        except Exception:
            self._logger.debug("%s transport close failed", self.source.value, exc_info=True)
        if generation == self._generation:
            self._start_simulator(generation, f"transport lost: {reason}")

