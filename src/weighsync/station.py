"""Station facade wiring ingestion, reconciliation, sessions and sync."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Any

import aiohttp

from weighsync.config import StationConfig
from weighsync.config_controller import ConfigController
from weighsync.events import EventBus, Subscription
from weighsync.ingestion.controller import ControllerIngestor
from weighsync.ingestion.scale import ScaleIngestor
from weighsync.models._base import utcnow
from weighsync.models.capture import CaptureRecord
from weighsync.models.events import EventType, LiveEvent
from weighsync.models.sample import ChannelStatus, WeightSample
from weighsync.models.tolerance import ToleranceCheck
from weighsync.sessions import SessionManager
from weighsync.state.engine import ReconciliationEngine
from weighsync.store import MemoryStore, Store
from weighsync.sync import SyncForwarder

_logger = logging.getLogger(__name__)


class WeighStation:
    """One weighing station: two channels, a queue, and outbound sync.

    Usage::

        async with WeighStation(StationConfig.from_env()) as station:
            await station.sessions.save_tare(station.sessions.operating_day(), 1.25)
            session = await station.sessions.create_session("KA-01-1234", "Line 1", "R. Rao")
            await station.sessions.activate(session.id)
            await station.sessions.record_capture("TAG-0001")

    Components may be injected for tests; anything omitted is built from
    *config*.
    """

    def __init__(
        self,
        config: StationConfig | None = None,
        *,
        store: Store | None = None,
        controller: ControllerIngestor | None = None,
        scale: ScaleIngestor | None = None,
        http_session: aiohttp.ClientSession | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._config = config or StationConfig()
        cfg = self._config
        self._store: Store = store or MemoryStore(settings_path=cfg.settings_path, max_activities=cfg.max_activities)
        self._bus = EventBus(queue_size=cfg.event_queue_size)
        self._engine = ReconciliationEngine(cfg.tolerance)
        self._controller = controller or ControllerIngestor(cfg.controller)
        self._scale = scale or ScaleIngestor(cfg.scale)
        self._forwarder = SyncForwarder(cfg.sync, session=http_session)
        self._sessions = SessionManager(
            self._store,
            self._engine,
            self._bus,
            timezone=cfg.operating_timezone,
            retain_captures_on_remove=cfg.retain_captures_on_remove,
            clock=clock,
        )
        self._settings = ConfigController(
            cfg,
            controller=self._controller,
            scale=self._scale,
            engine=self._engine,
            forwarder=self._forwarder,
            store=self._store,
        )
        self._unhooks: list[Callable[[], None]] = []
        self._started = False

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> WeighStation:
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.stop()

    async def start(self) -> None:
        """Load persisted settings, wire observers, connect both channels."""
        if self._started:
            return
        await self._forwarder.start()
        await self._settings.load()
        self._hook()
        self._started = True
        controller_state, scale_state = await asyncio.gather(
            self._controller.connect(self._settings.get("controller")),
            self._scale.connect(self._settings.get("scale")),
        )
        _logger.info("Station started controller=%s scale=%s", controller_state.value, scale_state.value)

    async def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        await asyncio.gather(self._controller.disconnect(), self._scale.disconnect())
        for unhook in self._unhooks:
            unhook()
        self._unhooks.clear()
        await self._forwarder.close()
        self._bus.close()
        _logger.info("Station stopped")

    def _hook(self) -> None:
        for ingestor in (self._controller, self._scale):
            self._unhooks.append(ingestor.on_sample(self._on_sample))
            self._unhooks.append(ingestor.on_status(self._on_status))
        self._unhooks.append(self._bus.add_listener(self._on_capture, types=[EventType.CAPTURE_CREATED]))

    def _on_sample(self, sample: WeightSample) -> None:
        adopted = self._engine.update(sample)
        self._bus.publish(
            EventType.SAMPLE_UPDATED,
            {
                "source": sample.source.value,
                "value": str(sample.value),
                "stable": sample.stable,
                "simulated": sample.simulated,
                "adopted": adopted,
                **self._engine.reading(),
            },
            origin=sample.source.value,
        )

    def _on_status(self, status: ChannelStatus) -> None:
        self._bus.publish(EventType.CHANNEL_STATUS, status.to_wire(), origin=status.channel.value)

    def _on_capture(self, event: LiveEvent) -> None:
        capture = CaptureRecord.model_validate(event.data["capture"])
        self._forwarder.forward(capture, str(event.data.get("lorryNumber", "")))

    # ------------------------------------------------------------------
    # Components
    # ------------------------------------------------------------------

    @property
    def config(self) -> StationConfig:
        return self._config

    @property
    def bus(self) -> EventBus:
        return self._bus

    @property
    def engine(self) -> ReconciliationEngine:
        return self._engine

    @property
    def sessions(self) -> SessionManager:
        return self._sessions

    @property
    def settings(self) -> ConfigController:
        return self._settings

    @property
    def forwarder(self) -> SyncForwarder:
        return self._forwarder

    @property
    def controller(self) -> ControllerIngestor:
        return self._controller

    @property
    def scale(self) -> ScaleIngestor:
        return self._scale

    # ------------------------------------------------------------------
    # Convenience
    # ------------------------------------------------------------------

    def subscribe(self, types: Iterable[EventType] | None = None) -> Subscription:
        return self._bus.subscribe(types)

    def check(self) -> ToleranceCheck:
        return self._engine.check()

    def reading(self) -> dict[str, Any]:
        return self._engine.reading()

    def channel_statuses(self) -> list[ChannelStatus]:
        return [self._controller.status(), self._scale.status()]
