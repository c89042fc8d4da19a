"""Runtime reconfiguration of a running station.

Each category is swapped atomically under its own lock: a merged record is
built and validated off to the side, then the reference is replaced.
Readers see either the old or the new record, never a mix.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from weighsync._redact import redact_for_log
from weighsync.config import (
    ControllerChannelConfig,
    ScaleChannelConfig,
    StationConfig,
    SyncConfig,
    TolerancePolicy,
    config_to_dict,
    merge_config,
)
from weighsync.exceptions import ConfigError
from weighsync.ingestion.base import SensorIngestor
from weighsync.models.sample import ChannelState
from weighsync.state.engine import ReconciliationEngine
from weighsync.store import Store
from weighsync.sync import SyncForwarder

_logger = logging.getLogger(__name__)

CATEGORIES: tuple[str, ...] = ("controller", "scale", "sync", "tolerance")


class ConfigController:
    """Get and merge-update the four configuration categories.

    Transport categories (``controller``, ``scale``) cycle a running
    ingestor: disconnect, cooldown, reconnect with the new record. A
    disconnected ingestor only takes the record for its next connect. The engine's
    latest sample for that source is cleared first so nothing measured on
    the old connection survives the change.
    """

    def __init__(
        self,
        config: StationConfig,
        *,
        controller: SensorIngestor[ControllerChannelConfig],
        scale: SensorIngestor[ScaleChannelConfig],
        engine: ReconciliationEngine,
        forwarder: SyncForwarder,
        store: Store,
    ) -> None:
        self._records: dict[str, Any] = {
            "controller": config.controller,
            "scale": config.scale,
            "sync": config.sync,
            "tolerance": config.tolerance,
        }
        self._locks = {name: asyncio.Lock() for name in CATEGORIES}
        self._controller = controller
        self._scale = scale
        self._engine = engine
        self._forwarder = forwarder
        self._store = store
        self._cooldown = config.reconnect_cooldown

    @staticmethod
    def _check_category(category: str) -> str:
        if category not in CATEGORIES:
            raise ConfigError(f"unknown configuration category: {category}")
        return category

    def get(self, category: str) -> Any:
        """Current record for *category*."""
        return self._records[self._check_category(category)]

    def as_dict(self, category: str) -> dict[str, Any]:
        return config_to_dict(self.get(category))

    async def load(self) -> None:
        """Apply persisted settings on top of the startup configuration.

        Does not touch ingestor connections; the station connects with the
        loaded records afterwards.
        """
        for category in CATEGORIES:
            saved = await self._store.get_settings(category)
            if not saved:
                continue
            try:
                record = merge_config(self._records[category], saved)
            except ConfigError as exc:
                _logger.warning("Ignoring persisted %s settings: %s", category, exc)
                continue
            self._records[category] = record
            _logger.info("Loaded persisted %s settings", category)

        self._engine.set_policy(self._records["tolerance"])
        await self._forwarder.update_config(self._records["sync"])

    async def update(self, category: str, changes: dict[str, Any]) -> Any:
        """Merge *changes* into *category* and apply them.

        Raises
        ------
        ConfigError
            Unknown category or key, or a value that fails validation. The
            current record stays in effect.
        """
        self._check_category(category)
        async with self._locks[category]:
            current = self._records[category]
            record = merge_config(current, changes)
            if record == current:
                _logger.debug("No effective %s change", category)
                return current

            self._records[category] = record
            _logger.info("Updating %s settings: %s", category, redact_for_log(dict(changes)))
            await self._store.upsert_settings(category, config_to_dict(record))
            await self._apply(category, record)
            return record

    async def _apply(self, category: str, record: Any) -> None:
        if category == "controller":
            await self._cycle(self._controller, record)
        elif category == "scale":
            await self._cycle(self._scale, record)
        elif category == "tolerance":
            assert isinstance(record, TolerancePolicy)  # noqa: S101
            self._engine.set_policy(record)
        elif category == "sync":
            assert isinstance(record, SyncConfig)  # noqa: S101
            await self._forwarder.update_config(record)

    async def _cycle(self, ingestor: SensorIngestor[Any], record: Any) -> None:
        self._engine.clear(ingestor.source)
        if ingestor.state == ChannelState.DISCONNECTED:
            ingestor.configure(record)
            _logger.info("%s channel not running, new settings apply on connect", ingestor.source.value)
            return
        state = await ingestor.reconnect(record, cooldown=self._cooldown)
        _logger.info("%s channel reconfigured, now %s", ingestor.source.value, state.value)
