"""Synthetic weight source used when hardware is unavailable."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
from collections.abc import Callable
from decimal import Decimal

from weighsync.models._base import to_kg
from weighsync.models.sample import WeightSample

_logger = logging.getLogger(__name__)


def simulated_value(rng: random.Random, baseline: float, variance: float) -> Decimal:
    """A value uniformly spread within ``baseline +/- variance`` kg."""
    return to_kg(baseline + rng.uniform(-variance, variance))


class WeightSimulator:
    """Emits a sample from *make_sample* every *interval* seconds.

    ``start`` and ``stop`` are idempotent. The first sample is emitted one
    interval after start, matching a hardware feed warming up.
    """

    def __init__(
        self,
        *,
        make_sample: Callable[[], WeightSample],
        emit: Callable[[WeightSample], None],
        interval: float,
        name: str = "simulator",
    ) -> None:
        self._make_sample = make_sample
        self._emit = emit
        self._interval = interval
        self._name = name
        self._task: asyncio.Task[None] | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name=self._name)
        _logger.info("%s active, emitting every %.1fs", self._name, self._interval)

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        _logger.debug("%s stopped", self._name)

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                sample = self._make_sample()
            except Exception:
                _logger.debug("%s failed to build a sample", self._name, exc_info=True)
                continue
            self._emit(sample)
