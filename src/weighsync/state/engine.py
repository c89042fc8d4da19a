"""Reconciliation engine: latest sample per source plus the active policy.

Each source has exactly one writer (its ingestor); computations read both
slots and never cache results across calls.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from weighsync.config import TolerancePolicy
from weighsync.models._base import WeightSource, utcnow
from weighsync.models.sample import WeightSample
from weighsync.models.tolerance import DisagreementAction, ToleranceCheck
from weighsync.state.policy import evaluate, requires_review, should_block

_logger = logging.getLogger(__name__)


class ReconciliationEngine:
    """Holds the latest controller and scale samples and computes checks.

    Parameters
    ----------
    policy : TolerancePolicy
        Initial policy; swap with :meth:`set_policy`.
    accept_unstable : bool
        Adopt unstable scale samples as the latest reading. Off by default:
        a swinging scale should not replace the last settled value.
    """

    def __init__(self, policy: TolerancePolicy | None = None, *, accept_unstable: bool = False) -> None:
        self._policy = policy or TolerancePolicy()
        self._accept_unstable = accept_unstable
        self._latest: dict[WeightSource, WeightSample] = {}
        self._updated_at: datetime | None = None

    @property
    def policy(self) -> TolerancePolicy:
        return self._policy

    def set_policy(self, policy: TolerancePolicy) -> None:
        """Swap the policy; applies from the next :meth:`check`."""
        self._policy = policy
        _logger.info(
            "Tolerance policy updated range=%s priority=%s action=%s",
            policy.tolerance_range,
            policy.weight_source_priority.value,
            policy.on_disagreement.value,
        )

    def update(self, sample: WeightSample) -> bool:
        """Record *sample* as the latest for its source.

        Returns ``False`` when the sample was not adopted (unstable scale
        reading while ``accept_unstable`` is off).
        """
        if not sample.stable and not self._accept_unstable:
            _logger.debug("Ignoring unstable %s sample %s", sample.source.value, sample.value)
            return False
        self._latest[sample.source] = sample
        self._updated_at = sample.captured_at
        return True

    def clear(self, source: WeightSource | None = None) -> None:
        """Forget the latest sample for *source* (or both)."""
        if source is None:
            self._latest.clear()
        else:
            self._latest.pop(source, None)

    def latest(self, source: WeightSource) -> WeightSample | None:
        return self._latest.get(source)

    def reading(self) -> dict[str, Any]:
        """Snapshot of current values for display."""
        controller = self._latest.get(WeightSource.CONTROLLER)
        scale = self._latest.get(WeightSource.SCALE)
        return {
            "controllerWeight": str(controller.value) if controller else None,
            "scaleWeight": str(scale.value) if scale else None,
            "timestamp": (self._updated_at or utcnow()).isoformat(),
        }

    def check(self) -> ToleranceCheck:
        """Compute a tolerance check from the current samples and policy.

        With no samples at all this returns the sentinel result
        (``status=error``, ``final_weight=0``) rather than raising.
        """
        controller = self._latest.get(WeightSource.CONTROLLER)
        scale = self._latest.get(WeightSource.SCALE)
        return evaluate(
            controller.value if controller else None,
            scale.value if scale else None,
            self._policy,
        )

    def should_block(self, check: ToleranceCheck, action: DisagreementAction | None = None) -> bool:
        return should_block(check, action or self._policy.on_disagreement)

    def requires_review(self, check: ToleranceCheck, action: DisagreementAction | None = None) -> bool:
        return requires_review(check, action or self._policy.on_disagreement)
