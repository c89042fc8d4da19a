"""Reconciliation policy enums and the tolerance check result."""

from __future__ import annotations

import enum
from decimal import Decimal

from pydantic import Field

from weighsync.models._base import Kilograms, OptionalKilograms, WeighBaseModel, WeightSource


class WeightSourcePriority(enum.StrEnum):
    """Which value becomes the final weight when both sources are present."""

    CONTROLLER = "controller"
    SCALE = "scale"
    AVERAGE = "average"


class DisagreementAction(enum.StrEnum):
    """What a capture does with a non-good tolerance status."""

    LOG = "log"
    REVIEW = "review"
    BLOCK = "block"


class ToleranceStatus(enum.StrEnum):
    GOOD = "good"
    WARNING = "warning"
    ERROR = "error"


class FinalWeightSource(enum.StrEnum):
    """Origin of a final weight: one channel or the mean of both."""

    CONTROLLER = "controller"
    SCALE = "scale"
    AVERAGE = "average"

    @classmethod
    def from_source(cls, source: WeightSource) -> FinalWeightSource:
        return cls(source.value)


class ToleranceCheck(WeighBaseModel):
    """Result of comparing the latest controller and scale samples.

    Parameters
    ----------
    difference : Decimal
        Absolute difference between the two sources, ``0`` when fewer
        than two samples were available.
    tolerance : Decimal
        Tolerance range in effect for this computation.
    status : ToleranceStatus
        ``good`` within tolerance, ``warning`` up to twice the tolerance,
        ``error`` beyond that (or when no sample is available).
    final_weight : Decimal
        Weight chosen by the source priority.
    weight_source : FinalWeightSource
        Where ``final_weight`` came from.
    controller_weight, scale_weight : Decimal or None
        The sample values the check was computed from.
    """

    difference: Kilograms = Field(default=Decimal("0.000"), ge=0)
    tolerance: Kilograms
    status: ToleranceStatus
    final_weight: Kilograms
    weight_source: FinalWeightSource
    controller_weight: OptionalKilograms = None
    scale_weight: OptionalKilograms = None

    @property
    def is_sentinel(self) -> bool:
        """``True`` for the no-sample result (nothing was measured)."""
        return self.controller_weight is None and self.scale_weight is None and self.final_weight == 0
