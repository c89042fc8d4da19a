"""Deterministic tolerance policy.

Pure functions only: no sample storage and no payload parsing. The
engine feeds them the latest samples and the policy in effect.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

from weighsync.config import TolerancePolicy
from weighsync.models._base import WeightSource, to_kg
from weighsync.models.tolerance import (
    DisagreementAction,
    FinalWeightSource,
    ToleranceCheck,
    ToleranceStatus,
    WeightSourcePriority,
)

_TWO = Decimal(2)
_KG_QUANTUM = Decimal("0.001")


def tolerance_status(difference: Decimal, tolerance: Decimal) -> ToleranceStatus:
    """Classify an absolute difference against a tolerance.

    ``good`` up to the tolerance, ``warning`` up to twice the tolerance,
    ``error`` beyond.
    """
    if difference <= tolerance:
        return ToleranceStatus.GOOD
    if difference <= tolerance * _TWO:
        return ToleranceStatus.WARNING
    return ToleranceStatus.ERROR


def select_final_weight(
    controller: Decimal,
    scale: Decimal,
    priority: WeightSourcePriority,
) -> tuple[Decimal, FinalWeightSource]:
    """Pick the final weight for two present samples by priority."""
    if priority == WeightSourcePriority.SCALE:
        return scale, FinalWeightSource.SCALE
    if priority == WeightSourcePriority.AVERAGE:
        mean = ((controller + scale) / _TWO).quantize(_KG_QUANTUM, rounding=ROUND_HALF_UP)
        return mean, FinalWeightSource.AVERAGE
    return controller, FinalWeightSource.CONTROLLER


def no_sample_check(policy: TolerancePolicy) -> ToleranceCheck:
    """Sentinel result for "nothing measured yet"."""
    return ToleranceCheck(
        difference=Decimal("0"),
        tolerance=to_kg(policy.tolerance_range),
        status=ToleranceStatus.ERROR,
        final_weight=Decimal("0"),
        weight_source=FinalWeightSource.CONTROLLER,
    )


def evaluate(
    controller: Decimal | None,
    scale: Decimal | None,
    policy: TolerancePolicy,
) -> ToleranceCheck:
    """Compute a :class:`ToleranceCheck` for the given sample values."""
    tolerance = to_kg(policy.tolerance_range)

    if controller is None and scale is None:
        return no_sample_check(policy)

    if controller is None or scale is None:
        source = WeightSource.CONTROLLER if controller is not None else WeightSource.SCALE
        value = controller if controller is not None else scale
        assert value is not None  # noqa: S101
        return ToleranceCheck(
            difference=Decimal("0"),
            tolerance=tolerance,
            status=ToleranceStatus.GOOD,
            final_weight=value,
            weight_source=FinalWeightSource.from_source(source),
            controller_weight=controller,
            scale_weight=scale,
        )

    difference = abs(controller - scale)
    final_weight, weight_source = select_final_weight(controller, scale, policy.weight_source_priority)
    return ToleranceCheck(
        difference=difference,
        tolerance=tolerance,
        status=tolerance_status(difference, tolerance),
        final_weight=final_weight,
        weight_source=weight_source,
        controller_weight=controller,
        scale_weight=scale,
    )


def should_block(check: ToleranceCheck, action: DisagreementAction) -> bool:
    """Only the ``block`` policy stops a capture, and only on ``error``."""
    return action == DisagreementAction.BLOCK and check.status == ToleranceStatus.ERROR


def requires_review(check: ToleranceCheck, action: DisagreementAction) -> bool:
    """Under ``review`` every non-good capture is flagged for follow-up."""
    return action == DisagreementAction.REVIEW and check.status != ToleranceStatus.GOOD
