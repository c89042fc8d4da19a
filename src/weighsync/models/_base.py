"""Base model and shared types for weighsync records.

Every record inherits from :class:`WeighBaseModel` which provides:

* ``alias_generator=to_camel`` so records serialize to the camelCase keys
  used on the live event channel and accept either spelling on input.
* Frozen instances; records are replaced, never mutated in place.

Weights are carried as :class:`~decimal.Decimal` kilograms quantized to
three decimal places through the :data:`Kilograms` annotated type.
"""

from __future__ import annotations

import enum
import math
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict
from pydantic.alias_generators import to_camel

_KG_QUANTUM = Decimal("0.001")


def utcnow() -> datetime:
    return datetime.now(UTC)


def to_kg(value: Any) -> Decimal:
    """Coerce *value* to a Decimal kilogram amount with gram precision.

    Floats go through ``str()`` so ``12.05`` stays ``12.050`` instead of
    picking up binary noise.
    """
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool):
        raise ValueError("boolean is not a weight")
    elif isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            raise ValueError(f"weight must be finite, got {value}")
        result = Decimal(str(value))
    elif isinstance(value, (int, str)):
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation as exc:
            raise ValueError(f"not a number: {value!r}") from exc
    else:
        raise ValueError(f"unsupported weight type: {type(value).__name__}")
    if not result.is_finite():
        raise ValueError(f"weight must be finite, got {value}")
    return result.quantize(_KG_QUANTUM, rounding=ROUND_HALF_UP)


def _optional_kg(value: Any) -> Decimal | None:
    if value is None:
        return None
    return to_kg(value)


Kilograms = Annotated[Decimal, BeforeValidator(to_kg)]
"""Decimal kilograms, quantized to 0.001."""

OptionalKilograms = Annotated[Decimal | None, BeforeValidator(_optional_kg)]


class WeightSource(enum.StrEnum):
    """Physical channel a sample came from."""

    CONTROLLER = "controller"
    SCALE = "scale"


class WeighBaseModel(BaseModel):
    """Base for all weighsync records."""

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
        alias_generator=to_camel,
    )

    def to_wire(self) -> dict[str, Any]:
        """JSON-compatible camelCase dict for the live event channel."""
        return self.model_dump(mode="json", by_alias=True)
