"""Capture records (weighments) and the outbound sync payload."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import Field, model_validator

from weighsync.models._base import Kilograms, OptionalKilograms, WeighBaseModel, utcnow
from weighsync.models.session import new_id
from weighsync.models.tolerance import FinalWeightSource, ToleranceStatus


class CaptureRecord(WeighBaseModel):
    """One finalized, validated weight tied to a session and a tag.

    ``net_weight`` is always ``final_weight - tare_weight``; the validator
    rejects records that disagree so a stored capture can be trusted
    without recomputation.
    """

    id: str = Field(default_factory=new_id)
    session_id: str = Field(min_length=1)
    tag_id: str = Field(min_length=1)
    controller_weight: OptionalKilograms = None
    scale_weight: OptionalKilograms = None
    final_weight: Kilograms
    tare_weight: Kilograms
    net_weight: Kilograms
    weight_source: FinalWeightSource
    tolerance_status: ToleranceStatus
    weight_difference: Kilograms = Field(ge=0)
    requires_review: bool = False
    created_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _check_net_weight(self) -> CaptureRecord:
        expected = self.final_weight - self.tare_weight
        if self.net_weight != expected:
            raise ValueError(f"net_weight {self.net_weight} != final_weight - tare_weight ({expected})")
        return self


class SyncPayload(WeighBaseModel):
    """Body forwarded to the external system for each capture."""

    tag_id: str
    weight: float
    tare_weight: float
    net_weight: float
    lorry_number: str
    timestamp: datetime

    @classmethod
    def from_capture(cls, capture: CaptureRecord, lorry_number: str) -> SyncPayload:
        return cls(
            tag_id=capture.tag_id,
            weight=float(capture.final_weight),
            tare_weight=float(capture.tare_weight),
            net_weight=float(capture.net_weight),
            lorry_number=lorry_number,
            timestamp=capture.created_at,
        )


class DailyStats(WeighBaseModel):
    """Capture totals for one operating day."""

    total_captures: int = 0
    tolerance_violations: int = 0
    average_net_weight: Kilograms = Decimal("0")
    active_sessions: int = 0


class SyncResult(WeighBaseModel):
    """Outcome of a delivery or connection test."""

    success: bool
    status: str
    status_code: int | None = None
    attempts: int = 0
    message: str | None = None
    timestamp: datetime = Field(default_factory=utcnow)
