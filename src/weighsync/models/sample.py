"""Weight samples and channel connection status."""

from __future__ import annotations

import enum
from datetime import UTC, datetime

from pydantic import Field, field_validator

from weighsync.models._base import Kilograms, WeighBaseModel, WeightSource, utcnow


class WeightSample(WeighBaseModel):
    """One normalized reading from a single channel.

    Parameters
    ----------
    source : WeightSource
        Channel the reading came from.
    value : Decimal
        Kilograms, three decimal places.
    stable : bool
        Scale stability flag; controller samples are always stable.
    captured_at : datetime
        When the reading was taken (UTC).
    simulated : bool
        ``True`` for synthetic samples produced in simulated mode.
    """

    source: WeightSource
    value: Kilograms
    stable: bool = True
    captured_at: datetime = Field(default_factory=utcnow)
    simulated: bool = False

    @field_validator("captured_at")
    @classmethod
    def _ensure_tz_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


class ChannelState(enum.StrEnum):
    """Connection state of one ingestor."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    SIMULATED = "simulated"


class ChannelStatus(WeighBaseModel):
    """A status transition reported by an ingestor."""

    channel: WeightSource
    state: ChannelState
    previous: ChannelState | None = None
    detail: str | None = None
    changed_at: datetime = Field(default_factory=utcnow)

    @property
    def is_live(self) -> bool:
        """Whether the channel is producing samples (real or simulated)."""
        return self.state in (ChannelState.CONNECTED, ChannelState.SIMULATED)
