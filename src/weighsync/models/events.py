"""Live event envelope published on the event bus."""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any

from pydantic import Field

from weighsync.models._base import WeighBaseModel, utcnow


class EventType(enum.StrEnum):
    """Fixed event vocabulary."""

    SESSION_CREATED = "session.created"
    SESSION_STATUS_CHANGED = "session.statusChanged"
    SESSION_REMOVED = "session.removed"
    CAPTURE_CREATED = "capture.created"
    SAMPLE_UPDATED = "sample.updated"
    CHANNEL_STATUS = "channel.status"


class LiveEvent(WeighBaseModel):
    """``{type, data, timestamp}`` envelope delivered to observers.

    ``origin`` names the producer (``controller``, ``scale``, ``sessions``,
    ...) and is the unit of FIFO ordering; it is not part of the wire
    envelope.
    """

    type: EventType
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)
    origin: str = "station"

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude={"origin"})
