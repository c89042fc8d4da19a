"""Pydantic records used across weighsync."""

from weighsync.models._base import WeighBaseModel, WeightSource, to_kg
from weighsync.models.capture import CaptureRecord, DailyStats, SyncPayload, SyncResult
from weighsync.models.events import EventType, LiveEvent
from weighsync.models.sample import ChannelState, ChannelStatus, WeightSample
from weighsync.models.session import (
    Activity,
    ActivityStatus,
    LorrySession,
    SessionStatus,
    TareConfiguration,
)
from weighsync.models.tolerance import (
    DisagreementAction,
    FinalWeightSource,
    ToleranceCheck,
    ToleranceStatus,
    WeightSourcePriority,
)

__all__ = [
    "Activity",
    "ActivityStatus",
    "CaptureRecord",
    "ChannelState",
    "ChannelStatus",
    "DailyStats",
    "DisagreementAction",
    "EventType",
    "FinalWeightSource",
    "LiveEvent",
    "LorrySession",
    "SessionStatus",
    "SyncPayload",
    "SyncResult",
    "TareConfiguration",
    "ToleranceCheck",
    "ToleranceStatus",
    "WeighBaseModel",
    "WeightSample",
    "WeightSource",
    "WeightSourcePriority",
    "to_kg",
]
