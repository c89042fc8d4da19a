"""weighsync - dual-source weight reconciliation for loading stations."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("weighsync")
except PackageNotFoundError:
    __version__ = "0+local"
from weighsync.config import (
    ControllerChannelConfig,
    ScaleChannelConfig,
    StationConfig,
    SyncConfig,
    TolerancePolicy,
)
from weighsync.config_controller import ConfigController
from weighsync.events import EventBus, Subscription
from weighsync.exceptions import (
    CaptureRejected,
    ConfigError,
    InvalidTransition,
    NoSampleAvailable,
    ParseFailure,
    SessionNotFound,
    SyncFailure,
    TransportUnavailable,
    WeighsyncError,
)
from weighsync.ingestion import ControllerIngestor, ScaleIngestor
from weighsync.models import (
    Activity,
    CaptureRecord,
    ChannelState,
    ChannelStatus,
    DisagreementAction,
    EventType,
    LiveEvent,
    LorrySession,
    SessionStatus,
    TareConfiguration,
    ToleranceCheck,
    ToleranceStatus,
    WeightSample,
    WeightSource,
    WeightSourcePriority,
)
from weighsync.sessions import SessionManager
from weighsync.state.engine import ReconciliationEngine
from weighsync.station import WeighStation
from weighsync.store import MemoryStore, Store
from weighsync.sync import SyncForwarder

__all__ = [
    "Activity",
    "CaptureRecord",
    "CaptureRejected",
    "ChannelState",
    "ChannelStatus",
    "ConfigController",
    "ConfigError",
    "ControllerChannelConfig",
    "ControllerIngestor",
    "DisagreementAction",
    "EventBus",
    "EventType",
    "InvalidTransition",
    "LiveEvent",
    "LorrySession",
    "MemoryStore",
    "NoSampleAvailable",
    "ParseFailure",
    "ReconciliationEngine",
    "ScaleChannelConfig",
    "ScaleIngestor",
    "SessionManager",
    "SessionNotFound",
    "SessionStatus",
    "StationConfig",
    "Store",
    "Subscription",
    "SyncConfig",
    "SyncFailure",
    "SyncForwarder",
    "TareConfiguration",
    "ToleranceCheck",
    "TolerancePolicy",
    "ToleranceStatus",
    "TransportUnavailable",
    "WeighStation",
    "WeighsyncError",
    "WeightSample",
    "WeightSource",
    "WeightSourcePriority",
    "__version__",
]
