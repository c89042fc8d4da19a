"""Hardware ingestion: controller (MQTT) and scale (serial) channels."""

from weighsync.ingestion.base import SensorIngestor
from weighsync.ingestion.controller import ControllerIngestor, MqttWeightRuntime
from weighsync.ingestion.normalize import ScaleLine, parse_controller_payload, parse_scale_line
from weighsync.ingestion.scale import ScaleIngestor
from weighsync.ingestion.simulator import WeightSimulator

__all__ = [
    "ControllerIngestor",
    "MqttWeightRuntime",
    "ScaleIngestor",
    "ScaleLine",
    "SensorIngestor",
    "WeightSimulator",
    "parse_controller_payload",
    "parse_scale_line",
]
