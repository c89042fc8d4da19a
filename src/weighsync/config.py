"""Station configuration for weighsync.

Each configuration category is a frozen dataclass. Partial updates go
through :func:`merge_config`, which returns a validated copy so readers
holding the previous record never observe a half-applied change.
"""

from __future__ import annotations

import dataclasses
import enum
import os
import types
import typing
from decimal import Decimal, InvalidOperation
from typing import Any, TypeVar

from pydantic.alias_generators import to_snake

from weighsync.exceptions import ConfigError
from weighsync.models.tolerance import DisagreementAction, WeightSourcePriority

TConfig = TypeVar("TConfig")


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


def _require(condition: bool, message: str) -> None:
    if not condition:
        raise ConfigError(message)


@dataclasses.dataclass(frozen=True)
class ControllerChannelConfig:
    """Controller (PLC) channel over MQTT.

    Parameters
    ----------
    host, port : str, int
        MQTT broker address.
    weight_topic : str
        Topic carrying weight messages.
    qos : int
        Subscription QoS (0-2).
    username, password : str or None
        Optional broker credentials.
    client_id : str or None
        MQTT client id; generated when omitted.
    keepalive : int
        MQTT keepalive in seconds.
    probe_timeout : float
        Seconds to wait for the broker before committing to simulated mode.
    simulate : bool
        Skip the hardware probe and run the simulator directly.
    sim_baseline, sim_variance, sim_interval : float
        Simulator shape: samples fall within ``baseline +/- variance``
        every ``interval`` seconds.
    """

    host: str = "localhost"
    port: int = 1883
    weight_topic: str = "iot-2/Value3"
    qos: int = 1
    username: str | None = None
    password: str | None = None
    client_id: str | None = None
    keepalive: int = 60
    probe_timeout: float = 15.0
    simulate: bool = False
    sim_baseline: float = 15.5
    sim_variance: float = 0.1
    sim_interval: float = 2.0

    def __post_init__(self) -> None:
        _require(bool(self.host.strip()), "controller.host must be non-empty")
        _require(0 < self.port < 65536, f"controller.port out of range: {self.port}")
        _require(bool(self.weight_topic.strip()), "controller.weight_topic must be non-empty")
        _require(self.qos in (0, 1, 2), f"controller.qos must be 0, 1 or 2, got {self.qos}")
        _require(self.probe_timeout > 0, "controller.probe_timeout must be positive")
        _require(self.sim_variance >= 0, "controller.sim_variance must be >= 0")
        _require(self.sim_interval > 0, "controller.sim_interval must be positive")


@dataclasses.dataclass(frozen=True)
class ScaleChannelConfig:
    """Direct scale channel over a serial line.

    ``port`` is the serial device (``COM3``, ``/dev/ttyUSB0``). Lines are
    split on ``line_terminator``. Simulator defaults reproduce a 12 kg bag
    with +/-0.05 kg jitter and roughly one unstable reading in ten.
    """

    port: str = "COM3"
    baud_rate: int = 9600
    data_bits: int = 8
    stop_bits: int = 1
    parity: str = "none"
    line_terminator: str = "\r\n"
    read_timeout: float = 0.25
    probe_timeout: float = 10.0
    simulate: bool = False
    sim_baseline: float = 12.0
    sim_variance: float = 0.05
    sim_interval: float = 1.0
    sim_unstable_ratio: float = 0.1

    def __post_init__(self) -> None:
        _require(bool(self.port.strip()), "scale.port must be non-empty")
        _require(self.baud_rate > 0, f"scale.baud_rate must be positive, got {self.baud_rate}")
        _require(self.data_bits in (5, 6, 7, 8), f"scale.data_bits invalid: {self.data_bits}")
        _require(self.stop_bits in (1, 2), f"scale.stop_bits invalid: {self.stop_bits}")
        _require(
            self.parity.lower() in {"none", "even", "odd", "mark", "space"},
            f"scale.parity invalid: {self.parity}",
        )
        _require(bool(self.line_terminator), "scale.line_terminator must be non-empty")
        _require(self.probe_timeout > 0, "scale.probe_timeout must be positive")
        _require(self.sim_variance >= 0, "scale.sim_variance must be >= 0")
        _require(self.sim_interval > 0, "scale.sim_interval must be positive")
        _require(0 <= self.sim_unstable_ratio <= 1, "scale.sim_unstable_ratio must be within [0, 1]")


@dataclasses.dataclass(frozen=True)
class SyncConfig:
    """External sync target.

    Parameters
    ----------
    endpoint : str or None
        URL receiving capture payloads. ``None`` runs in demo mode: payloads
        are logged and treated as delivered.
    auth_method : str
        ``bearer`` sends ``Authorization: Bearer <key>``; ``api-key`` sends
        ``X-API-Key``; ``none`` sends no credentials.
    api_key : str or None
        Credential for ``auth_method``.
    sync_interval : float
        Heartbeat period in seconds.
    retry_attempts : int
        Total delivery attempts per capture.
    backoff_base : float
        First retry delay; doubles on each further attempt.
    request_timeout : float
        Per-request timeout in seconds.
    """

    endpoint: str | None = None
    auth_method: str = "bearer"
    api_key: str | None = None
    sync_interval: float = 30.0
    retry_attempts: int = 3
    backoff_base: float = 1.0
    request_timeout: float = 10.0

    def __post_init__(self) -> None:
        _require(
            self.auth_method in {"bearer", "api-key", "none"},
            f"sync.auth_method must be bearer, api-key or none, got {self.auth_method}",
        )
        _require(self.sync_interval > 0, "sync.sync_interval must be positive")
        _require(self.retry_attempts >= 1, "sync.retry_attempts must be >= 1")
        _require(self.backoff_base >= 0, "sync.backoff_base must be >= 0")
        _require(self.request_timeout > 0, "sync.request_timeout must be positive")

    @property
    def demo_mode(self) -> bool:
        return not self.endpoint


@dataclasses.dataclass(frozen=True)
class TolerancePolicy:
    """Reconciliation policy.

    ``tolerance_range`` is the acceptable absolute difference in kg.
    """

    tolerance_range: Decimal = Decimal("0.05")
    weight_source_priority: WeightSourcePriority = WeightSourcePriority.CONTROLLER
    on_disagreement: DisagreementAction = DisagreementAction.LOG

    def __post_init__(self) -> None:
        _require(self.tolerance_range >= 0, f"tolerance.tolerance_range must be >= 0, got {self.tolerance_range}")


@dataclasses.dataclass(frozen=True)
class StationConfig:
    """Top-level station configuration.

    Parameters
    ----------
    controller, scale, sync, tolerance
        Per-category records; see their docstrings.
    operating_timezone : str
        IANA zone used to decide the operating day for tare lookup.
    retain_captures_on_remove : bool
        Keep capture records when their session is removed.
    reconnect_cooldown : float
        Pause between disconnect and reconnect on transport reconfiguration.
    settings_path : str or None
        JSON file used by the memory store to persist settings.
    event_queue_size : int
        Bound on each live subscription queue; the oldest event is dropped
        when a reader falls this far behind.
    max_activities : int or None
        Activity log entries the memory store keeps; ``None`` keeps all.
    """

    controller: ControllerChannelConfig = dataclasses.field(default_factory=ControllerChannelConfig)
    scale: ScaleChannelConfig = dataclasses.field(default_factory=ScaleChannelConfig)
    sync: SyncConfig = dataclasses.field(default_factory=SyncConfig)
    tolerance: TolerancePolicy = dataclasses.field(default_factory=TolerancePolicy)
    operating_timezone: str = "UTC"
    retain_captures_on_remove: bool = True
    reconnect_cooldown: float = 0.5
    settings_path: str | None = None
    event_queue_size: int = 1000
    max_activities: int | None = 5000

    def __post_init__(self) -> None:
        _require(self.event_queue_size >= 1, f"event_queue_size must be >= 1, got {self.event_queue_size}")
        _require(
            self.max_activities is None or self.max_activities >= 1,
            f"max_activities must be >= 1, got {self.max_activities}",
        )

    @classmethod
    def from_env(cls, **overrides: Any) -> StationConfig:
        """Create configuration from environment variables.

        Reads ``MQTT_*``, ``SERIAL_*``, ``API_*``, ``TOLERANCE_*`` and
        ``WEIGHSYNC_*`` variables. Explicit keyword arguments override
        environment values; category overrides may be records or dicts of
        changes merged on top of the environment.
        """
        env = os.environ

        def _collect(mapping: dict[str, str]) -> dict[str, Any]:
            found: dict[str, Any] = {}
            for env_key, field_name in mapping.items():
                val = env.get(env_key)
                if val is not None and val != "":
                    found[field_name] = val
            return found

        categories: dict[str, Any] = {
            "controller": merge_config(
                ControllerChannelConfig(),
                _collect(
                    {
                        "MQTT_HOST": "host",
                        "MQTT_PORT": "port",
                        "MQTT_WEIGHT_TOPIC": "weight_topic",
                        "MQTT_QOS": "qos",
                        "MQTT_USERNAME": "username",
                        "MQTT_PASSWORD": "password",
                        "MQTT_CLIENT_ID": "client_id",
                        "MQTT_PROBE_TIMEOUT": "probe_timeout",
                        "MQTT_SIMULATE": "simulate",
                    }
                ),
            ),
            "scale": merge_config(
                ScaleChannelConfig(),
                _collect(
                    {
                        "SERIAL_PORT": "port",
                        "SERIAL_BAUD_RATE": "baud_rate",
                        "SERIAL_DATA_BITS": "data_bits",
                        "SERIAL_STOP_BITS": "stop_bits",
                        "SERIAL_PARITY": "parity",
                        "SERIAL_PROBE_TIMEOUT": "probe_timeout",
                        "SERIAL_SIMULATE": "simulate",
                    }
                ),
            ),
            "sync": merge_config(
                SyncConfig(),
                _collect(
                    {
                        "API_ENDPOINT": "endpoint",
                        "API_AUTH_METHOD": "auth_method",
                        "API_KEY": "api_key",
                        "API_RETRY_ATTEMPTS": "retry_attempts",
                    }
                ),
            ),
            "tolerance": merge_config(
                TolerancePolicy(),
                _collect(
                    {
                        "TOLERANCE_RANGE": "tolerance_range",
                        "TOLERANCE_WEIGHT_SOURCE": "weight_source_priority",
                        "TOLERANCE_ACTION": "on_disagreement",
                    }
                ),
            ),
        }

        # API_SYNC_INTERVAL is in milliseconds in existing deployments.
        interval_env = env.get("API_SYNC_INTERVAL")
        if interval_env:
            try:
                interval_s = float(interval_env) / 1000.0
            except ValueError as exc:
                raise ConfigError(f"API_SYNC_INTERVAL is not a number: {interval_env!r}") from exc
            categories["sync"] = merge_config(categories["sync"], {"sync_interval": interval_s})

        for name in list(categories):
            override = overrides.pop(name, None)
            if isinstance(override, dict):
                categories[name] = merge_config(categories[name], override)
            elif override is not None:
                categories[name] = override

        station_kwargs: dict[str, Any] = dict(categories)
        tz_env = env.get("WEIGHSYNC_TIMEZONE")
        if tz_env:
            station_kwargs["operating_timezone"] = tz_env
        retain_env = env.get("WEIGHSYNC_RETAIN_CAPTURES")
        if retain_env is not None:
            station_kwargs["retain_captures_on_remove"] = _env_bool(retain_env, True)
        settings_env = env.get("SETTINGS_PATH")
        if settings_env:
            station_kwargs["settings_path"] = settings_env

        station_kwargs.update(overrides)
        return cls(**station_kwargs)


def _coerce(name: str, hint: Any, value: Any) -> Any:
    """Coerce *value* (often a string from env or JSON) to the field's type."""
    origin = typing.get_origin(hint)
    if origin in (typing.Union, types.UnionType):
        args = [arg for arg in typing.get_args(hint) if arg is not type(None)]
        if value is None or (isinstance(value, str) and not value.strip()):
            return None
        return _coerce(name, args[0], value)

    if value is None:
        raise ConfigError(f"{name} may not be null")

    try:
        if hint is bool:
            if isinstance(value, bool):
                return value
            if isinstance(value, str):
                normalized = value.strip().lower()
                if normalized in {"1", "true", "yes", "y", "on"}:
                    return True
                if normalized in {"0", "false", "no", "n", "off"}:
                    return False
            if isinstance(value, int):
                return bool(value)
            raise ConfigError(f"{name} expects a boolean, got {value!r}")
        if hint is int:
            if isinstance(value, bool):
                raise ConfigError(f"{name} expects an integer, got {value!r}")
            if isinstance(value, float) and not value.is_integer():
                raise ConfigError(f"{name} expects an integer, got {value!r}")
            return int(value)
        if hint is float:
            if isinstance(value, bool):
                raise ConfigError(f"{name} expects a number, got {value!r}")
            return float(value)
        if hint is Decimal:
            if isinstance(value, bool):
                raise ConfigError(f"{name} expects a number, got {value!r}")
            return Decimal(str(value))
        if isinstance(hint, type) and issubclass(hint, enum.Enum):
            return hint(value.value if isinstance(value, enum.Enum) else value)
        if hint is str:
            return str(value)
    except (TypeError, ValueError, InvalidOperation) as exc:
        raise ConfigError(f"invalid value for {name}: {value!r}") from exc
    return value


def merge_config(record: TConfig, changes: dict[str, Any]) -> TConfig:
    """Return a copy of *record* with *changes* applied.

    Keys may be snake_case or camelCase. Unknown keys and invalid values
    raise :class:`ConfigError`; *record* itself is never modified.
    """
    if not dataclasses.is_dataclass(record) or isinstance(record, type):
        raise ConfigError(f"not a configuration record: {record!r}")
    if not changes:
        return record

    hints = typing.get_type_hints(type(record))
    field_names = {f.name for f in dataclasses.fields(record)}
    prefix = type(record).__name__

    normalized: dict[str, Any] = {}
    for raw_key, value in changes.items():
        key = to_snake(str(raw_key))
        if key not in field_names:
            raise ConfigError(f"unknown {prefix} field: {raw_key}")
        normalized[key] = _coerce(f"{prefix}.{key}", hints[key], value)

    try:
        return dataclasses.replace(record, **normalized)
    except TypeError as exc:
        raise ConfigError(f"invalid {prefix} update: {exc}") from exc


def config_to_dict(record: Any) -> dict[str, Any]:
    """JSON-friendly dict of a configuration record."""
    result: dict[str, Any] = {}
    for f in dataclasses.fields(record):
        value = getattr(record, f.name)
        if isinstance(value, enum.Enum):
            value = value.value
        elif isinstance(value, Decimal):
            value = str(value)
        result[f.name] = value
    return result
