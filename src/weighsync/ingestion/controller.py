"""Controller (PLC) channel over MQTT.

A threaded paho-mqtt runtime decodes messages on the network thread and
hands weights to the asyncio loop with ``call_soon_threadsafe``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from decimal import Decimal
from typing import Any, Protocol, cast

import paho.mqtt.client as mqtt

from weighsync.config import ControllerChannelConfig
from weighsync.exceptions import ParseFailure, TransportUnavailable
from weighsync.ingestion.base import SensorIngestor
from weighsync.ingestion.normalize import parse_controller_payload
from weighsync.ingestion.simulator import simulated_value
from weighsync.models._base import WeightSource
from weighsync.models.sample import WeightSample

_logger = logging.getLogger(__name__)


class ControllerRuntime(Protocol):
    """Structural interface of the MQTT runtime, so tests can pass doubles."""

    @property
    def is_running(self) -> bool: ...

    def start(self) -> None: ...

    def stop(self) -> None: ...


RuntimeFactory = Callable[..., ControllerRuntime]


class MqttWeightRuntime:
    """Threaded paho-mqtt runtime that emits parsed weights onto an asyncio loop.

    Parameters
    ----------
    loop : asyncio.AbstractEventLoop
        Loop receiving callbacks.
    config : ControllerChannelConfig
        Broker, topic and credentials.
    on_weight : callable
        ``(topic, kg)`` for every message that yields a weight.
    on_connect_result : callable
        ``(ok, reason)`` once the broker accepts or refuses the connection.
    on_lost : callable
        ``(reason)`` when an established connection drops.
    """

    def __init__(
        self,
        *,
        loop: asyncio.AbstractEventLoop,
        config: ControllerChannelConfig,
        on_weight: Callable[[str, Decimal], None],
        on_connect_result: Callable[[bool, str], None],
        on_lost: Callable[[str], None],
        logger: logging.Logger | None = None,
    ) -> None:
        self._loop = loop
        self._config = config
        self._on_weight = on_weight
        self._on_connect_result = on_connect_result
        self._on_lost = on_lost
        self._logger = logger or _logger
        self._client: mqtt.Client | None = None
        self._running = False
        self._connected = False

    @property
    def is_running(self) -> bool:
        """Whether the MQTT runtime is actively running."""
        return self._running

    def _client_id(self) -> str:
        return self._config.client_id or f"weighsync-{int(time.time() * 1000)}"

    def start(self) -> None:
        """Start the network loop; the connection completes asynchronously."""
        self.stop()
        config = self._config
        self._logger.debug(
            "MQTT runtime start requested host=%s port=%s topic=%s",
            config.host,
            config.port,
            config.weight_topic,
        )

        client = mqtt.Client(
            callback_api_version=cast(Any, mqtt).CallbackAPIVersion.VERSION2,
            client_id=self._client_id(),
            clean_session=True,
        )
        client.enable_logger(self._logger)
        if config.username:
            client.username_pw_set(config.username, config.password)

        def on_connect(
            c: mqtt.Client,
            _userdata: Any,
            _flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if reason_code.value != 0:
                self._logger.warning("MQTT connect failed: %s", reason_code)
                self._loop.call_soon_threadsafe(self._on_connect_result, False, str(reason_code))
                return
            self._connected = True
            self._logger.debug("MQTT connected, subscribing topic=%s qos=%s", config.weight_topic, config.qos)
            c.subscribe(config.weight_topic, qos=config.qos)
            self._loop.call_soon_threadsafe(self._on_connect_result, True, str(reason_code))

        def on_connect_fail(_c: mqtt.Client, _userdata: Any) -> None:
            self._loop.call_soon_threadsafe(self._on_connect_result, False, "broker unreachable")

        def on_message(_c: mqtt.Client, _userdata: Any, msg: mqtt.MQTTMessage) -> None:
            try:
                weight = parse_controller_payload(msg.payload)
            except ParseFailure as exc:
                self._logger.debug("MQTT message on %s dropped: %s", msg.topic, exc)
                return
            self._logger.debug("MQTT message on %s weight=%skg", msg.topic, weight)
            self._loop.call_soon_threadsafe(self._on_weight, msg.topic, weight)

        def on_disconnect(
            _client: mqtt.Client,
            _userdata: Any,
            _disconnect_flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            was_connected = self._connected
            self._connected = False
            if self._running and was_connected:
                self._logger.debug("MQTT disconnected: %s", reason_code)
                self._loop.call_soon_threadsafe(self._on_lost, str(reason_code))

        client.on_connect = on_connect
        client.on_connect_fail = on_connect_fail
        client.on_message = on_message
        client.on_disconnect = on_disconnect

        client.connect_async(config.host, config.port, keepalive=config.keepalive)
        client.loop_start()

        self._client = client
        self._running = True
        self._logger.debug("MQTT network loop started")

    def stop(self) -> None:
        """Stop and disconnect current MQTT client if running."""
        client = self._client
        self._client = None
        was_running = self._running
        self._running = False
        self._connected = False

        if client is None:
            return
        try:
            if was_running:
                self._logger.debug("MQTT disconnect requested")
                client.disconnect()
        finally:
            client.loop_stop()
            self._logger.debug("MQTT network loop stopped")


class ControllerIngestor(SensorIngestor[ControllerChannelConfig]):
    """Controller weight feed with simulator fallback."""

    source = WeightSource.CONTROLLER

    def __init__(
        self,
        config: ControllerChannelConfig | None = None,
        *,
        runtime_factory: RuntimeFactory | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(config or ControllerChannelConfig(), logger=_logger, **kwargs)
        self._runtime_factory: RuntimeFactory = runtime_factory or MqttWeightRuntime
        self._runtime: ControllerRuntime | None = None

    @property
    def probe_timeout(self) -> float:
        return self._config.probe_timeout

    @property
    def simulate_only(self) -> bool:
        return self._config.simulate

    @property
    def _simulator_interval(self) -> float:
        return self._config.sim_interval

    def _simulated_sample(self) -> WeightSample:
        return WeightSample(
            source=self.source,
            value=simulated_value(self._rng, self._config.sim_baseline, self._config.sim_variance),
            stable=True,
            simulated=True,
        )

    async def _open(self, generation: int) -> None:
        loop = asyncio.get_running_loop()
        connected: asyncio.Future[None] = loop.create_future()

        def _on_connect_result(ok: bool, reason: str) -> None:
            if connected.done():
                return
            if ok:
                connected.set_result(None)
            else:
                connected.set_exception(TransportUnavailable(f"MQTT broker refused: {reason}", channel="controller"))

        def _on_weight(_topic: str, weight: Decimal) -> None:
            self._emit(generation, WeightSample(source=self.source, value=weight))

        def _on_lost(reason: str) -> None:
            loop.create_task(self._transport_lost(generation, reason))

        runtime = self._runtime_factory(
            loop=loop,
            config=self._config,
            on_weight=_on_weight,
            on_connect_result=_on_connect_result,
            on_lost=_on_lost,
            logger=_logger,
        )
        self._runtime = runtime
        try:
            await loop.run_in_executor(None, runtime.start)
        except (OSError, ValueError) as exc:
            raise TransportUnavailable(f"MQTT start failed: {exc}", channel="controller") from exc
        await connected

    async def _close(self) -> None:
        runtime = self._runtime
        self._runtime = None
        if runtime is None:
            return
        await asyncio.get_running_loop().run_in_executor(None, runtime.stop)
