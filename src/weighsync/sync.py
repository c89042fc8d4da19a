"""Outbound capture delivery to the external system.

``forward`` schedules delivery and returns at once, so a slow or failing
endpoint never holds up capture. Exhausted retries surface as
:class:`SyncFailure` inside the delivery task, where they are logged and
dropped.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import aiohttp

from weighsync._redact import redact_for_log
from weighsync.config import SyncConfig, config_to_dict
from weighsync.exceptions import SyncFailure
from weighsync.models._base import utcnow
from weighsync.models.capture import CaptureRecord, SyncPayload, SyncResult

_logger = logging.getLogger(__name__)

HeartbeatCallback = Callable[[], None]
Sleep = Callable[[float], Awaitable[None]]

_RETRYABLE_STATUS = frozenset({408, 425, 429})


def _retryable(status: int) -> bool:
    return status >= 500 or status in _RETRYABLE_STATUS


def auth_headers(config: SyncConfig) -> dict[str, str]:
    """Credential headers for ``config.auth_method``."""
    if not config.api_key or config.auth_method == "none":
        return {}
    if config.auth_method == "api-key":
        return {"X-API-Key": config.api_key}
    return {"Authorization": f"Bearer {config.api_key}"}


class SyncForwarder:
    """Delivers capture payloads with bounded retries and runs a heartbeat.

    Usage::

        async with SyncForwarder(config) as forwarder:
            forwarder.forward(capture, "KA-01-1234")
            await forwarder.drain()
    """

    def __init__(
        self,
        config: SyncConfig | None = None,
        *,
        session: aiohttp.ClientSession | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._config = config or SyncConfig()
        self._external_session = session is not None
        self._http_session = session
        self._sleep = sleep
        self._pending: set[asyncio.Task[SyncResult]] = set()
        self._heartbeat: asyncio.Task[None] | None = None
        self._heartbeat_callbacks: list[HeartbeatCallback] = []
        self._delivered = 0
        self._failed = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> SyncForwarder:
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def start(self) -> None:
        if self._http_session is None:
            self._http_session = aiohttp.ClientSession()
        self._start_heartbeat()
        _logger.info(
            "Sync forwarder started endpoint=%s interval=%.1fs",
            self._config.endpoint or "<demo>",
            self._config.sync_interval,
        )

    async def close(self) -> None:
        """Stop the heartbeat, wait for pending deliveries, release HTTP."""
        await self._stop_heartbeat()
        await self.drain()
        if not self._external_session and self._http_session is not None:
            await self._http_session.close()
        self._http_session = None

    @property
    def config(self) -> SyncConfig:
        return self._config

    @property
    def pending(self) -> int:
        return len(self._pending)

    @property
    def delivered(self) -> int:
        return self._delivered

    @property
    def failed(self) -> int:
        return self._failed

    async def update_config(self, config: SyncConfig) -> None:
        """Swap the config; restarts the heartbeat with the new interval."""
        self._config = config
        _logger.info("Sync config updated: %s", redact_for_log(config_to_dict(config)))
        if self._heartbeat is not None:
            await self._stop_heartbeat()
            self._start_heartbeat()

    # ------------------------------------------------------------------
    # Heartbeat
    # ------------------------------------------------------------------

    def on_heartbeat(self, callback: HeartbeatCallback) -> Callable[[], None]:
        """Register a heartbeat callback; returns a function that removes it."""
        self._heartbeat_callbacks.append(callback)

        def _remove() -> None:
            if callback in self._heartbeat_callbacks:
                self._heartbeat_callbacks.remove(callback)

        return _remove

    def _start_heartbeat(self) -> None:
        if self._heartbeat is not None and not self._heartbeat.done():
            return
        self._heartbeat = asyncio.get_running_loop().create_task(self._heartbeat_loop(), name="sync-heartbeat")

    async def _stop_heartbeat(self) -> None:
        task = self._heartbeat
        self._heartbeat = None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.sync_interval)
            _logger.debug(
                "Sync heartbeat pending=%d delivered=%d failed=%d",
                len(self._pending),
                self._delivered,
                self._failed,
            )
            for callback in list(self._heartbeat_callbacks):
                try:
                    callback()
                except Exception:
                    _logger.warning("Heartbeat callback failed", exc_info=True)

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def forward(self, capture: CaptureRecord, lorry_number: str) -> asyncio.Task[SyncResult]:
        """Schedule delivery of *capture*; never blocks the caller."""
        payload = SyncPayload.from_capture(capture, lorry_number)
        task = asyncio.get_running_loop().create_task(self._deliver_logged(payload), name=f"sync-{capture.id}")
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        """Wait for every scheduled delivery to finish."""
        while True:
            pending = [task for task in self._pending if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def _deliver_logged(self, payload: SyncPayload) -> SyncResult:
        try:
            result = await self.deliver(payload)
        except SyncFailure as exc:
            self._failed += 1
            _logger.warning(
                "Sync of tag %s failed after %d attempts: %s",
                payload.tag_id,
                exc.attempts,
                exc,
            )
            return SyncResult(
                success=False,
                status="failed",
                status_code=exc.status_code,
                attempts=exc.attempts,
                message=str(exc),
            )
        self._delivered += 1
        return result

    async def deliver(self, payload: SyncPayload) -> SyncResult:
        """POST *payload*, retrying transient failures.

        Raises
        ------
        SyncFailure
            All attempts failed, or the endpoint rejected the payload.
        """
        config = self._config
        if config.demo_mode:
            _logger.info("Demo mode: sync of tag %s treated as delivered", payload.tag_id)
            return SyncResult(success=True, status="demo-mode", attempts=0)

        body = json.dumps(payload.to_wire(), separators=(",", ":"))
        headers = {"content-type": "application/json", **auth_headers(config)}
        last_error = "no attempt made"
        last_status: int | None = None

        for attempt in range(1, config.retry_attempts + 1):
            try:
                status, text = await self._post(config.endpoint or "", body, headers)
            except (aiohttp.ClientError, TimeoutError) as exc:
                last_error = str(exc) or type(exc).__name__
                last_status = None
                _logger.debug("Sync attempt %d for %s failed: %s", attempt, payload.tag_id, last_error)
            else:
                if 200 <= status < 300:
                    _logger.debug("Sync of tag %s delivered on attempt %d", payload.tag_id, attempt)
                    return SyncResult(success=True, status="synced", status_code=status, attempts=attempt)
                last_error = f"HTTP {status}: {text[:200]}"
                last_status = status
                if not _retryable(status):
                    raise SyncFailure(last_error, attempts=attempt, status_code=status)
                _logger.debug("Sync attempt %d for %s got %s", attempt, payload.tag_id, status)

            if attempt < config.retry_attempts:
                await self._sleep(config.backoff_base * 2 ** (attempt - 1))

        raise SyncFailure(last_error, attempts=config.retry_attempts, status_code=last_status)

    async def _post(self, url: str, body: str, headers: dict[str, str]) -> tuple[int, str]:
        session = self._http_session
        if session is None:
            raise SyncFailure("sync forwarder is not started")
        timeout = aiohttp.ClientTimeout(total=self._config.request_timeout)
        _logger.debug("POST %s", url)
        async with session.post(url, data=body, headers=headers, timeout=timeout) as resp:
            return resp.status, await resp.text()

    async def test_connection(self) -> SyncResult:
        """Probe the endpoint once without retries."""
        config = self._config
        if config.demo_mode:
            return SyncResult(success=True, status="demo-mode", message="no endpoint configured")
        session = self._http_session
        if session is None:
            return SyncResult(success=False, status="error", message="sync forwarder is not started")
        timeout = aiohttp.ClientTimeout(total=config.request_timeout)
        try:
            async with session.get(config.endpoint or "", headers=auth_headers(config), timeout=timeout) as resp:
                ok = resp.status < 400
                return SyncResult(
                    success=ok,
                    status="connected" if ok else "error",
                    status_code=resp.status,
                    attempts=1,
                    timestamp=utcnow(),
                )
        except (aiohttp.ClientError, TimeoutError) as exc:
            _logger.warning("Sync endpoint test failed: %s", exc)
            return SyncResult(success=False, status="error", attempts=1, message=str(exc) or type(exc).__name__)

