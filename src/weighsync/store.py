"""Persistence boundary.

The station only needs create/read/update semantics from its store, so
the dependency is expressed as the :class:`Store` protocol. ``MemoryStore``
keeps everything in process and optionally mirrors settings to a JSON file
so configuration survives restarts.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from collections import deque
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

from weighsync.models.capture import CaptureRecord
from weighsync.models.session import Activity, LorrySession, SessionStatus, TareConfiguration

_logger = logging.getLogger(__name__)

DEFAULT_MAX_ACTIVITIES = 5000


class Store(Protocol):
    """Structural store interface used by the session manager and config layer."""

    async def get_tare(self, date: str) -> TareConfiguration | None: ...

    async def upsert_tare(self, tare: TareConfiguration) -> TareConfiguration: ...

    async def add_session(self, session: LorrySession) -> LorrySession: ...

    async def update_session(self, session: LorrySession) -> LorrySession: ...

    async def get_session(self, session_id: str) -> LorrySession | None: ...

    async def list_sessions(self, status: SessionStatus | None = None) -> list[LorrySession]: ...

    async def delete_session(self, session_id: str) -> bool: ...

    async def add_capture(self, capture: CaptureRecord) -> CaptureRecord: ...

    async def list_captures(
        self,
        *,
        session_id: str | None = None,
        since: datetime | None = None,
    ) -> list[CaptureRecord]: ...

    async def delete_captures(self, session_id: str) -> int: ...

    async def add_activity(self, activity: Activity) -> Activity: ...

    async def recent_activities(self, limit: int = 10) -> list[Activity]: ...

    async def get_settings(self, category: str) -> dict[str, Any] | None: ...

    async def upsert_settings(self, category: str, values: dict[str, Any]) -> None: ...


class MemoryStore:
    """In-process store. Records are immutable models, so reads share them.

    The activity log keeps the newest *max_activities* entries; ``None``
    keeps everything.
    """

    def __init__(
        self,
        *,
        settings_path: str | Path | None = None,
        max_activities: int | None = DEFAULT_MAX_ACTIVITIES,
    ) -> None:
        if max_activities is not None and max_activities < 1:
            raise ValueError("max_activities must be >= 1")
        self._tares: dict[str, TareConfiguration] = {}
        self._sessions: dict[str, LorrySession] = {}
        self._captures: list[CaptureRecord] = []
        self._activities: deque[Activity] = deque(maxlen=max_activities)
        self._settings_path = Path(settings_path) if settings_path is not None else None
        self._settings: dict[str, dict[str, Any]] = self._read_settings_file()

    def _read_settings_file(self) -> dict[str, dict[str, Any]]:
        path = self._settings_path
        if path is None or not path.exists():
            return {}
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            _logger.warning("Ignoring unreadable settings file %s: %s", path, exc)
            return {}
        if not isinstance(data, dict):
            _logger.warning("Ignoring settings file %s: expected an object", path)
            return {}
        return {str(k): dict(v) for k, v in data.items() if isinstance(v, dict)}

    def _write_settings_file(self, snapshot: dict[str, dict[str, Any]]) -> None:
        path = self._settings_path
        if path is None:
            return
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(json.dumps(snapshot, indent=2, sort_keys=True), encoding="utf-8")
        tmp.replace(path)

    # Tare configurations

    async def get_tare(self, date: str) -> TareConfiguration | None:
        return self._tares.get(date)

    async def upsert_tare(self, tare: TareConfiguration) -> TareConfiguration:
        existing = self._tares.get(tare.date)
        if existing is not None:
            tare = existing.model_copy(update={"tare_weight": tare.tare_weight})
        self._tares[tare.date] = tare
        return tare

    # Sessions

    async def add_session(self, session: LorrySession) -> LorrySession:
        self._sessions[session.id] = session
        return session

    async def update_session(self, session: LorrySession) -> LorrySession:
        if session.id not in self._sessions:
            raise KeyError(session.id)
        self._sessions[session.id] = session
        return session

    async def get_session(self, session_id: str) -> LorrySession | None:
        return self._sessions.get(session_id)

    async def list_sessions(self, status: SessionStatus | None = None) -> list[LorrySession]:
        sessions = sorted(self._sessions.values(), key=lambda s: s.created_at)
        if status is None:
            return sessions
        return [s for s in sessions if s.status == status]

    async def delete_session(self, session_id: str) -> bool:
        return self._sessions.pop(session_id, None) is not None

    # Captures

    async def add_capture(self, capture: CaptureRecord) -> CaptureRecord:
        self._captures.append(capture)
        return capture

    async def list_captures(
        self,
        *,
        session_id: str | None = None,
        since: datetime | None = None,
    ) -> list[CaptureRecord]:
        captures = self._captures
        if session_id is not None:
            captures = [c for c in captures if c.session_id == session_id]
        if since is not None:
            captures = [c for c in captures if c.created_at >= since]
        return list(captures)

    async def delete_captures(self, session_id: str) -> int:
        before = len(self._captures)
        self._captures = [c for c in self._captures if c.session_id != session_id]
        return before - len(self._captures)

    # Activity log

    async def add_activity(self, activity: Activity) -> Activity:
        self._activities.append(activity)
        return activity

    async def recent_activities(self, limit: int = 10) -> list[Activity]:
        if limit <= 0:
            return []
        return list(itertools.islice(reversed(self._activities), limit))

    # Settings

    async def get_settings(self, category: str) -> dict[str, Any] | None:
        values = self._settings.get(category)
        return dict(values) if values is not None else None

    async def upsert_settings(self, category: str, values: dict[str, Any]) -> None:
        self._settings[category] = dict(values)
        if self._settings_path is not None:
            snapshot = {k: dict(v) for k, v in self._settings.items()}
            await asyncio.to_thread(self._write_settings_file, snapshot)
            _logger.debug("Persisted %s settings to %s", category, self._settings_path)
