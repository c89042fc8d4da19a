"""Session lifecycle and capture recording.

Every mutating operation runs under one ``asyncio.Lock`` so the
single-active invariant holds under concurrent callers: of two racing
``activate`` calls the first wins and the second raises
:class:`InvalidTransition`.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import date, datetime, time
from decimal import ROUND_HALF_UP, Decimal
from typing import Any
from zoneinfo import ZoneInfo

from weighsync.events import EventBus
from weighsync.exceptions import CaptureRejected, InvalidTransition, SessionNotFound
from weighsync.models._base import to_kg, utcnow
from weighsync.models.capture import CaptureRecord, DailyStats
from weighsync.models.events import EventType
from weighsync.models.session import (
    Activity,
    ActivityStatus,
    LorrySession,
    SessionStatus,
    TareConfiguration,
)
from weighsync.models.tolerance import ToleranceCheck, ToleranceStatus
from weighsync.state.engine import ReconciliationEngine
from weighsync.store import Store

_logger = logging.getLogger(__name__)

_ORIGIN = "sessions"


class SessionManager:
    """Queue of lorry sessions with a single active entry gating capture.

    Parameters
    ----------
    store : Store
        Persistence for tares, sessions, captures and activities.
    engine : ReconciliationEngine
        Source of tolerance checks when the caller does not pass one.
    bus : EventBus
        Receives ``session.*`` and ``capture.created`` events.
    timezone : str
        IANA zone that decides the operating day.
    retain_captures_on_remove : bool
        Keep a removed session's captures in the store.
    clock : callable
        Returns an aware ``datetime``; injectable for tests.
    """

    def __init__(
        self,
        store: Store,
        engine: ReconciliationEngine,
        bus: EventBus,
        *,
        timezone: str = "UTC",
        retain_captures_on_remove: bool = True,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._engine = engine
        self._bus = bus
        self._zone = ZoneInfo(timezone)
        self._retain_captures = retain_captures_on_remove
        self._clock = clock
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Operating day
    # ------------------------------------------------------------------

    def operating_day(self, at: datetime | None = None) -> str:
        """ISO date of the operating day containing *at* (default: now)."""
        moment = at or self._clock()
        return moment.astimezone(self._zone).date().isoformat()

    def _day_start(self, day: str) -> datetime:
        return datetime.combine(date.fromisoformat(day), time.min, tzinfo=self._zone)

    # ------------------------------------------------------------------
    # Tare
    # ------------------------------------------------------------------

    async def save_tare(self, day: str | date, weight: Any) -> TareConfiguration:
        """Store the tare weight for an operating day, replacing any previous one."""
        tare = TareConfiguration(date=day, tare_weight=weight)
        async with self._lock:
            saved = await self._store.upsert_tare(tare)
            await self._activity(
                "tare_config",
                f"Daily tare configuration saved for {saved.date} ({saved.tare_weight}kg)",
                metadata={"date": saved.date, "tareWeight": str(saved.tare_weight)},
            )
        _logger.info("Tare for %s set to %skg", saved.date, saved.tare_weight)
        return saved

    async def tare_for(self, day: str | date | None = None) -> TareConfiguration | None:
        if day is None:
            key = self.operating_day()
        elif isinstance(day, date):
            key = day.isoformat()
        else:
            key = day
        return await self._store.get_tare(key)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def create_session(
        self,
        lorry_number: str,
        line: str,
        line_manager: str,
        *,
        phone: str | None = None,
    ) -> LorrySession:
        """Add a lorry to the queue in ``waiting`` state."""
        session = LorrySession(
            lorry_number=lorry_number,
            line=line,
            line_manager=line_manager,
            phone=phone,
            created_at=self._clock(),
        )
        async with self._lock:
            await self._store.add_session(session)
            await self._activity(
                "session_created",
                f"Lorry {session.lorry_number} added to queue ({session.line})",
                metadata={"sessionId": session.id},
            )
        _logger.info("Session %s created for lorry %s", session.id, session.lorry_number)
        self._bus.publish(EventType.SESSION_CREATED, {"session": session.to_wire()}, origin=_ORIGIN)
        return session

    async def list_sessions(self, status: SessionStatus | None = None) -> list[LorrySession]:
        return await self._store.list_sessions(status)

    async def get_session(self, session_id: str) -> LorrySession:
        session = await self._store.get_session(session_id)
        if session is None:
            raise SessionNotFound(f"session {session_id} not found", session_id=session_id)
        return session

    async def active_session(self) -> LorrySession | None:
        active = await self._store.list_sessions(SessionStatus.ACTIVE)
        return active[0] if active else None

    async def activate(self, session_id: str) -> LorrySession:
        """Move a waiting session to ``active``.

        Requires that no other session is active and that a tare exists for
        the operating day; the tare weight is copied onto the session.
        """
        async with self._lock:
            session = await self.get_session(session_id)
            if session.status != SessionStatus.WAITING:
                raise InvalidTransition(
                    f"session {session_id} is {session.status.value}, expected waiting",
                    session_id=session_id,
                )
            current = await self.active_session()
            if current is not None:
                raise InvalidTransition(
                    f"lorry {current.lorry_number} is already active",
                    session_id=session_id,
                )
            day = self.operating_day()
            tare = await self._store.get_tare(day)
            if tare is None:
                raise InvalidTransition(f"no tare configured for {day}", session_id=session_id)

            updated = session.model_copy(
                update={"status": SessionStatus.ACTIVE, "tare_weight": tare.tare_weight}
            )
            await self._store.update_session(updated)
            await self._status_changed(updated)
        return updated

    async def complete(self, session_id: str | None = None, total_bags: int | None = None) -> LorrySession:
        """Finish the active session.

        Without *total_bags* the running bag count kept by
        :meth:`record_capture` is stored; an explicit count overrides it.
        """
        async with self._lock:
            session = await self._resolve_active(session_id)
            if total_bags is None:
                total_bags = session.total_bags
            elif total_bags < 0:
                raise InvalidTransition("total_bags must be >= 0", session_id=session.id)

            updated = session.model_copy(update={"status": SessionStatus.COMPLETED, "total_bags": total_bags})
            await self._store.update_session(updated)
            await self._status_changed(updated)
        return updated

    async def remove(self, session_id: str) -> None:
        """Remove a waiting or active session from the queue."""
        async with self._lock:
            session = await self.get_session(session_id)
            if session.is_terminal:
                raise InvalidTransition(f"session {session_id} is completed", session_id=session_id)
            await self._store.delete_session(session_id)
            dropped = 0
            if not self._retain_captures:
                dropped = await self._store.delete_captures(session_id)
            await self._activity(
                "session_removed",
                f"Lorry {session.lorry_number} removed from queue",
                metadata={"sessionId": session_id, "capturesDropped": dropped},
            )
        _logger.info("Session %s removed (captures dropped: %d)", session_id, dropped)
        self._bus.publish(EventType.SESSION_REMOVED, {"sessionId": session_id}, origin=_ORIGIN)

    # ------------------------------------------------------------------
    # Captures
    # ------------------------------------------------------------------

    async def record_capture(
        self,
        tag_id: str,
        session_id: str | None = None,
        check: ToleranceCheck | None = None,
    ) -> CaptureRecord:
        """Persist a capture for the active session and bump its bag count.

        Raises
        ------
        CaptureRejected
            Empty tag, no weight measured yet, or the ``block`` policy saw an
            ``error`` result. Nothing is persisted.
        InvalidTransition
            The target session is missing or not active.
        """
        tag = (tag_id or "").strip()
        if not tag:
            raise CaptureRejected("tag id is required")

        async with self._lock:
            session = await self._resolve_active(session_id)
            result = check or self._engine.check()
            if result.is_sentinel:
                raise CaptureRejected("no weight sample available")

            action = self._engine.policy.on_disagreement
            if self._engine.should_block(result, action):
                await self._activity(
                    "capture_rejected",
                    f"Capture {tag} blocked: difference {result.difference}kg exceeds {result.tolerance}kg",
                    status=ActivityStatus.ERROR,
                    metadata={"sessionId": session.id, "tagId": tag, "difference": str(result.difference)},
                )
                _logger.warning(
                    "Capture %s blocked for lorry %s: difference %skg",
                    tag,
                    session.lorry_number,
                    result.difference,
                )
                raise CaptureRejected(
                    f"weight difference {result.difference}kg is outside twice the tolerance {result.tolerance}kg"
                )

            tare_weight = session.tare_weight if session.tare_weight is not None else to_kg(0)
            capture = CaptureRecord(
                session_id=session.id,
                tag_id=tag,
                controller_weight=result.controller_weight,
                scale_weight=result.scale_weight,
                final_weight=result.final_weight,
                tare_weight=tare_weight,
                net_weight=result.final_weight - tare_weight,
                weight_source=result.weight_source,
                tolerance_status=result.status,
                weight_difference=result.difference,
                requires_review=self._engine.requires_review(result, action),
                created_at=self._clock(),
            )
            await self._store.add_capture(capture)
            session = await self._store.update_session(
                session.model_copy(update={"total_bags": session.total_bags + 1})
            )

            if result.status != ToleranceStatus.GOOD:
                _logger.warning(
                    "Capture %s recorded with tolerance %s (difference %skg)",
                    tag,
                    result.status.value,
                    result.difference,
                )
            await self._activity(
                "capture",
                f"Capture saved: {tag} ({capture.net_weight}kg net)",
                status=ActivityStatus.SUCCESS if result.status == ToleranceStatus.GOOD else ActivityStatus.WARNING,
                metadata={
                    "captureId": capture.id,
                    "toleranceStatus": capture.tolerance_status.value,
                    "weightDifference": str(capture.weight_difference),
                },
            )

        self._bus.publish(
            EventType.CAPTURE_CREATED,
            {"capture": capture.to_wire(), "lorryNumber": session.lorry_number, "totalBags": session.total_bags},
            origin=_ORIGIN,
        )
        return capture

    async def captures_for(self, session_id: str) -> list[CaptureRecord]:
        return await self._store.list_captures(session_id=session_id)

    async def todays_captures(self) -> list[CaptureRecord]:
        """Captures taken since the start of the operating day, newest first."""
        since = self._day_start(self.operating_day())
        captures = await self._store.list_captures(since=since)
        return sorted(captures, key=lambda c: c.created_at, reverse=True)

    async def stats(self) -> DailyStats:
        captures = await self.todays_captures()
        active = await self._store.list_sessions(SessionStatus.ACTIVE)
        if not captures:
            return DailyStats(active_sessions=len(active))
        total = sum((c.net_weight for c in captures), Decimal("0"))
        average = (total / len(captures)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
        return DailyStats(
            total_captures=len(captures),
            tolerance_violations=sum(1 for c in captures if c.tolerance_status != ToleranceStatus.GOOD),
            average_net_weight=average,
            active_sessions=len(active),
        )

    async def recent_activities(self, limit: int = 50) -> list[Activity]:
        return await self._store.recent_activities(limit)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _resolve_active(self, session_id: str | None) -> LorrySession:
        if session_id is None:
            session = await self.active_session()
            if session is None:
                raise InvalidTransition("no active session")
            return session
        session = await self.get_session(session_id)
        if session.status != SessionStatus.ACTIVE:
            raise InvalidTransition(
                f"session {session_id} is {session.status.value}, expected active",
                session_id=session_id,
            )
        return session

    async def _status_changed(self, session: LorrySession) -> None:
        await self._activity(
            "session_status_changed",
            f"Lorry {session.lorry_number} status changed to {session.status.value}",
            metadata={"sessionId": session.id, "newStatus": session.status.value},
        )
        _logger.info("Session %s -> %s", session.id, session.status.value)
        self._bus.publish(
            EventType.SESSION_STATUS_CHANGED,
            {"sessionId": session.id, "status": session.status.value, "totalBags": session.total_bags},
            origin=_ORIGIN,
        )

    async def _activity(
        self,
        kind: str,
        message: str,
        *,
        status: ActivityStatus = ActivityStatus.SUCCESS,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        await self._store.add_activity(
            Activity(type=kind, message=message, status=status, metadata=metadata or {}, created_at=self._clock())
        )
