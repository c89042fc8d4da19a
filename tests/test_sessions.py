from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from decimal import Decimal

import pytest

from weighsync.config import TolerancePolicy
from weighsync.events import EventBus
from weighsync.exceptions import CaptureRejected, InvalidTransition, SessionNotFound
from weighsync.models import (
    DisagreementAction,
    EventType,
    SessionStatus,
    ToleranceStatus,
    WeightSample,
    WeightSource,
)
from weighsync.sessions import SessionManager
from weighsync.state.engine import ReconciliationEngine
from weighsync.store import MemoryStore


def _clock() -> datetime:
    return datetime(2026, 3, 14, 9, 30, tzinfo=UTC)


def _manager(
    action: DisagreementAction = DisagreementAction.LOG,
    *,
    retain: bool = True,
) -> tuple[SessionManager, ReconciliationEngine, MemoryStore, EventBus]:
    store = MemoryStore()
    engine = ReconciliationEngine(TolerancePolicy(on_disagreement=action))
    bus = EventBus()
    manager = SessionManager(store, engine, bus, retain_captures_on_remove=retain, clock=_clock)
    return manager, engine, store, bus


def _weigh(engine: ReconciliationEngine, controller: str, scale: str) -> None:
    engine.update(WeightSample(source=WeightSource.CONTROLLER, value=controller))
    engine.update(WeightSample(source=WeightSource.SCALE, value=scale))


async def _active(manager: SessionManager, tare: str = "1.250") -> str:
    await manager.save_tare("2026-03-14", tare)
    session = await manager.create_session("KA-01-1234", "Line 1", "R. Rao")
    await manager.activate(session.id)
    return session.id


@pytest.mark.asyncio
async def test_new_session_waits_in_queue() -> None:
    manager, _, _, bus = _manager()
    subscription = bus.subscribe()

    session = await manager.create_session(" KA-01-1234 ", "Line 1", "R. Rao", phone="+91 98450 00000")

    assert session.status == SessionStatus.WAITING
    assert session.lorry_number == "KA-01-1234"
    assert session.total_bags == 0
    event = subscription.get_nowait()
    assert event is not None
    assert event.type == EventType.SESSION_CREATED
    assert event.data["session"]["lorryNumber"] == "KA-01-1234"


@pytest.mark.asyncio
async def test_activate_requires_tare_for_operating_day() -> None:
    manager, _, _, _ = _manager()
    session = await manager.create_session("KA-01-1234", "Line 1", "R. Rao")

    with pytest.raises(InvalidTransition, match="no tare"):
        await manager.activate(session.id)

    assert (await manager.get_session(session.id)).status == SessionStatus.WAITING


@pytest.mark.asyncio
async def test_activate_snapshots_tare_weight() -> None:
    manager, _, _, _ = _manager()
    session_id = await _active(manager, tare="1.250")

    await manager.save_tare("2026-03-14", "2.000")

    session = await manager.get_session(session_id)
    assert session.status == SessionStatus.ACTIVE
    assert session.tare_weight == Decimal("1.250")
    tare = await manager.tare_for()
    assert tare is not None
    assert tare.tare_weight == Decimal("2.000")


@pytest.mark.asyncio
async def test_only_one_session_may_be_active() -> None:
    manager, _, _, _ = _manager()
    await _active(manager)
    second = await manager.create_session("KA-02-9999", "Line 2", "S. Iyer")

    with pytest.raises(InvalidTransition, match="already active"):
        await manager.activate(second.id)


@pytest.mark.asyncio
async def test_concurrent_activation_first_writer_wins() -> None:
    manager, _, _, _ = _manager()
    await manager.save_tare("2026-03-14", "1.0")
    first = await manager.create_session("KA-01-1111", "Line 1", "A")
    second = await manager.create_session("KA-01-2222", "Line 1", "B")

    results = await asyncio.gather(
        manager.activate(first.id),
        manager.activate(second.id),
        return_exceptions=True,
    )

    assert not isinstance(results[0], BaseException)
    assert isinstance(results[1], InvalidTransition)
    active = await manager.list_sessions(SessionStatus.ACTIVE)
    assert [s.id for s in active] == [first.id]


@pytest.mark.asyncio
async def test_capture_uses_session_tare() -> None:
    manager, engine, _, bus = _manager()
    session_id = await _active(manager, tare="1.250")
    subscription = bus.subscribe([EventType.CAPTURE_CREATED])
    _weigh(engine, "15.520", "15.500")

    capture = await manager.record_capture("TAG-0001")

    assert capture.session_id == session_id
    assert capture.final_weight == Decimal("15.520")
    assert capture.tare_weight == Decimal("1.250")
    assert capture.net_weight == Decimal("14.270")
    assert capture.tolerance_status == ToleranceStatus.GOOD
    assert capture.controller_weight == Decimal("15.520")
    assert capture.scale_weight == Decimal("15.500")
    event = subscription.get_nowait()
    assert event is not None
    assert event.data["lorryNumber"] == "KA-01-1234"
    assert event.data["capture"]["tagId"] == "TAG-0001"


@pytest.mark.asyncio
async def test_block_policy_rejects_error_and_persists_nothing() -> None:
    manager, engine, store, _ = _manager(DisagreementAction.BLOCK)
    session_id = await _active(manager)
    _weigh(engine, "15.00", "15.20")

    with pytest.raises(CaptureRejected):
        await manager.record_capture("TAG-0001")

    assert await store.list_captures(session_id=session_id) == []
    activities = await manager.recent_activities(1)
    assert activities[0].type == "capture_rejected"


@pytest.mark.asyncio
async def test_block_policy_allows_warning() -> None:
    manager, engine, _, _ = _manager(DisagreementAction.BLOCK)
    await _active(manager)
    _weigh(engine, "15.00", "15.08")

    capture = await manager.record_capture("TAG-0001")

    assert capture.tolerance_status == ToleranceStatus.WARNING


@pytest.mark.asyncio
async def test_log_policy_persists_error_with_warning(caplog: pytest.LogCaptureFixture) -> None:
    manager, engine, _, _ = _manager(DisagreementAction.LOG)
    session_id = await _active(manager)
    _weigh(engine, "15.00", "15.20")

    with caplog.at_level(logging.WARNING, logger="weighsync.sessions"):
        capture = await manager.record_capture("TAG-0001")

    assert capture.tolerance_status == ToleranceStatus.ERROR
    assert capture.requires_review is False
    assert len(await manager.captures_for(session_id)) == 1
    assert any("tolerance error" in record.getMessage() for record in caplog.records)


@pytest.mark.asyncio
async def test_review_policy_flags_non_good_captures() -> None:
    manager, engine, _, _ = _manager(DisagreementAction.REVIEW)
    await _active(manager)

    _weigh(engine, "15.00", "15.08")
    flagged = await manager.record_capture("TAG-0001")
    _weigh(engine, "15.00", "15.01")
    clean = await manager.record_capture("TAG-0002")

    assert flagged.requires_review is True
    assert clean.requires_review is False


@pytest.mark.asyncio
async def test_capture_rejected_without_samples_or_tag() -> None:
    manager, engine, _, _ = _manager()
    await _active(manager)

    with pytest.raises(CaptureRejected, match="no weight"):
        await manager.record_capture("TAG-0001")

    _weigh(engine, "15.0", "15.0")
    with pytest.raises(CaptureRejected, match="tag"):
        await manager.record_capture("   ")


@pytest.mark.asyncio
async def test_capture_requires_active_session() -> None:
    manager, engine, _, _ = _manager()
    session = await manager.create_session("KA-01-1234", "Line 1", "R. Rao")
    _weigh(engine, "15.0", "15.0")

    with pytest.raises(InvalidTransition):
        await manager.record_capture("TAG-0001")
    with pytest.raises(InvalidTransition):
        await manager.record_capture("TAG-0001", session_id=session.id)


@pytest.mark.asyncio
async def test_complete_records_capture_count() -> None:
    manager, engine, _, _ = _manager()
    session_id = await _active(manager)
    _weigh(engine, "15.0", "15.0")
    for n in range(3):
        await manager.record_capture(f"TAG-{n}")

    completed = await manager.complete()

    assert completed.status == SessionStatus.COMPLETED
    assert completed.total_bags == 3
    assert (await manager.get_session(session_id)).is_terminal


@pytest.mark.asyncio
async def test_complete_accepts_explicit_count() -> None:
    manager, engine, _, _ = _manager()
    session_id = await _active(manager)
    _weigh(engine, "15.0", "15.0")
    for n in range(3):
        await manager.record_capture(f"TAG-{n}")

    completed = await manager.complete(session_id, total_bags=4)

    assert completed.total_bags == 4


@pytest.mark.asyncio
async def test_completed_session_is_terminal() -> None:
    manager, _, _, _ = _manager()
    session_id = await _active(manager)
    await manager.complete()

    with pytest.raises(InvalidTransition):
        await manager.complete(session_id)
    with pytest.raises(InvalidTransition):
        await manager.activate(session_id)
    with pytest.raises(InvalidTransition):
        await manager.remove(session_id)


@pytest.mark.asyncio
async def test_completion_frees_the_active_slot() -> None:
    manager, _, _, _ = _manager()
    await _active(manager)
    await manager.complete()
    nxt = await manager.create_session("KA-02-9999", "Line 2", "S. Iyer")

    activated = await manager.activate(nxt.id)

    assert activated.status == SessionStatus.ACTIVE


@pytest.mark.asyncio
async def test_remove_keeps_captures_by_default() -> None:
    manager, engine, store, bus = _manager()
    session_id = await _active(manager)
    _weigh(engine, "15.0", "15.0")
    await manager.record_capture("TAG-0001")
    subscription = bus.subscribe([EventType.SESSION_REMOVED])

    await manager.remove(session_id)

    with pytest.raises(SessionNotFound):
        await manager.get_session(session_id)
    assert len(await store.list_captures(session_id=session_id)) == 1
    event = subscription.get_nowait()
    assert event is not None
    assert event.data == {"sessionId": session_id}


@pytest.mark.asyncio
async def test_remove_can_drop_captures() -> None:
    manager, engine, store, _ = _manager(retain=False)
    session_id = await _active(manager)
    _weigh(engine, "15.0", "15.0")
    await manager.record_capture("TAG-0001")

    await manager.remove(session_id)

    assert await store.list_captures(session_id=session_id) == []


@pytest.mark.asyncio
async def test_todays_captures_and_stats() -> None:
    manager, engine, _, _ = _manager()
    await _active(manager, tare="1.000")
    _weigh(engine, "15.00", "15.00")
    await manager.record_capture("TAG-1")
    _weigh(engine, "16.00", "16.08")
    await manager.record_capture("TAG-2")

    captures = await manager.todays_captures()
    stats = await manager.stats()

    assert {c.tag_id for c in captures} == {"TAG-1", "TAG-2"}
    assert stats.total_captures == 2
    assert stats.tolerance_violations == 1
    assert stats.average_net_weight == Decimal("14.500")
    assert stats.active_sessions == 1


@pytest.mark.asyncio
async def test_activity_log_is_newest_first() -> None:
    manager, _, _, _ = _manager()
    await _active(manager)

    activities = await manager.recent_activities(3)

    assert [a.type for a in activities] == ["session_status_changed", "session_created", "tare_config"]


@pytest.mark.asyncio
async def test_each_capture_bumps_running_bag_count() -> None:
    manager, engine, _, bus = _manager()
    session_id = await _active(manager)
    subscription = bus.subscribe([EventType.CAPTURE_CREATED])
    _weigh(engine, "15.0", "15.0")

    for n in range(3):
        await manager.record_capture(f"TAG-{n}")

    assert (await manager.get_session(session_id)).total_bags == 3
    counts = []
    while (event := subscription.get_nowait()) is not None:
        counts.append(event.data["totalBags"])
    assert counts == [1, 2, 3]


@pytest.mark.asyncio
async def test_rejected_capture_leaves_bag_count() -> None:
    manager, engine, _, _ = _manager(DisagreementAction.BLOCK)
    session_id = await _active(manager)
    _weigh(engine, "15.00", "15.20")

    with pytest.raises(CaptureRejected):
        await manager.record_capture("TAG-0001")

    assert (await manager.get_session(session_id)).total_bags == 0
