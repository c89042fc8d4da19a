from __future__ import annotations

import pytest

from weighsync.config import StationConfig
from weighsync.exceptions import ConfigError
from weighsync.models import Activity
from weighsync.store import MemoryStore


@pytest.mark.asyncio
async def test_activity_log_keeps_newest_entries() -> None:
    store = MemoryStore(max_activities=3)

    for n in range(5):
        await store.add_activity(Activity(type="capture", message=f"capture {n}"))

    recent = await store.recent_activities(10)
    assert [a.message for a in recent] == ["capture 4", "capture 3", "capture 2"]
    assert [a.message for a in await store.recent_activities(1)] == ["capture 4"]


@pytest.mark.asyncio
async def test_activity_log_unbounded_when_disabled() -> None:
    store = MemoryStore(max_activities=None)

    for n in range(20):
        await store.add_activity(Activity(type="capture", message=f"capture {n}"))

    assert len(await store.recent_activities(100)) == 20
    assert await store.recent_activities(0) == []


def test_retention_bounds_are_validated() -> None:
    with pytest.raises(ValueError):
        MemoryStore(max_activities=0)
    with pytest.raises(ConfigError):
        StationConfig(max_activities=0)
    with pytest.raises(ConfigError):
        StationConfig(event_queue_size=0)
