import asyncio
import time

import pytest

from schemaflow.pipeline.events import EventBus, EventType
from schemaflow.pipeline.refresh import FileListRefresher


class GatedFetch:
    def __init__(self) -> None:
        self.gate = asyncio.Event()
        self.started_at: list[float] = []

    async def __call__(self) -> int:
        self.started_at.append(time.monotonic())
        await self.gate.wait()
        return len(self.started_at)


@pytest.mark.asyncio
async def test_concurrent_refreshes_share_one_follow_up() -> None:
    fetch = GatedFetch()
    refresher = FileListRefresher(fetch, min_interval=0.01)

    first = asyncio.create_task(refresher.refresh())
    await asyncio.sleep(0)
    second = asyncio.create_task(refresher.refresh())
    third = asyncio.create_task(refresher.refresh())
    await asyncio.sleep(0)
    fetch.gate.set()

    results = await asyncio.gather(first, second, third)

    assert results == [1, 2, 2]
    assert refresher.fetch_count == 2


@pytest.mark.asyncio
async def test_fetches_respect_min_interval() -> None:
    fetch = GatedFetch()
    fetch.gate.set()
    refresher = FileListRefresher(fetch, min_interval=0.05)

    await refresher.refresh()
    await refresher.refresh()

    assert len(fetch.started_at) == 2
    assert fetch.started_at[1] - fetch.started_at[0] >= 0.04


@pytest.mark.asyncio
async def test_close_cancels_queued_refresh() -> None:
    fetch = GatedFetch()
    refresher = FileListRefresher(fetch, min_interval=0)

    first = asyncio.create_task(refresher.refresh())
    await asyncio.sleep(0)
    queued = asyncio.create_task(refresher.refresh())
    await asyncio.sleep(0)

    await refresher.close()
    fetch.gate.set()

    assert await first == 1
    with pytest.raises(asyncio.CancelledError):
        await queued
    assert refresher.fetch_count == 1


@pytest.mark.asyncio
async def test_follow_refreshes_on_lifecycle_events() -> None:
    fetch = GatedFetch()
    fetch.gate.set()
    bus = EventBus()
    refresher = FileListRefresher(fetch, min_interval=0)
    unsubscribe = refresher.follow(bus)

    bus.emit(EventType.UPLOAD_STARTED, file_id=1)
    await refresher.settle()
    assert refresher.fetch_count == 0

    bus.emit(EventType.UPLOAD_COMPLETED, file_id=1)
    await refresher.settle()
    assert refresher.fetch_count == 1
    assert refresher.latest == 1

    unsubscribe()
    bus.emit(EventType.DELETE_COMPLETED, file_id=1)
    await refresher.settle()
    assert refresher.fetch_count == 1
    await refresher.close()
