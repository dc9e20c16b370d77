from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from typing import Generic, TypeVar

from schemaflow.core.config import get_settings
from schemaflow.pipeline.events import EventBus, EventType, LifecycleEvent, Unsubscribe

logger = logging.getLogger(__name__)

T = TypeVar("T")

REFRESH_EVENTS = (
    EventType.UPLOAD_COMPLETED,
    EventType.PROCESSING_COMPLETED,
    EventType.DELETE_COMPLETED,
    EventType.ERROR,
)


class FileListRefresher(Generic[T]):
    """Coalesces file-list refreshes.

    Fetch starts are at least ``min_interval`` seconds apart. While a fetch is
    in flight, every further ``refresh()`` shares a single queued follow-up.
    """

    def __init__(
        self,
        fetch: Callable[[], Awaitable[T]],
        min_interval: float | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._fetch = fetch
        self._min_interval = (
            get_settings().file_list_min_interval if min_interval is None else min_interval
        )
        self._clock = clock
        self._last_started: float | None = None
        self._inflight: asyncio.Task[T] | None = None
        self._queued: asyncio.Task[T] | None = None
        self._triggered: set[asyncio.Task[T]] = set()
        self.fetch_count = 0
        self.latest: T | None = None

    async def refresh(self) -> T:
        if self._queued is not None:
            return await asyncio.shield(self._queued)
        if self._inflight is not None and not self._inflight.done():
            self._queued = asyncio.create_task(self._run_after(self._inflight))
            return await asyncio.shield(self._queued)
        self._inflight = asyncio.create_task(self._run())
        return await asyncio.shield(self._inflight)

    async def _run_after(self, previous: asyncio.Task[T]) -> T:
        # Cancelling the queued fetch must leave the in-flight one running.
        await asyncio.wait({previous})
        self._inflight = asyncio.current_task()  # type: ignore[assignment]
        self._queued = None
        return await self._run()

    async def _run(self) -> T:
        if self._last_started is not None:
            delay = self._min_interval - (self._clock() - self._last_started)
            if delay > 0:
                await asyncio.sleep(delay)
        self._last_started = self._clock()
        self.fetch_count += 1
        logger.debug("refreshing file list (fetch %d)", self.fetch_count)
        self.latest = await self._fetch()
        return self.latest

    def follow(
        self,
        events: EventBus,
        event_types: Iterable[EventType] = REFRESH_EVENTS,
    ) -> Unsubscribe:
        """Refresh in the background whenever one of ``event_types`` is published."""
        unsubscribers = [events.subscribe(event_type, self._on_event) for event_type in event_types]

        def unsubscribe() -> None:
            for unsubscribe_one in unsubscribers:
                unsubscribe_one()

        return unsubscribe

    def _on_event(self, event: LifecycleEvent) -> None:
        task = asyncio.get_running_loop().create_task(self.refresh())
        self._triggered.add(task)
        task.add_done_callback(self._on_triggered_done)

    def _on_triggered_done(self, task: asyncio.Task[T]) -> None:
        self._triggered.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("file list refresh failed: %s", task.exception())

    async def settle(self) -> None:
        """Wait for every event-triggered refresh scheduled so far."""
        while self._triggered:
            await asyncio.wait(set(self._triggered))

    async def close(self) -> None:
        pending = list(self._triggered)
        self._triggered.clear()
        queued, self._queued = self._queued, None
        if queued is not None:
            pending.append(queued)
        for task in pending:
            task.cancel()
        for task in pending:
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task
