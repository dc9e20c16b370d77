from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    """Cooperative cancellation flag shared between a task and its owner."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def sleep(self, delay: float) -> bool:
        """Wait ``delay`` seconds; returns True if cancelled meanwhile."""
        if self.cancelled:
            return True
        if delay <= 0:
            await asyncio.sleep(0)
            return self.cancelled
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True


class ScheduledTask(Generic[T]):
    def __init__(
        self,
        factory: Callable[[CancellationToken], Awaitable[T]],
        *,
        name: str | None = None,
        token: CancellationToken | None = None,
    ) -> None:
        self._factory = factory
        self.name = name
        self.token = token or CancellationToken()
        self._task: asyncio.Task[T] | None = None

    @property
    def started(self) -> bool:
        return self._task is not None

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    def start(self) -> ScheduledTask[T]:
        if self._task is None:
            self._task = asyncio.create_task(self._factory(self.token), name=self.name)
        return self

    def add_done_callback(self, callback: Callable[[ScheduledTask[T]], object]) -> None:
        if self._task is None:
            raise RuntimeError(f"task {self.name} has not been started")
        self._task.add_done_callback(lambda _: callback(self))

    def cancel(self) -> None:
        self.token.cancel()

    async def wait(self) -> T | None:
        if self._task is None:
            return None
        return await self._task

    async def stop(self) -> None:
        """Cancel and wait for the task to unwind."""
        self.cancel()
        if self._task is None or self._task.done():
            return
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.exception("task %s failed while stopping", self.name)
