from __future__ import annotations

import itertools
import logging
from collections.abc import Callable
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    UPLOAD_STARTED = "file:upload:started"
    UPLOAD_PROGRESS = "file:upload:progress"
    UPLOAD_COMPLETED = "file:upload:completed"
    PROCESSING_STARTED = "file:processing:started"
    PROCESSING_PROGRESS = "file:processing:progress"
    PROCESSING_COMPLETED = "file:processing:completed"
    SCHEMA_CREATED = "file:schema:created"
    SCHEMA_UPDATED = "file:schema:updated"
    MAPPING_REQUIRED = "file:mapping:required"
    MAPPING_COMPLETED = "file:mapping:completed"
    ACTIVATION_STARTED = "file:activation:started"
    ACTIVATION_COMPLETED = "file:activation:completed"
    DELETE_STARTED = "file:delete:started"
    DELETE_COMPLETED = "file:delete:completed"
    ERROR = "file:error"
    ALL = "all"


class LifecycleEvent(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    type: EventType
    file_id: int | None = None
    file_name: str | None = None
    project_id: int | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    error: Exception | None = None
    stage: str | None = None


EventHandler = Callable[[LifecycleEvent], None]
Unsubscribe = Callable[[], None]


class EventBus:
    """Synchronous publish/subscribe for file lifecycle events.

    Handlers for ``event.type`` run first, in subscription order, then the
    ``EventType.ALL`` handlers. A failing handler is logged and skipped.
    """

    def __init__(self) -> None:
        self._handlers: dict[EventType, list[tuple[int, EventHandler]]] = {}
        self._ids = itertools.count()

    def subscribe(self, event_type: EventType | str, handler: EventHandler) -> Unsubscribe:
        event_type = EventType(event_type)
        token = next(self._ids)
        self._handlers.setdefault(event_type, []).append((token, handler))

        def unsubscribe() -> None:
            handlers = self._handlers.get(event_type, [])
            self._handlers[event_type] = [entry for entry in handlers if entry[0] != token]

        return unsubscribe

    def publish(self, event: LifecycleEvent) -> None:
        logger.debug("event %s file=%s", event.type.value, event.file_id)
        targets = list(self._handlers.get(event.type, []))
        if event.type != EventType.ALL:
            targets.extend(self._handlers.get(EventType.ALL, []))
        for _, handler in targets:
            try:
                handler(event)
            except Exception:
                logger.exception("handler for %s failed", event.type.value)

    def emit(self, event_type: EventType, **fields: Any) -> LifecycleEvent:
        event = LifecycleEvent(type=event_type, **fields)
        self.publish(event)
        return event

    def subscriber_count(self, event_type: EventType | str | None = None) -> int:
        if event_type is None:
            return sum(len(handlers) for handlers in self._handlers.values())
        return len(self._handlers.get(EventType(event_type), []))

    def clear(self) -> None:
        self._handlers.clear()
