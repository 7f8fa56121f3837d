"""
Publish/subscribe boundary between the core and its consumers (API, UI).

Publishers never depend on who listens; a failing subscriber is logged and
does not affect the publisher or other subscribers.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    TRANSFER_AVAILABLE = "transfer_available"
    TRANSFER_PROGRESS = "transfer_progress"
    TRANSFER_COMPLETED = "transfer_completed"
    TRANSFER_DISCARDED = "transfer_discarded"
    TRANSFER_ACKNOWLEDGED = "transfer_acknowledged"
    BATCH_STARTED = "batch_started"
    BATCH_FINISHED = "batch_finished"
    STATUS_REFRESHED = "status_refreshed"


@dataclass
class Event:
    event_type: EventType
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.event_type.value,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat().replace("+00:00", "Z"),
        }


class EventBus:
    """Async event bus; callbacks may be plain functions or coroutines."""

    def __init__(self, *, max_history: int = 500):
        self._subscribers: dict[EventType, list[Callable]] = {}
        self._history: list[Event] = []
        self._max_history = max_history

    def subscribe(self, event_type: EventType, callback: Callable) -> None:
        self._subscribers.setdefault(event_type, []).append(callback)

    def unsubscribe(self, event_type: EventType, callback: Callable) -> None:
        callbacks = self._subscribers.get(event_type)
        if callbacks and callback in callbacks:
            callbacks.remove(callback)

    async def publish(self, event: Event) -> None:
        self._history.append(event)
        if len(self._history) > self._max_history:
            self._history = self._history[-self._max_history:]

        for callback in list(self._subscribers.get(event.event_type, ())):
            try:
                result = callback(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("Event subscriber failed for %s", event.event_type.value)

    async def emit(self, event_type: EventType, **payload: Any) -> None:
        await self.publish(Event(event_type=event_type, payload=payload))

    def recent(self, event_type: Optional[EventType] = None, limit: int = 100) -> list[Event]:
        events = self._history
        if event_type is not None:
            events = [e for e in events if e.event_type == event_type]
        return events[-limit:]
