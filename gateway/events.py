"""
gateway/events.py — Manager Change Notifications

The edge server subscribes once at startup, either with a callback or with
an asyncio.Queue, and fans the events out to UI clients. Handlers run
synchronously on the event loop in subscription order; a failing handler is
logged and does not stop delivery to the others.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from observability.logger import get_logger

log = get_logger(__name__)


class EventType(str, Enum):
    GATEWAY_ADDED   = "gateway:added"
    GATEWAY_REMOVED = "gateway:removed"
    GATEWAY_UPDATE  = "gateway:update"
    AGENT_UPDATE    = "agent:update"
    AGENT_REMOVED   = "agent:removed"
    CHAT_EVENT      = "chat:event"


@dataclass(frozen=True)
class ManagerEvent:
    type: EventType
    payload: dict[str, Any] = field(default_factory=dict)


Handler = Callable[[ManagerEvent], None]


class EventHub:
    """Subscriber registry for ManagerEvents."""

    def __init__(self) -> None:
        self._handlers: list[Handler] = []
        self._queues: list[asyncio.Queue] = []

    def subscribe(self, handler: Handler) -> Callable[[], None]:
        """Register a callback. Returns a function that unsubscribes it."""
        self._handlers.append(handler)

        def _unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return _unsubscribe

    def subscribe_queue(self, maxsize: int = 0) -> asyncio.Queue:
        """Return a queue that receives every subsequent event."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._queues.append(queue)
        return queue

    def unsubscribe_queue(self, queue: asyncio.Queue) -> None:
        if queue in self._queues:
            self._queues.remove(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._handlers) + len(self._queues)

    def emit(self, event_type: EventType, payload: dict[str, Any]) -> ManagerEvent:
        event = ManagerEvent(type=event_type, payload=payload)
        for handler in list(self._handlers):
            try:
                handler(event)
            except Exception as e:
                log.error(
                    "events.handler_failed",
                    event_type=event_type.value,
                    error=str(e),
                    exc_info=True,
                )
        for queue in list(self._queues):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                log.warning("events.queue_full", event_type=event_type.value)
        return event
