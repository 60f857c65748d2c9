"""
In-process event bus.

Components publish state transitions (job status, scheduled-message
status, outbox sync results, inbound messages) on named topics; the
realtime broadcaster and tests subscribe. Handlers run sequentially and a
failing handler is logged without affecting the publisher.
"""
from __future__ import annotations

import asyncio
import structlog
from collections import defaultdict
from typing import Any, Awaitable, Callable, Optional, Union

from models.schemas import DomainEvent

logger = structlog.get_logger()

EventHandler = Callable[[DomainEvent], Union[Awaitable[None], None]]


class Topics:
    JOBS = "jobs"
    SCHEDULED = "scheduled_messages"
    OUTBOX = "outbox"
    INBOUND = "inbound"
    ALL = "*"


class EventBus:
    def __init__(self):
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self._history: list[DomainEvent] = []
        self.history_size = 200

    def subscribe(self, topic: str, handler: EventHandler) -> Callable[[], None]:
        """Register a handler; returns a callable that unsubscribes it."""
        self._handlers[topic].append(handler)

        def _unsubscribe():
            if handler in self._handlers.get(topic, []):
                self._handlers[topic].remove(handler)

        return _unsubscribe

    async def publish(
        self,
        topic: str,
        event_type: str,
        data: Optional[dict[str, Any]] = None,
        user_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ) -> DomainEvent:
        event = DomainEvent(
            topic=topic,
            type=event_type,
            data=data or {},
            user_id=user_id,
            conversation_id=conversation_id,
        )
        self._history.append(event)
        if len(self._history) > self.history_size:
            self._history = self._history[-self.history_size:]

        for handler in list(self._handlers.get(topic, [])) + list(self._handlers.get(Topics.ALL, [])):
            try:
                result = handler(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error("event_handler_failed", topic=topic, type=event_type,
                             error=str(e), exc_info=True)
        return event

    def recent(self, topic: Optional[str] = None, limit: int = 50) -> list[DomainEvent]:
        events = [e for e in self._history if topic is None or e.topic == topic]
        return events[-limit:]
