"""
Conversation access for realtime subscriptions.

A user may join ``conversation:{id}`` when they have scheduled a message
in that conversation, or when a scheduled-message or outbox event named
both the user and the conversation. Holders of an agent role (see
``auth.agent_roles``) are let into every conversation by the broadcaster.
"""
from __future__ import annotations

import structlog
from collections import defaultdict
from typing import Callable

from core.events import EventBus, Topics
from database.store_base import ScheduledMessageStore
from models.schemas import DomainEvent

logger = structlog.get_logger()


class ConversationAccess:

    def __init__(self, scheduled: ScheduledMessageStore):
        self.scheduled = scheduled
        self._members: dict[str, set[str]] = defaultdict(set)
        self._unsubscribers: list[Callable[[], None]] = []

    def grant(self, user_id: str, conversation_id: str) -> None:
        self._members[user_id].add(conversation_id)

    def attach(self, bus: EventBus) -> None:
        for topic in (Topics.SCHEDULED, Topics.OUTBOX):
            self._unsubscribers.append(bus.subscribe(topic, self._record))

    def detach(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

    def _record(self, event: DomainEvent) -> None:
        if event.user_id and event.conversation_id:
            self.grant(event.user_id, event.conversation_id)

    async def __call__(self, user_id: str, conversation_id: str) -> bool:
        if conversation_id in self._members.get(user_id, ()):
            return True
        owned = await self.scheduled.list_messages(user_id=user_id, conversation_id=conversation_id, limit=1)
        if owned:
            self.grant(user_id, conversation_id)
            return True
        logger.debug("conversation_access_denied", user_id=user_id, conversation_id=conversation_id)
        return False
