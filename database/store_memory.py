"""
In-memory stores — Dict-backed persistence for development and testing.

Features:
  - Zero dependencies (no database)
  - Same conditional-update semantics as the SQL stores
  - Atomic per operation via an asyncio.Lock (single event loop)
  - All data lost on process restart
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime
from typing import Optional

from database.store_base import OutboxReceiptStore, ScheduledMessageStore
from models.schemas import (
    OutboxReceipt, ScheduledMessage, ScheduledMessageStatus, utcnow,
)

logger = structlog.get_logger()

_TERMINAL = (ScheduledMessageStatus.SENT, ScheduledMessageStatus.FAILED, ScheduledMessageStatus.CANCELLED)


class InMemoryScheduledMessageStore(ScheduledMessageStore):

    def __init__(self):
        self._messages: dict[str, ScheduledMessage] = {}
        self._lock = asyncio.Lock()

    def _pending(self, message_id: str) -> Optional[ScheduledMessage]:
        msg = self._messages.get(message_id)
        if msg is None or msg.status != ScheduledMessageStatus.PENDING:
            return None
        return msg

    async def create(self, message: ScheduledMessage) -> ScheduledMessage:
        async with self._lock:
            self._messages[message.id] = message.model_copy(deep=True)
        return message

    async def get(self, message_id: str) -> Optional[ScheduledMessage]:
        msg = self._messages.get(message_id)
        return msg.model_copy(deep=True) if msg else None

    async def list_messages(self, user_id=None, conversation_id=None, status=None, limit=100):
        results = [
            m for m in self._messages.values()
            if (user_id is None or m.user_id == user_id)
            and (conversation_id is None or m.conversation_id == conversation_id)
            and (status is None or m.status == status)
        ]
        results.sort(key=lambda m: m.scheduled_time)
        return [m.model_copy(deep=True) for m in results[:limit]]

    async def claim_due(self, now: datetime, limit: int = 100) -> list[ScheduledMessage]:
        async with self._lock:
            due = [
                m for m in self._messages.values()
                if m.status == ScheduledMessageStatus.PENDING
                and m.dispatch_started_at is None
                and m.scheduled_time <= now
                and (m.next_attempt_at is None or m.next_attempt_at <= now)
            ]
            due.sort(key=lambda m: m.scheduled_time)
            claimed = []
            for msg in due[:limit]:
                msg.dispatch_started_at = now
                msg.updated_at = now
                claimed.append(msg.model_copy(deep=True))
            return claimed

    async def mark_sent(self, message_id: str, sent_at: datetime) -> bool:
        async with self._lock:
            msg = self._pending(message_id)
            if msg is None:
                return False
            msg.status = ScheduledMessageStatus.SENT
            msg.sent_at = sent_at
            msg.error_message = None
            msg.next_attempt_at = None
            msg.updated_at = utcnow()
            return True

    async def mark_failed(self, message_id: str, retry_count: int, error: str) -> bool:
        async with self._lock:
            msg = self._pending(message_id)
            if msg is None:
                return False
            msg.status = ScheduledMessageStatus.FAILED
            msg.retry_count = retry_count
            msg.error_message = error
            msg.next_attempt_at = None
            msg.updated_at = utcnow()
            return True

    async def reschedule(self, message_id, retry_count, next_attempt_at, error) -> bool:
        async with self._lock:
            msg = self._pending(message_id)
            if msg is None:
                return False
            msg.retry_count = retry_count
            msg.next_attempt_at = next_attempt_at
            msg.error_message = error
            msg.dispatch_started_at = None
            msg.updated_at = utcnow()
            return True

    async def cancel(self, message_id: str) -> bool:
        async with self._lock:
            msg = self._pending(message_id)
            if msg is None or msg.dispatch_started_at is not None:
                return False
            msg.status = ScheduledMessageStatus.CANCELLED
            msg.updated_at = utcnow()
            return True

    async def release_stale_claims(self, claimed_before: datetime) -> int:
        async with self._lock:
            stale = [
                m for m in self._messages.values()
                if m.status == ScheduledMessageStatus.PENDING
                and m.dispatch_started_at is not None
                and m.dispatch_started_at < claimed_before
            ]
            for msg in stale:
                msg.dispatch_started_at = None
            return len(stale)

    async def purge_terminal(self, before: datetime) -> int:
        async with self._lock:
            expired = [
                mid for mid, m in self._messages.items()
                if m.status in _TERMINAL and m.updated_at < before
            ]
            for mid in expired:
                del self._messages[mid]
            return len(expired)

    async def count_by_status(self, user_id: Optional[str] = None) -> dict[str, int]:
        counts = {s.value: 0 for s in ScheduledMessageStatus}
        for m in self._messages.values():
            if user_id is None or m.user_id == user_id:
                counts[m.status.value] += 1
        return counts


class InMemoryOutboxReceiptStore(OutboxReceiptStore):

    def __init__(self):
        self._receipts: dict[tuple[str, str], OutboxReceipt] = {}
        self._lock = asyncio.Lock()

    async def reserve(self, user_id, client_id, content_hash):
        async with self._lock:
            existing = self._receipts.get((user_id, client_id))
            if existing is not None:
                return existing.model_copy(), False
            receipt = OutboxReceipt(user_id=user_id, client_id=client_id, content_hash=content_hash)
            self._receipts[(user_id, client_id)] = receipt
            return receipt.model_copy(), True

    async def complete(self, user_id, client_id, message_id, channel_message_id=""):
        async with self._lock:
            receipt = self._receipts.get((user_id, client_id))
            if receipt is None:
                return
            receipt.state = "delivered"
            receipt.message_id = message_id
            receipt.channel_message_id = channel_message_id
            receipt.updated_at = utcnow()

    async def release(self, user_id, client_id):
        async with self._lock:
            receipt = self._receipts.get((user_id, client_id))
            if receipt is not None and receipt.state == "reserved":
                del self._receipts[(user_id, client_id)]

    async def get(self, user_id, client_id):
        receipt = self._receipts.get((user_id, client_id))
        return receipt.model_copy() if receipt else None
