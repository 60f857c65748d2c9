"""
Abstract stores — Interfaces for all persistence backends.

Implementations:
  - SqlScheduledMessageStore / SqlOutboxReceiptStore   (SQLAlchemy async)
  - InMemoryScheduledMessageStore / InMemoryOutboxReceiptStore

State-changing scheduled-message operations are conditional updates: each
one names the state it expects to find, and reports whether it applied.
Concurrent dispatchers and cancellations therefore never both win.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from models.schemas import OutboxReceipt, ScheduledMessage, ScheduledMessageStatus


class ScheduledMessageStore(ABC):
    """Interface that all scheduled-message backends must implement."""

    @abstractmethod
    async def create(self, message: ScheduledMessage) -> ScheduledMessage:
        ...

    @abstractmethod
    async def get(self, message_id: str) -> Optional[ScheduledMessage]:
        ...

    @abstractmethod
    async def list_messages(
        self,
        user_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
        status: Optional[ScheduledMessageStatus] = None,
        limit: int = 100,
    ) -> list[ScheduledMessage]:
        """Ordered by scheduled_time ascending."""
        ...

    @abstractmethod
    async def claim_due(self, now: datetime, limit: int = 100) -> list[ScheduledMessage]:
        """
        Claim pending, unclaimed messages with scheduled_time <= now whose
        backoff (next_attempt_at) has elapsed, oldest first.
        """
        ...

    @abstractmethod
    async def mark_sent(self, message_id: str, sent_at: datetime) -> bool:
        ...

    @abstractmethod
    async def mark_failed(self, message_id: str, retry_count: int, error: str) -> bool:
        ...

    @abstractmethod
    async def reschedule(
        self, message_id: str, retry_count: int, next_attempt_at: datetime, error: str,
    ) -> bool:
        """Release the claim and leave the message pending until next_attempt_at."""
        ...

    @abstractmethod
    async def cancel(self, message_id: str) -> bool:
        """Cancel only if pending and unclaimed."""
        ...

    @abstractmethod
    async def release_stale_claims(self, claimed_before: datetime) -> int:
        ...

    @abstractmethod
    async def purge_terminal(self, before: datetime) -> int:
        ...

    @abstractmethod
    async def count_by_status(self, user_id: Optional[str] = None) -> dict[str, int]:
        ...


class OutboxReceiptStore(ABC):
    """Server-side record of client outbox ids already accepted."""

    @abstractmethod
    async def reserve(
        self, user_id: str, client_id: str, content_hash: str,
    ) -> tuple[OutboxReceipt, bool]:
        """Insert a reservation unless one exists. Returns (receipt, created)."""
        ...

    @abstractmethod
    async def complete(
        self, user_id: str, client_id: str, message_id: str, channel_message_id: str = "",
    ) -> None:
        ...

    @abstractmethod
    async def release(self, user_id: str, client_id: str) -> None:
        """Drop a reservation whose delivery failed so the client may retry."""
        ...

    @abstractmethod
    async def get(self, user_id: str, client_id: str) -> Optional[OutboxReceipt]:
        ...
