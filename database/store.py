"""
SQL stores — Portable queries for PostgreSQL and SQLite.

Claims and cancellations are conditional UPDATEs (``WHERE status='pending'
AND dispatch_started_at IS NULL``); the affected row count says whether
this caller won. Receipts rely on the (user_id, client_id) unique
constraint for at-most-once reservation.
"""
from __future__ import annotations

import structlog
from datetime import datetime
from typing import Optional

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.models import OutboxReceiptRow, ScheduledMessageRow
from database.session import session_scope
from database.store_base import OutboxReceiptStore, ScheduledMessageStore
from models.schemas import (
    ChannelType, OutboxReceipt, ScheduledMessage, ScheduledMessageStatus,
    ensure_utc, utcnow,
)

logger = structlog.get_logger()

_PENDING = ScheduledMessageStatus.PENDING.value
_TERMINAL = [
    ScheduledMessageStatus.SENT.value,
    ScheduledMessageStatus.FAILED.value,
    ScheduledMessageStatus.CANCELLED.value,
]


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    return ensure_utc(value) if value else None


class _SqlStore:
    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self._session_factory = session_factory

    def _session(self):
        return session_scope(self._session_factory)


class SqlScheduledMessageStore(_SqlStore, ScheduledMessageStore):
    """Scheduled messages backed by any SQLAlchemy-supported database."""

    @staticmethod
    def _row_to_model(row: ScheduledMessageRow) -> ScheduledMessage:
        return ScheduledMessage(
            id=row.id,
            conversation_id=row.conversation_id,
            user_id=row.user_id,
            content=row.content,
            scheduled_time=ensure_utc(row.scheduled_time),
            status=ScheduledMessageStatus(row.status),
            channel_type=ChannelType(row.channel_type) if row.channel_type else None,
            recipient=row.recipient,
            metadata=row.metadata_ or {},
            retry_count=row.retry_count or 0,
            error_message=row.error_message,
            sent_at=_aware(row.sent_at),
            next_attempt_at=_aware(row.next_attempt_at),
            dispatch_started_at=_aware(row.dispatch_started_at),
            created_at=ensure_utc(row.created_at),
            updated_at=ensure_utc(row.updated_at),
        )

    def _pending_where(self, message_id: str):
        return and_(ScheduledMessageRow.id == message_id, ScheduledMessageRow.status == _PENDING)

    async def create(self, message: ScheduledMessage) -> ScheduledMessage:
        async with self._session() as db:
            db.add(ScheduledMessageRow(
                id=message.id,
                conversation_id=message.conversation_id,
                user_id=message.user_id,
                content=message.content,
                scheduled_time=message.scheduled_time,
                status=message.status.value,
                channel_type=message.channel_type.value if message.channel_type else None,
                recipient=message.recipient,
                metadata_=message.metadata,
                retry_count=message.retry_count,
                created_at=message.created_at,
                updated_at=message.updated_at,
            ))
        return message

    async def get(self, message_id: str) -> Optional[ScheduledMessage]:
        async with self._session() as db:
            row = await db.get(ScheduledMessageRow, message_id)
            return self._row_to_model(row) if row else None

    async def list_messages(self, user_id=None, conversation_id=None, status=None, limit=100):
        stmt = select(ScheduledMessageRow)
        if user_id is not None:
            stmt = stmt.where(ScheduledMessageRow.user_id == user_id)
        if conversation_id is not None:
            stmt = stmt.where(ScheduledMessageRow.conversation_id == conversation_id)
        if status is not None:
            stmt = stmt.where(ScheduledMessageRow.status == ScheduledMessageStatus(status).value)
        stmt = stmt.order_by(ScheduledMessageRow.scheduled_time.asc()).limit(limit)
        async with self._session() as db:
            result = await db.execute(stmt)
            return [self._row_to_model(r) for r in result.scalars()]

    async def claim_due(self, now: datetime, limit: int = 100) -> list[ScheduledMessage]:
        candidates = (
            select(ScheduledMessageRow.id)
            .where(and_(
                ScheduledMessageRow.status == _PENDING,
                ScheduledMessageRow.dispatch_started_at.is_(None),
                ScheduledMessageRow.scheduled_time <= now,
                or_(
                    ScheduledMessageRow.next_attempt_at.is_(None),
                    ScheduledMessageRow.next_attempt_at <= now,
                ),
            ))
            .order_by(ScheduledMessageRow.scheduled_time.asc())
            .limit(limit)
        )
        claimed: list[ScheduledMessage] = []
        async with self._session() as db:
            ids = list((await db.execute(candidates)).scalars())
            for message_id in ids:
                result = await db.execute(
                    update(ScheduledMessageRow)
                    .where(and_(
                        self._pending_where(message_id),
                        ScheduledMessageRow.dispatch_started_at.is_(None),
                    ))
                    .values(dispatch_started_at=now, updated_at=now)
                )
                if result.rowcount == 1:
                    row = await db.get(ScheduledMessageRow, message_id, populate_existing=True)
                    claimed.append(self._row_to_model(row))
        return claimed

    async def _conditional_update(self, where, **values) -> bool:
        values.setdefault("updated_at", utcnow())
        async with self._session() as db:
            result = await db.execute(update(ScheduledMessageRow).where(where).values(**values))
            return result.rowcount == 1

    async def mark_sent(self, message_id: str, sent_at: datetime) -> bool:
        return await self._conditional_update(
            self._pending_where(message_id),
            status=ScheduledMessageStatus.SENT.value,
            sent_at=sent_at, error_message=None, next_attempt_at=None,
        )

    async def mark_failed(self, message_id: str, retry_count: int, error: str) -> bool:
        return await self._conditional_update(
            self._pending_where(message_id),
            status=ScheduledMessageStatus.FAILED.value,
            retry_count=retry_count, error_message=error, next_attempt_at=None,
        )

    async def reschedule(self, message_id, retry_count, next_attempt_at, error) -> bool:
        return await self._conditional_update(
            self._pending_where(message_id),
            retry_count=retry_count, next_attempt_at=next_attempt_at,
            error_message=error, dispatch_started_at=None,
        )

    async def cancel(self, message_id: str) -> bool:
        return await self._conditional_update(
            and_(self._pending_where(message_id), ScheduledMessageRow.dispatch_started_at.is_(None)),
            status=ScheduledMessageStatus.CANCELLED.value,
        )

    async def release_stale_claims(self, claimed_before: datetime) -> int:
        async with self._session() as db:
            result = await db.execute(
                update(ScheduledMessageRow)
                .where(and_(
                    ScheduledMessageRow.status == _PENDING,
                    ScheduledMessageRow.dispatch_started_at.is_not(None),
                    ScheduledMessageRow.dispatch_started_at < claimed_before,
                ))
                .values(dispatch_started_at=None)
            )
            return result.rowcount or 0

    async def purge_terminal(self, before: datetime) -> int:
        async with self._session() as db:
            result = await db.execute(
                delete(ScheduledMessageRow).where(and_(
                    ScheduledMessageRow.status.in_(_TERMINAL),
                    ScheduledMessageRow.updated_at < before,
                ))
            )
            return result.rowcount or 0

    async def count_by_status(self, user_id: Optional[str] = None) -> dict[str, int]:
        stmt = select(ScheduledMessageRow.status, func.count()).group_by(ScheduledMessageRow.status)
        if user_id is not None:
            stmt = stmt.where(ScheduledMessageRow.user_id == user_id)
        counts = {s.value: 0 for s in ScheduledMessageStatus}
        async with self._session() as db:
            for status, count in (await db.execute(stmt)).all():
                counts[status] = count
        return counts


class SqlOutboxReceiptStore(_SqlStore, OutboxReceiptStore):

    @staticmethod
    def _row_to_model(row: OutboxReceiptRow) -> OutboxReceipt:
        return OutboxReceipt(
            user_id=row.user_id,
            client_id=row.client_id,
            content_hash=row.content_hash,
            state=row.state,
            message_id=row.message_id,
            channel_message_id=row.channel_message_id,
            created_at=ensure_utc(row.created_at),
            updated_at=ensure_utc(row.updated_at),
        )

    def _key(self, user_id: str, client_id: str):
        return and_(OutboxReceiptRow.user_id == user_id, OutboxReceiptRow.client_id == client_id)

    async def reserve(self, user_id, client_id, content_hash):
        try:
            async with self._session() as db:
                row = OutboxReceiptRow(user_id=user_id, client_id=client_id, content_hash=content_hash)
                db.add(row)
                await db.flush()
                return self._row_to_model(row), True
        except IntegrityError:
            existing = await self.get(user_id, client_id)
            if existing is None:
                raise
            return existing, False

    async def complete(self, user_id, client_id, message_id, channel_message_id=""):
        async with self._session() as db:
            await db.execute(
                update(OutboxReceiptRow)
                .where(self._key(user_id, client_id))
                .values(state="delivered", message_id=message_id,
                        channel_message_id=channel_message_id, updated_at=utcnow())
            )

    async def release(self, user_id, client_id):
        async with self._session() as db:
            await db.execute(
                delete(OutboxReceiptRow)
                .where(and_(self._key(user_id, client_id), OutboxReceiptRow.state == "reserved"))
            )

    async def get(self, user_id, client_id):
        async with self._session() as db:
            result = await db.execute(select(OutboxReceiptRow).where(self._key(user_id, client_id)))
            row = result.scalar_one_or_none()
            return self._row_to_model(row) if row else None
