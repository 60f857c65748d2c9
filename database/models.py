"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, SQLite.

Key design decisions:
  - JSON type instead of PostgreSQL-specific JSONB.
  - String primary keys (uuid hex), no database-specific sequences.
  - Timestamps are written in UTC; SQLite returns them naive, so readers
    normalize with ``models.schemas.ensure_utc``.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import DateTime, Index, Integer, JSON, String, Text, UniqueConstraint
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


# ──────────────────────────────────────────────────────────────
#  Scheduled messages
# ──────────────────────────────────────────────────────────────

class ScheduledMessageRow(Base):
    __tablename__ = "scheduled_messages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    conversation_id: Mapped[str] = mapped_column(String(64), nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    scheduled_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="pending")
    channel_type: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    recipient: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    metadata_: Mapped[Any] = mapped_column("metadata", JSON, default=dict)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    next_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    dispatch_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_scheduled_due", "status", "scheduled_time"),
        Index("ix_scheduled_user", "user_id", "status"),
        Index("ix_scheduled_conversation", "conversation_id"),
    )


# ──────────────────────────────────────────────────────────────
#  Outbox receipts (server-side idempotency for client ids)
# ──────────────────────────────────────────────────────────────

class OutboxReceiptRow(Base):
    __tablename__ = "outbox_receipts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    client_id: Mapped[str] = mapped_column(String(128), nullable=False)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    state: Mapped[str] = mapped_column(String(16), default="reserved")
    message_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    channel_message_id: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "client_id", name="uq_outbox_receipt_client"),
    )
