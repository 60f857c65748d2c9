"""
Core data models for the inbox delivery pipeline.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import hashlib
import json
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class ChannelType(str, Enum):
    WHATSAPP = "whatsapp"
    INSTAGRAM = "instagram"
    LINKEDIN = "linkedin"
    EMAIL = "email"


class JobType(str, Enum):
    ANALYZE_SENTIMENT = "analyze_sentiment"
    CATEGORIZE_MESSAGE = "categorize_message"
    GENERATE_SUGGESTIONS = "generate_suggestions"


class JobStatus(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class ScheduledMessageStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"


class OutboxSyncStatus(str, Enum):
    PENDING = "pending"
    SYNCING = "syncing"
    SYNCED = "synced"
    CONFLICT = "conflict"
    FAILED = "failed"


class SyncResultStatus(str, Enum):
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"


# ──────────────────────────────────────────────────────────────
#  Job: a unit of background analysis work
# ──────────────────────────────────────────────────────────────

def job_key(job_type: JobType, entity_id: str) -> str:
    """Deduplication key for a job. Never includes wall-clock time."""
    return f"{JobType(job_type).value}:{entity_id}"


class Job(BaseModel):
    id: str = ""
    type: JobType
    entity_id: str
    user_id: Optional[str] = None
    payload: dict[str, Any] = {}
    status: JobStatus = JobStatus.WAITING
    delayed: bool = False                     # waiting out a retry backoff
    run_at: datetime = Field(default_factory=utcnow)
    attempts: int = 0
    max_attempts: int = 3
    progress: int = 0
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def model_post_init(self, __context: Any) -> None:
        if not self.id:
            self.id = job_key(self.type, self.entity_id)

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED)


class JobHandle(BaseModel):
    job_id: str
    status: JobStatus
    duplicate: bool = False


# ──────────────────────────────────────────────────────────────
#  Scheduled message: a user-authored send deferred to a time
# ──────────────────────────────────────────────────────────────

class ScheduledMessage(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    conversation_id: str
    user_id: str
    content: str
    scheduled_time: datetime
    status: ScheduledMessageStatus = ScheduledMessageStatus.PENDING
    channel_type: Optional[ChannelType] = None
    recipient: Optional[str] = None
    metadata: dict[str, Any] = {}
    retry_count: int = 0
    error_message: Optional[str] = None
    sent_at: Optional[datetime] = None
    next_attempt_at: Optional[datetime] = None
    dispatch_started_at: Optional[datetime] = None     # set while a tick owns it
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status != ScheduledMessageStatus.PENDING

    @property
    def is_claimed(self) -> bool:
        return self.dispatch_started_at is not None


# ──────────────────────────────────────────────────────────────
#  Offline outbox
# ──────────────────────────────────────────────────────────────

def content_hash(conversation_id: str, content: str, channel_type: str,
                 recipient: Optional[str], media: list[str]) -> str:
    raw = json.dumps(
        [conversation_id, content, channel_type, recipient or "", list(media)],
        separators=(",", ":"),
    )
    return hashlib.sha256(raw.encode()).hexdigest()


class OutboxSubmission(BaseModel):
    """What a client sends to the sync endpoint for one queued message."""
    id: str
    conversation_id: str
    content: str
    channel_type: ChannelType
    recipient: Optional[str] = None
    media: list[str] = []
    created_at: Optional[datetime] = None

    def fingerprint(self) -> str:
        return content_hash(self.conversation_id, self.content, self.channel_type.value,
                            self.recipient, self.media)


class OutboxEntry(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    conversation_id: str
    content: str
    channel_type: ChannelType
    recipient: Optional[str] = None
    media: list[str] = []
    sync_status: OutboxSyncStatus = OutboxSyncStatus.PENDING
    retry_count: int = 0
    last_error: Optional[str] = None
    next_attempt_at: Optional[datetime] = None
    server_message_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    synced_at: Optional[datetime] = None

    def to_submission(self) -> OutboxSubmission:
        return OutboxSubmission(
            id=self.id,
            conversation_id=self.conversation_id,
            content=self.content,
            channel_type=self.channel_type,
            recipient=self.recipient,
            media=self.media,
            created_at=self.created_at,
        )

    def size_bytes(self) -> int:
        return len(self.model_dump_json().encode())


class SyncResult(BaseModel):
    id: str
    status: SyncResultStatus
    reason: Optional[str] = None
    retryable: bool = False
    message_id: Optional[str] = None


class OutboxReceipt(BaseModel):
    user_id: str
    client_id: str
    content_hash: str
    state: str = "reserved"                   # reserved | delivered
    message_id: Optional[str] = None
    channel_message_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# ──────────────────────────────────────────────────────────────
#  Channel I/O
# ──────────────────────────────────────────────────────────────

class Attachment(BaseModel):
    type: str = "file"                        # image | video | audio | document | file
    url: str = ""
    id: str = ""
    mime_type: str = ""
    filename: str = ""


class InboundMessage(BaseModel):
    """Normalized message parsed from a channel webhook or fetch."""
    model_config = ConfigDict(populate_by_name=True)

    id: str
    from_: str = Field("", alias="from")
    timestamp: datetime = Field(default_factory=utcnow)
    text: str = ""
    attachments: list[Attachment] = []
    channel: ChannelType
    metadata: dict[str, Any] = {}

    def to_public(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    @property
    def conversation_id(self) -> str:
        """Provider thread id when the channel has one, else ``{channel}:{sender}``."""
        meta = self.metadata
        thread = meta.get("conversation_id") or meta.get("conversation_urn") or meta.get("thread_id")
        return thread or f"{self.channel.value}:{self.from_}"


class DeliveryReceipt(BaseModel):
    channel: ChannelType
    recipient: str
    channel_message_id: str = ""
    attempts: int = 1
    latency_ms: float = 0.0
    sent_at: datetime = Field(default_factory=utcnow)


# ──────────────────────────────────────────────────────────────
#  Events
# ──────────────────────────────────────────────────────────────

class DomainEvent(BaseModel):
    """State transition published on the in-process event bus."""
    topic: str
    type: str
    user_id: Optional[str] = None
    conversation_id: Optional[str] = None
    data: dict[str, Any] = {}
    timestamp: datetime = Field(default_factory=utcnow)


class RealtimeEvent(BaseModel):
    """Frame pushed to connected clients."""
    type: str
    data: dict[str, Any] = {}
    timestamp: datetime = Field(default_factory=utcnow)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json")
