"""
Offline outbox — client-side queue for messages composed without
connectivity.

Provides:
- SyncTransport: how a batch reaches the server
- HttpSyncTransport: POST /api/v1/sync/outbox with a bearer credential
- LocalSyncTransport: in-process, wraps OutboxSyncService
- OfflineOutbox: local persistence, quota, and the sync pass

Entry lifecycle:
    pending → syncing → synced | conflict | failed
                      ↘ pending (retry with backoff)

Every entry gets its client id when it is queued, and keeps it across
retries so the server can deduplicate resubmissions.
"""
from __future__ import annotations

import abc
import asyncio
import structlog
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Union

import httpx

from channels.retry import RetryPolicy
from core.errors import (
    ConflictError, NotFoundError, PermanentError, QuotaError, TransientError,
    classify_http_error,
)
from models.schemas import (
    ChannelType, OutboxEntry, OutboxSubmission, OutboxSyncStatus, SyncResult,
    SyncResultStatus, utcnow,
)
from outbox.storage import OutboxStorage

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  TRANSPORTS
# ══════════════════════════════════════════════════════════════

class SyncTransport(abc.ABC):

    @abc.abstractmethod
    async def submit(self, entries: list[OutboxSubmission]) -> list[SyncResult]:
        """
        Send a batch. Raises TransientError when the batch should be
        retried as a whole, PermanentError when it cannot be sent at all.
        """
        ...

    async def close(self) -> None:
        pass


class HttpSyncTransport(SyncTransport):

    def __init__(
        self,
        base_url: str,
        token: Union[str, Callable[[], str]],
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._token = token
        self._timeout = timeout
        self._client = client

    def _bearer(self) -> str:
        return self._token() if callable(self._token) else self._token

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self._timeout)
        return self._client

    async def submit(self, entries: list[OutboxSubmission]) -> list[SyncResult]:
        client = await self._get_client()
        body = {"entries": [e.model_dump(mode="json") for e in entries]}
        try:
            response = await client.post(
                f"{self.base_url}/api/v1/sync/outbox",
                json=body,
                headers={"Authorization": f"Bearer {self._bearer()}"},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise classify_http_error(e, "outbox") from e
        try:
            return [SyncResult.model_validate(r) for r in response.json().get("results", [])]
        except (ValueError, AttributeError) as e:
            raise TransientError(f"Malformed sync response: {e}", "outbox", code="bad_response") from e

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class LocalSyncTransport(SyncTransport):
    """Submits straight to an in-process OutboxSyncService."""

    def __init__(self, service: Any, user_id: str):
        self.service = service
        self.user_id = user_id

    async def submit(self, entries: list[OutboxSubmission]) -> list[SyncResult]:
        return await self.service.submit(self.user_id, entries)


# ══════════════════════════════════════════════════════════════
#  OUTBOX
# ══════════════════════════════════════════════════════════════

class OfflineOutbox:
    """
    Client outbox for one user.

    Call ``open()`` once before use: it loads persisted entries and returns
    any left ``syncing`` by an interrupted pass to ``pending``.
    """

    def __init__(
        self,
        storage: OutboxStorage,
        transport: SyncTransport,
        max_retries: int = 5,
        backoff_base: float = 2.0,
        backoff_max: float = 300.0,
        quota_bytes: int = 100 * 1024 * 1024,
        max_entries: int = 10000,
        batch_size: int = 50,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.storage = storage
        self.transport = transport
        self.retry_policy = RetryPolicy(
            max_attempts=max_retries, base_delay=backoff_base, max_delay=backoff_max,
        )
        self.quota_bytes = quota_bytes
        self.max_entries = max_entries
        self.batch_size = max(batch_size, 1)
        self._clock = clock
        self._entries: dict[str, OutboxEntry] = {}
        self._sync_lock = asyncio.Lock()
        self._online = True
        self._opened = False

    @classmethod
    def from_config(cls, storage: OutboxStorage, transport: SyncTransport, config: Any) -> "OfflineOutbox":
        return cls(
            storage, transport,
            max_retries=config.max_retries,
            backoff_base=config.backoff_base,
            backoff_max=config.backoff_max,
            quota_bytes=config.quota_bytes,
            max_entries=config.max_entries,
            batch_size=config.batch_size,
        )

    @property
    def max_retries(self) -> int:
        return self.retry_policy.max_attempts

    @property
    def online(self) -> bool:
        return self._online

    async def open(self) -> None:
        self._entries = await self.storage.load()
        interrupted = [e for e in self._entries.values() if e.sync_status == OutboxSyncStatus.SYNCING]
        for entry in interrupted:
            self._set_status(entry, OutboxSyncStatus.PENDING)
        if interrupted:
            await self.storage.save_many(interrupted)
            logger.info("outbox_interrupted_entries_reset", count=len(interrupted))
        self._opened = True
        logger.info("outbox_opened", entries=len(self._entries))

    async def _ensure_open(self):
        if not self._opened:
            await self.open()

    def _set_status(self, entry: OutboxEntry, status: OutboxSyncStatus, **changes):
        entry.sync_status = status
        entry.updated_at = self._clock()
        for key, value in changes.items():
            setattr(entry, key, value)

    # ── Local operations ──────────────────────────────────────

    async def enqueue_local(
        self,
        conversation_id: str,
        content: str,
        channel_type: Union[ChannelType, str],
        recipient: Optional[str] = None,
        media: Optional[list[str]] = None,
        entry_id: Optional[str] = None,
    ) -> OutboxEntry:
        """Persist a message as ``pending``. Works with no connectivity."""
        await self._ensure_open()
        if not content or not content.strip():
            raise PermanentError("Outbox message content cannot be empty", code="validation_error")

        entry = OutboxEntry(
            id=entry_id or str(uuid.uuid4()),
            conversation_id=conversation_id,
            content=content,
            channel_type=ChannelType(channel_type),
            recipient=recipient,
            media=media or [],
            created_at=self._clock(),
            updated_at=self._clock(),
        )
        if entry.id in self._entries:
            raise ConflictError(f"Outbox entry already exists: {entry.id}")

        if len(self._entries) >= self.max_entries:
            raise QuotaError(f"Outbox is full ({self.max_entries} entries)", code="max_entries")
        used = self._bytes_used()
        if used + entry.size_bytes() > self.quota_bytes:
            raise QuotaError(
                f"Outbox storage quota exceeded ({used} of {self.quota_bytes} bytes used)",
                code="quota_exceeded",
            )

        self._entries[entry.id] = entry
        await self.storage.save(entry)
        logger.info("outbox_entry_queued", entry_id=entry.id, conversation_id=conversation_id)
        return entry

    async def get(self, entry_id: str) -> OutboxEntry:
        await self._ensure_open()
        entry = self._entries.get(entry_id)
        if entry is None:
            raise NotFoundError(f"Outbox entry not found: {entry_id}")
        return entry

    async def list_entries(
        self, status: Optional[Union[OutboxSyncStatus, str]] = None,
    ) -> list[OutboxEntry]:
        await self._ensure_open()
        wanted = OutboxSyncStatus(status) if status else None
        entries = [e for e in self._entries.values() if wanted is None or e.sync_status == wanted]
        return sorted(entries, key=lambda e: e.created_at)

    async def retry(self, entry_id: str) -> OutboxEntry:
        """
        Manually requeue a ``failed`` or ``conflict`` entry. A conflicting
        entry gets a fresh client id, since the server already holds
        different content under the old one.
        """
        entry = await self.get(entry_id)
        if entry.sync_status not in (OutboxSyncStatus.FAILED, OutboxSyncStatus.CONFLICT):
            raise ConflictError(f"Outbox entry {entry_id} is {entry.sync_status.value}, not retryable")

        if entry.sync_status == OutboxSyncStatus.CONFLICT:
            del self._entries[entry.id]
            await self.storage.delete(entry.id)
            entry.id = str(uuid.uuid4())
            self._entries[entry.id] = entry

        self._set_status(entry, OutboxSyncStatus.PENDING,
                         retry_count=0, next_attempt_at=None, last_error=None)
        await self.storage.save(entry)
        logger.info("outbox_entry_retried", entry_id=entry.id, previous_id=entry_id)
        return entry

    async def discard(self, entry_id: str) -> None:
        entry = await self.get(entry_id)
        if entry.sync_status == OutboxSyncStatus.SYNCING:
            raise ConflictError(f"Outbox entry {entry_id} is being synced")
        del self._entries[entry_id]
        await self.storage.delete(entry_id)
        logger.info("outbox_entry_discarded", entry_id=entry_id)

    async def compact(self) -> int:
        """Drop synced entries. Returns how many were removed."""
        await self._ensure_open()
        synced = [k for k, e in self._entries.items() if e.sync_status == OutboxSyncStatus.SYNCED]
        for entry_id in synced:
            del self._entries[entry_id]
        if synced:
            await self.storage.delete_many(synced)
            logger.info("outbox_compacted", removed=len(synced))
        return len(synced)

    def _bytes_used(self) -> int:
        return sum(e.size_bytes() for e in self._entries.values())

    async def usage(self) -> dict[str, Any]:
        await self._ensure_open()
        used = self._bytes_used()
        by_status = {s.value: 0 for s in OutboxSyncStatus}
        for entry in self._entries.values():
            by_status[entry.sync_status.value] += 1
        return {
            "entries": len(self._entries),
            "max_entries": self.max_entries,
            "bytes": used,
            "quota_bytes": self.quota_bytes,
            "percent": round(100.0 * used / self.quota_bytes, 2) if self.quota_bytes else 0.0,
            "by_status": by_status,
        }

    async def handle_network_change(self, online: bool) -> Optional[dict[str, Any]]:
        """Record connectivity; coming back online starts a sync pass."""
        was_online, self._online = self._online, online
        logger.info("outbox_network_changed", online=online)
        if online and not was_online:
            return await self.trigger_sync()
        return None

    # ── Sync ──────────────────────────────────────────────────

    async def trigger_sync(self) -> dict[str, Any]:
        """
        Push due pending entries to the server. Only one pass runs at a
        time; a concurrent call returns ``{"status": "in_progress"}``.
        """
        await self._ensure_open()
        if not self._online:
            return {"status": "offline"}
        if self._sync_lock.locked():
            return {"status": "in_progress"}

        async with self._sync_lock:
            now = self._clock()
            due = sorted(
                (e for e in self._entries.values()
                 if e.sync_status == OutboxSyncStatus.PENDING
                 and (e.next_attempt_at is None or e.next_attempt_at <= now)),
                key=lambda e: e.created_at,
            )
            summary = {"status": "completed", "submitted": len(due), "synced": 0,
                       "conflicts": 0, "failed": 0, "retrying": 0}
            if not due:
                return summary

            for entry in due:
                self._set_status(entry, OutboxSyncStatus.SYNCING)
            await self.storage.save_many(due)

            try:
                for start in range(0, len(due), self.batch_size):
                    chunk = due[start:start + self.batch_size]
                    await self._sync_chunk(chunk, summary)
            finally:
                leftover = [e for e in due if e.sync_status == OutboxSyncStatus.SYNCING]
                for entry in leftover:
                    self._set_status(entry, OutboxSyncStatus.PENDING)
                if leftover:
                    await self.storage.save_many(leftover)

            logger.info("outbox_sync_complete", **summary)
            return summary

    async def _sync_chunk(self, chunk: list[OutboxEntry], summary: dict[str, Any]):
        try:
            results = await self.transport.submit([e.to_submission() for e in chunk])
        except TransientError as e:
            logger.warning("outbox_sync_transport_error", error=str(e), entries=len(chunk))
            for entry in chunk:
                self._retry_later(entry, str(e), summary)
            await self.storage.save_many(chunk)
            return
        except PermanentError as e:
            logger.error("outbox_sync_rejected", error=str(e), entries=len(chunk))
            raise

        by_id = {r.id: r for r in results}
        for entry in chunk:
            result = by_id.get(entry.id)
            if result is None:
                self._retry_later(entry, "missing_result", summary)
            elif result.status in (SyncResultStatus.ACCEPTED, SyncResultStatus.DUPLICATE):
                self._set_status(entry, OutboxSyncStatus.SYNCED, synced_at=self._clock(),
                                 server_message_id=result.message_id, last_error=None,
                                 next_attempt_at=None)
                summary["synced"] += 1
            elif result.reason == "conflict":
                self._set_status(entry, OutboxSyncStatus.CONFLICT, last_error="conflict")
                summary["conflicts"] += 1
            elif result.retryable:
                self._retry_later(entry, result.reason or "rejected", summary)
            else:
                self._set_status(entry, OutboxSyncStatus.FAILED, last_error=result.reason or "rejected")
                summary["failed"] += 1
        await self.storage.save_many(chunk)

    def _retry_later(self, entry: OutboxEntry, error: str, summary: dict[str, Any]):
        retry_count = entry.retry_count + 1
        if retry_count >= self.max_retries:
            self._set_status(entry, OutboxSyncStatus.FAILED, retry_count=retry_count, last_error=error)
            summary["failed"] += 1
            logger.warning("outbox_entry_failed", entry_id=entry.id, retry_count=retry_count, error=error)
            return
        delay = self.retry_policy.delay_for(retry_count)
        self._set_status(entry, OutboxSyncStatus.PENDING, retry_count=retry_count, last_error=error,
                         next_attempt_at=self._clock() + timedelta(seconds=delay))
        summary["retrying"] += 1
        logger.info("outbox_entry_retry_scheduled", entry_id=entry.id,
                    retry_count=retry_count, delay_s=delay)

    async def close(self) -> None:
        await self.transport.close()
