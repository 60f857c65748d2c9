"""
Tests for the offline outbox and the server-side sync service.

Covers:
  - Local queueing, quota and entry limits
  - Sync through the in-process service: accepted / duplicate / conflict
  - Server delivery failures reported as retryable, receipts released
  - Transport failures retried with backoff, failing after max_retries
  - Interrupted syncs reset on open, file persistence
  - HTTP transport request shape and error mapping
"""
import asyncio
import json
from datetime import timedelta

import httpx
import pytest
from unittest.mock import AsyncMock

from core.errors import (
    ConflictError, NetworkError, NotFoundError, PermanentError, QuotaError, TransientError,
)
from core.events import Topics
from database.store_memory import InMemoryOutboxReceiptStore
from models.schemas import OutboxEntry, OutboxSubmission, OutboxSyncStatus, SyncResultStatus
from outbox import (
    FileOutboxStorage, HttpSyncTransport, LocalSyncTransport, MemoryOutboxStorage,
    OfflineOutbox, OutboxSyncService, SyncTransport,
)


class FailingTransport(SyncTransport):
    def __init__(self, error: Exception):
        self.error = error
        self.calls = 0

    async def submit(self, entries):
        self.calls += 1
        raise self.error


@pytest.fixture
def receipts():
    return InMemoryOutboxReceiptStore()


@pytest.fixture
def service(receipts, registry, bus):
    return OutboxSyncService(receipts, registry, bus=bus)


@pytest.fixture
def outbox(service, clock):
    return OfflineOutbox(MemoryOutboxStorage(), LocalSyncTransport(service, "u1"), clock=clock)


async def _queue(outbox, content: str = "On my way", **kwargs):
    fields = dict(channel_type="whatsapp", recipient="15551234567")
    fields.update(kwargs)
    return await outbox.enqueue_local("c1", content, **fields)


# ──────────────────────────────────────────────────────────────
#  Local operations
# ──────────────────────────────────────────────────────────────

class TestLocalQueue:
    @pytest.mark.asyncio
    async def test_enqueue_is_pending(self, outbox):
        entry = await _queue(outbox)
        assert entry.sync_status == OutboxSyncStatus.PENDING
        assert entry.id
        assert [e.id for e in await outbox.list_entries("pending")] == [entry.id]

    @pytest.mark.asyncio
    async def test_enqueue_works_offline(self, outbox):
        await outbox.handle_network_change(False)
        entry = await _queue(outbox)
        assert (await outbox.get(entry.id)).sync_status == OutboxSyncStatus.PENDING
        assert await outbox.trigger_sync() == {"status": "offline"}

    @pytest.mark.asyncio
    async def test_empty_content_rejected(self, outbox):
        with pytest.raises(PermanentError):
            await _queue(outbox, content="  ")

    @pytest.mark.asyncio
    async def test_duplicate_id_rejected(self, outbox):
        await _queue(outbox, entry_id="local-1")
        with pytest.raises(ConflictError):
            await _queue(outbox, entry_id="local-1")

    @pytest.mark.asyncio
    async def test_quota_exceeded(self, service):
        outbox = OfflineOutbox(MemoryOutboxStorage(), LocalSyncTransport(service, "u1"), quota_bytes=64)
        with pytest.raises(QuotaError) as exc_info:
            await _queue(outbox)
        assert exc_info.value.code == "quota_exceeded"
        assert await outbox.list_entries() == []

    @pytest.mark.asyncio
    async def test_entry_limit(self, service):
        outbox = OfflineOutbox(MemoryOutboxStorage(), LocalSyncTransport(service, "u1"), max_entries=1)
        await _queue(outbox)
        with pytest.raises(QuotaError) as exc_info:
            await _queue(outbox)
        assert exc_info.value.code == "max_entries"

    @pytest.mark.asyncio
    async def test_usage(self, service):
        outbox = OfflineOutbox(MemoryOutboxStorage(), LocalSyncTransport(service, "u1"), quota_bytes=10_000)
        entry = await _queue(outbox)
        usage = await outbox.usage()
        assert usage["entries"] == 1
        assert usage["bytes"] == entry.size_bytes()
        assert usage["by_status"]["pending"] == 1
        assert 0 < usage["percent"] < 50

    @pytest.mark.asyncio
    async def test_discard(self, outbox):
        entry = await _queue(outbox)
        await outbox.discard(entry.id)
        with pytest.raises(NotFoundError):
            await outbox.get(entry.id)

    @pytest.mark.asyncio
    async def test_retry_requires_failed_or_conflict(self, outbox):
        entry = await _queue(outbox)
        with pytest.raises(ConflictError):
            await outbox.retry(entry.id)


# ──────────────────────────────────────────────────────────────
#  Sync
# ──────────────────────────────────────────────────────────────

class TestSync:
    @pytest.mark.asyncio
    async def test_pending_entries_are_delivered(self, outbox, graph_api, collect_events):
        events = collect_events(Topics.OUTBOX)
        first = await _queue(outbox, "first")
        second = await _queue(outbox, "second")

        summary = await outbox.trigger_sync()
        assert summary == {"status": "completed", "submitted": 2, "synced": 2,
                           "conflicts": 0, "failed": 0, "retrying": 0}
        for entry_id in (first.id, second.id):
            entry = await outbox.get(entry_id)
            assert entry.sync_status == OutboxSyncStatus.SYNCED
            assert entry.server_message_id
        assert [b["text"]["body"] for b in graph_api.sent_bodies] == ["first", "second"]
        assert events[0].data["client_id"] == first.id
        assert events[0].user_id == "u1"

    @pytest.mark.asyncio
    async def test_nothing_due(self, outbox):
        summary = await outbox.trigger_sync()
        assert summary["submitted"] == 0

    @pytest.mark.asyncio
    async def test_resubmission_is_duplicate_not_redelivered(self, service, outbox, graph_api, clock):
        entry = await _queue(outbox, entry_id="local-1")
        await outbox.trigger_sync()
        server_id = (await outbox.get(entry.id)).server_message_id

        # Same client id from a second device / a lost response.
        other = OfflineOutbox(MemoryOutboxStorage(), LocalSyncTransport(service, "u1"), clock=clock)
        await _queue(other, entry_id="local-1")
        await other.trigger_sync()

        resubmitted = await other.get("local-1")
        assert resubmitted.sync_status == OutboxSyncStatus.SYNCED
        assert resubmitted.server_message_id == server_id
        assert len(graph_api.requests) == 1

    @pytest.mark.asyncio
    async def test_conflict_then_retry_with_new_id(self, service, outbox, graph_api):
        await service.submit("u1", [OutboxSubmission(
            id="local-1", conversation_id="c1", content="original",
            channel_type="whatsapp", recipient="15551234567")])
        await _queue(outbox, "edited", entry_id="local-1")

        summary = await outbox.trigger_sync()
        assert summary["conflicts"] == 1
        assert (await outbox.get("local-1")).sync_status == OutboxSyncStatus.CONFLICT

        retried = await outbox.retry("local-1")
        assert retried.id != "local-1"
        assert retried.sync_status == OutboxSyncStatus.PENDING
        with pytest.raises(NotFoundError):
            await outbox.get("local-1")

        await outbox.trigger_sync()
        assert (await outbox.get(retried.id)).sync_status == OutboxSyncStatus.SYNCED
        assert len(graph_api.requests) == 2

    @pytest.mark.asyncio
    async def test_server_delivery_failure_is_retryable(self, outbox, receipts, graph_api, clock):
        graph_api.responses = [503, 503, 503]
        entry = await _queue(outbox)

        summary = await outbox.trigger_sync()
        assert summary["retrying"] == 1
        queued = await outbox.get(entry.id)
        assert queued.sync_status == OutboxSyncStatus.PENDING
        assert queued.retry_count == 1
        assert queued.last_error == "max_retries_exceeded"
        assert queued.next_attempt_at == clock() + timedelta(seconds=2)
        assert await receipts.get("u1", entry.id) is None

        assert (await outbox.trigger_sync())["submitted"] == 0
        clock.advance(seconds=2)
        await outbox.trigger_sync()
        assert (await outbox.get(entry.id)).sync_status == OutboxSyncStatus.SYNCED

    @pytest.mark.asyncio
    async def test_permanent_delivery_failure_fails_entry(self, outbox, graph_api):
        graph_api.responses = [400]
        entry = await _queue(outbox)
        summary = await outbox.trigger_sync()
        assert summary["failed"] == 1
        failed = await outbox.get(entry.id)
        assert failed.sync_status == OutboxSyncStatus.FAILED
        assert failed.last_error == "client_error"

        retried = await outbox.retry(entry.id)
        assert retried.id == entry.id
        assert retried.retry_count == 0
        await outbox.trigger_sync()
        assert (await outbox.get(entry.id)).sync_status == OutboxSyncStatus.SYNCED

    @pytest.mark.asyncio
    async def test_transport_errors_exhaust_after_max_retries(self, clock):
        transport = FailingTransport(NetworkError("offline", "outbox"))
        outbox = OfflineOutbox(MemoryOutboxStorage(), transport, max_retries=5, clock=clock)
        entry = await _queue(outbox)

        for expected in (1, 2, 3, 4):
            summary = await outbox.trigger_sync()
            assert summary["retrying"] == 1
            queued = await outbox.get(entry.id)
            assert queued.retry_count == expected
            clock.advance(seconds=300)

        summary = await outbox.trigger_sync()
        assert summary["failed"] == 1
        failed = await outbox.get(entry.id)
        assert failed.sync_status == OutboxSyncStatus.FAILED
        assert failed.retry_count == 5
        assert transport.calls == 5

    @pytest.mark.asyncio
    async def test_backoff_doubles(self, clock):
        outbox = OfflineOutbox(MemoryOutboxStorage(), FailingTransport(NetworkError("down")), clock=clock)
        entry = await _queue(outbox)
        await outbox.trigger_sync()
        clock.advance(seconds=2)
        await outbox.trigger_sync()
        assert (await outbox.get(entry.id)).next_attempt_at == clock() + timedelta(seconds=4)

    @pytest.mark.asyncio
    async def test_permanent_transport_error_returns_entries_to_pending(self, clock):
        outbox = OfflineOutbox(MemoryOutboxStorage(),
                               FailingTransport(PermanentError("unauthorized", code="client_error")),
                               clock=clock)
        entry = await _queue(outbox)
        with pytest.raises(PermanentError):
            await outbox.trigger_sync()
        queued = await outbox.get(entry.id)
        assert queued.sync_status == OutboxSyncStatus.PENDING
        assert queued.retry_count == 0

    @pytest.mark.asyncio
    async def test_missing_result_is_retried(self, clock):
        transport = LocalSyncTransport(AsyncMock(), "u1")
        transport.service.submit = AsyncMock(return_value=[])
        outbox = OfflineOutbox(MemoryOutboxStorage(), transport, clock=clock)
        entry = await _queue(outbox)
        await outbox.trigger_sync()
        assert (await outbox.get(entry.id)).last_error == "missing_result"

    @pytest.mark.asyncio
    async def test_concurrent_sync_reports_in_progress(self, outbox):
        await _queue(outbox)
        async with outbox._sync_lock:
            assert await outbox.trigger_sync() == {"status": "in_progress"}

    @pytest.mark.asyncio
    async def test_reconnect_triggers_sync(self, outbox):
        entry = await _queue(outbox)
        assert await outbox.handle_network_change(False) is None
        summary = await outbox.handle_network_change(True)
        assert summary["synced"] == 1
        assert (await outbox.get(entry.id)).sync_status == OutboxSyncStatus.SYNCED

    @pytest.mark.asyncio
    async def test_batches_respect_batch_size(self, service, clock):
        transport = LocalSyncTransport(service, "u1")
        transport.submit = AsyncMock(wraps=transport.submit)
        outbox = OfflineOutbox(MemoryOutboxStorage(), transport, batch_size=2, clock=clock)
        for i in range(5):
            await _queue(outbox, f"message {i}")
        summary = await outbox.trigger_sync()
        assert summary["synced"] == 5
        assert [len(c.args[0]) for c in transport.submit.await_args_list] == [2, 2, 1]

    @pytest.mark.asyncio
    async def test_compact_drops_synced(self, outbox):
        await _queue(outbox)
        await outbox.trigger_sync()
        await outbox.handle_network_change(False)
        await _queue(outbox, "later")
        assert await outbox.compact() == 1
        assert len(await outbox.list_entries()) == 1


# ──────────────────────────────────────────────────────────────
#  Server-side validation
# ──────────────────────────────────────────────────────────────

class TestSyncService:
    @pytest.mark.asyncio
    async def test_invalid_entries_rejected(self, service):
        results = await service.submit("u1", [
            {"id": "a", "conversation_id": "c1", "content": "hi", "channel_type": "pager"},
            {"id": "b", "conversation_id": "c1", "content": " ", "channel_type": "whatsapp",
             "recipient": "1555"},
            {"id": "c", "conversation_id": "c1", "content": "hi", "channel_type": "whatsapp"},
        ])
        assert [(r.id, r.reason) for r in results] == [("a", "invalid"), ("b", "invalid"), ("c", "no_recipient")]
        assert all(r.status == SyncResultStatus.REJECTED for r in results)

    @pytest.mark.asyncio
    async def test_batch_limit(self, receipts, registry):
        service = OutboxSyncService(receipts, registry, max_batch=1)
        entries = [
            {"id": f"e{i}", "conversation_id": "c1", "content": "hi",
             "channel_type": "whatsapp", "recipient": "1555"}
            for i in range(2)
        ]
        results = await service.submit("u1", entries)
        assert results[0].status == SyncResultStatus.ACCEPTED
        assert results[1].reason == "batch_limit"
        assert results[1].retryable

    @pytest.mark.asyncio
    async def test_unexpected_error_releases_reservation(self, receipts):
        registry = AsyncMock()
        registry.deliver = AsyncMock(side_effect=RuntimeError("boom"))
        service = OutboxSyncService(receipts, registry)
        with pytest.raises(RuntimeError):
            await service.submit("u1", [{"id": "e1", "conversation_id": "c1", "content": "hi",
                                         "channel_type": "whatsapp", "recipient": "1555"}])
        assert await receipts.get("u1", "e1") is None

    @pytest.mark.asyncio
    async def test_resubmit_while_delivering_is_retryable(self, receipts):
        started, proceed = asyncio.Event(), asyncio.Event()

        async def slow_then_fail(*args, **kwargs):
            started.set()
            await proceed.wait()
            raise NetworkError("connection reset", channel="whatsapp")

        registry = AsyncMock()
        registry.deliver = AsyncMock(side_effect=slow_then_fail)
        service = OutboxSyncService(receipts, registry)
        entry = {"id": "e1", "conversation_id": "c1", "content": "hi",
                 "channel_type": "whatsapp", "recipient": "1555"}

        first = asyncio.create_task(service.submit("u1", [entry]))
        await started.wait()
        [second] = await service.submit("u1", [entry])
        proceed.set()
        [first_result] = await first

        assert second.status == SyncResultStatus.REJECTED
        assert second.reason == "in_flight"
        assert second.retryable
        assert first_result.retryable
        assert await receipts.get("u1", "e1") is None
        assert registry.deliver.await_count == 1

    @pytest.mark.asyncio
    async def test_delivered_entry_reported_duplicate(self, service):
        entry = {"id": "e1", "conversation_id": "c1", "content": "hi",
                 "channel_type": "whatsapp", "recipient": "1555"}
        [first] = await service.submit("u1", [entry])
        [again] = await service.submit("u1", [entry])
        assert again.status == SyncResultStatus.DUPLICATE
        assert again.message_id == first.message_id


# ──────────────────────────────────────────────────────────────
#  Persistence
# ──────────────────────────────────────────────────────────────

class TestFileStorage:
    @pytest.mark.asyncio
    async def test_entries_survive_restart(self, tmp_path, service, clock):
        storage = FileOutboxStorage(str(tmp_path), "u1")
        outbox = OfflineOutbox(storage, LocalSyncTransport(service, "u1"), clock=clock)
        entry = await _queue(outbox)

        reopened = OfflineOutbox(FileOutboxStorage(str(tmp_path), "u1"),
                                 LocalSyncTransport(service, "u1"), clock=clock)
        await reopened.open()
        assert (await reopened.get(entry.id)).content == "On my way"
        assert json.loads(storage.path.read_text())[entry.id]["sync_status"] == "pending"

    @pytest.mark.asyncio
    async def test_interrupted_sync_reset_on_open(self, tmp_path, service):
        storage = FileOutboxStorage(str(tmp_path), "u1")
        stuck = OutboxEntry(conversation_id="c1", content="hi", channel_type="whatsapp",
                            recipient="1555", sync_status=OutboxSyncStatus.SYNCING)
        await storage.save(stuck)

        outbox = OfflineOutbox(FileOutboxStorage(str(tmp_path), "u1"), LocalSyncTransport(service, "u1"))
        await outbox.open()
        assert (await outbox.get(stuck.id)).sync_status == OutboxSyncStatus.PENDING
        assert json.loads(storage.path.read_text())[stuck.id]["sync_status"] == "pending"

    @pytest.mark.asyncio
    async def test_user_id_is_made_file_safe(self, tmp_path):
        storage = FileOutboxStorage(str(tmp_path), "../evil/user")
        assert storage.path.parent == tmp_path
        assert storage.path.name == ".._evil_user.json"

    @pytest.mark.asyncio
    async def test_corrupt_file_loads_empty(self, tmp_path):
        storage = FileOutboxStorage(str(tmp_path), "u1")
        storage.path.write_text("{not json")
        assert await storage.load() == {}


# ──────────────────────────────────────────────────────────────
#  HTTP transport
# ──────────────────────────────────────────────────────────────

class TestHttpTransport:
    def _transport(self, handler) -> HttpSyncTransport:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return HttpSyncTransport("https://api.example.com/", lambda: "jwt-token", client=client)

    def _submission(self) -> OutboxSubmission:
        return OutboxSubmission(id="e1", conversation_id="c1", content="hi",
                                channel_type="whatsapp", recipient="1555")

    @pytest.mark.asyncio
    async def test_posts_entries_with_bearer(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"results": [
                {"id": "e1", "status": "accepted", "message_id": "m1"}]})

        results = await self._transport(handler).submit([self._submission()])
        assert results[0].status == SyncResultStatus.ACCEPTED
        assert results[0].message_id == "m1"
        assert str(seen[0].url) == "https://api.example.com/api/v1/sync/outbox"
        assert seen[0].headers["Authorization"] == "Bearer jwt-token"
        assert json.loads(seen[0].content)["entries"][0]["channel_type"] == "whatsapp"

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self):
        transport = self._transport(lambda request: httpx.Response(503))
        with pytest.raises(TransientError):
            await transport.submit([self._submission()])

    @pytest.mark.asyncio
    async def test_unauthorized_is_permanent(self):
        transport = self._transport(lambda request: httpx.Response(401))
        with pytest.raises(PermanentError):
            await transport.submit([self._submission()])

    @pytest.mark.asyncio
    async def test_malformed_body_is_transient(self):
        transport = self._transport(lambda request: httpx.Response(200, text="<html>"))
        with pytest.raises(TransientError) as exc_info:
            await transport.submit([self._submission()])
        assert exc_info.value.code == "bad_response"
