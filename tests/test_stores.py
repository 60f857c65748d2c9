"""
Store backend tests — every case runs against memory and SQLite.

Covers:
  - Claiming due messages exactly once, respecting backoff
  - Conditional transitions (sent / failed / rescheduled / cancelled)
  - Stale claim release, terminal purge, per-status counts
  - Outbox receipt reservation, completion and release
"""
from datetime import timedelta

import pytest
import pytest_asyncio

from config.settings import DatabaseConfig
from database.session import _to_async_url, create_engine_for, create_session_factory, init_db
from database.store import SqlOutboxReceiptStore, SqlScheduledMessageStore
from database.store_factory import create_stores
from database.store_memory import InMemoryOutboxReceiptStore, InMemoryScheduledMessageStore
from models.schemas import ChannelType, ScheduledMessage, ScheduledMessageStatus, utcnow


@pytest_asyncio.fixture(params=["memory", "sql"])
async def backends(request, tmp_path):
    if request.param == "memory":
        yield InMemoryScheduledMessageStore(), InMemoryOutboxReceiptStore()
        return
    engine = create_engine_for(f"sqlite:///{tmp_path}/stores.db")
    await init_db(engine)
    factory = create_session_factory(engine)
    yield SqlScheduledMessageStore(factory), SqlOutboxReceiptStore(factory)
    await engine.dispose()


@pytest.fixture
def scheduled(backends):
    return backends[0]


@pytest.fixture
def receipts(backends):
    return backends[1]


def _message(clock, minutes: int = 5, **overrides) -> ScheduledMessage:
    fields = dict(
        conversation_id="c1",
        user_id="u1",
        content="Reminder: demo at 10",
        scheduled_time=clock() + timedelta(minutes=minutes),
        channel_type=ChannelType.WHATSAPP,
        recipient="15551234567",
        metadata={"source": "composer"},
    )
    fields.update(overrides)
    return ScheduledMessage(**fields)


# ──────────────────────────────────────────────────────────────
#  Scheduled messages
# ──────────────────────────────────────────────────────────────

class TestScheduledMessages:
    @pytest.mark.asyncio
    async def test_create_and_get(self, scheduled, clock):
        msg = await scheduled.create(_message(clock))
        loaded = await scheduled.get(msg.id)
        assert loaded.content == "Reminder: demo at 10"
        assert loaded.status == ScheduledMessageStatus.PENDING
        assert loaded.channel_type == ChannelType.WHATSAPP
        assert loaded.metadata == {"source": "composer"}
        assert loaded.scheduled_time == msg.scheduled_time
        assert await scheduled.get("missing") is None

    @pytest.mark.asyncio
    async def test_list_filters_and_orders(self, scheduled, clock):
        late = await scheduled.create(_message(clock, minutes=30))
        early = await scheduled.create(_message(clock, minutes=10))
        await scheduled.create(_message(clock, conversation_id="c2"))
        await scheduled.create(_message(clock, user_id="u2"))

        listed = await scheduled.list_messages(user_id="u1", conversation_id="c1")
        assert [m.id for m in listed] == [early.id, late.id]
        assert len(await scheduled.list_messages(user_id="u1")) == 3
        assert len(await scheduled.list_messages(user_id="u1", limit=1)) == 1

    @pytest.mark.asyncio
    async def test_claim_due_only_once(self, scheduled, clock):
        msg = await scheduled.create(_message(clock, minutes=5))
        assert await scheduled.claim_due(clock()) == []

        clock.advance(minutes=6)
        claimed = await scheduled.claim_due(clock())
        assert [m.id for m in claimed] == [msg.id]
        assert claimed[0].is_claimed
        assert await scheduled.claim_due(clock()) == []

    @pytest.mark.asyncio
    async def test_claim_due_oldest_first_with_limit(self, scheduled, clock):
        second = await scheduled.create(_message(clock, minutes=2))
        first = await scheduled.create(_message(clock, minutes=1))
        clock.advance(minutes=5)
        assert [m.id for m in await scheduled.claim_due(clock(), limit=1)] == [first.id]
        assert [m.id for m in await scheduled.claim_due(clock())] == [second.id]

    @pytest.mark.asyncio
    async def test_mark_sent_is_conditional(self, scheduled, clock):
        msg = await scheduled.create(_message(clock))
        assert await scheduled.mark_sent(msg.id, clock())
        assert not await scheduled.mark_sent(msg.id, clock())
        loaded = await scheduled.get(msg.id)
        assert loaded.status == ScheduledMessageStatus.SENT
        assert loaded.sent_at == clock()

    @pytest.mark.asyncio
    async def test_mark_failed(self, scheduled, clock):
        msg = await scheduled.create(_message(clock))
        assert await scheduled.mark_failed(msg.id, 3, "graph api down")
        loaded = await scheduled.get(msg.id)
        assert loaded.status == ScheduledMessageStatus.FAILED
        assert loaded.retry_count == 3
        assert loaded.error_message == "graph api down"

    @pytest.mark.asyncio
    async def test_reschedule_releases_claim_and_waits_for_backoff(self, scheduled, clock):
        msg = await scheduled.create(_message(clock, minutes=1))
        clock.advance(minutes=2)
        await scheduled.claim_due(clock())

        retry_at = clock() + timedelta(minutes=1)
        assert await scheduled.reschedule(msg.id, 1, retry_at, "timeout")
        loaded = await scheduled.get(msg.id)
        assert loaded.status == ScheduledMessageStatus.PENDING
        assert loaded.retry_count == 1
        assert loaded.next_attempt_at == retry_at
        assert not loaded.is_claimed

        assert await scheduled.claim_due(clock()) == []
        clock.advance(minutes=1)
        assert [m.id for m in await scheduled.claim_due(clock())] == [msg.id]

    @pytest.mark.asyncio
    async def test_cancel_pending_but_not_claimed(self, scheduled, clock):
        free = await scheduled.create(_message(clock, minutes=1))
        busy = await scheduled.create(_message(clock, minutes=1))
        assert await scheduled.cancel(free.id)
        assert (await scheduled.get(free.id)).status == ScheduledMessageStatus.CANCELLED
        assert not await scheduled.cancel(free.id)

        clock.advance(minutes=2)
        await scheduled.claim_due(clock())
        assert not await scheduled.cancel(busy.id)
        assert (await scheduled.get(busy.id)).status == ScheduledMessageStatus.PENDING

    @pytest.mark.asyncio
    async def test_cancelled_message_is_never_claimed(self, scheduled, clock):
        msg = await scheduled.create(_message(clock, minutes=1))
        await scheduled.cancel(msg.id)
        clock.advance(minutes=2)
        assert await scheduled.claim_due(clock()) == []

    @pytest.mark.asyncio
    async def test_release_stale_claims(self, scheduled, clock):
        msg = await scheduled.create(_message(clock, minutes=1))
        clock.advance(minutes=2)
        await scheduled.claim_due(clock())

        assert await scheduled.release_stale_claims(clock() - timedelta(minutes=5)) == 0
        clock.advance(minutes=10)
        assert await scheduled.release_stale_claims(clock() - timedelta(minutes=5)) == 1
        assert [m.id for m in await scheduled.claim_due(clock())] == [msg.id]

    @pytest.mark.asyncio
    async def test_purge_terminal_keeps_pending(self, scheduled, clock):
        done = await scheduled.create(_message(clock))
        pending = await scheduled.create(_message(clock))
        await scheduled.mark_sent(done.id, clock())

        assert await scheduled.purge_terminal(utcnow() - timedelta(hours=1)) == 0
        assert await scheduled.purge_terminal(utcnow() + timedelta(hours=1)) == 1
        assert await scheduled.get(done.id) is None
        assert await scheduled.get(pending.id) is not None

    @pytest.mark.asyncio
    async def test_count_by_status(self, scheduled, clock):
        a = await scheduled.create(_message(clock))
        b = await scheduled.create(_message(clock))
        await scheduled.create(_message(clock, user_id="u2"))
        await scheduled.mark_sent(a.id, clock())
        await scheduled.cancel(b.id)

        counts = await scheduled.count_by_status("u1")
        assert counts == {"pending": 0, "sent": 1, "failed": 0, "cancelled": 1}
        assert (await scheduled.count_by_status())["pending"] == 1


# ──────────────────────────────────────────────────────────────
#  Outbox receipts
# ──────────────────────────────────────────────────────────────

class TestReceipts:
    @pytest.mark.asyncio
    async def test_reserve_once(self, receipts):
        receipt, created = await receipts.reserve("u1", "local-1", "hash-a")
        assert created
        assert receipt.state == "reserved"

        again, created = await receipts.reserve("u1", "local-1", "hash-b")
        assert not created
        assert again.content_hash == "hash-a"

    @pytest.mark.asyncio
    async def test_client_ids_are_scoped_per_user(self, receipts):
        await receipts.reserve("u1", "local-1", "hash-a")
        _, created = await receipts.reserve("u2", "local-1", "hash-a")
        assert created

    @pytest.mark.asyncio
    async def test_complete(self, receipts):
        await receipts.reserve("u1", "local-1", "hash-a")
        await receipts.complete("u1", "local-1", "msg-1", "wamid.1")
        receipt = await receipts.get("u1", "local-1")
        assert receipt.state == "delivered"
        assert receipt.message_id == "msg-1"
        assert receipt.channel_message_id == "wamid.1"

    @pytest.mark.asyncio
    async def test_release_only_drops_reservations(self, receipts):
        await receipts.reserve("u1", "local-1", "hash-a")
        await receipts.release("u1", "local-1")
        assert await receipts.get("u1", "local-1") is None

        await receipts.reserve("u1", "local-2", "hash-a")
        await receipts.complete("u1", "local-2", "msg-2")
        await receipts.release("u1", "local-2")
        assert (await receipts.get("u1", "local-2")).state == "delivered"


class TestFactory:
    def test_memory_by_default(self):
        stores = create_stores(None)
        assert stores.backend == "memory"
        assert isinstance(stores.scheduled, InMemoryScheduledMessageStore)

    def test_sql_backend(self, tmp_path):
        engine = create_engine_for(f"sqlite:///{tmp_path}/factory.db")
        stores = create_stores(DatabaseConfig(store_backend="sql"), create_session_factory(engine))
        assert stores.backend == "sql"
        assert isinstance(stores.receipts, SqlOutboxReceiptStore)

    def test_unknown_backend_falls_back_to_memory(self):
        assert create_stores(DatabaseConfig(store_backend="mongo")).backend == "memory"


class TestAsyncUrl:
    @pytest.mark.parametrize("url,expected", [
        ("postgresql://u:p@db/app", "postgresql+asyncpg://u:p@db/app"),
        ("postgres://u:p@db/app", "postgresql+asyncpg://u:p@db/app"),
        ("sqlite:///./app.db", "sqlite+aiosqlite:///./app.db"),
        ("sqlite+aiosqlite:///./app.db", "sqlite+aiosqlite:///./app.db"),
    ])
    def test_driver_mapping(self, url, expected):
        assert _to_async_url(url) == expected
