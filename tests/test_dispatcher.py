"""
Tests for the scheduled message dispatcher.

Covers:
  - Validation on schedule, ownership on get / cancel
  - Due messages delivered on tick through the WhatsApp adapter
  - Adapter exhaustion is terminal (no second round of retries)
  - Transient failures rescheduled with backoff until max_retries
  - Recipient resolution order, non-overlapping and bounded ticks
  - Cleanup, stats, bus events, background loop
"""
import asyncio
from datetime import timedelta

import pytest
from unittest.mock import AsyncMock, MagicMock

from config.settings import SchedulerConfig
from core.errors import ConflictError, NetworkError, NotFoundError, PermanentError
from core.events import Topics
from database.store_memory import InMemoryScheduledMessageStore
from models.schemas import ChannelType, DeliveryReceipt, ScheduledMessageStatus
from scheduler.dispatcher import ScheduledMessageDispatcher


@pytest.fixture
def store():
    return InMemoryScheduledMessageStore()


@pytest.fixture
def dispatcher(store, registry, bus, clock):
    return ScheduledMessageDispatcher(store, registry, bus=bus, clock=clock)


def _fake_registry(side_effect=None):
    registry = MagicMock()
    registry.deliver = AsyncMock(
        side_effect=side_effect,
        return_value=DeliveryReceipt(channel=ChannelType.WHATSAPP, recipient="15551234567",
                                     channel_message_id="wamid.fake"),
    )
    return registry


async def _schedule(dispatcher, clock, minutes: int = 5, **kwargs):
    fields = dict(channel_type="whatsapp", recipient="15551234567")
    fields.update(kwargs)
    return await dispatcher.schedule_message(
        "u1", "c1", "Reminder: demo at 10", clock() + timedelta(minutes=minutes), **fields)


# ──────────────────────────────────────────────────────────────
#  Scheduling API
# ──────────────────────────────────────────────────────────────

class TestScheduling:
    @pytest.mark.asyncio
    async def test_schedule_creates_pending(self, dispatcher, clock):
        msg = await _schedule(dispatcher, clock)
        assert msg.status == ScheduledMessageStatus.PENDING
        assert msg.channel_type == ChannelType.WHATSAPP
        assert msg.retry_count == 0
        assert (await dispatcher.get_message(msg.id, "u1")).id == msg.id

    @pytest.mark.asyncio
    async def test_past_time_rejected(self, dispatcher, clock):
        with pytest.raises(PermanentError) as exc_info:
            await _schedule(dispatcher, clock, minutes=-1)
        assert exc_info.value.code == "validation_error"

    @pytest.mark.asyncio
    async def test_empty_content_rejected(self, dispatcher, clock):
        with pytest.raises(PermanentError):
            await dispatcher.schedule_message("u1", "c1", "   ", clock() + timedelta(minutes=5))

    @pytest.mark.asyncio
    async def test_other_users_message_is_not_found(self, dispatcher, clock):
        msg = await _schedule(dispatcher, clock)
        with pytest.raises(NotFoundError):
            await dispatcher.get_message(msg.id, "u2")
        with pytest.raises(NotFoundError):
            await dispatcher.cancel(msg.id, "u2")

    @pytest.mark.asyncio
    async def test_list_by_status(self, dispatcher, clock):
        keep = await _schedule(dispatcher, clock)
        gone = await _schedule(dispatcher, clock, minutes=10)
        await dispatcher.cancel(gone.id, "u1")
        pending = await dispatcher.list_messages("u1", status="pending")
        assert [m.id for m in pending] == [keep.id]

    @pytest.mark.asyncio
    async def test_cancel_pending(self, dispatcher, clock, collect_events):
        events = collect_events(Topics.SCHEDULED)
        msg = await _schedule(dispatcher, clock)
        cancelled = await dispatcher.cancel(msg.id, "u1")
        assert cancelled.status == ScheduledMessageStatus.CANCELLED
        assert [e.type for e in events] == ["scheduled_message.created", "scheduled_message.cancelled"]

    @pytest.mark.asyncio
    async def test_cancel_after_send_conflicts(self, dispatcher, clock):
        msg = await _schedule(dispatcher, clock, minutes=1)
        clock.advance(minutes=2)
        await dispatcher.tick()
        with pytest.raises(ConflictError) as exc_info:
            await dispatcher.cancel(msg.id, "u1")
        assert "sent" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_cancel_while_claimed_conflicts(self, dispatcher, store, clock):
        msg = await _schedule(dispatcher, clock, minutes=1)
        clock.advance(minutes=2)
        await store.claim_due(clock())
        with pytest.raises(ConflictError) as exc_info:
            await dispatcher.cancel(msg.id, "u1")
        assert "dispatching" in str(exc_info.value)


# ──────────────────────────────────────────────────────────────
#  Dispatch
# ──────────────────────────────────────────────────────────────

class TestDispatch:
    @pytest.mark.asyncio
    async def test_due_message_sent_once(self, dispatcher, store, clock, graph_api, collect_events):
        events = collect_events(Topics.SCHEDULED)
        msg = await _schedule(dispatcher, clock, minutes=5)

        assert (await dispatcher.tick())["claimed"] == 0
        clock.advance(minutes=5)
        stats = await dispatcher.tick()
        assert stats["sent"] == 1

        loaded = await store.get(msg.id)
        assert loaded.status == ScheduledMessageStatus.SENT
        assert loaded.sent_at == clock()
        assert graph_api.sent_bodies[0]["to"] == "15551234567"
        assert graph_api.sent_bodies[0]["text"]["body"] == "Reminder: demo at 10"

        assert (await dispatcher.tick())["claimed"] == 0
        assert len(graph_api.requests) == 1
        sent = events[-1]
        assert sent.type == "scheduled_message.sent"
        assert sent.data["channel_message_id"] == "wamid.1"
        assert sent.user_id == "u1"

    @pytest.mark.asyncio
    async def test_adapter_exhaustion_is_terminal(self, dispatcher, store, clock, graph_api, sleep_recorder):
        graph_api.responses = [503, 503, 503]
        msg = await _schedule(dispatcher, clock, minutes=1)
        clock.advance(minutes=2)

        stats = await dispatcher.tick()
        assert stats["failed"] == 1
        loaded = await store.get(msg.id)
        assert loaded.status == ScheduledMessageStatus.FAILED
        assert loaded.retry_count == 1
        assert len(graph_api.requests) == 3
        assert sleep_recorder.delays == [1.0, 2.0]

        clock.advance(hours=2)
        await dispatcher.tick()
        assert len(graph_api.requests) == 3

    @pytest.mark.asyncio
    async def test_permanent_error_fails_immediately(self, dispatcher, store, clock, graph_api):
        graph_api.responses = [400]
        msg = await _schedule(dispatcher, clock, minutes=1)
        clock.advance(minutes=2)
        await dispatcher.tick()
        loaded = await store.get(msg.id)
        assert loaded.status == ScheduledMessageStatus.FAILED
        assert len(graph_api.requests) == 1

    @pytest.mark.asyncio
    async def test_transient_error_rescheduled_until_max_retries(self, store, bus, clock, collect_events):
        events = collect_events(Topics.SCHEDULED)
        registry = _fake_registry(side_effect=NetworkError("connection reset", "whatsapp"))
        dispatcher = ScheduledMessageDispatcher(store, registry, bus=bus, clock=clock, max_retries=3)
        msg = await _schedule(dispatcher, clock, minutes=1)
        clock.advance(minutes=1)

        assert (await dispatcher.tick())["rescheduled"] == 1
        loaded = await store.get(msg.id)
        assert loaded.status == ScheduledMessageStatus.PENDING
        assert loaded.retry_count == 1
        assert loaded.next_attempt_at == clock() + timedelta(seconds=60)
        assert loaded.error_message == "connection reset"

        clock.advance(seconds=30)
        assert (await dispatcher.tick())["claimed"] == 0

        clock.advance(seconds=30)
        assert (await dispatcher.tick())["rescheduled"] == 1
        assert (await store.get(msg.id)).next_attempt_at == clock() + timedelta(seconds=120)

        clock.advance(seconds=120)
        assert (await dispatcher.tick())["failed"] == 1
        loaded = await store.get(msg.id)
        assert loaded.status == ScheduledMessageStatus.FAILED
        assert loaded.retry_count == 3
        assert registry.deliver.await_count == 3
        assert events[-1].type == "scheduled_message.failed"
        assert events[-1].data["reason"] == "exhausted"

    @pytest.mark.asyncio
    async def test_retry_succeeds_after_backoff(self, store, clock):
        registry = _fake_registry()
        registry.deliver.side_effect = [NetworkError("reset"), registry.deliver.return_value]
        dispatcher = ScheduledMessageDispatcher(store, registry, clock=clock)
        msg = await _schedule(dispatcher, clock, minutes=1)
        clock.advance(minutes=1)
        await dispatcher.tick()
        clock.advance(minutes=1)
        assert (await dispatcher.tick())["sent"] == 1
        loaded = await store.get(msg.id)
        assert loaded.status == ScheduledMessageStatus.SENT
        assert loaded.retry_count == 1

    @pytest.mark.asyncio
    async def test_metadata_forwarded_to_channel(self, store, clock):
        registry = _fake_registry()
        dispatcher = ScheduledMessageDispatcher(store, registry, clock=clock)
        msg = await _schedule(dispatcher, clock, minutes=1, metadata={"campaign": "q1"})
        clock.advance(minutes=1)
        await dispatcher.tick()
        args = registry.deliver.await_args
        assert args.args[:3] == (ChannelType.WHATSAPP, "15551234567", "Reminder: demo at 10")
        assert args.kwargs["metadata"] == {"scheduled_message_id": msg.id, "campaign": "q1"}


class TestRecipientResolution:
    @pytest.mark.asyncio
    async def test_resolver_fills_missing_target(self, store, clock):
        registry = _fake_registry()
        resolver = AsyncMock(return_value=(ChannelType.INSTAGRAM, "igsid-42"))
        dispatcher = ScheduledMessageDispatcher(store, registry, resolver=resolver, clock=clock)
        await _schedule(dispatcher, clock, minutes=1, channel_type=None, recipient=None)
        clock.advance(minutes=1)
        await dispatcher.tick()
        assert registry.deliver.await_args.args[:2] == (ChannelType.INSTAGRAM, "igsid-42")

    @pytest.mark.asyncio
    async def test_explicit_target_wins_over_resolver(self, store, clock):
        registry = _fake_registry()
        resolver = AsyncMock(return_value=(ChannelType.INSTAGRAM, "igsid-42"))
        dispatcher = ScheduledMessageDispatcher(store, registry, resolver=resolver, clock=clock)
        await _schedule(dispatcher, clock, minutes=1)
        clock.advance(minutes=1)
        await dispatcher.tick()
        resolver.assert_not_awaited()
        assert registry.deliver.await_args.args[:2] == (ChannelType.WHATSAPP, "15551234567")

    @pytest.mark.asyncio
    async def test_default_channel_and_metadata_recipient(self, store, clock):
        registry = _fake_registry()
        dispatcher = ScheduledMessageDispatcher(store, registry, default_channel="email", clock=clock)
        await _schedule(dispatcher, clock, minutes=1, channel_type=None, recipient=None,
                        metadata={"recipient": "ana@example.com"})
        clock.advance(minutes=1)
        await dispatcher.tick()
        assert registry.deliver.await_args.args[:2] == (ChannelType.EMAIL, "ana@example.com")

    @pytest.mark.asyncio
    async def test_no_recipient_fails(self, store, clock):
        registry = _fake_registry()
        dispatcher = ScheduledMessageDispatcher(store, registry, clock=clock)
        msg = await _schedule(dispatcher, clock, minutes=1, channel_type=None, recipient=None)
        clock.advance(minutes=1)
        await dispatcher.tick()
        loaded = await store.get(msg.id)
        assert loaded.status == ScheduledMessageStatus.FAILED
        registry.deliver.assert_not_awaited()


# ──────────────────────────────────────────────────────────────
#  Tick guarantees and lifecycle
# ──────────────────────────────────────────────────────────────

class TestTicks:
    @pytest.mark.asyncio
    async def test_overlapping_tick_is_skipped(self, dispatcher, clock):
        await _schedule(dispatcher, clock, minutes=1)
        clock.advance(minutes=2)
        async with dispatcher._tick_lock:
            assert await dispatcher.tick() == {"skipped": True}
        assert (await dispatcher.tick())["sent"] == 1

    @pytest.mark.asyncio
    async def test_slow_tick_times_out_and_claim_is_released(self, store, clock):
        async def _hang(*args, **kwargs):
            await asyncio.sleep(10)

        registry = _fake_registry(side_effect=_hang)
        dispatcher = ScheduledMessageDispatcher(store, registry, clock=clock, tick_timeout=0.05)
        msg = await _schedule(dispatcher, clock, minutes=1)
        clock.advance(minutes=1)

        assert (await dispatcher.tick())["timed_out"] is True
        assert (await store.get(msg.id)).is_claimed

        registry.deliver.side_effect = None
        clock.advance(seconds=1)
        stats = await dispatcher.tick()
        assert stats["released"] == 1
        assert stats["sent"] == 1

    @pytest.mark.asyncio
    async def test_batch_size_caps_claims(self, store, clock):
        dispatcher = ScheduledMessageDispatcher(store, _fake_registry(), clock=clock, batch_size=2)
        for minutes in (1, 2, 3):
            await _schedule(dispatcher, clock, minutes=minutes)
        clock.advance(minutes=5)
        assert (await dispatcher.tick())["sent"] == 2
        assert (await dispatcher.tick())["sent"] == 1

    @pytest.mark.asyncio
    async def test_stats_report_last_tick(self, dispatcher, clock):
        await _schedule(dispatcher, clock, minutes=1)
        clock.advance(minutes=1)
        await dispatcher.tick()
        stats = await dispatcher.stats("u1")
        assert stats["sent"] == 1
        assert stats["running"] is False
        assert stats["last_tick"]["sent"] == 1

    @pytest.mark.asyncio
    async def test_cleanup_purges_terminal_messages(self, store):
        dispatcher = ScheduledMessageDispatcher(store, _fake_registry())
        msg = await dispatcher.schedule_message("u1", "c1", "hi", dispatcher._clock() + timedelta(hours=1),
                                                channel_type="whatsapp", recipient="1555")
        await dispatcher.cancel(msg.id)
        assert await dispatcher.cleanup() == 0
        assert await dispatcher.cleanup(retention_days=-1) == 1
        assert await store.get(msg.id) is None

    @pytest.mark.asyncio
    async def test_background_loop_dispatches(self, store, clock):
        registry = _fake_registry()
        dispatcher = ScheduledMessageDispatcher(store, registry, clock=clock, interval=0.01)
        msg = await _schedule(dispatcher, clock, minutes=1)
        clock.advance(minutes=1)
        await dispatcher.start()
        try:
            for _ in range(100):
                if (await store.get(msg.id)).status == ScheduledMessageStatus.SENT:
                    break
                await asyncio.sleep(0.01)
            assert dispatcher.running
        finally:
            await dispatcher.stop()
        assert (await store.get(msg.id)).status == ScheduledMessageStatus.SENT
        assert not dispatcher.running

    def test_from_config(self, store):
        config = SchedulerConfig(interval=5, max_retries=4, default_channel="email")
        dispatcher = ScheduledMessageDispatcher.from_config(store, _fake_registry(), config)
        assert dispatcher.interval == 5
        assert dispatcher.retry_policy.max_attempts == 4
        assert dispatcher.default_channel == ChannelType.EMAIL
