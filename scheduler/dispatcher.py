"""
Scheduled Message Dispatcher — sends user-scheduled messages when due.

Runs as a background task inside the FastAPI lifespan.

Flow per tick:
    release claims older than the tick timeout (crashed or timed-out ticks)
    → claim due pending messages (oldest first, batch-capped)
    → deliver each through the ChannelRegistry
    → sent | rescheduled with backoff | failed

Ticks never overlap: a tick that starts while another is running is
skipped, and every tick is bounded by ``tick_timeout``.
"""
from __future__ import annotations

import asyncio
import time
import structlog
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional, Union

from channels.base import ChannelRegistry
from channels.retry import RetryPolicy
from core.errors import ConflictError, NotFoundError, PermanentError
from core.events import EventBus, Topics
from database.store_base import ScheduledMessageStore
from models.schemas import (
    ChannelType, ScheduledMessage, ScheduledMessageStatus, ensure_utc, utcnow,
)

logger = structlog.get_logger()

RecipientResolver = Callable[[ScheduledMessage], Awaitable[Optional[tuple[ChannelType, str]]]]


class ScheduledMessageDispatcher:
    """
    Owns the scheduled-message lifecycle: pending → sent | failed | cancelled.

    Configure in settings:
        scheduler:
          interval: 60
          batch_size: 100
          max_retries: 3
    """

    def __init__(
        self,
        store: ScheduledMessageStore,
        registry: ChannelRegistry,
        bus: Optional[EventBus] = None,
        resolver: Optional[RecipientResolver] = None,
        interval: float = 60.0,
        batch_size: int = 100,
        max_retries: int = 3,
        backoff_base: float = 60.0,
        backoff_max: float = 3600.0,
        tick_timeout: float = 300.0,
        retention_days: int = 30,
        cleanup_interval: float = 3600.0,
        default_channel: Optional[Union[ChannelType, str]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.registry = registry
        self.bus = bus
        self._resolver = resolver
        self.interval = interval
        self.batch_size = batch_size
        self.retry_policy = RetryPolicy(
            max_attempts=max_retries,
            base_delay=backoff_base,
            max_delay=backoff_max,
            retry_unclassified=True,
        )
        self.tick_timeout = tick_timeout
        self.retention_days = retention_days
        self.cleanup_interval = cleanup_interval
        self.default_channel = ChannelType(default_channel) if default_channel else None
        self._clock = clock
        self._tick_lock = asyncio.Lock()
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._last_tick: dict[str, Any] = {}

    @classmethod
    def from_config(cls, store, registry, config: Any, bus=None, resolver=None) -> "ScheduledMessageDispatcher":
        return cls(
            store, registry, bus=bus, resolver=resolver,
            interval=config.interval,
            batch_size=config.batch_size,
            max_retries=config.max_retries,
            backoff_base=config.backoff_base,
            backoff_max=config.backoff_max,
            tick_timeout=config.tick_timeout,
            retention_days=config.retention_days,
            cleanup_interval=config.cleanup_interval,
            default_channel=config.default_channel or None,
        )

    @property
    def running(self) -> bool:
        return self._running

    # ── Lifecycle ─────────────────────────────────────────────

    async def start(self) -> None:
        """Start the tick loop as a background task."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop(), name="scheduled_dispatcher")
        logger.info("scheduled_dispatcher_started", interval_s=self.interval)

    async def stop(self) -> None:
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("scheduled_dispatcher_stopped")

    async def _run_loop(self) -> None:
        last_cleanup = 0.0
        while self._running:
            try:
                await self.tick()
                if time.monotonic() - last_cleanup >= self.cleanup_interval:
                    await self.cleanup()
                    last_cleanup = time.monotonic()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("dispatcher_tick_error", error=str(e), exc_info=True)
            await asyncio.sleep(self.interval)

    # ── Scheduling API ────────────────────────────────────────

    async def schedule_message(
        self,
        user_id: str,
        conversation_id: str,
        content: str,
        scheduled_time: datetime,
        channel_type: Optional[Union[ChannelType, str]] = None,
        recipient: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> ScheduledMessage:
        content = (content or "").strip()
        if not content:
            raise PermanentError("Scheduled message content cannot be empty", code="validation_error")
        if not conversation_id:
            raise PermanentError("conversation_id is required", code="validation_error")
        scheduled_time = ensure_utc(scheduled_time)
        if scheduled_time <= self._clock():
            raise PermanentError("Scheduled time must be in the future", code="validation_error")

        message = ScheduledMessage(
            conversation_id=conversation_id,
            user_id=user_id,
            content=content,
            scheduled_time=scheduled_time,
            channel_type=ChannelType(channel_type) if channel_type else None,
            recipient=recipient,
            metadata=metadata or {},
        )
        await self.store.create(message)
        logger.info("message_scheduled", message_id=message.id,
                    scheduled_time=scheduled_time.isoformat())
        await self._publish("scheduled_message.created", message)
        return message

    async def get_message(self, message_id: str, user_id: Optional[str] = None) -> ScheduledMessage:
        message = await self.store.get(message_id)
        if message is None or (user_id is not None and message.user_id != user_id):
            raise NotFoundError(f"Scheduled message not found: {message_id}")
        return message

    async def list_messages(
        self,
        user_id: str,
        conversation_id: Optional[str] = None,
        status: Optional[Union[ScheduledMessageStatus, str]] = None,
        limit: int = 100,
    ) -> list[ScheduledMessage]:
        return await self.store.list_messages(
            user_id=user_id,
            conversation_id=conversation_id,
            status=ScheduledMessageStatus(status) if status else None,
            limit=limit,
        )

    async def cancel(self, message_id: str, user_id: Optional[str] = None) -> ScheduledMessage:
        message = await self.get_message(message_id, user_id)
        if not await self.store.cancel(message_id):
            current = await self.store.get(message_id) or message
            state = "dispatching" if current.status == ScheduledMessageStatus.PENDING else current.status.value
            raise ConflictError(f"Scheduled message {message_id} cannot be cancelled while {state}")
        cancelled = await self.store.get(message_id)
        logger.info("scheduled_message_cancelled", message_id=message_id)
        await self._publish("scheduled_message.cancelled", cancelled)
        return cancelled

    async def stats(self, user_id: Optional[str] = None) -> dict[str, Any]:
        counts = await self.store.count_by_status(user_id)
        return {**counts, "running": self._running, "last_tick": self._last_tick}

    async def cleanup(self, retention_days: Optional[int] = None) -> int:
        days = retention_days if retention_days is not None else self.retention_days
        removed = await self.store.purge_terminal(self._clock() - timedelta(days=days))
        if removed:
            logger.info("scheduled_messages_cleaned_up", removed=removed)
        return removed

    # ── Tick ──────────────────────────────────────────────────

    async def tick(self) -> dict[str, Any]:
        """
        One dispatch pass. Returns counts:
        {"claimed", "sent", "rescheduled", "failed", "released"} or {"skipped": True}.
        """
        if self._tick_lock.locked():
            logger.info("dispatcher_tick_skipped", reason="previous_tick_running")
            return {"skipped": True}
        async with self._tick_lock:
            try:
                stats = await asyncio.wait_for(self._tick(), timeout=self.tick_timeout)
            except asyncio.TimeoutError:
                logger.error("dispatcher_tick_timeout", timeout_s=self.tick_timeout)
                stats = {"skipped": False, "timed_out": True}
        self._last_tick = {**stats, "at": self._clock().isoformat()}
        return stats

    async def _tick(self) -> dict[str, Any]:
        now = self._clock()
        stats = {"skipped": False, "claimed": 0, "sent": 0, "rescheduled": 0, "failed": 0, "released": 0}
        stats["released"] = await self.store.release_stale_claims(now - timedelta(seconds=self.tick_timeout))
        claimed = await self.store.claim_due(now, self.batch_size)
        stats["claimed"] = len(claimed)
        for message in claimed:
            outcome = await self._dispatch(message)
            stats[outcome] += 1
        if claimed:
            logger.info("dispatcher_tick_complete", **stats)
        return stats

    async def _dispatch(self, message: ScheduledMessage) -> str:
        try:
            channel, recipient = await self._resolve_target(message)
            receipt = await self.registry.deliver(
                channel, recipient, message.content,
                metadata={"scheduled_message_id": message.id, **message.metadata},
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            return await self._handle_failure(message, e)

        sent_at = self._clock()
        if not await self.store.mark_sent(message.id, sent_at):
            logger.warning("scheduled_message_state_changed", message_id=message.id)
            return "failed"
        message.status = ScheduledMessageStatus.SENT
        message.sent_at = sent_at
        logger.info("scheduled_message_sent", message_id=message.id, channel=receipt.channel.value,
                    attempts=receipt.attempts)
        await self._publish("scheduled_message.sent", message,
                            channel_message_id=receipt.channel_message_id)
        return "sent"

    async def _resolve_target(self, message: ScheduledMessage) -> tuple[ChannelType, str]:
        channel = message.channel_type or message.metadata.get("channel_type") or self.default_channel
        recipient = message.recipient or message.metadata.get("recipient")
        if (not channel or not recipient) and self._resolver is not None:
            resolved = await self._resolver(message)
            if resolved:
                channel, recipient = channel or resolved[0], recipient or resolved[1]
        if not channel or not recipient:
            raise PermanentError(
                f"No delivery target for conversation {message.conversation_id}",
                code="no_recipient",
            )
        return ChannelType(channel), recipient

    async def _handle_failure(self, message: ScheduledMessage, error: Exception) -> str:
        retry_count = message.retry_count + 1
        decision = self.retry_policy.decide(error, retry_count)
        detail = str(error) or type(error).__name__

        if decision.retry:
            next_attempt_at = self._clock() + timedelta(seconds=decision.delay)
            await self.store.reschedule(message.id, retry_count, next_attempt_at, detail)
            message.retry_count = retry_count
            message.next_attempt_at = next_attempt_at
            logger.warning("scheduled_message_retry", message_id=message.id,
                           retry_count=retry_count, delay_s=decision.delay, error=detail)
            await self._publish("scheduled_message.retry_scheduled", message, delay_s=decision.delay)
            return "rescheduled"

        await self.store.mark_failed(message.id, retry_count, detail)
        message.status = ScheduledMessageStatus.FAILED
        message.retry_count = retry_count
        message.error_message = detail
        logger.error("scheduled_message_failed", message_id=message.id,
                     retry_count=retry_count, reason=decision.reason, error=detail)
        await self._publish("scheduled_message.failed", message, reason=decision.reason)
        return "failed"

    async def _publish(self, event_type: str, message: ScheduledMessage, **extra):
        if self.bus is None:
            return
        await self.bus.publish(
            Topics.SCHEDULED,
            event_type,
            data={
                "id": message.id,
                "status": message.status.value,
                "scheduled_time": message.scheduled_time.isoformat(),
                "retry_count": message.retry_count,
                "error": message.error_message,
                **extra,
            },
            user_id=message.user_id,
            conversation_id=message.conversation_id,
        )
