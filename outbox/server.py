"""
Outbox sync service — server side of offline message submission.

Each submitted entry carries a client-assigned id. The pair
(user_id, client_id) is reserved in the receipt store before delivery so
a retried submission is never delivered twice:

    new id                      → deliver → accepted
    known id, same content hash → duplicate (no delivery)
    known id, still delivering  → rejected, retryable (in_flight)
    known id, different content → rejected / conflict
    delivery fails              → reservation released, rejected
                                  (retryable for transient errors)
"""
from __future__ import annotations

import structlog
import uuid
from typing import Any, Optional, Union

from pydantic import ValidationError

from channels.base import ChannelRegistry
from core.errors import PipelineError, TransientError
from core.events import EventBus, Topics
from database.store_base import OutboxReceiptStore
from models.schemas import OutboxSubmission, SyncResult, SyncResultStatus

logger = structlog.get_logger()


class OutboxSyncService:

    def __init__(
        self,
        receipts: OutboxReceiptStore,
        registry: ChannelRegistry,
        bus: Optional[EventBus] = None,
        max_batch: int = 100,
    ):
        self.receipts = receipts
        self.registry = registry
        self.bus = bus
        self.max_batch = max_batch

    async def submit(
        self,
        user_id: str,
        entries: list[Union[OutboxSubmission, dict[str, Any]]],
    ) -> list[SyncResult]:
        """Process a batch in order; one result per entry."""
        if len(entries) > self.max_batch:
            logger.warning("outbox_batch_truncated", user_id=user_id,
                           submitted=len(entries), max_batch=self.max_batch)
        results = []
        for raw in entries[: self.max_batch]:
            results.append(await self._submit_one(user_id, raw))
        for raw in entries[self.max_batch:]:
            results.append(SyncResult(
                id=self._raw_id(raw), status=SyncResultStatus.REJECTED,
                reason="batch_limit", retryable=True,
            ))

        accepted = sum(1 for r in results if r.status == SyncResultStatus.ACCEPTED)
        logger.info("outbox_batch_processed", user_id=user_id, entries=len(results), accepted=accepted)
        return results

    @staticmethod
    def _raw_id(raw: Union[OutboxSubmission, dict[str, Any]]) -> str:
        if isinstance(raw, OutboxSubmission):
            return raw.id
        return str(raw.get("id", "")) if isinstance(raw, dict) else ""

    async def _submit_one(self, user_id: str, raw: Union[OutboxSubmission, dict[str, Any]]) -> SyncResult:
        entry_id = self._raw_id(raw)
        try:
            entry = raw if isinstance(raw, OutboxSubmission) else OutboxSubmission.model_validate(raw)
        except ValidationError as e:
            logger.warning("outbox_entry_invalid", user_id=user_id, entry_id=entry_id,
                           errors=e.error_count())
            return SyncResult(id=entry_id, status=SyncResultStatus.REJECTED, reason="invalid")

        if not entry.id or not entry.content.strip():
            return SyncResult(id=entry.id, status=SyncResultStatus.REJECTED, reason="invalid")
        if not entry.recipient:
            return SyncResult(id=entry.id, status=SyncResultStatus.REJECTED, reason="no_recipient")

        fingerprint = entry.fingerprint()
        receipt, created = await self.receipts.reserve(user_id, entry.id, fingerprint)
        if not created:
            if receipt.content_hash != fingerprint:
                logger.warning("outbox_entry_conflict", user_id=user_id, entry_id=entry.id)
                return SyncResult(id=entry.id, status=SyncResultStatus.REJECTED, reason="conflict")
            if receipt.state != "delivered":
                logger.info("outbox_entry_in_flight", user_id=user_id, entry_id=entry.id)
                return SyncResult(id=entry.id, status=SyncResultStatus.REJECTED,
                                  reason="in_flight", retryable=True)
            logger.info("outbox_entry_duplicate", user_id=user_id, entry_id=entry.id)
            return SyncResult(id=entry.id, status=SyncResultStatus.DUPLICATE, message_id=receipt.message_id)

        try:
            delivery = await self.registry.deliver(
                entry.channel_type, entry.recipient, entry.content,
                media=entry.media or None,
                metadata={"outbox_entry_id": entry.id, "conversation_id": entry.conversation_id},
            )
        except PipelineError as e:
            await self.receipts.release(user_id, entry.id)
            logger.warning("outbox_delivery_failed", user_id=user_id, entry_id=entry.id,
                           error=str(e), kind=e.kind)
            return SyncResult(id=entry.id, status=SyncResultStatus.REJECTED,
                              reason=e.code, retryable=isinstance(e, TransientError))
        except Exception:
            await self.receipts.release(user_id, entry.id)
            raise

        message_id = str(uuid.uuid4())
        await self.receipts.complete(user_id, entry.id, message_id, delivery.channel_message_id)
        if self.bus is not None:
            await self.bus.publish(
                Topics.OUTBOX, "outbox.message_accepted",
                data={"client_id": entry.id, "message_id": message_id,
                      "channel": entry.channel_type.value,
                      "channel_message_id": delivery.channel_message_id},
                user_id=user_id, conversation_id=entry.conversation_id,
            )
        return SyncResult(id=entry.id, status=SyncResultStatus.ACCEPTED, message_id=message_id)
