"""Instagram Direct Messages adapter (Instagram Graph API)."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from channels.base import ChannelAdapter
from models.schemas import Attachment, ChannelType, InboundMessage


def _from_millis(value: Any) -> datetime:
    try:
        return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
    except (TypeError, ValueError):
        return datetime.now(timezone.utc)


class InstagramAdapter(ChannelAdapter):

    channel_type = ChannelType.INSTAGRAM
    base_url = "https://graph.instagram.com/v18.0"
    signature_header = "X-Hub-Signature-256"

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._ig_user_id: str = ""

    async def initialize(self, config: dict[str, Any]) -> None:
        await super().initialize(config)
        self._ig_user_id = self._config.get("ig_user_id", "")

    async def _do_send(
        self, recipient: str, content: str, media: list[str], metadata: dict[str, Any],
    ) -> dict[str, Any]:
        if media:
            message: dict[str, Any] = {
                "attachment": {"type": metadata.get("media_type", "image"), "payload": {"url": media[0]}},
            }
        else:
            message = {"text": content}
        return await self._request(
            "POST", f"{self._ig_user_id}/messages",
            json={"recipient": {"id": recipient}, "message": message},
        )

    async def fetch_messages(self, limit: int = 50, **params) -> list[InboundMessage]:
        data = await self._request(
            "GET", f"{self._ig_user_id}/conversations",
            params={"fields": "messages{id,from,message,created_time,attachments}", "limit": limit, **params},
        )
        messages = []
        for conversation in data.get("data", []):
            for raw in conversation.get("messages", {}).get("data", []):
                messages.append(InboundMessage(
                    id=raw.get("id", ""),
                    from_=raw.get("from", {}).get("id", ""),
                    timestamp=raw.get("created_time") or datetime.now(timezone.utc),
                    text=raw.get("message", ""),
                    channel=self.channel_type,
                    metadata={"conversation_id": conversation.get("id", "")},
                ))
        return messages

    def parse_webhook_payload(self, payload: dict[str, Any]) -> list[InboundMessage]:
        messages: list[InboundMessage] = []
        for entry in payload.get("entry", []) or []:
            for event in entry.get("messaging", []) or []:
                parsed = self._parse_event(event)
                if parsed:
                    messages.append(parsed)
        return messages

    def _parse_event(self, event: dict[str, Any]) -> Optional[InboundMessage]:
        message = event.get("message") or {}
        postback = event.get("postback") or {}
        msg_id = message.get("mid") or postback.get("mid") or postback.get("payload")
        if not msg_id or message.get("is_echo"):
            return None
        attachments = [
            Attachment(type=a.get("type", "file"), url=a.get("payload", {}).get("url", ""))
            for a in message.get("attachments", []) or []
        ]
        return InboundMessage(
            id=msg_id,
            from_=event.get("sender", {}).get("id", ""),
            timestamp=_from_millis(event.get("timestamp")),
            text=message.get("text", "") or postback.get("title", ""),
            attachments=attachments,
            channel=self.channel_type,
            metadata={"recipient_id": event.get("recipient", {}).get("id", "")},
        )
