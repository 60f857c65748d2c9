"""
WhatsApp Business Cloud API adapter.

Outbound text and media messages, inbound webhook parsing for every
message type the Cloud API delivers, and the subscription handshake.
"""
from __future__ import annotations

import re
import structlog
from datetime import datetime, timezone
from typing import Any, Optional

from channels.base import ChannelAdapter
from models.schemas import Attachment, ChannelType, InboundMessage

logger = structlog.get_logger()

_MEDIA_TYPES = ("image", "video", "audio", "document", "sticker")


def _from_epoch(value: Any) -> datetime:
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError):
        return datetime.now(timezone.utc)


class WhatsAppAdapter(ChannelAdapter):

    channel_type = ChannelType.WHATSAPP
    base_url = "https://graph.facebook.com/v18.0"
    signature_header = "X-Hub-Signature-256"

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._phone_number_id: str = ""
        self._verify_token: str = ""

    async def initialize(self, config: dict[str, Any]) -> None:
        await super().initialize(config)
        self._phone_number_id = self._config.get("phone_number_id", "")
        self._verify_token = self._config.get("verify_token", "")

    # ── Phone normalization ───────────────────────────────────

    @staticmethod
    def _normalize_phone(phone: str) -> str:
        """Normalize phone to digits only, stripping +, spaces, dashes."""
        return re.sub(r"[^\d]", "", phone)

    # ── Subscription handshake ────────────────────────────────

    def verify_subscription(self, params: dict[str, Any]) -> Optional[str]:
        """Return the challenge when hub.mode/verify_token match, else None."""
        mode = params.get("hub.mode", "")
        token = params.get("hub.verify_token", "")
        if mode == "subscribe" and self._verify_token and token == self._verify_token:
            return params.get("hub.challenge", "")
        return None

    # ── Send ──────────────────────────────────────────────────

    async def _do_send(
        self, recipient: str, content: str, media: list[str], metadata: dict[str, Any],
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": self._normalize_phone(recipient),
        }
        if media:
            media_type = metadata.get("media_type", "image")
            payload["type"] = media_type
            payload[media_type] = {"link": media[0]}
            if content:
                payload[media_type]["caption"] = content
        else:
            payload["type"] = "text"
            payload["text"] = {"body": content, "preview_url": False}
        return await self._request("POST", f"{self._phone_number_id}/messages", json=payload)

    def _extract_message_id(self, response: dict[str, Any]) -> str:
        messages = response.get("messages") or [{}]
        return messages[0].get("id", "")

    # ── Fetch ─────────────────────────────────────────────────

    async def fetch_messages(self, limit: int = 50, **params) -> list[InboundMessage]:
        data = await self._request(
            "GET", f"{self._phone_number_id}/messages",
            params={"fields": "from,id,timestamp,type,text", "limit": limit, **params},
        )
        return [m for m in (self._parse_message(raw, {}) for raw in data.get("data", [])) if m]

    # ── Inbound ───────────────────────────────────────────────

    def parse_webhook_payload(self, payload: dict[str, Any]) -> list[InboundMessage]:
        messages: list[InboundMessage] = []
        for entry in payload.get("entry", []) or []:
            for change in entry.get("changes", []) or []:
                value = change.get("value", {}) or {}
                names = {
                    c.get("wa_id", ""): c.get("profile", {}).get("name", "")
                    for c in value.get("contacts", []) or []
                }
                # Status updates (delivered/read) carry no messages
                for raw in value.get("messages", []) or []:
                    parsed = self._parse_message(raw, names)
                    if parsed:
                        messages.append(parsed)
        return messages

    def _parse_message(self, msg: dict[str, Any], names: dict[str, str]) -> Optional[InboundMessage]:
        msg_id = msg.get("id", "")
        if not msg_id:
            return None
        sender = msg.get("from", "")
        msg_type = msg.get("type", "text")
        text = ""
        attachments: list[Attachment] = []
        metadata: dict[str, Any] = {"message_type": msg_type}

        if msg_type == "text":
            text = msg.get("text", {}).get("body", "")
        elif msg_type == "interactive":
            interactive = msg.get("interactive", {})
            reply = interactive.get(interactive.get("type", ""), {})
            text = reply.get("title", "")
            metadata["reply_id"] = reply.get("id", "")
        elif msg_type == "button":
            text = msg.get("button", {}).get("text", "")
        elif msg_type in _MEDIA_TYPES:
            media = msg.get(msg_type, {})
            text = media.get("caption", "")
            attachments.append(Attachment(
                type=msg_type,
                id=media.get("id", ""),
                mime_type=media.get("mime_type", ""),
                filename=media.get("filename", ""),
            ))
        elif msg_type == "location":
            loc = msg.get("location", {})
            text = loc.get("name", "") or f"{loc.get('latitude')},{loc.get('longitude')}"
            metadata["location"] = loc

        if names.get(sender):
            metadata["sender_name"] = names[sender]
        return InboundMessage(
            id=msg_id,
            from_=sender,
            timestamp=_from_epoch(msg.get("timestamp")),
            text=text,
            attachments=attachments,
            channel=self.channel_type,
            metadata=metadata,
        )
