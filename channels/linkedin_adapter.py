"""LinkedIn messaging adapter. Webhook signatures are base64 HMAC-SHA256."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from channels.base import ChannelAdapter
from models.schemas import Attachment, ChannelType, InboundMessage

LINKEDIN_VERSION = "202305"


class LinkedInAdapter(ChannelAdapter):

    channel_type = ChannelType.LINKEDIN
    base_url = "https://api.linkedin.com/v2"
    signature_header = "X-LI-Signature"
    signature_encoding = "base64"

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._person_urn: str = ""

    async def initialize(self, config: dict[str, Any]) -> None:
        await super().initialize(config)
        self._person_urn = self._config.get("person_urn", "")

    def _default_headers(self) -> dict[str, str]:
        return {**super()._default_headers(), "LinkedIn-Version": LINKEDIN_VERSION}

    async def _do_send(
        self, recipient: str, content: str, media: list[str], metadata: dict[str, Any],
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "recipients": [{"id": recipient}],
            "subject": metadata.get("subject", ""),
            "body": content,
        }
        if media:
            payload["attachments"] = [{"url": url} for url in media]
        return await self._request("POST", "messaging/messages", json=payload)

    async def fetch_messages(self, limit: int = 50, **params) -> list[InboundMessage]:
        data = await self._request(
            "GET", "messaging/conversations", params={"q": "initiator", "count": limit, **params},
        )
        messages = []
        for element in data.get("elements", []):
            event = element.get("lastEvent") or {}
            if event:
                messages.append(self._parse_event(event.get("eventMeta", event), event.get("eventContent", {})))
        return messages

    def parse_webhook_payload(self, payload: dict[str, Any]) -> list[InboundMessage]:
        events = payload.get("events")
        if events is None:
            events = [payload] if payload.get("eventMeta") else []
        return [
            self._parse_event(e["eventMeta"], e.get("eventContent", {}) or {})
            for e in events
            if e.get("eventMeta", {}).get("eventId")
        ]

    def _parse_event(self, meta: dict[str, Any], content: dict[str, Any]) -> InboundMessage:
        created = meta.get("eventCreatedTime")
        try:
            timestamp = datetime.fromtimestamp(int(created) / 1000, tz=timezone.utc)
        except (TypeError, ValueError):
            timestamp = datetime.now(timezone.utc)
        return InboundMessage(
            id=str(meta.get("eventId", "")),
            from_=meta.get("senderUrn", ""),
            timestamp=timestamp,
            text=content.get("textContent", "") or content.get("body", ""),
            attachments=[
                Attachment(type=a.get("mediaType", "file"), url=a.get("url", ""), filename=a.get("name", ""))
                for a in content.get("attachments", []) or []
            ],
            channel=self.channel_type,
            metadata={"conversation_urn": meta.get("conversationUrn", "")},
        )
