"""
Email Channel Adapter — Gmail API transport.

Provides:
- Send as a base64url RFC 822 message through users.messages.send
- Suppression list (bounces, complaints, unsubscribes)
- Inbound parsing of Gmail message resources with HTML→plain fallback
  and reply-quote stripping
"""
from __future__ import annotations

import base64
import re
import structlog
from datetime import datetime, timezone
from email.message import EmailMessage
from typing import Any, Optional

from channels.base import ChannelAdapter
from core.errors import ClientError
from models.schemas import Attachment, ChannelType, InboundMessage

logger = structlog.get_logger()


def _b64url_decode(data: str) -> str:
    if not data:
        return ""
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded.encode()).decode("utf-8", errors="replace")


class EmailAdapter(ChannelAdapter):

    channel_type = ChannelType.EMAIL
    base_url = "https://gmail.googleapis.com/gmail/v1/users/me"
    signature_header = "X-Goog-Signature"

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._suppressed: set[str] = set()
        self._from_email: str = ""
        self._default_subject: str = "New message"

    async def initialize(self, config: dict[str, Any]) -> None:
        await super().initialize(config)
        self._from_email = self._config.get("from_email", "")
        self._default_subject = self._config.get("default_subject", self._default_subject)

    # ── Send ──────────────────────────────────────────────────

    async def _do_send(
        self, recipient: str, content: str, media: list[str], metadata: dict[str, Any],
    ) -> dict[str, Any]:
        if self.is_suppressed(recipient):
            raise ClientError(f"Recipient is suppressed: {recipient}", self.name, status_code=422)

        message = EmailMessage()
        message["To"] = recipient
        if self._from_email:
            message["From"] = self._from_email
        message["Subject"] = metadata.get("subject", self._default_subject)
        if metadata.get("in_reply_to"):
            message["In-Reply-To"] = metadata["in_reply_to"]
        body = content
        if media:
            body += "\n\n" + "\n".join(media)
        message.set_content(body)

        raw = base64.urlsafe_b64encode(message.as_bytes()).decode().rstrip("=")
        payload: dict[str, Any] = {"raw": raw}
        if metadata.get("thread_id"):
            payload["threadId"] = metadata["thread_id"]
        return await self._request("POST", "messages/send", json=payload)

    # ── Suppression ───────────────────────────────────────────

    def is_suppressed(self, email: str) -> bool:
        return email.lower() in self._suppressed

    async def handle_unsubscribe(self, email: str) -> dict[str, Any]:
        email = email.lower()
        self._suppressed.add(email)
        logger.info("email_unsubscribed", email=email)
        return {"status": "unsubscribed", "email": email}

    async def handle_bounce(self, data: dict[str, Any]) -> dict[str, Any]:
        email = data.get("email", "").lower()
        bounce_type = data.get("type", "transient")
        if bounce_type == "permanent":
            self._suppressed.add(email)
            logger.warning("permanent_bounce_suppressed", email=email)
        return {"status": "processed", "email": email, "type": bounce_type}

    # ── Fetch ─────────────────────────────────────────────────

    async def fetch_messages(self, limit: int = 50, **params) -> list[InboundMessage]:
        listing = await self._request(
            "GET", "messages", params={"q": "in:inbox", "maxResults": limit, **params},
        )
        messages = []
        for ref in listing.get("messages", []):
            full = await self._request("GET", f"messages/{ref['id']}", params={"format": "full"})
            parsed = self._parse_gmail_message(full)
            if parsed:
                messages.append(parsed)
        return messages

    # ── Inbound parsing ───────────────────────────────────────

    def parse_webhook_payload(self, payload: dict[str, Any]) -> list[InboundMessage]:
        resources = payload.get("messages")
        if resources is None:
            resources = [payload] if payload.get("id") else []
        return [m for m in (self._parse_gmail_message(r) for r in resources) if m]

    def _parse_gmail_message(self, resource: dict[str, Any]) -> Optional[InboundMessage]:
        msg_id = resource.get("id", "")
        part = resource.get("payload", {}) or {}
        headers = {h.get("name", "").lower(): h.get("value", "") for h in part.get("headers", []) or []}
        sender = self._extract_email(headers.get("from", ""))
        if not msg_id or not sender:
            return None

        plain, html, attachments = self._walk_parts(part)
        text = plain or (self._html_to_plain(html) if html else resource.get("snippet", ""))
        try:
            timestamp = datetime.fromtimestamp(int(resource.get("internalDate")) / 1000, tz=timezone.utc)
        except (TypeError, ValueError):
            timestamp = datetime.now(timezone.utc)

        return InboundMessage(
            id=msg_id,
            from_=sender,
            timestamp=timestamp,
            text=self._strip_quoted_reply(text),
            attachments=attachments,
            channel=self.channel_type,
            metadata={
                "subject": headers.get("subject", ""),
                "to": headers.get("to", ""),
                "thread_id": resource.get("threadId", ""),
                "from_name": self._extract_name(headers.get("from", "")),
            },
        )

    def _walk_parts(self, part: dict[str, Any]) -> tuple[str, str, list[Attachment]]:
        plain, html, attachments = "", "", []
        mime = part.get("mimeType", "")
        body = part.get("body", {}) or {}
        if part.get("filename"):
            attachments.append(Attachment(
                type="file", id=body.get("attachmentId", ""),
                mime_type=mime, filename=part["filename"],
            ))
        elif mime == "text/plain":
            plain = _b64url_decode(body.get("data", ""))
        elif mime == "text/html":
            html = _b64url_decode(body.get("data", ""))
        for child in part.get("parts", []) or []:
            p, h, a = self._walk_parts(child)
            plain = plain or p
            html = html or h
            attachments.extend(a)
        return plain, html, attachments

    # ── HTML to plain text ────────────────────────────────────

    def _html_to_plain(self, html: str) -> str:
        text = re.sub(r"<(style|script)[^>]*>.*?</\1>", "", html, flags=re.DOTALL | re.IGNORECASE)
        text = re.sub(r"<br\s*/?>", "\n", text, flags=re.IGNORECASE)
        text = re.sub(r"</(p|div|h[1-6]|li|tr)>", "\n", text, flags=re.IGNORECASE)
        text = re.sub(r"<[^>]+>", "", text)
        text = text.replace("&amp;", "&").replace("&lt;", "<").replace("&gt;", ">")
        text = text.replace("&nbsp;", " ").replace("&quot;", '"')
        text = re.sub(r"[ \t]+", " ", text)
        return re.sub(r"\n{3,}", "\n\n", text).strip()

    def _strip_quoted_reply(self, text: str) -> str:
        result = []
        for line in text.split("\n"):
            stripped = line.strip()
            if re.match(r"^On .+wrote:$", stripped):
                break
            if re.match(r"^-{3,}\s*Original Message\s*-{3,}", stripped, re.IGNORECASE):
                break
            if re.match(r"^>{1,2}\s", line):
                continue
            result.append(line)
        return "\n".join(result).strip()

    def _extract_email(self, from_header: str) -> str:
        """Extract email from 'Name <email>' or bare email."""
        match = re.search(r"<([^>]+)>", from_header)
        if match:
            return match.group(1).strip().lower()
        if "@" in from_header:
            return from_header.strip().lower()
        return ""

    def _extract_name(self, from_header: str) -> str:
        match = re.match(r"^(.+?)\s*<", from_header)
        return match.group(1).strip().strip('"') if match else ""
