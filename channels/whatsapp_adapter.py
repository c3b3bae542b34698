"""
WhatsApp Channel — WhatsApp Business Cloud API integration.

Provides:
- Webhook verification (hub.verify_token challenge)
- Payload signature check (X-Hub-Signature-256 with the app secret)
- Outbound text via POST /{version}/{phone_number_id}/messages
- Typing indicator tied to the last inbound message of each contact
- Inbound: text, interactive replies, and media (image, video, document, audio)
"""
from __future__ import annotations

import asyncio
import hashlib
import hmac
import structlog
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from channels.base import ChannelError, MessagingChannel, normalize_contact_id
from config.settings import WhatsAppConfig
from models.schemas import InboundMessage

logger = structlog.get_logger()

MEDIA_TYPES = ("image", "video", "document", "audio", "sticker")


class WhatsAppCloudChannel(MessagingChannel):
    """
    WhatsApp Business Cloud API channel.

    Readiness follows configuration: without a phone number id and access
    token the channel stays not-ready and the router hands every inbound
    message to a human.
    """

    name = "whatsapp"

    def __init__(self, config: WhatsAppConfig, client: Optional[httpx.AsyncClient] = None):
        super().__init__()
        self._config = config
        self._client = client
        self._last_inbound_id: dict[str, str] = {}

    @property
    def _messages_url(self) -> str:
        c = self._config
        return f"{c.base_url}/{c.api_version}/{c.phone_number_id}/messages"

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(30.0, connect=10.0),
                headers={
                    "Authorization": f"Bearer {self._config.access_token}",
                    "Content-Type": "application/json",
                },
            )
        return self._client

    async def initialize(self) -> None:
        if not (self._config.phone_number_id and self._config.access_token):
            logger.warning("whatsapp_not_configured")
            self.set_ready(False)
            return
        self.set_ready(True)

    async def shutdown(self) -> None:
        await super().shutdown()
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    # ── Webhook verification ──────────────────────────────────

    def verify_webhook(self, params: dict[str, Any]) -> Optional[str]:
        """Return the challenge when the subscription token matches, else None."""
        mode = params.get("hub.mode", "")
        token = params.get("hub.verify_token", "")
        challenge = params.get("hub.challenge", "")
        if mode == "subscribe" and token and token == self._config.verify_token:
            return challenge
        return None

    def verify_signature(self, body: bytes, signature_header: Optional[str]) -> bool:
        if not self._config.app_secret:
            return True
        if not signature_header or not signature_header.startswith("sha256="):
            return False
        expected = hmac.new(
            self._config.app_secret.encode(), body, hashlib.sha256
        ).hexdigest()
        return hmac.compare_digest(expected, signature_header[len("sha256="):])

    # ── Send ──────────────────────────────────────────────────

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, max=10),
        reraise=True,
    )
    async def _post(self, payload: dict[str, Any]) -> dict[str, Any]:
        client = await self._get_client()
        resp = await client.post(self._messages_url, json=payload)
        if resp.status_code >= 400:
            logger.error("whatsapp_api_error", status=resp.status_code, body=resp.text[:500])
            raise ChannelError(
                f"WhatsApp API returned {resp.status_code}",
                self.name,
                retryable=resp.status_code >= 500,
            )
        return resp.json() if resp.content else {}

    async def _do_send(self, contact_id: str, text: str) -> dict[str, Any]:
        payload = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": normalize_contact_id(contact_id),
            "type": "text",
            "text": {"preview_url": False, "body": text},
        }
        data = await self._post(payload)
        msg_id = ""
        if data.get("messages"):
            msg_id = data["messages"][0].get("id", "")
        logger.info("whatsapp_text_sent", to=contact_id, msg_id=msg_id)
        return {"status": "sent", "channel_message_id": msg_id}

    async def _do_send_typing(self, contact_id: str, seconds: float) -> None:
        if not self._config.typing_enabled:
            return
        message_id = self._last_inbound_id.get(contact_id)
        if message_id:
            await self._post({
                "messaging_product": "whatsapp",
                "status": "read",
                "message_id": message_id,
                "typing_indicator": {"type": "text"},
            })
        await asyncio.sleep(seconds)

    # ── Inbound parsing ───────────────────────────────────────

    def _parse_inbound(self, payload: dict[str, Any]) -> list[InboundMessage]:
        """Parse a Cloud API webhook payload; status callbacks yield nothing."""
        parsed: list[InboundMessage] = []
        for entry in payload.get("entry", []) or []:
            for change in entry.get("changes", []) or []:
                value = change.get("value", {}) or {}
                names = {
                    c.get("wa_id", ""): c.get("profile", {}).get("name", "")
                    for c in value.get("contacts", []) or []
                }
                for msg in value.get("messages", []) or []:
                    inbound = self._parse_message(msg, names)
                    if inbound is not None:
                        parsed.append(inbound)
        return parsed

    def _parse_message(self, msg: dict[str, Any], names: dict[str, str]) -> Optional[InboundMessage]:
        sender = msg.get("from", "")
        contact_id = normalize_contact_id(sender)
        if not contact_id:
            return None
        msg_type = msg.get("type", "text")
        msg_id = msg.get("id", "")
        if msg_id:
            self._last_inbound_id[contact_id] = msg_id

        text = ""
        has_media = False
        mime_type = None
        metadata: dict[str, Any] = {"message_type": msg_type}

        if msg_type == "text":
            text = msg.get("text", {}).get("body", "")
        elif msg_type == "interactive":
            interactive = msg.get("interactive", {})
            reply = interactive.get(interactive.get("type", ""), {}) or {}
            text = reply.get("title", "")
            metadata["reply_id"] = reply.get("id", "")
        elif msg_type == "button":
            text = msg.get("button", {}).get("text", "")
        elif msg_type in MEDIA_TYPES:
            media = msg.get(msg_type, {}) or {}
            text = media.get("caption", "")
            has_media = True
            mime_type = media.get("mime_type")
            metadata["media_id"] = media.get("id", "")
        else:
            logger.info("whatsapp_unsupported_message", type=msg_type, contact_id=contact_id)
            return None

        return InboundMessage(
            contact_id=contact_id,
            text=text,
            has_media=has_media,
            mime_type=mime_type,
            sender_name=names.get(sender, ""),
            channel_message_id=msg_id,
            metadata=metadata,
        )
