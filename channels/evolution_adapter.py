"""
Evolution API Gateway — WhatsApp delivery through an Evolution API instance.

Provides:
- Phone normalization (digits only; JIDs like 5511999999999@s.whatsapp.net)
- Outbound text:  POST {api_url}/message/sendText/{instance}
- Outbound media: POST {api_url}/message/sendMedia/{instance}
                  POST {api_url}/message/sendWhatsAppAudio/{instance} (AUDIO)
- Inbound: `messages.upsert` webhook events (conversation / extendedTextMessage),
  ignoring messages sent by the instance itself (fromMe)
"""
from __future__ import annotations

import re
import uuid
import structlog
from typing import Any, Optional

import httpx

from channels.base import GatewayError, MessagingGateway
from config.settings import GatewayConfig
from models.schemas import ActionKind, MediaType, MessageReceived

logger = structlog.get_logger()

# (extension pattern, mime type) in match order; last entry per type is the default
_MIME_TYPES: dict[str, list[tuple[str, str]]] = {
    MediaType.IMAGE.value: [(r"\.png$", "image/png"), (r"\.gif$", "image/gif"),
                            (r"\.webp$", "image/webp"), (r"", "image/jpeg")],
    MediaType.VIDEO.value: [(r"\.webm$", "video/webm"), (r"", "video/mp4")],
    MediaType.DOCUMENT.value: [(r"\.docx?$", "application/msword"),
                               (r"\.xlsx?$", "application/vnd.ms-excel"),
                               (r"", "application/pdf")],
    MediaType.AUDIO.value: [(r"\.ogg$", "audio/ogg"), (r"\.wav$", "audio/wav"), (r"", "audio/mp3")],
}


def normalize_phone(address: str) -> str:
    """Normalize a phone or JID to digits only, stripping +, spaces, dashes, @domain."""
    return re.sub(r"[^\d]", "", address.split("@")[0])


def guess_mime_type(media_type: str, url: str) -> str:
    for pattern, mime in _MIME_TYPES.get(media_type, _MIME_TYPES[MediaType.IMAGE.value]):
        if not pattern or re.search(pattern, url, re.IGNORECASE):
            return mime
    return "application/octet-stream"


class EvolutionGateway(MessagingGateway):
    """WhatsApp gateway backed by the Evolution API REST interface."""

    name = "evolution"

    def __init__(self, config: GatewayConfig, client: Optional[httpx.AsyncClient] = None):
        super().__init__()
        self.config = config
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.config.api_url.rstrip("/"),
                headers={"apikey": self.config.api_key, "Content-Type": "application/json"},
                timeout=self.config.timeout,
            )
        return self._client

    # ── Send ──────────────────────────────────────────────────

    async def _do_send(self, contact_id: str, kind: ActionKind, payload: dict[str, Any]) -> str:
        phone = normalize_phone(contact_id)
        if not phone:
            raise GatewayError(f"Invalid WhatsApp number: {contact_id!r}", self.name, retryable=False)

        if kind == ActionKind.MESSAGE:
            path, body = self._text_request(phone, payload)
        else:
            path, body = self._media_request(phone, payload)

        instance = self.config.instance_name
        try:
            response = await self._get_client().post(f"{path}/{instance}", json=body)
        except httpx.HTTPError as e:
            raise GatewayError(f"Evolution API unreachable: {e}", self.name) from e

        if response.status_code >= 400:
            raise GatewayError(
                f"Evolution API returned {response.status_code}: {response.text[:200]}",
                self.name,
                status_code=response.status_code,
                retryable=response.status_code >= 500 or response.status_code == 429,
            )

        delivery_id = self._delivery_id(response)
        logger.info("evolution_message_sent", to=phone, kind=kind.value, delivery_id=delivery_id)
        return delivery_id

    @staticmethod
    def _text_request(phone: str, payload: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        return "/message/sendText", {"number": phone, "text": payload.get("text", "")}

    @staticmethod
    def _media_request(phone: str, payload: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        media_type = payload.get("mediaType", MediaType.IMAGE.value)
        url = payload.get("url", "")
        if media_type == MediaType.AUDIO.value:
            return "/message/sendWhatsAppAudio", {"number": phone, "audio": url}

        body = {
            "number": phone,
            "mediatype": media_type.lower(),
            "mimetype": guess_mime_type(media_type, url),
            "media": url,
        }
        if payload.get("caption"):
            body["caption"] = payload["caption"]
        if media_type == MediaType.DOCUMENT.value:
            body["fileName"] = payload.get("fileName") or url.rsplit("/", 1)[-1] or "document.pdf"
        return "/message/sendMedia", body

    @staticmethod
    def _delivery_id(response: httpx.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            data = {}
        if isinstance(data, dict):
            key = data.get("key") or {}
            if isinstance(key, dict) and key.get("id"):
                return str(key["id"])
        return f"evo_{uuid.uuid4().hex[:16]}"

    # ── Inbound parsing ───────────────────────────────────────

    def _parse_inbound(self, raw_payload: dict[str, Any]) -> Optional[tuple[str, MessageReceived]]:
        if "data" in raw_payload:
            return parse_upsert_event(raw_payload)
        return super()._parse_inbound(raw_payload)

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()


def parse_upsert_event(raw_payload: dict[str, Any]) -> Optional[tuple[str, MessageReceived]]:
    """Parse an Evolution `messages.upsert` webhook payload into (message id, event)."""
    event = str(raw_payload.get("event", "messages.upsert")).lower().replace("_", ".")
    if event != "messages.upsert":
        return None

    data = raw_payload.get("data") or {}
    key = data.get("key") or {}
    if key.get("fromMe"):
        return None

    remote_jid = key.get("remoteJid", "")
    if not remote_jid or remote_jid.endswith("@g.us"):
        return None

    message = data.get("message") or {}
    text = message.get("conversation") or (message.get("extendedTextMessage") or {}).get("text")
    if not text:
        return None

    return key.get("id", ""), MessageReceived(contact_id=normalize_phone(remote_jid), text=text)
