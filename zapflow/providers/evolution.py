"""Evolution API WhatsApp provider."""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional

import httpx

from ..config import EvolutionConfig
from ..constants import DEFAULT_HTTP_TIMEOUT
from ..contracts import ConnectionStatus, Message, SendReceipt
from ..errors import DeliveryError
from .base import digits_only, from_epoch, strip_jid
from .http import HttpProviderAdapter

logger = logging.getLogger(__name__)

MESSAGE_EVENTS = {"messages.upsert", "MESSAGES_UPSERT", "message"}


class EvolutionProvider(HttpProviderAdapter):
    """Send and receive WhatsApp messages through an Evolution API instance."""

    name = "evolution"
    supports_media = True

    def __init__(
        self,
        config: EvolutionConfig,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.config = config
        super().__init__(
            base_url=config.api_url,
            headers={"apikey": config.api_key},
            timeout=timeout,
            transport=transport,
        )

    async def create_instance(self) -> Dict[str, Any]:
        """Create the instance and register the webhook for message events."""
        body: Dict[str, Any] = {
            "instanceName": self.config.instance_name,
            "qrcode": True,
            "integration": "WHATSAPP-BAILEYS",
        }
        if self.config.webhook_url:
            body["webhook"] = {
                "url": self.config.webhook_url,
                "byEvents": False,
                "events": ["MESSAGES_UPSERT", "CONNECTION_UPDATE", "QRCODE_UPDATED"],
            }
        return await self._request("POST", "/instance/create", json=body)

    async def send_text(
        self, address: str, text: str, options: Optional[Dict[str, Any]] = None
    ) -> SendReceipt:
        body: Dict[str, Any] = {"number": digits_only(address), "text": text}
        options = options or {}
        if "delay" in options:
            body["delay"] = options["delay"]
        if "link_preview" in options:
            body["linkPreview"] = options["link_preview"]
        data = await self._request(
            "POST", f"/message/sendText/{self.config.instance_name}", json=body
        )
        return SendReceipt(provider=self.name, message_id=_message_id(data), raw=data)

    async def send_media(
        self, address: str, media_url: str, caption: Optional[str] = None
    ) -> SendReceipt:
        body: Dict[str, Any] = {
            "number": digits_only(address),
            "mediatype": "image",
            "media": media_url,
        }
        if caption:
            body["caption"] = caption
        data = await self._request(
            "POST", f"/message/sendMedia/{self.config.instance_name}", json=body
        )
        return SendReceipt(provider=self.name, message_id=_message_id(data), raw=data)

    async def get_qr_code(self) -> Dict[str, Any]:
        return await self._request("GET", f"/instance/connect/{self.config.instance_name}")

    async def get_connection_status(self) -> ConnectionStatus:
        try:
            data = await self._request(
                "GET", f"/instance/connectionState/{self.config.instance_name}"
            )
        except DeliveryError as exc:
            logger.error(f"Error checking Evolution API status: {exc}")
            return ConnectionStatus(provider=self.name, connected=False, status="error")
        instance = data.get("instance")
        state = data.get("state")
        if state is None and isinstance(instance, Mapping):
            state = instance.get("state")
        state = state or "unknown"
        return ConnectionStatus(provider=self.name, connected=state == "open", status=str(state))

    def normalize_webhook(self, payload: Mapping[str, Any]) -> Optional[Message]:
        if not isinstance(payload, Mapping):
            return None
        instance = payload.get("instance")
        if instance != self.config.instance_name:
            logger.warning(
                f"Received Evolution API webhook for wrong instance: received={instance} "
                f"expected={self.config.instance_name}"
            )
            return None
        if payload.get("event") not in MESSAGE_EVENTS:
            return None
        data = payload.get("data")
        if not isinstance(data, Mapping):
            return None
        if isinstance(data.get("key"), Mapping):
            return self._from_upsert(data)
        return self._from_legacy(data)

    def _from_upsert(self, data: Mapping[str, Any]) -> Optional[Message]:
        key = data["key"]
        jid = str(key.get("remoteJid") or "")
        if not jid or jid.endswith("@g.us"):
            return None
        content = data.get("message") or {}
        text = ""
        if isinstance(content, Mapping):
            extended = content.get("extendedTextMessage") or {}
            image = content.get("imageMessage") or {}
            text = (
                content.get("conversation")
                or (extended.get("text") if isinstance(extended, Mapping) else None)
                or (image.get("caption") if isinstance(image, Mapping) else None)
                or ""
            )
        message_type = data.get("messageType") or "conversation"
        return Message(
            id=str(key.get("id") or ""),
            contact_address=strip_jid(jid),
            from_self=bool(key.get("fromMe", False)),
            text=text,
            timestamp=from_epoch(data.get("messageTimestamp")),
            type="text" if message_type in ("conversation", "extendedTextMessage") else message_type,
            provider=self.name,
        )

    def _from_legacy(self, data: Mapping[str, Any]) -> Optional[Message]:
        if data.get("isGroup"):
            return None
        sender = data.get("from")
        if not sender:
            return None
        return Message(
            id=str(data.get("id") or ""),
            contact_address=strip_jid(str(sender)),
            from_self=bool(data.get("fromMe", False)),
            text=str(data.get("body") or ""),
            timestamp=from_epoch(data.get("timestamp")),
            type=data.get("type") or "text",
            provider=self.name,
        )


def _message_id(data: Mapping[str, Any]) -> Optional[str]:
    key = data.get("key")
    if isinstance(key, Mapping) and key.get("id"):
        return str(key["id"])
    return data.get("id")
