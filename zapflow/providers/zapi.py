"""Z-API WhatsApp provider."""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional

import httpx

from ..config import ZApiConfig
from ..constants import DEFAULT_HTTP_TIMEOUT
from ..contracts import ConnectionStatus, Message, SendReceipt
from ..errors import DeliveryError
from .base import digits_only, from_epoch, strip_jid
from .http import HttpProviderAdapter

logger = logging.getLogger(__name__)


class ZApiProvider(HttpProviderAdapter):
    """Send and receive WhatsApp messages through a Z-API instance."""

    name = "zapi"
    supports_media = True

    def __init__(
        self,
        config: ZApiConfig,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.config = config
        headers = {"Client-Token": config.client_token} if config.client_token else {}
        super().__init__(
            base_url=f"{config.api_url.rstrip('/')}/instances/{config.instance_id}/token/{config.token}",
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def send_text(
        self, address: str, text: str, options: Optional[Dict[str, Any]] = None
    ) -> SendReceipt:
        body: Dict[str, Any] = {"phone": digits_only(address), "message": text}
        options = options or {}
        if "delay_message" in options:
            body["delayMessage"] = options["delay_message"]
        if "delay_typing" in options:
            body["delayTyping"] = options["delay_typing"]
        data = await self._request("POST", "/send-text", json=body)
        return SendReceipt(
            provider=self.name,
            message_id=data.get("messageId") or data.get("id"),
            raw=data,
        )

    async def send_media(
        self, address: str, media_url: str, caption: Optional[str] = None
    ) -> SendReceipt:
        endpoint = "/send-image" if media_url.startswith("http") else "/send-image-base64"
        body: Dict[str, Any] = {"phone": digits_only(address), "image": media_url}
        if caption:
            body["caption"] = caption
        data = await self._request("POST", endpoint, json=body)
        return SendReceipt(
            provider=self.name,
            message_id=data.get("messageId") or data.get("id"),
            raw=data,
        )

    async def get_qr_code(self) -> Dict[str, Any]:
        return await self._request("GET", "/qrcode")

    async def get_connection_status(self) -> ConnectionStatus:
        try:
            data = await self._request("GET", "/status")
        except DeliveryError as exc:
            logger.error(f"Error checking Z-API status: {exc}")
            return ConnectionStatus(provider=self.name, connected=False, status="error")
        connected = bool(data.get("connected"))
        status = data.get("status") or (
            "connected" if connected else data.get("error") or "disconnected"
        )
        return ConnectionStatus(provider=self.name, connected=connected, status=str(status))

    def normalize_webhook(self, payload: Mapping[str, Any]) -> Optional[Message]:
        if not isinstance(payload, Mapping):
            return None
        instance_id = payload.get("instanceId")
        if instance_id != self.config.instance_id:
            logger.warning(
                f"Received Z-API webhook for wrong instance: received={instance_id} "
                f"expected={self.config.instance_id}"
            )
            return None

        event = payload.get("type")
        if event == "message" and isinstance(payload.get("body"), Mapping):
            return self._from_legacy(payload["body"])
        if event == "ReceivedCallback":
            return self._from_callback(payload)
        return None

    def _from_legacy(self, body: Mapping[str, Any]) -> Optional[Message]:
        phone = body.get("phone")
        if not phone:
            return None
        text = body.get("text") or {}
        return Message(
            id=str(body.get("id") or body.get("messageId") or ""),
            contact_address=strip_jid(str(phone)),
            from_self=bool(body.get("fromMe", False)),
            text=text.get("message", "") if isinstance(text, Mapping) else str(text),
            timestamp=from_epoch(body.get("timestamp")),
            type=body.get("type") or "text",
            provider=self.name,
        )

    def _from_callback(self, payload: Mapping[str, Any]) -> Optional[Message]:
        if payload.get("isGroup") or payload.get("isNewsletter"):
            return None
        phone = payload.get("phone")
        if not phone:
            return None
        text = payload.get("text")
        if isinstance(text, Mapping):
            body, kind = text.get("message", ""), "text"
        else:
            kind = next(
                (k for k in ("image", "audio", "video", "document", "sticker", "location") if k in payload),
                "unknown",
            )
            media = payload.get(kind) if kind != "unknown" else None
            body = media.get("caption", "") if isinstance(media, Mapping) else ""
        return Message(
            id=str(payload.get("messageId") or ""),
            contact_address=strip_jid(str(phone)),
            from_self=bool(payload.get("fromMe", False)),
            text=body or "",
            timestamp=from_epoch(payload.get("momment")),
            type=kind,
            provider=self.name,
        )
