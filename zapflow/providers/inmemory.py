"""In-memory provider for testing and local simulation."""

from __future__ import annotations

import asyncio
import uuid
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel

from ..contracts import ConnectionStatus, Message, SendReceipt, utcnow
from ..errors import DeliveryError
from .base import ProviderAdapter


class SentMessage(BaseModel):
    address: str
    text: Optional[str] = None
    media_url: Optional[str] = None
    caption: Optional[str] = None


class InMemoryProvider(ProviderAdapter):
    """Records outbound messages instead of delivering them.

    ``fail_next`` makes the following sends raise :class:`DeliveryError`,
    which lets tests exercise retry paths.
    """

    name = "inmemory"
    supports_media = True

    def __init__(self, channel: str = "local") -> None:
        self.channel = channel
        self.sent: List[SentMessage] = []
        self.fail_next = 0
        self._lock = asyncio.Lock()

    async def _record(self, message: SentMessage) -> SendReceipt:
        async with self._lock:
            if self.fail_next > 0:
                self.fail_next -= 1
                raise DeliveryError(self.name, "simulated delivery failure")
            self.sent.append(message)
        return SendReceipt(provider=self.name, message_id=str(uuid.uuid4()))

    async def send_text(
        self, address: str, text: str, options: Optional[Dict[str, Any]] = None
    ) -> SendReceipt:
        return await self._record(SentMessage(address=address, text=text))

    async def send_media(
        self, address: str, media_url: str, caption: Optional[str] = None
    ) -> SendReceipt:
        return await self._record(
            SentMessage(address=address, media_url=media_url, caption=caption)
        )

    async def get_connection_status(self) -> ConnectionStatus:
        return ConnectionStatus(provider=self.name, connected=True, status="open")

    def normalize_webhook(self, payload: Mapping[str, Any]) -> Optional[Message]:
        if not isinstance(payload, Mapping) or payload.get("channel") != self.channel:
            return None
        if payload.get("event", "message") != "message":
            return None
        return Message(
            id=str(payload.get("id") or uuid.uuid4()),
            contact_address=str(payload["from"]),
            from_self=bool(payload.get("from_self", False)),
            text=str(payload.get("text") or ""),
            timestamp=utcnow(),
            provider=self.name,
        )

    def texts_for(self, address: str) -> List[str]:
        return [m.text for m in self.sent if m.address == address and m.text is not None]
