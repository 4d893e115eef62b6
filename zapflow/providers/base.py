"""Base provider interface for WhatsApp-compatible transports."""

from __future__ import annotations

import abc
import re
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from ..contracts import ConnectionStatus, Message, SendReceipt, utcnow

_NON_DIGITS = re.compile(r"\D")


def digits_only(address: str) -> str:
    """Strip formatting from a phone number (``+55 (11) 9999-0000`` -> digits)."""
    return _NON_DIGITS.sub("", address)


def strip_jid(address: str) -> str:
    """Drop the WhatsApp JID domain (``5511999@s.whatsapp.net`` -> ``5511999``)."""
    return address.split("@", 1)[0]


def from_epoch(value: Any) -> datetime:
    """Parse a provider timestamp given in seconds or milliseconds."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return utcnow()
    if number > 1e11:
        number /= 1000.0
    return datetime.fromtimestamp(number, tz=timezone.utc)


class ProviderAdapter(metaclass=abc.ABCMeta):
    """Abstract adapter normalizing one messaging provider.

    The router and engine only ever see :class:`Message` objects and call
    :meth:`send_text`, so new providers plug in by subclassing this.
    """

    name: str = "base"
    supports_media: bool = False

    async def connect(self) -> None:
        """Open provider resources (no-op by default)."""
        pass

    async def close(self) -> None:
        """Release provider resources (no-op by default)."""
        pass

    async def __aenter__(self) -> "ProviderAdapter":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    @abc.abstractmethod
    def normalize_webhook(self, payload: Mapping[str, Any]) -> Optional[Message]:
        """Convert a webhook payload into a :class:`Message`.

        Returns ``None`` for bodies that are not JSON objects, for payloads
        addressed to another instance and for events that are not chat
        messages.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def send_text(
        self, address: str, text: str, options: Optional[Dict[str, Any]] = None
    ) -> SendReceipt:
        """Send a text message.

        Raises:
            DeliveryError: If the provider did not accept the message.
        """
        raise NotImplementedError

    async def send_media(
        self, address: str, media_url: str, caption: Optional[str] = None
    ) -> SendReceipt:
        """Send an image by URL or base64 payload, when supported."""
        raise NotImplementedError(f"{self.name} does not support media messages")

    @abc.abstractmethod
    async def get_connection_status(self) -> ConnectionStatus:
        """Report whether the provider instance is connected."""
        raise NotImplementedError

    async def get_qr_code(self) -> Dict[str, Any]:
        """Fetch the pairing QR code, when the provider uses one."""
        raise NotImplementedError(f"{self.name} does not expose a QR code")
