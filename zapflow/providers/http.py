"""Shared HTTP plumbing for REST-based providers."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from ..constants import DEFAULT_HTTP_TIMEOUT
from ..errors import DeliveryError
from .base import ProviderAdapter

logger = logging.getLogger(__name__)


class HttpProviderAdapter(ProviderAdapter):
    """Provider talking JSON over HTTP through one ``httpx.AsyncClient``.

    Every request carries an explicit timeout. Transport failures and error
    responses surface as :class:`DeliveryError`; nothing is retried here.
    """

    def __init__(
        self,
        base_url: str,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._headers = {"Content-Type": "application/json", **(headers or {})}
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def connect(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._headers,
                timeout=self.timeout,
                transport=self._transport,
            )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(
        self, method: str, path: str, json: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        if self._client is None:
            await self.connect()
        try:
            response = await self._client.request(method, path, json=json)
        except httpx.TimeoutException as exc:
            logger.error(f"{self.name} request {method} {path} timed out after {self.timeout}s")
            raise DeliveryError(self.name, f"timeout calling {path}") from exc
        except httpx.HTTPError as exc:
            logger.error(f"{self.name} request {method} {path} failed: {exc}")
            raise DeliveryError(self.name, f"network error calling {path}: {exc}") from exc

        if response.is_error:
            logger.error(
                f"{self.name} error: status={response.status_code} path={path} body={response.text[:500]}"
            )
            raise DeliveryError(
                self.name,
                f"HTTP {response.status_code} from {path}",
                status_code=response.status_code,
            )
        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError:
            return {"raw": response.text}
        return data if isinstance(data, dict) else {"data": data}
