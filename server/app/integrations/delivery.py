"""
Client for the delivery service that emails / messages issued letters.
"""

from __future__ import annotations

from typing import Any

import httpx

from app.core.errors import ProviderUnavailable
from app.core.logging import get_logger

logger = get_logger(__name__)


class DeliveryClient:
    def __init__(self, base_url: str, *, timeout_seconds: int = 15, transport: httpx.AsyncBaseTransport | None = None):
        self.base_url = base_url.rstrip("/")
        self._timeout = httpx.Timeout(timeout_seconds)
        self._transport = transport

    async def deliver(self, letter_id: str, recipients: dict[str, Any], files: dict[str, Any]) -> dict[str, Any]:
        body = {"letter_id": letter_id, "recipients": recipients, "files": files}
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(f"{self.base_url}/deliveries", json=body)
                response.raise_for_status()
                result = response.json() if response.content else {}
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("delivery.failed", letter_id=letter_id, error=str(exc))
            raise ProviderUnavailable(f"delivery request failed: {exc}", provider="delivery") from exc
        logger.info("delivery.dispatched", letter_id=letter_id)
        return result if isinstance(result, dict) else {}
