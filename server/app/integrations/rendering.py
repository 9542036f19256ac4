"""
Client for the template rendering service.

The renderer merges a letter's data binding into its template and answers
with the URLs of the produced files.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx

from app.core.errors import ProviderUnavailable
from app.core.logging import get_logger

logger = get_logger(__name__)

FILE_FIELDS = ("pdf_url", "html_url", "docx_url")


@dataclass(slots=True)
class RenderRequest:
    letter_id: str
    serial_no: str
    template_id: str
    template_version: str
    language: str
    data_binding: dict[str, Any]
    annexures: list[dict[str, Any]]


class RenderingClient:
    def __init__(self, base_url: str, *, timeout_seconds: int = 15, transport: httpx.AsyncBaseTransport | None = None):
        self.base_url = base_url.rstrip("/")
        self._timeout = httpx.Timeout(timeout_seconds)
        self._transport = transport

    async def render(self, request: RenderRequest) -> dict[str, str]:
        """Render the letter and return the non-empty subset of ``pdf_url``/``html_url``/``docx_url``."""
        body = {
            "letter_id": request.letter_id,
            "serial_no": request.serial_no,
            "template_id": request.template_id,
            "template_version": request.template_version,
            "language": request.language,
            "data": request.data_binding,
            "annexures": request.annexures,
        }
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(f"{self.base_url}/render", json=body)
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPStatusError as exc:
            logger.error("renderer.failed", letter_id=request.letter_id, status_code=exc.response.status_code)
            raise ProviderUnavailable(
                f"renderer answered HTTP {exc.response.status_code}", provider="renderer", error_code="SERVER_ERROR"
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("renderer.unreachable", letter_id=request.letter_id, error=str(exc))
            raise ProviderUnavailable(f"renderer request failed: {exc}", provider="renderer") from exc

        files = {key: payload[key] for key in FILE_FIELDS if isinstance(payload, dict) and payload.get(key)}
        if not files:
            raise ProviderUnavailable("renderer returned no files", provider="renderer", error_code="INVALID_RESPONSE")
        logger.info("renderer.rendered", letter_id=request.letter_id, files=sorted(files))
        return files
