"""
Digio E-signature Adapter

Uploads letters to Digio for Aadhaar / DSC signing and reads Digio document
webhooks.
"""

import logging
from typing import Any, Dict, Mapping, Optional

import aiohttp

from app.core.errors import ValidationError

from .base import (
    HttpSignatureProvider,
    NormalizedCallback,
    ProviderSignResult,
    SignRequest,
    SignatureProviderType,
    map_vendor_status,
    parse_timestamp,
)

logger = logging.getLogger(__name__)


class DigioAdapter(HttpSignatureProvider):
    """Digio e-signature adapter (HTTP basic auth with client id and secret)."""

    name = SignatureProviderType.DIGIO.value
    signature_header = "X-Digio-Checksum"

    def __init__(
        self,
        base_url: str,
        client_id: str,
        client_secret: str,
        webhook_secret: Optional[str] = None,
        timeout_seconds: int = 30,
    ):
        super().__init__(base_url, webhook_secret=webhook_secret, timeout_seconds=timeout_seconds)
        self.client_id = client_id
        self.client_secret = client_secret
        self.upload_endpoint = f"{self.base_url}/v2/client/document/upload"

    def _session_options(self) -> Dict[str, Any]:
        options = super()._session_options()
        options["auth"] = aiohttp.BasicAuth(self.client_id, self.client_secret)
        return options

    async def initiate_sign(self, request: SignRequest) -> ProviderSignResult:
        signer: Dict[str, Any] = {"name": request.signer_name, "reason": f"{request.signer_title} signature"}
        if request.signer_email:
            signer["identifier"] = request.signer_email
        payload: Dict[str, Any] = {
            "signers": [signer],
            "expire_in_days": 1,
            "display_on_page": "last",
            "notify_signers": True,
            "file_name": f"{request.serial_no}.pdf",
            "reference_id": request.request_id,
            "others": {
                "reference_id": request.request_id,
                "letter_id": request.letter_id,
                "signature": request.token,
            },
        }
        if request.document_url:
            payload["file_url"] = request.document_url

        response_data = await self._post_json(self.upload_endpoint, payload, "initiate_sign")
        document_id = self._require_reference(response_data, "id")
        logger.info(f"Digio document {document_id} created for signing request {request.request_id}")
        return ProviderSignResult(
            provider=self.name,
            provider_reference=document_id,
            vendor_status=response_data.get("agreement_status", "requested"),
            provider_response=response_data,
        )

    def validate_callback(self, body: bytes, headers: Mapping[str, str]) -> NormalizedCallback:
        self._authenticate(body, headers)
        webhook_data = self._load_json(body)

        document = (webhook_data.get("payload") or {}).get("document")
        if not isinstance(document, dict) or not document.get("id"):
            raise ValidationError("Digio webhook is missing payload.document")
        others = document.get("others") or {}
        request_id = others.get("reference_id") or document.get("reference_id")
        if not request_id:
            raise ValidationError("Digio webhook does not carry a reference_id")

        vendor_status = str(document.get("agreement_status") or webhook_data.get("event", ""))
        return NormalizedCallback(
            provider=self.name,
            request_id=str(request_id),
            status=map_vendor_status(vendor_status),
            vendor_status=vendor_status,
            provider_reference=str(document["id"]),
            token=others.get("signature"),
            signature_artifact_ref=f"digio://documents/{document['id']}",
            signed_at=parse_timestamp(document.get("updated_at")),
            raw=webhook_data,
        )
