"""
eMudhra E-signature Adapter
"""

import logging
from typing import Any, Dict, Mapping, Optional

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


class EmudhraAdapter(HttpSignatureProvider):
    """eMudhra e-signature adapter (API key and secret headers)."""

    name = SignatureProviderType.EMUDHRA.value
    signature_header = "X-Emudhra-Signature"

    def __init__(
        self,
        base_url: str,
        api_key: str,
        api_secret: str,
        webhook_secret: Optional[str] = None,
        timeout_seconds: int = 30,
    ):
        super().__init__(base_url, webhook_secret=webhook_secret, timeout_seconds=timeout_seconds)
        self.api_key = api_key
        self.api_secret = api_secret
        self.requests_endpoint = f"{self.base_url}/api/v1/signing-requests"

    def _session_options(self) -> Dict[str, Any]:
        options = super()._session_options()
        options["headers"] = {**options["headers"], "X-API-Key": self.api_key, "X-API-Secret": self.api_secret}
        return options

    async def initiate_sign(self, request: SignRequest) -> ProviderSignResult:
        payload: Dict[str, Any] = {
            "referenceNumber": request.request_id,
            "documentName": f"{request.serial_no}.pdf",
            "documentUrl": request.document_url,
            "signer": {
                "name": request.signer_name,
                "designation": request.signer_title,
                "email": request.signer_email,
            },
            "checksum": request.token,
            "expiresAt": request.expires_at.isoformat(),
            "callbackUrl": request.callback_url,
        }
        response_data = await self._post_json(self.requests_endpoint, payload, "initiate_sign")
        transaction_id = self._require_reference(response_data, "transactionId")
        logger.info(f"eMudhra transaction {transaction_id} created for signing request {request.request_id}")
        return ProviderSignResult(
            provider=self.name,
            provider_reference=transaction_id,
            vendor_status=response_data.get("status", "INITIATED"),
            provider_response=response_data,
        )

    def validate_callback(self, body: bytes, headers: Mapping[str, str]) -> NormalizedCallback:
        self._authenticate(body, headers)
        webhook_data = self._load_json(body)

        transaction_id = webhook_data.get("transactionId")
        request_id = webhook_data.get("referenceNumber")
        vendor_status = webhook_data.get("status")
        if not transaction_id or not request_id or not vendor_status:
            raise ValidationError("eMudhra webhook needs transactionId, referenceNumber and status")

        return NormalizedCallback(
            provider=self.name,
            request_id=str(request_id),
            status=map_vendor_status(str(vendor_status)),
            vendor_status=str(vendor_status),
            provider_reference=str(transaction_id),
            token=webhook_data.get("checksum"),
            signature_artifact_ref=webhook_data.get("signedDocumentUrl") or f"emudhra://transactions/{transaction_id}",
            signed_at=parse_timestamp(webhook_data.get("signedOn")),
            raw=webhook_data,
        )
