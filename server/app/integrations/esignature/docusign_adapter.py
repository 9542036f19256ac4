"""
DocuSign E-signature Adapter

Sends letters to DocuSign as envelopes and reads DocuSign Connect webhooks.
"""

import logging
from typing import Any, Dict, List, Mapping, Optional

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


class DocuSignAdapter(HttpSignatureProvider):
    """DocuSign e-signature adapter."""

    name = SignatureProviderType.DOCUSIGN.value
    signature_header = "X-DocuSign-Signature-1"
    signature_encoding = "base64"

    def __init__(
        self,
        base_url: str,
        account_id: str,
        access_token: str,
        webhook_secret: Optional[str] = None,
        timeout_seconds: int = 30,
    ):
        """
        Initialize DocuSign adapter.

        Args:
            base_url: DocuSign base URL (demo or production)
            account_id: DocuSign account ID
            access_token: OAuth 2.0 access token
            webhook_secret: Connect HMAC key
            timeout_seconds: Total timeout for one API call
        """
        super().__init__(base_url, webhook_secret=webhook_secret, timeout_seconds=timeout_seconds)
        self.account_id = account_id
        self.access_token = access_token

        # API endpoints
        self.api_base = f"{self.base_url}/restapi/v2.1"
        self.envelopes_endpoint = f"{self.api_base}/accounts/{self.account_id}/envelopes"

    def _session_options(self) -> Dict[str, Any]:
        return {
            "headers": {
                "Authorization": f"Bearer {self.access_token}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            }
        }

    async def initiate_sign(self, request: SignRequest) -> ProviderSignResult:
        payload = self._build_envelope_payload(request)
        response_data = await self._post_json(self.envelopes_endpoint, payload, "initiate_sign")
        envelope_id = self._require_reference(response_data, "envelopeId")
        logger.info(f"DocuSign envelope {envelope_id} created for signing request {request.request_id}")
        return ProviderSignResult(
            provider=self.name,
            provider_reference=envelope_id,
            vendor_status=response_data.get("status", "sent"),
            provider_response=response_data,
        )

    def _build_envelope_payload(self, request: SignRequest) -> Dict[str, Any]:
        signer: Dict[str, Any] = {
            "name": request.signer_name,
            "recipientId": "1",
            "routingOrder": "1",
            "roleName": request.signer_title,
        }
        if request.signer_email:
            signer["email"] = request.signer_email

        documents: List[Dict[str, Any]] = []
        if request.document_url:
            documents.append(
                {
                    "documentId": "1",
                    "name": f"{request.serial_no}.pdf",
                    "fileExtension": "pdf",
                    "remoteUrl": request.document_url,
                }
            )

        payload: Dict[str, Any] = {
            "emailSubject": f"Please sign letter {request.serial_no}",
            "status": "sent",
            "recipients": {"signers": [signer]},
            "documents": documents,
            "customFields": {
                "textCustomFields": [
                    {"name": "signing_request_id", "value": request.request_id, "show": "false"},
                    {"name": "signing_token", "value": request.token, "show": "false"},
                    {"name": "letter_id", "value": request.letter_id, "show": "false"},
                ]
            },
        }
        if request.callback_url:
            payload["eventNotification"] = {
                "url": request.callback_url,
                "requireAcknowledgment": "true",
                "includeHMAC": "true",
                "envelopeEvents": [{"envelopeEventStatusCode": code} for code in ("completed", "declined", "voided")],
            }
        return payload

    def validate_callback(self, body: bytes, headers: Mapping[str, str]) -> NormalizedCallback:
        self._authenticate(body, headers)
        webhook_data = self._load_json(body)

        data = webhook_data.get("data")
        if not isinstance(data, dict):
            raise ValidationError("DocuSign webhook is missing 'data'")
        envelope_id = data.get("envelopeId")
        summary = data.get("envelopeSummary") or {}
        if not envelope_id or not isinstance(summary, dict):
            raise ValidationError("DocuSign webhook is missing the envelope id or summary")

        custom_fields = self._custom_fields(summary)
        request_id = custom_fields.get("signing_request_id")
        if not request_id:
            raise ValidationError("DocuSign webhook does not carry a signing_request_id custom field")

        vendor_status = str(summary.get("status") or webhook_data.get("event", ""))
        return NormalizedCallback(
            provider=self.name,
            request_id=request_id,
            status=map_vendor_status(vendor_status),
            vendor_status=vendor_status,
            provider_reference=envelope_id,
            token=custom_fields.get("signing_token"),
            signature_artifact_ref=f"docusign://envelopes/{envelope_id}/documents/combined",
            signed_at=parse_timestamp(summary.get("completedDateTime")),
            raw=webhook_data,
        )

    @staticmethod
    def _custom_fields(summary: Dict[str, Any]) -> Dict[str, str]:
        fields = (summary.get("customFields") or {}).get("textCustomFields") or []
        return {
            str(item.get("name")): str(item.get("value"))
            for item in fields
            if isinstance(item, dict) and item.get("name") and item.get("value") is not None
        }
