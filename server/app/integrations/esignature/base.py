"""
E-signature Base Classes and Interfaces

Defines the contract every e-signature vendor adapter implements, the
normalized shapes exchanged with the signing tracker, and the provider
registry that maps configured provider names to adapter instances.
"""

import asyncio
import base64
import hashlib
import hmac
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterator, Mapping, Optional

import aiohttp
from aiohttp import ClientTimeout

from app.core.errors import ProviderUnavailable, SignatureInvalid, UnknownProvider, ValidationError

logger = logging.getLogger(__name__)


class SignatureProviderType(str, Enum):
    """Supported e-signature provider types."""
    DOCUSIGN = "docusign"
    DIGIO = "digio"
    EMUDHRA = "emudhra"


class CallbackStatus(str, Enum):
    """Vendor status normalized to what the signing tracker understands."""
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


COMPLETED_VENDOR_STATUSES = frozenset({"completed", "signed", "executed"})
FAILED_VENDOR_STATUSES = frozenset({"declined", "rejected", "expired", "voided", "cancelled", "failed"})


def map_vendor_status(status: Optional[str]) -> CallbackStatus:
    value = (status or "").strip().lower()
    if value in COMPLETED_VENDOR_STATUSES:
        return CallbackStatus.COMPLETED
    if value in FAILED_VENDOR_STATUSES:
        return CallbackStatus.FAILED
    return CallbackStatus.PENDING


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a vendor ISO-8601 timestamp into an aware UTC datetime."""
    if value in (None, ""):
        return None
    if not isinstance(value, str):
        raise ValidationError("timestamp must be an ISO-8601 string", value=repr(value))
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as exc:
        raise ValidationError(f"invalid timestamp '{value}'") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@dataclass
class SignRequest:
    """Generic sign request handed to a vendor adapter."""
    request_id: str
    letter_id: str
    serial_no: str
    signatory_index: int
    signer_name: str
    signer_title: str
    signing_url: str
    token: str
    expires_at: datetime
    signer_email: Optional[str] = None
    document_url: Optional[str] = None
    callback_url: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ProviderSignResult:
    """Vendor acknowledgement of a sign request."""
    provider: str
    provider_reference: str
    vendor_status: str = "sent"
    provider_response: Dict[str, Any] = field(default_factory=dict)


@dataclass
class NormalizedCallback:
    """An authenticated vendor webhook reduced to the fields the tracker applies."""
    provider: str
    request_id: str
    status: CallbackStatus
    vendor_status: str
    provider_reference: Optional[str] = None
    token: Optional[str] = None
    signature_artifact_ref: Optional[str] = None
    signed_at: Optional[datetime] = None
    raw: Dict[str, Any] = field(default_factory=dict)


class SignatureProvider(ABC):
    """Abstract base class for e-signature providers."""

    name: str = ""

    @abstractmethod
    async def initiate_sign(self, request: SignRequest) -> ProviderSignResult:
        """
        Send a sign request to the vendor.

        Raises:
            ProviderUnavailable: the vendor failed, timed out or answered
                without a reference id.
        """

    @abstractmethod
    def validate_callback(self, body: bytes, headers: Mapping[str, str]) -> NormalizedCallback:
        """
        Authenticate a raw webhook body and normalize it.

        Raises:
            SignatureInvalid: the vendor authentication header is missing or wrong.
            ValidationError: the body is not a well-formed vendor payload.
        """

    async def close(self) -> None:
        return None


class HttpSignatureProvider(SignatureProvider):
    """Shared aiohttp plumbing for vendors reached over JSON/HTTPS."""

    signature_header: str = ""
    signature_encoding: str = "hex"

    def __init__(self, base_url: str, *, webhook_secret: Optional[str] = None, timeout_seconds: int = 30):
        self.base_url = base_url.rstrip("/")
        self.webhook_secret = webhook_secret
        # Session will be created lazily to avoid event loop issues during initialization
        self._session: Optional[aiohttp.ClientSession] = None
        self._timeout = ClientTimeout(total=timeout_seconds, connect=min(10, timeout_seconds))

    def _session_options(self) -> Dict[str, Any]:
        return {"headers": {"Content-Type": "application/json", "Accept": "application/json"}}

    @property
    def session(self) -> aiohttp.ClientSession:
        """Get or create the HTTP session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout, **self._session_options())
        return self._session

    async def _post_json(self, url: str, payload: Dict[str, Any], operation: str) -> Dict[str, Any]:
        try:
            async with self.session.post(url, json=payload) as response:
                await self._handle_api_error(response, operation)
                return await response.json()
        except ProviderUnavailable:
            raise
        except asyncio.TimeoutError as e:
            logger.error(f"{self.name} timed out in {operation}")
            raise ProviderUnavailable(
                f"{self.name} did not answer in time", provider=self.name, error_code="TIMEOUT"
            ) from e
        except (aiohttp.ClientError, json.JSONDecodeError) as e:
            logger.error(f"{self.name} API error in {operation}: {e}")
            raise ProviderUnavailable(
                f"{self.name} request failed: {e}", provider=self.name, error_code="api_error"
            ) from e

    async def _handle_api_error(self, response: aiohttp.ClientResponse, operation: str) -> None:
        """Turn non-2xx vendor responses into ProviderUnavailable with a normalized error code."""
        if 200 <= response.status < 300:
            return

        error_message = f"{self.name} API error in {operation}"
        try:
            error_data = await response.json()
            error_message = error_data.get("message", error_message)
        except (aiohttp.ContentTypeError, json.JSONDecodeError):
            error_message = await response.text() or error_message

        if response.status in (401, 403):
            error_code = "AUTH_ERROR"
        elif response.status == 429:
            error_code = "RATE_LIMIT"
        elif response.status >= 500:
            error_code = "SERVER_ERROR"
        else:
            error_code = "REQUEST_REJECTED"

        logger.error(f"{self.name} {operation} failed with HTTP {response.status}: {error_message}")
        raise ProviderUnavailable(
            error_message, provider=self.name, error_code=error_code, http_status=response.status
        )

    def _require_reference(self, response_data: Dict[str, Any], key: str) -> str:
        reference = response_data.get(key)
        if not reference:
            raise ProviderUnavailable(
                f"{self.name} response did not include '{key}'",
                provider=self.name,
                error_code="INVALID_RESPONSE",
            )
        return str(reference)

    def _expected_signature(self, body: bytes) -> str:
        digest = hmac.new(self.webhook_secret.encode("utf-8"), body, hashlib.sha256).digest()
        if self.signature_encoding == "base64":
            return base64.b64encode(digest).decode("ascii")
        return digest.hex()

    def _authenticate(self, body: bytes, headers: Mapping[str, str]) -> None:
        if not self.webhook_secret:
            raise SignatureInvalid(f"{self.name} webhooks cannot be verified: no webhook secret configured")
        supplied = _header(headers, self.signature_header)
        if not supplied:
            raise SignatureInvalid(f"missing {self.signature_header} header")
        if not hmac.compare_digest(supplied.strip(), self._expected_signature(body)):
            raise SignatureInvalid(f"{self.name} webhook signature does not match")

    def _load_json(self, body: bytes) -> Dict[str, Any]:
        try:
            data = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ValidationError(f"invalid {self.name} webhook JSON: {e}") from e
        if not isinstance(data, dict):
            raise ValidationError(f"{self.name} webhook body must be a JSON object")
        return data

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    for key, value in headers.items():
        if key.lower() == name.lower():
            return value
    return None


class ProviderRegistry:
    """Explicit mapping from provider name to adapter instance."""

    def __init__(self, providers: Optional[Mapping[str, SignatureProvider]] = None):
        self._providers: Dict[str, SignatureProvider] = {}
        for name, provider in (providers or {}).items():
            self.register(name, provider)

    def register(self, name: str, provider: SignatureProvider) -> None:
        self._providers[name.lower()] = provider

    def get(self, name: str) -> SignatureProvider:
        provider = self._providers.get((name or "").lower())
        if provider is None:
            raise UnknownProvider(name)
        return provider

    def names(self) -> list[str]:
        return sorted(self._providers)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.lower() in self._providers

    def __iter__(self) -> Iterator[str]:
        return iter(self.names())

    async def close(self) -> None:
        for provider in self._providers.values():
            await provider.close()
