from datetime import datetime
from typing import Literal

from pydantic import Field

from app.models.signing import SigningRequestStatus
from app.schemas.common import ORMModel


class SignatureRequestCreate(ORMModel):
    signatory_index: int | None = Field(default=None, ge=0)
    provider: str | None = Field(default=None, min_length=1, max_length=40)


class SigningRequestRead(ORMModel):
    id: str
    letter_id: str
    signatory_index: int
    provider: str
    provider_reference: str | None = None
    status: SigningRequestStatus
    issued_at: datetime
    expires_at: datetime
    signing_url: str
    signed_at: datetime | None = None
    signature_artifact_ref: str | None = None
    failure_reason: str | None = None


class SigningInitiateResponse(ORMModel):
    requests: list[SigningRequestRead]


class CallbackVerifyRequest(ORMModel):
    signature: str = Field(min_length=1, max_length=128)


class CallbackVerifyResponse(ORMModel):
    request_id: str
    verified: bool


class WebhookAck(ORMModel):
    status: Literal["applied", "duplicate", "ignored", "stale"]
    request_id: str
    request_status: SigningRequestStatus
