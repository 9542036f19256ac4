"""
Signing request tracking.

A signing request is one attempt to collect one signatory's signature through
one provider. Requests are created only after the provider accepted the sign
request, move out of PENDING exactly once and are never reused: retrying
means a new request, which the signatory then points at.
"""

from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass
from datetime import datetime, timedelta
from urllib.parse import urlencode

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings
from app.core.errors import InvalidTransition, NotFound, ValidationError
from app.core.logging import get_logger
from app.core.security import SYSTEM_ACTOR, Actor
from app.integrations.esignature import CallbackStatus, NormalizedCallback, ProviderRegistry, SignRequest
from app.models.audit import AuditCategory
from app.models.letter import Letter, LetterStatus, Signatory
from app.models.mixins import utcnow
from app.models.signing import SigningRequest, SigningRequestStatus, generate_request_id
from app.services import letter_service
from app.services.audit_service import append_audit

logger = get_logger(__name__)


@dataclass(slots=True)
class PreparedSigning:
    """A sign request the provider has accepted but that is not persisted yet."""

    request_id: str
    letter_id: str
    signatory_index: int
    provider: str
    provider_reference: str
    issued_at: datetime
    expires_at: datetime
    token: str
    signing_url: str


@dataclass(slots=True)
class CallbackVerification:
    request: SigningRequest
    valid: bool


@dataclass(slots=True)
class WebhookOutcome:
    status: str
    request: SigningRequest
    authentic: bool = True
    letter_status: LetterStatus | None = None


def _millis(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


def compute_token(secret: str, request_id: str, letter_id: str, issued_at: datetime) -> str:
    """HMAC-SHA256 over request id, letter id and issue time in milliseconds."""
    message = f"{request_id}{letter_id}{_millis(issued_at)}"
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


def build_signing_url(
    base_url: str,
    *,
    request_id: str,
    letter_id: str,
    signatory_index: int,
    provider: str,
    issued_at: datetime,
    token: str,
) -> str:
    query = urlencode(
        {
            "requestId": request_id,
            "letterId": letter_id,
            "signatory": signatory_index,
            "provider": provider,
            "timestamp": _millis(issued_at),
            "signature": token,
        }
    )
    return f"{base_url.rstrip('/')}/sign?{query}"


def _signatory(letter: Letter, signatory_index: int) -> Signatory:
    for signatory in letter.signatories:
        if signatory.position == signatory_index:
            return signatory
    raise ValidationError(f"letter {letter.serial_no} has no signatory {signatory_index}", signatory_index=signatory_index)


def _ensure_can_initiate(letter: Letter, signatory: Signatory, now: datetime) -> None:
    if letter.status != LetterStatus.APPROVED:
        raise InvalidTransition(
            f"signatures can only be requested for an APPROVED letter, it is {letter.status.value}",
            guard="letter_approved",
            status=letter.status.value,
        )
    latest = signatory.signing_request
    if latest is None:
        return
    if latest.status == SigningRequestStatus.COMPLETED:
        raise InvalidTransition(
            f"signatory {signatory.position} has already signed",
            guard="signatory_unsigned",
            request_id=latest.id,
        )
    if latest.status == SigningRequestStatus.PENDING and latest.expires_at > now:
        raise InvalidTransition(
            f"signatory {signatory.position} already has an active signing request",
            guard="no_active_request",
            request_id=latest.id,
        )


def has_active_request(signatory: Signatory, now: datetime) -> bool:
    latest = signatory.signing_request
    if latest is None:
        return False
    if latest.status == SigningRequestStatus.COMPLETED:
        return True
    return latest.status == SigningRequestStatus.PENDING and latest.expires_at > now


async def dispatch_to_provider(
    letter: Letter,
    signatory_index: int,
    *,
    registry: ProviderRegistry,
    settings: Settings,
    provider_name: str | None = None,
    now: datetime | None = None,
) -> PreparedSigning:
    """
    Validate the request and send it to the provider. Nothing is written.

    Raises:
        InvalidTransition: the letter is not APPROVED or the signatory already
            has an active or completed request.
        UnknownProvider: the provider is not registered.
        ProviderUnavailable: the provider call failed.
    """
    moment = now or utcnow()
    signatory = _signatory(letter, signatory_index)
    _ensure_can_initiate(letter, signatory, moment)
    name = (provider_name or signatory.provider).lower()
    adapter = registry.get(name)

    issued_at = moment.replace(microsecond=(moment.microsecond // 1000) * 1000)
    expires_at = issued_at + timedelta(hours=settings.signing_request_ttl_hours)
    request_id = generate_request_id()
    token = compute_token(settings.signing_secret, request_id, letter.id, issued_at)
    signing_url = build_signing_url(
        settings.signing_base_url,
        request_id=request_id,
        letter_id=letter.id,
        signatory_index=signatory_index,
        provider=name,
        issued_at=issued_at,
        token=token,
    )
    result = await adapter.initiate_sign(
        SignRequest(
            request_id=request_id,
            letter_id=letter.id,
            serial_no=letter.serial_no,
            signatory_index=signatory_index,
            signer_name=signatory.name,
            signer_title=signatory.title,
            signer_email=signatory.email,
            signing_url=signing_url,
            token=token,
            expires_at=expires_at,
            document_url=(letter.files or {}).get("pdf_url"),
            callback_url=f"{settings.public_base_url.rstrip('/')}/webhooks/esign/{name}",
        )
    )
    logger.info(
        "signing.dispatched",
        letter_id=letter.id,
        request_id=request_id,
        provider=name,
        provider_reference=result.provider_reference,
    )
    return PreparedSigning(
        request_id=request_id,
        letter_id=letter.id,
        signatory_index=signatory_index,
        provider=name,
        provider_reference=result.provider_reference,
        issued_at=issued_at,
        expires_at=expires_at,
        token=token,
        signing_url=signing_url,
    )


async def record_signing_request(
    session: AsyncSession, letter: Letter, prepared: PreparedSigning, *, actor: Actor
) -> SigningRequest:
    """Persist a dispatched request and point the signatory at it."""
    signatory = _signatory(letter, prepared.signatory_index)
    _ensure_can_initiate(letter, signatory, prepared.issued_at)

    superseded = signatory.signing_request
    if superseded is not None and superseded.status == SigningRequestStatus.PENDING:
        _fail(superseded, "expired", prepared.issued_at)
        _audit_request(letter, superseded, "signing.expired", actor=actor)

    request = SigningRequest(
        id=prepared.request_id,
        letter_id=letter.id,
        signatory_index=prepared.signatory_index,
        provider=prepared.provider,
        provider_reference=prepared.provider_reference,
        status=SigningRequestStatus.PENDING,
        issued_at=prepared.issued_at,
        expires_at=prepared.expires_at,
        token=prepared.token,
        signing_url=prepared.signing_url,
    )
    session.add(request)
    signatory.signing_request = request
    append_audit(
        letter,
        action="signing.initiated",
        actor=actor.id,
        category=AuditCategory.SIGNATURE,
        details={
            "request_id": request.id,
            "signatory_index": request.signatory_index,
            "provider": request.provider,
            "expires_at": request.expires_at.isoformat(),
            "superseded_request_id": superseded.id if superseded is not None else None,
        },
        origin=actor.origin,
    )
    await session.flush()
    return request


async def initiate(
    session: AsyncSession,
    letter: Letter,
    signatory_index: int,
    *,
    registry: ProviderRegistry,
    settings: Settings,
    actor: Actor,
    provider_name: str | None = None,
    now: datetime | None = None,
) -> SigningRequest:
    prepared = await dispatch_to_provider(
        letter, signatory_index, registry=registry, settings=settings, provider_name=provider_name, now=now
    )
    return await record_signing_request(session, letter, prepared, actor=actor)


def unsigned_signatory_indexes(letter: Letter, *, now: datetime | None = None) -> list[int]:
    """Signatories that need a new signing request."""
    moment = now or utcnow()
    return [signatory.position for signatory in letter.signatories if not has_active_request(signatory, moment)]


async def get_request(session: AsyncSession, request_id: str, *, for_update: bool = False) -> SigningRequest | None:
    query = select(SigningRequest).where(SigningRequest.id == request_id).execution_options(populate_existing=True)
    if for_update:
        query = query.with_for_update()
    result = await session.execute(query)
    return result.scalars().first()


async def require_request(session: AsyncSession, request_id: str, *, for_update: bool = False) -> SigningRequest:
    request = await get_request(session, request_id, for_update=for_update)
    if request is None:
        raise NotFound(f"signing request {request_id} not found", request_id=request_id)
    return request


def _fail(request: SigningRequest, reason: str, now: datetime) -> None:
    request.status = SigningRequestStatus.FAILED
    request.failure_reason = reason
    request.completed_at = now


def _audit_request(letter: Letter, request: SigningRequest, action: str, *, actor: Actor, **details) -> None:
    append_audit(
        letter,
        action=action,
        actor=actor.id,
        category=AuditCategory.SIGNATURE,
        details={
            "request_id": request.id,
            "signatory_index": request.signatory_index,
            "provider": request.provider,
            "status": request.status.value,
            **details,
        },
        origin=actor.origin,
    )


async def verify_callback(
    session: AsyncSession, request_id: str, signature: str, *, settings: Settings, actor: Actor = SYSTEM_ACTOR
) -> CallbackVerification:
    """
    Check a signature presented on the signing URL callback.

    A mismatch marks a PENDING request FAILED. The caller commits and then
    answers with ``SignatureInvalid``.
    """
    request = await require_request(session, request_id, for_update=True)
    expected = compute_token(settings.signing_secret, request.id, request.letter_id, request.issued_at)
    if hmac.compare_digest(signature.encode("utf-8"), expected.encode("utf-8")):
        return CallbackVerification(request=request, valid=True)

    logger.warning("signing.callback.invalid", request_id=request.id, letter_id=request.letter_id)
    if request.status == SigningRequestStatus.PENDING:
        _fail(request, "signature_invalid", utcnow())
        letter = await letter_service.require_letter(session, request.letter_id)
        _audit_request(letter, request, "signing.failed", actor=actor, reason="signature_invalid")
        await session.flush()
    return CallbackVerification(request=request, valid=False)


async def apply_webhook(
    session: AsyncSession,
    callback: NormalizedCallback,
    *,
    now: datetime | None = None,
    actor: Actor = SYSTEM_ACTOR,
) -> WebhookOutcome:
    """
    Apply an authenticated provider callback to its signing request.

    Only a PENDING request changes. Terminal requests and intermediate vendor
    statuses are acknowledged without any change, which makes repeated
    deliveries harmless. A callback arriving after expiry fails the request and
    is reported as stale, as is any later callback for a request the expiry
    sweep already failed. A callback whose signing token does not match the
    request fails the request and is reported as not authentic.
    """
    moment = now or utcnow()
    request = await require_request(session, callback.request_id, for_update=True)
    if request.provider != callback.provider:
        raise NotFound(
            f"signing request {callback.request_id} was not issued through {callback.provider}",
            request_id=callback.request_id,
        )

    if request.status == SigningRequestStatus.FAILED and request.failure_reason == "expired":
        logger.info("signing.webhook.stale", request_id=request.id, vendor_status=callback.vendor_status)
        return WebhookOutcome(status="stale", request=request)

    if request.status != SigningRequestStatus.PENDING:
        logger.info("signing.webhook.duplicate", request_id=request.id, status=request.status.value)
        return WebhookOutcome(status="duplicate", request=request)

    letter = await letter_service.require_letter(session, request.letter_id)

    if callback.token is not None and not hmac.compare_digest(callback.token, request.token):
        _fail(request, "signature_invalid", moment)
        _audit_request(letter, request, "signing.failed", actor=actor, reason="signature_invalid")
        await session.flush()
        logger.warning("signing.webhook.token_mismatch", request_id=request.id)
        return WebhookOutcome(status="rejected", request=request, authentic=False, letter_status=letter.status)

    if moment > request.expires_at:
        _fail(request, "expired", moment)
        _audit_request(letter, request, "signing.expired", actor=actor, vendor_status=callback.vendor_status)
        await session.flush()
        logger.info("signing.webhook.stale", request_id=request.id)
        return WebhookOutcome(status="stale", request=request, letter_status=letter.status)

    if callback.status == CallbackStatus.PENDING:
        logger.info("signing.webhook.intermediate", request_id=request.id, vendor_status=callback.vendor_status)
        return WebhookOutcome(status="ignored", request=request, letter_status=letter.status)

    if callback.provider_reference and request.provider_reference is None:
        request.provider_reference = callback.provider_reference

    if callback.status == CallbackStatus.FAILED:
        _fail(request, f"provider:{callback.vendor_status.lower()}", moment)
        _audit_request(letter, request, "signing.failed", actor=actor, vendor_status=callback.vendor_status)
        await session.flush()
        logger.info("signing.failed", request_id=request.id, vendor_status=callback.vendor_status)
        return WebhookOutcome(status="applied", request=request, letter_status=letter.status)

    request.status = SigningRequestStatus.COMPLETED
    request.signed_at = callback.signed_at or moment
    request.signature_artifact_ref = callback.signature_artifact_ref
    request.completed_at = moment
    signatory = _signatory(letter, request.signatory_index)
    if signatory.signing_request is request:
        signatory.signed_at = request.signed_at
        signatory.signature_artifact_ref = request.signature_artifact_ref
    _audit_request(
        letter,
        request,
        "signing.completed",
        actor=actor,
        signed_at=request.signed_at.isoformat(),
        signature_artifact_ref=request.signature_artifact_ref,
    )
    letter_service.complete_if_fully_signed(letter, actor=actor)
    await session.flush()
    logger.info("signing.completed", request_id=request.id, letter_id=letter.id, letter_status=letter.status.value)
    return WebhookOutcome(status="applied", request=request, letter_status=letter.status)


async def cancel(session: AsyncSession, request_id: str, *, actor: Actor) -> SigningRequest:
    request = await require_request(session, request_id, for_update=True)
    if request.status != SigningRequestStatus.PENDING:
        raise InvalidTransition(
            f"signing request {request_id} is {request.status.value} and cannot be cancelled",
            guard="request_pending",
            status=request.status.value,
        )
    request.status = SigningRequestStatus.CANCELLED
    request.failure_reason = "cancelled"
    request.completed_at = utcnow()
    letter = await letter_service.require_letter(session, request.letter_id)
    _audit_request(letter, request, "signing.cancelled", actor=actor)
    await session.flush()
    return request


async def get_status(session: AsyncSession, request_id: str) -> SigningRequest:
    return await require_request(session, request_id)


async def expired_request_ids(session: AsyncSession, *, now: datetime | None = None) -> list[tuple[str, str]]:
    """(request id, letter id) of PENDING requests past expiry."""
    moment = now or utcnow()
    result = await session.execute(
        select(SigningRequest.id, SigningRequest.letter_id).where(
            SigningRequest.status == SigningRequestStatus.PENDING,
            SigningRequest.expires_at < moment,
        )
    )
    return [(row[0], row[1]) for row in result.all()]


async def expire_request(
    session: AsyncSession, request_id: str, *, now: datetime | None = None, actor: Actor = SYSTEM_ACTOR
) -> SigningRequest | None:
    """Fail one PENDING request past expiry. The letter is left as it is."""
    moment = now or utcnow()
    request = await require_request(session, request_id, for_update=True)
    if request.status != SigningRequestStatus.PENDING or request.expires_at >= moment:
        return None
    _fail(request, "expired", moment)
    letter = await letter_service.require_letter(session, request.letter_id)
    _audit_request(letter, request, "signing.expired", actor=actor)
    await session.flush()
    logger.info("signing.expired", request_id=request.id, letter_id=request.letter_id)
    return request
