from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.auth import get_current_actor
from app.api.dependencies.database import get_db
from app.api.dependencies.services import get_lock_registry, get_provider_registry
from app.core.config import get_settings
from app.core.errors import LetterEngineError, SignatureInvalid, ValidationError
from app.core.logging import bind_letter_context, get_logger
from app.core.security import Actor
from app.integrations.esignature import ProviderRegistry
from app.schemas.signing import CallbackVerifyRequest, CallbackVerifyResponse, SigningRequestRead, WebhookAck
from app.services import letter_service, signing_service
from app.services.locks import KeyedLockRegistry, letter_key, signing_key

logger = get_logger(__name__)
router = APIRouter(tags=["signing"])


@router.get("/signing-requests/{request_id}", response_model=SigningRequestRead)
async def get_signing_request_endpoint(
    request_id: str,
    session: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),  # noqa: ARG001
) -> SigningRequestRead:
    return SigningRequestRead.model_validate(await signing_service.get_status(session, request_id))


@router.post("/signing-requests/{request_id}/cancel", response_model=SigningRequestRead)
async def cancel_signing_request_endpoint(
    request_id: str,
    session: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    locks: KeyedLockRegistry = Depends(get_lock_registry),
) -> SigningRequestRead:
    existing = await signing_service.require_request(session, request_id)
    letter_id = existing.letter_id
    bind_letter_context(letter_id, request_id=request_id)
    async with locks.hold(signing_key(request_id)), locks.hold(letter_key(letter_id)):
        try:
            request = await signing_service.cancel(session, request_id, actor=actor)
            await session.commit()
        except LetterEngineError as exc:
            await session.rollback()
            await letter_service.record_rejected_operation(
                session, letter_id, action="signing.cancel", error=exc, actor=actor
            )
            await session.commit()
            raise
    return SigningRequestRead.model_validate(request)


@router.post("/signing-requests/{request_id}/verify", response_model=CallbackVerifyResponse)
async def verify_signing_callback_endpoint(
    request_id: str,
    payload: CallbackVerifyRequest,
    session: AsyncSession = Depends(get_db),
    locks: KeyedLockRegistry = Depends(get_lock_registry),
) -> CallbackVerifyResponse:
    existing = await signing_service.require_request(session, request_id)
    letter_id = existing.letter_id
    async with locks.hold(signing_key(request_id)), locks.hold(letter_key(letter_id)):
        verification = await signing_service.verify_callback(
            session, request_id, payload.signature, settings=get_settings()
        )
        await session.commit()
    if not verification.valid:
        raise SignatureInvalid("signing callback signature does not match", request_id=request_id)
    return CallbackVerifyResponse(request_id=request_id, verified=True)


@router.post("/webhooks/esign/{provider}", response_model=WebhookAck)
async def esign_webhook_endpoint(
    provider: str,
    request: Request,
    session: AsyncSession = Depends(get_db),
    locks: KeyedLockRegistry = Depends(get_lock_registry),
    providers: ProviderRegistry = Depends(get_provider_registry),
):
    """
    Receive a provider webhook.

    Answers 200 whenever the delivery was understood, including duplicates,
    intermediate statuses and deliveries for expired requests, so providers
    stop retrying. Malformed bodies get 400 and unauthenticated ones 401.
    """
    adapter = providers.get(provider)
    body = await request.body()
    try:
        callback = adapter.validate_callback(body, request.headers)
    except ValidationError as exc:
        logger.warning("signing.webhook.malformed", provider=provider, error=exc.message)
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=exc.to_dict())

    existing = await signing_service.require_request(session, callback.request_id)
    letter_id = existing.letter_id
    bind_letter_context(letter_id, request_id=callback.request_id, provider=provider)
    async with locks.hold(signing_key(callback.request_id)), locks.hold(letter_key(letter_id)):
        outcome = await signing_service.apply_webhook(session, callback)
        await session.commit()

    if not outcome.authentic:
        raise SignatureInvalid("webhook signing token does not match the request", request_id=callback.request_id)
    return WebhookAck(status=outcome.status, request_id=outcome.request.id, request_status=outcome.request.status)
