"""
Units of work that hold the keyed locks and commit once per item.

The periodic sweeps and the signature dispatch run here so the API routes and
the CLI share one implementation. Each item is locked, changed and committed
on its own; one failing item never undoes another.
"""

from __future__ import annotations

from contextlib import AsyncExitStack
from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings
from app.core.errors import LetterEngineError, ProviderUnavailable
from app.core.logging import get_logger
from app.core.security import SYSTEM_ACTOR, Actor
from app.integrations.delivery import DeliveryClient
from app.integrations.esignature import ProviderRegistry
from app.models.event import EventChannel, EventOutbox, EventStatus
from app.models.mixins import utcnow
from app.models.signing import SigningRequest
from app.services import letter_service, outbox_service, signing_service
from app.services.locks import KeyedLockRegistry, letter_key, signatory_key, signing_key

logger = get_logger(__name__)


async def record_failure(
    session: AsyncSession,
    locks: KeyedLockRegistry,
    letter_id: str,
    *,
    action: str,
    error: LetterEngineError,
    actor: Actor,
) -> None:
    """Roll back the failed work, then commit a critical audit entry describing it."""
    await session.rollback()
    async with locks.hold(letter_key(letter_id)):
        await letter_service.record_rejected_operation(session, letter_id, action=action, error=error, actor=actor)
        await session.commit()


async def request_signatures(
    session: AsyncSession,
    letter_id: str,
    *,
    locks: KeyedLockRegistry,
    registry: ProviderRegistry,
    settings: Settings,
    actor: Actor,
    signatory_index: int | None = None,
    provider: str | None = None,
    raise_errors: bool = True,
    now: datetime | None = None,
) -> list[SigningRequest]:
    """
    Initiate signing for one signatory, or for every signatory without an active request.

    The provider call runs under the signatory lock only, so different
    signatories of one letter are dispatched independently; persisting the
    request takes the letter lock.
    """
    letter = await letter_service.require_letter(session, letter_id)
    if signatory_index is not None:
        indexes = [signatory_index]
    else:
        indexes = signing_service.unsigned_signatory_indexes(letter, now=now)

    created: list[SigningRequest] = []
    for index in indexes:
        async with locks.hold(signatory_key(letter_id, index)):
            try:
                letter = await letter_service.require_letter(session, letter_id)
                prepared = await signing_service.dispatch_to_provider(
                    letter, index, registry=registry, settings=settings, provider_name=provider, now=now
                )
                async with locks.hold(letter_key(letter_id)):
                    letter = await letter_service.require_letter(session, letter_id, for_update=True)
                    request = await signing_service.record_signing_request(session, letter, prepared, actor=actor)
                    await session.commit()
            except LetterEngineError as exc:
                await record_failure(session, locks, letter_id, action="signing.initiate", error=exc, actor=actor)
                if raise_errors:
                    raise
                logger.warning("signing.initiate.failed", letter_id=letter_id, signatory_index=index, error=exc.code)
                continue
        created.append(request)
    return created


async def run_escalation_sweep(
    session: AsyncSession, locks: KeyedLockRegistry, *, now: datetime | None = None
) -> list[dict[str, Any]]:
    moment = now or utcnow()
    escalated: list[dict[str, Any]] = []
    for letter_id in await letter_service.pending_approval_letter_ids(session):
        async with locks.hold(letter_key(letter_id)):
            letter = await letter_service.require_letter(session, letter_id, for_update=True)
            events = await letter_service.escalate_overdue_steps(session, letter, now=moment)
            await session.commit()
        escalated.extend({"letter_id": letter_id, **event.to_payload()} for event in events)
    logger.info("sweep.escalations", escalated=len(escalated))
    return escalated


async def run_expiry_sweep(
    session: AsyncSession, locks: KeyedLockRegistry, *, now: datetime | None = None
) -> list[dict[str, Any]]:
    moment = now or utcnow()
    expired: list[dict[str, Any]] = []
    for request_id, letter_id in await signing_service.expired_request_ids(session, now=moment):
        async with locks.hold(signing_key(request_id)), locks.hold(letter_key(letter_id)):
            request = await signing_service.expire_request(session, request_id, now=moment)
            await session.commit()
        if request is not None:
            expired.append({"request_id": request_id, "letter_id": letter_id, "signatory_index": request.signatory_index})
    logger.info("sweep.signing_expiry", expired=len(expired))
    return expired


def delivery_handler(session: AsyncSession, client: DeliveryClient | None):
    async def deliver(event: EventOutbox) -> None:
        if client is None:
            raise ProviderUnavailable("no delivery service is configured", provider="delivery")
        payload = event.payload or {}
        receipt = await client.deliver(
            payload.get("letter_id", event.letter_id), payload.get("recipients", {}), payload.get("files", {})
        )
        letter = await letter_service.require_letter(session, event.letter_id)
        await letter_service.record_delivery(session, letter, receipt=receipt)

    return deliver


async def run_outbox_dispatch(
    session: AsyncSession,
    locks: KeyedLockRegistry,
    *,
    delivery_client: DeliveryClient | None = None,
    now: datetime | None = None,
    limit: int = 100,
) -> list[dict[str, Any]]:
    handlers = {EventChannel.DELIVERY: delivery_handler(session, delivery_client)}
    results: list[dict[str, Any]] = []
    for event in await outbox_service.due_events(session, now=now, limit=limit):
        event_id, letter_id = event.id, event.letter_id
        async with AsyncExitStack() as stack:
            if letter_id is not None:
                await stack.enter_async_context(locks.hold(letter_key(letter_id)))
            await session.refresh(event)
            if event.status == EventStatus.DISPATCHED:
                continue
            handler = handlers.get(event.channel)
            ok = await outbox_service.dispatch_event(event, handler, now=now)
            await session.commit()
        results.append(
            {
                "event_id": event_id,
                "event_type": event.event_type,
                "dispatched": ok,
                "delivered": ok and handler is not None,
            }
        )
    logger.info("sweep.outbox", processed=len(results), dispatched=sum(1 for item in results if item["dispatched"]))
    return results


async def auto_request_signatures(
    session: AsyncSession,
    letter_id: str,
    *,
    locks: KeyedLockRegistry,
    registry: ProviderRegistry,
    settings: Settings,
) -> list[SigningRequest]:
    """Dispatch signing requests for a freshly approved letter. Failures are audited and logged, not raised."""
    if not settings.auto_request_signatures:
        return []
    return await request_signatures(
        session,
        letter_id,
        locks=locks,
        registry=registry,
        settings=settings,
        actor=SYSTEM_ACTOR,
        raise_errors=False,
    )
