from datetime import date
from typing import Annotated, Awaitable, Callable, TypeVar

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.auth import get_current_actor
from app.api.dependencies.database import get_db
from app.api.dependencies.services import get_lock_registry, get_provider_registry, get_renderer
from app.core.config import get_settings
from app.core.errors import LetterEngineError
from app.core.logging import bind_letter_context, get_logger
from app.core.security import Actor
from app.integrations.esignature import ProviderRegistry
from app.integrations.rendering import RenderingClient
from app.models.letter import Letter, LetterStatus, LetterType
from app.schemas.approval import ApprovalStepRead, DecisionRequest, DecisionResponse
from app.schemas.audit import AuditEntryRead
from app.schemas.letter import (
    FinalizeRequest,
    LetterCollection,
    LetterCreate,
    LetterRead,
    LetterStats,
    LetterSummary,
    LetterUpdate,
    VoidRequest,
)
from app.schemas.signing import SignatureRequestCreate, SigningInitiateResponse, SigningRequestRead
from app.services import jobs, letter_service
from app.services.approval_workflow import DecisionOutcome
from app.services.letter_service import LetterFilters
from app.services.locks import KeyedLockRegistry, letter_key

logger = get_logger(__name__)
router = APIRouter(prefix="/letters", tags=["letters"])

Page = Annotated[int, Query(ge=1)]
PageSize = Annotated[int, Query(ge=1, le=100)]
T = TypeVar("T")


async def _run_letter_operation(
    session: AsyncSession,
    locks: KeyedLockRegistry,
    letter_id: str,
    *,
    action: str,
    actor: Actor,
    operation: Callable[[Letter], Awaitable[T]],
) -> T:
    """
    Run one mutating operation under the letter lock and commit it.

    On failure the transaction is rolled back and a critical audit entry for
    the rejected attempt is committed on its own before the error propagates.
    """
    bind_letter_context(letter_id, action=action)
    async with locks.hold(letter_key(letter_id)):
        letter = await letter_service.require_letter(session, letter_id, for_update=True)
        try:
            result = await operation(letter)
            await session.commit()
        except LetterEngineError as exc:
            await session.rollback()
            await letter_service.record_rejected_operation(session, letter_id, action=action, error=exc, actor=actor)
            await session.commit()
            raise
    return result


@router.get("", response_model=LetterCollection)
async def list_letters_endpoint(
    page: Page = 1,
    page_size: PageSize = 20,
    letter_type: LetterType | None = None,
    status_filter: LetterStatus | None = Query(default=None, alias="status"),
    employee_id: str | None = None,
    issued_from: date | None = None,
    issued_to: date | None = None,
    session: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),  # noqa: ARG001 - scope checks hook point
) -> LetterCollection:
    filters = LetterFilters(
        letter_type=letter_type,
        status=status_filter,
        employee_id=employee_id,
        issued_from=issued_from,
        issued_to=issued_to,
    )
    items, total = await letter_service.list_letters(session, filters=filters, page=page, page_size=page_size)
    return LetterCollection(
        items=[LetterSummary.model_validate(item) for item in items],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/stats", response_model=LetterStats)
async def letter_stats_endpoint(
    session: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),  # noqa: ARG001
) -> LetterStats:
    return LetterStats.model_validate(await letter_service.letter_stats(session))


@router.post("", response_model=LetterRead, status_code=status.HTTP_201_CREATED)
async def create_letter_endpoint(
    payload: LetterCreate,
    session: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    providers: ProviderRegistry = Depends(get_provider_registry),
) -> LetterRead:
    letter = await letter_service.create_letter(
        session, payload, actor=actor, settings=get_settings(), known_providers=providers
    )
    await session.commit()
    refreshed = await letter_service.require_letter(session, letter.id)
    return LetterRead.model_validate(refreshed)


@router.get("/{letter_id}", response_model=LetterRead)
async def get_letter_endpoint(
    letter_id: str,
    session: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),  # noqa: ARG001
) -> LetterRead:
    return LetterRead.model_validate(await letter_service.require_letter(session, letter_id))


@router.get("/{letter_id}/audit", response_model=list[AuditEntryRead])
async def letter_audit_endpoint(
    letter_id: str,
    session: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),  # noqa: ARG001
) -> list[AuditEntryRead]:
    entries = await letter_service.audit_trail(session, letter_id)
    return [AuditEntryRead.model_validate(entry) for entry in entries]


@router.patch("/{letter_id}", response_model=LetterRead)
async def update_letter_endpoint(
    letter_id: str,
    payload: LetterUpdate,
    session: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    locks: KeyedLockRegistry = Depends(get_lock_registry),
    providers: ProviderRegistry = Depends(get_provider_registry),
) -> LetterRead:
    async def operation(letter: Letter) -> Letter:
        return await letter_service.update_letter(
            session, letter, payload, actor=actor, settings=get_settings(), known_providers=providers
        )

    letter = await _run_letter_operation(
        session, locks, letter_id, action="letter.update", actor=actor, operation=operation
    )
    return LetterRead.model_validate(letter)


@router.post("/{letter_id}/submit", response_model=LetterRead)
async def submit_letter_endpoint(
    letter_id: str,
    session: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    locks: KeyedLockRegistry = Depends(get_lock_registry),
) -> LetterRead:
    async def operation(letter: Letter) -> Letter:
        return await letter_service.submit_for_approval(session, letter, actor=actor)

    letter = await _run_letter_operation(
        session, locks, letter_id, action="letter.submit", actor=actor, operation=operation
    )
    return LetterRead.model_validate(letter)


@router.post("/{letter_id}/approval-steps/{step_number}/decision", response_model=DecisionResponse)
async def decide_step_endpoint(
    letter_id: str,
    step_number: int,
    payload: DecisionRequest,
    session: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    locks: KeyedLockRegistry = Depends(get_lock_registry),
    providers: ProviderRegistry = Depends(get_provider_registry),
) -> DecisionResponse:
    settings = get_settings()

    async def operation(letter: Letter) -> DecisionOutcome:
        return await letter_service.decide_step(
            session,
            letter,
            step_number,
            payload.decision,
            actor=actor,
            settings=settings,
            comments=payload.comments,
        )

    outcome = await _run_letter_operation(
        session, locks, letter_id, action="approval.decide", actor=actor, operation=operation
    )
    step = ApprovalStepRead.model_validate(outcome.step)
    letter = await letter_service.require_letter(session, letter_id)
    if not outcome.replayed and letter.status == LetterStatus.APPROVED:
        await jobs.auto_request_signatures(session, letter_id, locks=locks, registry=providers, settings=settings)
        letter = await letter_service.require_letter(session, letter_id)
    return DecisionResponse(
        step=step,
        replayed=outcome.replayed,
        workflow_state=outcome.state.value,
        letter_status=letter.status,
    )


@router.post("/{letter_id}/void", response_model=LetterRead)
async def void_letter_endpoint(
    letter_id: str,
    payload: VoidRequest,
    session: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    locks: KeyedLockRegistry = Depends(get_lock_registry),
) -> LetterRead:
    async def operation(letter: Letter) -> Letter:
        return await letter_service.void_letter(session, letter, payload.reason, actor=actor)

    letter = await _run_letter_operation(
        session, locks, letter_id, action="letter.void", actor=actor, operation=operation
    )
    return LetterRead.model_validate(letter)


@router.post("/{letter_id}/signatures", response_model=SigningInitiateResponse, status_code=status.HTTP_201_CREATED)
async def request_signatures_endpoint(
    letter_id: str,
    payload: SignatureRequestCreate | None = None,
    session: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    locks: KeyedLockRegistry = Depends(get_lock_registry),
    providers: ProviderRegistry = Depends(get_provider_registry),
) -> SigningInitiateResponse:
    payload = payload or SignatureRequestCreate()
    bind_letter_context(letter_id, action="signing.initiate")
    requests = await jobs.request_signatures(
        session,
        letter_id,
        locks=locks,
        registry=providers,
        settings=get_settings(),
        actor=actor,
        signatory_index=payload.signatory_index,
        provider=payload.provider,
    )
    return SigningInitiateResponse(requests=[SigningRequestRead.model_validate(item) for item in requests])


@router.post("/{letter_id}/finalize", response_model=LetterRead)
async def finalize_letter_endpoint(
    letter_id: str,
    payload: FinalizeRequest | None = None,
    session: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    locks: KeyedLockRegistry = Depends(get_lock_registry),
    renderer: RenderingClient | None = Depends(get_renderer),
) -> LetterRead:
    files = payload.files.model_dump(exclude_none=True) if payload and payload.files else None

    async def operation(letter: Letter) -> Letter:
        return await letter_service.finalize_letter(session, letter, actor=actor, files=files, renderer=renderer)

    letter = await _run_letter_operation(
        session, locks, letter_id, action="letter.finalize", actor=actor, operation=operation
    )
    return LetterRead.model_validate(letter)
