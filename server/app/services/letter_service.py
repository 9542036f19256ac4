from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Container, Sequence

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings
from app.core.errors import InvalidTransition, LetterEngineError, NotFound, ValidationError
from app.core.logging import get_logger
from app.core.security import SYSTEM_ACTOR, Actor
from app.integrations.rendering import RenderingClient, RenderRequest
from app.models.approval import ApprovalStatus, ApprovalStep
from app.models.audit import AuditCategory, AuditLog
from app.models.event import EventChannel
from app.models.letter import LETTER_TYPE_CODES, Letter, LetterStatus, LetterType, SerialCounter, Signatory
from app.models.mixins import utcnow
from app.models.signing import SigningRequestStatus
from app.schemas.approval import ApprovalStepCreate
from app.schemas.letter import LetterCreate, LetterUpdate, SignatoryCreate
from app.services import approval_workflow
from app.services.approval_workflow import DecisionOutcome, StepDefinition, WorkflowState
from app.services.audit_service import append_audit, list_audit_entries
from app.services.outbox_service import enqueue_event
from app.services.state_machine import Trigger, check_transition, transition, unsigned_positions

logger = get_logger(__name__)

SCALAR_FIELDS = (
    "language",
    "template_id",
    "template_version",
    "data_binding",
    "issue_date",
    "effective_date",
    "reason",
    "new_designation",
    "new_department",
    "new_location",
)


@dataclass(slots=True)
class LetterFilters:
    letter_type: LetterType | None = None
    status: LetterStatus | None = None
    employee_id: str | None = None
    issued_from: date | None = None
    issued_to: date | None = None


def serial_prefix(letter_type: LetterType, *, year: int, settings: Settings) -> str:
    return f"{settings.serial_brand}/{LETTER_TYPE_CODES[letter_type]}/{year}/{settings.serial_store_code}"


async def next_serial_number(
    session: AsyncSession, letter_type: LetterType, *, settings: Settings, now: datetime | None = None
) -> str:
    """Reserve the next serial for ``letter_type``. Counters only move forward, so voided serials stay used."""
    prefix = serial_prefix(letter_type, year=(now or utcnow()).year, settings=settings)
    counter = await session.get(SerialCounter, prefix, with_for_update=True)
    if counter is None:
        counter = SerialCounter(prefix=prefix, last_value=0)
        session.add(counter)
    counter.last_value += 1
    await session.flush()
    return f"{prefix}/{counter.last_value:05d}"


def _step_definitions(steps: Sequence[ApprovalStepCreate], settings: Settings) -> list[StepDefinition]:
    return approval_workflow.validate_definitions(
        StepDefinition(
            step_number=item.step_number,
            sla_hours=item.sla_hours or settings.default_step_sla_hours,
            approver_role=item.approver_role,
            approver_id=item.approver_id,
        )
        for item in steps
    )


def _check_providers(signatories: Sequence[SignatoryCreate], known_providers: Container[str] | None) -> None:
    if known_providers is None:
        return
    for position, item in enumerate(signatories):
        if item.provider not in known_providers:
            raise ValidationError(
                f"signatory {position} names unknown e-signature provider '{item.provider}'",
                signatory_index=position,
                provider=item.provider,
            )


def _jsonable(value: Any) -> Any:
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json")
    if isinstance(value, list):
        return [_jsonable(item) for item in value]
    return value


async def create_letter(
    session: AsyncSession,
    data: LetterCreate,
    *,
    actor: Actor,
    settings: Settings,
    known_providers: Container[str] | None = None,
    now: datetime | None = None,
) -> Letter:
    _check_providers(data.signatories, known_providers)
    definitions = _step_definitions(data.approval_steps, settings)
    serial_no = await next_serial_number(session, data.letter_type, settings=settings, now=now)

    letter = Letter(
        id=str(uuid.uuid4()),
        serial_no=serial_no,
        letter_type=data.letter_type,
        language=data.language,
        status=LetterStatus.DRAFT,
        template_id=data.template_id,
        template_version=data.template_version,
        data_binding=dict(data.data_binding),
        issue_date=data.issue_date,
        effective_date=data.effective_date,
        reason=data.reason,
        new_designation=data.new_designation,
        new_department=data.new_department,
        new_location=data.new_location,
        annexures=_jsonable(data.annexures),
        files={},
        delivery=_jsonable(data.delivery),
        workflow_round=1,
        created_by=actor.id,
    )
    letter.signatories = [
        Signatory(position=position, name=item.name, title=item.title, email=item.email, provider=item.provider)
        for position, item in enumerate(data.signatories)
    ]
    letter.approval_steps = approval_workflow.build_steps(definitions, round_number=1)
    session.add(letter)
    append_audit(
        letter,
        action="letter.created",
        actor=actor.id,
        category=AuditCategory.LIFECYCLE,
        details={"serial_no": serial_no, "letter_type": data.letter_type.value, "status": LetterStatus.DRAFT.value},
        origin=actor.origin,
    )
    await session.flush()
    logger.info("letter.created", letter_id=letter.id, serial_no=serial_no, letter_type=data.letter_type.value)
    return letter


async def get_letter(session: AsyncSession, letter_id: str, *, for_update: bool = False) -> Letter | None:
    query = select(Letter).where(Letter.id == letter_id).execution_options(populate_existing=True)
    if for_update:
        query = query.with_for_update()
    result = await session.execute(query)
    return result.scalars().first()


async def require_letter(session: AsyncSession, letter_id: str, *, for_update: bool = False) -> Letter:
    letter = await get_letter(session, letter_id, for_update=for_update)
    if letter is None:
        raise NotFound(f"letter {letter_id} not found", letter_id=letter_id)
    return letter


async def list_letters(
    session: AsyncSession,
    *,
    filters: LetterFilters,
    page: int,
    page_size: int,
) -> tuple[Sequence[Letter], int]:
    conditions = []
    if filters.letter_type:
        conditions.append(Letter.letter_type == filters.letter_type)
    if filters.status:
        conditions.append(Letter.status == filters.status)
    if filters.employee_id:
        conditions.append(
            or_(
                Letter.data_binding[("employee", "id")].as_string() == filters.employee_id,
                Letter.data_binding[("employee", "employee_id")].as_string() == filters.employee_id,
            )
        )
    if filters.issued_from:
        conditions.append(Letter.issue_date >= filters.issued_from)
    if filters.issued_to:
        conditions.append(Letter.issue_date <= filters.issued_to)

    base_query = select(Letter)
    count_query = select(func.count()).select_from(Letter)
    if conditions:
        base_query = base_query.where(and_(*conditions))
        count_query = count_query.where(and_(*conditions))

    total = await session.scalar(count_query)
    result = await session.execute(
        base_query.order_by(Letter.created_at.desc(), Letter.serial_no.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return result.scalars().all(), int(total or 0)


async def letter_stats(session: AsyncSession) -> dict[str, Any]:
    by_status = await session.execute(select(Letter.status, func.count()).group_by(Letter.status))
    by_type = await session.execute(select(Letter.letter_type, func.count()).group_by(Letter.letter_type))
    status_counts = {status.value: int(count) for status, count in by_status.all()}
    type_counts = {letter_type.value: int(count) for letter_type, count in by_type.all()}
    return {"total": sum(status_counts.values()), "by_status": status_counts, "by_type": type_counts}


def _round_started(steps: Sequence[ApprovalStep]) -> bool:
    return any(step.pending_since is not None for step in steps) or approval_workflow.has_decisions(steps)


def _open_round(letter: Letter, definitions: Sequence[StepDefinition]) -> None:
    letter.workflow_round += 1
    letter.approval_steps.extend(approval_workflow.build_steps(definitions, round_number=letter.workflow_round))


def _replace_current_round(letter: Letter, definitions: Sequence[StepDefinition]) -> None:
    """Rewrite the steps of a round that never started, reusing rows so step numbers stay unique."""
    existing = {step.step_number: step for step in letter.current_steps}
    for definition in definitions:
        step = existing.pop(definition.step_number, None)
        if step is None:
            letter.approval_steps.append(approval_workflow.new_step(definition, round_number=letter.workflow_round))
            continue
        step.approver_role = definition.approver_role
        step.approver_id = definition.approver_id
        step.sla_hours = definition.sla_hours
    for stale in existing.values():
        letter.approval_steps.remove(stale)


def _replace_signatories(letter: Letter, signatories: Sequence[SignatoryCreate]) -> None:
    current = list(letter.signatories)
    for position, item in enumerate(signatories):
        if position < len(current):
            signatory = current[position]
            signatory.name = item.name
            signatory.title = item.title
            signatory.email = item.email
            signatory.provider = item.provider
            signatory.signed_at = None
            signatory.signature_artifact_ref = None
            signatory.signing_request = None
        else:
            letter.signatories.append(
                Signatory(position=position, name=item.name, title=item.title, email=item.email, provider=item.provider)
            )
    for signatory in current[len(signatories):]:
        letter.signatories.remove(signatory)


async def update_letter(
    session: AsyncSession,
    letter: Letter,
    data: LetterUpdate,
    *,
    actor: Actor,
    settings: Settings,
    known_providers: Container[str] | None = None,
) -> Letter:
    if letter.status != LetterStatus.DRAFT:
        raise InvalidTransition(
            f"letter {letter.serial_no} can only be edited in DRAFT, it is {letter.status.value}",
            guard="editable_in_draft",
            status=letter.status.value,
        )
    changes = data.model_dump(exclude_unset=True)
    if not changes:
        return letter

    for field_name in SCALAR_FIELDS:
        if field_name in changes:
            value = getattr(data, field_name)
            if field_name == "language" and value is None:
                raise ValidationError("language cannot be cleared")
            setattr(letter, field_name, dict(value) if isinstance(value, dict) else value)
    if data.annexures is not None:
        letter.annexures = _jsonable(data.annexures)
    if data.delivery is not None:
        letter.delivery = _jsonable(data.delivery)
    if data.signatories is not None:
        _check_providers(data.signatories, known_providers)
        _replace_signatories(letter, data.signatories)
    if data.approval_steps is not None:
        definitions = _step_definitions(data.approval_steps, settings)
        if _round_started(letter.current_steps):
            _open_round(letter, definitions)
        else:
            _replace_current_round(letter, definitions)

    append_audit(
        letter,
        action="letter.updated",
        actor=actor.id,
        category=AuditCategory.LIFECYCLE,
        details={"fields": sorted(changes)},
        origin=actor.origin,
    )
    await session.flush()
    logger.info("letter.updated", letter_id=letter.id, fields=sorted(changes))
    return letter


async def submit_for_approval(
    session: AsyncSession, letter: Letter, *, actor: Actor, now: datetime | None = None
) -> Letter:
    check_transition(letter, Trigger.SUBMIT)
    moment = now or utcnow()
    if _round_started(letter.current_steps):
        _open_round(letter, approval_workflow.definitions_from_steps(letter.current_steps))
    approval_workflow.start(letter.current_steps, now=moment)
    transition(
        letter,
        Trigger.SUBMIT,
        actor=actor.id,
        origin=actor.origin,
        details={"workflow_round": letter.workflow_round},
    )
    await session.flush()
    return letter


async def decide_step(
    session: AsyncSession,
    letter: Letter,
    step_number: int,
    decision: ApprovalStatus,
    *,
    actor: Actor,
    settings: Settings,
    comments: str | None = None,
    now: datetime | None = None,
) -> DecisionOutcome:
    """
    Record an approval decision and move the letter when the workflow settles.

    A repeated identical decision returns the recorded one without touching
    the letter or its audit trail, also after the letter moved on. Any other
    decision on a letter outside PENDING_APPROVAL is refused.
    """
    steps = letter.current_steps
    if letter.status != LetterStatus.PENDING_APPROVAL:
        step = next((item for item in steps if item.step_number == step_number), None)
        decided = step is not None and step.status != ApprovalStatus.PENDING
        frozen = approval_workflow.rejected_step(steps) is not None
        if not (decided or frozen):
            raise InvalidTransition(
                f"approval decisions are only accepted while the letter is PENDING_APPROVAL, it is {letter.status.value}",
                guard="workflow_open",
                status=letter.status.value,
            )

    moment = now or utcnow()
    outcome = approval_workflow.decide(
        steps,
        step_number,
        decision,
        actor,
        comments=comments,
        override_roles=settings.approval_override_roles,
        now=moment,
    )
    if outcome.replayed:
        logger.info("approval.decision.replayed", letter_id=letter.id, step_number=step_number)
        return outcome

    append_audit(
        letter,
        action="approval.step.decided",
        actor=actor.id,
        category=AuditCategory.APPROVAL,
        details={
            "workflow_round": letter.workflow_round,
            "step_number": step_number,
            "decision": decision.value,
            "comments": comments,
        },
        origin=actor.origin,
    )
    if outcome.state == WorkflowState.COMPLETED:
        transition(letter, Trigger.WORKFLOW_COMPLETED, actor=actor.id, origin=actor.origin)
    elif outcome.state == WorkflowState.REJECTED:
        transition(
            letter,
            Trigger.WORKFLOW_REJECTED,
            actor=actor.id,
            origin=actor.origin,
            details={"rejected_step": step_number},
        )
    await session.flush()
    logger.info(
        "approval.step.decided",
        letter_id=letter.id,
        step_number=step_number,
        decision=decision.value,
        workflow_state=outcome.state.value,
    )
    return outcome


async def escalate_overdue_steps(
    session: AsyncSession, letter: Letter, *, now: datetime | None = None
) -> list[approval_workflow.EscalationEvent]:
    if letter.status != LetterStatus.PENDING_APPROVAL:
        return []
    events = approval_workflow.check_escalations(letter.current_steps, now=now)
    for event in events:
        payload = {"letter_id": letter.id, "serial_no": letter.serial_no, **event.to_payload()}
        append_audit(
            letter,
            action="approval.step.escalated",
            actor=SYSTEM_ACTOR.id,
            category=AuditCategory.APPROVAL,
            details=payload,
        )
        await enqueue_event(session, letter_id=letter.id, event_type="approval.step.escalated", payload=payload)
        logger.warning("approval.step.escalated", letter_id=letter.id, step_number=event.step_number)
    await session.flush()
    return events


async def pending_approval_letter_ids(session: AsyncSession) -> list[str]:
    result = await session.execute(select(Letter.id).where(Letter.status == LetterStatus.PENDING_APPROVAL))
    return list(result.scalars().all())


def complete_if_fully_signed(letter: Letter, *, actor: Actor = SYSTEM_ACTOR) -> bool:
    """Move an APPROVED letter to SIGNED once every signatory's latest request is COMPLETED."""
    if letter.status != LetterStatus.APPROVED or not letter.signatories or unsigned_positions(letter):
        return False
    transition(letter, Trigger.SIGNATURES_COMPLETED, actor=actor.id, origin=actor.origin)
    return True


async def void_letter(session: AsyncSession, letter: Letter, reason: str, *, actor: Actor) -> Letter:
    transition(letter, Trigger.VOID, actor=actor.id, origin=actor.origin, reason=reason)
    moment = utcnow()
    for signatory in letter.signatories:
        request = signatory.signing_request
        if request is not None and request.status == SigningRequestStatus.PENDING:
            request.status = SigningRequestStatus.CANCELLED
            request.failure_reason = "letter_voided"
            request.completed_at = moment
            append_audit(
                letter,
                action="signing.cancelled",
                actor=actor.id,
                category=AuditCategory.SIGNATURE,
                details={"request_id": request.id, "signatory_index": signatory.position, "reason": "letter_voided"},
                origin=actor.origin,
            )
    await session.flush()
    return letter


async def finalize_letter(
    session: AsyncSession,
    letter: Letter,
    *,
    actor: Actor,
    files: dict[str, Any] | None = None,
    renderer: RenderingClient | None = None,
) -> Letter:
    """
    Attach rendered files and issue the letter.

    Files supplied by the caller win; otherwise the rendering service is
    asked for them. Issuing enqueues a delivery request on the outbox.
    """
    if letter.status != LetterStatus.SIGNED:
        check_transition(letter, Trigger.FINALIZE)

    supplied = {key: value for key, value in (files or {}).items() if value}
    if not supplied and renderer is not None:
        supplied = await renderer.render(
            RenderRequest(
                letter_id=letter.id,
                serial_no=letter.serial_no,
                template_id=letter.template_id,
                template_version=letter.template_version,
                language=letter.language.value,
                data_binding=letter.data_binding,
                annexures=letter.annexures,
            )
        )
    if supplied:
        letter.files = {**(letter.files or {}), **supplied}

    transition(letter, Trigger.FINALIZE, actor=actor.id, origin=actor.origin, details={"files": sorted(letter.files)})
    await enqueue_event(
        session,
        letter_id=letter.id,
        event_type="letter.issued",
        channel=EventChannel.DELIVERY,
        payload={
            "letter_id": letter.id,
            "serial_no": letter.serial_no,
            "recipients": letter.delivery,
            "files": letter.files,
        },
    )
    await session.flush()
    return letter


async def record_delivery(
    session: AsyncSession, letter: Letter, *, receipt: dict[str, Any] | None = None, now: datetime | None = None
) -> Letter:
    delivered_at = (now or utcnow()).isoformat()
    letter.delivery = {**(letter.delivery or {}), "delivered_at": delivered_at}
    append_audit(
        letter,
        action="letter.delivered",
        actor=SYSTEM_ACTOR.id,
        category=AuditCategory.DELIVERY,
        details={"delivered_at": delivered_at, "receipt": receipt or {}},
    )
    await session.flush()
    return letter


async def audit_trail(session: AsyncSession, letter_id: str) -> list[AuditLog]:
    await require_letter(session, letter_id)
    return await list_audit_entries(session, letter_id)


async def record_rejected_operation(
    session: AsyncSession, letter_id: str, *, action: str, error: LetterEngineError, actor: Actor
) -> AuditLog | None:
    """Add a critical audit entry for a failed mutating call. Runs after the failed transaction was rolled back."""
    letter = await get_letter(session, letter_id)
    if letter is None:
        return None
    entry = append_audit(
        letter,
        action=f"{action}.rejected",
        actor=actor.id,
        category=AuditCategory.SYSTEM,
        details={"error": error.code, "message": error.message, "context": error.context},
        origin=actor.origin,
        critical=True,
    )
    await session.flush()
    logger.warning("letter.operation.rejected", letter_id=letter_id, action=action, error=error.code)
    return entry
