from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Callable, Iterable

from app.core.errors import InvalidTransition
from app.core.logging import get_logger
from app.models.approval import ApprovalStatus
from app.models.audit import AuditCategory, AuditLog
from app.models.letter import Letter, LetterStatus, LetterType, TERMINAL_STATUSES
from app.models.signing import SigningRequestStatus
from app.services.approval_workflow import WorkflowState, workflow_state
from app.services.audit_service import append_audit

logger = get_logger(__name__)


class Trigger(str, Enum):
    SUBMIT = "submit"
    WORKFLOW_COMPLETED = "workflow_completed"
    WORKFLOW_REJECTED = "workflow_rejected"
    SIGNATURES_COMPLETED = "signatures_completed"
    FINALIZE = "finalize"
    VOID = "void"


ALLOWED_TRANSITIONS: dict[LetterStatus, tuple[LetterStatus, ...]] = {
    LetterStatus.DRAFT: (LetterStatus.PENDING_APPROVAL, LetterStatus.VOID),
    LetterStatus.PENDING_APPROVAL: (LetterStatus.APPROVED, LetterStatus.DRAFT, LetterStatus.VOID),
    LetterStatus.APPROVED: (LetterStatus.SIGNED, LetterStatus.VOID),
    LetterStatus.SIGNED: (LetterStatus.ISSUED, LetterStatus.VOID),
    LetterStatus.ISSUED: (),
    LetterStatus.VOID: (),
}

TRIGGER_TARGETS: dict[Trigger, LetterStatus] = {
    Trigger.SUBMIT: LetterStatus.PENDING_APPROVAL,
    Trigger.WORKFLOW_COMPLETED: LetterStatus.APPROVED,
    Trigger.WORKFLOW_REJECTED: LetterStatus.DRAFT,
    Trigger.SIGNATURES_COMPLETED: LetterStatus.SIGNED,
    Trigger.FINALIZE: LetterStatus.ISSUED,
    Trigger.VOID: LetterStatus.VOID,
}

BINDING_SECTIONS = ("employee", "company")

# Letter-type specific fields; a field is satisfied by the letter column or by the binding.
TYPE_REQUIREMENTS: dict[LetterType, tuple[tuple[str, ...], ...]] = {
    LetterType.OFFER: (("comp",),),
    LetterType.APPOINTMENT: (("comp",),),
    LetterType.INTERNSHIP: (("comp",),),
    LetterType.PROMOTION: (("new_designation",),),
    LetterType.DEMOTION: (("new_designation",),),
    LetterType.ROLE_CHANGE: (("new_designation",),),
    LetterType.TRANSFER: (("new_location", "new_department"),),
    LetterType.TERMINATION: (("reason",),),
}

FILE_KEYS = ("pdf_url", "html_url", "docx_url")


def _is_filled(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, (str, dict, list, tuple)):
        return len(value) > 0
    return True


def missing_binding_fields(letter: Letter) -> list[str]:
    binding = letter.data_binding or {}
    if not binding:
        return ["data_binding"]
    missing = [section for section in BINDING_SECTIONS if not _is_filled(binding.get(section))]
    for alternatives in TYPE_REQUIREMENTS.get(letter.letter_type, ()):
        if not any(_is_filled(getattr(letter, name, None)) or _is_filled(binding.get(name)) for name in alternatives):
            missing.append(" or ".join(alternatives))
    return missing


def _guard_submit(letter: Letter, reason: str | None) -> tuple[str, str] | None:
    missing = missing_binding_fields(letter)
    if missing:
        return "data_binding_complete", f"data binding is incomplete: missing {', '.join(missing)}"
    if not letter.signatories:
        return "signatories_defined", "at least one signatory is required before submitting"
    if not letter.current_steps:
        return "approval_steps_defined", "at least one approval step is required before submitting"
    return None


def _guard_workflow_completed(letter: Letter, reason: str | None) -> tuple[str, str] | None:
    steps = letter.current_steps
    if workflow_state(steps) != WorkflowState.COMPLETED:
        pending = [str(step.step_number) for step in steps if step.status != ApprovalStatus.APPROVED]
        return "all_steps_approved", f"approval workflow is not complete: steps {', '.join(pending)} not approved"
    return None


def _guard_workflow_rejected(letter: Letter, reason: str | None) -> tuple[str, str] | None:
    if workflow_state(letter.current_steps) != WorkflowState.REJECTED:
        return "step_rejected", "no approval step has been rejected"
    return None


def unsigned_positions(letter: Letter) -> list[int]:
    return [
        signatory.position
        for signatory in letter.signatories
        if signatory.signing_request is None or signatory.signing_request.status != SigningRequestStatus.COMPLETED
    ]


def _guard_signatures_completed(letter: Letter, reason: str | None) -> tuple[str, str] | None:
    if not letter.signatories:
        return "all_signatures_completed", "letter has no signatories"
    outstanding = unsigned_positions(letter)
    if outstanding:
        joined = ", ".join(str(position) for position in outstanding)
        return "all_signatures_completed", f"signatories {joined} have not completed signing"
    return None


def _guard_finalize(letter: Letter, reason: str | None) -> tuple[str, str] | None:
    files = letter.files or {}
    if not any(_is_filled(files.get(key)) for key in FILE_KEYS):
        return "files_attached", "rendered files must be attached before issuing"
    return None


def _guard_void(letter: Letter, reason: str | None) -> tuple[str, str] | None:
    if reason is None or not reason.strip():
        return "void_reason_required", "a reason is required to void a letter"
    return None


GUARDS: dict[Trigger, Callable[[Letter, str | None], tuple[str, str] | None]] = {
    Trigger.SUBMIT: _guard_submit,
    Trigger.WORKFLOW_COMPLETED: _guard_workflow_completed,
    Trigger.WORKFLOW_REJECTED: _guard_workflow_rejected,
    Trigger.SIGNATURES_COMPLETED: _guard_signatures_completed,
    Trigger.FINALIZE: _guard_finalize,
    Trigger.VOID: _guard_void,
}


def _can_transition(current: LetterStatus, target: LetterStatus) -> bool:
    allowed: Iterable[LetterStatus] | None = ALLOWED_TRANSITIONS.get(current)
    return allowed is not None and target in allowed


def check_transition(letter: Letter, trigger: Trigger, *, reason: str | None = None) -> LetterStatus:
    """Return the target status for ``trigger`` or raise ``InvalidTransition`` naming the violated guard."""
    target = TRIGGER_TARGETS[trigger]
    if letter.status in TERMINAL_STATUSES:
        raise InvalidTransition(
            f"letter {letter.serial_no} is {letter.status.value} and can no longer change",
            guard="terminal_state",
            status=letter.status.value,
        )
    if not _can_transition(letter.status, target):
        raise InvalidTransition(
            f"cannot {trigger.value} a letter in {letter.status.value}",
            guard="transition_allowed",
            status=letter.status.value,
            target=target.value,
        )
    violation = GUARDS[trigger](letter, reason)
    if violation is not None:
        guard, message = violation
        raise InvalidTransition(message, guard=guard, status=letter.status.value, target=target.value)
    return target


def transition(
    letter: Letter,
    trigger: Trigger,
    *,
    actor: str,
    origin: dict[str, Any] | None = None,
    reason: str | None = None,
    details: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> AuditLog:
    """Apply ``trigger`` to ``letter`` and append the matching audit entry. Nothing changes when a guard fails."""
    target = check_transition(letter, trigger, reason=reason)
    previous = letter.status
    letter.status = target
    if target == LetterStatus.VOID:
        letter.void_reason = reason.strip() if reason else reason

    payload: dict[str, Any] = {"trigger": trigger.value, "from_status": previous.value, "to_status": target.value}
    if reason:
        payload["reason"] = reason
    if details:
        payload.update(details)
    if now is not None:
        payload["at"] = now.isoformat()

    entry = append_audit(
        letter,
        action="letter.transition",
        actor=actor,
        category=AuditCategory.LIFECYCLE,
        details=payload,
        origin=origin,
    )
    logger.info(
        "letter.transition",
        letter_id=letter.id,
        trigger=trigger.value,
        from_status=previous.value,
        to_status=target.value,
        actor=actor,
    )
    return entry
