"""
Sequential approval workflow with per-step SLAs.

The functions here operate on the steps of a single workflow round and never
touch the database. Decisions are strictly ordered: only the lowest pending
step of a workflow that has not been rejected can be decided. Repeating a
decision that was already recorded is answered with the recorded state.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Iterable, Sequence

from app.core.errors import ApproverMismatch, OutOfOrderDecision, ValidationError
from app.core.security import Actor
from app.models.approval import ApprovalStatus, ApprovalStep
from app.models.mixins import utcnow


class WorkflowState(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    REJECTED = "rejected"


@dataclass(slots=True)
class StepDefinition:
    step_number: int
    sla_hours: int
    approver_role: str | None = None
    approver_id: str | None = None


@dataclass(slots=True)
class DecisionOutcome:
    step: ApprovalStep
    state: WorkflowState
    replayed: bool = False
    next_step: ApprovalStep | None = None


@dataclass(slots=True)
class EscalationEvent:
    step_number: int
    approver_role: str | None
    approver_id: str | None
    pending_since: datetime
    sla_hours: int
    overdue_by: timedelta

    def to_payload(self) -> dict:
        return {
            "step_number": self.step_number,
            "approver_role": self.approver_role,
            "approver_id": self.approver_id,
            "pending_since": self.pending_since.isoformat(),
            "sla_hours": self.sla_hours,
            "overdue_seconds": int(self.overdue_by.total_seconds()),
        }


def validate_definitions(definitions: Iterable[StepDefinition]) -> list[StepDefinition]:
    """Return definitions ordered by step number, rejecting gaps, duplicates and empty approvers."""
    ordered = sorted(definitions, key=lambda item: item.step_number)
    numbers = [item.step_number for item in ordered]
    if len(set(numbers)) != len(numbers):
        raise ValidationError("approval step numbers must be unique", step_numbers=numbers)
    if numbers != list(range(1, len(numbers) + 1)):
        raise ValidationError("approval steps must be numbered 1..n without gaps", step_numbers=numbers)
    for item in ordered:
        if item.sla_hours <= 0:
            raise ValidationError(f"step {item.step_number} needs a positive SLA", step_number=item.step_number)
        if not item.approver_role and not item.approver_id:
            raise ValidationError(
                f"step {item.step_number} needs an approver role or approver id", step_number=item.step_number
            )
    return ordered


def new_step(definition: StepDefinition, *, round_number: int) -> ApprovalStep:
    return ApprovalStep(
        round_number=round_number,
        step_number=definition.step_number,
        approver_role=definition.approver_role,
        approver_id=definition.approver_id,
        sla_hours=definition.sla_hours,
        status=ApprovalStatus.PENDING,
        escalated=False,
    )


def build_steps(definitions: Iterable[StepDefinition], *, round_number: int) -> list[ApprovalStep]:
    return [new_step(item, round_number=round_number) for item in validate_definitions(definitions)]


def definitions_from_steps(steps: Sequence[ApprovalStep]) -> list[StepDefinition]:
    return [
        StepDefinition(
            step_number=step.step_number,
            sla_hours=step.sla_hours,
            approver_role=step.approver_role,
            approver_id=step.approver_id,
        )
        for step in steps
    ]


def rejected_step(steps: Sequence[ApprovalStep]) -> ApprovalStep | None:
    for step in steps:
        if step.status == ApprovalStatus.REJECTED:
            return step
    return None


def current_step(steps: Sequence[ApprovalStep]) -> ApprovalStep | None:
    """The only step that can be decided right now, if any."""
    if rejected_step(steps) is not None:
        return None
    pending = [step for step in steps if step.status == ApprovalStatus.PENDING]
    return min(pending, key=lambda step: step.step_number) if pending else None


def workflow_state(steps: Sequence[ApprovalStep]) -> WorkflowState:
    if rejected_step(steps) is not None:
        return WorkflowState.REJECTED
    if steps and all(step.status == ApprovalStatus.APPROVED for step in steps):
        return WorkflowState.COMPLETED
    return WorkflowState.IN_PROGRESS


def has_decisions(steps: Sequence[ApprovalStep]) -> bool:
    return any(step.status != ApprovalStatus.PENDING for step in steps)


def start(steps: Sequence[ApprovalStep], *, now: datetime | None = None) -> ApprovalStep | None:
    """Open the workflow: the first pending step starts its SLA clock."""
    step = current_step(steps)
    if step is not None:
        step.pending_since = now or utcnow()
    return step


def ensure_approver(step: ApprovalStep, actor: Actor, override_roles: Iterable[str] = ()) -> None:
    if actor.has_any_role(override_roles):
        return
    if step.approver_id is not None:
        if actor.id != step.approver_id:
            raise ApproverMismatch(
                f"step {step.step_number} must be decided by {step.approver_id}",
                step_number=step.step_number,
                actor=actor.id,
            )
        return
    if step.approver_role is not None and step.approver_role not in actor.roles:
        raise ApproverMismatch(
            f"step {step.step_number} requires the '{step.approver_role}' role",
            step_number=step.step_number,
            actor=actor.id,
        )


def decide(
    steps: Sequence[ApprovalStep],
    step_number: int,
    decision: ApprovalStatus,
    actor: Actor,
    *,
    comments: str | None = None,
    override_roles: Iterable[str] = (),
    now: datetime | None = None,
) -> DecisionOutcome:
    """
    Record a decision on ``step_number``.

    Raises:
        ValidationError: unknown step or a decision other than APPROVED/REJECTED.
        OutOfOrderDecision: the step is not the current one, or it already
            carries a different decision.
        ApproverMismatch: the actor is not the step's approver.
    """
    if decision not in (ApprovalStatus.APPROVED, ApprovalStatus.REJECTED):
        raise ValidationError("decision must be APPROVED or REJECTED", decision=str(decision))

    step = next((item for item in steps if item.step_number == step_number), None)
    if step is None:
        raise ValidationError(f"step {step_number} does not exist in this workflow", step_number=step_number)

    if step.status != ApprovalStatus.PENDING:
        if step.status == decision:
            return DecisionOutcome(step=step, state=workflow_state(steps), replayed=True)
        raise OutOfOrderDecision(
            f"step {step_number} was already {step.status.value.lower()} and cannot be {decision.value.lower()}",
            step_number=step_number,
            recorded=step.status.value,
        )

    blocker = rejected_step(steps)
    if blocker is not None:
        raise OutOfOrderDecision(
            f"step {step_number} is frozen because step {blocker.step_number} was rejected",
            step_number=step_number,
            rejected_step=blocker.step_number,
        )

    expected = current_step(steps)
    if expected is not None and expected.step_number != step_number:
        raise OutOfOrderDecision(
            f"step {step_number} cannot be decided before step {expected.step_number}",
            step_number=step_number,
            expected_step=expected.step_number,
        )

    ensure_approver(step, actor, override_roles)

    moment = now or utcnow()
    step.status = decision
    step.decided_at = moment
    step.decided_by = actor.id
    step.comments = comments

    next_step = None
    if decision == ApprovalStatus.APPROVED:
        next_step = start(steps, now=moment)
    return DecisionOutcome(step=step, state=workflow_state(steps), next_step=next_step)


def check_escalations(steps: Sequence[ApprovalStep], *, now: datetime | None = None) -> list[EscalationEvent]:
    """Flag the current step once it has been pending past its SLA. Each step escalates at most once."""
    moment = now or utcnow()
    step = current_step(steps)
    if step is None or step.escalated or step.pending_since is None:
        return []
    deadline = step.pending_since + timedelta(hours=step.sla_hours)
    if moment <= deadline:
        return []
    step.escalated = True
    step.escalated_at = moment
    return [
        EscalationEvent(
            step_number=step.step_number,
            approver_role=step.approver_role,
            approver_id=step.approver_id,
            pending_since=step.pending_since,
            sla_hours=step.sla_hours,
            overdue_by=moment - deadline,
        )
    ]
