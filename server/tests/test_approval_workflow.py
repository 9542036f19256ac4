"""
Sequential approval workflow tests. These run on in-memory steps only.
"""

from datetime import datetime, timedelta, timezone

import pytest

from app.core.errors import ApproverMismatch, OutOfOrderDecision, ValidationError
from app.core.security import Actor
from app.models.approval import ApprovalStatus
from app.services import approval_workflow
from app.services.approval_workflow import StepDefinition, WorkflowState

from conftest import ADMIN, CEO, FINANCE, HR_MANAGER

START = datetime(2025, 4, 2, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def steps():
    definitions = [
        StepDefinition(step_number=1, sla_hours=24, approver_role="hr_manager"),
        StepDefinition(step_number=2, sla_hours=48, approver_role="finance"),
        StepDefinition(step_number=3, sla_hours=72, approver_id="ceo-01"),
    ]
    built = approval_workflow.build_steps(definitions, round_number=1)
    approval_workflow.start(built, now=START)
    return built


class TestDefinitions:
    def test_orders_by_step_number(self):
        ordered = approval_workflow.validate_definitions(
            [
                StepDefinition(step_number=2, sla_hours=8, approver_role="finance"),
                StepDefinition(step_number=1, sla_hours=8, approver_role="hr_manager"),
            ]
        )
        assert [item.step_number for item in ordered] == [1, 2]

    def test_rejects_duplicate_numbers(self):
        with pytest.raises(ValidationError, match="unique"):
            approval_workflow.validate_definitions(
                [
                    StepDefinition(step_number=1, sla_hours=8, approver_role="a"),
                    StepDefinition(step_number=1, sla_hours=8, approver_role="b"),
                ]
            )

    def test_rejects_gaps(self):
        with pytest.raises(ValidationError, match="without gaps"):
            approval_workflow.validate_definitions(
                [
                    StepDefinition(step_number=1, sla_hours=8, approver_role="a"),
                    StepDefinition(step_number=3, sla_hours=8, approver_role="b"),
                ]
            )

    def test_rejects_step_without_approver(self):
        with pytest.raises(ValidationError, match="approver"):
            approval_workflow.validate_definitions([StepDefinition(step_number=1, sla_hours=8)])

    def test_rejects_non_positive_sla(self):
        with pytest.raises(ValidationError, match="positive SLA"):
            approval_workflow.validate_definitions([StepDefinition(step_number=1, sla_hours=0, approver_role="a")])


class TestStart:
    def test_only_first_step_starts_its_clock(self, steps):
        assert steps[0].pending_since == START
        assert steps[1].pending_since is None
        assert steps[2].pending_since is None
        assert approval_workflow.current_step(steps) is steps[0]


class TestDecide:
    def test_all_approved_completes_workflow(self, steps):
        """Scenario A: three approvals in order complete the workflow."""
        outcomes = [
            approval_workflow.decide(steps, 1, ApprovalStatus.APPROVED, HR_MANAGER, now=START + timedelta(hours=1)),
            approval_workflow.decide(steps, 2, ApprovalStatus.APPROVED, FINANCE, now=START + timedelta(hours=2)),
            approval_workflow.decide(steps, 3, ApprovalStatus.APPROVED, CEO, now=START + timedelta(hours=3)),
        ]

        assert [outcome.state for outcome in outcomes] == [
            WorkflowState.IN_PROGRESS,
            WorkflowState.IN_PROGRESS,
            WorkflowState.COMPLETED,
        ]
        assert all(step.status == ApprovalStatus.APPROVED for step in steps)
        assert steps[2].decided_by == "ceo-01"

    def test_approval_starts_next_step_clock(self, steps):
        decided_at = START + timedelta(hours=5)
        outcome = approval_workflow.decide(steps, 1, ApprovalStatus.APPROVED, HR_MANAGER, now=decided_at)

        assert outcome.next_step is steps[1]
        assert steps[1].pending_since == decided_at
        assert steps[0].decided_at == decided_at

    def test_rejection_freezes_later_steps(self, steps):
        """Scenario B: step 2 rejected, step 3 stays pending and cannot be decided."""
        approval_workflow.decide(steps, 1, ApprovalStatus.APPROVED, HR_MANAGER, now=START)
        outcome = approval_workflow.decide(steps, 2, ApprovalStatus.REJECTED, FINANCE, comments="budget", now=START)

        assert outcome.state == WorkflowState.REJECTED
        assert steps[2].status == ApprovalStatus.PENDING
        assert approval_workflow.current_step(steps) is None
        with pytest.raises(OutOfOrderDecision, match="frozen because step 2 was rejected"):
            approval_workflow.decide(steps, 3, ApprovalStatus.APPROVED, CEO, now=START)
        assert steps[2].status == ApprovalStatus.PENDING

    def test_cannot_skip_ahead(self, steps):
        with pytest.raises(OutOfOrderDecision, match="cannot be decided before step 1"):
            approval_workflow.decide(steps, 2, ApprovalStatus.APPROVED, FINANCE, now=START)
        assert steps[1].status == ApprovalStatus.PENDING

    def test_identical_decision_is_replayed(self, steps):
        first = approval_workflow.decide(steps, 1, ApprovalStatus.APPROVED, HR_MANAGER, now=START)
        again = approval_workflow.decide(
            steps, 1, ApprovalStatus.APPROVED, HR_MANAGER, now=START + timedelta(hours=9)
        )

        assert not first.replayed
        assert again.replayed
        assert again.step.decided_at == START

    def test_conflicting_decision_is_refused(self, steps):
        approval_workflow.decide(steps, 1, ApprovalStatus.APPROVED, HR_MANAGER, now=START)
        with pytest.raises(OutOfOrderDecision, match="already approved"):
            approval_workflow.decide(steps, 1, ApprovalStatus.REJECTED, HR_MANAGER, now=START)

    def test_wrong_role_is_refused(self, steps):
        with pytest.raises(ApproverMismatch, match="hr_manager"):
            approval_workflow.decide(steps, 1, ApprovalStatus.APPROVED, FINANCE, now=START)
        assert steps[0].status == ApprovalStatus.PENDING

    def test_approver_id_must_match_exactly(self, steps):
        approval_workflow.decide(steps, 1, ApprovalStatus.APPROVED, HR_MANAGER, now=START)
        approval_workflow.decide(steps, 2, ApprovalStatus.APPROVED, FINANCE, now=START)
        impostor = Actor(id="ceo-02", roles=frozenset({"executive"}))

        with pytest.raises(ApproverMismatch, match="ceo-01"):
            approval_workflow.decide(steps, 3, ApprovalStatus.APPROVED, impostor, now=START)

    def test_override_role_may_decide_any_step(self, steps):
        outcome = approval_workflow.decide(
            steps, 1, ApprovalStatus.APPROVED, ADMIN, override_roles=["admin"], now=START
        )
        assert outcome.step.decided_by == "admin-01"

    def test_unknown_step(self, steps):
        with pytest.raises(ValidationError, match="does not exist"):
            approval_workflow.decide(steps, 9, ApprovalStatus.APPROVED, HR_MANAGER, now=START)

    def test_pending_is_not_a_decision(self, steps):
        with pytest.raises(ValidationError):
            approval_workflow.decide(steps, 1, ApprovalStatus.PENDING, HR_MANAGER, now=START)


class TestEscalations:
    def test_no_escalation_at_exact_deadline(self, steps):
        assert approval_workflow.check_escalations(steps, now=START + timedelta(hours=24)) == []
        assert not steps[0].escalated

    def test_escalates_once_after_deadline(self, steps):
        moment = START + timedelta(hours=24, minutes=1)
        events = approval_workflow.check_escalations(steps, now=moment)

        assert len(events) == 1
        assert events[0].step_number == 1
        assert events[0].to_payload()["overdue_seconds"] == 60
        assert steps[0].escalated_at == moment
        assert approval_workflow.check_escalations(steps, now=moment + timedelta(hours=5)) == []

    def test_next_step_measured_from_its_own_start(self, steps):
        approved_at = START + timedelta(hours=20)
        approval_workflow.decide(steps, 1, ApprovalStatus.APPROVED, HR_MANAGER, now=approved_at)

        assert approval_workflow.check_escalations(steps, now=approved_at + timedelta(hours=47)) == []
        events = approval_workflow.check_escalations(steps, now=approved_at + timedelta(hours=49))
        assert [event.step_number for event in events] == [2]

    def test_rejected_workflow_never_escalates(self, steps):
        approval_workflow.decide(steps, 1, ApprovalStatus.REJECTED, HR_MANAGER, now=START)
        assert approval_workflow.check_escalations(steps, now=START + timedelta(days=30)) == []
