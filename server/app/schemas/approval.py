from datetime import datetime

from pydantic import Field, field_validator, model_validator

from app.models.approval import ApprovalStatus
from app.models.letter import LetterStatus
from app.schemas.common import ORMModel


class ApprovalStepCreate(ORMModel):
    step_number: int = Field(ge=1)
    approver_role: str | None = Field(default=None, max_length=80)
    approver_id: str | None = Field(default=None, max_length=120)
    sla_hours: int | None = Field(default=None, ge=1, le=24 * 90)

    @model_validator(mode="after")
    def require_approver(self) -> "ApprovalStepCreate":
        if not self.approver_role and not self.approver_id:
            raise ValueError("approval step needs approver_role or approver_id")
        return self


class ApprovalStepRead(ORMModel):
    id: str
    round_number: int
    step_number: int
    approver_role: str | None = None
    approver_id: str | None = None
    status: ApprovalStatus
    sla_hours: int
    pending_since: datetime | None = None
    decided_at: datetime | None = None
    decided_by: str | None = None
    comments: str | None = None
    escalated: bool
    escalated_at: datetime | None = None


class DecisionRequest(ORMModel):
    decision: ApprovalStatus
    comments: str | None = Field(default=None, max_length=2000)

    @field_validator("decision")
    @classmethod
    def decision_is_final(cls, value: ApprovalStatus) -> ApprovalStatus:
        if value == ApprovalStatus.PENDING:
            raise ValueError("decision must be APPROVED or REJECTED")
        return value


class DecisionResponse(ORMModel):
    step: ApprovalStepRead
    replayed: bool
    workflow_state: str
    letter_status: LetterStatus
