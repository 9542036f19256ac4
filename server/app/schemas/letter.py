from datetime import date, datetime
from typing import Any, Literal

from pydantic import EmailStr, Field, field_validator

from app.models.letter import LetterLanguage, LetterStatus, LetterType
from app.schemas.approval import ApprovalStepCreate, ApprovalStepRead
from app.schemas.common import ORMModel, Timestamped


class SignatoryCreate(ORMModel):
    name: str = Field(min_length=1, max_length=255)
    title: str = Field(min_length=1, max_length=255)
    email: EmailStr | None = None
    provider: str = Field(min_length=1, max_length=40)

    @field_validator("provider")
    @classmethod
    def normalize_provider(cls, value: str) -> str:
        return value.strip().lower()


class SignatoryRead(ORMModel):
    position: int
    name: str
    title: str
    email: str | None = None
    provider: str
    signed_at: datetime | None = None
    signature_artifact_ref: str | None = None
    signing_request_id: str | None = None


class Annexure(ORMModel):
    title: str = Field(min_length=1, max_length=255)
    type: Literal["HTML", "PDF", "DOCX"]
    content: str | None = None
    url: str | None = None


class LetterFiles(ORMModel):
    pdf_url: str | None = None
    html_url: str | None = None
    docx_url: str | None = None


class DeliveryRecord(ORMModel):
    emailed_to: list[str] = Field(default_factory=list)
    whatsapp_to: list[str] = Field(default_factory=list)
    cc: list[str] = Field(default_factory=list)
    bcc: list[str] = Field(default_factory=list)
    delivered_at: datetime | None = None


class LetterBase(ORMModel):
    letter_type: LetterType
    language: LetterLanguage = LetterLanguage.EN_IN
    template_id: str = Field(min_length=1, max_length=120)
    template_version: str = Field(min_length=1, max_length=40)
    data_binding: dict[str, Any] = Field(default_factory=dict)
    issue_date: date = Field(default_factory=date.today)
    effective_date: date
    reason: str | None = None
    new_designation: str | None = Field(default=None, max_length=255)
    new_department: str | None = Field(default=None, max_length=255)
    new_location: dict[str, Any] | None = None
    annexures: list[Annexure] = Field(default_factory=list)
    delivery: DeliveryRecord = Field(default_factory=DeliveryRecord)


class LetterCreate(LetterBase):
    signatories: list[SignatoryCreate] = Field(default_factory=list)
    approval_steps: list[ApprovalStepCreate] = Field(default_factory=list)


class LetterUpdate(ORMModel):
    language: LetterLanguage | None = None
    template_id: str | None = Field(default=None, min_length=1, max_length=120)
    template_version: str | None = Field(default=None, min_length=1, max_length=40)
    data_binding: dict[str, Any] | None = None
    issue_date: date | None = None
    effective_date: date | None = None
    reason: str | None = None
    new_designation: str | None = Field(default=None, max_length=255)
    new_department: str | None = Field(default=None, max_length=255)
    new_location: dict[str, Any] | None = None
    annexures: list[Annexure] | None = None
    delivery: DeliveryRecord | None = None
    signatories: list[SignatoryCreate] | None = None
    approval_steps: list[ApprovalStepCreate] | None = None


class LetterSummary(ORMModel):
    id: str
    serial_no: str
    letter_type: LetterType
    language: LetterLanguage
    status: LetterStatus
    issue_date: date
    effective_date: date
    created_by: str
    updated_at: datetime


class LetterRead(LetterSummary, Timestamped):
    template_id: str
    template_version: str
    data_binding: dict[str, Any]
    reason: str | None = None
    new_designation: str | None = None
    new_department: str | None = None
    new_location: dict[str, Any] | None = None
    annexures: list[dict[str, Any]]
    files: dict[str, Any]
    delivery: dict[str, Any]
    void_reason: str | None = None
    workflow_round: int
    signatories: list[SignatoryRead]
    approval_steps: list[ApprovalStepRead] = Field(validation_alias="current_steps")


class LetterCollection(ORMModel):
    items: list[LetterSummary]
    total: int
    page: int
    page_size: int


class VoidRequest(ORMModel):
    reason: str = Field(min_length=1, max_length=2000)

    @field_validator("reason")
    @classmethod
    def reason_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("reason must not be blank")
        return value.strip()


class FinalizeRequest(ORMModel):
    files: LetterFiles | None = None


class LetterStats(ORMModel):
    total: int
    by_status: dict[str, int]
    by_type: dict[str, int]
