from __future__ import annotations

import uuid
from datetime import date, datetime
from enum import Enum
from typing import Annotated, Any

from sqlalchemy import Date, Enum as SAEnum, ForeignKey, Integer, JSON, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base
from app.models.mixins import TimestampMixin, UTCDateTime

Identifier = Annotated[str, mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))]


class LetterType(str, Enum):
    OFFER = "OFFER"
    APPOINTMENT = "APPOINTMENT"
    PROMOTION = "PROMOTION"
    DEMOTION = "DEMOTION"
    TRANSFER = "TRANSFER"
    ROLE_CHANGE = "ROLE_CHANGE"
    TERMINATION = "TERMINATION"
    INTERNSHIP = "INTERNSHIP"


LETTER_TYPE_CODES: dict[LetterType, str] = {
    LetterType.OFFER: "OFR",
    LetterType.APPOINTMENT: "APT",
    LetterType.PROMOTION: "PRM",
    LetterType.DEMOTION: "DEM",
    LetterType.TRANSFER: "TRF",
    LetterType.ROLE_CHANGE: "RCH",
    LetterType.TERMINATION: "TRM",
    LetterType.INTERNSHIP: "INT",
}


class LetterLanguage(str, Enum):
    EN_IN = "en-IN"
    HI_IN = "hi-IN"


class LetterStatus(str, Enum):
    DRAFT = "DRAFT"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    APPROVED = "APPROVED"
    SIGNED = "SIGNED"
    ISSUED = "ISSUED"
    VOID = "VOID"


TERMINAL_STATUSES = frozenset({LetterStatus.ISSUED, LetterStatus.VOID})


class Letter(TimestampMixin, Base):
    __tablename__ = "letters"

    id: Mapped[Identifier]
    serial_no: Mapped[str] = mapped_column(String(80), unique=True, index=True, nullable=False)
    letter_type: Mapped[LetterType] = mapped_column(SAEnum(LetterType), nullable=False, index=True)
    language: Mapped[LetterLanguage] = mapped_column(
        SAEnum(LetterLanguage, values_callable=lambda enum: [item.value for item in enum]),
        default=LetterLanguage.EN_IN,
        nullable=False,
    )
    status: Mapped[LetterStatus] = mapped_column(
        SAEnum(LetterStatus), default=LetterStatus.DRAFT, nullable=False, index=True
    )
    template_id: Mapped[str] = mapped_column(String(120), nullable=False)
    template_version: Mapped[str] = mapped_column(String(40), nullable=False)
    data_binding: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    issue_date: Mapped[date] = mapped_column(Date, nullable=False)
    effective_date: Mapped[date] = mapped_column(Date, nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    new_designation: Mapped[str | None] = mapped_column(String(255), nullable=True)
    new_department: Mapped[str | None] = mapped_column(String(255), nullable=True)
    new_location: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    annexures: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    files: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    delivery: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    void_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    workflow_round: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    created_by: Mapped[str] = mapped_column(String(120), nullable=False)

    signatories: Mapped[list["Signatory"]] = relationship(
        back_populates="letter",
        cascade="all,delete-orphan",
        order_by="Signatory.position",
        lazy="selectin",
    )
    approval_steps: Mapped[list["ApprovalStep"]] = relationship(
        back_populates="letter",
        cascade="all,delete-orphan",
        order_by="[ApprovalStep.round_number, ApprovalStep.step_number]",
        lazy="selectin",
    )
    audit_entries: Mapped[list["AuditLog"]] = relationship(
        back_populates="letter",
        cascade="save-update,merge",
        order_by="AuditLog.sequence",
        lazy="selectin",
    )

    @property
    def current_steps(self) -> list["ApprovalStep"]:
        """Steps of the active workflow round, in evaluation order."""
        return sorted(
            (step for step in self.approval_steps if step.round_number == self.workflow_round),
            key=lambda step: step.step_number,
        )


class Signatory(Base):
    __tablename__ = "letter_signatories"
    __table_args__ = (UniqueConstraint("letter_id", "position", name="uq_signatory_position"),)

    id: Mapped[Identifier]
    letter_id: Mapped[str] = mapped_column(ForeignKey("letters.id", ondelete="CASCADE"), nullable=False, index=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    provider: Mapped[str] = mapped_column(String(40), nullable=False)
    signed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    signature_artifact_ref: Mapped[str | None] = mapped_column(Text, nullable=True)
    signing_request_id: Mapped[str | None] = mapped_column(
        ForeignKey("signing_requests.id", ondelete="SET NULL"), nullable=True
    )

    letter: Mapped["Letter"] = relationship(back_populates="signatories")
    signing_request: Mapped["SigningRequest | None"] = relationship(lazy="selectin")


class SerialCounter(Base):
    """Last serial issued per prefix. Only ever incremented."""

    __tablename__ = "serial_counters"

    prefix: Mapped[str] = mapped_column(String(80), primary_key=True)
    last_value: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
