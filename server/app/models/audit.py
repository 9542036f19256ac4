from __future__ import annotations

import uuid
from enum import Enum
from typing import Annotated

from sqlalchemy import Boolean, Enum as SAEnum, ForeignKey, Integer, JSON, String, UniqueConstraint, event
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base
from app.models.mixins import TimestampMixin

Identifier = Annotated[str, mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))]


class AuditCategory(str, Enum):
    LIFECYCLE = "lifecycle"
    APPROVAL = "approval"
    SIGNATURE = "signature"
    DELIVERY = "delivery"
    SYSTEM = "system"


class AuditLog(TimestampMixin, Base):
    """One entry of a letter's audit trail. Rows are written once and never changed."""

    __tablename__ = "audit_logs"
    __table_args__ = (UniqueConstraint("letter_id", "sequence", name="uq_audit_letter_sequence"),)

    id: Mapped[Identifier]
    letter_id: Mapped[str] = mapped_column(ForeignKey("letters.id", ondelete="RESTRICT"), nullable=False, index=True)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    actor: Mapped[str] = mapped_column(String(120), nullable=False, default="system")
    action: Mapped[str] = mapped_column(String(120), nullable=False)
    category: Mapped[AuditCategory] = mapped_column(SAEnum(AuditCategory), nullable=False)
    details: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    origin: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    critical: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    letter: Mapped["Letter"] = relationship(back_populates="audit_entries")


class AuditTrailViolation(RuntimeError):
    pass


@event.listens_for(AuditLog, "before_update")
def _reject_audit_update(mapper, connection, target) -> None:  # noqa: ARG001
    raise AuditTrailViolation(f"audit entry {target.id} is append-only and cannot be updated")


@event.listens_for(AuditLog, "before_delete")
def _reject_audit_delete(mapper, connection, target) -> None:  # noqa: ARG001
    raise AuditTrailViolation(f"audit entry {target.id} is append-only and cannot be deleted")
