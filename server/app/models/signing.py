from __future__ import annotations

import secrets
from datetime import datetime
from enum import Enum

from sqlalchemy import CheckConstraint, Enum as SAEnum, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base
from app.models.mixins import TimestampMixin, UTCDateTime


def generate_request_id() -> str:
    return secrets.token_urlsafe(32)


class SigningRequestStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class SigningRequest(TimestampMixin, Base):
    __tablename__ = "signing_requests"
    __table_args__ = (CheckConstraint("expires_at > issued_at", name="ck_signing_request_expiry"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=generate_request_id)
    letter_id: Mapped[str] = mapped_column(ForeignKey("letters.id", ondelete="CASCADE"), nullable=False, index=True)
    signatory_index: Mapped[int] = mapped_column(Integer, nullable=False)
    provider: Mapped[str] = mapped_column(String(40), nullable=False)
    provider_reference: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    status: Mapped[SigningRequestStatus] = mapped_column(
        SAEnum(SigningRequestStatus), default=SigningRequestStatus.PENDING, nullable=False, index=True
    )
    issued_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    token: Mapped[str] = mapped_column(String(64), nullable=False)
    signing_url: Mapped[str] = mapped_column(Text, nullable=False)
    signed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    signature_artifact_ref: Mapped[str | None] = mapped_column(Text, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(String(120), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
