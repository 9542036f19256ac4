from app.models.approval import ApprovalStatus, ApprovalStep
from app.models.audit import AuditCategory, AuditLog, AuditTrailViolation
from app.models.event import EventChannel, EventOutbox, EventStatus
from app.models.letter import (
    LETTER_TYPE_CODES,
    TERMINAL_STATUSES,
    Letter,
    LetterLanguage,
    LetterStatus,
    LetterType,
    SerialCounter,
    Signatory,
)
from app.models.signing import SigningRequest, SigningRequestStatus

__all__ = [
    "ApprovalStatus",
    "ApprovalStep",
    "AuditCategory",
    "AuditLog",
    "AuditTrailViolation",
    "EventChannel",
    "EventOutbox",
    "EventStatus",
    "LETTER_TYPE_CODES",
    "TERMINAL_STATUSES",
    "Letter",
    "LetterLanguage",
    "LetterStatus",
    "LetterType",
    "SerialCounter",
    "Signatory",
    "SigningRequest",
    "SigningRequestStatus",
]
