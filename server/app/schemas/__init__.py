from app.schemas.approval import ApprovalStepCreate, ApprovalStepRead, DecisionRequest, DecisionResponse
from app.schemas.audit import AuditEntryRead
from app.schemas.common import ErrorResponse, SweepResult
from app.schemas.letter import (
    FinalizeRequest,
    LetterCollection,
    LetterCreate,
    LetterRead,
    LetterStats,
    LetterSummary,
    LetterUpdate,
    SignatoryCreate,
    SignatoryRead,
    VoidRequest,
)
from app.schemas.signing import (
    CallbackVerifyRequest,
    CallbackVerifyResponse,
    SignatureRequestCreate,
    SigningInitiateResponse,
    SigningRequestRead,
    WebhookAck,
)

__all__ = [
    "ApprovalStepCreate",
    "ApprovalStepRead",
    "AuditEntryRead",
    "CallbackVerifyRequest",
    "CallbackVerifyResponse",
    "DecisionRequest",
    "DecisionResponse",
    "ErrorResponse",
    "FinalizeRequest",
    "LetterCollection",
    "LetterCreate",
    "LetterRead",
    "LetterStats",
    "LetterSummary",
    "LetterUpdate",
    "SignatoryCreate",
    "SignatoryRead",
    "SignatureRequestCreate",
    "SigningInitiateResponse",
    "SigningRequestRead",
    "SweepResult",
    "VoidRequest",
    "WebhookAck",
]
