"""
Error taxonomy for the letter lifecycle, approval and e-signature engine.

Every error carries a stable ``code`` (recorded in audit entries) and the
HTTP status the API answers with. Messages name the violated rule so a caller
can act on them without reading logs.
"""

from typing import Any, Dict, Optional


class LetterEngineError(Exception):
    """Base class for all engine errors."""

    code = "engine_error"
    status_code = 400

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.context:
            payload["context"] = self.context
        return payload


class ValidationError(LetterEngineError):
    """Malformed input at any boundary."""

    code = "validation_error"
    status_code = 422


class NotFound(LetterEngineError):
    code = "not_found"
    status_code = 404


class InvalidTransition(LetterEngineError):
    """A lifecycle guard was violated."""

    code = "invalid_transition"
    status_code = 409

    def __init__(self, message: str, *, guard: str, **context: Any):
        super().__init__(message, guard=guard, **context)
        self.guard = guard


class OutOfOrderDecision(LetterEngineError):
    """An approval decision broke the sequential order of the workflow."""

    code = "out_of_order_decision"
    status_code = 409


class ApproverMismatch(LetterEngineError):
    """The actor is not the approver the step asks for."""

    code = "approver_mismatch"
    status_code = 403


class UnknownProvider(LetterEngineError):
    code = "unknown_provider"
    status_code = 404

    def __init__(self, provider: str, message: Optional[str] = None):
        super().__init__(message or f"e-signature provider '{provider}' is not registered", provider=provider)
        self.provider = provider


class ProviderUnavailable(LetterEngineError):
    """An upstream provider or collaborator failed, timed out or answered unusably."""

    code = "provider_unavailable"
    status_code = 503

    def __init__(self, message: str, *, provider: str, error_code: Optional[str] = None, **context: Any):
        super().__init__(message, provider=provider, error_code=error_code, **context)
        self.provider = provider
        self.error_code = error_code


class SignatureInvalid(LetterEngineError):
    """A callback or webhook failed its authenticity check."""

    code = "signature_invalid"
    status_code = 401
