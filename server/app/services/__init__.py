from app.services import (
    approval_workflow,
    audit_service,
    letter_service,
    locks,
    outbox_service,
    signing_service,
    state_machine,
)
from app.services import jobs

__all__ = [
    "approval_workflow",
    "audit_service",
    "jobs",
    "letter_service",
    "locks",
    "outbox_service",
    "signing_service",
    "state_machine",
]
