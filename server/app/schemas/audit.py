from datetime import datetime
from typing import Any

from app.models.audit import AuditCategory
from app.schemas.common import ORMModel


class AuditEntryRead(ORMModel):
    sequence: int
    action: str
    actor: str
    category: AuditCategory
    details: dict[str, Any]
    origin: dict[str, Any]
    critical: bool
    created_at: datetime
