from __future__ import annotations

from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.audit import AuditCategory, AuditLog
from app.models.letter import Letter


def append_audit(
    letter: Letter,
    *,
    action: str,
    actor: str,
    category: AuditCategory,
    details: dict[str, Any] | None = None,
    origin: dict[str, Any] | None = None,
    critical: bool = False,
) -> AuditLog:
    """Append the next entry to a letter's audit trail. Sequence numbers start at 1."""
    entry = AuditLog(
        letter_id=letter.id,
        sequence=len(letter.audit_entries) + 1,
        actor=actor,
        action=action,
        category=category,
        details=dict(details or {}),
        origin={key: value for key, value in (origin or {}).items() if value is not None},
        critical=critical,
    )
    letter.audit_entries.append(entry)
    return entry


async def list_audit_entries(session: AsyncSession, letter_id: str) -> list[AuditLog]:
    result = await session.execute(
        select(AuditLog).where(AuditLog.letter_id == letter_id).order_by(AuditLog.sequence)
    )
    return list(result.scalars().all())
