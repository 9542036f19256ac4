from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.auth import get_current_actor
from app.api.dependencies.database import get_db
from app.api.dependencies.services import get_delivery_client, get_lock_registry
from app.core.security import Actor
from app.integrations.delivery import DeliveryClient
from app.schemas.common import SweepResult
from app.services import jobs
from app.services.locks import KeyedLockRegistry

router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.post("/escalations", response_model=SweepResult)
async def escalation_sweep_endpoint(
    session: AsyncSession = Depends(get_db),
    locks: KeyedLockRegistry = Depends(get_lock_registry),
    actor: Actor = Depends(get_current_actor),  # noqa: ARG001 - scheduler identity
) -> SweepResult:
    items = await jobs.run_escalation_sweep(session, locks)
    return SweepResult(job="escalations", processed=len(items), items=items)


@router.post("/signing-expiry", response_model=SweepResult)
async def signing_expiry_sweep_endpoint(
    session: AsyncSession = Depends(get_db),
    locks: KeyedLockRegistry = Depends(get_lock_registry),
    actor: Actor = Depends(get_current_actor),  # noqa: ARG001
) -> SweepResult:
    items = await jobs.run_expiry_sweep(session, locks)
    return SweepResult(job="signing-expiry", processed=len(items), items=items)


@router.post("/outbox/dispatch", response_model=SweepResult)
async def outbox_dispatch_endpoint(
    session: AsyncSession = Depends(get_db),
    locks: KeyedLockRegistry = Depends(get_lock_registry),
    delivery: DeliveryClient | None = Depends(get_delivery_client),
    actor: Actor = Depends(get_current_actor),  # noqa: ARG001
) -> SweepResult:
    items = await jobs.run_outbox_dispatch(session, locks, delivery_client=delivery)
    return SweepResult(job="outbox", processed=len(items), items=items)
