from __future__ import annotations

from datetime import datetime, timedelta
from typing import Awaitable, Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import get_logger
from app.models.event import EventChannel, EventOutbox, EventStatus
from app.models.mixins import utcnow

logger = get_logger(__name__)

EventHandler = Callable[[EventOutbox], Awaitable[None]]
MAX_ATTEMPTS = 5


async def enqueue_event(
    session: AsyncSession,
    *,
    letter_id: str | None,
    event_type: str,
    payload: dict,
    channel: EventChannel = EventChannel.NOTIFICATION,
    schedule_in_seconds: int = 0,
) -> EventOutbox:
    event = EventOutbox(
        letter_id=letter_id,
        event_type=event_type,
        payload=payload,
        channel=channel,
        status=EventStatus.PENDING,
        attempts=0,
        next_run_at=utcnow() + timedelta(seconds=schedule_in_seconds),
    )
    session.add(event)
    await session.flush()
    logger.info("event.outbox.enqueued", event_type=event_type, channel=channel.value, letter_id=letter_id)
    return event


async def due_events(session: AsyncSession, *, now: datetime | None = None, limit: int = 100) -> list[EventOutbox]:
    moment = now or utcnow()
    result = await session.execute(
        select(EventOutbox)
        .where(
            EventOutbox.status.in_((EventStatus.PENDING, EventStatus.FAILED)),
            EventOutbox.attempts < MAX_ATTEMPTS,
            EventOutbox.next_run_at <= moment,
        )
        .order_by(EventOutbox.next_run_at)
        .limit(limit)
    )
    return list(result.scalars().all())


async def dispatch_event(event: EventOutbox, handler: EventHandler | None, *, now: datetime | None = None) -> bool:
    """
    Hand one event to its channel handler.

    Events on a channel without a handler are acknowledged without delivery
    and marked dispatched. A failing handler leaves the event FAILED with the
    error recorded and a backoff on ``next_run_at``. Failed events are retried
    until ``MAX_ATTEMPTS`` is reached.
    """
    moment = now or utcnow()
    event.attempts += 1
    if handler is None:
        event.status = EventStatus.DISPATCHED
        event.last_error = None
        logger.info(
            "event.outbox.acknowledged_without_delivery",
            event_id=event.id,
            event_type=event.event_type,
            channel=event.channel.value,
        )
        return True
    try:
        await handler(event)
    except Exception as exc:
        event.status = EventStatus.FAILED
        event.last_error = str(exc)
        event.next_run_at = moment + timedelta(seconds=30 * event.attempts)
        logger.warning("event.outbox.failed", event_id=event.id, event_type=event.event_type, error=str(exc))
        return False
    event.status = EventStatus.DISPATCHED
    event.last_error = None
    logger.info("event.outbox.dispatched", event_type=event.event_type, channel=event.channel.value)
    return True


async def list_events(session: AsyncSession, letter_id: str) -> list[EventOutbox]:
    result = await session.execute(
        select(EventOutbox).where(EventOutbox.letter_id == letter_id).order_by(EventOutbox.created_at)
    )
    return list(result.scalars().all())
