#!/usr/bin/env python3
"""
CLI for the periodic letter jobs: SLA escalation, signing expiry and outbox dispatch
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

import click

from app.api.dependencies.redis import get_redis_client
from app.core.config import get_settings
from app.core.logging import configure_logging
from app.db.session import async_session_factory, engine, init_models
from app.integrations.delivery import DeliveryClient
from app.services import jobs
from app.services.locks import KeyedLockRegistry

Sweep = Callable[[Any, KeyedLockRegistry], Awaitable[list[dict[str, Any]]]]


def _parse_now(value: str | None) -> datetime | None:
    if value is None:
        return None
    moment = datetime.fromisoformat(value)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


async def _run(sweep: Sweep) -> list[dict[str, Any]]:
    settings = get_settings()
    await init_models()
    try:
        async with get_redis_client(settings) as redis_client:
            locks = KeyedLockRegistry(redis_client, timeout_seconds=settings.lock_timeout_seconds)
            async with async_session_factory() as session:
                return await sweep(session, locks)
    finally:
        await engine.dispose()


def _report(job: str, items: list[dict[str, Any]]) -> None:
    click.echo(f"{job}: processed {len(items)}")
    for item in items:
        click.echo("  " + ", ".join(f"{key}={value}" for key, value in item.items()))


@click.group()
def cli():
    """Letter engine maintenance jobs"""
    configure_logging()


@cli.command()
@click.option("--now", "now_value", help="Evaluate deadlines as of this ISO timestamp (UTC if naive)")
def escalations(now_value: str | None):
    """Escalate approval steps whose SLA has elapsed"""
    now = _parse_now(now_value)
    items = asyncio.run(_run(lambda session, locks: jobs.run_escalation_sweep(session, locks, now=now)))
    _report("escalations", items)


@cli.command()
@click.option("--now", "now_value", help="Evaluate expiry as of this ISO timestamp (UTC if naive)")
def expire(now_value: str | None):
    """Mark pending signing requests past their expiry as failed"""
    now = _parse_now(now_value)
    items = asyncio.run(_run(lambda session, locks: jobs.run_expiry_sweep(session, locks, now=now)))
    _report("signing-expiry", items)


@cli.command()
@click.option("--limit", default=100, show_default=True, help="Maximum events to dispatch")
def dispatch(limit: int):
    """Dispatch due outbox events"""
    settings = get_settings()
    client = (
        DeliveryClient(settings.delivery_url, timeout_seconds=settings.collaborator_timeout_seconds)
        if settings.delivery_url
        else None
    )
    items = asyncio.run(
        _run(lambda session, locks: jobs.run_outbox_dispatch(session, locks, delivery_client=client, limit=limit))
    )
    _report("outbox", items)


if __name__ == "__main__":
    cli()
