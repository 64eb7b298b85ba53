"""Celery tasks driving the reminder engine.

Tasks are synchronous so they run under Celery's default prefork pool; the
async service code is executed with ``asyncio.run`` and the engine is
disposed before the loop closes so pooled connections never outlive it.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Dict, TypeVar

from celery.utils.log import get_task_logger

from app.celery_app import celery_app
from app.errors import ValidationError
from app.services import delivery, dispatcher, scheduler
from app.types.reminder_contract import CourtEventIn
from app.utils.sms import build_provider
import db

logger = get_task_logger(__name__)

T = TypeVar("T")


def _run(coro: Awaitable[T]) -> T:
    async def _scoped() -> T:
        try:
            return await coro
        finally:
            await db.dispose_engine()

    return asyncio.run(_scoped())


# ---------------------------------------------------------------------------
# Celery Tasks
# ---------------------------------------------------------------------------

@celery_app.task(name="app.workers.reminder.dispatch_due", bind=True)
def dispatch_due(self) -> Dict[str, Any]:  # noqa: D401
    """Claim due reminders and send them."""
    provider = build_provider()
    outcomes = _run(dispatcher.run_dispatch_cycle(provider))
    counts: Dict[str, int] = {}
    for outcome in outcomes:
        counts[outcome.status] = counts.get(outcome.status, 0) + 1
    if outcomes:
        logger.info("dispatch_due: %s", counts)
    return counts


@celery_app.task(name="app.workers.reminder.refresh_sent", bind=True)
def refresh_sent(self) -> Dict[str, str]:  # noqa: D401
    """Poll the provider for reminders still in `sent`."""
    changed = _run(delivery.reconcile_sent(build_provider()))
    if changed:
        logger.info("refresh_sent: %d reminder(s) reached a final status", len(changed))
    return changed


@celery_app.task(name="app.workers.reminder.sweep_stale_claims", bind=True)
def sweep_stale_claims(self) -> list[str]:  # noqa: D401
    """Release claims held by workers that died mid-send."""
    released = _run(dispatcher.sweep_stale_claims())
    if released:
        logger.warning("sweep_stale_claims: released %d claim(s)", len(released))
    return released


@celery_app.task(name="app.workers.reminder.handle_event_change", bind=True, max_retries=3)
def handle_event_change(self, event: Dict[str, Any]) -> Dict[str, Any]:  # noqa: D401
    """Reconcile reminders for a created / updated / cancelled court event."""
    parsed = CourtEventIn.model_validate(event)
    try:
        result = _run(scheduler.apply_event_change(parsed))
    except ValidationError as exc:
        # bad event data will not get better on retry
        logger.error("Event %s rejected: %s", parsed.id, exc)
        return {"event_id": parsed.id, "error": str(exc)}
    except Exception as exc:  # noqa: BLE001
        raise self.retry(exc=exc, countdown=30)
    return result.model_dump()
