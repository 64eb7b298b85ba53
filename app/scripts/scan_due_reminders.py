"""One full engine cycle for cron-style supervisors (no Celery beat):
stale-claim sweep, dispatch of due reminders, delivery reconciliation.

Run every minute:
    python -m app.scripts.scan_due_reminders
"""

from __future__ import annotations

import asyncio
import logging

from app.services import delivery, dispatcher
from app.utils.sms import build_provider
from config import configure_logging
import db

_LOGGER = logging.getLogger("app.scripts.scan_due_reminders")


async def main() -> None:
    provider = build_provider()
    try:
        released = await dispatcher.sweep_stale_claims()
        outcomes = await dispatcher.run_dispatch_cycle(provider)
        changed = await delivery.reconcile_sent(provider)
    finally:
        await db.dispose_engine()
    _LOGGER.info(
        "[CRON] released=%d dispatched=%d reconciled=%d",
        len(released), len(outcomes), len(changed),
    )


if __name__ == "__main__":  # pragma: no cover
    configure_logging()
    _LOGGER.info("[CRON] scan_due_reminders: job started")
    try:
        asyncio.run(main())
        _LOGGER.info("[CRON] scan_due_reminders: job completed successfully")
    except Exception:
        _LOGGER.exception("[CRON] scan_due_reminders: job failed")
        raise SystemExit(1)
