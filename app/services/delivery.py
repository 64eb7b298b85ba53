"""
Delivery reconciler.

Brings `sent` reminders to a terminal state from the provider's delivery
reports, either by polling (`reconcile_sent`) or from the status webhook
(`apply_status_callback`).
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone

from tenacity import (
    retry,
    stop_after_attempt,
    wait_random_exponential,
    retry_if_exception_type,
)

from app.errors import InstanceNotFound, ProviderError, TransientProviderError
from app.types.reminder_contract import (
    DELIVERED, FAILED, SENT, UNDELIVERED, ProviderStatus,
)
from app.utils.sms import MessagingProvider
from config import settings
import db

_LOGGER = logging.getLogger(__name__)

# Provider vocabulary (Telnyx, plus the generic carrier terms) → our terminal
# states. Anything not listed is still in flight.
PROVIDER_STATUS_MAP: dict[str, str] = {
    "delivered": DELIVERED,
    "delivery_failed": UNDELIVERED,
    "delivery_unconfirmed": UNDELIVERED,
    "undelivered": UNDELIVERED,
    "sending_failed": FAILED,
    "failed": FAILED,
}


def map_provider_status(provider_status: str | None) -> str | None:
    if not provider_status:
        return None
    return PROVIDER_STATUS_MAP.get(provider_status.strip().lower())


@retry(
    wait=wait_random_exponential(multiplier=0.2, max=2),
    stop=stop_after_attempt(3),
    retry=retry_if_exception_type(TransientProviderError),
    reraise=True,
)
async def _lookup_status(provider: MessagingProvider, provider_message_id: str,
                         timeout: float) -> ProviderStatus:
    try:
        return await asyncio.wait_for(
            asyncio.to_thread(provider.fetch_status, provider_message_id), timeout
        )
    except asyncio.TimeoutError as exc:
        raise TransientProviderError(f"status lookup timed out after {timeout:g}s") from exc


async def _apply(instance_id: str, reported: ProviderStatus, at: datetime) -> str | None:
    """Move a `sent` instance to the mapped terminal state; None if the
    report is not terminal or another writer got there first."""
    target = map_provider_status(reported.status)
    if target is None:
        return None
    error = None
    if target != DELIVERED:
        error = reported.error_message or f"provider status {reported.status}"
        if reported.error_code:
            error = f"{error} (code {reported.error_code})"
    values = {"last_error": error} if error else None
    won = await db.transition_instance(
        instance_id, (SENT,), target, at=at, values=values, error=error, raw=reported.raw,
    )
    return target if won else None


async def refresh(instance_id: str, provider: MessagingProvider, *,
                  now: datetime | None = None, timeout: float | None = None) -> str:
    """Refresh one reminder from the provider and return its status."""
    instance = await db.get_instance(instance_id)
    if instance is None:
        raise InstanceNotFound(instance_id)
    if instance.status != SENT or not instance.provider_message_id:
        return instance.status

    at = now or datetime.now(tz=timezone.utc)
    timeout = timeout if timeout is not None else settings.PROVIDER_TIMEOUT_SECONDS
    try:
        reported = await _lookup_status(provider, instance.provider_message_id, timeout)
    except ProviderError as exc:
        _LOGGER.warning("Status lookup for reminder %s failed: %s", instance_id, exc)
        await db.record_instance_error(instance_id, f"status lookup failed: {exc}", at)
        return SENT

    changed = await _apply(instance_id, reported, at)
    if changed:
        _LOGGER.info("Reminder %s is now %s (provider: %s)", instance_id, changed, reported.status)
        return changed
    current = await db.get_instance(instance_id)
    return current.status if current else SENT


async def reconcile_sent(
    provider: MessagingProvider,
    *,
    now: datetime | None = None,
    grace_seconds: float | None = None,
    limit: int | None = None,
) -> dict[str, str]:
    """Refresh every `sent` reminder older than the grace period.

    Returns ``{instance_id: status}`` for the reminders whose status changed.
    """
    now = now or datetime.now(tz=timezone.utc)
    grace = grace_seconds if grace_seconds is not None else settings.RECONCILE_GRACE_SECONDS
    limit = limit if limit is not None else settings.RECONCILE_BATCH_SIZE

    changed: dict[str, str] = {}
    for instance in await db.list_sent_for_reconcile(now - timedelta(seconds=grace), limit):
        try:
            status = await refresh(instance.id, provider, now=now)
        except Exception:  # noqa: BLE001
            _LOGGER.exception("Reconciling reminder %s failed", instance.id)
            continue
        if status != SENT:
            changed[instance.id] = status
    return changed


async def apply_status_callback(
    provider_message_id: str,
    provider_status: str,
    *,
    error_code: str | None = None,
    error_text: str | None = None,
    raw: dict | None = None,
    received_at: datetime | None = None,
) -> str | None:
    """Apply a delivery report pushed by the provider.

    Returns the new status, or None when nothing changed (unknown message,
    non-terminal report, reminder not in `sent` yet or any more).
    """
    instance = await db.get_instance_by_provider_id(provider_message_id)
    if instance is None:
        _LOGGER.info("Status callback for unknown message %s ignored", provider_message_id)
        return None
    reported = ProviderStatus(status=provider_status, error_code=error_code,
                              error_message=error_text, raw=raw)
    changed = await _apply(instance.id, reported, received_at or datetime.now(tz=timezone.utc))
    if changed:
        _LOGGER.info("Reminder %s is now %s via callback", instance.id, changed)
    return changed
