"""
Dispatch worker logic.

Flow per cycle:
1. `claim_due` – one conditional UPDATE moves due `pending` rows to
   `sending` for this worker's token. That UPDATE is the only mutual
   exclusion between workers.
2. `dispatch` – send each claimed reminder and settle the claim:
   • accepted            → sent
   • permanent rejection → failed
   • transient / timeout → pending again with exponential backoff, or failed
                           once MAX_SEND_ATTEMPTS is reached.
3. `sweep_stale_claims` – claims held longer than DISPATCH_TIMEOUT_SECONDS
   (crashed worker) go back to `pending`.

A requeue (retry or stale claim) of a reminder whose event was cancelled
while it was in flight ends in `cancelled` instead of `pending`.
"""

from __future__ import annotations

import asyncio
import logging
import os
import socket
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from app.errors import (
    PermanentProviderError, StaleClaimError, StoreConflictError, TransientProviderError,
)
from app.types.reminder_contract import (
    CANCELLED, FAILED, PENDING, SENDING, SENT, DispatchOutcome, SendReceipt,
)
from app.utils.sms import MessagingProvider
from config import settings
import db

_LOGGER = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff for transient send failures.

    ``max_attempts`` is the total number of sends an instance gets: the
    attempt that brings ``attempt_count`` up to it is the last one, so
    MAX_SEND_ATTEMPTS=5 means four retries after the first try.
    """

    base_seconds: float
    max_delay_seconds: float
    max_attempts: int

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            base_seconds=settings.RETRY_BASE_SECONDS,
            max_delay_seconds=settings.RETRY_MAX_DELAY_SECONDS,
            max_attempts=settings.MAX_SEND_ATTEMPTS,
        )

    def delay(self, attempt_count: int) -> timedelta:
        """Backoff after a failure of an instance that had *attempt_count*
        previous attempts: ``base * 2**attempt_count``, capped."""
        seconds = min(self.base_seconds * (2 ** attempt_count), self.max_delay_seconds)
        return timedelta(seconds=seconds)

    def exhausted(self, attempt_count: int) -> bool:
        return attempt_count >= self.max_attempts


def new_worker_token() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:8]}"


async def claim_due(worker_token: str, now: datetime | None = None,
                    limit: int | None = None) -> list[str]:
    """Claim up to *limit* due reminders for *worker_token*, earliest first.

    Losing a race (to another worker or to a lock) yields fewer ids or an
    empty list, never an exception.
    """
    now = now or _now()
    limit = limit if limit is not None else settings.DISPATCH_BATCH_SIZE
    try:
        return await db.claim_due_instances(worker_token, now, limit)
    except StoreConflictError as exc:
        _LOGGER.info("Claim by %s lost to a concurrent writer: %s", worker_token, exc)
        return []


async def _send(provider: MessagingProvider, to: str, body: str, timeout: float) -> SendReceipt:
    try:
        return await asyncio.wait_for(asyncio.to_thread(provider.send, to, body), timeout)
    except asyncio.TimeoutError as exc:
        raise TransientProviderError(f"provider send timed out after {timeout:g}s") from exc


async def dispatch(
    instance_id: str,
    provider: MessagingProvider,
    *,
    worker_token: str,
    now: datetime | None = None,
    policy: RetryPolicy | None = None,
    timeout: float | None = None,
) -> DispatchOutcome:
    """Send one claimed reminder and record the outcome.

    Raises `StaleClaimError` if *worker_token* does not (or no longer) hold
    the claim, e.g. because the stale-claim sweep reclaimed it.
    """
    policy = policy or RetryPolicy.from_settings()
    timeout = timeout if timeout is not None else settings.PROVIDER_TIMEOUT_SECONDS

    instance = await db.get_instance(instance_id)
    if instance is None or instance.status != SENDING or instance.claimed_by != worker_token:
        raise StaleClaimError(instance_id)

    attempts = instance.attempt_count + 1
    try:
        receipt = await _send(provider, instance.recipient_address, instance.rendered_body, timeout)
    except PermanentProviderError as exc:
        at = now or _now()
        landed = await db.settle_claim(
            instance_id, worker_token, FAILED, at=at,
            values={"attempt_count": attempts, "last_error": str(exc)},
            error=str(exc), raw=exc.raw,
        )
        outcome = DispatchOutcome(instance_id=instance_id, status=FAILED,
                                  attempt_count=attempts, error=str(exc))
        _LOGGER.warning("Reminder %s rejected permanently: %s", instance_id, exc)
    except TransientProviderError as exc:
        at = now or _now()
        if policy.exhausted(attempts):
            error = f"gave up after {attempts} attempt(s): {exc}"
            landed = await db.settle_claim(
                instance_id, worker_token, FAILED, at=at,
                values={"attempt_count": attempts, "last_error": error},
                error=error, raw=exc.raw,
            )
            outcome = DispatchOutcome(instance_id=instance_id, status=FAILED,
                                      attempt_count=attempts, error=error)
            _LOGGER.warning("Reminder %s failed: %s", instance_id, error)
        else:
            retry_at = at + policy.delay(instance.attempt_count)
            landed = await db.settle_claim(
                instance_id, worker_token, PENDING, at=at,
                values={"attempt_count": attempts, "last_error": str(exc), "scheduled_for": retry_at},
                error=str(exc), raw=exc.raw,
            )
            if landed == CANCELLED:
                # event was cancelled while the send was in flight
                outcome = DispatchOutcome(instance_id=instance_id, status=CANCELLED,
                                          attempt_count=attempts, error=str(exc))
                _LOGGER.info("Reminder %s cancelled instead of retried: %s", instance_id, exc)
            else:
                outcome = DispatchOutcome(instance_id=instance_id, status=PENDING,
                                          attempt_count=attempts, error=str(exc), retry_at=retry_at)
                _LOGGER.info("Reminder %s will retry at %s: %s", instance_id, retry_at.isoformat(), exc)
    else:
        at = now or _now()
        landed = await db.settle_claim(
            instance_id, worker_token, SENT, at=at,
            values={
                "attempt_count": attempts,
                "provider_message_id": receipt.provider_message_id,
                "sent_at": at,
                "last_error": None,
            },
            raw=receipt.raw,
        )
        outcome = DispatchOutcome(instance_id=instance_id, status=SENT, attempt_count=attempts,
                                  provider_message_id=receipt.provider_message_id)
        _LOGGER.info("Reminder %s sent as %s", instance_id, receipt.provider_message_id)

    if not landed:
        raise StaleClaimError(instance_id)
    return outcome


async def run_dispatch_cycle(
    provider: MessagingProvider,
    *,
    worker_token: str | None = None,
    now: datetime | None = None,
    limit: int | None = None,
    policy: RetryPolicy | None = None,
) -> list[DispatchOutcome]:
    """Claim due reminders and dispatch each one. A failure on one reminder
    is logged and never stops the rest of the batch."""
    token = worker_token or new_worker_token()
    claimed = await claim_due(token, now, limit)
    outcomes: list[DispatchOutcome] = []
    for instance_id in claimed:
        try:
            outcomes.append(await dispatch(instance_id, provider, worker_token=token,
                                           now=now, policy=policy))
        except StaleClaimError as exc:
            _LOGGER.warning("%s", exc)
        except Exception:  # noqa: BLE001
            # left in `sending`; the stale-claim sweep returns it to the queue
            _LOGGER.exception("Unexpected error dispatching reminder %s", instance_id)
    if claimed:
        _LOGGER.info("Worker %s dispatched %d/%d reminder(s)", token, len(outcomes), len(claimed))
    return outcomes


async def sweep_stale_claims(
    now: datetime | None = None,
    *,
    timeout_seconds: float | None = None,
    policy: RetryPolicy | None = None,
) -> list[str]:
    """Return claims older than the dispatch timeout to the queue.

    Returns the ids that were released (to `pending`, or to `failed` when
    their attempts are exhausted).
    """
    now = now or _now()
    policy = policy or RetryPolicy.from_settings()
    timeout_seconds = timeout_seconds if timeout_seconds is not None else settings.DISPATCH_TIMEOUT_SECONDS
    cutoff = now - timedelta(seconds=timeout_seconds)

    released = []
    for instance in await db.list_stale_claims(cutoff):
        attempts = instance.attempt_count + 1
        to_status = FAILED if policy.exhausted(attempts) else PENDING
        error = f"claim by {instance.claimed_by} expired after {timeout_seconds:g}s"
        landed = await db.release_stale_claim(instance, to_status, at=now, error=error)
        if landed:
            released.append(instance.id)
            _LOGGER.warning("Reminder %s: %s; now %s", instance.id, error, landed)
    return released
