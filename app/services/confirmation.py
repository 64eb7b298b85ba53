"""Recipient confirmations ("YES" replies)."""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone

from app.errors import InstanceNotFound
from config import settings
import db

_LOGGER = logging.getLogger(__name__)

_NON_WORD = re.compile(r"[^A-Z0-9 ]+")


async def record_confirmation(
    *,
    instance_id: str | None = None,
    provider_message_id: str | None = None,
    received_at: datetime | None = None,
    raw: dict | None = None,
) -> bool:
    """Mark a reminder as confirmed by its recipient.

    Independent of delivery status; a confirmation may arrive before the
    delivery report. Only the first call has an effect: it returns True and
    sets ``confirmed_at``; later calls return False.
    """
    if instance_id is None and provider_message_id is None:
        raise ValueError("instance_id or provider_message_id is required")
    if instance_id is not None:
        instance = await db.get_instance(instance_id)
    else:
        instance = await db.get_instance_by_provider_id(provider_message_id)
    if instance is None:
        raise InstanceNotFound(instance_id or provider_message_id)

    received_at = received_at or datetime.now(tz=timezone.utc)
    first = await db.mark_confirmed(instance.id, received_at, raw)
    if first:
        _LOGGER.info("Reminder %s confirmed by recipient", instance.id)
    return first


def is_confirmation(text: str) -> bool:
    normalised = _NON_WORD.sub("", (text or "").upper()).strip()
    return normalised in settings.CONFIRMATION_KEYWORDS


async def handle_inbound_reply(from_address: str, text: str,
                               received_at: datetime | None = None) -> str | None:
    """Confirm the latest unconfirmed reminder sent to *from_address* when
    *text* is a confirmation keyword. Returns the confirmed reminder id."""
    if not is_confirmation(text):
        _LOGGER.info("Reply from %s is not a confirmation; ignored", from_address)
        return None
    instance = await db.latest_unconfirmed_for_recipient(from_address)
    if instance is None:
        _LOGGER.info("Confirmation from %s matches no outstanding reminder", from_address)
        return None
    await record_confirmation(instance_id=instance.id, received_at=received_at,
                              raw={"from": from_address, "text": text})
    return instance.id
